"""
ATLAS INGESTION - Document in, snapshot out.

    extract -> build -> merge (when a snapshot exists) -> validate (gate)
            -> resolve anchors -> publish

All-or-nothing: a single fatal finding rejects the whole ingestion and the
previous snapshot stays live. Every stage still runs to completion, so the
result carries every finding at once, not just the first.

Concurrent ingestions into one store run their merge-and-publish step one at
a time on the store's write lock, so each merges against its predecessor.
"""
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional, Union

from core.errors import IngestionRejected, MergeConflict
from core.graph_invariants import SchemaValidator, ValidationReport
from core.merge import Changelog, MergeEngine
from core.snapshot import GraphSnapshot
from domain.graph_builder import BuildResult, build_graph
from infrastructure.anchor_resolver import AnchorResolver
from infrastructure.config import AtlasConfig
from infrastructure.event_bus import EventBus, EventType, get_event_bus, publish_event
from infrastructure.snapshot_store import SnapshotStore

logger = logging.getLogger(__name__)


@dataclass
class IngestionResult:
    accepted: bool
    report: ValidationReport
    changelog: Changelog
    build: BuildResult
    snapshot: Optional[GraphSnapshot] = None
    conflicts: List[MergeConflict] = field(default_factory=list)

    def raise_for_rejection(self) -> None:
        """
        Raises:
            IngestionRejected: If the ingestion was not accepted
        """
        if not self.accepted:
            raise IngestionRejected(self.report.fatal)


class IngestionPipeline:
    """
    Runs one document through every stage and publishes the result.

    Usage:
        pipeline = IngestionPipeline(load_config())
        pipeline.store.load()
        result = pipeline.ingest_file("docs/architecture.md")
        if not result.accepted:
            for finding in result.report.fatal:
                print(finding.code, finding.subject_id, finding.provenance)
    """

    def __init__(self, config: Optional[AtlasConfig] = None, store: Optional[SnapshotStore] = None,
                 resolver: Optional[AnchorResolver] = None, event_bus: Optional[EventBus] = None,
                 resolve_anchors: bool = True):
        self.config = config or AtlasConfig()
        self.event_bus = event_bus or get_event_bus()
        self.store = store or SnapshotStore(self.config.storage.snapshot_path, event_bus=self.event_bus)
        self.resolver = resolver or AnchorResolver.from_config(self.config.resolver)
        self.resolve_anchors = resolve_anchors
        self.validator = SchemaValidator(self.config.validation.extra_relation_kinds)
        self.merger = MergeEngine()

    def ingest_file(self, path: Union[str, Path]) -> IngestionResult:
        path = Path(path)
        return self.ingest_text(path.read_text(encoding="utf-8"), source=str(path))

    def ingest_text(self, text: str, source: str = "") -> IngestionResult:
        self._publish(EventType.INGESTION_STARTED, {"source": source})
        build = build_graph(text, source=source)
        with self.store.write_lock:
            return self._merge_and_publish(build, source)

    def _merge_and_publish(self, build: BuildResult, source: str) -> IngestionResult:
        db = build.db
        conflicts: List[MergeConflict] = []

        previous = self.store.current() if self.store.has_snapshot else None
        if previous is not None:
            merged = self.merger.merge(previous.db, build.db)
            db, changelog, conflicts = merged.db, merged.changelog, merged.conflicts
            for conflict in conflicts:
                self._publish(EventType.MERGE_CONFLICT, {
                    "source": source,
                    "node_id": conflict.node_id,
                    "referenced_by": conflict.referenced_by,
                })
        else:
            changelog = Changelog(added=sorted(db.node_ids() + db.relation_ids()))

        report = self.validator.validate(db, prior_findings=build.findings)

        if not report.is_valid:
            logger.warning(
                f"Rejected {source or '<document>'}: {len(report.fatal)} fatal, "
                f"{len(report.warnings)} warning finding(s)"
            )
            for finding in report.fatal:
                logger.warning(f"  [{finding.code}] {finding.message} ({finding.provenance})")
            self._publish(EventType.INGESTION_REJECTED, {
                "source": source,
                "fatal": [f.code for f in report.fatal],
                "subject_ids": sorted({f.subject_id for f in report.fatal if f.subject_id}),
            })
            return IngestionResult(accepted=False, report=report, changelog=changelog,
                                   build=build, conflicts=conflicts)

        resolutions = self.resolver.resolve_graph(db) if self.resolve_anchors else {}
        snapshot = GraphSnapshot(
            db,
            resolutions=resolutions,
            findings=report.findings,
            opaque=build.opaque,
            version=self.store.next_version(),
            source=source,
        )
        self.store.publish(snapshot)

        logger.info(
            f"Ingested {source or '<document>'}: {db.node_count} nodes, {db.relation_count} relations, "
            f"{len(report.warnings)} warnings; {changelog.summary()}"
        )
        return IngestionResult(accepted=True, report=report, changelog=changelog,
                               build=build, snapshot=snapshot, conflicts=conflicts)

    def validate_text(self, text: str, source: str = "") -> ValidationReport:
        """Build and validate without merging or persisting anything."""
        build = build_graph(text, source=source)
        return self.validator.validate(build.db, prior_findings=build.findings)

    def re_resolve(self) -> GraphSnapshot:
        """Re-run anchor resolution for the live snapshot and publish the new table."""
        with self.store.write_lock:
            current = self.store.current()
            snapshot = current.with_resolutions(self.resolver.resolve_graph(current.db))
            return self.store.publish(snapshot)

    def _publish(self, event_type: EventType, payload: dict) -> None:
        publish_event(event_type, payload, source="ingestion", bus=self.event_bus)
