"""
ATLAS SNAPSHOT - The immutable unit that queries read.

A snapshot is a validated, resolved graph plus its side tables. It is never
mutated after construction; a re-ingestion produces a new snapshot which the
store swaps in atomically.

Persisted form (SnapshotRecord) is keyed by id, not position:

    {
      "format_version": 1,
      "version": 3,
      "created_at": "...",
      "source": "docs/architecture.md",
      "nodes": {"CMP-parser": {...}, ...},
      "relations": {"REL-1": {...}, ...},
      "resolutions": {"CMP-parser:anchors.0:code:src/p.py#Parser": {...}},
      "findings": [...],
      "opaque": [...]
    }
"""
from datetime import datetime, timezone
from types import MappingProxyType
from typing import Dict, List, Mapping, Optional, Tuple

import msgspec

from core.graph_db import AtlasDB, create_db
from core.schemas import Finding, Node, OpaqueRecord, RelationData, Resolution
from core.traversal import QueryEngine

FORMAT_VERSION = 1


class SnapshotRecord(msgspec.Struct, kw_only=True):
    """Serializable form of a GraphSnapshot."""
    format_version: int = FORMAT_VERSION
    version: int = 0
    created_at: str = ""
    source: str = ""
    nodes: Dict[str, Node] = {}
    relations: Dict[str, RelationData] = {}
    resolutions: Dict[str, Resolution] = {}
    findings: List[Finding] = []
    opaque: List[OpaqueRecord] = []


class GraphSnapshot:
    """
    Read-only view of one accepted ingestion.

    Readers take a reference and never lock; nothing here mutates.
    """

    __slots__ = ("db", "resolutions", "findings", "opaque", "version", "created_at", "source")

    def __init__(self, db: AtlasDB, resolutions: Optional[Mapping[str, Resolution]] = None,
                 findings: Optional[List[Finding]] = None, opaque: Optional[List[OpaqueRecord]] = None,
                 version: int = 0, created_at: Optional[str] = None, source: str = ""):
        self.db = db
        self.resolutions: Mapping[str, Resolution] = MappingProxyType(dict(sorted((resolutions or {}).items())))
        self.findings: Tuple[Finding, ...] = tuple(findings or ())
        self.opaque: Tuple[OpaqueRecord, ...] = tuple(opaque or ())
        self.version = version
        self.created_at = created_at or datetime.now(timezone.utc).isoformat(timespec="seconds")
        self.source = source

    @property
    def warnings(self) -> List[Finding]:
        return [f for f in self.findings if not f.is_fatal]

    @property
    def fatal_findings(self) -> List[Finding]:
        return [f for f in self.findings if f.is_fatal]

    def query_engine(self, extra_relation_kinds=None) -> QueryEngine:
        return QueryEngine(self.db, resolutions=self.resolutions,
                           extra_relation_kinds=extra_relation_kinds)

    def with_resolutions(self, resolutions: Mapping[str, Resolution]) -> "GraphSnapshot":
        """A copy with a different resolution table (the graph is shared)."""
        return GraphSnapshot(self.db, resolutions, list(self.findings), list(self.opaque),
                             version=self.version, created_at=self.created_at, source=self.source)

    # =========================================================================
    # RECORD CONVERSION
    # =========================================================================

    def to_record(self) -> SnapshotRecord:
        return SnapshotRecord(
            version=self.version,
            created_at=self.created_at,
            source=self.source,
            nodes={n.id: n for n in self.db.iter_nodes()},
            relations={r.id: r for r in self.db.get_all_relations()},
            resolutions=dict(self.resolutions),
            findings=list(self.findings),
            opaque=list(self.opaque),
        )

    @classmethod
    def from_record(cls, record: SnapshotRecord) -> "GraphSnapshot":
        """
        Rebuild a snapshot from its persisted form.

        Raises:
            ValueError: If the record was written by a newer format, or a node
                is stored under a key other than its id
        """
        if record.format_version > FORMAT_VERSION:
            raise ValueError(
                f"Snapshot format {record.format_version} is newer than supported ({FORMAT_VERSION})"
            )
        for key, node in record.nodes.items():
            if key != node.id:
                raise ValueError(f"Snapshot node keyed {key!r} has id {node.id!r}")
        db = create_db(list(record.nodes.values()), list(record.relations.values()))
        return cls(db, record.resolutions, record.findings, record.opaque,
                   version=record.version, created_at=record.created_at, source=record.source)

    def __repr__(self) -> str:
        return (f"GraphSnapshot(version={self.version}, nodes={self.db.node_count}, "
                f"relations={self.db.relation_count}, warnings={len(self.warnings)})")


def empty_snapshot() -> GraphSnapshot:
    return GraphSnapshot(AtlasDB(), version=0)
