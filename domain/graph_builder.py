"""
GRAPH BUILDER - Raw records in, typed graph out.

The strict half of the two-phase parser: each RawRecord is decoded into its
node variant (or a RelationData) with msgspec, then inserted into a fresh
AtlasDB. Problems never stop the build; they become fatal findings so the
validator can report everything in one pass:

- parse_error      a block the extractor could not read
- invalid_record   a record that does not fit its schema
- duplicate_id     an id declared twice (both locations named)

Nodes are inserted before relations so relation endpoints can be checked
against the complete node set.
"""
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

import msgspec

from core.errors import DuplicateIdError
from core.graph_db import AtlasDB
from core.ontology import RELATION_RECORD, FindingCode, NodeKind, Severity
from core.schemas import Finding, OpaqueRecord, decode_node, decode_relation
from domain.block_extractor import ExtractionResult, NarrativeSection, RawRecord, extract_blocks

logger = logging.getLogger(__name__)

_LIST_FIELDS = frozenset({"anchors", "entrypoints", "config", "steps", "refs"})


@dataclass
class BuildResult:
    """A freshly built graph plus everything that went wrong building it."""
    db: AtlasDB
    findings: List[Finding] = field(default_factory=list)
    opaque: List[OpaqueRecord] = field(default_factory=list)
    sections: List[NarrativeSection] = field(default_factory=list)
    source: str = ""

    @property
    def ok(self) -> bool:
        return not self.findings


class GraphBuilder:
    """Decodes raw records and populates an AtlasDB."""

    def build(self, extraction: ExtractionResult) -> BuildResult:
        db = AtlasDB()
        findings: List[Finding] = []

        for error in extraction.errors:
            findings.append(Finding(
                severity=Severity.FATAL.value,
                code=FindingCode.PARSE_ERROR.value,
                message=error.message,
                provenance=error.span,
            ))

        node_records = [r for r in extraction.records if r.kind != RELATION_RECORD]
        relation_records = [r for r in extraction.records if r.kind == RELATION_RECORD]

        for record in node_records:
            self._add_node(db, record, findings)
        for record in relation_records:
            self._add_relation(db, record, findings)

        logger.info(
            f"Built graph from {extraction.source or '<document>'}: "
            f"{db.node_count} nodes, {db.relation_count} relations, {len(findings)} build findings"
        )
        return BuildResult(
            db=db,
            findings=findings,
            opaque=list(extraction.opaque),
            sections=list(extraction.sections),
            source=extraction.source,
        )

    # =========================================================================
    # RECORD DECODING
    # =========================================================================

    def _add_node(self, db: AtlasDB, record: RawRecord, findings: List[Finding]) -> None:
        kind = NodeKind(record.kind)
        data = _normalize_node_record(kind, record.data)
        try:
            node = decode_node(kind, data, provenance=record.span)
        except msgspec.ValidationError as e:
            findings.append(_invalid_record(record, str(e)))
            return

        try:
            db.add_node(node)
        except DuplicateIdError as e:
            findings.append(_duplicate(e, record))

    def _add_relation(self, db: AtlasDB, record: RawRecord, findings: List[Finding]) -> None:
        try:
            relation = decode_relation(_empty_lists(record.data), provenance=record.span)
        except msgspec.ValidationError as e:
            findings.append(_invalid_record(record, str(e)))
            return

        try:
            db.add_relation(relation)
        except DuplicateIdError as e:
            findings.append(_duplicate(e, record))


def _normalize_node_record(kind: NodeKind, data: Dict[str, Any]) -> Dict[str, Any]:
    """Accept plain strings as flow steps ("- Parse the file") and bare list keys."""
    data = _empty_lists(data)
    if kind != NodeKind.FLOW or not isinstance(data.get("steps"), list):
        return data
    steps = [_normalize_step(step) for step in data["steps"]]
    return dict(data, steps=steps)


def _normalize_step(step: Any) -> Any:
    if isinstance(step, str):
        return {"description": step}
    if isinstance(step, dict):
        return _empty_lists(step)
    return step


def _empty_lists(data: Dict[str, Any]) -> Dict[str, Any]:
    """A bare `anchors:` or `refs:` key loads as None; read it as an empty list."""
    return {key: [] if value is None and key in _LIST_FIELDS else value for key, value in data.items()}


def _record_id(record: RawRecord) -> Optional[str]:
    value = record.data.get("id")
    return value if isinstance(value, str) else None


def _invalid_record(record: RawRecord, reason: str) -> Finding:
    record_id = _record_id(record)
    label = f"{record.kind} {record_id}" if record_id else f"{record.key} record"
    return Finding(
        severity=Severity.FATAL.value,
        code=FindingCode.INVALID_RECORD.value,
        message=f"Invalid {label}: {reason}",
        subject_id=record_id,
        provenance=record.span,
    )


def _duplicate(error: DuplicateIdError, record: RawRecord) -> Finding:
    return Finding(
        severity=Severity.FATAL.value,
        code=FindingCode.DUPLICATE_ID.value,
        message=str(error),
        subject_id=error.element_id,
        provenance=record.span,
    )


def build_graph(text: str, source: str = "") -> BuildResult:
    """Extract and build in one call."""
    return GraphBuilder().build(extract_blocks(text, source=source))
