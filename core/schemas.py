"""
ATLAS SCHEMAS - The Grammar of the System

If ontology.py is the Dictionary (the words a document may use),
schemas.py is the Grammar (how those words are put together).

This module defines the records that flow through the graph:
- Anchor / FlowStep / SourceSpan: the building blocks
- Node variants: a tagged union (tag field "kind"), one struct per NodeKind
- RelationData: the payload of every edge
- Finding / Resolution: validator and resolver output (persisted)
- Serialization helpers for persistence

Design Principles:
1. STRICT TYPING: msgspec.Struct with no silent type coercion
2. TAGGED VARIANTS: the node kind set is closed, so dispatch is exhaustive
3. KW_ONLY + FROZEN: records are immutable once built; merge replaces them
4. IMMUTABLE IDS: identity is the join key across document revisions
5. CONTENT KEYS: structural equality ignores provenance and the stale flag
"""
import msgspec
from typing import Any, ClassVar, Dict, List, Optional, Type, Union

from core.ontology import NodeKind, Severity


# =============================================================================
# BUILDING BLOCKS
# =============================================================================

class SourceSpan(msgspec.Struct, kw_only=True, frozen=True):
    """Where in the source document a record came from (for error reporting)."""
    source: str = ""          # Document name or path
    start: int = 0            # Byte offset, inclusive
    end: int = 0              # Byte offset, exclusive
    line: int = 0             # 1-based line of the opening fence
    section: str = ""         # Nearest preceding heading

    def __str__(self) -> str:
        where = self.source or "<document>"
        return f"{where}:{self.line} (bytes {self.start}-{self.end})"


class Anchor(msgspec.Struct, kw_only=True, frozen=True):
    """A typed pointer from a node or relation to a concrete artifact."""
    kind: str                 # AnchorKind.value
    target: str               # Kind-dependent syntax, see core/anchors.py
    why: str = ""             # Human explanation of the pointer


class LocatedAnchor(msgspec.Struct, kw_only=True, frozen=True):
    """
    An anchor together with its structural position.

    The key (owner + slot + kind + target) is the anchor's identity for the
    resolution side table. Slots are structural ("steps.1.anchors.0"), not
    byte offsets, so editing narrative prose never invalidates resolutions.
    """
    owner_id: str
    slot: str
    anchor: Anchor

    @property
    def key(self) -> str:
        return anchor_key(self.owner_id, self.slot, self.anchor)


def anchor_key(owner_id: str, slot: str, anchor: Anchor) -> str:
    """Identity of an anchor in the resolution side table."""
    return f"{owner_id}:{slot}:{anchor.kind}:{anchor.target}"


def _locate(owner_id: str, prefix: str, anchors: List[Anchor]) -> List[LocatedAnchor]:
    return [
        LocatedAnchor(owner_id=owner_id, slot=f"{prefix}.{i}", anchor=a)
        for i, a in enumerate(anchors)
    ]


class FlowStep(msgspec.Struct, kw_only=True, frozen=True):
    """One step of a flow: a description plus its own anchors."""
    description: str = ""
    anchors: List[Anchor] = []


# =============================================================================
# NODE VARIANTS (Tagged Union)
# =============================================================================

class NodeBase(msgspec.Struct, kw_only=True, frozen=True, tag_field="kind"):
    """
    Fields shared by every node variant.

    `provenance` and `stale` are bookkeeping: they are excluded from
    content comparison, so moving a block around in the document or
    surviving a merge conflict does not count as a content change.
    """
    KIND: ClassVar[NodeKind]

    id: str
    title: str = ""
    anchors: List[Anchor] = []
    provenance: Optional[SourceSpan] = None
    stale: bool = False

    @property
    def node_kind(self) -> NodeKind:
        return self.KIND

    def located_anchors(self) -> List[LocatedAnchor]:
        """All anchors of this node with their structural slots."""
        return _locate(self.id, "anchors", self.anchors)

    def all_anchors(self) -> List[Anchor]:
        return [la.anchor for la in self.located_anchors()]

    def has_anchors(self) -> bool:
        return bool(self.located_anchors())

    def text_fields(self) -> List[str]:
        """Free text used for keyword matching."""
        return [self.title]

    def content_key(self) -> bytes:
        """Canonical bytes for structural equality (bookkeeping stripped)."""
        stripped = msgspec.structs.replace(self, provenance=None, stale=False)
        return _canonical_encoder.encode(stripped)


class SystemNode(NodeBase, kw_only=True, frozen=True, tag=NodeKind.SYSTEM.value):
    """Root descriptor. Exactly one per graph, never the target of a relation."""
    KIND: ClassVar[NodeKind] = NodeKind.SYSTEM

    purpose: str = ""
    entrypoints: List[Anchor] = []
    config: List[Anchor] = []

    def located_anchors(self) -> List[LocatedAnchor]:
        return (
            _locate(self.id, "anchors", self.anchors)
            + _locate(self.id, "entrypoints", self.entrypoints)
            + _locate(self.id, "config", self.config)
        )

    def text_fields(self) -> List[str]:
        return [self.title, self.purpose]


class ComponentNode(NodeBase, kw_only=True, frozen=True, tag=NodeKind.COMPONENT.value):
    """A cohesive responsibility unit anchored into code."""
    KIND: ClassVar[NodeKind] = NodeKind.COMPONENT

    purpose: str = ""

    def text_fields(self) -> List[str]:
        return [self.title, self.purpose]


class FlowNode(NodeBase, kw_only=True, frozen=True, tag=NodeKind.FLOW.value):
    """A time-ordered behaviour. Step order is significant."""
    KIND: ClassVar[NodeKind] = NodeKind.FLOW

    purpose: str = ""
    steps: List[FlowStep] = []

    def located_anchors(self) -> List[LocatedAnchor]:
        located = _locate(self.id, "anchors", self.anchors)
        for i, step in enumerate(self.steps):
            located.extend(_locate(self.id, f"steps.{i}.anchors", step.anchors))
        return located

    def text_fields(self) -> List[str]:
        return [self.title, self.purpose] + [s.description for s in self.steps]


class InvariantNode(NodeBase, kw_only=True, frozen=True, tag=NodeKind.INVARIANT.value):
    """A rule statement. Its anchors are proof pointers."""
    KIND: ClassVar[NodeKind] = NodeKind.INVARIANT

    statement: str = ""

    def text_fields(self) -> List[str]:
        return [self.title, self.statement]


class EvidenceNode(NodeBase, kw_only=True, frozen=True, tag=NodeKind.EVIDENCE.value):
    """A proof record. Anchors should be test, command or file."""
    KIND: ClassVar[NodeKind] = NodeKind.EVIDENCE

    statement: str = ""

    def text_fields(self) -> List[str]:
        return [self.title, self.statement]


Node = Union[SystemNode, ComponentNode, FlowNode, InvariantNode, EvidenceNode]

NODE_TYPES: Dict[NodeKind, Type[NodeBase]] = {
    NodeKind.SYSTEM: SystemNode,
    NodeKind.COMPONENT: ComponentNode,
    NodeKind.FLOW: FlowNode,
    NodeKind.INVARIANT: InvariantNode,
    NodeKind.EVIDENCE: EvidenceNode,
}


# =============================================================================
# RELATION DATA (The Edge Payload)
# =============================================================================

class RelationData(msgspec.Struct, kw_only=True, frozen=True):
    """
    The payload attached to every edge in the rustworkx graph.

    `source`/`target` are node ids (serialized as "from"/"to"), not
    rustworkx indices. AtlasDB handles the translation.
    """
    id: str
    source: str = msgspec.field(name="from")
    target: str = msgspec.field(name="to")
    kind: str
    note: str = ""
    refs: List[Anchor] = []
    provenance: Optional[SourceSpan] = None

    @property
    def has_refs(self) -> bool:
        return bool(self.refs)

    def located_anchors(self) -> List[LocatedAnchor]:
        return _locate(self.id, "refs", self.refs)

    def content_key(self) -> bytes:
        stripped = msgspec.structs.replace(self, provenance=None)
        return _canonical_encoder.encode(stripped)


# =============================================================================
# VALIDATOR AND RESOLVER OUTPUT
# =============================================================================

class Finding(msgspec.Struct, kw_only=True, frozen=True):
    """One validator finding. Fatal findings block persistence."""
    severity: str                              # Severity.value
    code: str                                  # FindingCode.value
    message: str
    subject_id: Optional[str] = None           # Offending node/relation id
    related_ids: List[str] = []                # Other ids involved
    provenance: Optional[SourceSpan] = None

    @property
    def is_fatal(self) -> bool:
        return self.severity == Severity.FATAL.value


class OpaqueRecord(msgspec.Struct, kw_only=True, frozen=True):
    """
    A structured block (or top-level key) that declares no known record kind.

    Ignored by every downstream stage but kept so a re-rendered document
    loses nothing.
    """
    key: Optional[str] = None     # Top-level key, None for non-mapping blocks
    data: Any = None
    provenance: Optional[SourceSpan] = None


class Resolution(msgspec.Struct, kw_only=True, frozen=True):
    """Outcome of resolving one anchor. Keyed by anchor identity."""
    key: str
    owner_id: str
    slot: str
    kind: str
    target: str
    status: str                                # ResolutionStatus.value
    detail: Optional[str] = None               # Cause / explanation


# =============================================================================
# CONSTRUCTION
# =============================================================================

def decode_node(kind: NodeKind, record: Dict, provenance: Optional[SourceSpan] = None) -> Node:
    """
    Decode a raw record mapping into the node variant for `kind`.

    Bookkeeping keys are never taken from the document.

    Raises:
        msgspec.ValidationError: if the record does not fit the schema
    """
    data = {k: v for k, v in record.items() if k not in ("provenance", "stale", "kind")}
    data["kind"] = kind.value
    node = msgspec.convert(data, type=NODE_TYPES[kind])
    if provenance is not None:
        node = msgspec.structs.replace(node, provenance=provenance)
    return node


def decode_relation(record: Dict, provenance: Optional[SourceSpan] = None) -> RelationData:
    """Decode a raw relation mapping. Raises msgspec.ValidationError."""
    data = {k: v for k, v in record.items() if k != "provenance"}
    relation = msgspec.convert(data, type=RelationData)
    if provenance is not None:
        relation = msgspec.structs.replace(relation, provenance=provenance)
    return relation


# =============================================================================
# SERIALIZATION HELPERS
# =============================================================================

# Pre-compiled encoders/decoders; reuse them instead of rebuilding per call.
# Sorted key order keeps the persisted form stable and diffable.
_canonical_encoder = msgspec.json.Encoder(order="sorted")

_node_decoder = msgspec.json.Decoder(type=Node)
_relation_decoder = msgspec.json.Decoder(type=RelationData)
_finding_list_decoder = msgspec.json.Decoder(type=List[Finding])


def serialize_node(node: NodeBase) -> bytes:
    """Serialize a node (with its kind tag) to JSON bytes."""
    return _canonical_encoder.encode(node)


def deserialize_node(data: bytes) -> Node:
    """Deserialize JSON bytes into the right node variant."""
    return _node_decoder.decode(data)


def serialize_relation(relation: RelationData) -> bytes:
    return _canonical_encoder.encode(relation)


def deserialize_relation(data: bytes) -> RelationData:
    return _relation_decoder.decode(data)


def serialize_findings(findings: List[Finding]) -> bytes:
    return _canonical_encoder.encode(findings)


def deserialize_findings(data: bytes) -> List[Finding]:
    return _finding_list_decoder.decode(data)
