"""
ATLAS ONTOLOGY - The Dictionary of the System

If schemas.py is the Grammar (how records are structured),
ontology.py is the Dictionary (the words a document may use).

This module defines:
- Enums: the vocabulary (NodeKind, AnchorKind, Severity, ResolutionStatus)
- Id prefixes: the namespace convention for node identifiers
- Block keys: which top-level keys in a fenced block declare records
- The curated relation vocabulary and traversal weights

Key Principle: the vocabulary is CLOSED for nodes and anchors (exhaustive
dispatch in validation and serialization) and OPEN-BUT-CURATED for relations
(unknown relation kinds are accepted and flagged as low confidence).
"""
from typing import Dict, FrozenSet, Optional, Tuple
from enum import Enum


# =============================================================================
# ENUMS (The Vocabulary)
# =============================================================================

class NodeKind(str, Enum):
    """The five node variants a document can declare."""
    SYSTEM = "system"            # Root descriptor (exactly one per graph)
    COMPONENT = "component"      # Cohesive responsibility unit
    FLOW = "flow"                # Time-ordered behaviour made of steps
    INVARIANT = "invariant"      # Rule statement backed by proof pointers
    EVIDENCE = "evidence"        # Proof record (tests, commands, files)


class AnchorKind(str, Enum):
    """Location classes an anchor can point at."""
    CODE = "code"                # path#Dotted.Symbol
    FILE = "file"                # relative path
    CONFIG = "config"            # path#yaml:dotted.key
    TEST = "test"                # path#Group.testName
    COMMAND = "command"          # shell-invocable string


class Severity(str, Enum):
    """Severity of a validator finding."""
    FATAL = "fatal"              # Blocks persistence of the whole ingestion
    WARNING = "warning"          # Persisted alongside the graph


class ResolutionStatus(str, Enum):
    """Outcome of verifying one anchor against the filesystem."""
    VERIFIED = "verified"
    PATH_MISSING = "path_missing"
    SYMBOL_NOT_FOUND = "symbol_not_found"
    UNVERIFIABLE = "unverifiable"


class FindingCode(str, Enum):
    """Stable codes for validator findings (in check order)."""
    NO_ROOT = "no_root"
    AMBIGUOUS_ROOT = "ambiguous_root"
    DUPLICATE_ID = "duplicate_id"
    DANGLING_EDGE_ENDPOINT = "dangling_edge_endpoint"
    ROOT_HAS_INCOMING_EDGE = "root_has_incoming_edge"
    MALFORMED_ANCHOR = "malformed_anchor"
    EVIDENCE_ANCHOR_KIND = "evidence_anchor_kind"
    UNANCHORED_NODE = "unanchored_node"
    EVIDENCE_WITHOUT_INVARIANT = "evidence_without_invariant"
    UNKNOWN_RELATION_KIND = "unknown_relation_kind"
    ID_PREFIX_MISMATCH = "id_prefix_mismatch"
    # Raised before validation (extraction and graph build)
    PARSE_ERROR = "parse_error"
    INVALID_RECORD = "invalid_record"


class ChangeKind(str, Enum):
    """Changelog buckets produced by the merge engine."""
    ADDED = "added"
    REMOVED = "removed"
    MODIFIED = "modified"
    CONFLICTED = "conflicted"


# =============================================================================
# IDENTIFIER NAMESPACES
# =============================================================================

ID_PREFIXES: Dict[NodeKind, str] = {
    NodeKind.SYSTEM: "SYS-",
    NodeKind.COMPONENT: "CMP-",
    NodeKind.FLOW: "FLOW-",
    NodeKind.INVARIANT: "INV-",
    NodeKind.EVIDENCE: "EVD-",
}

RELATION_ID_PREFIX = "REL-"


def expected_prefix(kind: NodeKind) -> str:
    """Return the id prefix a node of this kind should carry."""
    return ID_PREFIXES[kind]


# =============================================================================
# BLOCK KEYS (What the Block Extractor Recognizes)
# =============================================================================

RELATION_RECORD = "relation"

# Top-level key -> (record kind, is_list)
BLOCK_KEYS: Dict[str, Tuple[str, bool]] = {
    "system": (NodeKind.SYSTEM.value, False),
    "systems": (NodeKind.SYSTEM.value, True),
    "component": (NodeKind.COMPONENT.value, False),
    "components": (NodeKind.COMPONENT.value, True),
    "flow": (NodeKind.FLOW.value, False),
    "flows": (NodeKind.FLOW.value, True),
    "invariant": (NodeKind.INVARIANT.value, False),
    "invariants": (NodeKind.INVARIANT.value, True),
    "evidence": (NodeKind.EVIDENCE.value, False),
    "evidences": (NodeKind.EVIDENCE.value, True),
    "relation": (RELATION_RECORD, False),
    "relations": (RELATION_RECORD, True),
}

# Plural key used when rendering a kind back into a document
PLURAL_KEYS: Dict[str, str] = {
    NodeKind.SYSTEM.value: "system",
    NodeKind.COMPONENT.value: "components",
    NodeKind.FLOW.value: "flows",
    NodeKind.INVARIANT.value: "invariants",
    NodeKind.EVIDENCE.value: "evidences",
    RELATION_RECORD: "relations",
}

STRUCTURED_FENCE_LANGUAGES: FrozenSet[str] = frozenset({"yaml", "yml", "json"})


# =============================================================================
# ANCHOR RULES
# =============================================================================

# Anchor kinds whose target begins with a repository-relative path
PATH_BEARING_KINDS: FrozenSet[str] = frozenset({
    AnchorKind.CODE.value,
    AnchorKind.FILE.value,
    AnchorKind.CONFIG.value,
    AnchorKind.TEST.value,
})

# Evidence is a proof record: it can only point at things that prove
EVIDENCE_ANCHOR_KINDS: FrozenSet[str] = frozenset({
    AnchorKind.TEST.value,
    AnchorKind.COMMAND.value,
    AnchorKind.FILE.value,
})

CONFIG_FORMATS: FrozenSet[str] = frozenset({"yaml", "json", "toml"})


# =============================================================================
# RELATION VOCABULARY
# =============================================================================

# Curated relation kinds. Anything else is accepted but low-confidence.
RELATION_KINDS: FrozenSet[str] = frozenset({
    "uses",
    "calls",
    "implements",
    "updates",
    "reads",
    "writes",
    "parses",
    "executes",
    "guards",
    "evidences",
    "depends_on",
    "contains",
    "configures",
    "tests",
    "emits",
    "consumes",
    "produces",
    "triggers",
    "documents",
})

EVIDENCES_RELATION = "evidences"


def is_known_relation_kind(kind: str, extra: Optional[FrozenSet[str]] = None) -> bool:
    """Check a relation kind against the curated vocabulary (plus extensions)."""
    if kind in RELATION_KINDS:
        return True
    return bool(extra) and kind in extra


# =============================================================================
# TRAVERSAL WEIGHTS
# =============================================================================

REFERENCED_EDGE_WEIGHT = 1.0     # Relation backed by at least one anchor
BARE_EDGE_WEIGHT = 0.5           # Relation with an empty refs list
LOW_CONFIDENCE_FACTOR = 0.8      # Applied on top for unknown relation kinds

DEFAULT_HOP_BOUND = 4
DEFAULT_TOP_K = 3
