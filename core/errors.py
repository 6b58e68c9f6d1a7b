"""
ATLAS ERRORS - The exception taxonomy.

Only API misuse and whole-ingestion rejection are raised out of the
pipeline. Everything else (parse problems, schema findings, resolution
failures, merge conflicts) is converted into a value and collected, so a
single run reports every problem at once.
"""
from typing import Any, List, Optional, Sequence


class AtlasError(Exception):
    """Base exception for all Atlas operations."""
    pass


# =============================================================================
# EXTRACTION
# =============================================================================

class ParseError(AtlasError):
    """
    A fenced block could not be decoded.

    Recoverable: the extractor records it and keeps scanning.
    """
    def __init__(self, message: str, span: Optional[Any] = None):
        self.message = message
        self.span = span
        location = f" at {span}" if span is not None else ""
        super().__init__(f"{message}{location}")


# =============================================================================
# GRAPH MODEL
# =============================================================================

class GraphError(AtlasError):
    """Base exception for graph operations."""
    pass


class NodeNotFoundError(GraphError):
    """Raised when a node id is not in the graph."""
    def __init__(self, node_id: str):
        self.node_id = node_id
        super().__init__(f"Node not found: {node_id}")


class RelationNotFoundError(GraphError):
    """Raised when a relation id is not in the graph."""
    def __init__(self, relation_id: str):
        self.relation_id = relation_id
        super().__init__(f"Relation not found: {relation_id}")


class DuplicateIdError(GraphError):
    """Raised when an id is inserted twice. Names both source locations."""
    def __init__(self, element_id: str, existing: Optional[Any] = None, incoming: Optional[Any] = None):
        self.element_id = element_id
        self.existing = existing
        self.incoming = incoming
        super().__init__(
            f"Duplicate id {element_id}: first declared at {existing or 'unknown'}, "
            f"declared again at {incoming or 'unknown'}"
        )


# =============================================================================
# VALIDATION
# =============================================================================

class SchemaViolation(AtlasError):
    """
    Raised when a caller asks for a graph that failed validation.

    Carries the fatal findings so the caller can report every offending id.
    """
    def __init__(self, findings: Sequence[Any]):
        self.findings = list(findings)
        ids = sorted({f.subject_id for f in self.findings if getattr(f, "subject_id", None)})
        super().__init__(
            f"{len(self.findings)} fatal finding(s): {', '.join(ids) if ids else 'no subject'}"
        )


class IngestionRejected(SchemaViolation):
    """Raised when persisting an ingestion that carries fatal findings."""
    pass


# =============================================================================
# RESOLUTION
# =============================================================================

class AnchorResolutionError(AtlasError):
    """An anchor could not be checked. Downgrades the anchor, never fatal."""
    def __init__(self, target: str, reason: str):
        self.target = target
        self.reason = reason
        super().__init__(f"Cannot resolve {target!r}: {reason}")


class FilesystemIOError(AnchorResolutionError):
    """An I/O failure while checking an anchor. The cause is attached."""
    def __init__(self, target: str, cause: BaseException):
        self.cause = cause
        super().__init__(target, f"{type(cause).__name__}: {cause}")


# =============================================================================
# MERGE
# =============================================================================

class MergeConflict(AtlasError):
    """
    A node was removed from the document but surviving relations still
    reference it. The node is retained with a stale flag.
    """
    def __init__(self, node_id: str, referenced_by: List[str]):
        self.node_id = node_id
        self.referenced_by = list(referenced_by)
        super().__init__(
            f"Node {node_id} was removed but is still referenced by {', '.join(self.referenced_by)}"
        )
