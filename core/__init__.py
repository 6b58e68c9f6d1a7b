"""
ATLAS CORE - Central exports for core functionality.

This module provides access to:
- The typed graph (AtlasDB) and its records
- The schema validator
- Query and merge engines
- Snapshots
"""

from core.errors import (
    AtlasError,
    ParseError,
    DuplicateIdError,
    NodeNotFoundError,
    RelationNotFoundError,
    SchemaViolation,
    IngestionRejected,
    AnchorResolutionError,
    FilesystemIOError,
    MergeConflict,
)
from core.graph_db import AtlasDB, create_db
from core.graph_invariants import SchemaValidator, ValidationReport, validate_graph
from core.merge import Changelog, MergeEngine, MergeResult
from core.snapshot import GraphSnapshot
from core.traversal import QueryEngine, QueryPath, QueryResult

__all__ = [
    # Errors
    "AtlasError",
    "ParseError",
    "DuplicateIdError",
    "NodeNotFoundError",
    "RelationNotFoundError",
    "SchemaViolation",
    "IngestionRejected",
    "AnchorResolutionError",
    "FilesystemIOError",
    "MergeConflict",
    # Graph
    "AtlasDB",
    "create_db",
    # Validation
    "SchemaValidator",
    "ValidationReport",
    "validate_graph",
    # Merge
    "Changelog",
    "MergeEngine",
    "MergeResult",
    # Snapshots and queries
    "GraphSnapshot",
    "QueryEngine",
    "QueryPath",
    "QueryResult",
]
