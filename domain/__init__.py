"""
ATLAS DOMAIN LAYER

This module provides:
- BlockExtractor: fenced-block scanning of narrative documents
- GraphBuilder: raw records to a typed AtlasDB
- render_document: the inverse, graph back to a document

Usage:
    from domain import build_graph

    build = build_graph(Path("docs/architecture.md").read_text(), source="docs/architecture.md")
    print(f"{build.db.node_count} nodes, {len(build.findings)} build findings")
"""
from .block_extractor import (
    BlockExtractor,
    ExtractionResult,
    NarrativeSection,
    RawRecord,
    extract_blocks,
)
from .graph_builder import BuildResult, GraphBuilder, build_graph
from .document_writer import render_document

__all__ = [
    # Extraction
    "BlockExtractor",
    "ExtractionResult",
    "NarrativeSection",
    "RawRecord",
    "extract_blocks",
    # Build
    "BuildResult",
    "GraphBuilder",
    "build_graph",
    # Rendering
    "render_document",
]
