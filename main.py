"""
ATLAS MAIN - Entry Point and CLI

Commands:
    ingest   - Ingest a document, merge it with the live snapshot, publish
    validate - Validate a document without persisting anything
    resolve  - Re-check every anchor of the live snapshot against the repo
    query    - Ranked paths from a node id or a task description
    diff     - Changelog between a persisted snapshot and a document
    render   - Render the live snapshot back into a document
    export   - Export node/relation tables (Parquet or CSV)

Usage:
    python main.py ingest docs/architecture.md
    python main.py validate docs/architecture.md
    python main.py query CMP-parser --hops 3
    python main.py query "why are tabs rejected by the lexer" --top-k 2
    python main.py diff .atlas/snapshot.json docs/architecture.md
    python main.py render > docs/architecture.rendered.md
    python main.py export --output ./export --format parquet

Global options:
    --config PATH     TOML config (default: config/atlas.toml)
    --repo-root PATH  Repository checkout for anchor resolution
    --snapshot PATH   Snapshot file
"""
import sys
import logging
from pathlib import Path
from typing import List, Optional

import msgspec

# Add atlas to path for imports
sys.path.insert(0, str(Path(__file__).parent))


# =============================================================================
# SHARED SETUP
# =============================================================================

def _load(args):
    from infrastructure.config import load_config

    config = load_config(args.config)
    if args.repo_root:
        config.resolver.repo_root = args.repo_root
    if args.snapshot:
        config.storage.snapshot_path = args.snapshot
    logging.basicConfig(
        level=getattr(logging, config.logging.level.upper(), logging.INFO),
        format=config.logging.format,
    )
    return config


def _pipeline(config):
    from infrastructure.ingestion import IngestionPipeline

    pipeline = IngestionPipeline(config)
    pipeline.store.load()
    return pipeline


def _print_findings(findings) -> None:
    for finding in findings:
        where = f" @ {finding.provenance}" if finding.provenance is not None else ""
        subject = f" {finding.subject_id}" if finding.subject_id else ""
        print(f"  {finding.severity.upper():7} [{finding.code}]{subject}: {finding.message}{where}")


def _print_changelog(changelog) -> None:
    print(f"Changes: {changelog.summary()}")
    for bucket in ("added", "removed", "modified", "conflicted"):
        ids = getattr(changelog, bucket)
        if ids:
            print(f"  {bucket}: {', '.join(ids)}")
    for change in changelog.anchor_changes:
        print(f"  anchor {change.change} on {change.owner_id}: "
              f"{change.old_target or ''} -> {change.new_target or ''}")


# =============================================================================
# COMMANDS
# =============================================================================

def cmd_ingest(args):
    """Handle ingest command - validate, resolve and publish a document."""
    config = _load(args)
    pipeline = _pipeline(config)
    if args.no_resolve:
        pipeline.resolve_anchors = False

    result = pipeline.ingest_file(args.document)
    _print_findings(result.report.findings)
    _print_changelog(result.changelog)

    if not result.accepted:
        print(f"Rejected: {len(result.report.fatal)} fatal finding(s); the live snapshot is unchanged")
        sys.exit(1)

    snapshot = result.snapshot
    print(f"Published snapshot v{snapshot.version}: {snapshot.db.node_count} nodes, "
          f"{snapshot.db.relation_count} relations -> {pipeline.store.path}")


def cmd_validate(args):
    """Handle validate command - report findings, persist nothing."""
    config = _load(args)
    from infrastructure.ingestion import IngestionPipeline

    pipeline = IngestionPipeline(config, resolve_anchors=False)
    text = Path(args.document).read_text(encoding="utf-8")
    report = pipeline.validate_text(text, source=args.document)

    _print_findings(report.findings)
    print(f"{len(report.fatal)} fatal, {len(report.warnings)} warning(s); metrics: {report.metrics}")
    if not report.is_valid:
        sys.exit(1)


def cmd_resolve(args):
    """Handle resolve command - re-check anchors of the live snapshot."""
    config = _load(args)
    pipeline = _pipeline(config)
    if not pipeline.store.has_snapshot:
        print(f"No snapshot at {pipeline.store.path}; run `ingest` first")
        sys.exit(1)

    snapshot = pipeline.re_resolve()
    counts = {}
    for resolution in snapshot.resolutions.values():
        counts[resolution.status] = counts.get(resolution.status, 0) + 1
        if args.verbose or resolution.status != "verified":
            detail = f" ({resolution.detail})" if resolution.detail else ""
            print(f"  {resolution.status:17} {resolution.owner_id} {resolution.kind} {resolution.target}{detail}")
    print(f"Resolved {len(snapshot.resolutions)} anchor(s): {dict(sorted(counts.items()))}")


def cmd_query(args):
    """Handle query command - ranked paths from a seed."""
    from core.traversal import encode_result

    config = _load(args)
    pipeline = _pipeline(config)
    engine = pipeline.store.current().query_engine(config.validation.extra_relation_kinds)

    result = engine.query(
        args.seed,
        hop_bound=args.hops if args.hops is not None else config.query.hop_bound,
        limit=args.limit if args.limit is not None else config.query.limit,
        top_k=args.top_k if args.top_k is not None else config.query.top_k,
    )

    if args.json:
        print(msgspec.json.format(encode_result(result), indent=2).decode("utf-8"))
        return

    print(f"{result.mode} query {result.query!r}; seeds: {', '.join(result.seeds) or '(none)'}")
    if not result.paths:
        print("No anchored node within the hop bound")
    for rank, path in enumerate(result.paths, start=1):
        print(f"{rank:3}. {' -> '.join(path.node_ids)}  score={path.score} hops={path.hops}")
        for anchor in path.anchors:
            status = f" [{anchor.status}]" if anchor.status else ""
            print(f"       {anchor.kind}: {anchor.target}{status}")


def cmd_diff(args):
    """Handle diff command - changelog between a snapshot file and a document."""
    from core.merge import MergeEngine
    from domain.graph_builder import build_graph
    from infrastructure.snapshot_store import decode_snapshot

    _load(args)
    old = decode_snapshot(Path(args.old_snapshot).read_bytes())
    text = Path(args.document).read_text(encoding="utf-8")
    build = build_graph(text, source=args.document)
    _print_findings(build.findings)

    result = MergeEngine().merge(old.db, build.db)
    _print_changelog(result.changelog)
    _print_findings(result.integrity_findings)


def cmd_render(args):
    """Handle render command - live snapshot back to a document."""
    from domain.document_writer import render_document

    config = _load(args)
    pipeline = _pipeline(config)
    snapshot = pipeline.store.current()
    text = render_document(snapshot.db, opaque=snapshot.opaque, title=args.title)

    if args.output:
        Path(args.output).write_text(text, encoding="utf-8")
        print(f"Rendered {snapshot.db.node_count} nodes to {args.output}")
    else:
        sys.stdout.write(text)


def cmd_export(args):
    """Handle export command - node/relation tables via Polars."""
    config = _load(args)
    pipeline = _pipeline(config)
    db = pipeline.store.current().db

    output_dir = Path(args.output)
    output_dir.mkdir(parents=True, exist_ok=True)
    nodes_path = output_dir / f"nodes.{args.format}"
    relations_path = output_dir / f"relations.{args.format}"

    nodes, relations = db.to_polars_nodes(), db.to_polars_relations()
    if args.format == "parquet":
        nodes.write_parquet(nodes_path)
        relations.write_parquet(relations_path)
    else:
        nodes.write_csv(nodes_path)
        relations.write_csv(relations_path)

    print(f"Exported {nodes.height} nodes, {relations.height} relations")
    print(f"  Nodes: {nodes_path}")
    print(f"  Relations: {relations_path}")


# =============================================================================
# ARGUMENT PARSING
# =============================================================================

def build_parser():
    import argparse

    parser = argparse.ArgumentParser(
        description="Atlas - Repository Knowledge Graph",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument("--config", help="Path to TOML config")
    parser.add_argument("--repo-root", help="Repository checkout for anchor resolution")
    parser.add_argument("--snapshot", help="Snapshot file")

    subparsers = parser.add_subparsers(dest="command", required=True, help="Available commands")

    ingest_parser = subparsers.add_parser("ingest", help="Ingest a document and publish a snapshot")
    ingest_parser.add_argument("document", help="Markdown document with fenced YAML/JSON blocks")
    ingest_parser.add_argument("--no-resolve", action="store_true", help="Skip anchor resolution")
    ingest_parser.set_defaults(func=cmd_ingest)

    validate_parser = subparsers.add_parser("validate", help="Validate a document")
    validate_parser.add_argument("document", help="Markdown document")
    validate_parser.set_defaults(func=cmd_validate)

    resolve_parser = subparsers.add_parser("resolve", help="Re-check anchors of the live snapshot")
    resolve_parser.add_argument("--verbose", "-v", action="store_true", help="List verified anchors too")
    resolve_parser.set_defaults(func=cmd_resolve)

    query_parser = subparsers.add_parser("query", help="Ranked paths from a node id or task text")
    query_parser.add_argument("seed", help="Node id or free-text task description")
    query_parser.add_argument("--hops", type=int, help="Hop bound")
    query_parser.add_argument("--limit", type=int, help="Maximum number of paths")
    query_parser.add_argument("--top-k", type=int, help="Seeds taken from a text query")
    query_parser.add_argument("--json", action="store_true", help="Print the result as JSON")
    query_parser.set_defaults(func=cmd_query)

    diff_parser = subparsers.add_parser("diff", help="Changelog between a snapshot and a document")
    diff_parser.add_argument("old_snapshot", help="Persisted snapshot JSON")
    diff_parser.add_argument("document", help="Markdown document")
    diff_parser.set_defaults(func=cmd_diff)

    render_parser = subparsers.add_parser("render", help="Render the live snapshot as a document")
    render_parser.add_argument("--output", "-o", help="Write to a file instead of stdout")
    render_parser.add_argument("--title", help="Document heading")
    render_parser.set_defaults(func=cmd_render)

    export_parser = subparsers.add_parser("export", help="Export graph tables to files")
    export_parser.add_argument("--output", "-o", default="./export", help="Output directory")
    export_parser.add_argument("--format", choices=["parquet", "csv"], default="parquet")
    export_parser.set_defaults(func=cmd_export)

    return parser


def main(argv: Optional[List[str]] = None):
    """Main entry point with subcommands."""
    args = build_parser().parse_args(argv)
    args.func(args)


if __name__ == "__main__":
    main()
