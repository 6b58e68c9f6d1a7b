"""
Unit tests for domain/document_writer.py - rendering a graph back to a document.
"""
import msgspec

from core.graph_db import create_db
from core.merge import merge_graphs
from core.schemas import Anchor, ComponentNode, RelationData, SourceSpan, SystemNode
from domain.document_writer import node_to_record, relation_to_record, render_document
from domain.graph_builder import build_graph


def test_round_trip_preserves_content(sample_build):
    text = render_document(sample_build.db, opaque=sample_build.opaque)

    rebuilt = build_graph(text, source="rendered.md")

    assert rebuilt.ok
    assert rebuilt.db.content_equals(sample_build.db)
    assert merge_graphs(sample_build.db, rebuilt.db).changelog.is_empty
    assert [(o.key, o.data) for o in rebuilt.opaque] == [(o.key, o.data) for o in sample_build.opaque]


def test_rendering_is_stable(sample_build):
    text = render_document(sample_build.db, opaque=sample_build.opaque)
    again = render_document(build_graph(text).db, opaque=sample_build.opaque)

    assert text == again


def test_heading_defaults_to_system_title(sample_build):
    assert render_document(sample_build.db).startswith("# Toy compiler\n")
    assert render_document(sample_build.db, title="Atlas").startswith("# Atlas\n")


def test_node_record_drops_defaults_and_bookkeeping():
    node = ComponentNode(id="CMP-a", title="A", provenance=SourceSpan(line=3), stale=True,
                         anchors=[Anchor(kind="file", target="src/a.py")])

    record = node_to_record(node)

    assert record == {"id": "CMP-a", "title": "A", "anchors": [{"kind": "file", "target": "src/a.py"}]}
    assert list(record)[:2] == ["id", "title"]


def test_relation_record_uses_document_keys():
    relation = RelationData(id="REL-1", source="CMP-a", target="CMP-b", kind="calls", note="n")

    record = relation_to_record(relation)

    assert list(record) == ["id", "from", "to", "kind", "note"]


def test_stale_nodes_can_be_left_out():
    db = create_db([SystemNode(id="SYS-a"), ComponentNode(id="CMP-old", stale=True), ComponentNode(id="CMP-new")])

    assert "CMP-old" in render_document(db)
    assert "CMP-old" not in render_document(db, include_stale=False)


def test_multiple_systems_use_plural_key():
    db = create_db([SystemNode(id="SYS-a"), SystemNode(id="SYS-b")])

    text = render_document(db)

    assert "systems:" in text
    assert build_graph(text).db.node_ids() == ["SYS-a", "SYS-b"]


def test_relation_refs_survive(sample_build):
    text = render_document(sample_build.db)
    relation = build_graph(text).db.get_relation("REL-2")

    assert msgspec.to_builtins(relation.refs) == [{"kind": "code", "target": "src/cli.py#main", "why": ""}]


def test_backtick_lines_in_values_get_a_longer_fence():
    purpose = "Example:\n```\nrun it\n```\ndone"
    db = create_db([SystemNode(id="SYS-a"), ComponentNode(id="CMP-a", purpose=purpose)])

    text = render_document(db)
    rebuilt = build_graph(text)

    assert "````yaml\n" in text
    assert rebuilt.ok
    assert rebuilt.db.get_node("CMP-a").purpose == purpose
    assert merge_graphs(db, rebuilt.db).changelog.is_empty
