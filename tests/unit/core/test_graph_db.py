"""
Unit tests for core/graph_db.py - AtlasDB

Tests the typed graph including:
- Node insertion, lookup and duplicate rejection
- Relation insertion, detached relations, strict mode
- Incoming/outgoing/neighbour enumeration order
- Structural equality
- Polars export
"""
import pytest
import polars as pl

from core.errors import DuplicateIdError, NodeNotFoundError, RelationNotFoundError
from core.graph_db import AtlasDB, create_db
from core.ontology import NodeKind
from core.schemas import Anchor, ComponentNode, InvariantNode, RelationData, SourceSpan, SystemNode


# =============================================================================
# NODE OPERATIONS TESTS
# =============================================================================

def test_add_node_creates_node(fresh_db):
    node = ComponentNode(id="CMP-a", title="Parser")

    fresh_db.add_node(node)

    assert fresh_db.node_count == 1
    assert fresh_db.has_node("CMP-a")
    assert "CMP-a" in fresh_db
    assert fresh_db.get_node("CMP-a").title == "Parser"


def test_add_node_duplicate_names_both_locations(fresh_db):
    """
    Validate that a duplicate id is rejected, not merged.

    Verifies:
    - DuplicateIdError is raised
    - The message names both provenance locations
    - The first node is untouched
    """
    first = ComponentNode(id="CMP-a", title="First",
                          provenance=SourceSpan(source="a.md", start=10, end=40, line=3))
    second = ComponentNode(id="CMP-a", title="Second",
                           provenance=SourceSpan(source="a.md", start=90, end=120, line=12))
    fresh_db.add_node(first)

    with pytest.raises(DuplicateIdError) as exc_info:
        fresh_db.add_node(second)

    message = str(exc_info.value)
    assert "CMP-a" in message
    assert "a.md:3" in message
    assert "a.md:12" in message
    assert fresh_db.node_count == 1
    assert fresh_db.get_node("CMP-a").title == "First"


def test_ids_are_unique_across_kinds(fresh_db):
    fresh_db.add_node(ComponentNode(id="X-1"))
    with pytest.raises(DuplicateIdError):
        fresh_db.add_node(InvariantNode(id="X-1"))


def test_get_node_missing_raises(fresh_db):
    with pytest.raises(NodeNotFoundError) as exc_info:
        fresh_db.get_node("CMP-nope")
    assert exc_info.value.node_id == "CMP-nope"


def test_add_nodes_batch_rejects_whole_batch_on_duplicate(fresh_db):
    nodes = [ComponentNode(id="CMP-a"), ComponentNode(id="CMP-b"), ComponentNode(id="CMP-a")]

    with pytest.raises(DuplicateIdError):
        fresh_db.add_nodes_batch(nodes)

    assert fresh_db.is_empty


def test_iteration_is_sorted_by_id(fresh_db):
    for node_id in ["CMP-c", "CMP-a", "CMP-b"]:
        fresh_db.add_node(ComponentNode(id=node_id))

    assert fresh_db.node_ids() == ["CMP-a", "CMP-b", "CMP-c"]
    assert [n.id for n in fresh_db.get_all_nodes()] == ["CMP-a", "CMP-b", "CMP-c"]


def test_get_nodes_by_kind(fresh_db):
    fresh_db.add_node(SystemNode(id="SYS-1"))
    fresh_db.add_node(ComponentNode(id="CMP-a"))

    assert [n.id for n in fresh_db.get_nodes_by_kind(NodeKind.SYSTEM)] == ["SYS-1"]
    assert [n.id for n in fresh_db.get_nodes_by_kind(NodeKind.COMPONENT)] == ["CMP-a"]
    assert fresh_db.get_nodes_by_kind(NodeKind.FLOW) == []


# =============================================================================
# RELATION OPERATIONS TESTS
# =============================================================================

def test_add_relation_links_nodes(make_db):
    db = make_db(["CMP-a", "CMP-b"], [("REL-1", "CMP-a", "CMP-b", "calls")])

    assert db.is_attached("REL-1")
    assert [r.id for r in db.get_outgoing("CMP-a")] == ["REL-1"]
    assert [r.id for r in db.get_incoming("CMP-b")] == ["REL-1"]
    assert db.out_degree("CMP-a") == 1
    assert db.in_degree("CMP-b") == 1


def test_multiple_relations_between_same_pair(make_db):
    db = make_db(["CMP-a", "CMP-b"], [
        ("REL-2", "CMP-a", "CMP-b", "reads"),
        ("REL-1", "CMP-a", "CMP-b", "calls"),
    ])

    assert [r.id for r in db.get_outgoing("CMP-a")] == ["REL-1", "REL-2"]


def test_dangling_relation_is_stored_detached(fresh_db):
    fresh_db.add_node(ComponentNode(id="CMP-a"))

    result = fresh_db.add_relation(RelationData(id="REL-1", source="CMP-a", target="CMP-missing", kind="calls"))

    assert result is None
    assert fresh_db.has_relation("REL-1")
    assert not fresh_db.is_attached("REL-1")
    assert [r.id for r in fresh_db.get_detached_relations()] == ["REL-1"]
    assert fresh_db.get_outgoing("CMP-a") == []
    assert fresh_db.referencing_relations("CMP-missing") == ["REL-1"]


def test_strict_relation_rejects_missing_endpoint(fresh_db):
    fresh_db.add_node(ComponentNode(id="CMP-a"))

    with pytest.raises(NodeNotFoundError):
        fresh_db.add_relation(RelationData(id="REL-1", source="CMP-a", target="CMP-x", kind="calls"),
                              strict=True)

    assert not fresh_db.has_relation("REL-1")


def test_duplicate_relation_id_rejected(make_db):
    db = make_db(["CMP-a", "CMP-b"], [("REL-1", "CMP-a", "CMP-b", "calls")])

    with pytest.raises(DuplicateIdError):
        db.add_relation(RelationData(id="REL-1", source="CMP-b", target="CMP-a", kind="uses"))


def test_get_relation_missing_raises(fresh_db):
    with pytest.raises(RelationNotFoundError):
        fresh_db.get_relation("REL-404")


def test_neighbors_cover_both_directions_in_sorted_order(make_db):
    db = make_db(["CMP-a", "CMP-b", "CMP-c"], [
        ("REL-1", "CMP-b", "CMP-a", "calls"),
        ("REL-2", "CMP-a", "CMP-c", "uses"),
        ("REL-3", "CMP-a", "CMP-a", "calls"),
    ])

    pairs = [(r.id, other) for r, other in db.get_neighbors("CMP-a")]

    assert pairs == [("REL-3", "CMP-a"), ("REL-1", "CMP-b"), ("REL-2", "CMP-c")]


# =============================================================================
# STRUCTURAL EQUALITY TESTS
# =============================================================================

def test_content_equality_ignores_provenance_and_stale():
    a = create_db([ComponentNode(id="CMP-a", title="A", provenance=SourceSpan(line=1))])
    b = create_db([ComponentNode(id="CMP-a", title="A", provenance=SourceSpan(line=99), stale=True)])

    assert a.content_equals(b)


def test_content_equality_sees_anchor_changes():
    a = create_db([ComponentNode(id="CMP-a", anchors=[Anchor(kind="file", target="a.py")])])
    b = create_db([ComponentNode(id="CMP-a", anchors=[Anchor(kind="file", target="b.py")])])

    assert not a.content_equals(b)


def test_create_db_is_order_independent():
    nodes = [ComponentNode(id="CMP-b"), ComponentNode(id="CMP-a")]
    assert create_db(nodes).structural_key() == create_db(list(reversed(nodes))).structural_key()


# =============================================================================
# EXPORT TESTS
# =============================================================================

def test_polars_export(make_db):
    db = make_db(["CMP-a", "CMP-b"], [
        ("REL-1", "CMP-a", "CMP-b", "calls", True),
        ("REL-2", "CMP-a", "CMP-gone", "calls"),
    ], anchored={"CMP-b"})

    nodes = db.to_polars_nodes()
    relations = db.to_polars_relations()

    assert isinstance(nodes, pl.DataFrame)
    assert nodes.height == 3
    assert nodes.filter(pl.col("id") == "CMP-b")["anchor_count"].to_list() == [1]
    assert nodes.filter(pl.col("id") == "CMP-a")["out_degree"].to_list() == [1]
    assert relations["attached"].to_list() == [True, False]
    assert relations["ref_count"].to_list() == [1, 0]


def test_repr():
    assert repr(AtlasDB()) == "AtlasDB(nodes=0, relations=0)"
