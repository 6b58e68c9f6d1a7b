"""
Unit tests for core/traversal.py - QueryEngine

Tests:
- Node-id mode BFS (both directions, hop bound, weights, ordering)
- Free-text seeding and merging
- Resolution status annotation
- Determinism
"""
import pytest

from core.errors import NodeNotFoundError
from core.schemas import Resolution, anchor_key, Anchor
from core.traversal import QueryEngine, encode_result, tokenize


# =============================================================================
# NODE-ID MODE
# =============================================================================

def test_query_reaches_anchored_neighbor(make_db):
    db = make_db(["CMP-a", "CMP-b"], [("REL-1", "CMP-a", "CMP-b", "calls")], anchored={"CMP-b"})

    result = QueryEngine(db).query("CMP-a")

    assert result.mode == "node"
    assert len(result.paths) == 1
    path = result.paths[0]
    assert path.node_ids == ["CMP-a", "CMP-b"]
    assert path.relation_ids == ["REL-1"]
    assert path.hops == 1
    assert path.score == 0.25
    assert [a.target for a in path.anchors] == ["src/CMP-b.py"]


def test_query_without_anchors_is_empty(make_db):
    db = make_db(["CMP-a", "CMP-b"], [("REL-1", "CMP-a", "CMP-b", "calls")])

    assert QueryEngine(db).query("CMP-a").paths == []


def test_query_walks_incoming_relations(make_db):
    db = make_db(["CMP-a", "CMP-b"], [("REL-1", "CMP-a", "CMP-b", "calls")], anchored={"CMP-a"})

    result = QueryEngine(db).query("CMP-b")

    assert [p.node_ids for p in result.paths] == [["CMP-b", "CMP-a"]]


def test_anchored_seed_is_returned_first(make_db):
    db = make_db(["CMP-a", "CMP-b"], [("REL-1", "CMP-a", "CMP-b", "calls", True)],
                 anchored={"CMP-a", "CMP-b"})

    paths = QueryEngine(db).query("CMP-a").paths

    assert [(p.node_id, p.hops, p.score) for p in paths] == [("CMP-a", 0, 1.0), ("CMP-b", 1, 0.5)]


def test_hop_bound(make_db):
    chain = ["CMP-1", "CMP-2", "CMP-3", "CMP-4", "CMP-5", "CMP-6"]
    relations = [(f"REL-{i}", chain[i], chain[i + 1], "calls") for i in range(5)]
    db = make_db(chain, relations, anchored={"CMP-6"})
    engine = QueryEngine(db)

    assert engine.query("CMP-1").paths == []
    assert engine.query("CMP-1", hop_bound=5).paths[0].hops == 5
    assert engine.query("CMP-2").paths[0].node_ids == chain[1:]


def test_referenced_edges_outrank_bare_edges(make_db):
    db = make_db(["CMP-a", "CMP-b", "CMP-c"], [
        ("REL-1", "CMP-a", "CMP-b", "calls"),
        ("REL-2", "CMP-a", "CMP-c", "calls", True),
    ], anchored={"CMP-b", "CMP-c"})

    paths = QueryEngine(db).query("CMP-a").paths

    assert [(p.node_id, p.score) for p in paths] == [("CMP-c", 0.5), ("CMP-b", 0.25)]


def test_unknown_relation_kind_lowers_weight(make_db):
    db = make_db(["CMP-a", "CMP-b", "CMP-c"], [
        ("REL-1", "CMP-a", "CMP-b", "calls", True),
        ("REL-2", "CMP-a", "CMP-c", "teleports", True),
    ], anchored={"CMP-b", "CMP-c"})

    paths = QueryEngine(db).query("CMP-a").paths

    assert [(p.node_id, p.score) for p in paths] == [("CMP-b", 0.5), ("CMP-c", 0.4)]

    relaxed = QueryEngine(db, extra_relation_kinds=["teleports"]).query("CMP-a").paths
    assert [p.score for p in relaxed] == [0.5, 0.5]


def test_ties_break_by_id(make_db):
    db = make_db(["CMP-a", "CMP-c", "CMP-b"], [
        ("REL-1", "CMP-a", "CMP-c", "calls"),
        ("REL-2", "CMP-a", "CMP-b", "calls"),
    ], anchored={"CMP-b", "CMP-c"})

    assert QueryEngine(db).query("CMP-a").node_ids == ["CMP-b", "CMP-c"]


def test_heaviest_shortest_path_wins(make_db):
    db = make_db(["CMP-a", "CMP-b", "CMP-c", "CMP-d"], [
        ("REL-1", "CMP-a", "CMP-b", "calls"),
        ("REL-2", "CMP-a", "CMP-c", "calls", True),
        ("REL-3", "CMP-b", "CMP-d", "calls", True),
        ("REL-4", "CMP-c", "CMP-d", "calls", True),
    ], anchored={"CMP-d"})

    path = QueryEngine(db).query("CMP-a").paths[0]

    assert path.node_ids == ["CMP-a", "CMP-c", "CMP-d"]
    assert path.score == round(1.0 / 3, 6)


def test_limit(make_db):
    db = make_db(["CMP-a", "CMP-b", "CMP-c"], [
        ("REL-1", "CMP-a", "CMP-b", "calls"),
        ("REL-2", "CMP-a", "CMP-c", "calls"),
    ], anchored={"CMP-b", "CMP-c"})

    assert len(QueryEngine(db).query("CMP-a", limit=1).paths) == 1


def test_query_node_missing_raises(make_db):
    db = make_db(["CMP-a"])
    with pytest.raises(NodeNotFoundError):
        QueryEngine(db).query_node("CMP-zzz")


def test_negative_hop_bound_rejected(make_db):
    db = make_db(["CMP-a"])
    with pytest.raises(ValueError):
        QueryEngine(db).query("CMP-a", hop_bound=-1)


# =============================================================================
# FREE-TEXT MODE
# =============================================================================

def test_tokenize_drops_stopwords():
    assert tokenize("Why does the Lexer reject TABS?") == ["lexer", "reject", "tabs"]


def test_text_query_seeds_by_keyword_overlap(sample_build):
    engine = QueryEngine(sample_build.db)

    ranked = engine.rank_seeds("tabs in the lexer")
    result = engine.query("tabs in the lexer", top_k=1)

    assert ranked[0] == ("CMP-lexer", 2)
    assert result.mode == "text"
    assert result.seeds == ["CMP-lexer"]
    assert result.paths[0].node_ids == ["CMP-lexer"]
    assert "INV-no-tabs" in result.node_ids


def test_text_query_merges_seeds_by_best_score(sample_build):
    result = QueryEngine(sample_build.db).query("tabs lexer", top_k=3)

    assert len(result.seeds) == 3
    assert len(result.node_ids) == len(set(result.node_ids))
    # Every seed is anchored, so each appears at score 1.0
    assert [p.score for p in result.paths[:3]] == [1.0, 1.0, 1.0]


def test_text_query_without_matches(sample_build):
    result = QueryEngine(sample_build.db).query("kubernetes helm chart")
    assert result.seeds == []
    assert result.paths == []


# =============================================================================
# ANNOTATION AND DETERMINISM
# =============================================================================

def test_anchors_carry_resolution_status(make_db):
    db = make_db(["CMP-a", "CMP-b"], [("REL-1", "CMP-a", "CMP-b", "calls")], anchored={"CMP-b"})
    anchor = Anchor(kind="file", target="src/CMP-b.py")
    key = anchor_key("CMP-b", "anchors.0", anchor)
    table = {key: Resolution(key=key, owner_id="CMP-b", slot="anchors.0", kind="file",
                             target=anchor.target, status="path_missing")}

    annotated = QueryEngine(db, resolutions=table).query("CMP-a").paths[0].anchors
    bare = QueryEngine(db).query("CMP-a").paths[0].anchors

    assert annotated[0].status == "path_missing"
    assert annotated[0].slot == "anchors.0"
    assert bare[0].status is None


def test_identical_queries_are_byte_identical(sample_build):
    engine = QueryEngine(sample_build.db)

    first = encode_result(engine.query("compile the source file tokens"))
    second = encode_result(QueryEngine(sample_build.db).query("compile the source file tokens"))

    assert first == second
