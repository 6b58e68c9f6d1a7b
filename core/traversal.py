"""
ATLAS TRAVERSAL - From a task to the code that matters.

Two query modes:
1. Node id: breadth-first search over relations in both directions, up to
   a hop bound (default 4).
2. Free text: keyword overlap ranks every node, the top-K become seeds, a
   BFS runs per seed and the result sets are merged by best score.

Scoring:
    edge weight  = 1.0 if the relation has refs, 0.5 if bare
                   x 0.8 if the relation kind is not in the vocabulary
    path weight  = product of edge weights along the path
    score        = path weight / (hops + 1)

A node is reached at its shortest hop distance; among equally short paths
the heaviest wins, then the lexicographically smallest path. Only nodes
that carry at least one anchor are returned, ordered by score desc, hops
asc, id asc. Neighbours are always visited in sorted order, so identical
input against an identical graph gives byte-identical output.
"""
import re
from dataclasses import dataclass
from typing import Dict, FrozenSet, Iterable, List, Mapping, Optional, Tuple

import msgspec

from core.graph_db import AtlasDB
from core.ontology import (
    BARE_EDGE_WEIGHT,
    DEFAULT_HOP_BOUND,
    DEFAULT_TOP_K,
    LOW_CONFIDENCE_FACTOR,
    REFERENCED_EDGE_WEIGHT,
    is_known_relation_kind,
)
from core.schemas import Node, RelationData, Resolution


_TOKEN_RE = re.compile(r"[a-z0-9_]+")

STOPWORDS: FrozenSet[str] = frozenset({
    "a", "an", "and", "are", "as", "at", "be", "by", "do", "does", "for",
    "from", "how", "i", "in", "into", "is", "it", "its", "of", "on", "or",
    "that", "the", "this", "to", "was", "what", "when", "where", "which",
    "who", "why", "with",
})

SCORE_PRECISION = 6


# =============================================================================
# RESULT TYPES
# =============================================================================

class AnnotatedAnchor(msgspec.Struct, kw_only=True, frozen=True):
    """An anchor of a result node, with its resolution status if known."""
    kind: str
    target: str
    why: str = ""
    slot: str = ""
    status: Optional[str] = None


class QueryPath(msgspec.Struct, kw_only=True, frozen=True):
    """One ranked result: a walk from a seed to an anchored node."""
    seed_id: str
    node_ids: List[str]
    relation_ids: List[str]
    hops: int
    score: float
    anchors: List[AnnotatedAnchor]

    @property
    def node_id(self) -> str:
        return self.node_ids[-1]


class QueryResult(msgspec.Struct, kw_only=True, frozen=True):
    query: str
    mode: str                  # "node" or "text"
    seeds: List[str]
    paths: List[QueryPath]

    @property
    def node_ids(self) -> List[str]:
        return [p.node_id for p in self.paths]


_result_encoder = msgspec.json.Encoder(order="deterministic")


def encode_result(result: QueryResult) -> bytes:
    """Stable JSON form of a query result."""
    return _result_encoder.encode(result)


@dataclass(frozen=True)
class _Reach:
    weight: float
    nodes: Tuple[str, ...]
    relations: Tuple[str, ...]

    @property
    def hops(self) -> int:
        return len(self.relations)

    def beats(self, other: "_Reach") -> bool:
        if self.weight != other.weight:
            return self.weight > other.weight
        return (self.nodes, self.relations) < (other.nodes, other.relations)


# =============================================================================
# QUERY ENGINE
# =============================================================================

class QueryEngine:
    """
    Read-only ranked search over a validated graph.

    Usage:
        engine = QueryEngine(snapshot.db, resolutions=snapshot.resolutions)
        result = engine.query("CMP-parser")
        result = engine.query("why does the lexer reject tabs", top_k=3)
        for path in result.paths:
            print(path.node_ids, path.score, [a.target for a in path.anchors])
    """

    def __init__(self, db: AtlasDB, resolutions: Optional[Mapping[str, Resolution]] = None,
                 extra_relation_kinds: Optional[Iterable[str]] = None):
        self.db = db
        self.resolutions = resolutions or {}
        self.extra_relation_kinds: FrozenSet[str] = frozenset(extra_relation_kinds or ())

    def query(self, seed: str, hop_bound: int = DEFAULT_HOP_BOUND,
              limit: Optional[int] = None, top_k: int = DEFAULT_TOP_K) -> QueryResult:
        """Node-id mode if `seed` names a node, free-text mode otherwise."""
        if self.db.has_node(seed):
            return self.query_node(seed, hop_bound=hop_bound, limit=limit)
        return self.query_text(seed, hop_bound=hop_bound, limit=limit, top_k=top_k)

    def query_node(self, node_id: str, hop_bound: int = DEFAULT_HOP_BOUND,
                   limit: Optional[int] = None) -> QueryResult:
        """
        Raises:
            NodeNotFoundError: If node_id is not in the graph
            ValueError: If hop_bound is negative
        """
        self.db.get_node(node_id)
        paths = self._paths_from(node_id, hop_bound)
        return QueryResult(query=node_id, mode="node", seeds=[node_id], paths=_limit(paths, limit))

    def query_text(self, text: str, hop_bound: int = DEFAULT_HOP_BOUND,
                   limit: Optional[int] = None, top_k: int = DEFAULT_TOP_K) -> QueryResult:
        seeds = [node_id for node_id, _ in self.rank_seeds(text)[:max(top_k, 0)]]

        best: Dict[str, QueryPath] = {}
        for seed in seeds:
            for path in self._paths_from(seed, hop_bound):
                current = best.get(path.node_id)
                if current is None or _rank_key(path) < _rank_key(current):
                    best[path.node_id] = path

        paths = sorted(best.values(), key=_rank_key)
        return QueryResult(query=text, mode="text", seeds=seeds, paths=_limit(paths, limit))

    # =========================================================================
    # SEEDING
    # =========================================================================

    def rank_seeds(self, text: str) -> List[Tuple[str, int]]:
        """
        Rank nodes by term-frequency overlap with the query keywords.

        Returns:
            (node_id, score) pairs with score > 0, best first, ties by id
        """
        terms = set(tokenize(text))
        if not terms:
            return []

        ranked = []
        for node in self.db.iter_nodes():
            counts: Dict[str, int] = {}
            for token in self._node_tokens(node):
                if token in terms:
                    counts[token] = counts.get(token, 0) + 1
            score = sum(counts.values())
            if score > 0:
                ranked.append((node.id, score))
        ranked.sort(key=lambda pair: (-pair[1], pair[0]))
        return ranked

    def _node_tokens(self, node: Node) -> List[str]:
        texts = list(node.text_fields())
        texts += [relation.note for relation, _ in self.db.get_neighbors(node.id)]
        tokens: List[str] = []
        for text in texts:
            tokens += tokenize(text)
        return tokens

    # =========================================================================
    # BOUNDED BFS
    # =========================================================================

    def edge_weight(self, relation: RelationData) -> float:
        weight = REFERENCED_EDGE_WEIGHT if relation.has_refs else BARE_EDGE_WEIGHT
        if not is_known_relation_kind(relation.kind, self.extra_relation_kinds):
            weight *= LOW_CONFIDENCE_FACTOR
        return weight

    def reach(self, seed: str, hop_bound: int = DEFAULT_HOP_BOUND) -> Dict[str, _Reach]:
        """Shortest, heaviest walk from seed to every node within hop_bound."""
        if hop_bound < 0:
            raise ValueError(f"hop_bound must be >= 0, got {hop_bound}")

        best: Dict[str, _Reach] = {seed: _Reach(weight=1.0, nodes=(seed,), relations=())}
        frontier = [seed]

        for _ in range(hop_bound):
            layer: Dict[str, _Reach] = {}
            for node_id in frontier:
                here = best[node_id]
                for relation, other in self.db.get_neighbors(node_id):
                    if other in best:
                        continue
                    candidate = _Reach(
                        weight=here.weight * self.edge_weight(relation),
                        nodes=here.nodes + (other,),
                        relations=here.relations + (relation.id,),
                    )
                    current = layer.get(other)
                    if current is None or candidate.beats(current):
                        layer[other] = candidate
            if not layer:
                break
            best.update(layer)
            frontier = sorted(layer)
        return best

    def _paths_from(self, seed: str, hop_bound: int) -> List[QueryPath]:
        paths = []
        for node_id, reach in self.reach(seed, hop_bound).items():
            node = self.db.get_node(node_id)
            if not node.has_anchors():
                continue
            paths.append(QueryPath(
                seed_id=seed,
                node_ids=list(reach.nodes),
                relation_ids=list(reach.relations),
                hops=reach.hops,
                score=round(reach.weight / (reach.hops + 1), SCORE_PRECISION),
                anchors=self._annotate(node),
            ))
        paths.sort(key=_rank_key)
        return paths

    def _annotate(self, node: Node) -> List[AnnotatedAnchor]:
        annotated = []
        for la in node.located_anchors():
            resolution = self.resolutions.get(la.key)
            annotated.append(AnnotatedAnchor(
                kind=la.anchor.kind,
                target=la.anchor.target,
                why=la.anchor.why,
                slot=la.slot,
                status=resolution.status if resolution is not None else None,
            ))
        return annotated


# =============================================================================
# HELPERS
# =============================================================================

def tokenize(text: str) -> List[str]:
    """Lower-case word tokens with stop words removed."""
    return [t for t in _TOKEN_RE.findall((text or "").lower()) if t not in STOPWORDS]


def _rank_key(path: QueryPath) -> Tuple[float, int, str, Tuple[str, ...]]:
    return (-path.score, path.hops, path.node_id, tuple(path.node_ids))


def _limit(paths: List[QueryPath], limit: Optional[int]) -> List[QueryPath]:
    return paths if limit is None else paths[:max(limit, 0)]
