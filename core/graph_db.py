"""
ATLAS GRAPH DATABASE - The Rust-Accelerated Index

Bridges the document's string identifiers with rustworkx's integer indices:
- O(1) node lookup by id
- O(degree) incoming/outgoing relation enumeration
- Relations keyed by their own id (several relations may join the same pair)

Architecture (The Bridge Pattern):
  Python Layer (Business Logic)
  - Uses document ids: "CMP-parser", "REL-12"
  - Calls: db.add_node(node), db.get_outgoing("CMP-parser")

  Bridge Layer (This File)
  - _node_map: Dict[str, int]   (node id -> index)
  - _inv_map: Dict[int, str]    (index -> node id)
  - _edge_map: Dict[str, int]   (relation id -> edge index)

  Rust Layer (rustworkx.PyDiGraph, multigraph)

Closed-world handling: a relation whose endpoint is missing is stored as
DETACHED (kept in the relation table, not linked into the rustworkx graph)
so the validator can report it instead of the build failing on the first
dangling edge. Pass strict=True to reject such relations outright.
"""
import rustworkx as rx
from typing import Dict, Iterator, List, Optional, Tuple
import polars as pl

from core.errors import DuplicateIdError, NodeNotFoundError, RelationNotFoundError
from core.ontology import NodeKind
from core.schemas import Node, RelationData


class AtlasDB:
    """
    In-memory typed graph backed by rustworkx.

    All public methods accept/return document ids; translation to and from
    integer indices happens internally.

    Usage:
        db = AtlasDB()
        db.add_node(ComponentNode(id="CMP-a", title="Parser"))
        db.add_node(ComponentNode(id="CMP-b", title="Lexer"))
        db.add_relation(RelationData(id="REL-1", source="CMP-a", target="CMP-b", kind="calls"))

        db.get_outgoing("CMP-a")   # [RelationData(id="REL-1", ...)]

    Thread Safety:
        NOT thread-safe for writers. A validated graph is treated as an
        immutable value: readers share it freely, and changes go through the
        merge engine, which builds a new instance.
    """

    def __init__(self):
        self._graph: rx.PyDiGraph = rx.PyDiGraph(multigraph=True)

        # The Bridge: bidirectional id <-> index mapping
        self._node_map: Dict[str, int] = {}
        self._inv_map: Dict[int, str] = {}

        # Every relation, attached or detached, by relation id
        self._relations: Dict[str, RelationData] = {}
        # Attached relations only: relation id -> rustworkx edge index
        self._edge_map: Dict[str, int] = {}

    # =========================================================================
    # PROPERTIES
    # =========================================================================

    @property
    def node_count(self) -> int:
        return self._graph.num_nodes()

    @property
    def relation_count(self) -> int:
        """Number of relations, detached ones included."""
        return len(self._relations)

    @property
    def is_empty(self) -> bool:
        return self.node_count == 0

    # =========================================================================
    # NODE OPERATIONS
    # =========================================================================

    def add_node(self, node: Node) -> int:
        """
        Add a node to the graph.

        Returns:
            The rustworkx index of the new node

        Raises:
            DuplicateIdError: If the id exists (names both provenances)
        """
        if node.id in self._node_map:
            existing = self._graph[self._node_map[node.id]]
            raise DuplicateIdError(node.id, existing.provenance, node.provenance)

        idx = self._graph.add_node(node)
        self._node_map[node.id] = idx
        self._inv_map[idx] = node.id
        return idx

    def add_nodes_batch(self, nodes: List[Node]) -> List[int]:
        """
        Add several nodes in a single Rust call.

        The whole batch is checked for duplicates first, so a rejected
        batch leaves the graph untouched.

        Raises:
            DuplicateIdError: On the first duplicate id (in graph or batch)
        """
        if not nodes:
            return []

        seen: Dict[str, Node] = {}
        for node in nodes:
            if node.id in self._node_map:
                existing = self._graph[self._node_map[node.id]]
                raise DuplicateIdError(node.id, existing.provenance, node.provenance)
            if node.id in seen:
                raise DuplicateIdError(node.id, seen[node.id].provenance, node.provenance)
            seen[node.id] = node

        indices = self._graph.add_nodes_from(nodes)
        for node, idx in zip(nodes, indices):
            self._node_map[node.id] = idx
            self._inv_map[idx] = node.id
        return list(indices)

    def get_node(self, node_id: str) -> Node:
        """
        Retrieve a node by id.

        Raises:
            NodeNotFoundError: If the node doesn't exist
        """
        if node_id not in self._node_map:
            raise NodeNotFoundError(node_id)
        return self._graph[self._node_map[node_id]]

    def has_node(self, node_id: str) -> bool:
        return node_id in self._node_map

    def iter_nodes(self) -> Iterator[Node]:
        """Iterate over nodes in id order."""
        for node_id in sorted(self._node_map):
            yield self._graph[self._node_map[node_id]]

    def get_all_nodes(self) -> List[Node]:
        """All nodes, sorted by id."""
        return list(self.iter_nodes())

    def node_ids(self) -> List[str]:
        return sorted(self._node_map)

    def get_nodes_by_kind(self, kind: NodeKind) -> List[Node]:
        """All nodes of one kind, sorted by id."""
        return [n for n in self.iter_nodes() if n.node_kind == kind]

    # =========================================================================
    # RELATION OPERATIONS
    # =========================================================================

    def add_relation(self, relation: RelationData, strict: bool = False) -> Optional[int]:
        """
        Add a relation.

        Args:
            relation: The relation payload
            strict: If True, reject relations with a missing endpoint instead
                    of storing them detached.

        Returns:
            The rustworkx edge index, or None when stored detached

        Raises:
            DuplicateIdError: If the relation id exists
            NodeNotFoundError: If strict and an endpoint is missing
        """
        if relation.id in self._relations:
            existing = self._relations[relation.id]
            raise DuplicateIdError(relation.id, existing.provenance, relation.provenance)

        missing = [
            node_id for node_id in (relation.source, relation.target)
            if node_id not in self._node_map
        ]
        if missing and strict:
            raise NodeNotFoundError(missing[0])

        self._relations[relation.id] = relation
        if missing:
            return None

        edge_idx = self._graph.add_edge(
            self._node_map[relation.source],
            self._node_map[relation.target],
            relation,
        )
        self._edge_map[relation.id] = edge_idx
        return edge_idx

    def add_relations_batch(self, relations: List[RelationData], strict: bool = False) -> List[Optional[int]]:
        """Add several relations; see add_relation for semantics."""
        return [self.add_relation(r, strict=strict) for r in relations]

    def get_relation(self, relation_id: str) -> RelationData:
        """
        Retrieve a relation by id (attached or detached).

        Raises:
            RelationNotFoundError: If the relation doesn't exist
        """
        if relation_id not in self._relations:
            raise RelationNotFoundError(relation_id)
        return self._relations[relation_id]

    def has_relation(self, relation_id: str) -> bool:
        return relation_id in self._relations

    def is_attached(self, relation_id: str) -> bool:
        """True if both endpoints of the relation are live nodes."""
        return relation_id in self._edge_map

    def get_all_relations(self) -> List[RelationData]:
        """All relations, sorted by id."""
        return [self._relations[rid] for rid in sorted(self._relations)]

    def relation_ids(self) -> List[str]:
        return sorted(self._relations)

    def get_detached_relations(self) -> List[RelationData]:
        """Relations with at least one missing endpoint, sorted by id."""
        return [
            self._relations[rid] for rid in sorted(self._relations)
            if rid not in self._edge_map
        ]

    def get_incoming(self, node_id: str) -> List[RelationData]:
        """
        Relations pointing TO a node, sorted by relation id. O(in-degree).

        Raises:
            NodeNotFoundError: If the node doesn't exist
        """
        idx = self._get_index(node_id)
        return sorted(
            (data for _, _, data in self._graph.in_edges(idx)),
            key=lambda r: r.id,
        )

    def get_outgoing(self, node_id: str) -> List[RelationData]:
        """Relations pointing FROM a node, sorted by relation id. O(out-degree)."""
        idx = self._get_index(node_id)
        return sorted(
            (data for _, _, data in self._graph.out_edges(idx)),
            key=lambda r: r.id,
        )

    def get_neighbors(self, node_id: str) -> List[Tuple[RelationData, str]]:
        """
        Relations touching a node in either direction, with the node on the
        other end. Sorted by (other id, relation id) for deterministic walks.
        """
        pairs: List[Tuple[RelationData, str]] = []
        for relation in self.get_outgoing(node_id):
            pairs.append((relation, relation.target))
        for relation in self.get_incoming(node_id):
            if relation.source == relation.target:
                continue  # self-loop already listed as outgoing
            pairs.append((relation, relation.source))
        pairs.sort(key=lambda p: (p[1], p[0].id))
        return pairs

    def referencing_relations(self, node_id: str) -> List[str]:
        """Ids of every relation (attached or detached) naming this node."""
        return sorted(
            rid for rid, r in self._relations.items()
            if r.source == node_id or r.target == node_id
        )

    def in_degree(self, node_id: str) -> int:
        return self._graph.in_degree(self._get_index(node_id))

    def out_degree(self, node_id: str) -> int:
        return self._graph.out_degree(self._get_index(node_id))

    # =========================================================================
    # STRUCTURAL EQUALITY
    # =========================================================================

    def structural_key(self) -> Tuple[Tuple[Tuple[str, bytes], ...], Tuple[Tuple[str, bytes], ...]]:
        """
        Canonical, hashable form of the graph's content.

        Provenance and stale flags are excluded, so two graphs extracted from
        documents that differ only in prose or block placement compare equal.
        """
        nodes = tuple((n.id, n.content_key()) for n in self.iter_nodes())
        relations = tuple((r.id, r.content_key()) for r in self.get_all_relations())
        return nodes, relations

    def content_equals(self, other: "AtlasDB") -> bool:
        if self.node_count != other.node_count or self.relation_count != other.relation_count:
            return False
        return self.structural_key() == other.structural_key()

    # =========================================================================
    # EXPORT (Polars)
    # =========================================================================

    def to_polars_nodes(self) -> pl.DataFrame:
        """Export nodes to a Polars DataFrame (one row per node)."""
        nodes = self.get_all_nodes()
        return pl.DataFrame(
            {
                "id": [n.id for n in nodes],
                "kind": [n.node_kind.value for n in nodes],
                "title": [n.title for n in nodes],
                "anchor_count": [len(n.located_anchors()) for n in nodes],
                "in_degree": [self.in_degree(n.id) for n in nodes],
                "out_degree": [self.out_degree(n.id) for n in nodes],
                "stale": [n.stale for n in nodes],
            },
            schema={
                "id": pl.Utf8,
                "kind": pl.Utf8,
                "title": pl.Utf8,
                "anchor_count": pl.Int64,
                "in_degree": pl.Int64,
                "out_degree": pl.Int64,
                "stale": pl.Boolean,
            },
        )

    def to_polars_relations(self) -> pl.DataFrame:
        """Export relations to a Polars DataFrame (one row per relation)."""
        relations = self.get_all_relations()
        return pl.DataFrame(
            {
                "id": [r.id for r in relations],
                "from": [r.source for r in relations],
                "to": [r.target for r in relations],
                "kind": [r.kind for r in relations],
                "ref_count": [len(r.refs) for r in relations],
                "attached": [self.is_attached(r.id) for r in relations],
            },
            schema={
                "id": pl.Utf8,
                "from": pl.Utf8,
                "to": pl.Utf8,
                "kind": pl.Utf8,
                "ref_count": pl.Int64,
                "attached": pl.Boolean,
            },
        )

    # =========================================================================
    # INTERNAL UTILITIES
    # =========================================================================

    def _get_index(self, node_id: str) -> int:
        if node_id not in self._node_map:
            raise NodeNotFoundError(node_id)
        return self._node_map[node_id]

    def __len__(self) -> int:
        return self.node_count

    def __contains__(self, node_id: str) -> bool:
        return node_id in self._node_map

    def __repr__(self) -> str:
        return f"AtlasDB(nodes={self.node_count}, relations={self.relation_count})"


# =============================================================================
# FACTORY FUNCTIONS
# =============================================================================

def create_db(nodes: List[Node], relations: Optional[List[RelationData]] = None) -> AtlasDB:
    """
    Create an AtlasDB pre-populated with nodes and relations.

    Nodes are inserted in id order so the resulting index layout does not
    depend on input order.
    """
    db = AtlasDB()
    db.add_nodes_batch(sorted(nodes, key=lambda n: n.id))
    if relations:
        db.add_relations_batch(sorted(relations, key=lambda r: r.id))
    return db
