"""
ATLAS MERGE - Identity-preserving reconciliation across document revisions.

Nodes and relations are matched by id, never by position:

    new only                      -> added
    both, content differs         -> modified
    old only relation             -> removed
    old only node, unreferenced   -> removed
    old only node, referenced by
      a relation of the new graph -> conflicted, retained with stale=True

Content comparison ignores provenance and the stale flag, so moving a
block or re-rendering the document yields an empty changelog.

Anchors have no identity of their own. Anchor-list edits make the owner
`modified`; they are additionally classified (renamed / dropped / added)
for reporting and never cause a conflict.
"""
import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple

import msgspec

from core.anchors import parse_target
from core.errors import MergeConflict
from core.graph_db import AtlasDB, create_db
from core.graph_invariants import SchemaValidator
from core.schemas import Anchor, Finding, Node, RelationData

logger = logging.getLogger(__name__)


# =============================================================================
# CHANGELOG
# =============================================================================

class AnchorChange(msgspec.Struct, kw_only=True, frozen=True):
    """How one anchor of a retained node or relation changed."""
    owner_id: str
    change: str                        # "renamed" | "dropped" | "added"
    kind: str
    old_target: Optional[str] = None
    new_target: Optional[str] = None


class Conflict(msgspec.Struct, kw_only=True, frozen=True):
    """A removed node kept alive because relations still point at it."""
    node_id: str
    referenced_by: List[str]


class Changelog(msgspec.Struct, kw_only=True):
    """Ids per change bucket, each list sorted."""
    added: List[str] = []
    removed: List[str] = []
    modified: List[str] = []
    conflicted: List[str] = []
    conflicts: List[Conflict] = []
    anchor_changes: List[AnchorChange] = []

    @property
    def is_empty(self) -> bool:
        return not (self.added or self.removed or self.modified or self.conflicted)

    def summary(self) -> str:
        return (
            f"{len(self.added)} added, {len(self.removed)} removed, "
            f"{len(self.modified)} modified, {len(self.conflicted)} conflicted"
        )


@dataclass
class MergeResult:
    db: AtlasDB
    changelog: Changelog
    integrity_findings: List[Finding] = field(default_factory=list)
    conflicts: List[MergeConflict] = field(default_factory=list)


# =============================================================================
# MERGE ENGINE
# =============================================================================

class MergeEngine:
    """
    Reconciles a freshly built graph against the previously persisted one.

    Neither input is mutated; the reconciled graph is a new AtlasDB.

    Usage:
        result = MergeEngine().merge(previous.db, build.db)
        print(result.changelog.summary())
        for conflict in result.conflicts:
            print(conflict)
    """

    def merge(self, old: AtlasDB, new: AtlasDB) -> MergeResult:
        changelog = Changelog()
        nodes: List[Node] = []
        conflicts: List[MergeConflict] = []

        # Nodes
        for node in new.iter_nodes():
            if not old.has_node(node.id):
                changelog.added.append(node.id)
            else:
                previous = old.get_node(node.id)
                if previous.content_key() != node.content_key():
                    changelog.modified.append(node.id)
                    changelog.anchor_changes += diff_anchors(
                        node.id, previous.all_anchors(), node.all_anchors())
            nodes.append(node)

        for node in old.iter_nodes():
            if new.has_node(node.id):
                continue
            referenced_by = new.referencing_relations(node.id)
            if referenced_by:
                conflict = MergeConflict(node.id, referenced_by)
                logger.warning(f"Merge conflict: {conflict}; retaining it as stale")
                conflicts.append(conflict)
                changelog.conflicted.append(node.id)
                changelog.conflicts.append(Conflict(node_id=node.id, referenced_by=referenced_by))
                nodes.append(msgspec.structs.replace(node, stale=True))
            else:
                changelog.removed.append(node.id)

        # Relations
        relations: List[RelationData] = []
        for relation in new.get_all_relations():
            if not old.has_relation(relation.id):
                changelog.added.append(relation.id)
            else:
                previous = old.get_relation(relation.id)
                if previous.content_key() != relation.content_key():
                    changelog.modified.append(relation.id)
                    changelog.anchor_changes += diff_anchors(relation.id, previous.refs, relation.refs)
            relations.append(relation)

        for relation in old.get_all_relations():
            if not new.has_relation(relation.id):
                changelog.removed.append(relation.id)

        for bucket in (changelog.added, changelog.removed, changelog.modified, changelog.conflicted):
            bucket.sort()

        merged = create_db(nodes, relations)
        integrity = SchemaValidator.check_relation_endpoints(merged)

        logger.info(f"Merged graph: {changelog.summary()}")
        return MergeResult(db=merged, changelog=changelog, integrity_findings=integrity, conflicts=conflicts)


# =============================================================================
# ANCHOR DIFF
# =============================================================================

def _identity(anchor: Anchor) -> Tuple[str, str]:
    return anchor.kind, anchor.target


def _same_location(old: Anchor, new: Anchor) -> bool:
    """Renamed: same kind, and either the same path or the same symbol leaf."""
    if old.kind != new.kind:
        return False
    old_parts, new_parts = parse_target(old), parse_target(new)
    if old_parts.path and old_parts.path == new_parts.path:
        return True
    return bool(old_parts.leaf) and old_parts.leaf == new_parts.leaf


def diff_anchors(owner_id: str, old: List[Anchor], new: List[Anchor]) -> List[AnchorChange]:
    """Classify anchor-list edits on a retained node or relation."""
    remaining: Dict[Tuple[str, str], int] = {}
    for anchor in new:
        remaining[_identity(anchor)] = remaining.get(_identity(anchor), 0) + 1

    gone: List[Anchor] = []
    for anchor in old:
        key = _identity(anchor)
        if remaining.get(key):
            remaining[key] -= 1
        else:
            gone.append(anchor)

    fresh: List[Anchor] = []
    for anchor in new:
        key = _identity(anchor)
        if remaining.get(key):
            remaining[key] -= 1
            fresh.append(anchor)

    changes = []
    for anchor in gone:
        match = next((a for a in fresh if _same_location(anchor, a)), None)
        if match is not None:
            fresh.remove(match)
            changes.append(AnchorChange(owner_id=owner_id, change="renamed", kind=anchor.kind,
                                        old_target=anchor.target, new_target=match.target))
        else:
            changes.append(AnchorChange(owner_id=owner_id, change="dropped", kind=anchor.kind,
                                        old_target=anchor.target))
    for anchor in fresh:
        changes.append(AnchorChange(owner_id=owner_id, change="added", kind=anchor.kind,
                                    new_target=anchor.target))
    return changes


def merge_graphs(old: AtlasDB, new: AtlasDB) -> MergeResult:
    return MergeEngine().merge(old, new)
