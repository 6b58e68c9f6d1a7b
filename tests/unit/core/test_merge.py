"""
Unit tests for core/merge.py - MergeEngine

Tests:
- Change classification (added / removed / modified / conflicted)
- Conflict safety: referenced nodes survive as stale
- Bookkeeping fields never count as content
- Anchor diff classification
"""
import unittest

import msgspec

from core.errors import MergeConflict
from core.graph_db import create_db
from core.merge import MergeEngine, diff_anchors, merge_graphs
from core.schemas import Anchor, ComponentNode, RelationData, SourceSpan, SystemNode


class TestMergeClassification(unittest.TestCase):

    def test_identical_graphs_give_empty_changelog(self):
        nodes = [SystemNode(id="SYS-a"), ComponentNode(id="CMP-a", title="A")]
        relations = [RelationData(id="REL-1", source="SYS-a", target="CMP-a", kind="contains")]

        result = merge_graphs(create_db(nodes, relations), create_db(nodes, relations))

        self.assertTrue(result.changelog.is_empty)
        self.assertEqual(result.conflicts, [])
        self.assertTrue(result.db.content_equals(create_db(nodes, relations)))

    def test_added_removed_modified(self):
        old = create_db(
            [SystemNode(id="SYS-a"), ComponentNode(id="CMP-a", title="A"), ComponentNode(id="CMP-gone")],
            [RelationData(id="REL-1", source="SYS-a", target="CMP-a", kind="contains"),
             RelationData(id="REL-old", source="SYS-a", target="CMP-gone", kind="contains")],
        )
        new = create_db(
            [SystemNode(id="SYS-a"), ComponentNode(id="CMP-a", title="A2"), ComponentNode(id="CMP-new")],
            [RelationData(id="REL-1", source="SYS-a", target="CMP-a", kind="contains", note="edited"),
             RelationData(id="REL-2", source="SYS-a", target="CMP-new", kind="contains")],
        )

        changelog = MergeEngine().merge(old, new).changelog

        self.assertEqual(changelog.added, ["CMP-new", "REL-2"])
        self.assertEqual(changelog.removed, ["CMP-gone", "REL-old"])
        self.assertEqual(changelog.modified, ["CMP-a", "REL-1"])
        self.assertEqual(changelog.conflicted, [])
        self.assertEqual(changelog.summary(), "2 added, 2 removed, 2 modified, 0 conflicted")

    def test_moved_block_is_not_a_change(self):
        old = create_db([ComponentNode(id="CMP-a", provenance=SourceSpan(source="d.md", line=4))])
        new = create_db([ComponentNode(id="CMP-a", provenance=SourceSpan(source="d.md", line=40))])

        result = merge_graphs(old, new)

        self.assertTrue(result.changelog.is_empty)
        self.assertEqual(result.db.get_node("CMP-a").provenance.line, 40)

    def test_restored_stale_node_is_not_a_change(self):
        old = create_db([ComponentNode(id="CMP-a", stale=True)])
        new = create_db([ComponentNode(id="CMP-a")])

        result = merge_graphs(old, new)

        self.assertTrue(result.changelog.is_empty)
        self.assertFalse(result.db.get_node("CMP-a").stale)


class TestMergeConflicts(unittest.TestCase):

    def setUp(self):
        self.old = create_db(
            [SystemNode(id="SYS-a"), ComponentNode(id="CMP-a"), ComponentNode(id="CMP-b", title="B")],
            [RelationData(id="REL-1", source="CMP-a", target="CMP-b", kind="calls")],
        )
        # CMP-b block deleted, but REL-1 still points at it
        self.new = create_db(
            [SystemNode(id="SYS-a"), ComponentNode(id="CMP-a")],
            [RelationData(id="REL-1", source="CMP-a", target="CMP-b", kind="calls")],
        )

    def test_referenced_node_is_retained_as_stale(self):
        result = MergeEngine().merge(self.old, self.new)

        self.assertEqual(result.changelog.conflicted, ["CMP-b"])
        self.assertEqual(result.changelog.removed, [])
        retained = result.db.get_node("CMP-b")
        self.assertTrue(retained.stale)
        self.assertEqual(retained.title, "B")
        self.assertTrue(result.db.is_attached("REL-1"))
        self.assertEqual(result.integrity_findings, [])

    def test_conflict_names_node_and_relations(self):
        result = MergeEngine().merge(self.old, self.new)

        self.assertEqual(len(result.conflicts), 1)
        conflict = result.conflicts[0]
        self.assertIsInstance(conflict, MergeConflict)
        self.assertIn("CMP-b", str(conflict))
        self.assertEqual(result.changelog.conflicts[0].referenced_by, ["REL-1"])

    def test_unreferenced_node_is_removed(self):
        new = create_db([SystemNode(id="SYS-a"), ComponentNode(id="CMP-a")])

        result = MergeEngine().merge(self.old, new)

        self.assertEqual(result.changelog.removed, ["CMP-b", "REL-1"])
        self.assertFalse(result.db.has_node("CMP-b"))

    def test_inputs_are_not_mutated(self):
        before_old = self.old.structural_key()
        before_new = self.new.structural_key()

        MergeEngine().merge(self.old, self.new)

        self.assertEqual(self.old.structural_key(), before_old)
        self.assertEqual(self.new.structural_key(), before_new)
        self.assertFalse(self.new.has_node("CMP-b"))


class TestAnchorDiff(unittest.TestCase):

    def _diff(self, old, new):
        return [(c.change, c.old_target, c.new_target) for c in diff_anchors("CMP-a", old, new)]

    def test_symbol_rename_within_same_file(self):
        changes = self._diff([Anchor(kind="code", target="src/a.py#A.f")],
                             [Anchor(kind="code", target="src/a.py#A.g")])
        self.assertEqual(changes, [("renamed", "src/a.py#A.f", "src/a.py#A.g")])

    def test_file_move_keeping_symbol(self):
        changes = self._diff([Anchor(kind="code", target="src/a.py#A.f")],
                             [Anchor(kind="code", target="lib/b.py#A.f")])
        self.assertEqual(changes, [("renamed", "src/a.py#A.f", "lib/b.py#A.f")])

    def test_dropped_and_added(self):
        changes = self._diff(
            [Anchor(kind="file", target="README.md"), Anchor(kind="code", target="src/a.py#f")],
            [Anchor(kind="code", target="src/a.py#f"), Anchor(kind="command", target="make lint")],
        )
        self.assertEqual(changes, [("dropped", "README.md", None), ("added", None, "make lint")])

    def test_kind_change_is_never_a_rename(self):
        changes = self._diff([Anchor(kind="file", target="src/a.py")],
                             [Anchor(kind="code", target="src/a.py#f")])
        self.assertEqual([c[0] for c in changes], ["dropped", "added"])

    def test_anchor_edit_marks_owner_modified(self):
        old = create_db([ComponentNode(id="CMP-a", anchors=[Anchor(kind="code", target="src/a.py#f")])])
        new = create_db([ComponentNode(id="CMP-a", anchors=[Anchor(kind="code", target="src/a.py#g")])])

        changelog = merge_graphs(old, new).changelog

        self.assertEqual(changelog.modified, ["CMP-a"])
        self.assertEqual([c.change for c in changelog.anchor_changes], ["renamed"])


def test_changelog_is_serializable():
    old = create_db([ComponentNode(id="CMP-a")])
    new = create_db([ComponentNode(id="CMP-b")])

    payload = msgspec.to_builtins(merge_graphs(old, new).changelog)

    assert payload["added"] == ["CMP-b"]
    assert payload["removed"] == ["CMP-a"]


if __name__ == "__main__":
    unittest.main()
