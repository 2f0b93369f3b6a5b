"""Tests for hierarchy helpers (budget_engines/tree.py)."""

import pytest

from budget_engines.tree import (
    collect_descendants,
    hierarchical_order,
    parent_first_order,
    walk_ancestors,
)
from budget_kernel.exceptions import CycleDetectedError


class TestWalkAncestors:
    def test_yields_start_then_each_ancestor(self):
        parents = {"c": "b", "b": "a", "a": None}
        assert list(walk_ancestors("c", parents.get)) == ["c", "b", "a"]

    def test_cycle_raises(self):
        parents = {"a": "b", "b": "c", "c": "a"}
        with pytest.raises(CycleDetectedError) as exc_info:
            list(walk_ancestors("a", parents.get))
        assert exc_info.value.code == "CYCLE_DETECTED"

    def test_self_parent_raises(self):
        with pytest.raises(CycleDetectedError):
            list(walk_ancestors("a", {"a": "a"}.get))


class TestCollectDescendants:
    def test_breadth_first(self):
        children = {"root": ["a", "b"], "a": ["a1"], "b": [], "a1": []}
        assert collect_descendants("root", lambda n: children.get(n, [])) == ["a", "b", "a1"]

    def test_cycle_does_not_loop(self):
        children = {"a": ["b"], "b": ["a"]}
        assert collect_descendants("a", lambda n: children.get(n, [])) == ["b"]


class TestParentFirstOrder:
    def test_children_listed_before_parents_are_reordered(self):
        nodes = [("child", "parent"), ("parent", None)]
        result = parent_first_order(nodes, key_of=lambda n: n[0], parent_of=lambda n: n[1])
        assert [n[0] for n in result.ordered] == ["parent", "child"]
        assert result.unresolved == ()

    def test_known_parents_count_as_placed(self):
        nodes = [("child", "existing")]
        result = parent_first_order(
            nodes, key_of=lambda n: n[0], parent_of=lambda n: n[1], known={"existing"}
        )
        assert result.ordered == (("child", "existing"),)

    def test_circular_references_stay_unresolved(self):
        nodes = [("a", "b"), ("b", "a"), ("c", None)]
        result = parent_first_order(nodes, key_of=lambda n: n[0], parent_of=lambda n: n[1])
        assert [n[0] for n in result.ordered] == ["c"]
        assert {n[0] for n in result.unresolved} == {"a", "b"}


class TestHierarchicalOrder:
    def test_depth_first_with_sorted_siblings(self):
        nodes = [
            {"id": "t2", "parent": None, "order": 1},
            {"id": "t1", "parent": None, "order": 0},
            {"id": "t1b", "parent": "t1", "order": 1},
            {"id": "t1a", "parent": "t1", "order": 0},
        ]
        ordered = hierarchical_order(
            nodes,
            key_of=lambda n: n["id"],
            parent_of=lambda n: n["parent"],
            sort_key=lambda n: (n["order"], n["id"]),
        )
        assert [n["id"] for n in ordered] == ["t1", "t1a", "t1b", "t2"]

    def test_missing_parent_is_treated_as_root(self):
        nodes = [{"id": "orphan", "parent": "gone", "order": 0}]
        ordered = hierarchical_order(
            nodes,
            key_of=lambda n: n["id"],
            parent_of=lambda n: n["parent"],
            sort_key=lambda n: (n["order"], n["id"]),
        )
        assert [n["id"] for n in ordered] == ["orphan"]

    def test_cycle_members_appended_at_end(self):
        nodes = [
            {"id": "x", "parent": "y", "order": 0},
            {"id": "y", "parent": "x", "order": 1},
            {"id": "root", "parent": None, "order": 5},
        ]
        ordered = hierarchical_order(
            nodes,
            key_of=lambda n: n["id"],
            parent_of=lambda n: n["parent"],
            sort_key=lambda n: (n["order"], n["id"]),
        )
        assert [n["id"] for n in ordered] == ["root", "x", "y"]
