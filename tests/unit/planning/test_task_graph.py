"""Unit tests for planning.task_graph."""

from __future__ import annotations

import pytest

from repo_atlas.planning.task_graph import TaskGraph


def test_three_node_cycle_is_reported_once_from_smallest_node() -> None:
    graph = TaskGraph(edges=(("B", "C"), ("C", "A"), ("A", "B")))

    assert graph.simple_cycles() == (("A", "B", "C"),)
    assert graph.would_create_cycle("A", "C")


def test_acyclic_graph_has_no_simple_cycles() -> None:
    graph = TaskGraph(nodes=("lonely",), edges=(("a", "b"), ("b", "c"), ("a", "c")))

    assert graph.simple_cycles() == ()
    assert graph.simple_cycles(max_length=2) == ()
    assert len(graph) == 4


def test_simple_cycles_sorted_by_length_and_bounded() -> None:
    graph = TaskGraph(
        edges=(
            ("a", "b"),
            ("b", "a"),
            ("b", "c"),
            ("c", "d"),
            ("d", "b"),
            ("x", "x"),
        )
    )

    assert graph.simple_cycles() == (("x",), ("a", "b"), ("b", "c", "d"))
    assert graph.simple_cycles(max_length=2) == (("x",), ("a", "b"))
    with pytest.raises(ValueError, match="max_length"):
        graph.simple_cycles(max_length=0)


def test_overlapping_cycles_are_all_enumerated() -> None:
    graph = TaskGraph(edges=(("a", "b"), ("b", "a"), ("b", "c"), ("c", "a")))

    assert graph.simple_cycles() == (("a", "b"), ("a", "b", "c"))


def test_dependency_queries_and_serialization() -> None:
    graph = TaskGraph(nodes=("z",), edges=(("a", "b"), ("b", "c")))

    assert graph.get_dependencies("c") == ("b",)
    assert graph.get_dependents("a") == ("b",)
    assert graph.get_dependents("a", transitive=True) == ("b", "c")
    assert graph.would_create_cycle("c", "a")
    assert graph.would_create_cycle("z", "z")
    assert not graph.would_create_cycle("a", "z")
    assert not graph.would_create_cycle("new", "a")
    assert graph.serialize() == {
        "nodes": ["a", "b", "c", "z"],
        "edges": [["a", "b"], ["b", "c"]],
    }
    assert "z" in graph
    with pytest.raises(KeyError, match="unknown node"):
        graph.get_dependents("missing")
    with pytest.raises(ValueError, match="non-empty"):
        graph.add_node("")


def test_degrees_count_direct_edges_only() -> None:
    graph = TaskGraph(nodes=("z",), edges=(("a", "b"), ("a", "c"), ("b", "c"), ("c", "c")))

    assert [(graph.in_degree(node), graph.out_degree(node)) for node in graph.nodes] == [
        (0, 2),
        (1, 1),
        (3, 1),
        (0, 0),
    ]
    with pytest.raises(KeyError, match="unknown node"):
        graph.in_degree("missing")
    with pytest.raises(KeyError, match="unknown node"):
        graph.out_degree("missing")
