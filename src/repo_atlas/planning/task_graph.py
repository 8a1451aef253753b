"""Directed graph with sorted, repeatable traversal for task dependencies and coupling."""

from __future__ import annotations

from collections.abc import Iterable, Iterator


class TaskGraph:
    """
    Directed graph keyed by string node ids.

    Edges run ``source -> target``: for task dependencies the source is the
    prerequisite, for coupling it is the component that imports.
    """

    __slots__ = ("_targets", "_sources")

    def __init__(
        self,
        nodes: Iterable[str] = (),
        edges: Iterable[tuple[str, str]] = (),
    ) -> None:
        self._targets: dict[str, set[str]] = {}
        self._sources: dict[str, set[str]] = {}
        for node in nodes:
            self.add_node(node)
        for source, target in edges:
            self.add_edge(source, target)

    def __contains__(self, node: object) -> bool:
        return node in self._targets

    def __len__(self) -> int:
        return len(self._targets)

    @property
    def nodes(self) -> tuple[str, ...]:
        return tuple(sorted(self._targets))

    @property
    def edges(self) -> tuple[tuple[str, str], ...]:
        return tuple((source, target) for source in self.nodes for target in self._out(source))

    def add_node(self, node: str) -> None:
        if not isinstance(node, str) or not node:
            raise ValueError("node id must be a non-empty string")
        self._targets.setdefault(node, set())
        self._sources.setdefault(node, set())

    def add_edge(self, source: str, target: str) -> None:
        self.add_node(source)
        self.add_node(target)
        self._targets[source].add(target)
        self._sources[target].add(source)

    def get_dependents(self, node: str, *, transitive: bool = False) -> tuple[str, ...]:
        """Direct (or all reachable) targets of ``node``, sorted."""
        if node not in self._targets:
            raise KeyError(f"unknown node: {node}")
        if not transitive:
            return self._out(node)
        return tuple(sorted(self._reachable(node)))

    def get_dependencies(self, node: str) -> tuple[str, ...]:
        """Direct sources of ``node``, sorted."""
        if node not in self._sources:
            raise KeyError(f"unknown node: {node}")
        return tuple(sorted(self._sources[node]))

    def in_degree(self, node: str) -> int:
        if node not in self._sources:
            raise KeyError(f"unknown node: {node}")
        return len(self._sources[node])

    def out_degree(self, node: str) -> int:
        if node not in self._targets:
            raise KeyError(f"unknown node: {node}")
        return len(self._targets[node])

    def would_create_cycle(self, source: str, target: str) -> bool:
        """Whether adding ``source -> target`` would close a cycle."""
        if source == target:
            return True
        return target in self._targets and source in self._reachable(target)

    def simple_cycles(self, max_length: int | None = None) -> tuple[tuple[str, ...], ...]:
        """
        Every elementary cycle of at most ``max_length`` nodes.

        A cycle is reported once, as an open path starting at its smallest
        node: ``A -> B -> C -> A`` becomes ``("A", "B", "C")``. Results are
        ordered by length, then lexically.
        """
        if max_length is not None and max_length < 1:
            raise ValueError("max_length must be >= 1")
        limit = len(self) if max_length is None else max_length
        found = [cycle for start in self.nodes for cycle in self._cycles_from(start, limit)]
        return tuple(sorted(found, key=lambda cycle: (len(cycle), cycle)))

    def serialize(self) -> dict[str, object]:
        return {"nodes": list(self.nodes), "edges": [list(edge) for edge in self.edges]}

    def _out(self, node: str) -> tuple[str, ...]:
        return tuple(sorted(self._targets[node]))

    def _reachable(self, node: str) -> set[str]:
        seen: set[str] = set()
        pending = list(self._targets[node])
        while pending:
            current = pending.pop()
            if current not in seen:
                seen.add(current)
                pending.extend(self._targets[current] - seen)
        return seen

    def _cycles_from(self, start: str, limit: int) -> Iterator[tuple[str, ...]]:
        # Only nodes greater than ``start`` may appear, so each cycle has one start.
        path = [start]
        branches = [iter(self._out(start))]
        while branches:
            step = next(branches[-1], None)
            if step is None:
                branches.pop()
                path.pop()
            elif step == start:
                yield tuple(path)
            elif step > start and step not in path and len(path) < limit:
                path.append(step)
                branches.append(iter(self._out(step)))


__all__ = ["TaskGraph"]
