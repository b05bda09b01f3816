"""Type-level dependency graph and its orderings.

An entry ``A -> {B}`` means records of type A need B rows to exist first.
Only non-optional, non-polymorphic belongs-to associations create edges.
"""

from __future__ import annotations

import heapq
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field

import structlog

from GraphPorter.catalog import AssociationCatalog
from GraphPorter.errors import CycleError

log = structlog.get_logger()


@dataclass
class DependencyGraph:
    dependencies: dict[str, set[str]]
    # dependency targets outside the input set, per type
    missing: dict[str, set[str]] = field(default_factory=dict)
    # types with a non-optional association to themselves
    self_references: set[str] = field(default_factory=set)

    @property
    def types(self) -> list[str]:
        return sorted(self.dependencies)


@dataclass
class LevelGrouping:
    levels: list[list[str]]
    unresolved: set[str]
    cyclic_types: set[str]
    cycles: list[list[str]]

    @property
    def has_cycles(self) -> bool:
        return bool(self.unresolved)


GraphLike = DependencyGraph | Mapping[str, Iterable[str]]


class DependencyGraphBuilder:
    def __init__(self, catalog: AssociationCatalog):
        self.catalog = catalog

    def build(self, types: Iterable[str]) -> DependencyGraph:
        type_set = set(types)
        dependencies: dict[str, set[str]] = {name: set() for name in sorted(type_set)}
        missing: dict[str, set[str]] = {}
        self_references: set[str] = set()

        for name in sorted(type_set):
            for edge in self.catalog.dependency_edges(name):
                target = edge.to_type
                if target in type_set:
                    dependencies[name].add(target)
                    if target == name:
                        self_references.add(name)
                else:
                    missing.setdefault(name, set()).add(target)

        if self_references:
            log.warning("dependencies.self_reference", models=sorted(self_references))
        return DependencyGraph(
            dependencies=dependencies, missing=missing, self_references=self_references
        )


def _normalize(graph: GraphLike) -> dict[str, set[str]]:
    raw = graph.dependencies if isinstance(graph, DependencyGraph) else graph
    out: dict[str, set[str]] = {}
    for name, deps in raw.items():
        out.setdefault(name, set()).update(deps)
        for dep in deps:
            out.setdefault(dep, set())
    return out


class TopologicalResolver:
    """Orderings over a DependencyGraph; ties always break by type name."""

    def resolve(self, graph: GraphLike) -> list[str]:
        """Total creation order (dependencies first); raises CycleError."""
        deps = _normalize(graph)
        dependents: dict[str, set[str]] = {name: set() for name in deps}
        in_degree = {name: len(d) for name, d in deps.items()}
        for name, d in deps.items():
            for dep in d:
                dependents[dep].add(name)

        ready = [name for name, degree in in_degree.items() if degree == 0]
        heapq.heapify(ready)
        order: list[str] = []
        while ready:
            name = heapq.heappop(ready)
            order.append(name)
            for dependent in dependents[name]:
                in_degree[dependent] -= 1
                if in_degree[dependent] == 0:
                    heapq.heappush(ready, dependent)

        if len(order) < len(deps):
            done = set(order)
            remaining = {name for name in deps if name not in done}
            cycles = self.find_cycles({name: deps[name] & remaining for name in remaining})
            cycle = cycles[0] if cycles else sorted(remaining)
            log.error("dependencies.cycle", cycle=cycle, unresolved=sorted(remaining))
            raise CycleError(cycle, unresolved=remaining)
        return order

    def level_group(self, graph: GraphLike) -> LevelGrouping:
        """Generation-based grouping; reports cycles instead of raising."""
        deps = _normalize(graph)
        resolved: set[str] = set()
        remaining = set(deps)
        levels: list[list[str]] = []
        while remaining:
            level = sorted(name for name in remaining if deps[name] <= resolved)
            if not level:
                break
            levels.append(level)
            resolved.update(level)
            remaining.difference_update(level)

        cyclic: set[str] = set()
        cycles: list[list[str]] = []
        if remaining:
            sub = {name: deps[name] & remaining for name in remaining}
            cycles = self.find_cycles(sub)
            cyclic = {name for name in remaining if self._reaches(sub, name, name)}
            log.warning(
                "dependencies.levels.unresolved",
                unresolved=sorted(remaining),
                cyclic=sorted(cyclic),
            )
        return LevelGrouping(
            levels=levels, unresolved=remaining, cyclic_types=cyclic, cycles=cycles
        )

    @staticmethod
    def _reaches(deps: Mapping[str, set[str]], start: str, goal: str) -> bool:
        stack = list(deps.get(start, ()))
        seen: set[str] = set()
        while stack:
            name = stack.pop()
            if name == goal:
                return True
            if name in seen:
                continue
            seen.add(name)
            stack.extend(deps.get(name, ()))
        return False

    def find_cycles(self, graph: GraphLike) -> list[list[str]]:
        """Cycles found with a three-color DFS, one per back edge, deduplicated by node set.

        Each strongly connected component that contains a cycle yields at least
        one reported cycle, but not every elementary cycle is listed: a cycle
        that closes through an already finished type is not reported
        separately (``A -> C -> A`` next to ``A -> B -> C -> A``).
        """
        deps = _normalize(graph)
        white, gray, black = 0, 1, 2
        color = {name: white for name in deps}
        cycles: list[list[str]] = []
        seen: set[frozenset[str]] = set()

        def visit(name: str, stack: list[str]) -> None:
            color[name] = gray
            stack.append(name)
            for dep in sorted(deps[name]):
                if color[dep] == gray:
                    cycle = stack[stack.index(dep):]
                    key = frozenset(cycle)
                    if key not in seen:
                        seen.add(key)
                        cycles.append(list(cycle))
                elif color[dep] == white:
                    visit(dep, stack)
            stack.pop()
            color[name] = black

        for name in sorted(deps):
            if color[name] == white:
                visit(name, [])
        return cycles

    def deletion_order(self, graph: GraphLike) -> list[str]:
        """Dependents first, so rows can be removed without breaking references."""
        return list(reversed(self.resolve(graph)))
