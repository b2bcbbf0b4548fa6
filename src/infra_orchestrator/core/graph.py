"""Dependency graph helpers shared by the resource planner and the pipeline executor.

Graphs are plain mappings of ``node -> [nodes it depends on]``. Ordering is
deterministic: whenever several nodes are ready at once, the lowest
identifier goes first.
"""

import heapq
from collections.abc import Iterable, Mapping

from infra_orchestrator.core.errors import DependencyCycle, UnknownDependency


def _dependents(dependencies: Mapping[str, Iterable[str]], known: set[str]) -> dict[str, list[str]]:
    dependents: dict[str, list[str]] = {node: [] for node in dependencies}
    for node, deps in dependencies.items():
        for dep in deps:
            if dep in known:
                dependents[dep].append(node)
    return dependents


def validate_dependencies(dependencies: Mapping[str, Iterable[str]]) -> None:
    """Raise UnknownDependency for a reference to a node outside the graph."""
    for node in sorted(dependencies):
        for dep in dependencies[node]:
            if dep not in dependencies:
                raise UnknownDependency(node, dep)


def find_cycle(dependencies: Mapping[str, Iterable[str]]) -> list[str]:
    """Return one cycle as ``[a, b, ..., a]``, or an empty list when acyclic."""
    visiting: set[str] = set()
    done: set[str] = set()
    path: list[str] = []

    def visit(node: str) -> list[str]:
        visiting.add(node)
        path.append(node)
        for dep in sorted(dependencies.get(node, ())):
            if dep not in dependencies or dep in done:
                continue
            if dep in visiting:
                return path[path.index(dep):] + [dep]
            cycle = visit(dep)
            if cycle:
                return cycle
        visiting.discard(node)
        done.add(node)
        path.pop()
        return []

    for node in sorted(dependencies):
        if node not in done:
            cycle = visit(node)
            if cycle:
                return cycle
    return []


def topological_order(
    dependencies: Mapping[str, Iterable[str]],
    ignore_unknown: bool = False,
) -> list[str]:
    """Order nodes so every node follows all of its dependencies.

    Args:
        dependencies: Mapping of node to the nodes it depends on
        ignore_unknown: Skip references to nodes outside the mapping instead
            of raising UnknownDependency

    Returns:
        Node identifiers, dependencies first, ties broken by identifier

    Raises:
        UnknownDependency: A dependency is not in the graph
        DependencyCycle: The graph is not acyclic
    """
    if not ignore_unknown:
        validate_dependencies(dependencies)

    known = set(dependencies)
    remaining = {
        node: len({dep for dep in deps if dep in known})
        for node, deps in dependencies.items()
    }
    dependents = _dependents(dependencies, known)

    ready = [node for node, count in remaining.items() if count == 0]
    heapq.heapify(ready)
    order: list[str] = []

    while ready:
        node = heapq.heappop(ready)
        order.append(node)
        for dependent in set(dependents[node]):
            remaining[dependent] -= 1
            if remaining[dependent] == 0:
                heapq.heappush(ready, dependent)

    if len(order) != len(known):
        unresolved = {n: [d for d in dependencies[n] if d in known] for n in known if n not in order}
        raise DependencyCycle(find_cycle(unresolved) or sorted(unresolved))

    return order


def reverse_topological_order(
    dependencies: Mapping[str, Iterable[str]],
    ignore_unknown: bool = False,
) -> list[str]:
    """Order nodes so every node precedes all of its dependencies (dependents first).

    Ties are broken by identifier, same as topological_order.
    """
    if not ignore_unknown:
        validate_dependencies(dependencies)

    known = set(dependencies)
    inverted: dict[str, list[str]] = {node: [] for node in dependencies}
    for node, deps in dependencies.items():
        for dep in deps:
            if dep in known:
                inverted[dep].append(node)
    return topological_order(inverted, ignore_unknown=True)


def downstream_of(dependencies: Mapping[str, Iterable[str]], node: str) -> set[str]:
    """All nodes that transitively depend on ``node``."""
    dependents = _dependents(dependencies, set(dependencies))
    seen: set[str] = set()
    stack = list(dependents.get(node, []))
    while stack:
        current = stack.pop()
        if current in seen:
            continue
        seen.add(current)
        stack.extend(dependents.get(current, []))
    return seen
