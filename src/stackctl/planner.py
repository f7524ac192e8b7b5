"""Dependency ordering for resource operations.

Orders nodes so that every node comes after all of its dependencies
(explicit ``DependsOn`` plus implicit reference edges). Among nodes that are
ready at the same time, the one declared first wins, so the order is
deterministic for a given template.

A cycle is fatal: it cannot be fixed without editing the template, so the
planner reports the full cycle path rather than just the nodes involved.
"""

from __future__ import annotations

import heapq
import logging
from collections.abc import Callable, Iterable, Mapping

from .errors import CyclicDependencyError
from .graph import ResourceGraph

logger = logging.getLogger(__name__)


def topological_order(
    ids: Iterable[str],
    dependencies_of: Callable[[str], Iterable[str]],
) -> list[str]:
    """Kahn's algorithm over ``ids``, ties broken by position in ``ids``.

    Dependencies outside ``ids`` are ignored.

    Raises:
        CyclicDependencyError: If no topological order exists.
    """
    ordered_ids = list(ids)
    position = {node_id: i for i, node_id in enumerate(ordered_ids)}

    dependents: dict[str, list[str]] = {node_id: [] for node_id in ordered_ids}
    in_degree: dict[str, int] = {node_id: 0 for node_id in ordered_ids}
    for node_id in ordered_ids:
        for dep in set(dependencies_of(node_id)):
            if dep in position:
                dependents[dep].append(node_id)
                in_degree[node_id] += 1

    ready = [(position[n], n) for n, degree in in_degree.items() if degree == 0]
    heapq.heapify(ready)

    result: list[str] = []
    while ready:
        _, current = heapq.heappop(ready)
        result.append(current)
        for dependent in dependents[current]:
            in_degree[dependent] -= 1
            if in_degree[dependent] == 0:
                heapq.heappush(ready, (position[dependent], dependent))

    if len(result) != len(ordered_ids):
        remaining = [n for n in ordered_ids if in_degree[n] > 0]
        raise CyclicDependencyError(_find_cycle(remaining, dependencies_of))

    return result


def _find_cycle(
    remaining: list[str], dependencies_of: Callable[[str], Iterable[str]]
) -> list[str]:
    """Return one cycle among ``remaining`` as a closed path (first == last)."""
    candidates = set(remaining)
    visited: set[str] = set()

    for start in remaining:
        if start in visited:
            continue
        path: list[str] = []
        on_path: dict[str, int] = {}
        stack: list[tuple[str, list[str]]] = [
            (start, [d for d in dependencies_of(start) if d in candidates])
        ]
        path.append(start)
        on_path[start] = 0

        while stack:
            node, deps = stack[-1]
            if not deps:
                stack.pop()
                path.pop()
                del on_path[node]
                visited.add(node)
                continue
            dep = deps.pop(0)
            if dep in on_path:
                return [*path[on_path[dep]:], dep]
            if dep in visited:
                continue
            on_path[dep] = len(path)
            path.append(dep)
            stack.append((dep, [d for d in dependencies_of(dep) if d in candidates]))

    # Unreachable when Kahn rejected the graph
    return [*remaining, remaining[0]] if remaining else []


class DependencyPlanner:
    """Plans the execution order of a resource graph."""

    def __init__(self, graph: ResourceGraph) -> None:
        self._graph = graph

    def plan(self) -> list[str]:
        """Return logical ids in dependency order (dependencies first).

        Raises:
            CyclicDependencyError: If a cycle is detected.
        """
        nodes = self._graph.nodes
        declared = sorted(nodes, key=lambda n: nodes[n].index)
        order = topological_order(declared, lambda n: nodes[n].dependencies)
        logger.debug("Planned dependency order", extra={"order": order})
        return order

    @staticmethod
    def deletion_order(
        ids: Iterable[str], dependencies: Mapping[str, Iterable[str]]
    ) -> list[str]:
        """Order ids for deletion: dependents before their dependencies.

        Args:
            ids: Logical ids to delete.
            dependencies: Logical id -> ids it depended on when applied.
        """
        forward = topological_order(sorted(ids), lambda n: dependencies.get(n, ()))
        return list(reversed(forward))
