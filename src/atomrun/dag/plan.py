"""Execution planning: topological order, parallel groups and critical path."""

from __future__ import annotations

from dataclasses import dataclass, field

from atomrun.dag.model import TaskGraph


@dataclass(frozen=True, slots=True)
class ExecutionPlan:
    topological_order: tuple[str, ...]
    parallel_groups: tuple[tuple[str, ...], ...]
    critical_path: tuple[str, ...]
    critical_duration: float
    sequential_duration: float
    parallel_duration: float
    total_estimated_cost: float
    cost_by_category: dict[str, tuple[int, float]] = field(default_factory=dict)

    @property
    def speedup(self) -> float:
        if self.parallel_duration <= 0:
            return 1.0
        return round(self.sequential_duration / self.parallel_duration, 3)

    def group_of(self, task_id: str) -> int:
        for idx, group in enumerate(self.parallel_groups):
            if task_id in group:
                return idx
        raise KeyError(task_id)

    def dispatch_rank(self, task_id: str) -> tuple[int, int]:
        """Sort key preferring critical-path members, then topological position."""
        try:
            critical = self.critical_path.index(task_id)
        except ValueError:
            critical = len(self.critical_path)
        return critical, self.topological_order.index(task_id)


def topological_order(graph: TaskGraph) -> list[str]:
    """Iterative depth-first postorder over ``depends_on``; ties follow insertion order."""
    visited: set[str] = set()
    order: list[str] = []
    for root in graph.ids():
        if root in visited:
            continue
        visited.add(root)
        stack: list[tuple[str, int]] = [(root, 0)]
        while stack:
            node, edge_idx = stack[-1]
            deps = graph[node].depends_on
            if edge_idx < len(deps):
                stack[-1] = (node, edge_idx + 1)
                dep = deps[edge_idx]
                if dep not in visited:
                    visited.add(dep)
                    stack.append((dep, 0))
                continue
            stack.pop()
            order.append(node)
    return order


def parallel_groups(graph: TaskGraph, order: list[str]) -> list[list[str]]:
    """Layer every task one past its deepest dependency; layers keep insertion order."""
    layer: dict[str, int] = {}
    for task_id in order:
        deps = graph[task_id].depends_on
        layer[task_id] = 1 + max(layer[dep] for dep in deps) if deps else 0
    groups: list[list[str]] = [[] for _ in range(max(layer.values(), default=-1) + 1)]
    for task_id in graph.ids():
        groups[layer[task_id]].append(task_id)
    return groups


def critical_path(graph: TaskGraph, order: list[str]) -> tuple[list[str], float]:
    """Longest ``estimated_duration`` chain through the DAG."""
    position = {task_id: pos for pos, task_id in enumerate(order)}
    length: dict[str, float] = {}
    count: dict[str, int] = {}
    previous: dict[str, str | None] = {}

    def _better(candidate: str, current: str | None) -> bool:
        if current is None:
            return True
        if length[candidate] != length[current]:
            return length[candidate] > length[current]
        if count[candidate] != count[current]:
            return count[candidate] > count[current]
        return position[candidate] < position[current]

    for task_id in order:
        best: str | None = None
        for dep in graph[task_id].depends_on:
            if _better(dep, best):
                best = dep
        previous[task_id] = best
        own = graph[task_id].estimated_duration
        length[task_id] = own + (length[best] if best is not None else 0.0)
        count[task_id] = 1 + (count[best] if best is not None else 0)

    end: str | None = None
    for task_id in order:
        if _better(task_id, end):
            end = task_id
    if end is None:
        return [], 0.0
    path: list[str] = []
    node: str | None = end
    while node is not None:
        path.append(node)
        node = previous[node]
    path.reverse()
    return path, length[end]


def plan(graph: TaskGraph) -> ExecutionPlan:
    order = topological_order(graph)
    groups = parallel_groups(graph, order)
    path, path_duration = critical_path(graph, order)

    by_category: dict[str, tuple[int, float]] = {}
    for task in graph:
        key = task.category or "uncategorized"
        seen, cost = by_category.get(key, (0, 0.0))
        by_category[key] = (seen + 1, round(cost + task.estimated_cost, 6))

    return ExecutionPlan(
        topological_order=tuple(order),
        parallel_groups=tuple(tuple(group) for group in groups),
        critical_path=tuple(path),
        critical_duration=path_duration,
        sequential_duration=sum(task.estimated_duration for task in graph),
        parallel_duration=sum(
            max(graph[task_id].estimated_duration for task_id in group) for group in groups
        ),
        total_estimated_cost=round(sum(task.estimated_cost for task in graph), 6),
        cost_by_category=by_category,
    )
