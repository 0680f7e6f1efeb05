from __future__ import annotations

from typing import Any

from atomrun.dag.build import build_graph
from atomrun.dag.model import TaskGraph
from atomrun.dag.plan import critical_path, parallel_groups, plan, topological_order


def _graph(edges: dict[str, list[str]], **per_task: dict[str, Any]) -> TaskGraph:
    tasks = []
    for task_id, deps in edges.items():
        tasks.append(
            {
                "id": task_id,
                "title": task_id,
                "description": task_id,
                "command": "true",
                "dependsOn": deps,
                **per_task.get(task_id, {}),
            }
        )
    return build_graph({"tasks": tasks})


def _assert_topologically_sound(graph: TaskGraph, order: list[str] | tuple[str, ...]) -> None:
    position = {task_id: idx for idx, task_id in enumerate(order)}
    assert sorted(order) == sorted(graph.ids())
    for record in graph:
        for dep in record.depends_on:
            assert position[dep] < position[record.id]


def test_fan_in_scenario_groups_and_order() -> None:
    graph = _graph({"A": [], "B": [], "C": ["A", "B"]})
    result = plan(graph)
    assert result.parallel_groups == (("A", "B"), ("C",))
    _assert_topologically_sound(graph, result.topological_order)
    assert result.group_of("C") == 1


def test_topological_order_follows_insertion_order_for_independent_tasks() -> None:
    graph = _graph({"A": [], "B": [], "C": []})
    assert topological_order(graph) == ["A", "B", "C"]


def test_topological_order_is_sound_on_diamond_with_late_root() -> None:
    graph = _graph({"D": ["B", "C"], "B": ["A"], "C": ["A"], "A": []})
    order = topological_order(graph)
    _assert_topologically_sound(graph, order)
    assert order[0] == "A"
    assert order[-1] == "D"


def test_parallel_groups_place_each_task_after_its_deepest_dependency() -> None:
    graph = _graph({"A": [], "B": ["A"], "C": ["B"], "D": ["A"], "E": []})
    groups = parallel_groups(graph, topological_order(graph))
    assert groups == [["A", "E"], ["B", "D"], ["C"]]
    layer = {task_id: idx for idx, group in enumerate(groups) for task_id in group}
    for record in graph:
        for dep in record.depends_on:
            assert layer[dep] < layer[record.id]


def test_critical_path_uses_estimated_durations() -> None:
    graph = _graph(
        {"A": [], "B": [], "C": ["A", "B"]},
        A={"estimatedTime": "10min"},
        B={"estimatedTime": "1h"},
        C={"estimatedTime": "5min"},
    )
    path, duration = critical_path(graph, topological_order(graph))
    assert path == ["B", "C"]
    assert duration == 65.0


def test_critical_path_ties_prefer_earlier_tasks() -> None:
    graph = _graph({"A": [], "B": []})
    result = plan(graph)
    assert result.critical_path == ("A",)
    assert result.dispatch_rank("A") < result.dispatch_rank("B")


def test_dispatch_rank_prefers_critical_path_members() -> None:
    graph = _graph(
        {"A": [], "B": [], "C": ["B"]},
        A={"estimatedDuration": 5},
        B={"estimatedDuration": 20},
        C={"estimatedDuration": 20},
    )
    result = plan(graph)
    assert result.critical_path == ("B", "C")
    ready = sorted(["A", "B"], key=result.dispatch_rank)
    assert ready == ["B", "A"]


def test_plan_estimates_time_speedup_and_cost() -> None:
    graph = _graph(
        {"A": [], "B": [], "C": ["A", "B"]},
        A={"estimatedDuration": 30, "estimatedCost": 1.5, "category": "setup"},
        B={"estimatedDuration": 60, "estimatedCost": 2, "category": "setup"},
        C={"estimatedDuration": 30, "estimatedCost": 0.5},
    )
    result = plan(graph)
    assert result.sequential_duration == 120.0
    assert result.parallel_duration == 90.0
    assert result.critical_duration == 90.0
    assert result.speedup == 1.333
    assert result.total_estimated_cost == 4.0
    assert result.cost_by_category == {"setup": (2, 3.5), "uncategorized": (1, 0.5)}


def test_plan_of_single_task() -> None:
    result = plan(_graph({"A": []}))
    assert result.topological_order == ("A",)
    assert result.parallel_groups == (("A",),)
    assert result.critical_path == ("A",)
    assert result.speedup == 1.0
