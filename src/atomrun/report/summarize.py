from __future__ import annotations

from pathlib import Path

from atomrun.dag.model import TaskGraph
from atomrun.dag.plan import ExecutionPlan
from atomrun.state.model import RunState
from atomrun.util.tail import tail_lines


def _blocked_by(state: RunState, graph: TaskGraph, task_id: str) -> list[str]:
    return [dep for dep in graph[task_id].depends_on if state.tasks[dep].status != "completed"]


def plan_summary(execution_plan: ExecutionPlan) -> dict[str, object]:
    return {
        "topological_order": list(execution_plan.topological_order),
        "parallel_groups": [list(group) for group in execution_plan.parallel_groups],
        "critical_path": list(execution_plan.critical_path),
        "critical_duration": execution_plan.critical_duration,
        "sequential_duration": execution_plan.sequential_duration,
        "parallel_duration": execution_plan.parallel_duration,
        "speedup": execution_plan.speedup,
        "total_estimated_cost": execution_plan.total_estimated_cost,
        "cost_by_category": {
            category: {"count": count, "cost": cost}
            for category, (count, cost) in execution_plan.cost_by_category.items()
        },
    }


def build_summary(
    state: RunState,
    graph: TaskGraph,
    run_dir: Path,
    execution_plan: ExecutionPlan | None = None,
) -> dict[str, object]:
    tasks_rows: list[dict[str, object]] = []
    problem_rows: list[dict[str, object]] = []
    artifact_rows: list[dict[str, object]] = []

    for task_id, task in state.tasks.items():
        tasks_rows.append(
            {
                "id": task_id,
                "title": graph[task_id].title if task_id in graph else task_id,
                "status": task.status,
                "duration_sec": task.duration_sec,
                "exit_code": task.exit_code,
                "instance_id": task.instance_id,
            }
        )
        if task.status == "failed":
            log_tail = task.log_tail or tail_lines(run_dir / "logs" / f"{task_id}.err.log", 50)
            problem_rows.append(
                {
                    "id": task_id,
                    "status": task.status,
                    "error": task.error,
                    "blocked_by": [],
                    "log_tail": log_tail,
                }
            )
        elif task.status in {"pending", "ready"} and state.terminal and task_id in graph:
            problem_rows.append(
                {
                    "id": task_id,
                    "status": task.status,
                    "error": None,
                    "blocked_by": _blocked_by(state, graph, task_id),
                    "log_tail": [],
                }
            )

        for artifact in task.artifact_paths:
            artifact_rows.append({"task_id": task_id, "path": artifact})

    return {
        "run": {
            "run_id": state.run_id,
            "title": graph.project.title if graph.project is not None else None,
            "status": state.run_status,
            "stopped": state.stopped,
            "started_at": state.started_at,
            "ended_at": state.ended_at,
            "elapsed_sec": state.elapsed_sec,
            "completed": len(state.completed),
            "failed": len(state.failed),
            "total": len(state.tasks),
        },
        "plan": plan_summary(execution_plan) if execution_plan is not None else None,
        "tasks": tasks_rows,
        "problems": problem_rows,
        "artifacts": artifact_rows,
    }
