from __future__ import annotations

from pathlib import Path

from fakes import make_graph

from atomrun.dag.model import TaskGraph
from atomrun.dag.plan import plan
from atomrun.report.render_md import render_markdown
from atomrun.report.summarize import build_summary, plan_summary
from atomrun.state.model import RunState, TaskRun


def _graph() -> TaskGraph:
    return make_graph(
        {"A": [], "B": ["A"], "C": ["B"], "D": []},
        A={"estimatedDuration": 30, "estimatedCost": 1, "category": "setup"},
        B={"estimatedDuration": 60},
        C={"estimatedDuration": 30},
        D={"estimatedDuration": 15},
    )


def _failed_state(graph: TaskGraph) -> RunState:
    state = RunState.new("r1", graph)
    state.run_status = "failed"
    state.started_at = "2026-01-01T00:00:00+00:00"
    state.ended_at = "2026-01-01T00:00:10+00:00"
    state.elapsed_sec = 10.0
    state.tasks["A"] = TaskRun(
        status="failed",
        instance_id="task-A-00000001",
        duration_sec=1.5,
        exit_code=2,
        error="exit code 2",
        log_tail=["boom"],
    )
    state.tasks["D"] = TaskRun(
        status="completed",
        instance_id="task-D-00000002",
        duration_sec=0.5,
        exit_code=0,
        artifact_paths=["artifacts/D/out.txt"],
    )
    state.failed.append("A")
    state.completed.append("D")
    return state


def test_build_summary_lists_failed_and_blocked_tasks(tmp_path: Path) -> None:
    graph = _graph()
    summary = build_summary(_failed_state(graph), graph, tmp_path)

    run = summary["run"]
    assert run["status"] == "failed"
    assert (run["completed"], run["failed"], run["total"]) == (1, 1, 4)
    assert summary["plan"] is None
    problems = {row["id"]: row for row in summary["problems"]}
    assert problems["A"]["log_tail"] == ["boom"]
    assert problems["B"]["blocked_by"] == ["A"]
    assert problems["C"]["blocked_by"] == ["B"]
    assert "D" not in problems
    assert summary["artifacts"] == [{"task_id": "D", "path": "artifacts/D/out.txt"}]


def test_build_summary_falls_back_to_stderr_log(tmp_path: Path) -> None:
    graph = _graph()
    state = _failed_state(graph)
    state.tasks["A"].log_tail = []
    (tmp_path / "logs").mkdir()
    (tmp_path / "logs" / "A.err.log").write_text("e1\ne2\n", encoding="utf-8")
    summary = build_summary(state, graph, tmp_path)
    problems = {row["id"]: row for row in summary["problems"]}
    assert problems["A"]["log_tail"] == ["e1", "e2"]


def test_build_summary_does_not_flag_pending_tasks_of_active_run(tmp_path: Path) -> None:
    graph = _graph()
    state = RunState.new("r1", graph)
    state.run_status = "paused"
    assert build_summary(state, graph, tmp_path)["problems"] == []


def test_plan_summary_serializes_estimates() -> None:
    result = plan_summary(plan(_graph()))
    assert result["critical_path"] == ["A", "B", "C"]
    assert result["critical_duration"] == 120
    assert result["parallel_groups"] == [["A", "D"], ["B"], ["C"]]
    assert result["cost_by_category"]["setup"] == {"count": 1, "cost": 1.0}


def test_render_markdown_contains_all_sections(tmp_path: Path) -> None:
    graph = _graph()
    state = _failed_state(graph)
    state.stopped = True
    markdown = render_markdown(build_summary(state, graph, tmp_path, plan(graph)))

    assert markdown.startswith("# Final Run Report")
    assert "- status: **failed (stopped)**" in markdown
    assert "## Execution Plan" in markdown
    assert "- critical path: A -> B -> C" in markdown
    assert "| 0 | A, D |" in markdown
    assert "| A | Task A | failed | 1.5 | 2 | task-A-00000001 |" in markdown
    assert "### A (failed)" in markdown
    assert "- error: `exit code 2`" in markdown
    assert "boom" in markdown
    assert "### B (pending)" in markdown
    assert "- blocked by: A" in markdown
    assert "- `artifacts/D/out.txt` (task: `D`)" in markdown


def test_render_markdown_for_clean_run(tmp_path: Path) -> None:
    graph = make_graph({"A": []})
    state = RunState.new("r2", graph)
    state.run_status = "completed"
    state.tasks["A"] = TaskRun(status="completed", exit_code=0)
    state.completed.append("A")
    markdown = render_markdown(build_summary(state, graph, tmp_path))
    assert "No failed or blocked tasks." in markdown
    assert "## Execution Plan" not in markdown
    assert "- (none)" in markdown
