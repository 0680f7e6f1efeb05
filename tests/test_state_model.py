from __future__ import annotations

from fakes import make_graph

from atomrun.state.model import RunState, TaskRun


def test_task_run_from_dict_filters_invalid_types() -> None:
    raw: dict[str, object] = {
        "status": "running",
        "instance_id": 7,
        "exit_code": True,
        "duration_sec": float("nan"),
        "error": "exit code 1",
        "log_tail": ["a", 1, "b"],
        "artifact_paths": ["artifacts/x", None],
    }

    task = TaskRun.from_dict(raw)

    assert task.status == "running"
    assert task.instance_id is None
    assert task.exit_code is None
    assert task.duration_sec is None
    assert task.error == "exit code 1"
    assert task.log_tail == ["a", "b"]
    assert task.artifact_paths == ["artifacts/x"]


def test_run_state_from_dict_uses_safe_defaults_for_invalid_values() -> None:
    raw: dict[str, object] = {
        "run_id": "r1",
        "run_status": "UNKNOWN",
        "stopped": "yes",
        "elapsed_sec": "12",
        "completed": ["a", "ghost", 3],
        "failed": "b",
        "tasks": {
            "a": {"status": "completed"},
            "b": {"status": "bogus"},
            "c": "not-a-mapping",
        },
    }

    state = RunState.from_dict(raw)

    assert state.run_status == "idle"
    assert state.stopped is False
    assert state.elapsed_sec is None
    assert list(state.tasks) == ["a", "b"]
    assert state.tasks["b"].status == "pending"
    assert state.completed == ["a"]
    assert state.failed == []


def test_new_state_starts_idle_with_pending_tasks() -> None:
    state = RunState.new("r1", make_graph({"A": [], "B": ["A"]}))
    assert state.run_status == "idle"
    assert not state.terminal
    assert state.ids_with_status("pending") == ["A", "B"]
    assert state.graph is not None


def test_summary_reports_pending_and_ready_tasks_as_pending() -> None:
    state = RunState.new("r1", make_graph({"A": [], "B": [], "C": ["A"]}))
    state.run_status = "failed"
    state.tasks["A"].status = "failed"
    state.failed.append("A")
    state.tasks["B"].status = "ready"
    state.elapsed_sec = 2.5
    state.stopped = True

    summary = state.summary()

    assert state.terminal
    assert summary.run_status == "failed"
    assert summary.failed_task_ids == ["A"]
    assert summary.completed_task_ids == []
    assert summary.pending_task_ids == ["B", "C"]
    assert summary.total_elapsed == 2.5
    assert summary.to_dict()["stopped"] is True


def test_to_dict_omits_live_handles_and_graph() -> None:
    state = RunState.new("r1", make_graph({"A": []}))
    data = state.to_dict()
    assert set(data) == {
        "run_id",
        "run_status",
        "created_at",
        "updated_at",
        "started_at",
        "ended_at",
        "elapsed_sec",
        "stopped",
        "completed",
        "failed",
        "tasks",
    }
    assert data["tasks"] == {"A": TaskRun().to_dict()}
