from __future__ import annotations

import math
from dataclasses import dataclass, field
from typing import Literal, cast

from atomrun.dag.model import TaskGraph
from atomrun.dag.plan import ExecutionPlan
from atomrun.exec.sandbox import SandboxHandle
from atomrun.util.time import now_iso

RunStatus = Literal["idle", "planning", "executing", "paused", "completed", "failed"]
TaskStatus = Literal["pending", "ready", "running", "completed", "failed", "paused"]
RUN_STATUS_VALUES: set[str] = {"idle", "planning", "executing", "paused", "completed", "failed"}
TASK_STATUS_VALUES: set[str] = {"pending", "ready", "running", "completed", "failed", "paused"}
TERMINAL_RUN_STATUSES: set[str] = {"completed", "failed"}
ACTIVE_TASK_STATUSES: set[str] = {"running", "paused"}


def _as_str(value: object, default: str = "") -> str:
    return value if isinstance(value, str) else default


def _as_optional_str(value: object) -> str | None:
    return value if isinstance(value, str) else None


def _as_bool(value: object, default: bool = False) -> bool:
    return value if isinstance(value, bool) else default


def _as_optional_int(value: object) -> int | None:
    return value if isinstance(value, int) and not isinstance(value, bool) else None


def _as_optional_float(value: object) -> float | None:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    return float(value) if math.isfinite(value) else None


def _as_list_str(value: object) -> list[str]:
    if not isinstance(value, list):
        return []
    return [item for item in value if isinstance(item, str)]


def _parse_task_status(value: object) -> TaskStatus:
    status = _as_str(value, "pending")
    if status not in TASK_STATUS_VALUES:
        status = "pending"
    return cast(TaskStatus, status)


def _parse_run_status(value: object) -> RunStatus:
    status = _as_str(value, "idle")
    if status not in RUN_STATUS_VALUES:
        status = "idle"
    return cast(RunStatus, status)


@dataclass(slots=True)
class TaskRun:
    status: TaskStatus = "pending"
    instance_id: str | None = None
    started_at: str | None = None
    ended_at: str | None = None
    duration_sec: float | None = None
    exit_code: int | None = None
    error: str | None = None
    log_tail: list[str] = field(default_factory=list)
    artifact_paths: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, object]:
        return {
            "status": self.status,
            "instance_id": self.instance_id,
            "started_at": self.started_at,
            "ended_at": self.ended_at,
            "duration_sec": self.duration_sec,
            "exit_code": self.exit_code,
            "error": self.error,
            "log_tail": self.log_tail,
            "artifact_paths": self.artifact_paths,
        }

    @classmethod
    def from_dict(cls, data: dict[str, object]) -> TaskRun:
        return cls(
            status=_parse_task_status(data.get("status")),
            instance_id=_as_optional_str(data.get("instance_id")),
            started_at=_as_optional_str(data.get("started_at")),
            ended_at=_as_optional_str(data.get("ended_at")),
            duration_sec=_as_optional_float(data.get("duration_sec")),
            exit_code=_as_optional_int(data.get("exit_code")),
            error=_as_optional_str(data.get("error")),
            log_tail=_as_list_str(data.get("log_tail")),
            artifact_paths=_as_list_str(data.get("artifact_paths")),
        )


@dataclass(frozen=True, slots=True)
class RunSummary:
    run_status: RunStatus
    completed_task_ids: list[str]
    failed_task_ids: list[str]
    pending_task_ids: list[str]
    total_elapsed: float | None
    stopped: bool = False

    def to_dict(self) -> dict[str, object]:
        return {
            "run_status": self.run_status,
            "completed_task_ids": self.completed_task_ids,
            "failed_task_ids": self.failed_task_ids,
            "pending_task_ids": self.pending_task_ids,
            "total_elapsed": self.total_elapsed,
            "stopped": self.stopped,
        }


@dataclass(slots=True)
class RunState:
    """
    Mutable run-time state of one execution, owned by ExecutionScheduler.

    ``completed`` and ``failed`` are append-only. ``graph``, ``plan`` and the
    live ``active_dispatch`` handles are not serialized; a checkpoint keeps the
    instance ids on each TaskRun instead.
    """

    run_id: str
    tasks: dict[str, TaskRun]
    run_status: RunStatus = "idle"
    completed: list[str] = field(default_factory=list)
    failed: list[str] = field(default_factory=list)
    created_at: str = field(default_factory=now_iso)
    updated_at: str = field(default_factory=now_iso)
    started_at: str | None = None
    ended_at: str | None = None
    elapsed_sec: float | None = None
    stopped: bool = False
    graph: TaskGraph | None = field(default=None, repr=False, compare=False)
    plan: ExecutionPlan | None = field(default=None, repr=False, compare=False)
    active_dispatch: dict[str, SandboxHandle] = field(
        default_factory=dict, repr=False, compare=False
    )

    @classmethod
    def new(cls, run_id: str, graph: TaskGraph) -> RunState:
        return cls(run_id=run_id, tasks={task_id: TaskRun() for task_id in graph.ids()}, graph=graph)

    def ids_with_status(self, *statuses: str) -> list[str]:
        return [task_id for task_id, task in self.tasks.items() if task.status in statuses]

    @property
    def terminal(self) -> bool:
        return self.run_status in TERMINAL_RUN_STATUSES

    def summary(self) -> RunSummary:
        return RunSummary(
            run_status=self.run_status,
            completed_task_ids=list(self.completed),
            failed_task_ids=list(self.failed),
            pending_task_ids=self.ids_with_status("pending", "ready"),
            total_elapsed=self.elapsed_sec,
            stopped=self.stopped,
        )

    def to_dict(self) -> dict[str, object]:
        return {
            "run_id": self.run_id,
            "run_status": self.run_status,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
            "started_at": self.started_at,
            "ended_at": self.ended_at,
            "elapsed_sec": self.elapsed_sec,
            "stopped": self.stopped,
            "completed": self.completed,
            "failed": self.failed,
            "tasks": {task_id: task.to_dict() for task_id, task in self.tasks.items()},
        }

    @classmethod
    def from_dict(cls, data: dict[str, object]) -> RunState:
        raw_tasks = data.get("tasks")
        tasks: dict[str, TaskRun] = {}
        if isinstance(raw_tasks, dict):
            for task_id, task_data in raw_tasks.items():
                if isinstance(task_id, str) and isinstance(task_data, dict):
                    tasks[task_id] = TaskRun.from_dict(task_data)
        return cls(
            run_id=_as_str(data.get("run_id")),
            tasks=tasks,
            run_status=_parse_run_status(data.get("run_status")),
            completed=[i for i in _as_list_str(data.get("completed")) if i in tasks],
            failed=[i for i in _as_list_str(data.get("failed")) if i in tasks],
            created_at=_as_str(data.get("created_at")),
            updated_at=_as_str(data.get("updated_at")),
            started_at=_as_optional_str(data.get("started_at")),
            ended_at=_as_optional_str(data.get("ended_at")),
            elapsed_sec=_as_optional_float(data.get("elapsed_sec")),
            stopped=_as_bool(data.get("stopped")),
        )
