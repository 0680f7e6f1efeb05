"""Human-readable progress updates derived from scheduler transitions."""

from __future__ import annotations

import inspect
import json
from collections import deque
from collections.abc import Awaitable, Callable, Iterable
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Literal

from loguru import logger
from rich.console import Console
from rich.markup import escape

from atomrun.state.model import RunState
from atomrun.util.time import now_iso

EventKind = Literal["task", "run"]
ProgressSink = Callable[["ProgressEvent"], Awaitable[None] | None]

_HISTORY_LIMIT = 1000
_STATUS_STYLES = {
    "pending": "dim",
    "ready": "cyan",
    "running": "blue",
    "paused": "yellow",
    "completed": "green",
    "failed": "red",
    "planning": "cyan",
    "executing": "blue",
}


@dataclass(frozen=True, slots=True)
class ProgressEvent:
    task_id: str | None
    status: str
    timestamp: str
    message: str
    kind: EventKind = "task"
    details: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "kind": self.kind,
            "task_id": self.task_id,
            "status": self.status,
            "timestamp": self.timestamp,
            "message": self.message,
            "details": self.details,
        }


def progress_counts(state: RunState) -> dict[str, Any]:
    total = len(state.tasks)
    counts = {"pending": 0, "ready": 0, "running": 0, "paused": 0, "completed": 0, "failed": 0}
    for task in state.tasks.values():
        counts[task.status] += 1
    percentage = round(counts["completed"] / total * 100) if total else 0
    return {"total": total, **counts, "percentage": percentage}


class ProgressReporter:
    """
    Turns scheduler transitions into ProgressEvents and fans them out to sinks.

    A sink is any callable taking a ProgressEvent; coroutine sinks are awaited.
    Sink failures are logged and never propagate into the scheduler. Only the
    latest ``history_limit`` events are kept in ``history``.
    """

    def __init__(
        self, sinks: Iterable[ProgressSink] = (), *, history_limit: int = _HISTORY_LIMIT
    ) -> None:
        self._sinks: list[ProgressSink] = list(sinks)
        self.history: deque[ProgressEvent] = deque(maxlen=history_limit)

    def add_sink(self, sink: ProgressSink) -> None:
        self._sinks.append(sink)

    async def emit(self, event: ProgressEvent) -> None:
        self.history.append(event)
        logger.debug(f"progress: {event.message}")
        for sink in self._sinks:
            try:
                result = sink(event)
                if inspect.isawaitable(result):
                    await result
            except Exception:
                logger.exception(f"Progress sink {sink!r} failed")

    async def task_transition(
        self,
        state: RunState,
        task_id: str,
        *,
        reason: str | None = None,
        **details: Any,
    ) -> ProgressEvent:
        task = state.tasks[task_id]
        counts = progress_counts(state)
        title = task_id
        if state.graph is not None and task_id in state.graph:
            title = f"{task_id} ({state.graph[task_id].title})"
        message = f"Task {title} {task.status}"
        if reason:
            message = f"{message}: {reason}"
        if task.status in {"completed", "failed"}:
            message = f"{message} [{counts['completed']}/{counts['total']}, {counts['percentage']}%]"
        event = ProgressEvent(
            task_id=task_id,
            status=task.status,
            timestamp=now_iso(),
            message=message,
            details={"progress": counts, **details},
        )
        await self.emit(event)
        return event

    async def run_transition(
        self, state: RunState, *, reason: str | None = None, **details: Any
    ) -> ProgressEvent:
        counts = progress_counts(state)
        message = f"Run {state.run_id} {state.run_status}"
        if reason:
            message = f"{message}: {reason}"
        event = ProgressEvent(
            task_id=None,
            status=state.run_status,
            timestamp=now_iso(),
            message=message,
            kind="run",
            details={"progress": counts, **details},
        )
        await self.emit(event)
        return event


class ConsoleSink:
    """Prints one styled line per event with rich."""

    def __init__(self, console: Console | None = None, *, show_log_tail: int = 5) -> None:
        self.console = console or Console(highlight=False)
        self.show_log_tail = show_log_tail

    def __call__(self, event: ProgressEvent) -> None:
        style = _STATUS_STYLES.get(event.status, "white")
        clock = event.timestamp[11:19]
        self.console.print(f"[dim]{clock}[/dim] [{style}]{escape(event.message)}[/{style}]")
        log_tail = event.details.get("log_tail")
        if event.status == "failed" and log_tail and self.show_log_tail > 0:
            for line in log_tail[-self.show_log_tail :]:
                self.console.print(f"    {line}", style="dim", markup=False)


class JsonlSink:
    """Appends each event as one JSON line, e.g. ``<run_dir>/events.jsonl``."""

    def __init__(self, path: Path) -> None:
        self.path = path

    def __call__(self, event: ProgressEvent) -> None:
        with self.path.open("a", encoding="utf-8") as f:
            f.write(json.dumps(event.to_dict(), ensure_ascii=False) + "\n")
