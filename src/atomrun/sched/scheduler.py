"""
Event-driven execution state machine.

Run lifecycle::

    idle -> planning -> executing <-> paused
                           |            |
                           v            v
               completed / failed  completed / failed

One task per ``ExecutionScheduler.run`` loop owns all state mutation. Sandbox
exits, control commands and deferred-dispatch ticks arrive as events on a
single queue, so per-task transitions are serialized without locks.
"""

from __future__ import annotations

import asyncio
import time
from collections.abc import Callable, Iterable
from dataclasses import dataclass, replace
from datetime import datetime, timezone
from typing import Literal

from loguru import logger

from atomrun.dag.model import TaskGraph
from atomrun.dag.plan import ExecutionPlan, plan
from atomrun.exec.sandbox import SandboxHandle, SandboxRuntime, SandboxStatus
from atomrun.report.progress import ProgressReporter
from atomrun.state.model import RunState, RunStatus, RunSummary, TaskRun
from atomrun.util.errors import CapacityExceededError, SandboxError, SchedulerError, StateError
from atomrun.util.ids import new_run_id
from atomrun.util.time import now_iso

CheckpointHook = Callable[[RunState], None]
_EventKind = Literal["command", "exit", "tick"]

_RUN_TRANSITIONS: dict[str, set[str]] = {
    "idle": {"planning"},
    "planning": {"executing", "failed"},
    "executing": {"paused", "completed", "failed"},
    "paused": {"executing", "completed", "failed"},
    "completed": set(),
    "failed": set(),
}


@dataclass(frozen=True, slots=True)
class _Event:
    kind: _EventKind
    command: str | None = None
    task_id: str | None = None
    handle: SandboxHandle | None = None
    status: SandboxStatus | None = None


def _failure_reason(status: SandboxStatus) -> str:
    if status.phase == "exited":
        return f"exit code {status.exit_code}"
    return status.reason or status.describe()


class ExecutionScheduler:
    """
    Drives a validated TaskGraph to completion on a SandboxRuntime.

    Ready tasks are dispatched in plan order (critical path first, then
    topological position) while the runtime has free capacity. A task whose
    sandbox exits 0 completes and may promote its direct dependents to ready;
    any other outcome fails it, and its dependents stay pending. The run
    completes when every task completed and fails as soon as nothing is
    running and nothing is ready.

    ``checkpoint`` is called with the RunState after every transition.
    """

    def __init__(
        self,
        graph: TaskGraph,
        runtime: SandboxRuntime,
        *,
        run_id: str | None = None,
        state: RunState | None = None,
        execution_plan: ExecutionPlan | None = None,
        reporter: ProgressReporter | None = None,
        checkpoint: CheckpointHook | None = None,
        log_tail_lines: int = 20,
        stop_grace_sec: float | None = None,
        capacity_retry_sec: float = 0.5,
    ) -> None:
        if state is None:
            state = RunState.new(run_id or new_run_id(datetime.now(timezone.utc)), graph)
        else:
            if set(state.tasks) != set(graph.ids()):
                raise StateError("run state does not match the task graph")
            if state.run_status != "idle":
                raise StateError(f"run state must be idle to execute, got {state.run_status}")
            state.graph = graph
        self.graph = graph
        self.runtime = runtime
        self.state = state
        self.reporter = reporter or ProgressReporter()
        self.log_tail_lines = log_tail_lines
        self.stop_grace_sec = stop_grace_sec
        self.capacity_retry_sec = capacity_retry_sec
        self._plan = execution_plan
        self._checkpoint = checkpoint
        self._events: asyncio.Queue[_Event] = asyncio.Queue()
        self._watchers: dict[str, asyncio.Task[None]] = {}
        self._task_clock: dict[str, float] = {}
        self._tick: asyncio.TimerHandle | None = None
        self._clock: float | None = None
        self._started = False

    @property
    def plan(self) -> ExecutionPlan | None:
        return self._plan

    @property
    def run_status(self) -> RunStatus:
        return self.state.run_status

    def summary(self) -> RunSummary:
        return self.state.summary()

    def pause(self) -> None:
        """Stop dispatching; running sandboxes keep running and their tasks show as paused."""
        self._command("pause")

    def resume(self) -> None:
        self._command("resume")

    def stop(self) -> None:
        """Terminate every active sandbox and end the run as failed."""
        self._command("stop")

    def _command(self, name: str) -> None:
        if self.state.terminal:
            raise SchedulerError(f"cannot {name}: run already {self.state.run_status}")
        self._events.put_nowait(_Event("command", command=name))

    async def run(self) -> RunSummary:
        if self._started:
            raise SchedulerError("scheduler has already been started")
        self._started = True
        await self._transition_run("planning", reason=f"{len(self.graph)} tasks")
        if self._plan is None:
            self._plan = plan(self.graph)
        self.state.plan = self._plan
        self.state.started_at = now_iso()
        self._clock = time.monotonic()
        await self._transition_run(
            "executing",
            reason=(
                f"{len(self._plan.parallel_groups)} parallel groups, "
                f"critical path {' -> '.join(self._plan.critical_path)}"
            ),
        )
        await self._promote(self.graph.ids())
        try:
            while True:
                if self.state.run_status == "executing":
                    await self._dispatch_ready()
                if await self._settle():
                    break
                await self._handle(await self._events.get())
        except asyncio.CancelledError:
            logger.warning(f"Run {self.state.run_id} cancelled; terminating active sandboxes")
            if not self.state.terminal:
                await self._stop("run cancelled")
            raise
        finally:
            self._cleanup()
        return self.state.summary()

    async def _settle(self) -> bool:
        if self.state.terminal:
            return True
        total = len(self.state.tasks)
        if len(self.state.completed) == total:
            await self._transition_run("completed", reason=f"{total} tasks completed")
            return True
        if self.state.active_dispatch or self.state.ids_with_status("ready"):
            return False
        blocked = len(self.state.ids_with_status("pending"))
        await self._transition_run(
            "failed",
            reason=f"{len(self.state.failed)} failed, {blocked} blocked",
        )
        return True

    async def _dispatch_ready(self) -> None:
        assert self._plan is not None
        ready = sorted(self.state.ids_with_status("ready"), key=self._plan.dispatch_rank)
        for task_id in ready:
            if task_id in self.state.active_dispatch:
                continue
            if self.runtime.active_count >= self.runtime.capacity:
                if not self.state.active_dispatch:
                    self._schedule_tick()
                return
            try:
                handle = await self.runtime.dispatch(self.graph[task_id])
            except CapacityExceededError as exc:
                logger.info(f"Deferring dispatch of {task_id}: {exc}")
                self._schedule_tick()
                return
            except (SandboxError, OSError) as exc:
                logger.error(f"Dispatch of {task_id} failed: {exc}")
                await self._fail(task_id, f"dispatch failed: {exc}")
                continue
            await self._track(task_id, handle)

    async def _track(self, task_id: str, handle: SandboxHandle) -> None:
        run = self.state.tasks[task_id]
        run.status = "running"
        run.instance_id = handle.instance_id
        run.started_at = now_iso()
        self.state.active_dispatch[task_id] = handle
        self._task_clock[task_id] = time.monotonic()
        self._watchers[task_id] = asyncio.create_task(self._watch(task_id, handle))
        await self._task_changed(task_id, reason=f"sandbox {handle.instance_id}")

    async def _watch(self, task_id: str, handle: SandboxHandle) -> None:
        try:
            status = await self.runtime.wait(handle)
        except SandboxError as exc:
            status = SandboxStatus.errored(str(exc))
        self._events.put_nowait(_Event("exit", task_id=task_id, handle=handle, status=status))

    def _schedule_tick(self) -> None:
        if self._tick is not None:
            return
        loop = asyncio.get_running_loop()
        self._tick = loop.call_later(
            self.capacity_retry_sec, self._events.put_nowait, _Event("tick")
        )

    async def _handle(self, event: _Event) -> None:
        if event.kind == "tick":
            self._tick = None
        elif event.kind == "exit":
            assert event.task_id is not None and event.handle is not None
            assert event.status is not None
            if self.state.active_dispatch.get(event.task_id) is not event.handle:
                return
            await self._finish(event.task_id, event.handle, event.status)
        elif event.command == "pause":
            await self._pause()
        elif event.command == "resume":
            await self._resume()
        elif event.command == "stop":
            await self._stop("stop requested")

    async def _pause(self) -> None:
        if self.state.run_status != "executing":
            logger.info(f"Ignoring pause while run is {self.state.run_status}")
            return
        await self._transition_run("paused")
        for task_id in self.state.ids_with_status("running"):
            self.state.tasks[task_id].status = "paused"
            await self._task_changed(task_id)

    async def _resume(self) -> None:
        if self.state.run_status != "paused":
            logger.info(f"Ignoring resume while run is {self.state.run_status}")
            return
        await self._transition_run("executing")
        for task_id in self.state.ids_with_status("paused"):
            self.state.tasks[task_id].status = "running"
            await self._task_changed(task_id)

    async def _stop(self, reason: str) -> None:
        self.state.stopped = True
        if self._tick is not None:
            self._tick.cancel()
            self._tick = None
        active = list(self.state.active_dispatch.items())
        if active:
            logger.info(f"Terminating {len(active)} active sandbox(es)")
        await asyncio.gather(*(self._terminate(handle) for _, handle in active))
        for task_id, handle in active:
            watcher = self._watchers.pop(task_id, None)
            if watcher is not None:
                watcher.cancel()
            try:
                status = self.runtime.poll_status(handle)
            except SandboxError as exc:
                status = SandboxStatus.errored(str(exc))
            if not status.terminal:
                status = SandboxStatus.errored("termination not confirmed")
            await self._finish(task_id, handle, status, note="run stopped")
        await self._transition_run("failed", reason=reason)

    async def _terminate(self, handle: SandboxHandle) -> None:
        try:
            await self.runtime.terminate(handle, grace_sec=self.stop_grace_sec)
        except SandboxError as exc:
            logger.warning(f"Terminating {handle.instance_id} failed: {exc}")

    async def _finish(
        self,
        task_id: str,
        handle: SandboxHandle,
        status: SandboxStatus,
        *,
        note: str | None = None,
    ) -> None:
        self.state.active_dispatch.pop(task_id, None)
        self._watchers.pop(task_id, None)
        run = self.state.tasks[task_id]
        run.ended_at = now_iso()
        started = self._task_clock.pop(task_id, None)
        if started is not None:
            run.duration_sec = round(time.monotonic() - started, 3)
        run.exit_code = status.exit_code
        run.artifact_paths = list(handle.artifact_paths)
        log_tail = [] if status.succeeded else self._log_tail(handle)
        self.runtime.release(handle)
        if status.succeeded:
            run.status = "completed"
            self.state.completed.append(task_id)
            await self._task_changed(task_id, exit_code=run.exit_code)
            await self._promote(self.graph.dependents.get(task_id, ()))
            return
        reason = _failure_reason(status)
        if note:
            reason = f"{note}: {reason}"
        await self._fail(task_id, reason, log_tail=log_tail)

    async def _fail(self, task_id: str, reason: str, *, log_tail: list[str] | None = None) -> None:
        run = self.state.tasks[task_id]
        run.status = "failed"
        run.error = reason
        run.log_tail = log_tail or []
        self.state.failed.append(task_id)
        logger.warning(f"Task {task_id} failed: {reason}")
        await self._task_changed(
            task_id, reason=reason, exit_code=run.exit_code, log_tail=run.log_tail
        )

    async def _promote(self, task_ids: Iterable[str]) -> None:
        for task_id in task_ids:
            run = self.state.tasks[task_id]
            if run.status != "pending":
                continue
            deps = self.graph[task_id].depends_on
            if all(self.state.tasks[dep].status == "completed" for dep in deps):
                run.status = "ready"
                await self._task_changed(task_id)

    def _log_tail(self, handle: SandboxHandle) -> list[str]:
        try:
            return self.runtime.fetch_log(handle, self.log_tail_lines).text()
        except SandboxError:
            return []

    async def _transition_run(self, status: RunStatus, *, reason: str | None = None) -> None:
        current = self.state.run_status
        if status not in _RUN_TRANSITIONS[current]:
            raise SchedulerError(f"invalid run transition: {current} -> {status}")
        self.state.run_status = status
        if self.state.terminal:
            self.state.ended_at = now_iso()
            elapsed = 0.0 if self._clock is None else time.monotonic() - self._clock
            self.state.elapsed_sec = round(elapsed, 3)
        logger.info(f"Run {self.state.run_id}: {current} -> {status}")
        self._save_checkpoint()
        await self.reporter.run_transition(self.state, reason=reason)

    async def _task_changed(
        self, task_id: str, *, reason: str | None = None, **details: object
    ) -> None:
        logger.debug(f"Task {task_id} -> {self.state.tasks[task_id].status}")
        self._save_checkpoint()
        await self.reporter.task_transition(self.state, task_id, reason=reason, **details)

    def _save_checkpoint(self) -> None:
        self.state.updated_at = now_iso()
        if self._checkpoint is None:
            return
        try:
            self._checkpoint(self.state)
        except OSError as exc:
            logger.error(f"Checkpoint of run {self.state.run_id} failed: {exc}")

    def _cleanup(self) -> None:
        if self._tick is not None:
            self._tick.cancel()
            self._tick = None
        for watcher in self._watchers.values():
            watcher.cancel()
        self._watchers.clear()


def prepare_retry(
    previous: RunState, graph: TaskGraph, task_ids: Iterable[str] | None = None
) -> RunState:
    """
    Build an idle RunState that re-executes failed and interrupted tasks.

    Completed tasks keep their results. With ``task_ids`` only the named
    failed tasks are reset; other failed tasks stay failed, so their
    dependents stay blocked.
    """
    if set(previous.tasks) != set(graph.ids()):
        raise StateError("checkpoint does not match the task graph")
    selected = None if task_ids is None else set(task_ids)
    if selected is not None:
        unknown = sorted(selected - set(previous.tasks))
        if unknown:
            raise SchedulerError(f"unknown task id(s): {', '.join(unknown)}")
        not_failed = sorted(i for i in selected if previous.tasks[i].status != "failed")
        if not_failed:
            raise SchedulerError(f"task(s) not failed: {', '.join(not_failed)}")

    tasks: dict[str, TaskRun] = {}
    for task_id in graph.ids():
        old = previous.tasks[task_id]
        keep = old.status == "completed" or (
            old.status == "failed" and selected is not None and task_id not in selected
        )
        tasks[task_id] = replace(old) if keep else TaskRun()
    return RunState(
        run_id=previous.run_id,
        tasks=tasks,
        completed=[i for i in previous.completed if tasks[i].status == "completed"],
        failed=[i for i in previous.failed if tasks[i].status == "failed"],
        created_at=previous.created_at,
        graph=graph,
    )
