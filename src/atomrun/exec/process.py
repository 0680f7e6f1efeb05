"""Local process sandbox: one private workspace and one resource-limited shell per task."""

from __future__ import annotations

import asyncio
import os
import shutil
import signal
import sys
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from pathlib import Path
from subprocess import SubprocessError

from loguru import logger

from atomrun.config.schema import RuntimeConfig
from atomrun.dag.model import TaskRecord
from atomrun.exec.capture import stream_to_buffer
from atomrun.exec.sandbox import (
    LogBuffer,
    LogTail,
    SandboxHandle,
    SandboxRuntime,
    SandboxStatus,
    unknown_handle,
)
from atomrun.exec.timeout import describe_signal, stop_process, wait_with_timeout
from atomrun.util.errors import CapacityExceededError, SandboxError
from atomrun.util.ids import new_instance_id
from atomrun.util.path_guard import is_safe_relative_path, resolve_inside
from atomrun.util.paths import ensure_directory

_STREAM_DRAIN_SEC = 2.0
_PASSTHROUGH_ENV = ("PATH", "LANG", "LC_ALL", "TZ", "SYSTEMROOT")
_SHELL_SIGNAL_BASE = 128
_STDERR_SCAN_LINES = 20
_MEMORY_ERROR_MARKERS = (
    "MemoryError",
    "Cannot allocate memory",
    "out of memory",
    "std::bad_alloc",
)


@dataclass(slots=True, eq=False)
class _Instance:
    handle: SandboxHandle
    task: TaskRecord
    logs: LogBuffer
    status: SandboxStatus = field(default_factory=SandboxStatus.running)
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    done: asyncio.Event = field(default_factory=asyncio.Event)
    proc: asyncio.subprocess.Process | None = None
    monitor: asyncio.Task[None] | None = None
    terminating: bool = False


def _resource_limiter(memory_mb: int | None, cpu_sec: int | None) -> Callable[[], None] | None:
    if sys.platform == "win32" or (memory_mb is None and cpu_sec is None):
        return None
    import resource

    def _apply() -> None:
        if memory_mb is not None:
            limit = memory_mb * 1024 * 1024
            resource.setrlimit(resource.RLIMIT_AS, (limit, limit))
        if cpu_sec is not None:
            resource.setrlimit(resource.RLIMIT_CPU, (cpu_sec, cpu_sec + 1))

    return _apply


class ProcessSandboxRuntime(SandboxRuntime):
    """
    Runs each task's command with ``/bin/sh -c`` in its own workspace directory.

    Workspaces live under ``workspace_root/<instance_id>`` with mode 0700 and
    receive only the task's declared required and inline files. Memory and CPU
    bounds are applied with rlimits in the child before exec. Output lines go
    into a bounded LogBuffer and, when ``log_dir`` is set, into
    ``<task_id>.out.log`` / ``<task_id>.err.log``. Declared output files are
    copied to ``artifacts_dir/<task_id>/`` after exit.

    Network isolation cannot be enforced by this backend; use the docker
    backend when tasks must run without network access.
    """

    enforces_network_isolation = False

    def __init__(
        self,
        config: RuntimeConfig,
        workspace_root: Path,
        *,
        log_dir: Path | None = None,
        artifacts_dir: Path | None = None,
    ) -> None:
        self.config = config
        self.workspace_root = workspace_root
        self.log_dir = log_dir
        self.artifacts_dir = artifacts_dir
        self.poll_interval_sec = config.poll_interval_sec
        self._instances: dict[str, _Instance] = {}
        self._table_lock = asyncio.Lock()
        self._network_warned = False

    @property
    def capacity(self) -> int:
        return self.config.max_instances

    @property
    def active_count(self) -> int:
        return sum(1 for inst in self._instances.values() if not inst.status.terminal)

    def _lookup(self, handle: SandboxHandle) -> _Instance:
        inst = self._instances.get(handle.instance_id)
        if inst is None:
            raise unknown_handle(handle)
        return inst

    async def dispatch(self, task: TaskRecord) -> SandboxHandle:
        async with self._table_lock:
            if self.active_count >= self.capacity:
                raise CapacityExceededError(self.capacity)
            instance_id = new_instance_id(task.id)
            handle = SandboxHandle(
                instance_id=instance_id,
                task_id=task.id,
                workspace=self.workspace_root / instance_id,
            )
            inst = _Instance(handle, task, LogBuffer(self.config.log_buffer_lines))
            self._instances[instance_id] = inst

        self._append_log_header(inst)
        if not (task.command.network or self.enforces_network_isolation or self._network_warned):
            logger.warning("Process backend cannot isolate sandbox network access")
            self._network_warned = True
        try:
            self.prepare_workspace(task, handle.workspace)
        except (OSError, SandboxError) as exc:
            inst.logs.append("system", f"failed to prepare workspace: {exc}")
            await self._finish(inst, SandboxStatus.errored(f"workspace preparation failed: {exc}"))
            return handle

        argv = self.build_argv(task, handle)
        logger.debug(f"Spawning sandbox {instance_id} for task {task.id}")
        try:
            proc = await asyncio.create_subprocess_exec(
                *argv,
                cwd=str(handle.workspace),
                env=self.build_env(task, handle),
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                stdin=asyncio.subprocess.DEVNULL,
                start_new_session=True,
                preexec_fn=self.preexec(),
            )
        except (OSError, ValueError, SubprocessError) as exc:
            inst.logs.append("system", f"failed to start process: {exc}")
            await self._finish(inst, SandboxStatus.errored(f"spawn failed: {exc}", exit_code=127))
            return handle

        inst.proc = proc
        inst.monitor = asyncio.create_task(self._monitor(inst))
        return handle

    def poll_status(self, handle: SandboxHandle) -> SandboxStatus:
        return self._lookup(handle).status

    def fetch_log(self, handle: SandboxHandle, tail: int = 50) -> LogTail:
        return self._lookup(handle).logs.tail(tail)

    async def wait(self, handle: SandboxHandle) -> SandboxStatus:
        inst = self._lookup(handle)
        await inst.done.wait()
        return inst.status

    async def terminate(self, handle: SandboxHandle, *, grace_sec: float | None = None) -> None:
        inst = self._lookup(handle)
        grace = self.config.stop_grace_sec if grace_sec is None else grace_sec
        async with inst.lock:
            if inst.status.terminal:
                return
            inst.terminating = True
            if inst.proc is not None:
                logger.debug(f"Terminating sandbox {handle.instance_id}")
                await self.stop(inst.proc, handle, grace)
        await inst.done.wait()

    async def shutdown(self) -> None:
        active = [inst.handle for inst in self._instances.values() if not inst.status.terminal]
        await asyncio.gather(*(self.terminate(handle) for handle in active))

    def release(self, handle: SandboxHandle) -> None:
        inst = self._instances.get(handle.instance_id)
        if inst is not None and inst.status.terminal:
            del self._instances[handle.instance_id]

    def prepare_workspace(self, task: TaskRecord, workspace: Path) -> None:
        ensure_directory(self.workspace_root, parents=True)
        ensure_directory(workspace, mode=0o700)
        command = task.command
        for rel in command.required_files:
            if self.config.source_dir is None:
                raise SandboxError(f"required file '{rel}' declared but no source_dir configured")
            src = resolve_inside(self.config.source_dir, rel)
            if src is None or not src.exists():
                raise SandboxError(f"required file not found: {rel}")
            dest = workspace / rel
            dest.parent.mkdir(parents=True, exist_ok=True)
            if src.is_dir():
                shutil.copytree(src, dest, symlinks=True, dirs_exist_ok=True)
            else:
                shutil.copy2(src, dest)
        for rel, content in command.files.items():
            dest = workspace / rel
            dest.parent.mkdir(parents=True, exist_ok=True)
            dest.write_text(content, encoding="utf-8")

    def build_argv(self, task: TaskRecord, handle: SandboxHandle) -> list[str]:
        return [self.config.shell, "-c", task.command.run]

    def build_env(self, task: TaskRecord, handle: SandboxHandle) -> dict[str, str]:
        env = {key: os.environ[key] for key in _PASSTHROUGH_ENV if key in os.environ}
        env["HOME"] = str(handle.workspace)
        env["ATOMRUN_TASK_ID"] = task.id
        env["ATOMRUN_INSTANCE_ID"] = handle.instance_id
        env.update(task.command.env)
        return env

    def preexec(self) -> Callable[[], None] | None:
        return _resource_limiter(self.config.memory_limit_mb, self.config.cpu_time_limit_sec)

    async def stop(
        self, proc: asyncio.subprocess.Process, handle: SandboxHandle, grace_sec: float
    ) -> None:
        await stop_process(proc, grace_sec)

    def classify_exit(
        self,
        returncode: int,
        *,
        timed_out: bool,
        terminated: bool,
        stderr_tail: Sequence[str] = (),
    ) -> SandboxStatus:
        """
        Map a process exit onto a sandbox status.

        Limit violations are errors, not task exits: a signal death is reported
        directly (negative returncode) or by the shell as ``128 + signum``, and an
        interpreter that catches an allocation failure exits normally with a
        memory error on stderr.
        """
        if timed_out:
            return SandboxStatus.errored("timed out", exit_code=returncode)
        if terminated:
            return SandboxStatus.errored("terminated", exit_code=returncode)
        if returncode < 0:
            return SandboxStatus.errored(describe_signal(returncode), exit_code=returncode)
        signum = returncode - _SHELL_SIGNAL_BASE
        if signum > 0 and self._limited_signal(signum):
            return SandboxStatus.errored(describe_signal(-signum), exit_code=returncode)
        if returncode != 0 and self.config.memory_limit_mb is not None:
            if any(marker in line for line in stderr_tail for marker in _MEMORY_ERROR_MARKERS):
                return SandboxStatus.errored("memory limit exceeded", exit_code=returncode)
        return SandboxStatus.exited(returncode)

    def _limited_signal(self, signum: int) -> bool:
        cpu = self.config.cpu_time_limit_sec is not None
        memory = self.config.memory_limit_mb is not None
        limits = {signal.SIGXCPU: cpu, signal.SIGKILL: cpu or memory, signal.SIGSEGV: memory}
        return limits.get(signum, False)

    async def _monitor(self, inst: _Instance) -> None:
        try:
            await self._observe(inst)
        except Exception as exc:
            logger.exception(f"Sandbox monitor failed for {inst.handle.instance_id}")
            inst.logs.append("system", f"runtime exception: {exc}")
            async with inst.lock:
                await self._finish(inst, SandboxStatus.errored(f"runtime exception: {exc}"))

    async def _observe(self, inst: _Instance) -> None:
        proc = inst.proc
        assert proc is not None
        task_id = inst.task.id
        out_path = self.log_dir / f"{task_id}.out.log" if self.log_dir else None
        err_path = self.log_dir / f"{task_id}.err.log" if self.log_dir else None
        streams = asyncio.gather(
            stream_to_buffer(proc.stdout, inst.logs, "stdout", out_path),
            stream_to_buffer(proc.stderr, inst.logs, "stderr", err_path),
        )
        timeout = inst.task.command.timeout_sec or self.config.timeout_sec
        try:
            timed_out, code = await wait_with_timeout(
                proc, timeout, grace_sec=self.config.stop_grace_sec
            )
        except asyncio.CancelledError:
            await stop_process(proc, 0.0)
            streams.cancel()
            raise
        try:
            await asyncio.wait_for(streams, timeout=_STREAM_DRAIN_SEC)
        except TimeoutError:
            inst.logs.append("system", "output streams still open after exit; detached")
        if timed_out:
            inst.logs.append("system", f"timed out after {timeout}s")
        recent = inst.logs.tail(_STDERR_SCAN_LINES).lines
        stderr_tail = [line.text for line in recent if line.stream == "stderr"]
        status = self.classify_exit(
            code, timed_out=timed_out, terminated=inst.terminating, stderr_tail=stderr_tail
        )
        inst.handle.artifact_paths = self._collect_outputs(inst)
        async with inst.lock:
            await self._finish(inst, status)

    async def _finish(self, inst: _Instance, status: SandboxStatus) -> None:
        if inst.status.terminal:
            return
        inst.status = status
        inst.done.set()
        logger.debug(f"Sandbox {inst.handle.instance_id} finished: {status.describe()}")

    def _append_log_header(self, inst: _Instance) -> None:
        if self.log_dir is None:
            return
        header = f"\n===== instance {inst.handle.instance_id} =====\n"
        for suffix in ("out", "err"):
            path = self.log_dir / f"{inst.task.id}.{suffix}.log"
            try:
                with path.open("a", encoding="utf-8") as f:
                    f.write(header)
            except OSError:
                continue

    def _collect_outputs(self, inst: _Instance) -> list[str]:
        patterns = inst.task.command.output_files
        if not patterns or self.artifacts_dir is None:
            return []
        workspace = inst.handle.workspace
        task_root = self.artifacts_dir / inst.task.id
        copied: list[str] = []
        for pattern in patterns:
            try:
                matches = list(workspace.glob(pattern))
            except (OSError, ValueError):
                continue
            for match in matches:
                if match.is_symlink() or not match.is_file():
                    continue
                rel = match.relative_to(workspace).as_posix()
                if not is_safe_relative_path(rel):
                    continue
                dest = task_root / rel
                try:
                    dest.parent.mkdir(parents=True, exist_ok=True)
                    shutil.copy2(match, dest)
                except OSError:
                    continue
                copied.append(str(dest.relative_to(self.artifacts_dir.parent)))
        return sorted(set(copied))

