"""Sandbox runtime capability interface shared by every execution backend."""

from __future__ import annotations

import asyncio
from abc import ABC, abstractmethod
from collections import deque
from dataclasses import dataclass, field
from pathlib import Path
from typing import Literal

from atomrun.dag.model import TaskRecord
from atomrun.util.errors import SandboxNotFoundError
from atomrun.util.time import now_iso

SandboxPhase = Literal["running", "exited", "errored"]
StreamName = Literal["stdout", "stderr", "system"]


@dataclass(frozen=True, slots=True)
class SandboxStatus:
    phase: SandboxPhase
    exit_code: int | None = None
    reason: str | None = None

    @property
    def terminal(self) -> bool:
        return self.phase != "running"

    @property
    def succeeded(self) -> bool:
        return self.phase == "exited" and self.exit_code == 0

    @classmethod
    def running(cls) -> SandboxStatus:
        return cls("running")

    @classmethod
    def exited(cls, code: int) -> SandboxStatus:
        return cls("exited", exit_code=code)

    @classmethod
    def errored(cls, reason: str, exit_code: int | None = None) -> SandboxStatus:
        return cls("errored", exit_code=exit_code, reason=reason)

    def describe(self) -> str:
        if self.phase == "exited":
            return f"exited({self.exit_code})"
        if self.phase == "errored":
            return f"errored({self.reason})"
        return "running"


@dataclass(frozen=True, slots=True)
class LogLine:
    timestamp: str
    stream: StreamName
    text: str


@dataclass(frozen=True, slots=True)
class LogTail:
    lines: list[LogLine]
    total_lines: int

    def text(self) -> list[str]:
        return [line.text for line in self.lines]


class LogBuffer:
    """Append-only line buffer that drops the oldest entries beyond ``capacity``."""

    def __init__(self, capacity: int = 1000) -> None:
        if capacity < 1:
            raise ValueError("log buffer capacity must be >= 1")
        self._lines: deque[LogLine] = deque(maxlen=capacity)
        self._total = 0

    def append(self, stream: StreamName, text: str) -> None:
        self._lines.append(LogLine(now_iso(), stream, text))
        self._total += 1

    @property
    def total_lines(self) -> int:
        return self._total

    def tail(self, n: int) -> LogTail:
        if n <= 0:
            return LogTail([], self._total)
        lines = list(self._lines)
        return LogTail(lines[-n:], self._total)


@dataclass(slots=True, eq=False)
class SandboxHandle:
    instance_id: str
    task_id: str
    workspace: Path
    started_at: str = field(default_factory=now_iso)
    artifact_paths: list[str] = field(default_factory=list)


class SandboxRuntime(ABC):
    """
    One isolated execution unit per dispatched task.

    Implementations keep an instance table keyed by ``instance_id``. ``dispatch``
    must raise CapacityExceededError instead of queueing once ``capacity``
    instances are running, and ``terminate`` must be a no-op on a handle that
    already reached a terminal status.
    """

    poll_interval_sec: float = 0.1

    @property
    @abstractmethod
    def capacity(self) -> int: ...

    @property
    @abstractmethod
    def active_count(self) -> int: ...

    @abstractmethod
    async def dispatch(self, task: TaskRecord) -> SandboxHandle: ...

    @abstractmethod
    def poll_status(self, handle: SandboxHandle) -> SandboxStatus: ...

    @abstractmethod
    def fetch_log(self, handle: SandboxHandle, tail: int = 50) -> LogTail: ...

    @abstractmethod
    async def terminate(self, handle: SandboxHandle, *, grace_sec: float | None = None) -> None: ...

    async def wait(self, handle: SandboxHandle) -> SandboxStatus:
        while True:
            status = self.poll_status(handle)
            if status.terminal:
                return status
            await asyncio.sleep(self.poll_interval_sec)

    async def shutdown(self) -> None:
        """Terminate every sandbox still known to the runtime."""

    def release(self, handle: SandboxHandle) -> None:
        """Forget a finished sandbox; later lookups of ``handle`` raise SandboxNotFoundError."""


def unknown_handle(handle: SandboxHandle) -> SandboxNotFoundError:
    return SandboxNotFoundError(f"sandbox instance not found: {handle.instance_id}")
