from __future__ import annotations

import asyncio
import os
import signal


def send_signal(proc: asyncio.subprocess.Process, sig: int) -> None:
    """Signal the process group started for ``proc``; fall back to the process itself."""
    if proc.returncode is not None:
        return
    try:
        os.killpg(proc.pid, sig)
        return
    except (ProcessLookupError, PermissionError, OSError):
        pass
    try:
        proc.send_signal(sig)
    except ProcessLookupError:
        return


async def stop_process(proc: asyncio.subprocess.Process, grace_sec: float) -> int:
    """SIGTERM, wait ``grace_sec``, then SIGKILL. Safe on an already-exited process."""
    if proc.returncode is not None:
        return proc.returncode
    send_signal(proc, signal.SIGTERM)
    try:
        return await asyncio.wait_for(proc.wait(), timeout=grace_sec)
    except TimeoutError:
        send_signal(proc, signal.SIGKILL)
        return await proc.wait()


async def wait_with_timeout(
    proc: asyncio.subprocess.Process, timeout_sec: float | None, *, grace_sec: float = 1.0
) -> tuple[bool, int]:
    """Wait for ``proc``; on timeout stop it and return ``(True, returncode)``."""
    if timeout_sec is None:
        return False, await proc.wait()
    try:
        code = await asyncio.wait_for(proc.wait(), timeout=timeout_sec)
        return False, code
    except TimeoutError:
        return True, await stop_process(proc, grace_sec)


def describe_signal(returncode: int) -> str:
    """Reason text for a process that died from a signal (negative returncode)."""
    signum = -returncode
    if signum == signal.SIGXCPU:
        return "cpu time limit exceeded"
    if signum == signal.SIGKILL:
        return "killed (memory limit exceeded or forced stop)"
    if signum == signal.SIGSEGV:
        return "segmentation fault (possible memory limit)"
    try:
        name = signal.Signals(signum).name
    except ValueError:
        name = str(signum)
    return f"terminated by signal {name}"
