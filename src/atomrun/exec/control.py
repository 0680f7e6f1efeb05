"""File-based pause/resume/stop requests for a run executing in another process."""

from __future__ import annotations

import asyncio
import errno
import os
import stat
from collections.abc import Callable
from contextlib import suppress
from pathlib import Path
from typing import Literal, cast

from loguru import logger

from atomrun.util.errors import AtomrunError
from atomrun.util.path_guard import has_symlink_ancestor, is_symlink_path

ControlCommand = Literal["pause", "resume", "stop"]
CONTROL_COMMANDS: set[str] = {"pause", "resume", "stop"}
CONTROL_FILENAME = "control.request"


def write_control_request(run_dir: Path, command: ControlCommand) -> None:
    if command not in CONTROL_COMMANDS:
        raise ValueError(f"unknown control command: {command}")
    path = run_dir / CONTROL_FILENAME
    if has_symlink_ancestor(path):
        raise OSError("control request path contains symlink component")
    if is_symlink_path(path):
        raise OSError("control request path must not be symlink")
    flags = os.O_WRONLY | os.O_CREAT | os.O_TRUNC
    if hasattr(os, "O_NONBLOCK"):
        flags |= os.O_NONBLOCK
    if hasattr(os, "O_NOFOLLOW"):
        flags |= os.O_NOFOLLOW
    fd: int | None = None
    try:
        fd = os.open(path, flags, 0o600)
        if not stat.S_ISREG(os.fstat(fd).st_mode):
            raise OSError("control request path must be regular file")
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            fd = None
            f.write(f"{command}\n")
    except OSError as exc:
        if exc.errno == errno.ELOOP:
            raise OSError("control request path must not be symlink") from exc
        if exc.errno == errno.ENXIO:
            raise OSError("control request path must be regular file") from exc
        raise
    finally:
        if fd is not None:
            with suppress(OSError):
                os.close(fd)


def consume_control_request(run_dir: Path) -> ControlCommand | None:
    """Read and remove a pending request; unknown or unreadable content is dropped."""
    path = run_dir / CONTROL_FILENAME
    if has_symlink_ancestor(path):
        return None
    try:
        meta = path.lstat()
    except OSError:
        return None
    if not stat.S_ISREG(meta.st_mode):
        return None
    try:
        content = path.read_text(encoding="utf-8").strip()
    except (OSError, UnicodeError):
        content = ""
    with suppress(OSError):
        path.unlink(missing_ok=True)
    if content not in CONTROL_COMMANDS:
        if content:
            logger.warning(f"Ignoring unknown control request: {content!r}")
        return None
    return cast(ControlCommand, content)


async def watch_control_requests(
    run_dir: Path,
    handler: Callable[[ControlCommand], None],
    *,
    interval: float = 0.2,
) -> None:
    """Poll ``run_dir`` and forward each request to ``handler`` until cancelled."""
    while True:
        command = consume_control_request(run_dir)
        if command is not None:
            logger.info(f"Control request received: {command}")
            try:
                handler(command)
            except AtomrunError as exc:
                logger.warning(f"Control request '{command}' rejected: {exc}")
        await asyncio.sleep(interval)
