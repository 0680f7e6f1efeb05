from __future__ import annotations

import asyncio
import os
import stat
from contextlib import suppress
from pathlib import Path
from typing import BinaryIO

from atomrun.exec.sandbox import LogBuffer, StreamName
from atomrun.util.path_guard import has_symlink_ancestor, is_symlink_path

_MAX_LINE_BYTES = 64 * 1024


def _open_log_file(file_path: Path) -> BinaryIO | None:
    if has_symlink_ancestor(file_path):
        return None
    try:
        file_path.parent.mkdir(parents=True, exist_ok=True)
    except (OSError, RuntimeError):
        return None
    if is_symlink_path(file_path.parent) or is_symlink_path(file_path):
        return None

    flags = os.O_WRONLY | os.O_CREAT | os.O_APPEND
    if hasattr(os, "O_NONBLOCK"):
        flags |= os.O_NONBLOCK
    if hasattr(os, "O_NOFOLLOW"):
        flags |= os.O_NOFOLLOW
    fd: int | None = None
    try:
        fd = os.open(str(file_path), flags, 0o600)
        if not stat.S_ISREG(os.fstat(fd).st_mode):
            return None
        handle = os.fdopen(fd, "ab")
        fd = None
        return handle
    except (OSError, RuntimeError):
        return None
    finally:
        if fd is not None:
            with suppress(OSError, RuntimeError):
                os.close(fd)


async def stream_to_buffer(
    stream: asyncio.StreamReader | None,
    buffer: LogBuffer,
    name: StreamName,
    file_path: Path | None = None,
) -> None:
    """Copy a process stream line by line into ``buffer`` and, best effort, ``file_path``."""
    if stream is None:
        return
    sink = _open_log_file(file_path) if file_path is not None else None
    try:
        while True:
            try:
                raw = await stream.readuntil(b"\n")
            except asyncio.IncompleteReadError as exc:
                raw = exc.partial
            except asyncio.LimitOverrunError as exc:
                raw = await stream.readexactly(min(exc.consumed, _MAX_LINE_BYTES))
            if not raw:
                break
            buffer.append(name, raw.decode("utf-8", errors="replace").rstrip("\r\n"))
            if sink is not None:
                try:
                    sink.write(raw)
                    sink.flush()
                except OSError:
                    sink = None
    finally:
        if sink is not None:
            with suppress(OSError):
                sink.close()
