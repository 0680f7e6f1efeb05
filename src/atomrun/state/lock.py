from __future__ import annotations

import errno
import os
import stat
import time
from collections.abc import Iterator
from contextlib import contextmanager, suppress
from pathlib import Path

from atomrun.util.errors import RunConflictError
from atomrun.util.path_guard import has_symlink_ancestor, is_symlink_path

LOCK_FILENAME = ".lock"


def _lock_is_stale(lock_path: Path, stale_sec: float) -> bool:
    try:
        meta = lock_path.lstat()
    except OSError:
        return False
    if not stat.S_ISREG(meta.st_mode):
        return False
    return time.time() - meta.st_mtime > stale_sec


def _same_file(path: Path, ino: int, dev: int) -> bool:
    try:
        current = path.lstat()
    except OSError:
        return False
    return stat.S_ISREG(current.st_mode) and current.st_ino == ino and current.st_dev == dev


@contextmanager
def run_lock(
    run_dir: Path, stale_sec: float = 3600, *, retries: int = 0, retry_interval: float = 0.2
) -> Iterator[None]:
    """Hold ``<run_dir>/.lock`` for the duration of the block; one executor per run."""
    if has_symlink_ancestor(run_dir) or is_symlink_path(run_dir):
        raise OSError(f"run directory path must not include symlink: {run_dir}")
    lock_path = run_dir / LOCK_FILENAME
    open_flags = os.O_CREAT | os.O_EXCL | os.O_WRONLY
    if hasattr(os, "O_NOFOLLOW"):
        open_flags |= os.O_NOFOLLOW

    attempt = 0
    while True:
        if is_symlink_path(lock_path):
            raise OSError(f"lock path must not be symlink: {lock_path}")
        try:
            fd = os.open(lock_path, open_flags)
            break
        except FileExistsError as err:
            if _lock_is_stale(lock_path, stale_sec):
                with suppress(OSError):
                    lock_path.unlink(missing_ok=True)
                continue
            if attempt >= retries:
                raise RunConflictError(f"run is locked by another process: {lock_path}") from err
            attempt += 1
            time.sleep(retry_interval)
        except OSError as err:
            if err.errno == errno.ELOOP:
                raise OSError(f"lock path must not be symlink: {lock_path}") from err
            raise

    try:
        meta = os.fstat(fd)
        os.write(fd, str(os.getpid()).encode("utf-8"))
    except OSError:
        with suppress(OSError):
            os.close(fd)
        with suppress(OSError):
            lock_path.unlink(missing_ok=True)
        raise
    try:
        yield
    finally:
        with suppress(OSError):
            os.close(fd)
        if _same_file(lock_path, meta.st_ino, meta.st_dev):
            with suppress(OSError):
                lock_path.unlink(missing_ok=True)
