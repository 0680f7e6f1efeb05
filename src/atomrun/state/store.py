"""Atomic checkpoint persistence for RunState (``<run_dir>/state.json``)."""

from __future__ import annotations

import errno
import json
import os
import stat
from contextlib import suppress
from pathlib import Path

from atomrun.state.model import RUN_STATUS_VALUES, TASK_STATUS_VALUES, RunState
from atomrun.util.errors import StateError

STATE_FILENAME = "state.json"


def _fsync_directory(path: Path) -> None:
    try:
        fd = os.open(str(path), os.O_RDONLY)
    except OSError:
        return
    try:
        os.fsync(fd)
    except OSError:
        pass
    finally:
        with suppress(OSError):
            os.close(fd)


def _validate_state_shape(raw: dict[str, object]) -> None:
    run_id = raw.get("run_id")
    if not isinstance(run_id, str) or not run_id.strip():
        raise StateError("invalid state field: run_id")
    if raw.get("run_status") not in RUN_STATUS_VALUES:
        raise StateError("invalid state field: run_status")
    tasks = raw.get("tasks")
    if not isinstance(tasks, dict) or not tasks:
        raise StateError("invalid state field: tasks")
    for task_id, task in tasks.items():
        if not isinstance(task_id, str) or not isinstance(task, dict):
            raise StateError("invalid state field: tasks")
        if task.get("status") not in TASK_STATUS_VALUES:
            raise StateError(f"invalid state field: tasks.{task_id}.status")
    for key, expected in (("completed", "completed"), ("failed", "failed")):
        ids = raw.get(key)
        if not isinstance(ids, list):
            raise StateError(f"invalid state field: {key}")
        for task_id in ids:
            task = tasks.get(task_id) if isinstance(task_id, str) else None
            if not isinstance(task, dict) or task.get("status") != expected:
                raise StateError(f"invalid state field: {key}")
        if len(set(ids)) != len(ids):
            raise StateError(f"invalid state field: {key}")


def load_state(run_dir: Path) -> RunState:
    state_path = run_dir / STATE_FILENAME
    try:
        meta = state_path.lstat()
    except FileNotFoundError as exc:
        raise StateError(f"state file not found: {state_path}") from exc
    except OSError as exc:
        raise StateError(f"failed to read state file: {state_path}") from exc
    if stat.S_ISLNK(meta.st_mode):
        raise StateError(f"state file must not be symlink: {state_path}")
    if not stat.S_ISREG(meta.st_mode):
        raise StateError(f"failed to read state file: {state_path}")

    open_flags = os.O_RDONLY
    if hasattr(os, "O_NOFOLLOW"):
        open_flags |= os.O_NOFOLLOW
    fd: int | None = None
    try:
        fd = os.open(str(state_path), open_flags)
        with os.fdopen(fd, "r", encoding="utf-8") as f:
            fd = None
            raw = json.loads(f.read())
    except UnicodeError as exc:
        raise StateError(f"failed to decode state file as utf-8: {state_path}") from exc
    except json.JSONDecodeError as exc:
        raise StateError(f"invalid state json: {state_path}") from exc
    except OSError as exc:
        if exc.errno == errno.ELOOP:
            raise StateError(f"state file must not be symlink: {state_path}") from exc
        raise StateError(f"failed to read state file: {state_path}") from exc
    finally:
        if fd is not None:
            with suppress(OSError):
                os.close(fd)
    if not isinstance(raw, dict):
        raise StateError("state root must be object")
    _validate_state_shape(raw)
    return RunState.from_dict(raw)


def save_state_atomic(run_dir: Path, state: RunState) -> None:
    state_path = run_dir / STATE_FILENAME
    tmp_path = run_dir / f"{STATE_FILENAME}.tmp"
    payload = json.dumps(state.to_dict(), ensure_ascii=False, indent=2, sort_keys=True)
    flags = os.O_WRONLY | os.O_CREAT | os.O_TRUNC
    if hasattr(os, "O_NOFOLLOW"):
        flags |= os.O_NOFOLLOW
    try:
        fd = os.open(str(tmp_path), flags, 0o600)
    except OSError as exc:
        if exc.errno == errno.ELOOP:
            raise OSError(f"temporary state path must not be symlink: {tmp_path}") from exc
        raise
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(payload + "\n")
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp_path, state_path)
    except OSError:
        with suppress(OSError):
            tmp_path.unlink(missing_ok=True)
        raise
    _fsync_directory(run_dir)
