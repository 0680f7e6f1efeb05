from __future__ import annotations

import errno
import math
import os
import stat
from collections.abc import Mapping
from contextlib import suppress
from dataclasses import fields, replace
from pathlib import Path
from typing import Any

import yaml

from atomrun.config.schema import RuntimeConfig
from atomrun.util.errors import ConfigError, MalformedTaskError
from atomrun.util.path_guard import has_symlink_ancestor

_BACKENDS = {"process", "docker"}
_CONFIG_KEYS = {f.name for f in fields(RuntimeConfig)}


def _is_real_number(value: object) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool) and math.isfinite(value)


def _is_positive_int(value: object) -> bool:
    return isinstance(value, int) and not isinstance(value, bool) and value >= 1


def read_text_file(path: Path) -> str:
    """Read a regular, non-symlink UTF-8 file or raise ConfigError."""
    if has_symlink_ancestor(path):
        raise ConfigError(f"file path must not include symlink: {path}")
    try:
        meta = path.lstat()
    except FileNotFoundError as exc:
        raise ConfigError(f"file not found: {path}") from exc
    except (OSError, RuntimeError) as exc:
        raise ConfigError(f"failed to read file: {path}") from exc
    if stat.S_ISLNK(meta.st_mode):
        raise ConfigError(f"file must not be symlink: {path}")
    if not stat.S_ISREG(meta.st_mode):
        raise ConfigError(f"failed to read file: {path}")

    open_flags = os.O_RDONLY
    if hasattr(os, "O_NONBLOCK"):
        open_flags |= os.O_NONBLOCK
    if hasattr(os, "O_NOFOLLOW"):
        open_flags |= os.O_NOFOLLOW
    fd: int | None = None
    try:
        fd = os.open(str(path), open_flags)
        with os.fdopen(fd, "r", encoding="utf-8") as f:
            fd = None
            return f.read()
    except UnicodeError as exc:
        raise ConfigError(f"failed to decode file as utf-8: {path}") from exc
    except OSError as exc:
        if exc.errno == errno.ELOOP:
            raise ConfigError(f"file must not be symlink: {path}") from exc
        raise ConfigError(f"failed to read file: {path}") from exc
    finally:
        if fd is not None:
            with suppress(OSError):
                os.close(fd)


def _parse_yaml(content: str, path: Path) -> Any:
    try:
        return yaml.safe_load(content)
    except yaml.YAMLError as exc:
        raise ConfigError(f"failed to parse {path}: {exc}") from exc


def validate_config(raw: Mapping[str, Any], base: RuntimeConfig | None = None) -> RuntimeConfig:
    if any(not isinstance(key, str) for key in raw):
        raise ConfigError("config keys must be strings")
    unknown = set(raw) - _CONFIG_KEYS
    if unknown:
        raise ConfigError(f"config contains unknown fields: {sorted(unknown)}")
    values: dict[str, Any] = {}

    if "backend" in raw:
        if raw["backend"] not in _BACKENDS:
            raise ConfigError(f"backend must be one of {sorted(_BACKENDS)}")
        values["backend"] = raw["backend"]
    for key in ("max_instances", "log_buffer_lines"):
        if key in raw:
            if not _is_positive_int(raw[key]):
                raise ConfigError(f"{key} must be int >= 1")
            values[key] = raw[key]
    for key in ("memory_limit_mb", "cpu_time_limit_sec"):
        if key in raw:
            if raw[key] is not None and not _is_positive_int(raw[key]):
                raise ConfigError(f"{key} must be int >= 1 or null")
            values[key] = raw[key]
    for key in ("cpus", "stop_grace_sec", "poll_interval_sec"):
        if key in raw:
            if not _is_real_number(raw[key]) or raw[key] <= 0:
                raise ConfigError(f"{key} must be > 0")
            values[key] = float(raw[key])
    if "timeout_sec" in raw:
        timeout = raw["timeout_sec"]
        if timeout is not None and (not _is_real_number(timeout) or timeout <= 0):
            raise ConfigError("timeout_sec must be > 0 or null")
        values["timeout_sec"] = None if timeout is None else float(timeout)
    for key in ("docker_image", "shell"):
        if key in raw:
            if not isinstance(raw[key], str) or not raw[key].strip():
                raise ConfigError(f"{key} must be non-empty string")
            values[key] = raw[key]
    if "source_dir" in raw:
        source = raw["source_dir"]
        if source is not None and (not isinstance(source, str) or not source.strip()):
            raise ConfigError("source_dir must be non-empty string or null")
        values["source_dir"] = None if source is None else Path(source)

    return replace(base or RuntimeConfig(), **values)


def load_config(path: Path | None) -> RuntimeConfig:
    """Load runtime configuration from YAML; ``None`` yields the defaults."""
    if path is None:
        return RuntimeConfig()
    raw = _parse_yaml(read_text_file(path), path)
    if raw is None:
        return RuntimeConfig()
    if not isinstance(raw, dict):
        raise ConfigError("config root must be a mapping")
    config = validate_config(raw)
    if config.source_dir is not None and not config.source_dir.is_absolute():
        config.source_dir = path.parent / config.source_dir
    return config


def load_task_set(path: Path) -> dict[str, Any]:
    """Read a raw atomized task set from a YAML or JSON file."""
    try:
        raw = _parse_yaml(read_text_file(path), path)
    except ConfigError as exc:
        raise MalformedTaskError("tasks", None, str(exc)) from exc
    if not isinstance(raw, dict):
        raise MalformedTaskError("tasks", None, "task set root must be a mapping")
    return raw


def config_to_dict(config: RuntimeConfig) -> dict[str, Any]:
    """Inverse of ``validate_config`` for snapshots written into a run directory."""
    data = {f.name: getattr(config, f.name) for f in fields(RuntimeConfig)}
    if config.source_dir is not None:
        data["source_dir"] = str(config.source_dir)
    return data
