"""Structural checks on raw task sets and dependency edges."""

from __future__ import annotations

import math
from collections.abc import Mapping
from typing import Any

from atomrun.util.errors import CircularDependencyError, MalformedTaskError
from atomrun.util.path_guard import is_safe_relative_path

REQUIRED_TASK_FIELDS = ("id", "title", "description", "command")


def is_non_blank_str(value: object) -> bool:
    return isinstance(value, str) and bool(value.strip()) and "\x00" not in value


def is_finite_number(value: object) -> bool:
    if not isinstance(value, (int, float)) or isinstance(value, bool):
        return False
    return math.isfinite(value)


def require_fields(raw: Mapping[str, Any], index: int) -> None:
    for name in REQUIRED_TASK_FIELDS:
        value = raw.get(name)
        if name == "command" and isinstance(value, Mapping):
            if not is_non_blank_str(value.get("run")):
                raise MalformedTaskError("command.run", index)
            continue
        if not is_non_blank_str(value):
            raise MalformedTaskError(name, index)


def path_list(raw: Mapping[str, Any], name: str, index: int) -> tuple[str, ...]:
    value = raw.get(name)
    if value is None:
        return ()
    if not isinstance(value, list) or not all(isinstance(item, str) for item in value):
        raise MalformedTaskError(name, index, "must be a list of strings")
    for item in value:
        if not is_safe_relative_path(item):
            raise MalformedTaskError(name, index, f"unsafe path '{item}'")
    return tuple(dict.fromkeys(value))


def str_map(raw: Mapping[str, Any], name: str, index: int) -> dict[str, str]:
    value = raw.get(name)
    if value is None:
        return {}
    if not isinstance(value, Mapping) or not all(
        isinstance(k, str) and isinstance(v, str) and "\x00" not in v for k, v in value.items()
    ):
        raise MalformedTaskError(name, index, "must be a mapping of strings")
    return dict(value)


def id_list(value: object, name: str, index: int | None) -> list[str]:
    if value is None:
        return []
    if not isinstance(value, list) or not all(is_non_blank_str(item) for item in value):
        raise MalformedTaskError(name, index, "must be a list of task ids")
    return list(value)


def find_cycle(task_ids: list[str], depends_on: Mapping[str, tuple[str, ...]]) -> None:
    """
    Depth-first search over dependency edges.

    Raises CircularDependencyError naming the first id found on a cycle,
    together with the cycle itself (first and last element equal).
    """
    white, grey, black = 0, 1, 2
    color = {task_id: white for task_id in task_ids}
    for root in task_ids:
        if color[root] != white:
            continue
        path: list[str] = [root]
        stack: list[tuple[str, int]] = [(root, 0)]
        color[root] = grey
        while stack:
            node, edge_idx = stack[-1]
            deps = depends_on.get(node, ())
            if edge_idx < len(deps):
                stack[-1] = (node, edge_idx + 1)
                dep = deps[edge_idx]
                if color[dep] == grey:
                    start = path.index(dep)
                    raise CircularDependencyError(dep, path[start:] + [dep])
                if color[dep] == white:
                    color[dep] = grey
                    stack.append((dep, 0))
                    path.append(dep)
                continue
            color[node] = black
            stack.pop()
            path.pop()
