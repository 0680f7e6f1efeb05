"""Build a validated TaskGraph from a raw atomized task set."""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import replace
from typing import Any

from atomrun.dag.model import ProjectInfo, TaskCommand, TaskGraph, TaskRecord
from atomrun.dag.validate import (
    find_cycle,
    id_list,
    is_finite_number,
    is_non_blank_str,
    path_list,
    require_fields,
    str_map,
)
from atomrun.util.errors import (
    DuplicateTaskError,
    MalformedTaskError,
    UnknownReferenceError,
)
from atomrun.util.path_guard import is_safe_relative_path
from atomrun.util.time import parse_estimate_minutes


def _parse_project(raw: object) -> ProjectInfo | None:
    if raw is None:
        return None
    if not isinstance(raw, Mapping):
        raise MalformedTaskError("project", None, "must be a mapping")

    def _opt(name: str) -> str | None:
        value = raw.get(name)
        if value is None:
            return None
        if isinstance(value, (int, float)) and not isinstance(value, bool):
            return str(value)
        if not isinstance(value, str):
            raise MalformedTaskError(f"project.{name}", None)
        return value

    return ProjectInfo(
        title=_opt("title"),
        complexity=_opt("complexity"),
        estimated_duration=_opt("estimatedDuration"),
    )


def _parse_cost(raw: Mapping[str, Any], index: int) -> float:
    value = raw.get("estimatedCost", 0.0)
    if isinstance(value, str):
        try:
            value = float(value)
        except ValueError as exc:
            raise MalformedTaskError("estimatedCost", index) from exc
    if not is_finite_number(value) or value < 0:
        raise MalformedTaskError("estimatedCost", index)
    return float(value)


def _parse_duration(raw: Mapping[str, Any], index: int) -> float:
    if "estimatedDuration" in raw:
        value = raw["estimatedDuration"]
        if not is_finite_number(value) or value < 0:
            raise MalformedTaskError("estimatedDuration", index)
        return float(value)
    return parse_estimate_minutes(raw.get("estimatedTime"))


def _needs_network(raw: Mapping[str, Any], index: int) -> bool:
    flag = raw.get("requiresNetwork", False)
    if not isinstance(flag, bool):
        raise MalformedTaskError("requiresNetwork", index)
    context = raw.get("context")
    if context is None:
        return flag
    if not isinstance(context, Mapping):
        raise MalformedTaskError("context", index)
    return flag or bool(context.get("repositories"))


def _parse_command(raw: Mapping[str, Any], index: int) -> TaskCommand:
    command = raw["command"]
    if isinstance(command, Mapping):
        merged: dict[str, Any] = {**raw, **command}
        run = command["run"]
    else:
        merged = dict(raw)
        run = command
    timeout = merged.get("timeoutSec")
    if timeout is not None and (not is_finite_number(timeout) or timeout <= 0):
        raise MalformedTaskError("timeoutSec", index)
    files = str_map(merged, "files", index)
    for rel in files:
        if not is_safe_relative_path(rel):
            raise MalformedTaskError("files", index, f"unsafe path '{rel}'")
    return TaskCommand(
        run=run,
        required_files=path_list(merged, "requiredFiles", index),
        output_files=path_list(merged, "outputFiles", index),
        files=files,
        env=str_map(merged, "env", index),
        network=_needs_network(merged, index),
        timeout_sec=None if timeout is None else float(timeout),
    )


def _parse_task(raw: object, index: int) -> tuple[TaskRecord, list[str]]:
    if not isinstance(raw, Mapping):
        raise MalformedTaskError("task", index, "task must be a mapping")
    require_fields(raw, index)
    category = raw.get("category")
    if category is not None and not is_non_blank_str(category):
        raise MalformedTaskError("category", index)
    record = TaskRecord(
        id=raw["id"],
        title=raw["title"],
        description=raw["description"],
        command=_parse_command(raw, index),
        index=index,
        category=category,
        estimated_duration=_parse_duration(raw, index),
        estimated_cost=_parse_cost(raw, index),
    )
    return record, id_list(raw.get("dependsOn"), "dependsOn", index)


def build_graph(raw_task_set: object) -> TaskGraph:
    """
    Validate a raw atomized task set and build its TaskGraph.

    The raw set has the decomposition service's shape::

        {"project": {...}, "tasks": [{...}], "dependencies": [{"taskId", "dependsOn", "reason"}]}

    Raises MalformedTaskError, UnknownReferenceError or CircularDependencyError;
    never returns a graph that contains a cycle or a dangling reference.
    """
    if not isinstance(raw_task_set, Mapping):
        raise MalformedTaskError("tasks", None, "task set root must be a mapping")
    raw_tasks = raw_task_set.get("tasks")
    if not isinstance(raw_tasks, list) or not raw_tasks:
        raise MalformedTaskError("tasks", None, "must be a non-empty list")
    project = _parse_project(raw_task_set.get("project"))

    records: dict[str, TaskRecord] = {}
    edges: dict[str, list[str]] = {}
    for index, raw in enumerate(raw_tasks):
        record, inline_deps = _parse_task(raw, index)
        if record.id in records:
            raise DuplicateTaskError(record.id, index)
        records[record.id] = record
        edges[record.id] = inline_deps

    reasons: dict[tuple[str, str], str] = {}
    raw_deps = raw_task_set.get("dependencies") or []
    if not isinstance(raw_deps, list):
        raise MalformedTaskError("dependencies", None, "must be a list")
    for dep_index, dep in enumerate(raw_deps):
        if not isinstance(dep, Mapping) or not is_non_blank_str(dep.get("taskId")):
            raise MalformedTaskError("dependencies.taskId", None, f"edge #{dep_index}")
        task_id = dep["taskId"]
        if task_id not in records:
            raise UnknownReferenceError(task_id)
        upstream = id_list(dep.get("dependsOn"), "dependencies.dependsOn", None)
        edges[task_id].extend(upstream)
        reason = dep.get("reason")
        if isinstance(reason, str) and reason.strip():
            for dep_id in upstream:
                reasons[(task_id, dep_id)] = reason

    for task_id, deps in edges.items():
        for dep_id in deps:
            if dep_id not in records:
                raise UnknownReferenceError(dep_id, task_id)

    order = {task_id: pos for pos, task_id in enumerate(records)}
    depends_on = {
        task_id: tuple(sorted(dict.fromkeys(deps), key=order.__getitem__))
        for task_id, deps in edges.items()
    }
    find_cycle(list(records), depends_on)

    nodes = {
        task_id: replace(record, depends_on=depends_on[task_id])
        for task_id, record in records.items()
    }
    return TaskGraph(nodes, project=project, reasons=reasons)
