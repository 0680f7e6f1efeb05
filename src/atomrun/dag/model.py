"""Validated in-memory representation of atomic tasks and their dependency edges."""

from __future__ import annotations

from collections.abc import Iterator, Mapping
from dataclasses import dataclass, field
from types import MappingProxyType


@dataclass(frozen=True, slots=True)
class TaskCommand:
    """Self-contained instruction set handed to a sandbox."""

    run: str
    required_files: tuple[str, ...] = ()
    output_files: tuple[str, ...] = ()
    files: Mapping[str, str] = field(default_factory=dict)
    env: Mapping[str, str] = field(default_factory=dict)
    network: bool = False
    timeout_sec: float | None = None


@dataclass(frozen=True, slots=True)
class TaskRecord:
    id: str
    title: str
    description: str
    command: TaskCommand
    index: int
    depends_on: tuple[str, ...] = ()
    category: str | None = None
    estimated_duration: float = 30.0
    estimated_cost: float = 0.0


@dataclass(frozen=True, slots=True)
class ProjectInfo:
    title: str | None = None
    complexity: str | None = None
    estimated_duration: str | None = None


class TaskGraph:
    """
    Owns every TaskRecord of one run.

    Built only through ``atomrun.dag.build.build_graph``, which guarantees the
    graph is acyclic and every ``depends_on`` entry names a node. The reverse
    edge index is computed once here and exposed read-only.
    """

    __slots__ = ("_nodes", "_dependents", "project", "reasons")

    def __init__(
        self,
        nodes: Mapping[str, TaskRecord],
        *,
        project: ProjectInfo | None = None,
        reasons: Mapping[tuple[str, str], str] | None = None,
    ) -> None:
        self._nodes: Mapping[str, TaskRecord] = MappingProxyType(dict(nodes))
        dependents: dict[str, list[str]] = {task_id: [] for task_id in self._nodes}
        for task in self._nodes.values():
            for dep in task.depends_on:
                dependents[dep].append(task.id)
        self._dependents: Mapping[str, tuple[str, ...]] = MappingProxyType(
            {task_id: tuple(children) for task_id, children in dependents.items()}
        )
        self.project = project
        self.reasons: Mapping[tuple[str, str], str] = MappingProxyType(dict(reasons or {}))

    @property
    def nodes(self) -> Mapping[str, TaskRecord]:
        return self._nodes

    @property
    def dependents(self) -> Mapping[str, tuple[str, ...]]:
        return self._dependents

    def __len__(self) -> int:
        return len(self._nodes)

    def __contains__(self, task_id: object) -> bool:
        return task_id in self._nodes

    def __iter__(self) -> Iterator[TaskRecord]:
        return iter(self._nodes.values())

    def __getitem__(self, task_id: str) -> TaskRecord:
        return self._nodes[task_id]

    def ids(self) -> list[str]:
        return list(self._nodes)
