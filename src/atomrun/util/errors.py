"""Application-level error types."""

from __future__ import annotations


class AtomrunError(Exception):
    """Base error for the orchestrator."""


class GraphValidationError(AtomrunError):
    """Raised when a raw task set cannot be turned into a task graph."""


class MalformedTaskError(GraphValidationError):
    """Raised when a raw task is missing a field or has a field of the wrong type."""

    def __init__(self, field: str, index: int | None, detail: str | None = None) -> None:
        self.field = field
        self.index = index
        where = "task set" if index is None else f"task #{index}"
        message = f"{where}: field '{field}' is missing or invalid"
        if detail:
            message = f"{message} ({detail})"
        super().__init__(message)


class DuplicateTaskError(MalformedTaskError):
    """Raised when two raw tasks share an id."""

    def __init__(self, task_id: str, index: int) -> None:
        self.task_id = task_id
        super().__init__("id", index, f"duplicate task id '{task_id}'")


class UnknownReferenceError(GraphValidationError):
    """Raised when a dependency names a task id that does not exist."""

    def __init__(self, task_id: str, referenced_by: str | None = None) -> None:
        self.task_id = task_id
        self.referenced_by = referenced_by
        if referenced_by is None:
            message = f"dependency references unknown task '{task_id}'"
        else:
            message = f"task '{referenced_by}' depends on unknown task '{task_id}'"
        super().__init__(message)


class CircularDependencyError(GraphValidationError):
    """Raised when the dependency edges contain a cycle."""

    def __init__(self, task_id: str, cycle: list[str] | None = None) -> None:
        self.task_id = task_id
        self.cycle = list(cycle or [task_id, task_id])
        super().__init__(f"circular dependency at task '{task_id}': {' -> '.join(self.cycle)}")


class SandboxError(AtomrunError):
    """Raised when a sandbox cannot be created or addressed."""


class CapacityExceededError(SandboxError):
    """Raised when dispatch would exceed the concurrent sandbox bound."""

    def __init__(self, capacity: int) -> None:
        self.capacity = capacity
        super().__init__(f"maximum sandbox instances reached ({capacity})")


class SandboxNotFoundError(SandboxError):
    """Raised when a handle is unknown to the runtime."""


class SchedulerError(AtomrunError):
    """Raised when a command is not valid for the current run state."""


class ConfigError(AtomrunError):
    """Raised when runtime configuration loading/validation fails."""


class StateError(AtomrunError):
    """Raised when a persisted run state is missing or broken."""


class RunConflictError(AtomrunError):
    """Raised when run lock cannot be acquired."""
