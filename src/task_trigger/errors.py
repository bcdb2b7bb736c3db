"""Exception hierarchy.

Registration and payload errors are raised to the caller synchronously.
Handler failures never surface as exceptions: they are recorded on the run.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from task_trigger.parsers import ParseError


class TaskTriggerError(Exception):
    """Base class for all task-trigger errors."""


class DuplicateTaskId(TaskTriggerError):
    """Raised when two tasks in one library build share an id."""

    def __init__(
        self, task_id: str, first_path: tuple[str, ...], second_path: tuple[str, ...]
    ) -> None:
        super().__init__(task_id, first_path, second_path)
        self.task_id = task_id
        self.first_path = first_path
        self.second_path = second_path

    def __str__(self) -> str:
        first = ".".join(self.first_path) or "<root>"
        second = ".".join(self.second_path) or "<root>"
        return f"Duplicate task id {self.task_id!r} at {first} and {second}"


class ReservedNameError(TaskTriggerError, ValueError):
    """Raised when a library group name collides with a client facade attribute."""


class UnknownTask(TaskTriggerError):
    """Raised when a trigger references a task id that is not registered."""

    def __init__(self, task_id: str) -> None:
        super().__init__(task_id)
        self.task_id = task_id

    def __str__(self) -> str:
        return f"Unknown task: {self.task_id!r}"


class InvalidPayload(TaskTriggerError):
    """Raised when a payload is rejected by the task's parser. Never retried."""

    def __init__(self, task_id: str, error: ParseError) -> None:
        super().__init__(task_id, error)
        self.task_id = task_id
        self.error = error

    def __str__(self) -> str:
        return f"Invalid payload for task {self.task_id!r}: {self.error.message}"


class InvalidTransition(TaskTriggerError, ValueError):
    """Raised when a run is moved to a state that is not a successor of its current one."""


class RunNotFound(TaskTriggerError, KeyError):
    """Raised when a run id is not present in the store."""

    def __init__(self, run_id: str) -> None:
        super().__init__(run_id)
        self.run_id = run_id

    def __str__(self) -> str:
        return f"Run not found: {self.run_id!r}"
