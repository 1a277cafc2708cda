"""Error taxonomy for the task queue.

Every error carries the process exit code the CLI reports for it.
"""

from __future__ import annotations


class TaskQueueError(Exception):
    """Base class for task queue failures."""

    exit_code = 1


class ValidationError(TaskQueueError):
    """Malformed task spec or request."""

    exit_code = 2


class InvalidTransition(ValidationError):
    """Requested status change is not allowed from the current state."""

    def __init__(self, *, task_id: str, current: str, action: str) -> None:
        super().__init__(f"Cannot {action} task {task_id} while it is {current}.")
        self.task_id = task_id
        self.current = current
        self.action = action


class NotFound(TaskQueueError):
    """Unknown task or execution id."""

    exit_code = 3


class AlreadyRunning(TaskQueueError):
    """Another live worker holds the pool lock."""

    exit_code = 4

    def __init__(self, message: str, *, pid: int | None = None) -> None:
        super().__init__(message)
        self.pid = pid


class PartialFailure(TaskQueueError):
    """Operation finished but not cleanly, for example force-killed executions."""

    exit_code = 5


class SpawnError(TaskQueueError):
    """Runner executable or its working directory is unusable."""


class TimeoutExceeded(TaskQueueError):
    """A bounded wait ran out."""


class StoreCorruption(TaskQueueError):
    """On-disk record could not be parsed."""

    def __init__(self, message: str, *, path: str | None = None) -> None:
        super().__init__(message)
        self.path = path


class KillFailure(TaskQueueError):
    """Process survived forced termination."""

    def __init__(self, message: str, *, pid: int | None = None) -> None:
        super().__init__(message)
        self.pid = pid


class WorktreeError(TaskQueueError):
    """Worktree reference could not be resolved to a directory."""
