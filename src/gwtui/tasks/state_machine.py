"""Task lifecycle transitions.

Each public function takes a loaded `Task`, mutates it in place and returns it,
so it can be handed to `TaskStore.update` and applied under the store lock.
"""

from __future__ import annotations

import logging
from datetime import datetime

from gwtui.tasks.common import utc_now
from gwtui.tasks.errors import InvalidTransition, ValidationError
from gwtui.tasks.models import ExitStatus, Execution, PendingRequest, Task, TaskStatus

logger = logging.getLogger(__name__)

VALID_TRANSITIONS: dict[TaskStatus, frozenset[TaskStatus]] = {
    TaskStatus.PENDING: frozenset({TaskStatus.RUNNING, TaskStatus.CANCELLED}),
    # PENDING is reached from RUNNING by an honoured reset request or crash recovery.
    TaskStatus.RUNNING: frozenset(
        {TaskStatus.COMPLETED, TaskStatus.FAILED, TaskStatus.CANCELLED, TaskStatus.PENDING},
    ),
    TaskStatus.COMPLETED: frozenset({TaskStatus.PENDING}),
    TaskStatus.FAILED: frozenset({TaskStatus.PENDING}),
    TaskStatus.CANCELLED: frozenset({TaskStatus.PENDING}),
}


def validate_transition(current: TaskStatus, target: TaskStatus) -> bool:
    return target in VALID_TRANSITIONS.get(current, frozenset())


def _move(task: Task, target: TaskStatus, *, action: str) -> None:
    if not validate_transition(task.status, target):
        raise InvalidTransition(task_id=task.id, current=task.status.value, action=action)
    logger.debug("Task %s: %s -> %s (%s)", task.id, task.status.value, target.value, action)
    task.status = target
    task.updated_at = utc_now()


def start_execution(task: Task, *, execution: Execution) -> Task:
    """Dispatch: append a running execution and mark the task running."""

    if task.running_execution is not None:
        raise InvalidTransition(task_id=task.id, current=task.status.value, action="start")
    if task.pending_request is not None:
        raise InvalidTransition(
            task_id=task.id,
            current=f"awaiting {task.pending_request.value}",
            action="start",
        )
    _move(task, TaskStatus.RUNNING, action="start")
    task.executions.append(execution)
    task.last_error = None
    return task


def attach_process(
    task: Task,
    *,
    exec_id: str,
    pid: int,
    working_directory: str,
) -> Task:
    execution = _running(task, exec_id)
    execution.pid = pid
    execution.working_directory = working_directory
    task.updated_at = utc_now()
    return task


def finish_execution(  # noqa: PLR0913
    task: Task,
    *,
    exec_id: str,
    exit_status: ExitStatus,
    exit_code: int | None = None,
    error: str | None = None,
    ended_at: datetime | None = None,
) -> Task:
    """Close a running execution and derive the task status from its outcome.

    A killed execution follows the pending request that caused it: cancel ends
    in `cancelled`, reset puts the task back to `pending`, anything else (a
    forced stop) leaves it `failed`.
    """

    if exit_status is ExitStatus.RUNNING:
        raise ValidationError("An execution cannot finish with status running.")
    execution = _running(task, exec_id)
    execution.ended_at = ended_at or utc_now()
    execution.exit_status = exit_status
    execution.exit_code = exit_code
    execution.error = error

    request = task.pending_request
    task.pending_request = None
    if exit_status is ExitStatus.SUCCEEDED:
        _move(task, TaskStatus.COMPLETED, action="complete")
        task.last_error = None
    elif exit_status is ExitStatus.KILLED and request is PendingRequest.CANCEL:
        _move(task, TaskStatus.CANCELLED, action="cancel")
        task.last_error = error
    elif exit_status is ExitStatus.KILLED and request is PendingRequest.RESET:
        _move(task, TaskStatus.PENDING, action="reset")
        task.last_error = None
    else:
        _move(task, TaskStatus.FAILED, action="fail")
        task.last_error = error or f"execution {exec_id} ended with {exit_status.value}"
    return task


def cancel(task: Task) -> Task:
    """Cancel a pending task, or ask the worker to stop a running one."""

    if task.status is TaskStatus.RUNNING:
        return request_cancel(task)
    if task.status is not TaskStatus.PENDING:
        raise InvalidTransition(task_id=task.id, current=task.status.value, action="cancel")
    _move(task, TaskStatus.CANCELLED, action="cancel")
    return task


def reset(task: Task) -> Task:
    """Re-queue a terminal task, or ask the worker to re-queue a running one.

    Execution history is kept.
    """

    if task.status is TaskStatus.RUNNING:
        return request_reset(task)
    if not task.status.is_terminal:
        raise InvalidTransition(task_id=task.id, current=task.status.value, action="reset")
    _move(task, TaskStatus.PENDING, action="reset")
    task.pending_request = None
    task.last_error = None
    return task


def request_cancel(task: Task) -> Task:
    return _request(task, PendingRequest.CANCEL)


def request_reset(task: Task) -> Task:
    return _request(task, PendingRequest.RESET)


def recover_interrupted(task: Task, *, reason: str) -> Task:
    """Close an execution orphaned by a dead worker and re-queue the task."""

    execution = task.running_execution
    if execution is not None:
        execution.ended_at = utc_now()
        execution.exit_status = ExitStatus.KILLED
        execution.error = reason
    request = task.pending_request
    task.pending_request = None
    task.last_error = reason
    if task.status is not TaskStatus.RUNNING:
        task.updated_at = utc_now()
    elif request is PendingRequest.CANCEL:
        _move(task, TaskStatus.CANCELLED, action="cancel")
    else:
        _move(task, TaskStatus.PENDING, action="recover")
    return task


def _request(task: Task, request: PendingRequest) -> Task:
    if task.status is not TaskStatus.RUNNING:
        raise InvalidTransition(
            task_id=task.id,
            current=task.status.value,
            action=f"request {request.value} for",
        )
    task.pending_request = request
    task.updated_at = utc_now()
    return task


def _running(task: Task, exec_id: str) -> Execution:
    execution = task.execution(exec_id)
    if execution is None or not execution.is_running:
        raise InvalidTransition(
            task_id=task.id,
            current=f"not running {exec_id}",
            action="update execution of",
        )
    return execution
