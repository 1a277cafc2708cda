"""Dispatch ordering and timeout checks."""

from __future__ import annotations

from collections.abc import Iterable
from datetime import datetime

from gwtui.tasks.models import Task, TaskStatus


def dispatch_order(task: Task) -> tuple[int, datetime, str]:
    """Highest priority first, then FIFO by creation time, then id."""

    return (-task.priority, task.created_at, task.id)


def select_ready(tasks: Iterable[Task], free_slots: int) -> list[Task]:
    """Pick up to `free_slots` pending tasks from the full pending set."""

    if free_slots <= 0:
        return []
    pending = [
        task
        for task in tasks
        if task.status is TaskStatus.PENDING and task.pending_request is None
    ]
    pending.sort(key=dispatch_order)
    return pending[:free_slots]


def is_timed_out(*, elapsed_seconds: float, timeout_seconds: float) -> bool:
    """A zero or negative timeout disables enforcement."""

    if timeout_seconds <= 0:
        return False
    return elapsed_seconds > timeout_seconds
