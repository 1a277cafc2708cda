from __future__ import annotations

from datetime import timedelta

import allure

from gwtui.tasks.common import utc_now
from gwtui.tasks.models import PendingRequest, RunnerKind, Task, TaskStatus
from gwtui.tasks.scheduler import is_timed_out, select_ready

pytestmark = [
    allure.epic("Task Queue"),
    allure.feature("Scheduling"),
]

_BASE = utc_now()


def _task(task_id: str, priority: int, *, age_seconds: int = 0, **kwargs) -> Task:
    return Task(
        id=task_id,
        runner=RunnerKind.CODEX,
        worktree="wt",
        prompt="x",
        priority=priority,
        created_at=_BASE - timedelta(seconds=age_seconds),
        **kwargs,
    )


def test_higher_priority_wins_even_when_submitted_later() -> None:
    early_low = _task("aaa", 10, age_seconds=60)
    late_high = _task("bbb", 90)

    assert [task.id for task in select_ready([early_low, late_high], 1)] == ["bbb"]


def test_equal_priority_is_fifo_then_by_id() -> None:
    tasks = [
        _task("ccc", 50, age_seconds=1),
        _task("bbb", 50, age_seconds=5),
        _task("aaa", 50, age_seconds=1),
    ]

    assert [task.id for task in select_ready(tasks, 3)] == ["bbb", "aaa", "ccc"]


def test_only_pending_tasks_without_requests_are_ready() -> None:
    tasks = [
        _task("run", 90, status=TaskStatus.RUNNING),
        _task("don", 90, status=TaskStatus.COMPLETED),
        _task("req", 90, pending_request=PendingRequest.CANCEL),
        _task("ok1", 10),
        _task("ok2", 20),
    ]

    assert [task.id for task in select_ready(tasks, 5)] == ["ok2", "ok1"]
    assert [task.id for task in select_ready(tasks, 1)] == ["ok2"]
    assert select_ready(tasks, 0) == []


def test_timeout_check() -> None:
    assert is_timed_out(elapsed_seconds=11, timeout_seconds=10)
    assert not is_timed_out(elapsed_seconds=10, timeout_seconds=10)
    assert not is_timed_out(elapsed_seconds=10_000, timeout_seconds=0)
