from __future__ import annotations

import subprocess
import sys
from functools import partial
from pathlib import Path

import allure
import psutil
import pytest

from conftest import wait_for
from gwtui.tasks.common import utc_now
from gwtui.tasks.errors import AlreadyRunning, StoreCorruption, TaskQueueError
from gwtui.tasks.models import Execution, ExitStatus, TaskStatus, new_execution_id
from gwtui.tasks.state_machine import attach_process, cancel, reset, start_execution
from gwtui.tasks.store import TaskStore
from gwtui.tasks.worker import INTERRUPTED_REASON, request_stop, worker_status
from gwtui.worktree import WorktreeResolver

pytestmark = [
    allure.epic("Task Queue"),
    allure.feature("Worker Pool"),
]


def _status(store: TaskStore, task_id: str) -> TaskStatus:
    return store.get(task_id).status


def _runner_pid(store: TaskStore, task_id: str) -> int | None:
    execution = store.get(task_id).running_execution
    return execution.pid if execution is not None else None


def test_higher_priority_task_is_dispatched_first(store, add_task, make_pool) -> None:
    low = add_task("low", priority=10)
    high = add_task("high", priority=90)

    summary = make_pool(parallelism=1).run(exit_when_idle=True)

    assert summary.dispatched == 2
    assert summary.succeeded == 2
    low_exec = store.get(low.id).executions[0]
    high_exec = store.get(high.id).executions[0]
    assert high_exec.started_at < low_exec.started_at
    assert high_exec.ended_at <= low_exec.started_at
    assert store.get(high.id).status is TaskStatus.COMPLETED


def test_successful_execution_is_logged(store, add_task, make_pool, worktree) -> None:
    task = add_task("summarize the repo")

    make_pool().run(exit_when_idle=True)

    execution = store.get(task.id).executions[0]
    assert execution.exit_status is ExitStatus.SUCCEEDED
    assert execution.exit_code == 0
    assert execution.working_directory == str(worktree.resolve())
    log_text = Path(execution.log_path).read_text("utf-8")
    assert "summarize the repo" in log_text
    assert "exited with code 0" in log_text


def test_running_executions_never_exceed_parallelism(store, add_task, make_pool) -> None:
    tasks = [add_task(f"job {index}") for index in range(5)]

    summary = make_pool("--sleep", "0.4", parallelism=2).run(exit_when_idle=True)

    assert summary.succeeded == 5
    executions = [store.get(task.id).executions[0] for task in tasks]
    boundaries = sorted(
        [(execution.started_at, 1) for execution in executions]
        + [(execution.ended_at, -1) for execution in executions],
    )
    running = peak = 0
    for _, delta in boundaries:
        running += delta
        peak = max(peak, running)
    assert peak <= 2


def test_timed_out_execution_fails_task_and_kills_process(store, add_task, make_pool) -> None:
    task = add_task("hang")

    summary = make_pool("--sleep", "60", timeout_seconds=1).run(exit_when_idle=True)

    assert summary.timed_out == 1
    stored = store.get(task.id)
    execution = stored.executions[0]
    assert stored.status is TaskStatus.FAILED
    assert execution.exit_status is ExitStatus.TIMED_OUT
    assert "timed out after" in (execution.error or "")
    assert execution.pid is not None
    assert not psutil.pid_exists(execution.pid)


def test_spawn_failure_is_recorded_and_loop_continues(store, add_task, make_pool, tmp_path) -> None:
    broken = add_task("x", priority=90, worktree=str(tmp_path / "no-such-worktree"))
    good = add_task("y", priority=10)

    summary = make_pool().run(exit_when_idle=True)

    assert summary.spawn_errors == 1
    failed = store.get(broken.id)
    assert failed.status is TaskStatus.FAILED
    assert "no-such-worktree" in (failed.last_error or "")
    assert Path(failed.executions[0].log_path).is_file()
    assert store.get(good.id).status is TaskStatus.COMPLETED


class _UnwritableWorktrees(WorktreeResolver):
    def resolve(self, reference: str, **kwargs) -> Path:
        if Path(reference).name == "locked-down":
            raise PermissionError(13, "Permission denied", reference)
        return super().resolve(reference, **kwargs)


def test_os_error_while_resolving_worktree_fails_only_that_task(
    store,
    add_task,
    make_pool,
    tmp_path,
) -> None:
    broken = add_task("x", priority=90, worktree=str(tmp_path / "locked-down"))
    good = add_task("y", priority=10)
    resolver = _UnwritableWorktrees(base_dir=tmp_path / "worktrees")

    summary = make_pool(resolver=resolver).run(exit_when_idle=True)

    assert summary.spawn_errors == 1
    failed = store.get(broken.id)
    assert failed.status is TaskStatus.FAILED
    assert failed.executions[0].exit_status is ExitStatus.FAILED
    assert "Permission denied" in (failed.last_error or "")
    assert store.get(good.id).status is TaskStatus.COMPLETED


@pytest.mark.parametrize(
    "error",
    [
        StoreCorruption("Corrupt task record"),
        TaskQueueError("Task store is locked by another process"),
    ],
)
def test_store_error_when_starting_task_skips_it_for_this_pass(
    store,
    add_task,
    make_pool,
    monkeypatch: pytest.MonkeyPatch,
    error: TaskQueueError,
) -> None:
    flaky = add_task("first", priority=90)
    other = add_task("second", priority=10)
    update = store.update
    failures = [error]

    def _update(task_id, transition):
        if task_id == flaky.id and failures:
            raise failures.pop()
        return update(task_id, transition)

    monkeypatch.setattr(store, "update", _update)

    summary = make_pool().run(exit_when_idle=True)

    assert failures == []
    assert summary.succeeded == 2
    assert store.get(flaky.id).status is TaskStatus.COMPLETED
    assert store.get(other.id).status is TaskStatus.COMPLETED


def test_cancel_of_running_task_kills_it(store, add_task, make_pool, run_in_background) -> None:
    task = add_task("long job")
    pool = make_pool("--sleep", "60")
    run_in_background(pool)
    wait_for(lambda: _runner_pid(store, task.id) is not None)

    status = worker_status(store.queue_dir, store)
    assert status.running
    wait_for(lambda: worker_status(store.queue_dir, store).active_slots == 1)

    store.update(task.id, cancel)
    wait_for(lambda: _status(store, task.id) is TaskStatus.CANCELLED)

    execution = store.get(task.id).executions[0]
    assert execution.exit_status is ExitStatus.KILLED
    wait_for(lambda: not psutil.pid_exists(execution.pid))


def test_reset_of_running_task_requeues_and_reruns(
    store,
    add_task,
    make_pool,
    run_in_background,
) -> None:
    task = add_task("long job")
    pool = make_pool("--sleep", "2")
    run_in_background(pool)
    wait_for(lambda: _status(store, task.id) is TaskStatus.RUNNING)

    store.update(task.id, reset)
    wait_for(lambda: len(store.get(task.id).executions) == 2, timeout=20)
    wait_for(lambda: _status(store, task.id) is TaskStatus.COMPLETED, timeout=20)

    first, second = store.get(task.id).executions
    assert first.exit_status is ExitStatus.KILLED
    assert second.exit_status is ExitStatus.SUCCEEDED


def test_second_worker_is_refused(store, add_task, make_pool, run_in_background) -> None:
    add_task("long job")
    first = make_pool("--sleep", "60")
    run_in_background(first)
    assert first.wait_until_running(10)

    with pytest.raises(AlreadyRunning):
        make_pool().run(exit_when_idle=True)


def test_stop_lets_finishing_execution_complete(store, add_task, make_pool, run_in_background) -> None:
    task = add_task("short job")
    pool = make_pool("--sleep", "1")
    background = run_in_background(pool)
    wait_for(lambda: _status(store, task.id) is TaskStatus.RUNNING)

    report = pool.stop(30)
    background.join()

    execution = store.get(task.id).executions[0]
    assert report.force_killed == []
    assert report.graceful == [execution.exec_id]
    assert store.get(task.id).status is TaskStatus.COMPLETED


def test_stop_force_kills_hanging_execution_after_timeout(
    store,
    add_task,
    make_pool,
    run_in_background,
) -> None:
    task = add_task("hanging job")
    waiting = add_task("never started", priority=1)
    pool = make_pool("--sleep", "60", "--ignore-sigterm")
    background = run_in_background(pool)
    wait_for(lambda: _status(store, task.id) is TaskStatus.RUNNING)

    report = pool.stop(0.5)
    summary = background.join()

    execution = store.get(task.id).executions[0]
    assert report.force_killed == [execution.exec_id]
    assert report.graceful == []
    assert summary.killed == 1
    assert execution.exit_status is ExitStatus.KILLED
    assert store.get(task.id).status is TaskStatus.FAILED
    assert store.get(waiting.id).status is TaskStatus.PENDING
    assert not psutil.pid_exists(execution.pid)


def test_request_stop_through_queue_directory(store, add_task, make_pool, run_in_background) -> None:
    task = add_task("short job")
    pool = make_pool("--sleep", "3")
    background = run_in_background(pool)
    wait_for(lambda: _runner_pid(store, task.id) is not None)

    report = request_stop(store.queue_dir, timeout_seconds=30, poll_interval_seconds=0.05)
    background.join()

    assert report is not None
    assert report.force_killed == []
    assert len(report.graceful) == 1
    assert not worker_status(store.queue_dir, store).running
    assert request_stop(store.queue_dir, timeout_seconds=1) is None


def test_interrupted_execution_is_recovered_on_start(store, add_task, make_pool) -> None:
    task = add_task("resume me")
    dead = subprocess.Popen([sys.executable, "-c", "pass"])  # noqa: S603
    dead.wait()
    orphan = Execution(
        exec_id=new_execution_id(),
        task_id=task.id,
        runner=task.runner,
        started_at=utc_now(),
        log_path="",
    )
    store.update(task.id, partial(start_execution, execution=orphan))
    store.update(
        task.id,
        partial(attach_process, exec_id=orphan.exec_id, pid=dead.pid, working_directory="/"),
    )

    summary = make_pool().run(exit_when_idle=True)

    assert summary.recovered == 1
    assert summary.succeeded == 1
    first, second = store.get(task.id).executions
    assert first.exit_status is ExitStatus.KILLED
    assert first.error == INTERRUPTED_REASON
    assert second.exit_status is ExitStatus.SUCCEEDED
    assert store.get(task.id).status is TaskStatus.COMPLETED


def test_deleting_running_task_with_force_stops_its_execution(
    store,
    add_task,
    make_pool,
    run_in_background,
) -> None:
    task = add_task("long job")
    pool = make_pool("--sleep", "60")
    run_in_background(pool)
    wait_for(lambda: _runner_pid(store, task.id) is not None)
    pid = _runner_pid(store, task.id)

    store.delete(task.id, force=True)

    wait_for(lambda: not psutil.pid_exists(pid))
    wait_for(lambda: worker_status(store.queue_dir, store).active_slots == 0)

