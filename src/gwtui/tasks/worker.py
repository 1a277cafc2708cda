"""Worker pool daemon: dispatches pending tasks into bounded execution slots."""

from __future__ import annotations

import logging
import os
import queue
import signal
import threading
import time
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime
from functools import partial
from pathlib import Path
from typing import Any

import psutil

from gwtui.tasks.backend import CliRunnerBackend, RunnerBackend, RunnerHandle, RunnerSpec
from gwtui.tasks.common import (
    format_duration,
    from_iso,
    read_json,
    to_iso,
    utc_now,
    write_json_atomic,
)
from gwtui.tasks.errors import (
    InvalidTransition,
    KillFailure,
    NotFound,
    SpawnError,
    StoreCorruption,
    TaskQueueError,
    TimeoutExceeded,
)
from gwtui.tasks.logs import CleanupPolicy, ExecutionLogManager
from gwtui.tasks.models import (
    ExitStatus,
    Execution,
    PendingRequest,
    RunnerKind,
    Task,
    TaskStatus,
    new_execution_id,
)
from gwtui.tasks.pool_lock import LockOwner, PoolLock, owner_alive, read_owner
from gwtui.tasks.scheduler import is_timed_out, select_ready
from gwtui.tasks.state_machine import (
    attach_process,
    finish_execution,
    recover_interrupted,
    start_execution,
)
from gwtui.tasks.store import TaskStore
from gwtui.worktree import WorktreeResolver

logger = logging.getLogger(__name__)

STATUS_FILENAME = "worker.status.json"
STOP_FILENAME = "worker.stop"
STOP_REPORT_FILENAME = "worker.stop-report.json"
WORKER_LOG_FILENAME = "worker.log"

INTERRUPTED_REASON = "previous worker stopped unexpectedly; task reset to pending"
KILL_SETTLE_SECONDS = 10.0


@dataclass(slots=True)
class WorkerRunSummary:
    """Aggregate worker counters for CLI reporting."""

    dispatched: int = 0
    succeeded: int = 0
    failed: int = 0
    timed_out: int = 0
    cancelled: int = 0
    requeued: int = 0
    killed: int = 0
    spawn_errors: int = 0
    recovered: int = 0


@dataclass(slots=True)
class StopReport:
    """Which executions finished on their own during a stop and which were killed."""

    graceful: list[str] = field(default_factory=list)
    force_killed: list[str] = field(default_factory=list)
    kill_failures: list[str] = field(default_factory=list)
    requested_at: datetime | None = None
    finished_at: datetime | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "graceful": list(self.graceful),
            "force_killed": list(self.force_killed),
            "kill_failures": list(self.kill_failures),
            "requested_at": to_iso(self.requested_at),
            "finished_at": to_iso(self.finished_at),
        }

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> StopReport:
        return cls(
            graceful=[str(item) for item in payload.get("graceful", [])],
            force_killed=[str(item) for item in payload.get("force_killed", [])],
            kill_failures=[str(item) for item in payload.get("kill_failures", [])],
            requested_at=from_iso(payload.get("requested_at")),
            finished_at=from_iso(payload.get("finished_at")),
        )


@dataclass(slots=True)
class WorkerStatus:
    """Snapshot for `worker status`."""

    running: bool
    pid: int | None
    hostname: str | None
    started_at: datetime | None
    parallelism: int | None
    stop_requested: bool
    slots: list[dict[str, Any]]
    counts: dict[str, int]
    updated_at: datetime | None = None

    @property
    def active_slots(self) -> int:
        return len(self.slots)

    def to_dict(self) -> dict[str, Any]:
        return {
            "running": self.running,
            "pid": self.pid,
            "hostname": self.hostname,
            "started_at": to_iso(self.started_at),
            "parallelism": self.parallelism,
            "active_slots": self.active_slots,
            "stop_requested": self.stop_requested,
            "slots": self.slots,
            "counts": self.counts,
            "updated_at": to_iso(self.updated_at),
        }


@dataclass(slots=True)
class _Slot:
    index: int
    task_id: str
    exec_id: str
    runner: RunnerKind
    process: RunnerHandle
    timeout_seconds: float
    termination: ExitStatus | None = None
    termination_reason: str | None = None
    force_killed: bool = False


@dataclass(slots=True)
class _Completion:
    slot_index: int
    exec_id: str
    exit_code: int | None
    error: str | None = None
    kill_failed: bool = False


class WorkerPool:
    """Owns the pool lock, the scheduling loop and N execution slots."""

    def __init__(  # noqa: PLR0913
        self,
        *,
        store: TaskStore,
        log_manager: ExecutionLogManager,
        runners: dict[RunnerKind, RunnerSpec],
        resolver: WorktreeResolver,
        parallelism: int,
        backend: RunnerBackend | None = None,
        poll_interval_seconds: float = 5.0,
        kill_grace_seconds: float = 5.0,
        stop_timeout_seconds: float = 300.0,
        cleanup_policy: CleanupPolicy | None = None,
        cleanup_interval_seconds: float = 3_600.0,
    ) -> None:
        if parallelism <= 0:
            raise ValueError("parallelism must be > 0")
        self.store = store
        self.log_manager = log_manager
        self.runners = runners
        self.resolver = resolver
        self.parallelism = parallelism
        self.backend = backend or CliRunnerBackend()
        self.poll_interval_seconds = poll_interval_seconds
        self.kill_grace_seconds = kill_grace_seconds
        self.stop_timeout_seconds = stop_timeout_seconds
        self.cleanup_policy = cleanup_policy
        self.cleanup_interval_seconds = cleanup_interval_seconds
        self.last_stop_report: StopReport | None = None

        self._lock = PoolLock(store.queue_dir)
        self._owner: LockOwner | None = None
        self._slots: dict[int, _Slot] = {}
        self._completions: queue.Queue[_Completion | None] = queue.Queue()
        self._stop_requested = False
        self._stop_deadline: float | None = None
        self._stop_report = StopReport()
        self._last_cleanup: float | None = None
        self._running = threading.Event()
        self._finished = threading.Event()

    @property
    def queue_dir(self) -> Path:
        return self.store.queue_dir

    def run(self, *, exit_when_idle: bool = False, max_idle_polls: int = 1) -> WorkerRunSummary:
        """Hold the lock and schedule until stopped (or idle, if asked).

        Raises `AlreadyRunning` when another live worker owns the queue.
        """

        self._owner = self._lock.acquire(parallelism=self.parallelism)
        self._finished.clear()
        self._running.set()
        summary = WorkerRunSummary()
        try:
            (self.queue_dir / STOP_FILENAME).unlink(missing_ok=True)
            with self._signal_handlers():
                self._recover_interrupted(summary)
                self._maybe_cleanup(force=True)
                self._loop(summary, exit_when_idle=exit_when_idle, max_idle_polls=max_idle_polls)
        finally:
            self._kill_remaining(summary, reason="force-killed: worker shutting down")
            self._stop_report.finished_at = utc_now()
            self.last_stop_report = self._stop_report
            self._finalize_files()
            self._lock.release()
            self._running.clear()
            self._finished.set()
        logger.info("Worker finished: %s", summary)
        return summary

    def stop(self, timeout_seconds: float | None = None, *, wait: bool = True) -> StopReport:
        """Stop dispatching, let running executions finish for `timeout_seconds`, then kill.

        Safe to call from another thread than the one inside `run`.
        """

        self._request_stop(
            self.stop_timeout_seconds if timeout_seconds is None else timeout_seconds,
        )
        self._completions.put(None)
        if wait and self._running.is_set():
            self._finished.wait()
        return self.last_stop_report or self._stop_report

    def wait_until_running(self, timeout: float | None = None) -> bool:
        return self._running.wait(timeout)

    def _loop(self, summary: WorkerRunSummary, *, exit_when_idle: bool, max_idle_polls: int) -> None:
        consecutive_idle = 0
        while True:
            self._check_stop_marker()
            self._drain_completions(summary)
            self._apply_requests()
            self._enforce_timeouts()
            if self._stop_requested:
                if not self._slots:
                    return
                if self._stop_deadline is not None and time.monotonic() >= self._stop_deadline:
                    self._force_kill_for_stop()
            else:
                self._fill_slots(summary)
            self._write_status_snapshot()
            self._maybe_cleanup()

            if exit_when_idle and not self._stop_requested and self._idle():
                consecutive_idle += 1
                if consecutive_idle >= max_idle_polls:
                    return
            else:
                consecutive_idle = 0
            self._wait_for_completion(summary)

    def _idle(self) -> bool:
        return not self._slots and not select_ready(self.store.list(), 1)

    def _fill_slots(self, summary: WorkerRunSummary) -> None:
        free = self.parallelism - len(self._slots)
        if free <= 0:
            return
        for task in select_ready(self.store.list(), free):
            index = next(i for i in range(self.parallelism) if i not in self._slots)
            self._dispatch(task, index, summary)

    def _dispatch(self, task: Task, index: int, summary: WorkerRunSummary) -> None:
        spec = self.runners.get(task.runner)
        exec_id = new_execution_id()
        execution = Execution(
            exec_id=exec_id,
            task_id=task.id,
            runner=task.runner,
            started_at=utc_now(),
            log_path=str(self.log_manager.log_path(exec_id)),
        )
        try:
            self.store.update(task.id, partial(start_execution, execution=execution))
        except (NotFound, InvalidTransition) as error:
            logger.info("Skipping task %s: %s", task.id, error)
            return
        except TaskQueueError as error:
            logger.error("Could not start task %s: %s", task.id, error)
            return

        try:
            if spec is None:
                raise SpawnError(f"No runner configured for {task.runner.value}")
            working_directory = self.resolver.resolve(
                task.worktree,
                repository=task.repository,
                base_branch=task.base_branch,
            )
            process = self.backend.spawn(
                spec,
                prompt=task.prompt,
                working_directory=working_directory,
            )
        except (OSError, TaskQueueError) as error:
            logger.warning("Task %s could not start: %s", task.id, error)
            summary.spawn_errors += 1
            summary.failed += 1
            with self.log_manager.open_writer(exec_id, task_id=task.id) as writer:
                writer.note(f"failed to start: {error}")
            self._record_finish(
                task.id,
                exec_id=exec_id,
                exit_status=ExitStatus.FAILED,
                error=str(error),
            )
            return

        slot = _Slot(
            index=index,
            task_id=task.id,
            exec_id=exec_id,
            runner=task.runner,
            process=process,
            timeout_seconds=spec.timeout_seconds,
        )
        self._slots[index] = slot
        summary.dispatched += 1
        try:
            self.store.update(
                task.id,
                partial(
                    attach_process,
                    exec_id=exec_id,
                    pid=process.pid,
                    working_directory=str(working_directory),
                ),
            )
        except TaskQueueError as error:
            # Deleted or cancelled in the meantime; the next scan notices and kills it.
            logger.warning("Could not record pid for task %s: %s", task.id, error)
        threading.Thread(
            target=self._supervise,
            args=(slot, working_directory),
            name=f"gwtui-slot-{index}",
            daemon=True,
        ).start()
        logger.info(
            "Dispatched task %s as %s to slot %d (pid %s, priority %d)",
            task.id,
            exec_id,
            index,
            process.pid,
            task.priority,
        )

    def _supervise(self, slot: _Slot, working_directory: Path) -> None:
        exit_code: int | None = None
        error: str | None = None
        try:
            with self.log_manager.open_writer(slot.exec_id, task_id=slot.task_id) as writer:
                writer.note(
                    f"started {slot.runner.value} in {working_directory} (pid {slot.process.pid})",
                )
                for stream, line in slot.process.output():
                    writer.write(stream, line)
                exit_code = slot.process.wait()
                if slot.termination is not None:
                    writer.note(f"{slot.termination_reason} (exit code {exit_code})")
                else:
                    writer.note(f"exited with code {exit_code}")
        except Exception as exc:  # noqa: BLE001
            logger.exception("Slot %d supervising %s failed", slot.index, slot.exec_id)
            error = f"supervisor error: {exc}"
            try:
                exit_code = slot.process.terminate(self.kill_grace_seconds)
            except KillFailure as kill_error:
                error = f"{error}; {kill_error}"
        finally:
            self._completions.put(
                _Completion(
                    slot_index=slot.index,
                    exec_id=slot.exec_id,
                    exit_code=exit_code,
                    error=error,
                ),
            )

    def _terminate_slot(self, slot: _Slot, *, status: ExitStatus, reason: str) -> None:
        if slot.termination is not None:
            return
        slot.termination = status
        slot.termination_reason = reason
        threading.Thread(
            target=self._kill_slot,
            args=(slot,),
            name=f"gwtui-kill-{slot.index}",
            daemon=True,
        ).start()

    def _kill_slot(self, slot: _Slot) -> None:
        try:
            slot.process.terminate(self.kill_grace_seconds)
        except KillFailure as error:
            logger.error("Execution %s: %s", slot.exec_id, error)
            self._completions.put(
                _Completion(
                    slot_index=slot.index,
                    exec_id=slot.exec_id,
                    exit_code=None,
                    error=str(error),
                    kill_failed=True,
                ),
            )

    def _drain_completions(self, summary: WorkerRunSummary) -> None:
        while True:
            try:
                completion = self._completions.get_nowait()
            except queue.Empty:
                return
            if completion is not None:
                self._finish_slot(completion, summary)

    def _wait_for_completion(self, summary: WorkerRunSummary) -> None:
        timeout = self.poll_interval_seconds
        if self._stop_deadline is not None:
            until_deadline = self._stop_deadline - time.monotonic()
            if until_deadline > 0:
                timeout = min(timeout, until_deadline)
        try:
            completion = self._completions.get(timeout=timeout)
        except queue.Empty:
            return
        if completion is not None:
            self._finish_slot(completion, summary)

    def _finish_slot(self, completion: _Completion, summary: WorkerRunSummary) -> None:
        slot = self._slots.get(completion.slot_index)
        if slot is None or slot.exec_id != completion.exec_id:
            return
        del self._slots[completion.slot_index]

        if completion.kill_failed:
            self._stop_report.kill_failures.append(slot.exec_id)
        if self._stop_requested and slot.force_killed:
            self._stop_report.force_killed.append(slot.exec_id)
        elif self._stop_requested:
            self._stop_report.graceful.append(slot.exec_id)

        exit_status, error = _classify(slot, completion)
        task = self._record_finish(
            slot.task_id,
            exec_id=slot.exec_id,
            exit_status=exit_status,
            exit_code=completion.exit_code,
            error=error,
        )
        _count(summary, exit_status, task)
        logger.info(
            "Execution %s of task %s finished: %s (exit code %s)",
            slot.exec_id,
            slot.task_id,
            exit_status.value,
            completion.exit_code,
        )

    def _record_finish(  # noqa: PLR0913
        self,
        task_id: str,
        *,
        exec_id: str,
        exit_status: ExitStatus,
        exit_code: int | None = None,
        error: str | None = None,
    ) -> Task | None:
        try:
            return self.store.update(
                task_id,
                partial(
                    finish_execution,
                    exec_id=exec_id,
                    exit_status=exit_status,
                    exit_code=exit_code,
                    error=error,
                ),
            )
        except NotFound:
            logger.info("Task %s was deleted before %s finished", task_id, exec_id)
        except TaskQueueError as store_error:
            logger.error("Could not record result of %s for task %s: %s", exec_id, task_id, store_error)
        return None

    def _apply_requests(self) -> None:
        """Honour cancel/reset requests and deletions of running tasks."""

        for slot in list(self._slots.values()):
            if slot.termination is not None:
                continue
            try:
                task = self.store.get(slot.task_id)
            except NotFound:
                self._terminate_slot(slot, status=ExitStatus.KILLED, reason="task deleted")
                continue
            except StoreCorruption as error:
                logger.warning("Cannot read task %s: %s", slot.task_id, error)
                continue
            if task.pending_request is PendingRequest.CANCEL:
                self._terminate_slot(slot, status=ExitStatus.KILLED, reason="cancelled by user")
            elif task.pending_request is PendingRequest.RESET:
                self._terminate_slot(slot, status=ExitStatus.KILLED, reason="reset by user")

    def _enforce_timeouts(self) -> None:
        for slot in list(self._slots.values()):
            if slot.termination is not None:
                continue
            if is_timed_out(
                elapsed_seconds=slot.process.elapsed_seconds,
                timeout_seconds=slot.timeout_seconds,
            ):
                logger.warning("Execution %s exceeded its timeout", slot.exec_id)
                self._terminate_slot(
                    slot,
                    status=ExitStatus.TIMED_OUT,
                    reason=f"timed out after {format_duration(slot.timeout_seconds)}",
                )

    def _force_kill_for_stop(self) -> None:
        for slot in list(self._slots.values()):
            if slot.force_killed:
                continue
            slot.force_killed = True
            logger.warning("Stop timeout reached; force-killing %s", slot.exec_id)
            if slot.termination is None:
                self._terminate_slot(
                    slot,
                    status=ExitStatus.KILLED,
                    reason="force-killed after stop timeout",
                )

    def _kill_remaining(self, summary: WorkerRunSummary, *, reason: str) -> None:
        if not self._slots:
            return
        self._stop_requested = True
        for slot in list(self._slots.values()):
            slot.force_killed = True
            self._terminate_slot(slot, status=ExitStatus.KILLED, reason=reason)
        deadline = time.monotonic() + self.kill_grace_seconds + KILL_SETTLE_SECONDS
        while self._slots and time.monotonic() < deadline:
            try:
                completion = self._completions.get(timeout=0.2)
            except queue.Empty:
                continue
            if completion is not None:
                self._finish_slot(completion, summary)
        for slot in list(self._slots.values()):
            logger.error("Execution %s did not exit; leaving it running", slot.exec_id)
            self._stop_report.kill_failures.append(slot.exec_id)

    def _recover_interrupted(self, summary: WorkerRunSummary) -> None:
        for task in self.store.list():
            execution = task.running_execution
            if execution is None and task.status is not TaskStatus.RUNNING:
                continue
            if execution is not None and execution.pid is not None:
                _terminate_orphan(execution, grace_seconds=self.kill_grace_seconds)
            try:
                self.store.update(task.id, partial(recover_interrupted, reason=INTERRUPTED_REASON))
            except TaskQueueError as error:
                logger.error("Could not recover task %s: %s", task.id, error)
                continue
            summary.recovered += 1
            logger.warning("Task %s: %s", task.id, INTERRUPTED_REASON)

    def _maybe_cleanup(self, *, force: bool = False) -> None:
        if self.cleanup_policy is None:
            return
        now = time.monotonic()
        if (
            not force
            and self._last_cleanup is not None
            and now - self._last_cleanup < self.cleanup_interval_seconds
        ):
            return
        self._last_cleanup = now
        executions = [execution for task in self.store.list() for execution in task.executions]
        try:
            self.log_manager.cleanup(self.cleanup_policy, executions)
        except OSError as error:
            logger.warning("Log cleanup failed: %s", error)

    def _check_stop_marker(self) -> None:
        if self._stop_requested:
            return
        marker = self.queue_dir / STOP_FILENAME
        if not marker.exists():
            return
        timeout = self.stop_timeout_seconds
        try:
            payload = read_json(marker)
            timeout = float(payload.get("timeout_seconds", timeout))
        except (OSError, TypeError, ValueError) as error:
            logger.warning("Malformed stop request %s: %s", marker, error)
        logger.info("Stop requested via %s (timeout %.0fs)", marker, timeout)
        self._request_stop(timeout)

    def _request_stop(self, timeout_seconds: float) -> None:
        deadline = time.monotonic() + max(0.0, timeout_seconds)
        if self._stop_requested:
            # A second request can only shorten the grace period.
            if self._stop_deadline is None or deadline < self._stop_deadline:
                self._stop_deadline = deadline
            return
        self._stop_requested = True
        self._stop_deadline = deadline
        self._stop_report.requested_at = utc_now()

    def _write_status_snapshot(self) -> None:
        owner = self._owner
        payload = {
            "pid": owner.pid if owner else os.getpid(),
            "updated_at": to_iso(utc_now()),
            "stop_requested": self._stop_requested,
            "slots": [
                {
                    "slot": slot.index,
                    "task_id": slot.task_id,
                    "exec_id": slot.exec_id,
                    "runner": slot.runner.value,
                    "pid": slot.process.pid,
                    "elapsed_seconds": round(slot.process.elapsed_seconds, 1),
                }
                for slot in sorted(self._slots.values(), key=lambda item: item.index)
            ],
        }
        try:
            write_json_atomic(self.queue_dir / STATUS_FILENAME, payload)
        except OSError as error:
            logger.warning("Could not write worker status: %s", error)

    def _finalize_files(self) -> None:
        try:
            write_json_atomic(self.queue_dir / STOP_REPORT_FILENAME, self._stop_report.to_dict())
        except OSError as error:
            logger.error("Could not write stop report: %s", error)
        (self.queue_dir / STATUS_FILENAME).unlink(missing_ok=True)
        (self.queue_dir / STOP_FILENAME).unlink(missing_ok=True)

    @contextmanager
    def _signal_handlers(self) -> Iterator[None]:
        if not hasattr(signal, "SIGINT"):
            yield
            return

        original_sigint = signal.getsignal(signal.SIGINT)
        original_sigterm = signal.getsignal(signal.SIGTERM)

        def _handler(signum: int, _: object | None) -> None:
            try:
                name = signal.Signals(signum).name
            except ValueError:
                name = str(signum)
            logger.info("Received %s, stopping worker", name)
            # Repeated signals skip the grace period.
            self._request_stop(0.0 if self._stop_requested else self.stop_timeout_seconds)

        try:
            signal.signal(signal.SIGINT, _handler)
            signal.signal(signal.SIGTERM, _handler)
        except ValueError:
            # Signal handlers can only be installed in main thread.
            yield
            return
        try:
            yield
        finally:
            signal.signal(signal.SIGINT, original_sigint)
            signal.signal(signal.SIGTERM, original_sigterm)


def _classify(slot: _Slot, completion: _Completion) -> tuple[ExitStatus, str | None]:
    if slot.termination is not None:
        return slot.termination, slot.termination_reason
    if completion.error is not None:
        return ExitStatus.FAILED, completion.error
    if completion.exit_code == 0:
        return ExitStatus.SUCCEEDED, None
    return ExitStatus.FAILED, f"runner exited with code {completion.exit_code}"


def _count(summary: WorkerRunSummary, exit_status: ExitStatus, task: Task | None) -> None:
    if exit_status is ExitStatus.SUCCEEDED:
        summary.succeeded += 1
    elif exit_status is ExitStatus.TIMED_OUT:
        summary.timed_out += 1
        summary.failed += 1
    elif exit_status is ExitStatus.FAILED:
        summary.failed += 1
    elif task is not None and task.status is TaskStatus.CANCELLED:
        summary.cancelled += 1
    elif task is not None and task.status is TaskStatus.PENDING:
        summary.requeued += 1
    else:
        summary.killed += 1


def _terminate_orphan(execution: Execution, *, grace_seconds: float) -> None:
    """Kill a runner left behind by a dead worker, if its pid was not reused."""

    pid = execution.pid
    if pid is None:
        return
    try:
        process = psutil.Process(pid)
        if process.create_time() < execution.started_at.timestamp() - 1:
            return
        logger.warning("Terminating orphaned runner pid %s of %s", pid, execution.exec_id)
        os.killpg(pid, signal.SIGTERM)
        try:
            process.wait(timeout=grace_seconds)
        except psutil.TimeoutExpired:
            os.killpg(pid, signal.SIGKILL)
    except (psutil.NoSuchProcess, ProcessLookupError):
        return
    except (psutil.AccessDenied, PermissionError) as error:
        logger.warning("Cannot terminate orphaned runner pid %s: %s", pid, error)


def worker_status(queue_dir: Path, store: TaskStore) -> WorkerStatus:
    """Read lock owner, liveness and slot snapshot from the queue directory."""

    owner = read_owner(queue_dir)
    alive = owner is not None and owner_alive(owner)
    slots: list[dict[str, Any]] = []
    updated_at: datetime | None = None
    if alive and owner is not None:
        try:
            snapshot = read_json(queue_dir / STATUS_FILENAME)
        except (OSError, ValueError):
            snapshot = {}
        if snapshot.get("pid") == owner.pid:
            slots = list(snapshot.get("slots", []))
            updated_at = from_iso(snapshot.get("updated_at"))
    return WorkerStatus(
        running=alive,
        pid=owner.pid if alive and owner else None,
        hostname=owner.hostname if alive and owner else None,
        started_at=owner.started_at if alive and owner else None,
        parallelism=owner.parallelism if alive and owner else None,
        stop_requested=alive and (queue_dir / STOP_FILENAME).exists(),
        slots=slots,
        counts=store.counts_by_status(),
        updated_at=updated_at,
    )


def request_stop(
    queue_dir: Path,
    *,
    timeout_seconds: float,
    kill_grace_seconds: float = 5.0,
    poll_interval_seconds: float = 0.2,
) -> StopReport | None:
    """Ask the running worker to stop and wait for its report.

    Returns None when no worker is running.
    """

    owner = read_owner(queue_dir)
    if owner is None or not owner_alive(owner):
        return None
    requested_at = utc_now()
    write_json_atomic(
        queue_dir / STOP_FILENAME,
        {"requested_at": to_iso(requested_at), "timeout_seconds": timeout_seconds},
    )
    logger.info("Stop requested for worker pid %s", owner.pid)

    deadline = time.monotonic() + timeout_seconds + kill_grace_seconds + KILL_SETTLE_SECONDS + 30
    while True:
        current = read_owner(queue_dir)
        if current is None or current.pid != owner.pid or not owner_alive(owner):
            break
        if time.monotonic() > deadline:
            raise TimeoutExceeded(f"Worker pid {owner.pid} did not stop in time.")
        time.sleep(poll_interval_seconds)

    try:
        report = StopReport.from_dict(read_json(queue_dir / STOP_REPORT_FILENAME))
    except (OSError, ValueError) as error:
        raise TaskQueueError(f"Worker pid {owner.pid} exited without a stop report.") from error
    if report.finished_at is None or report.finished_at < requested_at:
        raise TaskQueueError(f"Worker pid {owner.pid} exited without a stop report.")
    return report
