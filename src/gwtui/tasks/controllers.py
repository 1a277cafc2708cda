"""Controllers for task queue CLI commands."""

from __future__ import annotations

import csv
import io
import json
import logging
import subprocess
import sys
import time
from collections.abc import Iterator
from dataclasses import dataclass, field
from pathlib import Path

from gwtui.config import Settings
from gwtui.logging_setup import setup_logging
from gwtui.tasks.common import format_duration, format_relative, parse_duration, to_iso, utc_now
from gwtui.tasks.errors import AlreadyRunning, NotFound, PartialFailure, ValidationError
from gwtui.tasks.logs import CleanupPolicy, ExecutionLogManager, RenderMode
from gwtui.tasks.models import ExitStatus, Execution, Task, TaskFilter, TaskSort, TaskStatus
from gwtui.tasks.pool_lock import read_owner
from gwtui.tasks.services import AddTask, TaskService
from gwtui.tasks.state_machine import cancel, reset
from gwtui.tasks.store import TaskStore
from gwtui.tasks.worker import (
    WORKER_LOG_FILENAME,
    WorkerPool,
    WorkerStatus,
    request_stop,
    worker_status,
)
from gwtui.worktree import WorktreeResolver, find_repo_root

logger = logging.getLogger(__name__)

DETACH_STARTUP_SECONDS = 10.0
_PROMPT_PREVIEW_CHARS = 60


@dataclass(slots=True)
class TaskAddCommand:
    """CLI input for enqueuing one task or a batch file."""

    queue_dir: Path | None
    runner: str | None
    worktree: str | None
    prompt: str | None
    priority: int
    name: str | None = None
    base_branch: str | None = None
    file: Path | None = None
    output_format: str = "table"


@dataclass(slots=True)
class TaskListCommand:
    """CLI input for task listing."""

    queue_dir: Path | None
    status: str | None = None
    priority_min: int | None = None
    contains: str | None = None
    sort: str = "priority"
    output_format: str = "table"
    verbose: bool = False


@dataclass(slots=True)
class TaskShowCommand:
    """CLI input for task inspection."""

    queue_dir: Path | None
    pattern: str
    output_format: str = "table"


@dataclass(slots=True)
class TaskMutateCommand:
    """CLI input for cancel/reset/delete."""

    queue_dir: Path | None
    pattern: str
    force: bool = False


@dataclass(slots=True)
class TaskLogsCommand:
    """CLI input for listing executions or printing one log."""

    queue_dir: Path | None
    exec_id: str | None = None
    task: str | None = None
    status: str | None = None
    limit: int = 20
    output_format: str = "table"
    raw: bool = False
    follow: bool = False


@dataclass(slots=True)
class TaskLogsCleanCommand:
    """CLI input for log retention cleanup."""

    queue_dir: Path | None
    older_than: str
    dry_run: bool = False
    output_format: str = "table"


@dataclass(slots=True)
class WorkerStartCommand:
    """CLI input for starting the worker daemon."""

    queue_dir: Path | None
    parallel: int | None = None
    wait: bool = False
    until_idle: bool = False
    detached_child: bool = False
    console_level: int = logging.WARNING


@dataclass(slots=True)
class WorkerStatusCommand:
    """CLI input for worker status."""

    queue_dir: Path | None
    output_format: str = "table"


@dataclass(slots=True)
class WorkerStopCommand:
    """CLI input for a graceful worker stop."""

    queue_dir: Path | None
    timeout: str | None = None
    output_format: str = "table"


@dataclass(slots=True)
class WorkerCommandResult:
    """Worker report to render in CLI; `partial_failure` maps to exit code 5."""

    lines: list[str] = field(default_factory=list)
    partial_failure: bool = False


class TaskCliController:
    """Coordinates task queue, log and worker CLI operations."""

    def add(self, command: TaskAddCommand) -> list[str]:
        settings = _settings(command.queue_dir)
        service = TaskService(store=_store(settings), working_directory=Path.cwd())
        runner = command.runner or settings.tasks.default_runner.value

        if command.file is not None:
            tasks = service.add_from_file(command.file, runner=runner)
            if command.output_format == "json":
                return [_json([task.to_dict() for task in tasks])]
            lines = [f"Tasks enqueued from {command.file}: {len(tasks)}"]
            lines.extend(
                f"  {task.id} worktree={task.worktree} priority={task.priority}" for task in tasks
            )
            return lines

        if not command.worktree:
            raise ValidationError("Worktree is required (-w/--worktree).")
        task = service.add(
            AddTask(
                runner=runner,
                worktree=command.worktree,
                prompt=command.prompt or "",
                priority=command.priority,
                name=command.name,
                base_branch=command.base_branch,
            ),
        )
        if command.output_format == "json":
            return [_json(task.to_dict())]
        return [
            f"Task enqueued: task_id={task.id} runner={task.runner.value} "
            f"priority={task.priority} status={task.status.value}",
            f"Worktree: {task.worktree}"
            + (f" (base {task.base_branch})" if task.base_branch else ""),
        ]

    def list_tasks(self, command: TaskListCommand) -> list[str]:
        settings = _settings(command.queue_dir)
        task_filter = TaskFilter(
            status=_parse_task_status(command.status),
            priority_min=command.priority_min,
            contains=command.contains,
        )
        tasks = _store(settings).list(task_filter, sort=TaskSort(command.sort))

        if command.output_format == "json":
            return [_json([task.to_dict() for task in tasks])]
        if command.output_format == "csv":
            return _csv_lines(
                ["task_id", "name", "worktree", "status", "priority", "runner", "duration"],
                [
                    [
                        task.id,
                        task.name or "",
                        task.worktree,
                        task.status.value,
                        str(task.priority),
                        task.runner.value,
                        _task_duration(task),
                    ]
                    for task in tasks
                ],
            )
        if not tasks:
            return ["No tasks found."]

        headers = ["TASK", "WORKTREE", "STATUS", "PRIORITY", "RUNNER", "DURATION", "UPDATED"]
        if command.verbose:
            headers.append("PROMPT")
        rows = []
        for task in tasks:
            row = [
                task.id,
                task.worktree,
                _status_label(task),
                str(task.priority),
                task.runner.value,
                _task_duration(task),
                format_relative(task.updated_at),
            ]
            if command.verbose:
                row.append(_truncate(task.prompt, _PROMPT_PREVIEW_CHARS))
            rows.append(row)
        return _table(headers, rows)

    def show(self, command: TaskShowCommand) -> list[str]:
        settings = _settings(command.queue_dir)
        task = _store(settings).find(command.pattern)
        if command.output_format == "json":
            return [_json(task.to_dict())]

        lines = [
            f"Task: {task.id}",
            f"Name: {task.name or '-'}",
            f"Runner: {task.runner.value}",
            f"Status: {_status_label(task)}",
            f"Priority: {task.priority}",
            f"Worktree: {task.worktree}",
            f"Base branch: {task.base_branch or '-'}",
            f"Repository: {task.repository or '-'}",
            f"Created: {to_iso(task.created_at)}",
            f"Updated: {to_iso(task.updated_at)}",
            f"Last error: {task.last_error or '-'}",
            "Prompt:",
            *(f"  {line}" for line in task.prompt.splitlines()),
            f"Executions: {len(task.executions)}",
        ]
        for execution in task.executions:
            lines.append(f"  {_execution_summary(execution)}")
        return lines

    def cancel(self, command: TaskMutateCommand) -> list[str]:
        settings = _settings(command.queue_dir)
        store = _store(settings)
        task = store.update(store.find(command.pattern).id, cancel)
        if task.pending_request is not None:
            return [f"Cancellation requested for running task {task.id}; the worker stops it."]
        return [f"Task cancelled: {task.id}"]

    def reset(self, command: TaskMutateCommand) -> list[str]:
        settings = _settings(command.queue_dir)
        store = _store(settings)
        task = store.update(store.find(command.pattern).id, reset)
        if task.pending_request is not None:
            return [f"Reset requested for running task {task.id}; the worker re-queues it."]
        return [
            f"Task re-queued: {task.id} (executions kept: {len(task.executions)})",
        ]

    def delete(self, command: TaskMutateCommand) -> list[str]:
        settings = _settings(command.queue_dir)
        store = _store(settings)
        task = store.delete(store.find(command.pattern).id, force=command.force)
        log_manager = ExecutionLogManager(settings.tasks.queue_dir)
        # The running execution's log is still open in its slot; cleanup sweeps it later.
        removed = sum(
            1
            for execution in task.executions
            if not execution.is_running and log_manager.delete(execution.exec_id)
        )
        lines = [f"Task deleted: {task.id} (logs removed: {removed})"]
        running = task.running_execution
        if running is not None:
            lines.append(f"Running execution {running.exec_id} is stopped by the worker.")
        return lines

    def logs(self, command: TaskLogsCommand) -> Iterator[str]:
        """List executions, or stream one execution log.

        Lookups happen before the first line is produced so errors surface
        before any output.
        """

        settings = _settings(command.queue_dir)
        store = _store(settings)
        log_manager = ExecutionLogManager(settings.tasks.queue_dir)
        if command.exec_id is None:
            return iter(self._list_executions(command, store=store, log_manager=log_manager))

        exec_id = command.exec_id.strip()
        log_manager.log_path(exec_id)
        known = True
        try:
            store.find_execution(exec_id)
        except NotFound:
            known = False
        if not known and not log_manager.exists(exec_id):
            raise NotFound(f"Execution not found: {exec_id}")

        def _running() -> bool:
            try:
                _, execution = store.find_execution(exec_id)
            except NotFound:
                return False
            return execution.is_running

        follow = command.follow and known and _running()
        return log_manager.render(
            exec_id,
            RenderMode.RAW if command.raw else RenderMode.PRETTY,
            follow=follow,
            is_running=_running,
        )

    def clean_logs(self, command: TaskLogsCleanCommand) -> list[str]:
        settings = _settings(command.queue_dir)
        older_than = parse_duration(command.older_than)
        store = _store(settings)
        executions = [execution for task in store.list() for execution in task.executions]
        result = ExecutionLogManager(settings.tasks.queue_dir).cleanup(
            CleanupPolicy(older_than=older_than, dry_run=command.dry_run),
            executions,
        )
        if command.output_format == "json":
            return [
                _json(
                    {
                        "deleted": result.deleted,
                        "freed_bytes": result.freed_bytes,
                        "skipped_running": result.skipped_running,
                        "dry_run": result.dry_run,
                    },
                ),
            ]
        if not result.deleted:
            return [f"No logs older than {command.older_than} found."]
        verb = "Would remove" if result.dry_run else "Removed"
        lines = [
            f"{verb} {len(result.deleted)} execution logs ({_format_bytes(result.freed_bytes)}).",
        ]
        lines.extend(f"  {exec_id}" for exec_id in result.deleted)
        if result.skipped_running:
            lines.append(f"Running executions left untouched: {result.skipped_running}")
        return lines

    def start_worker(self, command: WorkerStartCommand) -> WorkerCommandResult:
        settings = _settings(command.queue_dir)
        parallelism = command.parallel or settings.tasks.max_parallel
        if parallelism <= 0:
            raise ValidationError("--parallel must be > 0.")
        store = _store(settings)
        if not command.wait:
            return self._spawn_detached(
                settings,
                store=store,
                parallelism=parallelism,
                until_idle=command.until_idle,
            )

        queue_dir = settings.tasks.queue_dir
        if command.detached_child:
            # stderr already points at worker.log.
            setup_logging(console_level=logging.INFO)
        else:
            setup_logging(
                console_level=command.console_level,
                log_file=queue_dir / WORKER_LOG_FILENAME,
            )
        pool = _worker_pool(settings, store=store, parallelism=parallelism)
        logger.info("Starting worker for %s (parallel %d)", queue_dir, parallelism)
        summary = pool.run(exit_when_idle=command.until_idle)
        report = pool.last_stop_report
        lines = [
            "Worker summary: "
            f"dispatched={summary.dispatched} succeeded={summary.succeeded} "
            f"failed={summary.failed} timed_out={summary.timed_out} "
            f"cancelled={summary.cancelled} requeued={summary.requeued} "
            f"killed={summary.killed} spawn_errors={summary.spawn_errors} "
            f"recovered={summary.recovered}",
        ]
        partial = False
        if report is not None and (report.force_killed or report.kill_failures):
            partial = True
            lines.append(
                f"Force-killed: {', '.join(report.force_killed) or '-'}; "
                f"kill failures: {', '.join(report.kill_failures) or '-'}",
            )
        return WorkerCommandResult(lines=lines, partial_failure=partial)

    def worker_status(self, command: WorkerStatusCommand) -> list[str]:
        settings = _settings(command.queue_dir)
        status = worker_status(settings.tasks.queue_dir, _store(settings))
        if command.output_format == "json":
            return [_json(status.to_dict())]
        return _status_lines(status)

    def stop_worker(self, command: WorkerStopCommand) -> WorkerCommandResult:
        settings = _settings(command.queue_dir)
        timeout = parse_duration(command.timeout or settings.tasks.stop_timeout).total_seconds()
        report = request_stop(
            settings.tasks.queue_dir,
            timeout_seconds=timeout,
            kill_grace_seconds=settings.tasks.kill_grace_seconds,
        )
        if report is None:
            if command.output_format == "json":
                return WorkerCommandResult(lines=[_json({"running": False})])
            return WorkerCommandResult(lines=["No worker running."])

        partial = bool(report.force_killed or report.kill_failures)
        if command.output_format == "json":
            return WorkerCommandResult(
                lines=[_json({"running": False, **report.to_dict()})],
                partial_failure=partial,
            )
        lines = [
            "Worker stopped.",
            f"Finished within timeout: {len(report.graceful)}",
            f"Force-killed: {len(report.force_killed)}",
        ]
        lines.extend(f"  {exec_id}" for exec_id in report.force_killed)
        if report.kill_failures:
            lines.append(f"Could not kill: {', '.join(report.kill_failures)}")
        return WorkerCommandResult(lines=lines, partial_failure=partial)

    def _list_executions(
        self,
        command: TaskLogsCommand,
        *,
        store: TaskStore,
        log_manager: ExecutionLogManager,
    ) -> list[str]:
        task_id = store.find(command.task).id if command.task else None
        status = _parse_exit_status(command.status)
        pairs = [
            (task, execution)
            for task, execution in store.executions()
            if (task_id is None or task.id == task_id)
            and (status is None or execution.exit_status is status)
        ][: command.limit]

        if command.output_format == "json":
            return [
                _json(
                    [
                        {
                            **execution.to_dict(),
                            "task_name": task.name,
                            "worktree": task.worktree,
                            "log_bytes": log_manager.size(execution.exec_id),
                        }
                        for task, execution in pairs
                    ],
                ),
            ]
        if not pairs:
            return ["No executions found."]
        return _table(
            ["EXECUTION", "TASK", "RUNNER", "STATUS", "STARTED", "DURATION", "EXIT"],
            [
                [
                    execution.exec_id,
                    task.id,
                    execution.runner.value,
                    execution.exit_status.value,
                    format_relative(execution.started_at),
                    format_duration(execution.duration_seconds()),
                    "-" if execution.exit_code is None else str(execution.exit_code),
                ]
                for task, execution in pairs
            ],
        )

    def _spawn_detached(
        self,
        settings: Settings,
        *,
        store: TaskStore,
        parallelism: int,
        until_idle: bool,
    ) -> WorkerCommandResult:
        queue_dir = settings.tasks.queue_dir
        current = worker_status(queue_dir, store)
        if current.running:
            raise AlreadyRunning(
                f"A worker is already running for {queue_dir} (pid {current.pid}).",
                pid=current.pid,
            )

        args = [
            sys.executable,
            "-m",
            "gwtui.main",
            "task",
            "--queue-dir",
            str(queue_dir),
            "worker",
            "start",
            "--wait",
            "--detached-child",
            "--parallel",
            str(parallelism),
        ]
        if until_idle:
            args.append("--until-idle")
        log_path = queue_dir / WORKER_LOG_FILENAME
        with log_path.open("a", encoding="utf-8") as log_handle:
            process = subprocess.Popen(  # noqa: S603
                args,
                stdin=subprocess.DEVNULL,
                stdout=log_handle,
                stderr=subprocess.STDOUT,
                start_new_session=True,
                close_fds=True,
            )
        logger.info("Spawned detached worker pid %s", process.pid)

        deadline = time.monotonic() + DETACH_STARTUP_SECONDS
        while time.monotonic() < deadline:
            owner = read_owner(queue_dir)
            if owner is not None and owner.pid == process.pid:
                return WorkerCommandResult(
                    lines=[
                        f"Worker started in background (pid {process.pid}, parallel {parallelism})",
                        f"Log: {log_path}",
                    ],
                )
            exit_code = process.poll()
            if exit_code == 0:
                return WorkerCommandResult(
                    lines=[f"Worker pid {process.pid} drained the queue and exited."],
                )
            if exit_code == AlreadyRunning.exit_code:
                raise AlreadyRunning(f"A worker is already running for {queue_dir}.")
            if exit_code is not None:
                raise PartialFailure(
                    f"Worker exited during startup with code {exit_code}; see {log_path}",
                )
            time.sleep(0.1)
        raise PartialFailure(
            f"Worker pid {process.pid} did not report startup within "
            f"{DETACH_STARTUP_SECONDS:.0f}s; see {log_path}",
        )


def _settings(queue_dir: Path | None) -> Settings:
    settings = Settings.from_env(queue_dir=queue_dir)
    settings.validate()
    return settings


def _store(settings: Settings) -> TaskStore:
    store = TaskStore(settings.tasks.queue_dir)
    store.init()
    return store


def _worker_pool(settings: Settings, *, store: TaskStore, parallelism: int) -> WorkerPool:
    tasks = settings.tasks
    return WorkerPool(
        store=store,
        log_manager=ExecutionLogManager(tasks.queue_dir),
        runners=tasks.runner_specs(),
        resolver=WorktreeResolver(
            base_dir=settings.worktree_base_dir,
            default_repository=find_repo_root(Path.cwd()),
        ),
        parallelism=parallelism,
        poll_interval_seconds=tasks.poll_interval_seconds,
        kill_grace_seconds=tasks.kill_grace_seconds,
        stop_timeout_seconds=tasks.stop_timeout_seconds(),
        cleanup_policy=tasks.cleanup_policy(),
        cleanup_interval_seconds=tasks.cleanup_interval_seconds,
    )


def _status_lines(status: WorkerStatus) -> list[str]:
    counts = " ".join(f"{name}={count}" for name, count in status.counts.items())
    if not status.running:
        return ["Worker running: no", f"Tasks: {counts}"]
    lines = [
        f"Worker running: yes (pid {status.pid} on {status.hostname})",
        f"Started: {to_iso(status.started_at)} ({format_relative(status.started_at)})",
        f"Stop requested: {'yes' if status.stop_requested else 'no'}",
        f"Active slots: {status.active_slots}/{status.parallelism}",
    ]
    for slot in status.slots:
        lines.append(
            f"  slot {slot.get('slot')}: task={slot.get('task_id')} "
            f"exec={slot.get('exec_id')} runner={slot.get('runner')} "
            f"pid={slot.get('pid')} elapsed={format_duration(slot.get('elapsed_seconds'))}",
        )
    lines.append(f"Tasks: {counts}")
    return lines


def _execution_summary(execution: Execution) -> str:
    exit_code = "-" if execution.exit_code is None else execution.exit_code
    summary = (
        f"{execution.exec_id} {execution.exit_status.value} "
        f"started={to_iso(execution.started_at)} "
        f"duration={format_duration(execution.duration_seconds())} exit_code={exit_code}"
    )
    if execution.error:
        summary += f" error={execution.error}"
    return summary


def _status_label(task: Task) -> str:
    if task.pending_request is not None:
        return f"{task.status.value} ({task.pending_request.value} requested)"
    return task.status.value


def _task_duration(task: Task) -> str:
    execution = task.latest_execution
    if execution is None:
        return "-"
    return format_duration(execution.duration_seconds(utc_now()))


def _parse_task_status(value: str | None) -> TaskStatus | None:
    if value is None:
        return None
    try:
        return TaskStatus(value.strip().lower())
    except ValueError as error:
        supported = ", ".join(status.value for status in TaskStatus)
        raise ValidationError(f"Unknown status {value!r}. Supported: {supported}.") from error


def _parse_exit_status(value: str | None) -> ExitStatus | None:
    if value is None:
        return None
    try:
        return ExitStatus(value.strip().lower())
    except ValueError as error:
        supported = ", ".join(status.value for status in ExitStatus)
        raise ValidationError(f"Unknown status {value!r}. Supported: {supported}.") from error


def _table(headers: list[str], rows: list[list[str]]) -> list[str]:
    widths = [len(header) for header in headers]
    for row in rows:
        for index, cell in enumerate(row):
            widths[index] = max(widths[index], len(cell))

    def _render(cells: list[str]) -> str:
        return "  ".join(cell.ljust(widths[index]) for index, cell in enumerate(cells)).rstrip()

    return [_render(headers), *(_render(row) for row in rows)]


def _csv_lines(headers: list[str], rows: list[list[str]]) -> list[str]:
    buffer = io.StringIO()
    writer = csv.writer(buffer, lineterminator="\n")
    writer.writerow(headers)
    writer.writerows(rows)
    return buffer.getvalue().splitlines()


def _truncate(text: str, limit: int) -> str:
    flat = " ".join(text.split())
    if len(flat) <= limit:
        return flat
    return flat[: limit - 3] + "..."


def _format_bytes(size: int) -> str:
    value = float(size)
    for unit in ("B", "KB", "MB"):
        if value < 1024:
            return f"{value:.0f} {unit}" if unit == "B" else f"{value:.1f} {unit}"
        value /= 1024
    return f"{value:.1f} GB"


def _json(payload: object) -> str:
    return json.dumps(payload, indent=2, ensure_ascii=False)
