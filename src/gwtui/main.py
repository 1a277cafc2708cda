"""CLI entrypoint for gwtui."""

from __future__ import annotations

import json
import logging
import time
from collections.abc import Iterable, Iterator
from contextlib import contextmanager
from pathlib import Path
from typing import Any, NoReturn

import rich_click as click

from gwtui import __version__
from gwtui.logging_setup import setup_logging
from gwtui.tasks.controllers import (
    TaskAddCommand,
    TaskCliController,
    TaskListCommand,
    TaskLogsCleanCommand,
    TaskLogsCommand,
    TaskMutateCommand,
    TaskShowCommand,
    WorkerCommandResult,
    WorkerStartCommand,
    WorkerStatusCommand,
    WorkerStopCommand,
)
from gwtui.tasks.errors import PartialFailure, TaskQueueError, ValidationError
from gwtui.tasks.models import DEFAULT_PRIORITY, PRIORITY_MAX, PRIORITY_MIN, RunnerKind

click.rich_click.USE_MARKDOWN = True
TASK_CONTROLLER = TaskCliController()

WATCH_INTERVAL_SECONDS = 2.0
_EXEC_ID_KEY = "gwtui.exec_id"
_RUNNERS = [kind.value for kind in RunnerKind]
_TASK_STATUSES = ["pending", "running", "completed", "failed", "cancelled"]
_EXIT_STATUSES = ["running", "succeeded", "failed", "timed_out", "killed"]
_LOG_LEVELS = ["debug", "info", "warning", "error"]


class _LogsGroup(click.RichGroup):
    """`logs clean ...` runs the subcommand, `logs <exec_id>` prints one log."""

    def parse_args(self, ctx: click.Context, args: list[str]) -> list[str]:
        rest = list(args)
        takes_value = {
            name
            for param in self.params
            if isinstance(param, click.Option) and not param.is_flag
            for name in param.opts
        }
        index = 0
        while index < len(rest):
            token = rest[index]
            if token in takes_value:
                index += 2
            elif token.startswith("-"):
                index += 1
            else:
                if token not in self.commands:
                    ctx.meta[_EXEC_ID_KEY] = rest.pop(index)
                break
        return super().parse_args(ctx, rest)


class TaskCliError(click.ClickException):
    """Queue error reported with its exit code."""

    def __init__(self, error: TaskQueueError) -> None:
        super().__init__(str(error))
        self.exit_code = error.exit_code


@click.group()
@click.version_option(version=__version__, prog_name="gwtui")
@click.option(
    "--log-level",
    type=click.Choice(_LOG_LEVELS, case_sensitive=False),
    default="warning",
    show_default=True,
    help="Console log level.",
)
def gwtui(log_level: str) -> None:
    """Git worktree helper with a background task queue for coding agents."""

    setup_logging(console_level=getattr(logging, log_level.upper()))


@gwtui.group()
@click.option(
    "--queue-dir",
    type=click.Path(file_okay=False, path_type=Path),
    default=None,
    help="Queue directory. Defaults to GWTUI_TASKS_QUEUE_DIR or ~/.config/gwtui/tasks.",
)
@click.pass_context
def task(ctx: click.Context, queue_dir: Path | None) -> None:
    """Queue coding-agent tasks against worktrees and run them in the background."""

    ctx.obj = {"queue_dir": queue_dir.expanduser() if queue_dir is not None else None}


@task.command("add")
@click.argument("runner", type=click.Choice(_RUNNERS, case_sensitive=False))
@click.argument("name", required=False)
@click.option("-w", "--worktree", default=None, help="Worktree branch name or path.")
@click.option("--base", "base_branch", default=None, help="Base branch for a new worktree.")
@click.option("--prompt", default=None, help="Prompt for the runner. Defaults to NAME.")
@click.option(
    "-p",
    "--priority",
    type=click.IntRange(min=PRIORITY_MIN, max=PRIORITY_MAX),
    default=DEFAULT_PRIORITY,
    show_default=True,
    help="Higher runs first.",
)
@click.option(
    "-f",
    "--file",
    "file",
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
    default=None,
    help="YAML batch file (version 1.0) with many tasks.",
)
@click.option("--json", "json_output", is_flag=True, help="Print created tasks as JSON.")
@click.pass_obj
def task_add(  # noqa: PLR0913
    obj: dict[str, Any],
    runner: str,
    name: str | None,
    worktree: str | None,
    base_branch: str | None,
    prompt: str | None,
    priority: int,
    file: Path | None,
    json_output: bool,
) -> None:
    """Enqueue a task: `gwtui task add codex -w feature/x "Fix the flaky test" -p 80`."""

    with _cli_errors(json_output=json_output):
        _emit_lines(
            TASK_CONTROLLER.add(
                TaskAddCommand(
                    queue_dir=obj["queue_dir"],
                    runner=runner.lower(),
                    name=name,
                    worktree=worktree,
                    prompt=prompt if prompt is not None else name,
                    priority=priority,
                    base_branch=base_branch,
                    file=file,
                    output_format="json" if json_output else "table",
                ),
            ),
        )


@task.command("list")
@click.option(
    "--filter",
    "status",
    type=click.Choice(_TASK_STATUSES, case_sensitive=False),
    default=None,
    help="Only tasks with this status.",
)
@click.option(
    "--priority-min",
    type=click.IntRange(min=PRIORITY_MIN, max=PRIORITY_MAX),
    default=None,
    help="Only tasks with at least this priority.",
)
@click.option("--contains", default=None, help="Substring of id, name, worktree or prompt.")
@click.option(
    "--sort",
    type=click.Choice(["priority", "created", "activity"], case_sensitive=False),
    default="priority",
    show_default=True,
    help="Listing order.",
)
@click.option("--json", "json_output", is_flag=True, help="Print tasks as JSON.")
@click.option("--csv", "csv_output", is_flag=True, help="Print tasks as CSV.")
@click.option("--watch", is_flag=True, help="Refresh the table every 2 seconds until Ctrl+C.")
@click.option("-v", "--verbose", is_flag=True, help="Include a prompt preview column.")
@click.pass_obj
def task_list(  # noqa: PLR0913
    obj: dict[str, Any],
    status: str | None,
    priority_min: int | None,
    contains: str | None,
    sort: str,
    json_output: bool,
    csv_output: bool,
    watch: bool,
    verbose: bool,
) -> None:
    """List queued tasks."""

    if json_output and csv_output:
        raise click.UsageError("--json and --csv are mutually exclusive.")
    command = TaskListCommand(
        queue_dir=obj["queue_dir"],
        status=status,
        priority_min=priority_min,
        contains=contains,
        sort=sort.lower(),
        output_format="json" if json_output else "csv" if csv_output else "table",
        verbose=verbose,
    )
    with _cli_errors(json_output=json_output):
        if watch and command.output_format == "table":
            _watch(command)
            return
        _emit_lines(TASK_CONTROLLER.list_tasks(command))


@task.command("show")
@click.argument("pattern")
@click.option("--json", "json_output", is_flag=True, help="Print the task record as JSON.")
@click.pass_obj
def task_show(obj: dict[str, Any], pattern: str, json_output: bool) -> None:
    """Show one task by id or a unique part of its id, name or worktree."""

    with _cli_errors(json_output=json_output):
        _emit_lines(
            TASK_CONTROLLER.show(
                TaskShowCommand(
                    queue_dir=obj["queue_dir"],
                    pattern=pattern,
                    output_format="json" if json_output else "table",
                ),
            ),
        )


@task.command("cancel")
@click.argument("pattern")
@click.pass_obj
def task_cancel(obj: dict[str, Any], pattern: str) -> None:
    """Cancel a pending task, or ask the worker to stop a running one."""

    with _cli_errors():
        _emit_lines(
            TASK_CONTROLLER.cancel(TaskMutateCommand(queue_dir=obj["queue_dir"], pattern=pattern)),
        )


@task.command("reset")
@click.argument("pattern")
@click.pass_obj
def task_reset(obj: dict[str, Any], pattern: str) -> None:
    """Re-queue a finished task; its execution history is kept."""

    with _cli_errors():
        _emit_lines(
            TASK_CONTROLLER.reset(TaskMutateCommand(queue_dir=obj["queue_dir"], pattern=pattern)),
        )


@task.command("delete")
@click.argument("pattern")
@click.option("--force", is_flag=True, help="Delete even while an execution is running.")
@click.pass_obj
def task_delete(obj: dict[str, Any], pattern: str, force: bool) -> None:
    """Delete a task record."""

    with _cli_errors():
        _emit_lines(
            TASK_CONTROLLER.delete(
                TaskMutateCommand(queue_dir=obj["queue_dir"], pattern=pattern, force=force),
            ),
        )


@task.group(
    "logs",
    cls=_LogsGroup,
    invoke_without_command=True,
    subcommand_metavar="[EXEC_ID | clean]",
)
@click.option("--task", "task_pattern", default=None, help="Only executions of this task.")
@click.option(
    "--status",
    type=click.Choice(_EXIT_STATUSES, case_sensitive=False),
    default=None,
    help="Only executions with this outcome.",
)
@click.option(
    "--limit",
    type=click.IntRange(min=1, max=1000),
    default=20,
    show_default=True,
    help="Max executions to list.",
)
@click.option("--json", "json_output", is_flag=True, help="List executions as JSON.")
@click.option("--raw", is_flag=True, help="Print stored JSONL lines instead of rendered output.")
@click.option("-f", "--follow", is_flag=True, help="Keep printing while the execution runs.")
@click.pass_context
def task_logs(  # noqa: PLR0913
    ctx: click.Context,
    task_pattern: str | None,
    status: str | None,
    limit: int,
    json_output: bool,
    raw: bool,
    follow: bool,
) -> None:
    """List executions, or print the log of one execution."""

    if ctx.invoked_subcommand is not None:
        return
    exec_id = ctx.meta.get(_EXEC_ID_KEY)
    with _cli_errors(json_output=json_output):
        _emit_lines(
            TASK_CONTROLLER.logs(
                TaskLogsCommand(
                    queue_dir=ctx.obj["queue_dir"],
                    exec_id=exec_id,
                    task=task_pattern,
                    status=status,
                    limit=limit,
                    output_format="json" if json_output else "table",
                    raw=raw,
                    follow=follow,
                ),
            ),
        )


@task_logs.command("clean")
@click.option(
    "--older-than",
    required=True,
    help="Remove logs of executions that ended longer ago than this, for example 30d.",
)
@click.option("--dry-run", is_flag=True, help="Only report what would be removed.")
@click.option("--json", "json_output", is_flag=True, help="Print the cleanup result as JSON.")
@click.pass_obj
def task_logs_clean(
    obj: dict[str, Any],
    older_than: str,
    dry_run: bool,
    json_output: bool,
) -> None:
    """Delete old execution logs; running executions are never touched."""

    with _cli_errors(json_output=json_output):
        _emit_lines(
            TASK_CONTROLLER.clean_logs(
                TaskLogsCleanCommand(
                    queue_dir=obj["queue_dir"],
                    older_than=older_than,
                    dry_run=dry_run,
                    output_format="json" if json_output else "table",
                ),
            ),
        )


@task.group("worker")
def worker() -> None:
    """Background worker that runs queued tasks."""


@worker.command("start")
@click.option(
    "--parallel",
    type=click.IntRange(min=1, max=64),
    default=None,
    help="Max concurrent executions. Defaults to GWTUI_TASKS_MAX_PARALLEL.",
)
@click.option(
    "--wait/--detach",
    default=False,
    show_default=True,
    help="Run in the foreground, or spawn a background daemon.",
)
@click.option("--until-idle", is_flag=True, help="Exit once no task is pending or running.")
@click.option("--detached-child", is_flag=True, hidden=True)
@click.pass_obj
def worker_start(
    obj: dict[str, Any],
    parallel: int | None,
    wait: bool,
    until_idle: bool,
    detached_child: bool,
) -> None:
    """Start the worker daemon for the queue directory."""

    with _cli_errors():
        result = TASK_CONTROLLER.start_worker(
            WorkerStartCommand(
                queue_dir=obj["queue_dir"],
                parallel=parallel,
                wait=wait,
                until_idle=until_idle,
                detached_child=detached_child,
                console_level=_console_level(),
            ),
        )
        _emit_result(result)


@worker.command("status")
@click.option("--json", "json_output", is_flag=True, help="Print status as JSON.")
@click.pass_obj
def worker_status(obj: dict[str, Any], json_output: bool) -> None:
    """Show whether a worker is running and what it is executing."""

    with _cli_errors(json_output=json_output):
        _emit_lines(
            TASK_CONTROLLER.worker_status(
                WorkerStatusCommand(
                    queue_dir=obj["queue_dir"],
                    output_format="json" if json_output else "table",
                ),
            ),
        )


@worker.command("stop")
@click.option(
    "--timeout",
    default=None,
    help="Grace period before running executions are force-killed. "
    "Defaults to GWTUI_TASKS_STOP_TIMEOUT.",
)
@click.option("--json", "json_output", is_flag=True, help="Print the stop report as JSON.")
@click.pass_obj
def worker_stop(obj: dict[str, Any], timeout: str | None, json_output: bool) -> None:
    """Stop the worker: no new dispatches, wait for running executions, then kill."""

    with _cli_errors(json_output=json_output):
        _emit_result(
            TASK_CONTROLLER.stop_worker(
                WorkerStopCommand(
                    queue_dir=obj["queue_dir"],
                    timeout=timeout,
                    output_format="json" if json_output else "table",
                ),
            ),
        )


@contextmanager
def _cli_errors(*, json_output: bool = False) -> Iterator[None]:
    try:
        yield
    except TaskQueueError as error:
        _raise_cli_error(error, json_output=json_output)
    except ValueError as error:
        # Settings and duration parsing report bad values as ValueError.
        _raise_cli_error(ValidationError(str(error)), json_output=json_output)


def _raise_cli_error(error: TaskQueueError, *, json_output: bool) -> NoReturn:
    if not json_output:
        raise TaskCliError(error) from error
    # rich-click renders ClickException itself and never calls show().
    click.echo(
        json.dumps(
            {"error": {"type": type(error).__name__, "message": str(error)}},
            indent=2,
            ensure_ascii=False,
        ),
        err=True,
    )
    click.get_current_context().exit(error.exit_code)


def _watch(command: TaskListCommand) -> None:
    try:
        while True:
            lines = TASK_CONTROLLER.list_tasks(command)
            click.clear()
            click.echo(f"Tasks - updated {time.strftime('%Y-%m-%d %H:%M:%S')}")
            click.echo()
            _emit_lines(lines)
            click.echo()
            click.echo("[Press Ctrl+C to exit]")
            time.sleep(WATCH_INTERVAL_SECONDS)
    except KeyboardInterrupt:
        return


def _emit_result(result: WorkerCommandResult) -> None:
    _emit_lines(result.lines)
    if result.partial_failure:
        raise PartialFailure("Some executions had to be force-killed.")


def _console_level() -> int:
    ctx = click.get_current_context().find_root()
    level = ctx.params.get("log_level") or "warning"
    return getattr(logging, str(level).upper())


def _emit_lines(lines: Iterable[str]) -> None:
    for line in lines:
        click.echo(line)


if __name__ == "__main__":  # pragma: no cover
    gwtui()
