"""Shared test fixtures."""

from __future__ import annotations

import logging
import sys
import threading
import time
from collections.abc import Callable, Iterator
from pathlib import Path

import pytest

from gwtui import logging_setup
from gwtui.tasks.backend import RunnerSpec
from gwtui.tasks.logs import ExecutionLogManager
from gwtui.tasks.models import RunnerKind, Task, TaskCreate
from gwtui.tasks.store import TaskStore
from gwtui.tasks.worker import WorkerPool, WorkerRunSummary
from gwtui.worktree import WorktreeResolver

ECHO_AGENT = "{executable} -m gwtui.tasks.backend.echo_agent"


def echo_template(*agent_args: str, via_stdin: bool = True) -> str:
    """Runner template that starts the echo agent with extra arguments."""

    prompt = "-" if via_stdin else "{prompt}"
    return " ".join([ECHO_AGENT, *agent_args, prompt])


def echo_specs(*agent_args: str, timeout_seconds: float = 60.0) -> dict[RunnerKind, RunnerSpec]:
    return {
        kind: RunnerSpec(
            kind=kind,
            executable=sys.executable,
            timeout_seconds=timeout_seconds,
            command_template=echo_template(*agent_args, via_stdin=kind is RunnerKind.CODEX),
        )
        for kind in RunnerKind
    }


def wait_for(predicate: Callable[[], bool], *, timeout: float = 15.0) -> None:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return
        time.sleep(0.05)
    raise AssertionError("condition not met in time")


@pytest.fixture()
def queue_dir(tmp_path: Path) -> Path:
    return tmp_path / "queue"


@pytest.fixture()
def worktree(tmp_path: Path) -> Path:
    path = tmp_path / "wt1"
    path.mkdir()
    return path


@pytest.fixture()
def store(queue_dir: Path) -> TaskStore:
    task_store = TaskStore(queue_dir)
    task_store.init()
    return task_store


@pytest.fixture()
def add_task(store: TaskStore, worktree: Path) -> Callable[..., Task]:
    def _add(prompt: str = "do X", *, priority: int = 50, runner: str = "codex", **kwargs) -> Task:
        return store.create(
            TaskCreate(
                runner=runner,
                worktree=str(kwargs.pop("worktree", worktree)),
                prompt=prompt,
                priority=priority,
                **kwargs,
            ),
        )

    return _add


@pytest.fixture()
def make_pool(store: TaskStore, tmp_path: Path) -> Callable[..., WorkerPool]:
    def _make(
        *agent_args: str,
        parallelism: int = 1,
        timeout_seconds: float = 60.0,
        **kwargs,
    ) -> WorkerPool:
        options = {
            "poll_interval_seconds": 0.05,
            "kill_grace_seconds": 0.5,
            "stop_timeout_seconds": 30.0,
            "resolver": WorktreeResolver(base_dir=tmp_path / "worktrees"),
        }
        options.update(kwargs)
        return WorkerPool(
            store=store,
            log_manager=ExecutionLogManager(store.queue_dir, refresh_interval=0.05),
            runners=echo_specs(*agent_args, timeout_seconds=timeout_seconds),
            parallelism=parallelism,
            **options,
        )

    return _make


class PoolThread:
    """Runs `WorkerPool.run` in a background thread and keeps its result."""

    def __init__(self, pool: WorkerPool, **run_kwargs) -> None:
        self.pool = pool
        self.summary: WorkerRunSummary | None = None
        self.error: BaseException | None = None
        self._thread = threading.Thread(target=self._run, kwargs=run_kwargs, daemon=True)

    def start(self) -> PoolThread:
        self._thread.start()
        return self

    def join(self, timeout: float = 30.0) -> WorkerRunSummary:
        self._thread.join(timeout)
        assert not self._thread.is_alive(), "worker did not finish"
        if self.error is not None:
            raise self.error
        assert self.summary is not None
        return self.summary

    def _run(self, **run_kwargs) -> None:
        try:
            self.summary = self.pool.run(**run_kwargs)
        except BaseException as error:  # noqa: BLE001
            self.error = error


@pytest.fixture()
def run_in_background() -> Iterator[Callable[..., PoolThread]]:
    started: list[PoolThread] = []

    def _start(pool: WorkerPool, **run_kwargs) -> PoolThread:
        thread = PoolThread(pool, **run_kwargs).start()
        started.append(thread)
        return thread

    yield _start
    for thread in started:
        thread.pool.stop(0, wait=True)


@pytest.fixture()
def echo_env(monkeypatch: pytest.MonkeyPatch, queue_dir: Path) -> Path:
    """Point Settings.from_env at a temp queue and the echo agent."""

    monkeypatch.setenv("GWTUI_TASKS_QUEUE_DIR", str(queue_dir))
    for kind in RunnerKind:
        monkeypatch.setenv(f"GWTUI_TASKS_{kind.name}_EXECUTABLE", sys.executable)
        monkeypatch.setenv(
            f"GWTUI_TASKS_{kind.name}_COMMAND_TEMPLATE",
            echo_template(via_stdin=kind is RunnerKind.CODEX),
        )
    monkeypatch.setenv("GWTUI_TASKS_POLL_INTERVAL_SECONDS", "0.05")
    monkeypatch.setenv("GWTUI_TASKS_KILL_GRACE_SECONDS", "0.5")
    return queue_dir


@pytest.fixture(autouse=True)
def _drop_cli_log_handlers() -> Iterator[None]:
    """CLI invocations attach handlers to CliRunner's streams; detach them afterwards."""

    yield
    root = logging.getLogger()
    while logging_setup._installed_handlers:
        handler = logging_setup._installed_handlers.pop()
        root.removeHandler(handler)
        handler.close()
