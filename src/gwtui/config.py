"""Runtime configuration for the task queue."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path

from gwtui.tasks.backend.base import DEFAULT_COMMAND_TEMPLATES, DEFAULT_EXECUTABLES, RunnerSpec
from gwtui.tasks.common import parse_duration
from gwtui.tasks.logs import CleanupPolicy
from gwtui.tasks.models import RunnerKind

DEFAULT_QUEUE_DIR = "~/.config/gwtui/tasks"
DEFAULT_WORKTREE_BASE_DIR = "~/worktrees"


@dataclass(slots=True)
class RunnerSettings:
    """One runner's executable, timeout and command template."""

    executable: str
    timeout: str = "30m"
    command_template: str = ""

    def timeout_seconds(self) -> float:
        return parse_duration(self.timeout).total_seconds()


@dataclass(slots=True)
class TaskSettings:
    """Queue, worker and log retention settings."""

    enabled: bool = True
    queue_dir: Path = Path(DEFAULT_QUEUE_DIR).expanduser()
    max_parallel: int = 3
    default_runner: RunnerKind = RunnerKind.CODEX
    poll_interval_seconds: float = 5.0
    kill_grace_seconds: float = 5.0
    stop_timeout: str = "5m"
    log_retention_days: int = 30
    max_log_size_mb: int = 100
    auto_cleanup: bool = True
    cleanup_interval_seconds: float = 3_600.0
    runners: dict[RunnerKind, RunnerSettings] = field(
        default_factory=lambda: {
            kind: RunnerSettings(executable=DEFAULT_EXECUTABLES[kind]) for kind in RunnerKind
        },
    )

    def runner_spec(self, kind: RunnerKind) -> RunnerSpec:
        settings = self.runners[kind]
        return RunnerSpec.default(
            kind,
            executable=settings.executable,
            timeout_seconds=settings.timeout_seconds(),
            command_template=settings.command_template or DEFAULT_COMMAND_TEMPLATES[kind],
        )

    def runner_specs(self) -> dict[RunnerKind, RunnerSpec]:
        return {kind: self.runner_spec(kind) for kind in RunnerKind}

    def stop_timeout_seconds(self) -> float:
        return parse_duration(self.stop_timeout).total_seconds()

    def cleanup_policy(self) -> CleanupPolicy | None:
        if not self.auto_cleanup:
            return None
        return CleanupPolicy(
            older_than=parse_duration(f"{self.log_retention_days}d"),
            max_total_bytes=self.max_log_size_mb * 1024 * 1024,
        )


@dataclass(slots=True)
class Settings:
    """Application settings grouped by domain concerns."""

    tasks: TaskSettings = field(default_factory=TaskSettings)
    worktree_base_dir: Path = Path(DEFAULT_WORKTREE_BASE_DIR).expanduser()

    @classmethod
    def from_env(cls, queue_dir: Path | None = None) -> Settings:
        """Load settings from environment with defaults for local use."""

        runners = {
            kind: RunnerSettings(
                executable=os.getenv(
                    f"GWTUI_TASKS_{kind.name}_EXECUTABLE",
                    DEFAULT_EXECUTABLES[kind],
                ),
                timeout=os.getenv(f"GWTUI_TASKS_{kind.name}_TIMEOUT", "30m"),
                command_template=os.getenv(f"GWTUI_TASKS_{kind.name}_COMMAND_TEMPLATE", ""),
            )
            for kind in RunnerKind
        }
        return cls(
            tasks=TaskSettings(
                enabled=_env_bool("GWTUI_TASKS_ENABLED", default=True),
                queue_dir=queue_dir
                or Path(os.getenv("GWTUI_TASKS_QUEUE_DIR", DEFAULT_QUEUE_DIR)).expanduser(),
                max_parallel=int(os.getenv("GWTUI_TASKS_MAX_PARALLEL", "3")),
                default_runner=_env_runner("GWTUI_TASKS_RUNNER", default=RunnerKind.CODEX),
                poll_interval_seconds=float(
                    os.getenv("GWTUI_TASKS_POLL_INTERVAL_SECONDS", "5"),
                ),
                kill_grace_seconds=float(os.getenv("GWTUI_TASKS_KILL_GRACE_SECONDS", "5")),
                stop_timeout=os.getenv("GWTUI_TASKS_STOP_TIMEOUT", "5m"),
                log_retention_days=int(os.getenv("GWTUI_TASKS_LOG_RETENTION_DAYS", "30")),
                max_log_size_mb=int(os.getenv("GWTUI_TASKS_MAX_LOG_SIZE_MB", "100")),
                auto_cleanup=_env_bool("GWTUI_TASKS_AUTO_CLEANUP", default=True),
                cleanup_interval_seconds=float(
                    os.getenv("GWTUI_TASKS_CLEANUP_INTERVAL_SECONDS", "3600"),
                ),
                runners=runners,
            ),
            worktree_base_dir=Path(
                os.getenv("GWTUI_WORKTREE_BASE_DIR", DEFAULT_WORKTREE_BASE_DIR),
            ).expanduser(),
        )

    def validate(self) -> None:
        """Raise configuration error for out-of-range values."""

        tasks = self.tasks
        if not tasks.enabled:
            raise ValueError("Task queue is disabled (GWTUI_TASKS_ENABLED=false).")
        if tasks.max_parallel <= 0:
            raise ValueError("GWTUI_TASKS_MAX_PARALLEL must be > 0.")
        if tasks.poll_interval_seconds <= 0:
            raise ValueError("GWTUI_TASKS_POLL_INTERVAL_SECONDS must be > 0.")
        if tasks.kill_grace_seconds < 0:
            raise ValueError("GWTUI_TASKS_KILL_GRACE_SECONDS must be >= 0.")
        if tasks.log_retention_days < 0:
            raise ValueError("GWTUI_TASKS_LOG_RETENTION_DAYS must be >= 0.")
        if tasks.max_log_size_mb <= 0:
            raise ValueError("GWTUI_TASKS_MAX_LOG_SIZE_MB must be > 0.")
        parse_duration(tasks.stop_timeout)
        for kind, runner in tasks.runners.items():
            if not runner.executable.strip():
                raise ValueError(f"GWTUI_TASKS_{kind.name}_EXECUTABLE must not be empty.")
            runner.timeout_seconds()


def _env_runner(name: str, *, default: RunnerKind) -> RunnerKind:
    value = os.getenv(name)
    if value is None:
        return default
    try:
        return RunnerKind(value.strip().lower())
    except ValueError as error:
        raise ValueError(f"Invalid runner for {name}: {value!r}") from error


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    raise ValueError(f"Invalid boolean value for {name}: {value!r}")
