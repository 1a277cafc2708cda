from __future__ import annotations

from datetime import timedelta
from pathlib import Path

import allure
import pytest

from gwtui.config import RunnerSettings, Settings, TaskSettings
from gwtui.tasks.backend.base import DEFAULT_COMMAND_TEMPLATES
from gwtui.tasks.common import parse_duration
from gwtui.tasks.models import RunnerKind

pytestmark = [
    allure.epic("Task Queue"),
    allure.feature("Configuration"),
]


def test_from_env_uses_defaults(monkeypatch: pytest.MonkeyPatch) -> None:
    for name in (
        "GWTUI_TASKS_QUEUE_DIR",
        "GWTUI_TASKS_MAX_PARALLEL",
        "GWTUI_TASKS_RUNNER",
        "GWTUI_TASKS_CODEX_EXECUTABLE",
        "GWTUI_TASKS_CODEX_COMMAND_TEMPLATE",
        "GWTUI_TASKS_CLAUDE_TIMEOUT",
    ):
        monkeypatch.delenv(name, raising=False)

    settings = Settings.from_env()

    assert settings.tasks.queue_dir == Path("~/.config/gwtui/tasks").expanduser()
    assert settings.tasks.max_parallel == 3
    assert settings.tasks.default_runner is RunnerKind.CODEX
    codex = settings.tasks.runner_spec(RunnerKind.CODEX)
    assert codex.executable == "codex"
    assert codex.command_template == DEFAULT_COMMAND_TEMPLATES[RunnerKind.CODEX]
    assert codex.prompt_via_stdin
    assert not settings.tasks.runner_spec(RunnerKind.CLAUDE).prompt_via_stdin
    assert settings.tasks.runner_spec(RunnerKind.CLAUDE).timeout_seconds == 30 * 60
    settings.validate()


def test_from_env_reads_overrides(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    monkeypatch.setenv("GWTUI_TASKS_QUEUE_DIR", str(tmp_path / "q"))
    monkeypatch.setenv("GWTUI_TASKS_MAX_PARALLEL", "5")
    monkeypatch.setenv("GWTUI_TASKS_RUNNER", "Claude")
    monkeypatch.setenv("GWTUI_TASKS_CLAUDE_EXECUTABLE", "/opt/bin/claude")
    monkeypatch.setenv("GWTUI_TASKS_CLAUDE_TIMEOUT", "2h")
    monkeypatch.setenv("GWTUI_TASKS_AUTO_CLEANUP", "no")

    settings = Settings.from_env()

    assert settings.tasks.queue_dir == tmp_path / "q"
    assert settings.tasks.max_parallel == 5
    assert settings.tasks.default_runner is RunnerKind.CLAUDE
    claude = settings.tasks.runner_spec(RunnerKind.CLAUDE)
    assert claude.executable == "/opt/bin/claude"
    assert claude.timeout_seconds == 2 * 3_600
    assert settings.tasks.cleanup_policy() is None


def test_explicit_queue_dir_wins_over_environment(
    monkeypatch: pytest.MonkeyPatch,
    tmp_path: Path,
) -> None:
    monkeypatch.setenv("GWTUI_TASKS_QUEUE_DIR", str(tmp_path / "from-env"))

    settings = Settings.from_env(queue_dir=tmp_path / "explicit")

    assert settings.tasks.queue_dir == tmp_path / "explicit"


def test_from_env_rejects_invalid_boolean_and_runner(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("GWTUI_TASKS_AUTO_CLEANUP", "maybe")
    with pytest.raises(ValueError, match="Invalid boolean value for GWTUI_TASKS_AUTO_CLEANUP"):
        Settings.from_env()

    monkeypatch.delenv("GWTUI_TASKS_AUTO_CLEANUP")
    monkeypatch.setenv("GWTUI_TASKS_RUNNER", "gemini")
    with pytest.raises(ValueError, match="Invalid runner for GWTUI_TASKS_RUNNER"):
        Settings.from_env()


def test_validate_rejects_non_positive_parallelism() -> None:
    settings = Settings(tasks=TaskSettings(max_parallel=0))

    with pytest.raises(ValueError, match="GWTUI_TASKS_MAX_PARALLEL"):
        settings.validate()


def test_validate_rejects_disabled_queue() -> None:
    settings = Settings(tasks=TaskSettings(enabled=False))

    with pytest.raises(ValueError, match="disabled"):
        settings.validate()


def test_validate_rejects_bad_runner_timeout_and_empty_executable() -> None:
    bad_timeout = TaskSettings()
    bad_timeout.runners[RunnerKind.CODEX] = RunnerSettings(executable="codex", timeout="soon")
    with pytest.raises(ValueError, match="Invalid duration"):
        Settings(tasks=bad_timeout).validate()

    empty = TaskSettings()
    empty.runners[RunnerKind.CLAUDE] = RunnerSettings(executable="  ")
    with pytest.raises(ValueError, match="GWTUI_TASKS_CLAUDE_EXECUTABLE"):
        Settings(tasks=empty).validate()


def test_cleanup_policy_follows_retention_settings() -> None:
    policy = TaskSettings(log_retention_days=7, max_log_size_mb=2).cleanup_policy()

    assert policy is not None
    assert policy.older_than == timedelta(days=7)
    assert policy.max_total_bytes == 2 * 1024 * 1024


@pytest.mark.parametrize(
    ("value", "expected"),
    [
        ("30d", timedelta(days=30)),
        ("90", timedelta(seconds=90)),
        ("1.5h", timedelta(minutes=90)),
        ("500ms", timedelta(milliseconds=500)),
        (" 2W ", timedelta(weeks=2)),
    ],
)
def test_parse_duration(value: str, expected: timedelta) -> None:
    assert parse_duration(value) == expected


def test_parse_duration_rejects_garbage() -> None:
    with pytest.raises(ValueError, match="Invalid duration"):
        parse_duration("thirty days")
