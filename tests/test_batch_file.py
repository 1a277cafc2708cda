from __future__ import annotations

from pathlib import Path

import allure
import pytest

from gwtui.tasks.batch import load_task_file, parse_task_file
from gwtui.tasks.errors import ValidationError
from gwtui.tasks.models import DEFAULT_PRIORITY, TaskStatus
from gwtui.tasks.services import TaskService

pytestmark = [
    allure.epic("Task Queue"),
    allure.feature("Batch Files"),
]

_VALID = """
version: "1.0"
tasks:
  - id: auth-refactor
    name: Refactor auth
    worktree: feature/auth
    base_branch: main
    priority: 80
    prompt: |
      Split the auth module.
  - id: docs
    worktree: feature/docs
    runner: claude
    prompt: Update the README
"""


def test_parse_task_file_builds_specs_in_file_order() -> None:
    specs = parse_task_file(_VALID, runner="codex", default_repository="/src/project")

    assert [spec.task_id for spec in specs] == ["auth-refactor", "docs"]
    first, second = specs
    assert first.runner == "codex"
    assert first.priority == 80
    assert first.base_branch == "main"
    assert first.prompt.strip() == "Split the auth module."
    assert first.repository == "/src/project"
    assert second.runner == "claude"
    assert second.priority == DEFAULT_PRIORITY
    assert second.name is None


@pytest.mark.parametrize(
    ("text", "message"),
    [
        ('version: "2.0"\ntasks: [{id: a, worktree: w}]', "Unsupported task file version: 2.0"),
        ("tasks: [{id: a, worktree: w}]", "Unsupported task file version: <missing>"),
        ("- just\n- a list", "must be a mapping"),
        ('version: "1.0"\ntasks: []', "non-empty 'tasks' list"),
        ('version: "1.0"\ntasks: [{worktree: w}]', "'id' is required"),
        ('version: "1.0"\ntasks: [{id: a}]', "'worktree' must be specified"),
        ('version: "1.0"\ntasks: [{id: a, worktree: w, priority: high}]', "must be an integer"),
        ('version: "1.0"\ntasks: [{id: a, worktree: w, priority: 0}]', "between 1 and 100"),
        ('version: "1.0"\ntasks: [{id: a, worktree: w, priority: null}]', "must be an integer"),
        (
            'version: "1.0"\ntasks: [{id: a, worktree: w}, {id: a, worktree: v}]',
            "Duplicate task id",
        ),
        ('version: "1.0"\ntasks: [oops', "Failed to parse YAML"),
    ],
)
def test_parse_task_file_rejects_malformed_documents(text: str, message: str) -> None:
    with pytest.raises(ValidationError, match=message):
        parse_task_file(text, runner="codex")


def test_load_task_file_reports_unreadable_path(tmp_path: Path) -> None:
    with pytest.raises(ValidationError, match="Failed to read task file"):
        load_task_file(tmp_path / "missing.yaml", runner="codex")


def test_add_from_file_creates_every_task(store, tmp_path: Path) -> None:
    path = tmp_path / "tasks.yaml"
    path.write_text(_VALID, encoding="utf-8")

    created = TaskService(store=store, working_directory=tmp_path).add_from_file(
        path,
        runner="codex",
    )

    assert [task.id for task in created] == ["auth-refactor", "docs"]
    assert store.get("docs").status is TaskStatus.PENDING
    assert store.get("auth-refactor").priority == 80


def test_add_from_file_is_all_or_nothing(store, add_task, tmp_path: Path) -> None:
    path = tmp_path / "tasks.yaml"
    path.write_text(
        'version: "1.0"\n'
        "tasks:\n"
        "  - {id: good, worktree: w, prompt: fine}\n"
        "  - {id: bad, worktree: w, prompt: '   '}\n",
        encoding="utf-8",
    )
    service = TaskService(store=store, working_directory=tmp_path)

    with pytest.raises(ValidationError):
        service.add_from_file(path, runner="codex")
    assert store.list() == []

    existing = add_task("already here", task_id="taken")
    path.write_text(
        'version: "1.0"\ntasks:\n  - {id: fresh, worktree: w, prompt: x}\n'
        "  - {id: taken, worktree: w, prompt: y}\n",
        encoding="utf-8",
    )
    with pytest.raises(ValidationError, match="already exists: taken"):
        service.add_from_file(path, runner="codex")
    assert [task.id for task in store.list()] == [existing.id]


def test_add_from_file_rejects_missing_repository(store, tmp_path: Path) -> None:
    path = tmp_path / "tasks.yaml"
    path.write_text(
        'version: "1.0"\nrepository: ./nowhere\ntasks:\n  - {id: a, worktree: w, prompt: x}\n',
        encoding="utf-8",
    )

    with pytest.raises(ValidationError, match="Repository does not exist"):
        TaskService(store=store, working_directory=tmp_path).add_from_file(path, runner="codex")
