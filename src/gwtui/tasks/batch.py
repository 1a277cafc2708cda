"""YAML batch files for enqueuing many tasks at once.

```yaml
version: "1.0"
repository: ~/src/project      # optional, defaults to the current repository
tasks:
  - id: auth-refactor
    name: Refactor auth
    worktree: feature/auth
    base_branch: main
    priority: 80
    prompt: |
      Split the auth module into ...
```
"""

from __future__ import annotations

from pathlib import Path
from typing import Any

import yaml

from gwtui.tasks.errors import ValidationError
from gwtui.tasks.models import DEFAULT_PRIORITY, PRIORITY_MAX, PRIORITY_MIN, TaskCreate

SUPPORTED_VERSION = "1.0"


def load_task_file(
    path: Path,
    *,
    runner: str,
    default_repository: str | None = None,
) -> list[TaskCreate]:
    """Parse a batch file into task specs; nothing is written."""

    try:
        text = path.read_text("utf-8")
    except OSError as error:
        raise ValidationError(f"Failed to read task file {path}: {error}") from error
    return parse_task_file(text, runner=runner, default_repository=default_repository)


def parse_task_file(
    text: str,
    *,
    runner: str,
    default_repository: str | None = None,
) -> list[TaskCreate]:
    try:
        document = yaml.safe_load(text)
    except yaml.YAMLError as error:
        raise ValidationError(f"Failed to parse YAML task file: {error}") from error
    if not isinstance(document, dict):
        raise ValidationError("Task file must be a mapping with 'version' and 'tasks'.")

    version = str(document.get("version", "")).strip()
    if version != SUPPORTED_VERSION:
        raise ValidationError(
            f"Unsupported task file version: {version or '<missing>'} "
            f"(expected {SUPPORTED_VERSION})",
        )
    repository = _optional_str(document.get("repository")) or default_repository
    entries = document.get("tasks")
    if not isinstance(entries, list) or not entries:
        raise ValidationError("Task file must define a non-empty 'tasks' list.")

    specs: list[TaskCreate] = []
    seen: set[str] = set()
    for position, entry in enumerate(entries, start=1):
        spec = _entry_to_spec(
            entry,
            position=position,
            runner=runner,
            repository=repository,
        )
        if spec.task_id in seen:
            raise ValidationError(f"Duplicate task id in task file: {spec.task_id}")
        seen.add(spec.task_id or "")
        specs.append(spec)
    return specs


def _entry_to_spec(
    entry: Any,
    *,
    position: int,
    runner: str,
    repository: str | None,
) -> TaskCreate:
    if not isinstance(entry, dict):
        raise ValidationError(f"Task #{position} must be a mapping.")
    task_id = _optional_str(entry.get("id"))
    if task_id is None:
        raise ValidationError(f"Task #{position}: 'id' is required.")
    worktree = _optional_str(entry.get("worktree"))
    if worktree is None:
        raise ValidationError(f"Task {task_id}: 'worktree' must be specified.")

    raw_priority = entry.get("priority", DEFAULT_PRIORITY)
    if isinstance(raw_priority, bool) or not isinstance(raw_priority, int):
        raise ValidationError(f"Task {task_id}: priority must be an integer.")
    if not PRIORITY_MIN <= raw_priority <= PRIORITY_MAX:
        raise ValidationError(
            f"Task {task_id}: priority must be between {PRIORITY_MIN} and {PRIORITY_MAX}.",
        )
    return TaskCreate(
        task_id=task_id,
        runner=_optional_str(entry.get("runner")) or runner,
        worktree=worktree,
        prompt=str(entry.get("prompt") or ""),
        priority=raw_priority,
        name=_optional_str(entry.get("name")),
        base_branch=_optional_str(entry.get("base_branch")),
        repository=_optional_str(entry.get("repository")) or repository,
    )


def _optional_str(value: Any) -> str | None:
    if value is None:
        return None
    text = str(value).strip()
    return text or None
