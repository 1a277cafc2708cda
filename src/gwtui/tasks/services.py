"""Use-case services for the task queue."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path

from gwtui.tasks.batch import load_task_file
from gwtui.tasks.errors import NotFound, ValidationError
from gwtui.tasks.models import DEFAULT_PRIORITY, Task, TaskCreate
from gwtui.tasks.store import TaskStore, validate_create
from gwtui.worktree import find_repo_root

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class AddTask:
    """High-level command to enqueue one task."""

    runner: str
    worktree: str
    prompt: str
    priority: int = DEFAULT_PRIORITY
    name: str | None = None
    base_branch: str | None = None


class TaskService:
    """Records the repository a task belongs to and inserts it into the store."""

    def __init__(self, *, store: TaskStore, working_directory: Path) -> None:
        self.store = store
        self.working_directory = working_directory

    def add(self, command: AddTask) -> Task:
        repo_root = find_repo_root(self.working_directory)
        return self.store.create(
            TaskCreate(
                runner=command.runner,
                worktree=command.worktree,
                prompt=command.prompt,
                priority=command.priority,
                name=command.name,
                base_branch=command.base_branch,
                repository=str(repo_root) if repo_root is not None else None,
            ),
        )

    def add_from_file(self, path: Path, *, runner: str) -> list[Task]:
        """Validate every entry of a batch file, then create them in file order."""

        default_repo = find_repo_root(self.working_directory)
        specs = load_task_file(
            path,
            runner=runner,
            default_repository=str(default_repo) if default_repo is not None else None,
        )
        for spec in specs:
            validate_create(spec)
            spec.repository = self._repository_root(spec.repository)
            if spec.task_id is not None and self._exists(spec.task_id):
                raise ValidationError(f"Task already exists: {spec.task_id}")

        created = [self.store.create(spec) for spec in specs]
        logger.info("Enqueued %d tasks from %s", len(created), path)
        return created

    def _repository_root(self, repository: str | None) -> str | None:
        if repository is None:
            return None
        candidate = Path(repository).expanduser()
        if not candidate.is_absolute():
            candidate = self.working_directory / candidate
        if not candidate.is_dir():
            raise ValidationError(f"Repository does not exist: {repository}")
        root = find_repo_root(candidate)
        if root is None:
            raise ValidationError(f"Not a git repository: {repository}")
        return str(root)

    def _exists(self, task_id: str) -> bool:
        try:
            self.store.get(task_id)
        except NotFound:
            return False
        return True
