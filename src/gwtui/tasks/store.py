"""Filesystem task store: one JSON record per task under the queue directory.

Writers take a store-wide advisory lock and replace records atomically
(temp file + rename), so readers never lock and never see a partial record.
Temp files left behind by a crashed writer are swept on the next locked access.
"""

from __future__ import annotations

import logging
import re
from collections import Counter
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from pathlib import Path, PurePath

from filelock import FileLock, Timeout

from gwtui.tasks.common import TMP_SUFFIX, read_json, utc_now, write_json_atomic
from gwtui.tasks.errors import NotFound, StoreCorruption, TaskQueueError, ValidationError
from gwtui.tasks.models import (
    PRIORITY_MAX,
    PRIORITY_MIN,
    Execution,
    RunnerKind,
    Task,
    TaskCreate,
    TaskFilter,
    TaskSort,
    TaskStatus,
    new_task_id,
)

logger = logging.getLogger(__name__)

TASKS_DIRNAME = "tasks"
LOCK_FILENAME = ".store.lock"
RECORD_PREFIX = "task-"
RECORD_SUFFIX = ".json"

_TASK_ID_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_-]{0,63}$")
_ID_ATTEMPTS = 16

Transition = Callable[[Task], Task | None]


class TaskStore:
    """Create, read, update, list and delete task records."""

    def __init__(self, queue_dir: Path, *, lock_timeout_seconds: float = 10.0) -> None:
        self.queue_dir = queue_dir
        self.tasks_dir = queue_dir / TASKS_DIRNAME
        self.lock_timeout_seconds = lock_timeout_seconds
        self._lock = FileLock(str(self.tasks_dir / LOCK_FILENAME))

    def init(self) -> None:
        self.tasks_dir.mkdir(parents=True, exist_ok=True)

    @contextmanager
    def locked(self) -> Iterator[None]:
        """Hold the store-wide write lock."""

        self.init()
        try:
            self._lock.acquire(timeout=self.lock_timeout_seconds)
        except Timeout as error:
            raise TaskQueueError(
                f"Task store is locked by another process: {self.tasks_dir}",
            ) from error
        try:
            self._sweep_temp_files()
            yield
        finally:
            self._lock.release()

    def create(self, spec: TaskCreate) -> Task:
        valid = validate_create(spec)
        now = utc_now()
        with self.locked():
            task_id = valid.task_id or self._unused_task_id()
            if self._path(task_id).exists():
                raise ValidationError(f"Task already exists: {task_id}")
            task = Task(
                id=task_id,
                runner=RunnerKind(valid.runner),
                worktree=valid.worktree,
                prompt=valid.prompt,
                priority=valid.priority,
                name=valid.name,
                base_branch=valid.base_branch,
                repository=valid.repository,
                created_at=now,
                updated_at=now,
            )
            self._write(task)
        logger.info(
            "Task %s created: runner=%s priority=%s",
            task.id,
            task.runner.value,
            task.priority,
        )
        return task

    def get(self, task_id: str) -> Task:
        if not _TASK_ID_RE.match(task_id):
            raise NotFound(f"Task not found: {task_id}")
        return self._read(self._path(task_id))

    def find(self, pattern: str) -> Task:
        """Resolve an exact id, else a unique substring of id, name or worktree."""

        needle = pattern.strip()
        if not needle:
            raise ValidationError("Task id or pattern must not be empty.")
        try:
            return self.get(needle)
        except NotFound:
            pass
        lowered = needle.lower()
        matches = [
            task
            for task in self.list()
            if any(lowered in value.lower() for value in (task.id, task.name or "", task.worktree))
        ]
        if not matches:
            raise NotFound(f"Task not found: {pattern}")
        if len(matches) > 1:
            ids = ", ".join(task.id for task in matches[:10])
            raise ValidationError(f"Pattern {pattern!r} matches {len(matches)} tasks: {ids}")
        return matches[0]

    def list(
        self,
        task_filter: TaskFilter | None = None,
        sort: TaskSort = TaskSort.PRIORITY,
    ) -> list[Task]:
        """Load every readable record; corrupt ones are skipped with a warning."""

        if not self.tasks_dir.is_dir():
            return []
        tasks: list[Task] = []
        for path in self.tasks_dir.glob(f"{RECORD_PREFIX}*{RECORD_SUFFIX}"):
            try:
                task = self._read(path)
            except NotFound:
                continue
            except StoreCorruption as error:
                logger.warning("Skipping unreadable task record %s: %s", path, error)
                continue
            if task_filter is None or task_filter.matches(task):
                tasks.append(task)
        return _sorted(tasks, sort)

    def update(self, task_id: str, transition: Transition) -> Task:
        """Apply `transition` to the current record under the lock."""

        with self.locked():
            task = self.get(task_id)
            updated = transition(task) or task
            self._write(updated)
        return updated

    def delete(self, task_id: str, *, force: bool = False) -> Task:
        with self.locked():
            task = self.get(task_id)
            running = task.running_execution
            if running is not None and not force:
                raise ValidationError(
                    f"Task {task_id} has a running execution ({running.exec_id}); "
                    "cancel it first or use --force.",
                )
            self._path(task_id).unlink(missing_ok=True)
        logger.info("Task %s deleted", task_id)
        return task

    def find_execution(self, exec_id: str) -> tuple[Task, Execution]:
        for task in self.list(sort=TaskSort.CREATED):
            execution = task.execution(exec_id)
            if execution is not None:
                return task, execution
        raise NotFound(f"Execution not found: {exec_id}")

    def executions(self) -> list[tuple[Task, Execution]]:
        """All executions, newest start first."""

        pairs = [
            (task, execution)
            for task in self.list(sort=TaskSort.CREATED)
            for execution in task.executions
        ]
        pairs.sort(key=lambda pair: pair[1].started_at, reverse=True)
        return pairs

    def counts_by_status(self) -> dict[str, int]:
        counter = Counter(task.status.value for task in self.list())
        return {status.value: counter.get(status.value, 0) for status in TaskStatus}

    def _unused_task_id(self) -> str:
        for _ in range(_ID_ATTEMPTS):
            candidate = new_task_id()
            if not self._path(candidate).exists():
                return candidate
        raise TaskQueueError("Could not allocate a unique task id.")

    def _path(self, task_id: str) -> Path:
        return self.tasks_dir / f"{RECORD_PREFIX}{task_id}{RECORD_SUFFIX}"

    def _read(self, path: Path) -> Task:
        try:
            payload = read_json(path)
        except FileNotFoundError as error:
            task_id = path.name.removeprefix(RECORD_PREFIX).removesuffix(RECORD_SUFFIX)
            raise NotFound(f"Task not found: {task_id}") from error
        except (OSError, ValueError) as error:
            raise StoreCorruption(f"Cannot read {path}: {error}", path=str(path)) from error
        try:
            return Task.from_dict(payload)
        except (KeyError, TypeError, ValueError) as error:
            raise StoreCorruption(f"Malformed task record {path}: {error}", path=str(path)) from error

    def _write(self, task: Task) -> None:
        write_json_atomic(self._path(task.id), task.to_dict())

    def _sweep_temp_files(self) -> None:
        for path in self.tasks_dir.glob(f".*{TMP_SUFFIX}"):
            logger.warning("Removing interrupted write %s", path)
            path.unlink(missing_ok=True)


def _sorted(tasks: list[Task], sort: TaskSort) -> list[Task]:
    if sort is TaskSort.CREATED:
        return sorted(tasks, key=lambda task: (task.created_at, task.id))
    if sort is TaskSort.ACTIVITY:
        return sorted(tasks, key=lambda task: (task.updated_at, task.id), reverse=True)
    return sorted(tasks, key=lambda task: (-task.priority, task.created_at, task.id))


def validate_create(spec: TaskCreate) -> TaskCreate:
    """Return a normalized copy of `spec` or raise `ValidationError`."""

    prompt = (spec.prompt or "").strip()
    if not prompt:
        raise ValidationError("Task prompt must not be empty.")
    base_branch = (spec.base_branch or "").strip() or None
    if base_branch is not None and any(char.isspace() for char in base_branch):
        raise ValidationError(f"Invalid base branch: {base_branch!r}")
    if spec.task_id is not None:
        _validate_task_id(spec.task_id)
    return TaskCreate(
        runner=_validate_runner(spec.runner).value,
        worktree=_validate_worktree(spec.worktree),
        prompt=prompt,
        priority=_validate_priority(spec.priority),
        name=(spec.name or "").strip() or None,
        base_branch=base_branch,
        repository=spec.repository,
        task_id=spec.task_id,
    )


def _validate_runner(value: str) -> RunnerKind:
    try:
        return RunnerKind((value or "").strip().lower())
    except ValueError as error:
        supported = ", ".join(kind.value for kind in RunnerKind)
        raise ValidationError(f"Unknown runner {value!r}. Supported: {supported}.") from error


def _validate_priority(value: int) -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValidationError(f"Priority must be an integer, got {value!r}.")
    if not PRIORITY_MIN <= value <= PRIORITY_MAX:
        raise ValidationError(
            f"Priority must be between {PRIORITY_MIN} and {PRIORITY_MAX}, got {value}.",
        )
    return value


def _validate_worktree(value: str) -> str:
    worktree = (value or "").strip()
    if not worktree:
        raise ValidationError("Worktree reference must not be empty.")
    if any(char in worktree for char in ("\n", "\r", "\t", "\0")):
        raise ValidationError(f"Invalid worktree reference: {worktree!r}")
    if ".." in PurePath(worktree).parts:
        raise ValidationError(f"Worktree reference must not contain '..': {worktree!r}")
    return worktree


def _validate_task_id(value: str) -> None:
    if not _TASK_ID_RE.match(value):
        raise ValidationError(
            f"Invalid task id {value!r}: use letters, digits, '-' or '_' (max 64 chars).",
        )

