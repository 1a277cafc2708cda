"""Domain models for the task queue."""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any

from gwtui.tasks.common import from_iso, to_iso, utc_now

PRIORITY_MIN = 1
PRIORITY_MAX = 100
DEFAULT_PRIORITY = 50


class TaskStatus(str, Enum):
    """Durable task lifecycle states."""

    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in {TaskStatus.COMPLETED, TaskStatus.FAILED, TaskStatus.CANCELLED}


class RunnerKind(str, Enum):
    """External coding agents a task can be handed to."""

    CODEX = "codex"
    CLAUDE = "claude"


class ExitStatus(str, Enum):
    """Outcome of one execution."""

    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    TIMED_OUT = "timed_out"
    KILLED = "killed"


class PendingRequest(str, Enum):
    """Cooperative request on a running task, acted on by the worker."""

    CANCEL = "cancel"
    RESET = "reset"


def new_task_id() -> str:
    return uuid.uuid4().hex[:6]


def new_execution_id() -> str:
    return f"exec-{uuid.uuid4().hex[:12]}"


@dataclass(slots=True)
class Execution:
    """One concrete attempt to run a task."""

    exec_id: str
    task_id: str
    runner: RunnerKind
    started_at: datetime
    log_path: str
    working_directory: str | None = None
    pid: int | None = None
    ended_at: datetime | None = None
    exit_status: ExitStatus = ExitStatus.RUNNING
    exit_code: int | None = None
    error: str | None = None

    @property
    def is_running(self) -> bool:
        return self.exit_status is ExitStatus.RUNNING

    def duration_seconds(self, now: datetime | None = None) -> float:
        end = self.ended_at or now or utc_now()
        return max(0.0, (end - self.started_at).total_seconds())

    def to_dict(self) -> dict[str, Any]:
        return {
            "exec_id": self.exec_id,
            "task_id": self.task_id,
            "runner": self.runner.value,
            "started_at": to_iso(self.started_at),
            "ended_at": to_iso(self.ended_at),
            "exit_status": self.exit_status.value,
            "exit_code": self.exit_code,
            "error": self.error,
            "working_directory": self.working_directory,
            "pid": self.pid,
            "log_path": self.log_path,
        }

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> Execution:
        started_at = from_iso(payload["started_at"])
        if started_at is None:
            raise ValueError("execution started_at is required")
        return cls(
            exec_id=str(payload["exec_id"]),
            task_id=str(payload["task_id"]),
            runner=RunnerKind(payload["runner"]),
            started_at=started_at,
            ended_at=from_iso(payload.get("ended_at")),
            exit_status=ExitStatus(payload.get("exit_status", ExitStatus.RUNNING.value)),
            exit_code=payload.get("exit_code"),
            error=payload.get("error"),
            working_directory=payload.get("working_directory"),
            pid=payload.get("pid"),
            log_path=str(payload.get("log_path", "")),
        )


@dataclass(slots=True)
class Task:
    """Queued unit of work: a runner, a worktree and a prompt."""

    id: str
    runner: RunnerKind
    worktree: str
    prompt: str
    priority: int = DEFAULT_PRIORITY
    status: TaskStatus = TaskStatus.PENDING
    name: str | None = None
    base_branch: str | None = None
    repository: str | None = None
    created_at: datetime = field(default_factory=utc_now)
    updated_at: datetime = field(default_factory=utc_now)
    executions: list[Execution] = field(default_factory=list)
    pending_request: PendingRequest | None = None
    last_error: str | None = None

    @property
    def latest_execution(self) -> Execution | None:
        return self.executions[-1] if self.executions else None

    @property
    def running_execution(self) -> Execution | None:
        for execution in reversed(self.executions):
            if execution.is_running:
                return execution
        return None

    def execution(self, exec_id: str) -> Execution | None:
        for execution in self.executions:
            if execution.exec_id == exec_id:
                return execution
        return None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "runner": self.runner.value,
            "worktree": self.worktree,
            "base_branch": self.base_branch,
            "repository": self.repository,
            "prompt": self.prompt,
            "priority": self.priority,
            "status": self.status.value,
            "pending_request": self.pending_request.value if self.pending_request else None,
            "last_error": self.last_error,
            "created_at": to_iso(self.created_at),
            "updated_at": to_iso(self.updated_at),
            "executions": [execution.to_dict() for execution in self.executions],
        }

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> Task:
        created_at = from_iso(payload.get("created_at")) or utc_now()
        request = payload.get("pending_request")
        return cls(
            id=str(payload["id"]),
            name=payload.get("name"),
            runner=RunnerKind(payload["runner"]),
            worktree=str(payload["worktree"]),
            base_branch=payload.get("base_branch"),
            repository=payload.get("repository"),
            prompt=str(payload.get("prompt", "")),
            priority=int(payload.get("priority", DEFAULT_PRIORITY)),
            status=TaskStatus(payload["status"]),
            pending_request=PendingRequest(request) if request else None,
            last_error=payload.get("last_error"),
            created_at=created_at,
            updated_at=from_iso(payload.get("updated_at")) or created_at,
            executions=[Execution.from_dict(item) for item in payload.get("executions", [])],
        )


@dataclass(slots=True)
class TaskCreate:
    """Input payload for enqueuing a task."""

    runner: str
    worktree: str
    prompt: str
    priority: int = DEFAULT_PRIORITY
    name: str | None = None
    base_branch: str | None = None
    repository: str | None = None
    task_id: str | None = None


class TaskSort(str, Enum):
    """Listing orders."""

    PRIORITY = "priority"
    CREATED = "created"
    ACTIVITY = "activity"


@dataclass(slots=True)
class TaskFilter:
    """Listing filter; unset fields match everything."""

    status: TaskStatus | None = None
    priority_min: int | None = None
    contains: str | None = None

    def matches(self, task: Task) -> bool:
        if self.status is not None and task.status is not self.status:
            return False
        if self.priority_min is not None and task.priority < self.priority_min:
            return False
        if self.contains:
            needle = self.contains.lower()
            haystack = (task.id, task.name or "", task.worktree, task.prompt)
            if not any(needle in value.lower() for value in haystack):
                return False
        return True
