"""Runner configuration and the backend interface."""

from __future__ import annotations

from collections.abc import Iterator
from dataclasses import dataclass
from pathlib import Path
from typing import Protocol

from gwtui.tasks.models import RunnerKind

DEFAULT_EXECUTABLES = {
    RunnerKind.CODEX: "codex",
    RunnerKind.CLAUDE: "claude",
}

# Templates are rendered with shell quoting; a template without {prompt}
# receives the prompt on stdin.
DEFAULT_COMMAND_TEMPLATES = {
    RunnerKind.CODEX: (
        "{executable} exec --dangerously-bypass-approvals-and-sandbox "
        "--color never --json -C {worktree} -"
    ),
    RunnerKind.CLAUDE: (
        "{executable} --dangerously-skip-permissions "
        "--output-format stream-json --verbose -p {prompt}"
    ),
}

DEFAULT_TIMEOUT_SECONDS = 30 * 60


@dataclass(slots=True, frozen=True)
class RunnerSpec:
    """How to invoke one runner kind."""

    kind: RunnerKind
    executable: str
    timeout_seconds: float
    command_template: str

    @property
    def prompt_via_stdin(self) -> bool:
        return "{prompt}" not in self.command_template

    @classmethod
    def default(
        cls,
        kind: RunnerKind,
        *,
        executable: str | None = None,
        timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS,
        command_template: str | None = None,
    ) -> RunnerSpec:
        return cls(
            kind=kind,
            executable=executable or DEFAULT_EXECUTABLES[kind],
            timeout_seconds=timeout_seconds,
            command_template=command_template or DEFAULT_COMMAND_TEMPLATES[kind],
        )


class RunnerHandle(Protocol):
    """Monitored child process of one execution."""

    @property
    def pid(self) -> int: ...

    @property
    def elapsed_seconds(self) -> float: ...

    def output(self) -> Iterator[tuple[str, str]]:
        """Yield `(stream, line)` until both stdout and stderr close."""

    def wait(self, timeout: float | None = None) -> int: ...

    def terminate(self, grace_seconds: float) -> int: ...


class RunnerBackend(Protocol):
    """Protocol implemented by runner backends."""

    def spawn(self, spec: RunnerSpec, *, prompt: str, working_directory: Path) -> RunnerHandle:
        """Start one child process for an execution."""
