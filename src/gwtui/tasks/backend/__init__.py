"""Runner backend implementations."""

from gwtui.tasks.backend.base import (
    DEFAULT_COMMAND_TEMPLATES,
    RunnerBackend,
    RunnerHandle,
    RunnerSpec,
)
from gwtui.tasks.backend.cli_backend import CliRunnerBackend, RunnerProcess

__all__ = [
    "DEFAULT_COMMAND_TEMPLATES",
    "CliRunnerBackend",
    "RunnerBackend",
    "RunnerHandle",
    "RunnerProcess",
    "RunnerSpec",
]
