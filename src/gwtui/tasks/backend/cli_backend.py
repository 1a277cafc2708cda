"""Subprocess-based backend for CLI coding agents."""

from __future__ import annotations

import logging
import os
import queue
import shlex
import shutil
import signal
import subprocess
import threading
import time
from collections.abc import Iterator
from pathlib import Path
from typing import IO

from gwtui.tasks.backend.base import RunnerSpec
from gwtui.tasks.errors import KillFailure, SpawnError, TimeoutExceeded

logger = logging.getLogger(__name__)

KILL_WAIT_SECONDS = 5.0


class CliRunnerBackend:
    """Start runner executables in their own process group."""

    def spawn(
        self,
        spec: RunnerSpec,
        *,
        prompt: str,
        working_directory: Path,
    ) -> RunnerProcess:
        if not working_directory.is_dir():
            raise SpawnError(f"Worktree path does not exist: {working_directory}")
        run_args = _build_run_args(spec=spec, prompt=prompt, working_directory=working_directory)
        if shutil.which(run_args[0]) is None:
            raise SpawnError(f"Runner executable not found: {run_args[0]}")

        stdin_payload = prompt if spec.prompt_via_stdin else None
        try:
            process = subprocess.Popen(  # noqa: S603
                run_args,
                cwd=working_directory,
                stdin=subprocess.PIPE if stdin_payload is not None else subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                text=True,
                encoding="utf-8",
                errors="replace",
                start_new_session=True,
            )
        except OSError as error:
            raise SpawnError(f"Runner failed to start: {error}") from error
        logger.debug("Spawned %s pid=%s in %s", run_args[0], process.pid, working_directory)
        return RunnerProcess(process, stdin_payload=stdin_payload)


class RunnerProcess:
    """Handle on a spawned runner: merged output stream, wait and terminate."""

    def __init__(self, process: subprocess.Popen[str], *, stdin_payload: str | None) -> None:
        self._process = process
        self._started = time.monotonic()
        self._lines: queue.Queue[tuple[str, str] | None] = queue.Queue()
        self._pumps = [
            threading.Thread(
                target=self._pump,
                args=(name, handle),
                name=f"runner-{process.pid}-{name}",
                daemon=True,
            )
            for name, handle in (("stdout", process.stdout), ("stderr", process.stderr))
            if handle is not None
        ]
        for pump in self._pumps:
            pump.start()
        if stdin_payload is not None and process.stdin is not None:
            threading.Thread(
                target=_feed_stdin,
                args=(process.stdin, stdin_payload),
                name=f"runner-{process.pid}-stdin",
                daemon=True,
            ).start()

    @property
    def pid(self) -> int:
        return self._process.pid

    @property
    def elapsed_seconds(self) -> float:
        return time.monotonic() - self._started

    def output(self) -> Iterator[tuple[str, str]]:
        remaining = len(self._pumps)
        while remaining:
            item = self._lines.get()
            if item is None:
                remaining -= 1
                continue
            yield item

    def wait(self, timeout: float | None = None) -> int:
        try:
            return self._process.wait(timeout=timeout)
        except subprocess.TimeoutExpired as error:
            raise TimeoutExceeded(
                f"Runner pid {self.pid} still running after {timeout}s",
            ) from error

    def terminate(self, grace_seconds: float) -> int:
        """SIGTERM the process group, SIGKILL it after `grace_seconds`."""

        returncode = self._process.poll()
        if returncode is not None:
            return returncode
        self._signal_group(signal.SIGTERM)
        try:
            return self._process.wait(timeout=max(0.0, grace_seconds))
        except subprocess.TimeoutExpired:
            logger.warning("Runner pid %s ignored SIGTERM; sending SIGKILL", self.pid)
        self._signal_group(signal.SIGKILL)
        try:
            return self._process.wait(timeout=KILL_WAIT_SECONDS)
        except subprocess.TimeoutExpired as error:
            raise KillFailure(
                f"Runner pid {self.pid} survived SIGKILL",
                pid=self.pid,
            ) from error

    def _signal_group(self, signum: signal.Signals) -> None:
        try:
            os.killpg(self._process.pid, signum)
        except ProcessLookupError:
            return
        except PermissionError:
            self._process.send_signal(signum)

    def _pump(self, stream: str, handle: IO[str]) -> None:
        try:
            for line in handle:
                self._lines.put((stream, line.rstrip("\n")))
        except (OSError, ValueError) as error:
            logger.debug("Stopped reading %s of pid %s: %s", stream, self.pid, error)
        finally:
            handle.close()
            self._lines.put(None)


def _feed_stdin(handle: IO[str], payload: str) -> None:
    try:
        handle.write(payload)
        if not payload.endswith("\n"):
            handle.write("\n")
    except (BrokenPipeError, OSError, ValueError) as error:
        logger.debug("Runner closed stdin early: %s", error)
    finally:
        try:
            handle.close()
        except (BrokenPipeError, OSError):
            pass


def _build_run_args(
    *,
    spec: RunnerSpec,
    prompt: str,
    working_directory: Path,
) -> list[str]:
    stripped = spec.command_template.strip()
    if not stripped:
        raise SpawnError(f"{spec.kind.value} command template is empty.")
    try:
        rendered = stripped.format(
            executable=shlex.quote(spec.executable),
            prompt=shlex.quote(prompt),
            worktree=shlex.quote(str(working_directory)),
        )
    except (IndexError, KeyError, ValueError) as error:
        raise SpawnError(f"Unsupported command template placeholder: {error}") from error

    argv = shlex.split(rendered)
    if not argv:
        raise SpawnError(f"{spec.kind.value} command template rendered empty command.")
    return argv
