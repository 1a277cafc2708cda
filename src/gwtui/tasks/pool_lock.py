"""Singleton lock for the worker daemon of one queue directory.

The OS advisory lock on `worker.lock` is the source of truth and disappears
with its holder, so a crashed daemon never blocks a new one. `worker.json`
only describes the holder for status queries; its pid is checked with psutil
before it is trusted.
"""

from __future__ import annotations

import logging
import os
import socket
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Any

import psutil
from filelock import FileLock, Timeout

from gwtui.tasks.common import from_iso, read_json, to_iso, utc_now, write_json_atomic
from gwtui.tasks.errors import AlreadyRunning

logger = logging.getLogger(__name__)

LOCK_FILENAME = "worker.lock"
OWNER_FILENAME = "worker.json"

# Tolerated gap between a recorded start time and the process creation time.
_PID_REUSE_SLACK_SECONDS = 5.0


@dataclass(slots=True)
class LockOwner:
    """Identity of the daemon holding the pool lock."""

    pid: int
    hostname: str
    started_at: datetime
    parallelism: int

    def to_dict(self) -> dict[str, Any]:
        return {
            "pid": self.pid,
            "hostname": self.hostname,
            "started_at": to_iso(self.started_at),
            "parallelism": self.parallelism,
        }

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> LockOwner:
        return cls(
            pid=int(payload["pid"]),
            hostname=str(payload.get("hostname", "")),
            started_at=from_iso(payload.get("started_at")) or utc_now(),
            parallelism=int(payload.get("parallelism", 0)),
        )


def read_owner(queue_dir: Path) -> LockOwner | None:
    path = queue_dir / OWNER_FILENAME
    try:
        return LockOwner.from_dict(read_json(path))
    except FileNotFoundError:
        return None
    except (KeyError, TypeError, ValueError) as error:
        logger.warning("Ignoring malformed worker marker %s: %s", path, error)
        return None


def owner_alive(owner: LockOwner) -> bool:
    """True when the recorded pid is a live process started with the daemon."""

    if owner.hostname and owner.hostname != socket.gethostname():
        # Cannot check a process on another host; trust the marker.
        return True
    try:
        process = psutil.Process(owner.pid)
        if process.status() == psutil.STATUS_ZOMBIE:
            return False
        created = process.create_time()
    except (psutil.NoSuchProcess, psutil.ZombieProcess):
        return False
    except psutil.AccessDenied:
        return True
    return created <= owner.started_at.timestamp() + _PID_REUSE_SLACK_SECONDS


class PoolLock:
    """Non-blocking exclusive lock plus owner marker."""

    def __init__(self, queue_dir: Path) -> None:
        self.queue_dir = queue_dir
        self._lock = FileLock(str(queue_dir / LOCK_FILENAME))
        self.owner: LockOwner | None = None

    def acquire(self, *, parallelism: int) -> LockOwner:
        self.queue_dir.mkdir(parents=True, exist_ok=True)
        try:
            self._lock.acquire(timeout=0)
        except Timeout as error:
            holder = read_owner(self.queue_dir)
            pid = holder.pid if holder is not None else None
            raise AlreadyRunning(
                f"A worker is already running for {self.queue_dir}"
                + (f" (pid {pid})." if pid is not None else "."),
                pid=pid,
            ) from error

        previous = read_owner(self.queue_dir)
        if previous is not None:
            logger.warning(
                "Reclaiming stale worker lock left by pid %s (started %s)",
                previous.pid,
                to_iso(previous.started_at),
            )
        self.owner = LockOwner(
            pid=os.getpid(),
            hostname=socket.gethostname(),
            started_at=utc_now(),
            parallelism=parallelism,
        )
        write_json_atomic(self.queue_dir / OWNER_FILENAME, self.owner.to_dict())
        logger.info("Worker lock acquired by pid %s", self.owner.pid)
        return self.owner

    def release(self) -> None:
        if self.owner is None:
            return
        current = read_owner(self.queue_dir)
        if current is not None and current.pid == self.owner.pid:
            (self.queue_dir / OWNER_FILENAME).unlink(missing_ok=True)
        self._lock.release()
        logger.info("Worker lock released by pid %s", self.owner.pid)
        self.owner = None
