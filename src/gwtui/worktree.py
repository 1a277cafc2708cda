"""Resolve task worktree references to directories via `git worktree`."""

from __future__ import annotations

import logging
import re
import subprocess
from dataclasses import dataclass
from pathlib import Path

from gwtui.tasks.errors import WorktreeError

logger = logging.getLogger(__name__)

GIT_TIMEOUT_SECONDS = 60
_UNSAFE_PATH_CHARS = re.compile(r"[^A-Za-z0-9._-]+")


@dataclass(slots=True)
class WorktreeEntry:
    path: str
    branch: str
    head: str


def parse_worktree_porcelain(output: str) -> list[WorktreeEntry]:
    """Parse `git worktree list --porcelain`."""

    entries: list[WorktreeEntry] = []
    current: WorktreeEntry | None = None
    for raw_line in output.splitlines():
        line = raw_line.rstrip()
        if line.startswith("worktree "):
            if current is not None:
                entries.append(current)
            current = WorktreeEntry(path=line.removeprefix("worktree "), branch="", head="")
        elif current is not None and line.startswith("branch "):
            current.branch = line.removeprefix("branch ").strip().removeprefix("refs/heads/")
        elif current is not None and line.startswith("HEAD "):
            current.head = line.removeprefix("HEAD ").strip()
    if current is not None:
        entries.append(current)
    return entries


def find_repo_root(start: Path) -> Path | None:
    try:
        output = _git(start, "rev-parse", "--show-toplevel")
    except WorktreeError:
        return None
    return Path(output.strip())


class WorktreeResolver:
    """Map a branch name or path to an existing worktree directory.

    An existing directory is used as is. Otherwise the branch is looked up in
    the repository's worktrees; when it is missing and a base branch is given,
    a new worktree is created under `base_dir/<repo>/<branch>`.
    """

    def __init__(self, *, base_dir: Path, default_repository: Path | None = None) -> None:
        self.base_dir = base_dir
        self.default_repository = default_repository

    def resolve(
        self,
        reference: str,
        *,
        repository: str | None = None,
        base_branch: str | None = None,
    ) -> Path:
        repo_root = Path(repository) if repository else self.default_repository
        candidate = Path(reference).expanduser()
        if not candidate.is_absolute() and repo_root is not None:
            candidate = repo_root / candidate
        if candidate.is_dir():
            return candidate.resolve()

        if repo_root is None:
            raise WorktreeError(
                f"Cannot resolve worktree {reference!r}: no repository recorded for the task.",
            )
        for entry in self.list(repo_root):
            if entry.branch == reference:
                return Path(entry.path)
        for entry in self.list(repo_root):
            if Path(entry.path).name == reference:
                return Path(entry.path)

        if base_branch is None:
            raise WorktreeError(
                f"No worktree for {reference!r} in {repo_root}; pass --base to create one.",
            )
        return self.create(repo_root, branch=reference, base_branch=base_branch)

    def list(self, repo_root: Path) -> list[WorktreeEntry]:
        return parse_worktree_porcelain(_git(repo_root, "worktree", "list", "--porcelain"))

    def create(self, repo_root: Path, *, branch: str, base_branch: str) -> Path:
        target = self.base_dir / repo_root.name / _UNSAFE_PATH_CHARS.sub("-", branch)
        try:
            target.parent.mkdir(parents=True, exist_ok=True)
        except OSError as error:
            raise WorktreeError(
                f"Cannot create worktree directory {target.parent}: {error}",
            ) from error
        logger.info("Creating worktree %s for %s from %s", target, branch, base_branch)
        _git(repo_root, "worktree", "add", "-b", branch, str(target), base_branch)
        return target


def _git(cwd: Path, *args: str) -> str:
    try:
        completed = subprocess.run(  # noqa: S603
            ["git", "-C", str(cwd), *args],  # noqa: S607
            capture_output=True,
            text=True,
            timeout=GIT_TIMEOUT_SECONDS,
            check=False,
        )
    except (OSError, subprocess.TimeoutExpired) as error:
        raise WorktreeError(f"git {' '.join(args)} failed: {error}") from error
    if completed.returncode != 0:
        detail = completed.stderr.strip() or completed.stdout.strip()
        raise WorktreeError(f"git {' '.join(args)} failed: {detail}")
    return completed.stdout
