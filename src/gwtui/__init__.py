"""Task queue and worker pool for coding agents running in git worktrees."""

from gwtui.__about__ import __version__

__all__ = ["__version__"]
