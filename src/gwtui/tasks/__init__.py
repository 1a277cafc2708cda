"""Background task queue for coding agents working in git worktrees.

Why not Celery / RQ / Huey?
~~~~~~~~~~~~~~~~~~~~~~~~~~~
The work items here are long-running CLI agents (codex, claude) bound to a
directory on the local machine, so the hard part is process supervision, not
message delivery:

- Each execution is a child process group that must be timed out, cancelled
  or force-killed on request, with its output captured line by line.
- A single worker per queue directory owns the slots; a second one must be
  refused and a crashed one must be replaced without manual cleanup.
- Task state has to survive the worker and be readable by any CLI process.

A broker would add a service to run for what is a single-user, single-machine
tool, and the supervision logic would still have to live in the task bodies.
One JSON file per task under an advisory lock, plus a polling scheduler, is
enough for a handful of concurrent agents.
"""
