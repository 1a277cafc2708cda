"""Local stand-in runner for integration tests and smoke checks.

Prints codex-style JSON events for the prompt it receives, then optionally
sleeps, writes to stderr and exits with a chosen code.
"""

from __future__ import annotations

import argparse
import json
import os
import signal
import sys
import time


def main(argv: list[str] | None = None) -> int:
    """Echo the prompt back as JSON events."""

    parser = argparse.ArgumentParser()
    parser.add_argument("prompt", nargs="?", default="-", help="Prompt text, '-' reads stdin.")
    parser.add_argument("--sleep", type=float, default=0.0)
    parser.add_argument("--exit-code", type=int, default=0)
    parser.add_argument("--stderr", default=None, help="Line to print on stderr.")
    parser.add_argument("--ignore-sigterm", action="store_true")
    args = parser.parse_args(argv)

    if args.ignore_sigterm:
        signal.signal(signal.SIGTERM, signal.SIG_IGN)

    prompt = sys.stdin.read().strip() if args.prompt == "-" else args.prompt
    _emit({"type": "thread.started", "thread_id": f"echo-{os.getpid()}"})
    _emit(
        {
            "type": "item.completed",
            "item": {"id": "item_0", "type": "agent_message", "text": prompt},
        },
    )
    print(f"cwd: {os.getcwd()}", flush=True)
    if args.stderr:
        print(args.stderr, file=sys.stderr, flush=True)

    deadline = time.monotonic() + max(0.0, args.sleep)
    while time.monotonic() < deadline:
        time.sleep(max(0.0, min(0.05, deadline - time.monotonic())))

    _emit({"type": "turn.completed", "usage": {"input_tokens": len(prompt), "output_tokens": 0}})
    return args.exit_code


def _emit(event: dict[str, object]) -> None:
    print(json.dumps(event), flush=True)


if __name__ == "__main__":  # pragma: no cover
    sys.exit(main())
