"""Per-execution JSONL logs: capture, tailing, rendering and retention."""

from __future__ import annotations

import json
import logging
import re
import time
from collections.abc import Callable, Iterable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from enum import Enum
from pathlib import Path
from typing import IO, Any

from gwtui.tasks.common import from_iso, utc_now
from gwtui.tasks.errors import NotFound, ValidationError
from gwtui.tasks.models import Execution

logger = logging.getLogger(__name__)

LOGS_DIRNAME = "logs"
LOG_SUFFIX = ".jsonl"

_EXEC_ID_RE = re.compile(r"^exec-[0-9a-f]{6,32}$")
_PREVIEW_CHARS = 400


class RenderMode(str, Enum):
    PRETTY = "pretty"
    RAW = "raw"


@dataclass(slots=True)
class CleanupPolicy:
    """Which finished-execution logs to delete."""

    older_than: timedelta | None = None
    max_total_bytes: int | None = None
    dry_run: bool = False


@dataclass(slots=True)
class CleanupResult:
    deleted: list[str] = field(default_factory=list)
    freed_bytes: int = 0
    skipped_running: int = 0
    dry_run: bool = False


class LogWriter:
    """Single-writer sink for one execution log; every line is flushed."""

    def __init__(self, handle: IO[str], *, exec_id: str, task_id: str) -> None:
        self._handle = handle
        self.exec_id = exec_id
        self.task_id = task_id

    def write(self, stream: str, line: str) -> None:
        text = line.rstrip("\r\n")
        if not text.strip():
            return
        entry: dict[str, Any] = {
            "timestamp": utc_now().isoformat(),
            "execution_id": self.exec_id,
            "task_id": self.task_id,
            "stream": stream,
        }
        for key, value in _parse_payload(text).items():
            entry.setdefault(key, value)
        self._handle.write(json.dumps(entry, ensure_ascii=False) + "\n")
        self._handle.flush()

    def note(self, message: str) -> None:
        """Record a worker-side event (start, exit, termination) in the log."""

        self.write("worker", json.dumps({"type": "note", "text": message}))


class ExecutionLogManager:
    """Owns `<queue_dir>/logs/<exec_id>.jsonl`."""

    def __init__(self, queue_dir: Path, *, refresh_interval: float = 0.5) -> None:
        self.logs_dir = queue_dir / LOGS_DIRNAME
        self.refresh_interval = refresh_interval

    def log_path(self, exec_id: str) -> Path:
        if not _EXEC_ID_RE.match(exec_id):
            raise ValidationError(f"Invalid execution id: {exec_id!r}")
        return self.logs_dir / f"{exec_id}{LOG_SUFFIX}"

    def exists(self, exec_id: str) -> bool:
        return self.log_path(exec_id).is_file()

    @contextmanager
    def open_writer(self, exec_id: str, *, task_id: str) -> Iterator[LogWriter]:
        path = self.log_path(exec_id)
        path.parent.mkdir(parents=True, exist_ok=True)
        with path.open("a", encoding="utf-8") as handle:
            yield LogWriter(handle, exec_id=exec_id, task_id=task_id)

    def tail(
        self,
        exec_id: str,
        *,
        follow: bool = False,
        is_running: Callable[[], bool] | None = None,
        stop: Callable[[], bool] | None = None,
    ) -> Iterator[str]:
        """Yield log lines lazily.

        Without `follow` the sequence ends at the current end of file. With
        `follow` it polls every `refresh_interval` until `is_running` reports
        the execution finished (and the file is drained) or `stop` returns true.
        Partial lines are held back until their newline arrives.
        """

        path = self.log_path(exec_id)
        if not follow and not path.is_file():
            raise NotFound(f"Log not found for execution {exec_id}")

        while not path.is_file():
            if _should_end(is_running, stop):
                return
            time.sleep(self.refresh_interval)

        buffer = ""
        with path.open("r", encoding="utf-8", errors="replace") as handle:
            while True:
                chunk = handle.readline()
                if chunk:
                    buffer += chunk
                    if buffer.endswith("\n"):
                        yield buffer.rstrip("\n")
                        buffer = ""
                    continue
                if not follow:
                    break
                if stop is not None and stop():
                    return
                if is_running is not None and not is_running():
                    # The writer is gone; drain what it flushed before exiting.
                    buffer += handle.read()
                    break
                time.sleep(self.refresh_interval)

        for line in buffer.splitlines():
            yield line

    def render(
        self,
        exec_id: str,
        mode: RenderMode = RenderMode.PRETTY,
        *,
        follow: bool = False,
        is_running: Callable[[], bool] | None = None,
        stop: Callable[[], bool] | None = None,
    ) -> Iterator[str]:
        for line in self.tail(exec_id, follow=follow, is_running=is_running, stop=stop):
            if mode is RenderMode.RAW:
                yield line
                continue
            yield from render_line(line)

    def size(self, exec_id: str) -> int:
        try:
            return self.log_path(exec_id).stat().st_size
        except FileNotFoundError:
            return 0

    def total_size(self) -> int:
        return sum(path.stat().st_size for path in self._log_files())

    def delete(self, exec_id: str) -> int:
        path = self.log_path(exec_id)
        try:
            size = path.stat().st_size
        except FileNotFoundError:
            return 0
        path.unlink(missing_ok=True)
        return size

    def cleanup(
        self,
        policy: CleanupPolicy,
        executions: Iterable[Execution],
        *,
        now: datetime | None = None,
    ) -> CleanupResult:
        """Delete logs of finished executions by age, then oldest-first over the size cap.

        Logs of running executions are never touched. Log files with no known
        execution are treated as finished at their modification time.
        """

        current = now or utc_now()
        result = CleanupResult(dry_run=policy.dry_run)
        known: dict[str, Execution] = {execution.exec_id: execution for execution in executions}
        result.skipped_running = sum(1 for execution in known.values() if execution.is_running)

        sizes: dict[str, int] = {}
        ended: dict[str, datetime] = {}
        for path in self._log_files():
            exec_id = path.name.removesuffix(LOG_SUFFIX)
            execution = known.get(exec_id)
            if execution is not None and execution.is_running:
                continue
            stat = path.stat()
            sizes[exec_id] = stat.st_size
            if execution is not None and execution.ended_at is not None:
                ended[exec_id] = execution.ended_at
            else:
                ended[exec_id] = datetime.fromtimestamp(stat.st_mtime, tz=UTC)

        oldest_first = sorted(ended, key=lambda exec_id: (ended[exec_id], exec_id))
        selected: list[str] = []
        if policy.older_than is not None:
            cutoff = current - policy.older_than
            selected.extend(exec_id for exec_id in oldest_first if ended[exec_id] < cutoff)
        if policy.max_total_bytes is not None:
            remaining = sum(sizes.values()) - sum(sizes[exec_id] for exec_id in selected)
            for exec_id in oldest_first:
                if remaining <= policy.max_total_bytes:
                    break
                if exec_id in selected:
                    continue
                selected.append(exec_id)
                remaining -= sizes[exec_id]

        for exec_id in selected:
            result.deleted.append(exec_id)
            if policy.dry_run:
                result.freed_bytes += sizes[exec_id]
                continue
            result.freed_bytes += self.delete(exec_id)
        if result.deleted and not policy.dry_run:
            logger.info(
                "Removed %d execution logs (%d bytes)",
                len(result.deleted),
                result.freed_bytes,
            )
        return result

    def _log_files(self) -> list[Path]:
        if not self.logs_dir.is_dir():
            return []
        return [path for path in self.logs_dir.glob(f"exec-*{LOG_SUFFIX}") if path.is_file()]


def _should_end(is_running: Callable[[], bool] | None, stop: Callable[[], bool] | None) -> bool:
    if stop is not None and stop():
        return True
    return is_running is not None and not is_running()


def _parse_payload(text: str) -> dict[str, Any]:
    stripped = text.strip()
    if stripped.startswith("{"):
        try:
            payload = json.loads(stripped)
        except json.JSONDecodeError:
            payload = None
        if isinstance(payload, dict):
            return payload
    return {"type": "text", "text": text}


def render_line(line: str) -> list[str]:
    """Turn one stored log line into readable text; unknown shapes pass through."""

    try:
        entry = json.loads(line)
    except json.JSONDecodeError:
        return [line]
    if not isinstance(entry, dict):
        return [line]
    try:
        body = _render_entry(entry)
    except (AttributeError, KeyError, TypeError, ValueError):
        return [line]
    if body is None:
        return []
    stamp = _clock(entry.get("timestamp"))
    prefix = f"{stamp} " if stamp else ""
    if entry.get("stream") == "stderr":
        prefix += "[stderr] "
    return [f"{prefix}{text}" for text in body]


def _render_entry(entry: dict[str, Any]) -> list[str] | None:  # noqa: C901, PLR0911, PLR0912
    kind = entry.get("type")
    if kind in {"text", "note"}:
        marker = "» " if kind == "note" else ""
        return [f"{marker}{entry.get('text', '')}"]

    # codex exec --json
    if kind in {"item.started", "item.completed", "item.updated"}:
        return _render_codex_item(kind, entry.get("item") or {})
    if kind == "thread.started":
        return [f"session {entry.get('thread_id', '')}".rstrip()]
    if kind == "turn.started":
        return None
    if kind == "turn.completed":
        usage = entry.get("usage") or {}
        return [
            "turn completed: "
            f"input_tokens={usage.get('input_tokens', '-')} "
            f"output_tokens={usage.get('output_tokens', '-')}",
        ]
    if kind == "turn.failed":
        return [f"turn failed: {(entry.get('error') or {}).get('message', '')}"]
    if kind == "error":
        return [f"error: {entry.get('message', '')}"]

    # claude --output-format stream-json
    if kind == "system":
        return [f"session {entry.get('session_id', '')} model={entry.get('model', '-')}"]
    if kind == "assistant":
        return _render_claude_content((entry.get("message") or {}).get("content") or [])
    if kind == "user":
        return _render_claude_content((entry.get("message") or {}).get("content") or [])
    if kind == "result":
        status = "error" if entry.get("is_error") else entry.get("subtype", "done")
        lines = [
            f"result: {status} "
            f"duration_ms={entry.get('duration_ms', '-')} "
            f"cost_usd={entry.get('total_cost_usd', '-')}",
        ]
        if entry.get("result"):
            lines.append(_preview(str(entry["result"])))
        return lines

    raise ValueError(f"unknown event type {kind!r}")


def _render_codex_item(kind: str, item: dict[str, Any]) -> list[str] | None:
    item_type = item.get("type") or item.get("item_type")
    if item_type == "command_execution":
        if kind == "item.started":
            return [f"$ {item.get('command', '')}"]
        if kind != "item.completed":
            return None
        lines = [f"$ {item.get('command', '')} (exit {item.get('exit_code', '-')})"]
        output = str(item.get("aggregated_output") or "").strip()
        if output:
            lines.append(_preview(output))
        return lines
    if kind != "item.completed":
        return None
    if item_type in {"agent_message", "assistant_message"}:
        return [str(item.get("text", ""))]
    if item_type == "reasoning":
        return [f"thinking: {_preview(str(item.get('text', '')))}"]
    if item_type == "file_change":
        changes = item.get("changes") or []
        return [f"{change.get('kind', 'update')} {change.get('path', '')}" for change in changes]
    if item_type == "mcp_tool_call":
        return [f"tool {item.get('server', '')}.{item.get('tool', '')}"]
    if item_type == "error":
        return [f"error: {item.get('message', '')}"]
    raise ValueError(f"unknown item type {item_type!r}")


def _render_claude_content(blocks: list[dict[str, Any]]) -> list[str] | None:
    lines: list[str] = []
    for block in blocks:
        block_type = block.get("type")
        if block_type == "text":
            lines.append(str(block.get("text", "")))
        elif block_type == "thinking":
            lines.append(f"thinking: {_preview(str(block.get('thinking', '')))}")
        elif block_type == "tool_use":
            arguments = json.dumps(block.get("input") or {}, ensure_ascii=False)
            lines.append(f"tool {block.get('name', '')} {_preview(arguments)}")
        elif block_type == "tool_result":
            marker = "tool error" if block.get("is_error") else "tool result"
            lines.append(f"{marker}: {_preview(_flatten_tool_result(block.get('content')))}")
    return lines or None


def _flatten_tool_result(content: object) -> str:
    if isinstance(content, list):
        return " ".join(
            str(part.get("text", "")) for part in content if isinstance(part, dict)
        )
    return str(content or "")


def _preview(text: str) -> str:
    collapsed = " ".join(text.split())
    if len(collapsed) <= _PREVIEW_CHARS:
        return collapsed
    return collapsed[: _PREVIEW_CHARS - 3] + "..."


def _clock(value: object) -> str:
    if not isinstance(value, str):
        return ""
    try:
        parsed = from_iso(value)
    except ValueError:
        return ""
    return parsed.strftime("%H:%M:%S") if parsed else ""
