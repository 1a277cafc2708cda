"""Shared helpers for queue-directory persistence and display."""

from __future__ import annotations

import json
import os
import re
import tempfile
from datetime import UTC, datetime, timedelta
from pathlib import Path

TMP_SUFFIX = ".tmp"

_DURATION_RE = re.compile(r"^\s*(\d+(?:\.\d+)?)\s*(ms|s|m|h|d|w)?\s*$", re.IGNORECASE)
_DURATION_UNITS = {
    "ms": 0.001,
    "s": 1,
    "m": 60,
    "h": 3_600,
    "d": 86_400,
    "w": 604_800,
}


def utc_now() -> datetime:
    """Return timezone-aware UTC now."""

    return datetime.now(tz=UTC)


def to_iso(value: datetime | None) -> str | None:
    if value is None:
        return None
    return value.astimezone(UTC).isoformat()


def from_iso(value: str | None) -> datetime | None:
    """Parse ISO datetime and normalize to UTC."""

    if not value:
        return None
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=UTC)
    return parsed.astimezone(UTC)


def write_json_atomic(path: Path, payload: object) -> None:
    """Write JSON next to the target and rename it into place."""

    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(prefix=f".{path.name}.", suffix=TMP_SUFFIX, dir=path.parent)
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as handle:
            json.dump(payload, handle, indent=2, ensure_ascii=False)
            handle.write("\n")
            handle.flush()
            os.fsync(handle.fileno())
        os.replace(tmp_name, path)
    except BaseException:
        Path(tmp_name).unlink(missing_ok=True)
        raise


def read_json(path: Path) -> dict[str, object]:
    payload = json.loads(path.read_text("utf-8"))
    if not isinstance(payload, dict):
        raise ValueError(f"Expected JSON object in {path}")
    return payload


def parse_duration(value: str) -> timedelta:
    """Parse `90s`, `5m`, `30d` style durations; a bare number means seconds."""

    match = _DURATION_RE.match(value or "")
    if match is None:
        raise ValueError(
            f"Invalid duration: {value!r}. Expected <number>[ms|s|m|h|d|w], for example 30m.",
        )
    amount = float(match.group(1))
    unit = (match.group(2) or "s").lower()
    return timedelta(seconds=amount * _DURATION_UNITS[unit])


def format_duration(seconds: float | None) -> str:
    if seconds is None:
        return "-"
    total = max(0, int(seconds))
    if total < 60:
        return f"{total}s"
    if total < 3_600:
        return f"{total // 60}m"
    hours, remainder = divmod(total, 3_600)
    return f"{hours}h {remainder // 60}m"


def format_relative(value: datetime | None, *, now: datetime | None = None) -> str:
    if value is None:
        return "-"
    delta = ((now or utc_now()) - value).total_seconds()
    if delta < 60:
        return "just now"
    if delta < 3_600:
        return f"{int(delta // 60)}m ago"
    if delta < 86_400:
        return f"{int(delta // 3_600)}h ago"
    return f"{int(delta // 86_400)}d ago"
