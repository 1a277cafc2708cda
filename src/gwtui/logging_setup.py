"""Logging configuration for the CLI and the worker daemon."""

from __future__ import annotations

import logging
import sys
from pathlib import Path

LOG_FORMAT = "%(asctime)s.%(msecs)03d %(levelname)s %(name)s: %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"

_installed_handlers: list[logging.Handler] = []


class _ConsoleNoiseFilter(logging.Filter):
    """Show gwtui logs at the configured level, third-party logs only on errors."""

    def filter(self, record: logging.LogRecord) -> bool:
        if record.name == "gwtui" or record.name.startswith("gwtui."):
            return True
        return record.levelno >= logging.ERROR


def setup_logging(
    *,
    console_level: int = logging.WARNING,
    log_file: Path | None = None,
    file_level: int = logging.DEBUG,
) -> None:
    """Configure the root logger with a stderr handler and an optional file handler.

    Handlers installed by an earlier call are replaced; handlers added by
    anything else (pytest, an embedding application) are left alone.
    """

    root = logging.getLogger()
    root.setLevel(logging.DEBUG)
    while _installed_handlers:
        handler = _installed_handlers.pop()
        root.removeHandler(handler)
        handler.close()

    formatter = logging.Formatter(fmt=LOG_FORMAT, datefmt=DATE_FORMAT)

    console = logging.StreamHandler(sys.stderr)
    console.setLevel(console_level)
    console.setFormatter(formatter)
    console.addFilter(_ConsoleNoiseFilter())
    root.addHandler(console)
    _installed_handlers.append(console)

    if log_file is not None:
        log_file.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(str(log_file), encoding="utf-8")
        file_handler.setLevel(file_level)
        file_handler.setFormatter(formatter)
        root.addHandler(file_handler)
        _installed_handlers.append(file_handler)

    logging.captureWarnings(True)
