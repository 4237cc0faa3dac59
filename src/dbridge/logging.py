"""Structured logging for Diagram Bridge.

Uses Loguru. Console output goes to stderr because stdout carries MCP
JSON-RPC. LogSpan records timing, attributes and errors for an operation and
emits one log line when it closes.

Usage:
    from dbridge.logging import LogSpan, configure_logging

    configure_logging(log_name="serve")

    with LogSpan(span="kroki.render", format="mermaid") as span:
        output = await client.render(...)
        span.add(size=output.file_size)
"""

from __future__ import annotations

import sys
import time
from pathlib import Path
from typing import Any

from loguru import logger

# Remove Loguru's default stderr handler until configure_logging() runs
logger.remove()

_CONSOLE_FORMAT = (
    "<green>{time:HH:mm:ss.SSS}</green> | <level>{level: <7}</level> | {message}"
)
_FILE_FORMAT = "{time:YYYY-MM-DD HH:mm:ss.SSS} | {level: <7} | {name}:{line} | {message}"


def configure_logging(
    log_name: str = "dbridge",
    level: str = "INFO",
    log_dir: Path | str | None = None,
) -> None:
    """Configure Loguru sinks.

    Args:
        log_name: Base name of the log file ({log_name}.log).
        level: Minimum log level.
        log_dir: Directory for the rotating log file. None logs to stderr only.
    """
    logger.remove()
    logger.add(sys.stderr, level=level, format=_CONSOLE_FORMAT, colorize=False)

    if log_dir is not None:
        path = Path(log_dir).expanduser()
        path.mkdir(parents=True, exist_ok=True)
        logger.add(
            path / f"{log_name}.log",
            level=level,
            format=_FILE_FORMAT,
            rotation="10 MB",
            retention=5,
            enqueue=False,
        )


def _format_value(value: Any) -> str:
    text = str(value)
    if len(text) > 120:
        return text[:117] + "..."
    return text


class LogSpan:
    """A structured logging span with timing and attributes."""

    def __init__(self, span: str, level: str = "INFO", **attrs: Any) -> None:
        self.span = span
        self.level = level
        self.attrs: dict[str, Any] = dict(attrs)
        self.start_time = time.monotonic()
        self.error: str | None = None

    def add(self, key: str | None = None, value: Any = None, **attrs: Any) -> LogSpan:
        """Add attributes to the span.

        Supports both span.add("status", 200) and span.add(status=200).
        """
        if key is not None:
            self.attrs[key] = value
        self.attrs.update(attrs)
        return self

    @property
    def elapsed_ms(self) -> float:
        return round((time.monotonic() - self.start_time) * 1000, 2)

    def __enter__(self) -> LogSpan:
        self.start_time = time.monotonic()
        return self

    def __exit__(self, exc_type: Any, exc: Any, _tb: Any) -> None:
        if exc is not None:
            self.error = f"{type(exc).__name__}: {exc}"
        self._emit()

    def _emit(self) -> None:
        fields = " ".join(f"{k}={_format_value(v)}" for k, v in self.attrs.items())
        message = f"{self.span} | elapsed_ms={self.elapsed_ms}"
        if fields:
            message = f"{message} {fields}"
        bound = logger.bind(span=self.span, elapsed_ms=self.elapsed_ms, **self.attrs)
        if self.error:
            bound.warning(f"{message} error={_format_value(self.error)}")
        else:
            bound.log(self.level, message)
