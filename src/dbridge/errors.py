"""Typed errors for diagram rendering.

Every failure surfaced to a caller is a RenderError subclass carrying an
ErrorType classification and a retryable flag. The MCP layer turns these into
JSON error payloads; library code raises them.
"""

from __future__ import annotations

from enum import Enum
from typing import Any


class ErrorType(str, Enum):
    """Classification of rendering failures."""

    INVALID_INPUT = "INVALID_INPUT"
    UNSUPPORTED_FORMAT = "UNSUPPORTED_FORMAT"
    SYNTAX_ERROR = "SYNTAX_ERROR"
    SIZE_LIMIT_ERROR = "SIZE_LIMIT_ERROR"
    KROKI_UNAVAILABLE = "KROKI_UNAVAILABLE"
    NETWORK_ERROR = "NETWORK_ERROR"
    TIMEOUT_ERROR = "TIMEOUT_ERROR"
    STORAGE_ERROR = "STORAGE_ERROR"
    UNKNOWN_ERROR = "UNKNOWN_ERROR"


class RenderError(Exception):
    """Base class for all rendering failures."""

    error_type: ErrorType = ErrorType.UNKNOWN_ERROR
    retryable: bool = False

    def __init__(
        self,
        message: str,
        *,
        error_type: ErrorType | None = None,
        retryable: bool | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if error_type is not None:
            self.error_type = error_type
        if retryable is not None:
            self.retryable = retryable
        self.details: dict[str, Any] = dict(details or {})

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        data: dict[str, Any] = {
            "error": self.message,
            "error_type": self.error_type.value,
            "retryable": self.retryable,
        }
        if self.details:
            data["details"] = self.details
        return data


class InvalidInputError(RenderError):
    """Request failed input validation before reaching the engine."""

    error_type = ErrorType.INVALID_INPUT


class FormatResolutionError(RenderError):
    """Diagram format unknown/disabled, or output format not supported by it."""

    error_type = ErrorType.UNSUPPORTED_FORMAT


class DiagramSyntaxError(RenderError):
    """Engine rejected the diagram source."""

    error_type = ErrorType.SYNTAX_ERROR


class SizeLimitError(RenderError):
    """Engine rejected the request as too large."""

    error_type = ErrorType.SIZE_LIMIT_ERROR


class EngineUnavailableError(RenderError):
    """Engine answered with a transient server-side status."""

    error_type = ErrorType.KROKI_UNAVAILABLE
    retryable = True


class NetworkError(RenderError):
    """Connection refused, DNS failure, or another transport failure."""

    error_type = ErrorType.NETWORK_ERROR
    retryable = True


class RenderTimeoutError(RenderError):
    """A single request attempt exceeded the configured timeout."""

    error_type = ErrorType.TIMEOUT_ERROR
    retryable = True


class StorageError(RenderError):
    """Rendered bytes could not be written to disk."""

    error_type = ErrorType.STORAGE_ERROR


class RetriesExhaustedError(RenderError):
    """All attempts failed with retryable errors.

    The error_type is that of the last failure (network, timeout or engine
    unavailable), so callers can still tell it apart from a syntax error.
    """

    retryable = True

    def __init__(self, last_error: RenderError, attempts: int) -> None:
        super().__init__(
            f"Kroki request failed after {attempts} attempts: {last_error.message}",
            error_type=last_error.error_type,
            details={"attempts": attempts, **last_error.details},
        )
        self.attempts = attempts
        self.last_error = last_error
