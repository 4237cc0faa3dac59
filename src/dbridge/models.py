"""Data model for diagram rendering and caching."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator

OutputFormat = Literal["png", "svg"]
HealthStatus = Literal["healthy", "unhealthy"]

# Maximum accepted diagram source length (characters, after stripping)
MAX_CODE_LENGTH = 100_000


@dataclass(frozen=True)
class RenderingOutput:
    """Location and metadata of a rendered diagram on disk."""

    file_path: str
    resource_uri: str
    content_type: str
    file_size: int

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            "file_path": self.file_path,
            "resource_uri": self.resource_uri,
            "content_type": self.content_type,
            "file_size": self.file_size,
        }


@dataclass(frozen=True)
class CacheEntry:
    """One cached render result plus bookkeeping.

    timestamp is epoch milliseconds; size is the rendered file size in bytes.
    """

    data: RenderingOutput
    timestamp: int
    size: int


@dataclass(frozen=True)
class CacheStats:
    """Cache statistics. hit_rate is a percentage rounded to two decimals."""

    size: int
    hit_rate: float
    memory_usage: int

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            "size": self.size,
            "hit_rate": self.hit_rate,
            "memory_usage": self.memory_usage,
        }


@dataclass
class HealthReport:
    """Result of a health check."""

    status: HealthStatus
    details: list[str] = field(default_factory=list)

    @property
    def healthy(self) -> bool:
        return self.status == "healthy"

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {"status": self.status, "details": list(self.details)}


@dataclass
class ConnectionTest:
    """Result of a plain connectivity probe against the engine."""

    connected: bool
    response_time_ms: int
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        data: dict[str, Any] = {
            "connected": self.connected,
            "response_time_ms": self.response_time_ms,
        }
        if self.error is not None:
            data["error"] = self.error
        return data


class RenderRequest(BaseModel):
    """Validated input for a render call."""

    model_config = ConfigDict(extra="forbid")

    code: str = Field(..., description="Diagram source code")
    diagram_format: str = Field(..., min_length=1, description="Diagram format id")
    output_format: OutputFormat | None = Field(
        default=None, description="Output image format (defaults per diagram format)"
    )

    @field_validator("code")
    @classmethod
    def _check_code(cls, value: str) -> str:
        stripped = value.strip()
        if not stripped:
            raise ValueError("code cannot be empty")
        if len(stripped) > MAX_CODE_LENGTH:
            raise ValueError(f"code cannot exceed {MAX_CODE_LENGTH} characters")
        return value

    @field_validator("diagram_format")
    @classmethod
    def _normalize_format(cls, value: str) -> str:
        normalized = value.strip().lower()
        if not normalized:
            raise ValueError("diagram_format cannot be empty")
        return normalized
