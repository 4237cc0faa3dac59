"""Cache-aware diagram rendering.

DiagramRenderer wires the key generator, the LRU cache and the Kroki client
together:

    key = generate_key(code, format, output)
    hit  -> return cached RenderingOutput
    miss -> client.render() to a fresh file -> cache.set() -> return

Concurrent requests for the same key share a single in-flight render instead
of each calling Kroki.
"""

from __future__ import annotations

import asyncio
from pathlib import Path
from typing import Any

import httpx
from loguru import logger
from pydantic import ValidationError

from dbridge.cache import (
    DEFAULT_MAX_AGE_MS,
    DiagramLRUCache,
    create_cache_entry,
    generate_key,
)
from dbridge.client import KrokiClient
from dbridge.config.loader import DbridgeConfig, config_summary
from dbridge.errors import FormatResolutionError, InvalidInputError, StorageError
from dbridge.formats import FormatRegistry
from dbridge.logging import LogSpan
from dbridge.models import CacheStats, HealthReport, RenderingOutput, RenderRequest
from dbridge.paths import ensure_storage_dir, generate_filename, get_storage_dir


def _validation_messages(error: ValidationError) -> list[str]:
    messages = []
    for item in error.errors():
        field = ".".join(str(part) for part in item["loc"]) or "input"
        messages.append(f"{field}: {item['msg']}")
    return messages


class DiagramRenderer:
    """Render diagrams through the cache and the Kroki client."""

    def __init__(
        self,
        client: KrokiClient,
        cache: DiagramLRUCache,
        formats: FormatRegistry,
        storage_dir: str | Path | None = None,
    ) -> None:
        self.client = client
        self.cache = cache
        self.formats = formats
        self.storage_dir = get_storage_dir(storage_dir)
        self._inflight: dict[str, asyncio.Future[RenderingOutput]] = {}

    @classmethod
    def from_config(
        cls,
        config: DbridgeConfig,
        *,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> DiagramRenderer:
        """Build a renderer (registry, cache, client) from configuration."""
        registry = FormatRegistry()
        for definition in config.formats:
            registry.add_format(definition)

        cache = DiagramLRUCache(
            max_entries=config.cache.max_entries,
            max_memory_mb=config.cache.max_memory_mb,
        )
        client = KrokiClient(config.kroki, registry, transport=transport)
        logger.info(f"Using {config_summary(config.kroki)}")
        return cls(client, cache, registry, storage_dir=config.storage.dir)

    @property
    def inflight_count(self) -> int:
        return len(self._inflight)

    async def render(
        self,
        code: str,
        diagram_format: str,
        output_format: str | None = None,
    ) -> RenderingOutput:
        """Render a diagram, serving repeated requests from the cache.

        Args:
            code: Diagram source code.
            diagram_format: Internal format id (mermaid, plantuml, d2, ...).
            output_format: "png" or "svg"; defaults to the format's first
                supported output.

        Returns:
            RenderingOutput for the rendered (or cached) file.

        Raises:
            InvalidInputError: Empty or oversized source, or bad arguments.
            FormatResolutionError: Unknown/disabled format or unsupported output.
            RenderError: Any failure surfaced by the Kroki client.
        """
        try:
            request = RenderRequest(
                code=code, diagram_format=diagram_format, output_format=output_format
            )
        except ValidationError as e:
            messages = _validation_messages(e)
            raise InvalidInputError(
                f"Invalid input: {', '.join(messages)}", details={"errors": messages}
            ) from e

        fmt = request.diagram_format
        output = request.output_format or self.formats.get_default_output_format(fmt)
        if output is None:
            raise FormatResolutionError(
                f"Unsupported diagram format: {fmt}", details={"format": fmt}
            )
        # Fail fast before touching cache counters
        self.client.resolve(fmt, output)

        key = generate_key(request.code, fmt, output)

        with LogSpan(span="diagram.render", format=fmt, output=output) as span:
            entry = self.cache.get(key)
            if entry is not None:
                if Path(entry.data.file_path).exists():
                    span.add(cache="hit", path=entry.data.file_path)
                    return entry.data
                # Rendered file was removed from disk behind our back
                self.cache.delete(key)
                span.add(cache="stale")
            else:
                span.add(cache="miss")

            future = self._inflight.get(key)
            if future is None:
                future = asyncio.ensure_future(
                    self._render_and_store(key, request.code, fmt, output)
                )
                self._inflight[key] = future
                future.add_done_callback(lambda f, k=key: self._forget(k, f))
            else:
                span.add(coalesced=True)

            result = await asyncio.shield(future)
            span.add(path=result.file_path, size=result.file_size)
            return result

    def _forget(self, key: str, future: asyncio.Future[RenderingOutput]) -> None:
        if self._inflight.get(key) is future:
            del self._inflight[key]
        # Waiters hold only shield() wrappers; the task error is consumed here
        if not future.cancelled() and (error := future.exception()) is not None:
            logger.warning(f"Render for cache key {key[:12]} failed: {error}")

    async def _render_and_store(
        self, key: str, code: str, diagram_format: str, output_format: str
    ) -> RenderingOutput:
        try:
            storage = ensure_storage_dir(self.storage_dir)
        except OSError as e:
            raise StorageError(
                f"Failed to create diagram storage directory at {self.storage_dir}: {e}",
                details={"path": str(self.storage_dir)},
            ) from e

        destination = storage / generate_filename(diagram_format, output_format)
        output = await self.client.render(code, diagram_format, output_format, destination)
        self.cache.set(key, create_cache_entry(output))
        return output

    # ==================== Cache maintenance ====================

    def cache_stats(self) -> CacheStats:
        return self.cache.stats()

    def clear_cache(self) -> None:
        self.cache.clear()

    def prune_cache(self, max_age_ms: int = DEFAULT_MAX_AGE_MS) -> int:
        removed = self.cache.prune_expired(max_age_ms)
        if removed:
            logger.debug(f"Pruned {removed} expired diagram cache entries")
        return removed

    # ==================== Diagnostics ====================

    async def health_check(self) -> HealthReport:
        """Combine Kroki health with a sanity check of the format registry."""
        issues: list[str] = []

        enabled = self.formats.get_enabled_formats()
        if not enabled:
            issues.append("No diagram formats are enabled")

        kroki = await self.client.health_check()
        if not kroki.healthy:
            issues.append(f"Kroki client unhealthy: {', '.join(kroki.details)}")

        if issues:
            return HealthReport(status="unhealthy", details=issues)
        return HealthReport(
            status="healthy",
            details=[*kroki.details, f"{len(enabled)} formats enabled"],
        )

    def describe(self) -> dict[str, Any]:
        """Configuration and cache snapshot for diagnostics."""
        return {
            "kroki_url": self.client.base_url,
            "storage_dir": str(self.storage_dir),
            "formats": self.formats.get_enabled_formats(),
            "inflight": self.inflight_count,
            "cache": self.cache.debug_info(),
        }
