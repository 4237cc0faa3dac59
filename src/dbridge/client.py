"""HTTP client for the Kroki diagram rendering service.

Renders diagram source via POST {base_url}/{kroki_format}/{output_format},
retrying transport failures and transient server statuses with exponential
backoff, then writes the image bytes to the caller's destination path.

The client does not cache and does not create directories; the
DiagramRenderer composes it with the cache and storage.
"""

from __future__ import annotations

import asyncio
import json
import time
from collections.abc import Awaitable, Callable
from pathlib import Path
from typing import Any

import aiofiles
import httpx
from loguru import logger

from dbridge.config.loader import KrokiSettings
from dbridge.errors import (
    DiagramSyntaxError,
    EngineUnavailableError,
    FormatResolutionError,
    NetworkError,
    RenderError,
    RenderTimeoutError,
    RetriesExhaustedError,
    SizeLimitError,
    StorageError,
)
from dbridge.formats import FormatCapabilityLookup, get_content_type
from dbridge.logging import LogSpan
from dbridge.models import ConnectionTest, HealthReport, RenderingOutput
from dbridge.paths import resource_uri_for

USER_AGENT = "DiagramBridge/1.0"

# Kroki formats whose source is sent as {"diagram_source": ...} JSON
JSON_PAYLOAD_FORMATS = frozenset({"excalidraw", "vegalite"})

# Statuses worth retrying besides 5xx
RETRYABLE_STATUSES = frozenset({408, 429})

# Engine messages that mean the request was too big rather than malformed
_SIZE_MARKERS = (
    "too large",
    "size limit",
    "payload too large",
    "request entity too large",
)

# Timeout for test_connection() probes (seconds)
CONNECTION_TEST_TIMEOUT = 5.0


def error_for_status(status_code: int, body: str) -> RenderError:
    """Map a non-2xx Kroki response to a typed error.

    Args:
        status_code: HTTP status code.
        body: Response body text (Kroki's error message).

    Returns:
        EngineUnavailableError for 5xx/408/429, SizeLimitError for 413 or size
        wording, DiagramSyntaxError for other 4xx, RenderError otherwise.
    """
    detail = body.strip()[:1000]
    message = f"Error {status_code}: {detail}" if detail else f"HTTP {status_code}"
    details = {"status": status_code}

    if status_code >= 500 or status_code in RETRYABLE_STATUSES:
        return EngineUnavailableError(message, details=details)

    lowered = detail.lower()
    if status_code == 413 or any(marker in lowered for marker in _SIZE_MARKERS):
        return SizeLimitError(message, details=details)
    if 400 <= status_code < 500:
        return DiagramSyntaxError(message, details=details)
    return RenderError(message, details=details)


class KrokiClient:
    """Async Kroki client with per-attempt timeout and retry/backoff.

    Args:
        settings: Kroki URL and request policy.
        formats: Capability lookup resolving internal format ids.
        transport: Optional httpx transport (tests use httpx.MockTransport).
        sleep: Coroutine used for backoff delays.
    """

    def __init__(
        self,
        settings: KrokiSettings,
        formats: FormatCapabilityLookup,
        *,
        transport: httpx.AsyncBaseTransport | None = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self._settings = settings
        self._formats = formats
        self._transport = transport
        self._sleep = sleep
        self._client: httpx.AsyncClient | None = None

    # ==================== Lifecycle ====================

    @property
    def settings(self) -> KrokiSettings:
        return self._settings.model_copy()

    @property
    def base_url(self) -> str:
        return self._settings.effective_base_url

    def update_settings(self, **changes: Any) -> None:
        """Replace selected settings (validated like config values)."""
        merged = {**self._settings.model_dump(), **changes}
        self._settings = KrokiSettings.model_validate(merged)

    def _get_client(self) -> httpx.AsyncClient:
        """Get or create the pooled HTTP client."""
        if self._client is None:
            kwargs: dict[str, Any] = {
                "timeout": httpx.Timeout(self._settings.timeout_ms / 1000),
                "follow_redirects": True,
                "headers": {"User-Agent": USER_AGENT, "Accept": "*/*"},
                "limits": httpx.Limits(
                    max_keepalive_connections=20,
                    max_connections=100,
                    keepalive_expiry=30.0,
                ),
            }
            if self._transport is not None:
                kwargs["transport"] = self._transport
            self._client = httpx.AsyncClient(**kwargs)
        return self._client

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    async def __aenter__(self) -> KrokiClient:
        return self

    async def __aexit__(self, *_exc: object) -> None:
        await self.aclose()

    # ==================== Rendering ====================

    def resolve(self, internal_format: str, output_format: str) -> str:
        """Resolve the Kroki format id for a render request.

        Raises:
            FormatResolutionError: If the format is unknown or disabled, or the
                output format is not supported for it.
        """
        remote_format = self._formats.get_remote_format(internal_format)
        if remote_format is None:
            raise FormatResolutionError(
                f"Unsupported diagram format: {internal_format}",
                details={"format": internal_format},
            )

        supported = self._formats.get_supported_output_formats(internal_format)
        if output_format not in supported:
            raise FormatResolutionError(
                f"Output format '{output_format}' is not supported for {internal_format}. "
                f"Supported: {', '.join(supported) or 'none'}",
                details={"format": internal_format, "output_format": output_format},
            )
        return remote_format

    def build_url(self, remote_format: str, output_format: str) -> str:
        return f"{self.base_url}/{remote_format}/{output_format}"

    @staticmethod
    def build_payload(code: str, remote_format: str) -> tuple[bytes, dict[str, str]]:
        """Request body and content type for a diagram source."""
        if remote_format in JSON_PAYLOAD_FORMATS:
            body = json.dumps({"diagram_source": code}).encode("utf-8")
            return body, {"Content-Type": "application/json"}
        return code.encode("utf-8"), {"Content-Type": "text/plain"}

    async def render(
        self,
        code: str,
        internal_format: str,
        output_format: str,
        destination_path: str | Path,
    ) -> RenderingOutput:
        """Render a diagram via Kroki and save it to destination_path.

        The parent directory of destination_path must already exist.

        Args:
            code: Diagram source code.
            internal_format: Internal diagram format id (e.g. "mermaid").
            output_format: "png" or "svg".
            destination_path: Absolute file path for the rendered image.

        Returns:
            RenderingOutput describing the saved file.

        Raises:
            FormatResolutionError: Unknown format or unsupported output (no request made).
            DiagramSyntaxError: Kroki rejected the source.
            SizeLimitError: Kroki rejected the request as too large.
            RetriesExhaustedError: Every attempt failed with a retryable error.
            StorageError: The file could not be written.
        """
        remote_format = self.resolve(internal_format, output_format)
        url = self.build_url(remote_format, output_format)
        content, headers = self.build_payload(code, remote_format)
        attempts = self._settings.max_retries + 1

        with LogSpan(
            span="kroki.render", format=internal_format, output=output_format, url=url
        ) as span:
            last_error: RenderError | None = None

            for attempt in range(1, attempts + 1):
                if attempt > 1:
                    delay_ms = self._settings.retry_delay_ms * 2 ** (attempt - 2)
                    await self._sleep(delay_ms / 1000)

                try:
                    body = await self._post(url, content, headers)
                except RenderError as e:
                    if not e.retryable:
                        span.add(attempts=attempt, errorType=e.error_type.value)
                        raise
                    last_error = e
                    logger.warning(
                        f"Kroki request attempt {attempt}/{attempts} failed: {e.message}"
                    )
                    continue

                output = await self._save(body, output_format, destination_path)
                span.add(attempts=attempt, size=output.file_size)
                return output

            assert last_error is not None
            span.add(attempts=attempts, errorType=last_error.error_type.value)
            raise RetriesExhaustedError(last_error, attempts) from last_error

    async def _post(self, url: str, content: bytes, headers: dict[str, str]) -> bytes:
        """Issue one render attempt and return the image bytes."""
        timeout_s = self._settings.timeout_ms / 1000
        client = self._get_client()

        try:
            response = await asyncio.wait_for(
                client.post(url, content=content, headers=headers, timeout=timeout_s),
                timeout=timeout_s,
            )
        except (httpx.TimeoutException, TimeoutError) as e:
            raise RenderTimeoutError(
                f"Request timeout after {self._settings.timeout_ms}ms"
            ) from e
        except httpx.TransportError as e:
            raise NetworkError(
                f"Network error contacting Kroki at {self.base_url}: {e}"
            ) from e
        except httpx.HTTPError as e:
            raise RenderError(f"Kroki request failed: {e}") from e

        if not response.is_success:
            raise error_for_status(response.status_code, response.text)

        if not response.content:
            raise RenderError("Received empty image data from Kroki")
        return response.content

    async def _save(
        self, body: bytes, output_format: str, destination_path: str | Path
    ) -> RenderingOutput:
        path = Path(destination_path)
        try:
            async with aiofiles.open(path, "wb") as f:
                await f.write(body)
        except OSError as e:
            raise StorageError(
                f"Failed to write diagram to {path}: {e}",
                details={"path": str(path)},
            ) from e

        return RenderingOutput(
            file_path=str(path),
            resource_uri=resource_uri_for(path),
            content_type=get_content_type(output_format),
            file_size=len(body),
        )

    # ==================== Diagnostics ====================

    async def health_check(self) -> HealthReport:
        """Poll Kroki's /health endpoint.

        Healthy only if Kroki answers 2xx within the configured timeout.
        """
        url = f"{self.base_url}/health"
        timeout_s = self._settings.timeout_ms / 1000

        with LogSpan(span="kroki.health", url=url) as span:
            start = time.monotonic()
            try:
                response = await asyncio.wait_for(
                    self._get_client().get(url, timeout=timeout_s), timeout=timeout_s
                )
            except (httpx.TimeoutException, TimeoutError):
                span.add(status="timeout")
                return HealthReport(
                    status="unhealthy",
                    details=[f"Kroki at {self.base_url} did not respond within {self._settings.timeout_ms}ms"],
                )
            except httpx.TransportError as e:
                span.add(status="unreachable")
                return HealthReport(
                    status="unhealthy",
                    details=[f"Kroki at {self.base_url} is unreachable: {e}"],
                )

            elapsed_ms = int((time.monotonic() - start) * 1000)
            span.add(status=response.status_code, responseMs=elapsed_ms)

            if not response.is_success:
                return HealthReport(
                    status="unhealthy",
                    details=[f"Kroki health endpoint returned HTTP {response.status_code}"],
                )
            return HealthReport(
                status="healthy",
                details=[f"Kroki at {self.base_url} responded in {elapsed_ms}ms"],
            )

    async def test_connection(self) -> ConnectionTest:
        """GET the base URL and report whether it answered and how fast."""
        start = time.monotonic()
        try:
            response = await self._get_client().get(
                self.base_url, timeout=CONNECTION_TEST_TIMEOUT
            )
        except httpx.HTTPError as e:
            return ConnectionTest(
                connected=False,
                response_time_ms=int((time.monotonic() - start) * 1000),
                error=str(e) or type(e).__name__,
            )

        elapsed_ms = int((time.monotonic() - start) * 1000)
        if response.is_success:
            return ConnectionTest(connected=True, response_time_ms=elapsed_ms)
        return ConnectionTest(
            connected=False,
            response_time_ms=elapsed_ms,
            error=f"HTTP {response.status_code}: {response.reason_phrase}",
        )
