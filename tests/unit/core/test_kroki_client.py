"""Unit tests for the Kroki HTTP client.

Kroki is faked with httpx.MockTransport; backoff sleeps are recorded instead
of awaited.
"""

from __future__ import annotations

import asyncio
import json
from pathlib import Path
from typing import Any

import httpx
import pytest

from dbridge.client import KrokiClient, error_for_status
from dbridge.config.loader import KrokiSettings
from dbridge.errors import (
    DiagramSyntaxError,
    EngineUnavailableError,
    ErrorType,
    FormatResolutionError,
    NetworkError,
    RenderError,
    RetriesExhaustedError,
    SizeLimitError,
    StorageError,
)
from dbridge.formats import FormatRegistry

SVG = b'<svg xmlns="http://www.w3.org/2000/svg"/>'


class FakeKroki:
    """Scripted Kroki: each request consumes the next reply, the last repeats.

    A reply is either (status, body) or an httpx exception class.
    """

    def __init__(self, *replies: Any) -> None:
        self.replies = list(replies) or [(200, SVG)]
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        reply = self.replies[min(len(self.requests), len(self.replies)) - 1]
        if isinstance(reply, type) and issubclass(reply, Exception):
            raise reply("scripted failure", request=request)
        status, body = reply
        return httpx.Response(status, content=body)


def _make_client(
    fake: FakeKroki, delays: list[float] | None = None, **settings: Any
) -> KrokiClient:
    options = {"base_url": "http://kroki.test/", "retry_delay_ms": 0, **settings}

    async def record_sleep(seconds: float) -> None:
        if delays is not None:
            delays.append(seconds)

    return KrokiClient(
        KrokiSettings(**options),
        FormatRegistry(),
        transport=httpx.MockTransport(fake),
        sleep=record_sleep,
    )


def _render(client: KrokiClient, code: str, fmt: str, out: str, dest: Path):
    async def scenario():
        async with client:
            return await client.render(code, fmt, out, dest)

    return asyncio.run(scenario())


# =============================================================================
# SUCCESSFUL RENDERS
# =============================================================================


@pytest.mark.unit
@pytest.mark.core
class TestRender:
    """Happy path rendering."""

    def test_render_svg_writes_file(self, tmp_path: Path) -> None:
        fake = FakeKroki((200, SVG))
        client = _make_client(fake)
        dest = tmp_path / "out.svg"

        output = _render(client, "graph TD; A-->B", "mermaid", "svg", dest)

        assert dest.read_bytes() == SVG
        assert output.file_path == str(dest)
        assert output.resource_uri == "diagram://saved/out.svg"
        assert output.content_type == "image/svg+xml"
        assert output.file_size == len(SVG)

        request = fake.requests[0]
        assert request.method == "POST"
        assert str(request.url) == "http://kroki.test/mermaid/svg"
        assert request.content == b"graph TD; A-->B"
        assert request.headers["content-type"] == "text/plain"

    def test_png_content_type(self, tmp_path: Path) -> None:
        fake = FakeKroki((200, b"\x89PNG\r\n"))
        output = _render(_make_client(fake), "digraph{a->b}", "graphviz", "png", tmp_path / "g.png")
        assert output.content_type == "image/png"

    def test_alias_resolves_to_kroki_format(self, tmp_path: Path) -> None:
        fake = FakeKroki()
        _render(_make_client(fake), "@startuml\n@enduml", "c4", "svg", tmp_path / "c.svg")
        assert fake.requests[0].url.path == "/c4plantuml/svg"

    def test_json_formats_send_json_body(self, tmp_path: Path) -> None:
        fake = FakeKroki()
        source = '{"type": "excalidraw", "elements": []}'

        _render(_make_client(fake), source, "excalidraw", "svg", tmp_path / "e.svg")

        request = fake.requests[0]
        assert request.url.path == "/excalidraw/svg"
        assert request.headers["content-type"] == "application/json"
        assert json.loads(request.content) == {"diagram_source": source}

    def test_cloud_url_when_not_local(self, tmp_path: Path) -> None:
        fake = FakeKroki()
        client = _make_client(fake, use_local=False, cloud_url="https://cloud.test")
        assert client.base_url == "https://cloud.test"

        _render(client, "a -> b", "d2", "svg", tmp_path / "d.svg")
        assert str(fake.requests[0].url) == "https://cloud.test/d2/svg"


# =============================================================================
# FORMAT RESOLUTION
# =============================================================================


@pytest.mark.unit
@pytest.mark.core
class TestResolution:
    """Requests that fail before any HTTP call."""

    def test_unsupported_output_makes_no_request(self, tmp_path: Path) -> None:
        fake = FakeKroki()
        with pytest.raises(FormatResolutionError) as exc_info:
            _render(_make_client(fake), "a -> b", "d2", "png", tmp_path / "d.png")

        assert fake.requests == []
        assert exc_info.value.error_type is ErrorType.UNSUPPORTED_FORMAT
        assert "Supported: svg" in exc_info.value.message

    def test_unknown_format(self, tmp_path: Path) -> None:
        fake = FakeKroki()
        with pytest.raises(FormatResolutionError):
            _render(_make_client(fake), "x", "visio", "svg", tmp_path / "v.svg")
        assert fake.requests == []

    def test_disabled_format(self, tmp_path: Path) -> None:
        fake = FakeKroki()
        client = _make_client(fake)
        client._formats.set_enabled("mermaid", False)
        with pytest.raises(FormatResolutionError):
            _render(client, "graph TD; A-->B", "mermaid", "svg", tmp_path / "m.svg")
        assert fake.requests == []


# =============================================================================
# RETRIES
# =============================================================================


@pytest.mark.unit
@pytest.mark.core
class TestRetries:
    """Retry and backoff policy."""

    def test_exhausts_exactly_max_retries_plus_one(self, tmp_path: Path) -> None:
        fake = FakeKroki((503, b"Service Unavailable"))
        delays: list[float] = []
        client = _make_client(fake, delays, max_retries=2, retry_delay_ms=1000)

        with pytest.raises(RetriesExhaustedError) as exc_info:
            _render(client, "graph TD; A-->B", "mermaid", "svg", tmp_path / "m.svg")

        error = exc_info.value
        assert len(fake.requests) == 3
        assert error.attempts == 3
        assert error.retryable is True
        assert error.error_type is ErrorType.KROKI_UNAVAILABLE
        assert isinstance(error.last_error, EngineUnavailableError)
        assert delays == [1.0, 2.0]
        assert not (tmp_path / "m.svg").exists()

    def test_recovers_after_server_error(self, tmp_path: Path) -> None:
        fake = FakeKroki((502, b"Bad Gateway"), (200, SVG))
        output = _render(_make_client(fake), "A-->B", "mermaid", "svg", tmp_path / "m.svg")
        assert len(fake.requests) == 2
        assert output.file_size == len(SVG)

    def test_syntax_error_is_not_retried(self, tmp_path: Path) -> None:
        fake = FakeKroki((400, b"Syntax error in graph at line 1"))
        with pytest.raises(DiagramSyntaxError) as exc_info:
            _render(_make_client(fake), "graph ??", "mermaid", "svg", tmp_path / "m.svg")

        assert len(fake.requests) == 1
        assert exc_info.value.retryable is False
        assert exc_info.value.details == {"status": 400}
        assert "Syntax error" in exc_info.value.message

    def test_size_limit_is_not_retried(self, tmp_path: Path) -> None:
        fake = FakeKroki((413, b"Request Entity Too Large"))
        with pytest.raises(SizeLimitError):
            _render(_make_client(fake), "A-->B", "mermaid", "svg", tmp_path / "m.svg")
        assert len(fake.requests) == 1

    def test_rate_limit_is_retried(self, tmp_path: Path) -> None:
        fake = FakeKroki((429, b"slow down"), (200, SVG))
        _render(_make_client(fake), "A-->B", "mermaid", "svg", tmp_path / "m.svg")
        assert len(fake.requests) == 2

    def test_timeout_classified(self, tmp_path: Path) -> None:
        fake = FakeKroki(httpx.ReadTimeout)
        with pytest.raises(RetriesExhaustedError) as exc_info:
            _render(
                _make_client(fake, max_retries=1), "A-->B", "mermaid", "svg", tmp_path / "m.svg"
            )

        assert len(fake.requests) == 2
        assert exc_info.value.error_type is ErrorType.TIMEOUT_ERROR
        assert "timeout" in exc_info.value.last_error.message.lower()

    def test_connection_error_classified(self, tmp_path: Path) -> None:
        fake = FakeKroki(httpx.ConnectError)
        with pytest.raises(RetriesExhaustedError) as exc_info:
            _render(
                _make_client(fake, max_retries=0), "A-->B", "mermaid", "svg", tmp_path / "m.svg"
            )

        assert len(fake.requests) == 1
        assert isinstance(exc_info.value.last_error, NetworkError)
        assert exc_info.value.error_type is ErrorType.NETWORK_ERROR

    def test_empty_body_fails_without_retry(self, tmp_path: Path) -> None:
        fake = FakeKroki((200, b""))
        with pytest.raises(RenderError) as exc_info:
            _render(_make_client(fake), "A-->B", "mermaid", "svg", tmp_path / "m.svg")
        assert len(fake.requests) == 1
        assert "empty" in exc_info.value.message

    @pytest.mark.parametrize("failure", [httpx.DecodingError, httpx.TooManyRedirects])
    def test_other_http_errors_are_typed(
        self, tmp_path: Path, failure: type[httpx.HTTPError]
    ) -> None:
        fake = FakeKroki(failure)
        with pytest.raises(RenderError) as exc_info:
            _render(_make_client(fake), "A-->B", "mermaid", "svg", tmp_path / "m.svg")

        error = exc_info.value
        assert type(error) is RenderError
        assert error.error_type is ErrorType.UNKNOWN_ERROR
        assert error.retryable is False
        assert isinstance(error.__cause__, failure)
        assert "scripted failure" in error.message
        assert len(fake.requests) == 1


# =============================================================================
# STORAGE
# =============================================================================


@pytest.mark.unit
@pytest.mark.core
def test_missing_directory_is_storage_error(tmp_path: Path) -> None:
    """The client does not create directories for the destination."""
    fake = FakeKroki()
    dest = tmp_path / "missing" / "m.svg"

    with pytest.raises(StorageError) as exc_info:
        _render(_make_client(fake), "A-->B", "mermaid", "svg", dest)

    assert exc_info.value.details["path"] == str(dest)
    assert not dest.parent.exists()


# =============================================================================
# STATUS MAPPING
# =============================================================================


@pytest.mark.unit
@pytest.mark.core
@pytest.mark.parametrize(
    ("status", "body", "expected"),
    [
        (400, "Error 400: parse failure", DiagramSyntaxError),
        (404, "", DiagramSyntaxError),
        (413, "", SizeLimitError),
        (400, "Diagram exceeds size limit", SizeLimitError),
        (408, "", EngineUnavailableError),
        (429, "", EngineUnavailableError),
        (500, "boom", EngineUnavailableError),
        (503, "", EngineUnavailableError),
        (302, "", RenderError),
    ],
)
def test_error_for_status(status: int, body: str, expected: type[RenderError]) -> None:
    error = error_for_status(status, body)
    assert type(error) is expected
    assert error.details == {"status": status}


# =============================================================================
# DIAGNOSTICS
# =============================================================================


def _probe(client: KrokiClient, method: str):
    async def scenario():
        async with client:
            return await getattr(client, method)()

    return asyncio.run(scenario())


@pytest.mark.unit
@pytest.mark.core
class TestDiagnostics:
    """Health check and connection test."""

    def test_health_check_healthy(self) -> None:
        fake = FakeKroki((200, b'{"status": "pass"}'))
        report = _probe(_make_client(fake), "health_check")

        assert report.healthy
        assert fake.requests[0].method == "GET"
        assert str(fake.requests[0].url) == "http://kroki.test/health"
        assert "responded in" in report.details[0]

    def test_health_check_bad_status(self) -> None:
        report = _probe(_make_client(FakeKroki((500, b""))), "health_check")
        assert report.status == "unhealthy"
        assert "HTTP 500" in report.details[0]

    def test_health_check_unreachable(self) -> None:
        report = _probe(_make_client(FakeKroki(httpx.ConnectError)), "health_check")
        assert not report.healthy
        assert "unreachable" in report.details[0]

    def test_connection_test(self) -> None:
        result = _probe(_make_client(FakeKroki((200, b"ok"))), "test_connection")
        assert result.connected is True
        assert result.error is None
        assert result.to_dict()["connected"] is True

    def test_connection_test_failure(self) -> None:
        result = _probe(_make_client(FakeKroki((404, b""))), "test_connection")
        assert result.connected is False
        assert result.error.startswith("HTTP 404")


@pytest.mark.unit
@pytest.mark.core
def test_update_settings_validates() -> None:
    client = _make_client(FakeKroki())
    client.update_settings(max_retries=5)
    assert client.settings.max_retries == 5

    with pytest.raises(ValueError):
        client.update_settings(timeout_ms=10)
