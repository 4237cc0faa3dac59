"""FastMCP server exposing cached Kroki diagram rendering.

Tools:
  render_diagram(code, diagram_format, output_format=None)
  diagram_cache_stats()
  kroki_health()

Resources:
  diagram://formats            enabled formats and their outputs
  diagram://saved/{filename}   bytes of a rendered diagram
"""

from __future__ import annotations

import json
from contextlib import asynccontextmanager
from typing import TYPE_CHECKING, Any, Literal

if TYPE_CHECKING:
    from collections.abc import AsyncIterator

from fastmcp import FastMCP

from dbridge.config.loader import get_config
from dbridge.errors import RenderError
from dbridge.logging import LogSpan, configure_logging
from dbridge.renderer import DiagramRenderer

_config = get_config()

# Initialize logging to serve.log
configure_logging(
    log_name="serve", level=_config.log_level, log_dir=_config.get_log_dir_path()
)

INSTRUCTIONS = """\
Diagram Bridge renders diagram source code to PNG or SVG files via Kroki.

Call render_diagram with the diagram source and its format (mermaid, plantuml,
d2, graphviz, erd, bpmn, c4-plantuml, structurizr, excalidraw, vega-lite).
Identical requests are served from a cache. Do not read or analyze the
generated image files; use the returned file path or resource URI."""

# Global renderer instance
_renderer: DiagramRenderer | None = None


def get_renderer() -> DiagramRenderer:
    """Get or create the renderer."""
    global _renderer

    if _renderer is None:
        _renderer = DiagramRenderer.from_config(_config)

    return _renderer


@asynccontextmanager
async def _lifespan(_server: FastMCP) -> AsyncIterator[None]:
    """Manage server lifecycle - startup and shutdown."""
    with LogSpan(span="mcp.server.start") as start_span:
        renderer = get_renderer()
        start_span.add(
            krokiUrl=renderer.client.base_url,
            formatCount=len(renderer.formats.get_enabled_formats()),
        )

    yield

    with LogSpan(span="mcp.server.stop") as stop_span:
        stop_span.add(cache=renderer.cache_stats().to_dict())
        await renderer.client.aclose()


mcp = FastMCP(
    name="diagram-bridge",
    instructions=INSTRUCTIONS,
    lifespan=_lifespan,
)


# =============================================================================
# Tools
# =============================================================================


async def render_diagram(
    code: str,
    diagram_format: str,
    output_format: Literal["png", "svg"] | None = None,
) -> str:
    """Render diagram source code into an image using Kroki.

    Args:
        code: The diagram source code
        diagram_format: Diagram format (mermaid, plantuml, d2, graphviz, ...)
        output_format: png or svg (defaults to the format's preferred output)

    Returns:
        JSON with file_path, resource_uri, content_type and file_size, or an
        error description with error_type and retryable.
    """
    renderer = get_renderer()
    # Opportunistic maintenance, the cache never prunes on its own
    renderer.prune_cache(_config.cache.max_age_ms)

    try:
        output = await renderer.render(code, diagram_format, output_format)
    except RenderError as e:
        return json.dumps({"success": False, **e.to_dict()}, indent=2)

    payload: dict[str, Any] = {
        "success": True,
        **output.to_dict(),
        "message": (
            f"Diagram rendered successfully and saved to {output.file_path}. "
            f"File size: {output.file_size} bytes. "
            f"Access via resource URI: {output.resource_uri}\n\n"
            "Do not attempt to read or analyze the contents of generated image "
            "files. Use the file path or resource URI as needed."
        ),
    }
    return json.dumps(payload, indent=2)


async def diagram_cache_stats() -> str:
    """Report rendering cache statistics (size, hit rate, memory usage)."""
    renderer = get_renderer()
    return json.dumps(
        {**renderer.cache_stats().to_dict(), "inflight": renderer.inflight_count},
        indent=2,
    )


async def kroki_health() -> str:
    """Check that the Kroki rendering service is reachable and healthy."""
    report = await get_renderer().health_check()
    return json.dumps(report.to_dict(), indent=2)


mcp.tool(
    annotations={
        "title": "Render Diagram",
        "readOnlyHint": False,
        "destructiveHint": False,
        "idempotentHint": True,
        "openWorldHint": True,
    }
)(render_diagram)
mcp.tool(annotations={"title": "Diagram Cache Stats", "readOnlyHint": True})(
    diagram_cache_stats
)
mcp.tool(annotations={"title": "Kroki Health", "readOnlyHint": True, "openWorldHint": True})(
    kroki_health
)


# =============================================================================
# Resources
# =============================================================================


def list_formats_resource() -> list[dict[str, Any]]:
    """List enabled diagram formats with Kroki ids and supported outputs."""
    registry = get_renderer().formats
    formats = []
    for format_id in registry.get_enabled_formats():
        definition = registry.get_format(format_id)
        if definition is None:
            continue
        formats.append(
            {
                "id": definition.id,
                "name": definition.display_name,
                "kroki_format": definition.kroki_format,
                "outputs": list(definition.supported_outputs),
                "default_output": definition.supported_outputs[0],
                "description": definition.description,
            }
        )
    return formats


def read_saved_diagram(filename: str) -> bytes:
    """Return the bytes of a rendered diagram from the storage directory."""
    storage = get_renderer().storage_dir
    path = (storage / filename).resolve()
    if path.parent != storage or not path.is_file():
        raise FileNotFoundError(f"Diagram not found: {filename}")
    return path.read_bytes()


mcp.resource("diagram://formats")(list_formats_resource)
mcp.resource("diagram://saved/{filename}")(read_saved_diagram)


def main() -> None:
    """Run the MCP server over stdio transport."""
    mcp.run(show_banner=False)
