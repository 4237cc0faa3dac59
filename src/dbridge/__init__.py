"""Diagram Bridge - cached Kroki rendering for LLM-facing diagram tools.

Features:
- Bounded LRU cache of rendered diagrams (entry count and byte budget)
- Async Kroki client with per-attempt timeout and retry/backoff
- Format registry mapping internal ids to Kroki formats
- MCP server exposing render_diagram (see dbridge_serve)

Usage:
    from dbridge import DiagramRenderer, get_config

    renderer = DiagramRenderer.from_config(get_config())
    output = await renderer.render("flowchart TD\\n A-->B", "mermaid", "svg")
"""

from importlib.metadata import PackageNotFoundError, version

from dbridge.cache import DiagramLRUCache, create_cache_entry, generate_key
from dbridge.client import KrokiClient
from dbridge.config import get_config, load_config
from dbridge.errors import ErrorType, RenderError
from dbridge.formats import FormatCapabilityLookup, FormatRegistry
from dbridge.models import CacheEntry, RenderingOutput
from dbridge.renderer import DiagramRenderer

try:
    __version__ = version("diagram-bridge")
except PackageNotFoundError:
    __version__ = "0.0.0"

__all__ = [
    "CacheEntry",
    "DiagramLRUCache",
    "DiagramRenderer",
    "ErrorType",
    "FormatCapabilityLookup",
    "FormatRegistry",
    "KrokiClient",
    "RenderError",
    "RenderingOutput",
    "__version__",
    "create_cache_entry",
    "generate_key",
    "get_config",
    "load_config",
]
