"""Path resolution for rendered diagram storage.

Rendered files live in a single storage directory, by default
``generated-diagrams`` under the current working directory. The
DIAGRAM_STORAGE_PATH environment variable (or storage.dir in config)
overrides it.
"""

from __future__ import annotations

import uuid
from pathlib import Path
from typing import Any

from dbridge.cache import now_ms

DEFAULT_STORAGE_DIR = "generated-diagrams"


def get_storage_dir(storage_dir: str | Path | None = None) -> Path:
    """Resolve the storage directory to an absolute path.

    Args:
        storage_dir: Configured directory. Relative paths resolve against cwd,
            ~ is expanded. None uses the default.
    """
    path = Path(storage_dir or DEFAULT_STORAGE_DIR).expanduser()
    if not path.is_absolute():
        path = Path.cwd() / path
    return path.resolve()


def ensure_storage_dir(storage_dir: str | Path | None = None) -> Path:
    """Create the storage directory if needed and return it.

    Raises:
        OSError: If the directory cannot be created.
    """
    path = get_storage_dir(storage_dir)
    path.mkdir(parents=True, exist_ok=True)
    return path


def generate_filename(diagram_format: str, output_format: str) -> str:
    """Unique filename such as ``diagram-mermaid-1718000000000-1a2b3c4d.svg``."""
    return f"diagram-{diagram_format}-{now_ms()}-{uuid.uuid4().hex[:8]}.{output_format}"


def get_diagram_file_path(filename: str, storage_dir: str | Path | None = None) -> Path:
    """Absolute path of a diagram file inside the storage directory."""
    return get_storage_dir(storage_dir) / filename


def resource_uri_for(file_path: str | Path) -> str:
    """MCP resource URI for a saved diagram."""
    return f"diagram://saved/{Path(file_path).name}"


def storage_info(storage_dir: str | Path | None = None) -> dict[str, Any]:
    """Describe the storage location for diagnostics."""
    return {
        "base_path": str(get_storage_dir(storage_dir)),
        "is_custom_path": storage_dir not in (None, DEFAULT_STORAGE_DIR),
    }
