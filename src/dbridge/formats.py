"""Diagram format registry and capability lookup.

Maps internal diagram format ids (what callers ask for) to Kroki format ids
(what the engine understands) together with the output formats Kroki supports
for each of them.

The rendering client and the orchestrator only depend on the
FormatCapabilityLookup protocol, so tests can inject a fake.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Protocol, runtime_checkable

from pydantic import BaseModel, Field

from dbridge.models import OutputFormat

# Output format MIME types
CONTENT_TYPES: dict[str, str] = {
    "png": "image/png",
    "svg": "image/svg+xml",
}


def get_content_type(output_format: str) -> str:
    """Get the MIME type for an output format.

    Raises:
        ValueError: If the output format is unknown.
    """
    try:
        return CONTENT_TYPES[output_format]
    except KeyError:
        raise ValueError(f"Unsupported output format: {output_format}") from None


@runtime_checkable
class FormatCapabilityLookup(Protocol):
    """Read-only view of format capabilities consumed by the client."""

    def get_remote_format(self, internal_format: str) -> str | None: ...

    def get_supported_output_formats(self, internal_format: str) -> list[str]: ...

    def get_default_output_format(self, internal_format: str) -> str | None: ...


@dataclass(frozen=True)
class FormatMapping:
    """Internal format id paired with its Kroki id and supported outputs."""

    internal_format: str
    remote_format: str
    supported_outputs: tuple[str, ...]


class FormatDefinition(BaseModel):
    """Configuration of a single diagram format."""

    id: str = Field(..., description="Internal format id")
    display_name: str = Field(..., description="Human readable name")
    description: str = Field(default="", description="Short description")
    kroki_format: str = Field(..., description="Kroki format identifier")
    supported_outputs: list[OutputFormat] = Field(
        default_factory=lambda: ["png"],
        description="Output formats Kroki supports for this diagram type (first is default)",
    )
    enabled: bool = Field(default=True, description="Whether format can be rendered")
    file_extensions: list[str] = Field(default_factory=list)
    example_code: str = Field(default="")


def _default_definitions() -> list[FormatDefinition]:
    return [
        FormatDefinition(
            id="mermaid",
            display_name="Mermaid",
            description="JavaScript-based diagramming and charting tool with simple syntax",
            kroki_format="mermaid",
            supported_outputs=["png", "svg"],
            file_extensions=[".mmd", ".mermaid"],
            example_code="flowchart TD\n    A[Start] --> B{Decision}\n    B -->|Yes| C[Action]\n    B -->|No| D[End]",
        ),
        FormatDefinition(
            id="plantuml",
            display_name="PlantUML",
            description="UML diagrams from text descriptions",
            kroki_format="plantuml",
            supported_outputs=["png", "svg"],
            file_extensions=[".puml", ".plantuml"],
            example_code="@startuml\nclass User {\n  +name: String\n  +login()\n}\n@enduml",
        ),
        FormatDefinition(
            id="d2",
            display_name="D2",
            description="Modern diagram scripting language with auto-layout",
            kroki_format="d2",
            # Kroki renders D2 to SVG only
            supported_outputs=["svg"],
            file_extensions=[".d2"],
            example_code="users -> database: query\ndatabase -> users: results",
        ),
        FormatDefinition(
            id="graphviz",
            display_name="GraphViz",
            description="Graph visualization with the DOT language",
            kroki_format="graphviz",
            supported_outputs=["png", "svg"],
            file_extensions=[".dot", ".gv"],
            example_code="digraph G {\n  A -> B;\n  B -> C;\n  A -> C;\n}",
        ),
        FormatDefinition(
            id="erd",
            display_name="ERD",
            description="Entity-relationship diagrams for database design",
            kroki_format="erd",
            supported_outputs=["png", "svg"],
            file_extensions=[".er", ".erd"],
            example_code='[User]\n*id {label: "int, primary key"}\nname {label: "varchar, not null"}',
        ),
        FormatDefinition(
            id="bpmn",
            display_name="BPMN",
            description="Business Process Model and Notation XML",
            kroki_format="bpmn",
            supported_outputs=["svg"],
            file_extensions=[".bpmn"],
        ),
        FormatDefinition(
            id="c4-plantuml",
            display_name="C4-PlantUML",
            description="C4 architecture model diagrams on top of PlantUML",
            kroki_format="c4plantuml",
            supported_outputs=["png", "svg"],
            file_extensions=[".c4", ".puml"],
        ),
        FormatDefinition(
            id="structurizr",
            display_name="Structurizr",
            description="Structurizr DSL workspaces for C4 models",
            kroki_format="structurizr",
            supported_outputs=["svg"],
            file_extensions=[".dsl"],
        ),
        FormatDefinition(
            id="excalidraw",
            display_name="Excalidraw",
            description="Hand-drawn style diagrams from Excalidraw JSON",
            kroki_format="excalidraw",
            supported_outputs=["svg"],
            file_extensions=[".excalidraw"],
        ),
        FormatDefinition(
            id="vega-lite",
            display_name="Vega-Lite",
            description="Declarative statistical charts from a JSON spec",
            kroki_format="vegalite",
            # PNG is unreliable in the Kroki container, SVG is not
            supported_outputs=["svg"],
            file_extensions=[".vl.json"],
        ),
    ]


# Alias ids resolving to a canonical definition
DEFAULT_ALIASES: dict[str, str] = {
    "c4plantuml": "c4-plantuml",
    "c4": "c4-plantuml",
    "vegalite": "vega-lite",
}


class FormatRegistry:
    """In-memory registry of diagram formats.

    Implements FormatCapabilityLookup. Disabled formats are still known to the
    registry but resolve to nothing, so they cannot be rendered.
    """

    def __init__(
        self,
        definitions: list[FormatDefinition] | None = None,
        aliases: dict[str, str] | None = None,
    ) -> None:
        self._formats: dict[str, FormatDefinition] = {}
        self._aliases: dict[str, str] = dict(
            DEFAULT_ALIASES if aliases is None else aliases
        )
        for definition in definitions if definitions is not None else _default_definitions():
            self._formats[definition.id] = definition
        self.last_updated = datetime.now(UTC).isoformat()

    # ==================== Lookup ====================

    def _canonical(self, format_id: str) -> str:
        key = format_id.strip().lower()
        return self._aliases.get(key, key)

    def get_format(self, format_id: str) -> FormatDefinition | None:
        """Get a format definition by id or alias (enabled or not)."""
        return self._formats.get(self._canonical(format_id))

    def _enabled(self, format_id: str) -> FormatDefinition | None:
        definition = self.get_format(format_id)
        if definition is None or not definition.enabled:
            return None
        return definition

    def is_format_available(self, format_id: str) -> bool:
        """Check if format exists, regardless of enabled status."""
        return self.get_format(format_id) is not None

    def is_format_supported(self, format_id: str) -> bool:
        """Check if format exists and is enabled."""
        return self._enabled(format_id) is not None

    def get_remote_format(self, internal_format: str) -> str | None:
        definition = self._enabled(internal_format)
        return definition.kroki_format if definition else None

    def get_supported_output_formats(self, internal_format: str) -> list[str]:
        definition = self._enabled(internal_format)
        return list(definition.supported_outputs) if definition else []

    def get_default_output_format(self, internal_format: str) -> str | None:
        outputs = self.get_supported_output_formats(internal_format)
        return outputs[0] if outputs else None

    def is_format_output_supported(self, internal_format: str, output_format: str) -> bool:
        return output_format in self.get_supported_output_formats(internal_format)

    def get_mapping(self, internal_format: str) -> FormatMapping | None:
        """Get the Kroki mapping for an enabled format."""
        definition = self._enabled(internal_format)
        if definition is None:
            return None
        return FormatMapping(
            internal_format=definition.id,
            remote_format=definition.kroki_format,
            supported_outputs=tuple(definition.supported_outputs),
        )

    def get_enabled_formats(self) -> list[str]:
        return [fid for fid, d in self._formats.items() if d.enabled]

    def get_all_formats(self) -> list[str]:
        return list(self._formats)

    def find_by_extension(self, extension: str) -> str | None:
        """Find the first enabled format claiming a file extension."""
        ext = extension.lower()
        if not ext.startswith("."):
            ext = f".{ext}"
        for definition in self._formats.values():
            if definition.enabled and ext in definition.file_extensions:
                return definition.id
        return None

    # ==================== Mutation ====================

    def add_format(self, definition: FormatDefinition) -> None:
        """Add or replace a format definition.

        Raises:
            ValueError: If the definition has no supported outputs.
        """
        if not definition.supported_outputs:
            raise ValueError(f"Invalid format configuration for {definition.id}")
        self._formats[definition.id] = definition
        self.last_updated = datetime.now(UTC).isoformat()

    def set_enabled(self, format_id: str, enabled: bool) -> bool:
        """Enable or disable a format. Returns False if the format is unknown."""
        definition = self.get_format(format_id)
        if definition is None:
            return False
        self._formats[definition.id] = definition.model_copy(update={"enabled": enabled})
        self.last_updated = datetime.now(UTC).isoformat()
        return True
