"""YAML configuration loading for Diagram Bridge.

Example dbridge.yaml:

    version: 1
    log_level: INFO

    kroki:
      base_url: http://localhost:8000
      use_local: true
      timeout_ms: 30000
      max_retries: 3

    cache:
      max_entries: 100
      max_memory_mb: 50

    storage:
      dir: generated-diagrams

    # Use !include for modular configs
    formats: !include formats.yaml

Environment variables from the container deployment override file values:
KROKI_URL, KROKI_USE_LOCAL, KROKI_CLOUD_URL, KROKI_TIMEOUT (ms),
KROKI_MAX_RETRIES, DIAGRAM_STORAGE_PATH, LOG_LEVEL.
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import Any, Literal

import yaml
from loguru import logger
from pydantic import BaseModel, ConfigDict, Field, PrivateAttr

from dbridge.formats import FormatDefinition

CONFIG_DIR_NAME = ".dbridge"
CONFIG_FILE_NAME = "dbridge.yaml"

# Current config schema version
CURRENT_CONFIG_VERSION = 1


# Custom YAML Loader with !include support
class IncludeLoader(yaml.SafeLoader):
    """YAML loader that supports the !include tag.

    Paths are resolved relative to the including file.
    """

    _base_path: Path | None = None

    @classmethod
    def with_base_path(cls, base_path: Path) -> type[IncludeLoader]:
        """Create a loader class with a specific base path for includes."""

        class BoundLoader(cls):  # type: ignore[valid-type,misc]
            _base_path = base_path

        return BoundLoader


def _include_constructor(loader: IncludeLoader, node: yaml.Node) -> Any:
    """Handle !include YAML tag by loading the referenced file."""
    include_path = loader.construct_scalar(node)  # type: ignore[arg-type]

    if loader._base_path is None:
        raise yaml.YAMLError(f"Cannot resolve !include path: {include_path}")

    resolved = (loader._base_path / include_path).resolve()

    if not resolved.exists():
        logger.warning(f"!include file not found: {resolved}")
        return None

    try:
        with resolved.open() as f:
            bound_loader = IncludeLoader.with_base_path(resolved.parent)
            return yaml.load(f, Loader=bound_loader)  # noqa: S506
    except yaml.YAMLError as e:
        raise yaml.YAMLError(f"Error loading !include {include_path}: {e}") from e


IncludeLoader.add_constructor("!include", _include_constructor)


# ==================== Configuration Models ====================


class KrokiSettings(BaseModel):
    """Kroki backend and request policy."""

    base_url: str = Field(
        default="http://localhost:8000",
        description="Local (Docker) Kroki URL",
    )
    cloud_url: str = Field(
        default="https://kroki.io",
        description="Cloud Kroki URL, used when use_local is false",
    )
    use_local: bool = Field(
        default=True,
        description="Render against the local Kroki instead of the cloud service",
    )
    timeout_ms: int = Field(
        default=30_000,
        ge=1000,
        le=300_000,
        description="Per-attempt request timeout in milliseconds",
    )
    max_retries: int = Field(
        default=3,
        ge=0,
        le=10,
        description="Retries after the first attempt for transient failures",
    )
    retry_delay_ms: int = Field(
        default=1000,
        ge=0,
        le=60_000,
        description="Initial backoff delay, doubled on every retry",
    )

    @property
    def effective_base_url(self) -> str:
        """URL actually used for requests, without trailing slash."""
        url = self.base_url if self.use_local else self.cloud_url
        return url.rstrip("/")


class CacheSettings(BaseModel):
    """Rendering cache limits."""

    max_entries: int = Field(default=100, ge=1, le=100_000)
    max_memory_mb: float = Field(default=50, gt=0, le=4096)
    max_age_ms: int = Field(
        default=3_600_000,
        ge=1000,
        description="Age after which prune_expired() drops an entry",
    )


class StorageSettings(BaseModel):
    """Where rendered diagrams are written."""

    dir: str = Field(
        default="generated-diagrams",
        description="Output directory (relative paths resolve against cwd)",
    )


class DbridgeConfig(BaseModel):
    """Root configuration."""

    model_config = ConfigDict(arbitrary_types_allowed=True)

    _config_dir: Path | None = PrivateAttr(default=None)

    version: int = Field(
        default=1,
        description="Config schema version for migration support",
    )
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = Field(
        default="INFO", description="Logging level"
    )
    log_dir: str | None = Field(
        default=None,
        description="Directory for log files (relative to config dir). None: stderr only",
    )
    kroki: KrokiSettings = Field(default_factory=KrokiSettings)
    cache: CacheSettings = Field(default_factory=CacheSettings)
    storage: StorageSettings = Field(default_factory=StorageSettings)
    formats: list[FormatDefinition] = Field(
        default_factory=list,
        description="Extra or overriding format definitions",
    )

    def get_log_dir_path(self) -> Path | None:
        """Resolve log_dir relative to the config file directory."""
        if self.log_dir is None:
            return None
        path = Path(self.log_dir).expanduser()
        if path.is_absolute():
            return path
        base = self._config_dir if self._config_dir is not None else Path.cwd()
        return (base / path).resolve()


# ==================== Loading ====================


def _resolve_config_path(config_path: Path | str | None) -> Path | None:
    """Resolve config path from explicit path, env var, or default locations.

    Resolution order:
    1. Explicit config_path if provided
    2. DBRIDGE_CONFIG env var
    3. cwd/.dbridge/dbridge.yaml
    4. ~/.dbridge/dbridge.yaml
    5. None (use defaults)
    """
    if config_path is not None:
        return Path(config_path)

    env_config = os.getenv("DBRIDGE_CONFIG")
    if env_config:
        return Path(env_config)

    project_config = Path.cwd() / CONFIG_DIR_NAME / CONFIG_FILE_NAME
    if project_config.exists():
        return project_config

    global_config = Path.home() / CONFIG_DIR_NAME / CONFIG_FILE_NAME
    if global_config.exists():
        return global_config

    return None


def _load_yaml_file(config_path: Path) -> dict[str, Any]:
    """Load and parse YAML file with error handling.

    Raises:
        FileNotFoundError: If file doesn't exist.
        ValueError: If YAML is invalid or file can't be read.
    """
    if not config_path.exists():
        raise FileNotFoundError(f"Config file not found: {config_path}")

    try:
        with config_path.open() as f:
            bound_loader = IncludeLoader.with_base_path(config_path.parent)
            raw_data = yaml.load(f, Loader=bound_loader)  # noqa: S506
    except yaml.YAMLError as e:
        raise ValueError(f"Invalid YAML in {config_path}: {e}") from e
    except OSError as e:
        raise ValueError(f"Error reading {config_path}: {e}") from e

    return raw_data if raw_data is not None else {}


def _validate_version(data: dict[str, Any], config_path: Path) -> None:
    """Validate config version and set default if missing.

    Raises:
        ValueError: If version is unsupported.
    """
    config_version = data.get("version")
    if config_version is None:
        logger.warning(
            f"Config file missing 'version' field, assuming version 1. "
            f"Add 'version: {CURRENT_CONFIG_VERSION}' to {config_path}"
        )
        data["version"] = 1
    elif config_version > CURRENT_CONFIG_VERSION:
        raise ValueError(
            f"Config version {config_version} is not supported. "
            f"Maximum supported version is {CURRENT_CONFIG_VERSION}."
        )


def _env_bool(value: str) -> bool:
    return value.strip().lower() not in ("0", "false", "no", "off")


def _apply_env_overrides(data: dict[str, Any]) -> dict[str, Any]:
    """Overlay deployment environment variables on raw config data."""
    kroki = dict(data.get("kroki") or {})
    storage = dict(data.get("storage") or {})

    if url := os.getenv("KROKI_URL"):
        kroki["base_url"] = url
    if use_local := os.getenv("KROKI_USE_LOCAL"):
        kroki["use_local"] = _env_bool(use_local)
    if cloud_url := os.getenv("KROKI_CLOUD_URL"):
        kroki["cloud_url"] = cloud_url
    if timeout := os.getenv("KROKI_TIMEOUT"):
        kroki["timeout_ms"] = int(timeout)
    if retries := os.getenv("KROKI_MAX_RETRIES"):
        kroki["max_retries"] = int(retries)
    if storage_path := os.getenv("DIAGRAM_STORAGE_PATH"):
        storage["dir"] = storage_path
    if level := os.getenv("LOG_LEVEL"):
        data["log_level"] = level.upper()

    if kroki:
        data["kroki"] = kroki
    if storage:
        data["storage"] = storage
    return data


def load_config(config_path: Path | str | None = None) -> DbridgeConfig:
    """Load configuration from YAML file plus environment overrides.

    Args:
        config_path: Path to config file (overrides resolution)

    Returns:
        Validated DbridgeConfig

    Raises:
        FileNotFoundError: If explicit config path doesn't exist
        ValueError: If YAML is invalid or validation fails
    """
    resolved_path = _resolve_config_path(config_path)

    if resolved_path is None:
        logger.debug("No config file found, using defaults")
        raw_data: dict[str, Any] = {}
    else:
        logger.debug(f"Loading config from {resolved_path}")
        raw_data = _load_yaml_file(resolved_path)
        _validate_version(raw_data, resolved_path)

    data = _apply_env_overrides(raw_data)

    try:
        config = DbridgeConfig.model_validate(data)
    except Exception as e:
        source = resolved_path or "environment"
        raise ValueError(f"Invalid configuration in {source}: {e}") from e

    if resolved_path is not None:
        config._config_dir = resolved_path.parent.resolve()
        logger.info(f"Config loaded: version {config.version}")

    return config


def validate_kroki_settings(settings: KrokiSettings) -> list[str]:
    """Return warnings about a Kroki setup that will probably not work."""
    warnings: list[str] = []
    if not settings.effective_base_url:
        warnings.append("Kroki URL is empty")
    if settings.use_local and not any(
        host in settings.base_url for host in ("localhost:8000", "kroki:8000", "127.0.0.1:8000")
    ):
        warnings.append("use_local is true but base_url does not point to a local Kroki")
    return warnings


def config_summary(settings: KrokiSettings) -> str:
    """One-line description of the Kroki backend for startup logs."""
    if settings.use_local:
        return f"Local Kroki at {settings.effective_base_url}"
    return f"Cloud Kroki at {settings.effective_base_url}"


# Global config instance
_config: DbridgeConfig | None = None


def get_config(
    config_path: Path | str | None = None, reload: bool = False
) -> DbridgeConfig:
    """Get or load the global configuration.

    Args:
        config_path: Path to config file (only used on first load)
        reload: Force reload configuration
    """
    global _config

    if _config is None or reload:
        _config = load_config(config_path)

    return _config
