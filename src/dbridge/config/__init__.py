"""Centralized configuration for Diagram Bridge.

Usage:
    from dbridge.config import get_config

    config = get_config()
    print(config.kroki.effective_base_url)
"""

from dbridge.config.loader import (
    CacheSettings,
    DbridgeConfig,
    KrokiSettings,
    StorageSettings,
    config_summary,
    get_config,
    load_config,
    validate_kroki_settings,
)

__all__ = [
    "CacheSettings",
    "DbridgeConfig",
    "KrokiSettings",
    "StorageSettings",
    "config_summary",
    "get_config",
    "load_config",
    "validate_kroki_settings",
]
