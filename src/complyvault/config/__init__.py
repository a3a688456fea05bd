"""
Configuration management for complyvault.

This module handles loading, validating, and saving configuration settings.
Platform tokens are never stored; they are read from the environment.
"""

from complyvault.config.settings import (
    BypassActor,
    ConfigurationError,
    DriftConfig,
    LedgerConfig,
    PlatformConfig,
    PublishingConfig,
    Settings,
    load_config,
    validate_for_collection,
)

__all__ = [
    "Settings",
    "LedgerConfig",
    "PlatformConfig",
    "DriftConfig",
    "BypassActor",
    "PublishingConfig",
    "load_config",
    "validate_for_collection",
    "ConfigurationError",
]
