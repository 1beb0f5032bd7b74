"""Configuration system for vmbackup-ng.

This module provides TOML-based configuration loading, validation,
and schema definitions for the quiesce engine.
"""

from .loader import (
    ConfigError,
    find_config_file,
    load_config,
    load_config_or_default,
)
from .schema import BackupSettings, Config, LoggingConfig

__all__ = [
    "BackupSettings",
    "LoggingConfig",
    "Config",
    "load_config",
    "load_config_or_default",
    "find_config_file",
    "ConfigError",
]
