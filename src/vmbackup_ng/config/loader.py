"""TOML configuration loading and validation.

Handles config file discovery, parsing, and validation with helpful error messages.
"""

import tomllib
from pathlib import Path
from typing import Any

from .schema import SYNC_PROVIDERS, BackupSettings, Config, LoggingConfig


class ConfigError(Exception):
    """Configuration loading or validation error."""

    pass


# Config file search paths in priority order
CONFIG_PATHS = [
    Path.home() / ".config" / "vmbackup-ng" / "config.toml",
    Path("/etc/vmbackup-ng/config.toml"),
]

_LOG_LEVELS = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}


def find_config_file(explicit_path: str | None = None) -> Path | None:
    """Find configuration file.

    Args:
        explicit_path: Explicitly specified config path (highest priority)

    Returns:
        Path to config file, or None if not found
    """
    if explicit_path:
        path = Path(explicit_path)
        if path.exists():
            return path
        raise ConfigError(f"Config file not found: {explicit_path}")

    for path in CONFIG_PATHS:
        if path.exists():
            return path

    return None


def _expect(data: dict[str, Any], key: str, kind, default):
    value = data.get(key, default)
    if value is None:
        return value
    if kind is bool:
        valid = isinstance(value, bool)
    else:
        # bool is an int subclass, reject it where a number is expected
        valid = isinstance(value, kind) and not isinstance(value, bool)
    if not valid:
        raise ConfigError(f"'{key}' has invalid type {type(value).__name__}")
    return value


def _parse_backup(data: dict[str, Any]) -> BackupSettings:
    """Parse the [vmbackup] table."""
    defaults = BackupSettings()

    provider = _expect(data, "sync_provider", str, defaults.sync_provider)
    if provider not in SYNC_PROVIDERS:
        raise ConfigError(
            f"Unknown sync_provider '{provider}' "
            f"(expected one of: {', '.join(SYNC_PROVIDERS)})"
        )

    mounts = _expect(data, "freeze_mounts", list, [])
    if not all(isinstance(m, str) for m in mounts):
        raise ConfigError("'freeze_mounts' must be a list of paths")

    return BackupSettings(
        install_path=_expect(data, "install_path", str, defaults.install_path),
        exec_scripts=_expect(data, "exec_scripts", bool, defaults.exec_scripts),
        legacy_scripts=_expect(data, "legacy_scripts", bool, defaults.legacy_scripts),
        legacy_freeze_script=_expect(
            data, "legacy_freeze_script", str, defaults.legacy_freeze_script
        ),
        legacy_thaw_script=_expect(
            data, "legacy_thaw_script", str, defaults.legacy_thaw_script
        ),
        script_arg=_expect(data, "script_arg", str, None) or None,
        sync_provider=provider,
        enable_sync_driver=_expect(
            data, "enable_sync_driver", bool, defaults.enable_sync_driver
        ),
        freeze_mounts=list(mounts),
        timeout=_expect(data, "timeout", int, defaults.timeout),
        poll_period=float(
            _expect(data, "poll_period", (int, float), defaults.poll_period)
        ),
        active_poll_period=float(
            _expect(
                data, "active_poll_period", (int, float), defaults.active_poll_period
            )
        ),
        keep_alive_period=float(
            _expect(
                data, "keep_alive_period", (int, float), defaults.keep_alive_period
            )
        ),
        lock_file=_expect(data, "lock_file", str, defaults.lock_file),
    )


def _parse_logging(data: dict[str, Any]) -> LoggingConfig:
    """Parse the [logging] table."""
    level = str(_expect(data, "level", str, "INFO")).upper()
    if level not in _LOG_LEVELS:
        raise ConfigError(f"Invalid log level: {level}")
    return LoggingConfig(level=level, log_file=_expect(data, "log_file", str, None))


def _validate_config(config: Config) -> list[str]:
    """Validate configuration and return list of warnings."""
    warnings = []
    settings = config.backup

    if settings.timeout < 0:
        warnings.append("Negative timeout treated as disabled")
    elif settings.timeout == 0:
        warnings.append("Quiesce timeout disabled, a stuck cycle is never aborted")

    if settings.poll_period <= 0 or settings.active_poll_period <= 0:
        warnings.append("Poll periods must be positive, defaults will be used")

    if settings.keep_alive_period <= 0:
        warnings.append("keep_alive_period must be positive, default will be used")

    if not settings.exec_scripts and settings.script_arg:
        warnings.append("script_arg is set but exec_scripts is disabled")

    if settings.install_path:
        script_dir = settings.get_script_dir()
        if not script_dir.is_dir():
            warnings.append(f"Script directory does not exist: {script_dir}")
    else:
        warnings.append("No install_path configured, backups will be refused")

    return warnings


def _normalize(config: Config) -> None:
    """Replace out of range values with their defaults."""
    defaults = BackupSettings()
    settings = config.backup
    if settings.timeout < 0:
        settings.timeout = 0
    if settings.poll_period <= 0:
        settings.poll_period = defaults.poll_period
    if settings.active_poll_period <= 0:
        settings.active_poll_period = defaults.active_poll_period
    if settings.keep_alive_period <= 0:
        settings.keep_alive_period = defaults.keep_alive_period


def load_config(path: Path | str) -> tuple[Config, list[str]]:
    """Load and validate configuration from TOML file.

    Args:
        path: Path to configuration file

    Returns:
        Tuple of (Config object, list of warnings)

    Raises:
        ConfigError: If config is invalid or cannot be parsed
    """
    path = Path(path)

    try:
        with open(path, "rb") as f:
            data = tomllib.load(f)
    except tomllib.TOMLDecodeError as e:
        raise ConfigError(f"Invalid TOML syntax: {e}")
    except OSError as e:
        raise ConfigError(f"Cannot read config file: {e}")

    config = Config(
        backup=_parse_backup(data.get("vmbackup", {})),
        logging=_parse_logging(data.get("logging", {})),
    )

    # Validate and collect warnings
    warnings = _validate_config(config)
    _normalize(config)

    return config, warnings


def load_config_or_default(explicit_path: str | None = None) -> tuple[Config, list[str]]:
    """Load the first config file found, or return the built-in defaults."""
    path = find_config_file(explicit_path)
    if path is None:
        return Config(), []
    return load_config(path)


def generate_example_config() -> str:
    """Generate example configuration file content."""
    return """# vmbackup-ng configuration
# See documentation for full options

[vmbackup]
# Quiesce scripts are read from <install_path>/backupScripts.d
install_path = "/etc/vmware-tools"
exec_scripts = true

# Also run /usr/sbin/pre-freeze-script and /usr/sbin/post-thaw-script
legacy_scripts = true
# legacy_freeze_script = "/usr/sbin/pre-freeze-script"
# legacy_thaw_script = "/usr/sbin/post-thaw-script"

# Extra argument passed to every script after the phase name
# script_arg = "nightly"

# Sync provider: "auto", "fsfreeze" or "null"
sync_provider = "auto"
enable_sync_driver = true
# freeze_mounts = ["/var/lib/mysql", "/"]

# Abort an unfinished cycle after this many seconds (0 = never)
timeout = 900

# Polling and keep-alive periods, in seconds
poll_period = 1.0
active_poll_period = 0.1
keep_alive_period = 60.0

lock_file = "/run/vmbackup-ng.lock"

[logging]
level = "INFO"
# log_file = "/var/log/vmbackup-ng.log"
"""
