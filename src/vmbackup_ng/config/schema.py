"""Configuration schema definitions using dataclasses.

Defines the structure for TOML configuration with sensible defaults.
"""

from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

from .. import script_dir_for
from ..__util__ import ConfigPathUnavailable

DEFAULT_INSTALL_PATH = "/etc/vmware-tools"
LEGACY_FREEZE_SCRIPT = "/usr/sbin/pre-freeze-script"
LEGACY_THAW_SCRIPT = "/usr/sbin/post-thaw-script"

SYNC_PROVIDERS = ("auto", "fsfreeze", "null")


@dataclass
class BackupSettings:
    """Quiesce operation settings.

    Attributes:
        install_path: Tools install path; scripts live in its backupScripts.d
        exec_scripts: Whether quiesce scripts are run at all
        legacy_scripts: Also run the legacy pre-freeze/post-thaw scripts
        legacy_freeze_script: Path of the legacy pre-freeze script
        legacy_thaw_script: Path of the legacy post-thaw script
        script_arg: Extra argument passed to every script invocation
        sync_provider: Provider name ("auto", "fsfreeze" or "null")
        enable_sync_driver: Allow "auto" to pick the fsfreeze provider
        freeze_mounts: Mount points to freeze (empty = discover)
        timeout: Seconds before an active cycle is aborted (0 = never)
        poll_period: Seconds between polls while the provider holds the freeze
        active_poll_period: Seconds between polls while scripts run
        keep_alive_period: Peer silence tolerance in seconds
        lock_file: Lock file that keeps a single daemon instance
    """

    install_path: Optional[str] = DEFAULT_INSTALL_PATH
    exec_scripts: bool = True
    legacy_scripts: bool = True
    legacy_freeze_script: str = LEGACY_FREEZE_SCRIPT
    legacy_thaw_script: str = LEGACY_THAW_SCRIPT
    script_arg: Optional[str] = None
    sync_provider: str = "auto"
    enable_sync_driver: bool = True
    freeze_mounts: list[str] = field(default_factory=list)
    timeout: int = 15 * 60
    poll_period: float = 1.0
    active_poll_period: float = 0.1
    keep_alive_period: float = 60.0
    lock_file: str = "/run/vmbackup-ng.lock"

    def get_script_dir(self) -> Path:
        """Return the script directory.

        Raises:
            ConfigPathUnavailable: If no install path is configured
        """
        if not self.install_path:
            raise ConfigPathUnavailable("No install path configured")
        return script_dir_for(self.install_path)


@dataclass
class LoggingConfig:
    """Logging configuration.

    Attributes:
        level: Log level name
        log_file: Path to log file (None for no file logging)
    """

    level: str = "INFO"
    log_file: Optional[str] = None


@dataclass
class Config:
    """Root configuration object."""

    backup: BackupSettings = field(default_factory=BackupSettings)
    logging: LoggingConfig = field(default_factory=LoggingConfig)
