# pyright: standard

"""vmbackup-ng: vmbackup_ng/__util__.py
Common utility code and the error taxonomy shared by all modules.
"""

import os
from pathlib import Path


class AbortError(Exception):
    """Exception where an operation had to be aborted."""


class BackupError(AbortError):
    """Base class for errors raised while driving a backup cycle."""


class ScriptLaunchFailure(BackupError):
    """A quiesce script could not be started."""

    def __init__(self, path, reason=None) -> None:
        self.path = str(path)
        self.reason = reason
        msg = f"Failed to start script {self.path}"
        if reason:
            msg += f": {reason}"
        super().__init__(msg)


class ScriptExitFailure(BackupError):
    """A quiesce script exited with a non-zero status."""

    def __init__(self, path, exit_code) -> None:
        self.path = str(path)
        self.exit_code = exit_code
        super().__init__(f"Script {self.path} exited with status {exit_code}")


class SyncProviderStartFailure(BackupError):
    """The sync provider could not be enabled."""


class SyncProviderNotifyFailure(BackupError):
    """The sync provider rejected the snapshot-done notification."""


class AllocationFailure(BackupError):
    """An operation could not be created."""


class ConfigPathUnavailable(BackupError):
    """The install path used to locate the script directory is unknown."""


class OperationAlreadyInProgress(BackupError):
    """A backup cycle is already active."""


def log_heading(msg) -> str:
    """Return a formatted heading for the log."""
    return f"--[ {msg} ]--"


def is_regular_file(path) -> bool:
    """True if ``path`` exists and is a regular file (symlinks followed)."""
    try:
        return Path(path).is_file()
    except OSError:
        return False


def is_executable(path) -> bool:
    """True if ``path`` is a regular file the current user may execute."""
    return is_regular_file(path) and os.access(path, os.X_OK)
