"""vmbackup-ng: vmbackup_ng/__init__.py."""

from pathlib import Path


__version__ = "0.1.0"

SCRIPT_DIR_NAME = "backupScripts.d"


def script_dir_for(install_path: str | Path) -> Path:
    """Return the quiesce script directory under an install path."""
    return Path(install_path) / SCRIPT_DIR_NAME
