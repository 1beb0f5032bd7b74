# pyright: standard

"""vmbackup-ng: vmbackup_ng/provider/__init__.py."""

import os
import shutil

from ..__logger__ import logger

from .base import SyncProvider
from .fsfreeze import FSFREEZE, FsFreezeOp, FsFreezeSyncProvider, freezable_mounts
from .null import NullSyncProvider

__all__ = [
    "SyncProvider",
    "NullSyncProvider",
    "FsFreezeSyncProvider",
    "FsFreezeOp",
    "freezable_mounts",
    "choose_provider",
]


def choose_provider(settings, spawner):
    """
    Chooses the sync provider named in the settings.

    Args:
        settings (BackupSettings): Backup settings.
        spawner (ProcessSpawner): Spawner for provider helper processes.

    Returns:
        SyncProvider: An instance of the selected provider.

    Raises:
        ValueError: If the provider name is unknown.
    """
    name = settings.sync_provider
    binary = shutil.which(FSFREEZE)

    if name == "auto":
        if settings.enable_sync_driver and binary and os.geteuid() == 0:
            name = "fsfreeze"
        else:
            name = "null"
        logger.debug("Automatically selected sync provider: %s", name)

    if name == "fsfreeze":
        if binary is None:
            logger.warning("%s not found in PATH", FSFREEZE)
        return FsFreezeSyncProvider(
            spawner, mounts=settings.freeze_mounts, binary=binary or FSFREEZE
        )
    if name == "null":
        return NullSyncProvider()
    raise ValueError(f"Unknown sync provider: {name}")
