# pyright: standard

"""vmbackup-ng: vmbackup_ng/provider/fsfreeze.py
Sync provider freezing mount points with util-linux fsfreeze(8).
"""

import subprocess
from typing import Optional

from vmbackup_ng.__logger__ import logger
from vmbackup_ng.core.operation import OpStatus

from .base import SyncProvider

FSFREEZE = "fsfreeze"
MOUNTS_FILE = "/proc/self/mounts"

# Filesystems implementing the FIFREEZE ioctl
FREEZABLE_FS_TYPES = frozenset(
    {
        "btrfs",
        "ext2",
        "ext3",
        "ext4",
        "f2fs",
        "gfs2",
        "jfs",
        "nilfs2",
        "ocfs2",
        "reiserfs",
        "xfs",
    }
)


def _unescape(field: str) -> str:
    # /proc/mounts escapes blanks and backslashes as octal
    for code, char in (("\\040", " "), ("\\011", "\t"), ("\\012", "\n"), ("\\134", "\\")):
        field = field.replace(code, char)
    return field


def freezable_mounts(mounts_file=MOUNTS_FILE) -> list[str]:
    """List the mount points of freezable filesystems, in mount order."""
    mounts = []
    try:
        with open(mounts_file, encoding="utf-8") as f:
            for line in f:
                fields = line.split()
                if len(fields) < 3 or fields[2] not in FREEZABLE_FS_TYPES:
                    continue
                mount_point = _unescape(fields[1])
                if mount_point not in mounts:
                    mounts.append(mount_point)
    except OSError as e:
        logger.warning("Cannot read %s: %s", mounts_file, e)
    return mounts


class FsFreezeOp:
    """Runs fsfreeze on a list of mount points, one process at a time.

    Freezing stops at the first failure. Unfreezing attempts every mount
    and reports the failures at the end. ``held`` is shared with the
    provider and always lists the mounts that may still be frozen.
    """

    def __init__(self, action, mounts, spawner, held, binary=FSFREEZE) -> None:
        if action not in ("freeze", "unfreeze"):
            raise ValueError(f"Invalid fsfreeze action: {action}")
        self.action = action
        self.pending = list(mounts)
        self.spawner = spawner
        self.held = held
        self.binary = binary
        self.failed: list[str] = []
        self.current: Optional[str] = None
        self.proc = None
        self.canceled = False
        self.error_message: Optional[str] = None
        self._launch_next()

    def __repr__(self) -> str:
        return f"<FsFreezeOp {self.action} current={self.current}>"

    def _fail(self, mount, reason) -> None:
        self.failed.append(mount)
        self.error_message = f"fsfreeze --{self.action} {mount} failed: {reason}"
        logger.error("%s", self.error_message)

    def _launch_next(self) -> bool:
        while self.pending:
            if self.failed and self.action == "freeze":
                return False
            mount = self.pending.pop(0)
            try:
                self.proc = self.spawner.spawn([self.binary, f"--{self.action}", mount])
            except OSError as e:
                self._fail(mount, e.strerror or e)
                continue
            self.current = mount
            if self.action == "freeze":
                self.held.append(mount)
            logger.info("Running fsfreeze --%s %s", self.action, mount)
            return True
        self.current = None
        return False

    def query_status(self) -> OpStatus:
        if self.canceled:
            return OpStatus.CANCELED
        if self.proc is not None:
            if self.proc.is_running():
                return OpStatus.PENDING
            exit_code = self.proc.exit_code()
            self.proc.release()
            self.proc = None
            if exit_code == 0:
                if self.action == "unfreeze" and self.current in self.held:
                    self.held.remove(self.current)
            else:
                if self.action == "freeze" and self.current in self.held:
                    self.held.remove(self.current)
                self._fail(self.current, f"exit status {exit_code}")
            if self._launch_next():
                return OpStatus.PENDING
        return OpStatus.ERROR if self.failed else OpStatus.FINISHED

    def cancel(self) -> None:
        if self.proc is not None and not self.proc.kill():
            logger.warning("Failed to kill fsfreeze (pid %s)", self.proc.pid)
        self.canceled = True

    def release(self) -> None:
        if self.proc is not None:
            self.proc.release()
            self.proc = None


class FsFreezeSyncProvider(SyncProvider):
    """Freeze filesystems with fsfreeze while the snapshot is taken."""

    name = "fsfreeze"

    def __init__(self, spawner, mounts=None, binary=FSFREEZE, runner=subprocess.run) -> None:
        """
        Args:
            spawner: ProcessSpawner running the asynchronous freeze and thaw
            mounts: Mount points to freeze; all freezable mounts when empty
            binary: Path of the fsfreeze executable
            runner: Blocking runner used when thawing on abort
        """
        self.spawner = spawner
        self.mounts = list(mounts or [])
        self.binary = binary
        self.runner = runner
        self.held: list[str] = []

    def start(self, state) -> bool:
        mounts = self.mounts or freezable_mounts()
        if not mounts:
            logger.warning("No freezable filesystems found, nothing to freeze")
            return state.set_current_op(None, self.commit_snapshot, "FsFreezeNone")
        logger.debug("Freezing %s", ", ".join(mounts))
        op = FsFreezeOp("freeze", mounts, self.spawner, self.held, self.binary)
        if not state.set_current_op(op, self.commit_snapshot, "FsFreeze"):
            op.cancel()
            op.release()
            self.thaw_now()
            return False
        return True

    def snapshot_done(self, state) -> bool:
        if not self.held:
            return True
        mounts = list(reversed(self.held))
        op = FsFreezeOp("unfreeze", mounts, self.spawner, self.held, self.binary)
        if not state.set_current_op(op, None, "FsThaw"):
            op.cancel()
            op.release()
            return False
        return True

    def abort(self, state) -> None:
        self.thaw_now()

    def release(self) -> None:
        if self.held:
            logger.warning("Releasing fsfreeze provider with frozen filesystems")
            self.thaw_now()

    def thaw_now(self) -> bool:
        """Synchronously unfreeze every mount still held, last frozen first.

        Returns:
            False if any mount could not be thawed
        """
        success = True
        for mount in list(reversed(self.held)):
            cmd = [self.binary, "--unfreeze", mount]
            logger.info("Running %s", " ".join(cmd))
            try:
                result = self.runner(cmd, check=False, timeout=60)
            except (OSError, subprocess.SubprocessError) as e:
                logger.error("Failed to thaw %s: %s", mount, e)
                success = False
                continue
            if result.returncode != 0:
                logger.error("Failed to thaw %s: exit status %d", mount, result.returncode)
                success = False
                continue
            self.held.remove(mount)
        return success
