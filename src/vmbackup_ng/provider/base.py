# pyright: standard

"""vmbackup-ng: vmbackup_ng/provider/base.py
Common structure of a sync provider.
"""

from vmbackup_ng.core.events import BackupEvent, StatusCode
from vmbackup_ng.core.state import BackupState


class SyncProvider:
    """Generic structure of a filesystem sync provider.

    The state machine calls ``start`` once the freeze scripts are done, then
    ``snapshot_done`` or ``abort`` depending on how the requestor proceeds.
    A provider may chain its own asynchronous steps by installing an
    operation and continuation with ``state.set_current_op``.
    """

    name = "generic"

    def start(self, state: BackupState) -> bool:
        """Quiesce the filesystems.

        Returns:
            False if the provider could not be enabled
        """
        raise NotImplementedError

    def snapshot_done(self, state: BackupState) -> bool:
        """Called once the requestor has taken the snapshot."""
        return True

    def abort(self, state: BackupState) -> None:
        """Undo whatever ``start`` did, synchronously."""

    def release(self) -> None:
        """Free provider resources on shutdown."""

    @staticmethod
    def commit_snapshot(state: BackupState) -> bool:
        """Continuation telling the requestor the guest is ready for the snapshot."""
        return state.send_event(BackupEvent.SNAPSHOT_COMMIT, StatusCode.SUCCESS, "")

    def __repr__(self) -> str:
        return f"<{self.__class__.__name__} {self.name}>"
