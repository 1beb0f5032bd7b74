"""State of the one backup cycle that may be active at a time."""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Optional

from .events import BackupEvent, StatusCode
from .operation import AsyncOperation


class MachineState(Enum):
    """Phase of the backup protocol."""

    IDLE = "idle"
    SCRIPTS_FREEZING = "scripts-freezing"
    SYNC_ENABLING = "sync-enabling"
    WAITING_SNAPSHOT = "waiting-snapshot"
    SCRIPTS_THAWING = "scripts-thawing"
    SCRIPTS_FAILING = "scripts-failing"


@dataclass
class ScriptEntry:
    """A quiesce script and the process currently running it, if any."""

    path: str
    proc: Any = None


Continuation = Callable[["BackupState"], bool]


def _no_event(event, code, message="") -> bool:
    return False


@dataclass
class BackupState:
    """Everything a single backup cycle owns.

    Attributes:
        current_op: The one operation in flight
        current_op_name: Diagnostic label of ``current_op``
        callback: Continuation run once ``current_op`` completes
        poll_period: Seconds until the next poll tick
        machine_state: Current protocol phase
        scripts: Script list shared by the freeze and thaw/fail phases
        current_script: Cursor into ``scripts`` (-1 is before the first)
        volumes: Volume list received with the start command
        script_arg: Extra argument passed to every script
        snapshots: Snapshot list received with the snapshot-done command
        error_message: Detail of the last failed operation
        send_event: Sends an event to the requestor (set by the machine)
    """

    poll_period: float = 0.1
    current_op: Optional[AsyncOperation] = None
    current_op_name: Optional[str] = None
    callback: Optional[Continuation] = None
    machine_state: MachineState = MachineState.IDLE

    sync_provider_running: bool = False
    sync_provider_failed: bool = False
    snapshot_done: bool = False
    client_aborted: bool = False
    force_requeue: bool = False
    generate_manifests: bool = False

    scripts: Optional[list[ScriptEntry]] = None
    current_script: int = -1

    volumes: Optional[str] = None
    script_arg: Optional[str] = None
    snapshots: Optional[str] = None
    error_message: Optional[str] = None

    timer_event: Any = None
    keep_alive: Any = None
    abort_timer: Any = None

    send_event: Callable[[BackupEvent, int, str], bool] = field(
        default=_no_event, repr=False
    )

    def set_current_op(
        self,
        op: Optional[AsyncOperation],
        callback: Optional[Continuation],
        name: str,
    ) -> bool:
        """Install the next operation and its continuation.

        ``op`` may be None when only a continuation is scheduled.

        Returns:
            False if an operation is already in flight
        """
        if self.current_op is not None:
            return False
        self.current_op = op
        self.current_op_name = name
        self.callback = callback
        return True

    def report_error(self, code: StatusCode, message: str) -> bool:
        """Send a requestor error event."""
        return self.send_event(BackupEvent.REQUESTOR_ERROR, code, message)
