"""Backup protocol events and the timer queue the state machine runs on."""

import asyncio
import logging
from enum import Enum, IntEnum
from typing import Any, Callable, Protocol

logger = logging.getLogger(__name__)

PROTOCOL_PREFIX = "vmbackup."
PROTOCOL_START = PROTOCOL_PREFIX + "start"
PROTOCOL_ABORT = PROTOCOL_PREFIX + "abort"
PROTOCOL_SNAPSHOT_DONE = PROTOCOL_PREFIX + "snapshotDone"
PROTOCOL_EVENT_SET = PROTOCOL_PREFIX + "eventSet"

# Keep-alive timers are re-armed at this fraction of the keep-alive period
KEEP_ALIVE_DIVISOR = 20


class BackupEvent(Enum):
    """Events sent to the remote requestor."""

    RESET = "reset"
    KEEP_ALIVE = "req.keepAlive"
    REQUESTOR_DONE = "req.done"
    REQUESTOR_ERROR = "req.error"
    REQUESTOR_ABORT = "req.aborted"
    SNAPSHOT_COMMIT = "prov.snapshotCommit"


class StatusCode(IntEnum):
    """Result codes attached to events."""

    SUCCESS = 0
    INVALID_STATE = 1
    SCRIPT_ERROR = 2
    SYNC_ERROR = 3
    REMOTE_ABORT = 4
    UNEXPECTED_ERROR = 5


def format_event(event: BackupEvent, code: int, message: str = "") -> str:
    """Build the wire message for an event."""
    return f"{PROTOCOL_EVENT_SET} {event.value} {int(code)} {message}"


class EventQueue(Protocol):
    """Single-threaded cooperative timer queue."""

    def add(self, delay: float, callback: Callable[[], Any]) -> Any:
        """Run ``callback`` after ``delay`` seconds; returns a handle."""
        ...

    def remove(self, handle: Any) -> None:
        """Cancel a pending callback. Removing a fired handle is harmless."""
        ...


class AsyncioEventQueue:
    """EventQueue on top of an asyncio event loop."""

    def __init__(self, loop: asyncio.AbstractEventLoop | None = None) -> None:
        self.loop = loop or asyncio.get_running_loop()

    def add(self, delay: float, callback: Callable[[], Any]) -> asyncio.TimerHandle:
        return self.loop.call_later(max(delay, 0.0), self._guard, callback)

    def remove(self, handle: asyncio.TimerHandle | None) -> None:
        if handle is not None:
            handle.cancel()

    @staticmethod
    def _guard(callback: Callable[[], Any]) -> None:
        # An exception escaping a timer would only reach the loop's handler
        try:
            callback()
        except Exception:
            logger.exception("Unhandled error in timer callback %r", callback)
