# pyright: standard

"""vmbackup-ng: vmbackup_ng/channel.py
Line oriented transport between the requestor and the state machine.
"""

import logging
from typing import Callable, Protocol, TextIO

from .core.events import PROTOCOL_ABORT, PROTOCOL_SNAPSHOT_DONE, PROTOCOL_START

logger = logging.getLogger(__name__)


class RpcChannel(Protocol):
    """Outgoing side of the requestor connection."""

    def send(self, message: str) -> bool:
        """Send one message; returns False if it could not be delivered."""
        ...


class StreamChannel:
    """RpcChannel writing one message per line to a text stream.

    Command replies go to the same stream as ``OK <text>`` or
    ``ERROR <text>`` lines.
    """

    def __init__(self, stream: TextIO) -> None:
        self.stream = stream

    def _write_line(self, line: str) -> bool:
        try:
            self.stream.write(line.rstrip("\n") + "\n")
            self.stream.flush()
        except (OSError, ValueError) as e:
            # ValueError: the stream was closed under us
            logger.warning("Cannot write to requestor stream: %s", e)
            return False
        return True

    def send(self, message: str) -> bool:
        return self._write_line(message)

    def reply(self, text: str, success: bool) -> bool:
        status = "OK" if success else "ERROR"
        return self._write_line(f"{status} {text}".rstrip())


class CommandDispatcher:
    """Routes requestor commands to the state machine."""

    def __init__(self, machine) -> None:
        self.machine = machine
        self.handlers: dict[str, Callable[[str], tuple[str, bool]]] = {
            PROTOCOL_START: machine.start,
            PROTOCOL_ABORT: lambda args: machine.abort(),
            PROTOCOL_SNAPSHOT_DONE: machine.snapshot_done,
        }

    def handle(self, line: str) -> tuple[str, bool]:
        """Dispatch one command line of the form ``<name> [<args>]``."""
        name, _, args = line.strip().partition(" ")
        handler = self.handlers.get(name)
        if handler is None:
            logger.warning("Unknown command: %s", name or "(empty)")
            return "Unknown command", False
        logger.debug("Received command %s %s", name, args)
        return handler(args)
