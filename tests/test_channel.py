"""Tests for the requestor channel and command dispatch."""

import io
from unittest.mock import MagicMock

from vmbackup_ng.channel import CommandDispatcher, StreamChannel


class BrokenStream(io.StringIO):
    def write(self, s):
        raise BrokenPipeError(32, "Broken pipe")


class TestStreamChannel:
    def test_send_writes_one_line(self):
        stream = io.StringIO()
        channel = StreamChannel(stream)

        assert channel.send("vmbackup.eventSet reset 0 ") is True
        assert stream.getvalue() == "vmbackup.eventSet reset 0 \n"

    def test_reply_prefixes_status(self):
        stream = io.StringIO()
        channel = StreamChannel(stream)

        channel.reply("", True)
        channel.reply("Unknown command", False)
        assert stream.getvalue().splitlines() == ["OK", "ERROR Unknown command"]

    def test_write_failure_returns_false(self):
        assert StreamChannel(BrokenStream()).send("hello") is False

    def test_closed_stream_returns_false(self):
        stream = io.StringIO()
        stream.close()
        assert StreamChannel(stream).reply("text", True) is False


class TestCommandDispatcher:
    """Commands are routed by name; the remainder of the line is passed on."""

    def make(self):
        machine = MagicMock()
        machine.start.return_value = ("", True)
        machine.abort.return_value = ("", True)
        machine.snapshot_done.return_value = ("", True)
        return machine, CommandDispatcher(machine)

    def test_start_with_arguments(self):
        machine, dispatcher = self.make()
        assert dispatcher.handle("vmbackup.start 1 disk-a disk-b\n") == ("", True)
        machine.start.assert_called_once_with("1 disk-a disk-b")

    def test_abort_ignores_arguments(self):
        machine, dispatcher = self.make()
        dispatcher.handle("vmbackup.abort now")
        machine.abort.assert_called_once_with()

    def test_snapshot_done(self):
        machine, dispatcher = self.make()
        dispatcher.handle("vmbackup.snapshotDone snap-1")
        machine.snapshot_done.assert_called_once_with("snap-1")

    def test_unknown_command(self):
        machine, dispatcher = self.make()
        assert dispatcher.handle("vmbackup.freeze") == ("Unknown command", False)
        assert dispatcher.handle("") == ("Unknown command", False)
        machine.start.assert_not_called()

    def test_reply_passed_through(self, machine):
        """Errors from a real machine come back unchanged."""
        dispatcher = CommandDispatcher(machine)
        assert dispatcher.handle("vmbackup.abort") == ("Error: no backup in progress", False)
