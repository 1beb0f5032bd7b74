"""Serve command: run the backup state machine for a requestor.

Commands are read one per line from stdin; replies and events are written
one per line to stdout. Logging goes to stderr.
"""

import argparse
import asyncio
import logging
import signal
import sys

from filelock import FileLock, Timeout

from .. import __util__
from ..channel import CommandDispatcher, StreamChannel
from ..core.events import AsyncioEventQueue
from ..core.machine import BackupStateMachine
from ..core.process import PopenSpawner
from ..provider import choose_provider
from .common import setup_command

logger = logging.getLogger(__name__)


async def _read_commands(reader: asyncio.StreamReader, dispatcher, channel) -> None:
    while True:
        line = await reader.readline()
        if not line:
            logger.info("Requestor closed the connection")
            return
        text = line.decode("utf-8", errors="replace").strip()
        if not text:
            continue
        reply, success = dispatcher.handle(text)
        channel.reply(reply, success)


async def serve(settings, stdin=None, stdout=None) -> None:
    """Serve requestor commands until stdin is closed."""
    stdin = stdin or sys.stdin
    stdout = stdout or sys.stdout
    loop = asyncio.get_running_loop()

    spawner = PopenSpawner(output="stderr")
    channel = StreamChannel(stdout)
    provider = choose_provider(settings, spawner)
    machine = BackupStateMachine(
        settings, provider, AsyncioEventQueue(loop), channel, spawner
    )
    dispatcher = CommandDispatcher(machine)
    logger.info("Using sync provider: %s", provider.name)

    reader = asyncio.StreamReader()
    transport, _ = await loop.connect_read_pipe(
        lambda: asyncio.StreamReaderProtocol(reader), stdin
    )

    stop = asyncio.Event()
    loop.add_signal_handler(signal.SIGTERM, stop.set)
    loop.add_signal_handler(signal.SIGINT, stop.set)
    loop.add_signal_handler(signal.SIGUSR1, lambda: logger.info(machine.describe()))

    commands = asyncio.ensure_future(_read_commands(reader, dispatcher, channel))
    stopped = asyncio.ensure_future(stop.wait())
    try:
        await asyncio.wait({commands, stopped}, return_when=asyncio.FIRST_COMPLETED)
    finally:
        for task in (commands, stopped):
            task.cancel()
        for sig in (signal.SIGTERM, signal.SIGINT, signal.SIGUSR1):
            loop.remove_signal_handler(sig)
        machine.shutdown()
        transport.close()


def execute_serve(args: argparse.Namespace) -> int:
    """Execute the serve command.

    Args:
        args: Parsed command line arguments

    Returns:
        Exit code
    """
    config = setup_command(args)
    if config is None:
        return 1
    settings = config.backup

    lock_file = getattr(args, "lock_file", None) or settings.lock_file
    logger.info(__util__.log_heading("vmbackup-ng serving"))
    try:
        with FileLock(lock_file, timeout=0):
            asyncio.run(serve(settings))
    except Timeout:
        logger.error("Another instance holds the lock file %s", lock_file)
        return 1
    except ValueError as e:
        logger.error("%s", e)
        return 1
    except OSError as e:
        logger.error("Cannot serve: %s", e)
        return 1
    return 0
