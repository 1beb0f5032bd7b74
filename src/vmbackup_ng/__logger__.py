# pyright: standard

"""vmbackup-ng: vmbackup_ng/__logger__.py
A common logger for displaying through rich.
"""

import logging

from rich.console import Console
from rich.logging import RichHandler

# stdout carries protocol replies when serving, so the console writes to stderr
cons = Console(stderr=True)
rich_handler = RichHandler(console=cons, show_path=False)
# Create a logger directly
logger = logging.Logger("vmbackup-ng", logging.INFO)


def _resolve_level(level) -> int:
    if isinstance(level, int):
        return level
    resolved = logging.getLevelName(str(level).upper())
    return resolved if isinstance(resolved, int) else logging.INFO


def create_logger(level="INFO", log_file=None, show_time=True) -> None:
    """Helper function to setup logging for the CLI and the daemon.

    Args:
        level: Log level name or number
        log_file: Optional path of a plain text log file
        show_time: Whether the console handler prints timestamps
    """
    # pylint: disable=global-statement
    global cons, rich_handler

    level = _resolve_level(level)

    cons = Console(stderr=True)
    rich_handler = RichHandler(console=cons, show_time=show_time, show_path=False)

    handlers: list[logging.Handler] = [rich_handler]
    if log_file:
        file_handler = logging.FileHandler(log_file)
        file_handler.setFormatter(
            logging.Formatter("%(asctime)s %(levelname)s %(name)s: %(message)s")
        )
        handlers.append(file_handler)

    logger.handlers.clear()
    logger.propagate = False
    logger.setLevel(level)
    for handler in handlers:
        logger.addHandler(handler)

    logging.basicConfig(
        format="%(message)s",
        datefmt="%H:%M:%S",
        level=level,
        handlers=handlers,
        force=True,
    )
