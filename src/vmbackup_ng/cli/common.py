"""Shared CLI utilities and argument parsers."""

import argparse
import logging

from ..__logger__ import create_logger
from ..config import Config, ConfigError, load_config_or_default

logger = logging.getLogger(__name__)


def create_global_parser() -> argparse.ArgumentParser:
    """Create a parser with global options that can be used as a parent."""
    parser = argparse.ArgumentParser(add_help=False)
    add_verbosity_args(parser)
    parser.add_argument(
        "-c",
        "--config",
        metavar="FILE",
        help="Path to configuration file",
    )
    return parser


def add_verbosity_args(parser: argparse.ArgumentParser) -> None:
    """Add verbosity-related arguments to a parser."""
    group = parser.add_argument_group("Output options")
    group.add_argument(
        "-v",
        "--verbose",
        action="store_true",
        help="Enable verbose output",
    )
    group.add_argument(
        "-q",
        "--quiet",
        action="store_true",
        help="Suppress non-essential output",
    )
    group.add_argument(
        "--debug",
        action="store_true",
        help="Enable debug output",
    )


def get_log_level(args: argparse.Namespace, default: str = "INFO") -> str:
    """Determine log level from parsed arguments.

    Args:
        args: Parsed command line arguments
        default: Level used when no verbosity flag is given

    Returns:
        Log level string (DEBUG, INFO, WARNING, ERROR)
    """
    if getattr(args, "debug", False):
        return "DEBUG"
    elif getattr(args, "quiet", False):
        return "WARNING"
    elif getattr(args, "verbose", False):
        return "DEBUG"
    else:
        return default


def setup_command(args: argparse.Namespace) -> Config | None:
    """Load the configuration and set up logging for a command.

    Command line verbosity flags take precedence over the configured level.

    Returns:
        The configuration, or None if it could not be loaded
    """
    create_logger(level=get_log_level(args))
    try:
        config, warnings = load_config_or_default(getattr(args, "config", None))
    except ConfigError as e:
        logger.error("Configuration error: %s", e)
        return None

    create_logger(
        level=get_log_level(args, config.logging.level),
        log_file=config.logging.log_file,
    )
    for warning in warnings:
        logger.warning("Config: %s", warning)
    return config
