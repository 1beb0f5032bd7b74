"""CLI dispatcher.

Builds the subcommand parser and routes to the command modules.
"""

import argparse
import sys
from typing import Callable

from .common import create_global_parser


def create_subcommand_parser() -> argparse.ArgumentParser:
    """Create the main argument parser with subcommands."""
    parser = argparse.ArgumentParser(
        prog="vmbackup-ng",
        description="Guest side quiesced backup agent",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        parents=[create_global_parser()],
    )

    parser.add_argument(
        "-V",
        "--version",
        action="store_true",
        help="Show version and exit",
    )

    subparsers = parser.add_subparsers(
        dest="command",
        title="commands",
        description="Available commands (use 'command --help' for details)",
    )

    # serve command
    serve_parser = subparsers.add_parser(
        "serve",
        help="Serve backup requests on stdin/stdout",
        description="Read requestor commands from stdin, write replies and events to stdout",
    )
    serve_parser.add_argument(
        "--lock-file",
        metavar="FILE",
        help="Lock file ensuring a single instance (overrides config)",
    )

    # scripts command with subcommands
    scripts_parser = subparsers.add_parser(
        "scripts",
        help="Inspect or test the quiesce scripts",
    )
    scripts_subs = scripts_parser.add_subparsers(dest="scripts_action")

    scripts_subs.add_parser(
        "list",
        help="List scripts in execution order",
    )

    test_parser = scripts_subs.add_parser(
        "test",
        help="Run the freeze scripts, then the thaw scripts",
    )
    test_parser.add_argument(
        "--fail",
        action="store_true",
        help="Run the freezeFail scripts instead of the thaw scripts",
    )
    test_parser.add_argument(
        "--script-arg",
        metavar="ARG",
        help="Extra argument passed to every script (overrides config)",
    )

    # config command with subcommands
    config_parser = subparsers.add_parser(
        "config",
        help="Configuration management",
        description="Validate or initialize configuration",
    )
    config_subs = config_parser.add_subparsers(dest="config_action")

    config_subs.add_parser(
        "validate",
        help="Validate configuration file",
    )

    init_parser = config_subs.add_parser(
        "init",
        help="Generate example configuration",
    )
    init_parser.add_argument(
        "-o",
        "--output",
        metavar="FILE",
        help="Output file (default: stdout)",
    )

    return parser


def run_subcommand(args: argparse.Namespace) -> int:
    """Run the specified subcommand.

    Args:
        args: Parsed arguments

    Returns:
        Exit code
    """
    from .. import __version__

    if args.version:
        print(f"vmbackup-ng {__version__}")
        return 0

    if not args.command:
        print("No command specified. Use --help for usage information.")
        return 1

    handlers: dict[str, Callable] = {
        "serve": cmd_serve,
        "scripts": cmd_scripts,
        "config": cmd_config,
    }

    handler = handlers.get(args.command)
    if handler:
        return handler(args)
    else:
        print(f"Unknown command: {args.command}")
        return 1


def cmd_serve(args: argparse.Namespace) -> int:
    """Execute serve command."""
    from .serve import execute_serve

    return execute_serve(args)


def cmd_scripts(args: argparse.Namespace) -> int:
    """Execute scripts command."""
    from .scripts_cmd import execute_scripts

    return execute_scripts(args)


def cmd_config(args: argparse.Namespace) -> int:
    """Execute config command."""
    from .config_cmd import execute_config

    return execute_config(args)


def main(argv: list[str] | None = None) -> int:
    """Main entry point for the vmbackup-ng CLI.

    Args:
        argv: Command line arguments (defaults to sys.argv[1:])

    Returns:
        Exit code
    """
    if argv is None:
        argv = sys.argv[1:]

    parser = create_subcommand_parser()
    args = parser.parse_args(argv)

    return run_subcommand(args)
