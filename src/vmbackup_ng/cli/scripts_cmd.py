"""Scripts command: inspect and dry run the quiesce scripts."""

import argparse
import logging
import time

from ..__util__ import BackupError, ConfigPathUnavailable, is_executable, log_heading
from ..core.operation import OpStatus
from ..core.process import PopenSpawner
from ..core.scripts import ScriptType, discover_scripts, new_script_op
from ..core.state import BackupState
from .common import setup_command

logger = logging.getLogger(__name__)


def execute_scripts(args: argparse.Namespace) -> int:
    """Execute the scripts command.

    Args:
        args: Parsed command line arguments

    Returns:
        Exit code
    """
    config = setup_command(args)
    if config is None:
        return 1

    action = getattr(args, "scripts_action", None)

    if action == "list":
        return _list_scripts(config.backup)
    elif action == "test":
        return _test_scripts(args, config.backup)
    else:
        print("Usage: vmbackup-ng scripts <list|test>")
        return 1


def _list_scripts(settings) -> int:
    """Print the scripts in the order the freeze phase runs them."""
    try:
        script_dir = settings.get_script_dir()
    except ConfigPathUnavailable as e:
        print(f"Error: {e}")
        return 1

    legacy = (None, None)
    if settings.legacy_scripts:
        legacy = (settings.legacy_freeze_script, settings.legacy_thaw_script)
    entries = discover_scripts(script_dir, *legacy)

    print(f"Script directory: {script_dir}")
    if not settings.exec_scripts:
        print("Note: exec_scripts is disabled, scripts are not run by the daemon")
    if not entries:
        print("No scripts found.")
        return 0

    print("")
    print("Freeze order:")
    for index, entry in enumerate(entries):
        marks = []
        if settings.legacy_scripts and entry.path == settings.legacy_freeze_script:
            marks.append("legacy")
        if not is_executable(entry.path):
            marks.append("not executable")
        suffix = f"  ({', '.join(marks)})" if marks else ""
        print(f"  {index:3d}  {entry.path}{suffix}")
    return 0


def _wait(op, period: float) -> OpStatus:
    while True:
        status = op.query_status()
        if status is not OpStatus.PENDING:
            return status
        time.sleep(period)


def _run_phase(script_type, state, settings, spawner) -> OpStatus | None:
    logger.info(log_heading(f"Running {script_type.value} scripts"))
    try:
        op = new_script_op(script_type, state, settings, spawner)
    except BackupError as e:
        logger.error("%s", e)
        return None
    try:
        status = _wait(op, settings.active_poll_period)
    except KeyboardInterrupt:
        logger.warning("Interrupted, killing the running script")
        op.cancel()
        status = OpStatus.CANCELED
    if status is OpStatus.ERROR and op.error_message:
        logger.error("%s", op.error_message)
    op.release()
    return status


def _test_scripts(args: argparse.Namespace, settings) -> int:
    """Run the freeze scripts, then the thaw (or freezeFail) scripts."""
    if not settings.exec_scripts:
        logger.warning("exec_scripts is disabled, running the scripts anyway")

    state = BackupState(script_arg=getattr(args, "script_arg", None) or settings.script_arg)
    spawner = PopenSpawner()

    freeze = _run_phase(ScriptType.FREEZE, state, settings, spawner)
    if freeze is None:
        return 1

    if freeze is OpStatus.FINISHED and not getattr(args, "fail", False):
        cleanup_type = ScriptType.THAW
    else:
        cleanup_type = ScriptType.FREEZE_FAIL
    cleanup = _run_phase(cleanup_type, state, settings, spawner)

    print("")
    print(f"  {ScriptType.FREEZE.value:<10} {freeze.value}")
    print(f"  {cleanup_type.value:<10} {cleanup.value if cleanup else 'not started'}")

    if freeze is OpStatus.FINISHED and cleanup is OpStatus.FINISHED:
        return 0
    return 1
