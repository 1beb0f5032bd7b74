"""Freeze / thaw script handling.

Scripts are the regular files found directly under the backup script
directory (no recursion). They run one at a time: in ascending name order
when freezing and in the reverse order when thawing or rolling back a
failed freeze. The script list is built when the freeze phase starts and
stays in the backup state until the paired thaw or fail phase is released,
so every script that froze something is offered the chance to undo it.

Freezing is strict: the first script that cannot be started or that exits
with a non-zero status ends the phase with an error. Thaw and fail phases
are resilient: failures are recorded and the walk carries on with the
preceding script, and the phase only reports its error once every script
had its turn.
"""

import logging
import os
from enum import Enum
from pathlib import Path
from typing import Optional

from ..__util__ import ScriptExitFailure, ScriptLaunchFailure, is_regular_file
from ..config.schema import BackupSettings
from .operation import OpStatus
from .process import ProcessSpawner
from .state import BackupState, ScriptEntry

logger = logging.getLogger(__name__)


class ScriptType(Enum):
    """Script phase; the value is the argument passed to each script."""

    FREEZE = "freeze"
    FREEZE_FAIL = "freezeFail"
    THAW = "thaw"

    @property
    def op_name(self) -> str:
        return {
            ScriptType.FREEZE: "OnFreeze",
            ScriptType.FREEZE_FAIL: "OnFreezeFail",
            ScriptType.THAW: "OnThaw",
        }[self]


class RunResult(Enum):
    """Outcome of trying to start the next script of a phase."""

    LAUNCHED = "launched"
    DONE = "done"
    FAILED = "failed"


def list_script_dir(script_dir) -> list[Path]:
    """Return the regular files directly under ``script_dir``, sorted by name."""
    script_dir = Path(script_dir)
    if not script_dir.is_dir():
        logger.debug("Script directory %s does not exist", script_dir)
        return []
    try:
        names = os.listdir(script_dir)
    except OSError as e:
        logger.warning("Cannot list script directory %s: %s", script_dir, e)
        return []
    return [script_dir / name for name in sorted(names) if (script_dir / name).is_file()]


def discover_scripts(
    script_dir,
    legacy_freeze: Optional[str] = None,
    legacy_thaw: Optional[str] = None,
) -> list[ScriptEntry]:
    """Build the ordered script list for a backup cycle.

    If either legacy script exists, slot 0 is reserved for it and holds the
    legacy freeze path; that path might not exist when only the thaw script
    does, in which case the slot is skipped at launch time.
    """
    entries = []
    if legacy_freeze and (is_regular_file(legacy_freeze) or is_regular_file(legacy_thaw)):
        entries.append(ScriptEntry(path=str(legacy_freeze)))
    entries.extend(ScriptEntry(path=str(p)) for p in list_script_dir(script_dir))
    return entries


def teardown_scripts(state: BackupState) -> None:
    """Drop the script list and any process handle still attached to it."""
    if state.scripts is None:
        return
    for entry in state.scripts:
        if entry.proc is not None:
            entry.proc.release()
            entry.proc = None
    state.scripts = None
    state.current_script = -1


class ScriptPhaseOp:
    """Runs the scripts of one phase, one process at a time."""

    def __init__(
        self, script_type: ScriptType, state: BackupState, spawner: ProcessSpawner
    ) -> None:
        self.type = script_type
        self.state = state
        self.spawner = spawner
        self.canceled = False
        self.thaw_failed = False
        self.launched = 0
        self.launch_failures = 0
        self.error_message: Optional[str] = None
        self.last_failure: Optional[ScriptLaunchFailure] = None

    def __repr__(self) -> str:
        return f"<ScriptPhaseOp {self.type.value} cursor={self.state.current_script}>"

    @property
    def _step(self) -> int:
        return 1 if self.type is ScriptType.FREEZE else -1

    def _current(self) -> Optional[ScriptEntry]:
        scripts = self.state.scripts
        index = self.state.current_script
        if scripts is None or not 0 <= index < len(scripts):
            return None
        return scripts[index]

    def _command(self, path: str) -> list[str]:
        argv = [path, self.type.value]
        if self.state.script_arg:
            argv.append(self.state.script_arg)
        return argv

    def _launch(self, entry: ScriptEntry) -> bool:
        argv = self._command(entry.path)
        try:
            entry.proc = self.spawner.spawn(argv)
        except OSError as e:
            entry.proc = None
            failure = ScriptLaunchFailure(entry.path, e.strerror or e)
            self.last_failure = failure
            self.error_message = str(failure)
            logger.error("%s", failure)
            return False
        logger.info("Running script: %s", " ".join(argv))
        return True

    def run_next(self) -> RunResult:
        """Start the next script of the phase.

        Freezing stops at the first launch failure. Thawing (or running the
        fail scripts) keeps walking back until a script starts or the list
        is exhausted.
        """
        scripts = self.state.scripts
        if scripts is None:
            return RunResult.DONE

        self.state.current_script += self._step
        while 0 <= self.state.current_script < len(scripts):
            entry = scripts[self.state.current_script]
            if is_regular_file(entry.path):
                if self._launch(entry):
                    self.launched += 1
                    return RunResult.LAUNCHED
                if self.type is ScriptType.FREEZE:
                    return RunResult.FAILED
                self.launch_failures += 1
                self.thaw_failed = True
            self.state.current_script += self._step

        if self.launch_failures and not self.launched:
            return RunResult.FAILED
        return RunResult.DONE

    def _done(self) -> OpStatus:
        if self.thaw_failed:
            if self.error_message is None:
                self.error_message = f"One or more {self.type.value} scripts failed"
            return OpStatus.ERROR
        return OpStatus.FINISHED

    def query_status(self) -> OpStatus:
        """Check the running script and start the next one when it exits."""
        if self.canceled:
            return OpStatus.CANCELED

        entry = self._current()
        if entry is None or entry.proc is None:
            return self._done()

        proc = entry.proc
        if proc.is_running():
            return OpStatus.PENDING

        exit_code = proc.exit_code()
        proc.release()
        entry.proc = None

        if exit_code != 0:
            failure = ScriptExitFailure(entry.path, exit_code)
            self.error_message = str(failure)
            if self.type is ScriptType.FREEZE:
                logger.error("%s", failure)
                return OpStatus.ERROR
            # Keep going, the failure is reported once all scripts ran
            logger.warning("%s", failure)
            self.thaw_failed = True
        else:
            logger.debug("Script %s finished", entry.path)

        result = self.run_next()
        if result is RunResult.LAUNCHED:
            return OpStatus.PENDING
        if result is RunResult.FAILED:
            return OpStatus.ERROR
        return self._done()

    def cancel(self) -> None:
        """Kill the running script, if any, and flag the phase as canceled."""
        entry = self._current()
        if entry is not None and entry.proc is not None:
            if not entry.proc.kill():
                logger.warning(
                    "Failed to kill script %s (pid %s)", entry.path, entry.proc.pid
                )
        self.canceled = True

    def release(self) -> None:
        """Release the phase.

        The thaw and fail phases own the script list, which the freeze
        phase leaves behind for them.
        """
        if self.type is not ScriptType.FREEZE:
            teardown_scripts(self.state)


def new_script_op(
    script_type: ScriptType,
    state: BackupState,
    settings: BackupSettings,
    spawner: ProcessSpawner,
) -> ScriptPhaseOp:
    """Create the operation for a script phase and start its first script.

    The freeze phase discovers the scripts and stores them in ``state``. The
    thaw and fail phases reuse that list, walking back from the cursor.

    Raises:
        ConfigPathUnavailable: If the script directory cannot be determined
        ScriptLaunchFailure: If no script of the phase could be started
    """
    op = ScriptPhaseOp(script_type, state, spawner)

    if script_type is ScriptType.FREEZE:
        script_dir = settings.get_script_dir()
        logger.debug("Trying to run scripts from %s", script_dir)

        legacy_freeze = legacy_thaw = None
        if settings.legacy_scripts:
            legacy_freeze = settings.legacy_freeze_script
            legacy_thaw = settings.legacy_thaw_script

        state.scripts = None
        state.current_script = -1
        entries = discover_scripts(script_dir, legacy_freeze, legacy_thaw)
        if entries:
            state.scripts = entries
    elif state.scripts:
        if settings.legacy_scripts and state.scripts[0].path == settings.legacy_freeze_script:
            state.scripts[0].path = settings.legacy_thaw_script

    if state.scripts is not None and op.run_next() is RunResult.FAILED:
        failure = op.last_failure or ScriptLaunchFailure(state.scripts[0].path)
        if script_type is ScriptType.FREEZE:
            # Nothing ran yet, there is nothing to roll back
            teardown_scripts(state)
        else:
            op.release()
        raise failure

    return op
