"""vmbackup-ng: vmbackup_ng/core/machine.py
The backup protocol state machine.

One machine drives at most one backup cycle at a time. Commands from the
requestor (start, abort, snapshot done) only set up or flag the cycle; all
progress happens on poll ticks delivered by the event queue. Each tick
checks the operation in flight, drains the continuation chain installed by
the sync provider and then advances the cycle according to its
``MachineState``.
"""

import logging
from typing import Optional

from ..__util__ import (
    AllocationFailure,
    BackupError,
    ConfigPathUnavailable,
    OperationAlreadyInProgress,
    SyncProviderNotifyFailure,
    SyncProviderStartFailure,
    log_heading,
)
from ..config.schema import BackupSettings
from .events import KEEP_ALIVE_DIVISOR, BackupEvent, EventQueue, StatusCode, format_event
from .operation import OpStatus, drain
from .process import ProcessSpawner
from .scripts import ScriptType, new_script_op, teardown_scripts
from .state import BackupState, MachineState

logger = logging.getLogger(__name__)

NO_BACKUP_IN_PROGRESS = "Error: no backup in progress"

_PHASE_STATES = {
    ScriptType.FREEZE: MachineState.SCRIPTS_FREEZING,
    ScriptType.FREEZE_FAIL: MachineState.SCRIPTS_FAILING,
    ScriptType.THAW: MachineState.SCRIPTS_THAWING,
}

_CLEANUP_STATES = (MachineState.SCRIPTS_THAWING, MachineState.SCRIPTS_FAILING)


def parse_start_args(args: str) -> tuple[bool, Optional[str]]:
    """Split ``[<generateManifests:int>] [<volumes>]``.

    Returns:
        (generate_manifests, volumes); volumes is None when absent
    """
    args = (args or "").strip()
    if not args:
        return False, None
    first, _, rest = args.partition(" ")
    try:
        generate = int(first)
    except ValueError:
        return False, args
    return bool(generate), rest.strip() or None


class BackupStateMachine:
    """Sequences freeze scripts, the sync provider and thaw scripts."""

    def __init__(
        self,
        settings: BackupSettings,
        provider,
        event_queue: EventQueue,
        channel,
        spawner: ProcessSpawner,
    ) -> None:
        self.settings = settings
        self.provider = provider
        self.queue = event_queue
        self.channel = channel
        self.spawner = spawner
        self.state: Optional[BackupState] = None

    @property
    def active(self) -> bool:
        return self.state is not None

    # Requestor commands

    def start(self, args: str = "") -> tuple[str, bool]:
        """Handle the start command."""
        try:
            self._begin(args)
        except OperationAlreadyInProgress as e:
            logger.warning("%s", e)
            return str(e), False
        except ConfigPathUnavailable as e:
            logger.error("Error getting configuration directory: %s", e)
            return "Error getting configuration directory.", False
        except BackupError as e:
            logger.error("Error initializing backup: %s", e)
            return "Error initializing backup.", False
        return "", True

    def abort(self) -> tuple[str, bool]:
        """Handle the abort command."""
        if self.state is None:
            return NO_BACKUP_IN_PROGRESS, False
        self._do_abort("Quiesce aborted.")
        return "", True

    def snapshot_done(self, args: str = "") -> tuple[str, bool]:
        """Handle the snapshot-done notification from the requestor.

        The provider is told about the snapshot right away; the cycle moves
        on from the next poll tick.
        """
        state = self.state
        if state is None:
            return NO_BACKUP_IN_PROGRESS, False
        # Accepted once per cycle, and only while the freeze is held
        if (
            not state.sync_provider_running
            or state.machine_state is not MachineState.WAITING_SNAPSHOT
            or state.snapshot_done
            or state.sync_provider_failed
            or state.client_aborted
        ):
            logger.warning(
                "Unexpected state for snapshot done message: %s",
                state.machine_state.value,
            )
            return "Error: unexpected state for snapshot done message.", False

        state.snapshots = (args or "").strip() or None
        if self._call_provider("snapshot_done", state):
            state.snapshot_done = True
        else:
            failure = SyncProviderNotifyFailure(
                f"Sync provider {self.provider.name} rejected the snapshot notification"
            )
            logger.error("%s", failure)
            state.error_message = str(failure)
            state.sync_provider_failed = True
            self.send_event(
                BackupEvent.REQUESTOR_ERROR,
                StatusCode.SYNC_ERROR,
                "Error when notifying the sync provider.",
            )
        return "", True

    def describe(self) -> str:
        """Return a human readable summary of the machine state."""
        state = self.state
        if state is None:
            return "Backup is idle."
        text = f"Backup is in state: {state.machine_state.value}"
        if state.current_op is not None:
            text += f", running '{state.current_op_name}'"
        if state.scripts is not None:
            text += f", script {state.current_script + 1} of {len(state.scripts)}"
        flags = [
            name
            for name in (
                "sync_provider_running",
                "sync_provider_failed",
                "snapshot_done",
                "client_aborted",
            )
            if getattr(state, name)
        ]
        if flags:
            text += f" [{', '.join(flags)}]"
        return text

    def shutdown(self) -> None:
        """Finalize any active cycle and release the sync provider."""
        if self.state is not None:
            logger.warning("Shutting down with an active backup cycle")
            self._finalize(self.state)
        self.provider.release()

    # Events and timers

    def send_event(self, event: BackupEvent, code: int, message: str = "") -> bool:
        """Send an event to the requestor and re-arm the keep-alive timer."""
        state = self.state
        if state is not None and state.keep_alive is not None:
            self.queue.remove(state.keep_alive)
            state.keep_alive = None

        msg = format_event(event, code, message)
        logger.debug("Sending event: %s", msg)
        try:
            success = self.channel.send(msg)
        except OSError as e:
            logger.warning("Failed to send event to the requestor: %s", e)
            success = False
        else:
            if not success:
                logger.warning("Failed to send event to the requestor: %s", msg)

        if state is not None and state is self.state:
            state.keep_alive = self.queue.add(
                self.settings.keep_alive_period / KEEP_ALIVE_DIVISOR,
                self._on_keep_alive,
            )
        return success

    def _on_keep_alive(self) -> None:
        state = self.state
        if state is None:
            return
        state.keep_alive = None
        self.send_event(BackupEvent.KEEP_ALIVE, StatusCode.SUCCESS, "")

    def _on_abort_timeout(self) -> None:
        state = self.state
        if state is None:
            return
        state.abort_timer = None
        logger.warning("Aborting backup operation due to timeout.")
        self._do_abort("Quiesce aborted due to timeout.")

    def _enqueue(self, state: BackupState) -> None:
        state.timer_event = self.queue.add(state.poll_period, self._poll)

    # Cycle setup and teardown

    def _begin(self, args: str) -> None:
        if self.state is not None:
            raise OperationAlreadyInProgress("Backup operation already in progress.")

        generate_manifests, volumes = parse_start_args(args)
        state = BackupState(
            poll_period=self.settings.active_poll_period,
            generate_manifests=generate_manifests,
            volumes=volumes,
            script_arg=self.settings.script_arg,
        )
        state.send_event = self.send_event
        self.state = state

        logger.info(log_heading("Starting backup"))
        logger.debug(
            "execScripts = %s, scriptArg = %s, timeout = %s, volumes = %s",
            self.settings.exec_scripts,
            state.script_arg or "",
            self.settings.timeout,
            volumes or "(none)",
        )

        try:
            self.settings.get_script_dir()
            self.send_event(BackupEvent.RESET, StatusCode.SUCCESS, "")
            try:
                self._start_scripts(state, ScriptType.FREEZE)
            except BackupError:
                self.send_event(
                    BackupEvent.REQUESTOR_ERROR,
                    StatusCode.SCRIPT_ERROR,
                    "Error when starting custom quiesce scripts.",
                )
                raise
        except BackupError:
            self._discard(state)
            raise

        if self.settings.timeout > 0:
            state.abort_timer = self.queue.add(
                self.settings.timeout, self._on_abort_timeout
            )
        self._enqueue(state)

    def _discard(self, state: BackupState) -> None:
        """Drop a cycle that never got going, without a done event."""
        for handle in (state.timer_event, state.keep_alive, state.abort_timer):
            if handle is not None:
                self.queue.remove(handle)
        if state.current_op is not None:
            drain(state.current_op)
            state.current_op.release()
        teardown_scripts(state)
        self.state = None

    def _finalize(self, state: BackupState) -> None:
        """End the cycle and tell the requestor it is done."""
        logger.debug("Finalizing backup cycle in state %s", state.machine_state.value)
        if state.abort_timer is not None:
            self.queue.remove(state.abort_timer)
            state.abort_timer = None
        self._drop_current(state)

        self.send_event(BackupEvent.REQUESTOR_DONE, StatusCode.SUCCESS, "")

        for handle in (state.timer_event, state.keep_alive):
            if handle is not None:
                self.queue.remove(handle)
        state.timer_event = state.keep_alive = None

        teardown_scripts(state)
        state.machine_state = MachineState.IDLE
        self.state = None
        logger.info(log_heading("Backup finished"))

    def _drop_current(self, state: BackupState) -> None:
        """Cancel and release the operation in flight, if any."""
        op = state.current_op
        if op is not None:
            logger.debug("Canceling '%s'", state.current_op_name)
            drain(op)
            op.release()
        state.current_op = None
        state.current_op_name = None
        state.callback = None

    def _do_abort(self, message: str) -> None:
        state = self.state
        if state.machine_state is MachineState.SCRIPTS_FAILING or state.client_aborted:
            logger.info("Abort requested while already cleaning up, ignoring")
            return

        self._drop_current(state)
        if state.sync_provider_running:
            self._call_provider("abort", state)
        state.client_aborted = True
        self.send_event(BackupEvent.REQUESTOR_ABORT, StatusCode.REMOTE_ABORT, message)

    # Phase helpers

    def _start_scripts(self, state: BackupState, script_type: ScriptType) -> None:
        """Install the operation for a script phase.

        Raises:
            BackupError: If the phase could not be started
        """
        if self.settings.exec_scripts:
            op = new_script_op(script_type, state, self.settings, self.spawner)
            if not state.set_current_op(op, None, script_type.op_name):
                drain(op)
                op.release()
                raise AllocationFailure(
                    f"Cannot start '{script_type.op_name}' while "
                    f"'{state.current_op_name}' is pending"
                )
        logger.info("Running %s scripts", script_type.value)
        state.machine_state = _PHASE_STATES[script_type]

    def _run_scripts(self, state: BackupState, script_type: ScriptType) -> bool:
        """Start a script phase from a poll tick.

        Returns:
            False if the phase could not be started and the cycle must end
        """
        try:
            self._start_scripts(state, script_type)
        except BackupError as e:
            logger.error("%s", e)
            state.error_message = str(e)
            self.send_event(
                BackupEvent.REQUESTOR_ERROR,
                StatusCode.SCRIPT_ERROR,
                "Error when starting custom quiesce scripts.",
            )
            return False
        return True

    def _wind_down(self, state: BackupState) -> bool:
        """Run the fail scripts if a script list still awaits teardown.

        Returns:
            False if the cycle can be finalized
        """
        if state.scripts is not None and state.machine_state not in _CLEANUP_STATES:
            logger.debug("Scripts pending teardown, running fail scripts")
            return self._run_scripts(state, ScriptType.FREEZE_FAIL)
        return False

    def _call_provider(self, method: str, state: BackupState) -> bool:
        try:
            result = getattr(self.provider, method)(state)
        except Exception:  # pylint: disable=broad-except
            logger.exception("Sync provider %s failed", method)
            return False
        return result is not False

    def _enable_sync(self, state: BackupState) -> bool:
        logger.info("Enabling sync provider %s", self.provider.name)
        state.machine_state = MachineState.SYNC_ENABLING
        state.sync_provider_running = True
        if not self._call_provider("start", state):
            failure = SyncProviderStartFailure(
                f"Sync provider {self.provider.name} could not be enabled"
            )
            logger.error("%s", failure)
            state.error_message = str(failure)
            self._drop_current(state)
            state.sync_provider_running = False
            self.send_event(
                BackupEvent.REQUESTOR_ERROR,
                StatusCode.SYNC_ERROR,
                "Error when enabling the sync provider.",
            )
            return self._wind_down(state)
        state.poll_period = self.settings.poll_period
        return True

    # Poll loop

    def _poll(self) -> None:
        state = self.state
        if state is None:
            return
        state.timer_event = None

        if self._tick(state):
            state.force_requeue = False
            self._enqueue(state)
        else:
            self._finalize(state)

    def _tick(self, state: BackupState) -> bool:
        """Run one poll tick.

        Returns:
            False once the cycle should be finalized
        """
        op = state.current_op
        if op is not None:
            name = state.current_op_name
            logger.debug("Checking %s", name)
            status = op.query_status()
            if status is OpStatus.PENDING:
                return True

            if status is OpStatus.FINISHED:
                logger.debug("Async request '%s' completed", name)
                op.release()
                state.current_op = None
                state.current_op_name = None
            else:
                detail = getattr(op, "error_message", None)
                state.error_message = detail
                if detail:
                    msg = f"'{name}' operation failed: {detail}"
                else:
                    msg = f"'{name}' operation failed."
                code = (
                    StatusCode.SCRIPT_ERROR
                    if state.machine_state in _PHASE_STATES.values()
                    else StatusCode.SYNC_ERROR
                )
                self.send_event(BackupEvent.REQUESTOR_ERROR, code, msg)
                op.release()
                state.current_op = None
                state.current_op_name = None
                state.callback = None

                state.sync_provider_failed = state.sync_provider_running
                if not state.sync_provider_running:
                    return self._wind_down(state)

        while state.callback is not None:
            callback = state.callback
            state.callback = None
            try:
                ok = callback(state)
            except Exception:  # pylint: disable=broad-except
                logger.exception("Continuation %r failed", callback)
                ok = False

            if ok:
                if state.current_op is not None or state.force_requeue:
                    return True
            elif state.sync_provider_running:
                state.sync_provider_failed = True
                break
            else:
                return self._wind_down(state)

        return self._advance(state)

    def _advance(self, state: BackupState) -> bool:
        """Move on once nothing is in flight."""
        if state.sync_provider_running:
            if state.machine_state is MachineState.SYNC_ENABLING and not (
                state.sync_provider_failed or state.client_aborted
            ):
                logger.info("Sync provider enabled, waiting for snapshot")
                state.machine_state = MachineState.WAITING_SNAPSHOT
            if not (
                state.snapshot_done or state.sync_provider_failed or state.client_aborted
            ):
                return True

            state.sync_provider_running = False
            state.poll_period = self.settings.active_poll_period
            if state.client_aborted:
                return self._run_scripts(state, ScriptType.FREEZE_FAIL)
            if state.sync_provider_failed:
                # Release whatever the provider might still hold frozen
                self._call_provider("abort", state)
                return self._run_scripts(state, ScriptType.FREEZE_FAIL)
            return self._run_scripts(state, ScriptType.THAW)

        if state.machine_state is MachineState.SCRIPTS_FREEZING:
            if state.client_aborted:
                return self._wind_down(state)
            return self._enable_sync(state)

        if state.machine_state in _CLEANUP_STATES:
            return False

        return self._wind_down(state)
