"""Core backup machinery.

Modules:
    operation: Asynchronous operation contract
    process: Non-blocking child process handling
    events: Protocol events and the timer queue
    state: Backup cycle state
    scripts: Freeze / thaw script phases
    machine: Backup protocol state machine
"""

from .events import AsyncioEventQueue, BackupEvent, StatusCode
from .machine import BackupStateMachine
from .operation import AsyncOperation, OpStatus
from .process import PopenSpawner
from .scripts import ScriptPhaseOp, ScriptType, discover_scripts, new_script_op
from .state import BackupState, MachineState

__all__ = [
    "AsyncOperation",
    "AsyncioEventQueue",
    "BackupEvent",
    "BackupState",
    "BackupStateMachine",
    "MachineState",
    "OpStatus",
    "PopenSpawner",
    "ScriptPhaseOp",
    "ScriptType",
    "StatusCode",
    "discover_scripts",
    "new_script_op",
]
