"""Asynchronous operation contract.

Every long running step of a backup cycle (a script phase, a provider
freeze or thaw) is modelled as an operation the state machine polls on
each timer tick.
"""

from enum import Enum
from typing import Optional, Protocol, runtime_checkable


class OpStatus(Enum):
    """Status reported by an asynchronous operation."""

    PENDING = "pending"
    FINISHED = "finished"
    CANCELED = "canceled"
    ERROR = "error"


@runtime_checkable
class AsyncOperation(Protocol):
    """Contract shared by all operations driven by the state machine."""

    error_message: Optional[str]

    def query_status(self) -> OpStatus:
        """Return the current status, advancing internal progress if needed."""
        ...

    def cancel(self) -> None:
        """Request cancellation; callers keep polling until not pending."""
        ...

    def release(self) -> None:
        """Free resources. Only valid once the operation is no longer pending."""
        ...


def drain(op: AsyncOperation) -> OpStatus:
    """Cancel ``op`` and return its first non-pending status.

    Cancellation is cooperative: well behaved operations report CANCELED
    right after ``cancel()``, so this never spins more than once.
    """
    op.cancel()
    status = op.query_status()
    if status is OpStatus.PENDING:
        # Treat an operation that ignores cancellation as canceled anyway
        return OpStatus.CANCELED
    return status
