"""Command line interface for vmbackup-ng.

Commands:
    serve: Run the backup state machine for a requestor on stdin/stdout
    scripts: List or test the quiesce scripts
    config: Validate or generate configuration
"""

from .dispatcher import main

__all__ = ["main"]
