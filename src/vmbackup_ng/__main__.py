# pyright: standard

"""vmbackup-ng: vmbackup_ng/__main__.py.

Guest side agent coordinating quiesced backups with a remote requestor:
runs the freeze scripts, quiesces the filesystems through a sync provider
while the snapshot is taken, then runs the thaw scripts.
"""

import sys

from .cli import main

if __name__ == "__main__":
    sys.exit(main())
