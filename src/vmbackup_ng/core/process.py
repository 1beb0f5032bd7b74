"""Process spawning primitive.

Child processes are started without blocking and observed with
non-blocking status queries, so the single-threaded state machine can
poll them from timer callbacks.
"""

import logging
import os
import subprocess
import sys
from typing import Optional, Protocol, Sequence

logger = logging.getLogger(__name__)


class AsyncProcess(Protocol):
    """Handle to a running child process."""

    @property
    def pid(self) -> int: ...

    def is_running(self) -> bool: ...

    def exit_code(self) -> Optional[int]: ...

    def kill(self) -> bool: ...

    def release(self) -> None: ...


class ProcessSpawner(Protocol):
    """Starts child processes."""

    def spawn(self, argv: Sequence[str]) -> AsyncProcess:
        """Start ``argv``; raises OSError if the process cannot be started."""
        ...


class PopenProcess:
    """AsyncProcess backed by subprocess.Popen."""

    def __init__(self, popen: subprocess.Popen) -> None:
        self._popen = popen

    @property
    def pid(self) -> int:
        return self._popen.pid

    @property
    def args(self):
        return self._popen.args

    def is_running(self) -> bool:
        return self._popen.poll() is None

    def exit_code(self) -> Optional[int]:
        """Return the exit code, or None while the process is running."""
        return self._popen.poll()

    def kill(self) -> bool:
        """Send SIGKILL without waiting; the child is reaped by a later poll.

        Returns:
            False if the process could not be signalled
        """
        if self._popen.poll() is not None:
            return True
        try:
            self._popen.kill()
        except OSError as e:
            logger.warning("Failed to kill process %d: %s", self._popen.pid, e)
            return False
        if self._popen.poll() is None:
            logger.debug("Process %d killed, not reaped yet", self._popen.pid)
        return True

    def release(self) -> None:
        """Reap the child if it already exited and close any pipes."""
        self._popen.poll()
        for stream in (self._popen.stdin, self._popen.stdout, self._popen.stderr):
            if stream is not None:
                stream.close()

    def __repr__(self) -> str:
        return f"<PopenProcess pid={self._popen.pid} args={self._popen.args!r}>"


class PopenSpawner:
    """ProcessSpawner that runs commands with subprocess.Popen (no shell)."""

    OUTPUT_MODES = ("inherit", "stderr", "discard")

    def __init__(self, env=None, cwd=None, output="inherit") -> None:
        """
        Args:
            env: Environment for the children (defaults to ours)
            cwd: Working directory for the children
            output: "inherit" our stdout/stderr, send child stdout to our
                "stderr", or "discard" everything
        """
        if output not in self.OUTPUT_MODES:
            raise ValueError(f"Invalid output mode: {output}")
        self.env = env
        self.cwd = cwd
        self.output = output

    def spawn(self, argv: Sequence[str]) -> PopenProcess:
        argv = [os.fspath(a) for a in argv]
        logger.debug("Spawning: %s", argv)
        stdout = stderr = None
        if self.output == "discard":
            stdout = stderr = subprocess.DEVNULL
        elif self.output == "stderr":
            stdout = sys.stderr
        popen = subprocess.Popen(
            argv,
            stdin=subprocess.DEVNULL,
            stdout=stdout,
            stderr=stderr,
            env=self.env,
            cwd=self.cwd,
            close_fds=True,
        )
        return PopenProcess(popen)
