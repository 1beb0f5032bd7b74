"""Pytest configuration and shared fixtures."""

import itertools
from pathlib import Path

import pytest

from vmbackup_ng.config.schema import BackupSettings
from vmbackup_ng.core.events import PROTOCOL_EVENT_SET
from vmbackup_ng.core.machine import BackupStateMachine
from vmbackup_ng.provider.base import SyncProvider


class ManualEventQueue:
    """EventQueue driven by hand on a virtual clock."""

    def __init__(self):
        self.now = 0.0
        self._timers = {}
        self._seq = itertools.count()

    def add(self, delay, callback):
        handle = next(self._seq)
        self._timers[handle] = (self.now + max(delay, 0.0), handle, callback)
        return handle

    def remove(self, handle):
        self._timers.pop(handle, None)

    @property
    def pending(self):
        return len(self._timers)

    def run_next(self):
        """Fire the earliest timer; returns False if none is armed."""
        if not self._timers:
            return False
        due, handle, callback = min(self._timers.values())
        del self._timers[handle]
        self.now = max(self.now, due)
        callback()
        return True

    def advance(self, seconds):
        """Fire every timer due within ``seconds`` of virtual time."""
        end = self.now + seconds
        while self._timers and min(self._timers.values())[0] <= end:
            self.run_next()
        self.now = end

    def run_until(self, predicate, max_time=120.0):
        """Fire timers until ``predicate()`` holds or ``max_time`` elapses."""
        end = self.now + max_time
        while not predicate():
            if not self._timers or min(self._timers.values())[0] > end:
                raise AssertionError("condition not reached in time")
            self.run_next()


class RecordingChannel:
    """RpcChannel keeping every message sent."""

    def __init__(self, ok=True):
        self.ok = ok
        self.messages = []

    def send(self, message):
        self.messages.append(message)
        return self.ok

    def events(self, keep_alive=False):
        """Return (event, code, text) tuples, keep-alives dropped by default."""
        result = []
        for message in self.messages:
            assert message.startswith(PROTOCOL_EVENT_SET + " ")
            _, event, code, text = (message.split(" ", 3) + [""])[:4]
            if event == "req.keepAlive" and not keep_alive:
                continue
            result.append((event, int(code), text))
        return result

    def event_names(self, keep_alive=False):
        return [event for event, _, _ in self.events(keep_alive)]


class FakeProcess:
    def __init__(self, argv, exit_code=0, polls=0, hang=False):
        self.argv = list(argv)
        self.pid = 1000 + len(argv[0])
        self.code = exit_code
        self.polls = polls
        self.hang = hang
        self.killed = False
        self.released = False
        self.kill_result = True

    def is_running(self):
        if self.killed:
            return False
        if self.hang:
            return True
        if self.polls > 0:
            self.polls -= 1
            return True
        return False

    def exit_code(self):
        if self.killed:
            return -9
        return None if self.is_running() else self.code

    def kill(self):
        self.killed = self.kill_result
        return self.kill_result

    def release(self):
        self.released = True


class FakeSpawner:
    """ProcessSpawner recording launches; behaviour keyed by file name."""

    def __init__(self):
        self.calls = []
        self.processes = []
        self.exit_codes = {}
        self.launch_errors = set()
        self.failing_args = set()
        self.hang = set()
        self.polls = 0

    def spawn(self, argv):
        name = Path(argv[0]).name
        if name in self.launch_errors:
            raise PermissionError(13, "Permission denied", argv[0])
        self.calls.append(list(argv))
        proc = FakeProcess(
            argv,
            exit_code=1 if self.failing_args & set(argv[1:]) else self.exit_codes.get(name, 0),
            polls=self.polls,
            hang=name in self.hang,
        )
        self.processes.append(proc)
        return proc

    def invocations(self):
        """Return (file name, phase) per launch."""
        return [(Path(argv[0]).name, argv[1]) for argv in self.calls]


class RecordingProvider(SyncProvider):
    """Sync provider recording the calls made by the state machine."""

    name = "recording"

    def __init__(self, start_ok=True, snapshot_ok=True):
        self.start_ok = start_ok
        self.snapshot_ok = snapshot_ok
        self.calls = []

    def start(self, state):
        self.calls.append("start")
        if not self.start_ok:
            return False
        return state.set_current_op(None, self.commit_snapshot, "RecordingStart")

    def snapshot_done(self, state):
        self.calls.append("snapshot_done")
        return self.snapshot_ok

    def abort(self, state):
        self.calls.append("abort")

    def release(self):
        self.calls.append("release")


def _make_scripts(directory, names, mode=0o755):
    directory.mkdir(parents=True, exist_ok=True)
    paths = []
    for name in names:
        path = directory / name
        path.write_text("#!/bin/sh\nexit 0\n")
        path.chmod(mode)
        paths.append(path)
    return paths


@pytest.fixture
def install_path(tmp_path):
    """Tools install path holding an empty script directory."""
    path = tmp_path / "tools"
    (path / "backupScripts.d").mkdir(parents=True)
    return path


@pytest.fixture
def script_dir(install_path):
    """Script directory with 10-app.sh and 20-db.sh."""
    directory = install_path / "backupScripts.d"
    _make_scripts(directory, ["20-db.sh", "10-app.sh"])
    return directory


@pytest.fixture
def settings(install_path, tmp_path):
    """Backup settings pointing at the temporary install path."""
    return BackupSettings(
        install_path=str(install_path),
        legacy_scripts=False,
        legacy_freeze_script=str(tmp_path / "pre-freeze-script"),
        legacy_thaw_script=str(tmp_path / "post-thaw-script"),
        sync_provider="null",
        timeout=900,
        poll_period=1.0,
        active_poll_period=0.1,
        keep_alive_period=60.0,
        lock_file=str(tmp_path / "vmbackup-ng.lock"),
    )


@pytest.fixture
def event_queue():
    return ManualEventQueue()


@pytest.fixture
def channel():
    return RecordingChannel()


@pytest.fixture
def spawner():
    return FakeSpawner()


@pytest.fixture
def provider():
    return RecordingProvider()


@pytest.fixture
def machine(settings, provider, event_queue, channel, spawner):
    """State machine wired to the fake collaborators."""
    return BackupStateMachine(settings, provider, event_queue, channel, spawner)


@pytest.fixture
def tmp_config_dir(tmp_path):
    """Create a temporary config directory."""
    config_dir = tmp_path / "config"
    config_dir.mkdir()
    return config_dir


@pytest.fixture
def sample_config_toml():
    """Return a sample valid TOML configuration string."""
    return """
[vmbackup]
install_path = "/opt/tools"
exec_scripts = true
legacy_scripts = false
script_arg = "nightly"
sync_provider = "fsfreeze"
enable_sync_driver = true
freeze_mounts = ["/var/lib/db", "/srv"]
timeout = 600
poll_period = 2.0
active_poll_period = 0.5
keep_alive_period = 120
lock_file = "/tmp/vmbackup-ng-test.lock"

[logging]
level = "debug"
log_file = "/tmp/vmbackup-ng-test.log"
"""


@pytest.fixture
def minimal_config_toml():
    """Return a minimal valid TOML configuration string."""
    return """
[vmbackup]
install_path = "/opt/tools"
"""


@pytest.fixture
def config_file(tmp_config_dir, sample_config_toml):
    """Create a temporary config file with sample content."""
    config_path = tmp_config_dir / "config.toml"
    config_path.write_text(sample_config_toml)
    return config_path


@pytest.fixture
def minimal_config_file(tmp_config_dir, minimal_config_toml):
    """Create a temporary config file with minimal content."""
    config_path = tmp_config_dir / "minimal.toml"
    config_path.write_text(minimal_config_toml)
    return config_path


@pytest.fixture
def make_scripts():
    """Return a helper creating executable scripts in a directory."""
    return _make_scripts
