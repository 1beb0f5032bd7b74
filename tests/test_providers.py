"""Tests for the sync providers."""

import subprocess
from unittest.mock import MagicMock, patch

import pytest

from vmbackup_ng.core.events import BackupEvent, StatusCode
from vmbackup_ng.core.operation import OpStatus
from vmbackup_ng.core.state import BackupState
from vmbackup_ng.provider import (
    FsFreezeOp,
    FsFreezeSyncProvider,
    NullSyncProvider,
    SyncProvider,
    choose_provider,
    freezable_mounts,
)


def completed(returncode=0):
    return subprocess.CompletedProcess(args=[], returncode=returncode)


def run_op(op, limit=50):
    for _ in range(limit):
        status = op.query_status()
        if status is not OpStatus.PENDING:
            return status
    raise AssertionError("operation did not complete")


@pytest.fixture
def state():
    sent = []
    st = BackupState()
    st.send_event = lambda event, code, message="": sent.append((event, code, message)) or True
    st.sent = sent
    return st


class TestCommitSnapshot:
    def test_sends_snapshot_commit(self, state):
        assert SyncProvider.commit_snapshot(state) is True
        assert state.sent == [(BackupEvent.SNAPSHOT_COMMIT, StatusCode.SUCCESS, "")]

    def test_base_start_not_implemented(self, state):
        with pytest.raises(NotImplementedError):
            SyncProvider().start(state)


class TestNullSyncProvider:
    def test_start_flushes_and_schedules_commit(self, state):
        provider = NullSyncProvider()
        with patch("vmbackup_ng.provider.null.os.sync") as mock_sync:
            assert provider.start(state) is True

        mock_sync.assert_called_once()
        assert state.current_op is None
        assert state.current_op_name == "NullStart"
        assert state.callback == provider.commit_snapshot

    def test_snapshot_done_succeeds(self, state):
        assert NullSyncProvider().snapshot_done(state) is True


class TestFreezableMounts:
    def test_filters_and_unescapes(self, tmp_path):
        mounts_file = tmp_path / "mounts"
        mounts_file.write_text(
            "/dev/sda1 / ext4 rw,relatime 0 0\n"
            "proc /proc proc rw 0 0\n"
            "tmpfs /tmp tmpfs rw 0 0\n"
            "/dev/sdb1 /srv/my\\040data xfs rw 0 0\n"
            "/dev/sda1 / ext4 rw,relatime 0 0\n"
            "garbage\n"
        )
        assert freezable_mounts(mounts_file) == ["/", "/srv/my data"]

    def test_missing_file(self, tmp_path):
        assert freezable_mounts(tmp_path / "missing") == []


class TestFsFreezeOp:
    def test_freeze_all(self, spawner):
        held = []
        op = FsFreezeOp("freeze", ["/a", "/b"], spawner, held)

        assert held == ["/a"]
        assert run_op(op) is OpStatus.FINISHED
        assert held == ["/a", "/b"]
        assert spawner.calls == [
            ["fsfreeze", "--freeze", "/a"],
            ["fsfreeze", "--freeze", "/b"],
        ]

    def test_freeze_stops_at_first_failure(self, spawner):
        spawner.failing_args.add("/b")
        held = []
        op = FsFreezeOp("freeze", ["/a", "/b", "/c"], spawner, held)

        assert run_op(op) is OpStatus.ERROR
        assert held == ["/a"]
        assert len(spawner.calls) == 2
        assert "/b" in op.error_message

    def test_freeze_launch_failure(self, spawner):
        spawner.launch_errors.add("fsfreeze")
        held = []
        op = FsFreezeOp("freeze", ["/a", "/b"], spawner, held)

        assert op.query_status() is OpStatus.ERROR
        assert held == []
        assert op.failed == ["/a"]

    def test_unfreeze_attempts_every_mount(self, spawner):
        """A failing unfreeze must not leave later mounts frozen."""
        spawner.failing_args.add("/b")
        held = ["/a", "/b"]
        op = FsFreezeOp("unfreeze", list(reversed(held)), spawner, held)

        assert run_op(op) is OpStatus.ERROR
        assert [argv[2] for argv in spawner.calls] == ["/b", "/a"]
        assert held == ["/b"]

    def test_cancel_kills_running_process(self, spawner):
        spawner.hang.add("fsfreeze")
        op = FsFreezeOp("freeze", ["/a"], spawner, [])

        assert op.query_status() is OpStatus.PENDING
        op.cancel()
        assert spawner.processes[0].killed
        assert op.query_status() is OpStatus.CANCELED
        op.release()
        assert spawner.processes[0].released

    def test_invalid_action(self, spawner):
        with pytest.raises(ValueError):
            FsFreezeOp("thaw", ["/a"], spawner, [])


class TestFsFreezeSyncProvider:
    def test_start_installs_freeze(self, state, spawner):
        provider = FsFreezeSyncProvider(spawner, mounts=["/a", "/b"], runner=MagicMock())
        assert provider.start(state) is True

        assert state.current_op_name == "FsFreeze"
        assert state.callback == provider.commit_snapshot
        assert run_op(state.current_op) is OpStatus.FINISHED
        assert provider.held == ["/a", "/b"]

    def test_start_discovers_mounts(self, state, spawner):
        provider = FsFreezeSyncProvider(spawner, runner=MagicMock())
        with patch(
            "vmbackup_ng.provider.fsfreeze.freezable_mounts", return_value=["/data"]
        ):
            provider.start(state)
        assert spawner.calls == [["fsfreeze", "--freeze", "/data"]]

    def test_start_without_mounts(self, state, spawner):
        provider = FsFreezeSyncProvider(spawner, runner=MagicMock())
        with patch("vmbackup_ng.provider.fsfreeze.freezable_mounts", return_value=[]):
            assert provider.start(state) is True

        assert state.current_op is None
        assert state.current_op_name == "FsFreezeNone"
        assert spawner.calls == []

    def test_start_with_operation_in_flight(self, state, spawner):
        runner = MagicMock(return_value=completed())
        provider = FsFreezeSyncProvider(spawner, mounts=["/a"], runner=runner)
        state.set_current_op(MagicMock(), None, "Other")

        assert provider.start(state) is False
        runner.assert_called_once_with(
            ["fsfreeze", "--unfreeze", "/a"], check=False, timeout=60
        )
        assert provider.held == []

    def test_snapshot_done_unfreezes_in_reverse(self, state, spawner):
        provider = FsFreezeSyncProvider(spawner, mounts=["/a", "/b"], runner=MagicMock())
        provider.start(state)
        run_op(state.current_op)
        state.current_op = None

        assert provider.snapshot_done(state) is True
        assert state.current_op_name == "FsThaw"
        assert run_op(state.current_op) is OpStatus.FINISHED
        assert [argv[1:] for argv in spawner.calls[2:]] == [
            ["--unfreeze", "/b"],
            ["--unfreeze", "/a"],
        ]
        assert provider.held == []

    def test_snapshot_done_with_nothing_held(self, state, spawner):
        provider = FsFreezeSyncProvider(spawner, runner=MagicMock())
        assert provider.snapshot_done(state) is True
        assert state.current_op is None

    def test_abort_thaws_synchronously(self, state, spawner):
        runner = MagicMock(return_value=completed())
        provider = FsFreezeSyncProvider(spawner, runner=runner, binary="/sbin/fsfreeze")
        provider.held.extend(["/a", "/b"])

        provider.abort(state)

        assert [c.args[0] for c in runner.call_args_list] == [
            ["/sbin/fsfreeze", "--unfreeze", "/b"],
            ["/sbin/fsfreeze", "--unfreeze", "/a"],
        ]
        assert provider.held == []

    def test_thaw_now_keeps_failed_mounts(self, spawner):
        runner = MagicMock(side_effect=[completed(1), subprocess.TimeoutExpired("fsfreeze", 60)])
        provider = FsFreezeSyncProvider(spawner, runner=runner)
        provider.held.extend(["/a", "/b"])

        assert provider.thaw_now() is False
        assert provider.held == ["/a", "/b"]

    def test_release_thaws_held_mounts(self, spawner):
        runner = MagicMock(return_value=completed())
        provider = FsFreezeSyncProvider(spawner, runner=runner)
        provider.release()
        runner.assert_not_called()

        provider.held.append("/a")
        provider.release()
        runner.assert_called_once()
        assert provider.held == []


class TestChooseProvider:
    @pytest.fixture(autouse=True)
    def _patch_env(self):
        with patch("vmbackup_ng.provider.shutil.which") as mock_which, patch(
            "vmbackup_ng.provider.os.geteuid"
        ) as mock_euid:
            mock_which.return_value = "/usr/sbin/fsfreeze"
            mock_euid.return_value = 0
            self.which = mock_which
            self.geteuid = mock_euid
            yield

    def test_auto_picks_fsfreeze_as_root(self, settings, spawner):
        settings.sync_provider = "auto"
        provider = choose_provider(settings, spawner)
        assert isinstance(provider, FsFreezeSyncProvider)
        assert provider.binary == "/usr/sbin/fsfreeze"

    def test_auto_without_root(self, settings, spawner):
        settings.sync_provider = "auto"
        self.geteuid.return_value = 1000
        assert isinstance(choose_provider(settings, spawner), NullSyncProvider)

    def test_auto_without_binary(self, settings, spawner):
        settings.sync_provider = "auto"
        self.which.return_value = None
        assert isinstance(choose_provider(settings, spawner), NullSyncProvider)

    def test_auto_with_sync_driver_disabled(self, settings, spawner):
        settings.sync_provider = "auto"
        settings.enable_sync_driver = False
        assert isinstance(choose_provider(settings, spawner), NullSyncProvider)

    def test_explicit_fsfreeze_passes_mounts(self, settings, spawner):
        settings.sync_provider = "fsfreeze"
        settings.freeze_mounts = ["/srv"]
        self.which.return_value = None
        provider = choose_provider(settings, spawner)
        assert provider.mounts == ["/srv"]
        assert provider.binary == "fsfreeze"

    def test_explicit_null(self, settings, spawner):
        assert isinstance(choose_provider(settings, spawner), NullSyncProvider)

    def test_unknown_provider(self, settings, spawner):
        settings.sync_provider = "vss"
        with pytest.raises(ValueError, match="vss"):
            choose_provider(settings, spawner)
