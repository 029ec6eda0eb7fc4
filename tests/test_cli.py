"""Tests for nixvm.cli module."""

from __future__ import annotations

import argparse
import json
import os
import signal
from unittest.mock import MagicMock, call, patch

import pytest

from nixvm import cli
from nixvm.exceptions import HypervisorError, ManagerError
from nixvm.models import StatePaths


@pytest.fixture(autouse=True)
def no_config_file(monkeypatch, tmp_path):
    monkeypatch.setenv("NIXVM_CONFIG", str(tmp_path / "no-config.yaml"))


@pytest.fixture
def paths(tmp_path) -> StatePaths:
    state = tmp_path / "state"
    state.mkdir()
    return StatePaths(state)


class TestParser:
    def test_start_options(self):
        args = cli.build_parser().parse_args(
            [
                "start",
                "--cores",
                "6",
                "--memory",
                "4096",
                "--disk-size",
                "50G",
                "--kernel",
                "/k",
                "--initrd",
                "/i",
                "--no-rosetta",
                "--require-rosetta",
                "--idle-timeout",
                "15",
            ]
        )
        assert (args.cores, args.memory, args.disk_size) == (6, 4096, "50G")
        assert args.rosetta is False
        assert args.require_rosetta is True
        assert args.share_nix_store is None
        assert args.idle_timeout == 15
        assert args.handler is cli.run_start

    def test_unset_flags_defer_to_config(self):
        args = cli.build_parser().parse_args(["start"])
        assert args.rosetta is None
        assert args.require_rosetta is None
        assert args.cores is None

    def test_ssh_collects_remaining_args(self, tmp_path):
        args = cli.build_parser().parse_args(["ssh", "--state-dir", str(tmp_path), "uname", "-a"])
        assert args.extra == ["uname", "-a"]
        assert args.state_dir == str(tmp_path)

    def test_command_required(self):
        with pytest.raises(SystemExit):
            cli.build_parser().parse_args([])


class TestResolveStatePaths:
    def test_flag_wins(self, tmp_path):
        assert cli.resolve_state_paths(str(tmp_path), None).state_dir == tmp_path

    def test_from_config_file(self, tmp_path):
        config = tmp_path / "config.yaml"
        config.write_text(f"state_dir: {tmp_path / 'custom'}\n")
        assert cli.resolve_state_paths(None, str(config)).state_dir == tmp_path / "custom"

    def test_default(self):
        assert cli.resolve_state_paths(None, None).state_dir == cli.DEFAULT_STATE_DIR


class TestStart:
    def _args(self, tmp_path):
        images = tmp_path / "images"
        images.mkdir(exist_ok=True)
        (images / "kernel").write_bytes(b"")
        (images / "initrd").write_bytes(b"")
        return [
            "start",
            "--state-dir",
            str(tmp_path / "state"),
            "--kernel",
            str(images / "kernel"),
            "--initrd",
            str(images / "initrd"),
        ]

    def test_runs_lifecycle_and_returns_status(self, tmp_path):
        manager = MagicMock()
        manager.wait_until_stopped.return_value = 3
        with patch("nixvm.cli.create_hypervisor") as mock_create, patch(
            "nixvm.cli.VMManager", return_value=manager
        ) as mock_manager:
            assert cli.main(self._args(tmp_path)) == 3
        cfg = mock_manager.call_args[0][0]
        assert cfg.state_dir == tmp_path / "state"
        assert mock_manager.call_args[0][1] is mock_create.return_value
        assert manager.method_calls == [
            call.install_signal_handlers(),
            call.start(),
            call.discover_guest_ip(),
            call.wait_until_stopped(),
            call.restore_signal_handlers(),
            call.close(),
        ]

    def test_start_failure_returns_one(self, tmp_path, capsys):
        manager = MagicMock()
        manager.start.side_effect = HypervisorError("Failed to start virtual machine: boom")
        with patch("nixvm.cli.create_hypervisor"), patch("nixvm.cli.VMManager", return_value=manager):
            assert cli.main(self._args(tmp_path)) == 1
        manager.close.assert_called_once_with()
        manager.restore_signal_handlers.assert_called_once_with()
        assert "[ERROR]" in capsys.readouterr().err

    def test_missing_kernel_flag(self, tmp_path, capsys):
        assert cli.main(["start", "--state-dir", str(tmp_path)]) == 1
        assert "kernel image is required" in capsys.readouterr().err

    def test_config_file_supplies_values(self, tmp_path):
        images = tmp_path / "images"
        images.mkdir()
        (images / "kernel").write_bytes(b"")
        (images / "initrd").write_bytes(b"")
        config = tmp_path / "config.yaml"
        config.write_text(f"kernel: {images / 'kernel'}\ninitrd: {images / 'initrd'}\ncores: 3\n")
        manager = MagicMock()
        manager.wait_until_stopped.return_value = 0
        with patch("nixvm.cli.create_hypervisor"), patch("nixvm.cli.VMManager", return_value=manager) as mock_manager:
            assert cli.main(["start", "--config", str(config), "--memory", "2048"]) == 0
        cfg = mock_manager.call_args[0][0]
        assert cfg.cores == 3
        assert cfg.memory_mb == 2048

    def test_verbose_enables_debug(self, tmp_path):
        manager = MagicMock()
        manager.wait_until_stopped.return_value = 0
        with patch("nixvm.cli.create_hypervisor"), patch(
            "nixvm.cli.VMManager", return_value=manager
        ) as mock_manager, patch("nixvm.cli.set_verbose") as mock_verbose:
            cli.main(self._args(tmp_path) + ["--verbose"])
        mock_verbose.assert_called_once_with(True)
        assert mock_manager.call_args[1]["verbose"] is True


class TestStatus:
    def test_stopped(self, paths, capsys):
        assert cli.main(["status", "--state-dir", str(paths.state_dir)]) == 0
        out = capsys.readouterr().out
        assert "VM Status: Stopped" in out
        assert "PID:" not in out
        assert f"State Directory: {paths.state_dir}" in out

    def test_running(self, paths, capsys):
        paths.pid_file.write_text(str(os.getpid()))
        cli.main(["status", "--state-dir", str(paths.state_dir)])
        out = capsys.readouterr().out
        assert "VM Status: Running" in out
        assert f"PID: {os.getpid()}" in out

    def test_json(self, paths, capsys):
        paths.pid_file.write_text(str(os.getpid()))
        cli.main(["status", "--json", "--state-dir", str(paths.state_dir)])
        out = capsys.readouterr().out
        assert json.loads(out) == {"pid": os.getpid(), "running": True, "stateDirectory": str(paths.state_dir)}
        assert out.index('"pid"') < out.index('"running"') < out.index('"stateDirectory"')

    def test_stale_marker_removed(self, paths, capsys):
        paths.pid_file.write_text("0")
        cli.main(["status", "--json", "--state-dir", str(paths.state_dir)])
        assert json.loads(capsys.readouterr().out)["running"] is False
        assert not paths.pid_file.exists()


class TestStop:
    def test_nothing_running(self, paths):
        with patch("nixvm.cli.log") as mock_log:
            assert cli.stop_instance(paths) == 0
        mock_log.assert_called_once_with("INFO", "No VM is running.")

    def test_stale_marker(self, paths):
        paths.pid_file.write_text("999999")
        with patch("nixvm.cli.is_process_running", return_value=False):
            assert cli.stop_instance(paths) == 0
        assert not paths.pid_file.exists()

    def test_graceful_sends_sigterm(self, paths):
        paths.pid_file.write_text("4242")
        with patch("nixvm.cli.is_process_running", return_value=True), patch("nixvm.cli.os.kill") as mock_kill, patch(
            "nixvm.cli.wait_for_exit", return_value=True
        ) as mock_wait:
            assert cli.stop_instance(paths) == 0
        mock_kill.assert_called_once_with(4242, signal.SIGTERM)
        mock_wait.assert_called_once_with(4242, 30.0)
        assert paths.pid_file.exists()

    def test_force_sends_sigkill_and_cleans_up(self, paths):
        paths.pid_file.write_text("4242")
        with patch("nixvm.cli.is_process_running", return_value=True), patch("nixvm.cli.os.kill") as mock_kill, patch(
            "nixvm.cli.wait_for_exit", return_value=True
        ) as mock_wait:
            cli.stop_instance(paths, force=True)
        mock_kill.assert_called_once_with(4242, signal.SIGKILL)
        mock_wait.assert_called_once_with(4242, 2.0)
        assert not paths.pid_file.exists()

    def test_outlives_window(self, paths):
        paths.pid_file.write_text("4242")
        with patch("nixvm.cli.is_process_running", return_value=True), patch("nixvm.cli.os.kill"), patch(
            "nixvm.cli.wait_for_exit", return_value=False
        ), patch("nixvm.cli.log") as mock_log:
            assert cli.stop_instance(paths) == 0
        level, message = mock_log.call_args[0]
        assert level == "WARN"
        assert "stop --force" in message

    def test_signal_failure(self, paths, capsys):
        paths.pid_file.write_text("4242")
        with patch("nixvm.cli.is_process_running", return_value=True), patch(
            "nixvm.cli.os.kill", side_effect=PermissionError(1, "Operation not permitted")
        ):
            assert cli.main(["stop", "--state-dir", str(paths.state_dir)]) == 1
        assert "Operation not permitted" in capsys.readouterr().err

    def test_wait_for_exit_polls(self):
        with patch("nixvm.cli.is_process_running", side_effect=[True, True, False]), patch(
            "nixvm.cli.time.sleep"
        ) as mock_sleep:
            assert cli.wait_for_exit(4242, timeout=5.0) is True
        assert mock_sleep.call_count == 2
        mock_sleep.assert_called_with(0.1)


class TestSSH:
    def test_requires_running_vm(self, paths, capsys):
        with patch("nixvm.cli.connect_ssh") as mock_connect:
            assert cli.main(["ssh", "--state-dir", str(paths.state_dir)]) == 1
        mock_connect.assert_not_called()
        assert "No virtual machine is currently running" in capsys.readouterr().err

    def test_passes_extra_args(self, paths):
        paths.pid_file.write_text(str(os.getpid()))
        with patch("nixvm.cli.connect_ssh") as mock_connect:
            cli.main(["ssh", "--state-dir", str(paths.state_dir), "uname", "-a"])
        assert mock_connect.call_args[0][1] == ["uname", "-a"]

    def test_strips_separator(self, paths):
        paths.pid_file.write_text(str(os.getpid()))
        args = argparse.Namespace(state_dir=str(paths.state_dir), config=None, extra=["--", "-v"])
        with patch("nixvm.cli.connect_ssh") as mock_connect:
            cli.run_ssh(args)
        assert mock_connect.call_args[0][1] == ["-v"]


class TestMain:
    def test_manager_error(self, paths, capsys):
        with patch("nixvm.cli.collect_status", side_effect=ManagerError("bad things")):
            assert cli.main(["status", "--state-dir", str(paths.state_dir)]) == 1
        assert "bad things" in capsys.readouterr().err

    def test_unexpected_error(self, paths, capsys):
        with patch("nixvm.cli.collect_status", side_effect=ValueError("oops")):
            assert cli.main(["status", "--state-dir", str(paths.state_dir)]) == 1
        err = capsys.readouterr().err
        assert "Unexpected error: oops" in err
        assert "Traceback" in err
