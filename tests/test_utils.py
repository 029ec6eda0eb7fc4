"""Tests for nixvm.utils module."""

from __future__ import annotations

import os
import stat
import subprocess
from unittest.mock import patch

import pytest

from nixvm.exceptions import InvalidDiskSizeError
from nixvm.utils import (
    atomic_write_text,
    ensure_directory,
    get_env,
    log,
    parse_disk_size,
    run,
    set_verbose,
)


class TestLog:
    def test_info_goes_to_stderr(self, capsys):
        log("INFO", "test message")
        captured = capsys.readouterr()
        assert "[INFO]" in captured.err
        assert "test message" in captured.err
        assert captured.out == ""

    def test_debug_suppressed_by_default(self, capsys):
        log("DEBUG", "should not appear")
        assert capsys.readouterr().err == ""

    def test_debug_shown_when_verbose(self, capsys):
        set_verbose(True)
        log("DEBUG", "details")
        assert "details" in capsys.readouterr().err


class TestGetEnv:
    def test_returns_value(self, monkeypatch):
        monkeypatch.setenv("TEST_VAR", "hello")
        assert get_env("TEST_VAR") == "hello"

    def test_returns_default(self, monkeypatch):
        monkeypatch.delenv("TEST_VAR", raising=False)
        assert get_env("TEST_VAR", "fallback") == "fallback"


class TestParseDiskSize:
    @pytest.mark.parametrize(
        "raw, expected",
        [
            ("100G", 100 * 1024**3),
            ("512m", 512 * 1024**2),
            ("1T", 1024**4),
            ("4k", 4096),
            ("1024", 1024),
            (" 2G ", 2 * 1024**3),
        ],
    )
    def test_valid_sizes(self, raw, expected):
        assert parse_disk_size(raw) == expected

    @pytest.mark.parametrize("raw", ["0G", "", "abc", "100X", "-1G", "1.5G", "G", "0", "１G"])
    def test_invalid_sizes(self, raw):
        with pytest.raises(InvalidDiskSizeError) as exc:
            parse_disk_size(raw)
        assert "Invalid disk size format" in str(exc.value)


class TestEnsureDirectory:
    def test_creates_with_mode(self, tmp_path):
        target = tmp_path / "a" / "b"
        ensure_directory(target, mode=0o700)
        assert target.is_dir()
        assert stat.S_IMODE(target.stat().st_mode) == 0o700

    def test_existing_directory_left_alone(self, tmp_path):
        target = tmp_path / "existing"
        target.mkdir()
        os.chmod(target, 0o755)
        ensure_directory(target, mode=0o700)
        assert stat.S_IMODE(target.stat().st_mode) == 0o755


class TestAtomicWriteText:
    def test_writes_content_and_mode(self, tmp_path):
        target = tmp_path / "record"
        atomic_write_text(target, "192.168.64.2", mode=0o644)
        assert target.read_text() == "192.168.64.2"
        assert stat.S_IMODE(target.stat().st_mode) == 0o644
        assert [p.name for p in tmp_path.iterdir()] == ["record"]

    def test_replaces_existing(self, tmp_path):
        target = tmp_path / "record"
        target.write_text("old")
        atomic_write_text(target, "new")
        assert target.read_text() == "new"


class TestRun:
    def test_passes_through_to_subprocess(self):
        completed = subprocess.CompletedProcess(args=["true"], returncode=0, stdout="", stderr="")
        with patch("nixvm.utils.subprocess.run", return_value=completed) as mock_run:
            result = run(["true"], check=False)
        assert result is completed
        mock_run.assert_called_once_with(["true"], check=False, text=True)
