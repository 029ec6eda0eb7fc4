"""PID marker handling: at most one live orchestrator per state directory."""

from __future__ import annotations

import os
from pathlib import Path
from typing import Optional

from nixvm.exceptions import ManagerError, VMAlreadyRunningError
from nixvm.utils import atomic_write_text, log


def read_pid(pid_file: Path) -> Optional[int]:
    try:
        content = pid_file.read_text()
    except OSError:
        return None
    try:
        return int(content.strip())
    except ValueError:
        return None


def is_process_running(pid: int) -> bool:
    """Probe with signal 0; permission errors count as not running."""
    if pid <= 0:
        return False
    try:
        os.kill(pid, 0)
    except OSError:
        return False
    return True


def write_pid(pid_file: Path, pid: Optional[int] = None) -> None:
    value = os.getpid() if pid is None else pid
    try:
        atomic_write_text(pid_file, f"{value}")
    except OSError as exc:
        raise ManagerError(f"Failed to write PID file: {exc}") from exc


def remove_pid(pid_file: Path) -> None:
    try:
        pid_file.unlink(missing_ok=True)
    except OSError as exc:
        log("WARN", f"Failed to remove PID file {pid_file}: {exc}")


def running_pid(pid_file: Path) -> Optional[int]:
    """Return the recorded PID only if that process is still alive."""
    pid = read_pid(pid_file)
    if pid is not None and is_process_running(pid):
        return pid
    return None


def ensure_not_running(pid_file: Path) -> None:
    pid = running_pid(pid_file)
    if pid is not None:
        raise VMAlreadyRunningError(pid)
