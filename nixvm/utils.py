"""Utility functions for nixvm."""

from __future__ import annotations

import os
import subprocess
import sys
import tempfile
from pathlib import Path
from typing import List, Optional

from nixvm import constants
from nixvm.constants import DISK_SIZE_SUFFIXES
from nixvm.exceptions import InvalidDiskSizeError

_verbose = constants._LOG_VERBOSE


def set_verbose(enabled: bool) -> None:
    global _verbose
    _verbose = enabled


def log(level: str, message: str) -> None:
    """Lightweight structured logging; stdout is left to command output."""
    if level == "DEBUG" and not _verbose:
        return
    colours = {
        "INFO": "\033[0;34m",
        "WARN": "\033[1;33m",
        "ERROR": "\033[0;31m",
        "SUCCESS": "\033[0;32m",
        "DEBUG": "\033[0;90m",
    }
    colour = colours.get(level, "")
    reset = "\033[0m" if colour else ""
    print(f"{colour}[{level}]{reset} {message}", file=sys.stderr, flush=True)


def get_env(name: str, default: Optional[str] = None) -> Optional[str]:
    return os.environ.get(name, default)


def parse_disk_size(raw: str) -> int:
    """Convert '100G', '512m' or a plain byte count into bytes.

    The number must be a positive decimal integer; anything else, including
    zero, raises InvalidDiskSizeError.
    """
    trimmed = raw.strip()
    if not trimmed:
        raise InvalidDiskSizeError(raw)
    multiplier = 1
    number = trimmed
    suffix = trimmed[-1].upper()
    if suffix in DISK_SIZE_SUFFIXES:
        multiplier = DISK_SIZE_SUFFIXES[suffix]
        number = trimmed[:-1]
    if not number.isascii() or not number.isdigit():
        raise InvalidDiskSizeError(raw)
    value = int(number)
    if value <= 0:
        raise InvalidDiskSizeError(raw)
    return value * multiplier


def kvm_available() -> bool:
    """Return True if /dev/kvm exists and can be opened."""
    kvm_path = Path("/dev/kvm")
    if not kvm_path.exists():
        return False
    try:
        fd = os.open(kvm_path, os.O_RDONLY)
    except OSError:
        return False
    else:
        os.close(fd)
        return True


def has_controlling_tty() -> bool:
    """Return True if stdin is attached to a TTY."""
    try:
        return sys.stdin.isatty()
    except (AttributeError, ValueError):
        return False


def ensure_directory(path: Path, mode: Optional[int] = None) -> None:
    """Create path if missing; mode applies to the leaf only when it is created."""
    if path.is_dir():
        return
    path.mkdir(parents=True, exist_ok=True)
    if mode is not None:
        os.chmod(path, mode)


def atomic_write_text(path: Path, content: str, mode: Optional[int] = None) -> None:
    """Write content to a temp file next to path, then rename it into place."""
    with tempfile.NamedTemporaryFile("w", delete=False, dir=path.parent, prefix=f".{path.name}.") as tmp:
        tmp_path = Path(tmp.name)
        try:
            tmp.write(content)
            tmp.flush()
            os.fsync(tmp.fileno())
        except Exception:
            tmp_path.unlink(missing_ok=True)
            raise
    try:
        if mode is not None:
            os.chmod(tmp_path, mode)
        tmp_path.replace(path)
    except Exception:
        tmp_path.unlink(missing_ok=True)
        raise


def run(cmd: List[str], check: bool = True, **kwargs) -> subprocess.CompletedProcess:
    """Run command with logging."""
    log("DEBUG", f"Running: {' '.join(cmd)}")
    result = subprocess.run(cmd, check=check, text=True, **kwargs)
    return result
