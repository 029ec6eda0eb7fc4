"""SSH key provisioning and the interactive remote shell."""

from __future__ import annotations

import os
import shutil
import subprocess
from typing import List, NoReturn, Optional

from nixvm.constants import GUEST_USER, SSH_KEY_COMMENT
from nixvm.discovery import read_guest_ip
from nixvm.exceptions import SSHConnectionError, SSHKeyGenerationError, SSHKeyNotFoundError
from nixvm.models import StatePaths
from nixvm.utils import ensure_directory, log, run


def ensure_ssh_keys(paths: StatePaths) -> None:
    """Generate the ed25519 keypair once; existing keys are never replaced."""
    ensure_directory(paths.ssh_dir, mode=0o700)
    if paths.ssh_key.exists():
        return
    log("INFO", f"Generating SSH key pair in {paths.ssh_dir}")
    try:
        result = run(
            ["ssh-keygen", "-q", "-f", str(paths.ssh_key), "-t", "ed25519", "-N", "", "-C", SSH_KEY_COMMENT],
            check=False,
            stdout=subprocess.DEVNULL,
            stderr=subprocess.DEVNULL,
        )
    except OSError as exc:
        raise SSHKeyGenerationError(127) from exc
    if result.returncode != 0:
        raise SSHKeyGenerationError(result.returncode)


def build_ssh_command(paths: StatePaths, guest_ip: str, extra_args: List[str]) -> List[str]:
    return [
        shutil.which("ssh") or "/usr/bin/ssh",
        "-i",
        str(paths.ssh_key),
        "-o",
        "StrictHostKeyChecking=accept-new",
        "-o",
        f"UserKnownHostsFile={paths.known_hosts}",
        "-o",
        "LogLevel=ERROR",
        f"{GUEST_USER}@{guest_ip}",
        *extra_args,
    ]


class ProcessReplacer:
    """Replaces the current process image; only returns by raising."""

    def replace(self, argv: List[str]) -> NoReturn:
        os.execv(argv[0], argv)
        raise AssertionError("execv returned")  # pragma: no cover


def connect_ssh(paths: StatePaths, extra_args: List[str], replacer: Optional[ProcessReplacer] = None) -> NoReturn:
    """exec ssh so the session owns the terminal; its exit code becomes ours."""
    if not paths.ssh_key.exists():
        raise SSHKeyNotFoundError(paths.ssh_key)
    guest_ip = read_guest_ip(paths.guest_ip_file)
    argv = build_ssh_command(paths, guest_ip, extra_args)
    log("DEBUG", f"exec: {' '.join(argv)}")
    try:
        (replacer or ProcessReplacer()).replace(argv)
    except OSError as exc:
        raise SSHConnectionError(exc.errno or 1) from exc
