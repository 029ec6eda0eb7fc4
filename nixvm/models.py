"""Data models for nixvm."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Dict, List, NamedTuple, Optional

from nixvm.constants import (
    CONSOLE_LOG_NAME,
    DEFAULT_CORES,
    DEFAULT_DISK_SIZE,
    DEFAULT_MEMORY_MB,
    DEFAULT_STATE_DIR,
    DISK_IMAGE_NAME,
    GUEST_IP_FILE_NAME,
    KNOWN_HOSTS_NAME,
    PID_FILE_NAME,
    SSH_DIR_NAME,
    SSH_KEY_NAME,
)


class VMState(Enum):
    STOPPED = "stopped"
    STARTING = "starting"
    RUNNING = "running"
    STOPPING = "stopping"
    FAILED = "failed"


class LeaseEntry(NamedTuple):
    hostname: Optional[str]
    ip_address: Optional[str]
    hw_address: Optional[str]
    timestamp: int  # issue time (Unix seconds), 0 when unknown


@dataclass(frozen=True)
class StatePaths:
    """Every file the orchestrator keeps under its state directory."""

    state_dir: Path

    @property
    def disk_image(self) -> Path:
        return self.state_dir / DISK_IMAGE_NAME

    @property
    def pid_file(self) -> Path:
        return self.state_dir / PID_FILE_NAME

    @property
    def console_log(self) -> Path:
        return self.state_dir / CONSOLE_LOG_NAME

    @property
    def guest_ip_file(self) -> Path:
        return self.state_dir / GUEST_IP_FILE_NAME

    @property
    def ssh_dir(self) -> Path:
        return self.state_dir / SSH_DIR_NAME

    @property
    def ssh_key(self) -> Path:
        return self.ssh_dir / SSH_KEY_NAME

    @property
    def ssh_public_key(self) -> Path:
        return self.ssh_dir / f"{SSH_KEY_NAME}.pub"

    @property
    def known_hosts(self) -> Path:
        return self.ssh_dir / KNOWN_HOSTS_NAME


@dataclass(frozen=True)
class VMConfig:
    kernel: Path
    initrd: Path
    system: Optional[Path] = None
    cores: int = DEFAULT_CORES
    memory_mb: int = DEFAULT_MEMORY_MB
    disk_size: str = DEFAULT_DISK_SIZE
    state_dir: Path = DEFAULT_STATE_DIR
    rosetta: bool = True
    rosetta_required: bool = False
    share_nix_store: bool = True
    idle_timeout: int = 0  # minutes, 0 disables

    @property
    def paths(self) -> StatePaths:
        return StatePaths(self.state_dir)


@dataclass(frozen=True)
class DirectoryShare:
    tag: str
    source: Path
    readonly: bool = True


@dataclass
class MachineSpec:
    """Hypervisor-neutral description of the guest to boot."""

    kernel: Path
    initrd: Path
    cmdline: str
    cpus: int
    memory_bytes: int
    disk_image: Path
    mac_address: str
    console_log: Path
    console_interactive: bool = False
    shares: List[DirectoryShare] = field(default_factory=list)


@dataclass
class StatusReport:
    running: bool
    pid: Optional[int]
    state_directory: Path

    def to_dict(self) -> Dict[str, object]:
        return {
            "running": self.running,
            "pid": self.pid if self.running else None,
            "stateDirectory": str(self.state_directory),
        }
