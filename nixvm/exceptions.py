"""Custom exceptions for nixvm."""

from __future__ import annotations

from pathlib import Path
from typing import Optional


class ManagerError(RuntimeError):
    """Raised on unrecoverable configuration or runtime errors."""


class ConfigError(ManagerError):
    """Invalid resource values, missing images or bad disk-size grammar."""


class InvalidCoreCountError(ConfigError):
    def __init__(self, cores: int) -> None:
        super().__init__(f"Invalid CPU core count: {cores}. Must be at least 1.")
        self.cores = cores


class InsufficientMemoryError(ConfigError):
    def __init__(self, memory_mb: int) -> None:
        super().__init__(f"Insufficient memory: {memory_mb} MB. Must be at least 512 MB.")
        self.memory_mb = memory_mb


class ImageNotFoundError(ConfigError):
    def __init__(self, kind: str, path: Path, hint: Optional[str] = None) -> None:
        message = f"{kind.capitalize()} image not found at: {path}"
        if hint:
            message += f"\n  Hint: {hint}"
        super().__init__(message)
        self.kind = kind
        self.path = path


class InvalidDiskSizeError(ConfigError):
    def __init__(self, size: str) -> None:
        super().__init__(f"Invalid disk size format: '{size}'. Use format like '100G', '512M', or bytes.")
        self.size = size


class StateDirectoryError(ConfigError):
    pass


class ConfigFileError(ConfigError):
    pass


class VMAlreadyRunningError(ManagerError):
    def __init__(self, pid: int) -> None:
        super().__init__(f"A VM is already running (PID: {pid}). Stop it first with 'nixvm stop'.")
        self.pid = pid


class VMNotRunningError(ManagerError):
    def __init__(self) -> None:
        super().__init__("No virtual machine is currently running.")


class ProvisioningError(ManagerError):
    """Key generation or disk image creation failed."""


class SSHKeyGenerationError(ProvisioningError):
    def __init__(self, status: int) -> None:
        super().__init__(f"SSH key generation failed with exit code: {status}")
        self.status = status


class DiskImageError(ProvisioningError):
    def __init__(self, reason: str) -> None:
        super().__init__(f"Failed to create disk image: {reason}")


class HypervisorError(ManagerError):
    """The hypervisor rejected the configuration or failed to run the guest."""


class DirectoryShareError(HypervisorError):
    pass


class GuestIPNotFoundError(ManagerError):
    def __init__(self) -> None:
        super().__init__("Could not discover guest VM IP address. Is the VM running?")


class SSHError(ManagerError):
    pass


class SSHKeyNotFoundError(SSHError):
    def __init__(self, path: Path) -> None:
        super().__init__(f"SSH key not found at: {path}")
        self.path = path


class SSHConnectionError(SSHError):
    def __init__(self, status: int) -> None:
        super().__init__(f"SSH connection failed with exit code: {status}")
        self.status = status
