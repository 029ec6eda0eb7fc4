"""Global constants and path configuration for nixvm."""

from __future__ import annotations

import os
from pathlib import Path

APP_NAME = "nixvm"

_XDG_DATA_HOME = os.environ.get("XDG_DATA_HOME") or str(Path.home() / ".local" / "share")
_XDG_CONFIG_HOME = os.environ.get("XDG_CONFIG_HOME") or str(Path.home() / ".config")
DEFAULT_STATE_DIR = Path(os.environ.get("NIXVM_STATE_DIR") or Path(_XDG_DATA_HOME) / APP_NAME)
DEFAULT_CONFIG_PATH = Path(_XDG_CONFIG_HOME) / APP_NAME / "config.yaml"

LIBVIRT_URI = os.environ.get("LIBVIRT_URI", "qemu:///session")
LIBVIRT_NETWORK = os.environ.get("NIXVM_LIBVIRT_NETWORK", "default")
DOMAIN_NAME = APP_NAME

# Host lease registry written by the vmnet/bootpd DHCP server on macOS.
# Elsewhere leases come from the libvirt network unless a file is forced.
BOOTPD_LEASES_PATH = Path("/var/db/dhcpd_leases")
LEASES_FILE_OVERRIDE = os.environ.get("NIXVM_LEASES_FILE")
# dnsmasq only reports expiry; issue time = expiry - lease length.
DEFAULT_DHCP_LEASE_SECONDS = int(os.environ.get("NIXVM_DHCP_LEASE_TIME", "3600"))
NIX_STORE_PATH = Path("/nix/store")
ROSETTA_RUNTIME_DIR = Path(
    os.environ.get("NIXVM_ROSETTA_DIR", "/Library/Apple/usr/libexec/oah/RosettaLinux")
)

TRUTHY = {"1", "true", "yes", "on"}
_LOG_VERBOSE = os.environ.get("LOG_VERBOSE", "").lower() in TRUTHY

# Cross-boundary contract with the guest image. The guest's NixOS
# configuration mounts these tags, sets this hostname and trusts this user;
# changing any of them requires rebuilding the guest image.
NIX_STORE_TAG = "nix-store"
ROSETTA_TAG = "rosetta"
SSH_KEYS_TAG = "ssh-keys"
GUEST_HOSTNAME = "nixvm-guest"
GUEST_USER = "builder"
# "02" = locally administered unicast; fixed so ARP can confirm the lease.
GUEST_MAC_ADDRESS = "02:da:72:56:00:01"
GUEST_SSH_PORT = 22
KERNEL_CMDLINE = "console=hvc0 root=/dev/vda"

# State directory layout.
DISK_IMAGE_NAME = "disk.img"
PID_FILE_NAME = "vm.pid"
CONSOLE_LOG_NAME = "console.log"
GUEST_IP_FILE_NAME = "guest-ip"
SSH_DIR_NAME = "ssh"
SSH_KEY_NAME = "id_ed25519"
KNOWN_HOSTS_NAME = "known_hosts"
SSH_KEY_COMMENT = f"{GUEST_USER}@{APP_NAME}"

# Resource defaults and limits.
DEFAULT_CORES = 4
DEFAULT_MEMORY_MB = 8192
DEFAULT_DISK_SIZE = "100G"
MIN_CORES = 1
MIN_MEMORY_MB = 512
HYPERVISOR_MIN_MEMORY_BYTES = 128 * 1024 * 1024

DISK_SIZE_SUFFIXES = {
    "T": 1024**4,
    "G": 1024**3,
    "M": 1024**2,
    "K": 1024,
}

# Timeouts and polling intervals, in seconds.
DISCOVERY_TIMEOUT = 120.0
DISCOVERY_INTERVAL = 0.5
IDLE_CHECK_INTERVAL = 30.0
GUEST_SHUTDOWN_TIMEOUT = 20.0
STOP_GRACEFUL_WAIT = 30.0
STOP_FORCE_WAIT = 2.0
STOP_POLL_INTERVAL = 0.1
SUBPROCESS_TIMEOUT = 10.0

CONFIG_FILE_KEYS = {
    "cores",
    "memory",
    "disk_size",
    "kernel",
    "initrd",
    "system",
    "rosetta",
    "require_rosetta",
    "share_nix_store",
    "idle_timeout",
    "state_dir",
}
