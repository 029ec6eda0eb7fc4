"""Directory shares exposed to the guest over virtiofs."""

from __future__ import annotations

import platform
import sys
from enum import Enum
from pathlib import Path
from typing import List, Optional

from nixvm.constants import NIX_STORE_PATH, NIX_STORE_TAG, ROSETTA_RUNTIME_DIR, ROSETTA_TAG, SSH_KEYS_TAG
from nixvm.exceptions import DirectoryShareError
from nixvm.models import DirectoryShare, VMConfig
from nixvm.utils import log


class TranslationAvailability(Enum):
    NOT_SUPPORTED = "not_supported"
    NOT_INSTALLED = "not_installed"
    INSTALLED = "installed"


def translation_layer_availability(runtime_dir: Path = ROSETTA_RUNTIME_DIR) -> TranslationAvailability:
    """Rosetta for Linux guests exists only on Apple Silicon macOS hosts."""
    if sys.platform != "darwin" or platform.machine().lower() not in {"arm64", "aarch64"}:
        return TranslationAvailability.NOT_SUPPORTED
    if not runtime_dir.is_dir():
        return TranslationAvailability.NOT_INSTALLED
    return TranslationAvailability.INSTALLED


def nix_store_share(store_path: Path = NIX_STORE_PATH) -> DirectoryShare:
    if not store_path.is_dir():
        raise DirectoryShareError(f"Failed to configure shared directory: {store_path} does not exist on host")
    return DirectoryShare(tag=NIX_STORE_TAG, source=store_path, readonly=True)


def rosetta_share(required: bool = False, runtime_dir: Path = ROSETTA_RUNTIME_DIR) -> Optional[DirectoryShare]:
    """Return the translation-layer share, or None when it is unavailable and optional."""
    availability = translation_layer_availability(runtime_dir)
    if availability is TranslationAvailability.NOT_SUPPORTED:
        if required:
            raise DirectoryShareError("Rosetta is not available on this platform (requires Apple Silicon).")
        log("WARN", "Rosetta is not supported on this platform. x86_64 builds will not be available.")
        return None
    if availability is TranslationAvailability.NOT_INSTALLED:
        if required:
            raise DirectoryShareError("Rosetta is not installed. Install with: softwareupdate --install-rosetta")
        log("WARN", "Rosetta is not installed. x86_64 builds will not be available.")
        log("WARN", "Install with: softwareupdate --install-rosetta")
        return None
    log("INFO", "Rosetta enabled for x86_64 binary execution.")
    return DirectoryShare(tag=ROSETTA_TAG, source=runtime_dir, readonly=True)


def ssh_keys_share(ssh_dir: Path) -> DirectoryShare:
    if not ssh_dir.is_dir():
        raise DirectoryShareError(f"Failed to configure shared directory: SSH directory does not exist: {ssh_dir}")
    return DirectoryShare(tag=SSH_KEYS_TAG, source=ssh_dir, readonly=True)


def build_directory_shares(cfg: VMConfig) -> List[DirectoryShare]:
    shares: List[DirectoryShare] = []
    if cfg.share_nix_store:
        shares.append(nix_store_share())
    if cfg.rosetta:
        share = rosetta_share(required=cfg.rosetta_required)
        if share is not None:
            shares.append(share)
    shares.append(ssh_keys_share(cfg.paths.ssh_dir))
    return shares
