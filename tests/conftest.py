"""Shared test fixtures."""

from __future__ import annotations

from concurrent.futures import Future
from typing import Optional
from unittest.mock import MagicMock

import pytest

from nixvm import utils
from nixvm.hypervisor import Hypervisor
from nixvm.models import VMConfig

MIB = 1024 * 1024


def completed_future(exc: Optional[BaseException] = None) -> Future:
    future: Future = Future()
    if exc is None:
        future.set_result(None)
    else:
        future.set_exception(exc)
    return future


@pytest.fixture(autouse=True)
def reset_verbose():
    utils.set_verbose(False)
    yield
    utils.set_verbose(False)


@pytest.fixture
def boot_images(tmp_path):
    """A directory laid out like a guest build output."""
    images = tmp_path / "images"
    images.mkdir()
    (images / "kernel").write_bytes(b"kernel")
    (images / "initrd").write_bytes(b"initrd")
    return images


@pytest.fixture
def vm_config(tmp_path, boot_images) -> VMConfig:
    """Return a minimal VMConfig that needs no host shares."""
    return VMConfig(
        kernel=boot_images / "kernel",
        initrd=boot_images / "initrd",
        cores=2,
        memory_mb=1024,
        disk_size="1M",
        state_dir=tmp_path / "state",
        rosetta=False,
        share_nix_store=False,
    )


@pytest.fixture
def fake_hypervisor():
    """Hypervisor double whose requests are acknowledged immediately."""
    hypervisor = MagicMock(spec=Hypervisor)
    hypervisor.delegate = None
    hypervisor.cpu_count_range.return_value = (1, 8)
    hypervisor.memory_size_range.return_value = (128 * MIB, 16384 * MIB)
    hypervisor.start.side_effect = lambda spec: completed_future()
    hypervisor.request_graceful_stop.side_effect = lambda: completed_future()
    return hypervisor
