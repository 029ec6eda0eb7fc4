"""Tests for nixvm.domain module."""

from __future__ import annotations

from pathlib import Path
from unittest.mock import patch
from xml.etree.ElementTree import fromstring

import pytest

from nixvm import domain
from nixvm.models import DirectoryShare, MachineSpec


@pytest.fixture
def spec(tmp_path) -> MachineSpec:
    return MachineSpec(
        kernel=Path("/boot/kernel"),
        initrd=Path("/boot/initrd"),
        cmdline="console=hvc0 root=/dev/vda init=/nix/store/abc-system/init",
        cpus=2,
        memory_bytes=2048 * 1024 * 1024,
        disk_image=tmp_path / "disk.img",
        mac_address="02:DA:72:56:00:01",
        console_log=tmp_path / "console.log",
        shares=[
            DirectoryShare("nix-store", Path("/nix/store")),
            DirectoryShare("ssh-keys", tmp_path / "ssh"),
        ],
    )


def _render(spec, kind="kvm"):
    with patch("nixvm.domain.domain_type", return_value=kind):
        return fromstring(domain.render_domain_xml(spec, name="nixvm", network="default"))


class TestDomainType:
    def test_darwin_uses_hvf(self):
        with patch("nixvm.domain.sys.platform", "darwin"):
            assert domain.domain_type() == "hvf"

    def test_kvm_when_available(self):
        with patch("nixvm.domain.sys.platform", "linux"), patch("nixvm.domain.kvm_available", return_value=True):
            assert domain.domain_type() == "kvm"

    def test_emulation_fallback(self):
        with patch("nixvm.domain.sys.platform", "linux"), patch("nixvm.domain.kvm_available", return_value=False):
            assert domain.domain_type() == "qemu"


class TestRenderDomainXml:
    def test_resources_and_boot(self, spec):
        root = _render(spec)
        assert root.get("type") == "kvm"
        assert root.findtext("name") == "nixvm"
        assert root.find("memory").get("unit") == "KiB"
        assert root.findtext("memory") == str(2048 * 1024)
        assert root.findtext("vcpu") == "2"
        assert root.findtext("os/kernel") == "/boot/kernel"
        assert root.findtext("os/initrd") == "/boot/initrd"
        assert root.findtext("os/cmdline").endswith("init=/nix/store/abc-system/init")
        assert root.findtext("on_poweroff") == "destroy"

    def test_disk_and_network(self, spec):
        root = _render(spec)
        disk = root.find("devices/disk")
        assert disk.find("source").get("file") == str(spec.disk_image)
        assert disk.find("target").get("dev") == "vda"
        iface = root.find("devices/interface")
        assert iface.find("source").get("network") == "default"
        assert iface.find("mac").get("address") == "02:da:72:56:00:01"
        assert root.find("devices/rng").get("model") == "virtio"

    def test_shares_use_virtiofs_with_shared_memory(self, spec):
        root = _render(spec)
        assert root.find("memoryBacking/access").get("mode") == "shared"
        filesystems = root.findall("devices/filesystem")
        assert [fs.find("target").get("dir") for fs in filesystems] == ["nix-store", "ssh-keys"]
        assert all(fs.find("driver").get("type") == "virtiofs" for fs in filesystems)
        assert all(fs.find("readonly") is not None for fs in filesystems)

    def test_no_shares_no_memory_backing(self, spec):
        spec.shares = []
        root = _render(spec)
        assert root.find("memoryBacking") is None

    def test_file_console_when_detached(self, spec):
        console = _render(spec).find("devices/console")
        assert console.get("type") == "file"
        assert console.find("source").get("path") == str(spec.console_log)
        assert console.find("target").get("type") == "virtio"

    def test_pty_console_logs_when_interactive(self, spec):
        spec.console_interactive = True
        console = _render(spec).find("devices/console")
        assert console.get("type") == "pty"
        assert console.find("log").get("file") == str(spec.console_log)

    def test_emulated_cpu_mode(self, spec):
        assert _render(spec, kind="qemu").find("cpu").get("mode") == "maximum"
