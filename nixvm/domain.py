"""libvirt domain XML generation for nixvm."""

from __future__ import annotations

import platform
import sys
from xml.etree.ElementTree import Element, SubElement, tostring

from nixvm.constants import DOMAIN_NAME, LIBVIRT_NETWORK
from nixvm.models import DirectoryShare, MachineSpec
from nixvm.utils import kvm_available

_ARCH_ALIASES = {"arm64": "aarch64", "amd64": "x86_64"}
_MACHINE_TYPES = {"aarch64": "virt", "x86_64": "q35"}


def host_arch() -> str:
    machine = platform.machine().lower()
    return _ARCH_ALIASES.get(machine, machine)


def domain_type() -> str:
    if sys.platform == "darwin":
        return "hvf"
    if kvm_available():
        return "kvm"
    return "qemu"


def _element_to_str(root: Element) -> str:
    """Serialize an ElementTree element to a pretty-printed XML string without declaration."""
    from xml.dom.minidom import parseString

    raw = tostring(root, encoding="unicode")
    return parseString(raw).documentElement.toprettyxml(indent="  ").strip()


def _add_console(devices: Element, spec: MachineSpec) -> None:
    # virtio console shows up as hvc0 in the guest
    if spec.console_interactive:
        console = SubElement(devices, "console", type="pty")
        SubElement(console, "log", file=str(spec.console_log), append="off")
    else:
        console = SubElement(devices, "console", type="file")
        SubElement(console, "source", path=str(spec.console_log))
    SubElement(console, "target", type="virtio", port="0")


def _add_filesystem(devices: Element, share: DirectoryShare) -> None:
    fs = SubElement(devices, "filesystem", type="mount", accessmode="passthrough")
    SubElement(fs, "driver", type="virtiofs")
    SubElement(fs, "source", dir=str(share.source))
    SubElement(fs, "target", dir=share.tag)
    if share.readonly:
        SubElement(fs, "readonly")


def render_domain_xml(spec: MachineSpec, name: str = DOMAIN_NAME, network: str = LIBVIRT_NETWORK) -> str:
    arch = host_arch()
    domain = Element("domain", type=domain_type())
    SubElement(domain, "name").text = name
    SubElement(domain, "memory", unit="KiB").text = str(spec.memory_bytes // 1024)
    SubElement(domain, "vcpu", placement="static").text = str(spec.cpus)

    # virtiofs needs guest RAM the host daemon can map
    if spec.shares:
        backing = SubElement(domain, "memoryBacking")
        SubElement(backing, "source", type="memfd")
        SubElement(backing, "access", mode="shared")

    os_el = SubElement(domain, "os")
    os_type = SubElement(os_el, "type", arch=arch, machine=_MACHINE_TYPES.get(arch, "virt"))
    os_type.text = "hvm"
    SubElement(os_el, "kernel").text = str(spec.kernel)
    SubElement(os_el, "initrd").text = str(spec.initrd)
    SubElement(os_el, "cmdline").text = spec.cmdline

    features = SubElement(domain, "features")
    SubElement(features, "acpi")
    SubElement(domain, "cpu", mode="host-passthrough" if domain_type() != "qemu" else "maximum")
    SubElement(domain, "on_poweroff").text = "destroy"
    SubElement(domain, "on_reboot").text = "restart"
    SubElement(domain, "on_crash").text = "destroy"

    devices = SubElement(domain, "devices")

    disk = SubElement(devices, "disk", type="file", device="disk")
    SubElement(disk, "driver", name="qemu", type="raw")
    SubElement(disk, "source", file=str(spec.disk_image))
    SubElement(disk, "target", dev="vda", bus="virtio")

    iface = SubElement(devices, "interface", type="network")
    SubElement(iface, "source", network=network)
    SubElement(iface, "mac", address=spec.mac_address.lower())
    SubElement(iface, "model", type="virtio")

    rng = SubElement(devices, "rng", model="virtio")
    SubElement(rng, "backend", model="random").text = "/dev/urandom"

    _add_console(devices, spec)

    for share in spec.shares:
        _add_filesystem(devices, share)

    return _element_to_str(domain)
