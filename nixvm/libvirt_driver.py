"""libvirt-backed Hypervisor for nixvm."""

from __future__ import annotations

import os
import threading
from concurrent.futures import Future
from typing import List, Optional, Tuple

try:
    import libvirt  # type: ignore
except ImportError as exc:  # pragma: no cover
    raise SystemExit(f"libvirt python bindings not available: {exc}")

from nixvm.constants import DOMAIN_NAME, HYPERVISOR_MIN_MEMORY_BYTES, LIBVIRT_NETWORK, LIBVIRT_URI
from nixvm.discovery import lease_issue_time, network_lease_seconds
from nixvm.domain import domain_type, render_domain_xml
from nixvm.exceptions import HypervisorError
from nixvm.hypervisor import Hypervisor
from nixvm.models import LeaseEntry, MachineSpec
from nixvm.utils import log

_event_loop_lock = threading.Lock()
_event_loop_started = False


def _libvirt_message(exc: Exception) -> str:
    if hasattr(exc, "get_error_message"):
        return exc.get_error_message() or str(exc)
    return str(exc)


def _run_event_loop() -> None:
    while True:
        if libvirt.virEventRunDefaultImpl() < 0:
            log("WARN", "libvirt event loop iteration failed")


def ensure_event_loop() -> None:
    """Register libvirt's default event implementation and pump it on a daemon thread.

    Must happen before the first connection is opened, otherwise lifecycle
    callbacks are never delivered.
    """
    global _event_loop_started
    with _event_loop_lock:
        if _event_loop_started:
            return
        libvirt.virEventRegisterDefaultImpl()
        thread = threading.Thread(target=_run_event_loop, name="libvirt-events", daemon=True)
        thread.start()
        _event_loop_started = True


class LibvirtHypervisor(Hypervisor):
    """Runs the guest as a transient, auto-destroyed libvirt domain.

    VIR_DOMAIN_START_AUTODESTROY ties the guest to this process's
    connection: releasing the handle or exiting the process stops it.
    """

    def __init__(self, uri: str = LIBVIRT_URI, name: str = DOMAIN_NAME, network: str = LIBVIRT_NETWORK) -> None:
        self.uri = uri
        self.name = name
        self.network = network
        self.delegate = None
        self.conn: Optional[libvirt.virConnect] = None
        self.domain: Optional[libvirt.virDomain] = None
        self._callback_id: Optional[int] = None

    def open(self) -> None:
        if self.conn is not None:
            return
        ensure_event_loop()
        try:
            self.conn = libvirt.open(self.uri)
        except libvirt.libvirtError as exc:
            raise HypervisorError(f"Failed to open libvirt connection to {self.uri}: {_libvirt_message(exc)}") from exc
        if self.conn is None:
            raise HypervisorError(f"Failed to open libvirt connection to {self.uri}")
        try:
            self._callback_id = self.conn.domainEventRegisterAny(
                None, libvirt.VIR_DOMAIN_EVENT_ID_LIFECYCLE, self._on_lifecycle_event, None
            )
        except libvirt.libvirtError as exc:
            raise HypervisorError(f"Failed to subscribe to libvirt lifecycle events: {_libvirt_message(exc)}") from exc
        log("DEBUG", f"Connected to {self.uri}")

    def _require_conn(self) -> "libvirt.virConnect":
        if self.conn is None:
            raise HypervisorError("libvirt connection not established")
        return self.conn

    def cpu_count_range(self) -> Tuple[int, int]:
        conn = self._require_conn()
        try:
            maximum = conn.getMaxVcpus(domain_type())
        except libvirt.libvirtError:
            maximum = os.cpu_count() or 1
        host_cpus = os.cpu_count() or maximum
        return 1, max(1, min(maximum, host_cpus))

    def memory_size_range(self) -> Tuple[int, int]:
        conn = self._require_conn()
        try:
            # getInfo()[1] is host memory in MiB
            host_bytes = conn.getInfo()[1] * 1024 * 1024
        except libvirt.libvirtError as exc:
            raise HypervisorError(f"Failed to query host memory: {_libvirt_message(exc)}") from exc
        return HYPERVISOR_MIN_MEMORY_BYTES, max(HYPERVISOR_MIN_MEMORY_BYTES, host_bytes)

    def validate_config(self, spec: MachineSpec) -> None:
        self._require_conn()
        for label, path in (("kernel", spec.kernel), ("initrd", spec.initrd), ("disk image", spec.disk_image)):
            if not path.exists():
                raise HypervisorError(f"Invalid VM configuration: {label} not found at {path}")
        min_cpus, max_cpus = self.cpu_count_range()
        if not min_cpus <= spec.cpus <= max_cpus:
            raise HypervisorError(f"Invalid VM configuration: {spec.cpus} vCPUs outside {min_cpus}-{max_cpus}")
        min_mem, max_mem = self.memory_size_range()
        if not min_mem <= spec.memory_bytes <= max_mem:
            raise HypervisorError(f"Invalid VM configuration: memory {spec.memory_bytes} bytes out of range")
        for share in spec.shares:
            if not share.source.is_dir():
                raise HypervisorError(f"Invalid VM configuration: share '{share.tag}' source {share.source} missing")
        try:
            self._require_conn().lookupByName(self.name)
        except libvirt.libvirtError:
            return
        raise HypervisorError(f"Invalid VM configuration: a libvirt domain named '{self.name}' already exists")

    def start(self, spec: MachineSpec) -> "Future[None]":
        future: "Future[None]" = Future()
        conn = self._require_conn()
        xml = render_domain_xml(spec, name=self.name, network=self.network)
        log("DEBUG", f"Domain XML:\n{xml}")
        try:
            self.domain = conn.createXML(xml, libvirt.VIR_DOMAIN_START_AUTODESTROY)
        except libvirt.libvirtError as exc:
            future.set_exception(HypervisorError(f"Failed to start virtual machine: {_libvirt_message(exc)}"))
            return future
        if self.domain is None:
            future.set_exception(HypervisorError("Failed to start virtual machine: libvirt returned no domain"))
        else:
            future.set_result(None)
        return future

    def request_graceful_stop(self) -> "Future[None]":
        future: "Future[None]" = Future()
        if self.domain is None:
            future.set_exception(HypervisorError("Failed to stop virtual machine: no domain"))
            return future
        try:
            self.domain.shutdownFlags(libvirt.VIR_DOMAIN_SHUTDOWN_ACPI_POWER_BTN)
        except libvirt.libvirtError as exc:
            future.set_exception(HypervisorError(f"Failed to stop virtual machine: {_libvirt_message(exc)}"))
            return future
        future.set_result(None)
        return future

    def dhcp_leases(self) -> List[LeaseEntry]:
        conn = self._require_conn()
        try:
            network = conn.networkLookupByName(self.network)
            leases = network.DHCPLeases()
            lease_seconds = network_lease_seconds(network.XMLDesc(0))
        except libvirt.libvirtError as exc:
            message = _libvirt_message(exc)
            raise HypervisorError(f"Failed to read DHCP leases of network '{self.network}': {message}") from exc
        return [
            LeaseEntry(
                lease.get("hostname"),
                lease.get("ipaddr"),
                lease.get("mac"),
                lease_issue_time(int(lease.get("expirytime") or 0), lease_seconds),
            )
            for lease in leases
        ]

    def release(self) -> None:
        if self.conn is None:
            return
        if self._callback_id is not None:
            try:
                self.conn.domainEventDeregisterAny(self._callback_id)
            except libvirt.libvirtError:
                log("DEBUG", "Could not deregister lifecycle callback (connection lost)")
            self._callback_id = None
        try:
            self.conn.close()
        except libvirt.libvirtError:
            log("DEBUG", "Could not close libvirt connection cleanly")
        self.conn = None
        self.domain = None

    def _on_lifecycle_event(self, conn, dom, event, detail, opaque) -> None:
        if dom.name() != self.name or self.delegate is None:
            return
        if event == libvirt.VIR_DOMAIN_EVENT_STOPPED:
            if detail in (libvirt.VIR_DOMAIN_EVENT_STOPPED_CRASHED, libvirt.VIR_DOMAIN_EVENT_STOPPED_FAILED):
                self.delegate.on_stopped_with_error(HypervisorError(f"Guest stopped abnormally (detail {detail})"))
            else:
                self.delegate.on_guest_stopped()
        elif event == libvirt.VIR_DOMAIN_EVENT_CRASHED:
            self.delegate.on_stopped_with_error(HypervisorError("Guest crashed"))
