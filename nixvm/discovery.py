"""Guest IP discovery from the host DHCP lease registry, confirmed via ARP."""

from __future__ import annotations

import json
import subprocess
import sys
import threading
import time
from enum import Enum
from pathlib import Path
from typing import Callable, Iterable, List, Optional
from xml.etree.ElementTree import ParseError, fromstring

from nixvm.constants import (
    BOOTPD_LEASES_PATH,
    DEFAULT_DHCP_LEASE_SECONDS,
    DISCOVERY_INTERVAL,
    DISCOVERY_TIMEOUT,
    GUEST_HOSTNAME,
    GUEST_MAC_ADDRESS,
    LEASES_FILE_OVERRIDE,
    SUBPROCESS_TIMEOUT,
)
from nixvm.exceptions import GuestIPNotFoundError, ManagerError
from nixvm.models import LeaseEntry
from nixvm.utils import atomic_write_text, log

_INCOMPLETE_MARKERS = {"(incomplete)", "<incomplete>"}
_LEASE_UNITS = {"seconds": 1, "minutes": 60, "hours": 3600}


class DiscoveryState(Enum):
    POLLING = "polling"
    VERIFYING = "verifying"
    FOUND = "found"
    TIMED_OUT = "timed_out"


def _parse_bootpd_leases(content: str) -> List[LeaseEntry]:
    entries: List[LeaseEntry] = []
    for block in content.split("}"):
        name: Optional[str] = None
        ip_address: Optional[str] = None
        hw_address: Optional[str] = None
        timestamp = 0
        for line in block.splitlines():
            line = line.strip()
            if line.startswith("name="):
                name = line[len("name="):]
            elif line.startswith("ip_address="):
                ip_address = line[len("ip_address="):]
            elif line.startswith("hw_address="):
                # "1,2:da:72:56:0:1": leading field is the hardware type
                hw_address = line[len("hw_address="):].split(",", 1)[-1]
            elif line.startswith("lease=0x"):
                try:
                    timestamp = int(line[len("lease=0x"):], 16)
                except ValueError:
                    timestamp = 0
        if name is None and ip_address is None:
            continue
        entries.append(LeaseEntry(name, ip_address, hw_address, timestamp))
    return entries


def lease_issue_time(expiry: int, lease_seconds: int) -> int:
    """Turn a dnsmasq expiry into the time the lease was granted.

    An expiry of 0 is an infinite lease whose issue time is unknown.
    """
    if expiry <= 0:
        return 0
    return max(0, expiry - lease_seconds)


def network_lease_seconds(network_xml: str, default: int = DEFAULT_DHCP_LEASE_SECONDS) -> int:
    """Read the DHCP lease length from a libvirt network definition.

    ``<lease expiry='N' unit='...'/>`` inside the DHCP range; libvirt's
    unit defaults to minutes. Without the element dnsmasq's own default
    applies.
    """
    try:
        root = fromstring(network_xml)
    except ParseError:
        return default
    lease = root.find("./ip/dhcp/range/lease")
    if lease is None:
        return default
    unit = _LEASE_UNITS.get(lease.get("unit", "minutes"))
    try:
        expiry = int(lease.get("expiry", ""))
    except ValueError:
        return default
    if unit is None or expiry < 0:
        return default
    return expiry * unit


def _parse_dnsmasq_status(content: str, lease_seconds: int) -> List[LeaseEntry]:
    """Parse a libvirt dnsmasq ``<bridge>.status`` JSON document."""
    try:
        data = json.loads(content)
    except ValueError:
        return []
    if not isinstance(data, list):
        return []
    entries: List[LeaseEntry] = []
    for item in data:
        if not isinstance(item, dict):
            continue
        try:
            expiry = int(item.get("expiry-time", 0))
        except (TypeError, ValueError):
            expiry = 0
        entries.append(
            LeaseEntry(
                item.get("hostname"),
                item.get("ip-address"),
                item.get("mac-address"),
                lease_issue_time(expiry, lease_seconds),
            )
        )
    return entries


def parse_leases(content: str, lease_seconds: int = DEFAULT_DHCP_LEASE_SECONDS) -> List[LeaseEntry]:
    """Parse lease registry content; malformed input yields no entries."""
    if content.lstrip().startswith("["):
        return _parse_dnsmasq_status(content, lease_seconds)
    return _parse_bootpd_leases(content)


def default_lease_file() -> Optional[Path]:
    """The lease file to poll, or None when leases come from the libvirt network."""
    if LEASES_FILE_OVERRIDE:
        return Path(LEASES_FILE_OVERRIDE).expanduser()
    if sys.platform == "darwin":
        return BOOTPD_LEASES_PATH
    return None


def select_lease(entries: Iterable[LeaseEntry], hostname: str, not_before: int) -> Optional[LeaseEntry]:
    """Pick the newest lease for hostname issued after not_before.

    Entries are compared with >= so the last of several equally new entries
    in file order wins.
    """
    newest_timestamp = 0
    newest: Optional[LeaseEntry] = None
    for entry in entries:
        if entry.hostname != hostname or not entry.ip_address:
            continue
        if entry.timestamp > not_before and entry.timestamp >= newest_timestamp:
            newest_timestamp = entry.timestamp
            newest = entry
    return newest


def parse_lease_content(content: str, hostname: str, not_before: int) -> Optional[str]:
    lease = select_lease(parse_leases(content), hostname, not_before)
    return lease.ip_address if lease else None


def normalize_mac(mac: str) -> str:
    """Lower-case and drop leading zeros per octet: 02:DA:00 -> 2:da:0."""
    octets = []
    for octet in mac.strip().lower().split(":"):
        octets.append(octet.lstrip("0") or "0")
    return ":".join(octets)


def extract_arp_mac(output: str) -> Optional[str]:
    """Return the hardware address from ``arp -an`` output, if resolved.

    Format: "? (192.168.64.8) at 2:da:72:56:0:1 on bridge100 ifscope [ethernet]".
    """
    at_index = output.find(" at ")
    if at_index < 0:
        return None
    start = at_index + len(" at ")
    on_index = output.find(" on ", start)
    if on_index < 0:
        return None
    token = output[start:on_index].split()
    if not token or token[0] in _INCOMPLETE_MARKERS:
        return None
    return token[0]


def query_arp(ip: str) -> str:
    try:
        result = subprocess.run(
            ["arp", "-an", ip],
            capture_output=True,
            text=True,
            timeout=SUBPROCESS_TIMEOUT,
            check=False,
        )
    except (OSError, subprocess.SubprocessError) as exc:
        log("DEBUG", f"arp lookup for {ip} failed: {exc}")
        return ""
    return result.stdout or ""


def verify_ip_via_arp(ip: str, expected_mac: str) -> bool:
    arp_mac = extract_arp_mac(query_arp(ip))
    if arp_mac is None:
        return False
    return normalize_mac(arp_mac) == normalize_mac(expected_mac)


def read_guest_ip(guest_ip_file: Path) -> str:
    try:
        ip = guest_ip_file.read_text().strip()
    except OSError:
        raise GuestIPNotFoundError()
    if not ip:
        raise GuestIPNotFoundError()
    return ip


def write_guest_ip(guest_ip_file: Path, ip: str) -> None:
    try:
        atomic_write_text(guest_ip_file, ip, mode=0o644)
    except OSError as exc:
        raise ManagerError(f"Failed to record guest IP in {guest_ip_file}: {exc}") from exc


class GuestDiscovery:
    """Poll the lease registry until the guest's address is confirmed.

    Leases are read from ``lease_file`` or, when given, fetched through
    ``lease_source`` (the libvirt network's DHCP table).
    """

    def __init__(
        self,
        guest_ip_file: Path,
        hostname: str = GUEST_HOSTNAME,
        mac_address: str = GUEST_MAC_ADDRESS,
        lease_file: Optional[Path] = None,
        lease_source: Optional[Callable[[], List[LeaseEntry]]] = None,
        timeout: float = DISCOVERY_TIMEOUT,
        interval: float = DISCOVERY_INTERVAL,
    ) -> None:
        self.guest_ip_file = guest_ip_file
        self.hostname = hostname
        self.mac_address = mac_address
        self.lease_file = lease_file
        self.lease_source = lease_source
        self.timeout = timeout
        self.interval = interval
        self.state = DiscoveryState.POLLING

    def _entries(self) -> List[LeaseEntry]:
        if self.lease_source is not None:
            try:
                return self.lease_source()
            except ManagerError as exc:
                log("DEBUG", f"Lease lookup failed: {exc}")
                return []
        if self.lease_file is None:
            return []
        try:
            content = self.lease_file.read_text(errors="replace")
        except OSError:
            return []
        return parse_leases(content)

    def _candidate(self, not_before: int) -> Optional[str]:
        lease = select_lease(self._entries(), self.hostname, not_before)
        return lease.ip_address if lease else None

    def discover(self, not_before: float, cancel: Optional[threading.Event] = None) -> str:
        """Block until the guest IP is verified or the timeout expires.

        ``not_before`` is a Unix timestamp; leases at or before it belong to
        an earlier boot. Setting ``cancel`` abandons the search early.
        """
        not_before_counter = int(not_before)
        deadline = time.monotonic() + self.timeout
        self.state = DiscoveryState.POLLING
        while time.monotonic() < deadline:
            ip = self._candidate(not_before_counter)
            if ip is not None:
                self.state = DiscoveryState.VERIFYING
                if verify_ip_via_arp(ip, self.mac_address):
                    self.state = DiscoveryState.FOUND
                    write_guest_ip(self.guest_ip_file, ip)
                    return ip
                log("DEBUG", f"Lease candidate {ip} not confirmed by ARP yet")
                self.state = DiscoveryState.POLLING
            if cancel is None:
                time.sleep(self.interval)
            elif cancel.wait(self.interval):
                break
        self.state = DiscoveryState.TIMED_OUT
        raise GuestIPNotFoundError()
