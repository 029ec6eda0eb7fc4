"""Idle shutdown: stop the VM when nobody has been connected over SSH for a while."""

from __future__ import annotations

import subprocess
import threading
import time
from pathlib import Path
from typing import Callable, Optional

from nixvm.constants import GUEST_SSH_PORT, IDLE_CHECK_INTERVAL, SUBPROCESS_TIMEOUT
from nixvm.discovery import read_guest_ip
from nixvm.exceptions import GuestIPNotFoundError
from nixvm.hypervisor import HypervisorQueue
from nixvm.utils import log


def has_established_session(guest_ip: str, port: int = GUEST_SSH_PORT) -> bool:
    """True if lsof lists an ESTABLISHED connection to guest_ip:port."""
    try:
        result = subprocess.run(
            ["lsof", "-i", f"@{guest_ip}:{port}", "-n", "-P"],
            capture_output=True,
            text=True,
            timeout=SUBPROCESS_TIMEOUT,
            check=False,
        )
    except (OSError, subprocess.SubprocessError) as exc:
        log("DEBUG", f"Connection listing failed: {exc}")
        return False
    return "ESTABLISHED" in (result.stdout or "")


class IdleMonitor:
    """Periodic activity check scheduled on the hypervisor queue.

    ``on_idle_shutdown`` runs at most once; the monitor cancels itself
    before calling it.
    """

    def __init__(
        self,
        timeout_minutes: int,
        guest_ip_file: Path,
        queue: HypervisorQueue,
        on_idle_shutdown: Callable[[], None],
        interval: float = IDLE_CHECK_INTERVAL,
    ) -> None:
        self.timeout_minutes = timeout_minutes
        self.guest_ip_file = guest_ip_file
        self.queue = queue
        self.on_idle_shutdown = on_idle_shutdown
        self.interval = interval
        self.last_activity = time.monotonic()
        self._timer: Optional[threading.Timer] = None
        self._lock = threading.Lock()
        self._stopped = False
        self._triggered = False

    def start(self) -> None:
        with self._lock:
            if self._stopped or self._timer is not None:
                return
            self.last_activity = time.monotonic()
            self._timer = self.queue.call_later(self.interval, self._tick)

    def stop(self) -> None:
        with self._lock:
            self._stopped = True
            timer, self._timer = self._timer, None
        if timer is not None:
            timer.cancel()

    def check_activity(self) -> bool:
        try:
            guest_ip = read_guest_ip(self.guest_ip_file)
        except GuestIPNotFoundError:
            return False
        if has_established_session(guest_ip):
            self.last_activity = time.monotonic()
            return True
        return False

    def _tick(self) -> None:
        with self._lock:
            if self._stopped:
                return
        self.check_activity()
        idle_for = time.monotonic() - self.last_activity
        if self.timeout_minutes > 0 and idle_for >= self.timeout_minutes * 60:
            with self._lock:
                if self._triggered or self._stopped:
                    return
                self._triggered = True
            self.stop()
            log("WARN", f"VM idle for {self.timeout_minutes} minute(s). Shutting down automatically.")
            self.on_idle_shutdown()
            return
        with self._lock:
            if not self._stopped:
                self._timer = self.queue.call_later(self.interval, self._tick)
