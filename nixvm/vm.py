"""VM lifecycle management for nixvm."""

from __future__ import annotations

import signal
import subprocess
import sys
import threading
import time
from pathlib import Path
from typing import Optional, TextIO

from nixvm.config import ensure_state_directory, validate
from nixvm.constants import (
    GUEST_MAC_ADDRESS,
    GUEST_SHUTDOWN_TIMEOUT,
    KERNEL_CMDLINE,
    NIX_STORE_PATH,
    SUBPROCESS_TIMEOUT,
)
from nixvm.discovery import GuestDiscovery, default_lease_file
from nixvm.exceptions import (
    DiskImageError,
    GuestIPNotFoundError,
    HypervisorError,
    ManagerError,
    VMNotRunningError,
)
from nixvm.hypervisor import Hypervisor, HypervisorDelegate, HypervisorQueue
from nixvm.idle import IdleMonitor
from nixvm.models import MachineSpec, VMConfig, VMState
from nixvm.pidfile import ensure_not_running, remove_pid, write_pid
from nixvm.shares import build_directory_shares
from nixvm.ssh import ensure_ssh_keys
from nixvm.utils import has_controlling_tty, log, parse_disk_size, run

MIB = 1024 * 1024


def ensure_disk_image(path: Path, size_bytes: int) -> None:
    """Create a sparse raw disk image; an existing image is left untouched."""
    if path.exists():
        return
    log("INFO", f"Creating sparse disk image {path} ({size_bytes} bytes)")
    try:
        handle = open(path, "xb")
    except OSError as exc:
        raise DiskImageError(str(exc)) from exc
    try:
        with handle:
            handle.truncate(size_bytes)
    except OSError as exc:
        path.unlink(missing_ok=True)
        raise DiskImageError(str(exc)) from exc


def clean_stale_lock_files(store_path: Path = NIX_STORE_PATH) -> bool:
    """Delete empty ``*.lock`` files left in the store by killed guest builds.

    Needs passwordless sudo; failure only produces a hint.
    """
    cmd = [
        "sudo",
        "-n",
        "find",
        str(store_path),
        "-maxdepth",
        "1",
        "-name",
        "*.lock",
        "-size",
        "0",
        "-perm",
        "600",
        "-delete",
    ]
    try:
        result = run(
            cmd,
            check=False,
            stdout=subprocess.DEVNULL,
            stderr=subprocess.DEVNULL,
            timeout=SUBPROCESS_TIMEOUT,
        )
    except (OSError, subprocess.SubprocessError) as exc:
        log("DEBUG", f"Stale lock cleanup failed: {exc}")
        result = None
    if result is not None and result.returncode == 0:
        log("DEBUG", f"Removed stale lock files from {store_path}")
        return True
    log("WARN", f"Could not clean stale lock files in {store_path}. Builds may block on leftover locks.")
    log("WARN", f"Run manually: sudo find {store_path} -maxdepth 1 -name '*.lock' -size 0 -perm 600 -delete")
    return False


class ConsoleFollower(threading.Thread):
    """Copy new guest console output to a stream while the VM runs."""

    def __init__(self, path: Path, stream: Optional[TextIO] = None, interval: float = 0.2) -> None:
        super().__init__(name="console-follower", daemon=True)
        self.path = path
        self.stream = stream or sys.stderr
        self.interval = interval
        self._stop_event = threading.Event()
        self._position = 0

    def poll(self) -> None:
        try:
            with open(self.path, "r", encoding="utf-8", errors="replace") as handle:
                handle.seek(self._position)
                chunk = handle.read()
                self._position = handle.tell()
        except OSError:
            return
        if chunk:
            self.stream.write(chunk)
            self.stream.flush()

    def run(self) -> None:
        while not self._stop_event.wait(self.interval):
            self.poll()
        self.poll()

    def stop(self) -> None:
        self._stop_event.set()


class VMManager(HypervisorDelegate):
    """Owns one guest from provisioning to teardown.

    Hypervisor calls go through ``queue``. Lifecycle callbacks may arrive on
    any thread; they only record the outcome and wake ``wait_until_stopped``.
    """

    def __init__(
        self,
        vm_config: VMConfig,
        hypervisor: Hypervisor,
        queue: Optional[HypervisorQueue] = None,
        verbose: bool = False,
    ) -> None:
        self.cfg = vm_config
        self.paths = vm_config.paths
        self.hypervisor = hypervisor
        self.hypervisor.delegate = self
        self.queue = queue or HypervisorQueue()
        self.verbose = verbose
        self.guest_shutdown_timeout = GUEST_SHUTDOWN_TIMEOUT
        self.started_at: Optional[float] = None
        self.idle_monitor: Optional[IdleMonitor] = None
        self.console_follower: Optional[ConsoleFollower] = None
        self._state = VMState.STOPPED
        # re-entered by the signal handler when a signal lands mid-critical-section
        self._lock = threading.RLock()
        self._handle_open = False
        self._finished = threading.Event()
        self._guest_stopped = threading.Event()
        self._exit_status: Optional[int] = None
        self._shutdown_reason: Optional[str] = None
        self._prev_handlers: dict = {}

    @property
    def state(self) -> VMState:
        return self._state

    def _set_state(self, state: VMState) -> None:
        with self._lock:
            previous, self._state = self._state, state
        if previous is not state:
            log("DEBUG", f"VM state: {previous.value} -> {state.value}")

    def start(self) -> None:
        if self._state is not VMState.STOPPED:
            raise ManagerError(f"Cannot start VM while it is {self._state.value}")
        ensure_not_running(self.paths.pid_file)
        validate(self.cfg)

        self._set_state(VMState.STARTING)
        try:
            ensure_state_directory(self.cfg)
            ensure_ssh_keys(self.paths)
            if self.cfg.share_nix_store:
                clean_stale_lock_files()
            ensure_disk_image(self.paths.disk_image, parse_disk_size(self.cfg.disk_size))
            self._handle_open = True
            spec = self.queue.run(self._open_and_configure)
        except ManagerError as exc:
            failed = isinstance(exc, HypervisorError)
            self._abort_start(VMState.FAILED if failed else VMState.STOPPED, remove_marker=False)
            raise
        except Exception as exc:
            self._abort_start(VMState.FAILED, remove_marker=False)
            raise HypervisorError(f"Failed to configure virtual machine: {exc}") from exc

        log("INFO", f"Starting VM ({spec.cpus} vCPUs, {spec.memory_bytes // MIB} MiB)")
        try:
            write_pid(self.paths.pid_file)
            self.started_at = time.time()
            self.queue.run(self.hypervisor.start, spec).result()
        except ManagerError:
            self._abort_start(VMState.FAILED)
            raise
        except Exception as exc:
            self._abort_start(VMState.FAILED)
            raise HypervisorError(f"Failed to start virtual machine: {exc}") from exc

        self._set_state(VMState.RUNNING)
        log("SUCCESS", "VM started")
        log("INFO", f"Console output: {self.paths.console_log}")
        if self.cfg.idle_timeout > 0:
            self.idle_monitor = IdleMonitor(
                self.cfg.idle_timeout,
                self.paths.guest_ip_file,
                self.queue,
                on_idle_shutdown=lambda: self.request_shutdown("Idle timeout reached"),
            )
            self.idle_monitor.start()
            log("INFO", f"Idle shutdown after {self.cfg.idle_timeout} minute(s) without SSH sessions")
        if self.verbose:
            self.console_follower = ConsoleFollower(self.paths.console_log)
            self.console_follower.start()

    def _abort_start(self, state: VMState, remove_marker: bool = True) -> None:
        if remove_marker:
            remove_pid(self.paths.pid_file)
        self._release_handle()
        self._set_state(state)

    def _open_and_configure(self) -> MachineSpec:
        self.hypervisor.open()
        spec = self.build_machine_spec()
        self.hypervisor.validate_config(spec)
        return spec

    def build_machine_spec(self) -> MachineSpec:
        """Translate the config into a MachineSpec clamped to the engine's limits."""
        min_cpus, max_cpus = self.hypervisor.cpu_count_range()
        cpus = max(min_cpus, min(self.cfg.cores, max_cpus))
        if cpus != self.cfg.cores:
            log("WARN", f"Requested {self.cfg.cores} cores; using {cpus} (supported range {min_cpus}-{max_cpus})")
        min_mem, max_mem = self.hypervisor.memory_size_range()
        requested = self.cfg.memory_mb * MIB
        memory_bytes = max(min_mem, min(requested, max_mem))
        if memory_bytes != requested:
            log("WARN", f"Requested {self.cfg.memory_mb} MiB of memory; using {memory_bytes // MIB} MiB")

        cmdline = KERNEL_CMDLINE
        if self.cfg.system is not None:
            cmdline += f" init={self.cfg.system}/init"

        return MachineSpec(
            kernel=self.cfg.kernel,
            initrd=self.cfg.initrd,
            cmdline=cmdline,
            cpus=cpus,
            memory_bytes=memory_bytes,
            disk_image=self.paths.disk_image,
            mac_address=GUEST_MAC_ADDRESS,
            console_log=self.paths.console_log,
            console_interactive=has_controlling_tty(),
            shares=build_directory_shares(self.cfg),
        )

    def discover_guest_ip(self, discovery: Optional[GuestDiscovery] = None) -> Optional[str]:
        """Wait for the guest address; a timeout is logged, not raised."""
        discovery = discovery or self._default_discovery()
        log("INFO", "Waiting for guest IP address...")
        try:
            guest_ip = discovery.discover(self.started_at or time.time(), cancel=self._finished)
        except GuestIPNotFoundError:
            if not self._finished.is_set():
                log("WARN", "Could not discover guest IP address. SSH will not be available until it is.")
            return None
        log("SUCCESS", f"Guest IP: {guest_ip}")
        log("INFO", "Connect with: nixvm ssh")
        return guest_ip

    def _default_discovery(self) -> GuestDiscovery:
        lease_file = default_lease_file()
        if lease_file is not None:
            return GuestDiscovery(self.paths.guest_ip_file, lease_file=lease_file)
        return GuestDiscovery(
            self.paths.guest_ip_file,
            lease_source=lambda: self.queue.run(self.hypervisor.dhcp_leases),
        )

    def stop(self, force: bool = False) -> None:
        with self._lock:
            if not self._handle_open or self._state not in (VMState.RUNNING, VMState.STOPPING):
                raise VMNotRunningError()
        self._set_state(VMState.STOPPING)
        self._stop_background()

        if not force and not self._guest_stopped.is_set():
            log("INFO", "Requesting guest shutdown...")
            try:
                self.queue.run(self.hypervisor.request_graceful_stop).result()
            except HypervisorError:
                raise
            except Exception as exc:
                raise HypervisorError(f"Failed to stop virtual machine: {exc}") from exc
            if not self._guest_stopped.wait(self.guest_shutdown_timeout):
                log("WARN", f"Guest did not power off within {int(self.guest_shutdown_timeout)}s; forcing stop")

        self._release_handle()
        remove_pid(self.paths.pid_file)
        if self._state is VMState.FAILED:
            log("WARN", "VM stopped after a guest failure")
            return
        self._set_state(VMState.STOPPED)
        log("SUCCESS", "VM stopped")

    def _stop_background(self) -> None:
        if self.idle_monitor is not None:
            self.idle_monitor.stop()
        if self.console_follower is not None:
            self.console_follower.stop()

    def _release_handle(self) -> None:
        with self._lock:
            if not self._handle_open:
                return
            self._handle_open = False
        try:
            self.queue.run(self.hypervisor.release)
        except HypervisorError as exc:
            log("WARN", f"Failed to release hypervisor: {exc}")

    # HypervisorDelegate

    def on_guest_stopped(self) -> None:
        log("INFO", "Guest has stopped")
        self._guest_stopped.set()
        remove_pid(self.paths.pid_file)
        self._finish(0)

    def on_stopped_with_error(self, error: Exception) -> None:
        log("ERROR", f"VM stopped with error: {error}")
        self._guest_stopped.set()
        self._set_state(VMState.FAILED)
        remove_pid(self.paths.pid_file)
        self._finish(1)

    def _finish(self, status: int) -> None:
        with self._lock:
            if self._exit_status is None:
                self._exit_status = status
        self._finished.set()

    def request_shutdown(self, reason: str) -> None:
        """Ask the waiting thread to stop the VM; repeats are ignored."""
        with self._lock:
            duplicate = self._shutdown_reason is not None
            if not duplicate:
                self._shutdown_reason = reason
        if duplicate:
            log("WARN", f"{reason}; shutdown already in progress")
            return
        log("INFO", f"{reason}, shutting down VM...")
        self._finished.set()

    def _signal_handler(self, signum, frame) -> None:
        self.request_shutdown(f"{signal.Signals(signum).name} received")

    def install_signal_handlers(self) -> None:
        for signum in (signal.SIGINT, signal.SIGTERM):
            self._prev_handlers[signum] = signal.signal(signum, self._signal_handler)

    def restore_signal_handlers(self) -> None:
        for signum, previous in self._prev_handlers.items():
            signal.signal(signum, previous)
        self._prev_handlers.clear()

    def wait_until_stopped(self) -> int:
        """Block until the guest exits or a shutdown is requested; return the exit status."""
        installed_here = not self._prev_handlers
        if installed_here:
            self.install_signal_handlers()
        try:
            log("INFO", "VM is running. Press Ctrl+C to stop.")
            self._finished.wait()
            with self._lock:
                status = self._exit_status
            if status is None:
                return self._shutdown_gracefully()
            self._stop_background()
            self._release_handle()
            remove_pid(self.paths.pid_file)
            self._set_state(VMState.STOPPED if status == 0 else VMState.FAILED)
            return status
        finally:
            if installed_here:
                self.restore_signal_handlers()

    def _shutdown_gracefully(self) -> int:
        try:
            self.stop(force=False)
        except VMNotRunningError:
            return 0
        except ManagerError as exc:
            log("WARN", f"Graceful shutdown failed: {exc}")
            self.stop(force=True)
        with self._lock:
            status = self._exit_status
        return status if status is not None else 0

    def close(self) -> None:
        self._stop_background()
        self._release_handle()
        self.queue.shutdown(wait=False)

