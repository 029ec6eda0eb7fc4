"""CLI entry points for nixvm."""

from __future__ import annotations

import argparse
import json
import os
import signal
import time
import traceback
from pathlib import Path
from typing import List, Optional

from nixvm.config import build_config, load_config_file, resolve_config_path
from nixvm.constants import (
    APP_NAME,
    DEFAULT_STATE_DIR,
    STOP_FORCE_WAIT,
    STOP_GRACEFUL_WAIT,
    STOP_POLL_INTERVAL,
)
from nixvm.exceptions import ManagerError, VMNotRunningError
from nixvm.hypervisor import Hypervisor
from nixvm.models import StatePaths, StatusReport
from nixvm.pidfile import is_process_running, read_pid, remove_pid, running_pid
from nixvm.ssh import connect_ssh
from nixvm.utils import log, set_verbose
from nixvm.vm import VMManager


def create_hypervisor() -> Hypervisor:
    """Build the libvirt hypervisor; imported lazily so other commands work without the bindings."""
    from nixvm.libvirt_driver import LibvirtHypervisor

    return LibvirtHypervisor()


def resolve_state_paths(state_dir: Optional[str], config: Optional[str]) -> StatePaths:
    if state_dir:
        return StatePaths(Path(state_dir).expanduser())
    values = load_config_file(resolve_config_path(config), required=config is not None)
    configured = values.get("state_dir")
    if configured:
        return StatePaths(Path(str(configured)).expanduser())
    return StatePaths(DEFAULT_STATE_DIR)


def run_start(args: argparse.Namespace) -> int:
    if args.verbose:
        set_verbose(True)
    file_values = load_config_file(resolve_config_path(args.config), required=args.config is not None)
    cfg = build_config(
        kernel=args.kernel,
        initrd=args.initrd,
        system=args.system,
        cores=args.cores,
        memory=args.memory,
        disk_size=args.disk_size,
        state_dir=args.state_dir,
        rosetta=args.rosetta,
        require_rosetta=args.require_rosetta,
        share_nix_store=args.share_nix_store,
        idle_timeout=args.idle_timeout,
        file_values=file_values,
    )
    log("INFO", f"Cores: {cfg.cores} | Memory: {cfg.memory_mb} MB | Disk: {cfg.disk_size}")
    log("INFO", f"State directory: {cfg.state_dir}")

    vm_mgr = VMManager(cfg, create_hypervisor(), verbose=args.verbose)
    vm_mgr.install_signal_handlers()
    try:
        vm_mgr.start()
        vm_mgr.discover_guest_ip()
        return vm_mgr.wait_until_stopped()
    finally:
        vm_mgr.restore_signal_handlers()
        vm_mgr.close()


def wait_for_exit(pid: int, timeout: float, interval: float = STOP_POLL_INTERVAL) -> bool:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if not is_process_running(pid):
            return True
        time.sleep(interval)
    return not is_process_running(pid)


def stop_instance(paths: StatePaths, force: bool = False) -> int:
    """Signal the running orchestrator process and wait for it to exit."""
    pid = read_pid(paths.pid_file)
    if pid is None:
        log("INFO", "No VM is running.")
        return 0
    if not is_process_running(pid):
        log("INFO", f"VM process (PID: {pid}) is not running. Cleaning up stale PID file.")
        remove_pid(paths.pid_file)
        return 0

    signum = signal.SIGKILL if force else signal.SIGTERM
    log("INFO", f"Sending {signal.Signals(signum).name} to VM process (PID: {pid})...")
    try:
        os.kill(pid, signum)
    except OSError as exc:
        raise ManagerError(f"Failed to send signal to PID {pid}: {exc.strerror or exc}") from exc

    timeout = STOP_FORCE_WAIT if force else STOP_GRACEFUL_WAIT
    if not wait_for_exit(pid, timeout):
        hint = "" if force else f" Use '{APP_NAME} stop --force' to kill it."
        log("WARN", f"VM process (PID: {pid}) did not exit within {int(timeout)}s.{hint}")
        return 0
    if force:
        # a killed process cannot clean up after itself
        remove_pid(paths.pid_file)
    log("SUCCESS", "VM stopped.")
    return 0


def run_stop(args: argparse.Namespace) -> int:
    return stop_instance(resolve_state_paths(args.state_dir, args.config), force=args.force)


def collect_status(paths: StatePaths) -> StatusReport:
    pid = read_pid(paths.pid_file)
    running = pid is not None and is_process_running(pid)
    if pid is not None and not running:
        remove_pid(paths.pid_file)
    return StatusReport(running=running, pid=pid, state_directory=paths.state_dir)


def run_status(args: argparse.Namespace) -> int:
    report = collect_status(resolve_state_paths(args.state_dir, args.config))
    if args.json:
        print(json.dumps(report.to_dict(), sort_keys=True, indent=2))
        return 0
    print(f"VM Status: {'Running' if report.running else 'Stopped'}")
    if report.running:
        print(f"PID: {report.pid}")
    print(f"State Directory: {report.state_directory}")
    return 0


def run_ssh(args: argparse.Namespace) -> int:
    paths = resolve_state_paths(args.state_dir, args.config)
    if running_pid(paths.pid_file) is None:
        raise VMNotRunningError()
    extra: List[str] = list(args.extra)
    if extra and extra[0] == "--":
        extra = extra[1:]
    connect_ssh(paths, extra)
    return 0  # pragma: no cover


def _add_common_options(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--state-dir", help=f"State directory (default: {DEFAULT_STATE_DIR})")
    parser.add_argument("--config", help="YAML config file (default: $NIXVM_CONFIG or ~/.config/nixvm/config.yaml)")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog=APP_NAME, description="Run a NixOS Linux builder VM")
    subparsers = parser.add_subparsers(dest="command", metavar="COMMAND")
    subparsers.required = True

    start = subparsers.add_parser("start", help="Boot the VM and wait until it stops")
    _add_common_options(start)
    start.add_argument("--cores", type=int, help="Virtual CPU cores (default: 4)")
    start.add_argument("--memory", type=int, help="Memory in MB (default: 8192)")
    start.add_argument("--disk-size", help="Disk image size, e.g. 100G (default: 100G)")
    start.add_argument("--kernel", help="Path to the guest kernel image")
    start.add_argument("--initrd", help="Path to the guest initrd")
    start.add_argument("--system", help="NixOS system toplevel; appends init=<system>/init")
    start.add_argument(
        "--rosetta",
        action=argparse.BooleanOptionalAction,
        default=None,
        help="Share the Rosetta runtime for x86_64 binaries (default: on)",
    )
    start.add_argument(
        "--require-rosetta",
        action="store_const",
        const=True,
        default=None,
        help="Fail instead of warning when Rosetta is unavailable",
    )
    start.add_argument(
        "--share-nix-store",
        action=argparse.BooleanOptionalAction,
        default=None,
        help="Share the host /nix/store read-only (default: on)",
    )
    start.add_argument("--idle-timeout", type=int, help="Stop after N minutes without SSH sessions (0 disables)")
    start.add_argument("--verbose", action="store_true", help="Stream the guest console and show debug logs")
    start.set_defaults(handler=run_start)

    stop = subparsers.add_parser("stop", help="Stop the running VM")
    _add_common_options(stop)
    stop.add_argument("--force", action="store_true", help="Kill the VM process immediately")
    stop.set_defaults(handler=run_stop)

    status = subparsers.add_parser("status", help="Show whether the VM is running")
    _add_common_options(status)
    status.add_argument("--json", action="store_true", help="Print status as JSON")
    status.set_defaults(handler=run_status)

    ssh = subparsers.add_parser("ssh", help="Open an SSH session to the VM")
    _add_common_options(ssh)
    ssh.add_argument("extra", nargs=argparse.REMAINDER, help="Extra arguments passed to ssh")
    ssh.set_defaults(handler=run_ssh)

    return parser


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    try:
        return args.handler(args)
    except ManagerError as exc:
        log("ERROR", str(exc))
        return 1
    except Exception as exc:
        log("ERROR", f"Unexpected error: {exc}")
        traceback.print_exc()
        return 1
