"""Hypervisor interface and the serialized context all its calls run on."""

from __future__ import annotations

import threading
from concurrent.futures import Future, ThreadPoolExecutor
from typing import Any, Callable, List, Optional, Tuple

from nixvm.models import LeaseEntry, MachineSpec


class HypervisorDelegate:
    """Receives guest lifecycle notifications from a Hypervisor."""

    def on_guest_stopped(self) -> None:
        raise NotImplementedError

    def on_stopped_with_error(self, error: Exception) -> None:
        raise NotImplementedError


class Hypervisor:
    """Engine that boots and runs exactly one guest.

    Implementations are not thread-safe: every method must be called from
    the HypervisorQueue that owns the instance. ``start`` and
    ``request_graceful_stop`` return futures that resolve when the engine
    acknowledges the request.
    """

    delegate: Optional[HypervisorDelegate] = None

    def open(self) -> None:
        raise NotImplementedError

    def cpu_count_range(self) -> Tuple[int, int]:
        raise NotImplementedError

    def memory_size_range(self) -> Tuple[int, int]:
        raise NotImplementedError

    def validate_config(self, spec: MachineSpec) -> None:
        raise NotImplementedError

    def start(self, spec: MachineSpec) -> "Future[None]":
        raise NotImplementedError

    def request_graceful_stop(self) -> "Future[None]":
        raise NotImplementedError

    def dhcp_leases(self) -> List[LeaseEntry]:
        """Leases handed out on the guest network, with issue times."""
        raise NotImplementedError

    def release(self) -> None:
        raise NotImplementedError


class HypervisorQueue:
    """Single worker thread that serializes every hypervisor operation."""

    def __init__(self, name: str = "hypervisor") -> None:
        self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix=name)
        self._timers: "set[threading.Timer]" = set()
        self._lock = threading.Lock()
        self._closed = False

    def submit(self, fn: Callable[..., Any], *args: Any, **kwargs: Any) -> "Future[Any]":
        return self._executor.submit(fn, *args, **kwargs)

    def run(self, fn: Callable[..., Any], *args: Any, **kwargs: Any) -> Any:
        """Run fn on the queue and block the caller until it returns.

        Never call this from the queue's own thread; it would wait on itself.
        """
        return self.submit(fn, *args, **kwargs).result()

    def call_later(self, delay: float, fn: Callable[[], Any]) -> threading.Timer:
        """Schedule fn onto the queue after delay seconds; cancel() the result to drop it."""

        def _fire() -> None:
            with self._lock:
                self._timers.discard(timer)
                if not self._closed:
                    self._executor.submit(fn)

        timer = threading.Timer(delay, _fire)
        timer.daemon = True
        with self._lock:
            if self._closed:
                return timer
            self._timers.add(timer)
        timer.start()
        return timer

    def shutdown(self, wait: bool = True) -> None:
        with self._lock:
            self._closed = True
            timers = list(self._timers)
            self._timers.clear()
        for timer in timers:
            timer.cancel()
        self._executor.shutdown(wait=wait)
