"""
Timer primitives shared by the offline cache and the watchdog poller.

A Scheduler hands out cancellable handles; ScopedTimer owns at most one
pending handle and replaces it on every reschedule, so a component never
has more than one live callback of a given kind.
"""
import logging
import threading
import time
from typing import Callable, Optional, Protocol

logger = logging.getLogger("timers")


class TimerHandle(Protocol):
    """A scheduled callback that can be cancelled."""

    def cancel(self) -> None:
        ...


class Scheduler(Protocol):
    """Source of time and delayed callbacks."""

    def now(self) -> float:
        """Current time in seconds since the epoch."""
        ...

    def call_later(self, delay: float, fn: Callable[[], None]) -> TimerHandle:
        """Run fn once after delay seconds."""
        ...


class ThreadingScheduler:
    """Wall-clock scheduler backed by daemon threading.Timer instances."""

    def now(self) -> float:
        return time.time()

    def call_later(self, delay: float, fn: Callable[[], None]) -> TimerHandle:
        timer = threading.Timer(max(0.0, delay), fn)
        timer.daemon = True
        timer.start()
        return timer


class ScopedTimer:
    """
    Single pending timer with replace-on-reschedule semantics.

    - schedule() cancels whatever was pending before arming the new callback
    - cancel() is idempotent and safe from any exit path
    - a callback that was already running when it got replaced is dropped

    Usable as a context manager; leaving the block cancels the timer.
    """

    def __init__(self, scheduler: Scheduler, name: str = "timer"):
        self._scheduler = scheduler
        self._name = name
        self._handle: Optional[TimerHandle] = None
        self._generation = 0
        self._lock = threading.Lock()

    def schedule(self, delay: float, fn: Callable[[], None]) -> None:
        """Arm fn to run after delay seconds, replacing any pending callback."""
        with self._lock:
            self._cancel_locked()
            self._generation += 1
            generation = self._generation

            def run():
                with self._lock:
                    if generation != self._generation:
                        # Replaced or cancelled after the handle fired
                        return
                    self._handle = None
                try:
                    fn()
                except Exception as e:
                    logger.exception(f"Timer '{self._name}' callback failed: {e}")

            self._handle = self._scheduler.call_later(delay, run)
            logger.debug(f"Timer '{self._name}' scheduled in {delay:.2f}s")

    def cancel(self) -> None:
        """Cancel the pending callback, if any."""
        with self._lock:
            self._cancel_locked()
            self._generation += 1

    def _cancel_locked(self) -> None:
        if self._handle is not None:
            self._handle.cancel()
            self._handle = None
            logger.debug(f"Timer '{self._name}' cancelled")

    @property
    def pending(self) -> bool:
        """True while a callback is armed and has not run."""
        with self._lock:
            return self._handle is not None

    def __enter__(self) -> "ScopedTimer":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.cancel()
