"""
Optional single-flight for cold cache keys.

With single-flight enabled, a TieredCache lets one get_or_set() caller per
missing key run the value factory; every other caller for that key waits
for the fill and gets the same value (or the same exception).
"""
import logging
import threading
from typing import Any, Callable, Dict, Optional

logger = logging.getLogger("cache.single_flight")


class PendingFill:
    """A cache fill that is running for one key."""

    def __init__(self):
        self._finished = threading.Event()
        self.value: Any = None
        self.error: Optional[BaseException] = None
        self.waiters = 0

    def resolve(self, value: Any) -> None:
        self.value = value
        self._finished.set()

    def fail(self, error: BaseException) -> None:
        self.error = error
        self._finished.set()

    def wait(self, timeout: float) -> bool:
        return self._finished.wait(timeout=timeout)

    def outcome(self) -> Any:
        if self.error is not None:
            raise self.error
        return self.value


class SingleFlightGroup:
    """Per-key registry of running cache fills."""

    def __init__(self, timeout: float = 30.0):
        """
        Args:
            timeout: Max seconds a caller waits on a fill started by another caller
        """
        self._pending: Dict[str, PendingFill] = {}
        self._lock = threading.Lock()
        self._timeout = timeout

    def fill(self, key: str, factory: Callable[[], Any]) -> Any:
        """
        Produce the value for key, running factory at most once at a time.

        Raises:
            TimeoutError: If the fill started by another caller does not finish in time
            Exception: Whatever the factory raised
        """
        with self._lock:
            pending = self._pending.get(key)
            owner = pending is None
            if owner:
                pending = self._pending[key] = PendingFill()
            else:
                pending.waiters += 1

        if not owner:
            logger.debug(f"Waiting on running fill for {key} ({pending.waiters} waiting)")
            if not pending.wait(self._timeout):
                logger.error(f"Fill for {key} still running after {self._timeout}s")
                raise TimeoutError(f"Cache fill for {key} timed out after {self._timeout}s")
            return pending.outcome()

        try:
            pending.resolve(factory())
        except Exception as e:
            logger.warning(f"Cache fill for {key} failed: {e}")
            pending.fail(e)
        finally:
            with self._lock:
                self._pending.pop(key, None)
        return pending.outcome()

    @property
    def active(self) -> int:
        """Number of fills currently running."""
        with self._lock:
            return len(self._pending)
