"""
Circuit breaker for the watchdog poll loop.

CLOSED -> OPEN after `threshold` consecutive failures. While open, callers
must not attempt the operation. Once the cool-down has elapsed the breaker
closes again with a zeroed failure count (no half-open trial state).
"""
import logging
import threading
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Optional

logger = logging.getLogger("watchdog.breaker")


class CircuitState(Enum):
    """Circuit breaker states."""
    CLOSED = "closed"
    OPEN = "open"


@dataclass
class CircuitBreakerState:
    consecutive_errors: int = 0
    open_until: Optional[float] = None  # Absent or in the future


class CircuitBreaker:
    """Consecutive-failure breaker with a fixed cool-down window."""

    def __init__(self, threshold: int = 3, cooldown: float = 300.0, name: str = "watchdog"):
        """
        Args:
            threshold: Consecutive failures that open the circuit
            cooldown: Seconds the circuit stays open
            name: Used in log messages
        """
        self.threshold = threshold
        self.cooldown = cooldown
        self.name = name
        self._state = CircuitBreakerState()
        self._lock = threading.Lock()

    def allow_request(self, now: float) -> bool:
        """
        Check whether an attempt may be made at time now.

        Closes the circuit (and resets the counter) if the cool-down is over.
        """
        with self._lock:
            open_until = self._state.open_until
            if open_until is None:
                return True
            if now < open_until:
                return False
            self._state = CircuitBreakerState()
        logger.info(f"CircuitBreaker '{self.name}' CLOSED after cool-down")
        return True

    def record_success(self) -> None:
        with self._lock:
            self._state.consecutive_errors = 0

    def record_failure(self, now: float) -> bool:
        """
        Count a failure.

        Returns:
            True if this failure opened the circuit
        """
        with self._lock:
            self._state.consecutive_errors += 1
            errors = self._state.consecutive_errors
            opened = errors >= self.threshold and self._state.open_until is None
            if opened:
                self._state.open_until = now + self.cooldown
        if opened:
            logger.warning(
                f"CircuitBreaker '{self.name}' OPENED after {errors} failures; "
                f"pausing for {self.cooldown:.0f}s"
            )
        else:
            logger.warning(f"CircuitBreaker '{self.name}' failure {errors}/{self.threshold}")
        return opened

    def state(self, now: float) -> CircuitState:
        with self._lock:
            open_until = self._state.open_until
        if open_until is not None and now < open_until:
            return CircuitState.OPEN
        return CircuitState.CLOSED

    def is_open(self, now: float) -> bool:
        return self.state(now) is CircuitState.OPEN

    @property
    def consecutive_errors(self) -> int:
        with self._lock:
            return self._state.consecutive_errors

    @property
    def open_until(self) -> Optional[float]:
        with self._lock:
            return self._state.open_until

    def snapshot(self, now: float) -> Dict[str, Any]:
        with self._lock:
            state = CircuitBreakerState(**vars(self._state))
        return {
            "state": self.state(now).value,
            "consecutive_errors": state.consecutive_errors,
            "open_until": state.open_until,
        }
