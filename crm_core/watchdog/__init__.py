"""
Change-detection poller with a circuit breaker and a delayed, deduplicated
follow-up action.
"""
from .breaker import CircuitBreaker, CircuitBreakerState, CircuitState
from .processed import ProcessedIdSet
from .poller import PollerState, WatchdogPoller

__all__ = [
    "CircuitBreaker",
    "CircuitBreakerState",
    "CircuitState",
    "ProcessedIdSet",
    "PollerState",
    "WatchdogPoller",
]
