"""Set of entity ids already handed to a follow-up action."""
import threading
import time
from typing import Callable, Dict, Hashable, Optional


class ProcessedIdSet:
    """
    Per-poller dedup set.

    With ttl=None ids are kept for the lifetime of the instance. With a ttl,
    ids older than ttl seconds are forgotten lazily on access, which bounds
    memory for long-lived sessions at the cost of allowing a very late
    duplicate to fire again.
    """

    def __init__(self, ttl: Optional[float] = None, clock: Callable[[], float] = time.time):
        self._ttl = ttl
        self._clock = clock
        self._added: Dict[Hashable, float] = {}
        self._lock = threading.Lock()

    def add(self, entity_id: Hashable) -> None:
        with self._lock:
            self._added[entity_id] = self._clock()

    def __contains__(self, entity_id: Hashable) -> bool:
        with self._lock:
            self._prune()
            return entity_id in self._added

    def __len__(self) -> int:
        with self._lock:
            self._prune()
            return len(self._added)

    def _prune(self) -> None:
        if self._ttl is None:
            return
        cutoff = self._clock() - self._ttl
        expired = [k for k, added_at in self._added.items() if added_at <= cutoff]
        for key in expired:
            del self._added[key]
