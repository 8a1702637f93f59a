"""
Background poller that detects a qualifying state change in an external
system and fires one delayed follow-up action per entity.

Poll cycle:
    circuit open?  -> skip (no call)
    since_query()  -> failure: count towards the breaker
                   -> success: reset breaker, advance watermark to now,
                      pick the first matching unprocessed item and
                      (re)arm the single delay timer
Delay elapsed:
    get_details(id) -> mark processed -> on_action(details)
"""
import logging
import threading
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Dict, Hashable, Iterable, List, Optional

from config.settings import settings
from crm_core.timers import Scheduler, ScopedTimer, ThreadingScheduler
from .breaker import CircuitBreaker
from .processed import ProcessedIdSet

logger = logging.getLogger("watchdog.poller")

SinceQuery = Callable[[Any, datetime], Optional[Iterable[Any]]]
GetDetails = Callable[[Hashable], Any]
Predicate = Callable[[Any, Any], bool]
Action = Callable[[Any], None]
CompletionListener = Callable[[Hashable], None]


class PollerState(Enum):
    IDLE = "idle"
    POLLING = "polling"
    TRIGGER_MATCHED = "trigger_matched"
    DELAY_SCHEDULED = "delay_scheduled"
    ACTION_FIRED = "action_fired"


def default_id_of(item: Any) -> Hashable:
    """Read `id` from a mapping or an object."""
    if isinstance(item, dict):
        return item["id"]
    return getattr(item, "id")


class WatchdogPoller:
    """
    Periodic poller with a circuit breaker, a per-instance dedup set and a
    single replace-on-reschedule delay timer.

    Poll cycles, delay callbacks and manual triggers are serialised on one
    per-instance lock, so at most one of them runs at a time.
    """

    def __init__(
        self,
        actor_id: Any,
        since_query: SinceQuery,
        get_details: GetDetails,
        predicate: Predicate,
        on_action: Action,
        poll_interval: Optional[float] = None,
        analysis_delay: Optional[float] = None,
        failure_threshold: Optional[int] = None,
        cooldown: Optional[float] = None,
        processed_ttl: Optional[float] = None,
        on_complete: Optional[CompletionListener] = None,
        id_of: Callable[[Any], Hashable] = default_id_of,
        scheduler: Optional[Scheduler] = None,
        name: str = "watchdog",
    ):
        """
        Args:
            actor_id: Whose events to watch (passed to since_query and predicate)
            since_query: (actor_id, since) -> items newer than since; raise on failure
            get_details: id -> full entity, or None if unavailable
            predicate: (item, actor_id) -> whether the item qualifies
            on_action: Called with the fetched details once per entity
            poll_interval: Seconds between the end of one cycle and the next
            analysis_delay: Seconds between a match and the follow-up
            failure_threshold: Consecutive failures that open the circuit
            cooldown: Seconds the circuit stays open
            processed_ttl: Forget processed ids after this many seconds (None = never)
            on_complete: Listener for complete() events
            id_of: Extracts the entity id from a polled item
            scheduler: Timer/clock source
            name: Used in logs and the ops API
        """
        self.actor_id = actor_id
        self.name = name
        self._since_query = since_query
        self._get_details = get_details
        self._predicate = predicate
        self._on_action = on_action
        self._id_of = id_of
        self._poll_interval = (
            poll_interval if poll_interval is not None else settings.watchdog_poll_interval
        )
        self._analysis_delay = (
            analysis_delay if analysis_delay is not None else settings.watchdog_analysis_delay
        )
        if processed_ttl is None:
            processed_ttl = settings.watchdog_processed_ttl

        self._scheduler = scheduler or ThreadingScheduler()
        self.breaker = CircuitBreaker(
            threshold=failure_threshold if failure_threshold is not None else settings.watchdog_failure_threshold,
            cooldown=cooldown if cooldown is not None else settings.watchdog_cooldown,
            name=name,
        )
        self._processed = ProcessedIdSet(ttl=processed_ttl, clock=self._scheduler.now)
        self._poll_timer = ScopedTimer(self._scheduler, name=f"{name}:poll")
        self._delay_timer = ScopedTimer(self._scheduler, name=f"{name}:delay")

        self._serial = threading.RLock()
        self._lock = threading.RLock()
        self._state = PollerState.IDLE
        self._running = False
        self._stopped = False
        self._watermark = self._utcnow()
        self._pending_id: Optional[Hashable] = None
        self._last_fired_id: Optional[Hashable] = None
        self._completion_listeners: List[CompletionListener] = []
        if on_complete is not None:
            self._completion_listeners.append(on_complete)

    # =========================================================================
    # Lifecycle
    # =========================================================================

    def start(self) -> None:
        """Begin polling; the first cycle runs immediately."""
        with self._lock:
            if self._stopped:
                raise RuntimeError(f"Watchdog '{self.name}' was stopped and cannot be restarted")
            if self._running:
                return
            self._running = True
            self._state = PollerState.POLLING
            self._poll_timer.schedule(0, self._tick)
        logger.info(f"Watchdog '{self.name}' started for actor {self.actor_id}")

    def stop(self) -> None:
        """Cancel polling and any pending follow-up. Idempotent."""
        with self._lock:
            self._stopped = True
            self._running = False
            self._state = PollerState.IDLE
            self._pending_id = None
        try:
            self._poll_timer.cancel()
        finally:
            self._delay_timer.cancel()
        logger.info(f"Watchdog '{self.name}' stopped")

    def __enter__(self) -> "WatchdogPoller":
        self.start()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.stop()

    # =========================================================================
    # Poll cycle
    # =========================================================================

    def poll_once(self) -> Optional[Hashable]:
        """
        Run one poll cycle.

        Returns:
            The id for which a follow-up was scheduled, or None
        """
        with self._serial:
            if self._stopped:
                return None

            now = self._scheduler.now()
            if not self.breaker.allow_request(now):
                logger.debug(f"Watchdog '{self.name}': circuit open, skipping poll")
                return None

            try:
                items = self._since_query(self.actor_id, self._watermark)
                if items is None:
                    raise ValueError("since_query returned no result")
                items = list(items)
            except Exception as e:
                logger.debug(f"Watchdog '{self.name}' poll failed: {e}")
                self.breaker.record_failure(self._scheduler.now())
                return None

            self.breaker.record_success()
            with self._lock:
                if self._stopped:
                    return None
                # Advanced on every successful poll, match or not
                self._watermark = self._utcnow()
                match = self._select_trigger(items)
                if match is None:
                    return None
                self._state = PollerState.TRIGGER_MATCHED
                replaced = self._pending_id
                self._pending_id = match
                self._delay_timer.schedule(
                    self._analysis_delay,
                    lambda entity_id=match: self._on_delay_elapsed(entity_id),
                )
                self._state = PollerState.DELAY_SCHEDULED

            if replaced is not None and replaced != match:
                logger.info(f"Watchdog '{self.name}': {match} supersedes pending {replaced}")
            logger.info(
                f"Watchdog '{self.name}': found {match}, follow-up in {self._analysis_delay:.1f}s"
            )
            return match

    def _select_trigger(self, items: List[Any]) -> Optional[Hashable]:
        for item in items:
            if not self._predicate(item, self.actor_id):
                continue
            entity_id = self._id_of(item)
            if entity_id in self._processed:
                continue
            return entity_id
        return None

    def _tick(self) -> None:
        try:
            self.poll_once()
        finally:
            with self._lock:
                if self._running:
                    self._poll_timer.schedule(self._poll_interval, self._tick)

    # =========================================================================
    # Follow-up
    # =========================================================================

    def _on_delay_elapsed(self, entity_id: Hashable) -> None:
        with self._serial:
            with self._lock:
                if self._stopped:
                    return
                if self._pending_id == entity_id:
                    self._pending_id = None
            if entity_id in self._processed:
                logger.info(f"Watchdog '{self.name}': {entity_id} already processed, skipping")
                self._settle()
                return
            self._fire(entity_id)

    def trigger_manually(self, entity_id: Hashable) -> Optional[Any]:
        """
        Fetch details and run the action now, ignoring predicate and dedup.

        Returns:
            The fetched details, or None if they could not be fetched
        """
        with self._serial:
            if self._stopped:
                logger.warning(f"Watchdog '{self.name}' is stopped; ignoring manual trigger")
                return None
            logger.info(f"Watchdog '{self.name}': manual trigger for {entity_id}")
            return self._fire(entity_id)

    def _fire(self, entity_id: Hashable) -> Optional[Any]:
        with self._lock:
            self._state = PollerState.ACTION_FIRED
        try:
            details = self._get_details(entity_id)
        except Exception as e:
            logger.error(f"Watchdog '{self.name}': failed to fetch details for {entity_id}: {e}")
            details = None

        if details is None:
            # Not marked processed; a later cycle may pick it up again
            self._settle()
            return None

        with self._lock:
            if self._stopped:
                self._state = PollerState.IDLE
                return None
            self._processed.add(entity_id)
            self._last_fired_id = entity_id
        try:
            self._on_action(details)
        except Exception as e:
            logger.error(f"Watchdog '{self.name}': follow-up action failed for {entity_id}: {e}")
        finally:
            self._settle()
        return details

    def _settle(self) -> None:
        with self._lock:
            if self._pending_id is not None:
                self._state = PollerState.DELAY_SCHEDULED
            else:
                self._state = PollerState.POLLING if self._running else PollerState.IDLE

    # =========================================================================
    # Completion
    # =========================================================================

    def add_completion_listener(self, listener: CompletionListener) -> Callable[[], None]:
        """Register listener(entity_id); returns an unsubscribe function."""
        with self._lock:
            self._completion_listeners.append(listener)

        def remove():
            with self._lock:
                if listener in self._completion_listeners:
                    self._completion_listeners.remove(listener)

        return remove

    def complete(self, entity_id: Hashable) -> None:
        """
        Signal that the follow-up for entity_id was handled (confirmed or dismissed).

        Ignored once the poller is stopped, so listeners never run after teardown.
        """
        with self._lock:
            if self._stopped:
                logger.info(f"Watchdog '{self.name}' is stopped; ignoring completion of {entity_id}")
                return
            listeners = list(self._completion_listeners)
        for listener in listeners:
            try:
                listener(entity_id)
            except Exception as e:
                logger.warning(f"Watchdog '{self.name}': completion listener failed: {e}")

    # =========================================================================
    # Introspection
    # =========================================================================

    @property
    def state(self) -> PollerState:
        with self._lock:
            return self._state

    @property
    def watermark(self) -> datetime:
        with self._lock:
            return self._watermark

    @property
    def pending_id(self) -> Optional[Hashable]:
        with self._lock:
            return self._pending_id

    def is_processed(self, entity_id: Hashable) -> bool:
        return entity_id in self._processed

    def status(self) -> Dict[str, Any]:
        now = self._scheduler.now()
        breaker = self.breaker.snapshot(now)
        with self._lock:
            return {
                "name": self.name,
                "actor_id": self.actor_id,
                "state": self._state.value,
                "running": self._running,
                "circuit_open": breaker["state"] == "open",
                "consecutive_errors": breaker["consecutive_errors"],
                "open_until": breaker["open_until"],
                "watermark": self._watermark.isoformat(),
                "pending_id": self._pending_id,
                "last_fired_id": self._last_fired_id,
                "processed_count": len(self._processed),
            }

    def _utcnow(self) -> datetime:
        return datetime.fromtimestamp(self._scheduler.now(), tz=timezone.utc)
