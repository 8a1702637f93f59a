"""
Online/offline signal for offline-capable views.
"""
import logging
import threading
from typing import Callable, List, Optional

import requests

from config.settings import settings

logger = logging.getLogger("offline.connectivity")

Listener = Callable[[bool], None]


class ConnectivityMonitor:
    """
    Holds the current connectivity status and notifies subscribers on change.

    Status is pushed by the host (set_online) or derived from an HTTP check.
    Listeners are called outside the lock, in subscription order.
    """

    def __init__(self, online: bool = True, check_url: Optional[str] = None, check_timeout: float = 3.0):
        self._online = online
        self._listeners: List[Listener] = []
        self._lock = threading.Lock()
        self._check_url = check_url or settings.connectivity_check_url
        self._check_timeout = check_timeout

    @property
    def is_online(self) -> bool:
        with self._lock:
            return self._online

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        """
        Register listener(online). Returns a function that unsubscribes it.
        """
        with self._lock:
            self._listeners.append(listener)

        def unsubscribe():
            with self._lock:
                if listener in self._listeners:
                    self._listeners.remove(listener)

        return unsubscribe

    def set_online(self, online: bool) -> None:
        """Update status; listeners fire only when it actually changes."""
        with self._lock:
            if self._online == online:
                return
            self._online = online
            listeners = list(self._listeners)
        logger.info(f"Connectivity changed: {'online' if online else 'offline'}")
        for listener in listeners:
            try:
                listener(online)
            except Exception as e:
                logger.warning(f"Connectivity listener failed: {e}")

    def check(self, url: Optional[str] = None) -> bool:
        """
        Check reachability with an HTTP HEAD and update the status.

        Any response (even 4xx/5xx) counts as online; connection errors and
        timeouts count as offline.
        """
        target = url or self._check_url
        if not target:
            return self.is_online
        try:
            requests.head(target, timeout=self._check_timeout)
            online = True
        except requests.RequestException as e:
            logger.debug(f"Connectivity check failed: {e}")
            online = False
        self.set_online(online)
        return online
