"""
Call-log integration: HTTP client for the self-hosted get-call-logs function
and the wiring for the post-call follow-up watchdog.

A manager's answered call that lasted longer than the minimum duration
triggers a follow-up (e.g. a moderation form) after the AI analysis delay.
Completing the follow-up refreshes the call-history views.
"""
import logging
from datetime import datetime
from typing import Any, Callable, Dict, Iterable, List, Optional

import requests
from dotenv import load_dotenv
from tenacity import (
    retry,
    stop_after_attempt,
    wait_exponential,
    retry_if_exception_type,
)

from config.settings import settings
from crm_core.cache import TieredCache
from crm_core.errors import CallLogError, CallLogRateLimited
from crm_core.offline import PagedOfflineCache
from crm_core.timers import Scheduler
from .poller import WatchdogPoller

load_dotenv()

logger = logging.getLogger("watchdog.calls")

FUNCTION_NAME = "get-call-logs"


class CallLogClient:
    """
    Thin client for the get-call-logs function.

    Every request is a POST with an `action` field; responses carry a
    `success` flag. Only rate limiting is retried here; other repeated
    failures are handled by the watchdog's circuit breaker.
    """

    def __init__(
        self,
        base_url: Optional[str] = None,
        api_key: Optional[str] = None,
        timeout: Optional[float] = None,
        session: Optional[requests.Session] = None,
    ):
        self.base_url = (base_url or settings.call_logs_base_url).rstrip("/")
        self._api_key = api_key if api_key is not None else settings.call_logs_api_key
        self._timeout = timeout if timeout is not None else settings.call_logs_timeout
        self._session = session or requests.Session()

    def _get_headers(self) -> dict:
        headers = {"Content-Type": "application/json"}
        if self._api_key:
            headers["Authorization"] = f"Bearer {self._api_key}"
        return headers

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=1, max=10),
        retry=retry_if_exception_type(CallLogRateLimited),
        reraise=True,
    )
    def _post(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        """
        POST to the function and return the decoded body.

        Rate-limited (429) responses are retried with exponential backoff.

        Raises:
            CallLogError: On transport errors, HTTP errors or success=false
        """
        url = f"{self.base_url}/{FUNCTION_NAME}"
        try:
            response = self._session.post(
                url,
                json=payload,
                headers=self._get_headers(),
                timeout=self._timeout,
            )
            response.raise_for_status()
            data = response.json()
        except requests.HTTPError as e:
            status = e.response.status_code if e.response is not None else None
            if status == 429:
                logger.warning(f"Call-log API rate limit hit on {payload.get('action')}")
                raise CallLogRateLimited(f"{payload.get('action')} rate limited", status) from e
            raise CallLogError(f"{payload.get('action')} failed: HTTP {status}", status) from e
        except (requests.RequestException, ValueError) as e:
            raise CallLogError(f"{payload.get('action')} failed: {e}") from e

        if not isinstance(data, dict) or not data.get("success"):
            raise CallLogError(f"{payload.get('action')} returned success=false")
        return data

    def recent_for_manager(self, manager_id: str, since: datetime, limit: int = 5) -> List[Dict[str, Any]]:
        """Calls for manager_id that ended after since."""
        data = self._post({
            "action": "recent-for-manager",
            "managerId": manager_id,
            "since": since.isoformat(),
            "limit": limit,
        })
        calls = data.get("calls")
        if calls is None:
            raise CallLogError("recent-for-manager returned no calls field")
        return calls

    def get_call(self, call_id: str) -> Optional[Dict[str, Any]]:
        """Full call record with AI analysis, or None if missing."""
        data = self._post({"action": "get", "callId": call_id})
        return data.get("call")

    def list_calls(
        self,
        offset: int = 0,
        limit: int = 50,
        client_id: Optional[str] = None,
    ) -> Dict[str, Any]:
        """
        One page of call history.

        Returns:
            {"items": [...], "next_offset": int | None, "total": int}
        """
        payload: Dict[str, Any] = {"action": "list", "offset": offset, "limit": limit}
        if client_id:
            payload["filters"] = {"clientId": client_id}
        data = self._post(payload)
        items = data.get("calls") or []
        total = data.get("total") or 0
        next_offset = offset + len(items)
        return {
            "items": items,
            "next_offset": next_offset if items and next_offset < total else None,
            "total": total,
        }


def ended_call_predicate(min_duration: Optional[int] = None) -> Callable[[Dict[str, Any], Any], bool]:
    """
    Predicate for "this manager's answered call just ended".

    status == answered AND duration > min_duration AND manager_id == actor
    """
    threshold = min_duration if min_duration is not None else settings.call_min_duration

    def predicate(call: Dict[str, Any], manager_id: Any) -> bool:
        return (
            call.get("status") == "answered"
            and (call.get("duration_seconds") or 0) > threshold
            and call.get("manager_id") == manager_id
        )

    return predicate


def call_history_fetcher(
    client: CallLogClient,
    client_id: Optional[str] = None,
    page_size: int = 50,
) -> Callable[[int], Dict[str, Any]]:
    """Adapt list_calls to a PagedOfflineCache fetch function."""

    def fetch(offset: int) -> Dict[str, Any]:
        return client.list_calls(offset=offset, limit=page_size, client_id=client_id)

    return fetch


def build_post_call_watchdog(
    client: CallLogClient,
    manager_id: str,
    on_action: Callable[[Dict[str, Any]], None],
    views: Iterable[PagedOfflineCache] = (),
    cache: Optional[TieredCache] = None,
    scheduler: Optional[Scheduler] = None,
    **poller_options: Any,
) -> WatchdogPoller:
    """
    Create (but do not start) the post-call watchdog for one manager.

    On completion of a follow-up, each call-history view is refetched and
    cached call statistics are invalidated.
    """
    views = list(views)

    def since_query(actor_id: str, since: datetime) -> List[Dict[str, Any]]:
        return client.recent_for_manager(actor_id, since, limit=5)

    def on_complete(call_id: Any) -> None:
        logger.info(f"Follow-up for call {call_id} completed, refreshing call history")
        for view in views:
            view.invalidate()
        if cache is not None:
            cache.invalidate_pattern("call-stats:")

    return WatchdogPoller(
        actor_id=manager_id,
        since_query=since_query,
        get_details=client.get_call,
        predicate=ended_call_predicate(),
        on_action=on_action,
        on_complete=on_complete,
        scheduler=scheduler,
        name=f"post-call:{manager_id}",
        **poller_options,
    )
