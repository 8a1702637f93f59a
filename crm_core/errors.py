"""
Exception hierarchy for the caching and change-detection core.

Degradable infrastructure errors (store unavailable, quota exceeded) are
absorbed by the components that raise them internally. Data errors
(offline, failed fetch) are surfaced to callers.
"""


class CoreError(Exception):
    """Base class for all errors raised by crm_core."""


class StoreUnavailable(CoreError):
    """The durable tier could not be reached or timed out."""


class StorageQuotaExceeded(CoreError):
    """A durable key/value store rejected a write because it is full."""

    def __init__(self, needed: int, limit: int):
        self.needed = needed
        self.limit = limit
        super().__init__(f"Storage quota exceeded: need {needed} bytes, limit {limit}")


class OfflineError(CoreError):
    """An explicit sync was requested while the device is offline."""


class FetchError(CoreError):
    """A live fetch failed and produced no usable data."""


class CallLogError(CoreError):
    """The self-hosted call-log API returned an error or an unusable payload."""

    def __init__(self, message: str, status_code=None):
        self.status_code = status_code
        super().__init__(message)


class CallLogRateLimited(CallLogError):
    """The call-log API answered 429; retried with backoff."""
