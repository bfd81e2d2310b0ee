"""Error taxonomy for webhook ingestion and remote synchronization.

Webhook side:
- AuthenticationFailure: bad or missing signature (reject, never process)
- InvalidEventError: body verified but not a usable event document
- DeduplicationStoreError: claim store unreachable (sender must redeliver)
- HandlerError: business handler raised (logged, acknowledged anyway)

Remote side:
- TransientRemoteFailure: network error, 5xx, timeout (retried per policy)
- RateLimited: explicit 429 (honored wait, then retried)
- PermanentRemoteFailure: any other 4xx (surfaced immediately)
- ExhaustedRetries: wraps the last failure after max attempts

A duplicate delivery is not an error; it is the normal skip path.
"""

from __future__ import annotations


class StoresyncError(Exception):
    """Base class for all storesync errors."""


class AuthenticationFailure(StoresyncError):
    """Webhook signature missing or invalid."""


class InvalidEventError(StoresyncError):
    """Webhook body is not a well-formed event document."""


class DeduplicationStoreError(StoresyncError):
    """The processed-event store could not be read or written."""


class HandlerError(StoresyncError):
    """A registered handler raised while processing an event."""

    def __init__(self, event_id: str, event_type: str, cause: BaseException):
        self.event_id = event_id
        self.event_type = event_type
        self.cause = cause
        super().__init__(
            f"Handler for {event_type} failed on event {event_id}: "
            f"{type(cause).__name__}: {cause}"
        )


class RemoteFailure(StoresyncError):
    """A call to the remote API failed."""

    def __init__(self, message: str, status_code: int | None = None):
        self.status_code = status_code
        super().__init__(message)


class TransientRemoteFailure(RemoteFailure):
    """Network error, 5xx or timeout. Safe to retry for idempotent calls."""

    def __init__(
        self,
        message: str,
        status_code: int | None = None,
        *,
        timeout: bool = False,
    ):
        self.timeout = timeout
        super().__init__(message, status_code)


class RateLimited(RemoteFailure):
    """Remote signalled too many requests.

    ``retry_after_ms`` is the remote's wait hint, or None when absent.
    """

    def __init__(self, message: str, retry_after_ms: int | None = None):
        self.retry_after_ms = retry_after_ms
        super().__init__(message, 429)


class PermanentRemoteFailure(RemoteFailure):
    """Client-side rejection (4xx other than 429). Never retried."""


class ExhaustedRetries(StoresyncError):
    """Raised after the last allowed attempt failed."""

    def __init__(self, attempts: int, last_error: BaseException):
        self.attempts = attempts
        self.last_error = last_error
        super().__init__(
            f"Gave up after {attempts} attempts: "
            f"{type(last_error).__name__}: {last_error}"
        )
