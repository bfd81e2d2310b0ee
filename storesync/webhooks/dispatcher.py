"""Webhook event dispatcher — routes events to handlers by event type.

Contract:
- One handler per known EventType; unknown tags are logged and acknowledged
  (forward compatibility), never treated as failure
- Handler exceptions are caught and reported as HandlerError in the result
- The dispatcher never retries; redelivery is the sender's business
- Deliveries for one resource may arrive out of order; handlers that apply
  state should gate on LatestWinsGuard (or their own version field)
"""

from __future__ import annotations

import asyncio
import inspect
import logging
import threading
from collections import OrderedDict
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Callable

from storesync.errors import HandlerError
from storesync.sync.aggregate import SalesAccumulator, Transaction
from storesync.webhooks.events import EventType, WebhookEvent

logger = logging.getLogger(__name__)

Handler = Callable[[WebhookEvent], Any]


class DispatchStatus(str, Enum):
    HANDLED = "handled"
    UNKNOWN = "unknown"  # no handler for this tag; acknowledged
    FAILED = "failed"


@dataclass
class DispatchResult:
    """Outcome of dispatching one event."""

    event_id: str
    event_type: str
    status: DispatchStatus
    error: HandlerError | None = None

    @property
    def ok(self) -> bool:
        return self.status != DispatchStatus.FAILED


def _as_event_type(event_type: EventType | str) -> EventType:
    try:
        return EventType(event_type)
    except ValueError:
        raise ValueError(f"Unknown event type: {event_type!r}") from None


class EventDispatcher:
    """Registry mapping event types to handlers."""

    def __init__(self) -> None:
        self._handlers: dict[EventType, Handler] = {}

    def register(self, event_type: EventType | str, handler: Handler) -> None:
        et = _as_event_type(event_type)
        if et in self._handlers:
            logger.warning("Replacing handler for %s", et.value)
        self._handlers[et] = handler

    def on(self, event_type: EventType | str) -> Callable[[Handler], Handler]:
        """Decorator form of register()."""

        def decorator(fn: Handler) -> Handler:
            self.register(event_type, fn)
            return fn

        return decorator

    def handler_for(self, event: WebhookEvent) -> Handler | None:
        kind = event.kind
        return self._handlers.get(kind) if kind is not None else None

    @property
    def event_types(self) -> list[str]:
        return [et.value for et in self._handlers]

    def _unknown(self, event: WebhookEvent) -> DispatchResult:
        logger.info(
            "No handler for webhook event %s (type=%s), acknowledged",
            event.id,
            event.event_type,
        )
        return DispatchResult(event.id, event.event_type, DispatchStatus.UNKNOWN)

    def _failed(self, event: WebhookEvent, exc: BaseException) -> DispatchResult:
        error = HandlerError(event.id, event.event_type, exc)
        logger.error(
            "Webhook handler failed: id=%s type=%s error=%s",
            event.id,
            event.event_type,
            exc,
            exc_info=exc,
        )
        return DispatchResult(event.id, event.event_type, DispatchStatus.FAILED, error)

    def dispatch(self, event: WebhookEvent) -> DispatchResult:
        """Run the handler for ``event`` synchronously."""
        handler = self.handler_for(event)
        if handler is None:
            return self._unknown(event)
        if inspect.iscoroutinefunction(handler):
            return self._failed(
                event, TypeError("async handler registered; use dispatch_async()")
            )

        logger.info("Dispatching webhook event: %s/%s", event.event_type, event.id)
        try:
            handler(event)
        except Exception as exc:
            return self._failed(event, exc)
        return DispatchResult(event.id, event.event_type, DispatchStatus.HANDLED)

    async def dispatch_async(self, event: WebhookEvent) -> DispatchResult:
        """Run the handler for ``event``; sync handlers run in a worker thread."""
        handler = self.handler_for(event)
        if handler is None:
            return self._unknown(event)

        logger.info("Dispatching webhook event: %s/%s", event.event_type, event.id)
        try:
            if inspect.iscoroutinefunction(handler):
                await handler(event)
            else:
                await asyncio.to_thread(handler, event)
        except Exception as exc:
            return self._failed(event, exc)
        return DispatchResult(event.id, event.event_type, DispatchStatus.HANDLED)


class LatestWinsGuard:
    """Drops events older than the newest already applied for the same resource.

    Remembers at most ``max_resources`` resources; the least recently updated
    one is forgotten first, after which any event for it is applied again.
    """

    def __init__(self, max_resources: int = 10_000) -> None:
        if max_resources < 1:
            raise ValueError("max_resources must be positive")
        self.max_resources = max_resources
        self._lock = threading.Lock()
        self._latest: OrderedDict[tuple[str, str], datetime] = OrderedDict()

    def __len__(self) -> int:
        return len(self._latest)

    def should_apply(self, event: WebhookEvent) -> bool:
        """True if ``event`` is not older than the last applied one (and records it)."""
        if event.occurred_at is None or not event.resource_id:
            return True
        key = (event.resource_type, event.resource_id)
        with self._lock:
            last = self._latest.get(key)
            if last is not None and event.occurred_at < last:
                logger.info(
                    "Stale webhook event %s for %s/%s ignored (%s < %s)",
                    event.id,
                    event.resource_type,
                    event.resource_id,
                    event.occurred_at.isoformat(),
                    last.isoformat(),
                )
                return False
            self._latest[key] = event.occurred_at
            self._latest.move_to_end(key)
            while len(self._latest) > self.max_resources:
                self._latest.popitem(last=False)
            return True


def sales_handler(accumulator: SalesAccumulator) -> Handler:
    """Handler folding purchase payloads into a caller-owned SalesAccumulator."""

    def handle(event: WebhookEvent) -> None:
        data = dict(event.payload)
        data.setdefault("id", event.resource_id or event.id)
        if "createdAt" not in data and event.occurred_at is not None:
            data["createdAt"] = event.occurred_at.isoformat()
        amount = accumulator.add(Transaction.from_api(data))
        logger.debug("Purchase %s added to sales totals: %d cents", data["id"], amount)

    return handle
