"""Dead-letter sinks for events whose handler failed.

The webhook path acknowledges failed events anyway (to stop redelivery
storms), so the dead-letter entry is the operator's record of what to replay.

RedisDeadLetterQueue appends to a Redis Stream via XADD with approximate
trimming. Like the rest of the fire-and-forget publishing code, it never
raises: a failed write is logged and dropped.
"""

from __future__ import annotations

import json
import logging
import time
from dataclasses import dataclass
from typing import Any, Protocol

import redis

from storesync.errors import HandlerError
from storesync.webhooks.events import WebhookEvent

logger = logging.getLogger(__name__)

DEFAULT_STREAM = "storesync:webhooks:dead"
DEFAULT_MAXLEN = 10_000


class DeadLetterSink(Protocol):
    def send(self, event: WebhookEvent, error: HandlerError) -> None:
        ...


@dataclass
class DeadLetter:
    event: WebhookEvent
    error: str
    failed_at: float


class InMemoryDeadLetterQueue:
    """Keeps dead letters in a list. Capped for memory safety."""

    MAX_ENTRIES = 1000

    def __init__(self) -> None:
        self.entries: list[DeadLetter] = []

    def send(self, event: WebhookEvent, error: HandlerError) -> None:
        self.entries.append(DeadLetter(event, str(error), time.time()))
        if len(self.entries) > self.MAX_ENTRIES:
            self.entries = self.entries[-self.MAX_ENTRIES:]


class RedisDeadLetterQueue:
    """Redis Stream dead-letter queue."""

    def __init__(
        self,
        redis_url: str = "redis://localhost:6379/0",
        *,
        stream: str = DEFAULT_STREAM,
        maxlen: int = DEFAULT_MAXLEN,
        client: redis.Redis | None = None,
    ):
        self._redis_url = redis_url
        self._client = client
        self.stream = stream
        self.maxlen = maxlen

    def _get_redis(self) -> redis.Redis:
        if self._client is None:
            self._client = redis.from_url(self._redis_url, decode_responses=True)
        return self._client

    def send(self, event: WebhookEvent, error: HandlerError) -> None:
        entry: dict[str, Any] = {
            "event_id": event.id,
            "event_type": event.event_type,
            "error": str(error)[:1000],
            "failed_at": time.strftime("%Y-%m-%dT%H:%M:%S+00:00", time.gmtime()),
            "event": json.dumps(event.to_dict(), default=str),
        }
        try:
            self._get_redis().xadd(self.stream, entry, maxlen=self.maxlen, approximate=True)
            logger.warning("Webhook event %s dead-lettered to %s", event.id, self.stream)
        except redis.RedisError:
            logger.error(
                "Dead-letter write failed: stream=%s event=%s",
                self.stream,
                event.id,
                exc_info=True,
            )
