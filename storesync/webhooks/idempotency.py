"""Webhook idempotency — claim/commit deduplication of event ids.

State machine per event id:

    unseen --try_claim--> pending --commit--> processed
       ^                     |
       +---- release / lease expiry

Contract:
- try_claim is an atomic check-and-set: two concurrent deliveries of the
  same id cannot both get True
- The caller processes only after a True claim, then commits on success
- A pending claim older than the lease (worker crashed between claim and
  commit) becomes claimable again. This is at-least-once, not exactly-once:
  after a crash an event may be processed twice
- Store errors raise DeduplicationStoreError (fail-closed): the HTTP
  boundary answers 503 and the sender redelivers later

Redis layout: key ``storesync:webhook:event:{event_id}`` holds ``pending``
(TTL = lease) or a JSON processed record (TTL = retention).
"""

from __future__ import annotations

import json
import logging
import threading
import time
from dataclasses import dataclass
from enum import Enum
from typing import Protocol

import redis

from storesync.errors import DeduplicationStoreError

logger = logging.getLogger(__name__)

_KEY_PREFIX = "storesync:webhook:event"
_PENDING = "pending"

DEFAULT_PENDING_LEASE_SECONDS = 600
DEFAULT_PROCESSED_RETENTION_SECONDS = 7 * 86400


class ClaimState(str, Enum):
    UNSEEN = "unseen"
    PENDING = "pending"
    PROCESSED = "processed"


@dataclass(frozen=True)
class ProcessedEventRecord:
    """Marker written exactly once per successfully processed event id."""
    event_id: str
    processed_at: float


class ClaimStore(Protocol):
    """Persistent key-value medium behind the deduplicator."""

    def claim(self, event_id: str, lease_seconds: int) -> bool:
        """Atomically move unseen (or lease-expired pending) -> pending."""
        ...

    def mark_processed(self, event_id: str, processed_at: float) -> None:
        ...

    def release(self, event_id: str) -> None:
        """Move pending -> unseen. No-op for any other state."""
        ...

    def get(self, event_id: str, lease_seconds: int) -> tuple[ClaimState, float | None]:
        """Current state and, for processed ids, the processed timestamp."""
        ...


class InMemoryClaimStore:
    """Process-local store. For tests and single-process deployments.

    Processed records expire after ``processed_retention_seconds``, like the
    Redis keys' TTL. Expired entries are swept every ``PRUNE_EVERY`` claims.
    """

    PRUNE_EVERY = 1000

    def __init__(
        self,
        processed_retention_seconds: int = DEFAULT_PROCESSED_RETENTION_SECONDS,
    ) -> None:
        self.processed_retention_seconds = processed_retention_seconds
        self._lock = threading.Lock()
        # event_id -> (state, since, expires_at)
        self._entries: dict[str, tuple[ClaimState, float, float]] = {}
        self._claims = 0

    def __len__(self) -> int:
        return len(self._entries)

    def _current(self, event_id: str) -> tuple[ClaimState, float | None]:
        entry = self._entries.get(event_id)
        if entry is None:
            return ClaimState.UNSEEN, None
        state, since, expires_at = entry
        if time.time() >= expires_at:
            return ClaimState.UNSEEN, None
        return state, since

    def _prune(self) -> None:
        now = time.time()
        expired = [k for k, (_, _, expires_at) in self._entries.items() if now >= expires_at]
        for event_id in expired:
            del self._entries[event_id]

    def claim(self, event_id: str, lease_seconds: int) -> bool:
        with self._lock:
            self._claims += 1
            if self._claims % self.PRUNE_EVERY == 0:
                self._prune()
            state, _ = self._current(event_id)
            if state != ClaimState.UNSEEN:
                return False
            now = time.time()
            self._entries[event_id] = (ClaimState.PENDING, now, now + lease_seconds)
            return True

    def mark_processed(self, event_id: str, processed_at: float) -> None:
        with self._lock:
            self._entries[event_id] = (
                ClaimState.PROCESSED,
                processed_at,
                processed_at + self.processed_retention_seconds,
            )

    def release(self, event_id: str) -> None:
        with self._lock:
            entry = self._entries.get(event_id)
            if entry and entry[0] == ClaimState.PENDING:
                del self._entries[event_id]

    def get(self, event_id: str, lease_seconds: int) -> tuple[ClaimState, float | None]:
        with self._lock:
            state, since = self._current(event_id)
            return state, since if state == ClaimState.PROCESSED else None


class RedisClaimStore:
    """Redis-backed store. SET NX PX gives the atomic claim and the lease."""

    def __init__(
        self,
        redis_url: str = "redis://localhost:6379/0",
        *,
        client: redis.Redis | None = None,
        processed_retention_seconds: int = DEFAULT_PROCESSED_RETENTION_SECONDS,
    ):
        self._redis_url = redis_url
        self._client = client
        self.processed_retention_seconds = processed_retention_seconds

    def _get_redis(self) -> redis.Redis:
        if self._client is None:
            self._client = redis.from_url(self._redis_url, decode_responses=True)
        return self._client

    @staticmethod
    def key(event_id: str) -> str:
        return f"{_KEY_PREFIX}:{event_id}"

    def claim(self, event_id: str, lease_seconds: int) -> bool:
        try:
            was_set = self._get_redis().set(
                self.key(event_id), _PENDING, nx=True, px=lease_seconds * 1000
            )
        except redis.RedisError as e:
            raise DeduplicationStoreError(f"claim failed for {event_id}: {e}") from e
        return bool(was_set)

    def mark_processed(self, event_id: str, processed_at: float) -> None:
        record = json.dumps({"state": ClaimState.PROCESSED.value, "processed_at": processed_at})
        try:
            self._get_redis().set(
                self.key(event_id), record, ex=self.processed_retention_seconds
            )
        except redis.RedisError as e:
            raise DeduplicationStoreError(f"commit failed for {event_id}: {e}") from e

    def release(self, event_id: str) -> None:
        key = self.key(event_id)
        try:
            with self._get_redis().pipeline() as pipe:
                pipe.watch(key)
                if pipe.get(key) != _PENDING:
                    pipe.unwatch()
                    return
                pipe.multi()
                pipe.delete(key)
                pipe.execute()
        except redis.WatchError:
            logger.info("Claim for %s changed during release, left as is", event_id)
        except redis.RedisError as e:
            raise DeduplicationStoreError(f"release failed for {event_id}: {e}") from e

    def get(self, event_id: str, lease_seconds: int) -> tuple[ClaimState, float | None]:
        try:
            raw = self._get_redis().get(self.key(event_id))
        except redis.RedisError as e:
            raise DeduplicationStoreError(f"lookup failed for {event_id}: {e}") from e
        if raw is None:
            return ClaimState.UNSEEN, None
        if raw == _PENDING:
            return ClaimState.PENDING, None
        try:
            record = json.loads(raw)
            return ClaimState.PROCESSED, float(record["processed_at"])
        except (ValueError, KeyError, TypeError):
            logger.warning("Unreadable processed record for %s: %r", event_id, raw)
            return ClaimState.PROCESSED, None


class EventDeduplicator:
    """Guarantees each event id is handled once per successful processing."""

    def __init__(
        self,
        store: ClaimStore | None = None,
        pending_lease_seconds: int = DEFAULT_PENDING_LEASE_SECONDS,
    ):
        if pending_lease_seconds <= 0:
            raise ValueError("pending_lease_seconds must be positive")
        self.store = store or InMemoryClaimStore()
        self.pending_lease_seconds = pending_lease_seconds

    def try_claim(self, event_id: str) -> bool:
        """Claim ``event_id`` for processing.

        Returns:
            True if the caller must process and then commit(); False if the
            event is already processed or claimed (skip, but still acknowledge).
        """
        if not event_id:
            raise ValueError("event_id is required for deduplication")
        claimed = self.store.claim(event_id, self.pending_lease_seconds)
        if not claimed:
            logger.info("Duplicate webhook skipped: %s", event_id)
        return claimed

    def commit(self, event_id: str) -> ProcessedEventRecord:
        """Mark a claimed event processed."""
        record = ProcessedEventRecord(event_id=event_id, processed_at=time.time())
        self.store.mark_processed(event_id, record.processed_at)
        return record

    def release(self, event_id: str) -> None:
        """Give a pending claim back so a later delivery can retry it."""
        self.store.release(event_id)

    def state(self, event_id: str) -> ClaimState:
        return self.store.get(event_id, self.pending_lease_seconds)[0]

    def record(self, event_id: str) -> ProcessedEventRecord | None:
        state, processed_at = self.store.get(event_id, self.pending_lease_seconds)
        if state != ClaimState.PROCESSED or processed_at is None:
            return None
        return ProcessedEventRecord(event_id=event_id, processed_at=processed_at)
