"""Background webhook processing — queue handoff from the HTTP boundary.

The route handler verifies, claims and enqueues an event, then returns
immediately; it never waits on business processing. EventWorker pulls events
from its queue, dispatches them, and settles the claim:

- handled / unknown type -> commit (pending -> processed)
- handler failed         -> release (pending -> unseen) + dead-letter

Every outcome is published on ``results`` (bounded; oldest dropped when full)
so callers can observe completion without holding the original request.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass

from storesync.errors import DeduplicationStoreError, HandlerError
from storesync.webhooks.dead_letter import DeadLetterSink
from storesync.webhooks.dispatcher import DispatchStatus, EventDispatcher
from storesync.webhooks.events import WebhookEvent
from storesync.webhooks.idempotency import EventDeduplicator

logger = logging.getLogger(__name__)


@dataclass
class WorkResult:
    """Completion record for one processed event."""

    event_id: str
    event_type: str
    status: DispatchStatus
    error: HandlerError | None = None
    duration_ms: float = 0.0


class EventWorker:
    """Single consumer task draining the webhook work queue."""

    def __init__(
        self,
        dispatcher: EventDispatcher,
        deduplicator: EventDeduplicator,
        *,
        dead_letter: DeadLetterSink | None = None,
        queue_size: int = 1000,
        results_size: int = 1000,
    ):
        self.dispatcher = dispatcher
        self.deduplicator = deduplicator
        self.dead_letter = dead_letter
        self._queue: asyncio.Queue[WebhookEvent] = asyncio.Queue(maxsize=queue_size)
        self.results: asyncio.Queue[WorkResult] = asyncio.Queue(maxsize=results_size)
        self.counts: dict[str, int] = {
            "enqueued": 0,
            "handled": 0,
            "unknown": 0,
            "failed": 0,
        }
        self._task: asyncio.Task | None = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    @property
    def backlog(self) -> int:
        return self._queue.qsize()

    def submit(self, event: WebhookEvent) -> bool:
        """Enqueue a claimed event. Returns False when the queue is full."""
        try:
            self._queue.put_nowait(event)
        except asyncio.QueueFull:
            logger.warning("Webhook queue full (%d), rejecting %s", self._queue.maxsize, event.id)
            return False
        self.counts["enqueued"] += 1
        return True

    async def process(self, event: WebhookEvent) -> WorkResult:
        """Dispatch one event and settle its claim."""
        start = time.monotonic()
        dispatched = await self.dispatcher.dispatch_async(event)

        try:
            if dispatched.ok:
                await asyncio.to_thread(self.deduplicator.commit, event.id)
            else:
                await asyncio.to_thread(self.deduplicator.release, event.id)
        except DeduplicationStoreError:
            # Claim stays pending; the lease expiry makes it re-claimable.
            logger.error("Could not settle claim for %s", event.id, exc_info=True)

        if dispatched.error is not None and self.dead_letter is not None:
            await asyncio.to_thread(self.dead_letter.send, event, dispatched.error)

        self.counts[dispatched.status.value] += 1
        result = WorkResult(
            event_id=event.id,
            event_type=event.event_type,
            status=dispatched.status,
            error=dispatched.error,
            duration_ms=(time.monotonic() - start) * 1000,
        )
        self._publish(result)
        return result

    def _publish(self, result: WorkResult) -> None:
        try:
            self.results.put_nowait(result)
        except asyncio.QueueFull:
            # Drop oldest result to make room
            try:
                self.results.get_nowait()
                self.results.put_nowait(result)
            except (asyncio.QueueEmpty, asyncio.QueueFull):
                pass

    async def run(self) -> None:
        """Consume forever (until cancelled)."""
        logger.info("Webhook worker started")
        while True:
            event = await self._queue.get()
            try:
                await self.process(event)
            except Exception:
                logger.exception("Unexpected error processing webhook event %s", event.id)
            finally:
                self._queue.task_done()

    def start(self) -> None:
        if self.running:
            return
        self._task = asyncio.create_task(self.run(), name="storesync-webhook-worker")

    async def join(self) -> None:
        """Wait until every queued event has been processed."""
        await self._queue.join()

    async def stop(self, drain: bool = True) -> None:
        """Stop the consumer, optionally draining the queue first."""
        if drain and self.running:
            await self.join()
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        logger.info("Webhook worker stopped (counts=%s)", self.counts)
