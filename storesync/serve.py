"""FastAPI app serving the webhook endpoint.

The worker task lives for the duration of the app lifespan: started on
startup, drained and stopped on shutdown.

Run with:
    uvicorn storesync.serve:app --port 8000
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI

from storesync.config import Settings, get_settings
from storesync.sync.aggregate import SalesAccumulator, by_title, hour_of_day
from storesync.webhooks.dead_letter import DeadLetterSink, RedisDeadLetterQueue
from storesync.webhooks.dispatcher import EventDispatcher, sales_handler
from storesync.webhooks.events import EventType
from storesync.webhooks.handlers import WebhookReceiver, register_webhook_routes
from storesync.webhooks.idempotency import EventDeduplicator, RedisClaimStore
from storesync.webhooks.worker import EventWorker

logger = logging.getLogger(__name__)


def default_dispatcher(sales: SalesAccumulator) -> EventDispatcher:
    """Dispatcher with the built-in live-sales handler."""
    dispatcher = EventDispatcher()
    dispatcher.register(EventType.PURCHASE_CONFIRMED, sales_handler(sales))
    return dispatcher


def create_app(
    settings: Settings | None = None,
    *,
    dispatcher: EventDispatcher | None = None,
    deduplicator: EventDeduplicator | None = None,
    dead_letter: DeadLetterSink | None = None,
) -> FastAPI:
    """Build the webhook app. Anything not passed in is built from settings."""
    settings = settings or get_settings()

    sales = SalesAccumulator(bucket=hour_of_day, rank_key=by_title)
    if dispatcher is None:
        dispatcher = default_dispatcher(sales)
    if deduplicator is None:
        deduplicator = EventDeduplicator(
            RedisClaimStore(
                settings.redis_url,
                processed_retention_seconds=settings.processed_retention_seconds,
            ),
            pending_lease_seconds=settings.pending_lease_seconds,
        )
    if dead_letter is None:
        dead_letter = RedisDeadLetterQueue(settings.redis_url, stream=settings.dead_letter_stream)

    worker = EventWorker(
        dispatcher,
        deduplicator,
        dead_letter=dead_letter,
        queue_size=settings.queue_size,
    )
    receiver = WebhookReceiver(
        secret=settings.webhook_secret,
        deduplicator=deduplicator,
        worker=worker,
        signature_header=settings.signature_header,
        timestamped=settings.timestamped_signatures,
        tolerance_seconds=settings.timestamp_tolerance_seconds,
    )

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if not settings.webhook_secret:
            logger.warning("STORESYNC_WEBHOOK_SECRET not set, every webhook will get 401")
        worker.start()
        try:
            yield
        finally:
            await worker.stop(drain=True)

    app = FastAPI(title="storesync", lifespan=lifespan)
    app.state.settings = settings
    app.state.receiver = receiver
    app.state.worker = worker
    app.state.sales = sales

    register_webhook_routes(app, receiver, settings.webhook_path)

    @app.get("/sales/live")
    async def live_sales():
        """Running totals from purchase.confirmed webhooks since startup."""
        return sales.summary().as_dict()

    @app.get("/health")
    async def health():
        return {"status": "ok", "worker_running": worker.running}

    return app


app = create_app()
