"""Webhook HTTP handlers — FastAPI route for inbound store webhooks.

Each delivery:
1. Reads raw body (needed for HMAC verification)
2. Verifies the signature
3. Parses the event document
4. Claims the event id (duplicates are acknowledged, not reprocessed)
5. Hands the event to the background worker
6. Returns 200 immediately; processing happens after the response

Security contract:
- Never return error details to the webhook caller
- 401 only for signature failures
- 200 for duplicates, unknown event types and unparseable events (a retry
  cannot fix them, and redelivery storms cost more than the lost event)
- 503 when the claim store is down or the queue is full, so the sender
  redelivers later
- Log every delivery for the audit trail
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Mapping

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from storesync.errors import AuthenticationFailure, DeduplicationStoreError, InvalidEventError
from storesync.webhooks.events import parse_body
from storesync.webhooks.idempotency import EventDeduplicator
from storesync.webhooks.verification import DEFAULT_TIMESTAMP_TOLERANCE, authenticate
from storesync.webhooks.worker import EventWorker

logger = logging.getLogger(__name__)


@dataclass
class Receipt:
    """What the boundary decided for one delivery."""

    status_code: int
    outcome: str  # accepted, duplicate, unauthorized, invalid, unavailable
    event_id: str = ""
    event_type: str = ""

    def body(self) -> dict[str, str]:
        if self.status_code == 401:
            return {"status": "unauthorized"}
        if self.status_code >= 500:
            return {"status": "unavailable"}
        return {"status": "received"}


@dataclass
class WebhookReceiver:
    """Verification, claim and handoff for one webhook endpoint."""

    secret: str
    deduplicator: EventDeduplicator
    worker: EventWorker
    signature_header: str = "X-Webhook-Signature"
    timestamped: bool = False
    tolerance_seconds: int = DEFAULT_TIMESTAMP_TOLERANCE
    counts: dict[str, int] = field(default_factory=dict)

    def _audit(self, receipt: Receipt) -> Receipt:
        self.counts[receipt.outcome] = self.counts.get(receipt.outcome, 0) + 1
        logger.info(
            "WEBHOOK_AUDIT id=%s type=%s status=%s code=%d count=%d",
            receipt.event_id or "unknown",
            receipt.event_type or "unknown",
            receipt.outcome,
            receipt.status_code,
            self.counts[receipt.outcome],
        )
        return receipt

    async def receive(self, body: bytes, headers: Mapping[str, str]) -> Receipt:
        # 1. Verify signature over the raw bytes
        try:
            authenticate(
                body,
                headers,
                self.secret,
                self.signature_header,
                timestamped=self.timestamped,
                tolerance_seconds=self.tolerance_seconds,
            )
        except AuthenticationFailure:
            return self._audit(Receipt(401, "unauthorized"))

        # 2. Parse
        try:
            event = parse_body(body)
        except InvalidEventError as e:
            logger.warning("Unparseable webhook acknowledged: %s", e)
            return self._audit(Receipt(200, "invalid"))

        # 3. Claim
        try:
            claimed = await asyncio.to_thread(self.deduplicator.try_claim, event.id)
        except DeduplicationStoreError:
            logger.error("Dedup store unavailable for %s", event.id, exc_info=True)
            return self._audit(Receipt(503, "unavailable", event.id, event.event_type))
        if not claimed:
            return self._audit(Receipt(200, "duplicate", event.id, event.event_type))

        # 4. Hand off; never await processing here
        if not self.worker.submit(event):
            try:
                await asyncio.to_thread(self.deduplicator.release, event.id)
            except DeduplicationStoreError:
                logger.error("Could not release claim for %s", event.id, exc_info=True)
            return self._audit(Receipt(503, "unavailable", event.id, event.event_type))

        return self._audit(Receipt(200, "accepted", event.id, event.event_type))


async def _handle_webhook(request: Request, receiver: WebhookReceiver) -> JSONResponse:
    start = time.time()
    body = await request.body()
    receipt = await receiver.receive(body, dict(request.headers))
    elapsed_ms = (time.time() - start) * 1000
    logger.debug("Webhook acknowledged in %.1fms: %s", elapsed_ms, receipt.outcome)
    return JSONResponse(receipt.body(), status_code=receipt.status_code)


def register_webhook_routes(
    app: FastAPI,
    receiver: WebhookReceiver,
    path: str = "/webhooks/events",
) -> None:
    """Register the webhook endpoint and its status route on the app."""

    @app.post(path)
    async def store_webhook(request: Request):
        """Receive store webhooks (signature-verified)."""
        return await _handle_webhook(request, receiver)

    @app.get("/webhooks/status")
    async def webhook_status():
        """Delivery and processing counters."""
        return {
            "deliveries": dict(receiver.counts),
            "processing": dict(receiver.worker.counts),
            "backlog": receiver.worker.backlog,
        }

    logger.info("Webhook routes registered: %s", path)
