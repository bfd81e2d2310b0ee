"""Tests for the webhook HTTP boundary.

Tests:
- 200 + handoff for a valid signed delivery
- 401 for missing/invalid signatures (no body details leaked)
- 200 for duplicates and unparseable events
- 503 when the claim store is down or the work queue is full
- End-to-end: purchase.confirmed updates live sales
"""

from __future__ import annotations

from unittest.mock import MagicMock

import pytest
from fastapi.testclient import TestClient

from storesync.errors import DeduplicationStoreError
from storesync.serve import create_app
from storesync.webhooks.dispatcher import EventDispatcher
from storesync.webhooks.events import EventType
from storesync.webhooks.idempotency import ClaimState, EventDeduplicator

PATH = "/webhooks/events"


def _order(event_id: str = "evt_1") -> dict:
    return {"id": event_id, "eventType": "order.created", "payload": {"orderId": "ord_1"}}


@pytest.fixture()
def handled() -> list[str]:
    return []


@pytest.fixture()
def app(settings, deduplicator, dead_letters, handled):
    dispatcher = EventDispatcher()
    dispatcher.register(EventType.ORDER_CREATED, lambda e: handled.append(e.id))
    return create_app(
        settings,
        dispatcher=dispatcher,
        deduplicator=deduplicator,
        dead_letter=dead_letters,
    )


class TestSignature:
    def test_missing_signature_401(self, app):
        client = TestClient(app)
        resp = client.post(PATH, content=b'{"id": "evt_1", "eventType": "order.created"}')
        assert resp.status_code == 401
        assert resp.json() == {"status": "unauthorized"}

    def test_invalid_signature_401(self, app, signed):
        client = TestClient(app)
        body, headers = signed(_order(), secret="wrong-secret")
        resp = client.post(PATH, content=body, headers=headers)
        assert resp.status_code == 401

    def test_tampered_body_401(self, app, deduplicator, signed):
        client = TestClient(app)
        body, headers = signed(_order())
        resp = client.post(PATH, content=body.replace(b"ord_1", b"ord_2"), headers=headers)
        assert resp.status_code == 401
        assert deduplicator.state("evt_1") == ClaimState.UNSEEN

    def test_no_secret_configured_401(self, settings, deduplicator, dead_letters, signed):
        settings.webhook_secret = ""
        app = create_app(settings, deduplicator=deduplicator, dead_letter=dead_letters)
        body, headers = signed(_order())
        resp = TestClient(app).post(PATH, content=body, headers=headers)
        assert resp.status_code == 401


class TestDelivery:
    def test_valid_delivery_processed(self, app, deduplicator, handled, signed):
        body, headers = signed(_order())
        with TestClient(app) as client:
            resp = client.post(PATH, content=body, headers=headers)
            assert resp.status_code == 200
            assert resp.json() == {"status": "received"}
        # lifespan shutdown drains the worker
        assert handled == ["evt_1"]
        assert deduplicator.state("evt_1") == ClaimState.PROCESSED

    def test_duplicate_acknowledged_not_reprocessed(self, app, handled, signed):
        body, headers = signed(_order())
        with TestClient(app) as client:
            first = client.post(PATH, content=body, headers=headers)
            second = client.post(PATH, content=body, headers=headers)
            assert first.status_code == 200
            assert second.status_code == 200
            status = client.get("/webhooks/status").json()
            assert status["deliveries"]["accepted"] == 1
            assert status["deliveries"]["duplicate"] == 1
        assert handled == ["evt_1"]

    def test_invalid_json_acknowledged(self, app, signed):
        body, headers = signed(b"{not json")
        resp = TestClient(app).post(PATH, content=body, headers=headers)
        assert resp.status_code == 200

    def test_missing_event_type_acknowledged(self, app, handled, signed):
        body, headers = signed({"id": "evt_1"})
        resp = TestClient(app).post(PATH, content=body, headers=headers)
        assert resp.status_code == 200
        assert handled == []

    @pytest.mark.parametrize("raw", [b"1e20", b"NaN"])
    def test_out_of_range_timestamp_acknowledged(self, app, deduplicator, handled, signed, raw):
        """A bad occurredAt is a terminal 200, not a 500 the sender would redeliver."""
        body, headers = signed(
            b'{"id": "evt_1", "eventType": "order.created", "occurredAt": ' + raw + b"}"
        )
        resp = TestClient(app).post(PATH, content=body, headers=headers)
        assert resp.status_code == 200
        assert resp.json() == {"status": "received"}
        assert handled == []
        assert deduplicator.state("evt_1") == ClaimState.UNSEEN

    def test_unknown_event_type_acknowledged(self, app, deduplicator, signed):
        body, headers = signed({"id": "evt_9", "eventType": "loyalty.points_added"})
        with TestClient(app) as client:
            assert client.post(PATH, content=body, headers=headers).status_code == 200
        assert deduplicator.state("evt_9") == ClaimState.PROCESSED

    def test_handler_failure_acknowledged_and_dead_lettered(
        self, settings, deduplicator, dead_letters, signed
    ):
        dispatcher = EventDispatcher()

        @dispatcher.on(EventType.ORDER_CREATED)
        def boom(event):
            raise RuntimeError("db down")

        app = create_app(
            settings, dispatcher=dispatcher, deduplicator=deduplicator, dead_letter=dead_letters
        )
        body, headers = signed(_order())
        with TestClient(app) as client:
            resp = client.post(PATH, content=body, headers=headers)
            assert resp.status_code == 200
            assert "db down" not in resp.text
        assert len(dead_letters.entries) == 1
        assert deduplicator.state("evt_1") == ClaimState.UNSEEN


class TestUnavailable:
    def test_store_down_503(self, settings, dead_letters, signed):
        store = MagicMock()
        store.claim.side_effect = DeduplicationStoreError("redis down")
        app = create_app(
            settings,
            dispatcher=EventDispatcher(),
            deduplicator=EventDeduplicator(store),
            dead_letter=dead_letters,
        )
        body, headers = signed(_order())
        resp = TestClient(app).post(PATH, content=body, headers=headers)
        assert resp.status_code == 503
        assert resp.json() == {"status": "unavailable"}

    def test_queue_full_503_releases_claim(self, app, deduplicator, monkeypatch, signed):
        monkeypatch.setattr(app.state.worker, "submit", lambda event: False)
        body, headers = signed(_order())
        resp = TestClient(app).post(PATH, content=body, headers=headers)
        assert resp.status_code == 503
        assert deduplicator.state("evt_1") == ClaimState.UNSEEN


class TestLiveSales:
    def test_purchase_confirmed_updates_totals(
        self, settings, deduplicator, dead_letters, signed
    ):
        app = create_app(settings, deduplicator=deduplicator, dead_letter=dead_letters)
        body, headers = signed({
            "id": "evt_p1",
            "eventType": "purchase.confirmed",
            "resourceId": "pur_1",
            "occurredAt": "2026-10-17T14:05:00Z",
            "payload": {"lineItems": [
                {"type": "product", "finalAmountCents": 1000, "title": "Mocha"},
                {"type": "product", "finalAmountCents": 500, "title": "Scone"},
                {"type": "tip", "finalAmountCents": 200},
            ]},
        })
        with TestClient(app) as client:
            assert client.post(PATH, content=body, headers=headers).status_code == 200
        live = app.state.sales.summary().as_dict()
        assert live["total_cents"] == 1500
        assert live["count"] == 1
        assert live["breakdown"] == {"14": 1500}
        assert live["top"][0] == {"key": "Mocha", "total_cents": 1000}

    def test_health(self, app):
        with TestClient(app) as client:
            resp = client.get("/health")
        assert resp.json() == {"status": "ok", "worker_running": True}
