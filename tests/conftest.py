"""Shared fixtures for the storesync test suite."""

from __future__ import annotations

import hashlib
import hmac
import json
from typing import Any

import pytest

from storesync.config import Settings, get_settings
from storesync.sync.retry import RetryExecutor, RetryPolicy
from storesync.webhooks.dead_letter import InMemoryDeadLetterQueue
from storesync.webhooks.idempotency import EventDeduplicator, InMemoryClaimStore

WEBHOOK_SECRET = "whsec-test-secret"


@pytest.fixture(autouse=True)
def _clear_settings_cache():
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


@pytest.fixture()
def settings() -> Settings:
    return Settings(
        api_base_url="https://store.test/api",
        api_key="test-key",
        location_id="LOC1",
        webhook_secret=WEBHOOK_SECRET,
        redis_url="redis://localhost:6379/15",
        _env_file=None,
    )


@pytest.fixture()
def deduplicator() -> EventDeduplicator:
    return EventDeduplicator(InMemoryClaimStore(), pending_lease_seconds=60)


@pytest.fixture()
def dead_letters() -> InMemoryDeadLetterQueue:
    return InMemoryDeadLetterQueue()


@pytest.fixture()
def sleeps() -> list[float]:
    """Records sleep() calls instead of sleeping."""
    return []


@pytest.fixture()
def executor(sleeps: list[float]) -> RetryExecutor:
    policy = RetryPolicy(max_attempts=3, base_delay_ms=1000, backoff_multiplier=2.0)
    return RetryExecutor(policy, sleep=sleeps.append)


def _signed(
    data: dict[str, Any] | bytes, secret: str = WEBHOOK_SECRET
) -> tuple[bytes, dict[str, str]]:
    body = data if isinstance(data, bytes) else json.dumps(data).encode()
    signature = hmac.new(secret.encode(), body, hashlib.sha256).hexdigest()
    return body, {"Content-Type": "application/json", "X-Webhook-Signature": signature}


@pytest.fixture()
def signed():
    """signed(data_or_bytes, secret=...) -> (body, headers) with a valid signature."""
    return _signed
