"""Tests for the event deduplicator (claim / commit / release / lease expiry)."""

from __future__ import annotations

import json
import threading
import time
from unittest.mock import MagicMock

import pytest
import redis
from freezegun import freeze_time

from storesync.errors import DeduplicationStoreError
from storesync.webhooks.idempotency import (
    ClaimState,
    EventDeduplicator,
    InMemoryClaimStore,
    RedisClaimStore,
)


@pytest.fixture
def dedup() -> EventDeduplicator:
    return EventDeduplicator(InMemoryClaimStore(), pending_lease_seconds=60)


class TestStateMachine:
    """unseen -> pending -> processed, pending -> unseen on release/expiry."""

    def test_first_claim_wins(self, dedup):
        assert dedup.state("evt_1") == ClaimState.UNSEEN
        assert dedup.try_claim("evt_1") is True
        assert dedup.state("evt_1") == ClaimState.PENDING

    def test_second_claim_while_pending_rejected(self, dedup):
        assert dedup.try_claim("evt_1") is True
        assert dedup.try_claim("evt_1") is False

    def test_commit_marks_processed(self, dedup):
        dedup.try_claim("evt_1")
        record = dedup.commit("evt_1")
        assert record.event_id == "evt_1"
        assert dedup.state("evt_1") == ClaimState.PROCESSED
        assert dedup.record("evt_1") == record

    def test_processed_never_reclaimed(self, dedup):
        with freeze_time("2026-10-18 12:00:00") as frozen:
            dedup.try_claim("evt_1")
            dedup.commit("evt_1")
            frozen.tick(3600)
            assert dedup.try_claim("evt_1") is False

    def test_release_returns_to_unseen(self, dedup):
        dedup.try_claim("evt_1")
        dedup.release("evt_1")
        assert dedup.state("evt_1") == ClaimState.UNSEEN
        assert dedup.try_claim("evt_1") is True

    def test_release_does_not_undo_processed(self, dedup):
        dedup.try_claim("evt_1")
        dedup.commit("evt_1")
        dedup.release("evt_1")
        assert dedup.state("evt_1") == ClaimState.PROCESSED

    def test_record_none_until_processed(self, dedup):
        assert dedup.record("evt_1") is None
        dedup.try_claim("evt_1")
        assert dedup.record("evt_1") is None

    def test_ids_are_independent(self, dedup):
        assert dedup.try_claim("evt_1") is True
        assert dedup.try_claim("evt_2") is True

    def test_empty_id_rejected(self, dedup):
        with pytest.raises(ValueError):
            dedup.try_claim("")

    def test_lease_must_be_positive(self):
        with pytest.raises(ValueError):
            EventDeduplicator(InMemoryClaimStore(), pending_lease_seconds=0)


class TestLeaseExpiry:
    """A crashed worker's pending claim becomes claimable after the lease."""

    def test_pending_reclaimable_after_lease(self, dedup):
        with freeze_time("2026-10-18 12:00:00") as frozen:
            assert dedup.try_claim("evt_1") is True
            frozen.tick(59)
            assert dedup.try_claim("evt_1") is False
            frozen.tick(2)
            assert dedup.state("evt_1") == ClaimState.UNSEEN
            assert dedup.try_claim("evt_1") is True

    def test_reclaim_restarts_lease(self, dedup):
        with freeze_time("2026-10-18 12:00:00") as frozen:
            dedup.try_claim("evt_1")
            frozen.tick(61)
            assert dedup.try_claim("evt_1") is True
            frozen.tick(30)
            assert dedup.try_claim("evt_1") is False


class TestInMemoryRetention:
    """Processed records expire like the Redis TTL; expired entries are swept."""

    def test_processed_record_expires_after_retention(self):
        dedup = EventDeduplicator(
            InMemoryClaimStore(processed_retention_seconds=3600), pending_lease_seconds=60
        )
        with freeze_time("2026-10-18 12:00:00") as frozen:
            dedup.try_claim("evt_1")
            dedup.commit("evt_1")
            frozen.tick(3599)
            assert dedup.state("evt_1") == ClaimState.PROCESSED
            frozen.tick(2)
            assert dedup.state("evt_1") == ClaimState.UNSEEN
            assert dedup.record("evt_1") is None

    def test_expired_entries_pruned(self):
        store = InMemoryClaimStore(processed_retention_seconds=10)
        store.PRUNE_EVERY = 5
        with freeze_time("2026-10-18 12:00:00") as frozen:
            for i in range(4):
                store.claim(f"old_{i}", 60)
                store.mark_processed(f"old_{i}", time.time())
            assert len(store) == 4
            frozen.tick(11)
            store.claim("new", 60)  # fifth claim triggers the sweep
            assert len(store) == 1
            assert store.get("new", 60)[0] == ClaimState.PENDING

    def test_live_entries_survive_prune(self):
        store = InMemoryClaimStore(processed_retention_seconds=3600)
        store.PRUNE_EVERY = 1
        store.claim("evt_1", 60)
        store.mark_processed("evt_1", time.time())
        store.claim("evt_2", 60)
        assert store.get("evt_1", 60)[0] == ClaimState.PROCESSED
        assert len(store) == 2


class TestConcurrentClaims:
    def test_exactly_one_thread_claims(self, dedup):
        results: list[bool] = []
        lock = threading.Lock()
        barrier = threading.Barrier(16)

        def worker():
            barrier.wait()
            claimed = dedup.try_claim("evt_race")
            with lock:
                results.append(claimed)

        threads = [threading.Thread(target=worker) for _ in range(16)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert results.count(True) == 1
        assert results.count(False) == 15


class TestRedisClaimStore:
    """Redis store with a mocked client."""

    def _store(self) -> tuple[RedisClaimStore, MagicMock]:
        client = MagicMock()
        return RedisClaimStore(client=client, processed_retention_seconds=3600), client

    def test_claim_uses_set_nx_with_lease(self):
        store, client = self._store()
        client.set.return_value = True
        assert store.claim("evt_1", 600) is True
        client.set.assert_called_once_with(
            "storesync:webhook:event:evt_1", "pending", nx=True, px=600_000
        )

    def test_claim_existing_key_returns_false(self):
        store, client = self._store()
        client.set.return_value = None
        assert store.claim("evt_1", 600) is False

    def test_claim_redis_down_raises(self):
        store, client = self._store()
        client.set.side_effect = redis.ConnectionError("down")
        with pytest.raises(DeduplicationStoreError):
            store.claim("evt_1", 600)

    def test_mark_processed_writes_record_with_retention(self):
        store, client = self._store()
        store.mark_processed("evt_1", 1700000000.0)
        args, kwargs = client.set.call_args
        assert args[0] == "storesync:webhook:event:evt_1"
        assert json.loads(args[1]) == {"state": "processed", "processed_at": 1700000000.0}
        assert kwargs == {"ex": 3600}

    def test_get_states(self):
        store, client = self._store()
        client.get.return_value = None
        assert store.get("evt_1", 600) == (ClaimState.UNSEEN, None)
        client.get.return_value = "pending"
        assert store.get("evt_1", 600) == (ClaimState.PENDING, None)
        client.get.return_value = json.dumps({"state": "processed", "processed_at": 12.5})
        assert store.get("evt_1", 600) == (ClaimState.PROCESSED, 12.5)

    def test_get_redis_down_raises(self):
        store, client = self._store()
        client.get.side_effect = redis.TimeoutError("slow")
        with pytest.raises(DeduplicationStoreError):
            store.get("evt_1", 600)

    def test_release_deletes_pending(self):
        store, client = self._store()
        pipe = client.pipeline.return_value.__enter__.return_value
        pipe.get.return_value = "pending"
        store.release("evt_1")
        pipe.watch.assert_called_once_with("storesync:webhook:event:evt_1")
        pipe.delete.assert_called_once_with("storesync:webhook:event:evt_1")
        pipe.execute.assert_called_once()

    def test_release_leaves_processed(self):
        store, client = self._store()
        pipe = client.pipeline.return_value.__enter__.return_value
        pipe.get.return_value = json.dumps({"state": "processed", "processed_at": 1.0})
        store.release("evt_1")
        pipe.delete.assert_not_called()
        pipe.unwatch.assert_called_once()

    def test_deduplicator_over_redis(self):
        store, client = self._store()
        client.set.side_effect = [True, None]
        dedup = EventDeduplicator(store, pending_lease_seconds=300)
        assert dedup.try_claim("evt_1") is True
        assert dedup.try_claim("evt_1") is False
