"""Sync jobs: inventory reconciliation and nightly sales summary.

Each job returns a JobReport for the operator: counts of updated / skipped /
failed items plus the terminal error when the job aborted early. A failure
while reading the remote collection aborts the job; a failure writing a
single item is counted and the job carries on with the rest.
"""

from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Hashable, Iterable

from storesync.errors import ExhaustedRetries, PermanentRemoteFailure, RemoteFailure
from storesync.sync.aggregate import (
    LineItem,
    SalesAccumulator,
    Transaction,
    by_title,
    hour_of_day,
    is_product_line,
)
from storesync.sync.client import INVENTORY_PATH, PURCHASES_PATH, StoreApiClient
from storesync.sync.reconcile import LocalItem, RemoteItem, diff, merge_ops
from storesync.sync.retry import RetryExecutor

logger = logging.getLogger(__name__)


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


@dataclass
class JobReport:
    """Operator-facing outcome of one job run."""

    job: str
    updated: int = 0
    skipped: int = 0
    failed: int = 0
    error: str | None = None
    started_at: str = field(default_factory=_now)
    finished_at: str | None = None
    details: dict[str, Any] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return self.error is None and self.failed == 0

    def finish(self) -> JobReport:
        self.finished_at = _now()
        logger.info(
            "Job %s finished: updated=%d skipped=%d failed=%d error=%s",
            self.job,
            self.updated,
            self.skipped,
            self.failed,
            self.error,
        )
        return self

    def as_dict(self) -> dict[str, Any]:
        return {
            "job": self.job,
            "updated": self.updated,
            "skipped": self.skipped,
            "failed": self.failed,
            "error": self.error,
            "started_at": self.started_at,
            "finished_at": self.finished_at,
            "details": self.details,
        }


def _attempts(exc: BaseException) -> int:
    return exc.attempts if isinstance(exc, ExhaustedRetries) else 1


def _remote_item(data: Any) -> RemoteItem:
    try:
        return RemoteItem.from_api(data)
    except (KeyError, TypeError, ValueError, AttributeError) as e:
        raise PermanentRemoteFailure(f"malformed inventory item: {data!r:.200}") from e


def _transaction(data: Any) -> Transaction:
    try:
        return Transaction.from_api(data)
    except (KeyError, TypeError, ValueError, AttributeError) as e:
        raise PermanentRemoteFailure(f"malformed purchase: {data!r:.200}") from e


def run_inventory_sync(
    client: StoreApiClient,
    local_items: Iterable[LocalItem],
    *,
    executor: RetryExecutor | None = None,
    concurrency: int = 4,
    page_size: int = 100,
    inter_page_delay_ms: int = 0,
) -> JobReport:
    """Push local availability and price changes to the remote catalogue."""
    report = JobReport("inventory_sync")
    executor = executor or RetryExecutor()

    # Phase 1: read the remote catalogue
    fetcher = client.fetcher(
        INVENTORY_PATH, executor, page_size=page_size, inter_page_delay_ms=inter_page_delay_ms
    )
    remote_by_id: dict[str, RemoteItem] = {}
    try:
        for data in fetcher.fetch_all():
            item = _remote_item(data)
            remote_by_id[item.id] = item
    except (ExhaustedRetries, RemoteFailure) as e:
        logger.error(
            "Inventory sync aborted reading remote items (page %d, attempts=%d): %s",
            fetcher.pages_fetched + 1,
            _attempts(e),
            e,
        )
        report.error = str(e)
        return report.finish()

    # Phase 2: diff
    local_items = list(local_items)
    try:
        updates = merge_ops(diff(local_items, remote_by_id))
    except (ArithmeticError, ValueError) as e:
        logger.error("Inventory sync aborted: bad local item data: %r", e)
        report.error = f"bad local item data: {e!r}"
        return report.finish()
    report.skipped = len(local_items) - len(updates)
    report.details["remote_items"] = len(remote_by_id)
    report.details["local_items"] = len(local_items)

    if not updates:
        return report.finish()

    # Phase 3: write changed items in parallel
    def _apply(remote_id: str, fields: dict[str, Any]) -> dict:
        return executor.execute(
            lambda: client.update_item(remote_id, fields),
            description=f"update item {remote_id}",
        )

    failures: list[dict[str, Any]] = []
    with ThreadPoolExecutor(max_workers=max(concurrency, 1)) as pool:
        futures = {pool.submit(_apply, rid, fields): rid for rid, fields in updates.items()}
        for future in as_completed(futures):
            remote_id = futures[future]
            try:
                future.result()
                report.updated += 1
            except (ExhaustedRetries, RemoteFailure) as e:
                report.failed += 1
                failures.append({"remote_id": remote_id, "error": str(e)})
                logger.error(
                    "Inventory update failed: item=%s attempts=%d error=%s",
                    remote_id,
                    _attempts(e),
                    e,
                )
            except Exception as e:
                report.failed += 1
                failures.append({"remote_id": remote_id, "error": f"{type(e).__name__}: {e}"})
                logger.exception("Inventory update failed unexpectedly: item=%s", remote_id)
    if failures:
        report.details["failures"] = failures
    return report.finish()


def run_sales_summary(
    client: StoreApiClient,
    start: datetime,
    end: datetime,
    *,
    executor: RetryExecutor | None = None,
    eligible: Callable[[LineItem], bool] = is_product_line,
    bucket: Callable[[Transaction], Hashable | None] | None = hour_of_day,
    rank_key: Callable[[LineItem], Hashable] | None = by_title,
    top_n: int = 5,
    page_size: int = 100,
    inter_page_delay_ms: int = 0,
) -> JobReport:
    """Aggregate purchases in the closed window [start, end].

    The fixed window is the consistency boundary: purchases arriving during
    the walk fall outside it.
    """
    report = JobReport("sales_summary")
    fetcher = client.fetcher(
        PURCHASES_PATH, executor, page_size=page_size, inter_page_delay_ms=inter_page_delay_ms
    )
    acc = SalesAccumulator(eligible=eligible, bucket=bucket, rank_key=rank_key, top_n=top_n)
    filters = {"createdFrom": start.isoformat(), "createdTo": end.isoformat()}

    try:
        for data in fetcher.fetch_all(filters):
            acc.add(_transaction(data))
    except (ExhaustedRetries, RemoteFailure) as e:
        logger.error(
            "Sales summary aborted on page %d (attempts=%d): %s",
            fetcher.pages_fetched + 1,
            _attempts(e),
            e,
        )
        report.error = str(e)
        return report.finish()

    summary = acc.summary()
    report.details["window"] = {"start": start.isoformat(), "end": end.isoformat()}
    report.details["summary"] = summary.as_dict()
    return report.finish()
