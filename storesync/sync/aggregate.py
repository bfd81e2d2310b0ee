"""Sales aggregation: fold purchases into summary metrics.

All amounts are integer cents. The fold state (SalesAccumulator) is owned by
whoever constructs it; there is no process-wide metrics singleton. A nightly
job builds one per run, a live dashboard builds one and feeds it from the
purchase.confirmed webhook handler.
"""

from __future__ import annotations

import threading
from dataclasses import dataclass, field
from datetime import datetime
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Callable, Hashable, Iterable, Mapping


@dataclass
class LineItem:
    type: str
    final_amount_cents: int
    title: str = ""
    quantity: int = 1

    @classmethod
    def from_api(cls, data: Mapping[str, Any]) -> LineItem:
        return cls(
            type=str(data.get("type", "")),
            final_amount_cents=int(data.get("finalAmountCents", 0) or 0),
            title=str(data.get("title") or data.get("name") or ""),
            quantity=int(data.get("quantity", 1) or 1),
        )


@dataclass
class Transaction:
    id: str
    created_at: datetime | None = None
    line_items: list[LineItem] = field(default_factory=list)

    @classmethod
    def from_api(cls, data: Mapping[str, Any]) -> Transaction:
        created = data.get("createdAt")
        return cls(
            id=str(data.get("id", "")),
            created_at=_parse_timestamp(created) if created else None,
            line_items=[LineItem.from_api(li) for li in data.get("lineItems") or []],
        )


def _parse_timestamp(value: Any) -> datetime | None:
    if isinstance(value, datetime):
        return value
    try:
        return datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    except ValueError:
        return None


# ---------------------------------------------------------------------------
# Built-in predicates, bucketing and ranking keys
# ---------------------------------------------------------------------------


def is_product_line(line: LineItem) -> bool:
    """Only product lines count toward revenue (tips, fees, etc. excluded)."""
    return line.type == "product"


def hour_of_day(transaction: Transaction) -> int | None:
    return transaction.created_at.hour if transaction.created_at else None


def by_title(line: LineItem) -> str:
    return line.title or "(untitled)"


# ---------------------------------------------------------------------------
# Summary + accumulator
# ---------------------------------------------------------------------------


@dataclass
class SalesSummary:
    total_cents: int = 0
    count: int = 0
    average_cents: int = 0
    breakdown: dict[Hashable, int] = field(default_factory=dict)
    top: list[tuple[Hashable, int]] = field(default_factory=list)

    def as_dict(self) -> dict[str, Any]:
        return {
            "total_cents": self.total_cents,
            "count": self.count,
            "average_cents": self.average_cents,
            "breakdown": {str(k): v for k, v in self.breakdown.items()},
            "top": [{"key": str(k), "total_cents": v} for k, v in self.top],
        }


def _rounded_average(total: int, count: int) -> int:
    if count == 0:
        return 0
    return int((Decimal(total) / Decimal(count)).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


class SalesAccumulator:
    """Running sales totals. Safe to feed from one thread and read from another."""

    def __init__(
        self,
        *,
        eligible: Callable[[LineItem], bool] = is_product_line,
        bucket: Callable[[Transaction], Hashable | None] | None = None,
        rank_key: Callable[[LineItem], Hashable] | None = None,
        top_n: int = 5,
    ):
        self._eligible = eligible
        self._bucket = bucket
        self._rank_key = rank_key
        self._top_n = top_n
        self._lock = threading.Lock()
        self._total = 0
        self._count = 0
        self._breakdown: dict[Hashable, int] = {}
        self._ranking: dict[Hashable, int] = {}  # insertion order = first seen

    def add(self, transaction: Transaction | Mapping[str, Any]) -> int:
        """Fold one transaction in. Returns its eligible amount in cents."""
        if not isinstance(transaction, Transaction):
            transaction = Transaction.from_api(transaction)

        eligible_lines = [li for li in transaction.line_items if self._eligible(li)]
        amount = sum(li.final_amount_cents for li in eligible_lines)

        with self._lock:
            self._total += amount
            self._count += 1
            if self._bucket is not None:
                key = self._bucket(transaction)
                if key is not None:
                    self._breakdown[key] = self._breakdown.get(key, 0) + amount
            if self._rank_key is not None:
                for li in eligible_lines:
                    rk = self._rank_key(li)
                    self._ranking[rk] = self._ranking.get(rk, 0) + li.final_amount_cents
        return amount

    def extend(self, transactions: Iterable[Transaction | Mapping[str, Any]]) -> None:
        for tx in transactions:
            self.add(tx)

    def summary(self) -> SalesSummary:
        with self._lock:
            # sorted() is stable, so equal totals keep first-seen order
            ranked = sorted(self._ranking.items(), key=lambda kv: -kv[1])
            return SalesSummary(
                total_cents=self._total,
                count=self._count,
                average_cents=_rounded_average(self._total, self._count),
                breakdown=dict(self._breakdown),
                top=ranked[: max(self._top_n, 0)],
            )


def aggregate(
    transactions: Iterable[Transaction | Mapping[str, Any]],
    *,
    eligible: Callable[[LineItem], bool] = is_product_line,
    bucket: Callable[[Transaction], Hashable | None] | None = None,
    rank_key: Callable[[LineItem], Hashable] | None = None,
    top_n: int = 5,
) -> SalesSummary:
    """Fold a sequence of transactions into a SalesSummary. No I/O."""
    acc = SalesAccumulator(eligible=eligible, bucket=bucket, rank_key=rank_key, top_n=top_n)
    acc.extend(transactions)
    return acc.summary()
