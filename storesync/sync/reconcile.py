"""Two-way inventory reconciliation.

Compares local items against the remote catalogue and emits the minimal set
of update operations. Only items with an established local-to-remote mapping
are compared; unmapped items are skipped, never created remotely.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from decimal import ROUND_HALF_UP, Decimal
from enum import Enum
from typing import Any, Iterable, Mapping

logger = logging.getLogger(__name__)


class OpKind(str, Enum):
    """What an UpdateOp changes on the remote item."""
    AVAILABILITY = "availability"
    PRICE = "price"


@dataclass
class LocalItem:
    """An item as held by the integrator's own system (price in major units)."""
    id: str
    price: Decimal | float | int | str
    in_stock: bool
    stock_quantity: int
    remote_id: str | None = None  # mapping key; None = not linked
    name: str = ""

    @property
    def desired_availability(self) -> bool:
        return bool(self.in_stock) and self.stock_quantity > 0


@dataclass
class RemoteItem:
    """An inventory item as stored remotely (price in cents)."""
    id: str
    price_cents: int
    available: bool
    name: str = ""

    @classmethod
    def from_api(cls, data: Mapping[str, Any]) -> RemoteItem:
        return cls(
            id=str(data["id"]),
            price_cents=int(data.get("priceCents", data.get("price", 0)) or 0),
            available=bool(data.get("available", data.get("isAvailable", False))),
            name=str(data.get("name", "")),
        )


@dataclass(frozen=True)
class UpdateOp:
    """One field-level change to push to a remote item."""
    remote_id: str
    local_id: str
    kind: OpKind
    fields: dict[str, Any] = field(default_factory=dict)


def to_cents(price: Decimal | float | int | str) -> int:
    """Convert a major-unit price to integer cents, rounding half up."""
    amount = Decimal(str(price)) * 100
    return int(amount.quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def diff(
    local_items: Iterable[LocalItem],
    remote_items_by_id: Mapping[str, RemoteItem],
) -> list[UpdateOp]:
    """Return the update operations needed to bring remote items in line.

    Ops come out in the order of ``local_items``; for one item the
    availability op precedes the price op. Items already matching produce
    nothing.
    """
    ops: list[UpdateOp] = []
    for local in local_items:
        if not local.remote_id:
            logger.debug("Skipping unmapped local item %s", local.id)
            continue
        remote = remote_items_by_id.get(local.remote_id)
        if remote is None:
            logger.info(
                "Skipping local item %s: mapped remote item %s not found",
                local.id,
                local.remote_id,
            )
            continue

        desired = local.desired_availability
        if desired != remote.available:
            ops.append(
                UpdateOp(remote.id, local.id, OpKind.AVAILABILITY, {"available": desired})
            )

        cents = to_cents(local.price)
        if cents != remote.price_cents:
            ops.append(UpdateOp(remote.id, local.id, OpKind.PRICE, {"priceCents": cents}))

    return ops


def merge_ops(ops: Iterable[UpdateOp]) -> dict[str, dict[str, Any]]:
    """Coalesce ops into one partial update document per remote item.

    Keeps first-seen order of remote ids so writes follow the diff order.
    """
    merged: dict[str, dict[str, Any]] = {}
    for op in ops:
        merged.setdefault(op.remote_id, {}).update(op.fields)
    return merged
