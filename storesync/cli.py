"""CLI for running sync jobs and the webhook server.

Usage:
    python -m storesync.cli inventory-sync --local-items items.json
    python -m storesync.cli sales-summary --date 2026-10-17
    python -m storesync.cli serve --port 8000

Job commands print the JobReport as JSON and exit 1 when the job failed.
"""

from __future__ import annotations

import argparse
import json
import logging
import sys
from datetime import date, datetime, time, timedelta, timezone
from pathlib import Path
from typing import Any

from storesync.config import Settings, get_settings
from storesync.sync.client import StoreApiClient
from storesync.sync.jobs import JobReport, run_inventory_sync, run_sales_summary
from storesync.sync.reconcile import LocalItem, to_cents
from storesync.sync.retry import RetryExecutor


def configure_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def _local_item(entry: Any, index: int) -> LocalItem:
    if not isinstance(entry, dict):
        raise ValueError(f"item #{index}: expected an object, got {type(entry).__name__}")
    if entry.get("id") in (None, ""):
        raise ValueError(f"item #{index}: missing 'id'")
    price = entry.get("price", "0")
    if price is None or isinstance(price, bool):
        raise ValueError(f"item {entry['id']}: invalid price {price!r}")
    try:
        to_cents(price)
    except (ArithmeticError, ValueError):
        raise ValueError(f"item {entry['id']}: invalid price {price!r}") from None
    try:
        stock_quantity = int(entry.get("stockQuantity") or 0)
    except (TypeError, ValueError):
        raise ValueError(
            f"item {entry['id']}: invalid stockQuantity {entry.get('stockQuantity')!r}"
        ) from None
    return LocalItem(
        id=str(entry["id"]),
        price=str(price),
        in_stock=bool(entry.get("inStock", False)),
        stock_quantity=stock_quantity,
        remote_id=str(entry["remoteId"]) if entry.get("remoteId") else None,
        name=str(entry.get("name") or ""),
    )


def load_local_items(path: Path) -> list[LocalItem]:
    """Read local items from a JSON array of camelCase objects.

    Raises:
        ValueError: if the file is not a JSON array or an entry is malformed.
    """
    raw = json.loads(path.read_text(encoding="utf-8"))
    if not isinstance(raw, list):
        raise ValueError("expected a JSON array of items")
    return [_local_item(entry, i) for i, entry in enumerate(raw)]


def day_window(day: date) -> tuple[datetime, datetime]:
    """[00:00, 23:59:59.999999] of ``day`` in UTC."""
    start = datetime.combine(day, time.min, tzinfo=timezone.utc)
    end = datetime.combine(day, time.max, tzinfo=timezone.utc)
    return start, end


def _emit(report: JobReport) -> None:
    print(json.dumps(report.as_dict(), indent=2, default=str))
    if not report.ok:
        sys.exit(1)


def cmd_inventory_sync(args: argparse.Namespace, settings: Settings) -> None:
    """Reconcile local inventory against the remote catalogue."""
    path = Path(args.local_items)
    if not path.exists():
        print(f"ERROR: local items file not found: {path}", file=sys.stderr)
        sys.exit(1)

    try:
        items = load_local_items(path)
    except ValueError as e:
        print(f"ERROR: invalid local items file {path}: {e}", file=sys.stderr)
        sys.exit(1)
    executor = RetryExecutor(settings.retry_policy())
    with StoreApiClient.from_settings(settings) as client:
        report = run_inventory_sync(
            client,
            items,
            executor=executor,
            concurrency=settings.update_concurrency,
            page_size=settings.page_size,
            inter_page_delay_ms=settings.inter_page_delay_ms,
        )
    _emit(report)


def cmd_sales_summary(args: argparse.Namespace, settings: Settings) -> None:
    """Aggregate one day of purchases (default: yesterday, UTC)."""
    if args.date:
        day = date.fromisoformat(args.date)
    else:
        day = datetime.now(timezone.utc).date() - timedelta(days=1)
    start, end = day_window(day)

    executor = RetryExecutor(settings.retry_policy())
    with StoreApiClient.from_settings(settings) as client:
        report = run_sales_summary(
            client,
            start,
            end,
            executor=executor,
            top_n=args.top,
            page_size=settings.page_size,
            inter_page_delay_ms=settings.inter_page_delay_ms,
        )
    _emit(report)


def cmd_serve(args: argparse.Namespace, settings: Settings) -> None:
    """Serve the webhook endpoint."""
    import uvicorn

    uvicorn.run("storesync.serve:app", host=args.host, port=args.port)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="storesync", description="Store API sync tools")
    sub = parser.add_subparsers(dest="command", required=True)

    p_inv = sub.add_parser("inventory-sync", help="Push local stock and prices to the store")
    p_inv.add_argument("--local-items", required=True, help="JSON file of local items")
    p_inv.set_defaults(func=cmd_inventory_sync)

    p_sales = sub.add_parser("sales-summary", help="Summarize one day of purchases")
    p_sales.add_argument("--date", help="Day to summarize (YYYY-MM-DD, UTC)")
    p_sales.add_argument("--top", type=int, default=5, help="Top-N products to list")
    p_sales.set_defaults(func=cmd_sales_summary)

    p_serve = sub.add_parser("serve", help="Run the webhook receiver")
    p_serve.add_argument("--host", default="0.0.0.0")
    p_serve.add_argument("--port", type=int, default=8000)
    p_serve.set_defaults(func=cmd_serve)

    return parser


def main(argv: list[str] | None = None) -> None:
    args = build_parser().parse_args(argv)
    settings = get_settings()
    configure_logging(settings.log_level)
    args.func(args, settings)


if __name__ == "__main__":
    main()
