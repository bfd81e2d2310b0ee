"""Remote store API client (httpx).

Wraps the list and item-update endpoints of the store API and maps HTTP
failures onto the storesync error taxonomy so the RetryExecutor can decide:

- 429                  -> RateLimited (Retry-After honored)
- 408, 5xx             -> TransientRemoteFailure
- timeouts             -> TransientRemoteFailure(timeout=True)
- connection errors    -> TransientRemoteFailure
- any other 4xx        -> PermanentRemoteFailure

All monetary fields are integer cents; rates are basis points.
"""

from __future__ import annotations

import logging
import time
from email.utils import parsedate_to_datetime
from typing import Any

import httpx

from storesync.errors import PermanentRemoteFailure, RateLimited, TransientRemoteFailure
from storesync.sync.pagination import PageRequest, PageResult, PaginatedFetcher
from storesync.sync.retry import RetryExecutor

logger = logging.getLogger(__name__)

PURCHASES_PATH = "/purchases"
INVENTORY_PATH = "/inventory/items"

LOCATION_HEADER = "X-Location-Id"

TRANSIENT_STATUS_CODES = {408, 500, 502, 503, 504}


def parse_retry_after(value: str | None) -> int | None:
    """Convert a Retry-After header (seconds or HTTP-date) to milliseconds."""
    if not value:
        return None
    value = value.strip()
    try:
        return max(int(float(value) * 1000), 0)
    except ValueError:
        pass
    try:
        when = parsedate_to_datetime(value)
    except (TypeError, ValueError):
        return None
    if when is None:
        return None
    return max(int((when.timestamp() - time.time()) * 1000), 0)


def raise_for_status(response: httpx.Response) -> None:
    """Raise the storesync error matching a non-2xx response."""
    status = response.status_code
    if status < 400:
        return
    where = f"{response.request.method} {response.request.url.path}"
    if status == 429:
        raise RateLimited(
            f"{where} rate limited",
            retry_after_ms=parse_retry_after(response.headers.get("Retry-After")),
        )
    if status in TRANSIENT_STATUS_CODES or status >= 500:
        raise TransientRemoteFailure(f"{where} returned HTTP {status}", status)
    raise PermanentRemoteFailure(f"{where} returned HTTP {status}", status)


class StoreApiClient:
    """Synchronous client for the store API, scoped to one location."""

    def __init__(
        self,
        base_url: str,
        api_key: str,
        location_id: str,
        *,
        timeout: float = 30.0,
        transport: httpx.BaseTransport | None = None,
    ):
        self.location_id = location_id
        self._http = httpx.Client(
            base_url=base_url,
            timeout=timeout,
            transport=transport,
            headers={
                "Authorization": f"Bearer {api_key}",
                "Accept": "application/json",
            },
        )

    @classmethod
    def from_settings(cls, settings: Any) -> StoreApiClient:
        return cls(
            settings.api_base_url,
            settings.api_key,
            settings.location_id,
            timeout=settings.request_timeout_seconds,
        )

    def close(self) -> None:
        self._http.close()

    def __enter__(self) -> StoreApiClient:
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.close()

    def _request(self, method: str, path: str, **kwargs: Any) -> httpx.Response:
        try:
            response = self._http.request(method, path, **kwargs)
        except httpx.TimeoutException as e:
            raise TransientRemoteFailure(f"{method} {path} timed out", timeout=True) from e
        except httpx.TransportError as e:
            raise TransientRemoteFailure(f"{method} {path} failed: {type(e).__name__}") from e
        raise_for_status(response)
        return response

    @staticmethod
    def _json(response: httpx.Response) -> Any:
        """Decoded body of a 2xx response; unreadable bodies are permanent failures."""
        try:
            return response.json()
        except ValueError as e:
            where = f"{response.request.method} {response.request.url.path}"
            raise PermanentRemoteFailure(
                f"{where} returned an unreadable body", response.status_code
            ) from e

    def list_page(self, path: str, request: PageRequest) -> PageResult[dict]:
        """Fetch one page of a list endpoint."""
        params: dict[str, Any] = {"locationId": self.location_id, "limit": request.limit}
        if request.cursor is not None:
            params["cursor"] = request.cursor
        elif request.page is not None:
            params["page"] = request.page
        params.update({k: v for k, v in request.filters.items() if v is not None})

        response = self._request("GET", path, params=params)
        body = self._json(response)
        if not isinstance(body, dict):
            raise PermanentRemoteFailure(f"GET {path}: expected a JSON object", response.status_code)
        items = body.get("items") or []
        pagination = body.get("pagination") or {}
        if not isinstance(items, list) or not isinstance(pagination, dict):
            raise PermanentRemoteFailure(f"GET {path}: malformed page", response.status_code)

        try:
            next_page = pagination.get("nextPage")
            if next_page is not None:
                next_page = int(next_page)
            elif pagination.get("page") is not None:
                next_page = int(pagination["page"]) + 1
        except (TypeError, ValueError) as e:
            raise PermanentRemoteFailure(
                f"GET {path}: bad page number in {pagination!r}", response.status_code
            ) from e

        return PageResult(
            items=list(items),
            has_more=bool(pagination.get("hasMore", False)),
            next_cursor=pagination.get("nextCursor"),
            next_page=next_page,
        )

    def update_item(self, item_id: str, fields: dict[str, Any]) -> dict:
        """Partially update one inventory item. Absolute values, so replay-safe."""
        response = self._request(
            "PATCH",
            f"{INVENTORY_PATH}/{item_id}",
            json=fields,
            headers={LOCATION_HEADER: self.location_id},
        )
        logger.info("Updated remote item %s: %s", item_id, sorted(fields))
        if not response.content:
            return {}
        return self._json(response)

    def fetcher(
        self,
        path: str,
        executor: RetryExecutor | None = None,
        *,
        page_size: int = 100,
        inter_page_delay_ms: int = 0,
        **kwargs: Any,
    ) -> PaginatedFetcher[dict]:
        """PaginatedFetcher over one of this client's list endpoints."""
        return PaginatedFetcher(
            lambda request: self.list_page(path, request),
            executor,
            page_size=page_size,
            inter_page_delay_ms=inter_page_delay_ms,
            name=path.strip("/"),
            **kwargs,
        )
