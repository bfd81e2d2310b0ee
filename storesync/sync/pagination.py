"""Paginated collection walker.

Walks a remote list endpoint page by page (page numbers, or an opaque cursor
when the remote supplies one) until a page reports ``has_more=False``.
Items are yielded lazily in page order. Each page call goes through the
RetryExecutor, and a fixed delay between pages keeps the walk under the
remote rate limiter.

There is no snapshot across a long walk: if the remote collection changes
mid-walk, items may be duplicated or missed. Callers needing a consistent
view must filter to a fixed window (e.g. a closed date range).
"""

from __future__ import annotations

import functools
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Generic, Iterator, TypeVar

from storesync.errors import PermanentRemoteFailure
from storesync.sync.retry import RetryExecutor

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass
class PageRequest:
    """One page request. Exactly one of ``page`` / ``cursor`` drives the walk."""

    page: int | None = 1
    cursor: str | None = None
    limit: int = 100
    filters: dict[str, Any] = field(default_factory=dict)


@dataclass
class PageResult(Generic[T]):
    """One page of results as returned by the remote."""

    items: list[T]
    has_more: bool
    next_cursor: str | None = None
    next_page: int | None = None


class PaginatedFetcher(Generic[T]):
    """Iterates every item of a paginated collection.

    ``fetch_page`` performs a single remote call for a PageRequest; it should
    raise the storesync remote errors so the executor can classify them.
    """

    def __init__(
        self,
        fetch_page: Callable[[PageRequest], PageResult[T]],
        executor: RetryExecutor | None = None,
        *,
        page_size: int = 100,
        inter_page_delay_ms: int = 0,
        max_pages: int | None = None,
        sleep: Callable[[float], Any] = time.sleep,
        name: str = "collection",
    ):
        if page_size < 1:
            raise ValueError("page_size must be positive")
        self._fetch_page = fetch_page
        self._executor = executor or RetryExecutor()
        self.page_size = page_size
        self.inter_page_delay_ms = max(inter_page_delay_ms, 0)
        self.max_pages = max_pages
        self._sleep = sleep
        self.name = name
        # Cursor of the last page fetched; persist it to resume a walk yourself.
        self.last_cursor: str | None = None
        self.pages_fetched = 0

    def fetch_all(self, filters: dict[str, Any] | None = None) -> Iterator[T]:
        """Yield every item, page after page, starting from the first page."""
        self.last_cursor = None
        self.pages_fetched = 0
        request = PageRequest(page=1, limit=self.page_size, filters=dict(filters or {}))

        while True:
            if self.pages_fetched and self.inter_page_delay_ms:
                self._sleep(self.inter_page_delay_ms / 1000)

            result = self._executor.execute(
                functools.partial(self._fetch_page, request),
                description=f"{self.name} page {request.cursor or request.page}",
            )
            self.pages_fetched += 1
            logger.debug(
                "Fetched %s page %d: %d items (has_more=%s)",
                self.name,
                self.pages_fetched,
                len(result.items),
                result.has_more,
            )
            yield from result.items

            if not result.has_more:
                return
            if self.max_pages is not None and self.pages_fetched >= self.max_pages:
                logger.warning(
                    "Stopping %s walk at max_pages=%d with more pages remaining",
                    self.name,
                    self.max_pages,
                )
                return
            request = self._next_request(request, result)

    def _next_request(self, current: PageRequest, result: PageResult[T]) -> PageRequest:
        if result.next_cursor:
            if result.next_cursor == current.cursor:
                raise PermanentRemoteFailure(
                    f"{self.name}: cursor did not advance ({result.next_cursor})"
                )
            self.last_cursor = result.next_cursor
            return PageRequest(
                page=None,
                cursor=result.next_cursor,
                limit=current.limit,
                filters=current.filters,
            )
        if current.cursor is not None:
            raise PermanentRemoteFailure(
                f"{self.name}: has_more without a next cursor"
            )
        current_page = current.page or 1
        next_page = result.next_page or current_page + 1
        if next_page <= current_page:
            raise PermanentRemoteFailure(
                f"{self.name}: page number did not advance ({current_page} -> {next_page})"
            )
        return PageRequest(page=next_page, limit=current.limit, filters=current.filters)
