"""Cursor-based pagination over B2 list endpoints.

Every list call in :mod:`b2client.api` accepts ``start`` (the cursor fields
of the previous page, forwarded untouched) and ``max_count`` and returns a
:class:`Page`. The helpers here drive such a call until the requested number
of items has been seen, the server reports the end, or a page comes back
empty.
"""

from __future__ import annotations

import enum
import inspect
import math
from dataclasses import dataclass
from typing import Any, AsyncIterator, Awaitable, Callable, Literal

from b2client.models import ListCursor, Page

ALL: Literal["all"] = "all"
DEFAULT_BATCH_SIZE = 1000

# fetch(start=<cursor fields or None>, max_count=<int>) -> Page
PageFetcher = Callable[..., Awaitable[Page]]
ItemCallback = Callable[[dict[str, Any]], Any]


class StopReason(str, enum.Enum):
    COUNT_REACHED = "count_reached"
    EXHAUSTED = "exhausted"
    EMPTY_PAGE = "empty_page"


@dataclass
class PaginationResult:
    """Summary of a finished (or abandoned) pagination run.

    ``last_cursor`` can be fed back as ``start=last_cursor.start`` to resume.
    """

    total_fetched: int = 0
    pages: int = 0
    last_cursor: ListCursor | None = None
    stopped_reason: StopReason | None = None


def _resolve_count(count: int | Literal["all"]) -> float:
    if count == ALL:
        return math.inf
    if isinstance(count, bool) or not isinstance(count, int) or count <= 0:
        raise ValueError(f"count must be a positive integer or ALL, got {count!r}")
    return count


async def iter_pages(
    fetch: PageFetcher,
    *,
    count: int | Literal["all"] = ALL,
    batch_size: int = DEFAULT_BATCH_SIZE,
    start: dict[str, Any] | None = None,
    result: PaginationResult | None = None,
) -> AsyncIterator[Page]:
    """Yield non-empty pages until one of the stop conditions holds.

    Each request asks for ``min(batch_size, remaining)`` items. Items beyond
    ``count`` are cut from the last page. Pass ``result`` to have it updated
    as pages arrive.

    Raises:
        ValueError: If ``count`` or ``batch_size`` is not positive.
    """
    limit = _resolve_count(count)
    if batch_size < 1:
        raise ValueError(f"batch_size must be positive, got {batch_size}")
    result = result if result is not None else PaginationResult()
    cursor_start = dict(start) if start else None

    while True:
        remaining = limit - result.total_fetched
        page = await fetch(start=cursor_start, max_count=int(min(batch_size, remaining)))
        result.pages += 1
        result.last_cursor = page.cursor

        items = page.items[: int(min(len(page.items), remaining))]
        result.total_fetched += len(items)
        if items:
            yield Page(items=items, cursor=page.cursor)

        if not page.items:
            result.stopped_reason = StopReason.EMPTY_PAGE
            return
        if page.cursor.stop:
            result.stopped_reason = StopReason.EXHAUSTED
            return
        if result.total_fetched >= limit:
            result.stopped_reason = StopReason.COUNT_REACHED
            return
        cursor_start = dict(page.cursor.start)


async def iter_items(
    fetch: PageFetcher,
    *,
    count: int | Literal["all"] = ALL,
    batch_size: int = DEFAULT_BATCH_SIZE,
    start: dict[str, Any] | None = None,
) -> AsyncIterator[dict[str, Any]]:
    """Lazily yield items one at a time, fetching pages on demand."""
    async for page in iter_pages(fetch, count=count, batch_size=batch_size, start=start):
        for item in page.items:
            yield item


async def paginate(
    fetch: PageFetcher,
    *,
    count: int | Literal["all"] = ALL,
    batch_size: int = DEFAULT_BATCH_SIZE,
    start: dict[str, Any] | None = None,
    on_item: ItemCallback | None = None,
) -> PaginationResult:
    """Fetch pages until satisfied, handing each item to ``on_item``.

    ``on_item`` may be a plain function or a coroutine function. Nothing is
    accumulated here; callers that want a list append from the callback.

    Returns:
        How many items were seen, the last cursor, and why the loop stopped.
    """
    result = PaginationResult()
    async for page in iter_pages(
        fetch, count=count, batch_size=batch_size, start=start, result=result
    ):
        if on_item is None:
            continue
        for item in page.items:
            outcome = on_item(item)
            if inspect.isawaitable(outcome):
                await outcome
    return result
