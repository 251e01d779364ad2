"""Page-number access emulated over a forward-only cursor listing.

The remote listing has no offsets and no total count. Reaching page N means
replaying the cursor chain from the first page, so every call costs
O(N) remote requests; nothing is cached between calls.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

from mailbox_sync.gmail.client import MAX_LIST_PAGE_SIZE, ListPage, RemoteListingClient

logger = logging.getLogger(__name__)

DEFAULT_COUNT_PAGE_CAP = 10


@dataclass(frozen=True)
class PageResult:
    """Items of one emulated page."""

    items: list[str]
    page: int
    has_next_page: bool
    has_previous_page: bool


@dataclass(frozen=True)
class CountResult:
    """Item count produced by walking the cursor chain.

    When ``approximate`` is True the walk stopped at the page cap while the
    provider still offered a cursor, so ``total`` is a lower bound.
    """

    total: int
    pages_walked: int
    approximate: bool


class CursorPageNavigator:
    """Walks a ``RemoteListingClient`` cursor chain from the start."""

    def __init__(self, *, client: RemoteListingClient) -> None:
        """Initialize the navigator.

        Args:
            client: Listing client bound to one account's access token.
        """
        self._client = client

    async def get_page(self, *, query: str, target_page: int, page_size: int) -> PageResult:
        """Return the ids of page ``target_page`` (1-based).

        Args:
            query: Remote search query.
            target_page: Page number to return, starting at 1.
            page_size: Items per page.

        Returns:
            PageResult; empty with ``has_next_page=False`` when the page lies
            beyond the available data.

        Raises:
            ValueError: If ``target_page`` or ``page_size`` is below 1.
        """
        if target_page < 1:
            raise ValueError(f"target_page must be >= 1, got {target_page}")
        if page_size < 1:
            raise ValueError(f"page_size must be >= 1, got {page_size}")

        cursor: str | None = None
        page = 1
        while True:
            listing = await self._client.list_ids(query=query, cursor=cursor, page_size=page_size)
            if page == target_page:
                return PageResult(
                    items=list(listing.ids),
                    page=page,
                    has_next_page=listing.next_cursor is not None,
                    has_previous_page=page > 1,
                )
            if listing.next_cursor is None:
                logger.debug("Page %d requested but data ends at page %d", target_page, page)
                return PageResult(
                    items=[],
                    page=target_page,
                    has_next_page=False,
                    has_previous_page=target_page > 1,
                )
            cursor = listing.next_cursor
            page += 1

    async def count_all(
        self,
        *,
        query: str,
        page_cap: int = DEFAULT_COUNT_PAGE_CAP,
        page_size: int = MAX_LIST_PAGE_SIZE,
    ) -> CountResult:
        """Count items by walking at most ``page_cap`` pages.

        Args:
            query: Remote search query.
            page_cap: Maximum number of pages to request.
            page_size: Items per page.

        Returns:
            CountResult, flagged approximate if the cap cut the walk short.

        Raises:
            ValueError: If ``page_cap`` or ``page_size`` is below 1.
        """
        if page_cap < 1:
            raise ValueError(f"page_cap must be >= 1, got {page_cap}")
        if page_size < 1:
            raise ValueError(f"page_size must be >= 1, got {page_size}")

        total = 0
        pages = 0
        cursor: str | None = None
        while pages < page_cap:
            listing = await self._client.list_ids(query=query, cursor=cursor, page_size=page_size)
            pages += 1
            total += len(listing.ids)
            if not listing.ids or listing.next_cursor is None:
                return CountResult(total=total, pages_walked=pages, approximate=False)
            cursor = listing.next_cursor

        logger.info(
            "Count for %r stopped at page cap %d; %d is a lower bound",
            query,
            page_cap,
            total,
        )
        return CountResult(total=total, pages_walked=pages, approximate=True)

    async def collect_ids(
        self,
        *,
        query: str,
        max_items: int,
        page_size: int = MAX_LIST_PAGE_SIZE,
        start_cursor: str | None = None,
    ) -> ListPage:
        """Collect up to ``max_items`` ids, stopping when the cursor runs out.

        Page requests shrink to the remaining budget, so the returned cursor
        points exactly at the first id that was not collected.

        Args:
            query: Remote search query.
            max_items: Upper bound on returned ids.
            page_size: Largest page to request.
            start_cursor: Cursor to resume from; None starts at the newest page.

        Returns:
            Ids in provider order, and the cursor to resume from (None once
            the listing is exhausted).

        Raises:
            ValueError: If ``max_items`` is negative or ``page_size`` is below 1.
        """
        if max_items < 0:
            raise ValueError(f"max_items must be >= 0, got {max_items}")
        if page_size < 1:
            raise ValueError(f"page_size must be >= 1, got {page_size}")

        ids: list[str] = []
        cursor = start_cursor
        while len(ids) < max_items:
            remaining = max_items - len(ids)
            listing = await self._client.list_ids(
                query=query,
                cursor=cursor,
                page_size=min(page_size, remaining),
            )
            ids.extend(listing.ids)
            if not listing.ids:
                cursor = None
                break
            cursor = listing.next_cursor
            if cursor is None:
                break
        return ListPage(ids=ids[:max_items], next_cursor=cursor)
