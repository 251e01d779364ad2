"""Chunked fetch-and-persist of message metadata for one account."""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable, Iterator, Sequence
from datetime import UTC, datetime, timedelta

from mailbox_sync.config.settings import SyncSettings
from mailbox_sync.errors import CredentialExpiredError, ItemExtractionSkip
from mailbox_sync.gmail.client import ClientFactory, RemoteListingClient
from mailbox_sync.gmail.extract import extract_metadata
from mailbox_sync.gmail.pagination import CursorPageNavigator
from mailbox_sync.models.state import MessageMetadata
from mailbox_sync.models.types import SyncPhase, SyncScope, SyncStats
from mailbox_sync.storage.protocols import SyncStore
from mailbox_sync.sync.phases import PhaseTracker

logger = logging.getLogger(__name__)

BASE_QUERY = "in:inbox"
UNREAD_QUERY = "is:unread"


def _utcnow() -> datetime:
    """Return current UTC time with timezone info."""
    return datetime.now(tz=UTC)


def build_query(scope: SyncScope, *, lookback_days: int, now: datetime) -> str:
    """Build the remote search query for a sync scope.

    An explicit ``since`` becomes an epoch-seconds bound, which the provider
    applies exactly. Date operands are read as midnight in the provider's own
    timezone, so they are only used for the coarse default window of
    ``lookback_days`` days. ``scope.full_sync`` drops that window.

    Args:
        scope: Sync scope.
        lookback_days: Default lookback window in days.
        now: Reference time for the lookback window.

    Returns:
        Gmail search query string.
    """
    parts = [BASE_QUERY]
    if scope.only_unread:
        parts.append(UNREAD_QUERY)
    if scope.since is not None:
        parts.append(f"after:{int(scope.since.timestamp())}")
    elif not scope.full_sync:
        lower = now - timedelta(days=lookback_days)
        parts.append(f"after:{lower.astimezone(UTC):%Y/%m/%d}")
    return " ".join(parts)


def _chunked(items: Sequence[str], size: int) -> Iterator[Sequence[str]]:
    """Yield consecutive slices of at most ``size`` items."""
    for start in range(0, len(items), size):
        yield items[start : start + size]


class BatchSynchronizer:
    """Turns a remote id listing into persisted, deduplicated metadata rows."""

    def __init__(
        self,
        *,
        store: SyncStore,
        client_factory: ClientFactory,
        settings: SyncSettings,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        now: Callable[[], datetime] = _utcnow,
    ) -> None:
        """Initialize the synchronizer.

        Args:
            store: Metadata store.
            client_factory: Builds a listing client for an access token.
            settings: Chunking, delay and lookback settings.
            sleep: Sleep function (injectable for tests).
            now: Clock (injectable for tests).
        """
        self._store = store
        self._client_factory = client_factory
        self._s = settings
        self._sleep = sleep
        self._now = now

    async def sync(
        self,
        *,
        account_id: int,
        access_token: str,
        scope: SyncScope,
        tracker: PhaseTracker | None = None,
    ) -> SyncStats:
        """Fetch up to ``scope.max_items`` messages and upsert their metadata.

        Per-item fetch failures are recorded and do not stop the run. Failures
        while listing ids, an unauthorized response on any item and store
        failures are account-level and propagate.

        Args:
            account_id: Account id.
            access_token: Access token for the remote API.
            scope: Item cap, filters and optional resume cursor.
            tracker: Optional phase tracker shared with the caller.

        Returns:
            SyncStats for this pass.

        Raises:
            CredentialExpiredError: If the remote API rejects the token.
            TransientRemoteError: If listing ids fails.
            PersistenceError: If the upsert transaction fails.
        """
        started = time.monotonic()
        tracker = tracker or PhaseTracker(account_id=account_id)
        query = build_query(scope, lookback_days=self._s.default_lookback_days, now=self._now())
        stats = SyncStats(account_id=account_id, query=query)

        client = self._client_factory(access_token)
        navigator = CursorPageNavigator(client=client)

        tracker.enter(SyncPhase.fetching_ids)
        listed = await navigator.collect_ids(
            query=query,
            max_items=scope.max_items,
            page_size=self._s.list_page_size,
            start_cursor=scope.start_cursor,
        )
        ids = list(dict.fromkeys(listed.ids))
        stats.next_cursor = listed.next_cursor
        logger.info(
            "Account %s: %d message ids for %r",
            account_id,
            len(ids),
            query,
            extra={"account_id": account_id},
        )

        records: dict[str, MessageMetadata] = {}
        if ids:
            tracker.enter(SyncPhase.fetching_metadata)
            chunks = list(_chunked(ids, self._s.chunk_size))
            for idx, chunk in enumerate(chunks, start=1):
                if idx > 1 and self._s.chunk_delay_s > 0:
                    await self._sleep(self._s.chunk_delay_s)
                logger.debug(
                    "Account %s: chunk %d/%d (%d ids)",
                    account_id,
                    idx,
                    len(chunks),
                    len(chunk),
                    extra={"account_id": account_id},
                )
                await self._process_chunk(
                    client=client,
                    account_id=account_id,
                    chunk=chunk,
                    records=records,
                    stats=stats,
                )

        if records:
            tracker.enter(SyncPhase.persisting)
            result = self._store.upsert_metadata(list(records.values()))
            stats.inserted = result.inserted
            stats.updated = result.updated
            stats.unchanged = result.unchanged

        stats.processed = len(records)
        received = [r.received_at for r in records.values() if r.received_at is not None]
        stats.latest_received_at = max(received) if received else None

        tracker.enter(SyncPhase.done)
        stats.phases = list(tracker.history)
        stats.elapsed_ms = int((time.monotonic() - started) * 1000)

        logger.info(
            "Account %s: %d processed, %d new, %d updated, %d item errors (%dms)",
            account_id,
            stats.processed,
            stats.inserted,
            stats.updated,
            len(stats.item_errors),
            stats.elapsed_ms,
            extra={"account_id": account_id},
        )
        return stats

    async def _process_chunk(
        self,
        *,
        client: RemoteListingClient,
        account_id: int,
        chunk: Sequence[str],
        records: dict[str, MessageMetadata],
        stats: SyncStats,
    ) -> None:
        """Fetch one chunk concurrently and sort results into records and errors.

        Args:
            client: Listing client.
            account_id: Account id.
            chunk: Message ids of this chunk.
            records: Accumulator keyed by provider message id.
            stats: Stats receiving item errors and skip counts.

        Raises:
            CredentialExpiredError: If any item fetch was unauthorized.
        """
        results = await asyncio.gather(
            *(self._fetch_one(client, message_id, account_id) for message_id in chunk),
            return_exceptions=True,
        )

        for message_id, result in zip(chunk, results, strict=True):
            if isinstance(result, MessageMetadata):
                records[result.provider_message_id] = result
            elif isinstance(result, CredentialExpiredError):
                raise result
            elif isinstance(result, ItemExtractionSkip):
                stats.skipped += 1
                stats.item_errors.append(str(result))
            elif isinstance(result, Exception):
                logger.warning(
                    "Account %s: fetching %s failed: %s",
                    account_id,
                    message_id,
                    result,
                    extra={"account_id": account_id},
                )
                stats.item_errors.append(f"{message_id}: {result}")
            else:
                raise result

    async def _fetch_one(
        self,
        client: RemoteListingClient,
        message_id: str,
        account_id: int,
    ) -> MessageMetadata:
        """Fetch and extract one message.

        Raises:
            ItemExtractionSkip: If the record has no stable identifier.
        """
        raw = await client.fetch_metadata(message_id)
        record = extract_metadata(raw, account_id=account_id)
        if record is None:
            raise ItemExtractionSkip(message_id, "record has no stable identifier")
        return record
