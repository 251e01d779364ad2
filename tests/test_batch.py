"""Tests for chunked metadata sync of one account."""

from __future__ import annotations

import asyncio
from datetime import UTC, datetime

import pytest
from conftest import NOW, FakeClock, FakeRemote, SleepRecorder, SpyStore, add_account, make_raw

from mailbox_sync.config.settings import SyncSettings
from mailbox_sync.errors import CredentialExpiredError
from mailbox_sync.models.types import SyncPhase, SyncScope
from mailbox_sync.storage.sync_db import SyncDb
from mailbox_sync.sync.batch import BatchSynchronizer, build_query


def _ids(n: int) -> list[str]:
    return [f"id-{i:03d}" for i in range(n)]


def _synchronizer(
    store: SpyStore | SyncDb,
    remote: FakeRemote,
    *,
    sleep: SleepRecorder | None = None,
    clock: FakeClock | None = None,
) -> BatchSynchronizer:
    return BatchSynchronizer(
        store=store,
        client_factory=remote.factory,
        settings=SyncSettings(),
        sleep=sleep or SleepRecorder(),
        now=clock or FakeClock(),
    )


def test_ten_of_thirty(db: SyncDb) -> None:
    """A cap of 10 over 30 remote items should need one listing call and one write."""
    account = add_account(db, "a@example.com")
    remote = FakeRemote(_ids(30))
    store = SpyStore(db)
    sleep = SleepRecorder()

    stats = asyncio.run(
        _synchronizer(store, remote, sleep=sleep).sync(
            account_id=account.id,
            access_token="tok",
            scope=SyncScope(max_items=10, full_sync=True),
        ),
    )

    assert len(remote.list_calls) == 1
    assert remote.list_calls[0]["page_size"] == 10
    assert remote.fetch_calls == _ids(10)
    assert sleep.delays == []
    assert store.upsert_calls == [10]
    assert stats.processed == 10
    assert stats.inserted == 10
    assert db.count_messages(account.id) == 10
    assert stats.next_cursor == "10"


def test_sync_resumes_from_start_cursor(db: SyncDb) -> None:
    """A scope with a start cursor continues the listing where it stopped."""
    account = add_account(db, "a@example.com")
    remote = FakeRemote(_ids(30))

    stats = asyncio.run(
        _synchronizer(db, remote).sync(
            account_id=account.id,
            access_token="tok",
            scope=SyncScope(max_items=25, full_sync=True, start_cursor="10"),
        ),
    )

    assert remote.list_calls[0]["cursor"] == "10"
    assert remote.fetch_calls == _ids(30)[10:]
    assert stats.processed == 20
    assert stats.next_cursor is None


def test_one_failing_item_does_not_sink_the_batch(db: SyncDb) -> None:
    """A single item failure should be recorded while the rest are persisted."""
    account = add_account(db, "a@example.com")
    ids = _ids(25)
    remote = FakeRemote(ids, fail_ids=[ids[12]])

    stats = asyncio.run(
        _synchronizer(db, remote).sync(
            account_id=account.id,
            access_token="tok",
            scope=SyncScope(max_items=25, full_sync=True),
        ),
    )

    assert stats.processed == 24
    assert stats.inserted == 24
    assert len(stats.item_errors) == 1
    assert ids[12] in stats.item_errors[0]
    assert db.count_messages(account.id) == 24
    assert db.get_message(account_id=account.id, provider_message_id=ids[12]) is None


def test_rerun_is_idempotent(db: SyncDb) -> None:
    """A second identical run should insert nothing and leave the row count alone."""
    account = add_account(db, "a@example.com")
    remote = FakeRemote(_ids(12))
    synchronizer = _synchronizer(db, remote)
    scope = SyncScope(max_items=50, full_sync=True)

    first = asyncio.run(synchronizer.sync(account_id=account.id, access_token="t", scope=scope))
    second = asyncio.run(synchronizer.sync(account_id=account.id, access_token="t", scope=scope))

    assert first.inserted == 12
    assert second.inserted == 0
    assert second.updated == 0
    assert second.unchanged == 12
    assert db.count_messages(account.id) == 12


def test_chunks_are_spaced_by_delay(db: SyncDb) -> None:
    """60 ids at chunk size 25 should give three chunks, two pauses and one write."""
    account = add_account(db, "a@example.com")
    remote = FakeRemote(_ids(60))
    store = SpyStore(db)
    sleep = SleepRecorder()

    stats = asyncio.run(
        _synchronizer(store, remote, sleep=sleep).sync(
            account_id=account.id,
            access_token="t",
            scope=SyncScope(max_items=60, full_sync=True),
        ),
    )

    assert sleep.delays == [0.2, 0.2]
    assert store.upsert_calls == [60]
    assert stats.processed == 60


def test_unauthorized_item_escalates(db: SyncDb) -> None:
    """A 401 on any item should abort the account without writing."""
    account = add_account(db, "a@example.com")
    ids = _ids(5)
    remote = FakeRemote(ids, unauthorized_ids=[ids[3]])

    with pytest.raises(CredentialExpiredError):
        asyncio.run(
            _synchronizer(db, remote).sync(
                account_id=account.id,
                access_token="t",
                scope=SyncScope(max_items=5, full_sync=True),
            ),
        )
    assert db.count_messages() == 0


def test_records_without_id_are_skipped(db: SyncDb) -> None:
    """A record with no stable identifier should be counted as skipped."""
    account = add_account(db, "a@example.com")
    broken = make_raw("id-001")
    broken["id"] = ""
    remote = FakeRemote(_ids(3), records={"id-001": broken})

    stats = asyncio.run(
        _synchronizer(db, remote).sync(
            account_id=account.id,
            access_token="t",
            scope=SyncScope(max_items=3, full_sync=True),
        ),
    )

    assert stats.skipped == 1
    assert stats.processed == 2
    assert db.count_messages(account.id) == 2


def test_empty_listing_does_not_write(db: SyncDb) -> None:
    """No ids should mean no fetches and no upsert."""
    account = add_account(db, "a@example.com")
    remote = FakeRemote([])
    store = SpyStore(db)

    stats = asyncio.run(
        _synchronizer(store, remote).sync(
            account_id=account.id,
            access_token="t",
            scope=SyncScope(max_items=10),
        ),
    )

    assert store.upsert_calls == []
    assert stats.processed == 0
    assert stats.phases == [SyncPhase.idle, SyncPhase.fetching_ids, SyncPhase.done]


def test_phases_of_a_successful_run(db: SyncDb) -> None:
    """A run that writes should pass through every phase in order."""
    account = add_account(db, "a@example.com")
    stats = asyncio.run(
        _synchronizer(db, FakeRemote(_ids(2))).sync(
            account_id=account.id,
            access_token="t",
            scope=SyncScope(max_items=2),
        ),
    )
    assert stats.phases == [
        SyncPhase.idle,
        SyncPhase.fetching_ids,
        SyncPhase.fetching_metadata,
        SyncPhase.persisting,
        SyncPhase.done,
    ]
    assert stats.latest_received_at == datetime(2024, 6, 1, 10, 0, tzinfo=UTC)


def test_build_query_variants() -> None:
    """Queries combine inbox, unread and a lower bound.

    An explicit watermark is an exact epoch-seconds bound; only the default
    lookback window uses a calendar date.
    """
    since = datetime(2024, 3, 5, 23, 30, tzinfo=UTC)

    assert build_query(SyncScope(max_items=1, full_sync=True), lookback_days=180, now=NOW) == (
        "in:inbox"
    )
    assert build_query(SyncScope(max_items=1, since=since), lookback_days=180, now=NOW) == (
        "in:inbox after:1709681400"
    )
    assert build_query(SyncScope(max_items=1, only_unread=True), lookback_days=1, now=NOW) == (
        "in:inbox is:unread after:2024/05/31"
    )
