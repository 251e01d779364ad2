"""Tests for account-level sync with bounded token refresh."""

from __future__ import annotations

import asyncio
from datetime import timedelta

import pytest
from conftest import NOW, FakeClock, FakeRefresher, FakeRemote, SleepRecorder, add_account

from mailbox_sync.config.settings import SyncSettings
from mailbox_sync.errors import CredentialInvalidError
from mailbox_sync.models.types import SyncPhase, SyncScope
from mailbox_sync.storage.sync_db import SyncDb
from mailbox_sync.gmail.pagination import CountResult, CursorPageNavigator
from mailbox_sync.sync.account import AccountSynchronizer, call_with_token
from mailbox_sync.sync.batch import BatchSynchronizer
from mailbox_sync.sync.credentials import CredentialManager
from mailbox_sync.sync.phases import PhaseTracker


def _account_sync(
    db: SyncDb,
    remote: FakeRemote,
    refresher: FakeRefresher,
    clock: FakeClock,
) -> AccountSynchronizer:
    batch = BatchSynchronizer(
        store=db,
        client_factory=remote.factory,
        settings=SyncSettings(),
        sleep=SleepRecorder(),
        now=clock,
    )
    credentials = CredentialManager(store=db, refresher=refresher, now=clock)
    return AccountSynchronizer(batch=batch, credentials=credentials)


def test_always_unauthorized_refreshes_exactly_once(db: SyncDb, clock: FakeClock) -> None:
    """A token the API never accepts should cost one refresh, then fail the account."""
    account = add_account(db, "a@example.com")
    remote = FakeRemote(["m1", "m2"], rejected_tokens=["*"])
    refresher = FakeRefresher()
    tracker = PhaseTracker(account_id=account.id)

    with pytest.raises(CredentialInvalidError):
        asyncio.run(
            _account_sync(db, remote, refresher, clock).sync(
                account_id=account.id,
                scope=SyncScope(max_items=10),
                tracker=tracker,
            ),
        )

    assert len(refresher.calls) == 1
    assert remote.tokens_seen == ["stale", "fresh-1"]
    assert tracker.current == SyncPhase.failed
    assert SyncPhase.refreshing in tracker.history
    assert db.count_messages() == 0


def test_expired_token_is_refreshed_and_retried(db: SyncDb, clock: FakeClock) -> None:
    """A 401 on the stored token should refresh once and succeed with the new token."""
    account = add_account(db, "a@example.com")
    remote = FakeRemote(["m1", "m2"], rejected_tokens=["stale"])
    refresher = FakeRefresher()

    stats = asyncio.run(
        _account_sync(db, remote, refresher, clock).sync(
            account_id=account.id,
            scope=SyncScope(max_items=10),
        ),
    )

    assert refresher.calls == ["refresh"]
    assert stats.inserted == 2
    assert SyncPhase.refreshing in stats.phases
    assert stats.phases[-1] == SyncPhase.done
    stored = db.load_credential(account.id)
    assert stored is not None
    assert stored.access_token == "fresh-1"


def test_proactive_refresh_counts_as_the_only_refresh(db: SyncDb, clock: FakeClock) -> None:
    """After a refresh before the first call, a 401 must not trigger another refresh."""
    account = add_account(db, "a@example.com", expires_at=NOW + timedelta(seconds=30))
    remote = FakeRemote(["m1"], rejected_tokens=["*"])
    refresher = FakeRefresher()

    with pytest.raises(CredentialInvalidError):
        asyncio.run(
            _account_sync(db, remote, refresher, clock).sync(
                account_id=account.id,
                scope=SyncScope(max_items=10),
            ),
        )

    assert len(refresher.calls) == 1
    assert remote.tokens_seen == ["fresh-1"]


def test_valid_token_needs_no_refresh(db: SyncDb, clock: FakeClock) -> None:
    """A healthy token should sync without touching the refresher."""
    account = add_account(db, "a@example.com")
    remote = FakeRemote(["m1", "m2", "m3"])
    refresher = FakeRefresher()

    stats = asyncio.run(
        _account_sync(db, remote, refresher, clock).sync(
            account_id=account.id,
            scope=SyncScope(max_items=10),
        ),
    )

    assert refresher.calls == []
    assert stats.processed == 3
    assert SyncPhase.refreshing not in stats.phases


def test_count_walk_is_retried_once_after_refresh(db: SyncDb, clock: FakeClock) -> None:
    """Remote reads outside a sync get the same single refresh on a rejected token."""
    account = add_account(db, "a@example.com", access_token="stale")
    remote = FakeRemote([f"id-{i:03d}" for i in range(7)], rejected_tokens=["stale"])
    refresher = FakeRefresher()
    credentials = CredentialManager(store=db, refresher=refresher, now=clock)

    async def _count(token: str) -> CountResult:
        navigator = CursorPageNavigator(client=remote.factory(token))
        return await navigator.count_all(query="in:inbox", page_cap=10, page_size=5)

    result = asyncio.run(call_with_token(credentials, account.id, _count))

    assert result.total == 7
    assert remote.tokens_seen == ["stale", "fresh-1"]
    assert refresher.calls == ["refresh"]


def test_count_walk_fails_when_refreshed_token_is_rejected(db: SyncDb, clock: FakeClock) -> None:
    """A second rejection after the refresh is a credential failure, not another refresh."""
    account = add_account(db, "a@example.com")
    remote = FakeRemote(["m1"], rejected_tokens=["*"])
    refresher = FakeRefresher()
    credentials = CredentialManager(store=db, refresher=refresher, now=clock)

    async def _count(token: str) -> CountResult:
        navigator = CursorPageNavigator(client=remote.factory(token))
        return await navigator.count_all(query="in:inbox")

    with pytest.raises(CredentialInvalidError):
        asyncio.run(call_with_token(credentials, account.id, _count))

    assert len(refresher.calls) == 1
