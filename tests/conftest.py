"""Shared fakes and fixtures for sync engine tests."""

from __future__ import annotations

from collections.abc import Iterator, Sequence
from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import Any

import pytest

from mailbox_sync.errors import CredentialExpiredError, CredentialInvalidError, TransientRemoteError
from mailbox_sync.gmail.auth import RefreshedToken
from mailbox_sync.gmail.client import ListPage, RemoteListingClient
from mailbox_sync.models.state import AccountRow, MessageMetadata, UpsertResult
from mailbox_sync.storage.sync_db import SyncDb

NOW = datetime(2024, 6, 1, 12, 0, tzinfo=UTC)
# internalDate of 2024-06-01 10:00 UTC, in epoch milliseconds.
INTERNAL_DATE = "1717236000000"


def make_raw(
    message_id: str,
    *,
    subject: str = "Hello",
    sender: str = "Alice <alice@example.com>",
    to: str = "me@example.com",
    date: str | None = "Sat, 01 Jun 2024 10:00:00 +0000",
    labels: Sequence[str] = ("INBOX",),
    parts: list[dict[str, Any]] | None = None,
    internal_date: str | None = INTERNAL_DATE,
) -> dict[str, Any]:
    """Build a Gmail ``format=metadata`` style message resource."""
    headers = [
        {"name": "Subject", "value": subject},
        {"name": "From", "value": sender},
        {"name": "To", "value": to},
    ]
    if date is not None:
        headers.append({"name": "Date", "value": date})
    raw: dict[str, Any] = {
        "id": message_id,
        "threadId": f"t-{message_id}",
        "labelIds": list(labels),
        "sizeEstimate": 1024,
        "payload": {"headers": headers, "parts": parts or []},
    }
    if internal_date is not None:
        raw["internalDate"] = internal_date
    return raw


class FakeRemote:
    """In-memory mailbox backing every client built from its ``factory``.

    Cursors are stringified offsets. Tokens in ``rejected_tokens`` (or the
    wildcard ``"*"``) make every call unauthorized.
    """

    def __init__(
        self,
        ids: Sequence[str],
        *,
        records: dict[str, dict[str, Any]] | None = None,
        fail_ids: Sequence[str] = (),
        unauthorized_ids: Sequence[str] = (),
        rejected_tokens: Sequence[str] = (),
    ) -> None:
        self.ids = list(ids)
        self.records = records or {}
        self.fail_ids = set(fail_ids)
        self.unauthorized_ids = set(unauthorized_ids)
        self.rejected_tokens = set(rejected_tokens)
        self.list_calls: list[dict[str, Any]] = []
        self.fetch_calls: list[str] = []
        self.tokens_seen: list[str] = []

    def factory(self, access_token: str) -> RemoteListingClient:
        """Build a client bound to ``access_token``."""
        self.tokens_seen.append(access_token)
        return FakeListingClient(self, access_token)


class FakeListingClient:
    """RemoteListingClient over a FakeRemote."""

    def __init__(self, remote: FakeRemote, token: str) -> None:
        self._remote = remote
        self._token = token

    def _check_token(self) -> None:
        rejected = self._remote.rejected_tokens
        if "*" in rejected or self._token in rejected:
            raise CredentialExpiredError("401 invalid credentials")

    async def list_ids(self, *, query: str, cursor: str | None, page_size: int) -> ListPage:
        self._remote.list_calls.append({"query": query, "cursor": cursor, "page_size": page_size})
        self._check_token()
        offset = int(cursor) if cursor else 0
        end = offset + page_size
        ids = self._remote.ids[offset:end]
        next_cursor = str(end) if end < len(self._remote.ids) else None
        return ListPage(ids=ids, next_cursor=next_cursor)

    async def fetch_metadata(self, message_id: str) -> dict[str, Any]:
        self._remote.fetch_calls.append(message_id)
        self._check_token()
        if message_id in self._remote.unauthorized_ids:
            raise CredentialExpiredError(f"401 on {message_id}")
        if message_id in self._remote.fail_ids:
            raise TransientRemoteError(f"500 on {message_id}")
        return self._remote.records.get(message_id) or make_raw(message_id)


class FakeRefresher:
    """TokenRefresher issuing ``fresh-N`` tokens and counting calls."""

    def __init__(
        self,
        *,
        fail_for: Sequence[str] = (),
        rotate_to: str | None = None,
    ) -> None:
        self.fail_for = set(fail_for)
        self.rotate_to = rotate_to
        self.calls: list[str] = []

    async def refresh(self, refresh_token: str) -> RefreshedToken:
        self.calls.append(refresh_token)
        if "*" in self.fail_for or refresh_token in self.fail_for:
            raise CredentialInvalidError("invalid_grant: token revoked")
        return RefreshedToken(
            access_token=f"fresh-{len(self.calls)}",
            refresh_token=self.rotate_to,
        )


class FakeClock:
    """Settable clock."""

    def __init__(self, now: datetime = NOW) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> None:
        self.now = self.now + timedelta(**kwargs)


class SleepRecorder:
    """Sleep replacement that records requested delays without waiting."""

    def __init__(self) -> None:
        self.delays: list[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


class SpyStore:
    """SyncDb wrapper recording upsert calls."""

    def __init__(self, db: SyncDb) -> None:
        self._db = db
        self.upsert_calls: list[int] = []

    def upsert_metadata(self, records: Sequence[MessageMetadata]) -> UpsertResult:
        self.upsert_calls.append(len(records))
        return self._db.upsert_metadata(records)

    def __getattr__(self, name: str) -> Any:
        return getattr(self._db, name)


def add_account(
    db: SyncDb,
    email: str,
    *,
    access_token: str = "stale",
    refresh_token: str | None = "refresh",
    expires_at: datetime | None = NOW + timedelta(hours=1),
) -> AccountRow:
    """Register an account with a stored credential."""
    account = db.add_account(user_id=1, email=email)
    db.save_credential(
        account_id=account.id,
        access_token=access_token,
        expires_at=expires_at,
        refresh_token=refresh_token,
    )
    return account


@pytest.fixture
def db(tmp_path: Path) -> Iterator[SyncDb]:
    """Initialized sqlite store under a temporary directory."""
    store = SyncDb(sqlite_path=tmp_path / "mailbox.sqlite3")
    store.init_schema()
    yield store
    store.close()


@pytest.fixture
def clock() -> FakeClock:
    """Clock fixed at NOW."""
    return FakeClock()
