"""Store interface consumed by the sync engine (``SyncDb`` implements it)."""

from __future__ import annotations

from collections.abc import Sequence
from datetime import datetime
from typing import Protocol

from mailbox_sync.models.state import AccountRow, CredentialRow, MessageMetadata, UpsertResult


class SyncStore(Protocol):
    """Transactional store for accounts, credentials and metadata."""

    def upsert_metadata(self, records: Sequence[MessageMetadata]) -> UpsertResult:
        """Insert or update records atomically, keyed by account and message id."""
        ...

    def get_latest_synced_timestamp(self, account_id: int) -> datetime | None:
        """Return the newest stored provider receive time for an account."""
        ...

    def list_active_accounts(self, limit: int) -> list[AccountRow]:
        """Return active accounts, least recently attempted first."""
        ...

    def mark_account_synced(self, *, account_id: int, synced_at: datetime | None = None) -> None:
        """Record a successful sync for an account."""
        ...

    def load_credential(self, account_id: int) -> CredentialRow | None:
        """Load the stored credential for an account."""
        ...

    def save_credential(
        self,
        *,
        account_id: int,
        access_token: str,
        expires_at: datetime | None,
        refresh_token: str | None = None,
    ) -> CredentialRow:
        """Persist a token and its expiry together."""
        ...

    def mark_account_attempted(
        self,
        *,
        account_id: int,
        attempted_at: datetime | None = None,
    ) -> None:
        """Record the start of a scheduled sync, successful or not."""
        ...

    def select_backfill_account(self) -> AccountRow | None:
        """Return the next account with an unfinished history backfill."""
        ...

    def mark_backfill_attempted(
        self,
        *,
        account_id: int,
        attempted_at: datetime | None = None,
    ) -> None:
        """Record the start of a backfill pass."""
        ...

    def record_backfill_pass(
        self,
        *,
        account_id: int,
        processed: int,
        next_cursor: str | None,
    ) -> AccountRow:
        """Store the cursor and completion state after a backfill pass."""
        ...
