"""Pydantic models for persisted sync state."""

from __future__ import annotations

from datetime import datetime

from pydantic import Field

from mailbox_sync.models.base import RecordModel

# Two empty passes in a row (or an exhausted cursor) end an account's backfill.
BACKFILL_DONE_AFTER_EMPTY_PASSES = 2


class AccountRow(RecordModel):
    """Row model for the accounts table.

    ``staleness_rank`` is only meaningful on rows returned by
    ``SyncDb.list_active_accounts``: 1 is the account that has waited longest
    for a sync attempt.
    """

    id: int = Field(ge=1)
    user_id: int = Field(ge=1)
    email: str = Field(min_length=3)
    is_active: bool = True
    last_synced_at: datetime | None = None
    last_attempted_at: datetime | None = None
    backfill_cursor: str | None = None
    backfill_empty_passes: int = Field(default=0, ge=0)
    backfill_at: datetime | None = None
    staleness_rank: int | None = Field(default=None, ge=1)
    created_at: datetime

    @property
    def backfill_complete(self) -> bool:
        """Return True once the account's history backfill has finished."""
        return self.backfill_empty_passes >= BACKFILL_DONE_AFTER_EMPTY_PASSES


class CredentialRow(RecordModel):
    """Row model for the credentials table (one per account)."""

    account_id: int = Field(ge=1)
    access_token: str = Field(min_length=1, repr=False)
    refresh_token: str | None = Field(default=None, repr=False)
    expires_at: datetime | None = None
    updated_at: datetime


class MessageMetadata(RecordModel):
    """Normalized message metadata keyed by (account_id, provider_message_id).

    ``received_at`` is what the message claims (its ``Date`` header when it
    parses). ``internal_at`` is when the provider received it, and only that
    one is used as the incremental sync watermark.
    """

    account_id: int = Field(ge=1)
    provider_message_id: str = Field(min_length=1)
    thread_id: str | None = None
    subject: str | None = None
    sender_address: str | None = None
    sender_name: str | None = None
    recipient_address: str | None = None
    received_at: datetime | None = None
    internal_at: datetime | None = None
    is_read: bool
    has_attachments: bool
    labels: list[str] = Field(default_factory=list)
    size_bytes: int | None = Field(default=None, ge=0)


class UpsertResult(RecordModel):
    """Counts reported by a metadata upsert."""

    inserted: int = Field(default=0, ge=0)
    updated: int = Field(default=0, ge=0)
    unchanged: int = Field(default=0, ge=0)

    @property
    def total(self) -> int:
        """Return the number of records written or confirmed."""
        return self.inserted + self.updated + self.unchanged


class AccountMailStats(RecordModel):
    """Aggregate counts for one account read from the local store."""

    account_id: int = Field(ge=1)
    total: int = Field(ge=0)
    unread: int = Field(ge=0)
    read: int = Field(ge=0)
    with_attachments: int = Field(ge=0)
    latest_received_at: datetime | None = None
