"""Shared enums and result models for sync runs."""

from __future__ import annotations

from datetime import datetime
from enum import StrEnum

from pydantic import Field

from mailbox_sync.models.base import AppModel, RecordModel


class SyncPhase(StrEnum):
    """Per-account, per-cycle sync states."""

    idle = "idle"
    fetching_ids = "fetching_ids"
    fetching_metadata = "fetching_metadata"
    refreshing = "refreshing"
    persisting = "persisting"
    done = "done"
    failed = "failed"


class SyncTrigger(StrEnum):
    """What started a scheduler tick."""

    timer = "timer"
    manual = "manual"


class SyncScope(RecordModel):
    """Bounds for a single account synchronization."""

    max_items: int = Field(ge=0)
    only_unread: bool = False
    since: datetime | None = None
    full_sync: bool = False
    start_cursor: str | None = None


class SyncStats(AppModel):
    """Result of one synchronization pass for one account."""

    account_id: int
    query: str = ""
    processed: int = 0
    inserted: int = 0
    updated: int = 0
    unchanged: int = 0
    skipped: int = 0
    item_errors: list[str] = Field(default_factory=list)
    elapsed_ms: int = 0
    next_cursor: str | None = None
    latest_received_at: datetime | None = None
    phases: list[SyncPhase] = Field(default_factory=list)


class AccountSyncResult(AppModel):
    """Outcome of one account inside a scheduler tick."""

    account_id: int
    email: str
    ok: bool
    stats: SyncStats | None = None
    error: str | None = None


class TickStats(AppModel):
    """Aggregated result of one scheduler tick."""

    trigger: SyncTrigger
    started_at: datetime
    elapsed_ms: int = 0
    accounts_attempted: int = 0
    accounts_succeeded: int = 0
    accounts_failed: int = 0
    total_new_items: int = 0
    errors: list[str] = Field(default_factory=list)
    results: list[AccountSyncResult] = Field(default_factory=list)
    skipped_reason: str | None = None


class BackfillStats(AppModel):
    """Result of one history backfill pass (at most one account)."""

    started_at: datetime
    elapsed_ms: int = 0
    account_id: int | None = None
    email: str | None = None
    processed: int = 0
    new_items: int = 0
    next_cursor: str | None = None
    completed: bool = False
    error: str | None = None
    skipped_reason: str | None = None
