"""Validated domain models (Pydantic)."""

from __future__ import annotations

from mailbox_sync.models.state import (
    AccountMailStats,
    AccountRow,
    CredentialRow,
    MessageMetadata,
    UpsertResult,
)
from mailbox_sync.models.types import (
    AccountSyncResult,
    BackfillStats,
    SyncPhase,
    SyncScope,
    SyncStats,
    SyncTrigger,
    TickStats,
)

__all__ = [
    "AccountMailStats",
    "AccountRow",
    "AccountSyncResult",
    "BackfillStats",
    "CredentialRow",
    "MessageMetadata",
    "SyncPhase",
    "SyncScope",
    "SyncStats",
    "SyncTrigger",
    "TickStats",
    "UpsertResult",
]
