"""Error taxonomy for the synchronization engine."""

from __future__ import annotations


class SyncError(RuntimeError):
    """Base class for synchronization failures."""


class TransientRemoteError(SyncError):
    """Raised when a single remote call fails for a non-credential reason."""


class CredentialExpiredError(SyncError):
    """Raised when the remote API answers with an unauthorized status."""


class CredentialInvalidError(SyncError):
    """Raised when a credential cannot be refreshed or is still rejected after refresh."""


class ItemExtractionSkip(SyncError):
    """Raised when a single message record cannot be turned into metadata."""

    def __init__(self, message_id: str, reason: str) -> None:
        """Initialize the skip marker.

        Args:
            message_id: Provider message id that was skipped.
            reason: Human-readable reason.
        """
        super().__init__(f"{message_id}: {reason}")
        self.message_id = message_id
        self.reason = reason


class PersistenceError(SyncError):
    """Raised when the metadata upsert transaction fails."""


class ConfigurationError(SyncError):
    """Raised when the scheduler is disabled or required settings are missing."""
