"""Per-account sync state tracking."""

from __future__ import annotations

import logging

from mailbox_sync.models.types import SyncPhase

logger = logging.getLogger(__name__)


class PhaseTracker:
    """Records the phases one account passes through during a cycle."""

    def __init__(self, *, account_id: int) -> None:
        """Initialize the tracker in the idle phase.

        Args:
            account_id: Account being synced.
        """
        self.account_id = account_id
        self.history: list[SyncPhase] = [SyncPhase.idle]

    @property
    def current(self) -> SyncPhase:
        """Return the latest phase."""
        return self.history[-1]

    def enter(self, phase: SyncPhase) -> None:
        """Move to ``phase`` unless already there.

        Args:
            phase: Phase being entered.
        """
        if phase == self.current:
            return
        logger.debug(
            "Account %s: %s -> %s",
            self.account_id,
            self.current.value,
            phase.value,
            extra={"account_id": self.account_id},
        )
        self.history.append(phase)
