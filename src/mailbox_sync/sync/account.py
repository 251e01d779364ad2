"""Account-level sync: credential handling around one batch pass."""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable

from mailbox_sync.errors import CredentialExpiredError, CredentialInvalidError
from mailbox_sync.models.types import SyncPhase, SyncScope, SyncStats
from mailbox_sync.sync.batch import BatchSynchronizer
from mailbox_sync.sync.credentials import CredentialManager
from mailbox_sync.sync.phases import PhaseTracker
from mailbox_sync.sync.policies import retry_once_after_recovery

logger = logging.getLogger(__name__)


def _still_unauthorized(exc: BaseException) -> CredentialInvalidError:
    """Map an unauthorized response after refresh onto a fatal credential error."""
    return CredentialInvalidError(f"Still unauthorized after token refresh: {exc}")


async def call_with_token[T](
    credentials: CredentialManager,
    account_id: int,
    operation: Callable[[str], Awaitable[T]],
    *,
    on_refresh: Callable[[], None] | None = None,
) -> T:
    """Run a remote operation with a valid token and at most one refresh.

    An unauthorized response triggers one refresh and one retry. If the token
    was already refreshed proactively, or the retry is unauthorized again, the
    call fails with CredentialInvalidError.

    Args:
        credentials: Credential lifecycle manager.
        account_id: Account id.
        operation: Coroutine function taking an access token.
        on_refresh: Called right before a reactive refresh.

    Returns:
        The operation's result.

    Raises:
        CredentialInvalidError: If the credential cannot be made to work.
    """
    lease = await credentials.ensure_fresh(account_id)
    if lease.refreshed:
        try:
            return await operation(lease.token)
        except CredentialExpiredError as exc:
            raise _still_unauthorized(exc) from exc

    async def _refresh() -> str:
        if on_refresh is not None:
            on_refresh()
        return await credentials.refresh_once(account_id)

    return await retry_once_after_recovery(
        operation,
        initial=lease.token,
        recover=_refresh,
        retry_on=(CredentialExpiredError,),
        exhausted=_still_unauthorized,
    )


class AccountSynchronizer:
    """Runs one account's sync with at most one token refresh per attempt."""

    def __init__(self, *, batch: BatchSynchronizer, credentials: CredentialManager) -> None:
        """Initialize the account synchronizer.

        Args:
            batch: Batch synchronizer.
            credentials: Credential lifecycle manager.
        """
        self._batch = batch
        self._credentials = credentials

    async def sync(
        self,
        *,
        account_id: int,
        scope: SyncScope,
        tracker: PhaseTracker | None = None,
    ) -> SyncStats:
        """Sync one account.

        The whole batch is the unit retried after a refresh (see
        ``call_with_token``).

        Args:
            account_id: Account id.
            scope: Item cap, filters and optional resume cursor.
            tracker: Optional phase tracker; one is created if omitted.

        Returns:
            SyncStats of the successful pass.

        Raises:
            CredentialInvalidError: If the credential cannot be made to work.
            TransientRemoteError: If listing ids fails.
            PersistenceError: If the upsert transaction fails.
        """
        tracker = tracker or PhaseTracker(account_id=account_id)

        async def _attempt(token: str) -> SyncStats:
            """Run one batch pass with the given token."""
            return await self._batch.sync(
                account_id=account_id,
                access_token=token,
                scope=scope,
                tracker=tracker,
            )

        try:
            return await call_with_token(
                self._credentials,
                account_id,
                _attempt,
                on_refresh=lambda: tracker.enter(SyncPhase.refreshing),
            )
        except Exception:
            tracker.enter(SyncPhase.failed)
            raise
