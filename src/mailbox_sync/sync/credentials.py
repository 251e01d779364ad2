"""Access-token lifecycle: expiry detection and bounded refresh."""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta

from mailbox_sync.errors import CredentialInvalidError
from mailbox_sync.gmail.auth import TokenRefresher
from mailbox_sync.storage.protocols import SyncStore

logger = logging.getLogger(__name__)

DEFAULT_SAFETY_MARGIN = timedelta(minutes=5)
DEFAULT_TOKEN_TTL = timedelta(hours=1)


def _utcnow() -> datetime:
    """Return current UTC time with timezone info."""
    return datetime.now(tz=UTC)


@dataclass(frozen=True)
class TokenLease:
    """Access token handed to one sync attempt."""

    token: str = field(repr=False)
    refreshed: bool
    expires_at: datetime | None


class CredentialManager:
    """Loads, checks and refreshes stored account credentials."""

    def __init__(
        self,
        *,
        store: SyncStore,
        refresher: TokenRefresher,
        safety_margin: timedelta = DEFAULT_SAFETY_MARGIN,
        token_ttl: timedelta = DEFAULT_TOKEN_TTL,
        now: Callable[[], datetime] = _utcnow,
    ) -> None:
        """Initialize the manager.

        Args:
            store: Credential store.
            refresher: Remote refresh-token exchange.
            safety_margin: Refresh when less than this remains before expiry.
            token_ttl: Lifetime assigned to freshly issued access tokens.
            now: Clock (injectable for tests).
        """
        self._store = store
        self._refresher = refresher
        self._margin = safety_margin
        self._ttl = token_ttl
        self._now = now

    async def get_valid_token(self, account_id: int) -> str:
        """Return an access token with at least the safety margin left.

        Args:
            account_id: Account id.

        Returns:
            Access token.

        Raises:
            CredentialInvalidError: If no credential exists or refresh fails.
        """
        lease = await self.ensure_fresh(account_id)
        return lease.token

    async def ensure_fresh(self, account_id: int) -> TokenLease:
        """Return a token lease, refreshing first when the token is near expiry.

        Args:
            account_id: Account id.

        Returns:
            TokenLease; ``refreshed`` tells whether this call used the refresh.

        Raises:
            CredentialInvalidError: If no credential exists or refresh fails.
        """
        cred = self._store.load_credential(account_id)
        if cred is None:
            raise CredentialInvalidError(f"No credential stored for account {account_id}")

        if cred.expires_at is not None:
            remaining = cred.expires_at - self._now()
            if remaining >= self._margin:
                return TokenLease(
                    token=cred.access_token,
                    refreshed=False,
                    expires_at=cred.expires_at,
                )
            logger.info(
                "Access token for account %s expires in %ss; refreshing",
                account_id,
                int(remaining.total_seconds()),
                extra={"account_id": account_id},
            )
        else:
            logger.info(
                "Access token for account %s has no expiry; refreshing",
                account_id,
                extra={"account_id": account_id},
            )

        token = await self.refresh_once(account_id)
        stored = self._store.load_credential(account_id)
        return TokenLease(
            token=token,
            refreshed=True,
            expires_at=stored.expires_at if stored is not None else None,
        )

    async def refresh_once(self, account_id: int) -> str:
        """Exchange the stored refresh token for a new access token and persist it.

        Callers invoke this at most once per logical sync attempt; it never
        retries internally.

        Args:
            account_id: Account id.

        Returns:
            The new access token.

        Raises:
            CredentialInvalidError: If there is nothing to refresh or the
                exchange fails. Not retryable.
        """
        cred = self._store.load_credential(account_id)
        if cred is None:
            raise CredentialInvalidError(f"No credential stored for account {account_id}")
        if not cred.refresh_token:
            raise CredentialInvalidError(f"No refresh token stored for account {account_id}")

        try:
            refreshed = await self._refresher.refresh(cred.refresh_token)
        except CredentialInvalidError:
            logger.warning(
                "Token refresh failed for account %s",
                account_id,
                extra={"account_id": account_id},
            )
            raise

        expires_at = self._now() + self._ttl
        self._store.save_credential(
            account_id=account_id,
            access_token=refreshed.access_token,
            expires_at=expires_at,
            refresh_token=refreshed.refresh_token,
        )
        logger.info(
            "Refreshed access token for account %s (expires %s)",
            account_id,
            expires_at.isoformat(),
            extra={"account_id": account_id},
        )
        return refreshed.access_token
