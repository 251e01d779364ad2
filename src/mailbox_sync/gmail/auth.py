"""OAuth access-token refresh against Google's token endpoint."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Protocol

from google.auth.exceptions import GoogleAuthError
from google.auth.transport.requests import Request
from google.oauth2.credentials import Credentials

from mailbox_sync.config.settings import GoogleSettings
from mailbox_sync.errors import CredentialInvalidError

logger = logging.getLogger(__name__)

SCOPES: list[str] = [
    "https://www.googleapis.com/auth/gmail.readonly",
]


@dataclass(frozen=True)
class RefreshedToken:
    """Result of a refresh-token exchange."""

    access_token: str = field(repr=False)
    refresh_token: str | None = field(default=None, repr=False)


class TokenRefresher(Protocol):
    """Exchanges a refresh token for a new access token."""

    async def refresh(self, refresh_token: str) -> RefreshedToken:
        """Return a new access token, raising CredentialInvalidError on failure."""
        ...


class GoogleTokenRefresher:
    """``TokenRefresher`` backed by ``google.oauth2.credentials.Credentials``."""

    def __init__(self, *, settings: GoogleSettings) -> None:
        """Initialize the refresher.

        Args:
            settings: OAuth client settings.
        """
        self._s = settings

    async def refresh(self, refresh_token: str) -> RefreshedToken:
        """Exchange a refresh token for a new access token.

        Args:
            refresh_token: Stored refresh token.

        Returns:
            RefreshedToken with the new access token and the refresh token
            the provider returned (if it rotated it).

        Raises:
            CredentialInvalidError: If the exchange fails (e.g. revoked token).
        """
        creds = Credentials(  # type: ignore[no-untyped-call]
            token=None,
            refresh_token=refresh_token,
            client_id=self._s.client_id,
            client_secret=self._s.client_secret,
            token_uri=self._s.token_uri,
            scopes=SCOPES,
        )

        def _call() -> None:
            """Perform the blocking refresh request."""
            creds.refresh(Request())  # type: ignore[no-untyped-call]

        try:
            await asyncio.to_thread(_call)
        except GoogleAuthError as exc:
            raise CredentialInvalidError(f"Token refresh rejected: {exc}") from exc
        except OSError as exc:
            raise CredentialInvalidError(f"Token refresh transport failure: {exc!r}") from exc

        if not creds.token:
            raise CredentialInvalidError("Token refresh returned no access token")

        rotated = creds.refresh_token if creds.refresh_token != refresh_token else None
        if rotated:
            logger.info("Provider rotated the refresh token")
        return RefreshedToken(access_token=str(creds.token), refresh_token=rotated)
