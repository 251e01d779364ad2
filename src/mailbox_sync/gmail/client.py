"""Gmail listing client: cursor-based id listing and metadata fetches."""

from __future__ import annotations

import asyncio
import logging
import threading
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any, Protocol

from google.oauth2.credentials import Credentials
from googleapiclient.discovery import build
from googleapiclient.errors import HttpError

from mailbox_sync.errors import CredentialExpiredError, TransientRemoteError

logger = logging.getLogger(__name__)

METADATA_HEADERS: list[str] = ["Subject", "From", "To", "Date"]
MAX_LIST_PAGE_SIZE = 500


@dataclass(frozen=True)
class ListPage:
    """One page of a cursor listing."""

    ids: list[str]
    next_cursor: str | None


class RemoteListingClient(Protocol):
    """Forward-only cursor listing API bound to one access token."""

    async def list_ids(self, *, query: str, cursor: str | None, page_size: int) -> ListPage:
        """Return one page of message ids and the cursor for the next page."""
        ...

    async def fetch_metadata(self, message_id: str) -> dict[str, Any]:
        """Return the raw metadata record for one message."""
        ...


ClientFactory = Callable[[str], RemoteListingClient]


def _is_unauthorized(exc: HttpError) -> bool:
    """Return whether an HttpError carries a 401 status."""
    status = getattr(exc, "status_code", None) or getattr(exc.resp, "status", None)
    try:
        return int(status) == 401
    except (TypeError, ValueError):
        return False


def _translate(exc: Exception, *, action: str) -> Exception:
    """Map a Google client exception onto the sync error taxonomy.

    Args:
        exc: Exception raised by the API client.
        action: Short description used in the message.

    Returns:
        CredentialExpiredError for 401 responses, TransientRemoteError otherwise.
    """
    if isinstance(exc, HttpError) and _is_unauthorized(exc):
        return CredentialExpiredError(f"Gmail {action} unauthorized: {exc}")
    return TransientRemoteError(f"Gmail {action} failed: {exc!r}")


@dataclass
class GmailListingClient:
    """Gmail API wrapper implementing ``RemoteListingClient``.

    The discovery service object is not thread-safe, so each worker thread
    builds its own on first use.
    """

    access_token: str = field(repr=False)
    user_id: str = "me"
    _local: threading.local = field(default_factory=threading.local, init=False, repr=False)

    def _service(self) -> Any:
        """Return the Gmail service bound to the current thread."""
        service = getattr(self._local, "service", None)
        if service is None:
            creds = Credentials(token=self.access_token)  # type: ignore[no-untyped-call]
            service = build("gmail", "v1", credentials=creds, cache_discovery=False)
            self._local.service = service
        return service

    async def list_ids(self, *, query: str, cursor: str | None, page_size: int) -> ListPage:
        """List message ids for a query, one page at a time.

        Args:
            query: Gmail search query.
            cursor: Page token from the previous page, or None for the first page.
            page_size: Requested page size (capped at 500 by the API).

        Returns:
            ListPage with ids and the next cursor.

        Raises:
            CredentialExpiredError: If the access token is rejected.
            TransientRemoteError: For any other failure.
        """
        size = max(1, min(MAX_LIST_PAGE_SIZE, page_size))

        def _call() -> dict[str, Any]:
            """Execute the list request."""
            req = (
                self._service()
                .users()
                .messages()
                .list(
                    userId=self.user_id,
                    q=query,
                    maxResults=size,
                    pageToken=cursor,
                    fields="messages/id,nextPageToken",
                )
            )
            return req.execute()  # type: ignore[no-any-return]

        try:
            resp = await asyncio.to_thread(_call)
        except Exception as exc:
            raise _translate(exc, action="list") from exc

        if not isinstance(resp, dict):
            raise TransientRemoteError(f"Unexpected Gmail list response: {resp!r}")
        ids = [str(msg["id"]) for msg in resp.get("messages") or [] if msg.get("id")]
        next_cursor = resp.get("nextPageToken") or None
        logger.debug(
            "Listed %d ids (cursor=%s, more=%s)",
            len(ids),
            cursor,
            next_cursor is not None,
        )
        return ListPage(ids=ids, next_cursor=next_cursor)

    async def fetch_metadata(self, message_id: str) -> dict[str, Any]:
        """Fetch the metadata-format resource for one message.

        Args:
            message_id: Gmail message id.

        Returns:
            Raw message resource.

        Raises:
            CredentialExpiredError: If the access token is rejected.
            TransientRemoteError: For any other failure.
        """

        def _call() -> dict[str, Any]:
            """Execute the get request."""
            req = (
                self._service()
                .users()
                .messages()
                .get(
                    userId=self.user_id,
                    id=message_id,
                    format="metadata",
                    metadataHeaders=METADATA_HEADERS,
                )
            )
            return req.execute()  # type: ignore[no-any-return]

        try:
            resp = await asyncio.to_thread(_call)
        except Exception as exc:
            raise _translate(exc, action=f"get {message_id}") from exc

        if not isinstance(resp, dict):
            raise TransientRemoteError(f"Unexpected Gmail get response: {resp!r}")
        return resp


def gmail_client_factory(*, user_id: str = "me") -> ClientFactory:
    """Return a factory building a ``GmailListingClient`` per access token.

    Args:
        user_id: Gmail user identifier used for API calls.

    Returns:
        Callable mapping an access token to a listing client.
    """

    def _factory(access_token: str) -> RemoteListingClient:
        """Build a client for one access token."""
        return GmailListingClient(access_token=access_token, user_id=user_id)

    return _factory
