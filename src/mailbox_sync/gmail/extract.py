"""Normalize raw Gmail message records into metadata rows."""

from __future__ import annotations

from collections.abc import Mapping
from typing import Any

from mailbox_sync.models.state import MessageMetadata
from mailbox_sync.utils.email import (
    first_address,
    header_lookup,
    parse_date_header,
    parse_epoch_millis,
    parse_sender,
)

UNREAD_LABEL = "UNREAD"


def extract_metadata(raw: Mapping[str, Any], *, account_id: int) -> MessageMetadata | None:
    """Extract normalized metadata from a provider message record.

    The function performs no I/O. Records without a stable identifier are a
    data-quality skip, not an error, and yield None.

    Args:
        raw: Message resource as returned by ``users.messages.get``.
        account_id: Owning account id.

    Returns:
        MessageMetadata, or None if the record has no id.
    """
    message_id = str(raw.get("id") or "").strip()
    if not message_id:
        return None

    payload: Mapping[str, Any] = raw.get("payload") or {}
    headers = payload.get("headers") or []

    sender_name, sender_address = parse_sender(header_lookup(headers, "From"))
    labels = [str(label) for label in (raw.get("labelIds") or [])]

    internal_at = parse_epoch_millis(raw.get("internalDate"))
    received_at = parse_date_header(header_lookup(headers, "Date")) or internal_at

    size = raw.get("sizeEstimate")

    return MessageMetadata(
        account_id=account_id,
        provider_message_id=message_id,
        thread_id=str(raw["threadId"]) if raw.get("threadId") else None,
        subject=header_lookup(headers, "Subject"),
        sender_address=sender_address,
        sender_name=sender_name,
        recipient_address=first_address(header_lookup(headers, "To")),
        received_at=received_at,
        internal_at=internal_at,
        is_read=UNREAD_LABEL not in labels,
        has_attachments=has_attachments(payload),
        labels=labels,
        size_bytes=int(size) if isinstance(size, int) and size >= 0 else None,
    )


def has_attachments(payload: Mapping[str, Any]) -> bool:
    """Return whether any sub-part of a payload declares a filename.

    Args:
        payload: Message payload mapping.

    Returns:
        True if a nested part carries a non-empty filename.
    """
    for part in payload.get("parts") or []:
        if str(part.get("filename") or "").strip():
            return True
        if has_attachments(part):
            return True
    return False
