"""Header parsing helpers for provider message records."""

from __future__ import annotations

import re
from collections.abc import Iterable, Mapping
from datetime import UTC, datetime
from email.header import decode_header, make_header
from email.utils import getaddresses, parsedate_to_datetime
from typing import Any

_SENDER_RE = re.compile(r"^(.+?)\s*<(.+?)>$")


def decode_header_value(value: str) -> str:
    """Decode RFC 2047-encoded header values.

    Args:
        value: Raw header value.

    Returns:
        Best-effort decoded value.
    """
    try:
        return str(make_header(decode_header(value)))
    except (LookupError, UnicodeDecodeError, ValueError):
        return value


def header_lookup(headers: Iterable[Mapping[str, Any]], name: str) -> str | None:
    """Return the first header value matching ``name`` case-insensitively.

    Args:
        headers: Provider header list of ``{"name": ..., "value": ...}`` entries.
        name: Header name to look up.

    Returns:
        Decoded header value, or None when absent or empty.
    """
    wanted = name.lower()
    for header in headers:
        if str(header.get("name", "")).lower() != wanted:
            continue
        raw = header.get("value")
        if not raw:
            return None
        return decode_header_value(str(raw))
    return None


def parse_sender(value: str | None) -> tuple[str | None, str | None]:
    """Split a ``Display Name <address>`` header into name and address.

    Values without angle brackets are treated as a bare address.

    Args:
        value: Raw From header value.

    Returns:
        Tuple of (display name, address); either may be None.
    """
    if not value or not value.strip():
        return None, None
    stripped = value.strip()
    match = _SENDER_RE.match(stripped)
    if match is None:
        return None, stripped
    name = match.group(1).strip().replace('"', "").strip()
    address = match.group(2).strip()
    return (name or None), (address or None)


def first_address(value: str | None) -> str | None:
    """Return the first address listed in an address header.

    Args:
        value: Raw To/Cc header value.

    Returns:
        Lowercased first address, or None.
    """
    if not value:
        return None
    for _, addr in getaddresses([value]):
        if addr and addr.strip():
            return addr.strip().lower()
    return None


def parse_date_header(value: str | None) -> datetime | None:
    """Parse an RFC 2822 Date header into an aware UTC datetime.

    Args:
        value: Raw Date header value.

    Returns:
        Parsed datetime in UTC, or None if missing or malformed.
    """
    if not value:
        return None
    try:
        parsed = parsedate_to_datetime(value)
    except (TypeError, ValueError, IndexError):
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed.astimezone(UTC)


def parse_epoch_millis(value: object) -> datetime | None:
    """Parse a provider ``internalDate`` (epoch milliseconds) value.

    Args:
        value: Raw value, usually a numeric string.

    Returns:
        Aware UTC datetime, or None when the value is not numeric.
    """
    if value is None:
        return None
    try:
        millis = int(str(value))
    except ValueError:
        return None
    try:
        return datetime.fromtimestamp(millis / 1000, tz=UTC)
    except (OverflowError, OSError, ValueError):
        return None
