"""SQLite persistence for accounts, credentials and message metadata."""

from __future__ import annotations

import json
import logging
import sqlite3
from collections.abc import Iterator, Mapping, Sequence
from contextlib import contextmanager
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from mailbox_sync.errors import PersistenceError
from mailbox_sync.models.state import (
    BACKFILL_DONE_AFTER_EMPTY_PASSES,
    AccountMailStats,
    AccountRow,
    CredentialRow,
    MessageMetadata,
    UpsertResult,
)

logger = logging.getLogger(__name__)

_MUTABLE_COLUMNS: tuple[str, ...] = (
    "thread_id",
    "subject",
    "sender_address",
    "sender_name",
    "recipient_address",
    "received_at",
    "internal_at",
    "is_read",
    "has_attachments",
    "labels_json",
    "size_bytes",
)

_SELECT_EXISTING = (
    "SELECT thread_id, subject, sender_address, sender_name, recipient_address, received_at, "
    "internal_at, is_read, has_attachments, labels_json, size_bytes "
    "FROM messages WHERE account_id=? AND provider_message_id=?"
)

SCHEMA_VERSION = 2

# Columns added after the first schema version, as (name, declaration).
_ACCOUNT_COLUMNS_V2: tuple[tuple[str, str], ...] = (
    ("last_attempted_at", "TEXT"),
    ("backfill_cursor", "TEXT"),
    ("backfill_empty_passes", "INTEGER NOT NULL DEFAULT 0"),
    ("backfill_at", "TEXT"),
)
_MESSAGE_COLUMNS_V2: tuple[tuple[str, str], ...] = (("internal_at", "TEXT"),)


def _utcnow() -> datetime:
    """Return current UTC time with timezone info."""
    return datetime.now(tz=UTC)


def _dt_to_iso(value: datetime) -> str:
    """Convert datetime to ISO string in UTC.

    Args:
        value: Datetime value.

    Returns:
        ISO-formatted string in UTC.
    """
    if value.tzinfo is None:
        value = value.replace(tzinfo=UTC)
    return value.astimezone(UTC).isoformat()


def _iso_to_dt(value: str) -> datetime:
    """Parse ISO datetime strings into timezone-aware datetimes.

    Args:
        value: ISO-formatted datetime string.

    Returns:
        Parsed datetime, defaulting to UTC if no timezone is present.
    """
    dt = datetime.fromisoformat(value)
    return dt if dt.tzinfo is not None else dt.replace(tzinfo=UTC)


def _opt_iso(value: datetime | None) -> str | None:
    """Convert an optional datetime to ISO."""
    return _dt_to_iso(value) if value is not None else None


def _opt_dt(value: str | None) -> datetime | None:
    """Parse an optional ISO string."""
    return _iso_to_dt(value) if value else None


def _metadata_params(record: MessageMetadata) -> dict[str, Any]:
    """Flatten a metadata record into column values."""
    return {
        "account_id": record.account_id,
        "provider_message_id": record.provider_message_id,
        "thread_id": record.thread_id,
        "subject": record.subject,
        "sender_address": record.sender_address,
        "sender_name": record.sender_name,
        "recipient_address": record.recipient_address,
        "received_at": _opt_iso(record.received_at),
        "internal_at": _opt_iso(record.internal_at),
        "is_read": int(record.is_read),
        "has_attachments": int(record.has_attachments),
        "labels_json": json.dumps(sorted(record.labels)),
        "size_bytes": record.size_bytes,
    }


def _add_missing_columns(
    conn: sqlite3.Connection,
    table: str,
    columns: Sequence[tuple[str, str]],
) -> None:
    """Add columns that a database created by an older schema lacks.

    Args:
        conn: Open connection inside the schema transaction.
        table: Table name.
        columns: (name, declaration) pairs to ensure.
    """
    present = {str(row["name"]) for row in conn.execute(f"PRAGMA table_info({table})")}
    for name, declaration in columns:
        if name not in present:
            logger.info("Adding column %s.%s", table, name)
            conn.execute(f"ALTER TABLE {table} ADD COLUMN {name} {declaration}")


class SyncDb:
    """SQLite store used by the sync engine and by local readers."""

    def __init__(self, *, sqlite_path: Path) -> None:
        """Initialize the database connection.

        Args:
            sqlite_path: Path to the sqlite database file.
        """
        self._sqlite_path = sqlite_path
        self._conn = sqlite3.connect(
            sqlite_path,
            timeout=30,
            isolation_level=None,
        )
        self._conn.row_factory = sqlite3.Row

    @property
    def sqlite_path(self) -> Path:
        """Return the sqlite database path."""
        return self._sqlite_path

    def close(self) -> None:
        """Close the underlying sqlite connection."""
        self._conn.close()

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        """Provide a transaction context manager."""
        cursor = self._conn.cursor()
        try:
            cursor.execute("BEGIN")
            yield self._conn
            cursor.execute("COMMIT")
        except Exception:
            cursor.execute("ROLLBACK")
            raise

    def init_schema(self) -> None:
        """Create tables if missing and ensure sqlite PRAGMA settings."""
        self._conn.execute("PRAGMA journal_mode=WAL")
        self._conn.execute("PRAGMA synchronous=NORMAL")
        self._conn.execute("PRAGMA foreign_keys=ON")

        with self.transaction() as conn:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS accounts (
                  id INTEGER PRIMARY KEY AUTOINCREMENT,
                  user_id INTEGER NOT NULL,
                  email TEXT NOT NULL UNIQUE,
                  is_active INTEGER NOT NULL DEFAULT 1,
                  last_synced_at TEXT,
                  last_attempted_at TEXT,
                  backfill_cursor TEXT,
                  backfill_empty_passes INTEGER NOT NULL DEFAULT 0,
                  backfill_at TEXT,
                  created_at TEXT NOT NULL
                )
                """,
            )

            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS credentials (
                  account_id INTEGER PRIMARY KEY REFERENCES accounts(id),
                  access_token TEXT NOT NULL,
                  refresh_token TEXT,
                  expires_at TEXT,
                  updated_at TEXT NOT NULL
                )
                """,
            )

            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS messages (
                  id INTEGER PRIMARY KEY AUTOINCREMENT,
                  account_id INTEGER NOT NULL REFERENCES accounts(id),
                  provider_message_id TEXT NOT NULL,
                  thread_id TEXT,
                  subject TEXT,
                  sender_address TEXT,
                  sender_name TEXT,
                  recipient_address TEXT,
                  received_at TEXT,
                  internal_at TEXT,
                  is_read INTEGER NOT NULL,
                  has_attachments INTEGER NOT NULL,
                  labels_json TEXT NOT NULL DEFAULT '[]',
                  size_bytes INTEGER,
                  synced_at TEXT NOT NULL,
                  UNIQUE(account_id, provider_message_id)
                )
                """,
            )
            _add_missing_columns(conn, "accounts", _ACCOUNT_COLUMNS_V2)
            _add_missing_columns(conn, "messages", _MESSAGE_COLUMNS_V2)

            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_messages_received "
                "ON messages(account_id, received_at)",
            )
            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_accounts_staleness "
                "ON accounts(is_active, last_synced_at)",
            )
            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_messages_internal "
                "ON messages(account_id, internal_at)",
            )

            conn.execute(f"PRAGMA user_version = {SCHEMA_VERSION}")

    def add_account(self, *, user_id: int, email: str, is_active: bool = True) -> AccountRow:
        """Register a mailbox account.

        Args:
            user_id: Owning user id.
            email: Mailbox address.
            is_active: Whether the scheduler should pick the account up.

        Returns:
            The stored account row.
        """
        now = _utcnow()
        with self.transaction() as conn:
            cur = conn.execute(
                """
                INSERT INTO accounts(user_id, email, is_active, created_at)
                VALUES(?, ?, ?, ?)
                """,
                (user_id, email.strip().lower(), int(is_active), _dt_to_iso(now)),
            )
            account_id = int(cur.lastrowid or 0)
        account = self.get_account(account_id)
        assert account is not None
        return account

    def get_account(self, account_id: int) -> AccountRow | None:
        """Fetch an account by id.

        Args:
            account_id: Account id.

        Returns:
            Account row if present, otherwise None.
        """
        row = self._conn.execute("SELECT * FROM accounts WHERE id=?", (account_id,)).fetchone()
        return self._row_to_account(row) if row is not None else None

    def set_account_active(self, *, account_id: int, is_active: bool) -> None:
        """Enable or disable an account for scheduled syncs.

        Args:
            account_id: Account id.
            is_active: New active flag.
        """
        with self.transaction() as conn:
            conn.execute(
                "UPDATE accounts SET is_active=? WHERE id=?",
                (int(is_active), account_id),
            )

    def list_active_accounts(self, limit: int) -> list[AccountRow]:
        """Return active accounts with a credential, least recently attempted first.

        Accounts never attempted come first, then the oldest attempt. Ties fall
        back to the last successful sync. A failing account therefore moves to
        the back of the queue after its turn.

        Args:
            limit: Maximum number of accounts.

        Returns:
            Account rows with ``staleness_rank`` set (1 = stalest).
        """
        rows = self._conn.execute(
            """
            SELECT a.* FROM accounts a
            INNER JOIN credentials c ON c.account_id = a.id
            WHERE a.is_active = 1
            ORDER BY a.last_attempted_at IS NOT NULL, a.last_attempted_at ASC,
                     a.last_synced_at IS NOT NULL, a.last_synced_at ASC, a.id ASC
            LIMIT ?
            """,
            (limit,),
        ).fetchall()
        return [
            self._row_to_account(row, staleness_rank=rank)
            for rank, row in enumerate(rows, start=1)
        ]

    def mark_account_synced(self, *, account_id: int, synced_at: datetime | None = None) -> None:
        """Record the completion time of a successful sync.

        Args:
            account_id: Account id.
            synced_at: Completion time; defaults to now.
        """
        when = synced_at or _utcnow()
        with self.transaction() as conn:
            conn.execute(
                "UPDATE accounts SET last_synced_at=? WHERE id=?",
                (_dt_to_iso(when), account_id),
            )

    def mark_account_attempted(
        self,
        *,
        account_id: int,
        attempted_at: datetime | None = None,
    ) -> None:
        """Record that a scheduled sync of the account has started.

        Args:
            account_id: Account id.
            attempted_at: Start time; defaults to now.
        """
        when = attempted_at or _utcnow()
        with self.transaction() as conn:
            conn.execute(
                "UPDATE accounts SET last_attempted_at=? WHERE id=?",
                (_dt_to_iso(when), account_id),
            )

    def select_backfill_account(self) -> AccountRow | None:
        """Pick the next account whose history still needs backfilling.

        Returns:
            The active account with a credential and an unfinished backfill
            that was visited least recently, or None when every backfill is done.
        """
        row = self._conn.execute(
            """
            SELECT a.* FROM accounts a
            INNER JOIN credentials c ON c.account_id = a.id
            WHERE a.is_active = 1 AND a.backfill_empty_passes < ?
            ORDER BY a.backfill_at IS NOT NULL, a.backfill_at ASC, a.id ASC
            LIMIT 1
            """,
            (BACKFILL_DONE_AFTER_EMPTY_PASSES,),
        ).fetchone()
        return self._row_to_account(row) if row is not None else None

    def mark_backfill_attempted(
        self,
        *,
        account_id: int,
        attempted_at: datetime | None = None,
    ) -> None:
        """Record that a backfill pass for the account has started.

        Args:
            account_id: Account id.
            attempted_at: Start time; defaults to now.
        """
        when = attempted_at or _utcnow()
        with self.transaction() as conn:
            conn.execute(
                "UPDATE accounts SET backfill_at=? WHERE id=?",
                (_dt_to_iso(when), account_id),
            )

    def record_backfill_pass(
        self,
        *,
        account_id: int,
        processed: int,
        next_cursor: str | None,
    ) -> AccountRow:
        """Store the outcome of one backfill pass.

        An empty pass counts towards completion and restarts the walk from the
        newest page. A pass that processed items resets that count and saves the
        cursor to resume from; without a next cursor the history is exhausted
        and the backfill is complete.

        Args:
            account_id: Account id.
            processed: Number of items the pass processed.
            next_cursor: Cursor for the page after the pass, if any.

        Returns:
            The updated account row.
        """
        with self.transaction() as conn:
            if processed == 0:
                conn.execute(
                    """
                    UPDATE accounts
                    SET backfill_empty_passes = backfill_empty_passes + 1,
                        backfill_cursor = NULL
                    WHERE id=?
                    """,
                    (account_id,),
                )
            elif next_cursor is None:
                conn.execute(
                    "UPDATE accounts SET backfill_empty_passes=?, backfill_cursor=NULL WHERE id=?",
                    (BACKFILL_DONE_AFTER_EMPTY_PASSES, account_id),
                )
            else:
                conn.execute(
                    "UPDATE accounts SET backfill_empty_passes=0, backfill_cursor=? WHERE id=?",
                    (next_cursor, account_id),
                )
        account = self.get_account(account_id)
        assert account is not None
        return account

    def load_credential(self, account_id: int) -> CredentialRow | None:
        """Load the stored credential for an account.

        Args:
            account_id: Account id.

        Returns:
            Credential row if present, otherwise None.
        """
        row = self._conn.execute(
            "SELECT * FROM credentials WHERE account_id=?",
            (account_id,),
        ).fetchone()
        if row is None:
            return None
        return CredentialRow(
            account_id=int(row["account_id"]),
            access_token=str(row["access_token"]),
            refresh_token=row["refresh_token"],
            expires_at=_opt_dt(row["expires_at"]),
            updated_at=_iso_to_dt(str(row["updated_at"])),
        )

    def save_credential(
        self,
        *,
        account_id: int,
        access_token: str,
        expires_at: datetime | None,
        refresh_token: str | None = None,
    ) -> CredentialRow:
        """Store an access token together with its expiry in one transaction.

        Args:
            account_id: Account id.
            access_token: New access token.
            expires_at: Expiry matching ``access_token``.
            refresh_token: New refresh token; None keeps the stored one.

        Returns:
            The stored credential row.
        """
        now = _utcnow()
        with self.transaction() as conn:
            conn.execute(
                """
                INSERT INTO credentials(account_id, access_token, refresh_token, expires_at,
                                        updated_at)
                VALUES(?, ?, ?, ?, ?)
                ON CONFLICT(account_id) DO UPDATE SET
                  access_token=excluded.access_token,
                  refresh_token=COALESCE(excluded.refresh_token, credentials.refresh_token),
                  expires_at=excluded.expires_at,
                  updated_at=excluded.updated_at
                """,
                (account_id, access_token, refresh_token, _opt_iso(expires_at), _dt_to_iso(now)),
            )
        stored = self.load_credential(account_id)
        assert stored is not None
        return stored

    def upsert_metadata(self, records: Sequence[MessageMetadata]) -> UpsertResult:
        """Insert or update metadata rows in a single transaction.

        Rows are keyed by (account_id, provider_message_id). Existing rows are
        counted as updated only when a stored field actually changes.

        Args:
            records: Metadata records to persist.

        Returns:
            Counts of inserted, updated and unchanged rows.

        Raises:
            PersistenceError: If the transaction fails; nothing is written.
        """
        if not records:
            return UpsertResult()

        now = _dt_to_iso(_utcnow())
        inserted = 0
        updated = 0
        unchanged = 0
        try:
            with self.transaction() as conn:
                for record in records:
                    params = _metadata_params(record)
                    existing = conn.execute(
                        _SELECT_EXISTING,
                        (record.account_id, record.provider_message_id),
                    ).fetchone()

                    conn.execute(
                        """
                        INSERT INTO messages(
                          account_id, provider_message_id, thread_id, subject,
                          sender_address, sender_name, recipient_address, received_at, internal_at,
                          is_read, has_attachments, labels_json, size_bytes, synced_at
                        )
                        VALUES(
                          :account_id, :provider_message_id, :thread_id, :subject,
                          :sender_address, :sender_name, :recipient_address, :received_at, :internal_at,
                          :is_read, :has_attachments, :labels_json, :size_bytes, :synced_at
                        )
                        ON CONFLICT(account_id, provider_message_id) DO UPDATE SET
                          thread_id=excluded.thread_id,
                          subject=excluded.subject,
                          sender_address=excluded.sender_address,
                          sender_name=excluded.sender_name,
                          recipient_address=excluded.recipient_address,
                          received_at=excluded.received_at,
                          internal_at=excluded.internal_at,
                          is_read=excluded.is_read,
                          has_attachments=excluded.has_attachments,
                          labels_json=excluded.labels_json,
                          size_bytes=excluded.size_bytes,
                          synced_at=excluded.synced_at
                        """,
                        {**params, "synced_at": now},
                    )

                    if existing is None:
                        inserted += 1
                    elif any(existing[col] != params[col] for col in _MUTABLE_COLUMNS):
                        updated += 1
                    else:
                        unchanged += 1
        except sqlite3.Error as exc:
            logger.error("Metadata upsert of %d records rolled back: %r", len(records), exc)
            raise PersistenceError(f"Metadata upsert failed: {exc}") from exc

        logger.debug(
            "Upserted %d records (inserted=%d updated=%d unchanged=%d)",
            len(records),
            inserted,
            updated,
            unchanged,
        )
        return UpsertResult(inserted=inserted, updated=updated, unchanged=unchanged)

    def get_latest_synced_timestamp(self, account_id: int) -> datetime | None:
        """Return the newest provider receive time stored for an account.

        This reads the provider's internal receive time, never the ``Date``
        header, which the sender controls.

        Args:
            account_id: Account id.

        Returns:
            Watermark datetime, or None if nothing with a timestamp is stored.
        """
        row = self._conn.execute(
            "SELECT MAX(internal_at) AS latest FROM messages WHERE account_id=?",
            (account_id,),
        ).fetchone()
        return _opt_dt(row["latest"]) if row is not None else None

    def get_message(self, *, account_id: int, provider_message_id: str) -> MessageMetadata | None:
        """Fetch one stored metadata record.

        Args:
            account_id: Account id.
            provider_message_id: Provider message id.

        Returns:
            Metadata record if present, otherwise None.
        """
        row = self._conn.execute(
            "SELECT * FROM messages WHERE account_id=? AND provider_message_id=?",
            (account_id, provider_message_id),
        ).fetchone()
        return self._row_to_metadata(row) if row is not None else None

    def count_messages(self, account_id: int | None = None) -> int:
        """Return the number of stored messages.

        Args:
            account_id: Optional account filter.

        Returns:
            Row count.
        """
        if account_id is None:
            row = self._conn.execute("SELECT COUNT(*) AS c FROM messages").fetchone()
        else:
            row = self._conn.execute(
                "SELECT COUNT(*) AS c FROM messages WHERE account_id=?",
                (account_id,),
            ).fetchone()
        return int(row["c"]) if row else 0

    def account_stats(self, account_id: int) -> AccountMailStats:
        """Return read/unread/attachment counts for an account.

        Args:
            account_id: Account id.

        Returns:
            AccountMailStats for the account.
        """
        row = self._conn.execute(
            """
            SELECT
              COUNT(*) AS total,
              COALESCE(SUM(CASE WHEN is_read = 0 THEN 1 ELSE 0 END), 0) AS unread,
              COALESCE(SUM(CASE WHEN is_read = 1 THEN 1 ELSE 0 END), 0) AS read,
              COALESCE(SUM(CASE WHEN has_attachments = 1 THEN 1 ELSE 0 END), 0) AS attachments,
              MAX(received_at) AS latest
            FROM messages
            WHERE account_id=?
            """,
            (account_id,),
        ).fetchone()
        return AccountMailStats(
            account_id=account_id,
            total=int(row["total"]),
            unread=int(row["unread"]),
            read=int(row["read"]),
            with_attachments=int(row["attachments"]),
            latest_received_at=_opt_dt(row["latest"]),
        )

    def iter_accounts(self) -> Iterator[AccountRow]:
        """Iterate all account rows ordered by id.

        Yields:
            AccountRow instances.
        """
        rows = self._conn.execute("SELECT * FROM accounts ORDER BY id").fetchall()
        for row in rows:
            yield self._row_to_account(row)

    def _row_to_account(
        self,
        row: Mapping[str, Any],
        *,
        staleness_rank: int | None = None,
    ) -> AccountRow:
        """Convert a sqlite row to an AccountRow.

        Args:
            row: Row mapping from sqlite.
            staleness_rank: Optional rank assigned by the caller.

        Returns:
            AccountRow instance.
        """
        return AccountRow(
            id=int(row["id"]),
            user_id=int(row["user_id"]),
            email=str(row["email"]),
            is_active=bool(row["is_active"]),
            last_synced_at=_opt_dt(row["last_synced_at"]),
            last_attempted_at=_opt_dt(row["last_attempted_at"]),
            backfill_cursor=row["backfill_cursor"],
            backfill_empty_passes=int(row["backfill_empty_passes"] or 0),
            backfill_at=_opt_dt(row["backfill_at"]),
            staleness_rank=staleness_rank,
            created_at=_iso_to_dt(str(row["created_at"])),
        )

    def _row_to_metadata(self, row: Mapping[str, Any]) -> MessageMetadata:
        """Convert a sqlite row to a MessageMetadata record.

        Args:
            row: Row mapping from sqlite.

        Returns:
            MessageMetadata instance.
        """
        return MessageMetadata(
            account_id=int(row["account_id"]),
            provider_message_id=str(row["provider_message_id"]),
            thread_id=row["thread_id"],
            subject=row["subject"],
            sender_address=row["sender_address"],
            sender_name=row["sender_name"],
            recipient_address=row["recipient_address"],
            received_at=_opt_dt(row["received_at"]),
            internal_at=_opt_dt(row["internal_at"]),
            is_read=bool(row["is_read"]),
            has_attachments=bool(row["has_attachments"]),
            labels=list(json.loads(row["labels_json"] or "[]")),
            size_bytes=row["size_bytes"],
        )
