"""SQLite-backed repository for accounts, emails and attachments."""

from __future__ import annotations

import logging
import sqlite3
import uuid
from collections.abc import Sequence
from datetime import datetime
from pathlib import Path
from types import TracebackType
from typing import cast

from ..core.config import StorageSettings
from ..core.datetime_utils import parse_datetime, serialize_datetime, utcnow
from ..core.errors import ConstraintViolationError, StorageError
from ..core.interfaces import MailRepository
from ..core.models import (
    Account,
    ParsedAttachment,
    ParsedEmail,
    StoredAttachment,
    StoredEmail,
    ThreadPage,
    TokenUpdate,
)

LOGGER = logging.getLogger(__name__)

GOOGLE_PROVIDER = "google"
EMAILS_PER_PAGE = 25

_EMAIL_COLUMNS = """
    id,
    gmail_id,
    thread_id,
    user_id,
    subject,
    from_address,
    to_address,
    cc,
    bcc,
    snippet,
    body_url,
    is_read,
    is_sent,
    received_at,
    created_at
"""

_ACCOUNT_COLUMNS = """
    id,
    user_id,
    provider_id,
    provider_account_id,
    email_address,
    access_token,
    refresh_token,
    access_token_expires_at,
    history_id
"""


class SqliteMailRepository(MailRepository):
    """Persist linked accounts and mirrored mail using SQLite."""

    def __init__(self, settings: StorageSettings) -> None:
        """Initialise the repository and apply migrations."""
        self._settings = settings
        db_path = Path(settings.db_path)
        db_path.parent.mkdir(parents=True, exist_ok=True)
        self._connection = sqlite3.connect(
            db_path,
            detect_types=sqlite3.PARSE_DECLTYPES,
            check_same_thread=False,
        )
        self._connection.row_factory = sqlite3.Row
        self._enable_foreign_keys()
        self._apply_migrations()

    # Context manager helpers -------------------------------------------------
    def __enter__(self) -> SqliteMailRepository:
        """Enter context manager scope."""
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        """Ensure the connection is closed when exiting context manager."""
        self.close()

    # Accounts ----------------------------------------------------------------
    def link_account(
        self,
        user_id: str,
        *,
        access_token: str | None,
        refresh_token: str | None,
        access_token_expires_at: datetime | None = None,
        provider_account_id: str | None = None,
        email_address: str | None = None,
    ) -> Account:
        """Create or refresh the Google account row for ``user_id``.

        Re-linking replaces the tokens but keeps the stored history id, so a
        returning user continues with incremental sync.
        """
        now = serialize_datetime(utcnow())
        try:
            with self._connection:
                self._connection.execute(
                    """
                    INSERT INTO accounts (
                        id,
                        user_id,
                        provider_id,
                        provider_account_id,
                        email_address,
                        access_token,
                        refresh_token,
                        access_token_expires_at,
                        history_id,
                        created_at,
                        updated_at
                    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, NULL, ?, ?)
                    ON CONFLICT(user_id, provider_id) DO UPDATE SET
                        provider_account_id=COALESCE(
                            excluded.provider_account_id, accounts.provider_account_id
                        ),
                        email_address=COALESCE(
                            excluded.email_address, accounts.email_address
                        ),
                        access_token=excluded.access_token,
                        refresh_token=COALESCE(
                            excluded.refresh_token, accounts.refresh_token
                        ),
                        access_token_expires_at=excluded.access_token_expires_at,
                        updated_at=excluded.updated_at
                    """,
                    (
                        uuid.uuid4().hex,
                        user_id,
                        GOOGLE_PROVIDER,
                        provider_account_id,
                        email_address,
                        access_token,
                        refresh_token,
                        serialize_datetime(access_token_expires_at),
                        now,
                        now,
                    ),
                )
        except sqlite3.Error as exc:
            raise StorageError(f"Failed to link account for user {user_id}") from exc
        account = self.find_account_for_user(user_id)
        if account is None:  # pragma: no cover - insert just succeeded
            raise StorageError(f"Account for user {user_id} vanished after insert")
        return account

    def find_account_for_user(self, user_id: str) -> Account | None:
        """Return the Google account linked to ``user_id``."""
        cur = self._connection.execute(
            f"SELECT {_ACCOUNT_COLUMNS} FROM accounts WHERE user_id = ? AND provider_id = ?",
            (user_id, GOOGLE_PROVIDER),
        )
        row = cur.fetchone()
        return _row_to_account(row) if row is not None else None

    def get_account(self, account_id: str) -> Account | None:
        """Return an account by its primary key."""
        cur = self._connection.execute(
            f"SELECT {_ACCOUNT_COLUMNS} FROM accounts WHERE id = ?",
            (account_id,),
        )
        row = cur.fetchone()
        return _row_to_account(row) if row is not None else None

    def list_accounts(self) -> list[Account]:
        """Return every linked Google account, oldest first."""
        cur = self._connection.execute(
            f"SELECT {_ACCOUNT_COLUMNS} FROM accounts WHERE provider_id = ? ORDER BY created_at",
            (GOOGLE_PROVIDER,),
        )
        return [_row_to_account(row) for row in cur.fetchall()]

    def update_tokens(self, account_id: str, update: TokenUpdate) -> None:
        """Store refreshed OAuth tokens; a missing refresh token keeps the old one."""
        LOGGER.debug("Updating OAuth tokens for account %s", account_id)
        try:
            with self._connection:
                self._connection.execute(
                    """
                    UPDATE accounts
                    SET access_token = ?,
                        refresh_token = COALESCE(?, refresh_token),
                        access_token_expires_at = ?,
                        updated_at = ?
                    WHERE id = ?
                    """,
                    (
                        update.access_token,
                        update.refresh_token,
                        serialize_datetime(update.expires_at),
                        serialize_datetime(utcnow()),
                        account_id,
                    ),
                )
        except sqlite3.Error as exc:
            raise StorageError(
                f"Failed to store tokens for account {account_id}"
            ) from exc

    def update_cursor(self, account_id: str, history_id: str | None) -> None:
        """Persist the account's Gmail history id."""
        LOGGER.debug("Updating cursor account=%s history_id=%s", account_id, history_id)
        try:
            with self._connection:
                self._connection.execute(
                    "UPDATE accounts SET history_id = ?, updated_at = ? WHERE id = ?",
                    (history_id, serialize_datetime(utcnow()), account_id),
                )
        except sqlite3.Error as exc:
            raise StorageError(
                f"Failed to store cursor for account {account_id}"
            ) from exc

    # Emails ------------------------------------------------------------------
    def email_exists(self, gmail_id: str) -> bool:
        """Return ``True`` if an email row exists for ``gmail_id``."""
        cur = self._connection.execute(
            "SELECT 1 FROM emails WHERE gmail_id = ? LIMIT 1",
            (gmail_id,),
        )
        return cur.fetchone() is not None

    def insert_email(
        self, user_id: str, parsed: ParsedEmail, body_url: str | None
    ) -> StoredEmail:
        """Insert a mirrored email row and return it.

        Raises :class:`ConstraintViolationError` when the Gmail id is already
        stored, e.g. by an overlapping sync run.
        """
        LOGGER.debug("Persisting email gmail_id=%s", parsed.gmail_id)
        try:
            with self._connection:
                cur = self._connection.execute(
                    f"""
                    INSERT INTO emails (
                        id,
                        gmail_id,
                        thread_id,
                        user_id,
                        subject,
                        from_address,
                        to_address,
                        cc,
                        bcc,
                        snippet,
                        body_url,
                        received_at,
                        created_at
                    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    RETURNING {_EMAIL_COLUMNS}
                    """,
                    (
                        str(uuid.uuid4()),
                        parsed.gmail_id,
                        parsed.thread_id,
                        user_id,
                        parsed.subject,
                        parsed.from_address,
                        parsed.to_address,
                        parsed.cc,
                        parsed.bcc,
                        parsed.snippet,
                        body_url,
                        serialize_datetime(parsed.received_at),
                        serialize_datetime(utcnow()),
                    ),
                )
                row = cur.fetchone()
        except sqlite3.IntegrityError as exc:
            raise ConstraintViolationError(
                f"Email {parsed.gmail_id} is already stored"
            ) from exc
        except sqlite3.Error as exc:
            raise StorageError(f"Failed to persist email {parsed.gmail_id}") from exc
        return _row_to_email(row)

    def insert_attachment(
        self, email_id: str, attachment: ParsedAttachment, url: str | None
    ) -> StoredAttachment:
        """Insert an attachment row for ``email_id``."""
        stored = StoredAttachment(
            id=str(uuid.uuid4()),
            email_id=email_id,
            filename=attachment.filename,
            content_type=attachment.content_type,
            size=attachment.size,
            url=url,
        )
        try:
            with self._connection:
                self._connection.execute(
                    """
                    INSERT INTO attachments (
                        id, email_id, filename, content_type, size, url, created_at
                    ) VALUES (?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        stored.id,
                        stored.email_id,
                        stored.filename,
                        stored.content_type,
                        stored.size,
                        stored.url,
                        serialize_datetime(utcnow()),
                    ),
                )
        except sqlite3.Error as exc:
            raise StorageError(
                f"Failed to persist attachment {attachment.filename} for email {email_id}"
            ) from exc
        return stored

    def find_emails_by_gmail_ids(
        self, user_id: str, gmail_ids: Sequence[str]
    ) -> list[StoredEmail]:
        """Return the user's stored emails for ``gmail_ids`` with attachments."""
        if not gmail_ids:
            return []
        placeholders = ", ".join("?" for _ in gmail_ids)
        try:
            cur = self._connection.execute(
                f"""
                SELECT {_EMAIL_COLUMNS}
                FROM emails
                WHERE user_id = ? AND gmail_id IN ({placeholders})
                """,
                (user_id, *gmail_ids),
            )
            return self._with_attachments(cur.fetchall())
        except sqlite3.Error as exc:
            raise StorageError(f"Failed to load emails for user {user_id}") from exc

    def list_gmail_ids(self, user_id: str) -> set[str]:
        """Return the Gmail ids of every email mirrored for ``user_id``."""
        cur = self._connection.execute(
            "SELECT gmail_id FROM emails WHERE user_id = ?", (user_id,)
        )
        return {row["gmail_id"] for row in cur.fetchall()}

    def get_email(self, user_id: str, email_id: str) -> StoredEmail | None:
        """Return a single email owned by ``user_id``."""
        cur = self._connection.execute(
            f"SELECT {_EMAIL_COLUMNS} FROM emails WHERE id = ? AND user_id = ?",
            (email_id, user_id),
        )
        rows = self._with_attachments(cur.fetchall())
        return rows[0] if rows else None

    def delete_emails(self, user_id: str, email_ids: Sequence[str]) -> int:
        """Delete emails by local id; attachments cascade."""
        if not email_ids:
            return 0
        placeholders = ", ".join("?" for _ in email_ids)
        try:
            with self._connection:
                cur = self._connection.execute(
                    f"DELETE FROM emails WHERE user_id = ? AND id IN ({placeholders})",
                    (user_id, *email_ids),
                )
        except sqlite3.Error as exc:
            raise StorageError(f"Failed to delete emails for user {user_id}") from exc
        return cur.rowcount

    def mark_as_read(self, user_id: str, email_id: str) -> StoredEmail | None:
        """Flag an email as read, returning the updated row."""
        with self._connection:
            cur = self._connection.execute(
                f"""
                UPDATE emails SET is_read = 1
                WHERE id = ? AND user_id = ?
                RETURNING {_EMAIL_COLUMNS}
                """,
                (email_id, user_id),
            )
            row = cur.fetchone()
        return _row_to_email(row) if row is not None else None

    def mark_as_sent(self, user_id: str, gmail_id: str) -> bool:
        """Flag the mirrored copy of a message sent from this app."""
        with self._connection:
            cur = self._connection.execute(
                "UPDATE emails SET is_sent = 1 WHERE gmail_id = ? AND user_id = ?",
                (gmail_id, user_id),
            )
        return cur.rowcount > 0

    def count_emails(self, user_id: str) -> int:
        """Return the number of mirrored emails for ``user_id``."""
        cur = self._connection.execute(
            "SELECT COUNT(*) FROM emails WHERE user_id = ?", (user_id,)
        )
        row = cur.fetchone()
        return int(row[0]) if row is not None else 0

    # Browsing ----------------------------------------------------------------
    def list_threads(
        self, user_id: str, page: int = 0, search: str | None = None
    ) -> ThreadPage:
        """Return the newest email of each thread, ordered newest first."""
        params: list[object] = [user_id]
        conditions = ["user_id = ?"]
        if search:
            pattern = f"%{search}%"
            conditions.append(
                "(subject LIKE ? OR from_address LIKE ? OR to_address LIKE ?"
                " OR cc LIKE ? OR bcc LIKE ? OR snippet LIKE ?)"
            )
            params.extend([pattern] * 6)
        offset = max(page, 0) * EMAILS_PER_PAGE
        params.extend([EMAILS_PER_PAGE + 1, offset])
        cur = self._connection.execute(
            f"""
            SELECT {_EMAIL_COLUMNS}
            FROM (
                SELECT *, ROW_NUMBER() OVER (
                    PARTITION BY thread_id ORDER BY received_at DESC
                ) AS position
                FROM emails
                WHERE {" AND ".join(conditions)}
            )
            WHERE position = 1
            ORDER BY received_at DESC
            LIMIT ? OFFSET ?
            """,
            params,
        )
        rows = cur.fetchall()
        has_next = len(rows) > EMAILS_PER_PAGE
        threads = tuple(_row_to_email(row) for row in rows[:EMAILS_PER_PAGE])
        return ThreadPage(threads=threads, next_page=page + 1 if has_next else None)

    def get_thread(self, user_id: str, thread_id: str) -> list[StoredEmail]:
        """Return a thread's emails oldest first, with attachments."""
        cur = self._connection.execute(
            f"""
            SELECT {_EMAIL_COLUMNS}
            FROM emails
            WHERE user_id = ? AND thread_id = ?
            ORDER BY received_at ASC
            """,
            (user_id, thread_id),
        )
        return self._with_attachments(cur.fetchall())

    def get_attachment(self, user_id: str, attachment_id: str) -> StoredAttachment | None:
        """Return an attachment if its email belongs to ``user_id``."""
        cur = self._connection.execute(
            """
            SELECT a.id, a.email_id, a.filename, a.content_type, a.size, a.url
            FROM attachments a
            INNER JOIN emails e ON e.id = a.email_id
            WHERE a.id = ? AND e.user_id = ?
            """,
            (attachment_id, user_id),
        )
        row = cur.fetchone()
        return _row_to_attachment(row) if row is not None else None

    def close(self) -> None:
        """Close the underlying SQLite connection."""
        self._connection.close()

    # Internal helpers --------------------------------------------------------
    def _enable_foreign_keys(self) -> None:
        with self._connection:
            self._connection.execute("PRAGMA foreign_keys = ON")

    def _apply_migrations(self) -> None:
        schema_dir = Path(__file__).resolve().parent / "schema"
        for migration in sorted(schema_dir.glob("*.sql")):
            LOGGER.debug("Applying migration %s", migration.name)
            script = migration.read_text(encoding="utf-8")
            with self._connection:
                self._connection.executescript(script)

    def _with_attachments(self, rows: Sequence[sqlite3.Row]) -> list[StoredEmail]:
        emails = [_row_to_email(row) for row in rows]
        if not emails:
            return emails
        placeholders = ", ".join("?" for _ in emails)
        cur = self._connection.execute(
            f"""
            SELECT id, email_id, filename, content_type, size, url
            FROM attachments
            WHERE email_id IN ({placeholders})
            ORDER BY created_at
            """,
            [email.id for email in emails],
        )
        grouped: dict[str, list[StoredAttachment]] = {}
        for row in cur.fetchall():
            grouped.setdefault(row["email_id"], []).append(_row_to_attachment(row))
        for email in emails:
            email.attachments = tuple(grouped.get(email.id, ()))
        return emails


def _row_to_account(row: sqlite3.Row) -> Account:
    return Account(
        id=row["id"],
        user_id=row["user_id"],
        provider_id=row["provider_id"],
        provider_account_id=row["provider_account_id"],
        email_address=row["email_address"],
        access_token=row["access_token"],
        refresh_token=row["refresh_token"],
        access_token_expires_at=parse_datetime(
            row["access_token_expires_at"], assume_utc=True
        ),
        history_id=row["history_id"],
    )


def _row_to_email(row: sqlite3.Row) -> StoredEmail:
    return StoredEmail(
        id=row["id"],
        gmail_id=row["gmail_id"],
        thread_id=row["thread_id"],
        user_id=row["user_id"],
        subject=row["subject"],
        from_address=row["from_address"],
        to_address=row["to_address"],
        cc=row["cc"],
        bcc=row["bcc"],
        snippet=row["snippet"],
        body_url=row["body_url"],
        is_read=bool(row["is_read"]),
        is_sent=bool(row["is_sent"]),
        received_at=cast(datetime, parse_datetime(row["received_at"], assume_utc=True)),
        created_at=parse_datetime(row["created_at"], assume_utc=True),
    )


def _row_to_attachment(row: sqlite3.Row) -> StoredAttachment:
    return StoredAttachment(
        id=row["id"],
        email_id=row["email_id"],
        filename=row["filename"],
        content_type=row["content_type"],
        size=int(row["size"]),
        url=row["url"],
    )


__all__ = ["EMAILS_PER_PAGE", "GOOGLE_PROVIDER", "SqliteMailRepository"]
