"""Core domain models used across the application."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum


class SyncMode(str, Enum):
    """Which path a sync run took."""

    FULL = "full"
    INCREMENTAL = "incremental"


@dataclass(slots=True)
class Account:
    """Linked Google account with OAuth tokens and the sync cursor."""

    id: str
    user_id: str
    provider_id: str
    provider_account_id: str | None
    access_token: str | None
    refresh_token: str | None
    access_token_expires_at: datetime | None
    history_id: str | None
    email_address: str | None = None


@dataclass(slots=True)
class TokenUpdate:
    """Fresh OAuth tokens issued during a refresh."""

    access_token: str
    refresh_token: str | None
    expires_at: datetime | None


@dataclass(frozen=True, slots=True)
class MessageRef:
    """Gmail message id paired with its thread id."""

    id: str
    thread_id: str


@dataclass(slots=True)
class RawMessage:
    """Raw ``format=raw`` payload returned by the Gmail API."""

    id: str
    thread_id: str
    raw: str | None
    internal_date: int | None = None
    history_id: str | None = None


@dataclass(slots=True)
class HistoryDelta:
    """Changes reported by Gmail since a history id."""

    added: tuple[MessageRef, ...]
    deleted: tuple[str, ...]
    new_cursor: str | None

    @property
    def is_empty(self) -> bool:
        """Return ``True`` when the delta carries no additions or deletions."""
        return not self.added and not self.deleted


@dataclass(slots=True)
class ParsedAttachment:
    """Attachment extracted from a MIME message, bytes included."""

    filename: str
    content_type: str
    size: int
    content: bytes = field(repr=False)


# pylint: disable=too-many-instance-attributes
@dataclass(slots=True)
class ParsedEmail:
    """Structured view of a raw Gmail message ready for persistence."""

    gmail_id: str
    thread_id: str
    subject: str
    from_address: str
    to_address: str
    cc: str
    bcc: str
    snippet: str
    html_body: str
    text_body: str
    received_at: datetime
    attachments: tuple[ParsedAttachment, ...]


@dataclass(slots=True)
class StoredAttachment:
    """Attachment row owned by a stored email."""

    id: str
    email_id: str
    filename: str
    content_type: str
    size: int
    url: str | None


# pylint: disable=too-many-instance-attributes
@dataclass(slots=True)
class StoredEmail:
    """Email row as persisted in the local store."""

    id: str
    gmail_id: str
    thread_id: str
    user_id: str
    subject: str | None
    from_address: str | None
    to_address: str | None
    cc: str | None
    bcc: str | None
    snippet: str | None
    body_url: str | None
    is_read: bool
    is_sent: bool
    received_at: datetime
    created_at: datetime | None
    attachments: tuple[StoredAttachment, ...] = ()


@dataclass(slots=True)
class MessageOutcome:
    """Result of pushing one message through the store pipeline."""

    gmail_id: str
    email: StoredEmail | None = None
    reason: str | None = None

    @property
    def stored(self) -> bool:
        """Return ``True`` when the message produced a new row."""
        return self.email is not None


@dataclass(slots=True)
class SyncResult:
    """Emails added and removed by one sync run."""

    mode: SyncMode
    added: tuple[StoredEmail, ...] = ()
    removed: tuple[StoredEmail, ...] = ()
    cursor: str | None = None

    @property
    def total(self) -> int:
        """Number of emails touched by the run."""
        return len(self.added) + len(self.removed)


@dataclass(slots=True)
class ThreadPage:
    """One page of thread summaries for the inbox listing."""

    threads: tuple[StoredEmail, ...]
    next_page: int | None


@dataclass(frozen=True, slots=True)
class OutgoingMessage:
    """Message composed by the user for delivery through Gmail."""

    sender: str
    to: str
    subject: str
    body: str
    thread_id: str | None = None


__all__ = [
    "Account",
    "HistoryDelta",
    "MessageOutcome",
    "MessageRef",
    "OutgoingMessage",
    "ParsedAttachment",
    "ParsedEmail",
    "RawMessage",
    "StoredAttachment",
    "StoredEmail",
    "SyncMode",
    "SyncResult",
    "ThreadPage",
    "TokenUpdate",
]
