"""Protocol interfaces for decoupling components."""

from __future__ import annotations

from collections.abc import Awaitable, Callable, Sequence
from typing import Protocol

from .models import (
    Account,
    HistoryDelta,
    MessageRef,
    OutgoingMessage,
    ParsedAttachment,
    ParsedEmail,
    RawMessage,
    StoredAttachment,
    StoredEmail,
    ThreadPage,
    TokenUpdate,
)

TokenHandler = Callable[[TokenUpdate], Awaitable[None] | None]


class MailboxClient(Protocol):
    """Abstraction over the remote Gmail mailbox."""

    async def list_all_message_ids(self) -> list[MessageRef]:
        """Return every message id in the mailbox, following pagination."""
        raise NotImplementedError

    async def fetch_messages_by_ids(self, ids: Sequence[str]) -> list[RawMessage]:
        """Fetch raw messages; individual failures are dropped."""
        raise NotImplementedError

    async def fetch_history_since(self, cursor: str) -> HistoryDelta:
        """Return additions and deletions recorded after ``cursor``."""
        raise NotImplementedError

    async def get_current_cursor(self) -> str | None:
        """Return the mailbox's latest history id."""
        raise NotImplementedError

    async def send_message(self, message: OutgoingMessage) -> dict[str, object]:
        """Deliver ``message`` and return Gmail's response body."""
        raise NotImplementedError

    async def aclose(self) -> None:
        """Release network resources."""
        raise NotImplementedError


class MailRepository(Protocol):
    """Abstraction for account, email and attachment persistence."""

    def find_account_for_user(self, user_id: str) -> Account | None:
        """Return the Google account linked to ``user_id``."""
        raise NotImplementedError

    def list_accounts(self) -> list[Account]:
        """Return every linked Google account."""
        raise NotImplementedError

    def update_tokens(self, account_id: str, update: TokenUpdate) -> None:
        """Store refreshed OAuth tokens."""
        raise NotImplementedError

    def update_cursor(self, account_id: str, history_id: str | None) -> None:
        """Store the account's history id."""
        raise NotImplementedError

    def email_exists(self, gmail_id: str) -> bool:
        """Return ``True`` if a row for ``gmail_id`` exists."""
        raise NotImplementedError

    def insert_email(
        self, user_id: str, parsed: ParsedEmail, body_url: str | None
    ) -> StoredEmail:
        """Insert an email row and return it."""
        raise NotImplementedError

    def insert_attachment(
        self, email_id: str, attachment: ParsedAttachment, url: str | None
    ) -> StoredAttachment:
        """Insert an attachment row and return it."""
        raise NotImplementedError

    def find_emails_by_gmail_ids(
        self, user_id: str, gmail_ids: Sequence[str]
    ) -> list[StoredEmail]:
        """Return stored emails (with attachments) for ``gmail_ids``."""
        raise NotImplementedError

    def list_gmail_ids(self, user_id: str) -> set[str]:
        """Return the Gmail ids mirrored for ``user_id``."""
        raise NotImplementedError

    def delete_emails(self, user_id: str, email_ids: Sequence[str]) -> int:
        """Delete emails by local id, cascading attachments."""
        raise NotImplementedError

    def list_threads(
        self, user_id: str, page: int = 0, search: str | None = None
    ) -> ThreadPage:
        """Return the latest email of each thread, newest first."""
        raise NotImplementedError

    def get_thread(self, user_id: str, thread_id: str) -> list[StoredEmail]:
        """Return emails in a thread, oldest first."""
        raise NotImplementedError

    def mark_as_read(self, user_id: str, email_id: str) -> StoredEmail | None:
        """Flag an email as read."""
        raise NotImplementedError


class BlobStore(Protocol):
    """Object storage holding HTML bodies and attachment bytes."""

    def upload(self, path: str, data: bytes, content_type: str) -> str:
        """Store ``data`` under ``path`` and return its locator."""
        raise NotImplementedError

    def download(self, locator: str) -> bytes:
        """Return the bytes stored at ``locator``."""
        raise NotImplementedError

    def delete(self, locator: str) -> None:
        """Remove the object at ``locator``; failures are logged only."""
        raise NotImplementedError


class EmailParserProtocol(Protocol):
    """Minimal protocol implemented by message parsers."""

    def parse(self, message: RawMessage) -> ParsedEmail:
        """Convert a raw Gmail message into a structured email."""
        raise NotImplementedError


__all__ = [
    "BlobStore",
    "EmailParserProtocol",
    "MailRepository",
    "MailboxClient",
    "TokenHandler",
]
