"""Shared fixtures: raw Gmail payload builder, in-memory blob store, fake mailbox."""

from __future__ import annotations

import base64
from collections.abc import Callable, Iterator, Sequence
from email.message import EmailMessage
from pathlib import Path
from typing import Any

import pytest

from gmail_mirror.core.config import StorageSettings
from gmail_mirror.core.errors import StorageError
from gmail_mirror.core.models import (
    Account,
    HistoryDelta,
    MessageRef,
    OutgoingMessage,
    RawMessage,
)
from gmail_mirror.storage import SqliteMailRepository


def build_raw(
    *,
    subject: str | None = "Hello",
    sender: str = "Alice <alice@example.com>",
    to: str = "bob@example.com",
    cc: str | None = None,
    date: str | None = "Tue, 01 Oct 2024 10:00:00 +0000",
    text: str = "Plain body",
    html: str | None = "<p>HTML body</p>",
    attachments: Sequence[tuple[str | None, str, bytes]] = (),
) -> str:
    """Return a base64url ``format=raw`` payload without padding, as Gmail sends it."""
    message = EmailMessage()
    if subject is not None:
        message["Subject"] = subject
    message["From"] = sender
    message["To"] = to
    if cc:
        message["Cc"] = cc
    if date:
        message["Date"] = date
    message.set_content(text)
    if html is not None:
        message.add_alternative(html, subtype="html")
    for filename, content_type, data in attachments:
        maintype, subtype = content_type.split("/", 1)
        message.add_attachment(data, maintype=maintype, subtype=subtype, filename=filename)
    return base64.urlsafe_b64encode(message.as_bytes()).decode("ascii").rstrip("=")


class InMemoryBlobStore:
    """Blob store keeping objects in a dict, keyed by ``memory://`` locators."""

    def __init__(self) -> None:
        self.objects: dict[str, bytes] = {}
        self.fail_prefixes: set[str] = set()
        self.deleted: list[str] = []

    def upload(self, path: str, data: bytes, content_type: str) -> str:
        if any(path.startswith(prefix) for prefix in self.fail_prefixes):
            raise StorageError(f"Failed to upload blob {path}")
        locator = f"memory://{path}"
        self.objects[locator] = data
        return locator

    def download(self, locator: str) -> bytes:
        try:
            return self.objects[locator]
        except KeyError as exc:
            raise StorageError(f"Failed to download blob {locator}") from exc

    def delete(self, locator: str) -> None:
        self.deleted.append(locator)
        self.objects.pop(locator, None)


class FakeMailbox:
    """Scriptable stand-in for the Gmail client."""

    def __init__(self) -> None:
        self.messages: dict[str, RawMessage] = {}
        self.cursor: str | None = "1000"
        self.history: HistoryDelta | Exception = HistoryDelta((), (), None)
        self.list_error: Exception | None = None
        self.unreachable: set[str] = set()
        self.fetched: list[list[str]] = []
        self.history_requests: list[str] = []
        self.sent: list[OutgoingMessage] = []
        self.closed = 0

    def add(self, gmail_id: str, thread_id: str, **raw_kwargs: Any) -> RawMessage:
        message = RawMessage(id=gmail_id, thread_id=thread_id, raw=build_raw(**raw_kwargs))
        self.messages[gmail_id] = message
        return message

    async def list_all_message_ids(self) -> list[MessageRef]:
        if self.list_error is not None:
            raise self.list_error
        return [MessageRef(id=msg.id, thread_id=msg.thread_id) for msg in self.messages.values()]

    async def fetch_messages_by_ids(self, ids: Sequence[str]) -> list[RawMessage]:
        self.fetched.append(list(ids))
        return [
            self.messages[message_id]
            for message_id in ids
            if message_id in self.messages and message_id not in self.unreachable
        ]

    async def fetch_history_since(self, cursor: str) -> HistoryDelta:
        self.history_requests.append(cursor)
        if isinstance(self.history, Exception):
            raise self.history
        return self.history

    async def get_current_cursor(self) -> str | None:
        return self.cursor

    async def send_message(self, message: OutgoingMessage) -> dict[str, Any]:
        self.sent.append(message)
        sent_id = f"sent-{len(self.sent)}"
        self.add(
            sent_id,
            message.thread_id or sent_id,
            subject=message.subject,
            sender=message.sender,
            to=message.to,
            html=message.body,
        )
        return {"id": sent_id, "threadId": message.thread_id or sent_id}

    async def aclose(self) -> None:
        self.closed += 1


@pytest.fixture
def repository(tmp_path: Path) -> Iterator[SqliteMailRepository]:
    repo = SqliteMailRepository(StorageSettings(db_path=tmp_path / "mirror.db"))
    yield repo
    repo.close()


@pytest.fixture
def raw_payload() -> Callable[..., str]:
    return build_raw


@pytest.fixture
def blob_store() -> InMemoryBlobStore:
    return InMemoryBlobStore()


@pytest.fixture
def mailbox() -> FakeMailbox:
    return FakeMailbox()


@pytest.fixture
def client_factory(mailbox: FakeMailbox) -> Callable[..., FakeMailbox]:
    def build(account: Account, on_tokens: object) -> FakeMailbox:
        return mailbox

    return build


@pytest.fixture
def linked_account(repository: SqliteMailRepository) -> Account:
    return repository.link_account(
        "user-1",
        access_token="access",
        refresh_token="refresh",
        email_address="me@example.com",
    )
