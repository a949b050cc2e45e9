"""Send, reply to and forward messages from a linked Gmail account."""

from __future__ import annotations

import asyncio
import logging
from typing import Literal

from ..core.errors import AuthError, GmailMirrorError
from ..core.formatting import format_forward_body, format_subject
from ..core.interfaces import BlobStore
from ..core.models import OutgoingMessage, StoredEmail
from ..storage.sqlite import SqliteMailRepository
from .sync import ClientFactory, CursorExpiredPolicy, GmailSynchronizer

LOGGER = logging.getLogger(__name__)

ComposeMode = Literal["new", "reply", "forward"]

REPLY_PREFIX = "Re:"
FORWARD_PREFIX = "Fwd:"


def compose_subject(subject: str, mode: ComposeMode) -> str:
    """Apply the reply/forward prefix for ``mode`` once."""
    if mode == "reply":
        return format_subject(subject, REPLY_PREFIX)
    if mode == "forward":
        return format_subject(subject, FORWARD_PREFIX)
    return subject


def compose_forward(original: StoredEmail, html_body: str, note: str = "") -> str:
    """Return the body of a forward: the user's note followed by the quoted message."""
    return f"{note}{format_forward_body(original, html_body)}"


async def send_message_for_user(
    user_id: str,
    *,
    to: str,
    subject: str,
    body: str,
    repository: SqliteMailRepository,
    blob_store: BlobStore,
    client_factory: ClientFactory,
    thread_id: str | None = None,
    mode: ComposeMode = "new",
    on_cursor_expired: CursorExpiredPolicy = "full_sync",
) -> dict[str, object]:
    """Send a message as ``user_id`` and mirror it with a follow-up sync.

    The follow-up sync honours ``on_cursor_expired`` like any other run.
    """
    account = await asyncio.to_thread(repository.find_account_for_user, user_id)
    if account is None:
        raise AuthError("No Google account found for user to send message from.")
    if not account.email_address:
        raise AuthError("Linked Google account has no email address; please re-authenticate")

    message = OutgoingMessage(
        sender=account.email_address,
        to=to,
        subject=compose_subject(subject, mode),
        body=body,
        thread_id=thread_id if mode != "forward" else None,
    )
    synchronizer = GmailSynchronizer(
        repository,
        blob_store,
        client_factory,
        on_cursor_expired=on_cursor_expired,
    )
    client = client_factory(account, synchronizer.token_handler(account.id))
    try:
        response = await client.send_message(message)
    finally:
        await client.aclose()

    try:
        await synchronizer.run(user_id)
    except GmailMirrorError as exc:
        LOGGER.warning("Post-send sync failed for user %s: %s", user_id, exc)
    sent_id = response.get("id")
    if isinstance(sent_id, str):
        await asyncio.to_thread(repository.mark_as_sent, user_id, sent_id)
    return response


__all__ = [
    "FORWARD_PREFIX",
    "REPLY_PREFIX",
    "compose_forward",
    "compose_subject",
    "send_message_for_user",
]
