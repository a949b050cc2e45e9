"""Gmail synchronization orchestration.

A run picks full or incremental mode from the account's history id. Full
sync mirrors the entire mailbox and then records the profile's current
history id. Incremental sync replays the history delta since the stored
id, deletions first and additions second. The cursor is only written once
a phase has completed, so a failed run is retried from the same point.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable, Sequence
from typing import Literal

from ..core.errors import (
    AuthError,
    ConstraintViolationError,
    CursorExpiredError,
    GmailMirrorError,
    StorageError,
)
from ..core.interfaces import (
    BlobStore,
    EmailParserProtocol,
    MailboxClient,
    MailRepository,
    TokenHandler,
)
from ..core.models import (
    Account,
    MessageOutcome,
    RawMessage,
    StoredAttachment,
    StoredEmail,
    SyncMode,
    SyncResult,
    TokenUpdate,
)
from ..storage.blob import attachment_path, email_body_path
from .parser import GmailMessageParser

LOGGER = logging.getLogger(__name__)

ClientFactory = Callable[[Account, TokenHandler | None], MailboxClient]
CursorExpiredPolicy = Literal["full_sync", "fail"]

ALREADY_SYNCED = "already synced"


class GmailSynchronizer:
    """Reconcile a Gmail mailbox with the local store and blob store."""

    def __init__(
        self,
        repository: MailRepository,
        blob_store: BlobStore,
        client_factory: ClientFactory,
        parser: EmailParserProtocol | None = None,
        *,
        on_cursor_expired: CursorExpiredPolicy = "full_sync",
    ) -> None:
        self._repository = repository
        self._blob_store = blob_store
        self._client_factory = client_factory
        self._parser = parser or GmailMessageParser()
        self._on_cursor_expired = on_cursor_expired

    async def run(self, user_id: str) -> SyncResult:
        """Synchronize the Gmail account linked to ``user_id``.

        Repository and blob store calls block, so they run in a worker
        thread and the event loop stays free for other requests.
        """
        account = await asyncio.to_thread(self._repository.find_account_for_user, user_id)
        if account is None:
            raise AuthError("No Google account found for user to sync.")

        client = self._client_factory(account, self.token_handler(account.id))
        try:
            if account.history_id is None:
                return await self._full_sync(account, client)
            try:
                return await self._incremental_sync(account, client, account.history_id)
            except CursorExpiredError:
                if self._on_cursor_expired == "fail":
                    LOGGER.error(
                        "History id %s for account %s expired; manual resync required",
                        account.history_id,
                        account.id,
                    )
                    raise
                LOGGER.warning(
                    "History id %s for account %s expired; falling back to full sync",
                    account.history_id,
                    account.id,
                )
                return await self._full_sync(account, client, reconcile=True)
        finally:
            await client.aclose()

    # Modes -------------------------------------------------------------------
    async def _full_sync(
        self, account: Account, client: MailboxClient, *, reconcile: bool = False
    ) -> SyncResult:
        """Mirror the whole mailbox.

        With ``reconcile`` set, local emails the mailbox no longer lists are
        removed first. Deletions that happened while the cursor was expired
        are never replayed by a later history delta.
        """
        LOGGER.info("Performing full sync for user %s", account.user_id)
        refs = await client.list_all_message_ids()
        removed: list[StoredEmail] = []
        if reconcile:
            removed = await asyncio.to_thread(
                self._remove_unlisted, account.user_id, {ref.id for ref in refs}
            )
        pending = await asyncio.to_thread(self._pending_ids, [ref.id for ref in refs])
        LOGGER.info(
            "Mailbox lists %d messages, %d not yet mirrored", len(refs), len(pending)
        )
        messages = await client.fetch_messages_by_ids(pending)
        added = await asyncio.to_thread(self._store_messages, account.user_id, messages)

        cursor = await client.get_current_cursor()
        if cursor is None:
            LOGGER.warning(
                "Gmail returned no history id for account %s; cursor not stored",
                account.id,
            )
        else:
            await asyncio.to_thread(self._repository.update_cursor, account.id, cursor)
            LOGGER.info("Full sync complete. Set history id to %s", cursor)
        return SyncResult(
            mode=SyncMode.FULL,
            added=tuple(added),
            removed=tuple(removed),
            cursor=cursor,
        )

    async def _incremental_sync(
        self, account: Account, client: MailboxClient, history_id: str
    ) -> SyncResult:
        LOGGER.info(
            "Performing incremental sync for user %s from history id %s",
            account.user_id,
            history_id,
        )
        delta = await client.fetch_history_since(history_id)
        if delta.is_empty:
            LOGGER.info("No new history found for user %s", account.user_id)
            return SyncResult(mode=SyncMode.INCREMENTAL, cursor=history_id)

        removed = await asyncio.to_thread(
            self._process_deletions, account.user_id, delta.deleted
        )
        messages = await client.fetch_messages_by_ids([ref.id for ref in delta.added])
        added = await asyncio.to_thread(self._store_messages, account.user_id, messages)

        cursor = delta.new_cursor or history_id
        if delta.new_cursor:
            await asyncio.to_thread(
                self._repository.update_cursor, account.id, delta.new_cursor
            )
        LOGGER.info(
            "Incremental sync complete: added=%d removed=%d history_id=%s",
            len(added),
            len(removed),
            cursor,
        )
        return SyncResult(
            mode=SyncMode.INCREMENTAL,
            added=tuple(added),
            removed=tuple(removed),
            cursor=cursor,
        )

    # Reconciliation ----------------------------------------------------------
    def _pending_ids(self, gmail_ids: Sequence[str]) -> list[str]:
        exists = self._repository.email_exists
        return [gmail_id for gmail_id in gmail_ids if not exists(gmail_id)]

    def _remove_unlisted(self, user_id: str, listed: set[str]) -> list[StoredEmail]:
        stale = sorted(self._repository.list_gmail_ids(user_id) - listed)
        if stale:
            LOGGER.info(
                "Removing %d local emails no longer listed by Gmail for user %s",
                len(stale),
                user_id,
            )
        return self._process_deletions(user_id, stale)

    def _process_deletions(
        self, user_id: str, gmail_ids: Sequence[str]
    ) -> list[StoredEmail]:
        if not gmail_ids:
            return []
        records = self._repository.find_emails_by_gmail_ids(user_id, gmail_ids)
        if not records:
            return []
        for record in records:
            self._delete_blobs(record)
        self._repository.delete_emails(user_id, [record.id for record in records])
        LOGGER.info("Deleted %d emails and their blobs", len(records))
        return records

    def _store_messages(
        self, user_id: str, messages: Sequence[RawMessage]
    ) -> list[StoredEmail]:
        outcomes = [self._store_message(user_id, message) for message in messages]
        skipped = [outcome for outcome in outcomes if not outcome.stored]
        if skipped:
            LOGGER.info(
                "Skipped %d of %d messages: %s",
                len(skipped),
                len(outcomes),
                ", ".join(f"{outcome.gmail_id} ({outcome.reason})" for outcome in skipped),
            )
        return [outcome.email for outcome in outcomes if outcome.email is not None]

    def _store_message(self, user_id: str, message: RawMessage) -> MessageOutcome:
        if self._repository.email_exists(message.id):
            return MessageOutcome(gmail_id=message.id, reason=ALREADY_SYNCED)

        email: StoredEmail | None = None
        body_url: str | None = None
        try:
            parsed = self._parser.parse(message)
            body_url = self._blob_store.upload(
                email_body_path(user_id, parsed.gmail_id),
                parsed.html_body.encode("utf-8"),
                "text/html",
            )
            email = self._repository.insert_email(user_id, parsed, body_url)
            attachments: list[StoredAttachment] = []
            for attachment in parsed.attachments:
                url = self._blob_store.upload(
                    attachment_path(user_id, email.id, attachment.filename),
                    attachment.content,
                    attachment.content_type,
                )
                attachments.append(
                    self._repository.insert_attachment(email.id, attachment, url)
                )
            email.attachments = tuple(attachments)
        except ConstraintViolationError:
            LOGGER.debug("Message %s inserted by a concurrent run", message.id)
            return MessageOutcome(gmail_id=message.id, reason=ALREADY_SYNCED)
        except GmailMirrorError as exc:
            LOGGER.warning("Failed to store message %s: %s", message.id, exc)
            self._discard_partial(user_id, email, body_url)
            return MessageOutcome(gmail_id=message.id, reason=str(exc))
        except Exception as exc:  # pylint: disable=broad-except
            LOGGER.error(
                "Unexpected error storing message %s: %s", message.id, exc, exc_info=True
            )
            self._discard_partial(user_id, email, body_url)
            return MessageOutcome(gmail_id=message.id, reason=str(exc))
        LOGGER.debug("Stored message %s as email %s", message.id, email.id)
        return MessageOutcome(gmail_id=message.id, email=email)

    def _discard_partial(
        self, user_id: str, email: StoredEmail | None, body_url: str | None
    ) -> None:
        """Remove blobs and rows of a half-stored message so the next run retries it."""
        if email is None:
            if body_url:
                self._blob_store.delete(body_url)
            return
        try:
            stored = self._repository.find_emails_by_gmail_ids(user_id, [email.gmail_id])
        except StorageError as exc:
            LOGGER.error("Failed to load partial email %s: %s", email.gmail_id, exc)
            stored = [email]
        for record in stored:
            self._delete_blobs(record)
        try:
            self._repository.delete_emails(user_id, [email.id])
        except StorageError as exc:
            LOGGER.error("Failed to discard partial email %s: %s", email.gmail_id, exc)

    def _delete_blobs(self, record: StoredEmail) -> None:
        if record.body_url:
            self._blob_store.delete(record.body_url)
        for attachment in record.attachments:
            if attachment.url:
                self._blob_store.delete(attachment.url)

    def token_handler(self, account_id: str) -> TokenHandler:
        """Return a callback persisting refreshed tokens for ``account_id``."""

        def persist(update: TokenUpdate) -> None:
            self._repository.update_tokens(account_id, update)

        return persist


async def sync_messages_for_user(
    user_id: str,
    *,
    repository: MailRepository,
    blob_store: BlobStore,
    client_factory: ClientFactory,
    on_cursor_expired: CursorExpiredPolicy = "full_sync",
) -> SyncResult:
    """Run one sync pass for ``user_id``; raises :class:`AuthError` if unlinked."""
    synchronizer = GmailSynchronizer(
        repository,
        blob_store,
        client_factory,
        on_cursor_expired=on_cursor_expired,
    )
    return await synchronizer.run(user_id)


async def sync_all_accounts(
    *,
    repository: MailRepository,
    blob_store: BlobStore,
    client_factory: ClientFactory,
    on_cursor_expired: CursorExpiredPolicy = "full_sync",
) -> int:
    """Sync every linked account, continuing past failures; return emails synced."""
    accounts = await asyncio.to_thread(repository.list_accounts)
    if not accounts:
        LOGGER.info("No Google accounts found to sync.")
        return 0

    synchronizer = GmailSynchronizer(
        repository,
        blob_store,
        client_factory,
        on_cursor_expired=on_cursor_expired,
    )
    synced = 0
    for account in accounts:
        if not account.user_id:
            LOGGER.warning("Account %s has no user id; skipping", account.id)
            continue
        try:
            result = await synchronizer.run(account.user_id)
        except Exception as exc:  # pylint: disable=broad-except
            LOGGER.error(
                "Failed to sync Gmail for user %s: %s",
                account.user_id,
                exc,
                exc_info=True,
            )
            continue
        synced += result.total
    LOGGER.info("Sync of %d accounts finished. Total emails synced: %d", len(accounts), synced)
    return synced


__all__ = [
    "ALREADY_SYNCED",
    "ClientFactory",
    "CursorExpiredPolicy",
    "GmailSynchronizer",
    "sync_all_accounts",
    "sync_messages_for_user",
]
