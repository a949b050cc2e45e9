"""Tests for the Gmail synchronization orchestrator."""

from __future__ import annotations

import asyncio
import threading
from typing import Any

import pytest

from gmail_mirror.core.errors import AuthError, CursorExpiredError, StorageError
from gmail_mirror.core.models import (
    Account,
    HistoryDelta,
    MessageRef,
    RawMessage,
    SyncMode,
    TokenUpdate,
)
from gmail_mirror.ingestion import (
    GmailSynchronizer,
    send_message_for_user,
    sync_all_accounts,
    sync_messages_for_user,
)
from gmail_mirror.storage import SqliteMailRepository


def _sync(
    repository: SqliteMailRepository,
    blob_store: Any,
    client_factory: Any,
    user_id: str = "user-1",
    **kwargs: Any,
):
    return asyncio.run(
        sync_messages_for_user(
            user_id,
            repository=repository,
            blob_store=blob_store,
            client_factory=client_factory,
            **kwargs,
        )
    )


def _cursor(repository: SqliteMailRepository, user_id: str = "user-1") -> str | None:
    account = repository.find_account_for_user(user_id)
    assert account is not None
    return account.history_id


def test_full_sync_mirrors_mailbox_and_records_cursor(
    repository, blob_store, mailbox, client_factory, linked_account
) -> None:
    mailbox.add("m1", "t1", subject="First")
    mailbox.add(
        "m2",
        "t2",
        subject="With file",
        attachments=[("notes.txt", "text/plain", b"hello")],
    )
    mailbox.cursor = "4242"

    result = _sync(repository, blob_store, client_factory)

    assert result.mode is SyncMode.FULL
    assert sorted(email.gmail_id for email in result.added) == ["m1", "m2"]
    assert result.cursor == "4242"
    assert _cursor(repository) == "4242"
    assert repository.count_emails("user-1") == 2
    assert blob_store.objects["memory://emails/user-1/m1.html"].startswith(b"<p>HTML body</p>")
    stored = repository.find_emails_by_gmail_ids("user-1", ["m2"])[0]
    assert [attachment.filename for attachment in stored.attachments] == ["notes.txt"]
    assert blob_store.objects[stored.attachments[0].url] == b"hello"
    assert mailbox.closed == 1


def test_repeated_full_sync_does_not_duplicate(
    repository, blob_store, mailbox, client_factory, linked_account
) -> None:
    mailbox.add("m1", "t1")
    _sync(repository, blob_store, client_factory)
    repository.update_cursor(linked_account.id, None)

    result = _sync(repository, blob_store, client_factory)

    assert result.mode is SyncMode.FULL
    assert result.added == ()
    assert mailbox.fetched[-1] == []
    assert repository.count_emails("user-1") == 1


def test_already_stored_message_is_skipped_in_pipeline(
    repository, blob_store, linked_account, raw_payload
) -> None:
    class DuplicatingMailbox:
        """Lists nothing new but still hands back a stored message."""

        def __init__(self, message: RawMessage) -> None:
            self.message = message

        async def list_all_message_ids(self) -> list[MessageRef]:
            return []

        async def fetch_messages_by_ids(self, ids: Any) -> list[RawMessage]:
            return [self.message, self.message]

        async def get_current_cursor(self) -> str:
            return "10"

        async def aclose(self) -> None:
            return None

    message = RawMessage(id="dup", thread_id="t1", raw=raw_payload())
    synchronizer = GmailSynchronizer(
        repository, blob_store, lambda account, on_tokens: DuplicatingMailbox(message)
    )

    result = asyncio.run(synchronizer.run("user-1"))

    assert [email.gmail_id for email in result.added] == ["dup"]
    assert repository.count_emails("user-1") == 1


def test_subsequent_run_is_incremental(
    repository, blob_store, mailbox, client_factory, linked_account
) -> None:
    mailbox.add("m1", "t1")
    _sync(repository, blob_store, client_factory)

    result = _sync(repository, blob_store, client_factory)

    assert result.mode is SyncMode.INCREMENTAL
    assert mailbox.history_requests == ["1000"]
    assert result.total == 0
    assert _cursor(repository) == "1000"


def test_unparseable_message_does_not_abort_run(
    repository, blob_store, mailbox, client_factory, linked_account
) -> None:
    mailbox.add("m1", "t1")
    mailbox.messages["bad"] = RawMessage(id="bad", thread_id="t2", raw="é")
    mailbox.add("m3", "t3")

    result = _sync(repository, blob_store, client_factory)

    assert sorted(email.gmail_id for email in result.added) == ["m1", "m3"]
    assert not repository.email_exists("bad")
    assert _cursor(repository) == "1000"


def test_failed_attachment_upload_rolls_message_back(
    repository, blob_store, mailbox, client_factory, linked_account
) -> None:
    mailbox.add("m1", "t1", attachments=[("a.bin", "application/octet-stream", b"x")])
    mailbox.add("m2", "t2")
    blob_store.fail_prefixes.add("attachments/")

    result = _sync(repository, blob_store, client_factory)

    assert [email.gmail_id for email in result.added] == ["m2"]
    assert not repository.email_exists("m1")
    assert "memory://emails/user-1/m1.html" not in blob_store.objects
    assert "memory://emails/user-1/m1.html" in blob_store.deleted


def test_missing_profile_cursor_is_not_stored(
    repository, blob_store, mailbox, client_factory, linked_account
) -> None:
    mailbox.add("m1", "t1")
    mailbox.cursor = None

    result = _sync(repository, blob_store, client_factory)

    assert result.cursor is None
    assert _cursor(repository) is None
    assert repository.email_exists("m1")


def test_incremental_sync_applies_deletions_then_additions(
    repository, blob_store, mailbox, client_factory, linked_account
) -> None:
    mailbox.add("m1", "t1", attachments=[("a.txt", "text/plain", b"a")])
    mailbox.add("m2", "t2")
    _sync(repository, blob_store, client_factory)
    doomed = repository.find_emails_by_gmail_ids("user-1", ["m1"])[0]

    mailbox.add("m3", "t2")
    mailbox.history = HistoryDelta(
        added=(MessageRef("m3", "t2"),),
        deleted=("m1", "never-stored"),
        new_cursor="2000",
    )
    result = _sync(repository, blob_store, client_factory)

    assert result.mode is SyncMode.INCREMENTAL
    assert [email.gmail_id for email in result.added] == ["m3"]
    assert [email.gmail_id for email in result.removed] == ["m1"]
    assert result.total == 2
    assert repository.get_thread("user-1", "t1") == []
    assert doomed.body_url not in blob_store.objects
    assert doomed.attachments[0].url not in blob_store.objects
    assert _cursor(repository) == "2000"


def test_expired_cursor_falls_back_to_full_sync(
    repository, blob_store, mailbox, client_factory, linked_account
) -> None:
    repository.update_cursor(linked_account.id, "5")
    mailbox.history = CursorExpiredError("History id 5 is no longer valid", 404)
    mailbox.add("m1", "t1")
    mailbox.cursor = "3000"

    result = _sync(repository, blob_store, client_factory)

    assert result.mode is SyncMode.FULL
    assert [email.gmail_id for email in result.added] == ["m1"]
    assert _cursor(repository) == "3000"


def test_expired_cursor_can_be_configured_to_fail(
    repository, blob_store, mailbox, client_factory, linked_account
) -> None:
    repository.update_cursor(linked_account.id, "5")
    mailbox.history = CursorExpiredError("History id 5 is no longer valid", 404)

    with pytest.raises(CursorExpiredError):
        _sync(repository, blob_store, client_factory, on_cursor_expired="fail")

    assert _cursor(repository) == "5"
    assert mailbox.closed == 1


def test_expired_cursor_fallback_removes_remotely_deleted_messages(
    repository, blob_store, mailbox, client_factory, linked_account
) -> None:
    mailbox.add("m1", "t1")
    mailbox.add("m2", "t2")
    _sync(repository, blob_store, client_factory)
    del mailbox.messages["m1"]
    mailbox.history = CursorExpiredError("History id 1000 is no longer valid", 404)
    mailbox.cursor = "7777"

    result = _sync(repository, blob_store, client_factory)

    assert result.mode is SyncMode.FULL
    assert [email.gmail_id for email in result.removed] == ["m1"]
    assert result.added == ()
    assert not repository.email_exists("m1")
    assert repository.email_exists("m2")
    assert "memory://emails/user-1/m1.html" not in blob_store.objects
    assert _cursor(repository) == "7777"


def test_unreachable_messages_do_not_block_the_rest(
    repository, blob_store, mailbox, client_factory, linked_account
) -> None:
    for index in range(1, 5):
        mailbox.add(f"m{index}", f"t{index}")
    mailbox.unreachable = {"m2", "m4"}

    result = _sync(repository, blob_store, client_factory)

    assert sorted(email.gmail_id for email in result.added) == ["m1", "m3"]
    assert not repository.email_exists("m2")
    assert _cursor(repository) == "1000"


class _RacingRepository:
    """Reports every message as new, as a run racing a concurrent one would see it."""

    def __init__(self, inner: SqliteMailRepository) -> None:
        self._inner = inner

    def email_exists(self, gmail_id: str) -> bool:
        return False

    def __getattr__(self, name: str) -> Any:
        return getattr(self._inner, name)


def test_concurrent_insert_is_treated_as_already_synced(
    repository, blob_store, mailbox, client_factory, linked_account
) -> None:
    mailbox.add("m1", "t1")
    _sync(repository, blob_store, client_factory)
    repository.update_cursor(linked_account.id, None)
    synchronizer = GmailSynchronizer(_RacingRepository(repository), blob_store, client_factory)

    result = asyncio.run(synchronizer.run("user-1"))

    assert result.added == ()
    assert repository.count_emails("user-1") == 1
    assert blob_store.deleted == []
    assert "memory://emails/user-1/m1.html" in blob_store.objects


def test_rollback_lookup_failure_does_not_abort_batch(
    repository, blob_store, mailbox, client_factory, linked_account
) -> None:
    class FailingLookupRepository(_RacingRepository):
        def email_exists(self, gmail_id: str) -> bool:
            return self._inner.email_exists(gmail_id)

        def find_emails_by_gmail_ids(self, user_id: str, gmail_ids: Any) -> Any:
            raise StorageError("Failed to load emails for user-1")

    mailbox.add("m1", "t1", attachments=[("a.bin", "application/octet-stream", b"x")])
    mailbox.add("m2", "t2")
    blob_store.fail_prefixes.add("attachments/")
    synchronizer = GmailSynchronizer(
        FailingLookupRepository(repository), blob_store, client_factory
    )

    result = asyncio.run(synchronizer.run("user-1"))

    assert [email.gmail_id for email in result.added] == ["m2"]
    assert not repository.email_exists("m1")
    assert "memory://emails/user-1/m1.html" in blob_store.deleted


def test_store_work_runs_off_the_event_loop_thread(
    repository, blob_store, mailbox, client_factory, linked_account
) -> None:
    upload_threads: list[int] = []
    upload = blob_store.upload

    def recording_upload(path: str, data: bytes, content_type: str) -> str:
        upload_threads.append(threading.get_ident())
        return upload(path, data, content_type)

    blob_store.upload = recording_upload
    mailbox.add("m1", "t1")

    _sync(repository, blob_store, client_factory)

    assert upload_threads
    assert threading.get_ident() not in upload_threads


def test_unlinked_user_raises_auth_error(repository, blob_store, client_factory) -> None:
    with pytest.raises(AuthError):
        _sync(repository, blob_store, client_factory, user_id="nobody")


def test_token_handler_persists_refreshed_tokens(
    repository, blob_store, client_factory, linked_account
) -> None:
    synchronizer = GmailSynchronizer(repository, blob_store, client_factory)

    synchronizer.token_handler(linked_account.id)(TokenUpdate("fresh", None, None))

    account = repository.get_account(linked_account.id)
    assert account is not None
    assert account.access_token == "fresh"
    assert account.refresh_token == "refresh"


def test_sync_all_accounts_continues_past_failures(
    repository, blob_store, mailbox, linked_account
) -> None:
    repository.link_account("user-2", access_token="a", refresh_token="r")
    mailbox.add("m1", "t1")
    mailbox.add("m2", "t2")

    def factory(account: Account, on_tokens: Any) -> Any:
        if account.user_id == "user-1":
            raise AuthError("Refresh token rejected; please re-authenticate")
        return mailbox

    total = asyncio.run(
        sync_all_accounts(repository=repository, blob_store=blob_store, client_factory=factory)
    )

    assert total == 2
    assert repository.count_emails("user-2") == 2
    assert _cursor(repository, "user-1") is None


def test_sync_all_accounts_without_accounts(repository, blob_store, client_factory) -> None:
    total = asyncio.run(
        sync_all_accounts(
            repository=repository, blob_store=blob_store, client_factory=client_factory
        )
    )

    assert total == 0


def test_send_reply_is_mirrored_and_flagged_sent(
    repository, blob_store, mailbox, client_factory, linked_account
) -> None:
    mailbox.add("m1", "t1", subject="Plans")
    _sync(repository, blob_store, client_factory)
    repository.update_cursor(linked_account.id, None)

    response = asyncio.run(
        send_message_for_user(
            "user-1",
            to="alice@example.com",
            subject="Plans",
            body="<p>Sounds good</p>",
            repository=repository,
            blob_store=blob_store,
            client_factory=client_factory,
            thread_id="t1",
            mode="reply",
        )
    )

    assert response["id"] == "sent-1"
    assert mailbox.sent[0].subject == "Re: Plans"
    assert mailbox.sent[0].sender == "me@example.com"
    assert mailbox.sent[0].thread_id == "t1"
    thread = repository.get_thread("user-1", "t1")
    sent = [email for email in thread if email.gmail_id == "sent-1"]
    assert len(sent) == 1 and sent[0].is_sent is True


def test_send_honours_fail_policy_for_expired_cursor(
    repository, blob_store, mailbox, client_factory, linked_account
) -> None:
    repository.update_cursor(linked_account.id, "1000")
    mailbox.history = CursorExpiredError("History id 1000 is no longer valid", 404)
    mailbox.cursor = "7777"

    response = asyncio.run(
        send_message_for_user(
            "user-1",
            to="alice@example.com",
            subject="Hello",
            body="<p>Hi</p>",
            repository=repository,
            blob_store=blob_store,
            client_factory=client_factory,
            on_cursor_expired="fail",
        )
    )

    assert response["id"] == "sent-1"
    assert _cursor(repository) == "1000"
    assert not repository.email_exists("sent-1")


def test_forward_drops_thread_id(
    repository, blob_store, mailbox, client_factory, linked_account
) -> None:
    asyncio.run(
        send_message_for_user(
            "user-1",
            to="carol@example.com",
            subject="Fwd: Plans",
            body="<p>FYI</p>",
            repository=repository,
            blob_store=blob_store,
            client_factory=client_factory,
            thread_id="t1",
            mode="forward",
        )
    )

    assert mailbox.sent[0].subject == "Fwd: Plans"
    assert mailbox.sent[0].thread_id is None
