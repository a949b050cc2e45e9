"""FastAPI application exposing the Gmail mirror and its sync triggers."""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Literal
from urllib.parse import quote

from fastapi import FastAPI, Request, status as http_status
from fastapi.responses import JSONResponse, Response
from pydantic import BaseModel, Field

from gmail_mirror.core import AppSettings, ServiceContainer, load_app_settings
from gmail_mirror.core.container import (
    BLOB_STORE,
    CLIENT_FACTORY,
    REPOSITORY,
    SETTINGS,
)
from gmail_mirror.core.datetime_utils import serialize_datetime
from gmail_mirror.core.errors import AuthError, GmailMirrorError, StorageError
from gmail_mirror.core.interfaces import BlobStore
from gmail_mirror.core.models import StoredAttachment, StoredEmail, SyncResult
from gmail_mirror.ingestion import (
    ClientFactory,
    compose_forward,
    send_message_for_user,
    sync_all_accounts,
    sync_messages_for_user,
)
from gmail_mirror.storage import S3BlobStore, SqliteMailRepository
from gmail_mirror.transport.gmail_client import gmail_client_factory
from .security import BearerSecretGuard

LOGGER = logging.getLogger(__name__)

BODY_UNAVAILABLE = "<p>Error loading email content.</p>"
REAUTH_REQUIRED = "REAUTH_REQUIRED"


class SendRequest(BaseModel):
    """Payload for composing a new message, reply or forward."""

    to: str
    subject: str
    body: str = ""
    thread_id: str | None = Field(default=None, alias="threadId")
    mode: Literal["new", "reply", "forward"] = "new"
    forward_email_id: str | None = Field(default=None, alias="forwardEmailId")


def build_container(settings: AppSettings) -> ServiceContainer:
    """Register the production services for ``settings``."""
    container = ServiceContainer()
    container.register_instance(SETTINGS, settings)
    container.register(REPOSITORY, lambda _: SqliteMailRepository(settings.storage))
    container.register(BLOB_STORE, lambda _: S3BlobStore(settings.blob))
    container.register(
        CLIENT_FACTORY, lambda _: gmail_client_factory(settings.google, settings.sync)
    )
    return container


def create_app(
    settings: AppSettings | None = None, container: ServiceContainer | None = None
) -> FastAPI:
    """Create and configure the FastAPI application."""
    app_settings = settings or load_app_settings(env_file=".env")
    services = container or build_container(app_settings)
    guard = BearerSecretGuard(app_settings.web.cron_secret)
    app = FastAPI(title="Gmail Mirror")

    def repository() -> SqliteMailRepository:
        return services.resolve(REPOSITORY)

    def blob_store() -> BlobStore:
        return services.resolve(BLOB_STORE)

    def client_factory() -> ClientFactory:
        return services.resolve(CLIENT_FACTORY)

    @app.on_event("shutdown")
    async def shutdown_event() -> None:
        """Close cached services on shutdown."""
        services.close()
        LOGGER.info("Services closed")

    @app.get("/api/sync-cron")
    async def sync_cron(request: Request) -> Response:
        guard.validate(request)
        try:
            repo = repository()
            if not await asyncio.to_thread(repo.list_accounts):
                LOGGER.info("No Google accounts found to sync.")
                return JSONResponse(
                    {
                        "success": True,
                        "message": "No Google accounts found to sync.",
                        "totalSyncedEmails": 0,
                    }
                )
            total = await sync_all_accounts(
                repository=repo,
                blob_store=blob_store(),
                client_factory=client_factory(),
                on_cursor_expired=app_settings.sync.on_cursor_expired,
            )
        except Exception as exc:  # pylint: disable=broad-except
            LOGGER.exception("Error during scheduled sync: %s", exc)
            return JSONResponse(
                {"success": False, "error": "Internal Server Error"},
                status_code=http_status.HTTP_500_INTERNAL_SERVER_ERROR,
            )
        LOGGER.info("Scheduled sync finished. Total emails synced: %s", total)
        return JSONResponse({"success": True, "totalSyncedEmails": total})

    @app.post("/api/users/{user_id}/sync")
    async def sync_user(user_id: str) -> Response:
        try:
            result = await sync_messages_for_user(
                user_id,
                repository=repository(),
                blob_store=blob_store(),
                client_factory=client_factory(),
                on_cursor_expired=app_settings.sync.on_cursor_expired,
            )
        except AuthError as exc:
            LOGGER.warning("Sync for user %s needs re-authentication: %s", user_id, exc)
            return _reauth_response()
        except GmailMirrorError as exc:
            LOGGER.error("Gmail sync error for user %s: %s", user_id, exc)
            return JSONResponse(
                {"success": False, "error": "Failed to sync Gmail messages"},
                status_code=http_status.HTTP_502_BAD_GATEWAY,
            )
        return JSONResponse(_serialize_sync_result(result))

    @app.get("/api/users/{user_id}/threads")
    def thread_list(
        user_id: str, page: int = 0, search: str | None = None
    ) -> dict[str, Any]:
        thread_page = repository().list_threads(user_id, page=page, search=search)
        return {
            "threads": [_serialize_email(email) for email in thread_page.threads],
            "nextPage": thread_page.next_page,
        }

    @app.get("/api/users/{user_id}/threads/{thread_id}")
    def thread_detail(user_id: str, thread_id: str) -> Response:
        emails = repository().get_thread(user_id, thread_id)
        if not emails:
            return JSONResponse(
                {"error": "Thread not found"},
                status_code=http_status.HTTP_404_NOT_FOUND,
            )
        store = blob_store()
        return JSONResponse(
            {
                "threadId": thread_id,
                "emails": [
                    {**_serialize_email(email), "htmlBody": _load_body(store, email)}
                    for email in emails
                ],
            }
        )

    @app.post("/api/users/{user_id}/emails/{email_id}/read")
    def mark_as_read(user_id: str, email_id: str) -> Response:
        updated = repository().mark_as_read(user_id, email_id)
        if updated is None:
            return JSONResponse(
                {"error": "Email not found"},
                status_code=http_status.HTTP_404_NOT_FOUND,
            )
        return JSONResponse(_serialize_email(updated))

    @app.get("/api/users/{user_id}/attachments/{attachment_id}")
    def download_attachment(user_id: str, attachment_id: str) -> Response:
        attachment = repository().get_attachment(user_id, attachment_id)
        if attachment is None or not attachment.url:
            return JSONResponse(
                {"error": "Attachment not found"},
                status_code=http_status.HTTP_404_NOT_FOUND,
            )
        try:
            content = blob_store().download(attachment.url)
        except StorageError as exc:
            LOGGER.error("Failed to download attachment %s: %s", attachment_id, exc)
            return JSONResponse(
                {"error": "Attachment unavailable"},
                status_code=http_status.HTTP_502_BAD_GATEWAY,
            )
        return Response(
            content=content,
            media_type=attachment.content_type,
            headers={"Content-Disposition": _content_disposition(attachment.filename)},
        )

    @app.post("/api/users/{user_id}/messages")
    async def send_message(user_id: str, payload: SendRequest) -> Response:
        repo = repository()
        store = blob_store()
        body = payload.body
        if payload.mode == "forward" and payload.forward_email_id:
            original = await asyncio.to_thread(
                repo.get_email, user_id, payload.forward_email_id
            )
            if original is None:
                return JSONResponse(
                    {"error": "Email not found"},
                    status_code=http_status.HTTP_404_NOT_FOUND,
                )
            quoted = await asyncio.to_thread(_load_body, store, original)
            body = compose_forward(original, quoted, body)
        try:
            response = await send_message_for_user(
                user_id,
                to=payload.to,
                subject=payload.subject,
                body=body,
                repository=repo,
                blob_store=store,
                client_factory=client_factory(),
                thread_id=payload.thread_id,
                mode=payload.mode,
                on_cursor_expired=app_settings.sync.on_cursor_expired,
            )
        except AuthError as exc:
            LOGGER.warning("Send for user %s needs re-authentication: %s", user_id, exc)
            return _reauth_response()
        except GmailMirrorError as exc:
            LOGGER.error("Failed to send message for user %s: %s", user_id, exc)
            return JSONResponse(
                {"success": False, "error": "Failed to send email."},
                status_code=http_status.HTTP_502_BAD_GATEWAY,
            )
        return JSONResponse(
            {"success": True, "id": response.get("id"), "threadId": response.get("threadId")}
        )

    return app


def _reauth_response() -> JSONResponse:
    return JSONResponse(
        {"success": False, "error": REAUTH_REQUIRED},
        status_code=http_status.HTTP_401_UNAUTHORIZED,
    )


def _load_body(store: BlobStore, email: StoredEmail) -> str:
    if not email.body_url:
        return ""
    try:
        return store.download(email.body_url).decode("utf-8", errors="replace")
    except StorageError as exc:
        LOGGER.error("Failed to download body for email %s: %s", email.id, exc)
        return BODY_UNAVAILABLE


def _content_disposition(filename: str) -> str:
    """Return an attachment header value, adding RFC 5987 ``filename*`` when needed."""
    quoted = quote(filename)
    if quoted == filename:
        return f'attachment; filename="{filename}"'
    fallback = (
        "".join(
            ch for ch in filename if ch.isascii() and ch.isprintable() and ch not in '"\\'
        ).strip()
        or "attachment"
    )
    return f"attachment; filename=\"{fallback}\"; filename*=UTF-8''{quoted}"


def _serialize_attachment(attachment: StoredAttachment) -> dict[str, Any]:
    return {
        "id": attachment.id,
        "filename": attachment.filename,
        "contentType": attachment.content_type,
        "size": attachment.size,
    }


def _serialize_email(email: StoredEmail) -> dict[str, Any]:
    return {
        "id": email.id,
        "gmailId": email.gmail_id,
        "threadId": email.thread_id,
        "subject": email.subject,
        "from": email.from_address,
        "to": email.to_address,
        "cc": email.cc,
        "bcc": email.bcc,
        "snippet": email.snippet,
        "isRead": email.is_read,
        "isSent": email.is_sent,
        "receivedAt": serialize_datetime(email.received_at),
        "attachments": [_serialize_attachment(item) for item in email.attachments],
    }


def _serialize_sync_result(result: SyncResult) -> dict[str, Any]:
    return {
        "success": True,
        "mode": result.mode.value,
        "count": result.total,
        "added": [_serialize_email(email) for email in result.added],
        "removed": [_serialize_email(email) for email in result.removed],
    }


__all__ = ["REAUTH_REQUIRED", "SendRequest", "build_container", "create_app"]
