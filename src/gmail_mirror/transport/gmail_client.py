"""Async Gmail REST client with transparent OAuth token refresh."""

from __future__ import annotations

import asyncio
import inspect
import logging
from collections.abc import Awaitable, Callable, Sequence
from datetime import timedelta
from types import TracebackType
from typing import Any

import httpx

from ..core.config import GoogleSettings, SyncSettings
from ..core.datetime_utils import utcnow
from ..core.errors import AuthError, CursorExpiredError, NetworkError, RemoteApiError
from ..core.interfaces import MailboxClient, TokenHandler
from ..core.models import (
    Account,
    HistoryDelta,
    MessageRef,
    OutgoingMessage,
    RawMessage,
    TokenUpdate,
)
from .compose import encode_raw_message

LOGGER = logging.getLogger(__name__)

MAX_PAGE_SIZE = 500
TOKEN_EXPIRY_SKEW = timedelta(seconds=60)
_RETRYABLE_STATUSES = frozenset({429, 500, 502, 503, 504})
_EXPIRED_CURSOR_STATUSES = frozenset({400, 404})


class GmailClient(MailboxClient):
    """Speak to ``gmail/v1/users/me`` on behalf of one linked account.

    Access tokens are refreshed when they are about to expire and once more
    after a 401. Every refresh is reported to ``on_tokens`` so the caller
    can persist the new values; failures in that handler are logged and
    never interrupt the request that triggered the refresh.
    """

    def __init__(
        self,
        account: Account,
        settings: GoogleSettings,
        sync_settings: SyncSettings | None = None,
        *,
        on_tokens: TokenHandler | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        if not account.access_token or not account.refresh_token:
            raise AuthError("Missing tokens for Gmail client; please re-authenticate")
        self._settings = settings
        self._sync = sync_settings or SyncSettings()
        self._account_id = account.id
        self._access_token = account.access_token
        self._refresh_token = account.refresh_token
        self._expires_at = account.access_token_expires_at
        self._on_tokens = on_tokens
        self._sleep = sleep
        self._refresh_lock = asyncio.Lock()
        self._http = httpx.AsyncClient(
            base_url=settings.api_base_url,
            timeout=settings.timeout_seconds,
            transport=transport,
        )

    # Context manager helpers -------------------------------------------------
    async def __aenter__(self) -> GmailClient:
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        await self.aclose()

    # Public API ---------------------------------------------------------------
    async def list_all_message_ids(self) -> list[MessageRef]:
        """Page through ``messages.list`` until Gmail stops returning tokens."""
        page_size = min(self._sync.page_size, MAX_PAGE_SIZE)
        refs: list[MessageRef] = []
        page_token: str | None = None
        while True:
            params: dict[str, Any] = {"maxResults": page_size}
            if page_token:
                params["pageToken"] = page_token
            data = await self._request("GET", "messages", params=params)
            for message in data.get("messages") or []:
                if message.get("id") and message.get("threadId"):
                    refs.append(MessageRef(id=message["id"], thread_id=message["threadId"]))
            page_token = data.get("nextPageToken")
            if not page_token:
                break
        LOGGER.debug("Listed %d message ids for account %s", len(refs), self._account_id)
        return refs

    async def fetch_messages_by_ids(self, ids: Sequence[str]) -> list[RawMessage]:
        """Fetch ``format=raw`` messages concurrently, dropping failures."""
        if not ids:
            return []
        semaphore = asyncio.Semaphore(self._sync.fetch_concurrency)

        async def fetch_one(message_id: str) -> RawMessage:
            async with semaphore:
                data = await self._request(
                    "GET", f"messages/{message_id}", params={"format": "raw"}
                )
            internal_date = data.get("internalDate")
            return RawMessage(
                id=data.get("id") or message_id,
                thread_id=data.get("threadId") or "",
                raw=data.get("raw"),
                internal_date=int(internal_date) if internal_date else None,
                history_id=data.get("historyId"),
            )

        results = await asyncio.gather(
            *(fetch_one(message_id) for message_id in ids), return_exceptions=True
        )
        fetched: list[RawMessage] = []
        for message_id, result in zip(ids, results):
            if isinstance(result, AuthError):
                raise result
            if isinstance(result, Exception):
                LOGGER.warning("Failed to fetch message %s: %s", message_id, result)
                continue
            if isinstance(result, BaseException):
                raise result
            fetched.append(result)
        LOGGER.debug("Fetched %d of %d requested messages", len(fetched), len(ids))
        return fetched

    async def fetch_history_since(self, cursor: str) -> HistoryDelta:
        """Collect added and deleted message ids recorded after ``cursor``."""
        added: dict[str, MessageRef] = {}
        deleted: dict[str, None] = {}
        new_cursor: str | None = None
        page_token: str | None = None
        while True:
            params: dict[str, Any] = {"startHistoryId": cursor}
            if page_token:
                params["pageToken"] = page_token
            try:
                data = await self._request("GET", "history", params=params)
            except RemoteApiError as exc:
                if exc.status_code in _EXPIRED_CURSOR_STATUSES:
                    raise CursorExpiredError(
                        f"History id {cursor} is no longer valid", exc.status_code
                    ) from exc
                raise
            for record in data.get("history") or []:
                for entry in record.get("messagesDeleted") or []:
                    message_id = (entry.get("message") or {}).get("id")
                    if message_id:
                        deleted[message_id] = None
                for entry in record.get("messagesAdded") or []:
                    message = entry.get("message") or {}
                    if message.get("id"):
                        added[message["id"]] = MessageRef(
                            id=message["id"], thread_id=message.get("threadId") or ""
                        )
            new_cursor = data.get("historyId") or new_cursor
            page_token = data.get("nextPageToken")
            if not page_token:
                break
        return HistoryDelta(
            added=tuple(added.values()),
            deleted=tuple(deleted),
            new_cursor=str(new_cursor) if new_cursor is not None else None,
        )

    async def get_current_cursor(self) -> str | None:
        """Return the mailbox's latest history id from ``users.getProfile``."""
        data = await self._request("GET", "profile")
        history_id = data.get("historyId")
        return str(history_id) if history_id is not None else None

    async def send_message(self, message: OutgoingMessage) -> dict[str, Any]:
        """Send ``message``, threading it when ``thread_id`` is set."""
        body: dict[str, Any] = {"raw": encode_raw_message(message)}
        if message.thread_id:
            body["threadId"] = message.thread_id
        data = await self._request("POST", "messages/send", json=body)
        LOGGER.info("Sent message %s for account %s", data.get("id"), self._account_id)
        return data

    async def aclose(self) -> None:
        """Close the underlying HTTP client."""
        await self._http.aclose()

    # Internal helpers ---------------------------------------------------------
    async def _request(
        self,
        method: str,
        path: str,
        *,
        params: dict[str, Any] | None = None,
        json: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        await self._ensure_fresh_token()
        refreshed = False
        attempt = 0
        while True:
            token = self._access_token
            try:
                response = await self._http.request(
                    method,
                    path,
                    params=params,
                    json=json,
                    headers={"Authorization": f"Bearer {token}"},
                )
            except httpx.HTTPError as exc:
                raise NetworkError(f"{method} {path} failed: {exc}") from exc

            if response.status_code == 401 and not refreshed:
                LOGGER.info("Gmail returned 401 for %s; refreshing token", path)
                async with self._refresh_lock:
                    if self._access_token == token:
                        await self._refresh()
                refreshed = True
                continue

            if (
                response.status_code in _RETRYABLE_STATUSES
                and attempt < self._sync.max_retries
            ):
                attempt += 1
                delay = min(2**attempt, 10)
                LOGGER.warning(
                    "Gmail returned %s for %s; retrying in %s seconds (attempt %s)",
                    response.status_code,
                    path,
                    delay,
                    attempt,
                )
                await self._sleep(delay)
                continue

            if response.is_error:
                if response.status_code == 401:
                    raise AuthError("Gmail rejected refreshed credentials; please re-authenticate")
                raise RemoteApiError(
                    f"{method} {path} returned {response.status_code}: {response.text[:200]}",
                    response.status_code,
                )
            try:
                return response.json()
            except ValueError as exc:
                raise RemoteApiError(
                    f"{method} {path} returned invalid JSON", response.status_code
                ) from exc

    async def _ensure_fresh_token(self) -> None:
        if self._expires_at is None:
            return
        if self._expires_at - TOKEN_EXPIRY_SKEW > utcnow():
            return
        async with self._refresh_lock:
            if self._expires_at is not None and self._expires_at - TOKEN_EXPIRY_SKEW <= utcnow():
                LOGGER.debug("Access token for account %s expired", self._account_id)
                await self._refresh()

    async def _refresh(self) -> None:
        if not self._settings.client_id or not self._settings.client_secret:
            raise AuthError("Google OAuth client credentials are not configured")
        try:
            response = await self._http.post(
                self._settings.token_url,
                data={
                    "client_id": self._settings.client_id,
                    "client_secret": self._settings.client_secret,
                    "refresh_token": self._refresh_token,
                    "grant_type": "refresh_token",
                },
            )
        except httpx.HTTPError as exc:
            raise NetworkError(f"Token refresh failed: {exc}") from exc

        if response.status_code in (400, 401):
            LOGGER.error("Token refresh rejected: %s", response.text[:200])
            raise AuthError("Refresh token rejected; please re-authenticate")
        if response.is_error:
            raise RemoteApiError(
                f"Token refresh returned {response.status_code}", response.status_code
            )

        tokens = response.json()
        access_token = tokens.get("access_token")
        if not access_token:
            raise AuthError("Token refresh response carried no access token")
        expires_in = tokens.get("expires_in")
        self._access_token = access_token
        self._expires_at = (
            utcnow() + timedelta(seconds=int(expires_in)) if expires_in else None
        )
        new_refresh_token = tokens.get("refresh_token")
        if new_refresh_token:
            self._refresh_token = new_refresh_token
        LOGGER.info("Refreshed access token for account %s", self._account_id)
        await self._notify_tokens(
            TokenUpdate(
                access_token=access_token,
                refresh_token=new_refresh_token,
                expires_at=self._expires_at,
            )
        )

    async def _notify_tokens(self, update: TokenUpdate) -> None:
        if self._on_tokens is None:
            return
        try:
            result = self._on_tokens(update)
            if inspect.isawaitable(result):
                await result
        except Exception as exc:  # pylint: disable=broad-except
            LOGGER.error(
                "Failed to persist refreshed tokens for account %s: %s",
                self._account_id,
                exc,
                exc_info=True,
            )


def gmail_client_factory(
    settings: GoogleSettings, sync_settings: SyncSettings | None = None
) -> Callable[[Account, TokenHandler | None], GmailClient]:
    """Return a factory building :class:`GmailClient` instances per account."""

    def build(account: Account, on_tokens: TokenHandler | None) -> GmailClient:
        return GmailClient(account, settings, sync_settings, on_tokens=on_tokens)

    return build


__all__ = ["GmailClient", "MAX_PAGE_SIZE", "gmail_client_factory"]
