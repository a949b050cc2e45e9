"""Exception hierarchy shared by the sync pipeline and its adapters."""

from __future__ import annotations


class GmailMirrorError(RuntimeError):
    """Base class for all errors raised by Gmail Mirror."""


class AuthError(GmailMirrorError):
    """No linked account, or its tokens are missing or were rejected."""


class NetworkError(GmailMirrorError):
    """Transport level failure talking to the Gmail API."""


class RemoteApiError(GmailMirrorError):
    """Gmail answered with an error status."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class CursorExpiredError(RemoteApiError):
    """Gmail no longer accepts the stored history id."""


class ParseError(GmailMirrorError):
    """A raw message could not be decoded or parsed."""


class StorageError(GmailMirrorError):
    """Local database or blob store operation failed."""


class ConstraintViolationError(StorageError):
    """A row with the same Gmail message id already exists."""


__all__ = [
    "AuthError",
    "ConstraintViolationError",
    "CursorExpiredError",
    "GmailMirrorError",
    "NetworkError",
    "ParseError",
    "RemoteApiError",
    "StorageError",
]
