"""Core utilities for configuration, logging, errors, and dependency wiring."""

from .config import AppSettings, SyncSettings, load_app_settings
from .container import ServiceContainer
from .errors import (
    AuthError,
    ConstraintViolationError,
    CursorExpiredError,
    GmailMirrorError,
    NetworkError,
    ParseError,
    RemoteApiError,
    StorageError,
)
from .logging import configure_logging

__all__ = [
    "AppSettings",
    "AuthError",
    "ConstraintViolationError",
    "CursorExpiredError",
    "GmailMirrorError",
    "NetworkError",
    "ParseError",
    "RemoteApiError",
    "ServiceContainer",
    "StorageError",
    "SyncSettings",
    "configure_logging",
    "load_app_settings",
]
