"""Ingestion pipeline components."""

from .outbox import compose_forward, compose_subject, send_message_for_user
from .parser import GmailMessageParser
from .sync import (
    ClientFactory,
    GmailSynchronizer,
    sync_all_accounts,
    sync_messages_for_user,
)

__all__ = [
    "ClientFactory",
    "GmailMessageParser",
    "GmailSynchronizer",
    "compose_forward",
    "compose_subject",
    "send_message_for_user",
    "sync_all_accounts",
    "sync_messages_for_user",
]
