"""Transport adapters for the Gmail API."""

from .compose import build_mime_message, encode_raw_message
from .gmail_client import GmailClient

__all__ = ["GmailClient", "build_mime_message", "encode_raw_message"]
