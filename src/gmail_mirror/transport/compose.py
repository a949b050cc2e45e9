"""Build RFC 5322 payloads for messages sent through the Gmail API."""

from __future__ import annotations

import base64
import logging
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText

from ..core.models import OutgoingMessage

LOGGER = logging.getLogger(__name__)


def build_mime_message(message: OutgoingMessage) -> MIMEMultipart:
    """Build the HTML MIME message for ``message``."""
    mime_msg = MIMEMultipart("alternative")
    mime_msg["From"] = message.sender
    mime_msg["To"] = message.to
    mime_msg["Subject"] = message.subject

    LOGGER.debug(
        "Building MIME message: From=%s, To=%s, Subject=%s",
        message.sender,
        message.to,
        message.subject,
    )
    mime_msg.attach(MIMEText(message.body, "html", "utf-8"))
    return mime_msg


def encode_raw_message(message: OutgoingMessage) -> str:
    """Return ``message`` as the base64url string expected by ``messages.send``."""
    payload = build_mime_message(message).as_bytes()
    return base64.urlsafe_b64encode(payload).decode("ascii")


__all__ = ["build_mime_message", "encode_raw_message"]
