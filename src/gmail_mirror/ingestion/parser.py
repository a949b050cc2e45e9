"""Utilities for parsing raw Gmail messages into structured models."""

from __future__ import annotations

import base64
import binascii
from collections.abc import Iterable
from datetime import datetime
from email import policy
from email.message import EmailMessage
from email.parser import BytesParser
from email.utils import getaddresses, parsedate_to_datetime

from ..core.datetime_utils import ensure_utc, from_epoch_millis, utcnow
from ..core.errors import ParseError
from ..core.formatting import format_address
from ..core.models import ParsedAttachment, ParsedEmail, RawMessage

NO_SUBJECT = "(No Subject)"
UNNAMED_ATTACHMENT = "unnamed"
DEFAULT_CONTENT_TYPE = "application/octet-stream"
SNIPPET_LENGTH = 200


class GmailMessageParser:
    """Convert base64url ``format=raw`` payloads into :class:`ParsedEmail`."""

    def __init__(self) -> None:
        self._parser = BytesParser(policy=policy.default)

    def parse(self, message: RawMessage) -> ParsedEmail:
        """Decode and parse ``message``; raise :class:`ParseError` on bad input."""
        if not message.raw:
            raise ParseError(f"No raw content for message {message.id}")
        payload = _decode_base64url(message.id, message.raw)
        try:
            parsed = self._parser.parsebytes(payload)
        except (TypeError, ValueError) as exc:
            raise ParseError(f"Unable to parse message {message.id}: {exc}") from exc

        text_body, html_body = _extract_bodies(parsed)
        subject = parsed.get("Subject")

        return ParsedEmail(
            gmail_id=message.id,
            thread_id=message.thread_id,
            subject=str(subject) if subject is not None else NO_SUBJECT,
            from_address=_format_header(parsed, "From"),
            to_address=_format_header(parsed, "To"),
            cc=_format_header(parsed, "Cc"),
            bcc=_format_header(parsed, "Bcc"),
            snippet=text_body[:SNIPPET_LENGTH],
            html_body=html_body,
            text_body=text_body,
            received_at=_resolve_received_at(parsed, message.internal_date),
            attachments=tuple(_collect_attachments(parsed)),
        )


def _decode_base64url(message_id: str, raw: str) -> bytes:
    padded = raw + "=" * (-len(raw) % 4)
    try:
        return base64.urlsafe_b64decode(padded.encode("ascii"))
    except (binascii.Error, UnicodeEncodeError) as exc:
        raise ParseError(f"Invalid base64url payload for message {message_id}") from exc


def _format_header(message: EmailMessage, name: str) -> str:
    headers = [str(value) for value in message.get_all(name, [])]
    if not headers:
        return ""
    pairs = [(display, address) for display, address in getaddresses(headers)]
    return format_address(pair for pair in pairs if pair[0] or pair[1])


def _extract_bodies(message: EmailMessage) -> tuple[str, str]:
    plain_chunks: list[str] = []
    html_chunks: list[str] = []

    for part in message.walk():
        if part.is_multipart():
            continue
        if part.get_content_disposition() == "attachment":
            continue
        content_type = part.get_content_type()
        if content_type not in ("text/plain", "text/html"):
            continue
        try:
            content = part.get_content()
        except (LookupError, ValueError):
            continue
        if not isinstance(content, str):
            continue
        if content_type == "text/plain":
            plain_chunks.append(content)
        else:
            html_chunks.append(content)

    return "\n".join(plain_chunks), "\n".join(html_chunks)


def _collect_attachments(message: EmailMessage) -> Iterable[ParsedAttachment]:
    for part in message.walk():
        if part.is_multipart() or part.get_content_disposition() != "attachment":
            continue
        content = part.get_payload(decode=True) or b""
        content_type = part.get("Content-Type")
        yield ParsedAttachment(
            filename=part.get_filename() or UNNAMED_ATTACHMENT,
            content_type=part.get_content_type() if content_type else DEFAULT_CONTENT_TYPE,
            size=len(content),
            content=content,
        )


def _resolve_received_at(message: EmailMessage, internal_date: int | None) -> datetime:
    header_value = message.get("Date")
    if header_value:
        try:
            parsed = parsedate_to_datetime(str(header_value))
        except (TypeError, ValueError):
            parsed = None
        if parsed is not None:
            return ensure_utc(parsed) or parsed
    return from_epoch_millis(internal_date) or utcnow()


__all__ = ["GmailMessageParser", "NO_SUBJECT", "SNIPPET_LENGTH"]
