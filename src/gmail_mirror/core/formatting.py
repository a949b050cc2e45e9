"""Pure helpers for address display strings and reply/forward text."""

from __future__ import annotations

import re
from collections.abc import Iterable

from .datetime_utils import display_datetime
from .models import StoredEmail

__all__ = [
    "UNKNOWN_SENDER",
    "extract_all_addresses",
    "extract_bare_address",
    "extract_display_name",
    "format_address",
    "format_forward_body",
    "format_subject",
]

UNKNOWN_SENDER = "Unknown Sender"

_ANGLE_ADDRESS = re.compile(r"<([^>]+)>")
_DISPLAY_NAME = re.compile(r"^(.+?)\s*<.*>$")
_LOCAL_PART = re.compile(r"^([^@<]+)@")


def format_address(addresses: Iterable[tuple[str | None, str | None]]) -> str:
    """Join ``(name, address)`` pairs as ``"Name <address>"`` or bare address."""
    rendered: list[str] = []
    for name, address in addresses:
        if name:
            rendered.append(f"{name} <{address or ''}>")
        else:
            rendered.append(address or "")
    return ", ".join(rendered)


def extract_bare_address(display: str) -> str:
    """Return the address inside ``<...>``, or ``display`` unchanged."""
    match = _ANGLE_ADDRESS.search(display)
    return match.group(1) if match else display


def extract_display_name(display: str | None) -> str:
    """Return a human name for ``display``, falling back to the local part."""
    if not display:
        return UNKNOWN_SENDER
    name_match = _DISPLAY_NAME.match(display)
    if name_match:
        return name_match.group(1).strip().strip("\"'")
    local_match = _LOCAL_PART.match(display)
    if local_match:
        return local_match.group(1).strip()
    return display.strip()


def extract_all_addresses(
    from_address: str | None, to_address: str | None, cc: str | None
) -> list[str]:
    """Collect distinct bare addresses from sender and recipient headers."""
    seen: dict[str, None] = {}
    if from_address:
        seen[extract_bare_address(from_address).strip()] = None
    for header in (to_address, cc):
        if not header:
            continue
        for entry in header.split(","):
            if entry.strip():
                seen[extract_bare_address(entry).strip()] = None
    return list(seen)


def format_subject(subject: str, prefix: str = "Re:") -> str:
    """Prefix ``subject`` once; already prefixed subjects are returned as-is."""
    if subject.startswith(prefix):
        return subject
    return f"{prefix} {subject}"


def format_forward_body(email: StoredEmail, html_body: str) -> str:
    """Render the quoted block appended to a forwarded message."""
    lines = [
        "",
        "---------- Forwarded message ---------",
        f"From: {email.from_address or ''}",
        f"Date: {display_datetime(email.received_at) or ''}",
        f"Subject: {email.subject or ''}",
        f"To: {email.to_address or ''}",
    ]
    if email.cc:
        lines.append(f"Cc: {email.cc}")
    lines.append("")
    lines.append(html_body)
    return "\n".join(lines)
