"""MIME helpers: header decoding, dates, and plain-text extraction."""

import email
import email.header
import email.utils
import logging
from datetime import datetime, timezone
from email.message import Message
from typing import Dict, Optional

logger = logging.getLogger(__name__)

NO_SUBJECT = "(No Subject)"


def decode_header_value(value: Optional[str]) -> str:
    """Decode an RFC 2047 encoded header into plain text."""
    if not value:
        return ""
    try:
        return str(email.header.make_header(email.header.decode_header(value))).strip()
    except (LookupError, UnicodeDecodeError, ValueError):
        # Unknown charset or broken encoded-word; show it raw
        return str(value).strip()


def parse_date(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    try:
        parsed = email.utils.parsedate_to_datetime(value)
    except (TypeError, ValueError):
        logger.debug(f"Unparseable Date header: {value!r}")
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def parse_header_block(raw: Optional[bytes]) -> Dict[str, object]:
    """Parse a ``HEADER.FIELDS (FROM TO SUBJECT DATE)`` response."""
    msg = email.message_from_bytes(raw or b"")
    subject = decode_header_value(msg.get("Subject"))
    return {
        "from": decode_header_value(msg.get("From")),
        "to": decode_header_value(msg.get("To")),
        "subject": subject or NO_SUBJECT,
        "date": parse_date(msg.get("Date")),
    }


def decode_bytes(payload: Optional[bytes], charset: Optional[str] = None) -> str:
    if not payload:
        return ""
    try:
        return payload.decode(charset or "utf-8", errors="replace")
    except LookupError:
        return payload.decode("utf-8", errors="replace")


def _plain_text_part(msg: Message) -> Optional[str]:
    for part in msg.walk():
        if part.is_multipart():
            continue
        if part.get_content_type() != "text/plain":
            continue
        if "attachment" in (part.get("Content-Disposition") or "").lower():
            continue
        payload = part.get_payload(decode=True)
        if isinstance(payload, bytes):
            return decode_bytes(payload, part.get_content_charset())
    return None


def extract_content(full: Optional[bytes], text: Optional[bytes] = None) -> str:
    """Best available plain text for a message.

    Order: the first ``text/plain`` part of the full message, then the raw
    body text, then the full raw message.
    """
    if full:
        msg = email.message_from_bytes(full)
        plain = _plain_text_part(msg)
        if plain and plain.strip():
            return plain.strip()
    if text:
        decoded = decode_bytes(text).strip()
        if decoded:
            return decoded
    return decode_bytes(full).strip()


def extract_message_id(full: Optional[bytes]) -> Optional[str]:
    if not full:
        return None
    msg = email.message_from_bytes(full)
    value = (msg.get("Message-ID") or "").strip()
    return value or None
