"""Decoder for raw RFC822/MIME messages.

Turns the bytes returned by ``BODY.PEEK[]`` into a structured
:class:`DecodedMessage`: envelope, plain and HTML bodies, and attachment
metadata. Decoding performs no I/O and holds no shared state, so it is safe to
run on executor threads in parallel.

Attachment payloads are never kept; only their metadata is recorded.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from email import message_from_bytes
from email.message import Message
from email.policy import default as email_policy
from email.utils import getaddresses, parsedate_to_datetime
from typing import Dict, List, Optional, Tuple

import html2text
from pydantic import BaseModel, Field, field_validator

from mailsync.errors import DecodeError

logger = logging.getLogger(__name__)

SNIPPET_LENGTH = 100


# ---------------------------------------------------------------------------
# Decoded message models
# ---------------------------------------------------------------------------


class EmailAddress(BaseModel):
    """Parsed email address with display name."""

    address: str = Field(..., description="Email address (user@domain.com)")
    display_name: Optional[str] = Field(default=None, description="Display name")

    @field_validator("address")
    @classmethod
    def _validate_address(cls, value: str) -> str:  # type: ignore[override]
        if "@" not in value or value.count("@") != 1:
            raise ValueError(f"Invalid email address: {value}")
        return value.lower()

    @classmethod
    def from_header(cls, header_value: str) -> List[EmailAddress]:
        """Parse every valid address in a header value.

        Args:
            header_value: Raw header value (e.g. "Jane <jane@example.com>, bob@example.com")

        Returns:
            Parsed addresses, invalid entries dropped
        """
        if not header_value or not header_value.strip():
            return []

        result = []
        for display_name, addr in getaddresses([header_value]):
            addr = addr.strip()
            if not addr or addr.count("@") != 1:
                continue
            result.append(cls(address=addr, display_name=display_name.strip() or None))
        return result

    def formatted(self) -> str:
        if self.display_name:
            return f"{self.display_name} <{self.address}>"
        return self.address


class AttachmentMetadata(BaseModel):
    """Metadata for an attachment (content is never stored)."""

    filename: str = Field(..., description="Attachment filename")
    content_type: str = Field(..., description="MIME content type")
    size_bytes: int = Field(default=0, ge=0, description="Decoded payload size")
    content_id: Optional[str] = Field(default=None, description="Content-ID for inline parts")
    is_inline: bool = Field(default=False)


class Envelope(BaseModel):
    """Header fields used for threading and display."""

    message_id: Optional[str] = None
    subject: Optional[str] = None
    sender: Optional[EmailAddress] = None
    to: List[EmailAddress] = Field(default_factory=list)
    cc: List[EmailAddress] = Field(default_factory=list)
    bcc: List[EmailAddress] = Field(default_factory=list)
    reply_to: List[EmailAddress] = Field(default_factory=list)
    date: Optional[datetime] = None
    in_reply_to: Optional[str] = None
    references: List[str] = Field(default_factory=list)


class DecodedMessage(BaseModel):
    """Structured view of one message."""

    envelope: Envelope
    text_body: Optional[str] = None
    html_body: Optional[str] = None
    attachments: List[AttachmentMetadata] = Field(default_factory=list)
    headers: List[Dict[str, str]] = Field(default_factory=list)

    @property
    def rendered_text(self) -> str:
        """Plain text body, converted from HTML when no text part exists."""
        if self.text_body is not None:
            return self.text_body.strip()
        if self.html_body is not None:
            return html_to_text(self.html_body)
        return ""


# ---------------------------------------------------------------------------
# Decoding
# ---------------------------------------------------------------------------


def decode(raw: bytes) -> DecodedMessage:
    """Parse a raw message.

    Args:
        raw: Full RFC822 message bytes

    Returns:
        The decoded message

    Raises:
        DecodeError: If the input is empty or has no parseable header block
    """
    if not isinstance(raw, (bytes, bytearray)):
        raise DecodeError(f"Expected bytes, got {type(raw).__name__}")
    if not raw.strip():
        raise DecodeError("Empty message")

    try:
        msg = message_from_bytes(bytes(raw), policy=email_policy)
        if not msg.keys():
            raise DecodeError("No header fields found")

        text_body, html_body = _extract_body(msg)
        return DecodedMessage(
            envelope=_extract_envelope(msg),
            text_body=text_body,
            html_body=html_body,
            attachments=_extract_attachments(msg),
            headers=[{"name": name, "value": str(value)} for name, value in msg.items()],
        )
    except DecodeError:
        raise
    except Exception as exc:
        raise DecodeError(f"Malformed message: {exc}") from exc


def snippet(message: DecodedMessage, length: int = SNIPPET_LENGTH) -> str:
    """Whitespace-collapsed preview of the rendered body."""
    return " ".join(message.rendered_text.split())[:length]


def html_to_text(html: str) -> str:
    converter = html2text.HTML2Text()
    converter.ignore_links = False
    converter.ignore_images = True
    converter.body_width = 0
    return converter.handle(html).strip()


def _extract_envelope(msg: Message) -> Envelope:
    senders = EmailAddress.from_header(_header(msg, "From"))
    return Envelope(
        message_id=_strip_angles(_header(msg, "Message-ID")) or None,
        subject=_header(msg, "Subject").strip() or None,
        sender=senders[0] if senders else None,
        to=EmailAddress.from_header(_header(msg, "To")),
        cc=EmailAddress.from_header(_header(msg, "Cc")),
        bcc=EmailAddress.from_header(_header(msg, "Bcc")),
        reply_to=EmailAddress.from_header(_header(msg, "Reply-To")),
        date=_extract_date(msg),
        in_reply_to=_strip_angles(_header(msg, "In-Reply-To")) or None,
        references=[
            _strip_angles(ref) for ref in _header(msg, "References").split() if _strip_angles(ref)
        ],
    )


def _header(msg: Message, name: str) -> str:
    value = msg.get(name)
    return str(value) if value is not None else ""


def _strip_angles(value: str) -> str:
    return value.strip().strip("<>").strip()


def _extract_date(msg: Message) -> Optional[datetime]:
    date_header = _header(msg, "Date")
    if not date_header:
        return None
    try:
        parsed = parsedate_to_datetime(date_header)
    except (TypeError, ValueError):
        logger.debug("Unparseable Date header", extra={"date_header": date_header})
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _extract_body(msg: Message) -> Tuple[Optional[str], Optional[str]]:
    """Return the first text/plain and text/html parts that are not attachments."""
    body_plain = None
    body_html = None

    for part in msg.walk():
        if part.is_multipart() or part.get_content_disposition() == "attachment":
            continue
        content_type = part.get_content_type()
        if content_type == "text/plain" and body_plain is None:
            body_plain = _part_text(part)
        elif content_type == "text/html" and body_html is None:
            body_html = _part_text(part)

    return body_plain, body_html


def _part_text(part: Message) -> str:
    try:
        return part.get_content()
    except (LookupError, UnicodeDecodeError):
        # unknown or lying charset
        payload = part.get_payload(decode=True) or b""
        return payload.decode("utf-8", errors="replace")


def _extract_attachments(msg: Message) -> List[AttachmentMetadata]:
    attachments: List[AttachmentMetadata] = []
    if not msg.is_multipart():
        return attachments

    for part in msg.walk():
        disposition = part.get_content_disposition()
        if disposition not in ("attachment", "inline"):
            continue
        filename = part.get_filename()
        if not filename:
            continue
        payload = part.get_payload(decode=True)
        content_id = _strip_angles(_header(part, "Content-ID"))
        attachments.append(
            AttachmentMetadata(
                filename=filename,
                content_type=part.get_content_type(),
                size_bytes=len(payload) if payload else 0,
                content_id=content_id or None,
                is_inline=disposition == "inline",
            )
        )
    return attachments


__all__ = [
    "AttachmentMetadata",
    "DecodedMessage",
    "EmailAddress",
    "Envelope",
    "decode",
    "html_to_text",
    "snippet",
]
