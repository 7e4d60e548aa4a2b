"""IMAP session adapter and message decoder."""

from .decoder import AttachmentMetadata, DecodedMessage, EmailAddress, Envelope, decode, snippet
from .session import ImapSession, MailboxInfo, MailSession, RawMessage, SessionFactory, connect_imap

__all__ = [
    "AttachmentMetadata",
    "DecodedMessage",
    "EmailAddress",
    "Envelope",
    "ImapSession",
    "MailSession",
    "MailboxInfo",
    "RawMessage",
    "SessionFactory",
    "connect_imap",
    "decode",
    "snippet",
]
