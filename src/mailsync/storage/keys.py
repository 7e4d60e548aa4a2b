"""Deterministic identities for stored messages.

A message is identified by the server's globally unique id when the server
provides one (Gmail ``X-GM-MSGID``, RFC 8474 ``EMAILID``). Otherwise the
identity falls back to ``{mailbox_epoch}.{sequence_number}``, which stays
unique across epoch resets.
"""

from __future__ import annotations

from hashlib import sha256
from typing import Optional, Sequence

THREAD_HASH_LENGTH = 16


def message_key(epoch: int, sequence_number: int, global_id: Optional[str] = None) -> str:
    if global_id:
        return f"g{global_id}"
    return f"{epoch}.{sequence_number}"


def thread_id(
    message_key: str,
    *,
    message_id: Optional[str] = None,
    in_reply_to: Optional[str] = None,
    references: Sequence[str] = (),
    thread_hint: Optional[str] = None,
) -> str:
    """Thread identity shared by every message of a conversation.

    The server's thread id wins. Otherwise the thread root is the first
    ``References`` entry, then ``In-Reply-To``, then the message's own
    ``Message-ID``; a message with none of them forms its own thread.
    """
    if thread_hint:
        return f"t{thread_hint}"
    root = references[0] if references else (in_reply_to or message_id)
    if not root:
        return f"m{message_key}"
    return sha256(root.strip().lower().encode("utf-8")).hexdigest()[:THREAD_HASH_LENGTH]


def content_key(connection_id: str, thread: str, key: str) -> str:
    """Object-store key ``{connection_id}/{thread_id}/{message_key}``."""
    return f"{connection_id}/{thread}/{key}"


def fallback_message_id(key: str, connection_id: str, host: str) -> str:
    """Stand-in ``Message-ID`` for messages that lack one."""
    return f"{key}.{connection_id}@{host}"


__all__ = ["content_key", "fallback_message_id", "message_key", "thread_id"]
