"""Relational message metadata, one row per synchronized message.

Rows are upserted on ``(connection_id, sequence_number)``, so a message
refetched after a crash or an epoch reset updates its row rather than adding a
second one. A row is only written after its content object has been stored.
"""

from __future__ import annotations

import json
import logging
import sqlite3
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from .database import Database


logger = logging.getLogger(__name__)


class MessageMetadata(BaseModel):
    """Searchable metadata for one message.

    Required text fields are deliberately unconstrained here; the table's
    CHECK constraints reject empty values at write time.
    """

    id: str
    connection_id: str
    sequence_number: int
    mailbox_epoch: int
    message_key: str
    thread_id: str
    protocol_message_id: str
    in_reply_to: Optional[str] = None
    references: List[str] = Field(default_factory=list)
    subject: Optional[str] = None
    sender: Optional[str] = None
    recipients: List[str] = Field(default_factory=list)
    cc: List[str] = Field(default_factory=list)
    bcc: List[str] = Field(default_factory=list)
    reply_to: List[str] = Field(default_factory=list)
    snippet: str = ""
    content_store_key: str
    received_at: Optional[datetime] = None
    is_read: bool = False
    is_starred: bool = False
    labels: List[str] = Field(default_factory=list)
    attachments: List[Dict[str, Any]] = Field(default_factory=list)


@dataclass(frozen=True)
class UpsertResult:
    """Outcome of an upsert."""

    created: bool
    # set only when the row previously pointed at a different object
    previous_content_key: Optional[str] = None


_COLUMNS = (
    "id",
    "connection_id",
    "sequence_number",
    "mailbox_epoch",
    "message_key",
    "thread_id",
    "protocol_message_id",
    "in_reply_to",
    "reference_ids",
    "subject",
    "sender",
    "recipients",
    "cc",
    "bcc",
    "reply_to",
    "snippet",
    "content_store_key",
    "received_at",
    "is_read",
    "is_starred",
    "labels",
    "attachments",
    "created_at",
    "updated_at",
)

_UPDATE_COLUMNS = [c for c in _COLUMNS if c not in ("connection_id", "sequence_number", "created_at")]

_UPSERT_SQL = (
    f"INSERT INTO message_metadata({', '.join(_COLUMNS)}) "
    f"VALUES ({', '.join('?' for _ in _COLUMNS)}) "
    "ON CONFLICT(connection_id, sequence_number) DO UPDATE SET "
    + ", ".join(f"{c}=excluded.{c}" for c in _UPDATE_COLUMNS)
)


class MetadataPersister:
    """Writes message metadata rows."""

    def __init__(self, database: Database) -> None:
        self._db = database

    def upsert(self, metadata: MessageMetadata) -> UpsertResult:
        """Insert or update the row for ``(connection_id, sequence_number)``.

        Returns:
            Whether a row was created, and the content key it replaced when
            that key differed from the new one

        Raises:
            TransientIOError: Database locked or unavailable
            PermanentWriteError: A constraint rejected the row
        """
        now = datetime.now(timezone.utc).isoformat()
        with self._db.transaction() as conn:
            existing = conn.execute(
                "SELECT content_store_key FROM message_metadata "
                "WHERE connection_id = ? AND sequence_number = ?",
                (metadata.connection_id, metadata.sequence_number),
            ).fetchone()
            conn.execute(_UPSERT_SQL, _to_params(metadata, now))

        if existing is None:
            return UpsertResult(created=True)
        previous = existing["content_store_key"]
        if previous != metadata.content_store_key:
            return UpsertResult(created=False, previous_content_key=previous)
        return UpsertResult(created=False)

    def get(self, connection_id: str, sequence_number: int) -> Optional[MessageMetadata]:
        row = self._db.query_one(
            "SELECT * FROM message_metadata WHERE connection_id = ? AND sequence_number = ?",
            (connection_id, sequence_number),
        )
        return _row_to_metadata(row) if row else None

    def count(self, connection_id: Optional[str] = None) -> int:
        if connection_id is None:
            row = self._db.query_one("SELECT COUNT(*) AS n FROM message_metadata")
        else:
            row = self._db.query_one(
                "SELECT COUNT(*) AS n FROM message_metadata WHERE connection_id = ?",
                (connection_id,),
            )
        return int(row["n"]) if row else 0

    def is_referenced(self, connection_id: str, content_store_key: str) -> bool:
        row = self._db.query_one(
            "SELECT 1 FROM message_metadata WHERE connection_id = ? AND content_store_key = ? LIMIT 1",
            (connection_id, content_store_key),
        )
        return row is not None

    def list_thread(self, connection_id: str, thread_id: str) -> List[MessageMetadata]:
        """Messages of one thread, oldest sequence first."""
        rows = self._db.query(
            "SELECT * FROM message_metadata WHERE connection_id = ? AND thread_id = ? "
            "ORDER BY sequence_number",
            (connection_id, thread_id),
        )
        return [_row_to_metadata(row) for row in rows]


def _to_params(metadata: MessageMetadata, now: str) -> tuple:
    return (
        metadata.id,
        metadata.connection_id,
        metadata.sequence_number,
        metadata.mailbox_epoch,
        metadata.message_key,
        metadata.thread_id,
        metadata.protocol_message_id,
        metadata.in_reply_to,
        json.dumps(metadata.references),
        metadata.subject,
        metadata.sender,
        json.dumps(metadata.recipients),
        json.dumps(metadata.cc),
        json.dumps(metadata.bcc),
        json.dumps(metadata.reply_to),
        metadata.snippet,
        metadata.content_store_key,
        metadata.received_at.isoformat() if metadata.received_at else None,
        int(metadata.is_read),
        int(metadata.is_starred),
        json.dumps(metadata.labels),
        json.dumps(metadata.attachments),
        now,
        now,
    )


def _row_to_metadata(row: sqlite3.Row) -> MessageMetadata:
    return MessageMetadata(
        id=row["id"],
        connection_id=row["connection_id"],
        sequence_number=row["sequence_number"],
        mailbox_epoch=row["mailbox_epoch"],
        message_key=row["message_key"],
        thread_id=row["thread_id"],
        protocol_message_id=row["protocol_message_id"],
        in_reply_to=row["in_reply_to"],
        references=json.loads(row["reference_ids"]),
        subject=row["subject"],
        sender=row["sender"],
        recipients=json.loads(row["recipients"]),
        cc=json.loads(row["cc"]),
        bcc=json.loads(row["bcc"]),
        reply_to=json.loads(row["reply_to"]),
        snippet=row["snippet"],
        content_store_key=row["content_store_key"],
        received_at=datetime.fromisoformat(row["received_at"]) if row["received_at"] else None,
        is_read=bool(row["is_read"]),
        is_starred=bool(row["is_starred"]),
        labels=json.loads(row["labels"]),
        attachments=json.loads(row["attachments"]),
    )


__all__ = ["MessageMetadata", "MetadataPersister", "UpsertResult"]
