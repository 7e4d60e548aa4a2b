"""Resumable per-connection sync cursors.

A cursor records the mailbox epoch (IMAP UIDVALIDITY) and the highest
sequence number (UID) whose content and metadata are both durable. It only
moves forward within an epoch; an epoch change resets it to zero, which turns
the next fetch into a full resync.
"""

from __future__ import annotations

import logging
import sqlite3
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import List, Optional

from pydantic import BaseModel, Field

from mailsync.errors import ConsistencyError

from .database import Database


logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Cursor models
# ---------------------------------------------------------------------------


class SyncCursor(BaseModel):
    """Persistent resume point for one connection and mailbox."""

    connection_id: str = Field(..., description="Connection identifier")
    mailbox: str = Field(default="INBOX", description="Mailbox name")
    mailbox_epoch: int = Field(..., ge=0, description="UIDVALIDITY observed")
    last_sequence: int = Field(default=0, ge=0, description="Highest durable UID")
    updated_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


@dataclass(frozen=True)
class ResumePlan:
    """Range to fetch for one pass, derived from cursor and server state."""

    mailbox_epoch: int
    start: int
    end: int
    full_resync: bool
    previous_epoch: Optional[int] = None

    @property
    def is_empty(self) -> bool:
        return self.start > self.end


# ---------------------------------------------------------------------------
# Cursor persistence
# ---------------------------------------------------------------------------


class CursorTracker:
    """SQLite-backed sync state tracker."""

    def __init__(self, database: Database) -> None:
        self._db = database

    def get_cursor(self, connection_id: str, mailbox: str = "INBOX") -> Optional[SyncCursor]:
        """Fetch the cursor for a connection's mailbox.

        Returns:
            The cursor if one exists, None otherwise
        """
        row = self._db.query_one(
            """
            SELECT connection_id, mailbox, mailbox_epoch, last_sequence, updated_at
            FROM sync_cursors
            WHERE connection_id = ? AND mailbox = ?
            """,
            (connection_id, mailbox),
        )
        return _row_to_cursor(row) if row else None

    def reset_cursor(
        self, connection_id: str, mailbox_epoch: int, mailbox: str = "INBOX"
    ) -> SyncCursor:
        """Create or rewrite the cursor as ``{mailbox_epoch, 0}``."""
        cursor = SyncCursor(
            connection_id=connection_id,
            mailbox=mailbox,
            mailbox_epoch=mailbox_epoch,
            last_sequence=0,
        )
        self._db.execute(
            """
            INSERT INTO sync_cursors(connection_id, mailbox, mailbox_epoch, last_sequence, updated_at)
            VALUES (?, ?, ?, 0, ?)
            ON CONFLICT(connection_id, mailbox) DO UPDATE SET
                mailbox_epoch=excluded.mailbox_epoch,
                last_sequence=0,
                updated_at=excluded.updated_at
            """,
            (connection_id, mailbox, mailbox_epoch, cursor.updated_at.isoformat()),
        )
        return cursor

    def advance_cursor(
        self,
        connection_id: str,
        new_last_sequence: int,
        mailbox_epoch: int,
        mailbox: str = "INBOX",
    ) -> None:
        """Move the cursor forward after a batch became durable.

        The update only applies while the stored epoch still matches and the
        cursor would not move backwards.

        Raises:
            ConsistencyError: If the stored cursor is absent, in another epoch,
                or already beyond ``new_last_sequence``
        """
        updated = self._db.execute(
            """
            UPDATE sync_cursors
            SET last_sequence = ?, updated_at = ?
            WHERE connection_id = ? AND mailbox = ?
              AND mailbox_epoch = ? AND last_sequence <= ?
            """,
            (
                new_last_sequence,
                datetime.now(timezone.utc).isoformat(),
                connection_id,
                mailbox,
                mailbox_epoch,
                new_last_sequence,
            ),
        )
        if updated == 1:
            return

        current = self.get_cursor(connection_id, mailbox)
        raise ConsistencyError(
            "Cursor cannot advance",
            details={
                "connection_id": connection_id,
                "mailbox": mailbox,
                "requested_epoch": mailbox_epoch,
                "requested_sequence": new_last_sequence,
                "stored_epoch": current.mailbox_epoch if current else None,
                "stored_sequence": current.last_sequence if current else None,
            },
        )

    def plan_resume(
        self,
        connection_id: str,
        mailbox_epoch: int,
        server_max: int,
        mailbox: str = "INBOX",
        *,
        server_max_exact: bool = True,
    ) -> ResumePlan:
        """Decide what to fetch now that the server reported its state.

        An unchanged epoch resumes strictly after ``last_sequence``. A changed
        or absent epoch rewrites the cursor to ``{mailbox_epoch, 0}`` and
        fetches everything.

        Args:
            server_max_exact: ``server_max`` came from UIDNEXT. A maximum taken
                from the surviving UIDs drops when the newest messages are
                expunged, so a cursor above it only means nothing is new.

        Raises:
            ConsistencyError: If the stored cursor is ahead of an exact
                ``server_max`` in the same epoch
        """
        cursor = self.get_cursor(connection_id, mailbox)
        if cursor is not None and cursor.mailbox_epoch == mailbox_epoch:
            if cursor.last_sequence > server_max and not server_max_exact:
                server_max = cursor.last_sequence
            if cursor.last_sequence > server_max:
                raise ConsistencyError(
                    "Cursor is ahead of the server",
                    details={
                        "connection_id": connection_id,
                        "mailbox": mailbox,
                        "epoch": mailbox_epoch,
                        "cursor_sequence": cursor.last_sequence,
                        "server_max": server_max,
                    },
                )
            return ResumePlan(
                mailbox_epoch=mailbox_epoch,
                start=cursor.last_sequence + 1,
                end=server_max,
                full_resync=False,
                previous_epoch=cursor.mailbox_epoch,
            )

        previous_epoch = cursor.mailbox_epoch if cursor else None
        if cursor is not None:
            logger.warning(
                "Mailbox epoch changed, performing full resync",
                extra={
                    "connection_id": connection_id,
                    "mailbox": mailbox,
                    "old_epoch": previous_epoch,
                    "new_epoch": mailbox_epoch,
                },
            )
        self.reset_cursor(connection_id, mailbox_epoch, mailbox)
        return ResumePlan(
            mailbox_epoch=mailbox_epoch,
            start=1,
            end=server_max,
            full_resync=True,
            previous_epoch=previous_epoch,
        )

    def list_cursors(self) -> List[SyncCursor]:
        rows = self._db.query(
            """
            SELECT connection_id, mailbox, mailbox_epoch, last_sequence, updated_at
            FROM sync_cursors
            ORDER BY connection_id, mailbox
            """
        )
        return [_row_to_cursor(row) for row in rows]


def _row_to_cursor(row: sqlite3.Row) -> SyncCursor:
    return SyncCursor(
        connection_id=row["connection_id"],
        mailbox=row["mailbox"],
        mailbox_epoch=row["mailbox_epoch"],
        last_sequence=row["last_sequence"],
        updated_at=datetime.fromisoformat(row["updated_at"]),
    )


__all__ = ["CursorTracker", "ResumePlan", "SyncCursor"]
