"""SQLite handle shared by the connection source, cursor tracker and persister.

All three relational concerns live in one database file so the cursor and the
metadata rows it vouches for share a single durability domain. Access is
serialised through a lock so the handle can be used from executor threads.
"""

from __future__ import annotations

import logging
import sqlite3
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Iterator, List, Sequence

from mailsync.errors import ConfigurationError, PermanentWriteError, TransientIOError


logger = logging.getLogger(__name__)


SCHEMA = """
CREATE TABLE IF NOT EXISTS mail_connections (
    id TEXT PRIMARY KEY,
    owner_id TEXT NOT NULL,
    provider_kind TEXT NOT NULL DEFAULT 'imap',
    host TEXT NOT NULL,
    port INTEGER NOT NULL DEFAULT 993,
    tls_mode TEXT NOT NULL DEFAULT 'implicit',
    username TEXT NOT NULL,
    auth_ref TEXT NOT NULL,
    auth_mechanism TEXT NOT NULL DEFAULT 'password',
    mailbox TEXT,
    enabled INTEGER NOT NULL DEFAULT 1
);

CREATE INDEX IF NOT EXISTS idx_connections_provider
    ON mail_connections(provider_kind, enabled);

CREATE TABLE IF NOT EXISTS sync_cursors (
    connection_id TEXT NOT NULL,
    mailbox TEXT NOT NULL,
    mailbox_epoch INTEGER NOT NULL,
    last_sequence INTEGER NOT NULL DEFAULT 0 CHECK (last_sequence >= 0),
    updated_at TEXT NOT NULL,
    PRIMARY KEY (connection_id, mailbox)
);

CREATE TABLE IF NOT EXISTS message_metadata (
    id TEXT NOT NULL,
    connection_id TEXT NOT NULL,
    sequence_number INTEGER NOT NULL CHECK (sequence_number > 0),
    mailbox_epoch INTEGER NOT NULL,
    message_key TEXT NOT NULL CHECK (length(message_key) > 0),
    thread_id TEXT NOT NULL CHECK (length(thread_id) > 0),
    protocol_message_id TEXT NOT NULL CHECK (length(protocol_message_id) > 0),
    in_reply_to TEXT,
    reference_ids TEXT NOT NULL DEFAULT '[]',
    subject TEXT,
    sender TEXT,
    recipients TEXT NOT NULL DEFAULT '[]',
    cc TEXT NOT NULL DEFAULT '[]',
    bcc TEXT NOT NULL DEFAULT '[]',
    reply_to TEXT NOT NULL DEFAULT '[]',
    snippet TEXT NOT NULL DEFAULT '',
    content_store_key TEXT NOT NULL CHECK (length(content_store_key) > 0),
    received_at TEXT,
    is_read INTEGER NOT NULL DEFAULT 0,
    is_starred INTEGER NOT NULL DEFAULT 0,
    labels TEXT NOT NULL DEFAULT '[]',
    attachments TEXT NOT NULL DEFAULT '[]',
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    PRIMARY KEY (connection_id, sequence_number)
);

CREATE INDEX IF NOT EXISTS idx_metadata_thread
    ON message_metadata(connection_id, thread_id);
CREATE INDEX IF NOT EXISTS idx_metadata_message_key
    ON message_metadata(connection_id, message_key);
"""


class Database:
    """Thread-safe SQLite handle with the mailsync schema applied."""

    def __init__(self, path: str | Path, *, busy_timeout: float = 5.0) -> None:
        """Open (and create if needed) the database.

        Args:
            path: Database file, or ``:memory:``
            busy_timeout: Seconds to wait on a locked database before failing

        Raises:
            ConfigurationError: If the database cannot be opened
        """
        self._path = str(path)
        self._lock = threading.Lock()
        try:
            if self._path != ":memory:":
                Path(self._path).parent.mkdir(parents=True, exist_ok=True)
            self._conn = sqlite3.connect(
                self._path, timeout=busy_timeout, check_same_thread=False
            )
            self._conn.row_factory = sqlite3.Row
            self._conn.execute("PRAGMA journal_mode=WAL")
            self._conn.executescript(SCHEMA)
        except (OSError, sqlite3.Error) as exc:
            raise ConfigurationError(
                f"Cannot open database at {self._path}: {exc}",
                details={"database": self._path},
            ) from exc

    @property
    def path(self) -> str:
        return self._path

    def close(self) -> None:
        """Close database connection."""
        with self._lock:
            self._conn.commit()
            self._conn.close()

    def execute(self, sql: str, params: Sequence[Any] = ()) -> int:
        """Run a write statement in its own transaction.

        Returns:
            Number of affected rows

        Raises:
            TransientIOError: Database locked or unavailable
            PermanentWriteError: Constraint violation
        """
        with self._translate_errors(), self._lock:
            with self._conn:
                cursor = self._conn.execute(sql, params)
                return cursor.rowcount

    def query(self, sql: str, params: Sequence[Any] = ()) -> List[sqlite3.Row]:
        """Run a read statement and return every row."""
        with self._translate_errors(), self._lock:
            return self._conn.execute(sql, params).fetchall()

    def query_one(self, sql: str, params: Sequence[Any] = ()) -> sqlite3.Row | None:
        rows = self.query(sql, params)
        return rows[0] if rows else None

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        """Hold the lock for several statements committed together."""
        with self._translate_errors(), self._lock:
            with self._conn:
                yield self._conn

    @contextmanager
    def _translate_errors(self) -> Iterator[None]:
        try:
            yield
        except sqlite3.IntegrityError as exc:
            raise PermanentWriteError(
                f"Constraint violation: {exc}", details={"database": self._path}
            ) from exc
        except sqlite3.OperationalError as exc:
            logger.warning(
                "Database operation failed",
                extra={"database": self._path, "error": str(exc)},
            )
            raise TransientIOError(
                f"Database unavailable: {exc}", details={"database": self._path}
            ) from exc


def open_database(database_path: str) -> Database:
    """Open the database named by ``Settings.database_path``."""
    return Database(database_path)


__all__ = ["Database", "SCHEMA", "open_database"]
