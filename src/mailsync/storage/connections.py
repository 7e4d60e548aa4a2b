"""Connection source: mail-account records eligible for synchronization.

Connection rows are owned by the account-management flows. The sync engine
only reads them; :meth:`ConnectionSource.save` exists for provisioning tools
and fixtures.
"""

from __future__ import annotations

import sqlite3
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, Field, field_validator

from mailsync.configuration.credentials import AuthMechanism

from .database import Database


IMAP_PROVIDER = "imap"


class TlsMode(str, Enum):
    """How the session secures the transport."""

    IMPLICIT = "implicit"
    STARTTLS = "starttls"


class Connection(BaseModel):
    """One mail account the engine synchronizes."""

    id: str = Field(..., min_length=1)
    owner_id: str = Field(..., min_length=1)
    provider_kind: str = Field(default=IMAP_PROVIDER)
    host: str = Field(..., min_length=1)
    port: int = Field(default=993, ge=1, le=65535)
    tls_mode: TlsMode = TlsMode.IMPLICIT
    username: str = Field(..., min_length=1)
    auth_ref: str = Field(..., min_length=1, description="env:NAME or keyring:NAME")
    auth_mechanism: AuthMechanism = AuthMechanism.PASSWORD
    mailbox: str = Field(default="INBOX", min_length=1)
    enabled: bool = True

    @field_validator("host")
    def _normalize_host(cls, value: str) -> str:
        return value.strip().lower()


class ConnectionSource:
    """Reads enabled connection records from the relational store.

    Rows without a mailbox take ``default_mailbox``.
    """

    def __init__(self, database: Database, *, default_mailbox: str = "INBOX") -> None:
        self._db = database
        self._default_mailbox = default_mailbox

    def list_enabled_connections(self) -> List[Connection]:
        """Return every enabled IMAP connection ordered by id."""
        rows = self._db.query(
            "SELECT * FROM mail_connections "
            "WHERE provider_kind = ? AND enabled = 1 ORDER BY id",
            (IMAP_PROVIDER,),
        )
        return [_row_to_connection(row, self._default_mailbox) for row in rows]

    def get(self, connection_id: str) -> Optional[Connection]:
        row = self._db.query_one(
            "SELECT * FROM mail_connections WHERE id = ?", (connection_id,)
        )
        return _row_to_connection(row, self._default_mailbox) if row else None

    def save(self, connection: Connection) -> None:
        """Insert or update a connection record."""
        self._db.execute(
            """
            INSERT INTO mail_connections(
                id, owner_id, provider_kind, host, port, tls_mode,
                username, auth_ref, auth_mechanism, mailbox, enabled
            )
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(id) DO UPDATE SET
                owner_id=excluded.owner_id,
                provider_kind=excluded.provider_kind,
                host=excluded.host,
                port=excluded.port,
                tls_mode=excluded.tls_mode,
                username=excluded.username,
                auth_ref=excluded.auth_ref,
                auth_mechanism=excluded.auth_mechanism,
                mailbox=excluded.mailbox,
                enabled=excluded.enabled
            """,
            (
                connection.id,
                connection.owner_id,
                connection.provider_kind,
                connection.host,
                connection.port,
                connection.tls_mode.value,
                connection.username,
                connection.auth_ref,
                connection.auth_mechanism.value,
                connection.mailbox,
                int(connection.enabled),
            ),
        )


def _row_to_connection(row: sqlite3.Row, default_mailbox: str) -> Connection:
    return Connection(
        id=row["id"],
        owner_id=row["owner_id"],
        provider_kind=row["provider_kind"],
        host=row["host"],
        port=row["port"],
        tls_mode=TlsMode(row["tls_mode"]),
        username=row["username"],
        auth_ref=row["auth_ref"],
        auth_mechanism=AuthMechanism(row["auth_mechanism"]),
        mailbox=row["mailbox"] or default_mailbox,
        enabled=bool(row["enabled"]),
    )


__all__ = ["Connection", "ConnectionSource", "IMAP_PROVIDER", "TlsMode"]
