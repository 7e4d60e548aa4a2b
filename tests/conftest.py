"""Shared fixtures and a fake mail server for mailsync tests."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from datetime import datetime, timezone
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from pathlib import Path
from typing import AsyncIterator, Dict, List, Optional, Sequence, Tuple
from unittest.mock import AsyncMock

import pytest

from mailsync.configuration.credentials import CredentialResolver, Credentials
from mailsync.configuration.settings import Settings
from mailsync.errors import MailboxNotFoundError
from mailsync.ingestion.imap.session import MailboxInfo, RawMessage
from mailsync.orchestrator.engine import SyncEngine
from mailsync.storage.connections import Connection, ConnectionSource
from mailsync.storage.content_store import FilesystemContentStore
from mailsync.storage.cursor import CursorTracker
from mailsync.storage.database import Database
from mailsync.storage.metadata import MetadataPersister


SECRET_ENV = "MAILSYNC_TEST_SECRET"


# ============================================================================
# Message builders
# ============================================================================


def build_message(
    subject: str = "Hello",
    *,
    message_id: Optional[str] = None,
    sender: str = "Alice Example <alice@example.com>",
    to: str = "bob@example.com",
    body: str = "Hello Bob,\n\nThis is a test message.",
    html: Optional[str] = None,
    in_reply_to: Optional[str] = None,
    references: Optional[Sequence[str]] = None,
    date: str = "Mon, 06 Jan 2025 10:30:00 +0000",
) -> bytes:
    """Build raw RFC822 bytes with ``email.mime``."""
    if html is not None:
        msg = MIMEMultipart("alternative")
        msg.attach(MIMEText(body, "plain", "utf-8"))
        msg.attach(MIMEText(html, "html", "utf-8"))
    else:
        msg = MIMEText(body, "plain", "utf-8")
    msg["Subject"] = subject
    msg["From"] = sender
    msg["To"] = to
    msg["Date"] = date
    if message_id:
        msg["Message-ID"] = f"<{message_id}>"
    if in_reply_to:
        msg["In-Reply-To"] = f"<{in_reply_to}>"
    if references:
        msg["References"] = " ".join(f"<{ref}>" for ref in references)
    return msg.as_bytes()


# ============================================================================
# Fake mail server
# ============================================================================


@dataclass
class FakeMailbox:
    """Server-side state of one mailbox."""

    epoch: int = 1
    messages: Dict[int, bytes] = field(default_factory=dict)
    flags: Dict[int, Tuple[str, ...]] = field(default_factory=dict)
    global_ids: Dict[int, str] = field(default_factory=dict)
    uid_next: Optional[int] = None

    def add(
        self,
        uid: int,
        body: Optional[bytes] = None,
        *,
        flags: Tuple[str, ...] = (),
        global_id: Optional[str] = None,
    ) -> None:
        self.messages[uid] = body if body is not None else build_message(
            f"Message {uid}", message_id=f"msg-{uid}@example.com"
        )
        self.flags[uid] = flags
        if global_id:
            self.global_ids[uid] = global_id

    def fill(self, start: int, end: int) -> None:
        for uid in range(start, end + 1):
            self.add(uid)

    @property
    def max_sequence(self) -> int:
        if self.uid_next is not None:
            return self.uid_next - 1
        return max(self.messages, default=0)


class FakeSession:
    """In-memory :class:`MailSession` over a :class:`FakeMailbox`."""

    def __init__(self, server: "FakeMailServer", connection_id: str) -> None:
        self._server = server
        self.connection_id = connection_id
        self.mailbox = server.mailboxes.setdefault(connection_id, FakeMailbox())
        self.closed = False
        self.selected: Optional[MailboxInfo] = None

    async def select_mailbox(self, name: str) -> MailboxInfo:
        if self._server.gate is not None:
            await self._server.gate.wait()
        if name in self._server.missing_mailboxes:
            raise MailboxNotFoundError(f"Cannot select mailbox: {name}")
        self.selected = MailboxInfo(
            name=name,
            epoch=self.mailbox.epoch,
            max_sequence=self.mailbox.max_sequence,
            exists=len(self.mailbox.messages),
            max_from_uidnext=self.mailbox.uid_next is not None,
        )
        return self.selected

    async def fetch_range(self, start: int, end: int) -> AsyncIterator[RawMessage]:
        self._server.fetched_ranges.append((self.connection_id, start, end))
        for uid in sorted(self.mailbox.messages):
            if not start <= uid <= end:
                continue
            failure = self._server.fetch_failures.get((self.connection_id, uid))
            if failure:
                raise failure.pop(0) if isinstance(failure, list) else failure
            yield RawMessage(
                sequence_number=uid,
                epoch=self.mailbox.epoch,
                body=self.mailbox.messages[uid],
                flags=self.mailbox.flags.get(uid, ()),
                internal_date=datetime(2025, 1, 6, 10, 30, tzinfo=timezone.utc),
                size=len(self.mailbox.messages[uid]),
                global_id=self.mailbox.global_ids.get(uid),
            )
            if self._server.fetch_gate is not None:
                await self._server.fetch_gate.wait()

    async def close(self) -> None:
        self.closed = True
        self._server.active_sessions -= 1


class FakeMailServer:
    """Session factory that hands out :class:`FakeSession` objects.

    ``connect_failures`` maps a connection id to exceptions raised, in order,
    by successive connect attempts. ``gate`` holds mailbox selection and
    ``fetch_gate`` holds the stream after each message until they are set.
    """

    def __init__(self) -> None:
        self.mailboxes: Dict[str, FakeMailbox] = {}
        self.connect_failures: Dict[str, List[BaseException]] = {}
        self.fetch_failures: Dict[Tuple[str, int], object] = {}
        self.missing_mailboxes: set = set()
        self.sessions: List[FakeSession] = []
        self.fetched_ranges: List[Tuple[str, int, int]] = []
        self.connect_attempts: Dict[str, int] = {}
        self.gate: Optional[asyncio.Event] = None
        self.fetch_gate: Optional[asyncio.Event] = None
        self.active_sessions = 0
        self.max_active_sessions = 0

    def mailbox(self, connection_id: str, *, epoch: int = 1) -> FakeMailbox:
        box = self.mailboxes.setdefault(connection_id, FakeMailbox(epoch=epoch))
        box.epoch = epoch
        return box

    def ranges_for(self, connection_id: str) -> List[Tuple[int, int]]:
        return [(s, e) for cid, s, e in self.fetched_ranges if cid == connection_id]

    async def __call__(
        self,
        connection: Connection,
        credentials: Credentials,
        *,
        timeout: float,
        fetch_chunk_size: int,
    ) -> FakeSession:
        self.connect_attempts[connection.id] = self.connect_attempts.get(connection.id, 0) + 1
        failures = self.connect_failures.get(connection.id)
        if failures:
            raise failures.pop(0)
        session = FakeSession(self, connection.id)
        self.sessions.append(session)
        self.active_sessions += 1
        self.max_active_sessions = max(self.max_active_sessions, self.active_sessions)
        return session


@pytest.fixture
def make_message():
    return build_message


# ============================================================================
# Storage fixtures
# ============================================================================


@pytest.fixture
def database(tmp_path: Path) -> Database:
    db = Database(tmp_path / "mailsync.db")
    yield db
    db.close()


@pytest.fixture
def content_store(tmp_path: Path) -> FilesystemContentStore:
    return FilesystemContentStore(tmp_path / "content")


@pytest.fixture
def connection_source(database: Database) -> ConnectionSource:
    return ConnectionSource(database)


@pytest.fixture
def cursor_tracker(database: Database) -> CursorTracker:
    return CursorTracker(database)


@pytest.fixture
def persister(database: Database) -> MetadataPersister:
    return MetadataPersister(database)


@pytest.fixture
def add_connection(connection_source: ConnectionSource):
    """Save an enabled IMAP connection and return it."""

    def _add(connection_id: str = "conn-1", **overrides) -> Connection:
        values = {
            "id": connection_id,
            "owner_id": "owner-1",
            "host": "imap.example.com",
            "username": f"{connection_id}@example.com",
            "auth_ref": f"env:{SECRET_ENV}",
        }
        values.update(overrides)
        connection = Connection(**values)
        connection_source.save(connection)
        return connection

    return _add


# ============================================================================
# Engine fixtures
# ============================================================================


@pytest.fixture
def settings(tmp_path: Path) -> Settings:
    return Settings(
        database_url=f"sqlite:///{tmp_path / 'mailsync.db'}",
        content_store_url=str(tmp_path / "content"),
        lease_dir=tmp_path / "leases",
        batch_size=50,
        max_attempts=3,
        retry_base_delay_seconds=0.01,
        retry_max_delay_seconds=0.05,
    )


@pytest.fixture
def credential_resolver() -> CredentialResolver:
    return CredentialResolver(service_name="mailsync-test", environ={SECRET_ENV: "s3cret"})


@pytest.fixture
def mail_server() -> FakeMailServer:
    return FakeMailServer()


@pytest.fixture
def sleep() -> AsyncMock:
    return AsyncMock()


@pytest.fixture
def engine(
    settings: Settings,
    connection_source: ConnectionSource,
    cursor_tracker: CursorTracker,
    content_store: FilesystemContentStore,
    persister: MetadataPersister,
    credential_resolver: CredentialResolver,
    mail_server: FakeMailServer,
    sleep: AsyncMock,
) -> SyncEngine:
    return SyncEngine(
        settings=settings,
        connection_source=connection_source,
        cursor_tracker=cursor_tracker,
        content_store=content_store,
        persister=persister,
        credential_resolver=credential_resolver,
        session_factory=mail_server,
        sleep=sleep,
    )
