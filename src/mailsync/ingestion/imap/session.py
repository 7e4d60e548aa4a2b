"""IMAP session adapter.

Wraps :class:`imapclient.IMAPClient` behind the narrow :class:`MailSession`
capability the orchestrator depends on: select a mailbox, stream a UID range,
close. TLS is always enforced (implicit or STARTTLS) against the certifi CA
bundle. Each blocking client call runs on the default executor and is bounded
both by the socket timeout and by ``asyncio.wait_for``.

Failures are translated into the mailsync taxonomy:

* credentials rejected, TLS failure, unresolvable or refusing host
  -> :class:`MailConnectionError` (terminal for the pass)
* timeouts, resets, aborted connections -> :class:`TransientIOError`
"""

from __future__ import annotations

import asyncio
import functools
import logging
import socket
import ssl
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, AsyncIterator, Callable, Dict, List, Optional, Protocol, Sequence, Tuple

import certifi
from imapclient import IMAPClient
from imapclient.exceptions import IMAPClientAbortError, IMAPClientError, LoginError

from mailsync.configuration.credentials import AuthMechanism, Credentials
from mailsync.errors import (
    AuthenticationError,
    MailboxNotFoundError,
    MailConnectionError,
    MailSyncError,
    TransientIOError,
)
from mailsync.storage.connections import Connection, TlsMode


logger = logging.getLogger(__name__)

# Upper bound for one client call, as a multiple of the socket timeout.
CALL_TIMEOUT_FACTOR = 4

GMAIL_CAPABILITY = b"X-GM-EXT-1"
OBJECTID_CAPABILITY = b"OBJECTID"


# ---------------------------------------------------------------------------
# Session capability
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class MailboxInfo:
    """State reported by the server when a mailbox is selected."""

    name: str
    epoch: int
    max_sequence: int
    exists: int = 0
    max_from_uidnext: bool = True


@dataclass(frozen=True)
class RawMessage:
    """One fetched message, still undecoded."""

    sequence_number: int
    epoch: int
    body: bytes
    flags: Tuple[str, ...] = ()
    internal_date: Optional[datetime] = None
    size: int = 0
    global_id: Optional[str] = None
    thread_hint: Optional[str] = None

    @property
    def is_read(self) -> bool:
        return "\\Seen" in self.flags

    @property
    def is_starred(self) -> bool:
        return "\\Flagged" in self.flags


class MailSession(Protocol):
    """Authenticated session against one mail origin."""

    async def select_mailbox(self, name: str) -> MailboxInfo:
        ...

    def fetch_range(self, start: int, end: int) -> AsyncIterator[RawMessage]:
        ...

    async def close(self) -> None:
        ...


class SessionFactory(Protocol):
    """Opens an authenticated :class:`MailSession`."""

    async def __call__(
        self,
        connection: Connection,
        credentials: Credentials,
        *,
        timeout: float,
        fetch_chunk_size: int,
    ) -> MailSession:
        ...


# ---------------------------------------------------------------------------
# Error classification
# ---------------------------------------------------------------------------


def classify_error(exc: BaseException, operation: str) -> Optional[MailSyncError]:
    """Map a client or socket failure to the mailsync taxonomy.

    Returns:
        The translated error, or None when ``exc`` is not an I/O failure
    """
    if isinstance(exc, MailSyncError):
        return exc
    details = {"operation": operation, "error_type": type(exc).__name__}

    if isinstance(exc, LoginError) or "AUTHENTICATIONFAILED" in str(exc).upper():
        return AuthenticationError(f"Authentication rejected: {exc}", details=details)
    if isinstance(exc, IMAPClientAbortError):
        return TransientIOError(f"Connection aborted during {operation}: {exc}", details=details)
    if isinstance(exc, IMAPClientError):
        if operation == "select":
            return MailboxNotFoundError(f"Cannot select mailbox: {exc}", details=details)
        return MailConnectionError(f"Server refused {operation}: {exc}", details=details)
    if isinstance(exc, ssl.SSLError):
        return MailConnectionError(f"TLS failure during {operation}: {exc}", details=details)
    if isinstance(exc, socket.gaierror):
        return MailConnectionError(f"Cannot resolve host: {exc}", details=details)
    if isinstance(exc, ConnectionRefusedError):
        return MailConnectionError(f"Connection refused: {exc}", details=details)
    if isinstance(exc, (TimeoutError, asyncio.TimeoutError, socket.timeout)):
        return TransientIOError(f"Timed out during {operation}", details=details)
    if isinstance(exc, OSError):
        # resets, aborts, broken pipes
        return TransientIOError(f"Network failure during {operation}: {exc}", details=details)
    return None


def create_ssl_context() -> ssl.SSLContext:
    context = ssl.create_default_context()
    context.load_verify_locations(certifi.where())
    context.minimum_version = ssl.TLSVersion.TLSv1_2
    context.check_hostname = True
    context.verify_mode = ssl.CERT_REQUIRED
    return context


# ---------------------------------------------------------------------------
# IMAP implementation
# ---------------------------------------------------------------------------


@dataclass
class ImapSession:
    """:class:`MailSession` backed by an authenticated ``IMAPClient``."""

    client: Any
    connection_id: str
    timeout: float = 30.0
    fetch_chunk_size: int = 25
    capabilities: Tuple[bytes, ...] = ()

    _selected: Optional[MailboxInfo] = field(default=None, init=False)

    @classmethod
    async def connect(
        cls,
        connection: Connection,
        credentials: Credentials,
        *,
        timeout: float = 30.0,
        fetch_chunk_size: int = 25,
    ) -> "ImapSession":
        """Open a TLS session and authenticate.

        Raises:
            MailConnectionError: Network, TLS or authentication failure
            TransientIOError: Timed out or reset while connecting
        """
        client = await _call(
            functools.partial(_open_client, connection, credentials, timeout),
            timeout=timeout * CALL_TIMEOUT_FACTOR,
            operation="connect",
        )
        session = cls(
            client=client,
            connection_id=connection.id,
            timeout=timeout,
            fetch_chunk_size=fetch_chunk_size,
        )
        try:
            session.capabilities = tuple(await session._call(client.capabilities, operation="capability"))
        except BaseException:
            await session.close()
            raise
        logger.debug(
            "IMAP session opened",
            extra={"connection_id": connection.id, "host": connection.host},
        )
        return session

    async def select_mailbox(self, name: str) -> MailboxInfo:
        """Select ``name`` read-only and report its epoch and highest UID.

        Raises:
            MailboxNotFoundError: The mailbox does not exist
        """
        response = await self._call(
            functools.partial(self.client.select_folder, name, readonly=True),
            operation="select",
        )
        if b"UIDVALIDITY" not in response:
            raise MailConnectionError(
                "Server did not report UIDVALIDITY",
                details={"connection_id": self.connection_id, "mailbox": name},
            )

        uid_next = response.get(b"UIDNEXT")
        from_uidnext = uid_next is not None
        if from_uidnext:
            max_sequence = max(int(uid_next) - 1, 0)
        else:
            uids = await self._call(
                functools.partial(self.client.search, ["ALL"]),
                operation="search",
            )
            max_sequence = max(uids, default=0)

        self._selected = MailboxInfo(
            name=name,
            epoch=int(response[b"UIDVALIDITY"]),
            max_sequence=max_sequence,
            exists=int(response.get(b"EXISTS", 0)),
            max_from_uidnext=from_uidnext,
        )
        return self._selected

    async def fetch_range(self, start: int, end: int) -> AsyncIterator[RawMessage]:
        """Stream messages with UIDs in ``[start, end]``, ascending.

        Messages expunged between search and fetch are silently absent.
        """
        if self._selected is None:
            raise MailConnectionError("No mailbox selected", details={"connection_id": self.connection_id})
        if start > end:
            return

        found = await self._call(
            functools.partial(self.client.search, ["UID", f"{start}:{end}"]),
            operation="search",
        )
        uids = sorted(uid for uid in found if start <= uid <= end)
        items = self._fetch_items()

        for offset in range(0, len(uids), self.fetch_chunk_size):
            chunk = uids[offset : offset + self.fetch_chunk_size]
            response = await self._call(
                functools.partial(self.client.fetch, chunk, items),
                operation="fetch",
            )
            for uid in chunk:
                data = response.get(uid)
                if data is None:
                    continue
                yield self._to_raw_message(uid, data)

    async def close(self) -> None:
        """Log out; failures are logged and never raised."""
        client, self.client = self.client, None
        if client is None:
            return
        loop = asyncio.get_running_loop()
        try:
            await asyncio.wait_for(loop.run_in_executor(None, client.logout), timeout=self.timeout)
        except (IMAPClientError, OSError, asyncio.TimeoutError) as exc:
            logger.warning(
                "Error during logout",
                extra={"connection_id": self.connection_id, "error": str(exc)},
            )
            _shutdown_quietly(client)

    def _fetch_items(self) -> List[bytes]:
        items = [b"FLAGS", b"INTERNALDATE", b"RFC822.SIZE", b"BODY.PEEK[]"]
        if GMAIL_CAPABILITY in self.capabilities:
            items += [b"X-GM-MSGID", b"X-GM-THRID"]
        elif OBJECTID_CAPABILITY in self.capabilities:
            items += [b"EMAILID", b"THREADID"]
        return items

    def _to_raw_message(self, uid: int, data: Dict[bytes, Any]) -> RawMessage:
        if self._selected is None:
            raise MailConnectionError("No mailbox selected", details={"connection_id": self.connection_id})
        internal_date = data.get(b"INTERNALDATE")
        if isinstance(internal_date, datetime) and internal_date.tzinfo is None:
            internal_date = internal_date.replace(tzinfo=timezone.utc)
        body = data.get(b"BODY[]") or b""
        return RawMessage(
            sequence_number=uid,
            epoch=self._selected.epoch,
            body=body,
            flags=tuple(_as_text(flag) for flag in data.get(b"FLAGS", ())),
            internal_date=internal_date,
            size=int(data.get(b"RFC822.SIZE", len(body))),
            global_id=_object_id(data.get(b"X-GM-MSGID", data.get(b"EMAILID"))),
            thread_hint=_object_id(data.get(b"X-GM-THRID", data.get(b"THREADID"))),
        )

    async def _call(self, func: Callable[..., Any], *, operation: str) -> Any:
        if self.client is None:
            raise MailConnectionError("Session is closed", details={"connection_id": self.connection_id})
        return await _call(func, timeout=self.timeout * CALL_TIMEOUT_FACTOR, operation=operation)


async def connect_imap(
    connection: Connection,
    credentials: Credentials,
    *,
    timeout: float,
    fetch_chunk_size: int,
) -> ImapSession:
    """Default :class:`SessionFactory`."""
    return await ImapSession.connect(
        connection, credentials, timeout=timeout, fetch_chunk_size=fetch_chunk_size
    )


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


async def _call(func: Callable[[], Any], *, timeout: float, operation: str) -> Any:
    loop = asyncio.get_running_loop()
    try:
        return await asyncio.wait_for(loop.run_in_executor(None, func), timeout=timeout)
    except Exception as exc:
        error = classify_error(exc, operation)
        if error is None or error is exc:
            raise
        raise error from exc


def _open_client(connection: Connection, credentials: Credentials, timeout: float) -> IMAPClient:
    ssl_context = create_ssl_context()
    if connection.tls_mode is TlsMode.IMPLICIT:
        client = IMAPClient(
            host=connection.host,
            port=connection.port,
            ssl=True,
            ssl_context=ssl_context,
            timeout=timeout,
            use_uid=True,
        )
    else:
        client = IMAPClient(
            host=connection.host,
            port=connection.port,
            ssl=False,
            timeout=timeout,
            use_uid=True,
        )
    client.normalise_times = False
    try:
        if connection.tls_mode is TlsMode.STARTTLS:
            client.starttls(ssl_context=ssl_context)
        if credentials.mechanism is AuthMechanism.OAUTH2:
            client.oauth2_login(credentials.username, credentials.secret)
        else:
            client.login(credentials.username, credentials.secret)
    except BaseException:
        _shutdown_quietly(client)
        raise
    return client


def _shutdown_quietly(client: Any) -> None:
    try:
        client.shutdown()
    except (IMAPClientError, OSError) as exc:
        logger.debug("Socket shutdown failed", extra={"error": str(exc)})


def _as_text(value: Any) -> str:
    return value.decode("utf-8", "replace") if isinstance(value, bytes) else str(value)


def _object_id(value: Any) -> Optional[str]:
    if value is None:
        return None
    if isinstance(value, (tuple, list)):
        if not value:
            return None
        value = value[0]
    text = _as_text(value).strip("()").strip()
    return text or None


__all__ = [
    "CALL_TIMEOUT_FACTOR",
    "ImapSession",
    "MailSession",
    "MailboxInfo",
    "RawMessage",
    "SessionFactory",
    "classify_error",
    "connect_imap",
    "create_ssl_context",
]
