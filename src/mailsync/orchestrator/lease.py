"""Per-connection leases.

A lease is an exclusive file lock held for the duration of one connection's
pass. Because it lives on the filesystem it also excludes workers in other
processes pointed at the same lease directory.
"""

from __future__ import annotations

import asyncio
import hashlib
import logging
import time
from contextlib import asynccontextmanager
from pathlib import Path
from typing import AsyncIterator

from filelock import FileLock, Timeout

from mailsync.errors import ConfigurationError, MailSyncError


logger = logging.getLogger(__name__)


class LeaseHeldError(MailSyncError):
    """Another worker is already synchronizing the connection."""

    code = "LEASE_HELD"
    default_message = "Connection is being synchronized elsewhere"


class ConnectionLease:
    """Grants at most one holder per connection id."""

    def __init__(
        self,
        lease_dir: Path,
        *,
        wait_seconds: float = 0.0,
        poll_interval: float = 0.1,
    ) -> None:
        self._lease_dir = Path(lease_dir)
        try:
            self._lease_dir.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            raise ConfigurationError(f"Cannot create lease directory at {lease_dir}: {exc}") from exc
        self._wait_seconds = wait_seconds
        self._poll_interval = poll_interval

    def _lock_path(self, connection_id: str) -> Path:
        safe_id = "".join(ch if ch.isalnum() or ch in "-_." else "_" for ch in connection_id)
        digest = hashlib.sha256(connection_id.encode("utf-8")).hexdigest()[:16]
        return self._lease_dir / f"{safe_id}-{digest}.lock"

    @asynccontextmanager
    async def hold(self, connection_id: str) -> AsyncIterator[None]:
        """Hold the connection's lease for the body of the ``async with``.

        Polls without blocking the event loop for up to ``wait_seconds``.

        Raises:
            LeaseHeldError: If the lease is still held when the wait elapses
        """
        lock = FileLock(str(self._lock_path(connection_id)))
        deadline = time.monotonic() + self._wait_seconds
        while True:
            try:
                lock.acquire(timeout=0)
                break
            except Timeout:
                if time.monotonic() >= deadline:
                    raise LeaseHeldError(details={"connection_id": connection_id}) from None
                await asyncio.sleep(self._poll_interval)

        logger.debug("Lease acquired", extra={"connection_id": connection_id})
        try:
            yield
        finally:
            lock.release()
            logger.debug("Lease released", extra={"connection_id": connection_id})


__all__ = ["ConnectionLease", "LeaseHeldError"]
