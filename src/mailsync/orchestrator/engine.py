"""Sync orchestrator.

Drives one synchronization pass over every enabled connection:

1. enabled connections are turned into tagged :class:`SyncJob` items on a
   bounded priority queue (incremental before initial)
2. a fixed pool of workers drains the queue, each holding the connection's
   lease while it runs
3. per connection: open a session, select the mailbox, plan the resume range,
   then fetch and commit batches, advancing the cursor after each one

A failure is contained to the connection it happened on and recorded in the
:class:`SyncReport`; transient failures are retried in place with backoff.
"""

from __future__ import annotations

import asyncio
import functools
import logging
import time
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Optional

from mailsync.configuration.credentials import CredentialResolver
from mailsync.configuration.settings import Settings
from mailsync.errors import BatchFailedError, ConfigurationError, MailSyncError
from mailsync.ingestion.imap.session import SessionFactory, connect_imap
from mailsync.storage.connections import Connection, ConnectionSource
from mailsync.storage.content_store import ContentStore, open_content_store
from mailsync.storage.cursor import CursorTracker
from mailsync.storage.database import Database, open_database
from mailsync.storage.metadata import MetadataPersister

from .lease import ConnectionLease, LeaseHeldError
from .models import JobKind, SyncJob
from .pipeline import MessagePipeline
from .queue import SyncJobQueue
from .report import ConnectionReport, ConnectionStatus, SyncReport
from .retry_policy import RetryBudget, RetryPolicy


logger = logging.getLogger(__name__)


class SyncEngine:
    """Coordinates sync passes across all enabled connections."""

    def __init__(
        self,
        *,
        settings: Settings,
        connection_source: ConnectionSource,
        cursor_tracker: CursorTracker,
        content_store: ContentStore,
        persister: MetadataPersister,
        credential_resolver: CredentialResolver,
        session_factory: SessionFactory = connect_imap,
        lease: Optional[ConnectionLease] = None,
        retry_policy: Optional[RetryPolicy] = None,
        sleep: Callable[[float], Any] = asyncio.sleep,
        database: Optional[Database] = None,
    ) -> None:
        self._settings = settings
        self._connections = connection_source
        self._cursors = cursor_tracker
        self._store = content_store
        self._persister = persister
        self._credentials = credential_resolver
        self._session_factory = session_factory
        self._lease = lease or ConnectionLease(
            settings.lease_dir, wait_seconds=settings.lease_wait_seconds
        )
        self._retry_policy = retry_policy or RetryPolicy.from_settings(settings)
        self._sleep = sleep
        self._database = database
        self._stop_requested = asyncio.Event()

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        *,
        session_factory: SessionFactory = connect_imap,
    ) -> "SyncEngine":
        """Wire every collaborator from validated settings.

        Raises:
            ConfigurationError: If the database, content store or lease directory
                cannot be opened
        """
        database = open_database(settings.database_path)
        try:
            return cls(
                settings=settings,
                connection_source=ConnectionSource(database, default_mailbox=settings.mailbox),
                cursor_tracker=CursorTracker(database),
                content_store=open_content_store(settings),
                persister=MetadataPersister(database),
                credential_resolver=CredentialResolver(service_name=settings.keyring_service),
                session_factory=session_factory,
                database=database,
            )
        except ConfigurationError:
            database.close()
            raise

    def close(self) -> None:
        if self._database is not None:
            self._database.close()

    def request_stop(self) -> None:
        """Ask the running pass to stop after the batches in flight."""
        logger.info("Stop requested")
        self._stop_requested.set()

    @property
    def stop_requested(self) -> bool:
        return self._stop_requested.is_set()

    # ------------------------------------------------------------------
    # Pass orchestration
    # ------------------------------------------------------------------

    async def run_sync_pass(self) -> SyncReport:
        """Synchronize every enabled connection once.

        Returns:
            Per-connection outcomes plus pass timing
        """
        self._stop_requested.clear()
        report = SyncReport(started_at=datetime.now(timezone.utc))
        started = time.perf_counter()

        connections = await self._run_blocking(self._connections.list_enabled_connections)
        by_id = {connection.id: connection for connection in connections}
        results: Dict[str, ConnectionReport] = {}

        worker_count = min(self._settings.worker_concurrency, max(len(connections), 1))
        queue = SyncJobQueue(maxsize=worker_count * 2)
        workers = [
            asyncio.create_task(self._worker(queue, by_id, results))
            for _ in range(worker_count)
        ]
        try:
            for connection in connections:
                job = await self._plan_job(connection, results)
                if job is not None:
                    await queue.put(job)
            await queue.close(worker_count)
            await asyncio.gather(*workers)
        finally:
            for worker in workers:
                if not worker.done():
                    worker.cancel()
            await asyncio.gather(*workers, return_exceptions=True)

        report.connections = [results[c.id] for c in connections if c.id in results]
        report.finished_at = datetime.now(timezone.utc)
        report.duration_seconds = time.perf_counter() - started
        logger.info(
            "Sync pass finished",
            extra={
                "connections": len(report.connections),
                "duration_seconds": round(report.duration_seconds, 3),
                **report.totals(),
            },
        )
        return report

    async def _plan_job(
        self, connection: Connection, results: Dict[str, ConnectionReport]
    ) -> Optional[SyncJob]:
        try:
            cursor = await self._run_blocking(
                self._cursors.get_cursor, connection.id, connection.mailbox
            )
        except MailSyncError as exc:
            logger.error(
                "Cannot read cursor, skipping connection this pass",
                extra={"connection_id": connection.id, **exc.to_dict()},
            )
            results[connection.id] = ConnectionReport(
                connection_id=connection.id,
                status=ConnectionStatus.FAILED,
                error=exc.message,
                error_code=exc.code,
            )
            return None
        kind = JobKind.INITIAL if cursor is None else JobKind.INCREMENTAL
        return SyncJob.for_connection(connection.id, kind)

    async def _worker(
        self,
        queue: SyncJobQueue,
        connections: Dict[str, Connection],
        results: Dict[str, ConnectionReport],
    ) -> None:
        while True:
            job = await queue.get()
            if job is None:
                return
            if self._stop_requested.is_set():
                results[job.connection_id] = ConnectionReport(
                    connection_id=job.connection_id,
                    kind=job.kind,
                    status=ConnectionStatus.CANCELLED,
                )
                continue
            results[job.connection_id] = await self.sync_connection(
                connections[job.connection_id], kind=job.kind
            )

    # ------------------------------------------------------------------
    # Per-connection sync
    # ------------------------------------------------------------------

    async def sync_connection(
        self, connection: Connection, *, kind: Optional[JobKind] = None
    ) -> ConnectionReport:
        """Synchronize one connection under its lease.

        Never raises for sync failures; they are recorded on the report.
        """
        report = ConnectionReport(connection_id=connection.id, kind=kind)
        started = time.perf_counter()
        try:
            async with self._lease.hold(connection.id):
                await self._sync_with_retry(connection, report)
        except LeaseHeldError:
            report.status = ConnectionStatus.SKIPPED
            logger.info(
                "Connection already being synchronized, skipping",
                extra={"connection_id": connection.id},
            )
        except MailSyncError as exc:
            cause = exc.cause if isinstance(exc, BatchFailedError) else exc
            report.status = ConnectionStatus.FAILED
            report.error = str(cause)
            report.error_code = getattr(cause, "code", type(cause).__name__)
            logger.error(
                "Connection sync failed",
                extra={"connection_id": connection.id, "error": str(cause), "attempts": report.attempts},
            )
        except Exception as exc:  # noqa: BLE001 - one connection must not abort the pass
            report.status = ConnectionStatus.FAILED
            report.error = str(exc)
            report.error_code = type(exc).__name__
            logger.exception(
                "Connection sync failed unexpectedly",
                extra={"connection_id": connection.id},
            )
        finally:
            report.duration_seconds = time.perf_counter() - started
        return report

    async def _sync_with_retry(self, connection: Connection, report: ConnectionReport) -> None:
        budget = RetryBudget(connection_id=connection.id)
        while True:
            report.attempts += 1
            try:
                completed = await self._sync_once(connection, report)
            except Exception as exc:
                failure_type = budget.record_failure(exc)
                if self._stop_requested.is_set() or not budget.can_retry(self._retry_policy):
                    if isinstance(exc, BatchFailedError) and exc.tally is not None:
                        report.add(exc.tally)
                    raise
                delay = budget.next_delay(self._retry_policy)
                logger.warning(
                    "Transient failure, retrying connection",
                    extra={
                        "connection_id": connection.id,
                        "attempt": report.attempts,
                        "failure_type": failure_type.value,
                        "delay_seconds": round(delay, 2),
                        "error": str(exc),
                    },
                )
                await self._sleep(delay)
                continue
            report.status = ConnectionStatus.SUCCEEDED if completed else ConnectionStatus.CANCELLED
            return

    async def _sync_once(self, connection: Connection, report: ConnectionReport) -> bool:
        """One attempt at synchronizing ``connection``.

        Returns:
            False if a stop was requested before every batch ran
        """
        credentials = await self._run_blocking(
            functools.partial(
                self._credentials.resolve,
                connection.auth_ref,
                username=connection.username,
                mechanism=connection.auth_mechanism,
            )
        )
        session = await self._session_factory(
            connection,
            credentials,
            timeout=self._settings.network_timeout_seconds,
            fetch_chunk_size=self._settings.fetch_chunk_size,
        )
        try:
            info = await session.select_mailbox(connection.mailbox)
            plan = await self._run_blocking(
                functools.partial(
                    self._cursors.plan_resume,
                    server_max_exact=info.max_from_uidnext,
                ),
                connection.id,
                info.epoch,
                info.max_sequence,
                connection.mailbox,
            )
            report.full_resync = report.full_resync or plan.full_resync
            report.mailbox_epoch = plan.mailbox_epoch
            report.cursor_sequence = plan.start - 1
            logger.debug(
                "Resume plan",
                extra={
                    "connection_id": connection.id,
                    "epoch": plan.mailbox_epoch,
                    "start": plan.start,
                    "end": plan.end,
                    "full_resync": plan.full_resync,
                },
            )

            pipeline = MessagePipeline(
                connection,
                content_store=self._store,
                persister=self._persister,
                write_policy=self._retry_policy,
                concurrency=self._settings.pipeline_concurrency,
                verify_writes=self._settings.verify_content_writes,
                sleep=self._sleep,
            )
            batch_start = plan.start
            while batch_start <= plan.end:
                if self._stop_requested.is_set():
                    return False
                batch_end = min(batch_start + self._settings.batch_size - 1, plan.end)
                tally = await pipeline.run_batch(session.fetch_range(batch_start, batch_end))
                await self._run_blocking(
                    self._cursors.advance_cursor,
                    connection.id,
                    batch_end,
                    plan.mailbox_epoch,
                    connection.mailbox,
                )
                report.add(tally)
                report.cursor_sequence = batch_end
                batch_start = batch_end + 1
            return True
        finally:
            await session.close()

    async def _run_blocking(self, func: Callable[..., Any], *args: Any) -> Any:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, functools.partial(func, *args))


__all__ = ["SyncEngine"]
