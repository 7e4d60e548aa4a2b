"""Per-connection message pipeline: decode, store content, persist metadata.

Messages of one batch flow through a bounded number of concurrent workers so
decoding (on executor threads) overlaps with fetching. Per-message problems
that can never succeed (undecodable message, rejected metadata row) are
recorded as skips. Anything else fails the whole batch, and the caller must
not advance the cursor past it.
"""

from __future__ import annotations

import asyncio
import functools
import json
import logging
from typing import Any, AsyncIterator, Callable, List, Optional, Tuple

from mailsync.errors import (
    BatchFailedError,
    ConsistencyError,
    DecodeError,
    MailSyncError,
    PermanentWriteError,
    TransientIOError,
)
from mailsync.ingestion.imap.decoder import DecodedMessage, decode, snippet
from mailsync.ingestion.imap.session import RawMessage
from mailsync.storage import keys
from mailsync.storage.connections import Connection
from mailsync.storage.content_store import ContentStore
from mailsync.storage.metadata import MessageMetadata, MetadataPersister

from .report import BatchTally
from .retry_policy import RetryPolicy


logger = logging.getLogger(__name__)

SleepFn = Callable[[float], Any]


class MessagePipeline:
    """Makes one batch of fetched messages durable."""

    def __init__(
        self,
        connection: Connection,
        *,
        content_store: ContentStore,
        persister: MetadataPersister,
        write_policy: RetryPolicy,
        concurrency: int = 4,
        verify_writes: bool = True,
        sleep: SleepFn = asyncio.sleep,
    ) -> None:
        self._connection = connection
        self._store = content_store
        self._persister = persister
        self._write_policy = write_policy
        self._concurrency = concurrency
        self._verify_writes = verify_writes
        self._sleep = sleep

    async def run_batch(self, messages: AsyncIterator[RawMessage]) -> BatchTally:
        """Consume ``messages`` and make each one durable.

        Returns:
            Tally of fetched, stored and skipped messages

        Raises:
            BatchFailedError: If the stream failed or a message could not be
                stored; in-flight messages are allowed to finish first
        """
        tally = BatchTally()
        slots = asyncio.Semaphore(self._concurrency)
        tasks: List[asyncio.Task] = []
        abort = asyncio.Event()
        stream_error: Optional[BaseException] = None
        superseded: List[str] = []

        try:
            async for raw in messages:
                await slots.acquire()
                if abort.is_set():
                    slots.release()
                    break
                tally.fetched += 1
                tasks.append(asyncio.create_task(self._guarded(raw, tally, superseded, slots, abort)))
        except asyncio.CancelledError:
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
            raise
        except Exception as exc:
            stream_error = exc
        finally:
            aclose = getattr(messages, "aclose", None)
            if aclose is not None:
                await aclose()

        results = await asyncio.gather(*tasks, return_exceptions=True)
        errors = [r for r in results if isinstance(r, BaseException)]
        if stream_error is not None:
            errors.insert(0, stream_error)
        if errors:
            raise BatchFailedError(
                errors[0],
                tally=tally,
                details={"connection_id": self._connection.id},
            )
        for key in superseded:
            await self._delete_superseded(key)
        return tally

    async def _guarded(
        self,
        raw: RawMessage,
        tally: BatchTally,
        superseded: List[str],
        slots: asyncio.Semaphore,
        abort: asyncio.Event,
    ) -> None:
        try:
            await self._process(raw, tally, superseded)
        except Exception:
            tally.failed += 1
            abort.set()
            raise
        finally:
            slots.release()

    async def _process(self, raw: RawMessage, tally: BatchTally, superseded: List[str]) -> None:
        loop = asyncio.get_running_loop()
        log_context = {
            "connection_id": self._connection.id,
            "sequence_number": raw.sequence_number,
            "epoch": raw.epoch,
        }

        try:
            decoded = await loop.run_in_executor(None, decode, raw.body)
        except DecodeError as exc:
            logger.warning(
                "Skipping undecodable message",
                extra={**log_context, "error": str(exc)},
            )
            tally.record_skip(raw.sequence_number)
            return

        metadata, blob = self._build_records(raw, decoded)
        await self._with_retry(self._store.put, metadata.content_store_key, blob)
        if self._verify_writes:
            stored = await self._with_retry(self._store.exists, metadata.content_store_key)
            if not stored:
                raise ConsistencyError(
                    "Content missing right after write",
                    details={**log_context, "content_key": metadata.content_store_key},
                )

        try:
            result = await self._with_retry(self._persister.upsert, metadata)
        except PermanentWriteError as exc:
            logger.error(
                "Metadata rejected, skipping message",
                extra={**log_context, "error": str(exc)},
            )
            tally.record_skip(raw.sequence_number)
            return
        tally.stored += 1

        if result.previous_content_key:
            superseded.append(result.previous_content_key)

    async def _delete_superseded(self, key: str) -> None:
        """Delete an object no row points at any more; failures only warn."""
        loop = asyncio.get_running_loop()
        try:
            referenced = await loop.run_in_executor(
                None, self._persister.is_referenced, self._connection.id, key
            )
            if not referenced:
                await loop.run_in_executor(None, self._store.delete, key)
        except MailSyncError as exc:
            logger.warning(
                "Could not delete superseded content",
                extra={"connection_id": self._connection.id, "content_key": key, "error": str(exc)},
            )

    async def _with_retry(self, func: Callable[..., Any], *args: Any) -> Any:
        """Run a blocking store call, retrying transient failures."""
        loop = asyncio.get_running_loop()
        attempt = 0
        while True:
            try:
                return await loop.run_in_executor(None, functools.partial(func, *args))
            except TransientIOError as exc:
                attempt += 1
                if attempt >= self._write_policy.max_attempts:
                    raise
                delay = self._write_policy.calculate_delay(attempt - 1)
                logger.warning(
                    "Store write failed, retrying",
                    extra={
                        "connection_id": self._connection.id,
                        "attempt": attempt,
                        "delay_seconds": round(delay, 2),
                        "error": str(exc),
                    },
                )
                await self._sleep(delay)

    def _build_records(self, raw: RawMessage, decoded: DecodedMessage) -> Tuple[MessageMetadata, bytes]:
        envelope = decoded.envelope
        connection = self._connection
        key = keys.message_key(raw.epoch, raw.sequence_number, raw.global_id)
        thread = keys.thread_id(
            key,
            message_id=envelope.message_id,
            in_reply_to=envelope.in_reply_to,
            references=envelope.references,
            thread_hint=raw.thread_hint,
        )
        store_key = keys.content_key(connection.id, thread, key)
        record_id = f"{connection.id}:{key}"
        preview = snippet(decoded)

        metadata = MessageMetadata(
            id=record_id,
            connection_id=connection.id,
            sequence_number=raw.sequence_number,
            mailbox_epoch=raw.epoch,
            message_key=key,
            thread_id=thread,
            protocol_message_id=envelope.message_id
            or keys.fallback_message_id(key, connection.id, connection.host),
            in_reply_to=envelope.in_reply_to,
            references=envelope.references,
            subject=envelope.subject,
            sender=envelope.sender.formatted() if envelope.sender else None,
            recipients=[a.formatted() for a in envelope.to],
            cc=[a.formatted() for a in envelope.cc],
            bcc=[a.formatted() for a in envelope.bcc],
            reply_to=[a.formatted() for a in envelope.reply_to],
            snippet=preview,
            content_store_key=store_key,
            received_at=raw.internal_date or envelope.date,
            is_read=raw.is_read,
            is_starred=raw.is_starred,
            labels=[connection.mailbox],
            attachments=[a.model_dump() for a in decoded.attachments],
        )

        document = {
            "id": record_id,
            "thread_id": thread,
            "connection_id": connection.id,
            "mailbox_epoch": raw.epoch,
            "sequence_number": raw.sequence_number,
            "snippet": preview,
            "flags": list(raw.flags),
            "internal_date": raw.internal_date.isoformat() if raw.internal_date else None,
            "payload": {
                "headers": decoded.headers,
                "envelope": envelope.model_dump(mode="json"),
                "text_body": decoded.rendered_text,
                "html_body": decoded.html_body,
                "attachments": [a.model_dump() for a in decoded.attachments],
            },
        }
        blob = json.dumps(document, sort_keys=True, ensure_ascii=False).encode("utf-8")
        return metadata, blob


__all__ = ["MessagePipeline"]
