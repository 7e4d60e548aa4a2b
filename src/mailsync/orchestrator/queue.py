"""Bounded in-memory job queue feeding the sync workers."""

from __future__ import annotations

import asyncio
import itertools
import logging
from typing import Optional, Tuple

from .models import SyncJob


logger = logging.getLogger(__name__)

# Sorts after every real job.
_SENTINEL_RANK = 0


class SyncJobQueue:
    """Priority queue of :class:`SyncJob` with a fixed capacity.

    Higher priority jobs are handed out first; jobs of equal priority keep
    their submission order. ``close`` enqueues one end marker per worker, and
    :meth:`get` returns None once a worker reaches its marker.
    """

    def __init__(self, maxsize: int = 0) -> None:
        self._queue: asyncio.PriorityQueue[Tuple[int, int, Optional[SyncJob]]] = asyncio.PriorityQueue(
            maxsize=maxsize
        )
        self._counter = itertools.count()
        self._closed = False

    async def put(self, job: SyncJob) -> None:
        """Enqueue a job, waiting while the queue is full."""
        if self._closed:
            raise RuntimeError("Cannot enqueue into a closed queue")
        await self._queue.put((-job.priority.value, next(self._counter), job))
        logger.debug(
            "Enqueued sync job",
            extra={"connection_id": job.connection_id, "kind": job.kind.value},
        )

    async def get(self) -> Optional[SyncJob]:
        """Next job, or None when the queue is closed and drained for this worker."""
        _, _, job = await self._queue.get()
        self._queue.task_done()
        return job

    async def close(self, workers: int) -> None:
        """Stop accepting jobs and release ``workers`` consumers once drained."""
        self._closed = True
        for _ in range(workers):
            await self._queue.put((_SENTINEL_RANK, next(self._counter), None))

    def qsize(self) -> int:
        return self._queue.qsize()


__all__ = ["SyncJobQueue"]
