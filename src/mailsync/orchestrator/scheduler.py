"""Fixed-interval trigger for sync passes."""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime
from typing import Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from .engine import SyncEngine
from .report import SyncReport


logger = logging.getLogger(__name__)

PASS_JOB_ID = "mailsync-sync-pass"


class SyncScheduler:
    """Runs :meth:`SyncEngine.run_sync_pass` every ``interval_seconds``.

    Passes never overlap: a pass still running when the next one is due makes
    the scheduler skip that run.
    """

    def __init__(
        self,
        engine: SyncEngine,
        *,
        interval_seconds: int,
        scheduler: Optional[AsyncIOScheduler] = None,
    ) -> None:
        self._engine = engine
        self._interval_seconds = interval_seconds
        self._scheduler = scheduler
        self._stopped: Optional[asyncio.Event] = None
        self._idle = asyncio.Event()
        self._idle.set()
        self.last_report: Optional[SyncReport] = None
        self.passes_run = 0

    def start(self) -> None:
        """Register the pass job and start the scheduler on the running loop."""
        if self._scheduler is None:
            self._scheduler = AsyncIOScheduler(event_loop=asyncio.get_running_loop())
        self._stopped = asyncio.Event()
        self._scheduler.add_job(
            self.run_pass,
            trigger=IntervalTrigger(seconds=self._interval_seconds),
            id=PASS_JOB_ID,
            replace_existing=True,
            next_run_time=datetime.now(),
            max_instances=1,
            coalesce=True,
        )
        self._scheduler.start()
        logger.info(
            "Scheduler started",
            extra={"interval_seconds": self._interval_seconds},
        )

    async def run_pass(self) -> Optional[SyncReport]:
        """Run one pass, logging instead of raising on failure."""
        self._idle.clear()
        try:
            report = await self._engine.run_sync_pass()
        except Exception:  # noqa: BLE001 - the schedule must survive a bad pass
            logger.exception("Sync pass failed")
            return None
        finally:
            self._idle.set()
        self.last_report = report
        self.passes_run += 1
        if report.has_failures:
            logger.warning("Sync pass finished with failures", extra=report.status_counts())
        return report

    async def wait_until_stopped(self) -> None:
        """Block until :meth:`stop` is called and the in-flight pass has finished.

        The scheduler is shut down only after the pass returns, since shutting
        it down cancels running jobs.
        """
        if self._stopped is None:
            raise RuntimeError("Scheduler not started")
        await self._stopped.wait()
        await self._idle.wait()
        if self._scheduler is not None and self._scheduler.running:
            self._scheduler.shutdown(wait=False)
        logger.info("Scheduler stopped")

    def stop(self) -> None:
        """Stop scheduling and ask the current pass to finish its batch."""
        self._engine.request_stop()
        if self._scheduler is not None and self._scheduler.running:
            self._scheduler.pause()
        if self._stopped is not None:
            self._stopped.set()
        logger.info("Stop requested", extra={"pass_in_flight": not self._idle.is_set()})


__all__ = ["PASS_JOB_ID", "SyncScheduler"]
