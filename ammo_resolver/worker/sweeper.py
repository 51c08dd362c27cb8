"""Stale PROCESSING record sweeper."""

import logging
from datetime import datetime, timedelta
from typing import Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from ammo_resolver.config import settings

logger = logging.getLogger(__name__)

SWEEPER_JOB_ID = "stale_record_sweeper"


class StaleRecordSweeper:
    """
    Return records stuck in PROCESSING to PENDING.

    A record stays PROCESSING only while its worker is alive; once
    processing_started_at is older than the timeout the lease is treated as
    dead and the record becomes claimable again. The timeout must exceed the
    worst-case resolution latency or healthy work gets reclaimed.
    """

    def __init__(
        self,
        store,
        timeout_seconds: Optional[int] = None,
        interval_seconds: Optional[int] = None,
        batch_limit: Optional[int] = None,
    ):
        self.store = store
        self.timeout_seconds = timeout_seconds or settings.stale_processing_timeout_seconds
        self.interval_seconds = interval_seconds or settings.sweeper_interval_seconds
        self.batch_limit = batch_limit or settings.sweeper_batch_limit
        self._scheduler: Optional[AsyncIOScheduler] = None

        if self.timeout_seconds < settings.min_stale_timeout_seconds:
            logger.warning(
                "Stale processing timeout %ss is below %ss; in-flight fuzzy scoring may be reclaimed",
                self.timeout_seconds,
                settings.min_stale_timeout_seconds,
            )

    @property
    def running(self) -> bool:
        return self._scheduler is not None and self._scheduler.running

    async def sweep_once(self, now: Optional[datetime] = None) -> int:
        """
        Reclaim stale records once.

        Args:
            now: Reference time (naive UTC); defaults to utcnow()

        Returns:
            Number of records reset to PENDING
        """
        now = now or datetime.utcnow()
        cutoff = now - timedelta(seconds=self.timeout_seconds)

        reclaimed = await self.store.reclaim_stale(cutoff, self.batch_limit)

        if reclaimed:
            logger.warning(
                f"Sweeper reclaimed {len(reclaimed)} stale records "
                f"(processing before {cutoff.isoformat()}): {reclaimed[:20]}"
            )
        return len(reclaimed)

    async def _run_job(self) -> None:
        try:
            await self.sweep_once()
        except Exception:
            logger.exception("Sweeper run failed")

    def start(self) -> None:
        """Schedule sweep_once() every interval_seconds on the running event loop."""
        if self.running:
            return

        scheduler = AsyncIOScheduler()
        scheduler.add_job(
            self._run_job,
            IntervalTrigger(seconds=self.interval_seconds),
            id=SWEEPER_JOB_ID,
            name="Reclaim stale PROCESSING records",
            max_instances=1,  # Prevent overlapping runs
            coalesce=True,
            replace_existing=True,
        )
        scheduler.start()
        self._scheduler = scheduler

        logger.info(
            "Sweeper started: every %ds, timeout %ds",
            self.interval_seconds,
            self.timeout_seconds,
        )

    def stop(self) -> None:
        if self._scheduler is None:
            return
        if self._scheduler.running:
            self._scheduler.shutdown(wait=False)
        self._scheduler = None
        logger.info("Sweeper stopped")
