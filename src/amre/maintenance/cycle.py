"""Maintenance cycle -- single-flight job runs and the periodic scheduler.

Each job entry point takes ``batch_size``, ``dry_run`` and an optional
``user_id`` scope.  A job only runs when its ``(job, scope)`` lock is free;
otherwise the returned report has ``skipped=True``.  The combined cycle runs,
in order:

1. **Backfill** -- embed entries that have no vector yet.
2. **Dedup** -- merge near-duplicate entries.
3. **Reap** -- delete expired entries and flag orphans.

A soft deadline is checked between batches and between jobs; partial
progress is always valid because every job is idempotent.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import asdict, dataclass
from datetime import datetime
from typing import Any, Dict, Optional

from amre.maintenance.backfill import Backfill, BackfillReport
from amre.maintenance.dedup import Deduplicator, DedupReport
from amre.maintenance.locks import InMemoryJobLock, JobLock, single_flight
from amre.maintenance.reaper import Reaper, ReapReport
from amre.models import SourceType

logger = logging.getLogger(__name__)


@dataclass
class CycleReport:
    backfill: Optional[BackfillReport] = None
    dedup: Optional[DedupReport] = None
    reap: Optional[ReapReport] = None
    stopped_early: bool = False
    duration_sec: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


class MaintenanceRunner:
    def __init__(
        self,
        backfill: Backfill,
        deduplicator: Deduplicator,
        reaper: Reaper,
        lock: Optional[JobLock] = None,
    ) -> None:
        self.backfill = backfill
        self.deduplicator = deduplicator
        self.reaper = reaper
        self._lock = lock or InMemoryJobLock()

    async def run_backfill(
        self,
        batch_size: int = 50,
        dry_run: bool = False,
        user_id: Optional[str] = None,
        source_type: Optional[SourceType] = None,
        deadline: Optional[float] = None,
    ) -> BackfillReport:
        with single_flight(self._lock, "backfill", user_id) as acquired:
            if not acquired:
                logger.info("Backfill already running for scope %s; skipping.", user_id or "*")
                return BackfillReport(dry_run=dry_run, skipped=True)
            return await self.backfill.run(
                batch_size=batch_size, source_type=source_type, user_id=user_id,
                dry_run=dry_run, deadline=deadline,
            )

    async def run_dedup(
        self,
        batch_size: int = 50,
        dry_run: bool = False,
        user_id: Optional[str] = None,
        threshold: Optional[float] = None,
        deadline: Optional[float] = None,
    ) -> DedupReport:
        # batch_size is unused: dedup walks entries one at a time.
        with single_flight(self._lock, "dedup", user_id) as acquired:
            if not acquired:
                logger.info("Dedup already running for scope %s; skipping.", user_id or "*")
                return DedupReport(dry_run=dry_run, skipped=True)
            return await asyncio.to_thread(
                self.deduplicator.compact, threshold, user_id, dry_run, deadline,
            )

    async def run_reap(
        self,
        batch_size: int = 50,
        dry_run: bool = False,
        user_id: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> ReapReport:
        with single_flight(self._lock, "reap", user_id) as acquired:
            if not acquired:
                logger.info("Reaper already running for scope %s; skipping.", user_id or "*")
                return ReapReport(dry_run=dry_run, skipped=True)
            return await asyncio.to_thread(self.reaper.sweep, user_id, dry_run, now)

    async def run_cycle(
        self,
        batch_size: int = 50,
        dry_run: bool = False,
        user_id: Optional[str] = None,
        deadline_sec: Optional[float] = None,
    ) -> CycleReport:
        t0 = time.monotonic()
        deadline = t0 + deadline_sec if deadline_sec else None
        result = CycleReport()

        # 1. Backfill
        result.backfill = await self.run_backfill(
            batch_size=batch_size, dry_run=dry_run, user_id=user_id, deadline=deadline,
        )

        # 2. Dedup
        if deadline is not None and time.monotonic() >= deadline:
            result.stopped_early = True
        else:
            result.dedup = await self.run_dedup(
                batch_size=batch_size, dry_run=dry_run, user_id=user_id, deadline=deadline,
            )

        # 3. Reap
        if deadline is not None and time.monotonic() >= deadline:
            result.stopped_early = True
        else:
            result.reap = await self.run_reap(batch_size=batch_size, dry_run=dry_run, user_id=user_id)

        result.duration_sec = time.monotonic() - t0
        logger.info(
            "Maintenance cycle complete in %.2fs (stopped_early=%s).",
            result.duration_sec, result.stopped_early,
        )
        return result


class MaintenanceScheduler:
    """Runs :meth:`MaintenanceRunner.run_cycle` every *interval* seconds.

    Idempotent ``start``; ``trigger`` wakes the loop for an immediate cycle.
    """

    def __init__(
        self,
        runner: MaintenanceRunner,
        interval: int = 3600,
        batch_size: int = 50,
        deadline_sec: Optional[float] = None,
    ) -> None:
        self._runner = runner
        self.interval = interval
        self._batch_size = batch_size
        self._deadline_sec = deadline_sec
        self._running = False
        self._task: Optional[asyncio.Task] = None
        self._trigger_event = asyncio.Event()
        self._cycle_count = 0
        self.last_report: Optional[CycleReport] = None

    async def start(self) -> None:
        if self._running:
            logger.warning("Maintenance scheduler start() called but loop is already running.")
            return
        self._running = True
        self._trigger_event = asyncio.Event()
        self._task = asyncio.create_task(self._loop(), name="amre-maintenance")
        logger.info("Maintenance scheduler started (interval=%ds).", self.interval)

    async def stop(self) -> None:
        self._running = False
        self._trigger_event.set()
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        logger.info("Maintenance scheduler stopped after %d cycles.", self._cycle_count)

    def trigger(self) -> None:
        self._trigger_event.set()

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def cycles_completed(self) -> int:
        return self._cycle_count

    async def _loop(self) -> None:
        while self._running:
            try:
                await asyncio.wait_for(self._trigger_event.wait(), timeout=self.interval)
            except asyncio.TimeoutError:
                pass
            self._trigger_event.clear()
            if not self._running:
                break
            try:
                self.last_report = await self._runner.run_cycle(
                    batch_size=self._batch_size, deadline_sec=self._deadline_sec,
                )
                self._cycle_count += 1
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception("Maintenance cycle failed; will retry next interval.")
