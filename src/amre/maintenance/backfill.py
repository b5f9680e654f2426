"""Backfill -- compute embeddings for knowledge entries that lack one.

Each batch re-selects ``embedding IS NULL`` rows, so an interrupted run
resumes where it stopped.  Entries the provider permanently rejects are
excluded for the rest of the run (they stay NULL and are retried by the
next run).  Batches are paced against the provider's requests-per-minute
budget.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Dict, List, Optional, Set

from amre.embeddings.adapter import EmbeddingAdapter
from amre.errors import EmbeddingErrorCode, EmbeddingFailure
from amre.models import SourceType
from amre.storage.base import KnowledgeStore

logger = logging.getLogger(__name__)


@dataclass
class BackfillReport:
    processed: int = 0
    failed: int = 0
    batches: int = 0
    deferred: int = 0
    dry_run: bool = False
    coverage_pct: float = 100.0
    missing: int = 0
    estimated_calls: int = 0
    estimated_cost: float = 0.0
    stopped_early: bool = False
    skipped: bool = False
    errors: List[Dict[str, str]] = field(default_factory=list)
    duration_sec: float = 0.0


class Backfill:
    def __init__(
        self,
        store: KnowledgeStore,
        adapter: EmbeddingAdapter,
        requests_per_minute: int = 3500,
        cost_per_text: float = 0.00002,
        sleep: Optional[Callable[[float], Awaitable[None]]] = None,
    ) -> None:
        self._store = store
        self._adapter = adapter
        self._rpm = max(1, requests_per_minute)
        self._cost_per_text = cost_per_text
        self._sleep = sleep or asyncio.sleep

    def pacing_delay(self, requests: int) -> float:
        return requests * 60.0 / self._rpm

    async def run(
        self,
        batch_size: int = 50,
        source_type: Optional[SourceType] = None,
        user_id: Optional[str] = None,
        dry_run: bool = False,
        deadline: Optional[float] = None,
    ) -> BackfillReport:
        if batch_size < 1:
            raise ValueError("batch_size must be positive")
        start = time.monotonic()
        report = BackfillReport(dry_run=dry_run)
        stats = await asyncio.to_thread(self._store.coverage, user_id, source_type)
        report.coverage_pct = stats.coverage_pct
        report.missing = stats.missing
        report.estimated_calls = self._adapter.requests_for(stats.missing)
        report.estimated_cost = round(stats.missing * self._cost_per_text, 6)

        if dry_run:
            logger.info(
                "Backfill dry-run: coverage=%.2f%% missing=%d calls~%d cost~$%.4f",
                report.coverage_pct, report.missing, report.estimated_calls, report.estimated_cost,
            )
            report.duration_sec = time.monotonic() - start
            return report

        excluded: Set[str] = set()
        while True:
            if deadline is not None and time.monotonic() >= deadline:
                report.stopped_early = True
                logger.info("Backfill stopped at soft deadline after %d batches.", report.batches)
                break
            batch = await asyncio.to_thread(
                self._store.entries_missing_embedding, batch_size, user_id, source_type, excluded,
            )
            if not batch:
                break
            report.batches += 1
            try:
                results = await self._adapter.embed(
                    [e.embedding_text() for e in batch], raise_on_exhaustion=False,
                )
            except Exception as exc:
                # Only this batch is lost; earlier writes stand.
                logger.warning("Backfill batch %d aborted: %s", report.batches, exc)
                report.errors.append({"batch": str(report.batches), "error": str(exc)})
                break

            rate_limited = False
            for entry, result in zip(batch, results):
                if isinstance(result, EmbeddingFailure):
                    if result.code is EmbeddingErrorCode.RATE_LIMITED:
                        rate_limited = True
                        report.deferred += 1
                        continue
                    excluded.add(entry.id)
                    report.failed += 1
                    report.errors.append({"id": entry.id, "error": f"{result.code.value}: {result.message}"})
                    continue
                try:
                    await asyncio.to_thread(self._store.set_embedding, entry.id, result)
                except Exception as exc:
                    excluded.add(entry.id)
                    report.failed += 1
                    report.errors.append({"id": entry.id, "error": str(exc)})
                    logger.warning("Writing embedding for %s failed: %s", entry.id, exc)
                    continue
                report.processed += 1

            if rate_limited:
                logger.warning("Backfill halted: provider quota exhausted after %d batches.", report.batches)
                break
            await self._sleep(self.pacing_delay(self._adapter.requests_for(len(batch))))

        final = await asyncio.to_thread(self._store.coverage, user_id, source_type)
        report.coverage_pct = final.coverage_pct
        report.missing = final.missing
        report.duration_sec = time.monotonic() - start
        logger.info(
            "Backfill: processed=%d failed=%d batches=%d coverage=%.2f%%",
            report.processed, report.failed, report.batches, report.coverage_pct,
        )
        return report
