from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from typing import List, Optional, Tuple

from amre.storage.base import KnowledgeStore, pick_survivor

logger = logging.getLogger(__name__)

DEFAULT_THRESHOLD = 0.95


@dataclass
class DedupReport:
    scanned: int = 0
    merged: int = 0
    pairs: List[Tuple[str, str, float]] = field(default_factory=list)
    dry_run: bool = False
    stopped_early: bool = False
    skipped: bool = False
    duration_sec: float = 0.0


class Deduplicator:
    """Merges near-duplicate knowledge entries of the same user.

    Two active, embedded entries are duplicates when their cosine
    similarity exceeds the threshold.  The survivor has the higher
    importance (earlier ``created_at`` on ties); the loser is deactivated
    and its tags are folded into the survivor.  Running ``compact`` again
    on an unchanged dataset merges nothing.
    """

    def __init__(self, store: KnowledgeStore, threshold: float = DEFAULT_THRESHOLD,
                 neighbours: int = 10) -> None:
        self._store = store
        self.threshold = threshold
        self.neighbours = neighbours

    def find_duplicates(self, entry_id: str, threshold: Optional[float] = None) -> List[Tuple[str, float]]:
        threshold = self.threshold if threshold is None else threshold
        return [
            (entry.id, sim)
            for entry, sim in self._store.similar_entries(entry_id, threshold, self.neighbours)
        ]

    def compact(
        self,
        threshold: Optional[float] = None,
        user_id: Optional[str] = None,
        dry_run: bool = False,
        deadline: Optional[float] = None,
    ) -> DedupReport:
        threshold = self.threshold if threshold is None else threshold
        start = time.monotonic()
        report = DedupReport(dry_run=dry_run)
        retired: set = set()

        for entry_id in self._store.embedded_entry_ids(user_id):
            if deadline is not None and time.monotonic() >= deadline:
                report.stopped_early = True
                logger.info("Dedup stopped at soft deadline after %d entries.", report.scanned)
                break
            if entry_id in retired:
                continue
            report.scanned += 1
            current = self._store.get_entry(entry_id)
            if current is None or not current.is_active:
                continue
            for other, sim in self._store.similar_entries(entry_id, threshold, self.neighbours):
                if other.id in retired:
                    continue
                survivor, loser = pick_survivor(current, other)
                if dry_run or self._store.merge_entries(survivor.id, loser.id):
                    report.merged += 1
                    report.pairs.append((survivor.id, loser.id, round(sim, 4)))
                    retired.add(loser.id)
                    logger.debug("Merged %s into %s (similarity=%.4f).", loser.id, survivor.id, sim)
                if loser.id == current.id:
                    break
                current = self._store.get_entry(survivor.id) or current

        report.duration_sec = time.monotonic() - start
        logger.info(
            "Dedup %s: scanned=%d merged=%d threshold=%.2f",
            "dry-run" if dry_run else "pass", report.scanned, report.merged, threshold,
        )
        return report
