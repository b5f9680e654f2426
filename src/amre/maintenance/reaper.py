from __future__ import annotations

import logging
import time
import warnings
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, List, Optional, Sequence

from amre.errors import DataIntegrityWarning
from amre.models import SourceType, utcnow
from amre.storage.base import KnowledgeStore

logger = logging.getLogger(__name__)

SourceExistsFn = Callable[[str, str], bool]

_ORPHAN_SCAN_LIMIT = 10_000


@dataclass
class ReapReport:
    expired: int = 0
    orphaned: int = 0
    orphan_ids: List[str] = field(default_factory=list)
    dry_run: bool = False
    skipped: bool = False
    duration_sec: float = 0.0


class Reaper:
    """The only component that permanently deletes knowledge entries.

    ``sweep`` hard-deletes expired entries and flags conversation-sourced
    entries whose conversation vanished.  Flagged orphans are only removed
    by an explicit ``purge_orphans`` call.
    """

    def __init__(self, store: KnowledgeStore, source_exists: Optional[SourceExistsFn] = None) -> None:
        self._store = store
        self._source_exists = source_exists or store.conversation_exists

    def sweep(self, user_id: Optional[str] = None, dry_run: bool = False,
              now: Optional[datetime] = None) -> ReapReport:
        start = time.monotonic()
        report = ReapReport(dry_run=dry_run)
        now = now or utcnow()

        expired = self._store.expired_entry_ids(now, user_id)
        report.expired = len(expired) if dry_run else self._store.delete_entries(expired)

        for user in self._scope_users(user_id):
            for entry in self._store.list_entries(
                user, source_type=SourceType.CONVERSATION, include_inactive=True,
                limit=_ORPHAN_SCAN_LIMIT,
            ):
                if entry.source_id is None or entry.is_orphaned:
                    continue
                if self._source_exists(entry.user_id, entry.source_id):
                    continue
                report.orphaned += 1
                report.orphan_ids.append(entry.id)
                message = f"Entry {entry.id} references missing conversation {entry.source_id}"
                warnings.warn(message, DataIntegrityWarning, stacklevel=2)
                logger.warning("%s; flagged as orphan candidate.", message)
                if not dry_run:
                    self._store.flag_orphaned(entry.id, f"conversation {entry.source_id} not found")

        report.duration_sec = time.monotonic() - start
        logger.info(
            "Reaper %s: expired=%d orphaned=%d",
            "dry-run" if dry_run else "sweep", report.expired, report.orphaned,
        )
        return report

    def purge_orphans(self, entry_ids: Sequence[str]) -> int:
        """Delete entries that a previous sweep flagged as orphans."""
        flagged = []
        for entry_id in entry_ids:
            entry = self._store.get_entry(entry_id)
            if entry is None:
                continue
            if not entry.is_orphaned:
                logger.warning("Refusing to purge %s: not flagged as orphan.", entry_id)
                continue
            flagged.append(entry_id)
        removed = self._store.delete_entries(flagged)
        logger.info("Purged %d orphaned entries.", removed)
        return removed

    def _scope_users(self, user_id: Optional[str]) -> List[str]:
        if user_id is not None:
            return [user_id]
        return self._store.user_ids()
