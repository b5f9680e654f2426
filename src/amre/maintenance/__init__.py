"""Maintenance jobs: backfill, dedup and reap."""

from .backfill import Backfill, BackfillReport
from .cycle import CycleReport, MaintenanceRunner, MaintenanceScheduler
from .dedup import Deduplicator, DedupReport
from .locks import InMemoryJobLock, JobLock, RedisJobLock, single_flight
from .reaper import Reaper, ReapReport

__all__ = [
    "Backfill",
    "BackfillReport",
    "CycleReport",
    "DedupReport",
    "Deduplicator",
    "InMemoryJobLock",
    "JobLock",
    "MaintenanceRunner",
    "MaintenanceScheduler",
    "ReapReport",
    "Reaper",
    "RedisJobLock",
    "single_flight",
]
