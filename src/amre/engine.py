"""AMRE engine -- async facade wiring every component together.

All store internals are synchronous and run in ``asyncio.to_thread()`` so
the caller's event loop is never blocked.

Usage::

    engine = MemoryEngine(get_settings())
    await engine.start()
    await engine.on_turn_created(turn)
    bundle = await engine.retrieve("u1", query_text="what is my dog called?")
    await engine.stop()
"""

from __future__ import annotations

import asyncio
import logging
import time
from datetime import datetime
from typing import Any, Iterable, Sequence

from amre.config import AmreSettings, get_settings
from amre.embeddings.adapter import EmbeddingAdapter
from amre.extraction.extractor import Extractor
from amre.indexing.indexer import BackgroundIndexer
from amre.ingest.pipeline import IngestPipeline, IngestResult
from amre.maintenance.backfill import Backfill
from amre.maintenance.cycle import MaintenanceRunner, MaintenanceScheduler
from amre.maintenance.dedup import Deduplicator
from amre.maintenance.locks import InMemoryJobLock, JobLock, RedisJobLock
from amre.maintenance.reaper import Reaper
from amre.models import (
    CoverageStats,
    KnowledgeEntry,
    RetrievalBudget,
    RetrievalBundle,
    SourceType,
    Turn,
)
from amre.retrieval.retriever import RankedRetriever
from amre.storage.base import KnowledgeStore
from amre.storage.memory import InMemoryKnowledgeStore

log = logging.getLogger(__name__)

MAINTENANCE_JOBS = ("backfill", "dedup", "reap", "cycle")


def build_store(settings: AmreSettings, dimensions: int) -> KnowledgeStore:
    """Postgres when configured and reachable, otherwise the in-memory store."""
    if settings.POSTGRES_URL:
        try:
            from amre.storage.postgres import PostgresKnowledgeStore

            store = PostgresKnowledgeStore(settings.POSTGRES_URL, dimensions)
            log.info("Knowledge store: Postgres (pgvector, %d dims)", dimensions)
            return store
        except Exception as exc:
            log.warning("Postgres unavailable (%s); falling back to in-memory store.", exc)
    else:
        log.warning("AMRE_POSTGRES_URL not set; using the in-memory store (state is not persisted).")
    return InMemoryKnowledgeStore()


def build_lock(settings: AmreSettings) -> JobLock:
    """Redis single-flight lock when configured and reachable."""
    if settings.REDIS_URL:
        try:
            lock = RedisJobLock(settings.REDIS_URL, ttl_sec=settings.JOB_LOCK_TTL)
            lock.ping()
            log.info("Maintenance locks: Redis")
            return lock
        except Exception as exc:
            log.warning("Redis unavailable (%s); maintenance locks are process-local.", exc)
    return InMemoryJobLock(ttl_sec=settings.JOB_LOCK_TTL)


class MemoryEngine:
    """Async facade over the AMRE components.

    Components that are not injected are built from *settings* in
    :meth:`start`.  Infrastructure that cannot be reached degrades with a
    warning: Postgres to the in-memory store, Redis to an in-process lock.

    Args:
        settings: Engine configuration; defaults to :func:`get_settings`.
        store: Pre-built knowledge store.
        adapter: Pre-built embedding adapter.
        lock: Pre-built maintenance lock.
        extractor: Custom candidate extractor.
        enable_scheduler: Run the periodic maintenance loop while started.
    """

    def __init__(
        self,
        settings: AmreSettings | None = None,
        store: KnowledgeStore | None = None,
        adapter: EmbeddingAdapter | None = None,
        lock: JobLock | None = None,
        extractor: Extractor | None = None,
        enable_scheduler: bool = False,
    ) -> None:
        self._settings = settings or get_settings()
        self._store = store
        self._adapter = adapter
        self._lock = lock
        self._extractor = extractor
        self._enable_scheduler = enable_scheduler
        self._indexer: BackgroundIndexer | None = None
        self._retriever: RankedRetriever | None = None
        self._runner: MaintenanceRunner | None = None
        self._scheduler: MaintenanceScheduler | None = None
        self._running = False

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> bool:
        """Build and wire every component.  Returns True on success."""
        if self._running:
            return True
        s = self._settings
        try:
            if self._adapter is None:
                self._adapter = EmbeddingAdapter.from_settings(s)
            if self._store is None:
                self._store = await asyncio.to_thread(build_store, s, self._adapter.dimensions)
            if self._lock is None:
                self._lock = await asyncio.to_thread(build_lock, s)
        except Exception as exc:
            log.warning("MemoryEngine start failed: %s", exc)
            return False

        self._indexer = BackgroundIndexer(
            self._store,
            self._adapter,
            extractor=self._extractor or Extractor(),
            summary_every=s.SUMMARY_EVERY_N_TURNS,
            promote_importance=s.PROMOTE_IMPORTANCE,
        )
        self._retriever = RankedRetriever(
            self._store,
            chunk_threshold=s.CHUNK_SIMILARITY_THRESHOLD,
            entry_threshold=s.ENTRY_SIMILARITY_THRESHOLD,
            top_k=s.RETRIEVAL_TOP_K,
            recent_window=s.RECENT_TURN_WINDOW,
            recency_rank=s.RECENCY_RANK,
        )
        self._runner = MaintenanceRunner(
            Backfill(
                self._store,
                self._adapter,
                requests_per_minute=s.EMBED_REQUESTS_PER_MINUTE,
                cost_per_text=s.EMBED_COST_PER_TEXT,
            ),
            Deduplicator(self._store, threshold=s.DEDUP_THRESHOLD),
            Reaper(self._store),
            lock=self._lock,
        )
        if self._enable_scheduler:
            self._scheduler = MaintenanceScheduler(
                self._runner,
                interval=s.MAINTENANCE_INTERVAL,
                batch_size=s.BACKFILL_BATCH_SIZE,
                deadline_sec=s.MAINTENANCE_DEADLINE,
            )
            await self._scheduler.start()
        self._running = True
        log.info("MemoryEngine started (backend=%s).", s.EMBEDDING_BACKEND)
        return True

    async def stop(self) -> None:
        """Drain in-flight indexing, stop the scheduler and close clients."""
        if self._scheduler is not None:
            await self._scheduler.stop()
            self._scheduler = None
        if self._indexer is not None:
            await self._indexer.drain()
        if self._adapter is not None:
            try:
                await self._adapter.close()
            except Exception as exc:
                log.debug("Embedding client close failed: %s", exc)
        if self._store is not None:
            try:
                await asyncio.to_thread(self._store.close)
            except Exception as exc:
                log.debug("Store close failed: %s", exc)
        self._running = False
        log.info("MemoryEngine stopped")

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def store(self) -> KnowledgeStore:
        self._require_running()
        return self._store

    @property
    def indexer(self) -> BackgroundIndexer:
        self._require_running()
        return self._indexer

    @property
    def scheduler(self) -> MaintenanceScheduler | None:
        return self._scheduler

    # ------------------------------------------------------------------
    # Conversation hooks
    # ------------------------------------------------------------------

    async def on_turn_created(self, turn: Turn) -> None:
        """Schedule background indexing of *turn*; returns immediately."""
        self._require_running()
        self._indexer.on_turn_created(turn)

    async def on_conversation_closed(self, user_id: str, conversation_id: str) -> None:
        """Schedule a final summary over the conversation's unsummarised turns."""
        self._require_running()
        self._indexer.on_conversation_closed(user_id, conversation_id)

    async def forget_conversation(self, user_id: str, conversation_id: str) -> int:
        """Drop the mirrored turns of a conversation.

        Chunks and entries derived from it stay; the next reaper sweep flags
        conversation-sourced entries as orphans.
        """
        self._require_running()
        return await asyncio.to_thread(self._store.forget_conversation, user_id, conversation_id)

    # ------------------------------------------------------------------
    # Retrieval
    # ------------------------------------------------------------------

    async def embed_query(self, text: str) -> list[float] | None:
        """Embed a query string.  Returns None when the provider fails."""
        self._require_running()
        try:
            return await self._adapter.embed_one(text)
        except Exception as exc:
            log.warning("Query embedding failed: %s", exc)
            return None

    async def retrieve(
        self,
        user_id: str,
        query_text: str | None = None,
        query_embedding: Sequence[float] | None = None,
        budget: RetrievalBudget | int | None = None,
        category: str | None = None,
        source_type: SourceType | str | None = None,
        now: datetime | None = None,
    ) -> RetrievalBundle:
        """Build a ranked context bundle.

        Store and provider failures never propagate: the result degrades
        to recent turns only, or to an empty bundle.

        Either *query_embedding* or *query_text* must be given.  When the
        query cannot be embedded the bundle still carries recent turns.
        """
        self._require_running()
        budget = RetrievalBudget.coerce(budget if budget is not None else self._settings.TOKEN_BUDGET)
        if query_embedding is None:
            if not query_text:
                raise ValueError("retrieve() needs query_text or query_embedding")
            query_embedding = await self.embed_query(query_text)
            if query_embedding is None:
                # Zero vector: no memory passes the thresholds, recency still does.
                query_embedding = [0.0] * self._adapter.dimensions
        return await asyncio.to_thread(
            self._retriever.retrieve,
            query_embedding,
            user_id,
            budget,
            category,
            SourceType(source_type) if source_type is not None else None,
            None,
            None,
            now,
        )

    # ------------------------------------------------------------------
    # Knowledge entries
    # ------------------------------------------------------------------

    async def add_knowledge(
        self,
        user_id: str,
        content: str,
        title: str = "",
        category: str = "general",
        source_type: SourceType | str = SourceType.MANUAL,
        source_id: str | None = None,
        importance: float = 0.5,
        tags: Iterable[str] | None = None,
        metadata: dict[str, Any] | None = None,
        expires_at: datetime | None = None,
        embed: bool = True,
    ) -> KnowledgeEntry:
        """Store a knowledge entry, embedding it now when possible.

        If embedding fails the entry is still written with no vector and
        the next backfill run picks it up.
        """
        self._require_running()
        entry = KnowledgeEntry(
            user_id=user_id,
            content=content,
            title=title,
            category=category,
            source_type=source_type,
            source_id=source_id,
            importance=importance,
            tags=set(tags or ()),
            metadata=dict(metadata or {}),
            expires_at=expires_at,
        )
        if embed:
            try:
                entry.embedding = await self._adapter.embed_one(entry.embedding_text())
            except Exception as exc:
                log.warning("Deferring embedding of entry %s to backfill: %s", entry.id, exc)
        await asyncio.to_thread(self._store.add_entry, entry)
        return entry

    async def get_entry(self, entry_id: str) -> KnowledgeEntry | None:
        self._require_running()
        return await asyncio.to_thread(self._store.get_entry, entry_id)

    async def list_entries(
        self,
        user_id: str,
        category: str | None = None,
        source_type: SourceType | str | None = None,
        tag: str | None = None,
        include_inactive: bool = False,
        limit: int = 100,
    ) -> list[KnowledgeEntry]:
        self._require_running()
        return await asyncio.to_thread(
            self._store.list_entries,
            user_id,
            category,
            SourceType(source_type) if source_type is not None else None,
            tag,
            include_inactive,
            limit,
        )

    async def set_importance(self, entry_id: str, importance: float) -> None:
        self._require_running()
        await asyncio.to_thread(self._store.set_importance, entry_id, importance)

    async def set_active(self, entry_id: str, active: bool) -> None:
        self._require_running()
        await asyncio.to_thread(self._store.set_active, entry_id, active)

    async def coverage(
        self, user_id: str | None = None, source_type: SourceType | str | None = None,
    ) -> CoverageStats:
        self._require_running()
        return await asyncio.to_thread(
            self._store.coverage,
            user_id,
            SourceType(source_type) if source_type is not None else None,
        )

    async def ingest_paths(self, user_id: str, paths: Iterable[str], **options: Any) -> IngestResult:
        """Ingest text files as un-embedded ``file`` entries.

        *options* are passed to :class:`IngestPipeline`.
        """
        self._require_running()
        pipeline = IngestPipeline(self._store, user_id, **options)
        return await asyncio.to_thread(pipeline.ingest_paths, list(paths))

    # ------------------------------------------------------------------
    # Maintenance
    # ------------------------------------------------------------------

    async def run_maintenance(
        self,
        job: str = "cycle",
        batch_size: int | None = None,
        dry_run: bool = False,
        user_id: str | None = None,
        threshold: float | None = None,
        source_type: SourceType | str | None = None,
        deadline_sec: float | None = None,
    ) -> Any:
        """Run one maintenance job and return its report.

        ``job`` is one of ``backfill``, ``dedup``, ``reap`` or ``cycle``.
        A job whose lock is held elsewhere returns a report with
        ``skipped=True``.
        """
        self._require_running()
        if job not in MAINTENANCE_JOBS:
            raise ValueError(f"Unknown maintenance job {job!r}; expected one of {MAINTENANCE_JOBS}")
        batch_size = batch_size or self._settings.BACKFILL_BATCH_SIZE
        if job == "backfill":
            return await self._runner.run_backfill(
                batch_size=batch_size, dry_run=dry_run, user_id=user_id,
                source_type=SourceType(source_type) if source_type is not None else None,
                deadline=_monotonic_deadline(deadline_sec),
            )
        if job == "dedup":
            return await self._runner.run_dedup(
                batch_size=batch_size, dry_run=dry_run, user_id=user_id,
                threshold=threshold, deadline=_monotonic_deadline(deadline_sec),
            )
        if job == "reap":
            return await self._runner.run_reap(batch_size=batch_size, dry_run=dry_run, user_id=user_id)
        return await self._runner.run_cycle(
            batch_size=batch_size, dry_run=dry_run, user_id=user_id, deadline_sec=deadline_sec,
        )

    async def purge_orphans(self, entry_ids: Sequence[str]) -> int:
        """Delete entries a previous reap flagged as orphans."""
        self._require_running()
        return await asyncio.to_thread(self._runner.reaper.purge_orphans, list(entry_ids))

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _require_running(self) -> None:
        if not self._running:
            raise RuntimeError("MemoryEngine is not started; call await engine.start() first")


def _monotonic_deadline(deadline_sec: float | None) -> float | None:
    return time.monotonic() + deadline_sec if deadline_sec else None
