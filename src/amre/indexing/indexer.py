"""Background Indexer -- turns new conversational turns into memory.

Each turn moves through ``pending -> extracting -> embedding -> writing ->
done`` (or ``failed``) in the store's ledger.  The ledger row is claimed
with a uniqueness-constrained insert before any work starts, so a turn is
processed at most once across every worker sharing the store.  Once the
claim succeeds processing is shielded from cancellation; the only way to
abandon a turn is to never claim it.

Store calls are synchronous and run in ``asyncio.to_thread()`` so the
event loop is never blocked.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Dict, List, Optional, Sequence, Set, Tuple

from amre.embeddings.adapter import EmbeddingAdapter
from amre.errors import EmbeddingFailure
from amre.extraction.extractor import Extractor
from amre.models import (
    Candidate,
    ChunkType,
    KnowledgeEntry,
    MemoryChunk,
    SourceType,
    Turn,
    TurnState,
)
from amre.storage.base import KnowledgeStore

logger = logging.getLogger(__name__)

_SUMMARY_RETRIES = 3


class Outcome(str, Enum):
    INDEXED = "indexed"
    SKIPPED = "skipped"
    FAILED = "failed"


@dataclass
class TurnOutcome:
    key: str
    outcome: Outcome
    chunks: int = 0
    entries: int = 0
    skipped_items: int = 0
    reason: Optional[str] = None


@dataclass
class IndexerStats:
    indexed: int = 0
    skipped: int = 0
    failed: int = 0
    summaries: int = 0
    chunks_written: int = 0
    entries_written: int = 0
    recent_failures: List[str] = field(default_factory=list)


def summary_key(conversation_id: str, window_start: Optional[datetime], attempt: int = 0) -> str:
    """Ledger key of the summary window that opens at *window_start*.

    Workers that see the same previous summary compete for the same key,
    however many turns each has read since.  A retry of a failed window
    gets a ``:retryN`` suffix.
    """
    start = window_start.isoformat() if window_start is not None else "start"
    key = f"summary:{conversation_id}:{start}"
    return f"{key}:retry{attempt}" if attempt else key


class BackgroundIndexer:
    """Fire-and-forget indexing of conversational turns.

    Args:
        store: Knowledge store holding the ledger, turns, chunks and entries.
        adapter: Embedding adapter; all candidates of a turn go in one call.
        extractor: Candidate extractor.
        summary_every: Produce a summary chunk after this many turns of a
            conversation since its previous summary.
        promote_importance: Candidates at or above this importance are also
            written as conversation-sourced knowledge entries.
    """

    def __init__(
        self,
        store: KnowledgeStore,
        adapter: EmbeddingAdapter,
        extractor: Optional[Extractor] = None,
        summary_every: int = 20,
        promote_importance: float = 0.85,
    ) -> None:
        self._store = store
        self._adapter = adapter
        self._extractor = extractor or Extractor()
        self._summary_every = summary_every
        self._promote_importance = promote_importance
        self._tasks: Set[asyncio.Task] = set()
        self._summary_locks: Dict[Tuple[str, str], asyncio.Lock] = {}
        self.stats = IndexerStats()

    # -- Upstream entry points -------------------------------------------

    def on_turn_created(self, turn: Turn) -> None:
        """Schedule indexing of *turn* and return immediately."""
        task = asyncio.get_running_loop().create_task(
            self._guarded(turn), name=f"amre-index-{turn.id}",
        )
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    def on_conversation_closed(self, user_id: str, conversation_id: str) -> None:
        task = asyncio.get_running_loop().create_task(
            self.summarize_conversation(user_id, conversation_id, force=True),
            name=f"amre-summary-{conversation_id}",
        )
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def drain(self) -> None:
        """Wait for every scheduled task to finish."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    @property
    def pending(self) -> int:
        return len(self._tasks)

    # -- Processing ---------------------------------------------------------

    async def process_turn(self, turn: Turn) -> TurnOutcome:
        claimed = await asyncio.to_thread(self._store.claim, turn.id, turn.user_id, turn)
        if not claimed:
            logger.debug("Turn %s already claimed; skipping.", turn.id)
            self.stats.skipped += 1
            return TurnOutcome(turn.id, Outcome.SKIPPED, reason="already claimed")
        # Claimed: finish even if the caller is cancelled.
        return await asyncio.shield(self._process_claimed(turn))

    async def summarize_conversation(
        self, user_id: str, conversation_id: str, force: bool = False,
    ) -> Optional[TurnOutcome]:
        """Write one summary chunk over the turns since the last summary.

        Without *force* a summary is only produced once ``summary_every``
        turns have accumulated.  Summaries of one conversation run one at a
        time in this process, and the ledger key names the window's start,
        so each window is summarised at most once across workers.
        """
        lock = self._summary_locks.setdefault((user_id, conversation_id), asyncio.Lock())
        async with lock:
            since = await asyncio.to_thread(self._store.last_summary_end, user_id, conversation_id)
            window = await asyncio.to_thread(
                self._store.conversation_turns, user_id, conversation_id, since,
            )
            if not window or (not force and len(window) < self._summary_every):
                return None
            if self._extractor.summarize(window) is None:
                # Nothing to summarise yet; leave the window open.
                return None
            key = await self._claim_summary_window(user_id, conversation_id, since)
            if key is None:
                return TurnOutcome(
                    summary_key(conversation_id, since), Outcome.SKIPPED, reason="already summarised",
                )
            return await asyncio.shield(self._write_summary(key, user_id, conversation_id, window))

    # -- Internal helpers ---------------------------------------------------

    async def _claim_summary_window(
        self, user_id: str, conversation_id: str, since: Optional[datetime],
    ) -> Optional[str]:
        """Claim the window's ledger key, moving past failed attempts."""
        for attempt in range(_SUMMARY_RETRIES + 1):
            key = summary_key(conversation_id, since, attempt)
            if await asyncio.to_thread(self._store.claim, key, user_id, None):
                return key
            record = await asyncio.to_thread(self._store.ledger_record, key)
            if record is None or record.state is not TurnState.FAILED:
                return None
        logger.warning(
            "Summary window of conversation %s failed %d times; giving up.",
            conversation_id, _SUMMARY_RETRIES + 1,
        )
        return None

    async def _guarded(self, turn: Turn) -> None:
        try:
            outcome = await self.process_turn(turn)
            if outcome.outcome is Outcome.INDEXED:
                await self.summarize_conversation(turn.user_id, turn.conversation_id)
        except Exception:
            logger.exception("Indexing task for turn %s crashed.", turn.id)

    async def _process_claimed(self, turn: Turn) -> TurnOutcome:
        key = turn.id
        state = TurnState.PENDING
        try:
            state = TurnState.EXTRACTING
            await self._set_state(key, state)
            candidates = self._extractor.extract(turn.content, turn.role)

            state = TurnState.EMBEDDING
            await self._set_state(key, state)
            vectors = await self._adapter.embed([c.content for c in candidates]) if candidates else []

            state = TurnState.WRITING
            await self._set_state(key, state)
            chunks, entries, skipped = self._build_records(turn, candidates, vectors)
            await asyncio.to_thread(self._store.commit, key, chunks, entries)
        except Exception as exc:
            reason = f"{state.value}: {type(exc).__name__}: {exc}"
            logger.warning("Indexing turn %s failed during %s: %s", key, state.value, exc)
            await self._mark_failed(key, reason)
            return TurnOutcome(key, Outcome.FAILED, reason=reason)

        self.stats.indexed += 1
        self.stats.chunks_written += len(chunks)
        self.stats.entries_written += len(entries)
        logger.debug(
            "Indexed turn %s: %d chunks, %d entries, %d skipped items.",
            key, len(chunks), len(entries), skipped,
        )
        return TurnOutcome(key, Outcome.INDEXED, len(chunks), len(entries), skipped)

    async def _write_summary(
        self, key: str, user_id: str, conversation_id: str, window: Sequence[Turn],
    ) -> TurnOutcome:
        try:
            await self._set_state(key, TurnState.EXTRACTING)
            candidate = self._extractor.summarize(window)
            chunks: List[MemoryChunk] = []
            if candidate is not None:
                await self._set_state(key, TurnState.EMBEDDING)
                vector = (await self._adapter.embed([candidate.content]))[0]
                if isinstance(vector, EmbeddingFailure):
                    raise ValueError(f"summary embedding failed: {vector.code.value}")
                chunks.append(MemoryChunk(
                    user_id=user_id,
                    conversation_id=conversation_id,
                    turn_id=window[-1].id,
                    content=candidate.content,
                    chunk_type=ChunkType.SUMMARY,
                    importance=candidate.importance_hint,
                    embedding=tuple(vector),
                    metadata=dict(candidate.metadata),
                ))
            await self._set_state(key, TurnState.WRITING)
            await asyncio.to_thread(self._store.commit, key, chunks, [])
        except Exception as exc:
            logger.warning("Summary %s failed: %s", key, exc)
            await self._mark_failed(key, f"{type(exc).__name__}: {exc}")
            return TurnOutcome(key, Outcome.FAILED, reason=str(exc))
        self.stats.summaries += len(chunks)
        logger.info("Summarised %d turns of conversation %s.", len(window), conversation_id)
        return TurnOutcome(key, Outcome.INDEXED, chunks=len(chunks))

    def _build_records(self, turn: Turn, candidates: Sequence[Candidate], vectors: Sequence):
        chunks: List[MemoryChunk] = []
        entries: List[KnowledgeEntry] = []
        skipped = 0
        for cand, vector in zip(candidates, vectors):
            if isinstance(vector, EmbeddingFailure):
                logger.info(
                    "Skipping candidate from turn %s (%s): %s",
                    turn.id, vector.code.value, vector.message,
                )
                skipped += 1
                continue
            metadata = dict(cand.metadata)
            metadata["role"] = turn.role
            chunks.append(MemoryChunk(
                user_id=turn.user_id,
                conversation_id=turn.conversation_id,
                turn_id=turn.id,
                content=cand.content,
                chunk_type=cand.chunk_type,
                importance=cand.importance_hint,
                embedding=tuple(vector),
                metadata=metadata,
                created_at=turn.created_at,
            ))
            if cand.importance_hint >= self._promote_importance:
                entries.append(KnowledgeEntry(
                    user_id=turn.user_id,
                    content=cand.content,
                    source_type=SourceType.CONVERSATION,
                    source_id=turn.conversation_id,
                    category=cand.chunk_type.value,
                    title=cand.content[:80],
                    embedding=list(vector),
                    importance=cand.importance_hint,
                    tags={cand.chunk_type.value, "auto-extracted"},
                    metadata={"turn_id": turn.id},
                ))
        return chunks, entries, skipped

    async def _set_state(self, key: str, state: TurnState) -> None:
        await asyncio.to_thread(self._store.set_state, key, state)

    async def _mark_failed(self, key: str, reason: str) -> None:
        self.stats.failed += 1
        self.stats.recent_failures = (self.stats.recent_failures + [key])[-20:]
        try:
            await asyncio.to_thread(self._store.set_state, key, TurnState.FAILED, reason)
        except Exception:
            logger.exception("Could not record failure for %s.", key)

