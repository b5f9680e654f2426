from __future__ import annotations

import copy
import threading
from datetime import datetime
from typing import Dict, Iterable, List, Optional, Sequence

from amre.errors import ConstraintViolation
from amre.models import (
    ChunkType,
    CoverageStats,
    KnowledgeEntry,
    LedgerRecord,
    MemoryChunk,
    SourceType,
    Turn,
    TurnState,
    utcnow,
)
from amre.storage.base import ScoredChunk, ScoredEntry, cosine_similarity


class InMemoryKnowledgeStore:
    """Process-local store used for tests and as the Postgres fallback.

    A single lock guards every method, which makes ``claim`` and ``commit``
    atomic within the process.  Entries are copied on the way in and out so
    callers cannot mutate stored state behind the store's back.
    """

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._entries: Dict[str, KnowledgeEntry] = {}
        self._chunks: Dict[str, MemoryChunk] = {}
        self._turns: Dict[str, Turn] = {}
        self._ledger: Dict[str, LedgerRecord] = {}

    # -- Turns and the processing ledger -------------------------------

    def claim(self, key: str, user_id: str, turn: Optional[Turn] = None) -> bool:
        with self._lock:
            if key in self._ledger:
                return False
            self._ledger[key] = LedgerRecord(key=key, user_id=user_id)
            if turn is not None:
                self._turns.setdefault(turn.id, copy.copy(turn))
            return True

    def ledger_record(self, key: str) -> Optional[LedgerRecord]:
        with self._lock:
            rec = self._ledger.get(key)
            return copy.copy(rec) if rec else None

    def set_state(self, key: str, state: TurnState, reason: Optional[str] = None) -> None:
        with self._lock:
            rec = self._ledger.get(key)
            if rec is None:
                raise KeyError(key)
            rec.state = state
            rec.reason = reason
            rec.updated_at = utcnow()

    def commit(self, key: str, chunks: Sequence[MemoryChunk], entries: Sequence[KnowledgeEntry]) -> None:
        with self._lock:
            if key not in self._ledger:
                raise KeyError(key)
            for chunk in chunks:
                if chunk.id in self._chunks:
                    raise ConstraintViolation(chunk.id)
            for entry in entries:
                if entry.id in self._entries:
                    raise ConstraintViolation(entry.id)
            for chunk in chunks:
                self._chunks[chunk.id] = chunk
            for entry in entries:
                self._entries[entry.id] = copy.deepcopy(entry)
            self.set_state(key, TurnState.DONE)

    def recent_turns(self, user_id: str, limit: int) -> List[Turn]:
        if limit <= 0:
            return []
        with self._lock:
            turns = [t for t in self._turns.values() if t.user_id == user_id]
        turns.sort(key=lambda t: t.created_at, reverse=True)
        return [copy.copy(t) for t in turns[:limit]]

    def conversation_turns(self, user_id: str, conversation_id: str,
                           after: Optional[datetime] = None) -> List[Turn]:
        with self._lock:
            turns = [
                t for t in self._turns.values()
                if t.user_id == user_id and t.conversation_id == conversation_id
                and (after is None or t.created_at > after)
            ]
        turns.sort(key=lambda t: (t.created_at, t.id))
        return [copy.copy(t) for t in turns]

    def last_summary_end(self, user_id: str, conversation_id: str) -> Optional[datetime]:
        with self._lock:
            ends = [
                datetime.fromisoformat(c.metadata["window_end"])
                for c in self._chunks.values()
                if c.user_id == user_id and c.conversation_id == conversation_id
                and c.chunk_type is ChunkType.SUMMARY and "window_end" in c.metadata
            ]
        return max(ends) if ends else None

    def conversation_exists(self, user_id: str, conversation_id: str) -> bool:
        with self._lock:
            return any(
                t.user_id == user_id and t.conversation_id == conversation_id
                for t in self._turns.values()
            )

    def forget_conversation(self, user_id: str, conversation_id: str) -> int:
        with self._lock:
            doomed = [
                tid for tid, t in self._turns.items()
                if t.user_id == user_id and t.conversation_id == conversation_id
            ]
            for tid in doomed:
                del self._turns[tid]
            return len(doomed)

    # -- Similarity queries ----------------------------------------------

    def search_chunks(self, user_id: str, embedding: Sequence[float], limit: int,
                      threshold: float = 0.0, chunk_type: Optional[ChunkType] = None) -> List[ScoredChunk]:
        with self._lock:
            pool = [
                c for c in self._chunks.values()
                if c.user_id == user_id and c.embedding
                and (chunk_type is None or c.chunk_type is ChunkType(chunk_type))
            ]
        scored = [(c, cosine_similarity(embedding, c.embedding)) for c in pool]
        scored = [(c, s) for c, s in scored if threshold <= 0 or s > threshold]
        scored.sort(key=lambda x: x[1], reverse=True)
        return scored[:limit]

    def search_entries(self, user_id: str, embedding: Sequence[float], limit: int,
                       threshold: float = 0.0, category: Optional[str] = None,
                       source_type: Optional[SourceType] = None,
                       now: Optional[datetime] = None) -> List[ScoredEntry]:
        now = now or utcnow()
        with self._lock:
            pool = [
                copy.deepcopy(e) for e in self._entries.values()
                if e.user_id == user_id and e.embedding is not None and e.is_retrievable(now)
                and (category is None or e.category == category)
                and (source_type is None or e.source_type is SourceType(source_type))
            ]
        scored = [(e, cosine_similarity(embedding, e.embedding)) for e in pool]
        scored = [(e, s) for e, s in scored if threshold <= 0 or s > threshold]
        scored.sort(key=lambda x: x[1], reverse=True)
        return scored[:limit]

    def similar_entries(self, entry_id: str, threshold: float, limit: int = 10) -> List[ScoredEntry]:
        with self._lock:
            target = self._entries.get(entry_id)
            if target is None or target.embedding is None:
                return []
            pool = [
                copy.deepcopy(e) for e in self._entries.values()
                if e.id != entry_id and e.user_id == target.user_id
                and e.is_active and e.embedding is not None
            ]
            vector = list(target.embedding)
        scored = [(e, cosine_similarity(vector, e.embedding)) for e in pool]
        scored = [(e, s) for e, s in scored if s > threshold]
        scored.sort(key=lambda x: x[1], reverse=True)
        return scored[:limit]

    # -- Entries -----------------------------------------------------------

    def add_entry(self, entry: KnowledgeEntry) -> KnowledgeEntry:
        with self._lock:
            if entry.id in self._entries:
                raise ConstraintViolation(entry.id)
            self._entries[entry.id] = copy.deepcopy(entry)
        return entry

    def get_entry(self, entry_id: str) -> Optional[KnowledgeEntry]:
        with self._lock:
            entry = self._entries.get(entry_id)
            return copy.deepcopy(entry) if entry else None

    def list_entries(self, user_id: str, category: Optional[str] = None,
                     source_type: Optional[SourceType] = None, tag: Optional[str] = None,
                     include_inactive: bool = False, limit: int = 100) -> List[KnowledgeEntry]:
        now = utcnow()
        with self._lock:
            rows = [
                copy.deepcopy(e) for e in self._entries.values()
                if e.user_id == user_id
                and (include_inactive or e.is_retrievable(now))
                and (category is None or e.category == category)
                and (source_type is None or e.source_type is SourceType(source_type))
                and (tag is None or tag.lower() in e.tags)
            ]
        rows.sort(key=lambda e: (-e.importance, e.created_at))
        return rows[:limit]

    def user_ids(self) -> List[str]:
        with self._lock:
            return sorted({e.user_id for e in self._entries.values()})

    def embedded_entry_ids(self, user_id: Optional[str] = None) -> List[str]:
        with self._lock:
            rows = [
                e for e in self._entries.values()
                if e.is_active and e.embedding is not None
                and (user_id is None or e.user_id == user_id)
            ]
        rows.sort(key=lambda e: (e.created_at, e.id))
        return [e.id for e in rows]

    def entries_missing_embedding(self, limit: int, user_id: Optional[str] = None,
                                  source_type: Optional[SourceType] = None,
                                  exclude_ids: Iterable[str] = ()) -> List[KnowledgeEntry]:
        excluded = set(exclude_ids)
        with self._lock:
            rows = [
                copy.deepcopy(e) for e in self._entries.values()
                if e.embedding is None and e.is_active and e.id not in excluded
                and (user_id is None or e.user_id == user_id)
                and (source_type is None or e.source_type is SourceType(source_type))
            ]
        rows.sort(key=lambda e: (e.created_at, e.id))
        return rows[:limit]

    def coverage(self, user_id: Optional[str] = None,
                 source_type: Optional[SourceType] = None) -> CoverageStats:
        with self._lock:
            rows = [
                e for e in self._entries.values()
                if e.is_active
                and (user_id is None or e.user_id == user_id)
                and (source_type is None or e.source_type is SourceType(source_type))
            ]
        return CoverageStats(
            total=len(rows),
            embedded=sum(1 for e in rows if e.embedding is not None),
        )

    def set_embedding(self, entry_id: str, embedding: Sequence[float]) -> None:
        with self._lock:
            entry = self._require(entry_id)
            entry.embedding = list(embedding)
            entry.updated_at = utcnow()

    def set_importance(self, entry_id: str, importance: float) -> None:
        if not 0.0 <= importance <= 1.0:
            raise ValueError(f"importance must be within [0, 1], got {importance}")
        with self._lock:
            entry = self._require(entry_id)
            entry.importance = importance
            entry.updated_at = utcnow()

    def set_active(self, entry_id: str, active: bool) -> None:
        with self._lock:
            entry = self._require(entry_id)
            entry.is_active = active
            entry.updated_at = utcnow()

    def merge_entries(self, survivor_id: str, loser_id: str) -> bool:
        with self._lock:
            survivor = self._entries.get(survivor_id)
            loser = self._entries.get(loser_id)
            if survivor is None or loser is None or not survivor.is_active or not loser.is_active:
                return False
            now = utcnow()
            loser.is_active = False
            loser.metadata["merged_into"] = survivor_id
            loser.updated_at = now
            survivor.tags |= loser.tags
            merged = list(survivor.metadata.get("merged_from", []))
            merged.append(loser_id)
            survivor.metadata["merged_from"] = merged
            survivor.updated_at = now
            return True

    # -- Reaper ------------------------------------------------------------

    def expired_entry_ids(self, now: datetime, user_id: Optional[str] = None) -> List[str]:
        with self._lock:
            return [
                e.id for e in self._entries.values()
                if e.is_expired(now) and (user_id is None or e.user_id == user_id)
            ]

    def delete_entries(self, entry_ids: Sequence[str]) -> int:
        with self._lock:
            removed = 0
            for entry_id in entry_ids:
                if self._entries.pop(entry_id, None) is not None:
                    removed += 1
            return removed

    def flag_orphaned(self, entry_id: str, reason: str) -> None:
        with self._lock:
            entry = self._require(entry_id)
            entry.metadata["orphaned"] = True
            entry.metadata["orphan_reason"] = reason
            entry.updated_at = utcnow()

    def close(self) -> None:
        return None

    def _require(self, entry_id: str) -> KnowledgeEntry:
        entry = self._entries.get(entry_id)
        if entry is None:
            raise KeyError(entry_id)
        return entry
