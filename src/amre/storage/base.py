from __future__ import annotations

import math
from datetime import datetime
from typing import Iterable, List, Optional, Protocol, Sequence, Tuple

from amre.models import (
    ChunkType,
    CoverageStats,
    KnowledgeEntry,
    LedgerRecord,
    MemoryChunk,
    SourceType,
    Turn,
    TurnState,
)

ScoredEntry = Tuple[KnowledgeEntry, float]
ScoredChunk = Tuple[MemoryChunk, float]


class KnowledgeStore(Protocol):
    """Persisted state for one logical AMRE deployment.

    Every read is scoped by user.  Similarity reads only consider active,
    unexpired, embedded rows.  ``claim`` is the at-most-once primitive: it
    must be a uniqueness-constrained insert, never an in-process check.
    """

    # -- Turns and the processing ledger -------------------------------

    def claim(self, key: str, user_id: str, turn: Optional[Turn] = None) -> bool:
        ...

    def ledger_record(self, key: str) -> Optional[LedgerRecord]:
        ...

    def set_state(self, key: str, state: TurnState, reason: Optional[str] = None) -> None:
        ...

    def commit(self, key: str, chunks: Sequence[MemoryChunk], entries: Sequence[KnowledgeEntry]) -> None:
        ...

    def recent_turns(self, user_id: str, limit: int) -> List[Turn]:
        ...

    def conversation_turns(self, user_id: str, conversation_id: str,
                           after: Optional[datetime] = None) -> List[Turn]:
        ...

    def last_summary_end(self, user_id: str, conversation_id: str) -> Optional[datetime]:
        ...

    def conversation_exists(self, user_id: str, conversation_id: str) -> bool:
        ...

    def forget_conversation(self, user_id: str, conversation_id: str) -> int:
        ...

    # -- Similarity queries ----------------------------------------------

    def search_chunks(self, user_id: str, embedding: Sequence[float], limit: int,
                      threshold: float = 0.0, chunk_type: Optional[ChunkType] = None) -> List[ScoredChunk]:
        ...

    def search_entries(self, user_id: str, embedding: Sequence[float], limit: int,
                       threshold: float = 0.0, category: Optional[str] = None,
                       source_type: Optional[SourceType] = None,
                       now: Optional[datetime] = None) -> List[ScoredEntry]:
        ...

    def similar_entries(self, entry_id: str, threshold: float, limit: int = 10) -> List[ScoredEntry]:
        ...

    # -- Entries -----------------------------------------------------------

    def add_entry(self, entry: KnowledgeEntry) -> KnowledgeEntry:
        ...

    def get_entry(self, entry_id: str) -> Optional[KnowledgeEntry]:
        ...

    def list_entries(self, user_id: str, category: Optional[str] = None,
                     source_type: Optional[SourceType] = None, tag: Optional[str] = None,
                     include_inactive: bool = False, limit: int = 100) -> List[KnowledgeEntry]:
        ...

    def embedded_entry_ids(self, user_id: Optional[str] = None) -> List[str]:
        ...

    def user_ids(self) -> List[str]:
        ...

    def entries_missing_embedding(self, limit: int, user_id: Optional[str] = None,
                                  source_type: Optional[SourceType] = None,
                                  exclude_ids: Iterable[str] = ()) -> List[KnowledgeEntry]:
        ...

    def coverage(self, user_id: Optional[str] = None,
                 source_type: Optional[SourceType] = None) -> CoverageStats:
        ...

    def set_embedding(self, entry_id: str, embedding: Sequence[float]) -> None:
        ...

    def set_importance(self, entry_id: str, importance: float) -> None:
        ...

    def set_active(self, entry_id: str, active: bool) -> None:
        ...

    def merge_entries(self, survivor_id: str, loser_id: str) -> bool:
        ...

    # -- Reaper ------------------------------------------------------------

    def expired_entry_ids(self, now: datetime, user_id: Optional[str] = None) -> List[str]:
        ...

    def delete_entries(self, entry_ids: Sequence[str]) -> int:
        ...

    def flag_orphaned(self, entry_id: str, reason: str) -> None:
        ...

    def close(self) -> None:
        ...


def cosine_similarity(a: Sequence[float], b: Sequence[float]) -> float:
    if not a or not b or len(a) != len(b):
        return 0.0
    dot = sum(x * y for x, y in zip(a, b))
    norm_a = math.sqrt(sum(x * x for x in a))
    norm_b = math.sqrt(sum(y * y for y in b))
    if norm_a == 0 or norm_b == 0:
        return 0.0
    return dot / (norm_a * norm_b)


def pick_survivor(a: KnowledgeEntry, b: KnowledgeEntry) -> Tuple[KnowledgeEntry, KnowledgeEntry]:
    """Return ``(survivor, loser)``: higher importance, then earlier creation."""
    ordered = sorted((a, b), key=lambda e: (-e.importance, e.created_at, e.id))
    return ordered[0], ordered[1]
