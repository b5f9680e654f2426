"""Ranked Retriever -- composite-ranked, budget-limited context bundles.

Three bounded reads are merged into one ranking:

1. the most recent raw turns (by recency, not similarity);
2. memory chunks above the chunk similarity threshold;
3. knowledge entries above the entry similarity threshold.

Similarity items rank by ``similarity * importance``; recency turns get a
fixed pseudo-rank so they interleave with, rather than dominate, memory.
Items are accepted greedily in rank order while the budget holds and are
never split.  Retrieval is read-only and never raises: any store failure
yields an empty bundle so the assistant can still answer without memory.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import List, Optional, Sequence, Union

from amre.models import (
    Origin,
    RetrievalBudget,
    RetrievalBundle,
    RetrievalItem,
    SourceType,
    estimate_tokens,
    utcnow,
)
from amre.storage.base import KnowledgeStore

logger = logging.getLogger(__name__)


def composite_rank(similarity: float, importance: float) -> float:
    return similarity * importance


def order_items(items: Sequence[RetrievalItem]) -> List[RetrievalItem]:
    """Rank descending, newest first on ties."""
    return sorted(items, key=lambda i: (i.rank, i.created_at.timestamp()), reverse=True)


def fill_budget(items: Sequence[RetrievalItem], budget: RetrievalBudget) -> List[RetrievalItem]:
    accepted: List[RetrievalItem] = []
    used = 0
    for item in items:
        if budget.max_items is not None and len(accepted) >= budget.max_items:
            break
        if used + item.token_cost > budget.max_tokens:
            continue
        accepted.append(item)
        used += item.token_cost
    return accepted


class RankedRetriever:
    def __init__(
        self,
        store: KnowledgeStore,
        chunk_threshold: float = 0.3,
        entry_threshold: float = 0.5,
        top_k: int = 10,
        recent_window: int = 6,
        recency_rank: float = 0.35,
    ) -> None:
        self._store = store
        self.chunk_threshold = chunk_threshold
        self.entry_threshold = entry_threshold
        self.top_k = top_k
        self.recent_window = recent_window
        self.recency_rank = recency_rank

    def retrieve(
        self,
        query_embedding: Sequence[float],
        user_id: str,
        budget: Union[RetrievalBudget, int],
        category: Optional[str] = None,
        source_type: Optional[SourceType] = None,
        chunk_threshold: Optional[float] = None,
        entry_threshold: Optional[float] = None,
        now: Optional[datetime] = None,
    ) -> RetrievalBundle:
        budget = RetrievalBudget.coerce(budget)
        try:
            candidates = self._gather(
                query_embedding, user_id, category, source_type,
                self.chunk_threshold if chunk_threshold is None else chunk_threshold,
                self.entry_threshold if entry_threshold is None else entry_threshold,
                now or utcnow(),
            )
        except Exception as exc:
            logger.warning("Retrieval for user %s failed; returning empty bundle: %s", user_id, exc)
            return RetrievalBundle(budget=budget)

        accepted = fill_budget(order_items(candidates), budget)
        return RetrievalBundle(
            items=tuple(accepted),
            budget=budget,
            tokens_used=sum(i.token_cost for i in accepted),
            considered=len(candidates),
        )

    def _gather(self, query_embedding, user_id, category, source_type,
                chunk_threshold, entry_threshold, now) -> List[RetrievalItem]:
        items: List[RetrievalItem] = []

        for turn in self._store.recent_turns(user_id, self.recent_window):
            content = f"{turn.role}: {turn.content}"
            items.append(RetrievalItem(
                origin=Origin.TURN,
                source_id=turn.id,
                content=content,
                similarity=None,
                importance=self.recency_rank,
                rank=self.recency_rank,
                created_at=turn.created_at,
                token_cost=estimate_tokens(content),
                metadata={"conversation_id": turn.conversation_id},
            ))

        for chunk, sim in self._store.search_chunks(
            user_id, query_embedding, self.top_k, threshold=chunk_threshold,
        ):
            items.append(RetrievalItem(
                origin=Origin.CHUNK,
                source_id=chunk.id,
                content=chunk.content,
                similarity=sim,
                importance=chunk.importance,
                rank=composite_rank(sim, chunk.importance),
                created_at=chunk.created_at,
                token_cost=estimate_tokens(chunk.content),
                metadata={"chunk_type": chunk.chunk_type.value, "conversation_id": chunk.conversation_id},
            ))

        for entry, sim in self._store.search_entries(
            user_id, query_embedding, self.top_k, threshold=entry_threshold,
            category=category, source_type=source_type, now=now,
        ):
            # Expired or inactive entries never leave the retriever.
            if not entry.is_retrievable(now):
                continue
            items.append(RetrievalItem(
                origin=Origin.ENTRY,
                source_id=entry.id,
                content=entry.content,
                similarity=sim,
                importance=entry.importance,
                rank=composite_rank(sim, entry.importance),
                created_at=entry.created_at,
                token_cost=estimate_tokens(entry.content),
                metadata={
                    "category": entry.category,
                    "source_type": entry.source_type.value,
                    "title": entry.title,
                },
            ))
        return items
