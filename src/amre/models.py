from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Set, Tuple, Union


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return str(uuid.uuid4())


def estimate_tokens(text: str) -> int:
    return max(1, int(len(text) * 0.25))


class SourceType(str, Enum):
    CONVERSATION = "conversation"
    FILE = "file"
    EMAIL = "email"
    DRIVE_DOCUMENT = "drive-document"
    MANUAL = "manual"
    EXTRACTED = "extracted"


class ChunkType(str, Enum):
    FACT = "fact"
    PREFERENCE = "preference"
    DECISION = "decision"
    EVENT = "event"
    RELATIONSHIP = "relationship"
    SUMMARY = "summary"


class TurnState(str, Enum):
    PENDING = "pending"
    EXTRACTING = "extracting"
    EMBEDDING = "embedding"
    WRITING = "writing"
    DONE = "done"
    FAILED = "failed"


class Origin(str, Enum):
    TURN = "turn"
    CHUNK = "chunk"
    ENTRY = "entry"


@dataclass
class Turn:
    """One persisted conversational turn, as handed over by the chat layer."""
    id: str
    user_id: str
    conversation_id: str
    role: str
    content: str
    created_at: datetime = field(default_factory=utcnow)


@dataclass
class KnowledgeEntry:
    user_id: str
    content: str
    source_type: SourceType = SourceType.MANUAL
    source_id: Optional[str] = None
    category: str = "general"
    title: str = ""
    embedding: Optional[List[float]] = None
    importance: float = 0.5
    tags: Set[str] = field(default_factory=set)
    metadata: Dict[str, Any] = field(default_factory=dict)
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)
    expires_at: Optional[datetime] = None
    is_active: bool = True
    id: str = field(default_factory=new_id)

    def __post_init__(self) -> None:
        self.source_type = SourceType(self.source_type)
        self.tags = {t.strip().lower() for t in self.tags if t and t.strip()}
        if not 0.0 <= self.importance <= 1.0:
            raise ValueError(f"importance must be within [0, 1], got {self.importance}")

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        if self.expires_at is None:
            return False
        return self.expires_at <= (now or utcnow())

    def is_retrievable(self, now: Optional[datetime] = None) -> bool:
        return self.is_active and not self.is_expired(now)

    @property
    def is_orphaned(self) -> bool:
        return bool(self.metadata.get("orphaned"))

    def embedding_text(self) -> str:
        """Text sent to the embedding provider for this entry."""
        parts = []
        if self.title:
            parts.append(f"Title: {self.title}")
        if self.category:
            parts.append(f"Category: {self.category}")
        if self.tags:
            parts.append(f"Tags: {', '.join(sorted(self.tags))}")
        header = "\n".join(parts)
        return f"{header}\n\n{self.content}" if header else self.content


@dataclass(frozen=True)
class MemoryChunk:
    """Auto-extracted fact.  Frozen: a correction is a new chunk."""
    user_id: str
    conversation_id: str
    content: str
    chunk_type: ChunkType
    importance: float
    embedding: Tuple[float, ...] = ()
    turn_id: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)
    created_at: datetime = field(default_factory=utcnow)
    id: str = field(default_factory=new_id)


@dataclass(frozen=True)
class Candidate:
    content: str
    chunk_type: ChunkType
    importance_hint: float
    metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass
class LedgerRecord:
    key: str
    user_id: str
    state: TurnState = TurnState.PENDING
    reason: Optional[str] = None
    updated_at: datetime = field(default_factory=utcnow)


@dataclass
class CoverageStats:
    total: int = 0
    embedded: int = 0

    @property
    def missing(self) -> int:
        return self.total - self.embedded

    @property
    def coverage_pct(self) -> float:
        if self.total == 0:
            return 100.0
        return round(100.0 * self.embedded / self.total, 2)


@dataclass(frozen=True)
class RetrievalItem:
    origin: Origin
    source_id: str
    content: str
    similarity: Optional[float]
    importance: float
    rank: float
    created_at: datetime
    token_cost: int
    metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class RetrievalBudget:
    max_tokens: int
    max_items: Optional[int] = None

    @classmethod
    def coerce(cls, budget: Union["RetrievalBudget", int]) -> "RetrievalBudget":
        if isinstance(budget, RetrievalBudget):
            return budget
        return cls(max_tokens=int(budget))


@dataclass(frozen=True)
class RetrievalBundle:
    items: Tuple[RetrievalItem, ...] = ()
    budget: Optional[RetrievalBudget] = None
    tokens_used: int = 0
    considered: int = 0

    def __len__(self) -> int:
        return len(self.items)

    def __iter__(self):
        return iter(self.items)

    def render(self) -> str:
        """Plain-text block for prompt assembly."""
        return "\n".join(f"[{item.origin.value}] {item.content}" for item in self.items)
