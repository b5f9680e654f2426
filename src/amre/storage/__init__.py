"""Knowledge store backends for AMRE."""

from .base import KnowledgeStore, ScoredChunk, ScoredEntry, cosine_similarity, pick_survivor
from .memory import InMemoryKnowledgeStore

__all__ = [
    "InMemoryKnowledgeStore",
    "KnowledgeStore",
    "ScoredChunk",
    "ScoredEntry",
    "cosine_similarity",
    "pick_survivor",
]
