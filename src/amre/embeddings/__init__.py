"""Embedding provider adapter for AMRE."""

from .adapter import EmbeddingAdapter, EmbeddingResult
from .cache import CacheStats, EmbeddingCache
from .backends import (
    EmbeddingBackend,
    HashEmbeddingBackend,
    OllamaEmbeddingBackend,
    OpenRouterEmbeddingBackend,
    build_backend,
)

__all__ = [
    "EmbeddingAdapter",
    "EmbeddingResult",
    "EmbeddingBackend",
    "EmbeddingCache",
    "CacheStats",
    "HashEmbeddingBackend",
    "OllamaEmbeddingBackend",
    "OpenRouterEmbeddingBackend",
    "build_backend",
]
