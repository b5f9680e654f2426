"""Central configuration for AMRE.

All settings are loaded from environment variables (with ``.env`` file support
via *python-dotenv*, loaded in :mod:`amre.__main__`).  Validation and type
coercion are handled by ``pydantic-settings``.  Every variable carries the
``AMRE_`` prefix, e.g. ``AMRE_POSTGRES_URL``.

Usage::

    from amre.config import get_settings

    settings = get_settings()
    print(settings.DEDUP_THRESHOLD)

The similarity thresholds (dedup, chunk and entry retrieval) are tunables,
not validated constants.  Adjust them against real data before relying on
their defaults.
"""

from __future__ import annotations

import functools
import logging
from typing import Any, ClassVar

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger(__name__)

_EMBEDDING_BACKENDS = {"openrouter", "openai", "ollama", "hash"}

# ---------------------------------------------------------------------------
# Settings model
# ---------------------------------------------------------------------------


class AmreSettings(BaseSettings):
    """Validated configuration for the memory engine.

    No field is required: with an empty environment the engine runs against
    the in-memory store and the deterministic hash embedder, which is what
    the test-suite and local experiments use.
    """

    model_config = SettingsConfigDict(
        env_prefix="AMRE_",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # ------------------------------------------------------------------
    # Infrastructure
    # ------------------------------------------------------------------
    POSTGRES_URL: str | None = Field(
        default=None,
        description=(
            "PostgreSQL DSN (with the pgvector extension).  When unset or "
            "unreachable the engine falls back to the in-memory store."
        ),
    )
    REDIS_URL: str | None = Field(
        default=None,
        description=(
            "Redis URL used for single-flight maintenance locks.  When unset "
            "locks are process-local."
        ),
    )

    # ------------------------------------------------------------------
    # Embedding provider
    # ------------------------------------------------------------------
    EMBEDDING_BACKEND: str = Field(
        default="hash",
        description="Embedding backend: 'openrouter', 'openai', 'ollama' or 'hash'.",
    )
    EMBEDDING_MODEL: str = Field(
        default="openai/text-embedding-3-small",
        description=(
            "Model used for vector embeddings.  CANNOT be changed after the "
            "first run without invalidating all stored vectors."
        ),
    )
    EMBEDDING_DIMENSIONS: int = Field(
        default=1536,
        gt=0,
        description="Dimensionality of the embedding model output.",
    )
    EMBEDDING_BASE_URL: str | None = Field(
        default=None,
        description="Override the provider base URL (proxies, self-hosted gateways).",
    )
    OPENROUTER_API_KEY: str | None = Field(
        default=None,
        description="API key for OpenRouter or any OpenAI-compatible embeddings endpoint.",
    )
    EMBED_BATCH_SIZE: int = Field(
        default=100,
        ge=1,
        description="Maximum number of texts sent to the provider per request.",
    )
    EMBED_MAX_ATTEMPTS: int = Field(
        default=3,
        ge=1,
        description="Attempts per batch before a transient failure is surfaced.",
    )
    EMBED_BACKOFF_BASE: float = Field(
        default=1.0,
        ge=0.0,
        description="Base delay in seconds for jittered exponential backoff.",
    )
    EMBED_BACKOFF_MAX: float = Field(
        default=30.0,
        ge=0.0,
        description="Upper bound for a single backoff delay in seconds.",
    )
    EMBED_TIMEOUT: float = Field(
        default=30.0,
        gt=0.0,
        description="Per-request timeout in seconds.  Timeouts are retried.",
    )
    EMBED_MAX_INPUT_CHARS: int = Field(
        default=8000,
        ge=1,
        description="Texts longer than this are rejected as invalid input.",
    )
    EMBED_REQUESTS_PER_MINUTE: int = Field(
        default=3500,
        ge=1,
        description="Provider request budget used to pace backfill batches.",
    )
    EMBED_COST_PER_TEXT: float = Field(
        default=0.00002,
        ge=0.0,
        description="Estimated USD cost of one embedded text (dry-run estimates).",
    )
    EMBED_CACHE_SIZE: int = Field(
        default=1000,
        ge=0,
        description="Vectors kept in the in-process embedding cache.  0 disables it.",
    )
    EMBED_CACHE_TTL: float = Field(
        default=86_400.0,
        ge=0.0,
        description="Seconds a cached vector stays valid.  0 keeps it until evicted.",
    )

    # ------------------------------------------------------------------
    # Retrieval
    # ------------------------------------------------------------------
    CHUNK_SIMILARITY_THRESHOLD: float = Field(
        default=0.3,
        ge=0.0,
        le=1.0,
        description="Minimum cosine similarity for memory chunks.  0 disables filtering.",
    )
    ENTRY_SIMILARITY_THRESHOLD: float = Field(
        default=0.5,
        ge=0.0,
        le=1.0,
        description="Minimum cosine similarity for knowledge entries.  0 disables filtering.",
    )
    RETRIEVAL_TOP_K: int = Field(
        default=10,
        ge=1,
        description="Top-K per similarity query (chunks and entries).",
    )
    RECENT_TURN_WINDOW: int = Field(
        default=6,
        ge=0,
        description="Number of most recent raw turns always offered to the bundle.",
    )
    RECENCY_RANK: float = Field(
        default=0.35,
        ge=0.0,
        le=1.0,
        description="Fixed pseudo-rank given to recency-window turns.",
    )
    TOKEN_BUDGET: int = Field(
        default=2048,
        ge=1,
        description="Default token budget for a retrieval bundle.",
    )

    # ------------------------------------------------------------------
    # Indexer
    # ------------------------------------------------------------------
    SUMMARY_EVERY_N_TURNS: int = Field(
        default=20,
        ge=1,
        description="Produce one summary chunk per conversation every N turns.",
    )
    PROMOTE_IMPORTANCE: float = Field(
        default=0.85,
        ge=0.0,
        le=1.0,
        description=(
            "Candidates at or above this importance are also written as "
            "conversation-sourced knowledge entries."
        ),
    )

    # ------------------------------------------------------------------
    # Maintenance
    # ------------------------------------------------------------------
    DEDUP_THRESHOLD: float = Field(
        default=0.95,
        ge=0.0,
        le=1.0,
        description="Cosine similarity above which two entries are duplicates.",
    )
    BACKFILL_BATCH_SIZE: int = Field(
        default=50,
        ge=1,
        description="Entries embedded per backfill batch.",
    )
    MAINTENANCE_INTERVAL: int = Field(
        default=3600,
        ge=10,
        description="Seconds between scheduled maintenance cycles.",
    )
    MAINTENANCE_DEADLINE: float = Field(
        default=600.0,
        gt=0.0,
        description="Soft deadline in seconds for one maintenance cycle.",
    )
    JOB_LOCK_TTL: int = Field(
        default=900,
        ge=1,
        description="Seconds before an abandoned maintenance lock expires.",
    )

    LOG_LEVEL: str = Field(
        default="INFO",
        description="Root log level for the CLI entry points.",
    )

    # ------------------------------------------------------------------
    # Validators
    # ------------------------------------------------------------------

    @field_validator("EMBEDDING_BACKEND", mode="before")
    @classmethod
    def _normalise_backend(cls, value: Any) -> str:
        backend = str(value).strip().lower()
        if backend not in _EMBEDDING_BACKENDS:
            raise ValueError(
                f"EMBEDDING_BACKEND must be one of {sorted(_EMBEDDING_BACKENDS)}, got {value!r}"
            )
        return backend

    @field_validator("LOG_LEVEL", mode="before")
    @classmethod
    def _normalise_level(cls, value: Any) -> str:
        level = str(value).strip().upper()
        if level not in logging.getLevelNamesMapping():
            raise ValueError(f"Unknown log level {value!r}")
        return level

    # ------------------------------------------------------------------
    # Repr safety -- redact secrets in logs / debug output
    # ------------------------------------------------------------------

    _SENSITIVE_FIELDS: ClassVar[set[str]] = {
        "OPENROUTER_API_KEY", "POSTGRES_URL", "REDIS_URL",
    }

    def __repr__(self) -> str:
        fields = []
        for name in type(self).model_fields:
            val = getattr(self, name)
            if name in self._SENSITIVE_FIELDS:
                val = "***" if val else None
            fields.append(f"{name}={val!r}")
        return f"AmreSettings({', '.join(fields)})"


# ---------------------------------------------------------------------------
# Lazy singleton accessor
# ---------------------------------------------------------------------------


@functools.lru_cache(maxsize=1)
def get_settings() -> AmreSettings:
    """Return the global :class:`AmreSettings` singleton.

    The instance is created on first call so that the module can be imported
    safely before any ``.env`` file has been loaded.  Subsequent calls return
    the cached instance.
    """
    logger.debug("Initialising AmreSettings from environment.")
    return AmreSettings()
