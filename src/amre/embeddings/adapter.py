"""Batching, backoff and per-item isolation around an embedding backend.

:class:`EmbeddingAdapter` is the only place in AMRE that retries anything.
Call sites receive either a vector or an :class:`~amre.errors.EmbeddingFailure`
for every input, in input order, or a bulk
:class:`~amre.errors.TransientProviderError` once the retry ceiling is hit.
Items are never silently dropped.
"""

from __future__ import annotations

import asyncio
import logging
import math
import random
from typing import Awaitable, Callable, Sequence, Union

from amre.config import AmreSettings
from amre.embeddings.backends import EmbeddingBackend, build_backend
from amre.embeddings.cache import EmbeddingCache
from amre.errors import (
    EmbeddingErrorCode,
    EmbeddingFailure,
    PermanentInputError,
    ProviderError,
    TransientProviderError,
)

logger = logging.getLogger(__name__)

EmbeddingResult = Union[list[float], EmbeddingFailure]
SleepFn = Callable[[float], Awaitable[None]]


class EmbeddingAdapter:
    """Quota-aware wrapper over an :class:`EmbeddingBackend`.

    Args:
        backend: Provider backend doing the actual HTTP call.
        batch_size: Provider cap on texts per request.
        max_attempts: Attempts per batch before surfacing a transient failure.
        backoff_base: Base delay in seconds (``base * 2**attempt``, jittered).
        backoff_max: Upper bound for a single delay.
        max_input_chars: Longer texts are rejected without a provider call.
        sleep: Awaitable sleep, injectable for tests.
        rng: Uniform ``[0, 1)`` source for jitter, injectable for tests.
        cache: Optional vector cache; cached texts skip the provider.
    """

    def __init__(
        self,
        backend: EmbeddingBackend,
        batch_size: int = 100,
        max_attempts: int = 3,
        backoff_base: float = 1.0,
        backoff_max: float = 30.0,
        max_input_chars: int = 8000,
        sleep: SleepFn | None = None,
        rng: Callable[[], float] | None = None,
        cache: EmbeddingCache | None = None,
    ) -> None:
        if batch_size < 1:
            raise ValueError("batch_size must be positive")
        if max_attempts < 1:
            raise ValueError("max_attempts must be positive")
        self._backend = backend
        self.batch_size = batch_size
        self.max_attempts = max_attempts
        self._backoff_base = backoff_base
        self._backoff_max = backoff_max
        self._max_input_chars = max_input_chars
        self._sleep: SleepFn = sleep or asyncio.sleep
        self._rng = rng or random.random
        self.cache = cache
        self.provider_calls: int = 0
        """Number of backend requests issued, including retries."""

    @classmethod
    def from_settings(cls, settings: AmreSettings) -> "EmbeddingAdapter":
        return cls(
            build_backend(settings),
            batch_size=settings.EMBED_BATCH_SIZE,
            max_attempts=settings.EMBED_MAX_ATTEMPTS,
            backoff_base=settings.EMBED_BACKOFF_BASE,
            backoff_max=settings.EMBED_BACKOFF_MAX,
            max_input_chars=settings.EMBED_MAX_INPUT_CHARS,
            cache=EmbeddingCache(settings.EMBED_CACHE_SIZE, settings.EMBED_CACHE_TTL),
        )

    @property
    def dimensions(self) -> int:
        return self._backend.dimensions

    def requests_for(self, n_texts: int) -> int:
        """Provider requests needed for *n_texts* on the happy path."""
        return math.ceil(max(0, n_texts) / self.batch_size)

    async def close(self) -> None:
        await self._backend.close()

    # -- Public API ---------------------------------------------------------

    async def embed(
        self,
        texts: Sequence[str],
        raise_on_exhaustion: bool = True,
    ) -> list[EmbeddingResult]:
        """Embed *texts*, returning one vector or failure per input.

        With ``raise_on_exhaustion=False`` a batch that keeps failing
        transiently yields ``rate_limited`` failures for its items instead of
        raising, and later batches are not attempted.

        Raises:
            TransientProviderError: A batch still failed transiently after
                ``max_attempts`` and *raise_on_exhaustion* is set.  No partial
                results are returned.
        """
        results: list[EmbeddingResult | None] = [None] * len(texts)
        valid: list[int] = []
        for idx, text in enumerate(texts):
            failure = self._validate(text)
            if failure is not None:
                logger.info("Skipping embedding input %d: %s", idx, failure.message)
                results[idx] = failure
                continue
            cached = self.cache.get(text) if self.cache is not None else None
            if cached is not None:
                results[idx] = cached
            else:
                valid.append(idx)

        for start in range(0, len(valid), self.batch_size):
            batch_idx = valid[start:start + self.batch_size]
            try:
                vectors = await self._embed_with_retries([texts[i] for i in batch_idx])
            except TransientProviderError as exc:
                if raise_on_exhaustion:
                    raise
                failure = EmbeddingFailure(EmbeddingErrorCode.RATE_LIMITED, exc.message)
                for i in valid[start:]:
                    results[i] = failure
                break
            for i, vec in zip(batch_idx, vectors):
                results[i] = vec
                if self.cache is not None and not isinstance(vec, EmbeddingFailure):
                    self.cache.put(texts[i], vec)
        return results  # type: ignore[return-value]

    async def embed_one(self, text: str) -> list[float]:
        """Embed a single text (e.g. a query), raising on failure."""
        result = (await self.embed([text]))[0]
        if isinstance(result, EmbeddingFailure):
            if result.code is EmbeddingErrorCode.INVALID_INPUT:
                raise PermanentInputError(result.message)
            raise ProviderError(result.message)
        return result

    # -- Internal helpers ---------------------------------------------------

    def _validate(self, text: str) -> EmbeddingFailure | None:
        if not isinstance(text, str) or not text.strip():
            return EmbeddingFailure(EmbeddingErrorCode.INVALID_INPUT, "empty text")
        if len(text) > self._max_input_chars:
            return EmbeddingFailure(
                EmbeddingErrorCode.INVALID_INPUT,
                f"text length {len(text)} exceeds {self._max_input_chars} characters",
            )
        return None

    def _backoff(self, attempt: int, retry_after: float | None) -> float:
        delay = min(self._backoff_max, self._backoff_base * (2 ** attempt))
        delay = delay * (0.5 + self._rng() / 2)
        if retry_after is not None:
            delay = max(delay, min(retry_after, self._backoff_max))
        return delay

    async def _embed_with_retries(self, batch: list[str]) -> list[EmbeddingResult]:
        attempt = 0
        while True:
            self.provider_calls += 1
            try:
                vectors = await self._backend.embed_batch(batch)
            except TransientProviderError as exc:
                if attempt + 1 >= self.max_attempts:
                    raise TransientProviderError(
                        f"Embedding batch of {len(batch)} still failing after "
                        f"{self.max_attempts} attempts: {exc.message}",
                        status_code=exc.status_code,
                        retry_after=exc.retry_after,
                    ) from exc
                delay = self._backoff(attempt, exc.retry_after)
                logger.warning(
                    "Embedding batch of %d failed transiently (%s). Retrying in %.1fs "
                    "(attempt %d/%d).",
                    len(batch), exc, delay, attempt + 1, self.max_attempts,
                )
                await self._sleep(delay)
                attempt += 1
                continue
            except PermanentInputError as exc:
                return await self._isolate_invalid(batch, exc)
            except ProviderError as exc:
                logger.error("Embedding batch of %d failed: %s", len(batch), exc)
                failure = EmbeddingFailure(EmbeddingErrorCode.PROVIDER_ERROR, str(exc))
                return [failure] * len(batch)
            return [self._check_vector(v) for v in vectors]

    async def _isolate_invalid(
        self, batch: list[str], exc: PermanentInputError,
    ) -> list[EmbeddingResult]:
        if len(batch) == 1:
            logger.info("Provider rejected embedding input: %s", exc)
            return [EmbeddingFailure(EmbeddingErrorCode.INVALID_INPUT, str(exc))]
        mid = len(batch) // 2
        left = await self._embed_with_retries(batch[:mid])
        right = await self._embed_with_retries(batch[mid:])
        return left + right

    def _check_vector(self, vector: list[float]) -> EmbeddingResult:
        if len(vector) != self.dimensions:
            return EmbeddingFailure(
                EmbeddingErrorCode.PROVIDER_ERROR,
                f"expected {self.dimensions} dimensions, got {len(vector)}",
            )
        return [float(v) for v in vector]
