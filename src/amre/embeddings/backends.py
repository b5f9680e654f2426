"""Embedding provider backends.

Each backend turns one already-validated batch of texts into one vector per
text and maps the provider's failure modes onto the AMRE error taxonomy:

* rate limits, timeouts, 5xx and dropped connections raise
  :class:`~amre.errors.TransientProviderError`;
* a request rejected because of its input (400/413/422) raises
  :class:`~amre.errors.PermanentInputError`;
* anything else raises :class:`~amre.errors.ProviderError`.

Retry, batching and per-item isolation live in
:class:`~amre.embeddings.adapter.EmbeddingAdapter`, never here.
"""

from __future__ import annotations

import asyncio
import hashlib
import logging
import math
import re
from typing import Any, Protocol

import aiohttp

from amre.config import AmreSettings
from amre.errors import PermanentInputError, ProviderError, TransientProviderError

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

OPENROUTER_BASE_URL: str = "https://openrouter.ai/api/v1"
"""Default OpenRouter API base URL."""

OPENAI_BASE_URL: str = "https://api.openai.com/v1"
"""Default OpenAI API base URL."""

OLLAMA_BASE_URL: str = "http://localhost:11434"
"""Default local Ollama URL."""

_INPUT_REJECTED_STATUSES = {400, 413, 422}

_TOKEN_RE = re.compile(r"[a-z0-9']+")


class EmbeddingBackend(Protocol):
    dimensions: int

    async def embed_batch(self, texts: list[str]) -> list[list[float]]:
        ...

    async def close(self) -> None:
        ...


# ---------------------------------------------------------------------------
# Offline backend
# ---------------------------------------------------------------------------


class HashEmbeddingBackend:
    """Deterministic offline embeddings.

    Each lower-cased token is hashed into a signed bucket, so texts sharing
    words land close together.  Useful for tests and for running the engine
    without a provider; not a substitute for a real model.
    """

    def __init__(self, dimensions: int = 384) -> None:
        self.dimensions = dimensions

    async def embed_batch(self, texts: list[str]) -> list[list[float]]:
        return [self.embed_text(t) for t in texts]

    def embed_text(self, text: str) -> list[float]:
        values = [0.0] * self.dimensions
        tokens = _TOKEN_RE.findall(text.lower()) or [text]
        for token in tokens:
            digest = hashlib.sha256(token.encode("utf-8")).digest()
            bucket = int.from_bytes(digest[:4], "big") % self.dimensions
            sign = 1.0 if digest[4] & 1 else -1.0
            values[bucket] += sign
        norm = math.sqrt(sum(v * v for v in values)) or 1.0
        return [v / norm for v in values]

    async def close(self) -> None:
        return None


# ---------------------------------------------------------------------------
# HTTP backends
# ---------------------------------------------------------------------------


class _HttpBackend:
    """Shared aiohttp session handling for the HTTP providers.

    The session is created lazily on first use so that constructing a
    backend never requires a running event loop.
    """

    def __init__(self, base_url: str, timeout: float) -> None:
        self._base_url = base_url.rstrip("/")
        self._timeout = timeout
        self._session: aiohttp.ClientSession | None = None

    def _get_headers(self) -> dict[str, str]:
        return {"Content-Type": "application/json"}

    async def _ensure_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(
                headers=self._get_headers(),
                timeout=aiohttp.ClientTimeout(total=self._timeout),
            )
        return self._session

    async def _post(self, endpoint: str, payload: dict[str, Any]) -> dict[str, Any]:
        session = await self._ensure_session()
        url = f"{self._base_url}{endpoint}"
        try:
            async with session.post(url, json=payload) as resp:
                if resp.status == 429:
                    raise TransientProviderError(
                        "Rate limited (429)",
                        status_code=429,
                        retry_after=_parse_retry_after(resp.headers.get("Retry-After")),
                    )
                if resp.status >= 500:
                    raise TransientProviderError(
                        f"Provider unavailable: HTTP {resp.status}",
                        status_code=resp.status,
                    )
                try:
                    body: dict[str, Any] = await resp.json(content_type=None)
                except (ValueError, aiohttp.ContentTypeError) as exc:
                    raise ProviderError(
                        f"Non-JSON response: HTTP {resp.status}", status_code=resp.status,
                    ) from exc
                if not isinstance(body, dict):
                    raise ProviderError(
                        f"Unexpected response body: {type(body).__name__}", status_code=resp.status,
                    )
                message = _error_message(body)
                if resp.status in _INPUT_REJECTED_STATUSES:
                    raise PermanentInputError(message or f"HTTP {resp.status}: input rejected")
                if resp.status >= 400:
                    raise ProviderError(message or f"HTTP {resp.status}", status_code=resp.status)
                if message:
                    # Some gateways report errors inside a 200 body.
                    raise ProviderError(message, status_code=resp.status)
                return body
        except asyncio.TimeoutError as exc:
            raise TransientProviderError("Embedding request timed out") from exc
        except aiohttp.ClientConnectionError as exc:
            raise TransientProviderError(f"Connection error: {exc}") from exc

    async def close(self) -> None:
        if self._session is not None and not self._session.closed:
            await self._session.close()
            logger.debug("%s session closed.", type(self).__name__)
        self._session = None


class OpenRouterEmbeddingBackend(_HttpBackend):
    """OpenAI-compatible ``/embeddings`` endpoint (OpenRouter, OpenAI, proxies)."""

    def __init__(
        self,
        api_key: str,
        model: str,
        dimensions: int,
        base_url: str = OPENROUTER_BASE_URL,
        timeout: float = 30.0,
    ) -> None:
        super().__init__(base_url, timeout)
        self._api_key = api_key
        self._model = model
        self.dimensions = dimensions

    def _get_headers(self) -> dict[str, str]:
        return {
            "Authorization": f"Bearer {self._api_key}",
            "Content-Type": "application/json",
        }

    async def embed_batch(self, texts: list[str]) -> list[list[float]]:
        if not texts:
            return []
        body = await self._post("/embeddings", {"model": self._model, "input": texts})
        data: list[dict[str, Any]] = body.get("data", [])
        if len(data) != len(texts):
            raise ProviderError(
                f"Embedding response returned {len(data)} vectors for {len(texts)} inputs."
            )
        data.sort(key=lambda d: d.get("index", 0))
        return [d["embedding"] for d in data]


class OllamaEmbeddingBackend(_HttpBackend):
    """Ollama's native batch ``/api/embed`` endpoint."""

    def __init__(
        self,
        model: str,
        dimensions: int,
        base_url: str = OLLAMA_BASE_URL,
        timeout: float = 30.0,
    ) -> None:
        super().__init__(base_url, timeout)
        self._model = model
        self.dimensions = dimensions

    async def embed_batch(self, texts: list[str]) -> list[list[float]]:
        if not texts:
            return []
        body = await self._post("/api/embed", {"model": self._model, "input": texts})
        embeddings: list[list[float]] = body.get("embeddings", [])
        if len(embeddings) != len(texts):
            raise ProviderError(
                f"Ollama returned {len(embeddings)} vectors for {len(texts)} inputs."
            )
        return embeddings


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _parse_retry_after(value: str | None) -> float | None:
    if not value:
        return None
    try:
        return max(0.0, float(value))
    except ValueError:
        return None


def _error_message(body: Any) -> str | None:
    if not isinstance(body, dict) or "error" not in body:
        return None
    err = body["error"]
    if isinstance(err, dict):
        return str(err.get("message", err))
    return str(err)


def build_backend(settings: AmreSettings) -> EmbeddingBackend:
    backend = settings.EMBEDDING_BACKEND
    dims = settings.EMBEDDING_DIMENSIONS
    if backend in {"openrouter", "openai"}:
        if not settings.OPENROUTER_API_KEY:
            logger.warning(
                "EMBEDDING_BACKEND=%s but no API key configured; using hash embeddings.",
                backend,
            )
            return HashEmbeddingBackend(dims)
        default_url = OPENAI_BASE_URL if backend == "openai" else OPENROUTER_BASE_URL
        return OpenRouterEmbeddingBackend(
            api_key=settings.OPENROUTER_API_KEY,
            model=settings.EMBEDDING_MODEL,
            dimensions=dims,
            base_url=settings.EMBEDDING_BASE_URL or default_url,
            timeout=settings.EMBED_TIMEOUT,
        )
    if backend == "ollama":
        return OllamaEmbeddingBackend(
            model=settings.EMBEDDING_MODEL,
            dimensions=dims,
            base_url=settings.EMBEDDING_BASE_URL or OLLAMA_BASE_URL,
            timeout=settings.EMBED_TIMEOUT,
        )
    return HashEmbeddingBackend(dims)
