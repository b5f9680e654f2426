"""Tests for embedding backends and their error mapping."""

import asyncio
import json
import math
import os
from unittest.mock import AsyncMock, MagicMock, patch

import aiohttp
import pytest

from amre.config import AmreSettings
from amre.embeddings.backends import (
    HashEmbeddingBackend,
    OllamaEmbeddingBackend,
    OpenRouterEmbeddingBackend,
    build_backend,
)
from amre.errors import PermanentInputError, ProviderError, TransientProviderError


class FakeResponse:
    def __init__(self, status=200, body=None, headers=None):
        self.status = status
        self._body = body if body is not None else {}
        self.headers = headers or {}

    async def json(self, content_type=None):
        return self._body

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc):
        return False


class HtmlResponse(FakeResponse):
    """A proxy error page instead of a JSON body."""

    async def json(self, content_type=None):
        return json.loads("<html>Forbidden</html>")


def fake_session(response=None, error=None):
    session = MagicMock()
    session.closed = False
    session.close = AsyncMock()
    if error is not None:
        session.post.side_effect = error
    else:
        session.post.return_value = response
    return session


def openrouter_with(session):
    backend = OpenRouterEmbeddingBackend(api_key="sk-test", model="test/model", dimensions=2)
    backend._session = session
    return backend


# -- Hash backend --------------------------------------------------------------


@pytest.mark.asyncio
async def test_hash_backend_is_deterministic_and_normalised():
    backend = HashEmbeddingBackend(dimensions=64)
    first, second = await backend.embed_batch(["Meeting moved to Thursday", "Meeting moved to Thursday"])
    assert first == second
    assert len(first) == 64
    assert math.isclose(sum(v * v for v in first), 1.0, rel_tol=1e-9)


def test_hash_backend_related_texts_are_closer():
    backend = HashEmbeddingBackend(dimensions=256)
    a = backend.embed_text("my dog rennie likes the park")
    b = backend.embed_text("rennie the dog")
    c = backend.embed_text("quarterly revenue forecast")
    sim_ab = sum(x * y for x, y in zip(a, b))
    sim_ac = sum(x * y for x, y in zip(a, c))
    assert sim_ab > sim_ac


# -- HTTP backends -------------------------------------------------------------


@pytest.mark.asyncio
async def test_openrouter_sorts_vectors_by_index():
    body = {"data": [
        {"index": 1, "embedding": [0.0, 1.0]},
        {"index": 0, "embedding": [1.0, 0.0]},
    ]}
    session = fake_session(FakeResponse(200, body))
    backend = openrouter_with(session)
    vectors = await backend.embed_batch(["first", "second"])
    assert vectors == [[1.0, 0.0], [0.0, 1.0]]
    url = session.post.call_args[0][0]
    assert url == "https://openrouter.ai/api/v1/embeddings"
    assert session.post.call_args[1]["json"] == {"model": "test/model", "input": ["first", "second"]}


def test_openrouter_sends_bearer_token():
    backend = OpenRouterEmbeddingBackend(api_key="sk-test", model="m", dimensions=2)
    assert backend._get_headers()["Authorization"] == "Bearer sk-test"


@pytest.mark.asyncio
async def test_429_is_transient_with_retry_after():
    session = fake_session(FakeResponse(429, {}, headers={"Retry-After": "12"}))
    with pytest.raises(TransientProviderError) as info:
        await openrouter_with(session).embed_batch(["x"])
    assert info.value.status_code == 429
    assert info.value.retry_after == 12.0


@pytest.mark.asyncio
async def test_5xx_is_transient():
    session = fake_session(FakeResponse(503, {}))
    with pytest.raises(TransientProviderError):
        await openrouter_with(session).embed_batch(["x"])


@pytest.mark.asyncio
async def test_400_is_permanent_input_error():
    session = fake_session(FakeResponse(400, {"error": {"message": "input too long"}}))
    with pytest.raises(PermanentInputError, match="input too long"):
        await openrouter_with(session).embed_batch(["x"])


@pytest.mark.asyncio
async def test_401_is_provider_error():
    session = fake_session(FakeResponse(401, {"error": "bad key"}))
    with pytest.raises(ProviderError) as info:
        await openrouter_with(session).embed_batch(["x"])
    assert info.value.status_code == 401


@pytest.mark.asyncio
async def test_non_json_error_page_is_provider_error():
    session = fake_session(HtmlResponse(403))
    with pytest.raises(ProviderError, match="Non-JSON") as info:
        await openrouter_with(session).embed_batch(["x"])
    assert info.value.status_code == 403
    assert isinstance(info.value.__cause__, json.JSONDecodeError)


@pytest.mark.asyncio
async def test_non_object_body_is_provider_error():
    session = fake_session(FakeResponse(200, [[0.1, 0.2]]))
    with pytest.raises(ProviderError, match="Unexpected response body"):
        await openrouter_with(session).embed_batch(["x"])


@pytest.mark.asyncio
async def test_error_inside_200_body_is_provider_error():
    session = fake_session(FakeResponse(200, {"error": {"message": "model not found"}}))
    with pytest.raises(ProviderError, match="model not found"):
        await openrouter_with(session).embed_batch(["x"])


@pytest.mark.asyncio
async def test_vector_count_mismatch_is_provider_error():
    session = fake_session(FakeResponse(200, {"data": [{"index": 0, "embedding": [1.0, 0.0]}]}))
    with pytest.raises(ProviderError):
        await openrouter_with(session).embed_batch(["a", "b"])


@pytest.mark.asyncio
async def test_timeout_and_connection_errors_are_transient():
    with pytest.raises(TransientProviderError):
        await openrouter_with(fake_session(error=asyncio.TimeoutError())).embed_batch(["x"])
    with pytest.raises(TransientProviderError):
        await openrouter_with(
            fake_session(error=aiohttp.ClientConnectionError("refused"))
        ).embed_batch(["x"])


@pytest.mark.asyncio
async def test_ollama_reads_embeddings_field():
    session = fake_session(FakeResponse(200, {"embeddings": [[0.5, 0.5]]}))
    backend = OllamaEmbeddingBackend(model="nomic-embed-text", dimensions=2)
    backend._session = session
    assert await backend.embed_batch(["x"]) == [[0.5, 0.5]]
    assert session.post.call_args[0][0] == "http://localhost:11434/api/embed"


@pytest.mark.asyncio
async def test_close_closes_open_session():
    session = fake_session(FakeResponse())
    backend = openrouter_with(session)
    await backend.close()
    session.close.assert_awaited_once()


# -- Factory -------------------------------------------------------------------


def _settings(**env):
    with patch.dict(os.environ, {f"AMRE_{k}": v for k, v in env.items()}, clear=True):
        return AmreSettings()


def test_build_backend_openrouter():
    backend = build_backend(_settings(EMBEDDING_BACKEND="openrouter", OPENROUTER_API_KEY="sk"))
    assert isinstance(backend, OpenRouterEmbeddingBackend)


def test_build_backend_without_key_falls_back_to_hash():
    backend = build_backend(_settings(EMBEDDING_BACKEND="openai", EMBEDDING_DIMENSIONS="32"))
    assert isinstance(backend, HashEmbeddingBackend)
    assert backend.dimensions == 32


def test_build_backend_ollama():
    backend = build_backend(_settings(EMBEDDING_BACKEND="ollama"))
    assert isinstance(backend, OllamaEmbeddingBackend)
