"""Tests for the embedding cache and its use by the adapter."""

import os
from unittest.mock import patch

import pytest

from amre.config import AmreSettings
from amre.embeddings import EmbeddingAdapter, EmbeddingCache
from amre.embeddings.cache import cache_key
from amre.errors import EmbeddingFailure, PermanentInputError


class ScriptedBackend:
    """Vectors are ``[len(text), 1, 0]``; texts in *reject* are refused."""

    dimensions = 3

    def __init__(self, reject=()):
        self.reject = set(reject)
        self.calls = []

    async def embed_batch(self, texts):
        self.calls.append(list(texts))
        if self.reject & set(texts):
            raise PermanentInputError("input rejected")
        return [[float(len(t)), 1.0, 0.0] for t in texts]

    async def close(self):
        return None


class Clock:
    def __init__(self):
        self.now = 1000.0

    def __call__(self):
        return self.now


# -- EmbeddingCache ------------------------------------------------------------


def test_keys_ignore_case_and_surrounding_whitespace():
    assert cache_key("  Meeting moved ") == cache_key("meeting moved")
    assert cache_key("meeting moved") != cache_key("meeting postponed")


def test_hit_and_miss_are_counted():
    cache = EmbeddingCache(max_size=10)
    assert cache.get("hello") is None
    cache.put("hello", [1.0, 0.0])
    assert cache.get("Hello") == [1.0, 0.0]
    assert (cache.stats.hits, cache.stats.misses) == (1, 1)
    assert cache.stats.hit_rate == 0.5


def test_least_recently_used_is_evicted():
    cache = EmbeddingCache(max_size=2)
    cache.put("a", [1.0])
    cache.put("b", [2.0])
    cache.get("a")
    cache.put("c", [3.0])
    assert cache.get("b") is None
    assert cache.get("a") == [1.0]
    assert cache.stats.evictions == 1
    assert len(cache) == 2


def test_entries_expire_after_ttl():
    clock = Clock()
    cache = EmbeddingCache(max_size=10, ttl_sec=60, clock=clock)
    cache.put("a", [1.0])
    clock.now += 59
    assert cache.get("a") == [1.0]
    clock.now += 2
    assert cache.get("a") is None
    assert cache.stats.expirations == 1
    assert len(cache) == 0


def test_zero_size_disables_the_cache():
    cache = EmbeddingCache(max_size=0)
    cache.put("a", [1.0])
    assert cache.get("a") is None
    assert not cache.enabled


def test_returned_vectors_are_copies():
    cache = EmbeddingCache()
    cache.put("a", [1.0, 2.0])
    cache.get("a").append(3.0)
    assert cache.get("a") == [1.0, 2.0]


# -- Adapter integration -------------------------------------------------------


async def _no_sleep(_delay):
    return None


@pytest.mark.asyncio
async def test_cached_texts_skip_the_provider_and_keep_order():
    backend = ScriptedBackend()
    adapter = EmbeddingAdapter(backend, sleep=_no_sleep, cache=EmbeddingCache())
    first = await adapter.embed(["alpha", "beta"])
    second = await adapter.embed(["gamma", "ALPHA ", "beta"])

    assert backend.calls == [["alpha", "beta"], ["gamma"]]
    assert second == [[5.0, 1.0, 0.0], first[0], first[1]]
    assert adapter.provider_calls == 2
    assert adapter.cache.stats.hits == 2


@pytest.mark.asyncio
async def test_fully_cached_batch_makes_no_provider_call():
    backend = ScriptedBackend()
    adapter = EmbeddingAdapter(backend, sleep=_no_sleep, cache=EmbeddingCache())
    await adapter.embed(["alpha"])
    assert await adapter.embed_one("alpha") == [5.0, 1.0, 0.0]
    assert len(backend.calls) == 1


@pytest.mark.asyncio
async def test_failures_are_not_cached():
    backend = ScriptedBackend(reject={"bad"})
    adapter = EmbeddingAdapter(backend, sleep=_no_sleep, cache=EmbeddingCache())
    (failure,) = await adapter.embed(["bad"])
    assert isinstance(failure, EmbeddingFailure)
    await adapter.embed(["bad"])
    assert len(backend.calls) == 2
    assert len(adapter.cache) == 0


def test_from_settings_configures_the_cache():
    env = {"AMRE_EMBED_CACHE_SIZE": "5", "AMRE_EMBED_CACHE_TTL": "30"}
    with patch.dict(os.environ, env, clear=True):
        adapter = EmbeddingAdapter.from_settings(AmreSettings())
    assert adapter.cache.max_size == 5
    assert adapter.cache.ttl_sec == 30.0
