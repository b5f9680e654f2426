"""Shared fixtures for the AMRE test suite."""

import math
import re
from datetime import datetime, timedelta, timezone
from unittest.mock import MagicMock

import pytest

from amre.embeddings.adapter import EmbeddingAdapter
from amre.models import Turn
from amre.storage.memory import InMemoryKnowledgeStore

# Each concept is one axis; a text's vector is the normalised sum of the
# concepts its words mention.  Texts with no known concept use the last axis.
CONCEPTS = (
    {"dog", "pet", "rennie", "cat", "puppy"},
    {"work", "job", "employer", "microsoft", "company", "office"},
    {"seattle", "live", "city", "lives"},
    {"meeting", "moved", "thursday", "reschedule"},
    {"pizza", "food", "eat", "sushi"},
)
_WORD_RE = re.compile(r"[a-z]+")


def concept_vector(text: str) -> list[float]:
    words = set(_WORD_RE.findall(text.lower()))
    values = [1.0 if words & concept else 0.0 for concept in CONCEPTS] + [0.0]
    if not any(values):
        values[-1] = 1.0
    norm = math.sqrt(sum(v * v for v in values))
    return [v / norm for v in values]


class ConceptEmbeddingBackend:
    """Tiny, predictable embedding model for retrieval scenarios."""

    dimensions = len(CONCEPTS) + 1

    def __init__(self):
        self.batches: list[list[str]] = []

    async def embed_batch(self, texts):
        self.batches.append(list(texts))
        return [concept_vector(t) for t in texts]

    async def close(self):
        return None


async def _no_sleep(_delay):
    return None


@pytest.fixture
def store():
    return InMemoryKnowledgeStore()


@pytest.fixture
def concept_backend():
    return ConceptEmbeddingBackend()


@pytest.fixture
def adapter(concept_backend):
    return EmbeddingAdapter(concept_backend, batch_size=100, sleep=_no_sleep, rng=lambda: 0.5)


@pytest.fixture
def base_time():
    return datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


@pytest.fixture
def make_turn(base_time):
    """Factory for turns with strictly increasing timestamps."""
    counter = {"n": 0}

    def _make(content, user_id="u1", conversation_id="c1", role="user", turn_id=None):
        counter["n"] += 1
        n = counter["n"]
        return Turn(
            id=turn_id or f"t{n}",
            user_id=user_id,
            conversation_id=conversation_id,
            role=role,
            content=content,
            created_at=base_time + timedelta(seconds=n),
        )

    return _make


@pytest.fixture
def mock_redis():
    """Mock redis.Redis client with SET NX semantics."""
    client = MagicMock()
    data = {}

    def _set(key, value, nx=False, ex=None):
        if nx and key in data:
            return None
        data[key] = value
        return True

    def _eval(_script, _numkeys, key, token):
        if data.get(key) == token:
            del data[key]
            return 1
        return 0

    client.set.side_effect = _set
    client.eval.side_effect = _eval
    client.ping.return_value = True
    client.data = data
    return client
