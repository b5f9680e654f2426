"""Tests for the background indexer."""

import asyncio
import threading

import pytest

from amre.embeddings.adapter import EmbeddingAdapter
from amre.errors import TransientProviderError
from amre.indexing import BackgroundIndexer, Outcome, summary_key
from amre.models import ChunkType, SourceType, TurnState
from amre.storage.memory import InMemoryKnowledgeStore

from conftest import concept_vector

RENNIE = "My dog's name is Rennie and I work at Microsoft in Seattle"


def chunks_of(store, user_id="u1"):
    return [c for c, _ in store.search_chunks(user_id, concept_vector("dog work seattle"), 100)]


@pytest.mark.asyncio
async def test_turn_is_indexed_into_typed_chunks(store, adapter, make_turn):
    indexer = BackgroundIndexer(store, adapter)
    turn = make_turn(RENNIE)
    outcome = await indexer.process_turn(turn)
    assert outcome.outcome is Outcome.INDEXED
    assert outcome.chunks == 2
    chunks = chunks_of(store)
    assert {c.chunk_type for c in chunks} == {ChunkType.RELATIONSHIP, ChunkType.FACT}
    assert all(c.turn_id == turn.id and c.created_at == turn.created_at for c in chunks)
    assert store.ledger_record(turn.id).state is TurnState.DONE


@pytest.mark.asyncio
async def test_all_candidates_share_one_embedding_call(store, adapter, concept_backend, make_turn):
    await BackgroundIndexer(store, adapter).process_turn(make_turn(RENNIE))
    assert len(concept_backend.batches) == 1
    assert len(concept_backend.batches[0]) == 2


@pytest.mark.asyncio
async def test_reprocessing_a_turn_is_a_no_op(store, adapter, make_turn):
    indexer = BackgroundIndexer(store, adapter)
    turn = make_turn(RENNIE)
    await indexer.process_turn(turn)
    again = await indexer.process_turn(turn)
    assert again.outcome is Outcome.SKIPPED
    assert len(chunks_of(store)) == 2


@pytest.mark.asyncio
async def test_concurrent_workers_process_a_turn_once(store, adapter, make_turn):
    turn = make_turn(RENNIE)
    workers = [BackgroundIndexer(store, adapter) for _ in range(5)]
    outcomes = await asyncio.gather(*(w.process_turn(turn) for w in workers))
    assert sorted(o.outcome.value for o in outcomes) == ["indexed"] + ["skipped"] * 4
    assert len(chunks_of(store)) == 2


@pytest.mark.asyncio
async def test_assistant_and_chit_chat_turns_write_nothing(store, adapter, concept_backend, make_turn):
    indexer = BackgroundIndexer(store, adapter)
    await indexer.process_turn(make_turn("Sure, noted!", role="assistant"))
    await indexer.process_turn(make_turn("thanks"))
    assert chunks_of(store) == []
    assert concept_backend.batches == []


@pytest.mark.asyncio
async def test_embedding_failure_marks_turn_failed(store, make_turn):
    class Down:
        dimensions = 6

        async def embed_batch(self, texts):
            raise TransientProviderError("quota")

        async def close(self):
            return None

    async def no_sleep(_):
        return None

    adapter = EmbeddingAdapter(Down(), max_attempts=2, sleep=no_sleep)
    indexer = BackgroundIndexer(store, adapter)
    turn = make_turn(RENNIE)
    outcome = await indexer.process_turn(turn)
    assert outcome.outcome is Outcome.FAILED
    record = store.ledger_record(turn.id)
    assert record.state is TurnState.FAILED
    assert record.reason.startswith("embedding: TransientProviderError")
    assert chunks_of(store) == []
    assert indexer.stats.failed == 1


@pytest.mark.asyncio
async def test_high_importance_candidates_are_promoted(store, adapter, make_turn):
    indexer = BackgroundIndexer(store, adapter, promote_importance=0.82)
    turn = make_turn(RENNIE, conversation_id="c7")
    await indexer.process_turn(turn)
    entries = store.list_entries("u1")
    assert [e.content for e in entries] == ["I work at Microsoft in Seattle"]
    promoted = entries[0]
    assert promoted.source_type is SourceType.CONVERSATION
    assert promoted.source_id == "c7"
    assert promoted.category == "fact"
    assert promoted.tags == {"fact", "auto-extracted"}
    assert promoted.embedding is not None


@pytest.mark.asyncio
async def test_fire_and_forget_hook_returns_immediately(store, adapter, make_turn):
    indexer = BackgroundIndexer(store, adapter)
    turn = make_turn(RENNIE)
    indexer.on_turn_created(turn)
    assert indexer.pending == 1
    await indexer.drain()
    assert indexer.pending == 0
    assert store.ledger_record(turn.id).state is TurnState.DONE


@pytest.mark.asyncio
async def test_summary_after_n_turns(store, adapter, make_turn):
    indexer = BackgroundIndexer(store, adapter, summary_every=3)
    turns = [
        make_turn("My dog's name is Rennie"),
        make_turn("I work at Microsoft in Seattle"),
        make_turn("I love sushi on Fridays"),
    ]
    for turn in turns[:2]:
        await indexer.process_turn(turn)
    assert await indexer.summarize_conversation("u1", "c1") is None

    await indexer.process_turn(turns[2])
    outcome = await indexer.summarize_conversation("u1", "c1")
    assert outcome.outcome is Outcome.INDEXED
    assert store.ledger_record(summary_key("c1", None)).state is TurnState.DONE
    summaries = [c for c in chunks_of(store) if c.chunk_type is ChunkType.SUMMARY]
    assert len(summaries) == 1
    assert summaries[0].metadata["last_turn_id"] == turns[-1].id

    # The window restarts after the summary.
    assert await indexer.summarize_conversation("u1", "c1") is None


@pytest.mark.asyncio
async def test_closing_a_conversation_forces_a_summary(store, adapter, make_turn):
    indexer = BackgroundIndexer(store, adapter, summary_every=20)
    await indexer.process_turn(make_turn("My dog's name is Rennie", conversation_id="c2"))
    indexer.on_conversation_closed("u1", "c2")
    await indexer.drain()
    assert indexer.stats.summaries == 1


class HeldSummaryStore(InMemoryKnowledgeStore):
    """Blocks summary commits until ``release`` is set."""

    def __init__(self):
        super().__init__()
        self.entered = threading.Event()
        self.release = threading.Event()

    def commit(self, key, chunks, entries):
        if key.startswith("summary:"):
            self.entered.set()
            self.release.wait(timeout=5)
        super().commit(key, chunks, entries)


def summaries_of(store):
    return [c for c in chunks_of(store) if c.chunk_type is ChunkType.SUMMARY]


@pytest.mark.asyncio
@pytest.mark.parametrize("separate_workers", [False, True])
async def test_racing_summaries_do_not_overlap(adapter, make_turn, separate_workers):
    store = HeldSummaryStore()
    first = BackgroundIndexer(store, adapter, summary_every=2)
    second = BackgroundIndexer(store, adapter, summary_every=2) if separate_workers else first
    turns = [
        make_turn("My dog's name is Rennie"),
        make_turn("I work at Microsoft in Seattle"),
        make_turn("I love sushi on Fridays"),
    ]
    for turn in turns[:2]:
        await first.process_turn(turn)

    a = asyncio.create_task(first.summarize_conversation("u1", "c1"))
    await asyncio.to_thread(store.entered.wait, 5)
    await first.process_turn(turns[2])
    b = asyncio.create_task(second.summarize_conversation("u1", "c1"))
    await asyncio.sleep(0.05)
    store.release.set()
    await asyncio.gather(a, b)

    summaries = summaries_of(store)
    assert len(summaries) == 1
    assert summaries[0].metadata["last_turn_id"] == turns[1].id


@pytest.mark.asyncio
async def test_failed_summary_window_is_retried(adapter, make_turn):
    class FlakyStore(InMemoryKnowledgeStore):
        failures = 1

        def commit(self, key, chunks, entries):
            if key.startswith("summary:") and self.failures:
                self.failures -= 1
                raise RuntimeError("connection reset")
            super().commit(key, chunks, entries)

    store = FlakyStore()
    indexer = BackgroundIndexer(store, adapter, summary_every=1)
    await indexer.process_turn(make_turn("My dog's name is Rennie"))

    failed = await indexer.summarize_conversation("u1", "c1")
    assert failed.outcome is Outcome.FAILED
    assert store.ledger_record(summary_key("c1", None)).state is TurnState.FAILED

    retried = await indexer.summarize_conversation("u1", "c1")
    assert retried.outcome is Outcome.INDEXED
    assert retried.key == summary_key("c1", None, 1)
    assert len(summaries_of(store)) == 1
