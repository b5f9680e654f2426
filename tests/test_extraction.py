"""Tests for candidate extraction and the importance rubric."""

import pytest

from amre.extraction import Extractor, default_importance, split_clauses
from amre.extraction.detectors import RelationshipDetector
from amre.extraction.scoring import IMPORTANCE_CEILING, IMPORTANCE_FLOOR, named_entities
from amre.models import Candidate, ChunkType


RENNIE = "My dog's name is Rennie and I work at Microsoft in Seattle"


def test_compound_sentence_splits_into_first_person_clauses():
    assert list(split_clauses(RENNIE)) == [
        "My dog's name is Rennie",
        "I work at Microsoft in Seattle",
    ]


def test_rennie_turn_yields_two_typed_candidates():
    candidates = Extractor().extract(RENNIE, "user")
    assert [(c.content, c.chunk_type) for c in candidates] == [
        ("My dog's name is Rennie", ChunkType.RELATIONSHIP),
        ("I work at Microsoft in Seattle", ChunkType.FACT),
    ]
    assert [c.importance_hint for c in candidates] == [0.8, 0.83]
    assert candidates[0].metadata["base_importance"] == 0.75


def test_extraction_is_deterministic():
    extractor = Extractor()
    text = "I prefer tea over coffee. Tomorrow I fly to Oslo. Remember that my badge is 4471."
    assert extractor.extract(text, "user") == extractor.extract(text, "user")


def test_only_user_turns_are_mined():
    assert Extractor().extract(RENNIE, "assistant") == []
    assert Extractor().extract(RENNIE, "system") == []


@pytest.mark.parametrize("text", ["hi", "thanks so much!", "ok", "Good morning", "lol"])
def test_chit_chat_yields_nothing(text):
    assert Extractor().extract(text, "user") == []


def test_keyword_fallback_for_long_important_turns():
    text = "This is really important, the server room door code changes every Monday morning"
    candidates = Extractor().extract(text, "user")
    assert len(candidates) == 1
    assert candidates[0].chunk_type is ChunkType.FACT
    assert candidates[0].metadata["reason"] == "important_keyword_detected"


def test_identical_spans_are_deduplicated():
    candidates = Extractor().extract("I love hiking. I love hiking.", "user")
    assert [c.content for c in candidates] == ["I love hiking"]


def test_meeting_event_is_detected():
    candidates = Extractor().extract("Meeting moved to Thursday", "user")
    assert [c.chunk_type for c in candidates] == [ChunkType.EVENT]


def test_failing_detector_contributes_nothing():
    class Broken:
        chunk_type = ChunkType.FACT

        def detect(self, text):
            raise RuntimeError("boom")

    extractor = Extractor(detectors=[Broken(), RelationshipDetector()])
    candidates = extractor.extract("My dog's name is Rennie", "user")
    assert [c.chunk_type for c in candidates] == [ChunkType.RELATIONSHIP]


def test_failing_scorer_falls_back_to_detector_weight():
    def bad_score(candidate):
        raise ValueError("nope")

    candidates = Extractor(score=bad_score).extract("My dog's name is Rennie", "user")
    assert candidates[0].importance_hint == 0.75


def test_registered_detector_runs_after_defaults():
    class Allergy:
        chunk_type = ChunkType.FACT

        def detect(self, text):
            if "allergic" in text:
                return [Candidate("allergic to peanuts", ChunkType.FACT, 0.9)]
            return []

    extractor = Extractor()
    extractor.register(Allergy())
    contents = [c.content for c in extractor.extract("Note: I am allergic to peanuts", "user")]
    assert "allergic to peanuts" in contents


def test_importance_is_clamped():
    low = Candidate("abc def", ChunkType.FACT, 0.0)
    high = Candidate("Remember that Alice and Bob meet 5 times a week", ChunkType.FACT, 0.95)
    assert default_importance(low) == IMPORTANCE_FLOOR
    assert default_importance(high) == IMPORTANCE_CEILING


def test_named_entities_skip_first_word_and_pronouns():
    assert named_entities("Yesterday I met Alice in Paris") == ["Alice", "Paris"]


def test_summarize_picks_informative_user_sentences(make_turn):
    turns = [
        make_turn("hi there"),
        make_turn("My dog's name is Rennie", role="user"),
        make_turn("Nice name!", role="assistant"),
        make_turn("I work at Microsoft in Seattle"),
        make_turn("The weather is grey again today outside"),
    ]
    summary = Extractor().summarize(turns)
    assert summary.chunk_type is ChunkType.SUMMARY
    assert summary.content.startswith("Conversation summary: My dog's name is Rennie.")
    assert "Nice name" not in summary.content
    assert summary.metadata["turn_count"] == 5
    assert summary.metadata["last_turn_id"] == turns[-1].id
    assert summary.metadata["window_end"] == turns[-1].created_at.isoformat()


def test_summarize_without_user_content_returns_none(make_turn):
    assert Extractor().summarize([make_turn("ok"), make_turn("Sure thing", role="assistant")]) is None
