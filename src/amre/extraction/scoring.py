"""Importance rubric for extracted candidates.

The rubric starts from the detector's base weight and nudges it for
specificity, named entities and imperative phrasing.  Results are clamped
to ``[IMPORTANCE_FLOOR, IMPORTANCE_CEILING]``.  Pass a different
``ScoreFn`` to :class:`~amre.extraction.extractor.Extractor` to tune it.
"""

from __future__ import annotations

import re
from typing import Callable, List

from amre.models import Candidate

ScoreFn = Callable[[Candidate], float]

IMPORTANCE_FLOOR = 0.3
IMPORTANCE_CEILING = 0.9

SPECIFICITY_BONUS = 0.05
LENGTH_BONUS = 0.03
ENTITY_BONUS = 0.05
ENTITY_BONUS_MAX = 0.1
IMPERATIVE_BONUS = 0.1

_DIGIT_RE = re.compile(r"\d")
_WORD_RE = re.compile(r"[A-Za-z][\w'-]*")
_IMPERATIVE_RE = re.compile(
    r"\b(?:remember|don't forget|always|never|important|critical|essential|must)\b",
    re.IGNORECASE,
)
_NOT_ENTITIES = {"I", "I'm", "I've", "I'll", "I'd", "My", "We", "The", "A", "An"}


def named_entities(text: str) -> List[str]:
    """Capitalised words that are not the first word of the text."""
    words = _WORD_RE.findall(text)
    return [w for w in words[1:] if w[0].isupper() and w not in _NOT_ENTITIES]


def default_importance(candidate: Candidate) -> float:
    text = candidate.content
    score = candidate.importance_hint
    if _DIGIT_RE.search(text):
        score += SPECIFICITY_BONUS
    if len(text.split()) >= 6:
        score += LENGTH_BONUS
    score += min(ENTITY_BONUS_MAX, ENTITY_BONUS * len(named_entities(text)))
    if _IMPERATIVE_RE.search(text):
        score += IMPERATIVE_BONUS
    return clamp_importance(score)


def clamp_importance(value: float) -> float:
    return round(max(IMPORTANCE_FLOOR, min(IMPORTANCE_CEILING, value)), 4)
