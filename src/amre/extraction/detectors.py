from __future__ import annotations

import re
from typing import ClassVar, Iterable, List, Protocol, Sequence, Tuple

from amre.models import Candidate, ChunkType

_WEEKDAYS = r"monday|tuesday|wednesday|thursday|friday|saturday|sunday"
_TIME = r"\d{1,2}(?::\d{2})?\s?(?:am|pm)"


class Detector(Protocol):
    chunk_type: ChunkType

    def detect(self, text: str) -> List[Candidate]:
        ...


class RegexDetector:
    """Detector driven by an ordered table of ``(pattern, base_weight)``.

    Patterns are compiled case-insensitively unless they carry their own
    inline flags.  Every non-overlapping match becomes one candidate whose
    content is the full matched span.
    """

    chunk_type: ClassVar[ChunkType]
    patterns: ClassVar[Sequence[Tuple[str, float]]] = ()
    case_sensitive: ClassVar[frozenset] = frozenset()

    def __init__(self) -> None:
        self._compiled = [
            (re.compile(p) if p in self.case_sensitive else re.compile(p, re.IGNORECASE), w)
            for p, w in self.patterns
        ]

    def detect(self, text: str) -> List[Candidate]:
        found: List[Candidate] = []
        for regex, weight in self._compiled:
            for match in regex.finditer(text):
                content = _clean(match.group(0))
                if len(content) < 6:
                    continue
                found.append(Candidate(
                    content=content,
                    chunk_type=self.chunk_type,
                    importance_hint=weight,
                    metadata={"detector": type(self).__name__, "pattern": regex.pattern},
                ))
        return found


class FactDetector(RegexDetector):
    chunk_type = ChunkType.FACT
    patterns = (
        (r"\bmy (?:full )?name is [^.!?]+", 0.8),
        (r"\bi(?:'m| am) \d+ years old", 0.75),
        (r"\bi (?:live|reside) (?:in|at) [^.!?]+", 0.7),
        (r"\bi work (?:at|for|as an?) [^.!?]+", 0.7),
        (r"\bmy (?:phone number|email|email address|birthday) is [^.!?]+", 0.75),
        (r"\b(?:remember|don't forget) (?:that |to )?[^.!?]+", 0.7),
        (r"\b(?:important|critical|essential): [^.!?]+", 0.75),
    )


class PreferenceDetector(RegexDetector):
    chunk_type = ChunkType.PREFERENCE
    patterns = (
        (r"\bmy (?:favorite|favourite) \w+ is [^.!?]+", 0.65),
        (r"\bi prefer [^.!?]+? (?:over|to) [^.!?]+", 0.6),
        (r"\bi (?:really )?(?:like|love|enjoy) [^.!?]+", 0.55),
        (r"\bi (?:hate|dislike|can't stand) [^.!?]+", 0.55),
        (r"\b(?:always|never) [^.!?]+", 0.6),
    )


class DecisionDetector(RegexDetector):
    chunk_type = ChunkType.DECISION
    patterns = (
        (r"\bi(?:'ve| have) (?:decided|chosen) (?:to )?[^.!?]+", 0.7),
        (r"\blet's (?:go with|choose|do) [^.!?]+", 0.65),
        (r"\b(?:we|i) (?:should|will) [^.!?]+", 0.5),
    )


class EventDetector(RegexDetector):
    chunk_type = ChunkType.EVENT
    patterns = (
        (r"\b(?:yesterday|today|tomorrow|tonight) i [^.!?]+", 0.65),
        (r"\b(?:last|next) \w+ i [^.!?]+", 0.6),
        (r"\bi (?:will|am going to|'m going to) [^.!?]+? (?:on|at) [^.!?]+", 0.65),
        (
            r"[^.!?]*\b(?:meeting|appointment|call|dinner|flight|interview|deadline)\b"
            rf"[^.!?]*\b(?:{_WEEKDAYS}|tomorrow|tonight|{_TIME})\b[^.!?]*",
            0.6,
        ),
    )


_NAME_IS_MY = r"\b(?!(?:This|That|It|He|She|There|Here|What|Who)\b)[A-Z][\w'-]+(?: [A-Z][\w'-]+)? (?i:is my) \w+"


class RelationshipDetector(RegexDetector):
    chunk_type = ChunkType.RELATIONSHIP
    patterns = (
        (r"\bmy \w+'s name is [^.!?]+", 0.75),
        (r"\bi have an? \w+ (?:named|called) [^.!?]+", 0.7),
        (_NAME_IS_MY, 0.7),
    )
    case_sensitive = frozenset({_NAME_IS_MY})


def default_detectors() -> List[Detector]:
    """Registry order decides which chunk type wins for identical spans."""
    return [
        FactDetector(),
        RelationshipDetector(),
        PreferenceDetector(),
        EventDetector(),
        DecisionDetector(),
    ]


_SENTENCE_RE = re.compile(r"(?<=[.!?])\s+|\n+")
_CLAUSE_RE = re.compile(
    r",?\s+(?:and|but)\s+(?=(?:i|i'm|i've|i'll|my|we)\b)", re.IGNORECASE,
)


def split_clauses(text: str) -> Iterable[str]:
    """Yield sentences, further split where a conjunction opens a new
    first-person clause ("... is Rennie and I work at ...")."""
    for sentence in _SENTENCE_RE.split(text):
        sentence = sentence.strip()
        if not sentence:
            continue
        for clause in _CLAUSE_RE.split(sentence):
            clause = clause.strip()
            if clause:
                yield clause


def _clean(span: str) -> str:
    return span.strip().rstrip(",;:").strip()
