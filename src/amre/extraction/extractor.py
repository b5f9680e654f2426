from __future__ import annotations

import dataclasses
import logging
import re
from typing import Any, Dict, List, Optional, Sequence

from amre.extraction.detectors import Detector, default_detectors, split_clauses
from amre.extraction.scoring import ScoreFn, clamp_importance, default_importance
from amre.models import Candidate, ChunkType, Turn

logger = logging.getLogger(__name__)

MIN_TURN_CHARS = 12
FALLBACK_MIN_CHARS = 50
FALLBACK_MAX_CHARS = 500
FALLBACK_WEIGHT = 0.6
SUMMARY_WEIGHT = 0.6
SUMMARY_MAX_CHARS = 600
SUMMARY_MAX_SENTENCES = 5

_CHIT_CHAT_RE = re.compile(
    r"^(?:hi|hello|hey|yo|thanks|thank you|thx|ok|okay|k|sure|yes|yeah|yep|no|nope|"
    r"lol|haha|cool|nice|great|awesome|good morning|good night|bye|see you)"
    r"(?:\s+(?:there|so much|a lot|again|you|everyone))*[\s!.?,:)]*$",
    re.IGNORECASE,
)
_FALLBACK_KEYWORDS = ("important", "remember", "critical", "emergency", "urgent")


class Extractor:
    """Turns one conversational turn into typed memory candidates.

    Pure and deterministic: no I/O, and identical input yields identical
    output.  ``extract`` never raises; a failing detector contributes no
    candidates.
    """

    def __init__(
        self,
        detectors: Optional[Sequence[Detector]] = None,
        score: Optional[ScoreFn] = None,
        min_chars: int = MIN_TURN_CHARS,
    ) -> None:
        self.detectors: List[Detector] = list(detectors) if detectors is not None else default_detectors()
        self.score: ScoreFn = score or default_importance
        self.min_chars = min_chars

    def register(self, detector: Detector) -> None:
        self.detectors.append(detector)

    def extract(
        self,
        turn_text: str,
        turn_role: str,
        conversation_context: Optional[Sequence[Turn]] = None,
    ) -> List[Candidate]:
        if (turn_role or "").strip().lower() != "user":
            return []
        text = (turn_text or "").strip()
        if self._is_chit_chat(text):
            return []

        candidates: List[Candidate] = []
        seen: set = set()
        for clause in split_clauses(text):
            for detector in self.detectors:
                for cand in self._run_detector(detector, clause):
                    key = cand.content.lower()
                    if key in seen:
                        continue
                    seen.add(key)
                    candidates.append(self._scored(cand))

        if not candidates:
            fallback = self._keyword_fallback(text)
            if fallback is not None:
                candidates.append(self._scored(fallback))
        return candidates

    def summarize(self, turns: Sequence[Turn]) -> Optional[Candidate]:
        """Summary mode: one extractive ``summary`` candidate for a window.

        Picks the user sentences carrying the most detector hits (ties by
        length) and keeps them in conversation order.
        """
        scored: List[tuple] = []
        position = 0
        for turn in turns:
            if (turn.role or "").lower() != "user":
                continue
            for clause in split_clauses(turn.content or ""):
                if self._is_chit_chat(clause):
                    continue
                hits = sum(len(self._run_detector(d, clause)) for d in self.detectors)
                scored.append((hits, len(clause), position, clause))
                position += 1
        if not scored:
            return None

        best = sorted(scored, key=lambda s: (-s[0], -s[1], s[2]))[:SUMMARY_MAX_SENTENCES]
        best.sort(key=lambda s: s[2])
        body = " ".join(_sentence(s[3]) for s in best)
        if len(body) > SUMMARY_MAX_CHARS:
            body = body[:SUMMARY_MAX_CHARS].rsplit(" ", 1)[0] + "..."
        metadata: Dict[str, Any] = {
            "turn_count": len(turns),
            "window_start": turns[0].created_at.isoformat(),
            "window_end": turns[-1].created_at.isoformat(),
            "last_turn_id": turns[-1].id,
        }
        return Candidate(
            content=f"Conversation summary: {body}",
            chunk_type=ChunkType.SUMMARY,
            importance_hint=clamp_importance(SUMMARY_WEIGHT + 0.02 * min(5, max(s[0] for s in best))),
            metadata=metadata,
        )

    # -- Internal helpers ---------------------------------------------------

    def _is_chit_chat(self, text: str) -> bool:
        return len(text) < self.min_chars or bool(_CHIT_CHAT_RE.match(text))

    def _run_detector(self, detector: Detector, text: str) -> List[Candidate]:
        try:
            return list(detector.detect(text))
        except Exception:
            logger.exception("Detector %s failed; treating as no candidates.", type(detector).__name__)
            return []

    def _scored(self, cand: Candidate) -> Candidate:
        try:
            importance = clamp_importance(float(self.score(cand)))
        except Exception:
            logger.exception("Importance scorer failed for %r; using detector weight.", cand.content)
            importance = clamp_importance(cand.importance_hint)
        metadata = dict(cand.metadata)
        metadata["base_importance"] = cand.importance_hint
        return dataclasses.replace(cand, importance_hint=importance, metadata=metadata)

    @staticmethod
    def _keyword_fallback(text: str) -> Optional[Candidate]:
        if len(text) <= FALLBACK_MIN_CHARS:
            return None
        lowered = text.lower()
        if not any(kw in lowered for kw in _FALLBACK_KEYWORDS):
            return None
        return Candidate(
            content=text[:FALLBACK_MAX_CHARS],
            chunk_type=ChunkType.FACT,
            importance_hint=FALLBACK_WEIGHT,
            metadata={"reason": "important_keyword_detected"},
        )


def _sentence(clause: str) -> str:
    clause = clause.strip()
    return clause if clause[-1:] in ".!?" else f"{clause}."
