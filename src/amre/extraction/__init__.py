"""Candidate extraction for AMRE."""

from .detectors import (
    DecisionDetector,
    Detector,
    EventDetector,
    FactDetector,
    PreferenceDetector,
    RegexDetector,
    RelationshipDetector,
    default_detectors,
    split_clauses,
)
from .extractor import Extractor
from .scoring import ScoreFn, default_importance

__all__ = [
    "DecisionDetector",
    "Detector",
    "EventDetector",
    "Extractor",
    "FactDetector",
    "PreferenceDetector",
    "RegexDetector",
    "RelationshipDetector",
    "ScoreFn",
    "default_detectors",
    "default_importance",
    "split_clauses",
]
