"""Background indexing of conversational turns."""

from .indexer import BackgroundIndexer, IndexerStats, Outcome, TurnOutcome, summary_key

__all__ = [
    "BackgroundIndexer",
    "IndexerStats",
    "Outcome",
    "TurnOutcome",
    "summary_key",
]
