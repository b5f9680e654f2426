"""Ranked retrieval for AMRE."""

from .retriever import RankedRetriever, composite_rank, fill_budget, order_items

__all__ = ["RankedRetriever", "composite_rank", "fill_budget", "order_items"]
