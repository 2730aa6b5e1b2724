"""Ranked full-text retrieval over conversation turns."""

from .tokenize import tokenize, tokenize_terms, stem
from .ranked_index import RankedIndex, IndexStats, IndexStatsSnapshot

__all__ = [
    "tokenize",
    "tokenize_terms",
    "stem",
    "RankedIndex",
    "IndexStats",
    "IndexStatsSnapshot",
]
