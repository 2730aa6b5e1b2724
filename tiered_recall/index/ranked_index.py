"""
Incremental BM25 index over turn text.

The index is a derived projection of the turn store: it can be rebuilt from
turns at any time and is never a source of truth. Its corpus statistics
(document count, total length, document frequencies) live in a single
`IndexStats` aggregate that only this module mutates, under the index lock.
"""
from __future__ import annotations
from collections import Counter
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional, Set, Tuple
import logging
import math
import threading

from tiered_recall.memory.schemas import Turn
from .tokenize import tokenize, tokenize_terms


logger = logging.getLogger(__name__)


@dataclass
class IndexStats:
    """Corpus aggregates. Integer counters so incremental and rebuilt values match exactly."""
    doc_count: int = 0
    total_length: int = 0
    doc_freq: Dict[str, int] = field(default_factory=dict)

    @property
    def avgdl(self) -> float:
        if self.doc_count == 0:
            return 0.0
        return self.total_length / self.doc_count


@dataclass(frozen=True)
class IndexStatsSnapshot:
    """Immutable copy of IndexStats for inspection and comparison."""
    doc_count: int
    total_length: int
    avgdl: float
    doc_freq: Tuple[Tuple[str, int], ...]


@dataclass(frozen=True)
class DocMeta:
    """Per-document metadata used for filtering and tie-breaking."""
    session_id: str
    user_id: str
    sequence_number: int
    created_at: float


class RankedIndex:
    """
    Inverted index with BM25 scoring and incremental updates.

    score(d) = sum over query terms t of
        IDF(t) * tf(t,d) * (k1 + 1) / (tf(t,d) + k1 * (1 - b + b * |d| / avgdl))
    IDF(t) = ln((N - df(t) + 0.5) / (df(t) + 0.5) + 1)
    """

    def __init__(self, k1: float = 1.2, b: float = 0.75):
        self.k1 = k1
        self.b = b

        self._lock = threading.RLock()
        self._postings: Dict[str, Dict[str, int]] = {}
        self._doc_terms: Dict[str, Counter] = {}
        self._doc_len: Dict[str, int] = {}
        self._meta: Dict[str, DocMeta] = {}
        self._stats = IndexStats()

    # ------------------------------------------------------------------
    # Maintenance
    # ------------------------------------------------------------------

    def add(
        self,
        doc_id: str,
        text: str,
        session_id: str = "",
        user_id: str = "",
        sequence_number: int = 0,
        created_at: float = 0.0,
    ) -> None:
        """
        Index (or re-index) a document.

        Cost is O(terms in the document). Re-adding an existing id replaces
        the previous version and adjusts every aggregate exactly.
        """
        tokens = tokenize(text)
        counts = Counter(tokens)

        with self._lock:
            if doc_id in self._doc_terms:
                self._remove_locked(doc_id)

            for term, tf in counts.items():
                self._postings.setdefault(term, {})[doc_id] = tf
                self._stats.doc_freq[term] = self._stats.doc_freq.get(term, 0) + 1

            self._doc_terms[doc_id] = counts
            self._doc_len[doc_id] = len(tokens)
            self._meta[doc_id] = DocMeta(session_id, user_id, sequence_number, created_at)
            self._stats.doc_count += 1
            self._stats.total_length += len(tokens)

    def add_turn(self, turn: Turn) -> None:
        self.add(
            turn.id,
            turn.text,
            session_id=turn.session_id,
            user_id=turn.user_id,
            sequence_number=turn.sequence_number,
            created_at=turn.created_at,
        )

    def remove(self, doc_id: str) -> bool:
        """Drop a document from the index. Returns False if it was not indexed."""
        with self._lock:
            if doc_id not in self._doc_terms:
                return False
            self._remove_locked(doc_id)
            return True

    def _remove_locked(self, doc_id: str) -> None:
        counts = self._doc_terms.pop(doc_id)
        for term in counts:
            postings = self._postings.get(term)
            if postings is not None:
                postings.pop(doc_id, None)
                if not postings:
                    del self._postings[term]
            df = self._stats.doc_freq.get(term, 0) - 1
            if df > 0:
                self._stats.doc_freq[term] = df
            else:
                self._stats.doc_freq.pop(term, None)

        self._stats.total_length -= self._doc_len.pop(doc_id)
        self._stats.doc_count -= 1
        self._meta.pop(doc_id, None)

    def handle_update(self, event) -> None:
        """Turn store listener: re-index the turn carried by the event."""
        self.add_turn(event.turn)

    @classmethod
    def rebuild(cls, turns: Iterable[Turn], k1: float = 1.2, b: float = 0.75) -> "RankedIndex":
        """Build a fresh index from scratch."""
        index = cls(k1=k1, b=b)
        count = 0
        for turn in turns:
            index.add_turn(turn)
            count += 1
        logger.info("Rebuilt ranked index with %d documents", count)
        return index

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def __len__(self) -> int:
        return self._stats.doc_count

    def __contains__(self, doc_id: str) -> bool:
        return doc_id in self._doc_terms

    def stats_snapshot(self) -> IndexStatsSnapshot:
        with self._lock:
            return IndexStatsSnapshot(
                doc_count=self._stats.doc_count,
                total_length=self._stats.total_length,
                avgdl=self._stats.avgdl,
                doc_freq=tuple(sorted(self._stats.doc_freq.items())),
            )

    def idf(self, term: str) -> float:
        with self._lock:
            n = self._stats.doc_count
            df = self._stats.doc_freq.get(term, 0)
        return math.log((n - df + 0.5) / (df + 0.5) + 1.0)

    def score(
        self,
        terms: List[str],
        candidate_ids: Optional[Set[str]] = None,
    ) -> Dict[str, float]:
        """
        BM25 scores for documents matching any query term.

        Args:
            terms: Raw search terms (tokenized here)
            candidate_ids: Restrict scoring to these documents

        Returns:
            doc_id -> score for every candidate with at least one matching term
        """
        query = tokenize_terms(terms)
        if not query:
            return {}

        scores: Dict[str, float] = {}
        with self._lock:
            n = self._stats.doc_count
            avgdl = self._stats.avgdl or 1.0

            for term in query:
                postings = self._postings.get(term)
                if not postings:
                    continue
                df = self._stats.doc_freq[term]
                idf = math.log((n - df + 0.5) / (df + 0.5) + 1.0)

                for doc_id, tf in postings.items():
                    if candidate_ids is not None and doc_id not in candidate_ids:
                        continue
                    norm = self.k1 * (1 - self.b + self.b * self._doc_len[doc_id] / avgdl)
                    scores[doc_id] = scores.get(doc_id, 0.0) + idf * (tf * (self.k1 + 1)) / (tf + norm)

        return scores

    def search(
        self,
        terms: List[str],
        candidate_ids: Optional[Set[str]] = None,
        limit: Optional[int] = None,
    ) -> List[Tuple[str, float]]:
        """
        Rank documents for a query.

        Args:
            terms: Search terms
            candidate_ids: Optional candidate restriction
            limit: Maximum results

        Returns:
            List of (doc_id, score) with score > 0, best first; ties broken
            by recency (newest first)
        """
        scores = self.score(terms, candidate_ids)
        ranked = [(doc_id, s) for doc_id, s in scores.items() if s > 0]
        ranked.sort(key=lambda item: self._sort_key(item[0], item[1]))
        if limit is not None:
            ranked = ranked[:limit]
        return ranked

    def _sort_key(self, doc_id: str, score: float) -> tuple:
        meta = self._meta.get(doc_id)
        if meta is None:
            return (-score, 0.0, 0, doc_id)
        return (-score, -meta.created_at, -meta.sequence_number, doc_id)
