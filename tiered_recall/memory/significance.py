"""
Significance scoring for retrieved turns.

significance = w_r * recency + w_s * relevance_normalized + w_c * criticality

- recency: exp(-decay * age_in_turns), so old turns keep a nonzero weight
- relevance_normalized: min-max of ranked-index scores over the candidate set
- criticality: 1 if the turn is identity-critical, else 0 (never interpolated)

The scorer is pure: identical inputs always produce identical output.
"""

import math
from typing import Dict, List, Mapping, Optional, Sequence

from tiered_recall.config.settings import SignificanceCfg
from .schemas import ScoredTurn, Turn


class SignificanceScorer:
    """Stateless composite scorer. Weights are validated by SignificanceCfg."""

    def __init__(self, cfg: Optional[SignificanceCfg] = None):
        cfg = cfg or SignificanceCfg()
        self.w_recency = cfg.recency
        self.w_relevance = cfg.relevance
        self.w_criticality = cfg.criticality
        self.decay = cfg.decay

    def recency(self, age_in_turns: float) -> float:
        return math.exp(-self.decay * max(0.0, age_in_turns))

    @staticmethod
    def normalize(relevance: Mapping[str, float]) -> Dict[str, float]:
        """
        Min-max normalize scores into [0, 1].

        When every score is equal (including a single candidate) a positive
        score maps to 1.0 and a zero score to 0.0.
        """
        if not relevance:
            return {}
        lo = min(relevance.values())
        hi = max(relevance.values())
        if hi == lo:
            return {k: (1.0 if v > 0 else 0.0) for k, v in relevance.items()}
        span = hi - lo
        return {k: (v - lo) / span for k, v in relevance.items()}

    def score(self, age_in_turns: float, relevance_normalized: float, critical: bool) -> float:
        return (
            self.w_recency * self.recency(age_in_turns)
            + self.w_relevance * relevance_normalized
            + self.w_criticality * (1.0 if critical else 0.0)
        )

    def rank(
        self,
        candidates: Sequence[Turn],
        relevance: Mapping[str, float],
        ages: Mapping[str, float],
    ) -> List[ScoredTurn]:
        """
        Order candidates by significance.

        Args:
            candidates: Turns to score
            relevance: turn_id -> raw ranked-index score (missing = 0)
            ages: turn_id -> age in turns relative to the newest turn

        Returns:
            ScoredTurns, highest significance first, ties newest first
        """
        raw = {t.id: relevance.get(t.id, 0.0) for t in candidates}
        normalized = self.normalize(raw)

        scored = [
            ScoredTurn(
                turn=t,
                score=self.score(ages.get(t.id, 0.0), normalized.get(t.id, 0.0), t.criticality),
                relevance=raw[t.id],
            )
            for t in candidates
        ]
        scored.sort(key=lambda s: (-s.score, -s.turn.created_at, -s.turn.sequence_number, s.turn.id))
        return scored


def turn_ages(turns: Sequence[Turn]) -> Dict[str, float]:
    """
    Age in turns for each turn, 0 for the newest.

    Turns are ordered by (created_at, sequence_number), which matches
    sequence order within a session and gives a user-wide ordinal across
    sessions.
    """
    ordered = sorted(turns, key=lambda t: (t.created_at, t.sequence_number))
    newest = len(ordered) - 1
    return {t.id: float(newest - i) for i, t in enumerate(ordered)}
