"""
Tier manager: Hot/Warm/Cold state machine for conversation turns.

- Hot: newest turns of a session, bounded by turn count and tokens
- Warm: older turns of the current session
- Cold: turns of ended sessions, terminal under normal operation

Transitions only move forward (Hot -> Warm -> Cold) except through the
administrative `set_tier` override. Every transition is logged atomically
with the tier change.
"""

import logging
import threading
import time
import uuid
from typing import Dict, List, Optional, Sequence

from tiered_recall.config.settings import TierCfg
from tiered_recall.errors import SessionNotFound, TurnNotFound
from tiered_recall.index.ranked_index import RankedIndex
from tiered_recall.ops.telemetry import log_transition
from tiered_recall.persist.turn_store import TurnStore
from .schemas import (
    REASON_CAPACITY,
    REASON_MANUAL_PREFIX,
    REASON_SESSION_END,
    ScoredTurn,
    Session,
    Tier,
    TierTransition,
    Turn,
)
from .significance import SignificanceScorer, turn_ages


logger = logging.getLogger(__name__)


def _transition(turn: Turn, to_tier: Tier, reason: str, at: float) -> TierTransition:
    return TierTransition(
        id=f"tr_{uuid.uuid4().hex[:16]}",
        turn_id=turn.id,
        from_tier=turn.tier,
        to_tier=to_tier,
        transitioned_at=at,
        reason=reason,
    )


class TierManager:
    """
    Owns tier mutation, eviction policy and tier-scoped queries.

    Session-scoped state is read per session key; Cold queries federate over
    the user's sessions through the turn store rather than a separate global
    structure.
    """

    def __init__(
        self,
        store: TurnStore,
        index: RankedIndex,
        scorer: Optional[SignificanceScorer] = None,
        cfg: Optional[TierCfg] = None,
    ):
        """
        Initialize tier manager.

        Args:
            store: Turn store (persists tiers and the transition log)
            index: Ranked index used for candidate generation
            scorer: Significance scorer for final ordering
            cfg: Hot/Warm bounds
        """
        self.store = store
        self.index = index
        self.scorer = scorer or SignificanceScorer()
        self.cfg = cfg or TierCfg()
        self._session_create_lock = threading.Lock()

    # ------------------------------------------------------------------
    # Sessions
    # ------------------------------------------------------------------

    def get_or_create_session(self, user_id: str) -> Session:
        """Return the user's active session, creating one if none exists."""
        with self._session_create_lock:
            session = self.store.get_active_session(user_id)
            if session is not None:
                return session
            session = self.store.create_session(user_id)
            logger.info("Started session %s for user %s", session.id, user_id)
            return session

    def end_session(self, session_id: str) -> List[TierTransition]:
        """
        End a session and move all its Hot/Warm turns to Cold in one batch.

        Returns:
            Transitions applied (empty if the session was already ended)
        """
        session = self.store.get_session(session_id)
        if session is None:
            raise SessionNotFound(session_id)
        if not session.is_active:
            return []

        now = time.time()
        turns = self.store.get_turns(session_id, tiers=[Tier.HOT, Tier.WARM])
        transitions = [_transition(t, Tier.COLD, REASON_SESSION_END, now) for t in turns]

        self.store.record_transitions(transitions, ended_session_id=session_id, ended_at=now)
        for tr in transitions:
            log_transition(tr.turn_id, tr.from_tier.value, tr.to_tier.value, tr.reason, session_id)

        logger.info("Ended session %s, moved %d turns to cold", session_id, len(transitions))
        return transitions

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    def enforce_hot_bound(self, session_id: str) -> List[TierTransition]:
        """
        Evict oldest Hot turns to Warm until Hot is within both bounds.

        Called synchronously after every append/complete. The newest turn is
        never evicted, even when it alone exceeds the token bound.
        """
        hot = self.store.get_turns(session_id, tiers=[Tier.HOT])
        total_tokens = sum(t.total_tokens for t in hot)

        now = time.time()
        transitions = []
        while len(hot) > 1 and (
            len(hot) > self.cfg.hot_max_turns or total_tokens > self.cfg.hot_max_tokens
        ):
            oldest = hot.pop(0)
            total_tokens -= oldest.total_tokens
            transitions.append(_transition(oldest, Tier.WARM, REASON_CAPACITY, now))

        if transitions:
            self.store.record_transitions(transitions)
            for tr in transitions:
                log_transition(tr.turn_id, tr.from_tier.value, tr.to_tier.value, tr.reason, session_id)

        return transitions

    def set_tier(self, turn_id: str, tier: Tier, reason: str) -> Optional[TierTransition]:
        """
        Administrative override: move a turn to any tier.

        Not part of the automatic state machine. The transition is logged
        with reason "manual:<reason>" for audit.

        Returns:
            The transition, or None if the turn is already in that tier
        """
        turn = self.store.get_turn(turn_id)
        if turn is None:
            raise TurnNotFound(turn_id)

        tier = Tier(tier)
        if turn.tier == tier:
            return None

        tr = _transition(turn, tier, f"{REASON_MANUAL_PREFIX}{reason}", time.time())
        self.store.record_transitions([tr])
        log_transition(tr.turn_id, tr.from_tier.value, tr.to_tier.value, tr.reason, turn.session_id)
        logger.warning("Manual tier override for %s: %s -> %s (%s)", turn_id, tr.from_tier.value, tier.value, reason)
        return tr

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get_hot(self, session_id: str) -> List[Turn]:
        """Hot turns of a session, oldest first."""
        return self.store.get_turns(session_id, tiers=[Tier.HOT])

    def get_warm(self, session_id: str) -> List[Turn]:
        """Newest Warm turns of a session within the Warm turn/token bounds, oldest first."""
        warm = self.store.get_turns(session_id, tiers=[Tier.WARM])
        kept: List[Turn] = []
        tokens = 0
        for turn in reversed(warm):
            if len(kept) >= self.cfg.warm_max_turns:
                break
            if tokens + turn.total_tokens > self.cfg.warm_max_tokens and kept:
                break
            kept.append(turn)
            tokens += turn.total_tokens
        kept.reverse()
        return kept

    def search_warm(self, session_id: str, terms: Sequence[str], limit: int) -> List[ScoredTurn]:
        """Rank the session's Warm turns against the search terms."""
        candidates = self.get_warm(session_id)
        if not candidates:
            return []
        reference = self.store.get_turns(session_id)
        return self._rank(candidates, reference, terms, limit)

    def search_cold(self, user_id: str, terms: Sequence[str], limit: int) -> List[ScoredTurn]:
        """Rank the user's Cold turns (across ended sessions) against the search terms."""
        candidates = self.store.get_turns_for_user(user_id, tiers=[Tier.COLD])
        if not candidates:
            return []
        return self._rank(candidates, candidates, terms, limit)

    def _rank(
        self,
        candidates: List[Turn],
        reference: List[Turn],
        terms: Sequence[str],
        limit: int,
    ) -> List[ScoredTurn]:
        by_id: Dict[str, Turn] = {t.id: t for t in candidates}
        relevance = self.index.score(list(terms), candidate_ids=set(by_id))
        matched = [by_id[doc_id] for doc_id, score in relevance.items() if score > 0]
        if not matched:
            return []

        ranked = self.scorer.rank(matched, relevance, turn_ages(reference))
        return ranked[:limit]
