"""
Memory system data models.

Defines Turn, Session, tier transitions, retrieval plans and memory bundles.
"""

from enum import Enum
from typing import Dict, List, Literal, Optional
from pydantic import BaseModel, Field
import time


class Tier(str, Enum):
    """Retention tier of a turn. Order: hot < warm < cold."""

    HOT = "hot"
    WARM = "warm"
    COLD = "cold"

    @property
    def rank(self) -> int:
        return _TIER_ORDER[self]

    def is_forward_of(self, other: "Tier") -> bool:
        """True if moving from `other` to self follows Hot -> Warm -> Cold."""
        return self.rank > other.rank


_TIER_ORDER = {Tier.HOT: 0, Tier.WARM: 1, Tier.COLD: 2}


# Transition reasons
REASON_CAPACITY = "capacity"
REASON_SESSION_END = "session_end"
REASON_MANUAL_PREFIX = "manual:"


class Turn(BaseModel):
    """
    One user/assistant exchange.

    `assistant_text` is None while generation is in flight, or when the
    request was abandoned. Both are valid, queryable states.
    """

    id: str = Field(..., description="Unique turn identifier")
    session_id: str
    user_id: str
    sequence_number: int = Field(..., ge=1, description="Monotonic within session")

    user_text: str
    assistant_text: Optional[str] = None

    created_at: float = Field(default_factory=time.time, description="Unix timestamp")
    completed_at: Optional[float] = None

    token_count_user: int = 0
    token_count_assistant: int = 0

    tier: Tier = Tier.HOT
    tier_changed_at: Optional[float] = None
    criticality: bool = Field(False, description="Identity-forming turn")

    @property
    def total_tokens(self) -> int:
        return self.token_count_user + self.token_count_assistant

    @property
    def is_complete(self) -> bool:
        return self.assistant_text is not None

    @property
    def text(self) -> str:
        """Indexable text: user input plus assistant output when present."""
        if self.assistant_text:
            return f"{self.user_text}\n{self.assistant_text}"
        return self.user_text


class Session(BaseModel):
    """A bounded interaction window for one user."""

    id: str
    user_id: str
    started_at: float = Field(default_factory=time.time)
    ended_at: Optional[float] = None
    turn_count: int = 0
    total_tokens: int = 0
    last_turn_at: Optional[float] = None

    @property
    def is_active(self) -> bool:
        return self.ended_at is None


class TierTransition(BaseModel):
    """Immutable transition-log entry."""

    id: str
    turn_id: str
    from_tier: Tier
    to_tier: Tier
    transitioned_at: float = Field(default_factory=time.time)
    reason: str

    model_config = {"frozen": True}


class RetrievalPlan(BaseModel):
    """What memory to fetch before building full context (pass 1 output)."""

    needs_warm: bool = False
    needs_cold: bool = False
    search_terms: List[str] = Field(default_factory=list)
    max_results: int = Field(8, ge=1)
    rationale: str = Field("", description="Diagnostic only, never parsed")
    temporal_context: str = ""
    source: Literal["recognition", "fallback", "disabled"] = "recognition"

    def clamped(self, cap: int) -> "RetrievalPlan":
        """Copy with max_results bounded by the server-side cap."""
        return self.model_copy(update={"max_results": max(1, min(self.max_results, cap))})


class ScoredTurn(BaseModel):
    """A retrieved turn with its significance and raw relevance."""

    turn: Turn
    score: float
    relevance: float = 0.0


class MemoryBundle(BaseModel):
    """
    Context handed to generation.

    Hot turns are verbatim and newest-last. Retrieved turns are ordered by
    significance, ties newest-first. Hot turns are never trimmed for budget.
    """

    session_id: str
    hot_turns: List[Turn] = Field(default_factory=list)
    retrieved: List[ScoredTurn] = Field(default_factory=list)
    total_tokens: int = 0
    token_budget: int = 0
    trimmed: int = Field(0, description="Retrieved turns dropped for budget")

    @property
    def turn_ids(self) -> List[str]:
        return [t.id for t in self.hot_turns] + [s.turn.id for s in self.retrieved]


class IdentityAnchor(BaseModel):
    """Identity-forming signal surfaced by recognition or heuristics."""

    turn_id: Optional[str] = None
    anchor_type: str = "preference"
    description: str = ""
    confidence: float = Field(0.5, ge=0.0, le=1.0)


class RecognitionOutput(BaseModel):
    """Structured second-pass recognition result."""

    recognition_report: str
    topics: List[str] = Field(default_factory=list)
    domain_signals: Dict[str, float] = Field(default_factory=dict)
    identity_anchors: List[IdentityAnchor] = Field(default_factory=list)


class AssistantResponse(BaseModel):
    """Result of processing one user message."""

    turn_id: str
    session_id: str
    text: str
    bundle: MemoryBundle
    recognition: Optional[RecognitionOutput] = None
    plan: Optional[RetrievalPlan] = None
    fallbacks: List[str] = Field(default_factory=list, description="Passes that fell back")
    state: str = "done"
