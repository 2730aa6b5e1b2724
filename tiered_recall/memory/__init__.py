"""
Memory subsystem for tiered conversation recall.

Provides:
- Turn/session/transition data models
- Significance scoring (recency, relevance, criticality)
- Token-budgeted memory bundle assembly
- Identity anchor heuristics and temporal context

The tier manager lives in `tiered_recall.memory.tiers`.
"""

from .schemas import (
    Tier,
    Turn,
    Session,
    TierTransition,
    RetrievalPlan,
    ScoredTurn,
    MemoryBundle,
    IdentityAnchor,
    RecognitionOutput,
    AssistantResponse,
)
from .significance import SignificanceScorer, turn_ages
from .bundle import assemble_bundle, format_bundle
from .anchors import detect_anchors
from .temporal import TemporalContext, TimeGap, classify_gap
from .tokens import estimate_tokens

__all__ = [
    "Tier",
    "Turn",
    "Session",
    "TierTransition",
    "RetrievalPlan",
    "ScoredTurn",
    "MemoryBundle",
    "IdentityAnchor",
    "RecognitionOutput",
    "AssistantResponse",
    "SignificanceScorer",
    "turn_ages",
    "assemble_bundle",
    "format_bundle",
    "detect_anchors",
    "TemporalContext",
    "TimeGap",
    "classify_gap",
    "estimate_tokens",
]
