"""Prompt construction for the recognition passes and final generation."""

import json
from typing import Optional, Sequence

from tiered_recall.memory.bundle import format_bundle, format_turn
from tiered_recall.memory.schemas import MemoryBundle, RecognitionOutput, Turn
from tiered_recall.memory.temporal import TemporalContext


PLAN_INSTRUCTIONS = """You are the memory recognizer for a conversational assistant.
Decide what past conversation memory is needed to answer the user.

Respond with a single JSON object (RETRIEVAL PLAN) and nothing else:
{
  "needs_warm": bool,       // older turns from this session are relevant
  "needs_cold": bool,       // turns from earlier sessions are relevant
  "search_terms": [str],    // keywords to search memory with
  "max_results": int,       // how many past turns to retrieve
  "temporal_context": str,  // how the time gap affects this reply
  "rationale": str          // one sentence
}
If needs_warm or needs_cold is true, search_terms must not be empty."""

CONTEXT_INSTRUCTIONS = """You are the memory recognizer for a conversational assistant.
Given the user's message and the retrieved memory, report what you recognize.

Respond with a single JSON object and nothing else:
{
  "recognition_report": str,          // what the user needs, in context
  "topics": [str],
  "domain_signals": {str: float},     // domain -> strength in [0, 1]
  "identity_anchors": [               // turns that reveal who the user is
    {"turn_id": str, "anchor_type": str, "description": str, "confidence": float}
  ]
}"""


def _temporal_lines(temporal: TemporalContext) -> str:
    if temporal.gap_seconds is None:
        return f"TIME SINCE LAST TURN: none ({temporal.framing})"
    return f"TIME SINCE LAST TURN: {int(temporal.gap_seconds)}s ({temporal.time_gap.value}; {temporal.framing})"


def build_plan_prompt(user_text: str, hot_turns: Sequence[Turn], temporal: TemporalContext) -> str:
    """First pass: decide which tiers to search and with which terms."""
    parts = [PLAN_INSTRUCTIONS, "", _temporal_lines(temporal)]
    if hot_turns:
        parts.append("RECENT TURNS:")
        parts.extend(format_turn(t) for t in hot_turns)
    parts.append("")
    parts.append(f"USER MESSAGE: {user_text}")
    return "\n".join(parts)


def build_context_prompt(user_text: str, temporal: TemporalContext, bundle: MemoryBundle) -> str:
    """Second pass: recognize topics and identity anchors over the assembled bundle."""
    parts = [CONTEXT_INSTRUCTIONS, "", _temporal_lines(temporal)]
    if bundle.retrieved:
        parts.append("RETRIEVED MEMORY:")
        for scored in bundle.retrieved:
            parts.append(f"[turn_id={scored.turn.id} tier={scored.turn.tier.value}]")
            parts.append(format_turn(scored.turn))
    if bundle.hot_turns:
        parts.append("RECENT TURNS:")
        parts.extend(format_turn(t) for t in bundle.hot_turns)
    parts.append("")
    parts.append(f"USER MESSAGE: {user_text}")
    return "\n".join(parts)


def build_generation_prompt(
    user_text: str,
    bundle: MemoryBundle,
    recognition: Optional[RecognitionOutput],
    temporal: TemporalContext,
) -> str:
    """
    Final prompt for the generation model.

    Args:
        user_text: Current user message
        bundle: Assembled memory (may be the raw bundle after a failed pass 2)
        recognition: Recognition output, None when pass 2 fell back
        temporal: Time since the user's previous turn

    Returns:
        Prompt string
    """
    parts = ["You are a helpful assistant with memory of past conversations.", ""]
    parts.append(f"[CONTEXT] {temporal.framing}")

    if recognition is not None:
        parts.append(f"[RECOGNITION] {recognition.recognition_report}")
        if recognition.topics:
            parts.append(f"Topics: {', '.join(recognition.topics)}")
        if recognition.identity_anchors:
            anchors = [
                {"type": a.anchor_type, "description": a.description}
                for a in recognition.identity_anchors
            ]
            parts.append(f"Identity anchors: {json.dumps(anchors)}")

    memory = format_bundle(bundle)
    if memory:
        parts.append("")
        parts.append(memory)

    parts.append("")
    parts.append(f"USER MESSAGE: {user_text}")
    parts.append("Assistant:")
    return "\n".join(parts)
