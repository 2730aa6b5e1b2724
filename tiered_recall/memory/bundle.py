"""
Memory bundle assembly under a token budget.

Hot turns are always kept verbatim. Retrieved (Warm/Cold) turns are admitted
in significance order while they fit; overflow is resolved only by dropping
retrieved turns.
"""

from typing import List, Sequence

from .schemas import MemoryBundle, ScoredTurn, Turn


def assemble_bundle(
    session_id: str,
    hot_turns: Sequence[Turn],
    retrieved: Sequence[ScoredTurn],
    token_budget: int,
) -> MemoryBundle:
    """
    Build a MemoryBundle respecting the token budget.

    Args:
        session_id: Session the bundle is for
        hot_turns: Hot turns, oldest first
        retrieved: Ranked Warm/Cold candidates, best first
        token_budget: Maximum total tokens

    Returns:
        MemoryBundle with hot turns intact and as many retrieved turns as fit
    """
    hot = sorted(hot_turns, key=lambda t: t.sequence_number)
    hot_ids = {t.id for t in hot}
    total = sum(t.total_tokens for t in hot)

    kept: List[ScoredTurn] = []
    trimmed = 0
    seen = set(hot_ids)

    for candidate in retrieved:
        if candidate.turn.id in seen:
            continue
        seen.add(candidate.turn.id)

        cost = candidate.turn.total_tokens
        if total + cost <= token_budget:
            kept.append(candidate)
            total += cost
        else:
            trimmed += 1

    return MemoryBundle(
        session_id=session_id,
        hot_turns=hot,
        retrieved=kept,
        total_tokens=total,
        token_budget=token_budget,
        trimmed=trimmed,
    )


def format_turn(turn: Turn) -> str:
    lines = [f"User: {turn.user_text}"]
    if turn.assistant_text is not None:
        lines.append(f"Assistant: {turn.assistant_text}")
    return "\n".join(lines)


def format_bundle(bundle: MemoryBundle) -> str:
    """
    Format a bundle for injection into a prompt.

    Args:
        bundle: Assembled memory bundle

    Returns:
        Formatted context string (empty if the bundle is empty)
    """
    sections = []

    if bundle.retrieved:
        lines = ["[RECALLED MEMORY]"]
        for scored in bundle.retrieved:
            marker = " (identity)" if scored.turn.criticality else ""
            lines.append(f"- [{scored.turn.tier.value}{marker}] {format_turn(scored.turn)}")
        lines.append(f"(recalled {len(bundle.retrieved)} turns)")
        sections.append("\n".join(lines))

    if bundle.hot_turns:
        lines = ["[RECENT CONVERSATION]"]
        for turn in bundle.hot_turns:
            lines.append(format_turn(turn))
        sections.append("\n".join(lines))

    return "\n\n".join(sections)
