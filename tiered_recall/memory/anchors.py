"""
Identity anchor heuristics.

Flags user messages that state who the user is or what they prefer, so the
turn is marked critical even when the recognition pass is unavailable.
"""

import re
from typing import List

from .schemas import IdentityAnchor


# pattern -> anchor type
ANCHOR_PATTERNS = {
    r"\bmy name is\b": "identity",
    r"\bcall me\b": "identity",
    r"\bi am an?\b": "identity",
    r"\bi'?m an?\b": "identity",
    r"\bi work (?:as|at|on|in)\b": "identity",
    r"\bi prefer\b": "preference",
    r"\bi (?:really )?(?:like|love|hate|dislike)\b": "preference",
    r"\bi always\b": "value",
    r"\bi never\b": "value",
    r"\bi believe\b": "value",
    r"\bi care about\b": "value",
    r"\bremember that\b": "explicit",
    r"\bdon'?t forget\b": "explicit",
    r"\bkeep in mind\b": "explicit",
}

_COMPILED = [(re.compile(p), anchor_type) for p, anchor_type in ANCHOR_PATTERNS.items()]


def detect_anchors(text: str, turn_id: str = None) -> List[IdentityAnchor]:
    """
    Extract identity anchors from text based on content patterns.

    Args:
        text: User message
        turn_id: Turn the text belongs to

    Returns:
        One anchor per matched type (deduplicated)
    """
    text_lower = text.lower()
    found = {}

    for pattern, anchor_type in _COMPILED:
        match = pattern.search(text_lower)
        if match and anchor_type not in found:
            found[anchor_type] = IdentityAnchor(
                turn_id=turn_id,
                anchor_type=anchor_type,
                description=_sentence_around(text, match.start()),
                confidence=0.6,
            )

    return list(found.values())


def _sentence_around(text: str, pos: int, max_chars: int = 160) -> str:
    start = max(text.rfind(".", 0, pos), text.rfind("\n", 0, pos)) + 1
    end_candidates = [i for i in (text.find(".", pos), text.find("\n", pos)) if i != -1]
    end = min(end_candidates) if end_candidates else len(text)
    return text[start:end].strip()[:max_chars]
