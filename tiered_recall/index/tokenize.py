"""Text preprocessing for ranked retrieval."""
from __future__ import annotations
from typing import List
import re


STOP_WORDS = frozenset("""
a about above after again against all am an and any are as at be because been
before being below between both but by can could did do does doing down during
each few for from further had has have having he her here hers herself him
himself his how i if in into is it its itself just me more most my myself no
nor not now of off on once only or other our ours ourselves out over own same
she should so some such than that the their theirs them themselves then there
these they this those through to too under until up very was we were what when
where which while who whom why will with would you your yours yourself
yourselves let lets im ive id youre thats dont cant wont isnt also
""".split())

# Unicode letters and digits; underscores split words
_TOKEN_RE = re.compile(r"[^\W_]+")

# (suffix, replacement), longest first; first match wins
_SUFFIX_RULES = (
    ("ational", "ate"),
    ("ization", "ize"),
    ("fulness", "ful"),
    ("ousness", "ous"),
    ("iveness", "ive"),
    ("ations", "ate"),
    ("ation", "ate"),
    ("ments", ""),
    ("ment", ""),
    ("ness", ""),
    ("ings", ""),
    ("ing", ""),
    ("edly", ""),
    ("ies", "y"),
    ("ied", "y"),
    ("ers", ""),
    ("er", ""),
    ("ed", ""),
    ("ly", ""),
    ("es", ""),
    ("s", ""),
)

_MIN_STEM = 3


def stem(token: str) -> str:
    """
    Strip common English suffixes.

    Deterministic, not a full Porter stemmer. Ranking only needs the same
    word forms to collapse consistently on both index and query side.
    """
    if len(token) <= _MIN_STEM or token.isdigit():
        return token
    for suffix, replacement in _SUFFIX_RULES:
        if token.endswith(suffix):
            if suffix == "s" and token.endswith(("ss", "us", "is")):
                return token
            candidate = token[: -len(suffix)] + replacement
            if len(candidate) >= _MIN_STEM:
                return candidate
            return token
    return token


def tokenize(text: str) -> List[str]:
    """
    Preprocess text for indexing and querying.

    Args:
        text: Input text to preprocess

    Returns:
        Lower-cased, stop-word-free, stemmed tokens in original order
    """
    if not text:
        return []

    # Apostrophes join contractions ("don't" -> "dont") before splitting
    text = text.lower().replace("'", "").replace("’", "")
    tokens = _TOKEN_RE.findall(text)

    return [stem(t) for t in tokens if len(t) > 1 and t not in STOP_WORDS]


def tokenize_terms(terms: List[str]) -> List[str]:
    """Tokenize a list of search terms, deduplicated, order preserved."""
    seen = {}
    for term in terms:
        for token in tokenize(term):
            seen.setdefault(token, None)
    return list(seen)
