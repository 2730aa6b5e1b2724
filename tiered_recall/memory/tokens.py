"""Token estimation for budget accounting."""


def estimate_tokens(text: str) -> int:
    """Rough token estimate: ~4 chars per token for English text."""
    if not text:
        return 0
    return max(1, (len(text) + 3) // 4)
