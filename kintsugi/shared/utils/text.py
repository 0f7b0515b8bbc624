"""Small text helpers shared by the review workflow and prompts."""

DEFAULT_EXCERPT_LENGTH = 200


def excerpt(text: str, limit: int = DEFAULT_EXCERPT_LENGTH) -> str:
    """Return at most ``limit`` characters of ``text``, whitespace-trimmed."""
    if text is None:
        return ""
    return text.strip()[:limit]


def is_blank(text) -> bool:
    """True for None, empty or whitespace-only strings."""
    return text is None or not str(text).strip()
