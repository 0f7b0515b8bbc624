"""Lexicon-count sentiment heuristic.

Deliberately cheap: it only feeds the sentiment mismatch rule of the
pattern detector and is never used as a signal on its own.
"""
from enum import Enum
from typing import Optional

from .config import SentimentLexicon


class SentimentLabel(Enum):
    NEGATIVE = "negative"
    NEUTRAL = "neutral"
    POSITIVE = "positive"


_DEFAULT_LEXICON = SentimentLexicon()


def classify_sentiment(text: str, lexicon: Optional[SentimentLexicon] = None) -> SentimentLabel:
    """Classify text polarity by counting distinct lexicon words present.

    A text is negative when its negative count exceeds the positive count
    by more than one, positive by the symmetric rule, neutral otherwise.
    Matching is a case-insensitive substring test.
    """
    lexicon = lexicon or _DEFAULT_LEXICON
    lowered = (text or "").lower()

    negative = sum(1 for word in lexicon.negative if word in lowered)
    positive = sum(1 for word in lexicon.positive if word in lowered)

    if negative > positive + 1:
        return SentimentLabel.NEGATIVE
    if positive > negative + 1:
        return SentimentLabel.POSITIVE
    return SentimentLabel.NEUTRAL
