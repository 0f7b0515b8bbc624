"""Deterministic rule-based detection over a (user, assistant) text pair.

Rule categories:
- Crisis phrases in the user's text
- Prompt injection attempts in the user's text
- Imperative advice, overconfidence and missing disclaimers in the reply
- Sentiment mismatch between a distressed user and an upbeat reply
- Role switching in the reply (customer-support register)

The detector is pure and total: any pair of strings produces a result
and it never raises.
"""
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, FrozenSet, Iterable, Optional

from kintsugi.shared.utils import hash_text_for_audit
from .config import RuleConfig
from .sentiment import SentimentLabel, classify_sentiment

logger = logging.getLogger(__name__)

# Trigger tags
CRISIS_KEYWORD = "crisis_keyword"
PROMPT_INJECTION_ATTEMPT = "prompt_injection_attempt"
IMPERATIVE_ADVICE = "imperative_advice"
OVERCONFIDENCE = "overconfidence"
MISSING_DISCLAIMER = "missing_disclaimer"
SENTIMENT_MISMATCH = "sentiment_mismatch"
ROLE_SWITCHING_DETECTED = "role_switching_detected"


@dataclass(frozen=True)
class RuleResult:
    """Weighted rule outcome for one text pair."""
    score: int = 0
    triggers: FrozenSet[str] = field(default_factory=frozenset)

    def __post_init__(self):
        if self.score < 0:
            raise ValueError(f"Rule score must be non-negative, got {self.score}")

    def to_dict(self) -> Dict[str, Any]:
        return {"score": self.score, "triggers": sorted(self.triggers)}


def _any_match(patterns: Iterable, text: str) -> bool:
    return any(pattern.search(text) for pattern in patterns)


class PatternDetector:
    """Scores a user message and the assistant's reply against rule tables."""

    def __init__(self, rules: Optional[RuleConfig] = None):
        self.rules = rules or RuleConfig()

        logger.info(
            "PATTERN_DETECTOR_INITIALIZED",
            extra={
                "crisis_phrase_count": len(self.rules.crisis_phrases),
                "injection_pattern_count": len(self.rules.injection_patterns),
                "role_switch_detection_enabled": self.rules.role_switch_detection_enabled,
                "mismatch_min_user_length": self.rules.mismatch_min_user_length,
            }
        )

    def has_crisis_phrase(self, user_text: str) -> bool:
        lowered = user_text.lower()
        return any(phrase in lowered for phrase in self.rules.crisis_phrases)

    def has_prompt_injection(self, user_text: str) -> bool:
        return _any_match(self.rules.injection_patterns, user_text)

    def has_imperative_advice(self, assistant_text: str) -> bool:
        return _any_match(self.rules.advice_patterns, assistant_text)

    def has_overconfidence(self, assistant_text: str) -> bool:
        return _any_match(self.rules.overconfidence_patterns, assistant_text)

    def is_missing_disclaimer(self, assistant_text: str) -> bool:
        """Medical/therapeutic terminology without any disclaimer phrase."""
        if not _any_match(self.rules.medical_term_patterns, assistant_text):
            return False
        return not _any_match(self.rules.disclaimer_patterns, assistant_text)

    def is_sentiment_mismatch(self, user_text: str, assistant_text: str) -> bool:
        if len(user_text) <= self.rules.mismatch_min_user_length:
            return False
        lexicon = self.rules.lexicon
        return (
            classify_sentiment(user_text, lexicon) == SentimentLabel.NEGATIVE
            and classify_sentiment(assistant_text, lexicon) == SentimentLabel.POSITIVE
        )

    def has_role_switch(self, assistant_text: str) -> bool:
        """Reply abandons the supportive role for a customer-support register.

        Fires on explicit support-desk phrasing, or on an empathetic first
        half followed by a business-style second half that does not refer
        the user to crisis or professional help.
        """
        if _any_match(self.rules.role_switch_patterns, assistant_text):
            return True

        lowered = assistant_text.lower()
        middle = len(lowered) // 2
        first_half, second_half = lowered[:middle], lowered[middle:]
        return (
            any(word in first_half for word in self.rules.empathetic_openings)
            and any(word in second_half for word in self.rules.business_closings)
            and not any(word in second_half for word in self.rules.referral_phrases)
        )

    def detect(self, user_text: str, assistant_text: str) -> RuleResult:
        """Run every rule and sum the weights of those that fire.

        Args:
            user_text: Latest message from the user
            assistant_text: Candidate assistant reply

        Returns:
            RuleResult with total score and the distinct trigger tags
        """
        user_text = user_text or ""
        assistant_text = assistant_text or ""
        weights = self.rules.weights

        score = 0
        triggers = set()

        if self.has_crisis_phrase(user_text):
            score += weights.crisis
            triggers.add(CRISIS_KEYWORD)

        if self.has_prompt_injection(user_text):
            score += weights.prompt_injection
            triggers.add(PROMPT_INJECTION_ATTEMPT)

        if self.rules.role_switch_detection_enabled and self.has_role_switch(assistant_text):
            score += weights.role_switch
            triggers.add(ROLE_SWITCHING_DETECTED)

        if self.has_imperative_advice(assistant_text):
            score += weights.advice
            triggers.add(IMPERATIVE_ADVICE)

        if self.has_overconfidence(assistant_text):
            score += weights.overconfidence
            triggers.add(OVERCONFIDENCE)

        if self.is_missing_disclaimer(assistant_text):
            score += weights.advice
            triggers.add(MISSING_DISCLAIMER)

        if self.is_sentiment_mismatch(user_text, assistant_text):
            score += weights.mismatch
            triggers.add(SENTIMENT_MISMATCH)

        result = RuleResult(score=score, triggers=frozenset(triggers))

        logger.debug(
            "RULE_SCAN_COMPLETED",
            extra={
                "user_text_hash": hash_text_for_audit(user_text),
                "assistant_text_hash": hash_text_for_audit(assistant_text),
                "score": score,
                "triggers": sorted(triggers),
            }
        )
        return result
