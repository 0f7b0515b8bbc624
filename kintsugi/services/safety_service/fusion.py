"""Risk fusion: rule result + critic verdict -> one RiskVerdict.

Pure and deterministic. Scoring:

    total = rule score + 2 * critic weight (info=0, low=1, medium=3, high=5)
    any injection attempt          +8
    injection that succeeded       +4 more

Thresholds: >=8 high, >=4 medium, >=1 low, else info.

Overrides, applied after thresholding in this order:
    critic said high              -> high
    injection attempt detected    -> high
    role switching in the reply   -> high

Only high verdicts are flagged for human review.
"""
import logging
from typing import Optional

from kintsugi.shared.models import RiskLevel, RiskVerdict
from .config import FusionPolicy
from .critic import CriticVerdict
from .pattern_detector import (
    PROMPT_INJECTION_ATTEMPT,
    ROLE_SWITCHING_DETECTED,
    RuleResult,
)

logger = logging.getLogger(__name__)

PROMPT_INJECTION_SUCCESSFUL = "prompt_injection_successful"
PROMPT_INJECTION_RESISTED = "prompt_injection_resisted"


class RiskFusionEngine:
    """Combines rule-based and critic signals under an explicit policy."""

    def __init__(self, policy: Optional[FusionPolicy] = None):
        self.policy = policy or FusionPolicy()

    def level_for_score(self, score: int) -> RiskLevel:
        policy = self.policy
        if score >= policy.high_threshold:
            return RiskLevel.HIGH
        if score >= policy.medium_threshold:
            return RiskLevel.MEDIUM
        if score >= policy.low_threshold:
            return RiskLevel.LOW
        return RiskLevel.INFO

    def fuse(self, rule_result: RuleResult, critic_verdict: CriticVerdict) -> RiskVerdict:
        """Fuse both signals into a verdict.

        Raises:
            ValueError: If the rule score is negative
        """
        if rule_result.score < 0:
            raise ValueError(f"Rule score must be non-negative, got {rule_result.score}")

        policy = self.policy
        total = rule_result.score + policy.critic_multiplier * policy.critic_weights[critic_verdict.risk_level]
        triggers = set(rule_result.triggers)

        injection_detected = (
            PROMPT_INJECTION_ATTEMPT in triggers or critic_verdict.prompt_injection_detected
        )
        injection_successful = injection_detected and critic_verdict.prompt_injection_successful

        if injection_detected:
            total += policy.injection_penalty
            if injection_successful:
                total += policy.injection_success_penalty
                triggers.add(PROMPT_INJECTION_SUCCESSFUL)
            else:
                triggers.add(PROMPT_INJECTION_RESISTED)

        risk_level = self.level_for_score(total)

        if critic_verdict.risk_level == RiskLevel.HIGH:
            risk_level = RiskLevel.HIGH
        if injection_detected:
            risk_level = RiskLevel.HIGH
        if ROLE_SWITCHING_DETECTED in triggers:
            risk_level = RiskLevel.HIGH

        verdict = RiskVerdict(
            risk_level=risk_level,
            risk_score=total,
            rule_triggers=frozenset(triggers),
            critic_issues=critic_verdict.issues,
            explanation=critic_verdict.explanation,
            flagged=risk_level == RiskLevel.HIGH,
            prompt_injection_detected=injection_detected,
            prompt_injection_successful=injection_successful,
        )

        if injection_detected:
            logger.warning(
                "PROMPT_INJECTION_DETECTED",
                extra={
                    "successful": injection_successful,
                    "from_rules": PROMPT_INJECTION_ATTEMPT in rule_result.triggers,
                    "from_critic": critic_verdict.prompt_injection_detected,
                }
            )

        logger.info(
            "RISK_FUSION_COMPLETED",
            extra={
                "risk_level": risk_level.value,
                "risk_score": total,
                "flagged": verdict.flagged,
                "rule_triggers": sorted(triggers),
            }
        )
        return verdict
