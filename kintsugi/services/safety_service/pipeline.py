"""Safety evaluation pipeline: detector and critic in parallel, then fusion."""
import asyncio
import logging
import time
from typing import Any, Mapping, Optional, Sequence

from kintsugi.shared.models import RiskLevel, RiskVerdict
from kintsugi.shared.utils import hash_text_for_audit
from .critic import CriticAdapter
from .fusion import RiskFusionEngine
from .pattern_detector import PatternDetector

logger = logging.getLogger(__name__)

SAFETY_EVALUATION_ERROR = "safety_evaluation_error"


def fail_safe_verdict(reason: str) -> RiskVerdict:
    """Verdict used when fusion itself fails. Never below medium."""
    return RiskVerdict(
        risk_level=RiskLevel.MEDIUM,
        risk_score=0,
        critic_issues=frozenset({SAFETY_EVALUATION_ERROR}),
        explanation=f"Safety evaluation failed: {reason}",
        flagged=False,
    )


class SafetyPipeline:
    """Scores one assistant reply.

    The pattern detector runs in a worker thread while the critic call
    is awaited. Only the critic call carries a timeout (inside the
    adapter). Cancellation propagates to the caller, so no partial
    verdict ever reaches the review workflow.
    """

    def __init__(
        self,
        detector: PatternDetector,
        critic: CriticAdapter,
        fusion: Optional[RiskFusionEngine] = None,
    ):
        self.detector = detector
        self.critic = critic
        self.fusion = fusion or RiskFusionEngine()

    async def evaluate(
        self,
        user_text: str,
        assistant_text: str,
        context: Optional[Sequence[Mapping[str, Any]]] = None,
    ) -> RiskVerdict:
        """Evaluate a reply and return its fused verdict.

        Args:
            user_text: Latest user message
            assistant_text: Candidate assistant reply
            context: Recent turns as {"sender", "content"} mappings

        Returns:
            RiskVerdict
        """
        start_time = time.perf_counter()

        rule_result, critic_verdict = await asyncio.gather(
            asyncio.to_thread(self.detector.detect, user_text, assistant_text),
            self.critic.evaluate(user_text, assistant_text, context),
        )

        try:
            verdict = self.fusion.fuse(rule_result, critic_verdict)
        except Exception as e:
            logger.error(
                "SAFETY_PIPELINE_ERROR",
                extra={
                    "error": str(e),
                    "assistant_text_hash": hash_text_for_audit(assistant_text or ""),
                },
                exc_info=True,
            )
            verdict = fail_safe_verdict(str(e))

        logger.info(
            "SAFETY_EVALUATION_COMPLETED",
            extra={
                "risk_level": verdict.risk_level.value,
                "flagged": verdict.flagged,
                "latency_ms": round((time.perf_counter() - start_time) * 1000, 2),
            }
        )
        return verdict
