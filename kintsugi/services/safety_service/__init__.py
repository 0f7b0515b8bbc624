"""Safety Service: rule-based detection fused with an LLM critic.

Every assistant reply passes through the SafetyPipeline before it is
shown to the user. Replies that fuse to HIGH risk are withheld for
human review.

Components:
- config.py: Immutable rule tables, weights, fusion policy
- pattern_detector.py: Deterministic rules over (user, assistant) text
- sentiment.py: Lexicon sentiment heuristic for the mismatch rule
- critic.py: CriticAdapter normalising LLM critic output
- fusion.py: RiskFusionEngine scoring and override policy
- pipeline.py: Detector and critic in parallel, then fusion

Usage:
    pipeline = SafetyPipeline(PatternDetector(), CriticAdapter(critic_llm))
    verdict = await pipeline.evaluate(user_text, assistant_text, context)
"""

from .config import FusionPolicy, RuleConfig, RuleWeights, SafetyConfig
from .critic import CriticAdapter, CriticCallResult, CriticFailure, CriticVerdict
from .fusion import RiskFusionEngine
from .pattern_detector import PatternDetector, RuleResult
from .pipeline import SafetyPipeline
from .sentiment import SentimentLabel, classify_sentiment

__all__ = [
    "FusionPolicy",
    "RuleConfig",
    "RuleWeights",
    "SafetyConfig",
    "CriticAdapter",
    "CriticCallResult",
    "CriticFailure",
    "CriticVerdict",
    "RiskFusionEngine",
    "PatternDetector",
    "RuleResult",
    "SafetyPipeline",
    "SentimentLabel",
    "classify_sentiment",
]
