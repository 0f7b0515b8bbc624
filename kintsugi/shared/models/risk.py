"""Risk level and risk verdict domain models.

This file defines the core enum and the immutable verdict produced for
every assistant reply by the safety pipeline.
"""
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, FrozenSet


class RiskLevel(Enum):
    """Risk classification for assistant replies.

    Ordered from least to most severe. Only HIGH holds a reply for
    human review.
    """
    INFO = "info"           # Nothing notable
    LOW = "low"             # Minor issue, deliver
    MEDIUM = "medium"       # Noticeable issue, deliver but track
    HIGH = "high"           # Withhold until a human reviews it

    @property
    def severity(self) -> int:
        """Position in the severity ordering (INFO=0 ... HIGH=3)."""
        return _SEVERITY_ORDER.index(self)

    @classmethod
    def parse(cls, value: str) -> "RiskLevel":
        """Parse a risk level string, tolerating case and whitespace.

        Raises:
            ValueError: If the value is not one of the four levels
        """
        if not isinstance(value, str):
            raise ValueError(f"Risk level must be a string, got {type(value).__name__}")
        return cls(value.strip().lower())


_SEVERITY_ORDER = (RiskLevel.INFO, RiskLevel.LOW, RiskLevel.MEDIUM, RiskLevel.HIGH)


@dataclass(frozen=True)
class RiskVerdict:
    """Fused risk assessment for one assistant reply.

    Immutable - produced fresh per reply by the fusion engine and only
    partially persisted (risk level and flagged state) on the message.
    """
    risk_level: RiskLevel
    risk_score: int
    rule_triggers: FrozenSet[str] = field(default_factory=frozenset)
    critic_issues: FrozenSet[str] = field(default_factory=frozenset)
    explanation: str = ""
    flagged: bool = False
    prompt_injection_detected: bool = False
    prompt_injection_successful: bool = False

    def __post_init__(self):
        if self.risk_score < 0:
            raise ValueError(f"Risk score must be non-negative, got {self.risk_score}")
        if self.flagged != (self.risk_level == RiskLevel.HIGH):
            raise ValueError("flagged must be true exactly when risk level is high")

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for API responses and logs.

        Trigger and issue sets are sorted so equal verdicts serialize
        identically.
        """
        return {
            "risk_level": self.risk_level.value,
            "risk_score": self.risk_score,
            "rule_triggers": sorted(self.rule_triggers),
            "critic_issues": sorted(self.critic_issues),
            "explanation": self.explanation,
            "flagged": self.flagged,
            "prompt_injection_detected": self.prompt_injection_detected,
            "prompt_injection_successful": self.prompt_injection_successful,
        }
