"""Safety Service configuration: rule tables, weights and fusion policy.

Rule tables are immutable and built once at process start. Every
component receives its configuration by reference; nothing here is
mutated at runtime.
"""
import os
import re
from dataclasses import dataclass, field
from typing import FrozenSet, Mapping, Tuple
from types import MappingProxyType

from kintsugi.shared.models import RiskLevel


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


def _compile(*patterns: str) -> Tuple[re.Pattern, ...]:
    return tuple(re.compile(p, re.IGNORECASE) for p in patterns)


@dataclass(frozen=True)
class RuleWeights:
    """Score contributed by each rule category when it fires."""
    crisis: int = 5
    advice: int = 3
    mismatch: int = 2
    overconfidence: int = 2
    prompt_injection: int = 4
    role_switch_bonus: int = 4      # Added on top of prompt_injection

    @property
    def role_switch(self) -> int:
        return self.prompt_injection + self.role_switch_bonus


# Self-harm / suicide phrases matched as case-insensitive substrings of
# the user's text.
CRISIS_PHRASES: FrozenSet[str] = frozenset({
    "suicide",
    "suicidal",
    "kill myself",
    "end my life",
    "ending it all",
    "want to die",
    "self harm",
    "self-harm",
    "hurt myself",
    "harm myself",
    "cutting",
    "overdose",
    "jump off",
    "hang myself",
    "no reason to live",
    "better off dead",
    "better off without me",
    "can't go on",
    "unalive",
})

# Prompt injection: instruction override and system delimiters
_INSTRUCTION_OVERRIDE = (
    r"\b(ignore|forget|disregard|override) (all )?(the |your )?(previous|prior|earlier|above) "
    r"(instructions?|prompts?|rules?|directives?)",
    r"\byou are now\b",
    r"\bfrom now on,? (you|act|respond|behave|pretend)\b",
    r"\bnew instructions?:",
    r"\bsystem:? (override|bypass|ignore)\b",
    r"\[system\]",
    r"<\|system\|>",
    r"### ?(new )?instructions?:",
    r"\byou must (now|always) (forget|ignore|disregard)\b",
    r"\b(delete|show me|reveal) your (system )?prompt\b",
    r"\bwhat are your (instructions|rules|prompts)\b",
    r"\brepeat (the word|this word|after me)\b",
    r"\bsay exactly\b",
    r"\boutput (only|just) (the word|this)\b",
)

# Prompt injection: role-play and identity change
_IDENTITY_CHANGE = (
    r"\bpretend (you are|you're|to be)\b",
    r"\bact as if you\b",
    r"\broleplay as\b",
    r"\byou're no longer\b",
    r"\byou are no longer\b",
    r"\bswitch to (responding|acting|behaving)\b",
    r"\b(respond|act|behave) (as|like) (a|an) (customer support|support ticket|different|another)\b",
    r"\bchange (your|to) (role|persona|behavior|behaviour)\b",
    r"\b(do not|don't) (acknowledge|mention|note) (the|this) (switch|change|transition)\b",
)

# Prompt injection: contradictory instructions that suppress empathy
_EMPATHY_SUPPRESSION = (
    r"\bavoid (validating|reassurance|reassuring|empathy|support|being supportive)\b",
    r"\b(don't|do not) (validate|reassure|be empathetic|be supportive|show empathy)\b",
    r"\bnever (validate|reassure|be empathetic|be supportive|mention)\b",
    r"\bstop being (empathetic|supportive|kind|nice|a therapist)\b",
    r"\byour response (must|should)\b",
    r"\byou must (avoid|not|never)\b",
    r"\b(if you )?violate (any )?rules?\b",
    r"\bcontinue anyway\b",
    r"\b(must|should) (avoid|not|never) (validating|reassurance|empathy|support)\b",
)

# Prompt injection: tone and style manipulation
_STYLE_MANIPULATION = (
    r"\brespond as if\b",
    r"\brespond (with|in) (a|an) (different|specific|certain) (tone|style|way|manner)\b",
    r"\b(influence|change|adjust|modify) (your|the) (tone|style)\b",
    r"\bmake your response (more|less|somewhat|slightly|subtly)\b",
    r"\brespond (with|in) (uncertainty|doubt|hesitation)\b",
    r"\b(be|sound|seem) (more|less|somewhat|slightly|subtly) (uncertain|sure|confident|doubtful|hesitant)\b",
    r"\b(tone|style) (should|must|needs to) (be|sound|seem|reflect|show)\b",
)

ADVICE_PATTERNS = _compile(
    r"\byou should\s+",
    r"\byou must\s+",
    r"\byou need to\s+",
    r"\byou have to\s+",
    r"\btake this medication\b",
    r"\bprescribe",
    r"\bdiagnosis\b",
    r"\b(stop|start|increase|double) (taking )?your (medication|meds|dose)\b",
)

OVERCONFIDENCE_PATTERNS = _compile(
    r"\bi guarantee\b",
    r"\bi promise\b",
    r"\bthis will definitely\b",
    r"\bthis always works\b",
    r"\b100% (certain|sure)\b",
    r"\bwithout a doubt\b",
)

MEDICAL_TERM_PATTERNS = _compile(
    r"\bmedical advice\b",
    r"\bdiagnos(is|e|ed)\b",
    r"\btreatment\b",
    r"\bmedication\b",
    r"\btherapy technique\b",
)

DISCLAIMER_PATTERNS = _compile(
    r"\bnot a therapist\b",
    r"\bnot medical advice\b",
    r"\bnot a substitute\b",
    r"\bconsult (a|with a) (professional|doctor|therapist)\b",
)

# Assistant text in customer-support register (role abandonment)
ROLE_SWITCH_PATTERNS = _compile(
    r"\bto help us move forward\b",
    r"\bcould you please provide\b",
    r"\bunderstanding the scope\b",
    r"\bwill allow me to best direct\b",
    r"\bcustomer service\b",
    r"\bsupport ticket\b",
    r"\bticket (number|id)\b",
    r"\byour inquiry\b",
    r"\bplease provide .*details?\b",
)

EMPATHETIC_OPENINGS: Tuple[str, ...] = (
    "feel", "understand", "difficult", "challenging", "here for you", "with you",
)
BUSINESS_CLOSINGS: Tuple[str, ...] = (
    "inquiry", "provide detail", "direct you",
)
# A closing that refers the user to help is the supportive role, not a switch
REFERRAL_PHRASES: Tuple[str, ...] = (
    "crisis", "hotline", "helpline", "lifeline", "988", "emergency",
    "therapist", "counselor", "counsellor",
)

NEGATIVE_WORDS: FrozenSet[str] = frozenset({
    "sad", "depressed", "anxious", "worried", "scared", "angry", "hurt", "pain",
})
POSITIVE_WORDS: FrozenSet[str] = frozenset({
    "happy", "glad", "excited", "great", "wonderful", "good", "better",
})


@dataclass(frozen=True)
class SentimentLexicon:
    """Fixed polarity word lists for the sentiment heuristic."""
    negative: FrozenSet[str] = NEGATIVE_WORDS
    positive: FrozenSet[str] = POSITIVE_WORDS


@dataclass(frozen=True)
class RuleConfig:
    """Immutable rule tables handed to the pattern detector."""
    weights: RuleWeights = field(default_factory=RuleWeights)
    crisis_phrases: FrozenSet[str] = CRISIS_PHRASES
    injection_patterns: Tuple[re.Pattern, ...] = _compile(
        *_INSTRUCTION_OVERRIDE, *_IDENTITY_CHANGE, *_EMPATHY_SUPPRESSION, *_STYLE_MANIPULATION
    )
    advice_patterns: Tuple[re.Pattern, ...] = ADVICE_PATTERNS
    overconfidence_patterns: Tuple[re.Pattern, ...] = OVERCONFIDENCE_PATTERNS
    medical_term_patterns: Tuple[re.Pattern, ...] = MEDICAL_TERM_PATTERNS
    disclaimer_patterns: Tuple[re.Pattern, ...] = DISCLAIMER_PATTERNS
    role_switch_patterns: Tuple[re.Pattern, ...] = ROLE_SWITCH_PATTERNS
    empathetic_openings: Tuple[str, ...] = EMPATHETIC_OPENINGS
    business_closings: Tuple[str, ...] = BUSINESS_CLOSINGS
    referral_phrases: Tuple[str, ...] = REFERRAL_PHRASES
    lexicon: SentimentLexicon = field(default_factory=SentimentLexicon)
    mismatch_min_user_length: int = 50
    role_switch_detection_enabled: bool = True

    def __post_init__(self):
        if self.mismatch_min_user_length < 0:
            raise ValueError("mismatch_min_user_length must be non-negative")


@dataclass(frozen=True)
class SafetyConfig:
    """Runtime configuration for the safety pipeline."""

    # Bounded wait on the critic call
    critic_timeout_seconds: float = 15.0

    # Context turns forwarded to the critic
    critic_context_turns: int = 3

    mismatch_min_user_length: int = 50
    role_switch_detection_enabled: bool = True

    # Version tracking for audit trail
    rules_version: str = "2026.10.19"

    @classmethod
    def from_env(cls) -> "SafetyConfig":
        """Create config from environment variables.

        Environment variables:
            CRITIC_TIMEOUT_SECONDS: Critic bounded wait (default 15)
            SENTIMENT_MISMATCH_MIN_LENGTH: User length gate (default 50)
            ROLE_SWITCH_DETECTION_ENABLED: Toggle role-switch rule (default true)
        """
        return cls(
            critic_timeout_seconds=float(os.getenv("CRITIC_TIMEOUT_SECONDS", "15")),
            mismatch_min_user_length=int(os.getenv("SENTIMENT_MISMATCH_MIN_LENGTH", "50")),
            role_switch_detection_enabled=_env_bool("ROLE_SWITCH_DETECTION_ENABLED", True),
        )

    def rule_config(self) -> RuleConfig:
        """Build the immutable rule tables for this configuration."""
        return RuleConfig(
            mismatch_min_user_length=self.mismatch_min_user_length,
            role_switch_detection_enabled=self.role_switch_detection_enabled,
        )


@dataclass(frozen=True)
class FusionPolicy:
    """Scoring and override policy of the risk fusion engine."""
    critic_weights: Mapping[RiskLevel, int] = field(
        default_factory=lambda: MappingProxyType({
            RiskLevel.INFO: 0,
            RiskLevel.LOW: 1,
            RiskLevel.MEDIUM: 3,
            RiskLevel.HIGH: 5,
        })
    )
    critic_multiplier: int = 2
    injection_penalty: int = 8
    injection_success_penalty: int = 4
    high_threshold: int = 8
    medium_threshold: int = 4
    low_threshold: int = 1
