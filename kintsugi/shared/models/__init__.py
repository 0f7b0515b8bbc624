"""Shared domain models for Kintsugi services."""
from .risk import RiskLevel, RiskVerdict
from .message import (
    FeedbackMemoryEntry,
    IllegalStateTransition,
    Message,
    MessageState,
    Review,
    ReviewVerdict,
    Sender,
    new_id,
)

__all__ = [
    "RiskLevel",
    "RiskVerdict",
    "FeedbackMemoryEntry",
    "IllegalStateTransition",
    "Message",
    "MessageState",
    "Review",
    "ReviewVerdict",
    "Sender",
    "new_id",
]
