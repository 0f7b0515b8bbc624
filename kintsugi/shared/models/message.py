"""Conversation message, review and feedback memory models.

A message's review lifecycle is modelled as an explicit state enum.
The ``flagged`` / ``finalized`` booleans used by storage and the API
are derived from it, never stored independently.
"""
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional
import uuid

from .risk import RiskLevel


class Sender(Enum):
    """Author of a conversation turn."""
    USER = "user"
    ASSISTANT = "assistant"


class MessageState(Enum):
    """State machine for a message's review lifecycle.

    GENERATED -> DELIVERED                  (not flagged, terminal)
    GENERATED -> PENDING_REVIEW -> FINALIZED (flagged, then reviewed)
    """
    GENERATED = "generated"
    DELIVERED = "delivered"
    PENDING_REVIEW = "pending_review"
    FINALIZED = "finalized"


_ALLOWED_TRANSITIONS = {
    MessageState.GENERATED: frozenset({MessageState.DELIVERED, MessageState.PENDING_REVIEW}),
    MessageState.PENDING_REVIEW: frozenset({MessageState.FINALIZED}),
    MessageState.DELIVERED: frozenset(),
    MessageState.FINALIZED: frozenset(),
}


class IllegalStateTransition(ValueError):
    """Raised when a message is moved along an edge the lifecycle lacks."""
    pass


class ReviewVerdict(Enum):
    """Human judgment on a flagged reply."""
    SAFE = "safe"
    UNSAFE = "unsafe"


def new_id(prefix: str) -> str:
    """Create an opaque identifier such as ``msg_1f2e...``."""
    return f"{prefix}_{uuid.uuid4().hex[:16]}"


@dataclass
class Message:
    """One turn in a conversation.

    Mutable record - content and state change when a review is applied.
    """
    id: str
    conversation_id: str
    sender: Sender
    content: str
    risk_level: RiskLevel = RiskLevel.INFO
    state: MessageState = MessageState.DELIVERED
    created_at: datetime = field(default_factory=datetime.utcnow)

    @property
    def flagged(self) -> bool:
        """True while the reply is withheld awaiting review."""
        return self.state == MessageState.PENDING_REVIEW

    @property
    def finalized(self) -> bool:
        """True once content is stable (delivered or reviewed)."""
        return self.state in (MessageState.DELIVERED, MessageState.FINALIZED)

    @property
    def is_visible(self) -> bool:
        """Whether full content may be shown to the end user."""
        return not self.flagged or self.finalized

    def can_transition(self, target: MessageState) -> bool:
        return target in _ALLOWED_TRANSITIONS[self.state]

    def transition(self, target: MessageState) -> None:
        """Move to ``target`` state.

        Raises:
            IllegalStateTransition: If the lifecycle has no such edge
        """
        if not self.can_transition(target):
            raise IllegalStateTransition(
                f"Message {self.id} cannot move from {self.state.value} to {target.value}"
            )
        self.state = target

    def to_dict(self, reveal: bool = False) -> Dict[str, Any]:
        """Convert to dictionary for API responses.

        Content of a reply pending review is withheld unless the caller
        explicitly asks to reveal it.

        Args:
            reveal: Include content even while the reply is pending review
        """
        withheld = not self.is_visible and not reveal
        return {
            "id": self.id,
            "conversation_id": self.conversation_id,
            "sender": self.sender.value,
            "content": None if withheld else self.content,
            "content_withheld": withheld,
            "risk_level": self.risk_level.value,
            "flagged": self.flagged,
            "finalized": self.finalized,
            "state": self.state.value,
            "created_at": self.created_at.isoformat(),
        }


@dataclass(frozen=True)
class Review:
    """A human judgment on one flagged message.

    Immutable - a message is reviewed at most once.
    """
    id: str
    message_id: str
    reviewer_id: str
    verdict: ReviewVerdict
    feedback: Optional[str] = None
    corrected_response: Optional[str] = None
    original_response: Optional[str] = None
    created_at: datetime = field(default_factory=datetime.utcnow)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "message_id": self.message_id,
            "reviewer_id": self.reviewer_id,
            "verdict": self.verdict.value,
            "feedback": self.feedback,
            "corrected_response": self.corrected_response,
            "original_response": self.original_response,
            "created_at": self.created_at.isoformat(),
        }


@dataclass(frozen=True)
class FeedbackMemoryEntry:
    """A past human correction, replayed into future responder prompts.

    Append-only - never modified or deleted by the core.
    """
    id: str
    issue_type: str
    pattern: str            # Excerpt of the original (unsafe) reply
    human_feedback: str
    user_prompt: Optional[str] = None
    corrected_response: Optional[str] = None
    created_at: datetime = field(default_factory=datetime.utcnow)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "issue_type": self.issue_type,
            "pattern": self.pattern,
            "human_feedback": self.human_feedback,
            "user_prompt": self.user_prompt,
            "corrected_response": self.corrected_response,
            "created_at": self.created_at.isoformat(),
        }
