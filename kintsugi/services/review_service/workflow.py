"""Review workflow: the message lifecycle state machine.

    GENERATED -> DELIVERED                   verdict not flagged
    GENERATED -> PENDING_REVIEW -> FINALIZED flagged, then human review

DELIVERED and FINALIZED are terminal. A review is accepted only while a
message is PENDING_REVIEW; the store's compare-and-set makes sure two
concurrent reviews cannot both succeed. Every rejection raises a
ReviewWorkflowError subclass and leaves the message untouched.
"""
import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Tuple, Union

from kintsugi.shared.database import NotFoundError
from kintsugi.shared.models import (
    FeedbackMemoryEntry,
    Message,
    MessageState,
    Review,
    ReviewVerdict,
    RiskLevel,
    RiskVerdict,
    Sender,
    new_id,
)
from kintsugi.shared.utils import hash_pii, is_blank
from .feedback_memory import UNSAFE_RESPONSE, FeedbackMemory
from .store import ModerationStore, StaleMessageStateError

logger = logging.getLogger(__name__)


class ReviewWorkflowError(Exception):
    """Base class for rejected workflow operations."""
    pass


class MessageNotFoundError(ReviewWorkflowError):
    pass


class InvalidReviewStateError(ReviewWorkflowError):
    """Message is not pending review (delivered, finalized, or a user turn)."""
    pass


class InvalidVerdictError(ReviewWorkflowError):
    pass


class CorrectionRequiredError(ReviewWorkflowError):
    """An unsafe verdict needs a non-empty corrected response."""
    pass


class InvalidReviewInputError(ReviewWorkflowError):
    """A review field has the wrong type or is missing."""
    pass


@dataclass(frozen=True)
class ReviewOutcome:
    """Result of an accepted review."""
    message: Message
    review: Review
    feedback_entry: Optional[FeedbackMemoryEntry] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "message": self.message.to_dict(),
            "review": self.review.to_dict(),
            "feedback_recorded": self.feedback_entry is not None,
        }


def check_review_fields(
    message_id: Any,
    reviewer_id: Any,
    feedback: Any = None,
    corrected_response: Any = None,
) -> None:
    """Reject review input that cannot be stored or logged.

    Raises:
        InvalidReviewInputError: Ids that are not non-blank strings, or
            feedback / corrected response that are neither None nor a string
    """
    for name, value in (("message_id", message_id), ("reviewer_id", reviewer_id)):
        if not isinstance(value, str) or is_blank(value):
            raise InvalidReviewInputError(f"{name} must be a non-empty string")
    for name, value in (("feedback", feedback), ("corrected_response", corrected_response)):
        if value is not None and not isinstance(value, str):
            raise InvalidReviewInputError(f"{name} must be a string")


def parse_verdict(verdict: Union[ReviewVerdict, str]) -> ReviewVerdict:
    """Accept a ReviewVerdict or its string value.

    Raises:
        InvalidVerdictError: For anything else
    """
    if isinstance(verdict, ReviewVerdict):
        return verdict
    if isinstance(verdict, str):
        try:
            return ReviewVerdict(verdict.strip().lower())
        except ValueError:
            pass
    raise InvalidVerdictError(f"Unknown review verdict: {verdict!r}")


class ReviewWorkflow:
    """Records messages and applies human reviews."""

    def __init__(self, store: ModerationStore, feedback_memory: FeedbackMemory):
        self.store = store
        self.feedback_memory = feedback_memory

    def record_user_message(self, conversation_id: str, content: str) -> Message:
        """Store a user turn. User turns are never scored."""
        message = Message(
            id=new_id("msg"),
            conversation_id=conversation_id,
            sender=Sender.USER,
            content=content,
            risk_level=RiskLevel.INFO,
            state=MessageState.DELIVERED,
        )
        return self.store.add_message(message)

    def record_assistant_message(
        self,
        conversation_id: str,
        content: str,
        verdict: RiskVerdict,
    ) -> Message:
        """Store an assistant reply with its fused verdict.

        Flagged replies go to PENDING_REVIEW, everything else is
        delivered immediately.
        """
        message = Message(
            id=new_id("msg"),
            conversation_id=conversation_id,
            sender=Sender.ASSISTANT,
            content=content,
            risk_level=verdict.risk_level,
            state=MessageState.GENERATED,
        )
        message.transition(
            MessageState.PENDING_REVIEW if verdict.flagged else MessageState.DELIVERED
        )
        self.store.add_message(message)

        logger.info(
            "MESSAGE_PENDING_REVIEW" if message.flagged else "MESSAGE_DELIVERED",
            extra={
                "message_id": message.id,
                "risk_level": message.risk_level.value,
                "rule_triggers": sorted(verdict.rule_triggers),
            }
        )
        return message

    def get_message(self, message_id: str) -> Message:
        message = self.store.get_message(message_id)
        if message is None:
            raise MessageNotFoundError(f"Message {message_id} not found")
        return message

    def history(self, conversation_id: str) -> List[Message]:
        """Conversation turns, oldest first."""
        return self.store.list_messages(conversation_id=conversation_id)

    def review_queue(self, limit: int = 50) -> List[Message]:
        """Messages awaiting review, newest first."""
        return self.store.review_queue(limit)

    def reviewed_messages(self, limit: Optional[int] = None) -> List[Tuple[Review, Message]]:
        """Completed reviews with their (finalized) messages, newest first."""
        pairs = []
        for review in self.store.list_reviews(limit):
            message = self.store.get_message(review.message_id)
            if message is not None:
                pairs.append((review, message))
        return pairs

    def submit_review(
        self,
        message_id: str,
        reviewer_id: str,
        verdict: Union[ReviewVerdict, str],
        feedback: Optional[str] = None,
        corrected_response: Optional[str] = None,
    ) -> ReviewOutcome:
        """Apply a human verdict to a pending message.

        Raises:
            InvalidVerdictError: Verdict is not safe/unsafe
            MessageNotFoundError: No such message
            InvalidReviewStateError: Message is not pending review
            InvalidReviewInputError: Ids or text fields of the wrong type
            CorrectionRequiredError: Unsafe verdict without a correction
        """
        check_review_fields(message_id, reviewer_id, feedback, corrected_response)
        review_verdict = parse_verdict(verdict)
        message = self.get_message(message_id)

        if message.state != MessageState.PENDING_REVIEW:
            raise InvalidReviewStateError(
                f"Message {message_id} is {message.state.value}, not pending review"
            )

        unsafe = review_verdict == ReviewVerdict.UNSAFE
        if unsafe and is_blank(corrected_response):
            raise CorrectionRequiredError("An unsafe verdict requires a corrected response")

        review = Review(
            id=new_id("rev"),
            message_id=message_id,
            reviewer_id=reviewer_id,
            verdict=review_verdict,
            feedback=None if is_blank(feedback) else feedback.strip(),
            corrected_response=corrected_response if unsafe else None,
            original_response=message.content if unsafe else None,
        )
        reviewer_id_hash = hash_pii(reviewer_id)

        try:
            finalized = self.store.apply_review(
                review, corrected_response if unsafe else message.content
            )
        except StaleMessageStateError as e:
            raise InvalidReviewStateError(str(e)) from e
        except NotFoundError as e:
            raise MessageNotFoundError(str(e)) from e

        feedback_entry = None
        if unsafe and review.feedback:
            user_turn = self._preceding_user_message(message)
            feedback_entry = self.feedback_memory.record(
                human_feedback=review.feedback,
                pattern=message.content,
                issue_type=UNSAFE_RESPONSE,
                user_prompt=user_turn.content if user_turn else None,
                corrected_response=corrected_response,
            )

        logger.info(
            "REVIEW_SUBMITTED",
            extra={
                "message_id": message_id,
                "review_id": review.id,
                "reviewer_id_hash": reviewer_id_hash,
                "verdict": review_verdict.value,
                "feedback_recorded": feedback_entry is not None,
            }
        )
        return ReviewOutcome(message=finalized, review=review, feedback_entry=feedback_entry)

    def _preceding_user_message(self, message: Message) -> Optional[Message]:
        turns = self.store.list_messages(conversation_id=message.conversation_id)
        earlier_user_turns = [
            m for m in turns
            if m.sender == Sender.USER and m.created_at <= message.created_at and m.id != message.id
        ]
        return earlier_user_turns[-1] if earlier_user_turns else None
