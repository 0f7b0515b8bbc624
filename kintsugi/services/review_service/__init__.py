"""Review Service: message lifecycle, human review and feedback memory.

Components:
- workflow.py: ReviewWorkflow state machine and its error hierarchy
- feedback_memory.py: Append-only corrections and the Responder digest
- store.py: ModerationStore contract and the in-memory backend
- repository.py: PostgreSQL repositories and store
- correction.py: Drafts corrected replies with the Responder
- metrics.py: Moderation metrics for the admin dashboard
"""

from .feedback_memory import FeedbackMemory, render_feedback_digest
from .store import InMemoryModerationStore, ModerationStore, StaleMessageStateError
from .workflow import (
    CorrectionRequiredError,
    InvalidReviewInputError,
    InvalidReviewStateError,
    InvalidVerdictError,
    MessageNotFoundError,
    ReviewOutcome,
    ReviewWorkflow,
    ReviewWorkflowError,
    check_review_fields,
)

__all__ = [
    "FeedbackMemory",
    "render_feedback_digest",
    "InMemoryModerationStore",
    "ModerationStore",
    "StaleMessageStateError",
    "CorrectionRequiredError",
    "InvalidReviewInputError",
    "InvalidReviewStateError",
    "InvalidVerdictError",
    "MessageNotFoundError",
    "ReviewOutcome",
    "ReviewWorkflow",
    "ReviewWorkflowError",
    "check_review_fields",
]
