"""Feedback memory: past human corrections replayed to the Responder.

Entries are append-only. The most recent N (default 10) are rendered
into a plain-text digest appended to the Responder's system
instructions.
"""
import logging
from typing import List, Optional, Sequence

from kintsugi.shared.models import FeedbackMemoryEntry, new_id
from kintsugi.shared.utils import excerpt, hash_text_for_audit, is_blank
from .store import ModerationStore

logger = logging.getLogger(__name__)

DEFAULT_FEEDBACK_LIMIT = 10
UNSAFE_RESPONSE = "unsafe_response"

DIGEST_HEADER = "LEARNING FROM PAST FEEDBACK:"
DIGEST_FOOTER = "Use this feedback to avoid repeating these mistakes."

# Quoted replies in the digest are cut to keep the prompt small
_DIGEST_QUOTE_LENGTH = 100


def _quote(text: str) -> str:
    clipped = excerpt(text, _DIGEST_QUOTE_LENGTH)
    return f'"{clipped}..."' if len(text.strip()) > _DIGEST_QUOTE_LENGTH else f'"{clipped}"'


def render_feedback_digest(entries: Sequence[FeedbackMemoryEntry]) -> str:
    """Render entries as a prompt block. Empty string when there are none."""
    if not entries:
        return ""

    paragraphs = []
    for entry in entries:
        if entry.user_prompt:
            line = f'Previous mistake: when a user said "{entry.user_prompt}", I responded with {_quote(entry.pattern)}, which was unsafe.'
        else:
            line = f"Previous mistake: I responded with {_quote(entry.pattern)}, which was unsafe."
        line += f' Reviewer feedback: "{entry.human_feedback}".'
        if entry.corrected_response:
            line += f" A better response would be: {_quote(entry.corrected_response)}"
        paragraphs.append(line)

    return "\n\n".join([DIGEST_HEADER, *paragraphs, DIGEST_FOOTER])


class FeedbackMemory:
    """Append-only record of human corrections."""

    def __init__(self, store: ModerationStore, limit: int = DEFAULT_FEEDBACK_LIMIT):
        if limit < 1:
            raise ValueError("Feedback memory limit must be at least 1")
        self.store = store
        self.limit = limit

    def record(
        self,
        human_feedback: str,
        pattern: str,
        issue_type: str = UNSAFE_RESPONSE,
        user_prompt: Optional[str] = None,
        corrected_response: Optional[str] = None,
    ) -> FeedbackMemoryEntry:
        """Append a correction.

        Raises:
            ValueError: If the feedback is empty
        """
        if is_blank(human_feedback):
            raise ValueError("Feedback memory requires non-empty feedback")

        entry = FeedbackMemoryEntry(
            id=new_id("fbm"),
            issue_type=issue_type,
            pattern=excerpt(pattern),
            human_feedback=human_feedback.strip(),
            user_prompt=excerpt(user_prompt) if user_prompt else None,
            corrected_response=excerpt(corrected_response) if corrected_response else None,
        )
        self.store.add_feedback(entry)

        logger.info(
            "FEEDBACK_MEMORY_RECORDED",
            extra={
                "entry_id": entry.id,
                "issue_type": issue_type,
                "pattern_hash": hash_text_for_audit(entry.pattern),
            }
        )
        return entry

    def recent(self, limit: Optional[int] = None) -> List[FeedbackMemoryEntry]:
        """Most recent entries, newest first, bounded to the memory limit."""
        return self.store.recent_feedback(min(limit or self.limit, self.limit))

    def digest(self) -> str:
        return render_feedback_digest(self.recent())
