"""Moderation store: messages, reviews and feedback memory.

``ModerationStore`` is the persistence contract the review workflow
relies on. ``InMemoryModerationStore`` backs development and tests;
``PostgresModerationStore`` (repository.py) backs production.

The store, not the workflow, guarantees that a review is applied at most
once: ``apply_review`` is a compare-and-set on the message state.
"""
import logging
import threading
from abc import ABC, abstractmethod
from dataclasses import replace
from typing import Dict, List, Optional

from kintsugi.shared.database import DuplicateError, NotFoundError, RepositoryError
from kintsugi.shared.models import (
    FeedbackMemoryEntry,
    Message,
    MessageState,
    Review,
    Sender,
)

logger = logging.getLogger(__name__)


class StaleMessageStateError(RepositoryError):
    """Message was no longer pending review when the review was applied."""
    pass


def newest_first(items: List, limit: Optional[int] = None) -> List:
    # Stable sort, then reverse: equal timestamps come out latest-inserted first
    ordered = sorted(items, key=lambda item: item.created_at)[::-1]
    return ordered if limit is None else ordered[:limit]


class ModerationStore(ABC):
    """Persistence collaborator of the review workflow."""

    @abstractmethod
    def add_message(self, message: Message) -> Message:
        """Persist a new message.

        Raises:
            DuplicateError: If the id already exists
        """
        pass

    @abstractmethod
    def get_message(self, message_id: str) -> Optional[Message]:
        pass

    @abstractmethod
    def list_messages(
        self,
        conversation_id: Optional[str] = None,
        sender: Optional[Sender] = None,
    ) -> List[Message]:
        """Messages oldest first, optionally filtered."""
        pass

    @abstractmethod
    def review_queue(self, limit: int = 50) -> List[Message]:
        """Flagged, unfinalized messages, newest first."""
        pass

    @abstractmethod
    def apply_review(self, review: Review, content: str) -> Message:
        """Atomically finalize a pending message and record its review.

        Raises:
            NotFoundError: If the message does not exist
            StaleMessageStateError: If the message is not pending review
        """
        pass

    @abstractmethod
    def list_reviews(self, limit: Optional[int] = None) -> List[Review]:
        """Reviews, newest first."""
        pass

    @abstractmethod
    def add_feedback(self, entry: FeedbackMemoryEntry) -> FeedbackMemoryEntry:
        pass

    @abstractmethod
    def recent_feedback(self, limit: int) -> List[FeedbackMemoryEntry]:
        """Most recent feedback entries, newest first."""
        pass

    @abstractmethod
    def list_feedback(self) -> List[FeedbackMemoryEntry]:
        """All feedback entries, oldest first."""
        pass

    def health_check(self) -> Dict[str, object]:
        return {"status": "ok", "healthy": True}


class InMemoryModerationStore(ModerationStore):
    """Dict-backed store (development and tests).

    Messages are copied on the way in and out so callers can never mutate
    stored state behind the compare-and-set.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._messages: Dict[str, Message] = {}
        self._reviews: Dict[str, Review] = {}
        self._feedback: List[FeedbackMemoryEntry] = []

        logger.info("MODERATION_STORE_INITIALIZED", extra={"backend": "memory"})

    def add_message(self, message: Message) -> Message:
        with self._lock:
            if message.id in self._messages:
                raise DuplicateError(f"Message {message.id} already exists")
            self._messages[message.id] = replace(message)
        return message

    def get_message(self, message_id: str) -> Optional[Message]:
        with self._lock:
            stored = self._messages.get(message_id)
            return replace(stored) if stored else None

    def list_messages(
        self,
        conversation_id: Optional[str] = None,
        sender: Optional[Sender] = None,
    ) -> List[Message]:
        with self._lock:
            messages = [
                replace(m) for m in self._messages.values()
                if (conversation_id is None or m.conversation_id == conversation_id)
                and (sender is None or m.sender == sender)
            ]
        return sorted(messages, key=lambda m: m.created_at)

    def review_queue(self, limit: int = 50) -> List[Message]:
        with self._lock:
            pending = [replace(m) for m in self._messages.values() if m.flagged and not m.finalized]
        return newest_first(pending, limit)

    def apply_review(self, review: Review, content: str) -> Message:
        with self._lock:
            stored = self._messages.get(review.message_id)
            if stored is None:
                raise NotFoundError(f"Message {review.message_id} not found")
            if stored.state != MessageState.PENDING_REVIEW or review.message_id in self._reviews:
                raise StaleMessageStateError(
                    f"Message {review.message_id} is {stored.state.value}, not pending review"
                )

            updated = replace(stored, content=content)
            updated.transition(MessageState.FINALIZED)
            self._messages[updated.id] = updated
            self._reviews[updated.id] = review
            return replace(updated)

    def list_reviews(self, limit: Optional[int] = None) -> List[Review]:
        with self._lock:
            reviews = list(self._reviews.values())
        return newest_first(reviews, limit)

    def add_feedback(self, entry: FeedbackMemoryEntry) -> FeedbackMemoryEntry:
        with self._lock:
            self._feedback.append(entry)
        return entry

    def recent_feedback(self, limit: int) -> List[FeedbackMemoryEntry]:
        with self._lock:
            entries = list(self._feedback)
        return newest_first(entries, limit)

    def list_feedback(self) -> List[FeedbackMemoryEntry]:
        with self._lock:
            entries = list(self._feedback)
        return sorted(entries, key=lambda e: e.created_at)
