"""PostgreSQL repositories and the Postgres-backed moderation store.

Tables are defined in kintsugi/shared/database/schema.sql. The message
lifecycle is stored as ``state``; ``flagged`` and ``finalized`` are
written alongside it, derived from the state, for the review queue
index.
"""
import logging
from typing import Any, Dict, List, Optional

from kintsugi.shared.database import BaseRepository, ConnectionManager, NotFoundError
from kintsugi.shared.models import (
    FeedbackMemoryEntry,
    Message,
    MessageState,
    Review,
    ReviewVerdict,
    RiskLevel,
    Sender,
)
from .store import ModerationStore, StaleMessageStateError

logger = logging.getLogger(__name__)


class MessageRepository(BaseRepository[Message]):
    """Repository for conversation messages."""

    columns = (
        "id", "conversation_id", "sender", "content", "risk_level",
        "state", "flagged", "finalized", "created_at",
    )

    def __init__(self, connection_manager: ConnectionManager):
        super().__init__(connection_manager, "messages")

    def _row_to_entity(self, row: tuple) -> Message:
        # flagged / finalized (row[6], row[7]) are derived from state
        return Message(
            id=row[0],
            conversation_id=row[1],
            sender=Sender(row[2]),
            content=row[3],
            risk_level=RiskLevel(row[4]),
            state=MessageState(row[5]),
            created_at=row[8],
        )

    def _entity_to_params(self, entity: Message) -> Dict[str, Any]:
        return {
            "id": entity.id,
            "conversation_id": entity.conversation_id,
            "sender": entity.sender.value,
            "content": entity.content,
            "risk_level": entity.risk_level.value,
            "state": entity.state.value,
            "flagged": entity.flagged,
            "finalized": entity.finalized,
            "created_at": entity.created_at,
        }

    def find_filtered(
        self,
        conversation_id: Optional[str] = None,
        sender: Optional[Sender] = None,
    ) -> List[Message]:
        """Messages oldest first, optionally by conversation and sender."""
        clauses, params = [], []
        if conversation_id is not None:
            clauses.append("conversation_id = %s")
            params.append(conversation_id)
        if sender is not None:
            clauses.append("sender = %s")
            params.append(sender.value)

        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        return self._fetch_all(where=where, params=params, suffix="ORDER BY created_at ASC")

    def find_review_queue(self, limit: int = 50) -> List[Message]:
        return self._fetch_all(
            where="WHERE flagged = TRUE AND finalized = FALSE",
            params=(limit,),
            suffix="ORDER BY created_at DESC LIMIT %s",
        )


class ReviewRepository(BaseRepository[Review]):
    """Repository for human reviews."""

    columns = (
        "id", "message_id", "reviewer_id", "verdict", "feedback",
        "corrected_response", "original_response", "created_at",
    )

    def __init__(self, connection_manager: ConnectionManager):
        super().__init__(connection_manager, "reviews")

    def _row_to_entity(self, row: tuple) -> Review:
        return Review(
            id=row[0],
            message_id=row[1],
            reviewer_id=row[2],
            verdict=ReviewVerdict(row[3]),
            feedback=row[4],
            corrected_response=row[5],
            original_response=row[6],
            created_at=row[7],
        )

    def _entity_to_params(self, entity: Review) -> Dict[str, Any]:
        return {
            "id": entity.id,
            "message_id": entity.message_id,
            "reviewer_id": entity.reviewer_id,
            "verdict": entity.verdict.value,
            "feedback": entity.feedback,
            "corrected_response": entity.corrected_response,
            "original_response": entity.original_response,
            "created_at": entity.created_at,
        }


class FeedbackMemoryRepository(BaseRepository[FeedbackMemoryEntry]):
    """Repository for append-only feedback memory."""

    columns = (
        "id", "issue_type", "pattern", "human_feedback",
        "user_prompt", "corrected_response", "created_at",
    )

    def __init__(self, connection_manager: ConnectionManager):
        super().__init__(connection_manager, "feedback_memory")

    def _row_to_entity(self, row: tuple) -> FeedbackMemoryEntry:
        return FeedbackMemoryEntry(
            id=row[0],
            issue_type=row[1],
            pattern=row[2],
            human_feedback=row[3],
            user_prompt=row[4],
            corrected_response=row[5],
            created_at=row[6],
        )

    def _entity_to_params(self, entity: FeedbackMemoryEntry) -> Dict[str, Any]:
        return {
            "id": entity.id,
            "issue_type": entity.issue_type,
            "pattern": entity.pattern,
            "human_feedback": entity.human_feedback,
            "user_prompt": entity.user_prompt,
            "corrected_response": entity.corrected_response,
            "created_at": entity.created_at,
        }


class PostgresModerationStore(ModerationStore):
    """ModerationStore over PostgreSQL."""

    _FINALIZE_QUERY = """
        UPDATE messages
        SET content = %s, state = %s, flagged = FALSE, finalized = TRUE
        WHERE id = %s AND state = %s AND finalized = FALSE
    """

    def __init__(self, connection_manager: ConnectionManager):
        self.connection_manager = connection_manager
        self.messages = MessageRepository(connection_manager)
        self.reviews = ReviewRepository(connection_manager)
        self.feedback = FeedbackMemoryRepository(connection_manager)

        logger.info("MODERATION_STORE_INITIALIZED", extra={"backend": "postgres"})

    def add_message(self, message: Message) -> Message:
        return self.messages.insert(message)

    def get_message(self, message_id: str) -> Optional[Message]:
        return self.messages.find_by_id(message_id)

    def list_messages(
        self,
        conversation_id: Optional[str] = None,
        sender: Optional[Sender] = None,
    ) -> List[Message]:
        return self.messages.find_filtered(conversation_id, sender)

    def review_queue(self, limit: int = 50) -> List[Message]:
        return self.messages.find_review_queue(limit)

    def apply_review(self, review: Review, content: str) -> Message:
        """Finalize and record the review in one transaction.

        The conditional UPDATE is the compare-and-set: a concurrent
        reviewer that lost the race updates zero rows.
        """
        insert_query, insert_values = self.reviews.build_insert(review)

        with self.connection_manager.get_connection() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    self._FINALIZE_QUERY,
                    (
                        content,
                        MessageState.FINALIZED.value,
                        review.message_id,
                        MessageState.PENDING_REVIEW.value,
                    ),
                )
                applied = cur.rowcount == 1
                if applied:
                    cur.execute(insert_query, insert_values)
                    conn.commit()
                else:
                    conn.rollback()

        current = self.messages.find_by_id(review.message_id)
        if current is None:
            raise NotFoundError(f"Message {review.message_id} not found")
        if not applied:
            raise StaleMessageStateError(
                f"Message {review.message_id} is {current.state.value}, not pending review"
            )
        return current

    def list_reviews(self, limit: Optional[int] = None) -> List[Review]:
        return self.reviews.find_recent(limit)

    def add_feedback(self, entry: FeedbackMemoryEntry) -> FeedbackMemoryEntry:
        return self.feedback.insert(entry)

    def recent_feedback(self, limit: int) -> List[FeedbackMemoryEntry]:
        return self.feedback.find_recent(limit)

    def list_feedback(self) -> List[FeedbackMemoryEntry]:
        return self.feedback.find_oldest_first()

    def health_check(self) -> Dict[str, object]:
        return self.connection_manager.health_check()
