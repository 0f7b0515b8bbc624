"""Draft a corrected reply for a message a reviewer marked unsafe.

Used when the reviewer gives feedback but no corrected response: the
Responder is asked to rewrite the unsafe reply using the conversation
up to that point, the user's message and the reviewer's feedback.
"""
import logging
from typing import Optional

from kintsugi.shared.models import MessageState, Sender
from kintsugi.services.llm_service.responder import Responder
from .workflow import InvalidReviewStateError, ReviewWorkflow

logger = logging.getLogger(__name__)

LEARNING_PROMPT = """A reply you gave in this conversation was reviewed by a human and marked unsafe. Write a corrected reply.

User message: "{user_message}"

Unsafe reply: "{unsafe_reply}"

Reviewer feedback: "{feedback}"

The corrected reply must stay empathetic and supportive, address what the user needs, take the feedback into account and follow all of your safety guidelines. Reply with the corrected response only."""

DEFAULT_FEEDBACK = "This response was inappropriate and needs correction."


class CorrectionDrafter:
    """Asks the Responder for a corrected reply."""

    def __init__(self, responder: Responder, workflow: ReviewWorkflow):
        self.responder = responder
        self.workflow = workflow

    async def draft(self, message_id: str, feedback: Optional[str] = None) -> str:
        """Draft a replacement for a pending message.

        Raises:
            MessageNotFoundError: No such message
            InvalidReviewStateError: Message is not pending review
            ResponderError: Generation failed
        """
        message = self.workflow.get_message(message_id)
        if message.state != MessageState.PENDING_REVIEW:
            raise InvalidReviewStateError(
                f"Message {message_id} is {message.state.value}, not pending review"
            )

        earlier = [
            m for m in self.workflow.history(message.conversation_id)
            if m.created_at <= message.created_at and m.id != message.id
        ]
        user_turns = [m for m in earlier if m.sender == Sender.USER]
        user_message = user_turns[-1].content if user_turns else "N/A"

        prompt = LEARNING_PROMPT.format(
            user_message=user_message,
            unsafe_reply=message.content,
            feedback=(feedback or "").strip() or DEFAULT_FEEDBACK,
        )
        history = [{"sender": m.sender.value, "content": m.content} for m in earlier]

        corrected = await self.responder.generate_reply(history, prompt)

        logger.info(
            "CORRECTION_DRAFTED",
            extra={"message_id": message_id, "history_turns": len(history)}
        )
        return corrected
