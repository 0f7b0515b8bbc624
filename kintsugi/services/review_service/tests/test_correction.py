"""Tests for drafting corrected replies."""
from unittest.mock import AsyncMock, MagicMock

import pytest

from kintsugi.shared.models import RiskLevel, RiskVerdict
from kintsugi.shared.utils import configure_pii_salt
from kintsugi.services.llm_service.base_llm import LLMErrorCategory
from kintsugi.services.llm_service.responder import ResponderError
from kintsugi.services.review_service.correction import DEFAULT_FEEDBACK, CorrectionDrafter
from kintsugi.services.review_service.feedback_memory import FeedbackMemory
from kintsugi.services.review_service.store import InMemoryModerationStore
from kintsugi.services.review_service.workflow import (
    InvalidReviewStateError,
    MessageNotFoundError,
    ReviewWorkflow,
)


@pytest.fixture(autouse=True)
def setup_pii_salt():
    configure_pii_salt("test_salt_that_is_at_least_32_characters_long")


@pytest.fixture
def workflow():
    store = InMemoryModerationStore()
    return ReviewWorkflow(store, FeedbackMemory(store))


@pytest.fixture
def responder():
    mock = MagicMock()
    mock.generate_reply = AsyncMock(return_value="I'm really sorry. I'm here to listen.")
    return mock


@pytest.fixture
def drafter(responder, workflow):
    return CorrectionDrafter(responder, workflow)


@pytest.fixture
def pending(workflow):
    workflow.record_user_message("conv_1", "Nobody cares about me")
    return workflow.record_assistant_message(
        "conv_1",
        "Maybe they are right.",
        RiskVerdict(risk_level=RiskLevel.HIGH, risk_score=10, flagged=True),
    )


class TestCorrectionDrafter:
    """Tests for CorrectionDrafter.draft."""

    @pytest.mark.asyncio
    async def test_prompt_carries_context_and_feedback(self, drafter, responder, pending):
        corrected = await drafter.draft(pending.id, "Be supportive")

        assert corrected == "I'm really sorry. I'm here to listen."
        history, prompt = responder.generate_reply.call_args.args
        assert history == [{"sender": "user", "content": "Nobody cares about me"}]
        assert 'User message: "Nobody cares about me"' in prompt
        assert 'Unsafe reply: "Maybe they are right."' in prompt
        assert 'Reviewer feedback: "Be supportive"' in prompt

    @pytest.mark.asyncio
    async def test_default_feedback(self, drafter, responder, pending):
        await drafter.draft(pending.id, "  ")

        _, prompt = responder.generate_reply.call_args.args
        assert DEFAULT_FEEDBACK in prompt

    @pytest.mark.asyncio
    async def test_draft_does_not_change_the_message(self, drafter, workflow, pending):
        await drafter.draft(pending.id)

        assert workflow.get_message(pending.id) == pending

    @pytest.mark.asyncio
    async def test_missing_message(self, drafter):
        with pytest.raises(MessageNotFoundError):
            await drafter.draft("msg_missing")

    @pytest.mark.asyncio
    async def test_finalized_message_rejected(self, drafter, responder, workflow, pending):
        workflow.submit_review(pending.id, "reviewer_1", "safe")

        with pytest.raises(InvalidReviewStateError):
            await drafter.draft(pending.id)

        responder.generate_reply.assert_not_called()

    @pytest.mark.asyncio
    async def test_responder_failure_propagates(self, drafter, responder, pending):
        responder.generate_reply.side_effect = ResponderError("down", LLMErrorCategory.TIMEOUT)

        with pytest.raises(ResponderError):
            await drafter.draft(pending.id)
