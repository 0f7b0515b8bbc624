"""Tests for moderation metrics."""
from datetime import datetime, timedelta

import pytest

from kintsugi.shared.models import (
    FeedbackMemoryEntry,
    Message,
    MessageState,
    Review,
    ReviewVerdict,
    RiskLevel,
    Sender,
)
from kintsugi.services.review_service.metrics import compute_moderation_metrics
from kintsugi.services.review_service.store import InMemoryModerationStore

NOW = datetime(2026, 10, 19, 15, 0, 0)
YESTERDAY = NOW - timedelta(days=1)


def add(store, message_id, state, risk_level=RiskLevel.INFO, at=NOW, sender=Sender.ASSISTANT):
    store.add_message(Message(
        id=message_id,
        conversation_id="conv_1",
        sender=sender,
        content="text",
        risk_level=risk_level,
        state=state,
        created_at=at,
    ))


@pytest.fixture
def store():
    store = InMemoryModerationStore()
    add(store, "msg_user", MessageState.DELIVERED, sender=Sender.USER)
    add(store, "msg_ok", MessageState.DELIVERED, RiskLevel.LOW)
    add(store, "msg_pending", MessageState.PENDING_REVIEW, RiskLevel.HIGH)
    add(store, "msg_reviewed", MessageState.PENDING_REVIEW, RiskLevel.HIGH, at=YESTERDAY)
    add(store, "msg_medium", MessageState.DELIVERED, RiskLevel.MEDIUM, at=YESTERDAY)

    store.apply_review(
        Review(
            id="rev_1",
            message_id="msg_reviewed",
            reviewer_id="reviewer_1",
            verdict=ReviewVerdict.UNSAFE,
            corrected_response="better",
            original_response="text",
            created_at=NOW,
        ),
        "better",
    )
    store.add_feedback(FeedbackMemoryEntry(
        id="fbm_1", issue_type="unsafe_response", pattern="text",
        human_feedback="be kind", created_at=NOW,
    ))
    return store


class TestModerationMetrics:
    """Tests for compute_moderation_metrics."""

    def test_counts_assistant_replies_only(self, store):
        metrics = compute_moderation_metrics(store, now=NOW)

        assert metrics.total_messages == 4
        assert metrics.flagged_count == 2
        assert metrics.pending_review_count == 1
        assert metrics.high_risk_count == 2
        assert metrics.medium_risk_count == 1
        assert metrics.flagged_percentage == 50.0

    def test_reviews_and_feedback(self, store):
        metrics = compute_moderation_metrics(store, now=NOW)

        assert metrics.total_reviews == 1
        assert metrics.correction_rate == 100.0
        assert metrics.total_feedback == 1

    def test_daily_series(self, store):
        metrics = compute_moderation_metrics(store, now=NOW, days=7)
        data = metrics.to_dict()

        assert len(data["daily"]) == 7
        assert data["daily"][-1]["date"] == "2026-10-19"
        assert data["daily"][-1]["total"] == 2
        assert data["today_flagged_rate"] == 50.0
        assert data["yesterday_flagged_rate"] == 50.0
        assert data["feedback_daily"][-1] == {"date": "2026-10-19", "count": 1}
        assert data["daily"][0]["flagged_rate"] == 0.0

    def test_empty_store(self):
        metrics = compute_moderation_metrics(InMemoryModerationStore(), now=NOW)

        assert metrics.flagged_percentage == 0.0
        assert metrics.correction_rate == 0.0
        assert metrics.to_dict()["today_flagged_rate"] == 0.0
