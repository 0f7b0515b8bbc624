"""Moderation metrics for the admin dashboard.

Counts are over assistant replies (user turns are never scored). A
reviewed message is no longer flagged, so "flagged" counts both the
replies pending review and the ones already reviewed.
"""
from collections import Counter
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from typing import Any, Dict, List, Optional

from kintsugi.shared.models import MessageState, ReviewVerdict, RiskLevel, Sender
from .store import ModerationStore

DAILY_SERIES_DAYS = 30


def _percent(part: int, whole: int) -> float:
    return round(part * 100.0 / whole, 2) if whole else 0.0


@dataclass(frozen=True)
class DailyPoint:
    day: date
    total: int
    flagged: int

    @property
    def flagged_rate(self) -> float:
        return _percent(self.flagged, self.total)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "date": self.day.isoformat(),
            "total": self.total,
            "flagged": self.flagged,
            "flagged_rate": self.flagged_rate,
        }


@dataclass(frozen=True)
class ModerationMetrics:
    """Snapshot of moderation activity."""
    total_messages: int
    flagged_count: int
    pending_review_count: int
    high_risk_count: int
    medium_risk_count: int
    total_reviews: int
    unsafe_reviews: int
    total_feedback: int
    daily: List[DailyPoint] = field(default_factory=list)
    feedback_daily: List[Dict[str, Any]] = field(default_factory=list)

    @property
    def flagged_percentage(self) -> float:
        return _percent(self.flagged_count, self.total_messages)

    @property
    def correction_rate(self) -> float:
        """Share of reviews that found the reply unsafe."""
        return _percent(self.unsafe_reviews, self.total_reviews)

    def to_dict(self) -> Dict[str, Any]:
        today = self.daily[-1] if self.daily else None
        yesterday = self.daily[-2] if len(self.daily) > 1 else None
        return {
            "total_messages": self.total_messages,
            "flagged_count": self.flagged_count,
            "pending_review_count": self.pending_review_count,
            "high_risk_count": self.high_risk_count,
            "medium_risk_count": self.medium_risk_count,
            "flagged_percentage": self.flagged_percentage,
            "total_reviews": self.total_reviews,
            "correction_rate": self.correction_rate,
            "total_feedback": self.total_feedback,
            "today_flagged_rate": today.flagged_rate if today else 0.0,
            "yesterday_flagged_rate": yesterday.flagged_rate if yesterday else 0.0,
            "daily": [point.to_dict() for point in self.daily],
            "feedback_daily": self.feedback_daily,
        }


def compute_moderation_metrics(
    store: ModerationStore,
    now: Optional[datetime] = None,
    days: int = DAILY_SERIES_DAYS,
) -> ModerationMetrics:
    """Aggregate metrics from the store.

    Args:
        store: Moderation store
        now: Reference time for the daily series (default utcnow)
        days: Length of the daily series, ending today
    """
    now = now or datetime.utcnow()
    messages = store.list_messages(sender=Sender.ASSISTANT)
    reviews = store.list_reviews()
    feedback = store.list_feedback()

    reviewed_ids = {review.message_id for review in reviews}
    was_flagged = [
        m for m in messages
        if m.state == MessageState.PENDING_REVIEW or m.id in reviewed_ids
    ]

    totals_by_day = Counter(m.created_at.date() for m in messages)
    flagged_by_day = Counter(m.created_at.date() for m in was_flagged)
    feedback_by_day = Counter(entry.created_at.date() for entry in feedback)

    first_day = now.date() - timedelta(days=days - 1)
    series_days = [first_day + timedelta(days=offset) for offset in range(days)]

    return ModerationMetrics(
        total_messages=len(messages),
        flagged_count=len(was_flagged),
        pending_review_count=sum(1 for m in messages if m.flagged),
        high_risk_count=sum(1 for m in messages if m.risk_level == RiskLevel.HIGH),
        medium_risk_count=sum(1 for m in messages if m.risk_level == RiskLevel.MEDIUM),
        total_reviews=len(reviews),
        unsafe_reviews=sum(1 for r in reviews if r.verdict == ReviewVerdict.UNSAFE),
        total_feedback=len(feedback),
        daily=[
            DailyPoint(day=day, total=totals_by_day[day], flagged=flagged_by_day[day])
            for day in series_days
        ],
        feedback_daily=[
            {"date": day.isoformat(), "count": feedback_by_day[day]}
            for day in series_days
        ],
    )
