"""
Feature usage tracking and adoption analytics.

Clients report when a user enables, opens or interacts with a feature. The
log is append-only; adoption and engagement are aggregated from it on read.
"""

import logging
from datetime import date, datetime, time, timedelta
from typing import Any, Dict, List, Optional

from fitflags.errors import NotFoundError, ValidationError
from fitflags.models import FeatureFlag, FeatureUsageEvent, UsageAction
from fitflags.schemas import AdoptionTrendPoint, FeatureUsageAnalytics
from fitflags.store import Store

logger = logging.getLogger(__name__)

ACTIVE_WINDOWS = {
    "active_users_24h": timedelta(hours=24),
    "active_users_7d": timedelta(days=7),
    "active_users_30d": timedelta(days=30),
}


def _as_date(value) -> date:
    # SQLite returns DATE() as text
    if isinstance(value, date):
        return value
    return date.fromisoformat(str(value)[:10])


class UsageTracker:

    def __init__(self, store: Store):
        self.store = store

    def _get_flag(self, feature_name: str) -> FeatureFlag:
        flag = self.store.get_flag(feature_name)
        if flag is None:
            raise NotFoundError(f"Feature flag {feature_name} not found")
        return flag

    def record_usage(
        self,
        feature_name: str,
        user_id: str,
        action: UsageAction = UsageAction.ACCESSED,
        session_id: Optional[str] = None,
        component_path: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
        occurred_at: Optional[datetime] = None,
    ) -> FeatureUsageEvent:
        flag = self._get_flag(feature_name)
        event = self.store.append_usage_event(FeatureUsageEvent(
            feature_flag=flag,
            user_id=user_id,
            action=action,
            session_id=session_id,
            component_path=component_path,
            properties=metadata,
            occurred_at=occurred_at or datetime.utcnow(),
        ))
        self.store.commit()
        logger.debug(f"Usage {action.value} of {feature_name} by {user_id}")
        return event

    def feature_analytics(self, feature_name: str, now: Optional[datetime] = None) -> FeatureUsageAnalytics:
        """
        Adoption aggregates for one feature.

        adoption_rate compares the feature's 30-day active users with everyone
        active on any feature in the same window. engagement_score is the
        number of interactions per 30-day active user.
        """
        flag = self._get_flag(feature_name)
        now = now or datetime.utcnow()

        active = {
            key: self.store.count_usage_users(flag, since=now - window)
            for key, window in ACTIVE_WINDOWS.items()
        }
        month_ago = now - ACTIVE_WINDOWS["active_users_30d"]
        everyone = self.store.count_usage_users(since=month_ago)
        interactions = self.store.count_usage_events(flag, since=month_ago, action=UsageAction.INTERACTION)
        monthly = active["active_users_30d"]

        return FeatureUsageAnalytics(
            feature_name=feature_name,
            total_users=self.store.count_usage_users(flag),
            adoption_rate=monthly / everyone if everyone else 0.0,
            engagement_score=interactions / monthly if monthly else 0.0,
            calculated_at=now,
            **active
        )

    def adoption_trends(self, days: int = 30, now: Optional[datetime] = None) -> List[AdoptionTrendPoint]:
        """One point per day, oldest first, ending today. Quiet days are zeros."""
        if days < 1:
            raise ValidationError("days must be at least 1")
        now = now or datetime.utcnow()
        first_day = now.date() - timedelta(days=days - 1)
        since = datetime.combine(first_day, time.min)

        window_users = self.store.count_usage_users(since=since)
        by_day = {_as_date(r.day): r for r in self.store.daily_usage(since)}

        points = []
        for offset in range(days):
            day = first_day + timedelta(days=offset)
            row = by_day.get(day)
            users = row.users if row is not None else 0
            points.append(AdoptionTrendPoint(
                day=day,
                active_users=users,
                active_features=row.features if row is not None else 0,
                events=row.events if row is not None else 0,
                adoption_rate=users / window_users if window_users else 0.0,
            ))
        return points

    def user_journey(self, user_id: str, limit: int = 1000) -> list:
        """A user's usage events across all features, oldest first."""
        return self.store.list_usage_events(user_id, limit)
