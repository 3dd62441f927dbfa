"""
Feature usage endpoints.

Any authenticated client may report usage; the aggregates are admin-only.
"""

from fastapi import APIRouter, Depends, Query, status
from typing import List

from fitflags.auth import require_admin, verify_token
from fitflags.dependencies import get_usage_tracker
from fitflags.schemas import (
    AdoptionTrendPoint,
    FeatureUsageAnalytics,
    UsageEventCreate,
    UsageEventResponse,
)
from fitflags.services.usage import UsageTracker

router = APIRouter(
    prefix="/flags",
    tags=["usage"],
    dependencies=[Depends(verify_token)]
)

admin_only = [Depends(require_admin)]


@router.get("/usage/trends", response_model=List[AdoptionTrendPoint], dependencies=admin_only)
async def adoption_trends(
    days: int = Query(30, ge=1, le=365),
    tracker: UsageTracker = Depends(get_usage_tracker)
):
    """Daily active users and active features over the last `days` days."""
    return tracker.adoption_trends(days)


@router.get("/usage/users/{user_id}", response_model=List[UsageEventResponse], dependencies=admin_only)
async def user_journey(
    user_id: str,
    limit: int = Query(1000, ge=1, le=1000),
    tracker: UsageTracker = Depends(get_usage_tracker)
):
    return tracker.user_journey(user_id, limit)


@router.post(
    "/{feature_name}/usage",
    response_model=UsageEventResponse,
    status_code=status.HTTP_201_CREATED
)
async def record_usage(
    feature_name: str,
    usage: UsageEventCreate,
    tracker: UsageTracker = Depends(get_usage_tracker)
):
    """Append a usage event. Unknown features return 404."""
    return tracker.record_usage(
        feature_name,
        usage.user_id,
        usage.action,
        session_id=usage.session_id,
        component_path=usage.component_path,
        metadata=usage.metadata,
        occurred_at=usage.occurred_at
    )


@router.get("/{feature_name}/usage/analytics", response_model=FeatureUsageAnalytics, dependencies=admin_only)
async def feature_analytics(
    feature_name: str,
    tracker: UsageTracker = Depends(get_usage_tracker)
):
    """Total and 24h/7d/30d active users, adoption rate and engagement score."""
    return tracker.feature_analytics(feature_name)
