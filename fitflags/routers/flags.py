"""
Feature flag endpoints.

Evaluation is open to any authenticated client and never fails because of
flag state: unknown flags evaluate as disabled. Everything else on this
router is administration and requires the admin role.
"""

from fastapi import APIRouter, Depends, Query, status
from typing import List, Optional

from fitflags import catalog
from fitflags.auth import require_admin, verify_token
from fitflags.dependencies import get_evaluator, get_flag_admin, get_rollout_scheduler
from fitflags.models import FeatureCategory
from fitflags.schemas import (
    BatchEvaluationRequest,
    BatchEvaluationResponse,
    BulkOperationResult,
    BulkRolloutRequest,
    CatalogItem,
    EvaluationResult,
    FlagResponse,
    FlagUpsert,
    OverrideCreate,
    OverrideResponse,
    RolloutScheduleCreate,
    RolloutScheduleResponse,
    SetEnabledRequest,
    SetRolloutRequest,
)
from fitflags.services.flags import FlagAdmin, FlagEvaluator
from fitflags.services.rollouts import RolloutScheduler

router = APIRouter(
    prefix="/flags",
    tags=["flags"],
    dependencies=[Depends(verify_token)]
)

admin_only = [Depends(require_admin)]


@router.get("/{feature_name}/evaluation/{user_id}", response_model=EvaluationResult)
async def evaluate_flag(
    feature_name: str,
    user_id: str,
    audience_eligible: bool = Query(
        True, description="Whether the caller already determined the user is in the flag's audience"
    ),
    evaluator: FlagEvaluator = Depends(get_evaluator)
):
    """Evaluate one flag for one user."""
    return evaluator.evaluate(user_id, feature_name, audience_eligible)


@router.post("/evaluate", response_model=BatchEvaluationResponse)
async def evaluate_flags(
    request: BatchEvaluationRequest,
    evaluator: FlagEvaluator = Depends(get_evaluator)
):
    """Evaluate several flags for one user, e.g. everything a screen renders."""
    return BatchEvaluationResponse(
        user_id=request.user_id,
        results=evaluator.evaluate_many(
            request.user_id, request.feature_names, request.audience_eligible
        )
    )


@router.get("/catalog", response_model=List[CatalogItem], dependencies=admin_only)
async def list_catalog(category: Optional[FeatureCategory] = Query(None)):
    """Known feature definitions and their seeding defaults."""
    return [
        CatalogItem(
            name=d.name,
            display_name=d.display_name,
            description=d.description,
            category=d.category,
            category_label=catalog.CATEGORY_LABELS[d.category],
            default_audience=d.default_audience,
            default_rollout_percentage=d.default_rollout_percentage,
            dependencies=sorted(d.dependencies),
            parent=d.parent,
        )
        for d in catalog.list_definitions(category)
    ]


@router.post("/catalog/seed", response_model=List[FlagResponse], dependencies=admin_only)
async def seed_catalog(admin: FlagAdmin = Depends(get_flag_admin)):
    """Create a disabled flag for every catalog feature that has none yet."""
    return admin.seed_catalog()


@router.post(
    "/catalog/{feature_name}",
    response_model=FlagResponse,
    status_code=status.HTTP_201_CREATED,
    dependencies=admin_only
)
async def create_from_catalog(
    feature_name: str,
    enabled: bool = Query(False),
    admin: FlagAdmin = Depends(get_flag_admin)
):
    """Create or reset a flag from its catalog defaults."""
    return admin.upsert_from_catalog(feature_name, enabled)


@router.get("", response_model=List[FlagResponse], dependencies=admin_only)
async def list_flags(
    category: Optional[FeatureCategory] = Query(None),
    admin: FlagAdmin = Depends(get_flag_admin)
):
    return admin.list_flags(category)


@router.put("", response_model=FlagResponse, dependencies=admin_only)
async def upsert_flag(
    definition: FlagUpsert,
    admin: FlagAdmin = Depends(get_flag_admin)
):
    """
    Create or replace a flag.

    The parent must already exist and may not be the flag itself or one of
    its descendants.
    """
    return admin.upsert_flag(definition)


@router.post("/bulk-rollout", response_model=BulkOperationResult, dependencies=admin_only)
async def bulk_update_rollout(
    request: BulkRolloutRequest,
    admin: FlagAdmin = Depends(get_flag_admin)
):
    """Set one rollout percentage on many flags; failures are listed, not raised."""
    return admin.bulk_update_rollout(request.feature_names, request.rollout_percentage)


@router.get("/{feature_name}", response_model=FlagResponse, dependencies=admin_only)
async def get_flag(feature_name: str, admin: FlagAdmin = Depends(get_flag_admin)):
    return admin.get_flag(feature_name)


@router.delete("/{feature_name}", status_code=status.HTTP_204_NO_CONTENT, dependencies=admin_only)
async def delete_flag(
    feature_name: str,
    hard: bool = Query(False, description="Remove the flag instead of disabling it"),
    admin: FlagAdmin = Depends(get_flag_admin)
):
    admin.delete_flag(feature_name, hard)


@router.post("/{feature_name}/enabled", response_model=FlagResponse, dependencies=admin_only)
async def set_enabled(
    feature_name: str,
    request: SetEnabledRequest,
    admin: FlagAdmin = Depends(get_flag_admin)
):
    return admin.set_enabled(feature_name, request.enabled)


@router.post("/{feature_name}/rollout", response_model=FlagResponse, dependencies=admin_only)
async def set_rollout(
    feature_name: str,
    request: SetRolloutRequest,
    admin: FlagAdmin = Depends(get_flag_admin)
):
    return admin.set_rollout(feature_name, request.rollout_percentage)


@router.post(
    "/{feature_name}/toggle-with-children",
    response_model=BulkOperationResult,
    dependencies=admin_only
)
async def toggle_with_children(
    feature_name: str,
    request: SetEnabledRequest,
    admin: FlagAdmin = Depends(get_flag_admin)
):
    """
    Toggle a flag and its direct children together.

    Children that fail are listed under `failed` while the rest stay applied;
    retry the failed ones individually.
    """
    return admin.toggle_with_children(feature_name, request.enabled)


@router.get("/{feature_name}/overrides", response_model=List[OverrideResponse], dependencies=admin_only)
async def list_overrides(
    feature_name: str,
    user_id: Optional[str] = Query(None),
    admin: FlagAdmin = Depends(get_flag_admin)
):
    return admin.list_overrides(feature_name, user_id)


@router.put("/{feature_name}/overrides", response_model=OverrideResponse, dependencies=admin_only)
async def set_override(
    feature_name: str,
    request: OverrideCreate,
    admin: FlagAdmin = Depends(get_flag_admin)
):
    return admin.set_override(
        request.user_id, feature_name, request.enabled, request.variant, request.reason
    )


@router.delete(
    "/{feature_name}/overrides/{user_id}",
    status_code=status.HTTP_204_NO_CONTENT,
    dependencies=admin_only
)
async def remove_override(
    feature_name: str,
    user_id: str,
    admin: FlagAdmin = Depends(get_flag_admin)
):
    admin.remove_override(user_id, feature_name)


@router.post(
    "/{feature_name}/rollout-schedules",
    response_model=RolloutScheduleResponse,
    status_code=status.HTTP_201_CREATED,
    dependencies=admin_only
)
async def create_rollout_schedule(
    feature_name: str,
    request: RolloutScheduleCreate,
    scheduler: RolloutScheduler = Depends(get_rollout_scheduler)
):
    return scheduler.create_schedule(feature_name, request.name, request.steps)


@router.get(
    "/{feature_name}/rollout-schedules",
    response_model=List[RolloutScheduleResponse],
    dependencies=admin_only
)
async def list_rollout_schedules(
    feature_name: str,
    scheduler: RolloutScheduler = Depends(get_rollout_scheduler)
):
    return scheduler.list_schedules(feature_name)
