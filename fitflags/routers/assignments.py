"""
Variant assignment endpoints.

Once a user receives a variant it never changes for the lifetime of the
experiment, whatever happens to the allocation afterwards.
"""

from fastapi import APIRouter, Depends, Query
from typing import Optional

from fitflags.auth import require_admin, verify_token
from fitflags.dependencies import get_experiment_engine
from fitflags.schemas import AssignmentResponse
from fitflags.services.experiments import AssignmentOutcome, ExperimentEngine

router = APIRouter(
    prefix="/experiments",
    tags=["assignments"],
    dependencies=[Depends(verify_token)]
)

feature_router = APIRouter(
    prefix="/features",
    tags=["assignments"],
    dependencies=[Depends(verify_token)]
)


def _to_response(outcome: AssignmentOutcome) -> AssignmentResponse:
    return AssignmentResponse(
        experiment_id=outcome.experiment_id,
        user_id=outcome.user_id,
        variant=outcome.variant,
        assigned_at=outcome.assignment.assigned_at if outcome.assignment is not None else None,
        is_new_assignment=outcome.is_new,
        is_persisted=outcome.is_persisted
    )


@router.get("/{experiment_id}/assignment/{user_id}", response_model=AssignmentResponse)
async def get_or_create_assignment(
    experiment_id: int,
    user_id: str,
    engine: ExperimentEngine = Depends(get_experiment_engine)
):
    """
    Get a user's variant for an experiment.

    Behavior:
    - Running: returns the stored variant, creating it on first call
    - Paused: returns the stored variant; unassigned users get `control` (not stored)
    - Draft, stopped or unknown: `control`, nothing stored
    """
    return _to_response(engine.assign(experiment_id, user_id))


@router.get("/{experiment_id}/assignments", response_model=dict, dependencies=[Depends(require_admin)])
async def list_assignments(
    experiment_id: int,
    variant: Optional[str] = Query(None, description="Filter by variant"),
    limit: int = Query(100, ge=1, le=1000),
    offset: int = Query(0, ge=0),
    engine: ExperimentEngine = Depends(get_experiment_engine)
):
    """List assignments for auditing the traffic split."""
    total, assignments = engine.list_assignments(experiment_id, variant, limit, offset)
    return {
        "experiment_id": experiment_id,
        "total": total,
        "assignments": [
            {
                "user_id": a.user_id,
                "variant": a.variant,
                "bucket": a.bucket,
                "assigned_at": a.assigned_at.isoformat()
            }
            for a in assignments
        ]
    }


@feature_router.get("/{feature_name}/variant/{user_id}", response_model=AssignmentResponse)
async def get_feature_variant(
    feature_name: str,
    user_id: str,
    engine: ExperimentEngine = Depends(get_experiment_engine)
):
    """Variant from the experiment currently attached to a flag; `control` if there is none."""
    return _to_response(engine.assign_variant_for_feature(feature_name, user_id))
