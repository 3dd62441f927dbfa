"""
Experiment statistics and winner detection endpoints.

Statistics are served from the latest snapshot while it is fresh; the
periodic job keeps snapshots of active experiments current.
"""

from fastapi import APIRouter, Depends, Query

from fitflags.auth import require_admin
from fitflags.dependencies import get_rollout_scheduler, get_statistics_engine
from fitflags.schemas import ExperimentStatisticsResponse, RolloutExecutionReport, WinnerResponse
from fitflags.services.rollouts import RolloutScheduler
from fitflags.services.statistics import StatisticsEngine

router = APIRouter(
    prefix="/experiments",
    tags=["results"],
    dependencies=[Depends(require_admin)]
)

rollout_router = APIRouter(
    prefix="/rollouts",
    tags=["flags"],
    dependencies=[Depends(require_admin)]
)


@router.get("/{experiment_id}/statistics", response_model=ExperimentStatisticsResponse)
async def get_statistics(
    experiment_id: int,
    refresh: bool = Query(False, description="Recompute instead of serving the cached snapshot"),
    engine: StatisticsEngine = Depends(get_statistics_engine)
):
    """
    Per-variant participants, conversions, rate, confidence interval and
    p-value against control.
    """
    return engine.get_statistics(experiment_id, refresh=refresh)


@router.post("/{experiment_id}/winner", response_model=WinnerResponse)
async def detect_winner(
    experiment_id: int,
    engine: StatisticsEngine = Depends(get_statistics_engine)
):
    """
    Run winner detection.

    A detected winner is recorded on the experiment; the experiment keeps
    running until an operator stops it.
    """
    return WinnerResponse(
        experiment_id=experiment_id,
        winning_variant=engine.detect_winner(experiment_id)
    )


@rollout_router.post("/execute", response_model=RolloutExecutionReport)
async def execute_rollouts(scheduler: RolloutScheduler = Depends(get_rollout_scheduler)):
    """Apply every rollout step that is due now."""
    return scheduler.execute_due_steps()
