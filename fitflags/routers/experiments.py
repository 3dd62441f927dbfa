"""
Experiment management endpoints.

Handles creation, allocation changes and lifecycle transitions. All routes
require the admin role.
"""

from fastapi import APIRouter, Depends, Query, status
from typing import Optional

from fitflags.auth import require_admin
from fitflags.dependencies import get_experiment_engine
from fitflags.models import ExperimentStatus
from fitflags.schemas import (
    AllocationUpdate,
    ExperimentCreate,
    ExperimentListResponse,
    ExperimentResponse,
)
from fitflags.services.experiments import ExperimentEngine

router = APIRouter(
    prefix="/experiments",
    tags=["experiments"],
    dependencies=[Depends(require_admin)]
)


@router.post("", response_model=ExperimentResponse, status_code=status.HTTP_201_CREATED)
async def create_experiment(
    experiment_data: ExperimentCreate,
    engine: ExperimentEngine = Depends(get_experiment_engine)
):
    """
    Create a draft experiment.

    Requirements:
    - Variant names must be unique within the experiment
    - `feature_name`, when given, must name an existing flag
    - Starting additionally requires a `control` variant and allocations summing to 100
    """
    return engine.create_experiment(experiment_data)


@router.get("", response_model=ExperimentListResponse)
async def list_experiments(
    status_filter: Optional[ExperimentStatus] = Query(None, alias="status"),
    engine: ExperimentEngine = Depends(get_experiment_engine)
):
    experiments = engine.list_experiments(status_filter)
    return ExperimentListResponse(experiments=experiments, total=len(experiments))


@router.get("/{experiment_id}", response_model=ExperimentResponse)
async def get_experiment(
    experiment_id: int,
    engine: ExperimentEngine = Depends(get_experiment_engine)
):
    return engine.get_experiment(experiment_id)


@router.post("/{experiment_id}/start", response_model=ExperimentResponse)
async def start_experiment(
    experiment_id: int,
    engine: ExperimentEngine = Depends(get_experiment_engine)
):
    """draft/paused -> running. Fails with 400 if the allocation is not runnable."""
    return engine.start(experiment_id)


@router.post("/{experiment_id}/pause", response_model=ExperimentResponse)
async def pause_experiment(
    experiment_id: int,
    engine: ExperimentEngine = Depends(get_experiment_engine)
):
    """running -> paused. Existing assignments keep their variant."""
    return engine.pause(experiment_id)


@router.post("/{experiment_id}/stop", response_model=ExperimentResponse)
async def stop_experiment(
    experiment_id: int,
    engine: ExperimentEngine = Depends(get_experiment_engine)
):
    """running/paused -> stopped. Terminal."""
    return engine.stop(experiment_id)


@router.put("/{experiment_id}/allocation", response_model=ExperimentResponse)
async def update_allocation(
    experiment_id: int,
    update: AllocationUpdate,
    engine: ExperimentEngine = Depends(get_experiment_engine)
):
    """Change traffic shares. Users already assigned keep their variant."""
    return engine.update_allocation(experiment_id, update.allocation)
