"""
Conversion recording endpoints.

Recording is idempotent for first-occurrence event types, so clients may
retry freely after network failures.
"""

from fastapi import APIRouter, Depends, Query, status
from typing import List, Optional

from fitflags.auth import require_admin, verify_token
from fitflags.dependencies import get_recorder
from fitflags.schemas import (
    ConversionCreate,
    ConversionResponse,
    EventTypeDeclare,
    EventTypeResponse,
)
from fitflags.services.conversions import ConversionRecorder

router = APIRouter(
    prefix="/experiments",
    tags=["conversions"],
    dependencies=[Depends(verify_token)]
)

event_type_router = APIRouter(
    prefix="/event-types",
    tags=["conversions"],
    dependencies=[Depends(require_admin)]
)


@router.post(
    "/{experiment_id}/conversions",
    response_model=ConversionResponse,
    status_code=status.HTTP_201_CREATED
)
async def record_conversion(
    experiment_id: int,
    event_data: ConversionCreate,
    recorder: ConversionRecorder = Depends(get_recorder)
):
    """
    Record an outcome event for a user.

    The event is attributed to the user's stored variant, or to `unknown`
    when the user was never assigned. `recorded` is false when a
    first-occurrence event had already been counted.
    """
    event = recorder.record(
        experiment_id,
        event_data.user_id,
        event_data.event_type,
        value=event_data.value,
        session_id=event_data.session_id,
        metadata=event_data.metadata,
        occurred_at=event_data.occurred_at
    )
    return ConversionResponse(
        experiment_id=experiment_id,
        user_id=event_data.user_id,
        event_type=event_data.event_type,
        variant=event.variant if event is not None else None,
        recorded=event is not None
    )


@router.get("/{experiment_id}/conversions", response_model=dict, dependencies=[Depends(require_admin)])
async def list_conversions(
    experiment_id: int,
    event_type: Optional[str] = Query(None),
    variant: Optional[str] = Query(None),
    limit: int = Query(100, ge=1, le=1000),
    offset: int = Query(0, ge=0),
    recorder: ConversionRecorder = Depends(get_recorder)
):
    """Query the event log of an experiment for debugging and audits."""
    total, events = recorder.list_events(experiment_id, event_type, variant, limit, offset)
    return {
        "experiment_id": experiment_id,
        "total": total,
        "events": [
            {
                "id": e.id,
                "user_id": e.user_id,
                "variant": e.variant,
                "event_type": e.event_type,
                "value": e.value,
                "session_id": e.session_id,
                "metadata": e.properties,
                "occurred_at": e.occurred_at.isoformat()
            }
            for e in events
        ]
    }


@event_type_router.get("", response_model=List[EventTypeResponse])
async def list_event_types(recorder: ConversionRecorder = Depends(get_recorder)):
    return recorder.list_event_types()


@event_type_router.put("/{name}", response_model=EventTypeResponse)
async def declare_event_type(
    name: str,
    declaration: EventTypeDeclare,
    recorder: ConversionRecorder = Depends(get_recorder)
):
    """Declare whether an event type counts once per user or accumulates."""
    return recorder.declare_event_type(name, declaration.semantics, declaration.description)
