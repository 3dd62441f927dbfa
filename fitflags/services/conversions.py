"""
Conversion recording.

Events are attributed to the variant the user was assigned when the event
arrives. Users without an assignment are logged as "unknown" so they stay out
of per-variant statistics.
"""

import logging
import math
from datetime import datetime
from typing import Any, Dict, Optional

from fitflags.errors import ConflictError, NotFoundError, ValidationError
from fitflags.models import (
    ConversionEvent,
    EventSemantics,
    EventTypeDefinition,
    MAX_EVENT_VALUE,
    UNATTRIBUTED_VARIANT,
)
from fitflags.store import Store

logger = logging.getLogger(__name__)


def dedupe_key(experiment_id: int, user_id: str, event_type: str) -> str:
    return f"{experiment_id}:{event_type}:{user_id}"


class ConversionRecorder:

    def __init__(self, store: Store):
        self.store = store

    def semantics_for(self, event_type: str) -> EventSemantics:
        """Undeclared event types count once per user."""
        definition = self.store.get_event_type(event_type)
        if definition is None:
            return EventSemantics.FIRST_OCCURRENCE
        return definition.semantics

    def declare_event_type(
        self, name: str, semantics: EventSemantics, description: Optional[str] = None
    ) -> EventTypeDefinition:
        definition = self.store.get_event_type(name)
        if definition is None:
            definition = EventTypeDefinition(name=name)
            self.store.add(definition)
        definition.semantics = semantics
        definition.description = description
        self.store.commit()
        logger.info(f"Event type {name} declared as {semantics.value}")
        return definition

    def list_event_types(self) -> list:
        return self.store.list_event_types()

    def record(
        self,
        experiment_id: int,
        user_id: str,
        event_type: str,
        value: float = 1,
        session_id: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
        occurred_at: Optional[datetime] = None,
    ) -> Optional[ConversionEvent]:
        """
        Append an event to the log.

        Returns the stored event, or None when a first-occurrence event was
        already recorded for (experiment, user, event type). Retrying is
        always safe.
        """
        if not math.isfinite(value) or abs(value) > MAX_EVENT_VALUE:
            raise ValidationError(f"Event value must be finite and within ±{MAX_EVENT_VALUE:g}, got {value}")

        experiment = self.store.get_experiment(experiment_id)
        if experiment is None:
            raise NotFoundError(f"Experiment {experiment_id} not found")

        assignment = self.store.get_assignment(experiment_id, user_id)
        variant = assignment.variant if assignment is not None else UNATTRIBUTED_VARIANT

        key = None
        if self.semantics_for(event_type) == EventSemantics.FIRST_OCCURRENCE:
            key = dedupe_key(experiment_id, user_id, event_type)
            if self.store.has_event(key):
                return None

        event = ConversionEvent(
            experiment_id=experiment_id,
            user_id=user_id,
            variant=variant,
            event_type=event_type,
            value=value,
            session_id=session_id,
            properties=metadata,
            dedupe_key=key,
            occurred_at=occurred_at or datetime.utcnow(),
        )
        try:
            self.store.append_event(event)
        except ConflictError:
            # A concurrent retry of the same first-occurrence event won.
            return None
        self.store.commit()

        if variant == UNATTRIBUTED_VARIANT:
            logger.info(
                f"Unattributed {event_type} event for {user_id} in experiment {experiment_id}"
            )
        return event

    def list_events(
        self,
        experiment_id: int,
        event_type: Optional[str] = None,
        variant: Optional[str] = None,
        limit: int = 100,
        offset: int = 0,
    ):
        if self.store.get_experiment(experiment_id) is None:
            raise NotFoundError(f"Experiment {experiment_id} not found")
        return self.store.list_events(experiment_id, event_type, variant, limit, offset)
