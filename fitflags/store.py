"""
Persistence boundary for the flag and experiment engine.

Services receive a Store and nothing else, so evaluation and assignment are
functions of (inputs, store snapshot). SQLAlchemyStore is the production
implementation; it never commits on its own, callers decide the unit of work.
"""

import abc
from contextlib import contextmanager
from datetime import datetime
from typing import Optional

from sqlalchemy import func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from fitflags.errors import ConflictError
from fitflags.models import (
    ConversionEvent,
    EventTypeDefinition,
    Experiment,
    ExperimentStatus,
    FeatureCategory,
    FeatureFlag,
    FeatureUsageEvent,
    RolloutSchedule,
    RolloutStep,
    StatisticsSnapshot,
    UNATTRIBUTED_VARIANT,
    UserFeatureOverride,
    UsageAction,
    VariantAssignment,
)


class Store(abc.ABC):
    """Everything the engine needs from persistence."""

    # Feature flags

    @abc.abstractmethod
    def get_flag(self, feature_name: str) -> Optional[FeatureFlag]: ...

    @abc.abstractmethod
    def get_flag_by_id(self, flag_id: int) -> Optional[FeatureFlag]: ...

    @abc.abstractmethod
    def list_flags(self, category: Optional[FeatureCategory] = None) -> list: ...

    @abc.abstractmethod
    def list_children(self, flag: FeatureFlag) -> list: ...

    # Overrides

    @abc.abstractmethod
    def get_override(self, user_id: str, flag: FeatureFlag) -> Optional[UserFeatureOverride]: ...

    @abc.abstractmethod
    def list_overrides(
        self, flag: Optional[FeatureFlag] = None, user_id: Optional[str] = None
    ) -> list: ...

    # Experiments and assignments

    @abc.abstractmethod
    def get_experiment(self, experiment_id: int) -> Optional[Experiment]: ...

    @abc.abstractmethod
    def list_experiments(self, status: Optional[ExperimentStatus] = None) -> list: ...

    @abc.abstractmethod
    def find_experiment_for_flag(self, flag: FeatureFlag) -> Optional[Experiment]: ...

    @abc.abstractmethod
    def get_assignment(self, experiment_id: int, user_id: str) -> Optional[VariantAssignment]: ...

    @abc.abstractmethod
    def insert_assignment(self, assignment: VariantAssignment) -> VariantAssignment:
        """Insert if absent. Raises ConflictError when the row already exists."""

    @abc.abstractmethod
    def list_assignments(
        self, experiment_id: int, variant: Optional[str] = None, limit: int = 100, offset: int = 0
    ) -> tuple: ...

    @abc.abstractmethod
    def count_assignments_by_variant(self, experiment_id: int) -> dict: ...

    # Events

    @abc.abstractmethod
    def get_event_type(self, name: str) -> Optional[EventTypeDefinition]: ...

    @abc.abstractmethod
    def list_event_types(self) -> list: ...

    @abc.abstractmethod
    def has_event(self, dedupe_key: str) -> bool: ...

    @abc.abstractmethod
    def append_event(self, event: ConversionEvent) -> ConversionEvent:
        """Append to the log. Raises ConflictError on a duplicate dedupe key."""

    @abc.abstractmethod
    def list_events(
        self,
        experiment_id: int,
        event_type: Optional[str] = None,
        variant: Optional[str] = None,
        limit: int = 100,
        offset: int = 0,
    ) -> tuple: ...

    @abc.abstractmethod
    def count_converters_by_variant(self, experiment_id: int, event_type: str) -> dict: ...

    @abc.abstractmethod
    def user_totals_by_variant(self, experiment_id: int, event_type: str) -> dict: ...

    # Statistics snapshots

    @abc.abstractmethod
    def get_snapshots(self, experiment_id: int) -> list: ...

    @abc.abstractmethod
    def replace_snapshots(self, experiment_id: int, snapshots: list) -> None: ...

    # Rollout schedules

    @abc.abstractmethod
    def list_schedules(self, flag: FeatureFlag) -> list: ...

    @abc.abstractmethod
    def pending_rollout_steps(self, now: datetime) -> list: ...

    # Feature usage

    @abc.abstractmethod
    def append_usage_event(self, event: FeatureUsageEvent) -> FeatureUsageEvent: ...

    @abc.abstractmethod
    def count_usage_users(
        self,
        flag: Optional[FeatureFlag] = None,
        since: Optional[datetime] = None,
    ) -> int: ...

    @abc.abstractmethod
    def count_usage_events(
        self,
        flag: FeatureFlag,
        since: Optional[datetime] = None,
        action: Optional[UsageAction] = None,
    ) -> int: ...

    @abc.abstractmethod
    def daily_usage(self, since: datetime) -> list:
        """Rows of (day, users, features, events) for each day with activity."""

    @abc.abstractmethod
    def list_usage_events(self, user_id: str, limit: int = 1000) -> list: ...

    # Unit of work

    @abc.abstractmethod
    def add(self, instance) -> None: ...

    @abc.abstractmethod
    def delete(self, instance) -> None: ...

    @abc.abstractmethod
    def flush(self) -> None: ...

    @abc.abstractmethod
    def commit(self) -> None: ...

    @abc.abstractmethod
    def rollback(self) -> None: ...

    @abc.abstractmethod
    def savepoint(self):
        """Context manager; changes made inside are undone if it raises."""


class SQLAlchemyStore(Store):
    """Store backed by a SQLAlchemy session."""

    def __init__(self, db: Session):
        self.db = db

    def get_flag(self, feature_name):
        return self.db.query(FeatureFlag).filter(FeatureFlag.feature_name == feature_name).first()

    def get_flag_by_id(self, flag_id):
        return self.db.get(FeatureFlag, flag_id)

    def list_flags(self, category=None):
        query = self.db.query(FeatureFlag)
        if category is not None:
            query = query.filter(FeatureFlag.category == category)
        return query.order_by(FeatureFlag.feature_name).all()

    def list_children(self, flag):
        return (
            self.db.query(FeatureFlag)
            .filter(FeatureFlag.parent_id == flag.id)
            .order_by(FeatureFlag.feature_name)
            .all()
        )

    def get_override(self, user_id, flag):
        return (
            self.db.query(UserFeatureOverride)
            .filter(
                UserFeatureOverride.user_id == user_id,
                UserFeatureOverride.feature_flag_id == flag.id,
            )
            .first()
        )

    def list_overrides(self, flag=None, user_id=None):
        query = self.db.query(UserFeatureOverride)
        if flag is not None:
            query = query.filter(UserFeatureOverride.feature_flag_id == flag.id)
        if user_id is not None:
            query = query.filter(UserFeatureOverride.user_id == user_id)
        return query.order_by(UserFeatureOverride.created_at.desc(), UserFeatureOverride.id.desc()).all()

    def get_experiment(self, experiment_id):
        return self.db.get(Experiment, experiment_id)

    def list_experiments(self, status=None):
        query = self.db.query(Experiment)
        if status is not None:
            query = query.filter(Experiment.status == status)
        return query.order_by(Experiment.created_at.desc(), Experiment.id.desc()).all()

    def find_experiment_for_flag(self, flag):
        # A running experiment wins over a paused one; newest first within a status.
        for status in (ExperimentStatus.RUNNING, ExperimentStatus.PAUSED):
            experiment = (
                self.db.query(Experiment)
                .filter(Experiment.feature_flag_id == flag.id, Experiment.status == status)
                .order_by(Experiment.id.desc())
                .first()
            )
            if experiment is not None:
                return experiment
        return None

    def get_assignment(self, experiment_id, user_id):
        return (
            self.db.query(VariantAssignment)
            .filter(
                VariantAssignment.experiment_id == experiment_id,
                VariantAssignment.user_id == user_id,
            )
            .first()
        )

    def insert_assignment(self, assignment):
        try:
            with self.db.begin_nested():
                self.db.add(assignment)
                self.db.flush()
        except IntegrityError:
            raise ConflictError(
                f"User {assignment.user_id} already assigned in experiment {assignment.experiment_id}"
            )
        return assignment

    def list_assignments(self, experiment_id, variant=None, limit=100, offset=0):
        query = self.db.query(VariantAssignment).filter(
            VariantAssignment.experiment_id == experiment_id
        )
        if variant is not None:
            query = query.filter(VariantAssignment.variant == variant)
        total = query.count()
        rows = (
            query.order_by(VariantAssignment.assigned_at.desc(), VariantAssignment.id.desc())
            .offset(offset)
            .limit(limit)
            .all()
        )
        return total, rows

    def count_assignments_by_variant(self, experiment_id):
        rows = (
            self.db.query(VariantAssignment.variant, func.count(VariantAssignment.id).label("count"))
            .filter(VariantAssignment.experiment_id == experiment_id)
            .group_by(VariantAssignment.variant)
            .all()
        )
        return {r.variant: r.count for r in rows}

    def get_event_type(self, name):
        return self.db.get(EventTypeDefinition, name)

    def list_event_types(self):
        return self.db.query(EventTypeDefinition).order_by(EventTypeDefinition.name).all()

    def has_event(self, dedupe_key):
        query = self.db.query(ConversionEvent.id).filter(ConversionEvent.dedupe_key == dedupe_key)
        return query.first() is not None

    def append_event(self, event):
        try:
            with self.db.begin_nested():
                self.db.add(event)
                self.db.flush()
        except IntegrityError:
            raise ConflictError(f"Event {event.dedupe_key} already recorded")
        return event

    def list_events(self, experiment_id, event_type=None, variant=None, limit=100, offset=0):
        query = self.db.query(ConversionEvent).filter(ConversionEvent.experiment_id == experiment_id)
        if event_type is not None:
            query = query.filter(ConversionEvent.event_type == event_type)
        if variant is not None:
            query = query.filter(ConversionEvent.variant == variant)
        total = query.count()
        rows = (
            query.order_by(ConversionEvent.occurred_at.desc(), ConversionEvent.id.desc())
            .offset(offset)
            .limit(limit)
            .all()
        )
        return total, rows

    def count_converters_by_variant(self, experiment_id, event_type):
        rows = (
            self.db.query(
                ConversionEvent.variant,
                func.count(func.distinct(ConversionEvent.user_id)).label("count"),
            )
            .filter(
                ConversionEvent.experiment_id == experiment_id,
                ConversionEvent.event_type == event_type,
                ConversionEvent.variant != UNATTRIBUTED_VARIANT,
            )
            .group_by(ConversionEvent.variant)
            .all()
        )
        return {r.variant: r.count for r in rows}

    def user_totals_by_variant(self, experiment_id, event_type):
        rows = (
            self.db.query(
                ConversionEvent.variant,
                ConversionEvent.user_id,
                func.sum(ConversionEvent.value).label("total"),
            )
            .filter(
                ConversionEvent.experiment_id == experiment_id,
                ConversionEvent.event_type == event_type,
                ConversionEvent.variant != UNATTRIBUTED_VARIANT,
            )
            .group_by(ConversionEvent.variant, ConversionEvent.user_id)
            .all()
        )
        totals = {}
        for r in rows:
            totals.setdefault(r.variant, {})[r.user_id] = float(r.total)
        return totals

    def get_snapshots(self, experiment_id):
        return (
            self.db.query(StatisticsSnapshot)
            .filter(StatisticsSnapshot.experiment_id == experiment_id)
            .order_by(StatisticsSnapshot.position)
            .all()
        )

    def replace_snapshots(self, experiment_id, snapshots):
        for snapshot in self.get_snapshots(experiment_id):
            self.db.delete(snapshot)
        self.db.flush()
        self.db.add_all(snapshots)
        self.db.flush()

    def list_schedules(self, flag):
        return (
            self.db.query(RolloutSchedule)
            .filter(RolloutSchedule.feature_flag_id == flag.id)
            .order_by(RolloutSchedule.created_at, RolloutSchedule.id)
            .all()
        )

    def pending_rollout_steps(self, now):
        return (
            self.db.query(RolloutStep)
            .filter(RolloutStep.executed_at.is_(None), RolloutStep.execute_at <= now)
            .order_by(RolloutStep.execute_at, RolloutStep.schedule_id, RolloutStep.step_index)
            .all()
        )

    def append_usage_event(self, event):
        self.db.add(event)
        self.db.flush()
        return event

    def _usage_query(self, column, flag=None, since=None, action=None):
        query = self.db.query(column)
        if flag is not None:
            query = query.filter(FeatureUsageEvent.feature_flag_id == flag.id)
        if since is not None:
            query = query.filter(FeatureUsageEvent.occurred_at >= since)
        if action is not None:
            query = query.filter(FeatureUsageEvent.action == action)
        return query

    def count_usage_users(self, flag=None, since=None):
        column = func.count(func.distinct(FeatureUsageEvent.user_id))
        return self._usage_query(column, flag, since).scalar() or 0

    def count_usage_events(self, flag, since=None, action=None):
        return self._usage_query(func.count(FeatureUsageEvent.id), flag, since, action).scalar() or 0

    def daily_usage(self, since):
        day = func.date(FeatureUsageEvent.occurred_at)
        return (
            self.db.query(
                day.label("day"),
                func.count(func.distinct(FeatureUsageEvent.user_id)).label("users"),
                func.count(func.distinct(FeatureUsageEvent.feature_flag_id)).label("features"),
                func.count(FeatureUsageEvent.id).label("events"),
            )
            .filter(FeatureUsageEvent.occurred_at >= since)
            .group_by(day)
            .order_by(day)
            .all()
        )

    def list_usage_events(self, user_id, limit=1000):
        return (
            self.db.query(FeatureUsageEvent)
            .filter(FeatureUsageEvent.user_id == user_id)
            .order_by(FeatureUsageEvent.occurred_at, FeatureUsageEvent.id)
            .limit(limit)
            .all()
        )

    def add(self, instance):
        self.db.add(instance)

    def delete(self, instance):
        self.db.delete(instance)

    def flush(self):
        self.db.flush()

    def commit(self):
        self.db.commit()

    def rollback(self):
        self.db.rollback()

    @contextmanager
    def savepoint(self):
        with self.db.begin_nested():
            yield
