"""
Scheduled rollout steps.

A schedule raises (or lowers) a flag's rollout percentage at planned times.
Because bucketing is stable, each increase only adds users to the enabled set.
"""

import logging
from datetime import datetime
from typing import List, Optional

from sqlalchemy.exc import SQLAlchemyError

from fitflags.errors import NotFoundError, ValidationError
from fitflags.models import RolloutSchedule, RolloutStep
from fitflags.schemas import RolloutExecutionReport, RolloutStepCreate
from fitflags.store import Store

logger = logging.getLogger(__name__)


class RolloutScheduler:

    def __init__(self, store: Store):
        self.store = store

    def create_schedule(self, feature_name: str, name: str, steps: List[RolloutStepCreate]) -> RolloutSchedule:
        flag = self.store.get_flag(feature_name)
        if flag is None:
            raise NotFoundError(f"Feature flag {feature_name} not found")
        if not steps:
            raise ValidationError("A rollout schedule needs at least one step")
        for step in steps:
            if not 0 <= step.target_percentage <= 100:
                raise ValidationError(
                    f"Step target {step.target_percentage} is outside 0-100"
                )

        schedule = RolloutSchedule(feature_flag=flag, name=name)
        ordered = sorted(steps, key=lambda s: s.execute_at)
        for index, step in enumerate(ordered):
            schedule.steps.append(RolloutStep(
                step_index=index,
                target_percentage=step.target_percentage,
                execute_at=step.execute_at,
            ))
        self.store.add(schedule)
        self.store.commit()
        logger.info(f"Rollout schedule '{name}' created for {feature_name} with {len(ordered)} steps")
        return schedule

    def list_schedules(self, feature_name: str) -> list:
        flag = self.store.get_flag(feature_name)
        if flag is None:
            raise NotFoundError(f"Feature flag {feature_name} not found")
        return self.store.list_schedules(flag)

    def execute_due_steps(self, now: Optional[datetime] = None) -> RolloutExecutionReport:
        """
        Apply every pending step whose time has come, oldest first.

        A failing step is reported and left pending so the next run retries it.
        """
        now = now or datetime.utcnow()
        pending = self.store.pending_rollout_steps(now)
        executed = 0
        errors = []

        for step in pending:
            feature_name = step.schedule.feature_name
            try:
                with self.store.savepoint():
                    flag = step.schedule.feature_flag
                    flag.rollout_percentage = step.target_percentage
                    step.executed_at = now
                    self.store.flush()
            except SQLAlchemyError as e:
                logger.error(f"Rollout step for {feature_name} failed", exc_info=True)
                errors.append(f"Failed to update {feature_name}: {e}")
                continue
            executed += 1
            logger.info(f"Rollout for {feature_name} moved to {step.target_percentage}%")

        self.store.commit()
        return RolloutExecutionReport(
            executed_count=executed,
            total_pending=len(pending),
            errors=errors,
        )
