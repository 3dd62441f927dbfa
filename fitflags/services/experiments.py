"""
Experiment lifecycle and variant assignment.

Status transitions:
- draft -> running        (start; allocation must sum to 100 and include control)
- running -> paused       (existing users keep their variant, new users see control)
- paused -> running       (resume; same validation as start)
- running/paused -> stopped (terminal)
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from fitflags.bucketing import bucket, select_variant
from fitflags.errors import ConflictError, NotFoundError, ValidationError
from fitflags.models import (
    CONTROL_VARIANT,
    Experiment,
    ExperimentStatus,
    Variant,
    VariantAssignment,
)
from fitflags.schemas import ExperimentCreate
from fitflags.store import Store

logger = logging.getLogger(__name__)


VALID_TRANSITIONS = {
    ExperimentStatus.DRAFT: [ExperimentStatus.RUNNING],
    ExperimentStatus.RUNNING: [ExperimentStatus.PAUSED, ExperimentStatus.STOPPED],
    ExperimentStatus.PAUSED: [ExperimentStatus.RUNNING, ExperimentStatus.STOPPED],
    ExperimentStatus.STOPPED: [],  # Terminal state
}


@dataclass
class AssignmentOutcome:
    experiment_id: Optional[int]
    user_id: str
    variant: str
    assignment: Optional[VariantAssignment] = None
    is_new: bool = False

    @property
    def is_persisted(self) -> bool:
        return self.assignment is not None


class ExperimentEngine:

    def __init__(self, store: Store):
        self.store = store

    def get_experiment(self, experiment_id: int) -> Experiment:
        experiment = self.store.get_experiment(experiment_id)
        if experiment is None:
            raise NotFoundError(f"Experiment {experiment_id} not found")
        return experiment

    def list_experiments(self, status: Optional[ExperimentStatus] = None) -> list:
        return self.store.list_experiments(status)

    def create_experiment(self, experiment_data: ExperimentCreate) -> Experiment:
        """
        Create a draft experiment.

        Rejects duplicate variant names and unknown feature flags. Allocation
        totals are only enforced when the experiment starts.
        """
        variant_names = [v.name for v in experiment_data.variants]
        duplicates = sorted({n for n in variant_names if variant_names.count(n) > 1})
        if duplicates:
            raise ValidationError(f"Duplicate variant names: {', '.join(duplicates)}")
        for v in experiment_data.variants:
            if not 0 <= v.allocation <= 100:
                raise ValidationError(f"Allocation for {v.name} must be within 0-100, got {v.allocation}")

        flag = None
        if experiment_data.feature_name is not None:
            flag = self.store.get_flag(experiment_data.feature_name)
            if flag is None:
                raise ValidationError(f"Feature flag {experiment_data.feature_name} does not exist")

        experiment = Experiment(
            name=experiment_data.name,
            description=experiment_data.description,
            hypothesis=experiment_data.hypothesis,
            status=ExperimentStatus.DRAFT,
            feature_flag=flag,
            success_metric=experiment_data.success_metric,
            minimum_sample_size=experiment_data.minimum_sample_size,
        )
        for position, v in enumerate(experiment_data.variants):
            experiment.variants.append(Variant(
                name=v.name,
                description=v.description,
                position=position,
                allocation=v.allocation,
                config=v.config,
            ))
        self.store.add(experiment)
        self.store.commit()
        logger.info(f"Created experiment {experiment.id} ({experiment.name}) with variants {variant_names}")
        return experiment

    def start(self, experiment_id: int) -> Experiment:
        experiment = self.get_experiment(experiment_id)
        self._check_transition(experiment, ExperimentStatus.RUNNING)
        validate_allocation(experiment.allocation)

        experiment.status = ExperimentStatus.RUNNING
        if experiment.started_at is None:
            experiment.started_at = datetime.utcnow()
        self.store.commit()
        logger.info(f"Experiment {experiment_id} running")
        return experiment

    def pause(self, experiment_id: int) -> Experiment:
        experiment = self.get_experiment(experiment_id)
        self._check_transition(experiment, ExperimentStatus.PAUSED)
        experiment.status = ExperimentStatus.PAUSED
        self.store.commit()
        logger.info(f"Experiment {experiment_id} paused")
        return experiment

    def stop(self, experiment_id: int) -> Experiment:
        experiment = self.get_experiment(experiment_id)
        self._check_transition(experiment, ExperimentStatus.STOPPED)
        experiment.status = ExperimentStatus.STOPPED
        experiment.stopped_at = datetime.utcnow()
        self.store.commit()
        logger.info(f"Experiment {experiment_id} stopped")
        return experiment

    def update_allocation(self, experiment_id: int, allocation: dict) -> Experiment:
        """
        Change the traffic shares of declared variants.

        Only users assigned after the change are affected; stored assignments
        never move.
        """
        experiment = self.get_experiment(experiment_id)
        if experiment.status == ExperimentStatus.STOPPED:
            raise ValidationError(f"Experiment {experiment_id} is stopped; allocation is frozen")

        declared = set(experiment.variant_names)
        unknown = sorted(set(allocation) - declared)
        if unknown:
            raise ValidationError(f"Unknown variants in allocation: {', '.join(unknown)}")

        merged = {name: allocation.get(name, share) for name, share in experiment.allocation.items()}
        if experiment.status == ExperimentStatus.DRAFT:
            for name, share in merged.items():
                if not 0 <= share <= 100:
                    raise ValidationError(f"Allocation for {name} must be within 0-100, got {share}")
        else:
            validate_allocation(merged)

        for variant in experiment.variants:
            variant.allocation = merged[variant.name]
        self.store.commit()
        logger.info(f"Experiment {experiment_id} allocation updated to {merged}")
        return experiment

    def assign_variant(self, experiment_id: int, user_id: str) -> str:
        return self.assign(experiment_id, user_id).variant

    def assign(self, experiment_id: int, user_id: str) -> AssignmentOutcome:
        """
        Get or create a user's variant.

        Unknown, draft and stopped experiments serve control without writing
        anything. Paused experiments return existing assignments but do not
        create new ones.
        """
        experiment = self.store.get_experiment(experiment_id)
        if experiment is None:
            logger.warning(f"Assignment requested for unknown experiment {experiment_id}; serving control")
            return AssignmentOutcome(experiment_id, user_id, CONTROL_VARIANT)
        return self._assign(experiment, user_id)

    def assign_variant_for_feature(self, feature_name: str, user_id: str) -> AssignmentOutcome:
        """Assign through the running (or paused) experiment linked to a flag."""
        flag = self.store.get_flag(feature_name)
        experiment = self.store.find_experiment_for_flag(flag) if flag is not None else None
        if experiment is None:
            return AssignmentOutcome(None, user_id, CONTROL_VARIANT)
        return self._assign(experiment, user_id)

    def list_assignments(self, experiment_id: int, variant: Optional[str] = None, limit: int = 100, offset: int = 0):
        self.get_experiment(experiment_id)
        return self.store.list_assignments(experiment_id, variant, limit, offset)

    def _assign(self, experiment: Experiment, user_id: str) -> AssignmentOutcome:
        if experiment.status not in (ExperimentStatus.RUNNING, ExperimentStatus.PAUSED):
            return AssignmentOutcome(experiment.id, user_id, CONTROL_VARIANT)

        existing = self.store.get_assignment(experiment.id, user_id)
        if existing is not None:
            return AssignmentOutcome(experiment.id, user_id, existing.variant, existing)

        if experiment.status == ExperimentStatus.PAUSED:
            return AssignmentOutcome(experiment.id, user_id, CONTROL_VARIANT)

        bucket_value = bucket(user_id, str(experiment.id))
        variant = select_variant(
            bucket_value, [(v.name, v.allocation) for v in experiment.variants]
        )
        assignment = VariantAssignment(
            experiment_id=experiment.id,
            user_id=user_id,
            variant=variant,
            bucket=bucket_value,
        )
        try:
            self.store.insert_assignment(assignment)
            self.store.commit()
        except ConflictError:
            # Another request stored an assignment first; theirs is authoritative.
            stored = self.store.get_assignment(experiment.id, user_id)
            if stored is None:
                raise
            logger.info(f"Assignment race for {user_id} in experiment {experiment.id}; using stored variant")
            return AssignmentOutcome(experiment.id, user_id, stored.variant, stored)

        return AssignmentOutcome(experiment.id, user_id, variant, assignment, is_new=True)

    def _check_transition(self, experiment: Experiment, new_status: ExperimentStatus) -> None:
        if new_status not in VALID_TRANSITIONS[experiment.status]:
            raise ValidationError(
                f"Invalid status transition from {experiment.status.value} to {new_status.value}"
            )


def validate_allocation(allocation: dict) -> None:
    """A runnable allocation has a control arm and shares summing to exactly 100."""
    if CONTROL_VARIANT not in allocation:
        raise ValidationError(f"Variants must include '{CONTROL_VARIANT}'")
    for name, share in allocation.items():
        if not 0 <= share <= 100:
            raise ValidationError(f"Allocation for {name} must be within 0-100, got {share}")
    total = sum(allocation.values())
    if total != 100:
        raise ValidationError(f"allocation sums to {total}, expected 100")
