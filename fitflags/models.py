"""
SQLAlchemy ORM models for feature flags and experiments.

Schema Design Decisions:
- Flags reference their parent by id; acyclicity is enforced on write, not in SQL
- Overrides are keyed by (user_id, feature_flag_id) so a user has at most one per flag
- Assignments use composite unique constraint on (experiment_id, user_id) so the
  insert itself is the race arbiter
- Conversion events are append-only; first-occurrence events carry a unique
  dedupe_key while accumulating events leave it NULL
- Statistics snapshots are derived data, rewritten wholesale on refresh
- Feature usage events are append-only and never deduplicated
"""

from sqlalchemy import (
    Column, Integer, String, Float, DateTime, Text, ForeignKey, Boolean,
    UniqueConstraint, Index, JSON, Enum as SQLEnum
)
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
import enum

from fitflags.database import Base


class Audience(str, enum.Enum):
    """Eligibility segments. Resolved by callers, never by the evaluator."""
    ALL = "all"
    BETA = "beta"
    PREMIUM = "premium"
    PRO = "pro"
    ADMIN = "admin"


class FeatureCategory(str, enum.Enum):
    CORE = "core_features"
    SOCIAL = "social_features"
    PREMIUM = "premium_features"
    ADMIN = "admin_features"
    BETA = "beta_features"
    ANALYTICS = "analytics_features"
    UI = "ui_features"


class ExperimentStatus(str, enum.Enum):
    """Lifecycle states for experiments."""
    DRAFT = "draft"
    RUNNING = "running"
    PAUSED = "paused"
    STOPPED = "stopped"


class EventSemantics(str, enum.Enum):
    """How repeated events of one type from one user are counted."""
    FIRST_OCCURRENCE = "first_occurrence"
    ACCUMULATING = "accumulating"


class UsageAction(str, enum.Enum):
    """What a client reported doing with a feature."""
    ENABLED = "enabled"
    DISABLED = "disabled"
    ACCESSED = "accessed"
    INTERACTION = "interaction"


UNATTRIBUTED_VARIANT = "unknown"
CONTROL_VARIANT = "control"
MAX_EVENT_VALUE = 1e9


class FeatureFlag(Base):
    """
    Runtime state of a feature.

    A flag is only ever active when every ancestor reachable through
    parent_id is enabled.
    """
    __tablename__ = "feature_flags"

    id = Column(Integer, primary_key=True, index=True)
    feature_name = Column(String(255), nullable=False, unique=True)
    description = Column(Text, nullable=True)
    category = Column(SQLEnum(FeatureCategory), nullable=True)

    enabled = Column(Boolean, nullable=False, default=False)
    rollout_percentage = Column(Integer, nullable=False, default=0)
    audience = Column(SQLEnum(Audience), nullable=False, default=Audience.ALL)

    parent_id = Column(Integer, ForeignKey("feature_flags.id"), nullable=True)

    created_at = Column(DateTime, default=func.now(), nullable=False)
    updated_at = Column(DateTime, default=func.now(), onupdate=func.now(), nullable=False)

    parent = relationship("FeatureFlag", remote_side=[id], back_populates="children")
    children = relationship("FeatureFlag", back_populates="parent")
    overrides = relationship(
        "UserFeatureOverride", back_populates="feature_flag", cascade="all, delete-orphan"
    )
    rollout_schedules = relationship(
        "RolloutSchedule", back_populates="feature_flag", cascade="all, delete-orphan"
    )
    usage_events = relationship(
        "FeatureUsageEvent", back_populates="feature_flag", cascade="all, delete-orphan"
    )

    __table_args__ = (
        Index("ix_feature_flags_parent_id", "parent_id"),
    )

    @property
    def parent_feature(self):
        return self.parent.feature_name if self.parent is not None else None


class UserFeatureOverride(Base):
    """Explicit per-user exception. Beats rollout; loses to a disabled ancestor."""
    __tablename__ = "user_feature_overrides"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(String(255), nullable=False)
    feature_flag_id = Column(
        Integer, ForeignKey("feature_flags.id", ondelete="CASCADE"), nullable=False
    )
    enabled = Column(Boolean, nullable=False)
    variant = Column(String(255), nullable=True)
    reason = Column(Text, nullable=True)

    created_at = Column(DateTime, default=func.now(), nullable=False)

    feature_flag = relationship("FeatureFlag", back_populates="overrides")

    __table_args__ = (
        UniqueConstraint("user_id", "feature_flag_id", name="uq_override_user_feature"),
        Index("ix_overrides_user_id", "user_id"),
    )

    @property
    def feature_name(self):
        return self.feature_flag.feature_name


class Experiment(Base):
    """
    Represents an A/B test experiment.

    Variants are ordered by position; bucketing walks them in that order.
    Status controls whether new assignments can be made.
    """
    __tablename__ = "experiments"

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String(255), nullable=False)
    description = Column(Text, nullable=True)
    hypothesis = Column(Text, nullable=True)
    status = Column(SQLEnum(ExperimentStatus), default=ExperimentStatus.DRAFT, nullable=False)

    feature_flag_id = Column(Integer, ForeignKey("feature_flags.id"), nullable=True)
    success_metric = Column(String(255), nullable=False, default="conversion")
    minimum_sample_size = Column(Integer, nullable=True)
    winning_variant = Column(String(255), nullable=True)

    created_at = Column(DateTime, default=func.now(), nullable=False)
    updated_at = Column(DateTime, default=func.now(), onupdate=func.now(), nullable=False)
    started_at = Column(DateTime, nullable=True)
    stopped_at = Column(DateTime, nullable=True)

    feature_flag = relationship("FeatureFlag")
    variants = relationship(
        "Variant",
        back_populates="experiment",
        cascade="all, delete-orphan",
        order_by="Variant.position",
    )
    assignments = relationship("VariantAssignment", back_populates="experiment", cascade="all, delete-orphan")

    @property
    def feature_name(self):
        return self.feature_flag.feature_name if self.feature_flag is not None else None

    @property
    def variant_names(self):
        return [v.name for v in self.variants]

    @property
    def allocation(self):
        return {v.name: v.allocation for v in self.variants}


class Variant(Base):
    """
    A variant within an experiment (e.g., "control", "treatment_a", "treatment_b").

    Allocation is an integer percentage (0-100).
    Allocations of a running experiment sum to exactly 100.
    """
    __tablename__ = "variants"

    id = Column(Integer, primary_key=True, index=True)
    experiment_id = Column(Integer, ForeignKey("experiments.id", ondelete="CASCADE"), nullable=False)
    name = Column(String(255), nullable=False)
    description = Column(Text, nullable=True)
    position = Column(Integer, nullable=False, default=0)
    allocation = Column(Integer, nullable=False, default=0)
    config = Column(JSON, nullable=True)

    experiment = relationship("Experiment", back_populates="variants")

    __table_args__ = (
        UniqueConstraint("experiment_id", "name", name="uq_variant_name_per_experiment"),
        Index("ix_variants_experiment_id", "experiment_id"),
    )


class VariantAssignment(Base):
    """
    Records a user's assignment to a variant.

    The composite unique constraint makes "insert if absent" atomic; a user
    never switches variants for the lifetime of the experiment.
    """
    __tablename__ = "variant_assignments"

    id = Column(Integer, primary_key=True, index=True)
    experiment_id = Column(Integer, ForeignKey("experiments.id", ondelete="CASCADE"), nullable=False)
    user_id = Column(String(255), nullable=False)
    variant = Column(String(255), nullable=False)
    bucket = Column(Integer, nullable=False)

    assigned_at = Column(DateTime, default=func.now(), nullable=False)

    experiment = relationship("Experiment", back_populates="assignments")

    __table_args__ = (
        UniqueConstraint("experiment_id", "user_id", name="uq_user_experiment_assignment"),
        Index("ix_assignments_experiment_variant", "experiment_id", "variant"),
    )


class EventTypeDefinition(Base):
    """Declares whether an event type counts once per user or accumulates."""
    __tablename__ = "event_types"

    name = Column(String(255), primary_key=True)
    semantics = Column(SQLEnum(EventSemantics), nullable=False, default=EventSemantics.FIRST_OCCURRENCE)
    description = Column(Text, nullable=True)


class ConversionEvent(Base):
    """
    Append-only log of outcome events attributed to an experiment variant.

    Events from users without an assignment are kept with variant "unknown"
    and excluded from per-variant statistics.
    """
    __tablename__ = "conversion_events"

    id = Column(Integer, primary_key=True, index=True)
    experiment_id = Column(Integer, ForeignKey("experiments.id", ondelete="CASCADE"), nullable=False)
    user_id = Column(String(255), nullable=False)
    variant = Column(String(255), nullable=False)
    event_type = Column(String(255), nullable=False)
    value = Column(Float, nullable=False, default=1.0)
    session_id = Column(String(255), nullable=True)
    properties = Column(JSON, nullable=True)
    dedupe_key = Column(String(767), nullable=True, unique=True)

    occurred_at = Column(DateTime, nullable=False)
    created_at = Column(DateTime, default=func.now(), nullable=False)

    __table_args__ = (
        Index("ix_events_experiment_variant_type", "experiment_id", "variant", "event_type"),
        Index("ix_events_experiment_user", "experiment_id", "user_id"),
    )


class StatisticsSnapshot(Base):
    """Cached per-variant statistics, recomputed on a cadence."""
    __tablename__ = "statistics_snapshots"

    id = Column(Integer, primary_key=True, index=True)
    experiment_id = Column(Integer, ForeignKey("experiments.id", ondelete="CASCADE"), nullable=False)
    variant = Column(String(255), nullable=False)
    position = Column(Integer, nullable=False, default=0)
    participant_count = Column(Integer, nullable=False)
    conversion_count = Column(Float, nullable=False)
    conversion_rate = Column(Float, nullable=False)
    confidence_interval_lower = Column(Float, nullable=False)
    confidence_interval_upper = Column(Float, nullable=False)
    p_value = Column(Float, nullable=True)
    calculated_at = Column(DateTime, nullable=False)

    __table_args__ = (
        UniqueConstraint("experiment_id", "variant", name="uq_snapshot_variant"),
    )


class RolloutSchedule(Base):
    """A staged plan that raises a flag's rollout percentage over time."""
    __tablename__ = "rollout_schedules"

    id = Column(Integer, primary_key=True, index=True)
    feature_flag_id = Column(
        Integer, ForeignKey("feature_flags.id", ondelete="CASCADE"), nullable=False
    )
    name = Column(String(255), nullable=False)
    created_at = Column(DateTime, default=func.now(), nullable=False)

    feature_flag = relationship("FeatureFlag", back_populates="rollout_schedules")
    steps = relationship(
        "RolloutStep",
        back_populates="schedule",
        cascade="all, delete-orphan",
        order_by="RolloutStep.step_index",
    )

    @property
    def feature_name(self):
        return self.feature_flag.feature_name


class RolloutStep(Base):
    __tablename__ = "rollout_steps"

    id = Column(Integer, primary_key=True, index=True)
    schedule_id = Column(
        Integer, ForeignKey("rollout_schedules.id", ondelete="CASCADE"), nullable=False
    )
    step_index = Column(Integer, nullable=False)
    target_percentage = Column(Integer, nullable=False)
    execute_at = Column(DateTime, nullable=False)
    executed_at = Column(DateTime, nullable=True)

    schedule = relationship("RolloutSchedule", back_populates="steps")

    __table_args__ = (
        UniqueConstraint("schedule_id", "step_index", name="uq_rollout_step_index"),
        Index("ix_rollout_steps_pending", "executed_at", "execute_at"),
    )


class FeatureUsageEvent(Base):
    """
    Append-only log of client-reported feature usage.

    Independent of experiments; feeds adoption and engagement aggregates.
    """
    __tablename__ = "feature_usage_events"

    id = Column(Integer, primary_key=True, index=True)
    feature_flag_id = Column(
        Integer, ForeignKey("feature_flags.id", ondelete="CASCADE"), nullable=False
    )
    user_id = Column(String(255), nullable=False)
    action = Column(SQLEnum(UsageAction), nullable=False)
    session_id = Column(String(255), nullable=True)
    component_path = Column(String(500), nullable=True)
    properties = Column(JSON, nullable=True)

    occurred_at = Column(DateTime, nullable=False)

    feature_flag = relationship("FeatureFlag", back_populates="usage_events")

    __table_args__ = (
        Index("ix_usage_flag_occurred", "feature_flag_id", "occurred_at"),
        Index("ix_usage_user_occurred", "user_id", "occurred_at"),
    )

    @property
    def feature_name(self):
        return self.feature_flag.feature_name
