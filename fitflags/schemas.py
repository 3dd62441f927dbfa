"""
Pydantic schemas for request validation and response serialization.

Organized by domain:
- Flag and override schemas
- Evaluation schemas
- Experiment and assignment schemas
- Conversion schemas
- Statistics schemas
- Rollout schedule schemas
"""

from pydantic import BaseModel, Field, field_validator
from typing import Optional, List, Dict, Any
from datetime import date, datetime
from enum import Enum

from fitflags.models import (
    Audience, EventSemantics, ExperimentStatus, FeatureCategory, MAX_EVENT_VALUE, UsageAction
)


FEATURE_NAME_PATTERN = r"^[a-z0-9][a-z0-9_\-.]*$"


class FlagUpsert(BaseModel):
    """Create or replace a flag's settings."""
    feature_name: str = Field(..., min_length=1, max_length=255, pattern=FEATURE_NAME_PATTERN)
    enabled: bool = False
    rollout_percentage: int = Field(0, ge=0, le=100)
    audience: Audience = Audience.ALL
    category: Optional[FeatureCategory] = None
    description: Optional[str] = None
    parent_feature: Optional[str] = Field(None, description="Name of the parent flag")


class FlagResponse(BaseModel):
    id: int
    feature_name: str
    enabled: bool
    rollout_percentage: int
    audience: Audience
    category: Optional[FeatureCategory] = None
    description: Optional[str] = None
    parent_feature: Optional[str] = None
    created_at: datetime
    updated_at: datetime

    class Config:
        from_attributes = True


class SetEnabledRequest(BaseModel):
    enabled: bool


class SetRolloutRequest(BaseModel):
    rollout_percentage: int = Field(..., ge=0, le=100)


class BulkRolloutRequest(BaseModel):
    feature_names: List[str] = Field(..., min_length=1, max_length=500)
    rollout_percentage: int = Field(..., ge=0, le=100)


class ItemFailure(BaseModel):
    feature_name: str
    error: str


class BulkOperationResult(BaseModel):
    """
    Outcome of an operation applied to several flags.

    Successful items stay applied even when others fail; callers retry the
    failed ones individually.
    """
    updated: List[str] = []
    failed: List[ItemFailure] = []

    @property
    def partial_failure(self) -> bool:
        return bool(self.failed)


class OverrideCreate(BaseModel):
    user_id: str = Field(..., min_length=1, max_length=255)
    enabled: bool
    variant: Optional[str] = Field(None, max_length=255)
    reason: Optional[str] = None


class OverrideResponse(BaseModel):
    user_id: str
    feature_name: str
    enabled: bool
    variant: Optional[str] = None
    reason: Optional[str] = None
    created_at: datetime

    class Config:
        from_attributes = True


class CatalogItem(BaseModel):
    name: str
    display_name: str
    description: str
    category: FeatureCategory
    default_audience: Audience
    default_rollout_percentage: int
    dependencies: List[str]
    parent: Optional[str] = None
    category_label: str


class EvaluationSource(str, Enum):
    OVERRIDE = "override"
    FEATURE_FLAG = "feature_flag"
    PARENT_DISABLED = "parent_disabled"
    NOT_FOUND = "not_found"
    ERROR = "error"


class EvaluationResult(BaseModel):
    feature_name: str
    enabled: bool
    variant: Optional[str] = None
    source: EvaluationSource


class BatchEvaluationRequest(BaseModel):
    user_id: str = Field(..., min_length=1, max_length=255)
    feature_names: List[str] = Field(..., min_length=1, max_length=200)
    audience_eligible: bool = True


class BatchEvaluationResponse(BaseModel):
    user_id: str
    results: Dict[str, EvaluationResult]



class VariantCreate(BaseModel):
    """Schema for declaring a variant."""
    name: str = Field(..., min_length=1, max_length=255)
    description: Optional[str] = None
    allocation: int = Field(..., ge=0, le=100, description="Traffic percentage (0-100)")
    config: Optional[Dict[str, Any]] = Field(None, description="Variant-specific configuration")


class VariantResponse(BaseModel):
    name: str
    description: Optional[str] = None
    allocation: int
    position: int
    config: Optional[Dict[str, Any]] = None

    class Config:
        from_attributes = True


class ExperimentCreate(BaseModel):
    """
    Schema for creating an experiment.

    Drafts may be saved with allocations that do not yet sum to 100;
    starting the experiment enforces the sum and the control variant.
    """
    name: str = Field(..., min_length=1, max_length=255)
    description: Optional[str] = None
    hypothesis: Optional[str] = None
    feature_name: Optional[str] = Field(None, description="Flag this experiment modulates")
    success_metric: str = Field("conversion", min_length=1, max_length=255)
    minimum_sample_size: Optional[int] = Field(None, ge=1)
    variants: List[VariantCreate] = Field(..., min_length=1)


class AllocationUpdate(BaseModel):
    allocation: Dict[str, int] = Field(..., min_length=1)

    @field_validator("allocation")
    @classmethod
    def validate_shares(cls, allocation: Dict[str, int]) -> Dict[str, int]:
        for name, share in allocation.items():
            if not 0 <= share <= 100:
                raise ValueError(f"Allocation for {name} must be within 0-100, got {share}")
        return allocation


class ExperimentResponse(BaseModel):
    id: int
    name: str
    description: Optional[str] = None
    hypothesis: Optional[str] = None
    feature_name: Optional[str] = None
    status: ExperimentStatus
    success_metric: str
    minimum_sample_size: Optional[int] = None
    winning_variant: Optional[str] = None
    variants: List[VariantResponse] = []
    created_at: datetime
    updated_at: datetime
    started_at: Optional[datetime] = None
    stopped_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class ExperimentListResponse(BaseModel):
    experiments: List[ExperimentResponse]
    total: int


class AssignmentResponse(BaseModel):
    """Response when getting/creating an assignment."""
    experiment_id: Optional[int] = None
    user_id: str
    variant: str
    assigned_at: Optional[datetime] = None
    is_new_assignment: bool = Field(
        description="True if this call created the assignment"
    )
    is_persisted: bool = Field(
        description="False when the user was served control without a stored assignment"
    )



class ConversionCreate(BaseModel):
    """Schema for recording a conversion event."""
    user_id: str = Field(..., min_length=1, max_length=255)
    event_type: str = Field(..., min_length=1, max_length=255)
    value: float = Field(
        1.0, ge=-MAX_EVENT_VALUE, le=MAX_EVENT_VALUE, allow_inf_nan=False,
        description="1 for plain conversions; minutes, amounts etc. for accumulating events"
    )
    session_id: Optional[str] = Field(None, max_length=255)
    metadata: Optional[Dict[str, Any]] = None
    occurred_at: Optional[datetime] = None


class ConversionResponse(BaseModel):
    experiment_id: int
    user_id: str
    event_type: str
    variant: Optional[str] = None
    recorded: bool = Field(description="False when a first-occurrence event was already recorded")


class EventTypeDeclare(BaseModel):
    semantics: EventSemantics
    description: Optional[str] = None


class EventTypeResponse(BaseModel):
    name: str
    semantics: EventSemantics
    description: Optional[str] = None

    class Config:
        from_attributes = True



class VariantStatistics(BaseModel):
    variant: str
    participant_count: int
    conversion_count: float
    conversion_rate: float
    confidence_interval: List[float] = Field(description="[lower, upper]")
    p_value: Optional[float] = Field(None, description="Two-proportion z-test against control")


class ExperimentStatisticsResponse(BaseModel):
    experiment_id: int
    success_metric: str
    confidence_level: float
    calculated_at: datetime
    variants: List[VariantStatistics]


class WinnerResponse(BaseModel):
    experiment_id: int
    winning_variant: Optional[str] = None



class RolloutStepCreate(BaseModel):
    target_percentage: int = Field(..., ge=0, le=100)
    execute_at: datetime


class RolloutScheduleCreate(BaseModel):
    name: str = Field(..., min_length=1, max_length=255)
    steps: List[RolloutStepCreate] = Field(..., min_length=1, max_length=50)


class RolloutStepResponse(BaseModel):
    step_index: int
    target_percentage: int
    execute_at: datetime
    executed_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class RolloutScheduleResponse(BaseModel):
    id: int
    name: str
    feature_name: str
    created_at: datetime
    steps: List[RolloutStepResponse]

    class Config:
        from_attributes = True


class RolloutExecutionReport(BaseModel):
    executed_count: int
    total_pending: int
    errors: List[str] = []



class UsageEventCreate(BaseModel):
    """Schema for reporting that a user touched a feature."""
    user_id: str = Field(..., min_length=1, max_length=255)
    action: UsageAction = UsageAction.ACCESSED
    session_id: Optional[str] = Field(None, max_length=255)
    component_path: Optional[str] = Field(None, max_length=500)
    metadata: Optional[Dict[str, Any]] = None
    occurred_at: Optional[datetime] = None


class UsageEventResponse(BaseModel):
    id: int
    feature_name: str
    user_id: str
    action: UsageAction
    session_id: Optional[str] = None
    component_path: Optional[str] = None
    properties: Optional[Dict[str, Any]] = None
    occurred_at: datetime

    class Config:
        from_attributes = True


class FeatureUsageAnalytics(BaseModel):
    feature_name: str
    total_users: int
    active_users_24h: int
    active_users_7d: int
    active_users_30d: int
    adoption_rate: float = Field(description="Share of users active on any feature in 30 days who used this one")
    engagement_score: float = Field(description="Interactions per active user over 30 days")
    calculated_at: datetime


class AdoptionTrendPoint(BaseModel):
    day: date
    active_users: int
    active_features: int
    events: int
    adoption_rate: float = Field(description="Active users that day over users active in the whole window")
