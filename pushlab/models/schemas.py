from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from pushlab.config import get_settings
from pushlab.models.experiment import ExperimentStatus, PrimaryMetric
from pushlab.services.segmentation.compiler import Operator
from pushlab.services.segmentation.fields import RuleType

# Segments


class SegmentationRuleSchema(BaseModel):
    type: RuleType
    field: str = Field(..., min_length=1, description="Logical attribute name within the rule type")
    operator: Operator
    value: Optional[Any] = Field(
        None, description="Required for every operator except exists/notExists"
    )


class CreateSegmentRequest(BaseModel):
    name: str = Field(..., min_length=1, max_length=200)
    description: str = Field(..., min_length=1)
    rules: List[SegmentationRuleSchema] = Field(..., min_length=1)
    tags: List[str] = Field(default_factory=list)
    active: bool = True
    metadata: Optional[Dict[str, Any]] = None

    @field_validator("name")
    @classmethod
    def strip_name(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("name must not be blank")
        return v

    @field_validator("tags")
    @classmethod
    def clean_tags(cls, v: List[str]) -> List[str]:
        return list(dict.fromkeys(tag.strip() for tag in v if tag.strip()))


class UpdateSegmentRequest(BaseModel):
    name: Optional[str] = Field(None, min_length=1, max_length=200)
    description: Optional[str] = Field(None, min_length=1)
    rules: Optional[List[SegmentationRuleSchema]] = Field(None, min_length=1)
    tags: Optional[List[str]] = None
    active: Optional[bool] = None
    metadata: Optional[Dict[str, Any]] = None


class SegmentResponse(BaseModel):
    id: str
    name: str
    description: str
    rules: List[Dict[str, Any]]
    tags: List[str]
    active: bool
    estimated_size: int
    last_size_update: Optional[datetime] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)


class SegmentListResponse(BaseModel):
    segments: List[SegmentResponse]
    total: int


class DirectoryUserResponse(BaseModel):
    id: str
    attributes: Dict[str, Any]
    device_handles: List[str]

    model_config = ConfigDict(from_attributes=True)


class SegmentMembersResponse(BaseModel):
    segment: str
    count: int
    users: List[DirectoryUserResponse]


class SegmentDeviceHandlesResponse(BaseModel):
    segment: str
    count: int
    device_handles: List[str]


class SegmentSizeResponse(BaseModel):
    segment: str
    estimated_size: int
    last_size_update: Optional[datetime] = None


class SegmentRefreshEntry(BaseModel):
    id: str
    name: str
    size: int


class SegmentRefreshError(BaseModel):
    segment_id: str
    segment_name: str
    error: str


class RunSegmentationResponse(BaseModel):
    processed_segments: int
    updated_segments: List[SegmentRefreshEntry]
    errors: List[SegmentRefreshError]


class UserAnalyticsRefreshResponse(BaseModel):
    updated_users: int
    errors: List[Dict[str, str]]


class RuleFieldInfo(BaseModel):
    id: str
    label: str
    type: str
    path: str
    values: Optional[List[str]] = None
    min: Optional[float] = None
    max: Optional[float] = None


class RuleTypeInfo(BaseModel):
    id: str
    label: str
    fields: List[RuleFieldInfo]


class OperatorInfo(BaseModel):
    id: str
    label: str
    applicable_types: List[str]
    requires_value: bool


class SegmentationMetadataResponse(BaseModel):
    rule_types: List[RuleTypeInfo]
    operators: List[OperatorInfo]


class SegmentInsightsResponse(BaseModel):
    segment: SegmentResponse
    user_count: int
    metrics: Dict[str, Any]


# Experiments


class VariantRequest(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)
    title: str = Field(..., min_length=1)
    content: str = Field(..., min_length=1)
    weight: int = Field(50, ge=1, le=100)
    additional_data: Dict[str, Any] = Field(default_factory=dict)


def _check_variants(variants: Optional[List[VariantRequest]]) -> None:
    if variants is None:
        return
    if len(variants) < 2:
        raise ValueError("An experiment needs at least 2 variants")
    names = [v.name for v in variants]
    if len(set(names)) != len(names):
        raise ValueError("Variant names must be unique within an experiment")
    total = sum(v.weight for v in variants)
    if total != 100:
        raise ValueError(f"Variant weights must sum to 100 (got {total})")


class CreateExperimentRequest(BaseModel):
    name: str = Field(..., min_length=1, max_length=200)
    description: str = Field(..., min_length=1)
    segment: str = Field(..., min_length=1, description="Name of the targeted segment")
    variants: List[VariantRequest]
    duration_days: int = Field(default_factory=lambda: get_settings().DEFAULT_DURATION_DAYS, ge=1)
    primary_metric: PrimaryMetric = PrimaryMetric.CLICKS
    confidence_threshold: int = Field(
        default_factory=lambda: get_settings().DEFAULT_CONFIDENCE_THRESHOLD, ge=80, le=99
    )
    metadata: Optional[Dict[str, Any]] = None

    @model_validator(mode="after")
    def validate_variants(self):
        _check_variants(self.variants)
        return self


class UpdateExperimentRequest(BaseModel):
    name: Optional[str] = Field(None, min_length=1, max_length=200)
    description: Optional[str] = Field(None, min_length=1)
    segment: Optional[str] = Field(None, min_length=1)
    variants: Optional[List[VariantRequest]] = None
    start_date: Optional[datetime] = None
    duration_days: Optional[int] = Field(None, ge=1)
    primary_metric: Optional[PrimaryMetric] = None
    confidence_threshold: Optional[int] = Field(None, ge=80, le=99)
    metadata: Optional[Dict[str, Any]] = None

    @model_validator(mode="after")
    def validate_variants(self):
        _check_variants(self.variants)
        return self


class VariantMetrics(BaseModel):
    impressions: int = 0
    opens: int = 0
    clicks: int = 0
    conversions: int = 0


class VariantResponse(BaseModel):
    name: str
    title: str
    content: str
    weight: int
    additional_data: Dict[str, Any]
    metrics: VariantMetrics


class ExperimentResponse(BaseModel):
    id: str
    name: str
    description: str
    segment: str
    status: ExperimentStatus
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None
    duration_days: int
    primary_metric: PrimaryMetric
    confidence_threshold: int
    winner: Optional[str] = None
    variants: List[VariantResponse]
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class ExperimentListResponse(BaseModel):
    experiments: List[ExperimentResponse]
    total: int


class SendExperimentRequest(BaseModel):
    additional_data: Dict[str, Any] = Field(
        default_factory=dict, description="Extra payload merged under each variant's data"
    )


class VariantDispatchResult(BaseModel):
    variant: str
    recipients: int
    notification_id: Optional[str] = None
    status_code: Optional[int] = None
    error: Optional[str] = None


class SendExperimentResponse(BaseModel):
    experiment: str
    success: bool
    message: str
    total_recipients: int
    variants: List[VariantDispatchResult]


class TrackMetricRequest(BaseModel):
    value: int = Field(1, ge=1)


class TrackMetricResponse(BaseModel):
    experiment: str
    variant: str
    metric: str
    value: int


class VariantRate(BaseModel):
    name: str
    impressions: int
    count: int
    rate: Optional[float] = None


class SignificanceResult(BaseModel):
    leader: str
    runner_up: str
    z_score: float
    p_value: float
    alpha: float
    is_significant: bool


class ExperimentResultsResponse(BaseModel):
    experiment: str
    status: ExperimentStatus
    primary_metric: PrimaryMetric
    leader: Optional[str] = None
    winner: Optional[str] = None
    variants: List[VariantRate]
    significance: Optional[SignificanceResult] = None
