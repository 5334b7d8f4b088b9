"""Pydantic schemas for the trend API"""
from datetime import datetime
from typing import Any, Optional
from pydantic import BaseModel, ConfigDict, Field


# Evidence ingestion
class EvidenceBatchRequest(BaseModel):
    """Raw mention records; each is validated on its own so one bad record never rejects the batch."""

    records: list[dict[str, Any]] = Field(..., min_length=1, max_length=5000)


class EvidenceRejection(BaseModel):
    index: int
    field: Optional[str] = None
    reason: str


class EvidenceBatchResponse(BaseModel):
    accepted: int
    duplicates: int
    rejected: int
    rejections: list[EvidenceRejection] = []


# Trend events
class TrendEventResponse(BaseModel):
    id: int
    event_key: str
    canonical_label: str
    alias_variants: Optional[list[str]] = None
    entity_type: Optional[str] = None
    trend_stage: str
    current_1h: int
    current_6h: int
    current_24h: int
    evidence_count: int
    source_count: int
    news_count: int
    social_count: int
    baseline_hourly: float
    baseline_established: bool
    velocity: float
    velocity_score: float
    acceleration: float
    z_score: float
    poisson_surprise: float
    cross_source_score: float
    spike_kind: Optional[str] = None
    anomaly_status: Optional[str] = None
    confidence_score: float
    label_quality: Optional[str] = None
    is_evergreen: bool
    evergreen_penalty: float
    trend_score: float
    is_trending: bool
    is_breaking: bool
    breaking_path: Optional[str] = None
    phrase_cluster_id: Optional[int] = None
    semantic_cluster_id: Optional[int] = None
    first_seen_at: datetime
    last_seen_at: datetime
    last_scored_at: Optional[datetime] = None
    version: int

    model_config = ConfigDict(from_attributes=True)


class TrendDetailResponse(TrendEventResponse):
    score_details: Optional[dict[str, Any]] = None
    label_source: Optional[str] = None
    peak_1h: int = 0
    tier1_count: int = 0
    tier2_count: int = 0
    tier3_count: int = 0
    stage_history: list["StageTransitionResponse"] = []


class StageTransitionResponse(BaseModel):
    from_stage: str
    to_stage: str
    actor: str
    job_name: Optional[str] = None
    rule_version: Optional[str] = None
    reason: Optional[str] = None
    transitioned_at: datetime

    model_config = ConfigDict(from_attributes=True)


class TrendListResponse(BaseModel):
    trends: list[TrendEventResponse]
    total: int


# Organization projections
class OrgTrendScoreResponse(BaseModel):
    organization_id: int
    trend_event_id: int
    trend_key: str
    relevance_score: float
    urgency_score: float
    priority_bucket: str
    matched_topics: Optional[list[str]] = None
    matched_entities: Optional[list[str]] = None
    matched_geographies: Optional[list[str]] = None
    explanation: Optional[dict[str, Any]] = None
    is_allowlisted: bool
    is_blocked: bool
    computed_at: datetime
    expires_at: datetime

    model_config = ConfigDict(from_attributes=True)


class OrgTrendScoresResponse(BaseModel):
    organization_id: int
    scores: list[OrgTrendScoreResponse]
    total: int


# Scoring utilities
class ConfidenceRequest(BaseModel):
    evidence_count: int = Field(..., ge=0)
    tier1_count: int = Field(0, ge=0)
    tier2_count: int = Field(0, ge=0)
    tier3_count: int = Field(0, ge=0)
    distinct_source_types: int = Field(0, ge=0)
    distinct_domains: int = Field(0, ge=0)
    last_seen_at: datetime
    label_quality: str = "event_phrase"
    now: Optional[datetime] = None


class ConfidenceResponse(BaseModel):
    confidence: float


class BreakingRequest(BaseModel):
    velocity: float = Field(..., ge=0)
    velocity_score: float = Field(..., ge=0)
    current_1h: int = Field(..., ge=0)
    current_24h: int = Field(..., ge=0)
    source_count: int = Field(..., ge=0)
    has_tier12: bool
    baseline_established: bool
    first_seen_at: datetime
    is_evergreen_single_word: bool = False
    organization_id: Optional[int] = Field(None, description="Evaluate under this organization's thresholds")
    now: Optional[datetime] = None


class BreakingResponse(BaseModel):
    is_breaking: bool
    path: Optional[str] = None
    reasons: list[str] = []


class CrossSourceRequest(BaseModel):
    source_type_counts: dict[str, int]
    organization_id: Optional[int] = None


class CrossSourceResponse(BaseModel):
    cross_source_score: float


class HourlyCount(BaseModel):
    bucket_start: datetime
    count: float = Field(..., ge=0)


class AnomalyRequest(BaseModel):
    hourly_counts: list[HourlyCount]
    lookback_hours: int = Field(24, ge=2, le=24 * 90)
    z_threshold: float = Field(3.0, gt=0)


class AnomalyPointResponse(BaseModel):
    bucket_start: datetime
    count: float
    baseline_mean: float
    baseline_std: float
    z_score: float


class AnomalyResponse(BaseModel):
    anomalies: list[AnomalyPointResponse]


TrendDetailResponse.model_rebuild()
