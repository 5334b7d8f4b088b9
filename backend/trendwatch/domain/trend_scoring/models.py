"""Value objects passed between trend scoring stages."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional


@dataclass(frozen=True)
class NewEvidence:
    """Validated, normalized evidence ready to persist (one per topic label)."""

    content_hash: str
    item_hash: str
    source_type: str
    source_category: str
    source_tier: str
    topic_key: str
    raw_label: str
    published_at: datetime
    observed_at: datetime
    contribution_weight: float
    source_name: Optional[str] = None
    canonical_url: Optional[str] = None
    domain: Optional[str] = None
    headline: Optional[str] = None
    entity_type: Optional[str] = None
    label_quality_hint: Optional[str] = None
    sentiment_score: Optional[float] = None

    @property
    def dedupe_key(self) -> tuple[str, str]:
        return self.content_hash, self.source_type


@dataclass(frozen=True)
class BaselineStats:
    """Snapshot of a topic baseline; zero everywhere when there is no history."""

    data_points: int = 0
    mean_hourly: float = 0.0
    std_dev: float = 0.0
    avg_daily: float = 0.0
    peak_24h: int = 0
    avg_hourly_7d: float = 0.0

    def is_established(self, min_data_points: int) -> bool:
        return self.data_points >= min_data_points and self.std_dev > 0


@dataclass(frozen=True)
class WindowCounts:
    current_1h: int = 0
    current_6h: int = 0
    current_24h: int = 0

    def __post_init__(self):
        if min(self.current_1h, self.current_6h, self.current_24h) < 0:
            raise ValueError("window counts must be non-negative")


@dataclass(frozen=True)
class VelocityMetrics:
    velocity: float
    velocity_score: float
    previous_velocity: float
    acceleration: float
    z_score: float
    poisson_surprise: float
    spike_kind: str  # none, spike, breakthrough
    anomaly_status: str  # anomalous, normal, unclassified


@dataclass(frozen=True)
class SourceMix:
    """Distribution of deduped evidence across source types, tiers and domains."""

    source_type_counts: dict[str, int] = field(default_factory=dict)
    tier1_count: int = 0
    tier2_count: int = 0
    tier3_count: int = 0
    news_count: int = 0
    social_count: int = 0
    domains: frozenset[str] = frozenset()

    @property
    def source_count(self) -> int:
        return sum(1 for count in self.source_type_counts.values() if count > 0)

    @property
    def domain_count(self) -> int:
        return len(self.domains)

    @property
    def has_tier12(self) -> bool:
        return self.tier1_count > 0 or self.tier2_count > 0

    @property
    def is_tier3_only(self) -> bool:
        return not self.has_tier12 and self.tier3_count > 0


@dataclass(frozen=True)
class ConfidenceInputs:
    evidence_count: int
    tier1_count: int
    tier2_count: int
    tier3_count: int
    distinct_source_types: int
    distinct_domains: int
    last_seen_at: datetime
    label_quality: str = "event_phrase"


@dataclass(frozen=True)
class LabelAssessment:
    label: str
    label_quality: str  # event_phrase, entity_only, fallback_generated
    is_event_phrase: bool
    is_single_word: bool
    downgraded: bool = False
    label_source: str = "entity_only"


@dataclass(frozen=True)
class BreakingSignals:
    velocity: float
    velocity_score: float
    current_1h: int
    current_24h: int
    source_count: int
    has_tier12: bool
    baseline_established: bool
    first_seen_at: datetime
    is_evergreen_single_word: bool = False


@dataclass(frozen=True)
class BreakingDecision:
    is_breaking: bool
    path: Optional[str] = None
    reasons: tuple[str, ...] = ()


@dataclass(frozen=True)
class AnomalyPoint:
    bucket_start: datetime
    count: float
    baseline_mean: float
    baseline_std: float
    z_score: float
