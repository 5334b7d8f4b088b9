"""
Trend detection configuration.

Thresholds are resolved per call (global defaults merged with an optional
per-organization override row) and passed explicitly into scoring functions.
Weight tables for the composite scores live beside them so they can be tuned
without touching the formulas.
"""
from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field, fields, replace
from typing import Any, Mapping, Optional

logger = logging.getLogger(__name__)

DEFAULT_SOURCE_WEIGHTS: dict[str, float] = {
    "google_news": 15.0,
    "rss": 12.0,
    "reddit": 10.0,
    "bluesky": 8.0,
}

# Tier authority multipliers for evidence contribution weight
TIER_WEIGHTS: dict[str, float] = {
    "tier1": 1.0,  # Official/government + high-trust
    "tier2": 0.7,  # National news + statehouse network
    "tier3": 0.4,  # Issue specialists + advocacy
    "unclassified": 0.5,
}

# Source type trust multipliers for evidence contribution weight
SOURCE_TYPE_WEIGHTS: dict[str, float] = {
    "rss": 1.0,
    "google_news": 0.8,
    "bluesky": 0.3,
}

# Source authority used when choosing a cluster representative
SOURCE_AUTHORITY: dict[str, float] = {
    "rss": 3.0,
    "google_news": 2.5,
    "news": 2.5,
    "press": 2.0,
    "legislative": 3.0,
    "bluesky": 1.0,
}
DEFAULT_SOURCE_AUTHORITY = 1.5

_BOOL_STRINGS = {"true": True, "1": True, "yes": True, "false": False, "0": False, "no": False}


def _coerce_number(name: str, value: Any, kind: type) -> Any:
    """Parse an option value as ``kind`` (int or float); ValueError names the option."""
    if isinstance(value, bool):
        raise ValueError(f"detection option {name!r} must be {kind.__name__}, got bool")
    if isinstance(value, str):
        text = value.strip()
        try:
            value = int(text) if kind is int else float(text)
        except ValueError:
            raise ValueError(f"detection option {name!r} must be {kind.__name__}, got {value!r}") from None
    if not isinstance(value, (int, float)):
        raise ValueError(f"detection option {name!r} must be {kind.__name__}, got {type(value).__name__}")
    if not math.isfinite(value):
        raise ValueError(f"detection option {name!r} must be finite")
    if kind is int:
        if isinstance(value, float) and not value.is_integer():
            raise ValueError(f"detection option {name!r} must be a whole number, got {value!r}")
        return int(value)
    return float(value)


def _coerce_option(name: str, value: Any, current: Any) -> Any:
    """Coerce an override to the type of the option's current value."""
    if isinstance(current, bool):
        if isinstance(value, bool):
            return value
        if isinstance(value, str) and value.strip().lower() in _BOOL_STRINGS:
            return _BOOL_STRINGS[value.strip().lower()]
        raise ValueError(f"detection option {name!r} must be a boolean, got {value!r}")
    if isinstance(current, dict):
        if not isinstance(value, Mapping):
            raise ValueError(f"detection option {name!r} must be a mapping, got {type(value).__name__}")
        return {str(k).lower(): _coerce_number(f"{name}.{k}", v, float) for k, v in value.items()}
    return _coerce_number(name, value, type(current))


@dataclass(frozen=True)
class TrendDetectionConfig:
    """Recognized detection options with their global defaults."""

    min_mentions_to_trend: int = 5
    min_mentions_breakthrough: int = 10
    min_spike_ratio: float = 2.0
    min_velocity_score: float = 50.0
    min_source_count: int = 2
    baseline_window_days: int = 30
    baseline_min_deviation_pct: float = 50.0
    trend_window_hours: int = 24
    spike_window_hours: int = 6
    source_weights: dict[str, float] = field(default_factory=lambda: dict(DEFAULT_SOURCE_WEIGHTS))
    suppress_evergreen: bool = True
    evergreen_volume_override: int = 20

    # Not part of the stored option surface, but tunable in code
    velocity_epsilon: float = 0.1
    min_baseline_hours: int = 24
    anomaly_z_threshold: float = 3.0

    def __post_init__(self):
        if self.min_source_count < 1:
            raise ValueError("min_source_count must be >= 1")
        if self.baseline_window_days < 1:
            raise ValueError("baseline_window_days must be >= 1")
        if self.min_spike_ratio <= 0:
            raise ValueError("min_spike_ratio must be positive")
        if self.velocity_epsilon <= 0:
            raise ValueError("velocity_epsilon must be positive")
        if self.trend_window_hours < 1 or self.spike_window_hours < 1:
            raise ValueError("window hours must be >= 1")
        if any(weight < 0 for weight in self.source_weights.values()):
            raise ValueError("source_weights must be non-negative")

    @property
    def baseline_window_hours(self) -> int:
        return self.baseline_window_days * 24

    def source_weight(self, source_type: str) -> float:
        """Per-source multiplier; unknown source types get the smallest configured weight."""
        normalized = (source_type or "").strip().lower()
        if normalized in self.source_weights:
            return float(self.source_weights[normalized])
        if not self.source_weights:
            return 1.0
        return float(min(self.source_weights.values()))

    def with_overrides(self, overrides: Optional[Mapping[str, Any]]) -> "TrendDetectionConfig":
        """Return a copy with recognized keys from ``overrides`` applied.

        Values are coerced to each option's type (numeric strings are parsed);
        anything that cannot be coerced raises ValueError.
        """
        if not overrides:
            return self
        known = {f.name for f in fields(self)}
        changes: dict[str, Any] = {}
        for key, value in overrides.items():
            if key not in known:
                logger.warning("Ignoring unknown detection option %r", key)
                continue
            if value is None:
                continue
            coerced = _coerce_option(key, value, getattr(self, key))
            if key == "source_weights":
                changes[key] = {**self.source_weights, **coerced}
            else:
                changes[key] = coerced
        return replace(self, **changes)

    def to_dict(self) -> dict[str, Any]:
        return {f.name: getattr(self, f.name) for f in fields(self)}


@dataclass(frozen=True)
class ConfidenceWeights:
    """Weights for the [0,1] confidence composite (evidence/diversity/corroboration sum to 1.0)."""

    evidence_weight: float = 0.35
    diversity_weight: float = 0.30
    corroboration_weight: float = 0.35
    evidence_saturation: int = 50  # Evidence count at which the log term reaches 1.0
    corroboration_saturation: int = 5  # Independent domains at which corroboration reaches 1.0
    tier3_only_ceiling: float = 0.5
    recency_half_life_hours: float = 12.0
    entity_only_modifier: float = 0.6
    fallback_modifier: float = 0.85


@dataclass(frozen=True)
class TrendScoreWeights:
    """Weights for the 0-100 trend (rank) score."""

    velocity_max: float = 50.0
    velocity_per_z: float = 5.0
    corroboration_max: float = 30.0
    corroboration_three_sources: float = 25.0
    corroboration_two_sources: float = 15.0
    news_social_bonus: float = 10.0
    tier12_bonus: float = 5.0
    activity_max: float = 20.0
    activity_1h_factor: float = 4.0
    activity_24h_factor: float = 2.0
    unestablished_baseline_quality: float = 0.6
    entity_only_modifier_tier12: float = 0.6
    entity_only_modifier: float = 0.4
    fallback_modifier: float = 0.85
    trending_min_score: float = 20.0


@dataclass(frozen=True)
class StageThresholds:
    """Thresholds driving trend stage transitions."""

    rising_velocity_ratio: float = 1.5
    peak_decline_fraction: float = 0.5
    stale_after_hours: float = 48.0
    archive_after_hours: float = 168.0
    rule_version: str = "stage-v1"


@dataclass(frozen=True)
class RelevanceWeights:
    """Point weights for org relevance/urgency scoring."""

    topic_match_points: float = 50.0
    topic_match_min_strength: float = 0.5
    profile_topic_points: float = 12.0
    profile_topic_cap: float = 35.0
    watchlist_points: float = 20.0
    watchlist_cap: float = 40.0
    allowlist_bonus: float = 15.0
    allowlist_min_relevance: float = 70.0
    stakeholder_points: float = 10.0
    ally_points: float = 10.0
    opponent_points: float = 12.0
    geography_points: float = 8.0
    geography_cap: float = 16.0
    velocity_bonus_cap: float = 15.0
    velocity_bonus_divisor: float = 10.0
    urgency_velocity_cap: float = 60.0
    urgency_velocity_divisor: float = 5.0
    urgency_breaking_bonus: float = 15.0
    stage_urgency_bonus: dict[str, float] = field(
        default_factory=lambda: {"new": 5.0, "rising": 20.0, "trending": 25.0, "peaked": 10.0}
    )
    relevance_share: float = 0.6
    urgency_share: float = 0.4
    critical_threshold: float = 80.0
    high_threshold: float = 65.0
    medium_threshold: float = 35.0


DEFAULT_DETECTION_CONFIG = TrendDetectionConfig()


def load_detection_config(db, organization_id: Optional[int] = None) -> TrendDetectionConfig:
    """Resolve the detection config: defaults < global row < organization row."""
    from ..models.organization import TrendDetectionSettings

    config = DEFAULT_DETECTION_CONFIG
    rows = (
        db.query(TrendDetectionSettings)
        .filter(
            (TrendDetectionSettings.organization_id.is_(None))
            | (TrendDetectionSettings.organization_id == organization_id)
        )
        .all()
    )
    global_row = next((row for row in rows if row.organization_id is None), None)
    org_row = next(
        (row for row in rows if organization_id is not None and row.organization_id == organization_id),
        None,
    )
    if global_row is not None:
        config = config.with_overrides(global_row.options or {})
    if org_row is not None:
        config = config.with_overrides(org_row.options or {})
    return config
