"""
Confidence and trend (rank) scoring.

Both scores are deterministic functions of their inputs. Confidence is a
bounded [0, 1] composite; the trend score is a 0-100 ranking value combining
burst strength, corroboration and activity.
"""
from __future__ import annotations

import math
from datetime import datetime

from ..config.detection_config import TIER_WEIGHTS, ConfidenceWeights, TrendScoreWeights
from ..domain.trend_scoring import ConfidenceInputs

DEFAULT_CONFIDENCE_WEIGHTS = ConfidenceWeights()
DEFAULT_TREND_SCORE_WEIGHTS = TrendScoreWeights()

TIER_BREADTH_SHARE = 0.6
SOURCE_BREADTH_TARGET = 3


def hours_between(earlier: datetime, later: datetime) -> float:
    return (later - earlier).total_seconds() / 3600.0


def recency_decay(last_seen_at: datetime, now: datetime, half_life_hours: float) -> float:
    """Exponential decay, 1.0 at ``now`` and 0.5 after one half-life."""
    if half_life_hours <= 0:
        raise ValueError("half_life_hours must be positive")
    age = max(0.0, hours_between(last_seen_at, now))
    return 0.5 ** (age / half_life_hours)


def evidence_component(evidence_count: int, saturation: int) -> float:
    if evidence_count <= 0:
        return 0.0
    return min(1.0, math.log1p(evidence_count) / math.log1p(saturation))


def diversity_component(inputs: ConfidenceInputs) -> float:
    """Tier authority mix blended with breadth of distinct source types."""
    total = inputs.tier1_count + inputs.tier2_count + inputs.tier3_count
    if total <= 0:
        return 0.0
    tier_quality = (
        inputs.tier1_count * TIER_WEIGHTS["tier1"]
        + inputs.tier2_count * TIER_WEIGHTS["tier2"]
        + inputs.tier3_count * TIER_WEIGHTS["tier3"]
    ) / total
    breadth = min(1.0, inputs.distinct_source_types / SOURCE_BREADTH_TARGET)
    return TIER_BREADTH_SHARE * tier_quality + (1 - TIER_BREADTH_SHARE) * breadth


def corroboration_component(distinct_domains: int, saturation: int) -> float:
    if distinct_domains <= 0:
        return 0.0
    return min(1.0, distinct_domains / saturation)


def label_modifier(label_quality: str, weights: ConfidenceWeights) -> float:
    if label_quality == "entity_only":
        return weights.entity_only_modifier
    if label_quality == "fallback_generated":
        return weights.fallback_modifier
    return 1.0


def compute_confidence(
    inputs: ConfidenceInputs,
    now: datetime,
    weights: ConfidenceWeights = DEFAULT_CONFIDENCE_WEIGHTS,
) -> float:
    """Confidence in [0, 1]; strictly decreasing in the age of ``last_seen_at``."""
    counts = (
        inputs.evidence_count,
        inputs.tier1_count,
        inputs.tier2_count,
        inputs.tier3_count,
        inputs.distinct_source_types,
        inputs.distinct_domains,
    )
    if any(value < 0 for value in counts):
        raise ValueError("confidence inputs must be non-negative")

    composite = (
        weights.evidence_weight * evidence_component(inputs.evidence_count, weights.evidence_saturation)
        + weights.diversity_weight * diversity_component(inputs)
        + weights.corroboration_weight
        * corroboration_component(inputs.distinct_domains, weights.corroboration_saturation)
    )
    is_tier3_only = inputs.tier3_count > 0 and inputs.tier1_count == 0 and inputs.tier2_count == 0
    if is_tier3_only:
        composite = min(composite, weights.tier3_only_ceiling)

    decay = recency_decay(inputs.last_seen_at, now, weights.recency_half_life_hours)
    score = composite * decay * label_modifier(inputs.label_quality, weights)
    return float(min(1.0, max(0.0, score)))


def rank_recency_factor(last_seen_at: datetime, now: datetime) -> float:
    """Piecewise freshness factor for ranking: 1.0 within 2h, 0.5 at 12h, floor 0.3 after 24h."""
    age = max(0.0, hours_between(last_seen_at, now))
    if age <= 2:
        return 1.0
    if age <= 12:
        return 1.0 - ((age - 2) / 10) * 0.5
    if age <= 24:
        return 0.5 - ((age - 12) / 12) * 0.2
    return 0.3


def compute_trend_score(
    *,
    z_score: float,
    baseline_established: bool,
    source_count: int,
    news_count: int,
    social_count: int,
    has_tier12: bool,
    current_1h: int,
    current_24h: int,
    last_seen_at: datetime,
    now: datetime,
    evergreen_penalty: float = 1.0,
    label_quality: str = "event_phrase",
    weights: TrendScoreWeights = DEFAULT_TREND_SCORE_WEIGHTS,
) -> tuple[float, dict]:
    """Return (score in [0, 100], component breakdown)."""
    baseline_quality = 1.0 if baseline_established else weights.unestablished_baseline_quality
    velocity_component = min(weights.velocity_max, max(0.0, z_score * weights.velocity_per_z)) * baseline_quality

    corroboration = 0.0
    if source_count >= 3:
        corroboration = weights.corroboration_three_sources
    elif source_count == 2:
        corroboration = weights.corroboration_two_sources
    if news_count > 0 and social_count > 0:
        corroboration += weights.news_social_bonus
    if has_tier12:
        corroboration += weights.tier12_bonus
    corroboration = min(weights.corroboration_max, corroboration)

    activity = min(
        weights.activity_max,
        weights.activity_1h_factor * math.log2(current_1h + 1)
        + weights.activity_24h_factor * math.log2(current_24h + 1),
    )

    if label_quality == "entity_only":
        modifier = weights.entity_only_modifier_tier12 if has_tier12 else weights.entity_only_modifier
    elif label_quality == "fallback_generated":
        modifier = weights.fallback_modifier
    else:
        modifier = 1.0

    recency = rank_recency_factor(last_seen_at, now)
    raw = velocity_component + corroboration + activity
    score = min(100.0, max(0.0, raw * recency * evergreen_penalty * modifier))
    details = {
        "velocity_component": round(velocity_component, 3),
        "corroboration_component": round(corroboration, 3),
        "activity_component": round(activity, 3),
        "recency_factor": round(recency, 3),
        "evergreen_penalty": round(evergreen_penalty, 3),
        "label_modifier": modifier,
    }
    return float(score), details
