"""Velocity, burst and breaking-status calculations.

Everything here is a pure function of its arguments so each measure can be
called directly (API operational queries, tests) as well as from the trend
event store.
"""
from __future__ import annotations

import math
from datetime import datetime
from typing import Iterable, Mapping, Optional, Union

import numpy as np
import pandas as pd
from scipy.stats import poisson

from ..config.detection_config import TrendDetectionConfig
from ..domain.errors import InsufficientBaseline
from ..domain.trend_scoring import (
    AnomalyPoint,
    BaselineStats,
    BreakingDecision,
    BreakingSignals,
    VelocityMetrics,
    WindowCounts,
)

VELOCITY_SCORE_CAP = 1000.0
Z_SCORE_FLOOR = -2.0
Z_SCORE_CEILING = 10.0
UNESTABLISHED_BASELINE_QUALITY = 0.6


def compute_velocity(current_rate: float, baseline_rate: float, epsilon: float) -> float:
    """Ratio of the current hourly rate to the baseline rate (floored at ``epsilon``)."""
    if current_rate < 0:
        raise ValueError("current_rate must be non-negative")
    return float(current_rate) / max(float(baseline_rate), epsilon)


def velocity_score(velocity: float) -> float:
    """Percent above baseline, clipped to [0, VELOCITY_SCORE_CAP]."""
    return float(min(VELOCITY_SCORE_CAP, max(0.0, (velocity - 1.0) * 100.0)))


def compute_z_score(current_1h: float, baseline_mean: float, baseline_std: float, epsilon: float) -> float:
    return (float(current_1h) - float(baseline_mean)) / max(float(baseline_std), epsilon)


def fallback_z_score(current_1h: float) -> float:
    """Poisson-style z-score for topics without an established baseline.

    Assumes the observed hour is roughly three times a normal hour and damps the
    result by the unestablished-baseline quality factor.
    """
    assumed_mean = max(0.5, current_1h / 3.0)
    std = math.sqrt(max(1.0, assumed_mean))
    return (current_1h - assumed_mean) / std * UNESTABLISHED_BASELINE_QUALITY


def clamp_z_score(z_score: float) -> float:
    return float(min(Z_SCORE_CEILING, max(Z_SCORE_FLOOR, z_score)))


def poisson_surprise(current_1h: int, baseline_mean: float, epsilon: float = 0.1) -> float:
    """-log P(X >= current_1h) under Poisson(baseline_mean)."""
    k = int(current_1h)
    if k <= 0:
        return 0.0
    mu = max(float(baseline_mean), epsilon)
    log_tail = float(poisson.logsf(k - 1, mu))
    if math.isinf(log_tail):
        return float(np.finfo(float).max)
    return max(0.0, -log_tail)


def compute_acceleration(velocity_now: float, velocity_previous: float) -> float:
    return float(velocity_now) - float(velocity_previous)


def cross_source_score(source_type_counts: Mapping[str, int], config: TrendDetectionConfig) -> float:
    """0-100 weighted coverage across distinct source types; 0 below ``min_source_count``."""
    reporting = sorted(source for source, count in source_type_counts.items() if count > 0)
    if len(reporting) < config.min_source_count:
        return 0.0
    total_weight = sum(config.source_weights.values()) or float(len(reporting))
    covered = sum(config.source_weight(source) for source in reporting)
    return float(min(100.0, 100.0 * covered / total_weight))


def classify_anomaly(
    current_1h: float,
    baseline: BaselineStats,
    *,
    z_threshold: float,
    min_data_points: int,
    epsilon: float = 0.1,
) -> tuple[str, Optional[float]]:
    """Return (status, z_score); status is anomalous, normal or unclassified."""
    if not baseline.is_established(min_data_points):
        return "unclassified", None
    z_score = compute_z_score(current_1h, baseline.mean_hourly, baseline.std_dev, epsilon)
    return ("anomalous" if z_score >= z_threshold else "normal"), z_score


def classify_spike(
    velocity: float,
    current_1h: int,
    baseline: BaselineStats,
    config: TrendDetectionConfig,
) -> str:
    """none, spike (clears ratio and deviation thresholds) or breakthrough (baseline ~ 0)."""
    if current_1h <= 0:
        return "none"
    if baseline.mean_hourly < config.velocity_epsilon:
        return "breakthrough"
    if velocity >= config.min_spike_ratio and velocity_score(velocity) >= config.baseline_min_deviation_pct:
        return "spike"
    return "none"


def compute_velocity_metrics(
    counts: WindowCounts,
    previous_1h: int,
    baseline: BaselineStats,
    config: TrendDetectionConfig,
) -> VelocityMetrics:
    """All velocity/burst measures for one topic at one point in time."""
    velocity = compute_velocity(counts.current_1h, baseline.mean_hourly, config.velocity_epsilon)
    previous_velocity = compute_velocity(previous_1h, baseline.mean_hourly, config.velocity_epsilon)
    status, z_score = classify_anomaly(
        counts.current_1h,
        baseline,
        z_threshold=config.anomaly_z_threshold,
        min_data_points=config.min_baseline_hours,
        epsilon=config.velocity_epsilon,
    )
    if z_score is None:
        z_score = fallback_z_score(counts.current_1h)
    return VelocityMetrics(
        velocity=velocity,
        velocity_score=velocity_score(velocity),
        previous_velocity=previous_velocity,
        acceleration=compute_acceleration(velocity, previous_velocity),
        z_score=clamp_z_score(z_score),
        poisson_surprise=poisson_surprise(counts.current_1h, baseline.mean_hourly, config.velocity_epsilon),
        spike_kind=classify_spike(velocity, counts.current_1h, baseline, config),
        anomaly_status=status,
    )


def is_trending(current_24h: int, source_count: int, velocity_score_value: float, config: TrendDetectionConfig) -> bool:
    return (
        current_24h >= config.min_mentions_to_trend
        and source_count >= config.min_source_count
        and velocity_score_value >= config.min_velocity_score
    )


def classify_breaking(signals: BreakingSignals, config: TrendDetectionConfig, *, now: datetime) -> BreakingDecision:
    """Decide breaking status; every failed gate is listed in ``reasons``.

    A topic that does not pass ``is_trending`` is never breaking.
    """
    reasons: list[str] = []
    if signals.source_count < config.min_source_count:
        reasons.append(f"source_count {signals.source_count} < min_source_count {config.min_source_count}")
    if not signals.has_tier12:
        reasons.append("no tier1/tier2 corroboration")
    if (
        signals.is_evergreen_single_word
        and config.suppress_evergreen
        and signals.current_24h < config.evergreen_volume_override
    ):
        reasons.append("evergreen label below evergreen_volume_override")
    age_hours = (now - signals.first_seen_at).total_seconds() / 3600.0
    if age_hours > config.trend_window_hours:
        reasons.append(f"first seen {age_hours:.1f}h ago (> {config.trend_window_hours}h)")
    if signals.current_24h < config.min_mentions_breakthrough:
        reasons.append(
            f"current_24h {signals.current_24h} < min_mentions_breakthrough {config.min_mentions_breakthrough}"
        )
    if not is_trending(signals.current_24h, signals.source_count, signals.velocity_score, config):
        reasons.append("not trending")
    if reasons:
        return BreakingDecision(is_breaking=False, path=None, reasons=tuple(reasons))

    if signals.velocity >= config.min_spike_ratio and signals.velocity_score >= config.min_velocity_score:
        if signals.baseline_established:
            return BreakingDecision(is_breaking=True, path="spike")
    if not signals.baseline_established and signals.current_1h >= config.min_mentions_breakthrough:
        return BreakingDecision(is_breaking=True, path="breakthrough")
    if signals.velocity_score >= VELOCITY_SCORE_CAP:
        return BreakingDecision(is_breaking=True, path="breakthrough")
    return BreakingDecision(
        is_breaking=False,
        path=None,
        reasons=(
            f"velocity {signals.velocity:.2f} / score {signals.velocity_score:.0f} below "
            f"min_spike_ratio {config.min_spike_ratio} / min_velocity_score {config.min_velocity_score}",
        ),
    )


HourlyCounts = Union[pd.Series, Mapping[datetime, float], Iterable[tuple[datetime, float]]]


def detect_anomalies(hourly_counts: HourlyCounts, *, lookback_hours: int, z_threshold: float) -> list[AnomalyPoint]:
    """Flag hours whose count sits ``z_threshold`` std devs above the preceding lookback window."""
    if lookback_hours < 2:
        raise ValueError("lookback_hours must be >= 2")
    if isinstance(hourly_counts, pd.Series):
        series = hourly_counts.astype(float)
    else:
        items = hourly_counts.items() if isinstance(hourly_counts, Mapping) else hourly_counts
        series = pd.Series({pd.Timestamp(ts): float(count) for ts, count in items}, dtype=float)
    if series.empty:
        return []
    if (series < 0).any() or series.isna().any():
        raise ValueError("hourly counts must be non-negative numbers")
    series = series.sort_index().resample("h").sum()

    prior = series.shift(1).rolling(lookback_hours, min_periods=max(2, lookback_hours // 2))
    means = prior.mean()
    stds = prior.std(ddof=1)
    anomalies: list[AnomalyPoint] = []
    for ts, count in series.items():
        mean, std = means.loc[ts], stds.loc[ts]
        if pd.isna(mean) or pd.isna(std) or std <= 0:
            continue
        z_score = (count - mean) / std
        if z_score >= z_threshold:
            anomalies.append(
                AnomalyPoint(
                    bucket_start=ts.to_pydatetime(),
                    count=float(count),
                    baseline_mean=float(mean),
                    baseline_std=float(std),
                    z_score=float(z_score),
                )
            )
    return anomalies


def ensure_established(topic_key: str, baseline: BaselineStats, min_data_points: int) -> BaselineStats:
    """Return ``baseline`` or raise InsufficientBaseline when it cannot classify anomalies yet."""
    if not baseline.is_established(min_data_points):
        raise InsufficientBaseline(topic_key, baseline.data_points, min_data_points)
    return baseline
