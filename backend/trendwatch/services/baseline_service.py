"""Rolling per-topic mention-rate baselines.

Hourly bucket counts live in ``topic_hourly_counts``; ``topic_baselines``
keeps Welford running state over the trailing window so an update never
re-scans the full history. Buckets that fall out of the window are removed
from the running statistics as the window advances.
"""
from __future__ import annotations

import logging
import math
from datetime import datetime, timedelta
from typing import Optional

import pandas as pd
from sqlalchemy import func
from sqlalchemy.orm import Session

from ..config.detection_config import TrendDetectionConfig
from ..domain.trend_scoring import BaselineStats
from ..models.trend import TopicBaseline, TopicHourlyCount
from .evidence_normalizer import utcnow

logger = logging.getLogger(__name__)

HOUR = timedelta(hours=1)
STABLE_MAX_RELATIVE_STD = 0.4
STABLE_MIN_AVG_HOURLY = 0.5


def floor_hour(value: datetime) -> datetime:
    return value.replace(minute=0, second=0, microsecond=0)


def welford_add(n: int, mean: float, m2: float, value: float) -> tuple[int, float, float]:
    n += 1
    delta = value - mean
    mean += delta / n
    m2 += delta * (value - mean)
    return n, mean, m2


def welford_remove(n: int, mean: float, m2: float, value: float) -> tuple[int, float, float]:
    if n <= 1:
        return 0, 0.0, 0.0
    n_after = n - 1
    mean_after = (n * mean - value) / n_after
    m2 -= (value - mean) * (value - mean_after)
    return n_after, mean_after, max(0.0, m2)


def sample_std(n: int, m2: float) -> float:
    if n < 2:
        return 0.0
    return math.sqrt(max(0.0, m2) / (n - 1))


class BaselineEstimator:
    """Maintains TopicBaseline rows; callers own the transaction."""

    def __init__(self, db: Session, config: TrendDetectionConfig):
        self.db = db
        self.config = config
        self.window_hours = config.baseline_window_hours

    def get_baseline(self, topic_key: str) -> Optional[TopicBaseline]:
        return self.db.query(TopicBaseline).filter(TopicBaseline.topic_key == topic_key).first()

    def snapshot(self, topic_key: str, *, exclude_hour: Optional[datetime] = None) -> BaselineStats:
        """Current statistics; ``exclude_hour`` removes that bucket so a burst is not its own reference."""
        baseline = self.get_baseline(topic_key)
        if baseline is None or baseline.data_points == 0:
            return BaselineStats()
        n, mean, m2 = baseline.data_points, baseline.running_mean, baseline.running_m2
        if exclude_hour is not None and baseline.window_start_hour is not None:
            hour = floor_hour(exclude_hour)
            if baseline.window_start_hour <= hour <= baseline.last_bucket_hour:
                n, mean, m2 = welford_remove(n, mean, m2, float(self._bucket_count(topic_key, hour)))
        mean = max(0.0, mean)
        return BaselineStats(
            data_points=n,
            mean_hourly=mean,
            std_dev=sample_std(n, m2),
            avg_daily=mean * 24,
            peak_24h=baseline.peak_mentions_24h or 0,
            avg_hourly_7d=baseline.avg_hourly_7d or 0.0,
        )

    def update_baseline(self, topic_key: str, new_count: int, window_timestamp: datetime) -> BaselineStats:
        """Add ``new_count`` mentions to the hour bucket containing ``window_timestamp``."""
        if new_count < 0:
            raise ValueError("new_count must be non-negative")
        hour = floor_hour(window_timestamp)
        baseline = self.get_baseline(topic_key)
        if baseline is None:
            baseline = TopicBaseline(
                topic_key=topic_key,
                window_hours=self.window_hours,
                data_points=0,
                running_mean=0.0,
                running_m2=0.0,
                avg_hourly_mentions=0.0,
                avg_daily_mentions=0.0,
                std_dev=0.0,
                relative_std_dev=0.0,
                peak_mentions_24h=0,
                avg_hourly_7d=0.0,
                is_stable=False,
            )
            self.db.add(baseline)
        elif baseline.window_hours != self.window_hours:
            logger.info(
                "Baseline window for %s changed %sh -> %sh; rebuilding",
                topic_key, baseline.window_hours, self.window_hours,
            )
            self.rebuild_baseline(topic_key, now=max(hour, baseline.last_bucket_hour or hour))

        if baseline.last_bucket_hour is None:
            baseline.window_start_hour = hour
            baseline.last_bucket_hour = hour
            baseline.data_points, baseline.running_mean, baseline.running_m2 = welford_add(0, 0.0, 0.0, 0.0)
        elif hour > baseline.last_bucket_hour:
            self._advance_window(baseline, hour)
        elif hour < baseline.window_start_hour:
            logger.debug("Ignoring %s bucket %s older than baseline window", topic_key, hour)
            return self.snapshot(topic_key)

        if new_count:
            bucket = (
                self.db.query(TopicHourlyCount)
                .filter(TopicHourlyCount.topic_key == topic_key, TopicHourlyCount.bucket_start == hour)
                .first()
            )
            if bucket is None:
                bucket = TopicHourlyCount(topic_key=topic_key, bucket_start=hour, mention_count=0)
                self.db.add(bucket)
            old_value = bucket.mention_count or 0
            bucket.mention_count = old_value + new_count
            n, mean, m2 = welford_remove(
                baseline.data_points, baseline.running_mean, baseline.running_m2, float(old_value)
            )
            baseline.data_points, baseline.running_mean, baseline.running_m2 = welford_add(
                n, mean, m2, float(bucket.mention_count)
            )
            self.db.flush()
            trailing = self._sum_between(topic_key, hour - 23 * HOUR, hour)
            baseline.peak_mentions_24h = max(baseline.peak_mentions_24h or 0, trailing)

        self._refresh_derived(baseline)
        self.db.flush()
        return self.snapshot(topic_key)

    def _advance_window(self, baseline: TopicBaseline, hour: datetime) -> None:
        gap = int((hour - baseline.last_bucket_hour) / HOUR)
        new_start = hour - (self.window_hours - 1) * HOUR
        if gap >= self.window_hours:
            # Every stored bucket aged out; the window is all zeros
            baseline.data_points = self.window_hours
            baseline.running_mean = 0.0
            baseline.running_m2 = 0.0
            baseline.window_start_hour = new_start
            baseline.last_bucket_hour = hour
            baseline.peak_mentions_24h = 0
            return

        n, mean, m2 = baseline.data_points, baseline.running_mean, baseline.running_m2
        for _ in range(gap):
            n, mean, m2 = welford_add(n, mean, m2, 0.0)

        aged_out = False
        if new_start > baseline.window_start_hour:
            aged_counts = {
                row.bucket_start: row.mention_count
                for row in self.db.query(TopicHourlyCount).filter(
                    TopicHourlyCount.topic_key == baseline.topic_key,
                    TopicHourlyCount.bucket_start >= baseline.window_start_hour,
                    TopicHourlyCount.bucket_start < new_start,
                )
            }
            cursor = baseline.window_start_hour
            while cursor < new_start:
                n, mean, m2 = welford_remove(n, mean, m2, float(aged_counts.get(cursor, 0)))
                cursor += HOUR
            baseline.window_start_hour = new_start
            aged_out = bool(aged_counts)

        baseline.data_points, baseline.running_mean, baseline.running_m2 = n, mean, m2
        baseline.last_bucket_hour = hour
        if aged_out:
            baseline.peak_mentions_24h = self._window_peak(baseline.topic_key, new_start, hour)

    def _refresh_derived(self, baseline: TopicBaseline) -> None:
        mean = max(0.0, baseline.running_mean or 0.0)
        std = sample_std(baseline.data_points, baseline.running_m2 or 0.0)
        baseline.avg_hourly_mentions = mean
        baseline.avg_daily_mentions = mean * 24
        baseline.std_dev = std
        baseline.relative_std_dev = std / mean if mean > 0 else 0.0
        baseline.is_stable = (
            baseline.relative_std_dev < STABLE_MAX_RELATIVE_STD and mean > STABLE_MIN_AVG_HOURLY
        )
        if baseline.last_bucket_hour is not None:
            start_7d = max(baseline.window_start_hour, baseline.last_bucket_hour - 167 * HOUR)
            hours = int((baseline.last_bucket_hour - start_7d) / HOUR) + 1
            total = self._sum_between(baseline.topic_key, start_7d, baseline.last_bucket_hour)
            baseline.avg_hourly_7d = total / hours if hours else 0.0
        baseline.last_calculated_at = utcnow()

    def _bucket_count(self, topic_key: str, hour: datetime) -> int:
        value = (
            self.db.query(TopicHourlyCount.mention_count)
            .filter(TopicHourlyCount.topic_key == topic_key, TopicHourlyCount.bucket_start == hour)
            .scalar()
        )
        return int(value or 0)

    def _sum_between(self, topic_key: str, start: datetime, end: datetime) -> int:
        value = (
            self.db.query(func.coalesce(func.sum(TopicHourlyCount.mention_count), 0))
            .filter(
                TopicHourlyCount.topic_key == topic_key,
                TopicHourlyCount.bucket_start >= start,
                TopicHourlyCount.bucket_start <= end,
            )
            .scalar()
        )
        return int(value or 0)

    def hourly_series(self, topic_key: str, start: datetime, end: datetime) -> pd.Series:
        """Zero-filled hourly counts for ``[start, end]`` (both floored to the hour)."""
        start, end = floor_hour(start), floor_hour(end)
        rows = (
            self.db.query(TopicHourlyCount.bucket_start, TopicHourlyCount.mention_count)
            .filter(
                TopicHourlyCount.topic_key == topic_key,
                TopicHourlyCount.bucket_start >= start,
                TopicHourlyCount.bucket_start <= end,
            )
            .all()
        )
        index = pd.date_range(start=start, end=end, freq="h")
        series = pd.Series(0.0, index=index)
        for bucket_start, count in rows:
            series.loc[pd.Timestamp(bucket_start)] = float(count)
        return series

    def _window_peak(self, topic_key: str, start: datetime, end: datetime) -> int:
        series = self.hourly_series(topic_key, start, end)
        if series.empty:
            return 0
        return int(series.rolling(24, min_periods=1).sum().max())

    def rebuild_baseline(self, topic_key: str, *, now: Optional[datetime] = None) -> BaselineStats:
        """Recompute a baseline from its hourly buckets and prune buckets outside the window."""
        end = floor_hour(now or utcnow())
        window_start = end - (self.window_hours - 1) * HOUR
        first_bucket = (
            self.db.query(func.min(TopicHourlyCount.bucket_start))
            .filter(TopicHourlyCount.topic_key == topic_key, TopicHourlyCount.bucket_start >= window_start)
            .scalar()
        )
        baseline = self.get_baseline(topic_key)
        if baseline is None:
            baseline = TopicBaseline(topic_key=topic_key, window_hours=self.window_hours)
            self.db.add(baseline)
        if baseline.window_start_hour is not None and baseline.window_start_hour > window_start:
            first_bucket = min(first_bucket or baseline.window_start_hour, baseline.window_start_hour)

        self.db.query(TopicHourlyCount).filter(
            TopicHourlyCount.topic_key == topic_key,
            TopicHourlyCount.bucket_start < window_start,
        ).delete(synchronize_session=False)

        baseline.window_hours = self.window_hours
        if first_bucket is None:
            baseline.data_points = 0
            baseline.running_mean = 0.0
            baseline.running_m2 = 0.0
            baseline.peak_mentions_24h = 0
            baseline.window_start_hour = None
            baseline.last_bucket_hour = None
            self._refresh_derived(baseline)
            return BaselineStats()

        start = max(floor_hour(first_bucket), window_start)
        series = self.hourly_series(topic_key, start, end)
        n = int(series.size)
        mean = float(series.mean()) if n else 0.0
        variance = float(series.var(ddof=1)) if n > 1 else 0.0
        baseline.data_points = n
        baseline.running_mean = mean
        baseline.running_m2 = variance * (n - 1) if n > 1 else 0.0
        baseline.window_start_hour = start
        baseline.last_bucket_hour = end
        baseline.peak_mentions_24h = int(series.rolling(24, min_periods=1).sum().max()) if n else 0
        self._refresh_derived(baseline)
        self.db.flush()
        return self.snapshot(topic_key)
