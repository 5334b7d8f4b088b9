"""Trend stage state-machine transitions + audit trail helpers."""
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from sqlalchemy.orm import Session

from ..config.detection_config import StageThresholds, TrendDetectionConfig
from ..models.trend import TREND_STAGES, TrendEvent, TrendStageTransition
from .evidence_normalizer import utcnow

ACTIVE_STAGES = ("new", "rising", "trending", "peaked", "declining")
ALLOWED_TRANSITIONS: dict[str, set[str]] = {
    "new": {"rising", "stale"},
    "rising": {"trending", "stale"},
    "trending": {"peaked", "stale"},
    "peaked": {"declining", "stale"},
    "declining": {"rising", "stale"},
    "stale": {"rising", "archived"},
    "archived": set(),
}
DEFAULT_STAGE_THRESHOLDS = StageThresholds()


@dataclass(frozen=True)
class StageDecision:
    to_stage: str
    reason: str


def apply_stage_transition(
    *,
    db: Session,
    event: TrendEvent,
    to_stage: str,
    actor: str = "system",
    job_name: str | None = None,
    rule_version: str | None = None,
    reason: str | None = None,
    metadata: dict | None = None,
    transitioned_at: datetime | None = None,
) -> TrendStageTransition:
    """Validate and persist a stage transition with audit metadata."""
    if to_stage not in TREND_STAGES:
        raise ValueError(f"Unsupported trend stage: {to_stage}")

    from_stage = (event.trend_stage or "new").strip()
    if from_stage not in TREND_STAGES:
        raise ValueError(f"Unsupported current trend stage: {from_stage}")
    if to_stage == from_stage:
        raise ValueError(f"Stage transition must change stage: {from_stage} -> {to_stage}")
    if to_stage not in ALLOWED_TRANSITIONS[from_stage]:
        raise ValueError(f"Invalid stage transition: {from_stage} -> {to_stage}")

    now = transitioned_at or utcnow()
    event.trend_stage = to_stage
    event.stage_updated_at = now
    if to_stage == "archived":
        event.archived_at = now
        event.is_breaking = False
        event.is_trending = False

    transition = TrendStageTransition(
        trend_event_id=event.id,
        from_stage=from_stage,
        to_stage=to_stage,
        actor=actor or "system",
        job_name=job_name,
        rule_version=rule_version,
        reason=reason,
        transition_metadata=metadata,
        transitioned_at=now,
    )
    db.add(transition)
    return transition


def archive_event(
    db: Session,
    event: TrendEvent,
    *,
    reason: str,
    job_name: str,
    metadata: dict | None = None,
    now: datetime | None = None,
) -> Optional[TrendStageTransition]:
    """Archive ``event`` from any stage, stepping through ``stale`` when the edge requires it."""
    if event.trend_stage == "archived":
        return None
    rule_version = DEFAULT_STAGE_THRESHOLDS.rule_version
    if "archived" not in ALLOWED_TRANSITIONS[event.trend_stage]:
        apply_stage_transition(
            db=db, event=event, to_stage="stale", job_name=job_name,
            rule_version=rule_version, reason=reason, metadata=metadata, transitioned_at=now,
        )
    return apply_stage_transition(
        db=db, event=event, to_stage="archived", job_name=job_name,
        rule_version=rule_version, reason=reason, metadata=metadata, transitioned_at=now,
    )


def _hours(earlier: Optional[datetime], later: datetime) -> float:
    if earlier is None:
        return 0.0
    return (later - earlier).total_seconds() / 3600.0


def evaluate_next_stage(
    event: TrendEvent,
    *,
    now: datetime,
    config: TrendDetectionConfig,
    thresholds: StageThresholds = DEFAULT_STAGE_THRESHOLDS,
    fresh_evidence: bool = False,
) -> Optional[StageDecision]:
    """Next stage for ``event`` or None; at most one step per evaluation."""
    stage = event.trend_stage or "new"
    idle_hours = _hours(event.last_seen_at, now)
    velocity = event.velocity or 0.0
    acceleration = event.acceleration or 0.0

    if stage == "archived":
        return None
    if stage == "stale":
        if fresh_evidence and velocity >= thresholds.rising_velocity_ratio:
            return StageDecision("rising", "re-ignited after going stale")
        if idle_hours >= thresholds.archive_after_hours:
            return StageDecision("archived", f"no evidence for {idle_hours:.0f}h")
        return None
    if idle_hours >= thresholds.stale_after_hours:
        return StageDecision("stale", f"no evidence for {idle_hours:.0f}h")

    if stage == "new":
        age_hours = _hours(event.first_seen_at, now)
        if velocity >= thresholds.rising_velocity_ratio and age_hours <= config.trend_window_hours:
            return StageDecision("rising", f"velocity {velocity:.2f} >= {thresholds.rising_velocity_ratio}")
    elif stage == "rising":
        if event.is_trending:
            return StageDecision("trending", "trending thresholds met")
    elif stage == "trending":
        if acceleration < 0 and velocity >= thresholds.rising_velocity_ratio:
            return StageDecision("peaked", f"acceleration {acceleration:.2f} turned negative at velocity {velocity:.2f}")
    elif stage == "peaked":
        peak = event.peak_1h or 0
        if peak > 0 and (event.current_1h or 0) < thresholds.peak_decline_fraction * peak:
            return StageDecision("declining", f"current_1h {event.current_1h} below {thresholds.peak_decline_fraction:.0%} of peak {peak}")
    elif stage == "declining":
        if fresh_evidence and acceleration > 0 and velocity >= thresholds.rising_velocity_ratio:
            return StageDecision("rising", "re-ignited while declining")
    return None
