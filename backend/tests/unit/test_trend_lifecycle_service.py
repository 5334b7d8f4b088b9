"""Tests for the trend stage state machine and its audit trail."""

from __future__ import annotations

from datetime import timedelta

import pytest

from trendwatch.config.detection_config import TrendDetectionConfig
from trendwatch.models.trend import TrendStageTransition
from trendwatch.services.trend_lifecycle_service import (
    ALLOWED_TRANSITIONS,
    apply_stage_transition,
    archive_event,
    evaluate_next_stage,
)
from tests.unit.trend_factories import T0, make_trend

CONFIG = TrendDetectionConfig()


def _transitions(db, event):
    return (
        db.query(TrendStageTransition)
        .filter(TrendStageTransition.trend_event_id == event.id)
        .order_by(TrendStageTransition.id)
        .all()
    )


def test_valid_transition_writes_audit_row(db_session):
    event = make_trend(db_session, trend_stage="rising")

    apply_stage_transition(
        db=db_session,
        event=event,
        to_stage="trending",
        job_name="refresh",
        rule_version="stage-v1",
        reason="trending thresholds met",
        transitioned_at=T0,
    )
    db_session.commit()

    assert event.trend_stage == "trending"
    assert event.stage_updated_at == T0
    [row] = _transitions(db_session, event)
    assert (row.from_stage, row.to_stage, row.actor, row.job_name) == ("rising", "trending", "system", "refresh")
    assert row.transitioned_at == T0


@pytest.mark.parametrize(
    "from_stage,to_stage",
    [("new", "trending"), ("rising", "peaked"), ("trending", "declining"), ("stale", "trending"), ("rising", "archived")],
)
def test_invalid_jumps_are_rejected(db_session, from_stage, to_stage):
    event = make_trend(db_session, trend_stage=from_stage)
    with pytest.raises(ValueError, match="Invalid stage transition"):
        apply_stage_transition(db=db_session, event=event, to_stage=to_stage)
    assert event.trend_stage == from_stage
    assert _transitions(db_session, event) == []


def test_same_stage_and_unknown_stage_are_rejected(db_session):
    event = make_trend(db_session, trend_stage="rising")
    with pytest.raises(ValueError, match="must change stage"):
        apply_stage_transition(db=db_session, event=event, to_stage="rising")
    with pytest.raises(ValueError, match="Unsupported"):
        apply_stage_transition(db=db_session, event=event, to_stage="viral")


def test_archived_is_terminal(db_session):
    assert ALLOWED_TRANSITIONS["archived"] == set()
    event = make_trend(db_session, trend_stage="archived")
    for stage in ("new", "rising", "stale"):
        with pytest.raises(ValueError):
            apply_stage_transition(db=db_session, event=event, to_stage=stage)


def test_archive_steps_through_stale(db_session):
    event = make_trend(db_session, trend_stage="trending", is_trending=True, is_breaking=True)

    archive_event(db_session, event, reason="merged into senate_vote", job_name="consolidation", now=T0)
    db_session.commit()

    rows = _transitions(db_session, event)
    assert [(row.from_stage, row.to_stage) for row in rows] == [("trending", "stale"), ("stale", "archived")]
    assert event.archived_at == T0
    assert event.is_trending is False
    assert event.is_breaking is False
    assert archive_event(db_session, event, reason="again", job_name="consolidation", now=T0) is None


def test_archive_from_stale_is_a_single_step(db_session):
    event = make_trend(db_session, trend_stage="stale")
    archive_event(db_session, event, reason="idle", job_name="refresh", now=T0)
    db_session.commit()
    assert [row.to_stage for row in _transitions(db_session, event)] == ["archived"]


def _decide(now=T0, fresh=False, **fields):
    event = make_trend(**fields)
    decision = evaluate_next_stage(event, now=now, config=CONFIG, fresh_evidence=fresh)
    return decision.to_stage if decision else None


def test_new_becomes_rising_on_velocity_within_window():
    assert _decide(trend_stage="new", velocity=1.5) == "rising"
    assert _decide(trend_stage="new", velocity=1.4) is None
    assert _decide(trend_stage="new", velocity=3.0, first_seen_at=T0 - timedelta(hours=30)) is None


def test_rising_becomes_trending_only_when_trending():
    assert _decide(trend_stage="rising", is_trending=True) == "trending"
    assert _decide(trend_stage="rising", is_trending=False) is None


def test_trending_peaks_when_acceleration_turns_negative():
    assert _decide(trend_stage="trending", acceleration=-0.4, velocity=2.0) == "peaked"
    assert _decide(trend_stage="trending", acceleration=0.4, velocity=2.0) is None
    assert _decide(trend_stage="trending", acceleration=-0.4, velocity=1.0) is None


def test_peaked_declines_below_half_of_peak():
    assert _decide(trend_stage="peaked", peak_1h=10, current_1h=4) == "declining"
    assert _decide(trend_stage="peaked", peak_1h=10, current_1h=5) is None


def test_declining_reignites_on_fresh_accelerating_evidence():
    assert _decide(trend_stage="declining", fresh=True, acceleration=0.5, velocity=2.0) == "rising"
    assert _decide(trend_stage="declining", fresh=False, acceleration=0.5, velocity=2.0) is None
    assert _decide(trend_stage="declining", fresh=True, acceleration=-0.5, velocity=2.0) is None


@pytest.mark.parametrize("stage", ["new", "rising", "trending", "peaked", "declining"])
def test_idle_active_trends_go_stale(stage):
    assert _decide(trend_stage=stage, last_seen_at=T0 - timedelta(hours=48)) == "stale"


def test_stale_reignites_or_archives():
    idle = T0 - timedelta(hours=200)
    assert _decide(trend_stage="stale", fresh=True, velocity=2.0, last_seen_at=T0) == "rising"
    assert _decide(trend_stage="stale", last_seen_at=idle) == "archived"
    assert _decide(trend_stage="stale", last_seen_at=T0 - timedelta(hours=60)) is None
    assert _decide(trend_stage="archived", last_seen_at=idle) is None
