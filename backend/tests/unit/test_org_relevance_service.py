"""Tests for organization relevance scoring and score projection."""

from __future__ import annotations

from datetime import timedelta

import pytest

from trendwatch.config.detection_config import TrendDetectionConfig
from trendwatch.domain.errors import StorageError
from trendwatch.models.organization import OrgTrendScore
from trendwatch.services.org_relevance_service import (
    OrgProfile,
    OrgRelevanceProjector,
    WatchTerm,
    match_strength,
    priority_bucket,
    score_trend,
)
from tests.unit.trend_factories import T0, make_org, make_trend

CONFIG = TrendDetectionConfig()
UNRELATED = (("zoning", 1.0),)


def _score(event, **profile_fields):
    profile_fields.setdefault("topics", UNRELATED)
    return score_trend(event, OrgProfile(organization_id=1, **profile_fields), config=CONFIG, now=T0)


def test_match_strength():
    assert match_strength("Healthcare", "healthcare") == 1.0
    assert match_strength("Senate Healthcare Vote", "healthcare") == pytest.approx(0.85)
    assert match_strength("Senate Healthcare Vote", "") == 0.0


def test_watch_term_matches_through_alias():
    event = make_trend(
        canonical_label="Senate Healthcare Vote",
        alias_variants=["Jane Doe healthcare bill"],
        velocity_score=0.0,
        trend_stage="new",
        confidence_score=0.6,
    )

    result = _score(event, watchlist=(WatchTerm("Jane Doe"),))

    assert result.relevance_score == 20.0
    assert result.matched_entities == ["Jane Doe"]
    [match] = result.explanation["matches"]
    assert match["matched_via"] == "alias_variant"
    assert match["matched_text"] == "Jane Doe healthcare bill"
    assert result.urgency_score == pytest.approx(4.0)
    assert result.priority_bucket == "low"


def test_blocked_term_wins():
    event = make_trend()
    result = _score(event, topics=(("healthcare", 1.0),), watchlist=(WatchTerm("healthcare", is_blocked=True),))

    assert result.is_blocked
    assert result.priority_bucket == "blocked"
    assert result.relevance_score == 0.0
    assert result.explanation["reasons"][0].startswith("Blocked")


def test_allowlisted_term_sets_relevance_floor():
    event = make_trend(velocity_score=0.0)
    result = _score(event, watchlist=(WatchTerm("Senate", is_allowlisted=True),))

    assert result.is_allowlisted
    assert result.relevance_score == 70.0
    assert result.explanation["score_breakdown"] == {"allowlist": 15.0}


def test_topic_match_with_velocity_bonus():
    event = make_trend(velocity_score=200.0, source_count=1, confidence_score=1.0, trend_stage="rising")

    result = _score(event, topics=(("healthcare", 1.0),))

    assert result.relevance_score == pytest.approx(57.5)
    assert result.explanation["score_breakdown"] == {"topic_match": 42.5, "velocity": 15.0}
    assert result.urgency_score == pytest.approx(60.0)
    assert result.priority_bucket == "medium"
    assert result.matched_topics == ["healthcare"]


def test_focus_areas_only_count_without_topic_match():
    event = make_trend(velocity_score=0.0)
    assert _score(event, focus_areas=("healthcare",)).relevance_score == 12.0
    assert "profile_match" not in _score(
        event, topics=(("healthcare", 1.0),), focus_areas=("healthcare",)
    ).explanation["score_breakdown"]


def test_geography_is_capped():
    event = make_trend(canonical_label="Ohio Texas Florida Senate Vote", velocity_score=0.0)
    result = _score(event, geographies=("Ohio", "Texas", "Florida"))

    assert result.relevance_score == 16.0
    assert result.matched_geographies == ["Ohio", "Texas", "Florida"]


def test_stakeholders_allies_and_opponents():
    event = make_trend(canonical_label="Senate Healthcare Vote", velocity_score=0.0)
    result = _score(event, allies=("Senate",), opponents=("healthcare",), stakeholders=("nobody",))
    assert result.explanation["score_breakdown"] == {"ally": 10.0, "opponent": 12.0}
    assert result.relevance_score == 22.0


def test_no_matches_means_no_velocity_bonus():
    result = _score(make_trend(velocity_score=500.0))
    assert result.relevance_score == 0.0
    assert result.explanation["reasons"] == ["No profile matches"]


@pytest.mark.parametrize(
    "relevance,urgency,expected",
    [(100, 100, "critical"), (80, 50, "high"), (80, 40, "medium"), (10, 10, "low")],
)
def test_priority_bucket(relevance, urgency, expected):
    assert priority_bucket(relevance, urgency) == expected


@pytest.fixture
def projector(db_session):
    return OrgRelevanceProjector(db_session, ttl_hours=24, min_relevance=10.0, confidence_delta=0.1)


def test_projection_stores_then_reports_fresh(db_session, projector):
    org = make_org(db_session, topics=(("healthcare", 1.0),))
    event = make_trend(db_session)

    first = projector.project_org(org.id, now=T0)
    second = projector.project_org(org.id, now=T0 + timedelta(minutes=5))

    assert first["computed"] == 1
    assert second["fresh"] == 1
    row = db_session.query(OrgTrendScore).one()
    assert row.trend_event_id == event.id
    assert row.trend_key == event.event_key
    assert row.expires_at == T0 + timedelta(hours=24)
    assert row.profile_version_at_compute == 1


def test_projection_skips_irrelevant_trends(db_session, projector):
    org = make_org(db_session, topics=UNRELATED)
    make_trend(db_session)

    assert projector.project_org(org.id, now=T0)["below_threshold"] == 1
    assert db_session.query(OrgTrendScore).count() == 0


def test_projection_recomputes_on_material_change(db_session, projector):
    org = make_org(db_session, topics=(("healthcare", 1.0),))
    event = make_trend(db_session, confidence_score=0.6)
    projector.project_org(org.id, now=T0)

    event.confidence_score = 0.65
    db_session.commit()
    assert projector.project_org(org.id, now=T0)["fresh"] == 1

    event.confidence_score = 0.75
    db_session.commit()
    assert projector.project_org(org.id, now=T0)["computed"] == 1

    org.profile_version = 2
    db_session.commit()
    assert projector.project_org(org.id, now=T0)["computed"] == 1
    assert db_session.query(OrgTrendScore).one().profile_version_at_compute == 2


def test_archived_trend_scores_are_dropped(db_session, projector):
    org = make_org(db_session, topics=(("healthcare", 1.0),))
    event = make_trend(db_session)
    projector.project_org(org.id, now=T0)

    event.trend_stage = "archived"
    db_session.commit()
    stats = projector.project_org(org.id, now=T0)

    assert stats["dropped"] == 1
    assert db_session.query(OrgTrendScore).count() == 0


def test_expired_scores_are_recomputed_on_read(db_session, projector):
    org = make_org(db_session, topics=(("healthcare", 1.0),))
    make_trend(db_session)
    projector.project_org(org.id, now=T0)
    later = T0 + timedelta(hours=25)

    [row] = projector.get_org_scores(org.id, now=later)

    assert row.computed_at == later
    assert row.expires_at == later + timedelta(hours=24)
    assert projector.get_org_scores(9999, now=later) == []


def test_project_all_isolates_failing_organization(db_session, projector, monkeypatch):
    broken = make_org(db_session, name="Broken Org", topics=(("healthcare", 1.0),))
    healthy = make_org(db_session, name="Healthy Org", topics=(("healthcare", 1.0),))
    make_trend(db_session)
    original = projector.project_org

    def flaky(organization_id, **kwargs):
        if organization_id == broken.id:
            raise StorageError("connection reset")
        return original(organization_id, **kwargs)

    monkeypatch.setattr(projector, "project_org", flaky)

    summary = projector.project_all(now=T0)

    assert summary["organizations"] == 1
    assert summary["failed"] == [{"organization_id": broken.id, "error": "connection reset"}]
    assert db_session.query(OrgTrendScore).filter_by(organization_id=healthy.id).count() == 1
