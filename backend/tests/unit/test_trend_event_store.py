"""Tests for TrendEventStore upserts, rescoring and merges."""

from __future__ import annotations

from datetime import timedelta

import pytest

from trendwatch.models.trend import MentionEvidence, TopicHourlyCount, TrendEvent, TrendStageTransition
from trendwatch.services.trend_event_store import TrendEventStore, TrendFilter
from tests.unit.trend_factories import T0, make_evidence, make_trend

KEY = "senate_healthcare_vote"
NOW = T0 + timedelta(minutes=30)


def _three_items():
    return [
        make_evidence("Senate Healthcare Vote", item="item-1", published_at=T0 + timedelta(minutes=5)),
        make_evidence(
            "Senate Healthcare Vote",
            item="item-2",
            source_type="google_news",
            tier="tier2",
            domain="news.example.org",
            published_at=T0 + timedelta(minutes=10),
        ),
        make_evidence(
            "Senate Healthcare Vote",
            item="item-3",
            source_type="bluesky",
            tier="tier3",
            domain="bsky.app",
            published_at=T0 + timedelta(minutes=20),
        ),
    ]


def _bucket_total(db, topic_key):
    return sum(row.mention_count for row in db.query(TopicHourlyCount).filter(TopicHourlyCount.topic_key == topic_key))


def test_upsert_creates_and_scores_event(db_session):
    store = TrendEventStore(db_session)

    event = store.upsert_evidence(KEY, _three_items(), now=NOW, label="Senate Healthcare Vote")

    assert event.canonical_label == "Senate Healthcare Vote"
    assert (event.current_1h, event.current_6h, event.current_24h) == (3, 3, 3)
    assert event.evidence_count == 3
    assert event.source_count == 3
    assert (event.tier1_count, event.tier2_count, event.tier3_count) == (1, 1, 1)
    assert event.first_seen_at == T0 + timedelta(minutes=5)
    assert event.last_seen_at == T0 + timedelta(minutes=20)
    assert event.baseline_established is False
    assert event.anomaly_status == "unclassified"
    assert event.label_quality == "event_phrase"
    assert 0.0 < event.confidence_score <= 1.0
    assert event.version == 1
    assert event.trend_stage == "rising"

    [transition] = db_session.query(TrendStageTransition).filter_by(trend_event_id=event.id).all()
    assert (transition.from_stage, transition.to_stage) == ("new", "rising")
    assert transition.transitioned_at == NOW
    assert _bucket_total(db_session, KEY) == 3


def test_reapplying_known_evidence_is_a_no_op(db_session):
    store = TrendEventStore(db_session)
    first = store.upsert_evidence(KEY, _three_items(), now=NOW)
    snapshot = (first.version, first.current_1h, first.evidence_count, first.confidence_score)

    again = store.upsert_evidence(KEY, _three_items(), now=NOW + timedelta(minutes=5))

    assert (again.version, again.current_1h, again.evidence_count, again.confidence_score) == snapshot
    assert db_session.query(MentionEvidence).count() == 3
    assert _bucket_total(db_session, KEY) == 3


def test_one_item_under_two_topic_keys_counts_once(db_session):
    store = TrendEventStore(db_session)
    items = [
        make_evidence("Senate Healthcare Vote", item="item-1", published_at=T0 + timedelta(minutes=5)),
        make_evidence("Healthcare Vote", item="item-1", published_at=T0 + timedelta(minutes=5)),
    ]

    event = store.upsert_evidence(KEY, items, now=NOW)

    assert db_session.query(MentionEvidence).filter_by(trend_event_id=event.id).count() == 2
    assert event.evidence_count == 1
    assert event.current_1h == 1
    assert _bucket_total(db_session, KEY) == 1


def test_evidence_is_never_reattached_to_another_event(db_session):
    store = TrendEventStore(db_session)
    shared = make_evidence("Senate Healthcare Vote", item="item-1", published_at=T0 + timedelta(minutes=5))
    owner = store.upsert_evidence(KEY, shared, now=NOW)

    with pytest.raises(ValueError, match="no unattached evidence"):
        store.upsert_evidence("port_strike", shared, now=NOW)

    fresh = make_evidence("Port Strike", item="item-9", published_at=T0 + timedelta(minutes=15))
    other = store.upsert_evidence("port_strike", [shared, fresh], now=NOW)

    assert other.evidence_count == 1
    row = db_session.query(MentionEvidence).filter_by(content_hash=shared.content_hash).one()
    assert row.trend_event_id == owner.id


def test_upsert_requires_evidence(db_session):
    with pytest.raises(ValueError):
        TrendEventStore(db_session).upsert_evidence(KEY, [], now=NOW)


def test_refresh_rolls_windows_and_decays_confidence(db_session):
    store = TrendEventStore(db_session)
    event = store.upsert_evidence(KEY, _three_items(), now=NOW)
    confidence = event.confidence_score
    version = event.version

    refreshed = store.refresh(KEY, now=NOW + timedelta(hours=3))

    assert refreshed.current_1h == 0
    assert refreshed.current_6h == 3
    assert refreshed.confidence_score < confidence
    assert refreshed.version == version + 1
    assert store.refresh("missing_key", now=NOW) is None


def test_get_active_trends_filters_and_orders(db_session):
    make_trend(db_session, canonical_label="Port Strike", trend_score=30.0, confidence_score=0.7)
    make_trend(db_session, canonical_label="Budget Vote", trend_score=80.0, confidence_score=0.4, is_breaking=True)
    make_trend(db_session, canonical_label="Court Ruling", trend_score=55.0, confidence_score=0.9)
    make_trend(db_session, canonical_label="Old Hearing", trend_score=99.0, trend_stage="archived")
    store = TrendEventStore(db_session)

    ordered = [event.event_key for event in store.get_active_trends()]
    confident = [event.event_key for event in store.get_active_trends(TrendFilter(min_confidence=0.5))]
    breaking = [event.event_key for event in store.get_active_trends(TrendFilter(breaking_only=True))]
    top = [event.event_key for event in store.get_active_trends(TrendFilter(limit=1))]

    assert ordered == ["budget_vote", "court_ruling", "port_strike"]
    assert confident == ["court_ruling", "port_strike"]
    assert breaking == ["budget_vote"]
    assert top == ["budget_vote"]


def test_merge_moves_evidence_and_archives_source(db_session):
    store = TrendEventStore(db_session)
    target = store.upsert_evidence(KEY, _three_items(), now=NOW)
    source = store.upsert_evidence(
        "healthcare_vote_delay",
        make_evidence("Healthcare Vote Delay", item="item-7", published_at=T0 + timedelta(minutes=25)),
        now=NOW,
    )

    moved = store.merge_events(source, target, now=NOW, reason="phrase similarity 0.91")
    db_session.commit()

    assert moved == 1
    assert db_session.query(MentionEvidence).filter_by(trend_event_id=target.id).count() == 4
    assert target.evidence_count == 4
    assert "Healthcare Vote Delay" in target.alias_variants
    assert source.trend_stage == "archived"
    assert source.merged_into_event_id == target.id
    assert _bucket_total(db_session, "healthcare_vote_delay") == 0
    assert _bucket_total(db_session, KEY) == 4
    assert db_session.get(TrendEvent, source.id).archived_at == NOW


_SOURCE_CYCLE = [
    ("rss", "tier1", "example.com"),
    ("google_news", "tier2", "news.example.org"),
    ("bluesky", "tier3", "bsky.app"),
]


def _burst(label, *, quality, count=12):
    items = []
    for index in range(count):
        source_type, tier, domain = _SOURCE_CYCLE[index % len(_SOURCE_CYCLE)]
        items.append(
            make_evidence(
                label,
                item=f"{label}-{index}",
                source_type=source_type,
                tier=tier,
                domain=domain,
                published_at=T0 + timedelta(minutes=4 * index),
                quality_hint=quality,
            )
        )
    return items


def test_event_phrase_breaks_while_evergreen_entity_is_suppressed(db_session):
    store = TrendEventStore(db_session)
    now = T0 + timedelta(minutes=50)

    bill = store.upsert_evidence("jane_doe_healthcare_bill", _burst("Jane Doe Healthcare Bill", quality="event_phrase"), now=now)
    congress = store.upsert_evidence("congress", _burst("Congress", quality="entity_only"), now=now)

    assert (bill.current_1h, congress.current_1h) == (12, 12)
    assert bill.label_quality == "event_phrase"
    assert bill.is_evergreen is False
    assert bill.is_trending is True
    assert bill.is_breaking is True
    assert bill.breaking_path == "breakthrough"

    assert congress.label_quality == "entity_only"
    assert congress.is_evergreen is True
    assert congress.is_breaking is False
    assert any("evergreen" in reason for reason in congress.score_details["breaking_reasons"])

    assert congress.confidence_score == pytest.approx(bill.confidence_score * 0.6)
    assert bill.trend_score > congress.trend_score


def test_breaking_events_are_always_trending(db_session):
    store = TrendEventStore(db_session)
    now = T0 + timedelta(minutes=50)

    events = [
        store.upsert_evidence("jane_doe_healthcare_bill", _burst("Jane Doe Healthcare Bill", quality="event_phrase"), now=now),
        store.upsert_evidence("port_strike", _burst("Port Strike", quality="event_phrase", count=3), now=now),
    ]

    assert all(event.is_trending for event in events if event.is_breaking)
