"""Tests for phrase similarity, cluster assignment and deterministic merges."""

from __future__ import annotations

from datetime import timedelta

import pytest

from trendwatch.models.trend import MentionEvidence, PhraseCluster, PhraseClusterMember, TrendMergeHistory
from trendwatch.services.phrase_clustering_service import (
    PhraseCandidate,
    PhraseClusteringService,
    authority_score,
    phrase_similarity,
)
from trendwatch.services.trend_event_store import TrendEventStore
from tests.unit.trend_factories import T0, make_evidence

HEALTHCARE = PhraseCandidate("jane_doe_healthcare_bill", "Jane Doe Healthcare Bill", 2, {"rss": 2})
HEALTH_CARE = PhraseCandidate("jane_doe_health_care_bill", "Jane Doe Health Care Bill", 1, {"google_news": 1})


def test_phrase_similarity_rules():
    assert phrase_similarity("senate_vote", "senate_vote") == 1.0
    assert phrase_similarity("senate_healthcare_vote", "senate_healthcare_vote_delay") == pytest.approx(0.85)
    assert phrase_similarity("senate", "senate_healthcare_vote") < 0.7
    assert phrase_similarity("congress", "congress_vote_budget_bill") < 0.7
    assert phrase_similarity("port_strike", "") == 0.0


def test_phrase_similarity_is_order_independent_for_variants():
    forward = phrase_similarity(HEALTHCARE.phrase_key, HEALTH_CARE.phrase_key)
    backward = phrase_similarity(HEALTH_CARE.phrase_key, HEALTHCARE.phrase_key)
    assert forward >= 0.9
    assert backward >= 0.9


def test_authority_score_rewards_event_phrases():
    assert authority_score(0, False, 0.0) == 0.0
    assert authority_score(1, True, 3.0) == pytest.approx(113.0)


def test_assign_batch_joins_spelling_variants(db_session):
    service = PhraseClusteringService(db_session)

    assignments = service.assign_batch([HEALTHCARE, HEALTH_CARE], now=T0)

    cluster = assignments[HEALTHCARE.phrase_key]
    assert assignments[HEALTH_CARE.phrase_key].id == cluster.id
    # Seeded by the first key in sort order; the key never changes afterwards
    assert cluster.canonical_key == "jane_doe_health_care_bill"
    assert cluster.member_count == 2
    assert cluster.representative_key == "jane_doe_healthcare_bill"
    assert cluster.representative_label == "Jane Doe Healthcare Bill"


def test_known_member_accumulates_mentions(db_session):
    service = PhraseClusteringService(db_session)
    service.assign_batch([HEALTHCARE], now=T0)
    service.assign_batch([PhraseCandidate(HEALTHCARE.phrase_key, HEALTHCARE.label, 3, {"rss": 3})], now=T0)

    member = db_session.query(PhraseClusterMember).filter_by(phrase_key=HEALTHCARE.phrase_key).one()
    assert member.mention_count == 5
    assert db_session.query(PhraseCluster).count() == 1


def test_alias_resolves_to_canonical_member(db_session):
    service = PhraseClusteringService(db_session)
    [cluster] = service.assign_batch([HEALTHCARE], now=T0).values()
    service.add_alias("JD Health Bill", HEALTHCARE.phrase_key)
    db_session.commit()

    assert service.resolve_alias("jd_health_bill") == HEALTHCARE.phrase_key
    assignments = service.assign_batch([PhraseCandidate("jd_health_bill", "JD Health Bill", 1, {})], now=T0)
    assert assignments["jd_health_bill"].id == cluster.id


def _two_clusters(db_session):
    strict = PhraseClusteringService(db_session, similarity_threshold=0.99)
    older = strict.assign(HEALTHCARE, now=T0)
    newer = strict.assign(HEALTH_CARE, now=T0 + timedelta(minutes=1))
    db_session.commit()
    return strict, older, newer


@pytest.mark.parametrize("reverse", [False, True])
def test_merge_keeps_older_cluster_regardless_of_argument_order(db_session, reverse):
    service, older, newer = _two_clusters(db_session)
    args = (newer.id, older.id) if reverse else (older.id, newer.id)

    result = service.merge_clusters(*args, similarity=0.98, now=T0 + timedelta(hours=1))

    assert result["success"] is True
    assert result["target_cluster_id"] == older.id
    assert result["source_cluster_id"] == newer.id
    assert result["members_moved"] == 1
    db_session.refresh(newer)
    assert newer.is_active is False
    assert newer.merged_into_id == older.id
    assert db_session.query(PhraseClusterMember).filter_by(cluster_id=older.id).count() == 2


def test_merge_replay_is_idempotent(db_session):
    service, older, newer = _two_clusters(db_session)
    first = service.merge_clusters(older.id, newer.id, now=T0)

    replay = service.merge_clusters(newer.id, older.id, now=T0)

    assert replay["idempotent_replay"] is True
    assert replay["target_cluster_id"] == first["target_cluster_id"]
    assert db_session.query(TrendMergeHistory).count() == 1


def test_merge_missing_cluster_reports_failure(db_session):
    service, older, _ = _two_clusters(db_session)
    assert service.merge_clusters(older.id, 9999, now=T0)["success"] is False


def test_merge_moves_trend_evidence(db_session):
    service, older, newer = _two_clusters(db_session)
    store = TrendEventStore(db_session)
    now = T0 + timedelta(minutes=30)
    target = store.upsert_evidence(
        older.canonical_key, make_evidence("Jane Doe Healthcare Bill", item="a", published_at=T0), now=now
    )
    source = store.upsert_evidence(
        newer.canonical_key,
        make_evidence("Jane Doe Health Care Bill", item="b", source_type="google_news", published_at=T0),
        now=now,
    )

    result = service.merge_clusters(older.id, newer.id, now=now)

    assert result["evidence_moved"] == 1
    assert db_session.query(MentionEvidence).filter_by(trend_event_id=target.id).count() == 2
    db_session.refresh(source)
    assert source.trend_stage == "archived"
    assert source.merged_into_event_id == target.id


def test_merge_creates_target_event_when_only_source_has_one(db_session):
    service, older, newer = _two_clusters(db_session)
    store = TrendEventStore(db_session)
    now = T0 + timedelta(minutes=30)
    store.upsert_evidence(
        newer.canonical_key, make_evidence("Jane Doe Health Care Bill", item="b", published_at=T0), now=now
    )

    service.merge_clusters(older.id, newer.id, now=now)

    adopted = store.get_event(older.canonical_key)
    assert adopted is not None
    assert adopted.phrase_cluster_id == older.id
    assert adopted.evidence_count == 1


def test_consolidate_merges_clusters_that_became_similar(db_session):
    _two_clusters(db_session)

    stats = PhraseClusteringService(db_session, similarity_threshold=0.7).consolidate(now=T0 + timedelta(hours=1))

    assert stats["clusters_scanned"] == 2
    assert stats["merges"] == 1
    assert db_session.query(PhraseCluster).filter(PhraseCluster.is_active.is_(True)).count() == 1
