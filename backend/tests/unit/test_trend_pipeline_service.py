"""Tests for the batch pass runner: detection end to end, idempotency, deadlines and isolation."""

from __future__ import annotations

import itertools
from datetime import datetime, timedelta

import pytest

from trendwatch.config import settings
from trendwatch.config.detection_config import TrendDetectionConfig
from trendwatch.domain.errors import StorageError
from trendwatch.models.organization import OrgTrendScore
from trendwatch.models.trend import MentionEvidence, PassRun, PhraseClusterMember, TrendEvent
from trendwatch.services.baseline_service import BaselineEstimator
from trendwatch.services.org_relevance_service import OrgRelevanceProjector
from trendwatch.services.trend_embedding_service import TrendEmbeddingEngine
from trendwatch.services.trend_event_store import TrendEventStore
from trendwatch.services.trend_pipeline_service import (
    TrendPipelineService,
    default_idempotency_key,
    partition_keys,
)
from tests.unit.trend_factories import T0, make_evidence, make_org, make_record, make_trend


class NoEncoderEngine(TrendEmbeddingEngine):
    def __init__(self):
        super().__init__("fake-model")

    def get_encoder(self):
        return None


@pytest.fixture
def pipeline(db_session):
    return TrendPipelineService(db_session, max_workers=1, deadline_seconds=60)


def _ingest_variants(pipeline):
    return pipeline.ingest_batch(
        [
            make_record("Jane Doe Healthcare Bill", source_url="https://www.example.com/a"),
            make_record(
                "Jane Doe Health Care Bill",
                source_type="google_news",
                source_tier="tier2",
                source_url="https://news.example.org/b",
            ),
            make_record(
                "Jane Doe Healthcare Bill",
                source_type="bluesky",
                source_tier="tier3",
                source_url="https://bsky.app/profile/someone/post/c",
            ),
        ],
        now=T0,
    )


def test_detection_pass_builds_one_event_from_spelling_variants(db_session, pipeline):
    ingested = _ingest_variants(pipeline)
    assert ingested["accepted"] == 3

    result = pipeline.run_detection_pass(now=T0 + timedelta(minutes=30), idempotency_key="detection:test")

    assert result["status"] == "completed"
    assert result["keys_total"] == 1
    assert result["stats"]["pending"] == 3
    assert result["stats"]["clusters"] == 1
    [event] = db_session.query(TrendEvent).all()
    assert event.event_key == "jane_doe_health_care_bill"
    assert event.evidence_count == 3
    assert event.source_count == 3
    assert event.phrase_cluster_id is not None


def test_completed_key_is_a_no_op(db_session, pipeline):
    _ingest_variants(pipeline)
    now = T0 + timedelta(minutes=30)
    first = pipeline.run_detection_pass(now=now, idempotency_key="detection:test")

    again = pipeline.run_detection_pass(now=now, idempotency_key="detection:test")

    assert again["noop"] is True
    assert again["status"] == "completed"
    assert again["run_id"] == first["run_id"]
    assert db_session.query(PassRun).count() == 1


def test_detection_without_pending_evidence(pipeline):
    result = pipeline.run_detection_pass(now=T0, idempotency_key="detection:empty")
    assert result["status"] == "completed"
    assert result["stats"] == {"pending": 0}


def test_failed_key_is_retried(db_session, pipeline, monkeypatch):
    BaselineEstimator(db_session, TrendDetectionConfig()).update_baseline("port_strike", 2, T0)
    db_session.commit()
    original = BaselineEstimator.rebuild_baseline
    calls = {"count": 0}

    def flaky(self, topic_key, *, now=None):
        calls["count"] += 1
        if calls["count"] == 1:
            raise StorageError("disk full")
        return original(self, topic_key, now=now)

    monkeypatch.setattr(BaselineEstimator, "rebuild_baseline", flaky)

    failed = pipeline.run_baseline_rebuild_pass(now=T0, idempotency_key="baseline:test")
    retried = pipeline.run_baseline_rebuild_pass(now=T0, idempotency_key="baseline:test")

    assert failed["status"] == "failed"
    assert "disk full" in failed["error"]
    assert retried["status"] == "completed"
    assert retried["keys_processed"] == 1
    run = db_session.query(PassRun).filter_by(idempotency_key="baseline:test").one()
    assert run.attempts == 2


def test_deadline_defers_keys_and_degrades(db_session):
    event = make_trend(db_session)
    pipeline = TrendPipelineService(db_session, max_workers=1, deadline_seconds=0, clock=lambda: 0.0)

    result = pipeline.run_refresh_pass(now=T0, idempotency_key="refresh:late")

    assert result["status"] == "degraded"
    assert result["deferred_keys"] == [event.event_key]
    assert result["keys_total"] == 1
    assert result["keys_processed"] == 0
    assert pipeline.run_refresh_pass(now=T0, idempotency_key="refresh:late")["noop"] is True


def test_unexpected_error_marks_run_failed_and_propagates(db_session, pipeline, monkeypatch):
    make_trend(db_session)

    def explode(self, event_key, *, now=None):
        raise RuntimeError("boom")

    monkeypatch.setattr(TrendEventStore, "refresh", explode)

    with pytest.raises(RuntimeError, match="boom"):
        pipeline.run_refresh_pass(now=T0, idempotency_key="refresh:crash")

    run = db_session.query(PassRun).filter_by(idempotency_key="refresh:crash").one()
    assert run.status == "failed"
    assert run.error_message == "boom"


def test_invalid_key_is_skipped(db_session, pipeline, monkeypatch):
    make_trend(db_session)

    def reject(self, event_key, *, now=None):
        raise ValueError("bad key")

    monkeypatch.setattr(TrendEventStore, "refresh", reject)

    result = pipeline.run_refresh_pass(now=T0, idempotency_key="refresh:skip")

    assert result["status"] == "completed"
    assert result["stats"] == {"skipped": 1}


def test_refresh_pass_moves_idle_trends_to_stale(db_session, pipeline):
    store = TrendEventStore(db_session)
    event = store.upsert_evidence("port_strike", make_evidence("Port Strike", item="p-1", published_at=T0), now=T0)
    make_trend(db_session, canonical_label="Old Hearing", trend_stage="archived")

    result = pipeline.run_refresh_pass(now=T0 + timedelta(hours=50), idempotency_key="refresh:stages")

    assert result["keys_total"] == 1
    assert result["stats"] == {"stale": 1}
    db_session.refresh(event)
    assert event.trend_stage == "stale"


def test_partition_keys_are_stable_disjoint_and_complete():
    keys = [f"topic_{index}" for index in range(50)]

    first = partition_keys(keys, 4)
    second = partition_keys(list(reversed(keys)), 4)

    assert first == second
    flat = [key for bucket in first for key in bucket]
    assert sorted(flat) == sorted(keys)
    assert len(flat) == len(set(flat))
    assert partition_keys(keys, 0) == [sorted(keys)]


def test_default_idempotency_key_uses_schedule_slot():
    assert default_idempotency_key("detection", datetime(2026, 3, 2, 12, 7), 5) == "detection:20260302T1205"
    assert default_idempotency_key("baseline", datetime(2026, 3, 2, 3, 59), 24 * 60) == "baseline:20260302T0000"


def test_semantic_pass_can_be_disabled(pipeline, monkeypatch):
    monkeypatch.setattr(settings, "semantic_clustering_enabled", False)
    result = pipeline.run_semantic_pass(now=T0, idempotency_key="semantic:off")
    assert result["status"] == "completed"
    assert result["stats"] == {"skipped": True, "reason": "disabled"}


def test_semantic_pass_without_encoder(db_session, monkeypatch):
    monkeypatch.setattr(settings, "semantic_clustering_enabled", True)
    make_trend(db_session)
    pipeline = TrendPipelineService(db_session, max_workers=1, embedding_engine=NoEncoderEngine())

    result = pipeline.run_semantic_pass(now=T0, idempotency_key="semantic:none")

    assert result["stats"] == {"skipped": True, "reason": "encoder_unavailable"}


def test_projection_failures_stay_with_their_organization(db_session, pipeline, monkeypatch):
    broken = make_org(db_session, name="Broken Org", topics=(("healthcare", 1.0),))
    healthy = make_org(db_session, name="Healthy Org", topics=(("healthcare", 1.0),))
    make_trend(db_session)
    original = OrgRelevanceProjector.project_org

    def flaky(self, organization_id, **kwargs):
        if organization_id == broken.id:
            raise StorageError("lock timeout")
        return original(self, organization_id, **kwargs)

    monkeypatch.setattr(OrgRelevanceProjector, "project_org", flaky)

    result = pipeline.run_projection_pass(now=T0, idempotency_key="projection:test")

    assert result["status"] == "degraded"
    assert result["stats"]["projected"] == 1
    assert result["stats"]["failed_keys"] == [{"key": str(broken.id), "error": "storage"}]
    assert db_session.query(OrgTrendScore).filter_by(organization_id=healthy.id).count() == 1


def test_keys_deferred_by_a_degraded_run_go_first_next_time(db_session):
    make_trend(db_session, event_key="alpha_port_strike", canonical_label="Alpha Port Strike")
    make_trend(db_session, event_key="beta_court_ruling", canonical_label="Beta Court Ruling")
    # Counter clock: the deadline admits exactly one key per run.
    pipeline = TrendPipelineService(
        db_session, max_workers=1, deadline_seconds=1.5, clock=lambda c=itertools.count(): float(next(c))
    )

    deferred = [
        pipeline.run_refresh_pass(now=T0, idempotency_key=f"refresh:{slot}")["deferred_keys"]
        for slot in range(3)
    ]

    assert deferred == [["beta_court_ruling"], ["alpha_port_strike"], ["beta_court_ruling"]]


def test_partition_keys_lead_with_carried_over_keys():
    keys = ["alpha", "beta", "gamma"]

    assert partition_keys(keys, 1) == [["alpha", "beta", "gamma"]]
    assert partition_keys(keys, 1, first=["gamma"]) == [["gamma", "alpha", "beta"]]
    assert partition_keys(keys, 1, first=["unknown"]) == [["alpha", "beta", "gamma"]]


def test_retried_detection_does_not_recount_cluster_mentions(db_session, pipeline, monkeypatch):
    pipeline.ingest_batch([make_record()], now=T0)
    original = TrendEventStore.upsert_evidence
    calls = {"count": 0}

    def flaky(self, event_key, evidence, **kwargs):
        calls["count"] += 1
        if calls["count"] == 1:
            raise StorageError("write timeout")
        return original(self, event_key, evidence, **kwargs)

    monkeypatch.setattr(TrendEventStore, "upsert_evidence", flaky)
    now = T0 + timedelta(minutes=30)

    failed = pipeline.run_detection_pass(now=now, idempotency_key="detect:x")
    retried = pipeline.run_detection_pass(now=now, idempotency_key="detect:x")

    assert failed["status"] == "failed"
    assert retried["status"] == "completed"
    [member] = db_session.query(PhraseClusterMember).all()
    assert member.mention_count == 1
    [row] = db_session.query(MentionEvidence).all()
    assert row.clustered_at == now
    assert row.trend_event_id is not None
    assert db_session.query(PassRun).filter_by(idempotency_key="detect:x").one().attempts == 2
