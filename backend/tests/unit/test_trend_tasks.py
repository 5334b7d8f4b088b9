"""
Tests for the Celery beat schedule and the pass task wrappers.

Tasks are called directly (synchronously); SessionLocal is pointed at the
in-memory test database and the Redis pass lock is replaced.
"""
from contextlib import contextmanager

import pytest
from celery.exceptions import Retry

from trendwatch.celery_app import celery_app
from trendwatch.domain.errors import StorageError
from trendwatch.models.trend import PassRun
from trendwatch.services.trend_pipeline_service import TrendPipelineService
from trendwatch.tasks import trend_tasks
from tests.unit.trend_factories import make_record


def _lock(acquired):
    @contextmanager
    def fake_pass_lock(pass_name, holder="worker", **kwargs):
        yield acquired

    return fake_pass_lock


@pytest.fixture
def task_env(db_session_factory, monkeypatch):
    monkeypatch.setattr(trend_tasks, "SessionLocal", db_session_factory)
    monkeypatch.setattr(trend_tasks, "pass_lock", _lock(True))
    return db_session_factory


class TestBeatSchedule:
    def test_every_scheduled_task_is_registered(self):
        scheduled = {entry["task"] for entry in celery_app.conf.beat_schedule.values()}

        assert scheduled == {
            "trendwatch.tasks.trend_tasks.run_detection_pass",
            "trendwatch.tasks.trend_tasks.run_refresh_pass",
            "trendwatch.tasks.trend_tasks.run_projection_pass",
            "trendwatch.tasks.trend_tasks.run_semantic_pass",
            "trendwatch.tasks.trend_tasks.run_consolidation_pass",
            "trendwatch.tasks.trend_tasks.run_baseline_rebuild_pass",
        }
        assert scheduled <= set(celery_app.tasks)

    def test_json_only_serialization(self):
        assert celery_app.conf.task_serializer == "json"
        assert celery_app.conf.accept_content == ["json"]


class TestPassTasks:
    def test_refresh_task_records_pass_run(self, task_env):
        result = trend_tasks.run_refresh_pass(idempotency_key="refresh:task")

        assert result["status"] == "completed"
        assert "duration_seconds" in result
        with task_env() as session:
            run = session.query(PassRun).filter_by(idempotency_key="refresh:task").one()
            assert run.pass_name == "refresh"

    def test_default_key_makes_redelivery_a_no_op(self, task_env):
        first = trend_tasks.run_projection_pass()
        second = trend_tasks.run_projection_pass()

        assert first["idempotency_key"] == second["idempotency_key"]
        assert first["idempotency_key"].startswith("projection:")
        assert second["noop"] is True

    def test_skips_when_lock_is_held(self, task_env, monkeypatch):
        monkeypatch.setattr(trend_tasks, "pass_lock", _lock(False))

        result = trend_tasks.run_detection_pass(idempotency_key="detection:locked")

        assert result["skipped"] is True
        assert result["pass"] == "detection"
        with task_env() as session:
            assert session.query(PassRun).count() == 0

    def test_crash_schedules_retry_under_same_key(self, task_env, monkeypatch):
        def explode(self, **kwargs):
            raise RuntimeError("worker lost")

        retries = []

        def fake_retry(**kwargs):
            retries.append(kwargs)
            return Retry("again")

        monkeypatch.setattr(TrendPipelineService, "run_consolidation_pass", explode)
        monkeypatch.setattr(trend_tasks.run_consolidation_pass, "retry", fake_retry)

        with pytest.raises(Retry):
            trend_tasks.run_consolidation_pass(idempotency_key="consolidation:crash")

        assert retries == [{"kwargs": {"idempotency_key": "consolidation:crash"}, "countdown": 30}]

    def test_storage_failure_retries_and_resumes_the_failed_run(self, task_env, monkeypatch):
        calls = {"n": 0}
        original = TrendPipelineService._deferred_by_previous_run

        def flaky(self, pass_name, run):
            calls["n"] += 1
            if calls["n"] == 1:
                raise StorageError("db went away")
            return original(self, pass_name, run)

        retries = []

        def fake_retry(**kwargs):
            retries.append(kwargs)
            return Retry("again")

        monkeypatch.setattr(TrendPipelineService, "_deferred_by_previous_run", flaky)
        monkeypatch.setattr(trend_tasks.run_refresh_pass, "retry", fake_retry)

        with pytest.raises(Retry):
            trend_tasks.run_refresh_pass(idempotency_key="refresh:retry")
        result = trend_tasks.run_refresh_pass(**retries[0]["kwargs"])

        assert retries[0]["kwargs"] == {"idempotency_key": "refresh:retry"}
        assert result["status"] == "completed"
        with task_env() as session:
            run = session.query(PassRun).filter_by(idempotency_key="refresh:retry").one()
            assert run.status == "completed"
            assert run.attempts == 2

    def test_retries_exhausted_returns_failure(self, task_env, monkeypatch):
        def explode(self, **kwargs):
            raise RuntimeError("worker lost")

        monkeypatch.setattr(TrendPipelineService, "run_consolidation_pass", explode)
        monkeypatch.setattr(trend_tasks.run_consolidation_pass, "max_retries", 0)

        result = trend_tasks.run_consolidation_pass(idempotency_key="consolidation:crash")

        assert result["status"] == "failed"
        assert result["error"] == "worker lost"
        assert result["pass"] == "consolidation"

    def test_backoff_is_capped(self):
        assert [trend_tasks._retry_countdown(n) for n in range(6)] == [30, 60, 120, 240, 480, 600]

    def test_ingest_task(self, task_env):
        published = "2026-03-02T11:30:00Z"
        result = trend_tasks.ingest_evidence([make_record(published_at=published), {"labels": []}])

        assert result["accepted"] == 1
        assert result["rejected"] == 1
