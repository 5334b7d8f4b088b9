"""
Celery tasks for the trend pipeline.

Each task takes the pass lock, runs one pass through TrendPipelineService
and returns its summary dict. Idempotency keys default to the schedule slot,
so a redelivered task for a slot that already completed is a no-op. A
failed pass is retried with exponential backoff under the same key, which
resumes the failed PassRun rather than starting a new one.
"""
import logging
import time
from datetime import datetime
from typing import Optional

from ..celery_app import celery_app
from ..config import settings
from ..database import SessionLocal, safe_rollback
from ..services.evidence_normalizer import utcnow
from ..services.trend_pipeline_service import TrendPipelineService, default_idempotency_key
from .pass_lock import pass_lock

logger = logging.getLogger(__name__)

PASS_MAX_RETRIES = 3
RETRY_BACKOFF_SECONDS = 30
RETRY_BACKOFF_MAX_SECONDS = 600

_PASS_INTERVALS = {
    "detection": lambda: settings.detection_pass_interval_minutes,
    "refresh": lambda: settings.refresh_pass_interval_minutes,
    "projection": lambda: settings.projection_pass_interval_minutes,
    "semantic": lambda: 60,
    "consolidation": lambda: 24 * 60,
    "baseline": lambda: 24 * 60,
}


def _retry_countdown(retries: int) -> int:
    return min(RETRY_BACKOFF_MAX_SECONDS, RETRY_BACKOFF_SECONDS * 2 ** retries)


def _run_pass(task, pass_name: str, method_name: str, idempotency_key: Optional[str], **kwargs) -> dict:
    """Run one pass under its lock; a failed pass is retried under the same idempotency key."""
    logger.info("=" * 60)
    logger.info("TASK: trend %s pass", pass_name)
    logger.info("=" * 60)

    now = utcnow()
    key = idempotency_key or default_idempotency_key(pass_name, now, _PASS_INTERVALS[pass_name]())
    start_time = time.time()
    db = SessionLocal()
    try:
        with pass_lock(pass_name, holder=task.request.id or "manual") as acquired:
            if not acquired:
                return {
                    'skipped': True,
                    'reason': 'pass already running',
                    'pass': pass_name,
                    'timestamp': datetime.now().isoformat(),
                }
            service = TrendPipelineService(db)
            result = getattr(service, method_name)(now=now, idempotency_key=key, **kwargs)

        duration = time.time() - start_time
        logger.info(f"Pass {pass_name} finished in {duration:.2f}s")
        logger.info(f"  Status: {result.get('status')}{' (no-op)' if result.get('noop') else ''}")
        logger.info(f"  Keys processed: {result.get('keys_processed', 0)}/{result.get('keys_total', 0)}")
        if result.get('deferred_keys'):
            logger.warning(f"  Deferred keys: {len(result['deferred_keys'])}")
        logger.info("=" * 60)
        result['duration_seconds'] = round(duration, 2)
        result['timestamp'] = datetime.now().isoformat()

    except Exception as e:
        safe_rollback(db)
        logger.error(f"Error in trend {pass_name} pass: {e}", exc_info=True)
        result = {
            'status': 'failed',
            'error': str(e),
            'pass': pass_name,
            'idempotency_key': key,
            'timestamp': datetime.now().isoformat(),
        }
    finally:
        db.close()

    if result.get('status') == 'failed' and task.request.retries < task.max_retries:
        countdown = _retry_countdown(task.request.retries)
        logger.warning(
            f"Pass {pass_name} failed ({result.get('error')}); retrying {key} in {countdown}s "
            f"(attempt {task.request.retries + 1}/{task.max_retries})"
        )
        raise task.retry(kwargs={**kwargs, 'idempotency_key': key}, countdown=countdown)
    return result


@celery_app.task(bind=True, name='trendwatch.tasks.trend_tasks.run_detection_pass', max_retries=PASS_MAX_RETRIES)
def run_detection_pass(self, idempotency_key: Optional[str] = None, limit: Optional[int] = None):
    """Cluster pending evidence and upsert trend events."""
    return _run_pass(self, "detection", "run_detection_pass", idempotency_key, limit=limit)


@celery_app.task(bind=True, name='trendwatch.tasks.trend_tasks.run_refresh_pass', max_retries=PASS_MAX_RETRIES)
def run_refresh_pass(self, idempotency_key: Optional[str] = None):
    return _run_pass(self, "refresh", "run_refresh_pass", idempotency_key)


@celery_app.task(bind=True, name='trendwatch.tasks.trend_tasks.run_consolidation_pass', max_retries=PASS_MAX_RETRIES)
def run_consolidation_pass(self, idempotency_key: Optional[str] = None):
    return _run_pass(self, "consolidation", "run_consolidation_pass", idempotency_key)


@celery_app.task(bind=True, name='trendwatch.tasks.trend_tasks.run_semantic_pass', max_retries=PASS_MAX_RETRIES)
def run_semantic_pass(self, idempotency_key: Optional[str] = None):
    return _run_pass(self, "semantic", "run_semantic_pass", idempotency_key)


@celery_app.task(bind=True, name='trendwatch.tasks.trend_tasks.run_baseline_rebuild_pass', max_retries=PASS_MAX_RETRIES)
def run_baseline_rebuild_pass(self, idempotency_key: Optional[str] = None):
    """Daily full rebuild of topic baselines from hourly buckets."""
    return _run_pass(self, "baseline", "run_baseline_rebuild_pass", idempotency_key)


@celery_app.task(bind=True, name='trendwatch.tasks.trend_tasks.run_projection_pass', max_retries=PASS_MAX_RETRIES)
def run_projection_pass(self, idempotency_key: Optional[str] = None):
    """Project live trends onto every active organization."""
    return _run_pass(self, "projection", "run_projection_pass", idempotency_key)


@celery_app.task(name='trendwatch.tasks.trend_tasks.ingest_evidence')
def ingest_evidence(records: list):
    """Normalize and persist a batch of raw mention records."""
    db = SessionLocal()
    try:
        result = TrendPipelineService(db).ingest_batch(records)
        result['timestamp'] = datetime.now().isoformat()
        return result
    except Exception as e:
        safe_rollback(db)
        logger.error(f"Error ingesting evidence batch: {e}", exc_info=True)
        return {'error': str(e), 'timestamp': datetime.now().isoformat()}
    finally:
        db.close()
