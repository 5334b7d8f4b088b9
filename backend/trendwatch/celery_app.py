"""
Celery configuration for the scheduled trend passes.
"""
import logging
import os

# Disable MPS/Metal before any PyTorch imports (sentence-transformers) to avoid fork() issues on macOS
os.environ['PYTORCH_ENABLE_MPS_FALLBACK'] = '1'
os.environ['TOKENIZERS_PARALLELISM'] = 'false'

from celery import Celery
from celery.schedules import crontab
from .config import settings

celery_app = Celery(
    "trendwatch",
    broker=settings.celery_broker_url,
    backend=settings.celery_result_backend,
    include=[
        'trendwatch.tasks.trend_tasks',
    ]
)

celery_app.conf.update(
    task_serializer='json',
    accept_content=['json'],
    result_serializer='json',
    timezone=settings.celery_timezone,
    enable_utc=True,
    task_track_started=True,
    task_time_limit=3600,  # A pass never legitimately runs for an hour
    task_soft_time_limit=3300,
    worker_prefetch_multiplier=1,
    broker_connection_retry_on_startup=True,
)

_logger = logging.getLogger(__name__)


@celery_app.on_after_configure.connect
def _log_timezone(sender, **kwargs):
    _logger.info("Celery timezone: %s (enable_utc=%s)", settings.celery_timezone, True)
    if not settings.semantic_clustering_enabled:
        _logger.warning("Semantic clustering disabled via SEMANTIC_CLUSTERING_ENABLED=false")


celery_app.conf.result_expires = 86400

celery_app.conf.beat_schedule = {
    # Pending evidence -> clusters -> trend events
    'trend-detection-pass': {
        'task': 'trendwatch.tasks.trend_tasks.run_detection_pass',
        'schedule': crontab(minute=f"*/{settings.detection_pass_interval_minutes}"),
    },
    # Window roll-off, confidence decay and stage progression
    'trend-refresh-pass': {
        'task': 'trendwatch.tasks.trend_tasks.run_refresh_pass',
        'schedule': crontab(minute=f"*/{settings.refresh_pass_interval_minutes}"),
    },
    'org-projection-pass': {
        'task': 'trendwatch.tasks.trend_tasks.run_projection_pass',
        'schedule': crontab(minute=f"*/{settings.projection_pass_interval_minutes}"),
    },
    'semantic-clustering-pass': {
        'task': 'trendwatch.tasks.trend_tasks.run_semantic_pass',
        'schedule': crontab(minute=30),
    },
    'phrase-cluster-consolidation': {
        'task': 'trendwatch.tasks.trend_tasks.run_consolidation_pass',
        'schedule': crontab(hour=settings.consolidation_pass_hour, minute=0),
    },
    'topic-baseline-rebuild': {
        'task': 'trendwatch.tasks.trend_tasks.run_baseline_rebuild_pass',
        'schedule': crontab(hour=settings.baseline_rebuild_hour, minute=0),
    },
}
