"""
Configuration settings for the Trendwatch service.
Loads environment variables and provides runtime settings.
"""
from pathlib import Path
from pydantic_settings import BaseSettings
from typing import List

# settings.py is at backend/trendwatch/config/settings.py → 4 levels up
_PROJECT_ROOT = Path(__file__).resolve().parent.parent.parent.parent


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Database - use absolute path to avoid working directory issues
    database_url: str = f"sqlite:///{_PROJECT_ROOT}/data/trendwatch.db"

    # Server
    api_host: str = "0.0.0.0"
    api_port: int = 8000
    cors_origins: str = "http://localhost:5173,http://localhost:3000"

    # Celery / Redis
    redis_host: str = "localhost"
    redis_port: int = 6379
    redis_db: int = 0
    lock_redis_db: int = 2  # Separate DB for pass locks
    celery_broker_url: str = "redis://localhost:6379/0"
    celery_result_backend: str = "redis://localhost:6379/1"
    celery_timezone: str = "UTC"

    # Batch passes
    trend_pass_deadline_seconds: float = 240.0  # Keys not reached by the deadline are deferred
    trend_pass_max_workers: int = 4  # Worker threads per pass (keys partitioned across them)
    trend_pass_lock_ttl_seconds: int = 900  # Redis lock TTL for a running pass
    detection_pass_interval_minutes: int = 5
    refresh_pass_interval_minutes: int = 15
    projection_pass_interval_minutes: int = 15
    consolidation_pass_hour: int = 3  # Daily phrase-cluster consolidation (UTC)
    baseline_rebuild_hour: int = 4  # Daily full baseline rebuild (UTC)

    # Evidence ingestion
    evidence_future_tolerance_minutes: int = 15  # Allowed clock skew for published_at
    evidence_max_labels_per_record: int = 12

    # Clustering
    phrase_similarity_threshold: float = 0.7
    semantic_similarity_threshold: float = 0.82
    semantic_clustering_enabled: bool = True
    embedding_model_name: str = "all-MiniLM-L6-v2"
    consolidation_max_clusters: int = 2000  # Cap on pairwise comparisons per run

    # Org relevance projection
    org_score_ttl_hours: int = 24  # OrgTrendScore expiry
    org_score_min_relevance: float = 10.0  # Below this a score row is not stored
    org_score_confidence_delta: float = 0.1  # Confidence move that forces recompute

    @property
    def cors_origins_list(self) -> List[str]:
        """Convert CORS origins string to list."""
        return [origin.strip() for origin in self.cors_origins.split(",")]

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"


# Global settings instance
settings = Settings()
