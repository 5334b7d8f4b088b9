"""Trend detection models: evidence, baselines, trend events and clusters"""
from uuid import uuid4

from sqlalchemy import (
    Column,
    Integer,
    String,
    Float,
    DateTime,
    Text,
    Boolean,
    Index,
    UniqueConstraint,
    CheckConstraint,
    JSON,
)
from sqlalchemy.sql import func
from ..database import Base

TREND_STAGES = ("new", "rising", "trending", "peaked", "declining", "stale", "archived")
PASS_STATUSES = ("running", "completed", "degraded", "failed")


class MentionEvidence(Base):
    """One observed occurrence of a topic/entity in a source item"""

    __tablename__ = "mention_evidence"

    id = Column(Integer, primary_key=True, index=True)

    # Dedupe key: content_hash + source_type
    content_hash = Column(String(64), nullable=False)
    item_hash = Column(String(64), nullable=False, index=True)  # Hash of the source item (shared across its labels)
    source_type = Column(String(40), nullable=False, index=True)  # rss, google_news, bluesky, press_release, ...
    source_category = Column(String(20), nullable=False)  # news, social, press, legislative, other
    source_tier = Column(String(12), nullable=False, default="tier3")  # tier1, tier2, tier3
    source_name = Column(String(200))

    canonical_url = Column(String(1000))
    domain = Column(String(255), index=True)
    headline = Column(String(500))

    # Upstream-extracted label
    topic_key = Column(String(120), nullable=False, index=True)
    raw_label = Column(String(300), nullable=False)
    entity_type = Column(String(30))
    label_quality_hint = Column(String(30))

    published_at = Column(DateTime, nullable=False, index=True)
    observed_at = Column(DateTime, nullable=False)
    sentiment_score = Column(Float)
    contribution_weight = Column(Float, nullable=False, default=0.0)

    # Attachment (set once by the trend event store)
    trend_event_id = Column(Integer, index=True)
    is_primary = Column(Boolean, default=False, nullable=False)
    attached_at = Column(DateTime)
    clustered_at = Column(DateTime)  # Counted into its phrase cluster member

    created_at = Column(DateTime, server_default=func.now())

    __table_args__ = (
        UniqueConstraint("content_hash", "source_type", name="uix_evidence_hash_source_type"),
        Index("idx_evidence_event_published", "trend_event_id", "published_at"),
        CheckConstraint("contribution_weight >= 0", name="ck_evidence_weight_non_negative"),
    )


class TopicHourlyCount(Base):
    """Hourly mention bucket per normalized topic key (backs the rolling baseline)"""

    __tablename__ = "topic_hourly_counts"

    id = Column(Integer, primary_key=True, index=True)
    topic_key = Column(String(120), nullable=False)
    bucket_start = Column(DateTime, nullable=False)
    mention_count = Column(Integer, nullable=False, default=0)

    __table_args__ = (
        UniqueConstraint("topic_key", "bucket_start", name="uix_topic_hourly_bucket"),
        CheckConstraint("mention_count >= 0", name="ck_topic_hourly_non_negative"),
    )


class TopicBaseline(Base):
    """Rolling mention-rate statistics per normalized topic key"""

    __tablename__ = "topic_baselines"

    id = Column(Integer, primary_key=True, index=True)
    topic_key = Column(String(120), nullable=False, unique=True, index=True)

    # Sliding window state (hour buckets in [window_start_hour, last_bucket_hour])
    window_hours = Column(Integer, nullable=False)
    window_start_hour = Column(DateTime)
    last_bucket_hour = Column(DateTime)

    # Welford running state over hourly bucket counts
    data_points = Column(Integer, nullable=False, default=0)
    running_mean = Column(Float, nullable=False, default=0.0)
    running_m2 = Column(Float, nullable=False, default=0.0)

    # Derived statistics
    avg_hourly_mentions = Column(Float, nullable=False, default=0.0)
    avg_daily_mentions = Column(Float, nullable=False, default=0.0)
    std_dev = Column(Float, nullable=False, default=0.0)
    relative_std_dev = Column(Float, nullable=False, default=0.0)
    peak_mentions_24h = Column(Integer, nullable=False, default=0)
    avg_hourly_7d = Column(Float, nullable=False, default=0.0)
    is_stable = Column(Boolean, nullable=False, default=False)

    last_calculated_at = Column(DateTime)

    __table_args__ = (
        CheckConstraint("data_points >= 0", name="ck_baseline_data_points"),
        CheckConstraint("avg_hourly_mentions >= 0", name="ck_baseline_avg_non_negative"),
        CheckConstraint("std_dev >= 0", name="ck_baseline_std_non_negative"),
        CheckConstraint("peak_mentions_24h >= 0", name="ck_baseline_peak_non_negative"),
    )


class TrendEvent(Base):
    """Canonical, deduplicated detected trend"""

    __tablename__ = "trend_events"

    id = Column(Integer, primary_key=True, index=True)

    # Identity
    event_key = Column(String(120), nullable=False, unique=True, index=True)
    canonical_label = Column(String(300), nullable=False)
    alias_variants = Column(JSON, default=list)
    entity_type = Column(String(30), default="topic")
    phrase_cluster_id = Column(Integer, index=True)
    semantic_cluster_id = Column(Integer, index=True)

    # Windowed counts (deduped evidence)
    current_1h = Column(Integer, nullable=False, default=0)
    current_6h = Column(Integer, nullable=False, default=0)
    current_24h = Column(Integer, nullable=False, default=0)
    evidence_count = Column(Integer, nullable=False, default=0)
    source_count = Column(Integer, nullable=False, default=0)  # Distinct source types
    domain_count = Column(Integer, nullable=False, default=0)  # Distinct corroborating domains
    news_count = Column(Integer, nullable=False, default=0)
    social_count = Column(Integer, nullable=False, default=0)
    tier1_count = Column(Integer, nullable=False, default=0)
    tier2_count = Column(Integer, nullable=False, default=0)
    tier3_count = Column(Integer, nullable=False, default=0)
    avg_sentiment = Column(Float)

    # Baseline snapshot
    baseline_hourly = Column(Float, nullable=False, default=0.0)
    baseline_std_dev = Column(Float, nullable=False, default=0.0)
    baseline_data_points = Column(Integer, nullable=False, default=0)
    baseline_established = Column(Boolean, nullable=False, default=False)

    # Velocity / burst metrics
    velocity = Column(Float, nullable=False, default=0.0)
    velocity_score = Column(Float, nullable=False, default=0.0)
    previous_velocity = Column(Float)
    acceleration = Column(Float, nullable=False, default=0.0)
    z_score = Column(Float, nullable=False, default=0.0)
    poisson_surprise = Column(Float, nullable=False, default=0.0)
    cross_source_score = Column(Float, nullable=False, default=0.0)
    spike_kind = Column(String(20), default="none")  # none, spike, breakthrough
    anomaly_status = Column(String(20), default="unclassified")  # anomalous, normal, unclassified
    peak_1h = Column(Integer, nullable=False, default=0)
    peaked_at = Column(DateTime)

    # Quality / scoring
    confidence_score = Column(Float, nullable=False, default=0.0)
    label_quality = Column(String(30), default="entity_only")
    label_source = Column(String(40))
    is_evergreen = Column(Boolean, nullable=False, default=False)
    evergreen_penalty = Column(Float, nullable=False, default=1.0)
    trend_score = Column(Float, nullable=False, default=0.0)
    is_tier3_only = Column(Boolean, nullable=False, default=False)
    is_trending = Column(Boolean, nullable=False, default=False, index=True)
    is_breaking = Column(Boolean, nullable=False, default=False, index=True)
    breaking_path = Column(String(40))
    score_details = Column(JSON)

    # Lifecycle
    trend_stage = Column(String(20), nullable=False, default="new", index=True)
    stage_updated_at = Column(DateTime)
    first_seen_at = Column(DateTime, nullable=False)
    last_seen_at = Column(DateTime, nullable=False)
    last_scored_at = Column(DateTime)
    archived_at = Column(DateTime)
    merged_into_event_id = Column(Integer)
    version = Column(Integer, nullable=False, default=1)  # Bumped on every committed rescore

    created_at = Column(DateTime, server_default=func.now())
    updated_at = Column(DateTime, server_default=func.now(), onupdate=func.now())

    __table_args__ = (
        CheckConstraint("last_seen_at >= first_seen_at", name="ck_trend_seen_order"),
        CheckConstraint("confidence_score >= 0 AND confidence_score <= 1", name="ck_trend_confidence_range"),
        CheckConstraint(
            "current_1h >= 0 AND current_6h >= 0 AND current_24h >= 0 AND evidence_count >= 0",
            name="ck_trend_counts_non_negative",
        ),
        CheckConstraint(
            "trend_stage IN ('new', 'rising', 'trending', 'peaked', 'declining', 'stale', 'archived')",
            name="ck_trend_stage",
        ),
        Index("idx_trend_stage_last_seen", "trend_stage", "last_seen_at"),
    )


class TrendStageTransition(Base):
    """Audit trail for trend stage changes"""

    __tablename__ = "trend_stage_transitions"

    id = Column(Integer, primary_key=True, index=True)
    trend_event_id = Column(Integer, nullable=False, index=True)
    from_stage = Column(String(20), nullable=False)
    to_stage = Column(String(20), nullable=False)
    actor = Column(String(60), nullable=False, default="system")
    job_name = Column(String(80))
    rule_version = Column(String(40))
    reason = Column(String(200))
    transition_metadata = Column(JSON)
    transitioned_at = Column(DateTime, nullable=False)


class TopicAlias(Base):
    """Known surface variants mapped onto a canonical topic key"""

    __tablename__ = "topic_aliases"

    id = Column(Integer, primary_key=True, index=True)
    alias_key = Column(String(120), nullable=False, unique=True, index=True)
    canonical_key = Column(String(120), nullable=False, index=True)
    alias_text = Column(String(300), nullable=False)
    source = Column(String(40), default="manual")
    created_at = Column(DateTime, server_default=func.now())


class PhraseCluster(Base):
    """Surface-phrase cluster; its canonical_key is the owning trend event's key"""

    __tablename__ = "phrase_clusters"

    id = Column(Integer, primary_key=True, index=True)
    canonical_key = Column(String(120), nullable=False, unique=True, index=True)
    representative_key = Column(String(120), nullable=False)
    representative_label = Column(String(300), nullable=False)
    representative_authority = Column(Float, nullable=False, default=0.0)
    similarity_threshold = Column(Float, nullable=False)
    member_count = Column(Integer, nullable=False, default=0)
    avg_velocity = Column(Float, nullable=False, default=0.0)
    avg_confidence = Column(Float, nullable=False, default=0.0)
    is_active = Column(Boolean, nullable=False, default=True, index=True)
    merged_into_id = Column(Integer)
    created_at = Column(DateTime, nullable=False)
    updated_at = Column(DateTime)


class PhraseClusterMember(Base):
    """Raw phrase membership; phrase_key is unique so membership stays a partition"""

    __tablename__ = "phrase_cluster_members"

    id = Column(Integer, primary_key=True, index=True)
    cluster_id = Column(Integer, nullable=False, index=True)
    phrase_key = Column(String(120), nullable=False, unique=True)
    label = Column(String(300), nullable=False)
    authority_score = Column(Float, nullable=False, default=0.0)
    source_authority = Column(Float, nullable=False, default=0.0)  # Summed per-evidence source authority
    mention_count = Column(Integer, nullable=False, default=0)
    is_event_phrase = Column(Boolean, nullable=False, default=False)
    created_at = Column(DateTime, nullable=False)


class SemanticCluster(Base):
    """Higher-level grouping of topically related trend events"""

    __tablename__ = "semantic_clusters"

    id = Column(Integer, primary_key=True, index=True)
    label = Column(String(300), nullable=False)
    centroid = Column(Text)  # JSON-serialized vector
    member_count = Column(Integer, nullable=False, default=0)
    similarity_threshold = Column(Float, nullable=False)
    avg_velocity = Column(Float, nullable=False, default=0.0)
    avg_confidence = Column(Float, nullable=False, default=0.0)
    is_active = Column(Boolean, nullable=False, default=True, index=True)
    merged_into_id = Column(Integer)
    created_at = Column(DateTime, nullable=False)
    updated_at = Column(DateTime)


class TrendEmbedding(Base):
    """Embedding vector for a trend event's description text"""

    __tablename__ = "trend_embeddings"

    id = Column(Integer, primary_key=True, index=True)
    trend_event_id = Column(Integer, nullable=False, unique=True, index=True)
    embedding = Column(Text, nullable=False)
    embedding_model = Column(String(100), nullable=False)
    content_hash = Column(String(64), nullable=False)
    created_at = Column(DateTime, server_default=func.now())
    updated_at = Column(DateTime, server_default=func.now(), onupdate=func.now())


class TrendMergeHistory(Base):
    """Audit record for phrase-cluster / trend event merges"""

    __tablename__ = "trend_merge_history"

    id = Column(Integer, primary_key=True, index=True)
    source_cluster_id = Column(Integer, nullable=False, index=True)
    target_cluster_id = Column(Integer, nullable=False, index=True)
    source_event_key = Column(String(120))
    target_event_key = Column(String(120))
    merge_type = Column(String(30), nullable=False, default="auto")
    similarity = Column(Float)
    members_moved = Column(Integer, nullable=False, default=0)
    evidence_moved = Column(Integer, nullable=False, default=0)
    idempotency_key = Column(String(128), unique=True)
    merged_by = Column(String(50), default="system")
    merged_at = Column(DateTime, nullable=False)


class PassRun(Base):
    """One logical batch pass; idempotency_key makes re-runs detectable"""

    __tablename__ = "pass_runs"

    id = Column(Integer, primary_key=True, index=True)
    run_id = Column(String(36), nullable=False, unique=True, default=lambda: str(uuid4()))
    pass_name = Column(String(40), nullable=False, index=True)
    idempotency_key = Column(String(128), nullable=False, unique=True)
    status = Column(String(20), nullable=False, default="running")
    keys_total = Column(Integer, nullable=False, default=0)
    keys_processed = Column(Integer, nullable=False, default=0)
    deferred_keys = Column(JSON, default=list)
    stats = Column(JSON)
    error_message = Column(Text)
    attempts = Column(Integer, nullable=False, default=1)
    started_at = Column(DateTime, nullable=False)
    finished_at = Column(DateTime)

    __table_args__ = (
        CheckConstraint(
            "status IN ('running', 'completed', 'degraded', 'failed')",
            name="ck_pass_run_status",
        ),
    )
