"""Organization interest profiles and per-organization trend projections"""
from sqlalchemy import (
    Column,
    Integer,
    String,
    Float,
    DateTime,
    Boolean,
    Index,
    UniqueConstraint,
    CheckConstraint,
    JSON,
)
from sqlalchemy.sql import func
from ..database import Base

PRIORITY_BUCKETS = ("blocked", "low", "medium", "high", "critical")


class Organization(Base):
    """Subscribing organization and its interest profile"""

    __tablename__ = "organizations"

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String(200), nullable=False)
    org_type = Column(String(40))  # advocacy, campaign, union, nonprofit, ...
    is_active = Column(Boolean, default=True, nullable=False)

    # Profile lists (plain strings)
    focus_areas = Column(JSON, default=list)
    geographies = Column(JSON, default=list)  # States, cities, districts
    stakeholders = Column(JSON, default=list)
    allies = Column(JSON, default=list)
    opponents = Column(JSON, default=list)

    # Bumped whenever the profile, topics or watchlist change
    profile_version = Column(Integer, nullable=False, default=1)

    created_at = Column(DateTime, server_default=func.now())
    updated_at = Column(DateTime, server_default=func.now(), onupdate=func.now())


class OrgInterestTopic(Base):
    """Weighted topic affinity for an organization"""

    __tablename__ = "org_interest_topics"

    id = Column(Integer, primary_key=True, index=True)
    organization_id = Column(Integer, nullable=False, index=True)
    topic = Column(String(200), nullable=False)
    weight = Column(Float, nullable=False, default=1.0)  # 0-1

    __table_args__ = (
        UniqueConstraint("organization_id", "topic", name="uix_org_interest_topic"),
        CheckConstraint("weight >= 0 AND weight <= 1", name="ck_org_topic_weight_range"),
    )


class OrgWatchlistEntry(Base):
    """Watched entity/term with explicit allow/deny overrides"""

    __tablename__ = "org_watchlist_entries"

    id = Column(Integer, primary_key=True, index=True)
    organization_id = Column(Integer, nullable=False, index=True)
    term = Column(String(200), nullable=False)
    entity_type = Column(String(30))
    is_allowlisted = Column(Boolean, nullable=False, default=False)
    is_blocked = Column(Boolean, nullable=False, default=False)
    weight = Column(Float, nullable=False, default=1.0)

    __table_args__ = (
        UniqueConstraint("organization_id", "term", name="uix_org_watchlist_term"),
    )


class TrendDetectionSettings(Base):
    """Stored detection options; organization_id NULL is the global default row"""

    __tablename__ = "trend_detection_settings"

    id = Column(Integer, primary_key=True, index=True)
    organization_id = Column(Integer, unique=True)
    options = Column(JSON, nullable=False, default=dict)
    updated_at = Column(DateTime, server_default=func.now(), onupdate=func.now())


class OrgTrendScore(Base):
    """Per-(organization, trend event) relevance projection"""

    __tablename__ = "org_trend_scores"

    id = Column(Integer, primary_key=True, index=True)
    organization_id = Column(Integer, nullable=False, index=True)
    trend_event_id = Column(Integer, nullable=False, index=True)
    trend_key = Column(String(120), nullable=False)

    relevance_score = Column(Float, nullable=False, default=0.0)
    urgency_score = Column(Float, nullable=False, default=0.0)
    priority_bucket = Column(String(12), nullable=False, default="low")
    matched_topics = Column(JSON, default=list)
    matched_entities = Column(JSON, default=list)
    matched_geographies = Column(JSON, default=list)
    explanation = Column(JSON)
    is_allowlisted = Column(Boolean, nullable=False, default=False)
    is_blocked = Column(Boolean, nullable=False, default=False)

    # Inputs snapshot for material-change detection
    trend_stage_at_compute = Column(String(20))
    confidence_at_compute = Column(Float)
    trend_version_at_compute = Column(Integer)
    profile_version_at_compute = Column(Integer)

    computed_at = Column(DateTime, nullable=False)
    expires_at = Column(DateTime, nullable=False, index=True)

    __table_args__ = (
        UniqueConstraint("organization_id", "trend_event_id", name="uix_org_trend_score"),
        CheckConstraint("relevance_score >= 0 AND relevance_score <= 100", name="ck_org_score_relevance_range"),
        CheckConstraint("urgency_score >= 0 AND urgency_score <= 100", name="ck_org_score_urgency_range"),
        Index("idx_org_score_bucket", "organization_id", "priority_bucket"),
    )
