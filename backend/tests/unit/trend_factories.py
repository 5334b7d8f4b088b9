"""Builders for evidence, trend events and organizations used across tests."""

from __future__ import annotations

import hashlib
from datetime import datetime, timedelta

from trendwatch.domain.trend_scoring import NewEvidence
from trendwatch.models.organization import Organization, OrgInterestTopic, OrgWatchlistEntry
from trendwatch.models.trend import TrendEvent
from trendwatch.services.evidence_normalizer import contribution_weight, source_category
from trendwatch.services.topic_identity_normalization import canonical_topic_key

T0 = datetime(2026, 3, 2, 12, 0)


def make_evidence(
    label: str,
    *,
    item: str = "item-1",
    source_type: str = "rss",
    tier: str = "tier1",
    published_at: datetime = T0,
    domain: str | None = "example.com",
    headline: str | None = None,
    quality_hint: str | None = None,
) -> NewEvidence:
    topic_key = canonical_topic_key(label)
    item_hash = hashlib.sha256(item.encode("utf-8")).hexdigest()
    return NewEvidence(
        content_hash=hashlib.sha256(f"{item_hash}:{topic_key}".encode("utf-8")).hexdigest(),
        item_hash=item_hash,
        source_type=source_type,
        source_category=source_category(source_type),
        source_tier=tier,
        topic_key=topic_key,
        raw_label=label,
        published_at=published_at,
        observed_at=published_at,
        contribution_weight=contribution_weight(tier, source_type),
        canonical_url=f"https://{domain}/{item}" if domain else None,
        domain=domain,
        headline=headline,
        label_quality_hint=quality_hint,
    )


def make_record(label: str = "Jane Doe Healthcare Bill", **overrides) -> dict:
    record = {
        "source_type": "rss",
        "source_tier": "tier1",
        "source_url": "https://www.example.com/story-1?utm_source=feed",
        "title": "Senate passes Jane Doe healthcare bill",
        "content": "The Senate passed the Jane Doe healthcare bill late Monday.",
        "published_at": (T0 - timedelta(minutes=30)).isoformat() + "Z",
        "labels": [{"label": label, "label_quality": "event_phrase"}],
    }
    record.update(overrides)
    return record


def make_trend(db=None, event_key: str | None = None, **fields) -> TrendEvent:
    """Trend event with sensible scored defaults; persisted when ``db`` is given."""
    label = fields.pop("canonical_label", "Senate Healthcare Vote")
    defaults = dict(
        event_key=event_key or canonical_topic_key(label),
        canonical_label=label,
        alias_variants=[],
        entity_type="event",
        trend_stage="rising",
        first_seen_at=T0 - timedelta(hours=2),
        last_seen_at=T0 - timedelta(minutes=10),
        current_1h=4,
        current_6h=8,
        current_24h=12,
        evidence_count=12,
        source_count=2,
        tier1_count=2,
        tier2_count=3,
        tier3_count=7,
        velocity=3.0,
        velocity_score=200.0,
        acceleration=0.5,
        confidence_score=0.6,
        trend_score=40.0,
        baseline_established=True,
        is_evergreen=False,
        version=1,
    )
    defaults.update(fields)
    event = TrendEvent(**defaults)
    if db is not None:
        db.add(event)
        db.commit()
    return event


def make_org(
    db,
    *,
    name: str = "Healthcare Now",
    org_type: str | None = "advocacy",
    topics: tuple[tuple[str, float], ...] = (),
    watchlist: tuple[dict, ...] = (),
    **fields,
) -> Organization:
    org = Organization(name=name, org_type=org_type, is_active=True, profile_version=1, **fields)
    db.add(org)
    db.flush()
    for topic, weight in topics:
        db.add(OrgInterestTopic(organization_id=org.id, topic=topic, weight=weight))
    for entry in watchlist:
        db.add(OrgWatchlistEntry(organization_id=org.id, **entry))
    db.commit()
    return org
