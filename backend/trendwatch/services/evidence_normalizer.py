"""Validation, canonicalization and dedupe of incoming mention records."""
from __future__ import annotations

import hashlib
import logging
import math
import re
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Iterable, Mapping, Optional
from urllib.parse import parse_qsl, urlencode, urlsplit, urlunsplit

from sqlalchemy import tuple_
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from ..config import settings
from ..config.detection_config import SOURCE_TYPE_WEIGHTS, TIER_WEIGHTS
from ..domain.errors import InvalidEvidence, StorageError
from ..domain.trend_scoring import NewEvidence
from ..models.trend import MentionEvidence
from .topic_identity_normalization import (
    UNKNOWN_TOPIC_KEY,
    canonical_topic_key,
    is_blocklisted,
)

logger = logging.getLogger(__name__)

_TRACKING_PARAMS = {"fbclid", "gclid", "dclid", "mc_cid", "mc_eid", "ref", "ref_src", "igshid", "cmpid", "smid"}
_SOURCE_CATEGORIES = {
    "rss": "news",
    "google_news": "news",
    "news": "news",
    "bluesky": "social",
    "reddit": "social",
    "twitter": "social",
    "x": "social",
    "social": "social",
    "press": "press",
    "press_release": "press",
    "legislative": "legislative",
    "congress_gov": "legislative",
}
_TIER_ALIASES = {
    "tier1": "tier1", "1": "tier1", "t1": "tier1",
    "tier2": "tier2", "2": "tier2", "t2": "tier2",
    "tier3": "tier3", "3": "tier3", "t3": "tier3",
}
LOWEST_TIER = "tier3"


def utcnow() -> datetime:
    """Naive UTC now (all stored timestamps are naive UTC)."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def to_naive_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


def parse_timestamp(value: Any) -> Optional[datetime]:
    """Parse a datetime or ISO-8601 string into naive UTC; None when absent."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return to_naive_utc(value)
    if isinstance(value, str):
        text = value.strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        try:
            return to_naive_utc(datetime.fromisoformat(text))
        except ValueError as exc:
            raise InvalidEvidence(f"unparseable timestamp {value!r}", field="published_at") from exc
    raise InvalidEvidence(f"unsupported timestamp type {type(value).__name__}", field="published_at")


def canonicalize_url(url: Optional[str]) -> tuple[Optional[str], Optional[str]]:
    """Strip tracking params/fragments; return (canonical_url, domain)."""
    if not url or not str(url).strip():
        return None, None
    parts = urlsplit(str(url).strip())
    if not parts.scheme or not parts.netloc:
        return None, None
    host = parts.netloc.lower()
    if host.startswith("www."):
        host = host[4:]
    if host.endswith(":80") or host.endswith(":443"):
        host = host.rsplit(":", 1)[0]
    query = sorted(
        (key, val)
        for key, val in parse_qsl(parts.query, keep_blank_values=True)
        if not key.lower().startswith("utm_") and key.lower() not in _TRACKING_PARAMS
    )
    path = parts.path.rstrip("/") or ""
    canonical = urlunsplit((parts.scheme.lower(), host, path, urlencode(query), ""))
    return canonical, host


def compute_content_hash(text: str) -> str:
    normalized = re.sub(r"\s+", " ", (text or "").strip().lower())
    return hashlib.sha256(normalized.encode("utf-8")).hexdigest()


def normalize_tier(value: Any) -> str:
    """Map a supplied tier to tier1/tier2/tier3; absent or unknown is the lowest tier."""
    if value is None:
        return LOWEST_TIER
    return _TIER_ALIASES.get(str(value).strip().lower(), LOWEST_TIER)


def source_category(source_type: str) -> str:
    return _SOURCE_CATEGORIES.get(source_type, "other")


def contribution_weight(source_tier: str, source_type: str) -> float:
    tier_weight = TIER_WEIGHTS.get(source_tier, TIER_WEIGHTS["unclassified"])
    return round(tier_weight * SOURCE_TYPE_WEIGHTS.get(source_type, 1.0), 6)


@dataclass
class IngestResult:
    """Outcome of one ingest batch."""

    accepted: list[MentionEvidence] = field(default_factory=list)
    duplicates: int = 0
    rejected: list[dict] = field(default_factory=list)

    def as_dict(self) -> dict:
        return {
            "accepted": len(self.accepted),
            "duplicates": self.duplicates,
            "rejected": len(self.rejected),
            "rejections": list(self.rejected),
        }


class EvidenceNormalizer:
    """Turns raw mention records into persisted, deduplicated evidence rows."""

    def __init__(self, db: Session, *, future_tolerance: Optional[timedelta] = None, max_labels: Optional[int] = None):
        self.db = db
        self.future_tolerance = future_tolerance or timedelta(minutes=settings.evidence_future_tolerance_minutes)
        self.max_labels = max_labels or settings.evidence_max_labels_per_record

    def normalize_record(self, raw: Mapping[str, Any], *, now: Optional[datetime] = None) -> list[NewEvidence]:
        """Validate one raw record and expand it into one evidence item per topic label."""
        current = now or utcnow()

        source_type = str(raw.get("source_type") or "").strip().lower()
        if not source_type:
            raise InvalidEvidence("source_type is required", field="source_type")

        published_at = parse_timestamp(raw.get("published_at"))
        if published_at is None:
            raise InvalidEvidence("published_at is required", field="published_at")
        if published_at > current + self.future_tolerance:
            raise InvalidEvidence(
                f"published_at {published_at.isoformat()} is in the future", field="published_at"
            )
        observed_at = parse_timestamp(raw.get("observed_at")) or current

        headline = (raw.get("title") or raw.get("headline") or "").strip()
        content = (raw.get("content") or "").strip()
        canonical_url, domain = canonicalize_url(raw.get("source_url") or raw.get("url"))
        supplied_hash = (raw.get("content_hash") or "").strip().lower()
        if not (content or headline):
            raise InvalidEvidence("content is empty", field="content")

        if supplied_hash:
            item_hash = supplied_hash[:64]
        elif canonical_url:
            item_hash = compute_content_hash(canonical_url)
        else:
            item_hash = compute_content_hash(f"{headline}\n{content}")

        sentiment = raw.get("sentiment_score")
        if sentiment is not None:
            try:
                sentiment = float(sentiment)
            except (TypeError, ValueError) as exc:
                raise InvalidEvidence("sentiment_score must be numeric", field="sentiment_score") from exc
            if math.isnan(sentiment) or math.isinf(sentiment) or not -1.0 <= sentiment <= 1.0:
                raise InvalidEvidence("sentiment_score must be within [-1, 1]", field="sentiment_score")

        tier = normalize_tier(raw.get("source_tier"))
        weight = contribution_weight(tier, source_type)
        labels = self._extract_labels(raw.get("labels") or raw.get("topics") or [])
        if not labels:
            raise InvalidEvidence("no usable topic labels", field="labels")

        evidence: list[NewEvidence] = []
        for label, entity_type, quality_hint in labels:
            topic_key = canonical_topic_key(label)
            evidence.append(
                NewEvidence(
                    content_hash=hashlib.sha256(f"{item_hash}:{topic_key}".encode("utf-8")).hexdigest(),
                    item_hash=item_hash,
                    source_type=source_type,
                    source_category=source_category(source_type),
                    source_tier=tier,
                    topic_key=topic_key,
                    raw_label=label[:300],
                    published_at=published_at,
                    observed_at=observed_at,
                    contribution_weight=weight,
                    source_name=(raw.get("source_name") or None),
                    canonical_url=canonical_url,
                    domain=domain or raw.get("domain"),
                    headline=headline[:500] or None,
                    entity_type=entity_type,
                    label_quality_hint=quality_hint,
                    sentiment_score=sentiment,
                )
            )
        return evidence

    def _extract_labels(self, raw_labels: Iterable[Any]) -> list[tuple[str, Optional[str], Optional[str]]]:
        if isinstance(raw_labels, (str, bytes)):
            raw_labels = [raw_labels]
        labels: list[tuple[str, Optional[str], Optional[str]]] = []
        seen_keys: set[str] = set()
        for item in raw_labels:
            if isinstance(item, Mapping):
                text = str(item.get("label") or item.get("name") or "").strip()
                entity_type = item.get("entity_type")
                quality_hint = item.get("label_quality")
            else:
                text = str(item or "").strip()
                entity_type = None
                quality_hint = None
            if not text or is_blocklisted(text):
                continue
            key = canonical_topic_key(text)
            if key == UNKNOWN_TOPIC_KEY or key in seen_keys:
                continue
            seen_keys.add(key)
            labels.append((text, entity_type, quality_hint))
            if len(labels) >= self.max_labels:
                break
        return labels

    def ingest_batch(self, records: Iterable[Mapping[str, Any]], *, now: Optional[datetime] = None) -> IngestResult:
        """Validate, dedupe and persist a batch; duplicates and invalid records short-circuit."""
        current = now or utcnow()
        result = IngestResult()
        candidates: list[NewEvidence] = []

        for index, raw in enumerate(records):
            try:
                candidates.extend(self.normalize_record(raw, now=current))
            except InvalidEvidence as exc:
                logger.warning("Dropping invalid evidence record #%d: %s", index, exc)
                result.rejected.append({"index": index, "field": exc.field, "reason": exc.reason})

        # Stable sort keeps arrival order for equal timestamps
        candidates.sort(key=lambda item: item.published_at)
        unique: list[NewEvidence] = []
        seen: set[tuple[str, str]] = set()
        for item in candidates:
            if item.dedupe_key in seen:
                result.duplicates += 1
                continue
            seen.add(item.dedupe_key)
            unique.append(item)

        for attempt in range(2):
            try:
                existing = self._existing_keys([item.dedupe_key for item in unique])
                fresh = [item for item in unique if item.dedupe_key not in existing]
                rows = [self.to_row(item) for item in fresh]
                self.db.add_all(rows)
                self.db.commit()
                result.duplicates += len(unique) - len(fresh)
                result.accepted = rows
                break
            except IntegrityError:
                # Another ingest committed the same items between our read and write
                self.db.rollback()
                if attempt == 1:
                    raise StorageError("evidence dedupe kept conflicting with concurrent ingest")
                logger.info("Evidence insert raced a concurrent ingest; re-checking duplicates")
            except SQLAlchemyError as exc:
                self.db.rollback()
                raise StorageError(f"failed to persist evidence batch: {exc}") from exc

        logger.info(
            "Evidence batch: %d accepted, %d duplicates, %d rejected",
            len(result.accepted),
            result.duplicates,
            len(result.rejected),
        )
        return result

    def _existing_keys(self, keys: list[tuple[str, str]]) -> set[tuple[str, str]]:
        existing: set[tuple[str, str]] = set()
        for start in range(0, len(keys), 500):
            chunk = keys[start:start + 500]
            if not chunk:
                continue
            rows = (
                self.db.query(MentionEvidence.content_hash, MentionEvidence.source_type)
                .filter(tuple_(MentionEvidence.content_hash, MentionEvidence.source_type).in_(chunk))
                .all()
            )
            existing.update((row[0], row[1]) for row in rows)
        return existing

    @staticmethod
    def to_row(item: NewEvidence) -> MentionEvidence:
        return MentionEvidence(
            content_hash=item.content_hash,
            item_hash=item.item_hash,
            source_type=item.source_type,
            source_category=item.source_category,
            source_tier=item.source_tier,
            source_name=item.source_name,
            canonical_url=item.canonical_url,
            domain=item.domain,
            headline=item.headline,
            topic_key=item.topic_key,
            raw_label=item.raw_label,
            entity_type=item.entity_type,
            label_quality_hint=item.label_quality_hint,
            published_at=item.published_at,
            observed_at=item.observed_at,
            sentiment_score=item.sentiment_score,
            contribution_weight=item.contribution_weight,
        )



def evidence_from_row(row: MentionEvidence) -> NewEvidence:
    return NewEvidence(
        content_hash=row.content_hash,
        item_hash=row.item_hash,
        source_type=row.source_type,
        source_category=row.source_category,
        source_tier=row.source_tier,
        topic_key=row.topic_key,
        raw_label=row.raw_label,
        published_at=row.published_at,
        observed_at=row.observed_at,
        contribution_weight=row.contribution_weight,
        source_name=row.source_name,
        canonical_url=row.canonical_url,
        domain=row.domain,
        headline=row.headline,
        entity_type=row.entity_type,
        label_quality_hint=row.label_quality_hint,
        sentiment_score=row.sentiment_score,
    )
