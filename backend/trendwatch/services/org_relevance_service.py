"""
Organization relevance projection.

Projects each live trend event onto every active organization's interest
profile (weighted topics, watchlist terms, focus areas, stakeholders, allies,
opponents, geographies) and stores an explainable OrgTrendScore per
intersecting pair. Scores carry a TTL; they are recomputed when the trend
moves materially (stage change, confidence delta), when the org profile
version changes, or lazily when read after expiry.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Iterable, Optional, Sequence

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from ..config import settings
from ..config.detection_config import RelevanceWeights, TrendDetectionConfig, load_detection_config
from ..domain.errors import ProjectionStale, StorageError
from ..domain.trend_scoring.models import BreakingSignals
from ..models.organization import Organization, OrgInterestTopic, OrgTrendScore, OrgWatchlistEntry
from ..models.trend import TrendEvent
from .evidence_normalizer import utcnow
from .label_quality_service import is_single_word
from .topic_identity_normalization import label_words
from .velocity_service import classify_breaking

logger = logging.getLogger(__name__)

DEFAULT_RELEVANCE_WEIGHTS = RelevanceWeights()
CONTAINMENT_STRENGTH = 0.85
MIN_TOKEN_LENGTH = 3

# Seed interests for organizations that have not configured any topics yet
DEFAULT_TOPICS_BY_ORG_TYPE: dict[str, tuple[tuple[str, float], ...]] = {
    "advocacy": (("civil rights", 0.8), ("voting rights", 0.8), ("legislation", 0.6)),
    "campaign": (("election", 0.9), ("polling", 0.7), ("campaign finance", 0.7), ("debate", 0.6)),
    "union": (("labor", 0.9), ("workers", 0.8), ("minimum wage", 0.8), ("strike", 0.8)),
    "nonprofit": (("funding", 0.7), ("community", 0.6), ("policy", 0.5)),
    "environmental": (("climate", 0.9), ("clean energy", 0.8), ("pollution", 0.7)),
    "healthcare": (("healthcare", 0.9), ("medicaid", 0.8), ("medicare", 0.8), ("insurance", 0.6)),
}
FALLBACK_DEFAULT_TOPICS: tuple[tuple[str, float], ...] = (("legislation", 0.5), ("election", 0.5))


def normalize_match_text(text: Optional[str]) -> str:
    return " ".join(label_words(text or ""))


def text_contains(haystack: str, needle: str) -> bool:
    """Word-bounded containment in either direction of the normalized texts."""
    hay = normalize_match_text(haystack)
    ned = normalize_match_text(needle)
    if not hay or not ned:
        return False
    return f" {ned} " in f" {hay} " or f" {hay} " in f" {ned} "


def match_strength(text: str, term: str) -> float:
    """1.0 exact, 0.85 containment, else token overlap over the larger token set."""
    left = normalize_match_text(text)
    right = normalize_match_text(term)
    if not left or not right:
        return 0.0
    if left == right:
        return 1.0
    if text_contains(left, right):
        return CONTAINMENT_STRENGTH
    left_tokens = {token for token in left.split() if len(token) >= MIN_TOKEN_LENGTH}
    right_tokens = {token for token in right.split() if len(token) >= MIN_TOKEN_LENGTH}
    if not left_tokens or not right_tokens:
        return 0.0
    return len(left_tokens & right_tokens) / max(len(left_tokens), len(right_tokens))


@dataclass(frozen=True)
class TermMatch:
    term: str
    strength: float
    matched_via: str  # canonical_label, alias_variant
    matched_text: str

    def as_dict(self) -> dict:
        return {
            "term": self.term,
            "strength": round(self.strength, 4),
            "matched_via": self.matched_via,
            "matched_text": self.matched_text,
        }


def trend_surfaces(event: TrendEvent) -> list[tuple[str, str]]:
    """(matched_via, text) pairs a profile term may match, canonical label first."""
    surfaces = [("canonical_label", event.canonical_label)]
    seen = {normalize_match_text(event.canonical_label)}
    for alias in event.alias_variants or []:
        normalized = normalize_match_text(alias)
        if normalized and normalized not in seen:
            seen.add(normalized)
            surfaces.append(("alias_variant", str(alias)))
    return surfaces


def best_match(surfaces: Sequence[tuple[str, str]], term: str, *, min_strength: float) -> Optional[TermMatch]:
    """Strongest surface match for ``term`` at or above ``min_strength``."""
    best: Optional[TermMatch] = None
    for via, text in surfaces:
        strength = match_strength(text, term)
        if strength < min_strength:
            continue
        if best is None or strength > best.strength:
            best = TermMatch(term=term, strength=strength, matched_via=via, matched_text=text)
    return best


@dataclass(frozen=True)
class WatchTerm:
    term: str
    is_allowlisted: bool = False
    is_blocked: bool = False
    weight: float = 1.0


@dataclass(frozen=True)
class OrgProfile:
    """Read-only snapshot of an organization's interest configuration."""

    organization_id: int
    profile_version: int = 1
    org_type: Optional[str] = None
    topics: tuple[tuple[str, float], ...] = ()
    watchlist: tuple[WatchTerm, ...] = ()
    focus_areas: tuple[str, ...] = ()
    geographies: tuple[str, ...] = ()
    stakeholders: tuple[str, ...] = ()
    allies: tuple[str, ...] = ()
    opponents: tuple[str, ...] = ()


@dataclass
class RelevanceResult:
    relevance_score: float = 0.0
    urgency_score: float = 0.0
    priority_bucket: str = "low"
    is_blocked: bool = False
    is_allowlisted: bool = False
    matched_topics: list[str] = field(default_factory=list)
    matched_entities: list[str] = field(default_factory=list)
    matched_geographies: list[str] = field(default_factory=list)
    explanation: dict = field(default_factory=dict)

    @property
    def has_override(self) -> bool:
        return self.is_blocked or self.is_allowlisted


def default_topics(org_type: Optional[str]) -> tuple[tuple[str, float], ...]:
    return DEFAULT_TOPICS_BY_ORG_TYPE.get((org_type or "").strip().lower(), FALLBACK_DEFAULT_TOPICS)


def priority_bucket(relevance: float, urgency: float, weights: RelevanceWeights = DEFAULT_RELEVANCE_WEIGHTS) -> str:
    combined = weights.relevance_share * relevance + weights.urgency_share * urgency
    if combined >= weights.critical_threshold:
        return "critical"
    if combined >= weights.high_threshold:
        return "high"
    if combined >= weights.medium_threshold:
        return "medium"
    return "low"


def is_breaking_for_org(event: TrendEvent, config: TrendDetectionConfig, now: datetime) -> bool:
    """Breaking status re-evaluated under the organization's own thresholds."""
    decision = classify_breaking(
        BreakingSignals(
            velocity=event.velocity or 0.0,
            velocity_score=event.velocity_score or 0.0,
            current_1h=event.current_1h or 0,
            current_24h=event.current_24h or 0,
            source_count=event.source_count or 0,
            has_tier12=(event.tier1_count or 0) + (event.tier2_count or 0) > 0,
            baseline_established=bool(event.baseline_established),
            first_seen_at=event.first_seen_at,
            is_evergreen_single_word=bool(event.is_evergreen) and is_single_word(event.event_key),
        ),
        config,
        now=now,
    )
    return decision.is_breaking


def compute_urgency(
    event: TrendEvent,
    *,
    is_breaking: bool,
    weights: RelevanceWeights = DEFAULT_RELEVANCE_WEIGHTS,
) -> float:
    urgency = min(weights.urgency_velocity_cap, (event.velocity_score or 0.0) / weights.urgency_velocity_divisor)
    urgency += weights.stage_urgency_bonus.get(event.trend_stage or "new", 0.0)
    if is_breaking:
        urgency += weights.urgency_breaking_bonus
    confidence = min(1.0, max(0.0, event.confidence_score or 0.0))
    urgency *= 0.5 + 0.5 * confidence
    return round(min(100.0, max(0.0, urgency)), 2)


def score_trend(
    event: TrendEvent,
    profile: OrgProfile,
    *,
    config: TrendDetectionConfig,
    now: datetime,
    weights: RelevanceWeights = DEFAULT_RELEVANCE_WEIGHTS,
) -> RelevanceResult:
    """Relevance, urgency, bucket and explanation for one (organization, trend) pair."""
    result = RelevanceResult()
    surfaces = trend_surfaces(event)
    reasons: list[str] = []
    breakdown: dict[str, float] = {}
    matches: list[dict] = []

    def contains(term: str) -> Optional[TermMatch]:
        for via, text in surfaces:
            if text_contains(text, term):
                return TermMatch(term=term, strength=CONTAINMENT_STRENGTH, matched_via=via, matched_text=text)
        return None

    # Deny list wins over everything else
    for entry in profile.watchlist:
        if entry.is_blocked:
            hit = contains(entry.term)
            if hit is not None:
                result.is_blocked = True
                result.priority_bucket = "blocked"
                result.matched_entities.append(entry.term)
                result.explanation = {
                    "reasons": [f'Blocked: "{entry.term}" is on the deny list (via {hit.matched_via})'],
                    "score_breakdown": {},
                    "matches": [dict(hit.as_dict(), kind="blocked")],
                }
                return result

    score = 0.0

    topic_hits: list[tuple[TermMatch, float]] = []
    for topic, weight in profile.topics or default_topics(profile.org_type):
        hit = best_match(surfaces, topic, min_strength=weights.topic_match_min_strength)
        if hit is not None:
            topic_hits.append((hit, weight * hit.strength))
    if topic_hits:
        points = round(max(weighted for _, weighted in topic_hits) * weights.topic_match_points, 2)
        score += points
        breakdown["topic_match"] = points
        result.matched_topics.extend(hit.term for hit, _ in topic_hits)
        matches.extend(dict(hit.as_dict(), kind="topic") for hit, _ in topic_hits)
        reasons.append(f"Topic match: {', '.join(hit.term for hit, _ in topic_hits[:3])} (+{points:g})")
    else:
        focus_hits = [
            hit
            for hit in (best_match(surfaces, area, min_strength=weights.topic_match_min_strength) for area in profile.focus_areas)
            if hit is not None
        ]
        if focus_hits:
            points = min(len(focus_hits) * weights.profile_topic_points, weights.profile_topic_cap)
            score += points
            breakdown["profile_match"] = points
            result.matched_topics.extend(hit.term for hit in focus_hits)
            matches.extend(dict(hit.as_dict(), kind="focus_area") for hit in focus_hits)
            reasons.append(f"Focus area: {', '.join(hit.term for hit in focus_hits[:3])} (+{points:g})")

    watch_hits: list[TermMatch] = []
    allow_hit: Optional[TermMatch] = None
    for entry in profile.watchlist:
        if entry.is_blocked:
            continue
        hit = contains(entry.term)
        if hit is None:
            continue
        if entry.is_allowlisted:
            allow_hit = allow_hit or hit
        else:
            watch_hits.append(hit)
    if watch_hits:
        points = min(len(watch_hits) * weights.watchlist_points, weights.watchlist_cap)
        score += points
        breakdown["watchlist"] = points
        result.matched_entities.extend(hit.term for hit in watch_hits)
        matches.extend(dict(hit.as_dict(), kind="watchlist") for hit in watch_hits)
        for hit in watch_hits:
            reasons.append(f'Watchlist: "{hit.term}" via {hit.matched_via} "{hit.matched_text}"')
    if allow_hit is not None:
        result.is_allowlisted = True
        score += weights.allowlist_bonus
        breakdown["allowlist"] = weights.allowlist_bonus
        result.matched_entities.append(allow_hit.term)
        matches.append(dict(allow_hit.as_dict(), kind="allowlist"))
        reasons.append(f'Allowlisted: "{allow_hit.term}" via {allow_hit.matched_via} (+{weights.allowlist_bonus:g})')

    for kind, terms, points in (
        ("stakeholder", profile.stakeholders, weights.stakeholder_points),
        ("ally", profile.allies, weights.ally_points),
        ("opponent", profile.opponents, weights.opponent_points),
    ):
        hit = next((found for found in (contains(term) for term in terms) if found is not None), None)
        if hit is None:
            continue
        score += points
        breakdown[kind] = points
        result.matched_entities.append(hit.term)
        matches.append(dict(hit.as_dict(), kind=kind))
        reasons.append(f'{kind.capitalize()}: "{hit.term}" (+{points:g})')

    geo_hits = [hit for hit in (contains(geo) for geo in profile.geographies) if hit is not None]
    if geo_hits:
        points = min(len(geo_hits) * weights.geography_points, weights.geography_cap)
        score += points
        breakdown["geography"] = points
        result.matched_geographies.extend(hit.term for hit in geo_hits)
        matches.extend(dict(hit.as_dict(), kind="geography") for hit in geo_hits)
        reasons.append(f"Geographic: {', '.join(hit.term for hit in geo_hits)} (+{points:g})")

    if score > 0:
        velocity_bonus = round(
            min(weights.velocity_bonus_cap, (event.velocity_score or 0.0) / weights.velocity_bonus_divisor), 2
        )
        if velocity_bonus > 0:
            score += velocity_bonus
            breakdown["velocity"] = velocity_bonus
            reasons.append(f"Velocity score {event.velocity_score or 0.0:.0f} (+{velocity_bonus:g})")

    relevance = min(100.0, round(score, 2))
    if result.is_allowlisted:
        relevance = max(relevance, weights.allowlist_min_relevance)

    breaking = is_breaking_for_org(event, config, now)
    result.relevance_score = relevance
    result.urgency_score = compute_urgency(event, is_breaking=breaking, weights=weights)
    result.priority_bucket = priority_bucket(result.relevance_score, result.urgency_score, weights)
    result.matched_entities = list(dict.fromkeys(result.matched_entities))
    if not reasons:
        reasons.append("No profile matches")
    result.explanation = {
        "reasons": reasons,
        "score_breakdown": breakdown,
        "matches": matches,
        "urgency": {
            "stage": event.trend_stage,
            "velocity_score": event.velocity_score,
            "confidence": event.confidence_score,
            "is_breaking": breaking,
        },
    }
    return result


class OrgRelevanceProjector:
    """Writes and serves OrgTrendScore projections."""

    def __init__(
        self,
        db: Session,
        *,
        weights: RelevanceWeights = DEFAULT_RELEVANCE_WEIGHTS,
        ttl_hours: Optional[int] = None,
        min_relevance: Optional[float] = None,
        confidence_delta: Optional[float] = None,
    ):
        self.db = db
        self.weights = weights
        self.ttl = timedelta(hours=ttl_hours if ttl_hours is not None else settings.org_score_ttl_hours)
        self.min_relevance = min_relevance if min_relevance is not None else settings.org_score_min_relevance
        self.confidence_delta = (
            confidence_delta if confidence_delta is not None else settings.org_score_confidence_delta
        )

    def load_profile(self, organization: Organization) -> OrgProfile:
        topics = (
            self.db.query(OrgInterestTopic)
            .filter(OrgInterestTopic.organization_id == organization.id)
            .order_by(OrgInterestTopic.id.asc())
            .all()
        )
        watchlist = (
            self.db.query(OrgWatchlistEntry)
            .filter(OrgWatchlistEntry.organization_id == organization.id)
            .order_by(OrgWatchlistEntry.id.asc())
            .all()
        )
        return OrgProfile(
            organization_id=organization.id,
            profile_version=organization.profile_version or 1,
            org_type=organization.org_type,
            topics=tuple((row.topic, float(row.weight)) for row in topics),
            watchlist=tuple(
                WatchTerm(
                    term=row.term,
                    is_allowlisted=bool(row.is_allowlisted),
                    is_blocked=bool(row.is_blocked),
                    weight=float(row.weight or 1.0),
                )
                for row in watchlist
            ),
            focus_areas=tuple(organization.focus_areas or ()),
            geographies=tuple(organization.geographies or ()),
            stakeholders=tuple(organization.stakeholders or ()),
            allies=tuple(organization.allies or ()),
            opponents=tuple(organization.opponents or ()),
        )

    def check_fresh(self, row: OrgTrendScore, now: datetime) -> OrgTrendScore:
        if row.expires_at <= now:
            raise ProjectionStale(row.organization_id, row.trend_event_id)
        return row

    def needs_recompute(
        self, row: Optional[OrgTrendScore], event: TrendEvent, profile: OrgProfile, now: datetime
    ) -> Optional[str]:
        """Reason the stored score must be recomputed, or None when it is still valid."""
        if row is None:
            return "missing"
        try:
            self.check_fresh(row, now)
        except ProjectionStale:
            return "expired"
        if row.trend_stage_at_compute != event.trend_stage:
            return "stage_changed"
        if abs((row.confidence_at_compute or 0.0) - (event.confidence_score or 0.0)) >= self.confidence_delta:
            return "confidence_changed"
        if row.profile_version_at_compute != profile.profile_version:
            return "profile_changed"
        return None

    def _should_store(self, result: RelevanceResult) -> bool:
        return result.has_override or result.relevance_score >= self.min_relevance

    def _write(self, row: Optional[OrgTrendScore], event: TrendEvent, profile: OrgProfile, result: RelevanceResult, now: datetime) -> OrgTrendScore:
        if row is None:
            row = OrgTrendScore(organization_id=profile.organization_id, trend_event_id=event.id)
            self.db.add(row)
        row.trend_key = event.event_key
        row.relevance_score = result.relevance_score
        row.urgency_score = result.urgency_score
        row.priority_bucket = result.priority_bucket
        row.matched_topics = list(result.matched_topics)
        row.matched_entities = list(result.matched_entities)
        row.matched_geographies = list(result.matched_geographies)
        row.explanation = result.explanation
        row.is_allowlisted = result.is_allowlisted
        row.is_blocked = result.is_blocked
        row.trend_stage_at_compute = event.trend_stage
        row.confidence_at_compute = event.confidence_score
        row.trend_version_at_compute = event.version
        row.profile_version_at_compute = profile.profile_version
        row.computed_at = now
        row.expires_at = now + self.ttl
        return row

    def project_event(
        self,
        event: TrendEvent,
        profile: OrgProfile,
        config: TrendDetectionConfig,
        *,
        now: datetime,
        existing: Optional[OrgTrendScore] = None,
        force: bool = False,
    ) -> tuple[str, Optional[OrgTrendScore]]:
        """Recompute one pair when needed; returns (outcome, stored row)."""
        if event.trend_stage == "archived" or event.merged_into_event_id is not None:
            if existing is not None:
                self.db.delete(existing)
                return "dropped", None
            return "skipped", None
        reason = "forced" if force else self.needs_recompute(existing, event, profile, now)
        if reason is None:
            return "fresh", existing
        result = score_trend(event, profile, config=config, now=now, weights=self.weights)
        if not self._should_store(result):
            if existing is not None:
                self.db.delete(existing)
                return "dropped", None
            return "below_threshold", None
        return reason, self._write(existing, event, profile, result, now)

    def _live_events(self) -> list[TrendEvent]:
        return (
            self.db.query(TrendEvent)
            .filter(TrendEvent.trend_stage != "archived", TrendEvent.merged_into_event_id.is_(None))
            .order_by(TrendEvent.id.asc())
            .all()
        )

    def _drop_archived_scores(self, organization_id: int) -> int:
        archived_ids = [
            event_id
            for (event_id,) in self.db.query(TrendEvent.id).filter(
                (TrendEvent.trend_stage == "archived") | (TrendEvent.merged_into_event_id.isnot(None))
            )
        ]
        if not archived_ids:
            return 0
        return (
            self.db.query(OrgTrendScore)
            .filter(
                OrgTrendScore.organization_id == organization_id,
                OrgTrendScore.trend_event_id.in_(archived_ids),
            )
            .delete(synchronize_session=False)
        )

    def project_org(
        self,
        organization_id: int,
        *,
        now: Optional[datetime] = None,
        events: Optional[Iterable[TrendEvent]] = None,
        force: bool = False,
    ) -> dict:
        """Project live trends onto one organization; commits. Raises StorageError."""
        current = now or utcnow()
        organization = self.db.get(Organization, organization_id)
        if organization is None or not organization.is_active:
            return {"organization_id": organization_id, "skipped": True}
        profile = self.load_profile(organization)
        config = load_detection_config(self.db, organization_id)
        stats = {"organization_id": organization_id, "computed": 0, "fresh": 0, "dropped": 0, "below_threshold": 0}
        try:
            existing = {
                row.trend_event_id: row
                for row in self.db.query(OrgTrendScore).filter(OrgTrendScore.organization_id == organization_id)
            }
            for event in events if events is not None else self._live_events():
                outcome, _ = self.project_event(
                    event, profile, config, now=current, existing=existing.get(event.id), force=force
                )
                if outcome in ("fresh", "dropped", "below_threshold"):
                    stats[outcome] += 1
                elif outcome != "skipped":
                    stats["computed"] += 1
            stats["dropped"] += self._drop_archived_scores(organization_id)
            self.db.commit()
        except SQLAlchemyError as exc:
            self.db.rollback()
            raise StorageError(f"projection failed for organization {organization_id}: {exc}") from exc
        return stats

    def project_all(self, *, now: Optional[datetime] = None, organization_ids: Optional[Sequence[int]] = None) -> dict:
        """Project every active organization; a failing organization never aborts the others."""
        current = now or utcnow()
        if organization_ids is None:
            organization_ids = [
                org_id
                for (org_id,) in self.db.query(Organization.id)
                .filter(Organization.is_active.is_(True))
                .order_by(Organization.id.asc())
            ]
        summary = {"organizations": 0, "computed": 0, "failed": [], "per_org": []}
        for organization_id in organization_ids:
            try:
                stats = self.project_org(organization_id, now=current)
            except Exception as exc:
                self.db.rollback()
                logger.exception("Projection failed for organization %s", organization_id)
                summary["failed"].append({"organization_id": organization_id, "error": str(exc)})
                continue
            summary["organizations"] += 1
            summary["computed"] += stats.get("computed", 0)
            summary["per_org"].append(stats)
        return summary

    def get_org_scores(
        self,
        organization_id: int,
        *,
        now: Optional[datetime] = None,
        min_relevance: float = 0.0,
        include_blocked: bool = False,
        limit: int = 50,
    ) -> list[OrgTrendScore]:
        """Stored scores for an organization, recomputing stale rows on read."""
        current = now or utcnow()
        organization = self.db.get(Organization, organization_id)
        if organization is None:
            return []
        rows = self.db.query(OrgTrendScore).filter(OrgTrendScore.organization_id == organization_id).all()
        stale: list[OrgTrendScore] = []
        for row in rows:
            try:
                self.check_fresh(row, current)
            except ProjectionStale:
                stale.append(row)
        if stale:
            logger.info("Recomputing %d expired scores for organization %s", len(stale), organization_id)
            profile = self.load_profile(organization)
            config = load_detection_config(self.db, organization_id)
            events = {
                event.id: event
                for event in self.db.query(TrendEvent).filter(TrendEvent.id.in_([row.trend_event_id for row in stale]))
            }
            try:
                for row in stale:
                    event = events.get(row.trend_event_id)
                    if event is None:
                        self.db.delete(row)
                        continue
                    self.project_event(event, profile, config, now=current, existing=row, force=True)
                self.db.commit()
            except SQLAlchemyError as exc:
                self.db.rollback()
                raise StorageError(f"lazy recompute failed for organization {organization_id}: {exc}") from exc

        query = self.db.query(OrgTrendScore).filter(
            OrgTrendScore.organization_id == organization_id,
            OrgTrendScore.relevance_score >= min_relevance,
        )
        if not include_blocked:
            query = query.filter(OrgTrendScore.is_blocked.is_(False))
        return (
            query.order_by(OrgTrendScore.relevance_score.desc(), OrgTrendScore.urgency_score.desc(), OrgTrendScore.id.asc())
            .limit(limit)
            .all()
        )
