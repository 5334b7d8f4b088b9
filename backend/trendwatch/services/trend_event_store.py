"""
Trend event store.

Owns the durable TrendEvent aggregate: evidence attachment, windowed counts,
velocity/confidence/label rescoring and stage transitions. Every mutation of
one event happens inside a single transaction under a row lock, so readers
never observe fresh counts with stale scores.
"""
from __future__ import annotations

import logging
from collections import Counter
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Iterable, Iterator, Optional, Sequence, Union

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from ..config.detection_config import (
    DEFAULT_DETECTION_CONFIG,
    ConfidenceWeights,
    StageThresholds,
    TrendDetectionConfig,
    TrendScoreWeights,
)
from ..domain.errors import InsufficientBaseline, StorageError
from ..domain.trend_scoring import (
    BreakingSignals,
    ConfidenceInputs,
    NewEvidence,
    SourceMix,
    WindowCounts,
)
from ..models.trend import (
    MentionEvidence,
    PhraseCluster,
    TopicBaseline,
    TopicHourlyCount,
    TrendEmbedding,
    TrendEvent,
)
from .baseline_service import BaselineEstimator, floor_hour
from .confidence_service import compute_confidence, compute_trend_score
from .evidence_normalizer import EvidenceNormalizer, utcnow
from .label_quality_service import (
    assess_label,
    classify_entity_type,
    evergreen_penalty,
    is_evergreen_topic,
    is_single_word,
)
from .trend_lifecycle_service import (
    ACTIVE_STAGES,
    DEFAULT_STAGE_THRESHOLDS,
    apply_stage_transition,
    archive_event,
    evaluate_next_stage,
)
from .velocity_service import (
    classify_breaking,
    compute_velocity_metrics,
    cross_source_score,
    ensure_established,
    is_trending,
)

logger = logging.getLogger(__name__)

MAX_ALIAS_VARIANTS = 25
_TIER_RANK = {"tier1": 0, "tier2": 1, "tier3": 2}


@dataclass(frozen=True)
class TrendFilter:
    stages: tuple[str, ...] = ACTIVE_STAGES
    min_confidence: float = 0.0
    breaking_only: bool = False
    trending_only: bool = False
    semantic_cluster_id: Optional[int] = None
    seen_since: Optional[datetime] = None
    limit: Optional[int] = None


class TrendEventStore:
    """Transactional upsert/read access to trend events."""

    READ_CHUNK_SIZE = 200

    def __init__(
        self,
        db: Session,
        config: TrendDetectionConfig = DEFAULT_DETECTION_CONFIG,
        *,
        confidence_weights: Optional[ConfidenceWeights] = None,
        score_weights: Optional[TrendScoreWeights] = None,
        stage_thresholds: StageThresholds = DEFAULT_STAGE_THRESHOLDS,
        job_name: str = "trend_event_store",
    ):
        self.db = db
        self.config = config
        self.confidence_weights = confidence_weights or ConfidenceWeights()
        self.score_weights = score_weights or TrendScoreWeights()
        self.stage_thresholds = stage_thresholds
        self.job_name = job_name
        self.baselines = BaselineEstimator(db, config)

    def _maybe_with_for_update(self, query):
        """Apply row-level locking on databases that support it."""
        bind = self.db.get_bind()
        if bind is not None and bind.dialect.name != "sqlite":
            return query.with_for_update()
        return query

    def get_event(self, event_key: str, *, lock: bool = False) -> Optional[TrendEvent]:
        query = self.db.query(TrendEvent).filter(TrendEvent.event_key == event_key)
        if lock:
            query = self._maybe_with_for_update(query)
        return query.first()

    def upsert_evidence(
        self,
        event_key: str,
        evidence: Union[NewEvidence, Sequence[NewEvidence]],
        *,
        now: Optional[datetime] = None,
        label: Optional[str] = None,
        phrase_cluster_id: Optional[int] = None,
    ) -> TrendEvent:
        """Attach evidence to ``event_key`` and rescore it; re-applying known evidence is a no-op."""
        current = now or utcnow()
        items = [evidence] if isinstance(evidence, NewEvidence) else list(evidence)
        items.sort(key=lambda item: item.published_at)
        if not items:
            raise ValueError("upsert_evidence needs at least one evidence item")

        try:
            event = self.get_event(event_key, lock=True)
            created = event is None
            if created and not self._has_attachable(items):
                raise ValueError(f"no unattached evidence to seed trend {event_key}")
            if created:
                first = items[0]
                event = TrendEvent(
                    event_key=event_key,
                    canonical_label=(label or first.raw_label)[:300],
                    alias_variants=[],
                    entity_type=first.entity_type or classify_entity_type(label or first.raw_label),
                    first_seen_at=first.published_at,
                    last_seen_at=first.published_at,
                    trend_stage="new",
                    stage_updated_at=current,
                    version=0,
                )
                self.db.add(event)
                self.db.flush()
            if phrase_cluster_id is not None and event.phrase_cluster_id != phrase_cluster_id:
                event.phrase_cluster_id = phrase_cluster_id

            known_items = {
                row[0]
                for row in self.db.query(MentionEvidence.item_hash)
                .filter(MentionEvidence.trend_event_id == event.id)
                .all()
            }
            attached: list[MentionEvidence] = []
            for item in items:
                row = (
                    self.db.query(MentionEvidence)
                    .filter(
                        MentionEvidence.content_hash == item.content_hash,
                        MentionEvidence.source_type == item.source_type,
                    )
                    .first()
                )
                if row is None:
                    row = EvidenceNormalizer.to_row(item)
                    self.db.add(row)
                elif row.trend_event_id == event.id:
                    continue
                elif row.trend_event_id is not None:
                    logger.debug(
                        "Evidence %s already attached to trend %s; not re-attaching to %s",
                        row.content_hash[:12], row.trend_event_id, event_key,
                    )
                    continue
                row.trend_event_id = event.id
                row.attached_at = current
                attached.append(row)

            if not attached and not created:
                return event

            self.db.flush()
            for row in attached:
                if row.item_hash in known_items:
                    continue
                known_items.add(row.item_hash)
                self.baselines.update_baseline(event_key, 1, row.published_at)

            self.refresh_event(event, now=current, fresh_evidence=bool(attached))
            self.db.commit()
            self.db.refresh(event)
            return event
        except SQLAlchemyError as exc:
            self.db.rollback()
            raise StorageError(f"failed to upsert trend {event_key}: {exc}") from exc

    def _has_attachable(self, items: Sequence[NewEvidence]) -> bool:
        for item in items:
            attached_to = (
                self.db.query(MentionEvidence.trend_event_id)
                .filter(
                    MentionEvidence.content_hash == item.content_hash,
                    MentionEvidence.source_type == item.source_type,
                )
                .first()
            )
            if attached_to is None or attached_to[0] is None:
                return True
        return False

    def refresh(self, event_key: str, *, now: Optional[datetime] = None) -> Optional[TrendEvent]:
        """Time-based rescore (window roll-off, decay, stage) for one event."""
        current = now or utcnow()
        try:
            event = self.get_event(event_key, lock=True)
            if event is None or event.trend_stage == "archived":
                return event
            self.refresh_event(event, now=current, fresh_evidence=False)
            self.db.commit()
            return event
        except SQLAlchemyError as exc:
            self.db.rollback()
            raise StorageError(f"failed to refresh trend {event_key}: {exc}") from exc

    def _deduped_evidence(self, event: TrendEvent) -> list[MentionEvidence]:
        rows = (
            self.db.query(MentionEvidence)
            .filter(MentionEvidence.trend_event_id == event.id)
            .order_by(MentionEvidence.published_at.asc(), MentionEvidence.id.asc())
            .all()
        )
        seen: set[tuple[str, str]] = set()
        deduped: list[MentionEvidence] = []
        for row in rows:
            key = (row.item_hash, row.source_type)
            if key in seen:
                continue
            seen.add(key)
            deduped.append(row)
        return deduped

    @staticmethod
    def _window_counts(rows: Iterable[MentionEvidence], now: datetime) -> tuple[WindowCounts, int]:
        c1 = c6 = c24 = previous = 0
        for row in rows:
            age = now - row.published_at
            if age < timedelta(0):
                age = timedelta(0)
            if age < timedelta(hours=1):
                c1 += 1
            elif age < timedelta(hours=2):
                previous += 1
            if age < timedelta(hours=6):
                c6 += 1
            if age < timedelta(hours=24):
                c24 += 1
        return WindowCounts(current_1h=c1, current_6h=c6, current_24h=c24), previous

    @staticmethod
    def _source_mix(rows: Sequence[MentionEvidence]) -> SourceMix:
        tiers = Counter(row.source_tier for row in rows)
        categories = Counter(row.source_category for row in rows)
        return SourceMix(
            source_type_counts=dict(Counter(row.source_type for row in rows)),
            tier1_count=tiers.get("tier1", 0),
            tier2_count=tiers.get("tier2", 0),
            tier3_count=tiers.get("tier3", 0),
            news_count=categories.get("news", 0),
            social_count=categories.get("social", 0),
            domains=frozenset(row.domain for row in rows if row.domain),
        )

    def _select_primary(self, event: TrendEvent) -> Optional[MentionEvidence]:
        rows = self.db.query(MentionEvidence).filter(MentionEvidence.trend_event_id == event.id).all()
        if not rows:
            return None
        primary = min(
            rows,
            key=lambda row: (
                _TIER_RANK.get(row.source_tier, 3),
                -(row.contribution_weight or 0.0),
                row.published_at,
                row.id,
            ),
        )
        for row in rows:
            row.is_primary = row is primary
        return primary

    def _base_label(self, event: TrendEvent, rows: Sequence[MentionEvidence]) -> str:
        if event.phrase_cluster_id is not None:
            cluster = self.db.get(PhraseCluster, event.phrase_cluster_id)
            if cluster is not None and cluster.representative_label:
                return cluster.representative_label
        labels = Counter(row.raw_label for row in rows if row.topic_key == event.event_key)
        if not labels:
            labels = Counter(row.raw_label for row in rows)
        if not labels:
            return event.canonical_label
        return sorted(labels.items(), key=lambda item: (-item[1], item[0]))[0][0]

    def refresh_event(self, event: TrendEvent, *, now: datetime, fresh_evidence: bool = False) -> None:
        """Recompute counts, metrics, label, scores and stage in the caller's transaction."""
        rows = self._deduped_evidence(event)
        if not rows:
            return
        counts, previous_1h = self._window_counts(rows, now)
        mix = self._source_mix(rows)

        event.first_seen_at = min(event.first_seen_at or rows[0].published_at, rows[0].published_at)
        event.last_seen_at = max(row.published_at for row in rows)
        event.current_1h, event.current_6h, event.current_24h = counts.current_1h, counts.current_6h, counts.current_24h
        event.evidence_count = len(rows)
        event.source_count = mix.source_count
        event.domain_count = mix.domain_count
        event.news_count, event.social_count = mix.news_count, mix.social_count
        event.tier1_count, event.tier2_count, event.tier3_count = mix.tier1_count, mix.tier2_count, mix.tier3_count
        event.is_tier3_only = mix.is_tier3_only
        sentiments = [row.sentiment_score for row in rows if row.sentiment_score is not None]
        event.avg_sentiment = sum(sentiments) / len(sentiments) if sentiments else None

        baseline = self.baselines.snapshot(event.event_key, exclude_hour=floor_hour(now))
        try:
            ensure_established(event.event_key, baseline, self.config.min_baseline_hours)
            established = True
        except InsufficientBaseline as exc:
            logger.debug("%s; anomaly status stays unclassified", exc)
            established = False
        event.baseline_hourly = baseline.mean_hourly
        event.baseline_std_dev = baseline.std_dev
        event.baseline_data_points = baseline.data_points
        event.baseline_established = established

        metrics = compute_velocity_metrics(counts, previous_1h, baseline, self.config)
        event.previous_velocity = metrics.previous_velocity
        event.velocity = metrics.velocity
        event.velocity_score = metrics.velocity_score
        event.acceleration = metrics.acceleration
        event.z_score = metrics.z_score
        event.poisson_surprise = metrics.poisson_surprise
        event.spike_kind = metrics.spike_kind
        event.anomaly_status = metrics.anomaly_status
        event.cross_source_score = cross_source_score(mix.source_type_counts, self.config)
        if counts.current_1h > (event.peak_1h or 0):
            event.peak_1h = counts.current_1h
            event.peaked_at = now

        primary = self._select_primary(event)
        base_label = self._base_label(event, rows)
        assessment = assess_label(
            base_label,
            primary.label_quality_hint if primary is not None else None,
            primary.headline if primary is not None else None,
        )
        event.canonical_label = assessment.label[:300]
        event.label_quality = assessment.label_quality
        event.label_source = assessment.label_source
        aliases = Counter(row.raw_label for row in rows if row.raw_label != event.canonical_label)
        existing_aliases = [alias for alias in (event.alias_variants or []) if alias != event.canonical_label]
        ordered = [label for label, _ in sorted(aliases.items(), key=lambda item: (-item[1], item[0]))]
        event.alias_variants = list(dict.fromkeys(existing_aliases + ordered))[:MAX_ALIAS_VARIANTS]
        entity_types = Counter(row.entity_type for row in rows if row.entity_type)
        event.entity_type = (
            entity_types.most_common(1)[0][0] if entity_types else classify_entity_type(base_label)
        )

        single_word = is_single_word(event.event_key) and not assessment.is_event_phrase
        event.is_evergreen = is_evergreen_topic(event.event_key, baseline.avg_hourly_7d, baseline.mean_hourly)
        event.evergreen_penalty = evergreen_penalty(
            event.is_evergreen, metrics.z_score, baseline.data_points > 0, single_word
        )

        event.confidence_score = compute_confidence(
            ConfidenceInputs(
                evidence_count=event.evidence_count,
                tier1_count=mix.tier1_count,
                tier2_count=mix.tier2_count,
                tier3_count=mix.tier3_count,
                distinct_source_types=mix.source_count,
                distinct_domains=mix.domain_count,
                last_seen_at=event.last_seen_at,
                label_quality=assessment.label_quality,
            ),
            now,
            self.confidence_weights,
        )
        event.trend_score, score_components = compute_trend_score(
            z_score=metrics.z_score,
            baseline_established=established,
            source_count=mix.source_count,
            news_count=mix.news_count,
            social_count=mix.social_count,
            has_tier12=mix.has_tier12,
            current_1h=counts.current_1h,
            current_24h=counts.current_24h,
            last_seen_at=event.last_seen_at,
            now=now,
            evergreen_penalty=event.evergreen_penalty,
            label_quality=assessment.label_quality,
            weights=self.score_weights,
        )
        event.is_trending = is_trending(counts.current_24h, mix.source_count, metrics.velocity_score, self.config)
        decision = classify_breaking(
            BreakingSignals(
                velocity=metrics.velocity,
                velocity_score=metrics.velocity_score,
                current_1h=counts.current_1h,
                current_24h=counts.current_24h,
                source_count=mix.source_count,
                has_tier12=mix.has_tier12,
                baseline_established=established,
                first_seen_at=event.first_seen_at,
                is_evergreen_single_word=event.is_evergreen and single_word,
            ),
            self.config,
            now=now,
        )
        event.is_breaking = decision.is_breaking
        event.breaking_path = decision.path
        event.score_details = {
            **score_components,
            "breaking_reasons": list(decision.reasons),
            "label_downgraded": assessment.downgraded,
            "baseline_established": established,
        }

        if event.trend_stage != "archived":
            next_stage = evaluate_next_stage(
                event,
                now=now,
                config=self.config,
                thresholds=self.stage_thresholds,
                fresh_evidence=fresh_evidence,
            )
            if next_stage is not None:
                apply_stage_transition(
                    db=self.db,
                    event=event,
                    to_stage=next_stage.to_stage,
                    job_name=self.job_name,
                    rule_version=self.stage_thresholds.rule_version,
                    reason=next_stage.reason,
                    metadata={"velocity": round(event.velocity, 4), "current_1h": event.current_1h},
                    transitioned_at=now,
                )

        event.last_scored_at = now
        event.version = (event.version or 0) + 1
        self._sync_cluster_stats(event)

    def _sync_cluster_stats(self, event: TrendEvent) -> None:
        if event.phrase_cluster_id is None:
            return
        cluster = self.db.get(PhraseCluster, event.phrase_cluster_id)
        if cluster is None:
            return
        cluster.avg_velocity = event.velocity
        cluster.avg_confidence = event.confidence_score

    def merge_events(self, source: TrendEvent, target: TrendEvent, *, now: datetime, reason: str) -> int:
        """Fold ``source`` into ``target`` in the caller's transaction; returns evidence rows moved."""
        if source.id == target.id:
            return 0
        moved = (
            self.db.query(MentionEvidence)
            .filter(MentionEvidence.trend_event_id == source.id)
            .update(
                {MentionEvidence.trend_event_id: target.id, MentionEvidence.is_primary: False},
                synchronize_session="fetch",
            )
        )

        aliases = list(target.alias_variants or [])
        for alias in [source.canonical_label, *(source.alias_variants or [])]:
            if alias and alias != target.canonical_label and alias not in aliases:
                aliases.append(alias)
        target.alias_variants = aliases[:MAX_ALIAS_VARIANTS]
        target.first_seen_at = min(target.first_seen_at, source.first_seen_at)
        target.last_seen_at = max(target.last_seen_at, source.last_seen_at)
        target.peak_1h = max(target.peak_1h or 0, source.peak_1h or 0)

        source_buckets = (
            self.db.query(TopicHourlyCount).filter(TopicHourlyCount.topic_key == source.event_key).all()
        )
        for bucket in source_buckets:
            existing = (
                self.db.query(TopicHourlyCount)
                .filter(
                    TopicHourlyCount.topic_key == target.event_key,
                    TopicHourlyCount.bucket_start == bucket.bucket_start,
                )
                .first()
            )
            if existing is None:
                bucket.topic_key = target.event_key
            else:
                existing.mention_count += bucket.mention_count
                self.db.delete(bucket)
        self.db.query(TopicBaseline).filter(TopicBaseline.topic_key == source.event_key).delete(
            synchronize_session="fetch"
        )
        self.db.query(TrendEmbedding).filter(TrendEmbedding.trend_event_id == source.id).delete(
            synchronize_session="fetch"
        )
        self.db.flush()
        self.baselines.rebuild_baseline(target.event_key, now=max(now, target.last_seen_at))

        source.merged_into_event_id = target.id
        source.is_breaking = False
        source.is_trending = False
        archive_event(
            self.db,
            source,
            reason=reason,
            job_name="phrase_merge",
            metadata={"target_event_key": target.event_key},
            now=now,
        )
        self.refresh_event(target, now=now, fresh_evidence=False)
        return int(moved or 0)

    def get_active_trends(self, trend_filter: Optional[TrendFilter] = None) -> Iterator[TrendEvent]:
        """Lazily iterate trends matching ``trend_filter``; membership is fixed when called."""
        flt = trend_filter or TrendFilter()
        query = self.db.query(TrendEvent.id).filter(TrendEvent.trend_stage.in_(flt.stages))
        if flt.min_confidence > 0:
            query = query.filter(TrendEvent.confidence_score >= flt.min_confidence)
        if flt.breaking_only:
            query = query.filter(TrendEvent.is_breaking.is_(True))
        if flt.trending_only:
            query = query.filter(TrendEvent.is_trending.is_(True))
        if flt.semantic_cluster_id is not None:
            query = query.filter(TrendEvent.semantic_cluster_id == flt.semantic_cluster_id)
        if flt.seen_since is not None:
            query = query.filter(TrendEvent.last_seen_at >= flt.seen_since)
        query = query.order_by(TrendEvent.trend_score.desc(), TrendEvent.id.asc())
        if flt.limit:
            query = query.limit(flt.limit)
        ids = [row[0] for row in query.all()]
        return self._iter_events(ids)

    def _iter_events(self, ids: list[int]) -> Iterator[TrendEvent]:
        for start in range(0, len(ids), self.READ_CHUNK_SIZE):
            chunk = ids[start:start + self.READ_CHUNK_SIZE]
            rows = {row.id: row for row in self.db.query(TrendEvent).filter(TrendEvent.id.in_(chunk)).all()}
            for event_id in chunk:
                row = rows.get(event_id)
                if row is not None:
                    yield row
