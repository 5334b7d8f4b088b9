"""
Phrase Clustering Service

Groups near-identical surface phrasings ("Jane Doe Healthcare Bill",
"Jane Doe Health Care Bill") under one canonical trend event:

1. Resolve known aliases to their canonical topic key
2. Attach the phrase to the active cluster whose representative is most
   similar (above the admission threshold), or seed a new cluster
3. Keep the highest-authority member as the cluster representative
4. Merge clusters deterministically: the cluster created first survives

The cluster's ``canonical_key`` is its seed phrase key and doubles as the
owning trend event's ``event_key``; it never changes after creation.
"""
from __future__ import annotations

import logging
import math
from collections import Counter, defaultdict
from dataclasses import dataclass, field
from datetime import datetime
from difflib import SequenceMatcher
from typing import Iterable, Mapping, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from ..config import settings
from ..config.detection_config import (
    DEFAULT_DETECTION_CONFIG,
    DEFAULT_SOURCE_AUTHORITY,
    SOURCE_AUTHORITY,
    TrendDetectionConfig,
)
from ..domain.errors import ClusterConflict, StorageError
from ..models.trend import (
    MentionEvidence,
    PhraseCluster,
    PhraseClusterMember,
    TopicAlias,
    TrendEvent,
    TrendMergeHistory,
)
from .evidence_normalizer import utcnow
from .label_quality_service import is_event_phrase
from .topic_identity_normalization import canonical_topic_key
from .trend_event_store import TrendEventStore

logger = logging.getLogger(__name__)

EXACT_SIMILARITY = 1.0
CONTAINMENT_SIMILARITY = 0.85
EVENT_PHRASE_AUTHORITY_BONUS = 100.0
MENTION_AUTHORITY_FACTOR = 10.0
MAX_MERGE_HOPS = 8


def _tokens(key: str) -> list[str]:
    return [token for token in key.split("_") if token]


def phrase_similarity(left_key: str, right_key: str) -> float:
    """Similarity of two canonical phrase keys in [0, 1].

    Exact match scores 1.0. Token containment scores 0.85 when the shorter
    phrase has at least two tokens, so a bare entity is never absorbed into
    every event phrase that names it. Otherwise the larger of token Jaccard
    (tokens longer than two characters) and the SequenceMatcher ratio.
    """
    if left_key == right_key:
        return EXACT_SIMILARITY
    left_tokens, right_tokens = _tokens(left_key), _tokens(right_key)
    if not left_tokens or not right_tokens:
        return 0.0

    shorter, longer = sorted((left_tokens, right_tokens), key=len)
    if len(shorter) >= 2:
        joined_longer = f"_{'_'.join(longer)}_"
        if f"_{'_'.join(shorter)}_" in joined_longer or set(shorter) <= set(longer):
            return CONTAINMENT_SIMILARITY

    left_words = {token for token in left_tokens if len(token) > 2}
    right_words = {token for token in right_tokens if len(token) > 2}
    jaccard = 0.0
    if left_words and right_words:
        jaccard = len(left_words & right_words) / len(left_words | right_words)
    ratio = SequenceMatcher(a=" ".join(left_tokens), b=" ".join(right_tokens)).ratio()
    return float(max(jaccard, ratio))


def authority_score(mention_count: int, is_event: bool, source_authority: float) -> float:
    """log2(n+1)*10 + 100 for event phrases + summed source authority."""
    score = math.log2(max(0, mention_count) + 1) * MENTION_AUTHORITY_FACTOR
    if is_event:
        score += EVENT_PHRASE_AUTHORITY_BONUS
    return score + source_authority


def source_authority_total(source_type_counts: Mapping[str, int]) -> float:
    return sum(
        SOURCE_AUTHORITY.get(source_type, DEFAULT_SOURCE_AUTHORITY) * count
        for source_type, count in source_type_counts.items()
    )


@dataclass
class PhraseCandidate:
    """A raw phrase observed in a batch of pending evidence."""

    phrase_key: str
    label: str
    mention_count: int = 0
    source_type_counts: dict[str, int] = field(default_factory=dict)

    @property
    def is_event_phrase(self) -> bool:
        return is_event_phrase(self.label)


class PhraseIndex:
    """Arena of active cluster representatives addressed by slot index.

    Slots hold parallel arrays (cluster id, representative key, token set);
    an inverted token map narrows similarity checks to clusters sharing at
    least one token with the query.
    """

    def __init__(self):
        self.cluster_ids: list[int] = []
        self.keys: list[str] = []
        self.created: list[tuple[datetime, int]] = []
        self.alive: list[bool] = []
        self._slot_by_cluster: dict[int, int] = {}
        self._token_slots: dict[str, set[int]] = defaultdict(set)

    @classmethod
    def from_clusters(cls, clusters: Iterable[PhraseCluster]) -> "PhraseIndex":
        index = cls()
        for cluster in clusters:
            index.put(cluster)
        return index

    def __len__(self) -> int:
        return sum(1 for alive in self.alive if alive)

    def put(self, cluster: PhraseCluster) -> None:
        slot = self._slot_by_cluster.get(cluster.id)
        if slot is None:
            slot = len(self.cluster_ids)
            self.cluster_ids.append(cluster.id)
            self.keys.append(cluster.representative_key)
            self.created.append((cluster.created_at, cluster.id))
            self.alive.append(True)
            self._slot_by_cluster[cluster.id] = slot
        else:
            for token in _tokens(self.keys[slot]):
                self._token_slots[token].discard(slot)
            self.keys[slot] = cluster.representative_key
            self.alive[slot] = True
        for token in _tokens(cluster.representative_key):
            self._token_slots[token].add(slot)

    def remove(self, cluster_id: int) -> None:
        slot = self._slot_by_cluster.get(cluster_id)
        if slot is not None:
            self.alive[slot] = False

    def best_match(
        self,
        phrase_key: str,
        threshold: float,
        *,
        exclude_cluster_id: Optional[int] = None,
    ) -> Optional[tuple[int, float]]:
        """(cluster_id, similarity) of the most similar representative; ties go to the older cluster."""
        slots: set[int] = set()
        for token in _tokens(phrase_key):
            slots |= self._token_slots.get(token, set())
        best: Optional[tuple[float, tuple[datetime, int], int]] = None
        for slot in slots:
            if not self.alive[slot] or self.cluster_ids[slot] == exclude_cluster_id:
                continue
            similarity = phrase_similarity(phrase_key, self.keys[slot])
            if similarity < threshold:
                continue
            candidate = (similarity, self.created[slot], self.cluster_ids[slot])
            if best is None or similarity > best[0] or (similarity == best[0] and candidate[1] < best[1]):
                best = candidate
        if best is None:
            return None
        return best[2], best[0]


class PhraseClusteringService:
    """Incremental phrase clustering with deterministic merges."""

    def __init__(
        self,
        db: Session,
        config: TrendDetectionConfig = DEFAULT_DETECTION_CONFIG,
        *,
        similarity_threshold: Optional[float] = None,
        store: Optional[TrendEventStore] = None,
    ):
        self.db = db
        self.config = config
        self.similarity_threshold = (
            similarity_threshold if similarity_threshold is not None else settings.phrase_similarity_threshold
        )
        self.store = store or TrendEventStore(db, config, job_name="phrase_clustering")
        self._index: Optional[PhraseIndex] = None

    def _maybe_with_for_update(self, query):
        """Apply row-level locking on databases that support it."""
        bind = self.db.get_bind()
        if bind is not None and bind.dialect.name != "sqlite":
            return query.with_for_update()
        return query

    @property
    def index(self) -> PhraseIndex:
        if self._index is None:
            clusters = (
                self.db.query(PhraseCluster)
                .filter(PhraseCluster.is_active.is_(True))
                .order_by(PhraseCluster.created_at.asc(), PhraseCluster.id.asc())
                .all()
            )
            self._index = PhraseIndex.from_clusters(clusters)
        return self._index

    def resolve_alias(self, phrase_key: str) -> str:
        alias = self.db.query(TopicAlias).filter(TopicAlias.alias_key == phrase_key).first()
        return alias.canonical_key if alias is not None else phrase_key

    def add_alias(self, alias_text: str, canonical_key: str, *, source: str = "manual") -> TopicAlias:
        alias_key = canonical_topic_key(alias_text)
        alias = self.db.query(TopicAlias).filter(TopicAlias.alias_key == alias_key).first()
        if alias is None:
            alias = TopicAlias(alias_key=alias_key, alias_text=alias_text[:300], canonical_key=canonical_key, source=source)
            self.db.add(alias)
        else:
            alias.canonical_key = canonical_key
        return alias

    def _resolve_active(self, cluster: PhraseCluster) -> PhraseCluster:
        """Follow merged_into links to the surviving cluster."""
        current = cluster
        for _ in range(MAX_MERGE_HOPS):
            if current.is_active:
                return current
            if current.merged_into_id is None:
                break
            current = self.db.get(PhraseCluster, current.merged_into_id)
            if current is None:
                break
        raise ClusterConflict(cluster.id, cluster.merged_into_id)

    def _lock_active(self, cluster_id: int) -> PhraseCluster:
        cluster = self._maybe_with_for_update(
            self.db.query(PhraseCluster).filter(PhraseCluster.id == cluster_id)
        ).first()
        if cluster is None:
            raise LookupError(f"phrase cluster {cluster_id} not found")
        if not cluster.is_active:
            raise ClusterConflict(cluster.id, cluster.merged_into_id)
        return cluster

    def _refresh_representative(self, cluster: PhraseCluster) -> None:
        members = (
            self.db.query(PhraseClusterMember)
            .filter(PhraseClusterMember.cluster_id == cluster.id)
            .order_by(PhraseClusterMember.id.asc())
            .all()
        )
        cluster.member_count = len(members)
        if not members:
            return
        best = max(members, key=lambda member: (member.authority_score, -member.id))
        cluster.representative_key = best.phrase_key
        cluster.representative_label = best.label
        cluster.representative_authority = best.authority_score

    def assign(self, candidate: PhraseCandidate, *, now: Optional[datetime] = None) -> PhraseCluster:
        """Attach ``candidate`` to its cluster (existing member, similar cluster or new seed)."""
        current = now or utcnow()
        phrase_key = self.resolve_alias(candidate.phrase_key)
        source_authority = source_authority_total(candidate.source_type_counts)

        member = self.db.query(PhraseClusterMember).filter(PhraseClusterMember.phrase_key == phrase_key).first()
        if member is not None:
            member.mention_count += candidate.mention_count
            member.source_authority += source_authority
            member.is_event_phrase = member.is_event_phrase or candidate.is_event_phrase
            member.authority_score = authority_score(
                member.mention_count, member.is_event_phrase, member.source_authority
            )
            cluster = self._resolve_active(self.db.get(PhraseCluster, member.cluster_id))
            if cluster.id != member.cluster_id:
                member.cluster_id = cluster.id
            self._refresh_representative(cluster)
            cluster.updated_at = current
            self.db.flush()
            self.index.put(cluster)
            return cluster

        cluster = None
        match = self.index.best_match(phrase_key, self.similarity_threshold)
        if match is not None:
            try:
                cluster = self._lock_active(match[0])
            except ClusterConflict as exc:
                logger.info("Phrase %s matched merged cluster %s; following merge", phrase_key, exc.cluster_id)
                self.index.remove(exc.cluster_id)
                cluster = self._resolve_active(self.db.get(PhraseCluster, exc.cluster_id))

        if cluster is None:
            cluster = PhraseCluster(
                canonical_key=phrase_key,
                representative_key=phrase_key,
                representative_label=candidate.label[:300],
                representative_authority=0.0,
                similarity_threshold=self.similarity_threshold,
                member_count=0,
                is_active=True,
                created_at=current,
                updated_at=current,
            )
            self.db.add(cluster)
            self.db.flush()

        self.db.add(
            PhraseClusterMember(
                cluster_id=cluster.id,
                phrase_key=phrase_key,
                label=candidate.label[:300],
                mention_count=candidate.mention_count,
                source_authority=source_authority,
                is_event_phrase=candidate.is_event_phrase,
                authority_score=authority_score(candidate.mention_count, candidate.is_event_phrase, source_authority),
                created_at=current,
            )
        )
        self.db.flush()
        self._refresh_representative(cluster)
        cluster.updated_at = current
        self.db.flush()
        self.index.put(cluster)
        return cluster

    def assign_batch(
        self,
        candidates: Iterable[PhraseCandidate],
        *,
        now: Optional[datetime] = None,
        counted: Iterable[MentionEvidence] = (),
    ) -> dict[str, PhraseCluster]:
        """Assign candidates in key order and commit; returns phrase_key -> cluster.

        Evidence rows in ``counted`` are stamped ``clustered_at`` in the same
        commit as the member counts they fed.
        """
        current = now or utcnow()
        assignments: dict[str, PhraseCluster] = {}
        try:
            for candidate in sorted(candidates, key=lambda item: item.phrase_key):
                assignments[candidate.phrase_key] = self.assign(candidate, now=current)
            for row in counted:
                if row.clustered_at is None:
                    row.clustered_at = current
            self.db.commit()
        except SQLAlchemyError as exc:
            self.db.rollback()
            self._index = None
            raise StorageError(f"phrase clustering failed: {exc}") from exc
        return assignments

    @staticmethod
    def merge_idempotency_key(cluster_a_id: int, cluster_b_id: int) -> str:
        low, high = sorted((cluster_a_id, cluster_b_id))
        return f"phrase-merge:{low}:{high}"

    def merge_clusters(
        self,
        cluster_a_id: int,
        cluster_b_id: int,
        *,
        idempotency_key: Optional[str] = None,
        similarity: Optional[float] = None,
        merge_type: str = "auto",
        merged_by: str = "system",
        now: Optional[datetime] = None,
    ) -> dict:
        """Merge two clusters into the one created first; commutative and idempotent."""
        current = now or utcnow()
        key = idempotency_key or self.merge_idempotency_key(cluster_a_id, cluster_b_id)
        replay = self.db.query(TrendMergeHistory).filter(TrendMergeHistory.idempotency_key == key).first()
        if replay is not None:
            return {
                "success": True,
                "idempotent_replay": True,
                "target_cluster_id": replay.target_cluster_id,
                "source_cluster_id": replay.source_cluster_id,
            }

        try:
            ordered_ids = sorted({cluster_a_id, cluster_b_id})
            locked = self._maybe_with_for_update(
                self.db.query(PhraseCluster)
                .filter(PhraseCluster.id.in_(ordered_ids))
                .order_by(PhraseCluster.id.asc())
            ).all()
            if len(locked) != len(ordered_ids):
                return {"success": False, "error": "Phrase cluster not found"}
            # A side merged away concurrently resolves to its surviving cluster
            roots = {self._resolve_active(cluster).id: self._resolve_active(cluster) for cluster in locked}
            if len(roots) < 2:
                return {"success": True, "noop": True, "target_cluster_id": next(iter(roots))}

            target, source = sorted(roots.values(), key=lambda cluster: (cluster.created_at, cluster.id))
            members_moved = (
                self.db.query(PhraseClusterMember)
                .filter(PhraseClusterMember.cluster_id == source.id)
                .update({PhraseClusterMember.cluster_id: target.id}, synchronize_session="fetch")
            )
            self.db.flush()
            self._refresh_representative(target)

            evidence_moved = 0
            source_event = self.store.get_event(source.canonical_key, lock=True)
            target_event = self.store.get_event(target.canonical_key, lock=True)
            if source_event is not None and target_event is None:
                target_event = self._adopt_event(source_event, target, current)
            elif source_event is not None:
                evidence_moved = self.store.merge_events(
                    source_event, target_event, now=current, reason=f"merged_into:{target.canonical_key}"
                )

            source.is_active = False
            source.merged_into_id = target.id
            source.member_count = 0
            source.updated_at = current
            target.updated_at = current
            if target_event is not None:
                target_event.phrase_cluster_id = target.id

            history = TrendMergeHistory(
                source_cluster_id=source.id,
                target_cluster_id=target.id,
                source_event_key=source.canonical_key,
                target_event_key=target.canonical_key,
                merge_type=merge_type,
                similarity=similarity,
                members_moved=int(members_moved or 0),
                evidence_moved=evidence_moved,
                idempotency_key=key,
                merged_by=(merged_by or "system")[:50],
                merged_at=current,
            )
            self.db.add(history)
            self.db.commit()
        except SQLAlchemyError as exc:
            self.db.rollback()
            self._index = None
            logger.exception("Phrase cluster merge failed for %s/%s", cluster_a_id, cluster_b_id)
            raise StorageError(f"phrase cluster merge failed: {exc}") from exc

        if self._index is not None:
            self._index.remove(source.id)
            self._index.put(target)
        logger.info(
            "Merged phrase cluster %s (%s) into %s (%s): %d members, %d evidence",
            source.id, source.canonical_key, target.id, target.canonical_key, members_moved, evidence_moved,
        )
        return {
            "success": True,
            "source_cluster_id": source.id,
            "target_cluster_id": target.id,
            "target_event_key": target.canonical_key,
            "members_moved": int(members_moved or 0),
            "evidence_moved": evidence_moved,
            "merge_history_id": history.id,
        }

    def _adopt_event(self, source_event: TrendEvent, target: PhraseCluster, now: datetime) -> TrendEvent:
        """Target cluster has no event yet: create it and fold the source event in."""
        target_event = TrendEvent(
            event_key=target.canonical_key,
            canonical_label=target.representative_label,
            alias_variants=[],
            entity_type=source_event.entity_type,
            phrase_cluster_id=target.id,
            first_seen_at=source_event.first_seen_at,
            last_seen_at=source_event.last_seen_at,
            trend_stage="new",
            stage_updated_at=now,
            version=0,
        )
        self.db.add(target_event)
        self.db.flush()
        self.store.merge_events(source_event, target_event, now=now, reason=f"merged_into:{target.canonical_key}")
        return target_event

    def consolidate(self, *, max_clusters: Optional[int] = None, now: Optional[datetime] = None) -> dict:
        """Merge active clusters whose representatives are now similar (oldest cluster survives)."""
        current = now or utcnow()
        limit = max_clusters or settings.consolidation_max_clusters
        clusters = (
            self.db.query(PhraseCluster)
            .filter(PhraseCluster.is_active.is_(True))
            .order_by(PhraseCluster.created_at.asc(), PhraseCluster.id.asc())
            .limit(limit)
            .all()
        )
        index = PhraseIndex()
        stats: Counter = Counter(clusters_scanned=len(clusters))
        for cluster in clusters:
            match = index.best_match(cluster.representative_key, self.similarity_threshold)
            if match is None:
                index.put(cluster)
                continue
            result = self.merge_clusters(match[0], cluster.id, similarity=match[1], now=current)
            if result.get("success") and not result.get("noop"):
                stats["merges"] += 1
                survivor = self.db.get(PhraseCluster, result["target_cluster_id"])
                index.put(survivor)
            else:
                index.put(cluster)
        self._index = None
        return dict(stats)
