"""
Semantic clustering of trend events.

Groups topically related but textually distinct trend events (e.g. a court
ruling and the protest it triggered) by cosine similarity between each
event's embedding and the running cluster centroids. Clusters whose centroids
drift together are folded into the older one.
"""
from __future__ import annotations

import logging
from datetime import datetime
from typing import Iterable, Optional

import numpy as np
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from ..config import settings
from ..domain.errors import StorageError
from ..models.trend import SemanticCluster, TrendEvent
from .evidence_normalizer import utcnow
from .trend_embedding_service import TrendEmbeddingEngine, TrendEmbeddingRepository

logger = logging.getLogger(__name__)

MAX_MERGE_HOPS = 16


class SemanticClusteringService:
    """Incremental centroid clustering over trend event embeddings."""

    def __init__(
        self,
        db: Session,
        *,
        engine: Optional[TrendEmbeddingEngine] = None,
        similarity_threshold: Optional[float] = None,
    ):
        self.db = db
        self.engine = engine or TrendEmbeddingEngine(settings.embedding_model_name)
        self.repository = TrendEmbeddingRepository(db)
        self.similarity_threshold = (
            similarity_threshold if similarity_threshold is not None else settings.semantic_similarity_threshold
        )

    def _active_centroids(self) -> list[tuple[SemanticCluster, np.ndarray]]:
        clusters = (
            self.db.query(SemanticCluster)
            .filter(SemanticCluster.is_active.is_(True))
            .order_by(SemanticCluster.created_at.asc(), SemanticCluster.id.asc())
            .all()
        )
        centroids = []
        for cluster in clusters:
            vector = self.engine.deserialize(cluster.centroid)
            if vector is not None:
                centroids.append((cluster, vector))
        return centroids

    def _best_cluster(
        self, vector: np.ndarray, centroids: list[tuple[SemanticCluster, np.ndarray]]
    ) -> Optional[tuple[SemanticCluster, float]]:
        best: Optional[tuple[SemanticCluster, float]] = None
        for cluster, centroid in centroids:
            if centroid.shape != vector.shape:
                continue
            similarity = self.engine.cosine_similarity(vector, centroid)
            if similarity >= self.similarity_threshold and (best is None or similarity > best[1]):
                best = (cluster, similarity)
        return best

    def refresh_cluster(self, cluster: SemanticCluster, *, now: Optional[datetime] = None) -> None:
        """Recompute centroid and aggregate stats from current members."""
        members = (
            self.db.query(TrendEvent)
            .filter(TrendEvent.semantic_cluster_id == cluster.id, TrendEvent.trend_stage != "archived")
            .all()
        )
        cluster.member_count = len(members)
        cluster.updated_at = now or utcnow()
        if not members:
            cluster.is_active = False
            cluster.avg_velocity = 0.0
            cluster.avg_confidence = 0.0
            return
        cluster.avg_velocity = float(np.mean([member.velocity or 0.0 for member in members]))
        cluster.avg_confidence = float(np.mean([member.confidence_score or 0.0 for member in members]))
        embeddings = self.repository.get_by_event_ids([member.id for member in members])
        vectors = [self.engine.deserialize(row.embedding) for row in embeddings.values()]
        vectors = [vector for vector in vectors if vector is not None]
        if vectors:
            cluster.centroid = self.engine.serialize(np.mean(np.vstack(vectors), axis=0))
        top = max(members, key=lambda member: (member.trend_score or 0.0, -member.id))
        cluster.label = top.canonical_label

    def cluster_events(self, events: Iterable[TrendEvent], *, now: Optional[datetime] = None) -> dict:
        """Assign each event to the nearest centroid or seed a new cluster; commits."""
        current = now or utcnow()
        if not self.engine.available:
            logger.info("Semantic clustering skipped: no embedding encoder available")
            return {"skipped": True, "reason": "encoder_unavailable"}

        stats = {"events_seen": 0, "assigned": 0, "seeded": 0, "unencoded": 0, "unchanged": 0}
        touched: dict[int, SemanticCluster] = {}
        try:
            centroids = self._active_centroids()
            for event in sorted(events, key=lambda item: item.id):
                stats["events_seen"] += 1
                vector = self.repository.ensure_embedding(event, self.engine)
                if vector is None:
                    stats["unencoded"] += 1
                    continue
                match = self._best_cluster(vector, centroids)
                if match is None:
                    cluster = SemanticCluster(
                        label=event.canonical_label,
                        centroid=self.engine.serialize(vector),
                        member_count=0,
                        similarity_threshold=self.similarity_threshold,
                        is_active=True,
                        created_at=current,
                        updated_at=current,
                    )
                    self.db.add(cluster)
                    self.db.flush()
                    centroids.append((cluster, vector))
                    stats["seeded"] += 1
                else:
                    cluster = match[0]
                    if event.semantic_cluster_id == cluster.id:
                        stats["unchanged"] += 1
                        continue
                    stats["assigned"] += 1
                previous_id = event.semantic_cluster_id
                event.semantic_cluster_id = cluster.id
                touched[cluster.id] = cluster
                if previous_id is not None and previous_id != cluster.id:
                    previous = self.db.get(SemanticCluster, previous_id)
                    if previous is not None:
                        touched[previous.id] = previous
            self.db.flush()
            for cluster in touched.values():
                self.refresh_cluster(cluster, now=current)
            self.db.flush()
            stats["merged"] = self._merge_converged(current)
            self.db.commit()
        except SQLAlchemyError as exc:
            self.db.rollback()
            raise StorageError(f"semantic clustering failed: {exc}") from exc
        stats["clusters_touched"] = len(touched)
        return stats

    def _resolve_active(self, cluster: SemanticCluster) -> Optional[SemanticCluster]:
        """Follow merged_into links to the surviving cluster; None if the chain ends inactive."""
        current = cluster
        for _ in range(MAX_MERGE_HOPS):
            if current.is_active:
                return current
            if current.merged_into_id is None:
                return None
            current = self.db.get(SemanticCluster, current.merged_into_id)
            if current is None:
                return None
        return None

    def _fold(self, source: SemanticCluster, target: SemanticCluster, now: datetime) -> int:
        moved = (
            self.db.query(TrendEvent)
            .filter(TrendEvent.semantic_cluster_id == source.id)
            .update({TrendEvent.semantic_cluster_id: target.id}, synchronize_session="fetch")
        )
        self.db.flush()
        source.is_active = False
        source.merged_into_id = target.id
        source.member_count = 0
        source.updated_at = now
        self.refresh_cluster(target, now=now)
        return int(moved or 0)

    def _merge_converged(self, now: datetime) -> int:
        survivors: list[tuple[SemanticCluster, np.ndarray]] = []
        merged = 0
        # Oldest first, so the surviving cluster is always the older one
        for cluster, centroid in self._active_centroids():
            match = self._best_cluster(centroid, survivors)
            if match is None:
                survivors.append((cluster, centroid))
                continue
            target, similarity = match
            moved = self._fold(cluster, target, now)
            merged += 1
            logger.info(
                "Merged semantic cluster %s into %s (similarity %.3f, %d members)",
                cluster.id, target.id, similarity, moved,
            )
            refreshed = self.engine.deserialize(target.centroid)
            survivors = [
                (kept, refreshed if kept.id == target.id and refreshed is not None else vector)
                for kept, vector in survivors
            ]
        return merged

    def merge_clusters(
        self,
        cluster_a_id: int,
        cluster_b_id: int,
        *,
        now: Optional[datetime] = None,
    ) -> dict:
        """Fold the younger of two clusters into the older one; commutative, commits."""
        current = now or utcnow()
        try:
            ids = sorted({cluster_a_id, cluster_b_id})
            found = self.db.query(SemanticCluster).filter(SemanticCluster.id.in_(ids)).all()
            if len(found) != len(ids):
                return {"success": False, "error": "Semantic cluster not found"}
            roots: dict[int, SemanticCluster] = {}
            for cluster in found:
                root = self._resolve_active(cluster)
                if root is None:
                    return {"success": False, "error": f"Semantic cluster {cluster.id} is no longer active"}
                roots[root.id] = root
            if len(roots) < 2:
                return {"success": True, "noop": True, "target_cluster_id": next(iter(roots))}

            target, source = sorted(roots.values(), key=lambda cluster: (cluster.created_at, cluster.id))
            moved = self._fold(source, target, current)
            self.db.commit()
        except SQLAlchemyError as exc:
            self.db.rollback()
            raise StorageError(f"semantic cluster merge failed: {exc}") from exc
        logger.info("Merged semantic cluster %s into %s: %d members", source.id, target.id, moved)
        return {
            "success": True,
            "source_cluster_id": source.id,
            "target_cluster_id": target.id,
            "members_moved": moved,
        }

    def consolidate(self, *, now: Optional[datetime] = None) -> dict:
        """Merge active clusters whose centroids have converged past the threshold; commits."""
        current = now or utcnow()
        try:
            merged = self._merge_converged(current)
            self.db.commit()
        except SQLAlchemyError as exc:
            self.db.rollback()
            raise StorageError(f"semantic consolidation failed: {exc}") from exc
        return {"merged": merged}
