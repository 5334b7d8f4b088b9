"""
Trend Pipeline Service

Runs the scheduled batch passes over the trend store:

- detection:     pending evidence -> phrase clusters -> per-key trend upsert
- refresh:       time-based recount/decay/stage for live trends
- consolidation: merge phrase clusters whose representatives converged
- semantic:      embedding clustering of live trends
- baseline:      full rebuild of topic baselines from hourly buckets
- projection:    per-organization relevance scores

Every pass is recorded as a PassRun keyed by an idempotency key. Re-running a
completed or degraded key is a no-op; a failed key may be retried. Keyed
passes are partitioned across worker threads by a stable hash so one worker
owns each key. Keys not reached before the deadline are deferred and the
pass is reported as degraded.
"""
from __future__ import annotations

import hashlib
import logging
import time
from collections import Counter, defaultdict
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime
from typing import Any, Callable, Iterable, Mapping, Optional, Sequence

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from ..config import settings
from ..config.detection_config import load_detection_config
from ..database import SessionLocal
from ..domain.errors import StalePassSkipped, StorageError
from ..models.organization import Organization
from ..models.trend import MentionEvidence, PassRun, TopicBaseline, TrendEvent
from .baseline_service import BaselineEstimator
from .evidence_normalizer import EvidenceNormalizer, evidence_from_row, utcnow
from .org_relevance_service import OrgRelevanceProjector
from .phrase_clustering_service import PhraseCandidate, PhraseClusteringService
from .semantic_clustering_service import SemanticClusteringService
from .trend_embedding_service import TrendEmbeddingEngine
from .trend_event_store import TrendEventStore

logger = logging.getLogger(__name__)

PASS_NAMES = ("detection", "refresh", "consolidation", "semantic", "baseline", "projection")
TERMINAL_NOOP_STATUSES = ("completed", "degraded")


def partition_keys(
    keys: Iterable[Any], partitions: int, *, first: Iterable[Any] = ()
) -> list[list[Any]]:
    """Split keys into ``partitions`` buckets by a stable hash.

    Each bucket is sorted, except that keys named in ``first`` (compared as
    strings) lead their bucket so work deferred by an earlier run goes first.
    """
    count = max(1, int(partitions))
    leading = {str(key) for key in first}
    buckets: list[list[Any]] = [[] for _ in range(count)]
    for key in sorted(set(keys), key=lambda item: (str(item) not in leading, str(item))):
        digest = hashlib.sha1(str(key).encode("utf-8")).hexdigest()
        buckets[int(digest, 16) % count].append(key)
    return buckets


def default_idempotency_key(pass_name: str, now: datetime, interval_minutes: int = 1) -> str:
    """Key for the schedule slot containing ``now``."""
    minutes = now.hour * 60 + now.minute
    slot = minutes - minutes % max(1, interval_minutes)
    return f"{pass_name}:{now:%Y%m%d}T{slot // 60:02d}{slot % 60:02d}"


class TrendPipelineService:
    """Batch pass runner with PassRun bookkeeping."""

    def __init__(
        self,
        db: Session,
        *,
        session_factory: Optional[Callable[[], Session]] = None,
        max_workers: Optional[int] = None,
        deadline_seconds: Optional[float] = None,
        clock: Callable[[], float] = time.monotonic,
        embedding_engine: Optional[TrendEmbeddingEngine] = None,
    ):
        self.db = db
        self.session_factory = session_factory or SessionLocal
        self.max_workers = max(1, max_workers or settings.trend_pass_max_workers)
        self.deadline_seconds = (
            deadline_seconds if deadline_seconds is not None else settings.trend_pass_deadline_seconds
        )
        self.clock = clock
        self.embedding_engine = embedding_engine
        self._carried_over: tuple[str, ...] = ()

    # ------------------------------------------------------------------ runs

    def _begin(self, pass_name: str, idempotency_key: str, now: datetime) -> tuple[Optional[PassRun], Optional[dict]]:
        """Claim the run for ``idempotency_key``; returns (run, noop_result)."""
        try:
            run = self.db.query(PassRun).filter(PassRun.idempotency_key == idempotency_key).first()
            if run is not None and run.status in TERMINAL_NOOP_STATUSES:
                logger.info("Pass %s already %s for %s; nothing to do", pass_name, run.status, idempotency_key)
                return None, {
                    "pass": pass_name,
                    "idempotency_key": idempotency_key,
                    "status": run.status,
                    "noop": True,
                    "run_id": run.run_id,
                }
            if run is not None and run.status == "running":
                return None, {
                    "pass": pass_name,
                    "idempotency_key": idempotency_key,
                    "status": "running",
                    "noop": True,
                    "run_id": run.run_id,
                }
            if run is not None:
                logger.info("Retrying failed pass %s (%s), attempt %d", pass_name, idempotency_key, run.attempts + 1)
                run.attempts += 1
                run.status = "running"
                run.error_message = None
                run.started_at = now
                run.finished_at = None
            else:
                run = PassRun(pass_name=pass_name, idempotency_key=idempotency_key, status="running", started_at=now)
                self.db.add(run)
            self.db.commit()
            return run, None
        except SQLAlchemyError as exc:
            self.db.rollback()
            raise StorageError(f"could not record pass run {idempotency_key}: {exc}") from exc

    def _deferred_by_previous_run(self, pass_name: str, run: PassRun) -> tuple[str, ...]:
        """Keys the latest finished run of ``pass_name`` deferred; empty unless it was degraded."""
        try:
            previous = (
                self.db.query(PassRun)
                .filter(
                    PassRun.pass_name == pass_name,
                    PassRun.id != run.id,
                    PassRun.status.in_(TERMINAL_NOOP_STATUSES),
                )
                .order_by(PassRun.finished_at.desc(), PassRun.id.desc())
                .first()
            )
        except SQLAlchemyError as exc:
            self.db.rollback()
            raise StorageError(f"could not read previous {pass_name} run: {exc}") from exc
        if previous is None or previous.status != "degraded":
            return ()
        return tuple(str(key) for key in (previous.deferred_keys or []))

    def _finish(
        self,
        run: PassRun,
        *,
        status: str,
        stats: Mapping[str, Any],
        keys_total: int = 0,
        keys_processed: int = 0,
        deferred: Sequence[str] = (),
        error: Optional[str] = None,
    ) -> dict:
        run.status = status
        run.stats = dict(stats)
        run.keys_total = keys_total
        run.keys_processed = keys_processed
        run.deferred_keys = [str(key) for key in deferred]
        run.error_message = error
        run.finished_at = utcnow()
        try:
            self.db.commit()
        except SQLAlchemyError as exc:
            self.db.rollback()
            raise StorageError(f"could not finish pass run {run.idempotency_key}: {exc}") from exc
        return {
            "pass": run.pass_name,
            "idempotency_key": run.idempotency_key,
            "run_id": run.run_id,
            "status": status,
            "noop": False,
            "keys_total": keys_total,
            "keys_processed": keys_processed,
            "deferred_keys": list(run.deferred_keys),
            "stats": dict(stats),
            "error": error,
        }

    def _execute(
        self,
        pass_name: str,
        idempotency_key: Optional[str],
        now: Optional[datetime],
        body: Callable[[datetime], tuple[dict, int, int]],
    ) -> dict:
        current = now or utcnow()
        key = idempotency_key or default_idempotency_key(pass_name, current)
        run, noop = self._begin(pass_name, key, current)
        if noop is not None:
            return noop

        try:
            self._carried_over = self._deferred_by_previous_run(pass_name, run)
            if self._carried_over:
                logger.info("Pass %s: %d key(s) deferred by the previous run go first", pass_name, len(self._carried_over))
            stats, total, processed = body(current)
        except StalePassSkipped as exc:
            logger.warning("%s", exc)
            return self._finish(
                run,
                status="degraded",
                stats=exc.stats,
                keys_total=exc.keys_total,
                keys_processed=exc.keys_processed,
                deferred=exc.deferred_keys,
            )
        except StorageError as exc:
            self.db.rollback()
            logger.error("Pass %s (%s) failed: %s", pass_name, key, exc, exc_info=True)
            return self._finish(run, status="failed", stats={}, error=str(exc))
        except Exception as exc:
            self.db.rollback()
            logger.exception("Pass %s (%s) crashed", pass_name, key)
            self._finish(run, status="failed", stats={}, error=str(exc))
            raise

        status = "degraded" if stats.get("failed_keys") else "completed"
        return self._finish(run, status=status, stats=stats, keys_total=total, keys_processed=processed)

    def _run_partitioned(
        self,
        pass_name: str,
        keys: Sequence[Any],
        handler: Callable[[Session, Any], Optional[str]],
        *,
        isolate_errors: bool = False,
    ) -> tuple[dict, int, int]:
        """Apply ``handler(session, key)`` to every key, one worker per partition.

        ``handler`` returns an outcome label for the stats counter. StorageError
        aborts the pass unless ``isolate_errors``; keys not started before the
        deadline are deferred and reported through StalePassSkipped.
        """
        deadline = self.clock() + self.deadline_seconds
        partitions = [
            bucket for bucket in partition_keys(keys, self.max_workers, first=self._carried_over) if bucket
        ]

        def work(bucket: list[Any]) -> tuple[Counter, list[Any], list[dict]]:
            outcomes: Counter = Counter()
            deferred: list[Any] = []
            failed: list[dict] = []
            session = self.db if len(partitions) <= 1 else self.session_factory()
            try:
                for position, key in enumerate(bucket):
                    if self.clock() >= deadline:
                        deferred.extend(bucket[position:])
                        break
                    try:
                        outcome = handler(session, key)
                    except StorageError:
                        if not isolate_errors:
                            raise
                        session.rollback()
                        logger.exception("%s pass: key %s failed", pass_name, key)
                        failed.append({"key": str(key), "error": "storage"})
                        continue
                    except (ValueError, LookupError) as exc:
                        session.rollback()
                        logger.warning("%s pass: skipping key %s: %s", pass_name, key, exc)
                        outcome = "skipped"
                    except Exception as exc:
                        if not isolate_errors:
                            raise
                        session.rollback()
                        logger.exception("%s pass: key %s failed", pass_name, key)
                        failed.append({"key": str(key), "error": str(exc)})
                        continue
                    outcomes[outcome or "processed"] += 1
            finally:
                if session is not self.db:
                    session.close()
            return outcomes, deferred, failed

        totals: Counter = Counter()
        deferred_all: list[Any] = []
        failed_all: list[dict] = []
        if len(partitions) <= 1:
            results = [work(bucket) for bucket in partitions]
        else:
            with ThreadPoolExecutor(max_workers=len(partitions), thread_name_prefix=f"{pass_name}-pass") as pool:
                results = list(pool.map(work, partitions))
        for outcomes, deferred, failed in results:
            totals.update(outcomes)
            deferred_all.extend(deferred)
            failed_all.extend(failed)

        stats = dict(totals)
        if failed_all:
            stats["failed_keys"] = failed_all
        processed = sum(totals.values())
        if deferred_all:
            raise StalePassSkipped(
                pass_name,
                [str(key) for key in deferred_all],
                stats=stats,
                keys_total=len(keys),
                keys_processed=processed,
            )
        return stats, len(keys), processed

    # ---------------------------------------------------------------- passes

    def ingest_batch(self, records: Iterable[Mapping[str, Any]], *, now: Optional[datetime] = None) -> dict:
        """Normalize and persist raw mention records; returns accepted/duplicate/rejected counts."""
        return EvidenceNormalizer(self.db).ingest_batch(records, now=now).as_dict()

    def _pending_evidence(self, limit: Optional[int]) -> list[MentionEvidence]:
        query = (
            self.db.query(MentionEvidence)
            .filter(MentionEvidence.trend_event_id.is_(None))
            .order_by(MentionEvidence.published_at.asc(), MentionEvidence.id.asc())
        )
        if limit:
            query = query.limit(limit)
        return query.all()

    @staticmethod
    def build_candidates(rows: Sequence[MentionEvidence]) -> list[PhraseCandidate]:
        """One candidate per topic key: most frequent raw label, distinct items per source type.

        Rows already counted into a cluster member (``clustered_at`` set) still
        route their topic to a cluster but add no mentions.
        """
        labels: dict[str, Counter] = defaultdict(Counter)
        items: dict[str, dict[str, set]] = defaultdict(lambda: defaultdict(set))
        for row in rows:
            labels[row.topic_key][row.raw_label] += 1
            if row.clustered_at is None:
                items[row.topic_key][row.source_type].add(row.item_hash)
        candidates = []
        for topic_key in sorted(labels):
            label = sorted(labels[topic_key].items(), key=lambda pair: (-pair[1], pair[0]))[0][0]
            source_type_counts = {source: len(hashes) for source, hashes in items[topic_key].items()}
            candidates.append(
                PhraseCandidate(
                    phrase_key=topic_key,
                    label=label,
                    mention_count=len({h for hashes in items[topic_key].values() for h in hashes}),
                    source_type_counts=source_type_counts,
                )
            )
        return candidates

    def run_detection_pass(
        self,
        *,
        now: Optional[datetime] = None,
        idempotency_key: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> dict:
        """Cluster pending evidence and upsert it into trend events, one worker per event key."""

        def body(current: datetime) -> tuple[dict, int, int]:
            rows = self._pending_evidence(limit)
            if not rows:
                return {"pending": 0}, 0, 0
            config = load_detection_config(self.db)
            clustering = PhraseClusteringService(
                self.db, config, store=TrendEventStore(self.db, config, job_name="detection_pass")
            )
            assignments = clustering.assign_batch(self.build_candidates(rows), now=current, counted=rows)

            grouped: dict[str, list] = defaultdict(list)
            targets: dict[str, tuple[str, int]] = {}
            for row in rows:
                cluster = assignments[row.topic_key]
                grouped[cluster.canonical_key].append(evidence_from_row(row))
                targets[cluster.canonical_key] = (cluster.representative_label, cluster.id)

            def handle(session: Session, event_key: str) -> str:
                label, cluster_id = targets[event_key]
                store = TrendEventStore(session, config, job_name="detection_pass")
                created = store.get_event(event_key) is None
                store.upsert_evidence(
                    event_key, grouped[event_key], now=current, label=label, phrase_cluster_id=cluster_id
                )
                return "created" if created else "updated"

            stats, total, processed = self._run_partitioned("detection", list(grouped), handle)
            stats["pending"] = len(rows)
            stats["clusters"] = len({cluster.id for cluster in assignments.values()})
            return stats, total, processed

        return self._execute("detection", idempotency_key, now, body)

    def run_refresh_pass(self, *, now: Optional[datetime] = None, idempotency_key: Optional[str] = None) -> dict:
        """Recount windows, decay confidence and advance stages for every non-archived trend."""

        def body(current: datetime) -> tuple[dict, int, int]:
            config = load_detection_config(self.db)
            keys = [
                key
                for (key,) in self.db.query(TrendEvent.event_key)
                .filter(TrendEvent.trend_stage != "archived")
                .order_by(TrendEvent.id.asc())
            ]

            def handle(session: Session, event_key: str) -> str:
                event = TrendEventStore(session, config, job_name="refresh_pass").refresh(event_key, now=current)
                return event.trend_stage if event is not None else "missing"

            return self._run_partitioned("refresh", keys, handle)

        return self._execute("refresh", idempotency_key, now, body)

    def run_consolidation_pass(self, *, now: Optional[datetime] = None, idempotency_key: Optional[str] = None) -> dict:
        """Merge converged phrase clusters (single worker; merges lock both clusters)."""

        def body(current: datetime) -> tuple[dict, int, int]:
            config = load_detection_config(self.db)
            clustering = PhraseClusteringService(
                self.db, config, store=TrendEventStore(self.db, config, job_name="consolidation_pass")
            )
            stats = clustering.consolidate(now=current)
            return stats, stats.get("clusters_scanned", 0), stats.get("clusters_scanned", 0)

        return self._execute("consolidation", idempotency_key, now, body)

    def run_semantic_pass(self, *, now: Optional[datetime] = None, idempotency_key: Optional[str] = None) -> dict:
        """Cluster live trends by embedding; reports ``skipped`` when no encoder is installed."""

        def body(current: datetime) -> tuple[dict, int, int]:
            if not settings.semantic_clustering_enabled:
                return {"skipped": True, "reason": "disabled"}, 0, 0
            events = (
                self.db.query(TrendEvent)
                .filter(TrendEvent.trend_stage != "archived", TrendEvent.merged_into_event_id.is_(None))
                .order_by(TrendEvent.id.asc())
                .all()
            )
            service = SemanticClusteringService(self.db, engine=self.embedding_engine)
            stats = service.cluster_events(events, now=current)
            return stats, len(events), stats.get("events_seen", 0)

        return self._execute("semantic", idempotency_key, now, body)

    def run_baseline_rebuild_pass(
        self,
        *,
        now: Optional[datetime] = None,
        idempotency_key: Optional[str] = None,
        topic_keys: Optional[Sequence[str]] = None,
    ) -> dict:
        """Rebuild every topic baseline from its hourly buckets."""

        def body(current: datetime) -> tuple[dict, int, int]:
            config = load_detection_config(self.db)
            keys = list(topic_keys) if topic_keys else [key for (key,) in self.db.query(TopicBaseline.topic_key)]

            def handle(session: Session, topic_key: str) -> str:
                try:
                    stats = BaselineEstimator(session, config).rebuild_baseline(topic_key, now=current)
                    session.commit()
                except SQLAlchemyError as exc:
                    session.rollback()
                    raise StorageError(f"baseline rebuild failed for {topic_key}: {exc}") from exc
                return "established" if stats.is_established(config.min_baseline_hours) else "unestablished"

            return self._run_partitioned("baseline", keys, handle)

        return self._execute("baseline", idempotency_key, now, body)

    def run_projection_pass(self, *, now: Optional[datetime] = None, idempotency_key: Optional[str] = None) -> dict:
        """Project live trends onto every active organization; failures stay with their organization."""

        def body(current: datetime) -> tuple[dict, int, int]:
            org_ids = [
                org_id
                for (org_id,) in self.db.query(Organization.id)
                .filter(Organization.is_active.is_(True))
                .order_by(Organization.id.asc())
            ]

            def handle(session: Session, organization_id: int) -> str:
                stats = OrgRelevanceProjector(session).project_org(organization_id, now=current)
                return "skipped" if stats.get("skipped") else "projected"

            return self._run_partitioned("projection", org_ids, handle, isolate_errors=True)

        return self._execute("projection", idempotency_key, now, body)
