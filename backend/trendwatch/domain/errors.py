"""Error taxonomy for the trend pipeline."""
from __future__ import annotations


class TrendwatchError(Exception):
    """Base class for pipeline errors."""


class InvalidEvidence(TrendwatchError):
    """A mention record is malformed; it is dropped with a logged reason."""

    def __init__(self, reason: str, *, field: str | None = None):
        self.reason = reason
        self.field = field
        message = f"{field}: {reason}" if field else reason
        super().__init__(message)


class InsufficientBaseline(TrendwatchError):
    """Not enough history to classify a topic; callers report it as unclassified."""

    def __init__(self, topic_key: str, data_points: int, required: int):
        self.topic_key = topic_key
        self.data_points = data_points
        self.required = required
        super().__init__(
            f"Baseline for {topic_key!r} has {data_points} data points (needs {required})"
        )


class ClusterConflict(TrendwatchError):
    """Two merges raced for the same representative; resolved by the lower-created rule."""

    def __init__(self, cluster_id: int, merged_into_id: int | None):
        self.cluster_id = cluster_id
        self.merged_into_id = merged_into_id
        super().__init__(f"Cluster {cluster_id} was already merged into {merged_into_id}")


class StalePassSkipped(TrendwatchError):
    """A batch pass ran out of time; the remaining keys are deferred to the next run."""

    def __init__(
        self,
        pass_name: str,
        deferred_keys: list[str],
        *,
        stats: dict | None = None,
        keys_total: int = 0,
        keys_processed: int = 0,
    ):
        self.pass_name = pass_name
        self.deferred_keys = list(deferred_keys)
        self.stats = dict(stats or {})
        self.keys_total = keys_total or len(self.deferred_keys)
        self.keys_processed = keys_processed
        super().__init__(f"{pass_name} deferred {len(self.deferred_keys)} keys past its deadline")


class ProjectionStale(TrendwatchError):
    """An org trend score is past its TTL and must be recomputed."""

    def __init__(self, organization_id: int, trend_event_id: int):
        self.organization_id = organization_id
        self.trend_event_id = trend_event_id
        super().__init__(f"Score for org {organization_id} / trend {trend_event_id} expired")


class StorageError(TrendwatchError):
    """Persisting pipeline state failed; fatal to the enclosing pass."""
