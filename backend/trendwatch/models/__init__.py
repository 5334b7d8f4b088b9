"""Database models for Trendwatch"""
from .trend import (
    MentionEvidence,
    TopicHourlyCount,
    TopicBaseline,
    TrendEvent,
    TrendStageTransition,
    TopicAlias,
    PhraseCluster,
    PhraseClusterMember,
    SemanticCluster,
    TrendEmbedding,
    TrendMergeHistory,
    PassRun,
)
from .organization import (
    Organization,
    OrgInterestTopic,
    OrgWatchlistEntry,
    TrendDetectionSettings,
    OrgTrendScore,
)
