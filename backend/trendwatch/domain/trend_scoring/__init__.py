"""Domain value objects for trend scoring."""

from .models import (
    AnomalyPoint,
    BaselineStats,
    BreakingDecision,
    BreakingSignals,
    ConfidenceInputs,
    LabelAssessment,
    NewEvidence,
    SourceMix,
    VelocityMetrics,
    WindowCounts,
)

__all__ = [
    "AnomalyPoint",
    "BaselineStats",
    "BreakingDecision",
    "BreakingSignals",
    "ConfidenceInputs",
    "LabelAssessment",
    "NewEvidence",
    "SourceMix",
    "VelocityMetrics",
    "WindowCounts",
]
