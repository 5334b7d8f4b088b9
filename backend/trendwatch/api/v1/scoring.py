"""
Stateless scoring endpoints wrapping the pure scoring functions.
"""
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.orm import Session

from ...config.detection_config import TrendDetectionConfig, load_detection_config
from ...database import get_db
from ...domain.trend_scoring.models import BreakingSignals, ConfidenceInputs
from ...schemas.trend import (
    AnomalyPointResponse,
    AnomalyRequest,
    AnomalyResponse,
    BreakingRequest,
    BreakingResponse,
    ConfidenceRequest,
    ConfidenceResponse,
    CrossSourceRequest,
    CrossSourceResponse,
)
from ...services.confidence_service import compute_confidence
from ...services.evidence_normalizer import to_naive_utc, utcnow
from ...services.velocity_service import classify_breaking, cross_source_score, detect_anomalies

router = APIRouter()


def _config(db: Session, organization_id: Optional[int]) -> TrendDetectionConfig:
    try:
        return load_detection_config(db, organization_id)
    except (TypeError, ValueError) as e:
        raise HTTPException(status_code=422, detail=f"Invalid stored detection options: {e}")


@router.post("/confidence", response_model=ConfidenceResponse)
async def confidence(request: ConfidenceRequest):
    inputs = ConfidenceInputs(
        evidence_count=request.evidence_count,
        tier1_count=request.tier1_count,
        tier2_count=request.tier2_count,
        tier3_count=request.tier3_count,
        distinct_source_types=request.distinct_source_types,
        distinct_domains=request.distinct_domains,
        last_seen_at=to_naive_utc(request.last_seen_at),
        label_quality=request.label_quality,
    )
    now = to_naive_utc(request.now) if request.now else utcnow()
    return ConfidenceResponse(confidence=compute_confidence(inputs, now))


@router.post("/breaking", response_model=BreakingResponse)
async def breaking(request: BreakingRequest, db: Session = Depends(get_db)):
    """Breaking classification under global (or one organization's) thresholds."""
    signals = BreakingSignals(
        velocity=request.velocity,
        velocity_score=request.velocity_score,
        current_1h=request.current_1h,
        current_24h=request.current_24h,
        source_count=request.source_count,
        has_tier12=request.has_tier12,
        baseline_established=request.baseline_established,
        first_seen_at=to_naive_utc(request.first_seen_at),
        is_evergreen_single_word=request.is_evergreen_single_word,
    )
    now = to_naive_utc(request.now) if request.now else utcnow()
    decision = classify_breaking(signals, _config(db, request.organization_id), now=now)
    return BreakingResponse(is_breaking=decision.is_breaking, path=decision.path, reasons=list(decision.reasons))


@router.post("/cross-source", response_model=CrossSourceResponse)
async def cross_source(request: CrossSourceRequest, db: Session = Depends(get_db)):
    if any(count < 0 for count in request.source_type_counts.values()):
        raise HTTPException(status_code=422, detail="source counts must be non-negative")
    score = cross_source_score(request.source_type_counts, _config(db, request.organization_id))
    return CrossSourceResponse(cross_source_score=score)


@router.post("/anomalies", response_model=AnomalyResponse)
async def anomalies(request: AnomalyRequest):
    """Hours whose count exceeds the z-score threshold over the preceding lookback window."""
    counts = [(to_naive_utc(point.bucket_start), point.count) for point in request.hourly_counts]
    points = detect_anomalies(counts, lookback_hours=request.lookback_hours, z_threshold=request.z_threshold)
    return AnomalyResponse(
        anomalies=[
            AnomalyPointResponse(
                bucket_start=point.bucket_start,
                count=point.count,
                baseline_mean=point.baseline_mean,
                baseline_std=point.baseline_std,
                z_score=point.z_score,
            )
            for point in points
        ]
    )
