"""
API endpoints for trend evidence and trend events.
"""
import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy.orm import Session

from ...database import get_db
from ...domain.errors import StorageError
from ...models.trend import TrendEvent, TrendStageTransition
from ...schemas.trend import (
    EvidenceBatchRequest,
    EvidenceBatchResponse,
    StageTransitionResponse,
    TrendDetailResponse,
    TrendEventResponse,
    TrendListResponse,
)
from ...services.evidence_normalizer import EvidenceNormalizer
from ...services.trend_event_store import TrendEventStore, TrendFilter
from ...services.trend_lifecycle_service import ACTIVE_STAGES

logger = logging.getLogger(__name__)

router = APIRouter()


@router.post("/evidence", response_model=EvidenceBatchResponse)
async def ingest_evidence(request: EvidenceBatchRequest, db: Session = Depends(get_db)):
    """
    Ingest a batch of raw mention records.

    Invalid records are rejected individually; duplicates (same content hash and
    source type) are counted but never stored twice. Detection runs in the next
    scheduled pass.
    """
    try:
        result = EvidenceNormalizer(db).ingest_batch(request.records)
    except StorageError as e:
        logger.error(f"Evidence ingest failed: {e}", exc_info=True)
        raise HTTPException(status_code=503, detail="Evidence store unavailable")
    return EvidenceBatchResponse(**result.as_dict())


@router.get("/trends", response_model=TrendListResponse)
async def list_trends(
    stage: Optional[list[str]] = Query(None, description="Filter by trend stage (repeatable)"),
    min_confidence: float = Query(0.0, ge=0, le=1),
    breaking_only: bool = Query(False),
    trending_only: bool = Query(False),
    limit: int = Query(50, ge=1, le=500),
    db: Session = Depends(get_db),
):
    """Active trends ordered by trend score."""
    stages = tuple(stage) if stage else ACTIVE_STAGES
    trend_filter = TrendFilter(
        stages=stages,
        min_confidence=min_confidence,
        breaking_only=breaking_only,
        trending_only=trending_only,
        limit=limit,
    )
    trends = [TrendEventResponse.model_validate(event) for event in TrendEventStore(db).get_active_trends(trend_filter)]
    return TrendListResponse(trends=trends, total=len(trends))


@router.get("/trends/{event_key}", response_model=TrendDetailResponse)
async def get_trend(event_key: str, db: Session = Depends(get_db)):
    """One trend event with its score breakdown and stage history."""
    event = db.query(TrendEvent).filter(TrendEvent.event_key == event_key).first()
    if event is None:
        raise HTTPException(status_code=404, detail=f"Trend {event_key} not found")
    history = (
        db.query(TrendStageTransition)
        .filter(TrendStageTransition.trend_event_id == event.id)
        .order_by(TrendStageTransition.transitioned_at.asc(), TrendStageTransition.id.asc())
        .all()
    )
    detail = TrendDetailResponse.model_validate(event)
    detail.stage_history = [StageTransitionResponse.model_validate(row) for row in history]
    return detail
