"""
API endpoints for per-organization trend relevance.
"""
import logging

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy.orm import Session

from ...database import get_db
from ...domain.errors import StorageError
from ...models.organization import Organization
from ...schemas.trend import OrgTrendScoreResponse, OrgTrendScoresResponse
from ...services.org_relevance_service import OrgRelevanceProjector

logger = logging.getLogger(__name__)

router = APIRouter()


@router.get("/{organization_id}/trend-scores", response_model=OrgTrendScoresResponse)
async def get_trend_scores(
    organization_id: int,
    min_relevance: float = Query(0.0, ge=0, le=100),
    include_blocked: bool = Query(False, description="Include trends blocked by the deny list"),
    limit: int = Query(50, ge=1, le=500),
    db: Session = Depends(get_db),
):
    """
    Relevance scores for an organization, highest relevance first.

    Scores past their TTL are recomputed before being returned.
    """
    if db.get(Organization, organization_id) is None:
        raise HTTPException(status_code=404, detail=f"Organization {organization_id} not found")
    try:
        rows = OrgRelevanceProjector(db).get_org_scores(
            organization_id,
            min_relevance=min_relevance,
            include_blocked=include_blocked,
            limit=limit,
        )
    except StorageError as e:
        logger.error(f"Lazy score recompute failed for organization {organization_id}: {e}", exc_info=True)
        raise HTTPException(status_code=503, detail="Score store unavailable")
    scores = [OrgTrendScoreResponse.model_validate(row) for row in rows]
    return OrgTrendScoresResponse(organization_id=organization_id, scores=scores, total=len(scores))
