"""
Main API router for v1 endpoints.
"""
from fastapi import APIRouter

from . import organizations, scoring, trends

router = APIRouter()

router.include_router(trends.router, tags=["trends"])
router.include_router(organizations.router, prefix="/organizations", tags=["organizations"])
router.include_router(scoring.router, prefix="/scoring", tags=["scoring"])
