"""
Main FastAPI application entry point.
"""
import asyncio
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy import text

from . import __version__
from .config import settings
from .database import init_db, engine
from .services.redis_pool import get_redis_client

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Lifespan context manager for startup and shutdown events.
    """
    logger.info("Starting Trendwatch API...")
    logger.info("Database: %s", settings.database_url)
    logger.info("CORS origins: %s", settings.cors_origins_list)

    init_db()
    logger.info("Database initialized")

    yield

    logger.info("Shutting down Trendwatch API...")


app = FastAPI(
    title="Trendwatch API",
    description="Trend detection and organization relevance scoring",
    version=__version__,
    lifespan=lifespan
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins_list,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.get("/")
async def root():
    """Root endpoint with API information."""
    return {
        "name": "Trendwatch API",
        "version": __version__,
        "docs": "/docs",
        "status": "running"
    }


@app.get("/health")
async def health_check():
    """Database is required; Redis (pass locks) is a soft dependency."""
    checks = {}
    healthy = True

    try:
        def _check_db():
            with engine.connect() as conn:
                return conn.execute(text("SELECT 1")).scalar() == 1

        checks["database"] = "ok" if await asyncio.to_thread(_check_db) else "error"
        healthy = checks["database"] == "ok"
    except Exception as e:
        checks["database"] = f"error: {type(e).__name__}"
        healthy = False

    def _check_redis():
        client = get_redis_client()
        return client is not None and client.ping()

    try:
        checks["redis"] = "ok" if await asyncio.to_thread(_check_redis) else "warning: unavailable"
    except Exception as e:
        checks["redis"] = f"warning: {type(e).__name__}"

    status_label = "ok" if healthy else "unhealthy"
    if healthy and checks["redis"].startswith("warning"):
        status_label = "degraded"
    return JSONResponse(
        content={"status": status_label, "checks": checks},
        status_code=200 if healthy else 503,
    )


from .api.v1.router import router as api_router
app.include_router(api_router, prefix="/api/v1")


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "trendwatch.main:app",
        host=settings.api_host,
        port=settings.api_port,
        reload=True
    )
