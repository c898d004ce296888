"""
Status Routes - Health check for load balancers.

Public endpoint (no auth).
"""

from datetime import UTC, datetime

from fastapi import APIRouter, Depends, status
from fastapi.responses import JSONResponse
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from structlog import get_logger

from app.config import settings
from app.db.session import get_read_db
from app.models.api import HealthResponse

logger = get_logger(__name__)
router = APIRouter(tags=["status"])


@router.get("/health", response_model=HealthResponse)
async def health_check(db: AsyncSession = Depends(get_read_db)) -> HealthResponse | JSONResponse:
    """
    Health check for load balancer.

    Verifies database connectivity; 503 when the database is unreachable.
    """
    timestamp = datetime.now(UTC).isoformat()
    try:
        await db.execute(text("SELECT 1"))
    except (SQLAlchemyError, OSError) as exc:
        logger.error("health_check_database_unreachable", error_type=type(exc).__name__)
        unhealthy = HealthResponse(
            status="unhealthy",
            database="disconnected",
            timestamp=timestamp,
            version=settings.api_version,
        )
        return JSONResponse(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE, content=unhealthy.model_dump()
        )

    return HealthResponse(
        status="healthy",
        database="connected",
        timestamp=timestamp,
        version=settings.api_version,
    )
