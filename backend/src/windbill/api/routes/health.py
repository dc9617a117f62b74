"""
Health check endpoint.

Provides system health status for monitoring and load balancers.
"""

import logging

from fastapi import APIRouter
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

from windbill import __version__
from windbill.api.dependencies import SessionFactory
from windbill.api.schemas import HealthResponse

logger = logging.getLogger(__name__)

router = APIRouter(tags=["health"])


@router.get("/health", response_model=HealthResponse)
async def health_check(session_factory: SessionFactory) -> HealthResponse:
    """
    Check system health.

    Reports "degraded" when the database does not answer a trivial query.
    """
    try:
        async with session_factory() as session:
            await session.execute(text("SELECT 1"))
        database = "connected"
    except (SQLAlchemyError, OSError) as e:
        logger.warning(f"Health check could not reach the database: {e}")
        database = "unavailable"

    return HealthResponse(
        status="healthy" if database == "connected" else "degraded",
        version=__version__,
        database=database,
    )
