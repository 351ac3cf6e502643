import logging

from fastapi import APIRouter
from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import select

from oauth_core.api.deps import SessionDep
from oauth_core.core.config import settings

logger = logging.getLogger(__name__)

router = APIRouter()


@router.get("/health-check")
async def health_check(session: SessionDep):
    """
    Health check endpoint that verifies backend and database connectivity.
    """
    try:
        session.exec(select(1)).first()
        db_status = "healthy"
        db_message = "Database connection successful"
    except SQLAlchemyError as e:
        logger.error("Database health check failed: %s", e)
        db_status = "unhealthy"
        db_message = "Database connection failed"

    # Overall status is healthy only if database is healthy
    overall_status = "healthy" if db_status == "healthy" else "unhealthy"

    return {
        "status": overall_status,
        "message": "Backend is running",
        "version": settings.APP_VERSION,
        "database": {"status": db_status, "message": db_message},
    }
