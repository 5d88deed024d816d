'''
Health checks: a plain liveness check and a full check that also pings the
database and reports the change feed backend.
'''
import logging
from datetime import datetime, timezone
from fastapi import APIRouter, Depends, Request
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import text
from checkin_sync.db.session import get_db
from checkin_sync.core.config import settings

logger = logging.getLogger(__name__)

router = APIRouter(tags=["health"])

SERVICE = "checkin-sync-api"

@router.get("/health")
async def health():
    """
    Liveness check; does not touch the database.
    """
    return {
        "status": "healthy",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "message": "API is running",
        "service": SERVICE
    }

@router.get("/health/full")
async def health_full(request: Request, db: AsyncSession = Depends(get_db)):
    """
    Verifies database connectivity and reports how many participant runtimes are open.
    """
    registry = getattr(request.app.state, "registry", None)
    health_status = {
        "status": "healthy",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "database": "unknown",
        "change_feed": settings.CHANGE_FEED_BACKEND,
        "open_sessions": len(registry) if registry is not None else 0,
        "service": SERVICE
    }

    try:
        result = await db.execute(text("SELECT 1"))
        result.scalar()
        health_status["database"] = "connected"
        logger.info("Database health check successful")
    except Exception as e:
        logger.error("Database health check failed: %s", str(e))
        health_status["status"] = "unhealthy"
        health_status["database"] = "disconnected"
        health_status["error"] = str(e)

    return health_status
