"""
Health check endpoints - used by load balancers and monitoring.

- GET /health       - basic liveness (always 200 if app running)
- GET /health/ready - readiness check (DB + Redis + sweeper heartbeat)
"""
import logging
from datetime import datetime, timezone
from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import text
from laundrify.database import get_db

logger = logging.getLogger(__name__)
router = APIRouter(tags=["health"])

VERSION = "1.0.0"


@router.get("/health")
async def health_check():
    """Basic liveness check - returns 200 if the app is running."""
    return {
        "status": "healthy",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "version": VERSION,
    }


@router.get("/health/ready")
async def readiness_check(
    db: AsyncSession = Depends(get_db),
):
    """
    Readiness check - database is critical, Redis only degrades.
    """
    checks = {"database": False, "redis": False}
    sweeper_last_seen = None

    try:
        await db.execute(text("SELECT 1"))
        checks["database"] = True
    except Exception as e:
        logger.error("Database health check failed: %s", str(e))

    try:
        from laundrify.utils.redis import get_redis, heartbeat_key
        redis = await get_redis()
        await redis.ping()
        checks["redis"] = True
        sweeper_last_seen = await redis.get(heartbeat_key("referral_sweeper"))
    except Exception as e:
        logger.warning("Redis health check failed: %s", str(e))

    if all(checks.values()):
        status = "ready"
    elif checks["database"]:
        status = "degraded"
    else:
        status = "unavailable"

    return {
        "status": status,
        "checks": checks,
        "workers": {"referral_sweeper": sweeper_last_seen},
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }
