"""
Admin API - booking statistics and pricing maintenance.
"""
import logging
from typing import Optional
from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession
from laundrify.database import get_db
from laundrify.services import bookings as booking_service

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api/v1/admin", tags=["admin"])


@router.get("/booking-stats")
async def booking_stats(
    db: AsyncSession = Depends(get_db),
):
    """Counts by status plus items-summary and final-amount consistency counters."""
    stats = await booking_service.booking_stats(db)
    return {"success": True, "data": stats}


@router.post("/reconcile-bookings")
async def reconcile_bookings(
    limit: Optional[int] = Query(default=None, ge=1),
    db: AsyncSession = Depends(get_db),
):
    """Re-apply pricing reconciliation to stored bookings."""
    result = await booking_service.reconcile_historical_bookings(db, limit=limit)
    logger.info("Admin reconciliation run: %s", result)
    return {"success": True, "data": result}
