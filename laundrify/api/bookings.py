"""
Booking API - checkout, lookup and lifecycle endpoints.

Bookings are addressed by order id (A20250100001) or internal UUID.
"""
import logging
from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession
from laundrify.database import get_db
from laundrify.schemas.api_responses import BookingDetail
from laundrify.schemas.checkout import (
    PaymentStatusRequest,
    RedeemReferralRequest,
    RiderAssignRequest,
    StatusUpdateRequest,
)
from laundrify.services import bookings as booking_service

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api/v1/bookings", tags=["bookings"])


def _ok(booking) -> dict:
    return {"success": True, "data": BookingDetail.from_booking(booking).model_dump(mode="json")}


@router.post("", status_code=201)
async def create_booking(
    payload: dict,
    db: AsyncSession = Depends(get_db),
):
    """Create a booking from a checkout payload."""
    booking = await booking_service.create_booking(db, payload)
    return _ok(booking)


@router.get("/customer/{customer_id}")
async def list_customer_bookings(
    customer_id: str,
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
    db: AsyncSession = Depends(get_db),
):
    bookings = await booking_service.list_customer_bookings(db, customer_id, limit, offset)
    return {
        "success": True,
        "data": [BookingDetail.from_booking(b).model_dump(mode="json") for b in bookings],
        "count": len(bookings),
    }


@router.get("/{booking_ref}")
async def get_booking(
    booking_ref: str,
    db: AsyncSession = Depends(get_db),
):
    booking = await booking_service.get_booking(db, booking_ref)
    return _ok(booking)


@router.put("/{booking_ref}/status")
async def update_booking_status(
    booking_ref: str,
    payload: StatusUpdateRequest,
    db: AsyncSession = Depends(get_db),
):
    """Advance the booking along pending -> confirmed -> in_progress -> completed."""
    booking = await booking_service.advance_status(
        db, booking_ref, payload.status, reason=payload.reason,
    )
    return _ok(booking)


@router.put("/{booking_ref}/payment-status")
async def update_payment_status(
    booking_ref: str,
    payload: PaymentStatusRequest,
    db: AsyncSession = Depends(get_db),
):
    booking = await booking_service.update_payment_status(db, booking_ref, payload.payment_status)
    return _ok(booking)


@router.put("/{booking_ref}/rider")
async def assign_rider(
    booking_ref: str,
    payload: RiderAssignRequest,
    db: AsyncSession = Depends(get_db),
):
    booking = await booking_service.assign_rider(db, booking_ref, payload.rider_id)
    return _ok(booking)


@router.post("/{booking_ref}/redeem-referral")
async def redeem_referral(
    booking_ref: str,
    payload: RedeemReferralRequest,
    db: AsyncSession = Depends(get_db),
):
    """Apply the caller's referral discount (referee first order or referrer reward)."""
    booking = await booking_service.redeem_referral_discount(
        db, booking_ref, payload.referral_code, payload.user_id,
    )
    return _ok(booking)
