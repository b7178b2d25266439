"""
API response schemas for bookings and referrals.
"""
from datetime import datetime
from typing import Optional
from pydantic import BaseModel, Field


class LineItemOut(BaseModel):
    name: str
    quantity: int
    unit_price: float
    line_total: float


class BookingDetail(BaseModel):
    id: str
    order_id: str
    customer_id: str
    rider_id: Optional[str] = None
    customer_name: Optional[str] = None
    phone: Optional[str] = None
    address: str
    pickup_date: Optional[str] = None
    pickup_time: Optional[str] = None
    delivery_date: Optional[str] = None
    delivery_time: Optional[str] = None
    line_items: list[LineItemOut] = Field(default_factory=list)
    items_summary: str = ""
    charges_breakdown: dict = Field(default_factory=dict)
    total_price: float
    discount_amount: float
    final_amount: float
    referral_code: Optional[str] = None
    status: str
    payment_status: str
    completed_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None
    created_at: Optional[datetime] = None

    @classmethod
    def from_booking(cls, booking) -> "BookingDetail":
        return cls(
            id=str(booking.id),
            order_id=booking.order_id,
            customer_id=booking.customer_id,
            rider_id=booking.rider_id,
            customer_name=booking.customer_name,
            phone=booking.phone,
            address=booking.address,
            pickup_date=booking.pickup_date,
            pickup_time=booking.pickup_time,
            delivery_date=booking.delivery_date,
            delivery_time=booking.delivery_time,
            line_items=[LineItemOut(**item) for item in (booking.line_items or [])],
            items_summary=booking.items_summary or "",
            charges_breakdown=booking.charges_breakdown or {},
            total_price=booking.total_price,
            discount_amount=booking.discount_amount,
            final_amount=booking.final_amount,
            referral_code=booking.referral_code,
            status=booking.status,
            payment_status=booking.payment_status,
            completed_at=booking.completed_at,
            cancelled_at=booking.cancelled_at,
            created_at=booking.created_at,
        )


class ReferralDetail(BaseModel):
    code: str
    referrer_id: str
    referee_id: Optional[str] = None
    status: str
    discount_percentage: int
    expires_at: datetime
    referee_discount_applied: bool = False
    referrer_discount_applied: bool = False

    @classmethod
    def from_referral(cls, referral) -> "ReferralDetail":
        return cls(
            code=referral.referral_code,
            referrer_id=referral.referrer_id,
            referee_id=referral.referee_id,
            status=referral.status,
            discount_percentage=referral.discount_percentage,
            expires_at=referral.expires_at,
            referee_discount_applied=referral.referee_discount_applied,
            referrer_discount_applied=referral.referrer_discount_applied,
        )


class GenerateReferralRequest(BaseModel):
    user_id: str = Field(..., min_length=1)


class ApplyReferralRequest(BaseModel):
    referral_code: str = Field(..., min_length=1)
    user_id: str = Field(..., min_length=1)
