"""
Booking model - a laundry pickup order with its line items and canonical pricing.
"""
import uuid
from datetime import datetime, timezone
from typing import Optional
from sqlalchemy import String, Text, Float, DateTime, Index
from sqlalchemy.dialects.postgresql import UUID, JSONB
from sqlalchemy.orm import Mapped, mapped_column, validates
from laundrify.database import Base

BOOKING_STATUSES = ("pending", "confirmed", "in_progress", "completed", "cancelled")
PAYMENT_STATUSES = ("pending", "paid", "failed", "refunded")

# Expected payment_status values per booking status. Documentation only:
# the two fields move independently and nothing enforces this table.
STATUS_PAYMENT_CORRELATION = {
    "pending": ("pending", "paid", "failed"),
    "confirmed": ("pending", "paid", "failed"),
    "in_progress": ("pending", "paid"),
    "completed": ("paid", "pending"),
    "cancelled": ("pending", "failed", "refunded"),
}


class Booking(Base):
    __tablename__ = "bookings"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    order_id: Mapped[str] = mapped_column(String(32), nullable=False)

    # Opaque references to external user records
    customer_id: Mapped[str] = mapped_column(String(64), nullable=False)
    rider_id: Mapped[Optional[str]] = mapped_column(String(64))

    # Customer + pickup details
    customer_name: Mapped[Optional[str]] = mapped_column(String(200))
    phone: Mapped[Optional[str]] = mapped_column(String(32))
    address: Mapped[str] = mapped_column(Text, nullable=False)
    address_details: Mapped[Optional[dict]] = mapped_column(JSONB, default=dict)
    pickup_date: Mapped[Optional[str]] = mapped_column(String(20))
    pickup_time: Mapped[Optional[str]] = mapped_column(String(40))
    delivery_date: Mapped[Optional[str]] = mapped_column(String(20))
    delivery_time: Mapped[Optional[str]] = mapped_column(String(40))
    special_instructions: Mapped[Optional[str]] = mapped_column(Text)

    # Cart
    services: Mapped[Optional[list]] = mapped_column(JSONB, default=list)
    line_items: Mapped[list] = mapped_column(JSONB, default=list)
    items_summary: Mapped[str] = mapped_column(Text, default="")

    # Pricing (canonical fields are written only through the reconciler)
    charges_breakdown: Mapped[dict] = mapped_column(JSONB, default=dict)
    total_price: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    discount_amount: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    final_amount: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    referral_code: Mapped[Optional[str]] = mapped_column(String(50))

    # Lifecycle
    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default="pending"
    )  # pending, confirmed, in_progress, completed, cancelled
    payment_status: Mapped[str] = mapped_column(
        String(20), nullable=False, default="pending"
    )  # pending, paid, failed, refunded
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    cancelled_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    cancellation_reason: Mapped[Optional[str]] = mapped_column(Text)

    # Timestamps
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc)
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), onupdate=lambda: datetime.now(timezone.utc)
    )

    __table_args__ = (
        Index("ix_bookings_order_id", "order_id", unique=True),
        Index("ix_bookings_customer_id", "customer_id"),
        Index("ix_bookings_rider_id", "rider_id"),
        Index("ix_bookings_status", "status"),
        Index("ix_bookings_payment_status", "payment_status"),
        Index("ix_bookings_created_at", "created_at"),
    )

    @validates("order_id")
    def _order_id_is_immutable(self, key, value):
        if self.order_id is not None and value != self.order_id:
            raise ValueError(f"order_id is immutable (already {self.order_id})")
        return value

    def __repr__(self) -> str:
        return f"<Booking {self.order_id} status={self.status} final={self.final_amount}>"
