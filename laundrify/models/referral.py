"""
Referral model - one shareable code per referrer and its reward progression.

Status only moves forward:
    pending -> registered -> first_payment_completed -> rewarded
The two *_discount_applied flags flip false -> true exactly once; services
flip them through conditional UPDATEs so concurrent redemptions cannot both win.
"""
import uuid
from datetime import datetime, timedelta, timezone
from typing import Optional

from sqlalchemy import String, Integer, Boolean, DateTime, Index
from sqlalchemy.dialects.postgresql import UUID, JSONB
from sqlalchemy.orm import Mapped, mapped_column

from laundrify.database import Base
from laundrify.utils.timezone import ensure_utc

REFERRAL_STATUSES = ("pending", "registered", "first_payment_completed", "rewarded")
ACTIVE_REFERRAL_STATUSES = ("pending", "registered", "first_payment_completed")

DEFAULT_DISCOUNT_PERCENTAGE = 50
DEFAULT_EXPIRY_DAYS = 30


def _default_expiry() -> datetime:
    return datetime.now(timezone.utc) + timedelta(days=DEFAULT_EXPIRY_DAYS)


class Referral(Base):
    __tablename__ = "referrals"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    referrer_id: Mapped[str] = mapped_column(String(64), nullable=False)
    referee_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    referral_code: Mapped[str] = mapped_column(String(50), nullable=False)
    status: Mapped[str] = mapped_column(
        String(30), nullable=False, default="pending"
    )  # pending, registered, first_payment_completed, rewarded

    discount_percentage: Mapped[int] = mapped_column(
        Integer, nullable=False, default=DEFAULT_DISCOUNT_PERCENTAGE
    )
    referee_discount_applied: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    referrer_discount_applied: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    # Back-references by identifier only
    referee_first_booking_id: Mapped[Optional[uuid.UUID]] = mapped_column(UUID(as_uuid=True))
    referrer_reward_booking_id: Mapped[Optional[uuid.UUID]] = mapped_column(UUID(as_uuid=True))

    registration_date: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    first_payment_date: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    reward_date: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    expires_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_default_expiry
    )

    extra_data: Mapped[Optional[dict]] = mapped_column("metadata", JSONB, default=dict)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc)
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), onupdate=lambda: datetime.now(timezone.utc)
    )

    __table_args__ = (
        Index("ix_referrals_code", "referral_code", unique=True),
        Index("ix_referrals_referrer_id", "referrer_id"),
        Index("ix_referrals_referee_id", "referee_id"),
        Index("ix_referrals_status", "status"),
        Index("ix_referrals_expires_at", "expires_at"),
    )

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        now = now or datetime.now(timezone.utc)
        return now >= ensure_utc(self.expires_at)

    def can_apply_referee_discount(self, now: Optional[datetime] = None) -> bool:
        return (
            self.status == "registered"
            and not self.referee_discount_applied
            and not self.is_expired(now)
        )

    def can_apply_referrer_reward(self, now: Optional[datetime] = None) -> bool:
        return (
            self.status == "first_payment_completed"
            and not self.referrer_discount_applied
            and not self.is_expired(now)
        )

    def __repr__(self) -> str:
        return f"<Referral {self.referral_code} ({self.status})>"
