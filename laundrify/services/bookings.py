"""
Booking lifecycle controller.

Checkout flow (create_booking):
    validate payload -> validate referral code -> reconcile pricing
    -> mint order id + insert (savepoint, retried on unique conflict)
    -> redeem referral discount in the same unit of work

Status machine:
    pending -> confirmed -> in_progress -> completed
    cancelled is reachable from any state before completed.
    completed and cancelled are terminal.

payment_status moves independently of status (see
STATUS_PAYMENT_CORRELATION in the model for the expected combinations).
"""
import asyncio
import logging
import random
import uuid
from datetime import datetime, timezone
from typing import Optional, Union

from pydantic import ValidationError as PydanticValidationError
from sqlalchemy import and_, case, func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from laundrify.config import get_settings
from laundrify.models.booking import BOOKING_STATUSES, PAYMENT_STATUSES, Booking
from laundrify.schemas.checkout import CheckoutRequest
from laundrify.services import order_ids, pricing, referrals
from laundrify.utils.errors import (
    InvalidTransition,
    NotFound,
    PersistenceConflict,
    ReferralNotEligible,
    ValidationError,
)

logger = logging.getLogger(__name__)

VALID_TRANSITIONS = {
    "pending": ["confirmed", "cancelled"],
    "confirmed": ["in_progress", "cancelled"],
    "in_progress": ["completed", "cancelled"],
    "completed": [],  # Terminal
    "cancelled": [],  # Terminal
}

INSERT_JITTER_SECONDS = 0.05
MISMATCH_TOLERANCE = 0.01
RECONCILE_BATCH_SIZE = 200


def _now(now: Optional[datetime]) -> datetime:
    return now or datetime.now(timezone.utc)


def _parse_checkout(checkout: Union[CheckoutRequest, dict]) -> CheckoutRequest:
    if isinstance(checkout, CheckoutRequest):
        return checkout
    try:
        return CheckoutRequest.model_validate(checkout or {})
    except PydanticValidationError as e:
        raise ValidationError(
            "Invalid checkout payload",
            details={"errors": e.errors(include_url=False, include_context=False)},
        )


def validate_checkout(checkout: CheckoutRequest) -> None:
    """Required-field checks. Raises ValidationError listing every missing field."""
    missing = []
    if not (checkout.customer_id or "").strip():
        missing.append("customer_id")
    if not checkout.line_items:
        missing.append("line_items")
    if not (checkout.address or "").strip():
        missing.append("address")
    if missing:
        raise ValidationError(
            f"Missing required fields: {', '.join(missing)}",
            details={"missing": missing},
        )
    if checkout.total_price is not None and checkout.total_price < 0:
        raise ValidationError(
            "Total price must be non-negative",
            details={"total_price": checkout.total_price},
        )


def _build_booking(
    checkout: CheckoutRequest,
    canonical: pricing.CanonicalPricing,
    order_id: str,
    booking_id: uuid.UUID,
    now: datetime,
) -> Booking:
    return Booking(
        id=booking_id,
        order_id=order_id,
        customer_id=checkout.customer_id.strip(),
        customer_name=checkout.customer_name,
        phone=checkout.phone,
        address=checkout.address.strip(),
        address_details=checkout.address_details,
        pickup_date=checkout.pickup_date,
        pickup_time=checkout.pickup_time,
        delivery_date=checkout.delivery_date,
        delivery_time=checkout.delivery_time,
        special_instructions=checkout.special_instructions,
        services=checkout.services,
        line_items=canonical.line_items,
        items_summary=canonical.items_summary,
        charges_breakdown=canonical.charges_breakdown,
        total_price=canonical.total_price,
        discount_amount=canonical.discount_amount,
        final_amount=canonical.final_amount,
        status="pending",
        payment_status="pending",
        created_at=now,
        updated_at=now,
    )


async def _insert_with_order_id(
    db: AsyncSession,
    checkout: CheckoutRequest,
    canonical: pricing.CanonicalPricing,
    now: datetime,
) -> Booking:
    """
    Mint an order id and insert. A unique violation on order_id means a
    concurrent checkout won the same id: back off with jitter and regenerate.
    """
    settings = get_settings()
    attempts = settings.order_id_max_attempts
    booking_id = uuid.uuid4()
    last_order_id = None

    for attempt in range(1, attempts + 1):
        order_id = await order_ids.generate_order_id(db, now)
        last_order_id = order_id
        booking = _build_booking(checkout, canonical, order_id, booking_id, now)
        try:
            async with db.begin_nested():
                db.add(booking)
            return booking
        except IntegrityError:
            logger.warning(
                "Order id conflict on insert (attempt %d/%d)", attempt, attempts,
                extra={"order_id": order_id},
            )
            if attempt < attempts:
                backoff = settings.order_id_retry_backoff_seconds * attempt
                await asyncio.sleep(backoff + random.uniform(0, INSERT_JITTER_SECONDS))

    raise PersistenceConflict(
        "Could not allocate a unique order id, please retry",
        details={"attempts": attempts, "last_order_id": last_order_id},
    )


async def create_booking(
    db: AsyncSession,
    checkout: Union[CheckoutRequest, dict],
    now: Optional[datetime] = None,
) -> Booking:
    """
    Persist a new booking from a checkout payload.

    Raises:
        ValidationError: missing customer, line items or address; negative total
        PersistenceConflict: no unique order id after the configured attempts
        ReferralError subclasses: the supplied referral code cannot be redeemed
    """
    checkout = _parse_checkout(checkout)
    validate_checkout(checkout)
    now = _now(now)

    # Reject a bad code before anything is written
    if checkout.referral_code:
        await referrals.validate_referral_code(db, checkout.referral_code, now)

    canonical = pricing.reconcile(
        checkout.line_items,
        checkout.charges_breakdown,
        {
            "total_price": checkout.total_price,
            "discount_amount": checkout.discount_amount,
            "final_amount": checkout.final_amount,
        },
        services=checkout.services,
        default_handling_fee=get_settings().default_handling_fee,
    )

    booking = await _insert_with_order_id(db, checkout, canonical, now)
    logger.info(
        "Booking created: %s for customer %s (final=%.2f)",
        booking.order_id, booking.customer_id[:8], booking.final_amount,
        extra={"order_id": booking.order_id, "customer_id": booking.customer_id},
    )

    if checkout.referral_code:
        await _apply_referral(db, booking, checkout.referral_code, booking.customer_id, now)
        await db.flush()

    return booking


async def get_booking(db: AsyncSession, booking_ref: Union[str, uuid.UUID]) -> Booking:
    """Resolve a booking by order id (A20250100001) or internal UUID."""
    booking = None
    if isinstance(booking_ref, uuid.UUID):
        booking = await db.get(Booking, booking_ref)
    elif booking_ref:
        ref = str(booking_ref).strip()
        try:
            booking = await db.get(Booking, uuid.UUID(ref))
        except ValueError:
            result = await db.execute(
                select(Booking).where(Booking.order_id == ref.upper())
            )
            booking = result.scalar_one_or_none()

    if booking is None:
        raise NotFound("Booking not found", details={"booking": str(booking_ref)})
    return booking


async def list_customer_bookings(
    db: AsyncSession,
    customer_id: str,
    limit: int = 50,
    offset: int = 0,
) -> list[Booking]:
    result = await db.execute(
        select(Booking)
        .where(Booking.customer_id == customer_id)
        .order_by(Booking.created_at.desc())
        .limit(limit)
        .offset(offset)
    )
    return list(result.scalars().all())


async def advance_status(
    db: AsyncSession,
    booking_ref: Union[str, uuid.UUID],
    new_status: str,
    reason: Optional[str] = None,
    now: Optional[datetime] = None,
) -> Booking:
    """
    Move a booking along the status machine.

    Re-requesting the current status is a no-op (completed_at is never
    re-stamped).

    Raises:
        ValidationError: unknown status
        NotFound: no such booking
        InvalidTransition: backward, skipping, or out of a terminal state
    """
    if new_status not in BOOKING_STATUSES:
        raise ValidationError(
            f"Unknown booking status '{new_status}'",
            details={"allowed": list(BOOKING_STATUSES)},
        )

    booking = await get_booking(db, booking_ref)
    current = booking.status

    if current == new_status:
        return booking

    if new_status not in VALID_TRANSITIONS.get(current, []):
        logger.warning(
            "Rejected transition %s -> %s for %s", current, new_status, booking.order_id,
            extra={"order_id": booking.order_id},
        )
        raise InvalidTransition(current, new_status)

    now = _now(now)
    booking.status = new_status
    booking.updated_at = now
    if new_status == "cancelled":
        booking.cancelled_at = now
        booking.cancellation_reason = reason

    pricing.apply_reconciliation(
        booking, now=now, default_handling_fee=get_settings().default_handling_fee,
    )
    await db.flush()

    logger.info(
        "Booking %s: %s -> %s", booking.order_id, current, new_status,
        extra={"order_id": booking.order_id},
    )
    return booking


async def update_payment_status(
    db: AsyncSession,
    booking_ref: Union[str, uuid.UUID],
    payment_status: str,
) -> Booking:
    """Set payment_status. Independent of the booking status machine."""
    if payment_status not in PAYMENT_STATUSES:
        raise ValidationError(
            f"Unknown payment status '{payment_status}'",
            details={"allowed": list(PAYMENT_STATUSES)},
        )
    booking = await get_booking(db, booking_ref)
    booking.payment_status = payment_status
    booking.updated_at = datetime.now(timezone.utc)
    await db.flush()
    return booking


async def assign_rider(
    db: AsyncSession,
    booking_ref: Union[str, uuid.UUID],
    rider_id: str,
) -> Booking:
    booking = await get_booking(db, booking_ref)
    if booking.status in ("completed", "cancelled"):
        raise InvalidTransition(booking.status, "rider_assigned")
    booking.rider_id = rider_id
    booking.updated_at = datetime.now(timezone.utc)
    await db.flush()
    return booking


async def _apply_referral(
    db: AsyncSession,
    booking: Booking,
    referral_code: str,
    user_id: str,
    now: datetime,
) -> float:
    if booking.final_amount <= 0:
        raise ReferralNotEligible(
            "Nothing is due on this booking, referral discount not applied",
            details={"order_id": booking.order_id, "final_amount": booking.final_amount},
        )
    referral, role = await referrals.claim_booking_discount(
        db, referral_code, user_id, booking.id, now,
    )
    discount = pricing.add_discount(
        booking, pricing.percentage_of(booking.total_price, referral.discount_percentage),
    )
    booking.referral_code = referral.referral_code
    booking.updated_at = now

    logger.info(
        "Applied %s referral discount %.2f to %s", role, discount, booking.order_id,
        extra={"order_id": booking.order_id, "referral_code": referral.referral_code},
    )
    return discount


async def redeem_referral_discount(
    db: AsyncSession,
    booking_ref: Union[str, uuid.UUID],
    referral_code: str,
    user_id: str,
    now: Optional[datetime] = None,
) -> Booking:
    """
    Apply a referral discount to an existing booking.

    The referral state change is a conditional update, so of two concurrent
    redemptions of the same code exactly one succeeds and the other gets
    ReferralAlreadyUsed.
    """
    booking = await get_booking(db, booking_ref)
    if booking.status in ("completed", "cancelled"):
        raise InvalidTransition(booking.status, "discount_applied")
    if booking.referral_code:
        raise ValidationError(
            "A referral discount is already applied to this booking",
            details={"referral_code": booking.referral_code},
        )

    await _apply_referral(db, booking, referral_code, user_id, _now(now))
    await db.flush()
    return booking


async def booking_stats(db: AsyncSession) -> dict:
    """Summary counters for the admin dashboard, incl. pricing mismatches."""
    async def _count(*conditions) -> int:
        query = select(func.count()).select_from(Booking)
        if conditions:
            query = query.where(and_(*conditions))
        return (await db.execute(query)).scalar() or 0

    by_status_rows = await db.execute(
        select(Booking.status, func.count()).group_by(Booking.status)
    )
    expected_final = case(
        (Booking.total_price > Booking.discount_amount,
         Booking.total_price - Booking.discount_amount),
        else_=0.0,
    )
    total = await _count()
    with_summary = await _count(Booking.items_summary.isnot(None), Booking.items_summary != "")

    return {
        "total_bookings": total,
        "by_status": {status: count for status, count in by_status_rows.all()},
        "with_items_summary": with_summary,
        "missing_items_summary": total - with_summary,
        "with_discount_amount": await _count(Booking.discount_amount > 0),
        "final_amount_mismatch": await _count(
            func.abs(Booking.final_amount - expected_final) > MISMATCH_TOLERANCE
        ),
    }


async def reconcile_historical_bookings(
    db: AsyncSession,
    limit: Optional[int] = None,
    batch_size: int = RECONCILE_BATCH_SIZE,
) -> dict:
    """
    Re-run the reconciler over stored bookings written before it was
    enforced. Only rows whose canonical fields actually change are touched.

    Returns:
        {"scanned": n, "updated": n}
    """
    default_fee = get_settings().default_handling_fee
    scanned = 0
    updated = 0
    offset = 0

    while True:
        size = batch_size if limit is None else min(batch_size, limit - scanned)
        if size <= 0:
            break
        result = await db.execute(
            select(Booking).order_by(Booking.created_at, Booking.id).offset(offset).limit(size)
        )
        batch = list(result.scalars().all())
        if not batch:
            break

        for booking in batch:
            before = (
                booking.items_summary, booking.discount_amount,
                booking.final_amount, booking.completed_at,
            )
            pricing.apply_reconciliation(booking, default_handling_fee=default_fee)
            after = (
                booking.items_summary, booking.discount_amount,
                booking.final_amount, booking.completed_at,
            )
            if before != after:
                updated += 1
                booking.updated_at = datetime.now(timezone.utc)
                logger.info(
                    "Reconciled %s: final %s -> %.2f", booking.order_id, before[2], after[2],
                    extra={"order_id": booking.order_id},
                )

        scanned += len(batch)
        offset += len(batch)
        await db.flush()

    logger.info("Historical reconciliation: scanned=%d updated=%d", scanned, updated)
    return {"scanned": scanned, "updated": updated}
