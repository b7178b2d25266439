"""
Referral state machine.

    pending -> registered -> first_payment_completed -> rewarded

Each transition is one conditional UPDATE that re-states its precondition
(expected status, one-shot flag still false, code not expired). When zero
rows match, the row is reloaded and the failure classified as AlreadyUsed,
Expired or InvalidTransition. Two redemptions racing on the same code
therefore produce exactly one winner without any application-level lock.

Codes are unique by index, not by construction: generate_referral_code()
output is checked by the insert, and a collision regenerates.
"""
import logging
import re
import time
import uuid
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional

from sqlalchemy import and_, delete, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from laundrify.config import get_settings
from laundrify.models.referral import ACTIVE_REFERRAL_STATUSES, Referral
from laundrify.utils.codes import random_base36, to_base36
from laundrify.utils.errors import (
    InvalidTransition,
    PersistenceConflict,
    ReferralAlreadyUsed,
    ReferralExpired,
    ReferralNotEligible,
    ReferralNotFound,
    ValidationError,
)

logger = logging.getLogger(__name__)

CODE_PREFIX = "REF"
CODE_USER_CHARS = 4
CODE_RANDOM_CHARS = 4
CODE_ATTEMPTS = 3


def _now(now: Optional[datetime]) -> datetime:
    return now or datetime.now(timezone.utc)


def normalize_code(code: Optional[str]) -> str:
    return (code or "").strip().upper()


def generate_referral_code(user_id: str) -> str:
    """
    REF + last 4 alphanumerics of the user id + base-36 epoch millis + 4 random
    base-36 chars, uppercased. Example: REF9F2AMGX2K3LQ7Z1K
    """
    user_part = re.sub(r"[^A-Za-z0-9]", "", str(user_id))[-CODE_USER_CHARS:]
    timestamp = to_base36(time.time_ns() // 1_000_000)
    return f"{CODE_PREFIX}{user_part}{timestamp}{random_base36(CODE_RANDOM_CHARS)}".upper()


async def find_by_code(db: AsyncSession, code: str) -> Optional[Referral]:
    result = await db.execute(
        select(Referral).where(Referral.referral_code == normalize_code(code))
    )
    return result.scalar_one_or_none()


async def get_active_referral(
    db: AsyncSession,
    user_id: str,
    now: Optional[datetime] = None,
) -> Optional[Referral]:
    """The referrer's current code: not rewarded and not expired."""
    result = await db.execute(
        select(Referral)
        .where(
            and_(
                Referral.referrer_id == user_id,
                Referral.status.in_(ACTIVE_REFERRAL_STATUSES),
                Referral.expires_at > _now(now),
            )
        )
        .order_by(Referral.created_at.desc())
        .limit(1)
    )
    return result.scalar_one_or_none()


async def get_or_create_active_referral(
    db: AsyncSession,
    user_id: str,
    now: Optional[datetime] = None,
) -> Referral:
    """
    Return the referrer's active code, minting one if none exists.

    Raises:
        ValidationError: empty user id
        PersistenceConflict: CODE_ATTEMPTS consecutive code collisions
    """
    if not user_id:
        raise ValidationError("User ID is required")

    now = _now(now)
    existing = await get_active_referral(db, user_id, now)
    if existing:
        return existing

    settings = get_settings()
    for attempt in range(1, CODE_ATTEMPTS + 1):
        referral = Referral(
            referrer_id=user_id,
            referral_code=generate_referral_code(user_id),
            status="pending",
            discount_percentage=settings.referral_discount_percentage,
            created_at=now,
            expires_at=now + timedelta(days=settings.referral_expiry_days),
        )
        try:
            async with db.begin_nested():
                db.add(referral)
        except IntegrityError:
            logger.warning(
                "Referral code collision for user %s (attempt %d/%d)",
                user_id[:8], attempt, CODE_ATTEMPTS,
            )
            continue

        logger.info(
            "Referral code created for user %s", user_id[:8],
            extra={"referral_code": referral.referral_code, "customer_id": user_id},
        )
        return referral

    raise PersistenceConflict(
        "Could not allocate a unique referral code",
        details={"attempts": CODE_ATTEMPTS},
    )


async def validate_referral_code(
    db: AsyncSession,
    code: str,
    now: Optional[datetime] = None,
) -> Referral:
    """
    Look up a code case-insensitively and check it is still usable.

    Raises:
        ValidationError: blank code
        ReferralNotFound: unknown code
        ReferralExpired: past expires_at, whatever the stored status
        ReferralAlreadyUsed: status is rewarded
    """
    normalized = normalize_code(code)
    if not normalized:
        raise ValidationError("Referral code is required")

    referral = await find_by_code(db, normalized)
    if referral is None:
        raise ReferralNotFound(normalized)
    if referral.is_expired(_now(now)):
        raise ReferralExpired(normalized)
    if referral.status == "rewarded":
        raise ReferralAlreadyUsed(normalized, "Referral code has already been fully utilized")
    return referral


# ---------------------------------------------------------------------------
# Transitions
# ---------------------------------------------------------------------------


async def _transition(
    db: AsyncSession,
    referral: Referral,
    *,
    from_status: str,
    to_status: str,
    guard,
    used: Callable[[Referral], bool],
    values: dict,
    now: datetime,
) -> Referral:
    """Conditionally move referral from from_status to to_status."""
    result = await db.execute(
        update(Referral)
        .where(
            and_(
                Referral.id == referral.id,
                Referral.status == from_status,
                guard,
                Referral.expires_at > now,
            )
        )
        .values(status=to_status, updated_at=now, **values)
        .execution_options(synchronize_session=False)
    )
    await db.refresh(referral)

    if result.rowcount == 1:
        logger.info(
            "Referral %s: %s -> %s", referral.referral_code, from_status, to_status,
            extra={"referral_code": referral.referral_code},
        )
        return referral

    if used(referral):
        raise ReferralAlreadyUsed(referral.referral_code)
    if referral.is_expired(now):
        raise ReferralExpired(referral.referral_code)
    raise InvalidTransition(referral.status, to_status, entity="referral")


async def mark_registered(
    db: AsyncSession,
    referral: Referral,
    referee_id: str,
    now: Optional[datetime] = None,
) -> Referral:
    """pending -> registered. Claims the code for referee_id."""
    now = _now(now)
    return await _transition(
        db,
        referral,
        from_status="pending",
        to_status="registered",
        guard=Referral.referee_id.is_(None),
        used=lambda r: r.referee_id is not None and r.referee_id != referee_id,
        values={"referee_id": referee_id, "registration_date": now},
        now=now,
    )


async def mark_first_payment_completed(
    db: AsyncSession,
    referral: Referral,
    booking_id: uuid.UUID,
    now: Optional[datetime] = None,
) -> Referral:
    """registered -> first_payment_completed. Consumes the referee discount."""
    now = _now(now)
    return await _transition(
        db,
        referral,
        from_status="registered",
        to_status="first_payment_completed",
        guard=Referral.referee_discount_applied == False,  # noqa: E712
        used=lambda r: r.referee_discount_applied,
        values={
            "referee_first_booking_id": booking_id,
            "first_payment_date": now,
            "referee_discount_applied": True,
        },
        now=now,
    )


async def mark_rewarded(
    db: AsyncSession,
    referral: Referral,
    reward_booking_id: uuid.UUID,
    now: Optional[datetime] = None,
) -> Referral:
    """first_payment_completed -> rewarded. Consumes the referrer reward."""
    now = _now(now)
    return await _transition(
        db,
        referral,
        from_status="first_payment_completed",
        to_status="rewarded",
        guard=Referral.referrer_discount_applied == False,  # noqa: E712
        used=lambda r: r.referrer_discount_applied,
        values={
            "referrer_reward_booking_id": reward_booking_id,
            "reward_date": now,
            "referrer_discount_applied": True,
        },
        now=now,
    )


# ---------------------------------------------------------------------------
# Flows used by the API and the booking controller
# ---------------------------------------------------------------------------


async def apply_referral_code(
    db: AsyncSession,
    code: str,
    referee_id: str,
    now: Optional[datetime] = None,
) -> Referral:
    """
    Registration-time claim of a friend's code. Re-applying the same code
    for the same referee is a no-op.
    """
    if not referee_id:
        raise ValidationError("User ID is required")

    referral = await validate_referral_code(db, code, now)

    if referral.referrer_id == referee_id:
        raise ReferralNotEligible("You cannot use your own referral code")
    if referral.referee_id == referee_id:
        return referral
    if referral.referee_id is not None:
        raise ReferralAlreadyUsed(referral.referral_code)

    previous = await db.execute(
        select(Referral.id).where(Referral.referee_id == referee_id).limit(1)
    )
    if previous.scalar_one_or_none() is not None:
        raise ReferralNotEligible("You have already been referred by another user")

    return await mark_registered(db, referral, referee_id, now)


async def claim_booking_discount(
    db: AsyncSession,
    code: str,
    user_id: str,
    booking_id: uuid.UUID,
    now: Optional[datetime] = None,
) -> tuple[Referral, str]:
    """
    Consume the discount this user is entitled to on booking_id.

    The referee gets the first-order discount (registering on the fly if they
    never applied the code); the referrer gets the reward once the referee's
    first order is paid.

    Returns:
        (referral, role) with role "referee" or "referrer"
    """
    now = _now(now)
    referral = await validate_referral_code(db, code, now)

    if user_id == referral.referrer_id:
        if referral.status != "first_payment_completed":
            raise ReferralNotEligible(
                "Referral reward unlocks after your friend's first order",
                details={"status": referral.status},
            )
        await mark_rewarded(db, referral, booking_id, now)
        return referral, "referrer"

    if referral.status == "pending" and referral.referee_id is None:
        try:
            await mark_registered(db, referral, user_id, now)
        except InvalidTransition:
            # A concurrent redemption by the same referee registered first;
            # the flag guard below decides the winner
            if referral.referee_id != user_id:
                raise

    if referral.referee_id != user_id:
        raise ReferralAlreadyUsed(referral.referral_code)

    await mark_first_payment_completed(db, referral, booking_id, now)
    return referral, "referee"


async def list_user_referrals(db: AsyncSession, user_id: str) -> list[Referral]:
    result = await db.execute(
        select(Referral)
        .where(Referral.referrer_id == user_id)
        .order_by(Referral.created_at.desc())
    )
    return list(result.scalars().all())


async def referral_stats(
    db: AsyncSession,
    user_id: str,
    now: Optional[datetime] = None,
) -> dict:
    referrals = await list_user_referrals(db, user_id)
    active = await get_active_referral(db, user_id, now)
    return {
        "total_referrals": len(referrals),
        "successful_referrals": sum(1 for r in referrals if r.status == "rewarded"),
        "pending_rewards": sum(1 for r in referrals if r.status == "first_payment_completed"),
        "active_referral_code": active.referral_code if active else None,
        "referral_history": [
            {
                "code": r.referral_code,
                "referee_id": r.referee_id,
                "status": r.status,
                "registration_date": r.registration_date,
                "first_payment_date": r.first_payment_date,
                "reward_date": r.reward_date,
                "discount_percentage": r.discount_percentage,
            }
            for r in referrals
        ],
    }


def build_share_link(referral: Referral, base_url: Optional[str] = None) -> str:
    base_url = (base_url or get_settings().frontend_url).rstrip("/")
    return f"{base_url}?ref={referral.referral_code}"


async def cleanup_expired_referrals(
    db: AsyncSession,
    now: Optional[datetime] = None,
) -> int:
    """
    Delete expired codes nobody ever claimed. Codes past pending are kept
    for audit; expiry alone already makes them ineligible.
    """
    result = await db.execute(
        delete(Referral)
        .where(
            and_(
                Referral.expires_at < _now(now),
                Referral.status == "pending",
            )
        )
        .execution_options(synchronize_session=False)
    )
    return result.rowcount or 0
