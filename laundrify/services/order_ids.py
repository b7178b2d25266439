"""
Order ID generator - human-readable, month-scoped booking numbers.

Format: <Letter><YYYYMM><5-digit sequence>, e.g. A20250100001.
Fixed width means lexicographic order == creation order within a month.

Generation is optimistic: scan for the highest id of the month, add one, and
re-check once. Two concurrent checkouts can still mint the same id; the
unique index on bookings.order_id is the authority and create_booking retries
on conflict. Nothing is reserved up front, so a failed insert never burns an id.
"""
import asyncio
import logging
import re
import time
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from laundrify.models.booking import Booking
from laundrify.utils.codes import random_base36

logger = logging.getLogger(__name__)

MAX_SEQUENCE = 99999
SEQUENCE_WIDTH = 5
FIRST_LETTER = "A"
LAST_LETTER = "Z"

SCAN_ATTEMPTS = 3
SCAN_BACKOFF_SECONDS = 0.1  # linear: 0.1s, 0.2s

FALLBACK_PREFIX = "B"
FALLBACK_RANDOM_CHARS = 6

ORDER_ID_RE = re.compile(r"^[A-Z](\d{6})(\d{5})$")


class OrderIdSpaceExhausted(Exception):
    """All letters A-Z are used up for the month."""
    pass


def year_month_tag(now: Optional[datetime] = None) -> str:
    now = now or datetime.now(timezone.utc)
    return f"{now.year:04d}{now.month:02d}"


def is_sequential_order_id(order_id: Optional[str]) -> bool:
    return bool(order_id and ORDER_ID_RE.match(order_id))


def format_order_id(letter: str, year_month: str, sequence: int) -> str:
    return f"{letter}{year_month}{sequence:0{SEQUENCE_WIDTH}d}"


def next_order_id(last_order_id: Optional[str], year_month: str) -> str:
    """
    Compute the id following last_order_id within year_month.

    last_order_id from another month (or None, or unparseable) restarts at
    A<year_month>00001. Sequence 99999 rolls to the next letter.

    Raises:
        OrderIdSpaceExhausted: after Z<year_month>99999
    """
    match = ORDER_ID_RE.match(last_order_id or "")
    if not match or match.group(1) != year_month:
        return format_order_id(FIRST_LETTER, year_month, 1)

    letter = last_order_id[0]
    sequence = int(match.group(2))

    if sequence >= MAX_SEQUENCE:
        if letter >= LAST_LETTER:
            raise OrderIdSpaceExhausted(f"No order ids left for {year_month}")
        return format_order_id(chr(ord(letter) + 1), year_month, 1)

    return format_order_id(letter, year_month, sequence + 1)


def fallback_order_id() -> str:
    """
    Synthetic id for degraded mode: prefix + epoch milliseconds + random base-36.
    Locally unique, not sequential, and never matches the sequential format.
    """
    millis = time.time_ns() // 1_000_000
    return f"{FALLBACK_PREFIX}{millis}{random_base36(FALLBACK_RANDOM_CHARS)}"


async def _latest_order_id(db: AsyncSession, year_month: str) -> Optional[str]:
    """Highest sequential id for the month. LIKE '_YYYYMM_____' pins the width."""
    result = await db.execute(
        select(Booking.order_id)
        .where(Booking.order_id.like(f"_{year_month}" + "_" * SEQUENCE_WIDTH))
        .order_by(Booking.order_id.desc())
        .limit(1)
    )
    return result.scalar_one_or_none()


async def _order_id_exists(db: AsyncSession, order_id: str) -> bool:
    result = await db.execute(
        select(Booking.id).where(Booking.order_id == order_id).limit(1)
    )
    return result.scalar_one_or_none() is not None


async def _scan_next(db: AsyncSession, year_month: str) -> str:
    latest = await _latest_order_id(db, year_month)
    candidate = next_order_id(latest, year_month)

    # Someone may have inserted between the scan and now: bump once, no rescan
    if await _order_id_exists(db, candidate):
        logger.warning("Order id %s already taken, bumping sequence", candidate)
        candidate = next_order_id(candidate, year_month)

    return candidate


async def generate_order_id(db: AsyncSession, now: Optional[datetime] = None) -> str:
    """
    Mint the next order id for the current month.

    Store errors are retried SCAN_ATTEMPTS times with linear backoff; after
    that (or when the month's id space is exhausted) a synthetic fallback id
    is returned so checkout stays available.

    Each scan runs in its own savepoint so a failed statement leaves the
    caller's transaction usable for the retry and the insert.
    """
    year_month = year_month_tag(now)

    for attempt in range(1, SCAN_ATTEMPTS + 1):
        try:
            async with db.begin_nested():
                order_id = await _scan_next(db, year_month)
            logger.debug("Generated order id %s", order_id, extra={"order_id": order_id})
            return order_id
        except OrderIdSpaceExhausted:
            logger.error("Order id space exhausted for %s, using fallback id", year_month)
            break
        except SQLAlchemyError as e:
            logger.warning(
                "Order id scan failed (attempt %d/%d): %s",
                attempt, SCAN_ATTEMPTS, str(e)[:200],
            )
            if attempt < SCAN_ATTEMPTS:
                await asyncio.sleep(SCAN_BACKOFF_SECONDS * attempt)

    order_id = fallback_order_id()
    logger.warning(
        "Using fallback order id %s (degraded mode)", order_id,
        extra={"order_id": order_id},
    )
    return order_id
