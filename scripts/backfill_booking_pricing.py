"""
Backfill canonical pricing on bookings written before reconciliation was
enforced at write time.

Re-derives items_summary, discount_amount and final_amount for every booking
and stamps completed_at on completed bookings missing it. Without --commit
the changes are computed and logged, then rolled back.

Usage:
    python scripts/backfill_booking_pricing.py
    python scripts/backfill_booking_pricing.py --limit 500
    python scripts/backfill_booking_pricing.py --commit
"""
import argparse
import asyncio
import logging

logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(message)s")
logger = logging.getLogger(__name__)


async def backfill(limit: int = 0, commit: bool = False) -> dict:
    """Reconcile stored bookings. Returns {"scanned": n, "updated": n}."""
    from laundrify.database import async_session_factory
    from laundrify.services.bookings import booking_stats, reconcile_historical_bookings

    async with async_session_factory() as db:
        before = await booking_stats(db)
        logger.info(
            "Before: %d bookings, %d missing items summary, %d final_amount mismatches%s",
            before["total_bookings"], before["missing_items_summary"],
            before["final_amount_mismatch"], "" if commit else " [DRY RUN]",
        )

        result = await reconcile_historical_bookings(db, limit=limit or None)

        if commit:
            await db.commit()
            after = await booking_stats(db)
            logger.info(
                "After: %d missing items summary, %d final_amount mismatches",
                after["missing_items_summary"], after["final_amount_mismatch"],
            )
        else:
            await db.rollback()

    logger.info(
        "Backfill complete: %d scanned, %d %s",
        result["scanned"], result["updated"],
        "updated" if commit else "would be updated [DRY RUN]",
    )
    return result


def main():
    parser = argparse.ArgumentParser(description="Backfill booking pricing fields")
    parser.add_argument(
        "--limit", type=int, default=0,
        help="Max number of bookings to scan (0 = all)",
    )
    parser.add_argument(
        "--commit", action="store_true",
        help="Persist changes (default is a dry run)",
    )
    args = parser.parse_args()

    asyncio.run(backfill(limit=args.limit, commit=args.commit))


if __name__ == "__main__":
    main()
