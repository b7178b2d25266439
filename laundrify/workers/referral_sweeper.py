"""
Referral sweeper - deletes expired referral codes that were never claimed.
Runs every hour (configurable). Claimed codes are left alone: expiry already
makes them ineligible and they are kept for reward history.
"""
import asyncio
import logging
from datetime import datetime, timezone
from typing import Optional

from laundrify.config import get_settings

logger = logging.getLogger(__name__)

HEARTBEAT_TTL_SECONDS = 7200


async def _heartbeat():
    """Store heartbeat timestamp in Redis."""
    try:
        from laundrify.utils.redis import get_redis, heartbeat_key
        redis = await get_redis()
        await redis.set(
            heartbeat_key("referral_sweeper"),
            datetime.now(timezone.utc).isoformat(),
            ex=HEARTBEAT_TTL_SECONDS,
        )
    except Exception as e:
        logger.debug("Referral sweeper heartbeat failed: %s", str(e))


async def sweep_cycle(now: Optional[datetime] = None) -> int:
    """One sweep in its own session. Returns rows deleted."""
    from laundrify.database import async_session_factory
    from laundrify.services.referrals import cleanup_expired_referrals

    async with async_session_factory() as db:
        deleted = await cleanup_expired_referrals(db, now)
        await db.commit()

    if deleted:
        logger.info("Referral sweeper deleted %d expired pending codes", deleted)
    return deleted


async def run_referral_sweeper():
    """Main sweeper loop. Runs until cancelled."""
    interval = get_settings().referral_sweep_interval_seconds
    logger.info("Referral sweeper started (interval=%ds)", interval)

    while True:
        try:
            await sweep_cycle()
        except Exception as e:
            logger.error("Referral sweeper error: %s", str(e), exc_info=True)

        await _heartbeat()
        await asyncio.sleep(interval)
