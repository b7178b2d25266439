"""
Shared async Redis client.
Only used for worker heartbeats and the readiness probe; booking and referral
state never lives in Redis.
"""
import logging

logger = logging.getLogger(__name__)

# Redis client (lazily initialized)
_redis_client = None

HEARTBEAT_KEY_PREFIX = "laundrify:worker_health"


async def get_redis():
    """Get or create Redis connection."""
    global _redis_client
    if _redis_client is None:
        import redis.asyncio as aioredis
        from laundrify.config import get_settings
        _redis_client = aioredis.from_url(
            get_settings().redis_url,
            decode_responses=True,
        )
    return _redis_client


def heartbeat_key(worker_name: str) -> str:
    return f"{HEARTBEAT_KEY_PREFIX}:{worker_name}"
