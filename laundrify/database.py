"""
Engine and session wiring for the bookings and referrals store.

API requests get one session per request through get_db(): the whole
checkout (order id, booking insert, referral redemption) commits or rolls
back together. The referral sweeper and the backfill script open their own
sessions with async_session_factory().
"""
import logging
from typing import AsyncGenerator, Optional

from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import DeclarativeBase

logger = logging.getLogger(__name__)

_engine: Optional[AsyncEngine] = None
_sessionmaker: Optional[async_sessionmaker] = None


class Base(DeclarativeBase):
    pass


def get_engine() -> AsyncEngine:
    global _engine
    if _engine is None:
        from laundrify.config import get_settings
        settings = get_settings()
        _engine = create_async_engine(
            settings.database_url,
            pool_size=settings.database_pool_size,
            max_overflow=settings.database_max_overflow,
            pool_pre_ping=True,
            echo=settings.app_env == "development",
        )
    return _engine


def async_session_factory() -> AsyncSession:
    """New session outside a request. Attributes stay loaded after commit."""
    global _sessionmaker
    if _sessionmaker is None:
        _sessionmaker = async_sessionmaker(get_engine(), class_=AsyncSession, expire_on_commit=False)
    return _sessionmaker()


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    """Request-scoped session. Commits on success; any domain error rolls back."""
    async with async_session_factory() as session:
        try:
            yield session
            await session.commit()
        except Exception as e:
            logger.debug("Rolling back request session: %s", type(e).__name__)
            await session.rollback()
            raise
