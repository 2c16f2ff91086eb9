# backend/omniverify/db.py

import logging
import asyncio
from datetime import datetime, timezone

import sqlalchemy
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession
from sqlalchemy.orm import sessionmaker, declarative_base
from sqlalchemy.exc import OperationalError

from .config import settings

logger = logging.getLogger("omniverify.db")

# ---------------------------------------------------------
# Define Base (needed by Alembic)
# ---------------------------------------------------------
Base = declarative_base()


def utcnow() -> datetime:
    """Naive UTC timestamp; every DateTime column stores naive UTC."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


# ---------------------------------------------------------
# Lazy engine + Lazy session maker
# ---------------------------------------------------------
_engine = None
_session_maker = None


def get_engine():
    """Lazy async engine creation."""
    global _engine
    if _engine is None:
        _engine = create_async_engine(
            settings.DATABASE_URL,
            echo=bool(settings.DEBUG),
            future=True,
            pool_pre_ping=True,
            pool_recycle=180,
        )
    return _engine


def get_session_maker():
    """Lazy sessionmaker creation."""
    global _session_maker
    if _session_maker is None:
        _session_maker = sessionmaker(
            bind=get_engine(),
            class_=AsyncSession,
            expire_on_commit=False,
        )
    return _session_maker


async def dispose_engine():
    global _engine, _session_maker
    if _engine is not None:
        await _engine.dispose()
    _engine = None
    _session_maker = None


# ---------------------------------------------------------
# Safe commit (transient connection drops)
# ---------------------------------------------------------
async def safe_commit(db: AsyncSession, retries: int = 3):
    for attempt in range(1, retries + 1):
        try:
            await db.commit()
            return
        except OperationalError as e:
            logger.warning("Commit failed (attempt %d/%d): %s", attempt, retries, e)
            await db.rollback()
            if attempt == retries:
                raise
            await asyncio.sleep(0.5 * attempt)


# ---------------------------------------------------------
# DB readiness check for startup
# ---------------------------------------------------------
async def ping_db(session_maker) -> bool:
    async with session_maker() as session:
        await session.execute(sqlalchemy.text("SELECT 1"))
    return True


async def wait_for_db(max_retries: int = 8, delay: float = 2.0):
    """
    Wait for DB to accept connections before workers or migrations start.
    """
    engine = get_engine()

    last_exc = None
    for attempt in range(1, max_retries + 1):
        try:
            async with engine.connect() as conn:
                await conn.execute(sqlalchemy.text("SELECT 1"))
                logger.info("Database connected (attempt %d)", attempt)
                return True

        except OperationalError as e:
            last_exc = e
            msg = str(e.__cause__ or e)

            if "password authentication failed" in msg.lower():
                logger.error("Database authentication failed: %s", msg)
                raise

            logger.warning(
                "DB not ready (attempt %d/%d): %s",
                attempt, max_retries, msg
            )
            await asyncio.sleep(delay)

        except OSError as e:
            last_exc = e
            logger.warning(
                "DB connection error (attempt %d/%d): %s",
                attempt, max_retries, e
            )
            await asyncio.sleep(delay)

    logger.error("Failed to connect to DB after %d retries. Last error: %s",
                 max_retries, last_exc)
    raise last_exc
