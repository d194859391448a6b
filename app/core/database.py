import asyncio
import logging
import time
from sqlalchemy import text
from sqlalchemy.ext.asyncio import create_async_engine, async_sessionmaker, AsyncEngine, AsyncSession
from sqlalchemy.orm import declarative_base
from typing import AsyncGenerator

from app.core.config import get_settings

logger = logging.getLogger(__name__)

settings = get_settings()

# Create async engine
engine = create_async_engine(
    settings.database_url,
    echo=settings.debug,
)

# Create async session factory
async_session_maker = async_sessionmaker(
    engine,
    class_=AsyncSession,
    expire_on_commit=False,
)

# Create declarative base
Base = declarative_base()


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    """Dependency for FastAPI to get database session."""
    async with async_session_maker() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise


async def connect_with_retry(
    db_engine: AsyncEngine | None = None,
    attempts: int | None = None,
    delay: float | None = None,
) -> None:
    """
    Open a first connection to the database, retrying a fixed number of times.

    Raises SystemExit(1) once every attempt has failed.
    """
    db_engine = db_engine or engine
    attempts = attempts if attempts is not None else settings.db_connect_attempts
    delay = delay if delay is not None else settings.db_connect_retry_delay

    for attempt in range(1, attempts + 1):
        start = time.monotonic()
        logger.info("Connecting to database...")
        try:
            async with db_engine.connect() as conn:
                await conn.execute(text("SELECT 1"))
        except Exception as e:
            logger.error(
                f"Database connection failed (attempt {attempt}/{attempts}): {e}"
            )
            if attempt < attempts:
                logger.info(f"Retrying database connection in {delay:g} seconds...")
                await asyncio.sleep(delay)
            continue

        duration_ms = int((time.monotonic() - start) * 1000)
        logger.info(f"Connected to database in {duration_ms}ms (attempt {attempt})")
        return

    logger.error("Max connection attempts exceeded. Exiting process.")
    raise SystemExit(1)


async def init_db() -> None:
    """Initialize database - create all tables."""
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def close_db() -> None:
    """Dispose of the engine's connection pool."""
    logger.info("Disconnecting from database...")
    await engine.dispose()
