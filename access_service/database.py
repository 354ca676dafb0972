import asyncio
from contextlib import asynccontextmanager
from typing import AsyncIterator

from sqlalchemy import text
from sqlalchemy.exc import DBAPIError, OperationalError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import declarative_base
from tenacity import retry, retry_if_exception, stop_after_attempt, wait_exponential

from access_service.config import get_settings
from access_service.logger import logger

settings = get_settings()

Base = declarative_base()

engine = create_async_engine(settings.database_url, echo=settings.db_echo)
SessionLocal = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


def is_transient(exc: BaseException) -> bool:
    """Connection-level failures that are safe to retry on read-only paths."""
    if isinstance(exc, OperationalError):
        return True
    return isinstance(exc, DBAPIError) and bool(exc.connection_invalidated)


# Only read-only resolution steps use this; writes are never retried.
read_retry = retry(
    retry=retry_if_exception(is_transient),
    stop=stop_after_attempt(3),
    wait=wait_exponential(multiplier=0.1, min=0.1, max=1),
    reraise=True,
)


async def wait_for_db(max_retries: int = 30, retry_interval: float = 2):
    for i in range(max_retries):
        try:
            async with engine.begin() as conn:
                await conn.execute(text("SELECT 1"))
            logger.info("Database connection successful")
            return engine
        except (OSError, DBAPIError) as e:
            logger.warning(
                "Database not ready",
                extra={"attempt": i + 1, "max_retries": max_retries, "error": str(e)}
            )
            if i < max_retries - 1:
                await asyncio.sleep(retry_interval)
    logger.error("Could not connect to database after retries", extra={"max_retries": max_retries})
    raise RuntimeError("Could not connect to database")


async def create_schema(bind=None) -> None:
    async with (bind or engine).begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


@asynccontextmanager
async def transaction(session: AsyncSession) -> AsyncIterator[AsyncSession]:
    """Run a write unit of work in its own transaction.

    Selects issued earlier on the same request session (authentication,
    principal resolution) autobegin a read transaction; it is closed first so
    that every check-then-write sequence lives inside one fresh transaction.
    """
    if session.in_transaction():
        await session.commit()
    async with session.begin():
        yield session


async def get_session() -> AsyncIterator[AsyncSession]:
    async with SessionLocal() as session:
        yield session
