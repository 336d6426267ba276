"""
Database engine and session management.

Provides the async engine, session factory, the FastAPI session dependency
and the unit-of-work helper used by every multi-step mutation.
"""
from contextlib import asynccontextmanager

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from orderflow.config import settings
from orderflow.errors import TransactionFailure
from orderflow.logging_config import get_logger
from orderflow.sentry_config import capture_exception


engine = create_async_engine(settings.DATABASE_URL, echo=settings.DEBUG)

AsyncSessionLocal = async_sessionmaker(
    engine,
    class_=AsyncSession,
    expire_on_commit=False,
)


async def get_db():
    """FastAPI dependency yielding a request-scoped session."""
    async with AsyncSessionLocal() as session:
        yield session


@asynccontextmanager
async def unit_of_work(db: AsyncSession):
    """
    Commit everything done inside the block, or nothing.

    Any exception rolls back every write made on the session so far.
    Persistence errors surface as TransactionFailure; domain errors are
    re-raised unchanged.

    Usage:
        async with unit_of_work(db):
            db.add(row)
            await db.execute(stmt)
    """
    try:
        yield db
        await db.commit()
    except SQLAlchemyError as exc:
        await db.rollback()
        get_logger().error("transaction_failed", error=str(exc))
        capture_exception(exc)
        raise TransactionFailure("The operation could not be completed") from exc
    except BaseException:
        await db.rollback()
        raise
