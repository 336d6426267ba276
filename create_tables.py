"""
Script to create all database tables.

This script creates all tables defined in the models.
Run this after starting PostgreSQL with Docker.
"""
import asyncio
from orderflow.database import engine
from orderflow.logging_config import get_logger
from orderflow.models import Base  # importing the package registers every model

log = get_logger(script="create_tables")


async def create_all_tables():
    """Create all tables in the database."""
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    log.info("tables_created", tables=sorted(Base.metadata.tables))


async def drop_all_tables():
    """Drop all tables in the database (for testing)."""
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
    log.info("tables_dropped")


async def main():
    """Main entry point."""
    await create_all_tables()
    await engine.dispose()


if __name__ == "__main__":
    asyncio.run(main())
