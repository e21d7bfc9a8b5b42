from typing import AsyncGenerator

from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession
from sqlalchemy.orm import sessionmaker
from sqlmodel import SQLModel

from shared.settings import settings
from shared.logging import get_logger

# Import the table definitions so that SQLModel.metadata knows about them.
from shared.models_db import RFQTable, RFQItemTable, QuotationHeaderTable, QuotationOfferTable, OfferItemTable # noqa

logger = get_logger(__name__)

async_engine = create_async_engine(
    settings.DATABASE_URL,
    echo=settings.DB_ECHO_LOG,
    future=True
)

AsyncSessionFactory = sessionmaker(
    bind=async_engine,
    class_=AsyncSession,
    expire_on_commit=False, # Objects stay readable after the service commits
    autoflush=False, # Repositories flush explicitly
)

async def get_async_session() -> AsyncGenerator[AsyncSession, None]:
    """Dependency to get an async database session."""
    async with AsyncSessionFactory() as session:
        try:
            yield session
            # Services commit their own units of work.
        except Exception:
            await session.rollback()
            raise
        finally:
            await session.close()

async def create_db_and_tables():
    """Utility function to create all tables defined by SQLModel metadata."""
    logger.info("Initializing database and creating tables if they don't exist...")
    async with async_engine.begin() as conn:
        try:
            await conn.run_sync(SQLModel.metadata.create_all)
            logger.info("Database tables checked/created successfully.")
        except Exception as e:
            logger.error(f"Error creating database tables: {e}", exc_info=True)
            raise

async def close_db_connection():
    logger.info("Closing database connection pool...")
    await async_engine.dispose()
    logger.info("Database connection pool closed.")
