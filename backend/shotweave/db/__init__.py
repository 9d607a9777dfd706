"""
Database module for shotweave.

Provides async SQLAlchemy engine with SQLite WAL mode,
session management, and schema initialization.
"""
import logging

from sqlalchemy.ext.asyncio import AsyncEngine

from shotweave.db.engine import async_session, engine, shutdown
from shotweave.db.models import Base, LegacyContinuitySessionRecord, UnifiedSessionRecord

logger = logging.getLogger(__name__)


async def init_database(bind: AsyncEngine = None):
    """Initialize database schema on first run."""
    async with (bind or engine).begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("Database schema ready")


__all__ = [
    "Base",
    "engine",
    "async_session",
    "shutdown",
    "init_database",
    "UnifiedSessionRecord",
    "LegacyContinuitySessionRecord",
]
