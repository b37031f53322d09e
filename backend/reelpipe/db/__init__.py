"""
Database module for reelpipe.

Provides async SQLAlchemy engine with SQLite WAL mode,
session management, and schema initialization.
"""
import logging
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncEngine

from reelpipe.db.engine import async_session, build_engine, build_session_factory, engine, shutdown
from reelpipe.db.models import Artifact, Base, PlanVersion, Project, Run, Scene, Step

logger = logging.getLogger(__name__)


async def init_database(target: Optional[AsyncEngine] = None) -> None:
    """Initialize database schema on first run (idempotent)."""
    target = target or engine
    async with target.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.debug(f"Database schema ready on {target.url}")


__all__ = [
    "Base",
    "Project",
    "PlanVersion",
    "Scene",
    "Run",
    "Step",
    "Artifact",
    "engine",
    "async_session",
    "build_engine",
    "build_session_factory",
    "shutdown",
    "init_database",
]
