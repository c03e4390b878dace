# =============================================================================
# Metadata Database Engine & Session Management
# =============================================================================
#
# SESSION LIFECYCLE:
# 1. The lifespan hands `async_session_factory` to ProjectService and
#    HistoryRecorder
# 2. Each service operation opens its own short session
#    (`async with session_factory() as session`)
# 3. Writes commit explicitly; an exception leaves the block and the
#    session rolls back on close
#
# History rows use their own session, so a record is persisted even when
# the surrounding request fails.
# =============================================================================

from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from dbgateway.config import settings
from dbgateway.db.models import Base

_engine_kwargs: dict[str, Any] = {"echo": settings.debug, "pool_pre_ping": True}
if not settings.database_url.startswith("sqlite"):
    _engine_kwargs["pool_size"] = 5
    _engine_kwargs["max_overflow"] = 10

async_engine = create_async_engine(settings.database_url, **_engine_kwargs)

# expire_on_commit=False: ORM objects stay readable after commit, outside
# the session (needed for response mapping in async handlers).
async_session_factory = async_sessionmaker(
    bind=async_engine,
    class_=AsyncSession,
    expire_on_commit=False,
)


async def create_tables() -> None:
    """Create metadata tables if they do not exist."""
    async with async_engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
