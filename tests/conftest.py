# =============================================================================
# Shared test fixtures — SQLite-backed metadata and tenant databases
# =============================================================================
#
# Async engines are bound to the event loop that first uses them, so the
# fixtures hand out *async factories*: each test builds its engines inside
# the coroutine it runs with `_run(...)` and disposes them there.
#
# File-based SQLite (not :memory:) so tenant pools get a real bounded
# queue pool, the same pool class PostgreSQL engines use.
# =============================================================================

from __future__ import annotations

from pathlib import Path

import pytest
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

from dbgateway.db.models import Base


@pytest.fixture
def sqlite_url(tmp_path: Path):
    """`sqlite_url("name")` → URL of a file database under tmp_path."""

    def _url(name: str = "tenant") -> str:
        return f"sqlite+aiosqlite:///{tmp_path / f'{name}.sqlite3'}"

    return _url


@pytest.fixture
def metadata_db(tmp_path: Path):
    """
    `await metadata_db()` → (engine, session_factory) for the gateway's own
    tables. Call `await engine.dispose()` when done.
    """

    async def _make() -> tuple[AsyncEngine, async_sessionmaker[AsyncSession]]:
        engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'metadata.sqlite3'}")
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        return engine, async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)

    return _make
