# =============================================================================
# Connection Pool Registry — one bounded pool per tenant project
# =============================================================================
#
# Keyed cache of live SQLAlchemy async engines (each engine owns a bounded
# connection pool). Keys are tenant project ids.
#
# LIFECYCLE:
#   PoolRegistry(...)        — created in the FastAPI lifespan, stored on
#                              app.state, injected via dependencies
#   get_or_create(key, url)  — existing pool, or build + register a new one
#   evict(key)               — dispose the pool's connections, drop the entry
#   prune_idle(max_idle)     — evict pools unused for too long
#   shutdown()               — dispose everything (app shutdown)
#
# DESIGN DECISION: Per-key create-once. The first caller for an unknown key
# starts a creation task and parks it in `_pending`; concurrent callers for
# the same key await that same task. The registry lock only guards dict
# bookkeeping and is never held across I/O, so a slow first connection to
# one tenant does not stall lookups for any other tenant.
#
# Bounded pools: pool_size + max_overflow connections at most. A checkout
# beyond that waits `pool_timeout` seconds and then fails with
# DatabaseConnectionError instead of blocking forever.
# =============================================================================

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import AsyncIterator, Callable, Hashable
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Any

from sqlalchemy import text
from sqlalchemy.engine import make_url
from sqlalchemy.exc import ArgumentError, DBAPIError
from sqlalchemy.exc import TimeoutError as PoolTimeoutError
from sqlalchemy.ext.asyncio import AsyncConnection, AsyncEngine, create_async_engine

from dbgateway.config import Settings
from dbgateway.errors import DatabaseConnectionError, redact_credentials

logger = logging.getLogger(__name__)

EngineFactory = Callable[..., AsyncEngine]


@dataclass
class PooledConnectionHandle:
    """A registered pool and its bookkeeping."""

    key: Hashable
    engine: AsyncEngine
    connection_string: str
    created_at: float
    last_used_at: float


class PoolRegistry:
    """Registry of per-tenant connection pools with per-key creation."""

    def __init__(
        self,
        *,
        pool_size: int = 5,
        max_overflow: int = 0,
        pool_timeout: float = 4.0,
        pool_recycle: int = 1800,
        statement_timeout_ms: int = 0,
        ready_attempts: int = 0,
        ready_delay: float = 1.0,
        engine_factory: EngineFactory = create_async_engine,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._pool_size = pool_size
        self._max_overflow = max_overflow
        self._pool_timeout = pool_timeout
        self._pool_recycle = pool_recycle
        self._statement_timeout_ms = statement_timeout_ms
        self._ready_attempts = ready_attempts
        self._ready_delay = ready_delay
        self._engine_factory = engine_factory
        self._clock = clock

        self._handles: dict[Hashable, PooledConnectionHandle] = {}
        self._pending: dict[Hashable, asyncio.Task[PooledConnectionHandle]] = {}
        self._lock = asyncio.Lock()
        self.creations = 0

    @classmethod
    def from_settings(cls, settings: Settings, **overrides: Any) -> PoolRegistry:
        """Build a registry from the tenant pool settings."""
        kwargs: dict[str, Any] = {
            "pool_size": settings.tenant_pool_size,
            "max_overflow": settings.tenant_pool_max_overflow,
            "pool_timeout": settings.tenant_pool_timeout,
            "pool_recycle": settings.tenant_pool_recycle,
            "statement_timeout_ms": settings.tenant_statement_timeout_ms,
            "ready_attempts": settings.tenant_ready_attempts,
            "ready_delay": settings.tenant_ready_delay,
        }
        kwargs.update(overrides)
        return cls(**kwargs)

    def __contains__(self, key: Hashable) -> bool:
        return key in self._handles

    def __len__(self) -> int:
        return len(self._handles)

    # -------------------------------------------------------------------------
    # Lookup / creation
    # -------------------------------------------------------------------------

    async def get_or_create(self, key: Hashable, connection_string: str) -> AsyncEngine:
        """
        Return the pool registered under `key`, creating it on first use.

        Raises:
            DatabaseConnectionError: the pool could not be built, or the
                readiness check never succeeded. Nothing is registered in
                that case; the next call retries.
        """
        async with self._lock:
            handle = self._handles.get(key)
            if handle is not None:
                handle.last_used_at = self._clock()
                return handle.engine

            task = self._pending.get(key)
            if task is None:
                task = asyncio.create_task(
                    self._create(key, connection_string),
                    name=f"pool-create-{key}",
                )
                self._pending[key] = task

        # shield: a cancelled waiter must not cancel creation for the others
        handle = await asyncio.shield(task)
        return handle.engine

    async def _create(self, key: Hashable, connection_string: str) -> PooledConnectionHandle:
        try:
            engine = self._build_engine(connection_string)
            if self._ready_attempts > 0:
                try:
                    await self._wait_until_ready(engine, connection_string)
                except BaseException:
                    await engine.dispose()
                    raise
        except BaseException:
            async with self._lock:
                self._pending.pop(key, None)
            raise

        now = self._clock()
        handle = PooledConnectionHandle(
            key=key,
            engine=engine,
            connection_string=connection_string,
            created_at=now,
            last_used_at=now,
        )
        async with self._lock:
            self._pending.pop(key, None)
            self._handles[key] = handle
            self.creations += 1

        logger.info("Created connection pool for key=%s", key)
        return handle

    def _build_engine(self, connection_string: str) -> AsyncEngine:
        kwargs: dict[str, Any] = {
            "pool_size": self._pool_size,
            "max_overflow": self._max_overflow,
            "pool_timeout": self._pool_timeout,
            "pool_recycle": self._pool_recycle,
            "pool_pre_ping": True,
        }
        try:
            url = make_url(connection_string)
        except ArgumentError as e:
            raise DatabaseConnectionError("Invalid tenant connection string.") from e

        if url.get_backend_name() == "postgresql" and self._statement_timeout_ms > 0:
            kwargs["connect_args"] = {
                "server_settings": {
                    "statement_timeout": str(int(self._statement_timeout_ms)),
                },
            }

        try:
            engine = self._engine_factory(url, **kwargs)
        except (ArgumentError, ImportError) as e:
            raise DatabaseConnectionError(
                redact_credentials(f"Cannot create connection pool: {e}", connection_string),
            ) from e
        return engine

    async def _wait_until_ready(self, engine: AsyncEngine, connection_string: str) -> None:
        """Check with SELECT 1, retrying with linear backoff."""
        last_error: Exception | None = None
        for attempt in range(1, self._ready_attempts + 1):
            try:
                async with engine.connect() as conn:
                    await conn.execute(text("SELECT 1"))
                return
            except (DBAPIError, OSError, PoolTimeoutError) as e:
                last_error = e
                logger.warning(
                    "Tenant database not ready (attempt %d/%d): %s",
                    attempt,
                    self._ready_attempts,
                    redact_credentials(str(e), connection_string),
                )
                if attempt < self._ready_attempts:
                    await asyncio.sleep(self._ready_delay * attempt)

        raise DatabaseConnectionError(
            redact_credentials(
                f"Database not ready after {self._ready_attempts} attempts: {last_error}",
                connection_string,
            ),
        )

    # -------------------------------------------------------------------------
    # Checkout
    # -------------------------------------------------------------------------

    @asynccontextmanager
    async def connection(
        self, key: Hashable, connection_string: str,
    ) -> AsyncIterator[AsyncConnection]:
        """
        Check out one connection from the tenant's pool.

        Raises:
            DatabaseConnectionError: pool exhausted past `pool_timeout`, or
                the database refused the connection.
        """
        engine = await self.get_or_create(key, connection_string)
        try:
            conn = await engine.connect()
        except PoolTimeoutError as e:
            raise DatabaseConnectionError(
                "Connection unavailable: too many concurrent queries for this "
                "project. Try again shortly.",
            ) from e
        except (DBAPIError, OSError) as e:
            raise DatabaseConnectionError(
                redact_credentials(f"Cannot connect to project database: {e}", connection_string),
            ) from e

        try:
            yield conn
        finally:
            await conn.close()

    # -------------------------------------------------------------------------
    # Eviction
    # -------------------------------------------------------------------------

    async def evict(self, key: Hashable) -> bool:
        """
        Close the pool registered under `key` and forget it.

        An in-flight creation for the key is awaited first so it cannot
        register a pool after eviction. Returns True if a pool was closed.
        """
        async with self._lock:
            task = self._pending.get(key)
        if task is not None:
            try:
                await asyncio.shield(task)
            except Exception as e:
                # the creator's callers already receive this error
                logger.debug("Pending pool creation for key=%s failed: %s", key, e)

        async with self._lock:
            handle = self._handles.pop(key, None)
        if handle is None:
            return False

        await handle.engine.dispose()
        logger.info("Evicted connection pool for key=%s", key)
        return True

    async def prune_idle(self, max_idle_seconds: float) -> list[Hashable]:
        """Evict pools not used within `max_idle_seconds`."""
        if max_idle_seconds <= 0:
            return []
        cutoff = self._clock() - max_idle_seconds
        async with self._lock:
            stale = [
                key for key, handle in self._handles.items()
                if handle.last_used_at < cutoff
            ]
        for key in stale:
            await self.evict(key)
        return stale

    async def shutdown(self) -> None:
        """Dispose every registered pool."""
        async with self._lock:
            pending = list(self._pending.values())
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)

        async with self._lock:
            handles = list(self._handles.values())
            self._handles.clear()
        for handle in handles:
            await handle.engine.dispose()
        logger.info("Connection pool registry shut down (%d pools closed)", len(handles))

    def stats(self) -> dict[str, Any]:
        """Pool counters for ops visibility."""
        pools: dict[str, dict[str, int | None]] = {}
        for key, handle in self._handles.items():
            pool = handle.engine.pool
            checked_out = getattr(pool, "checkedout", None)
            size = getattr(pool, "size", None)
            pools[str(key)] = {
                "size": int(size()) if callable(size) else None,
                "checked_out": int(checked_out()) if callable(checked_out) else None,
            }
        return {
            "pool_count": len(self._handles),
            "pending": len(self._pending),
            "creations": self.creations,
            "pools": pools,
        }
