# =============================================================================
# Unit Tests — Connection Pool Registry
# =============================================================================
#
# Test groups:
#   1. Lookup: same key → same pool
#   2. Per-key create-once under concurrency
#   3. Eviction and idle pruning
#   4. Failure handling (bad URL, readiness check, pool exhaustion)
# =============================================================================

from __future__ import annotations

import asyncio
from unittest.mock import AsyncMock, MagicMock

import pytest
from sqlalchemy import text
from sqlalchemy.exc import ArgumentError

from dbgateway.errors import DatabaseConnectionError
from dbgateway.services.pool_registry import PoolRegistry


def _run(coro):
    """Helper to run async functions in sync tests."""
    return asyncio.run(coro)


class FakeEngineFactory:
    """Counts constructions; returns mock engines with an async dispose()."""

    def __init__(self, fail_first: int = 0) -> None:
        self.calls: list[tuple] = []
        self.fail_first = fail_first

    def __call__(self, url, **kwargs):
        self.calls.append((url, kwargs))
        if len(self.calls) <= self.fail_first:
            raise ArgumentError("unsupported driver")
        return MagicMock(dispose=AsyncMock())


# ---------------------------------------------------------------------------
# 1. Lookup
# ---------------------------------------------------------------------------


class TestGetOrCreate:
    def test_same_key_returns_same_pool(self, sqlite_url):
        async def scenario():
            registry = PoolRegistry(pool_size=2)
            first = await registry.get_or_create(1, sqlite_url())
            second = await registry.get_or_create(1, sqlite_url())
            creations = registry.creations
            await registry.shutdown()
            return first, second, creations

        first, second, creations = _run(scenario())
        assert first is second
        assert creations == 1

    def test_different_keys_get_different_pools(self, sqlite_url):
        async def scenario():
            registry = PoolRegistry(pool_size=2)
            a = await registry.get_or_create("a", sqlite_url("a"))
            b = await registry.get_or_create("b", sqlite_url("b"))
            size = len(registry)
            await registry.shutdown()
            return a, b, size

        a, b, size = _run(scenario())
        assert a is not b
        assert size == 2

    def test_stats_report_checked_out_connections(self, sqlite_url):
        async def scenario():
            registry = PoolRegistry(pool_size=2)
            async with registry.connection("a", sqlite_url("a")) as conn:
                await conn.execute(text("SELECT 1"))
                during = registry.stats()
            after = registry.stats()
            await registry.shutdown()
            return during, after

        during, after = _run(scenario())
        assert during["pool_count"] == 1
        assert during["creations"] == 1
        assert during["pools"]["a"] == {"size": 2, "checked_out": 1}
        assert after["pools"]["a"]["checked_out"] == 0

    def test_pool_is_bounded_with_configured_settings(self):
        factory = FakeEngineFactory()

        async def scenario():
            registry = PoolRegistry(
                pool_size=3, max_overflow=1, pool_timeout=2.5, engine_factory=factory,
            )
            await registry.get_or_create("k", "postgresql+asyncpg://u:p@h/db")

        _run(scenario())
        _, kwargs = factory.calls[0]
        assert kwargs["pool_size"] == 3
        assert kwargs["max_overflow"] == 1
        assert kwargs["pool_timeout"] == 2.5
        assert kwargs["pool_pre_ping"] is True

    def test_statement_timeout_only_for_postgres(self):
        factory = FakeEngineFactory()

        async def scenario():
            registry = PoolRegistry(statement_timeout_ms=5000, engine_factory=factory)
            await registry.get_or_create("pg", "postgresql+asyncpg://u:p@h/db")
            await registry.get_or_create("lite", "sqlite+aiosqlite:///x.db")

        _run(scenario())
        pg_kwargs = factory.calls[0][1]
        lite_kwargs = factory.calls[1][1]
        assert pg_kwargs["connect_args"]["server_settings"]["statement_timeout"] == "5000"
        assert "connect_args" not in lite_kwargs


# ---------------------------------------------------------------------------
# 2. Concurrency
# ---------------------------------------------------------------------------


class TestCreateOnce:
    def test_concurrent_first_access_builds_one_pool(self):
        factory = FakeEngineFactory()

        async def scenario():
            registry = PoolRegistry(engine_factory=factory)
            engines = await asyncio.gather(*[
                registry.get_or_create("shop", "postgresql+asyncpg://u:p@h/shop")
                for _ in range(25)
            ])
            return engines, registry.creations

        engines, creations = _run(scenario())
        assert len(factory.calls) == 1
        assert creations == 1
        assert all(e is engines[0] for e in engines)

    def test_concurrent_access_to_different_keys(self):
        factory = FakeEngineFactory()

        async def scenario():
            registry = PoolRegistry(engine_factory=factory)
            await asyncio.gather(*[
                registry.get_or_create(f"k{i % 5}", f"postgresql+asyncpg://u:p@h/db{i % 5}")
                for i in range(20)
            ])
            return len(registry)

        assert _run(scenario()) == 5
        assert len(factory.calls) == 5


# ---------------------------------------------------------------------------
# 3. Eviction & pruning
# ---------------------------------------------------------------------------


class TestEviction:
    def test_evict_then_get_builds_new_pool(self, sqlite_url):
        async def scenario():
            registry = PoolRegistry(pool_size=2)
            first = await registry.get_or_create(7, sqlite_url())
            evicted = await registry.evict(7)
            present = 7 in registry
            second = await registry.get_or_create(7, sqlite_url())
            await registry.shutdown()
            return first, second, evicted, present

        first, second, evicted, present = _run(scenario())
        assert evicted is True
        assert present is False
        assert first is not second

    def test_evict_absent_key_is_noop(self):
        async def scenario():
            return await PoolRegistry().evict("missing")

        assert _run(scenario()) is False

    def test_evict_disposes_engine(self):
        factory = FakeEngineFactory()

        async def scenario():
            registry = PoolRegistry(engine_factory=factory)
            engine = await registry.get_or_create("k", "postgresql+asyncpg://u:p@h/db")
            await registry.evict("k")
            return engine

        engine = _run(scenario())
        engine.dispose.assert_awaited_once()

    def test_prune_idle_evicts_only_stale_pools(self):
        factory = FakeEngineFactory()
        now = [0.0]

        async def scenario():
            registry = PoolRegistry(engine_factory=factory, clock=lambda: now[0])
            await registry.get_or_create("stale", "postgresql+asyncpg://u:p@h/a")
            await registry.get_or_create("fresh", "postgresql+asyncpg://u:p@h/b")
            now[0] = 100.0
            await registry.get_or_create("fresh", "postgresql+asyncpg://u:p@h/b")
            now[0] = 150.0
            pruned = await registry.prune_idle(100)
            return pruned, "stale" in registry, "fresh" in registry

        pruned, stale_present, fresh_present = _run(scenario())
        assert pruned == ["stale"]
        assert stale_present is False
        assert fresh_present is True

    def test_shutdown_disposes_everything(self):
        factory = FakeEngineFactory()

        async def scenario():
            registry = PoolRegistry(engine_factory=factory)
            a = await registry.get_or_create("a", "postgresql+asyncpg://u:p@h/a")
            b = await registry.get_or_create("b", "postgresql+asyncpg://u:p@h/b")
            await registry.shutdown()
            return a, b, len(registry)

        a, b, size = _run(scenario())
        a.dispose.assert_awaited_once()
        b.dispose.assert_awaited_once()
        assert size == 0


# ---------------------------------------------------------------------------
# 4. Failures
# ---------------------------------------------------------------------------


class TestFailures:
    def test_failed_creation_is_not_cached(self):
        factory = FakeEngineFactory(fail_first=1)

        async def scenario():
            registry = PoolRegistry(engine_factory=factory)
            with pytest.raises(DatabaseConnectionError):
                await registry.get_or_create("k", "postgresql+asyncpg://u:p@h/db")
            cached = "k" in registry
            engine = await registry.get_or_create("k", "postgresql+asyncpg://u:p@h/db")
            return cached, engine

        cached, engine = _run(scenario())
        assert cached is False
        assert engine is not None
        assert len(factory.calls) == 2

    def test_invalid_connection_string(self):
        async def scenario():
            await PoolRegistry().get_or_create("k", "not a url")

        with pytest.raises(DatabaseConnectionError, match="Invalid tenant connection string"):
            _run(scenario())

    def test_readiness_check_failure_surfaces_connection_error(self, tmp_path):
        url = f"sqlite+aiosqlite:///{tmp_path / 'missing-dir' / 'db.sqlite3'}"

        async def scenario():
            registry = PoolRegistry(ready_attempts=2, ready_delay=0)
            with pytest.raises(DatabaseConnectionError, match="not ready after 2 attempts"):
                await registry.get_or_create("k", url)
            return "k" in registry

        assert _run(scenario()) is False

    def test_checkout_beyond_bound_times_out(self, sqlite_url):
        async def scenario():
            registry = PoolRegistry(pool_size=1, max_overflow=0, pool_timeout=0.2)
            async with registry.connection("k", sqlite_url()) as conn:
                await conn.execute(text("SELECT 1"))
                with pytest.raises(DatabaseConnectionError, match="Connection unavailable"):
                    async with registry.connection("k", sqlite_url()):
                        pass
            # Released connection is usable again
            async with registry.connection("k", sqlite_url()) as conn:
                value = (await conn.execute(text("SELECT 1"))).scalar()
            await registry.shutdown()
            return value

        assert _run(scenario()) == 1

    def test_connection_is_returned_even_when_the_body_raises(self, sqlite_url):
        async def scenario():
            registry = PoolRegistry(pool_size=1, max_overflow=0, pool_timeout=0.5)
            with pytest.raises(RuntimeError):
                async with registry.connection("k", sqlite_url()) as conn:
                    await conn.execute(text("SELECT 1"))
                    raise RuntimeError("boom")
            checked_out = registry.stats()["pools"]["k"]["checked_out"]
            async with registry.connection("k", sqlite_url()) as conn:
                value = (await conn.execute(text("SELECT 2"))).scalar()
            await registry.shutdown()
            return checked_out, value

        checked_out, value = _run(scenario())
        assert checked_out == 0
        assert value == 2
