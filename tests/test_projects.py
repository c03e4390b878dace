# =============================================================================
# Integration Tests — Project Service (SQLite end to end)
# =============================================================================
#
# Real components wired together: SQLite metadata database, SQLite
# provisioner (one file per project), pool registry, executor, history.
#
# Test groups:
#   1. The "shop" scenario (create → schema → DDL → SELECT → rejected DROP)
#   2. Ownership and naming rules
#   3. Deletion (provisioned vs imported, failed drop)
#   4. Import
#   5. Table data (insert, delete, export, summary)
# =============================================================================

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from pathlib import Path
from unittest.mock import AsyncMock

import pytest
from sqlalchemy.ext.asyncio import create_async_engine

from dbgateway.errors import (
    ConflictError,
    DatabaseConnectionError,
    NotFoundError,
    ProvisioningError,
    QueryExecutionError,
)
from dbgateway.services.executor import QueryExecutor
from dbgateway.services.history import HistoryFilters, HistoryRecorder
from dbgateway.services.pool_registry import PoolRegistry
from dbgateway.services.projects import ProjectService, build_connection_string
from dbgateway.services.provisioning import SQLiteProvisioner


def _run(coro):
    """Helper to run async functions in sync tests."""
    return asyncio.run(coro)


@dataclass
class Gateway:
    service: ProjectService
    registry: PoolRegistry
    provisioner: SQLiteProvisioner

    async def close(self, engine) -> None:
        await self.registry.shutdown()
        await engine.dispose()


async def _gateway(metadata_db, data_dir: Path):
    engine, session_factory = await metadata_db()
    registry = PoolRegistry(pool_size=2, pool_timeout=1.0)
    provisioner = SQLiteProvisioner(data_dir, registry)
    recorder = HistoryRecorder(session_factory)
    executor = QueryExecutor(registry, recorder)
    service = ProjectService(session_factory, registry, provisioner, executor, recorder)
    return engine, Gateway(service, registry, provisioner)


# ---------------------------------------------------------------------------
# 1. Shop scenario
# ---------------------------------------------------------------------------


class TestShopScenario:
    def test_end_to_end(self, metadata_db, tmp_path):
        async def scenario():
            engine, gw = await _gateway(metadata_db, tmp_path / "tenants")
            svc = gw.service
            steps = {}

            project = await svc.create_project("U1", "shop")
            steps["project"] = project
            steps["schema_before"] = await svc.get_schema("U1", project.id)

            created = await svc.run_query("U1", project.id, "CREATE TABLE items(id int primary key)")
            steps["created"] = created
            steps["count_1"] = (await svc.list_history("U1", project.id)).total

            selected = await svc.run_query("U1", project.id, "SELECT * FROM items")
            steps["selected"] = selected
            steps["count_2"] = (await svc.list_history("U1", project.id)).total

            dropped = await svc.run_query("U1", project.id, "DROP TABLE items")
            steps["dropped"] = dropped
            page = await svc.list_history("U1", project.id)
            steps["page_3"] = page

            steps["schema_after"] = await svc.get_schema("U1", project.id)
            await gw.close(engine)
            return steps

        steps = _run(scenario())

        project = steps["project"]
        assert project.database_name.startswith("u1_shop_")
        assert project.connection_string.startswith("sqlite+aiosqlite:///")
        assert steps["schema_before"] == []

        assert steps["created"].success is True
        assert steps["count_1"] == 1

        assert steps["selected"].success is True
        assert steps["selected"].rows == []
        assert steps["count_2"] == 2

        assert steps["dropped"].success is False
        assert steps["dropped"].dangerous is True
        assert steps["page_3"].total == 3
        # newest first: the rejected DROP
        assert steps["page_3"].items[0].success is False
        assert steps["page_3"].items[0].query_text == "DROP TABLE items"

        # The table survived the rejected DROP
        assert [t.name for t in steps["schema_after"]] == ["items"]

    def test_history_annotation_and_favorites(self, metadata_db, tmp_path):
        async def scenario():
            engine, gw = await _gateway(metadata_db, tmp_path / "tenants")
            svc = gw.service
            project = await svc.create_project("U1", "shop")
            result = await svc.run_query("U1", project.id, "SELECT 1")
            await svc.update_history(
                "U1", project.id, result.history_id, annotation=" Smoke test ", is_favorite=True,
            )
            favorites = await svc.list_history(
                "U1", project.id, HistoryFilters(favorites_only=True),
            )
            await gw.close(engine)
            return favorites

        favorites = _run(scenario())
        assert favorites.total == 1
        assert favorites.items[0].natural_language_input == "Smoke test"

    def test_table_rows(self, metadata_db, tmp_path):
        async def scenario():
            engine, gw = await _gateway(metadata_db, tmp_path / "tenants")
            svc = gw.service
            project = await svc.create_project("U1", "shop")
            await svc.run_query("U1", project.id, "CREATE TABLE items(id int primary key, name text)")
            await svc.run_query("U1", project.id, "INSERT INTO items VALUES (1, 'pen'), (2, 'ink')")
            rows = await svc.get_table_rows("U1", project.id, "items", limit=1)
            await gw.close(engine)
            return rows

        rows = _run(scenario())
        assert rows.columns == ["id", "name"]
        assert rows.rows == [{"id": 1, "name": "pen"}]


# ---------------------------------------------------------------------------
# 2. Ownership & naming
# ---------------------------------------------------------------------------


class TestOwnership:
    def test_duplicate_name_conflicts(self, metadata_db, tmp_path):
        async def scenario():
            engine, gw = await _gateway(metadata_db, tmp_path / "tenants")
            await gw.service.create_project("U1", "shop")
            try:
                await gw.service.create_project("U1", "  shop  ")
            finally:
                await gw.close(engine)

        with pytest.raises(ConflictError):
            _run(scenario())

    def test_same_name_for_different_owners(self, metadata_db, tmp_path):
        async def scenario():
            engine, gw = await _gateway(metadata_db, tmp_path / "tenants")
            a = await gw.service.create_project("U1", "shop")
            b = await gw.service.create_project("U2", "shop")
            await gw.close(engine)
            return a, b

        a, b = _run(scenario())
        assert a.database_name != b.database_name

    def test_other_owner_cannot_see_project(self, metadata_db, tmp_path):
        async def scenario():
            engine, gw = await _gateway(metadata_db, tmp_path / "tenants")
            project = await gw.service.create_project("U1", "shop")
            try:
                await gw.service.run_query("U2", project.id, "SELECT 1")
            finally:
                await gw.close(engine)

        with pytest.raises(NotFoundError):
            _run(scenario())

    def test_list_and_rename(self, metadata_db, tmp_path):
        async def scenario():
            engine, gw = await _gateway(metadata_db, tmp_path / "tenants")
            svc = gw.service
            shop = await svc.create_project("U1", "shop")
            await svc.create_project("U1", "blog")
            await svc.create_project("U2", "other")
            renamed = await svc.update_project("U1", shop.id, name="store", description=" v2 ")
            listed = await svc.list_projects("U1")
            await gw.close(engine)
            return renamed, listed

        renamed, listed = _run(scenario())
        assert renamed.name == "store"
        assert renamed.description == "v2"
        assert sorted(p.name for p in listed) == ["blog", "store"]

    def test_empty_name_rejected(self, metadata_db, tmp_path):
        async def scenario():
            engine, gw = await _gateway(metadata_db, tmp_path / "tenants")
            try:
                await gw.service.create_project("U1", "   ")
            finally:
                await gw.close(engine)

        with pytest.raises(ValueError):
            _run(scenario())


# ---------------------------------------------------------------------------
# 3. Deletion
# ---------------------------------------------------------------------------


class TestDelete:
    def test_provisioned_project_is_dropped(self, metadata_db, tmp_path):
        async def scenario():
            engine, gw = await _gateway(metadata_db, tmp_path / "tenants")
            svc = gw.service
            project = await svc.create_project("U1", "shop")
            await svc.run_query("U1", project.id, "SELECT 1")
            pooled = project.id in gw.registry
            await svc.delete_project("U1", project.id)
            evicted = project.id not in gw.registry
            file_gone = not gw.provisioner.path_for(project.database_name).exists()
            with pytest.raises(NotFoundError):
                await svc.get_project("U1", project.id)
            await gw.close(engine)
            return pooled, evicted, file_gone

        assert _run(scenario()) == (True, True, True)

    def test_imported_project_is_only_deactivated(self, metadata_db, sqlite_url, tmp_path):
        external = sqlite_url("external")

        async def scenario():
            seed = create_async_engine(external)
            async with seed.begin() as conn:
                await conn.exec_driver_sql("CREATE TABLE legacy(id int primary key)")
            await seed.dispose()

            engine, gw = await _gateway(metadata_db, tmp_path / "tenants")
            project, _ = await gw.service.import_project("U1", "legacy", external)
            await gw.service.delete_project("U1", project.id)
            listed = await gw.service.list_projects("U1")
            await gw.close(engine)
            return listed

        listed = _run(scenario())
        assert listed == []
        assert (tmp_path / "external.sqlite3").exists()

    def test_failed_drop_keeps_the_project(self, metadata_db, tmp_path):
        async def scenario():
            engine, gw = await _gateway(metadata_db, tmp_path / "tenants")
            svc = gw.service
            project = await svc.create_project("U1", "shop")
            gw.provisioner.drop_database = AsyncMock(
                side_effect=ProvisioningError("Failed to drop database: in use"),
            )
            with pytest.raises(ProvisioningError, match="in use"):
                await svc.delete_project("U1", project.id)
            still_there = await svc.get_project("U1", project.id)
            listed = await svc.list_projects("U1")
            await gw.close(engine)
            file_kept = gw.provisioner.path_for(project.database_name).exists()
            return project, still_there, listed, file_kept

        project, still_there, listed, file_kept = _run(scenario())
        assert still_there.id == project.id
        assert still_there.active is True
        assert [p.id for p in listed] == [project.id]
        assert file_kept is True


# ---------------------------------------------------------------------------
# 4. Import
# ---------------------------------------------------------------------------


class TestImport:
    def test_import_reads_schema(self, metadata_db, sqlite_url, tmp_path):
        external = sqlite_url("crm")

        async def scenario():
            seed = create_async_engine(external)
            async with seed.begin() as conn:
                await conn.exec_driver_sql("CREATE TABLE contacts(id int primary key, email text)")
            await seed.dispose()

            engine, gw = await _gateway(metadata_db, tmp_path / "tenants")
            project, schema = await gw.service.import_project("U1", "crm", external, "CRM")
            result = await gw.service.run_query("U1", project.id, "SELECT count(*) AS n FROM contacts")
            await gw.close(engine)
            return project, schema, result

        project, schema, result = _run(scenario())
        assert project.imported is True
        assert project.database_name.endswith("crm.sqlite3")
        assert [t.name for t in schema] == ["contacts"]
        assert result.rows == [{"n": 0}]

    def test_unreachable_database_is_not_saved(self, metadata_db, tmp_path):
        unreachable = f"sqlite+aiosqlite:///{tmp_path / 'missing' / 'db.sqlite3'}"

        async def scenario():
            engine, gw = await _gateway(metadata_db, tmp_path / "tenants")
            with pytest.raises(DatabaseConnectionError):
                await gw.service.import_project("U1", "ghost", unreachable)
            listed = await gw.service.list_projects("U1")
            await gw.close(engine)
            return listed

        assert _run(scenario()) == []

    def test_build_connection_string_escapes_password(self):
        url = build_connection_string(
            host="db.example.com", port=5432, database="crm", username="app", password="p@ss/word",
        )
        assert url.startswith("postgresql+asyncpg://app:")
        assert "p@ss/word" not in url
        assert url.endswith("@db.example.com:5432/crm")


# ---------------------------------------------------------------------------
# 5. Table data
# ---------------------------------------------------------------------------


class TestTableData:
    SETUP = [
        "CREATE TABLE customers(id int primary key, name text NOT NULL)",
        "CREATE TABLE orders(id int primary key, customer_id int REFERENCES customers(id), total int)",
    ]

    async def _shop(self, svc):
        project = await svc.create_project("U1", "shop")
        for sql in self.SETUP:
            await svc.run_query("U1", project.id, sql)
        return project

    def test_insert_delete_and_history(self, metadata_db, tmp_path):
        async def scenario():
            engine, gw = await _gateway(metadata_db, tmp_path / "tenants")
            svc = gw.service
            project = await self._shop(svc)
            inserted = await svc.insert_row("U1", project.id, "customers", {"id": 1, "name": "Ada"})
            await svc.insert_row("U1", project.id, "customers", {"id": 2, "name": "Bob"})
            deleted = await svc.delete_rows("U1", project.id, "customers", [{"id": 2}])
            rows = await svc.get_table_rows("U1", project.id, "customers")
            page = await svc.list_history("U1", project.id)
            await gw.close(engine)
            return inserted, deleted, rows, page

        inserted, deleted, rows, page = _run(scenario())
        assert inserted.rows == [{"id": 1, "name": "Ada"}]
        assert deleted.row_count == 1
        assert rows.rows == [{"id": 1, "name": "Ada"}]
        # 2 CREATE TABLE + 2 inserts + 1 delete
        assert page.total == 5
        assert [item.query_type for item in page.items[:3]] == ["delete", "insert", "insert"]

    def test_writes_are_scoped_to_the_owner(self, metadata_db, tmp_path):
        async def scenario():
            engine, gw = await _gateway(metadata_db, tmp_path / "tenants")
            project = await self._shop(gw.service)
            try:
                await gw.service.insert_row("U2", project.id, "customers", {"id": 1, "name": "Eve"})
            finally:
                await gw.close(engine)

        with pytest.raises(NotFoundError):
            _run(scenario())

    def test_delete_with_wrong_key_columns(self, metadata_db, tmp_path):
        async def scenario():
            engine, gw = await _gateway(metadata_db, tmp_path / "tenants")
            project = await self._shop(gw.service)
            try:
                await gw.service.delete_rows("U1", project.id, "customers", [{"name": "Ada"}])
            finally:
                await gw.close(engine)

        with pytest.raises(QueryExecutionError, match="primary key"):
            _run(scenario())

    def test_export(self, metadata_db, tmp_path):
        async def scenario():
            engine, gw = await _gateway(metadata_db, tmp_path / "tenants")
            svc = gw.service
            project = await self._shop(svc)
            await svc.insert_row("U1", project.id, "customers", {"id": 1, "name": "Ada"})
            exported_project, tables = await svc.export_database("U1", project.id)
            await gw.close(engine)
            return exported_project, tables

        exported_project, tables = _run(scenario())
        assert exported_project.name == "shop"
        assert list(tables) == ["customers", "orders"]
        assert tables["customers"].rows == [{"id": 1, "name": "Ada"}]
        assert tables["orders"].rows == []

    def test_summary(self, metadata_db, tmp_path):
        async def scenario():
            engine, gw = await _gateway(metadata_db, tmp_path / "tenants")
            svc = gw.service
            empty = await svc.create_project("U1", "empty")
            empty_summary = await svc.get_summary("U1", empty.id)

            project = await self._shop(svc)
            structure_only = await svc.get_summary("U1", project.id)
            await svc.insert_row("U1", project.id, "customers", {"id": 1, "name": "Ada"})
            await svc.insert_row("U1", project.id, "orders", {"id": 1, "customer_id": 1, "total": 9})
            await svc.insert_row("U1", project.id, "orders", {"id": 2, "customer_id": 1, "total": 4})
            populated = await svc.get_summary("U1", project.id)
            await gw.close(engine)
            return empty_summary, structure_only, populated

        empty_summary, structure_only, populated = _run(scenario())
        assert empty_summary.total_tables == 0
        assert "empty" in empty_summary.description

        assert structure_only.total_tables == 2
        assert structure_only.total_columns == 5
        assert structure_only.total_relationships == 1
        assert structure_only.total_rows == 0
        assert "no data yet" in structure_only.description

        assert populated.row_counts == {"customers": 1, "orders": 2}
        assert populated.total_rows == 3
