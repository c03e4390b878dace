# =============================================================================
# Project Service — caller-facing operations over tenant projects
# =============================================================================
#
# Ties the components together behind ownership checks:
#
#   create_project  → Provisioner.create_database → insert metadata row
#   import_project  → connectivity + catalog check → insert (imported=True)
#   delete_project  → provisioned: evict pool → DROP DATABASE → delete row
#                     imported:    evict pool → active=False (never dropped)
#   get_schema      → SchemaIntrospector (live, never cached)
#   run_query       → QueryExecutor (records history)
#   get_table_rows / export_database / insert_row / delete_rows
#                   → QueryExecutor table-data operations
#   get_summary     → introspection + exact row counts
#   list_history / update_history → HistoryRecorder, scoped to the caller
#
# OWNERSHIP: every project-scoped call resolves the project with
# `owner_id = caller AND active`. A project that exists but belongs to
# someone else is reported exactly like a missing one (NotFoundError), so
# callers cannot discover other tenants' ids.
# =============================================================================

from __future__ import annotations

import logging
from dataclasses import dataclass, field

from sqlalchemy import select
from sqlalchemy.engine import URL, make_url
from sqlalchemy.exc import ArgumentError, DBAPIError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import NullPool

from dbgateway.db.models import Project, QueryHistory
from dbgateway.errors import (
    ConflictError,
    DatabaseConnectionError,
    NotFoundError,
    redact_credentials,
)
from dbgateway.services.executor import (
    ExecutionResult,
    QueryExecutor,
    StatementResult,
    WriteResult,
)
from dbgateway.services.history import HistoryFilters, HistoryPage, HistoryRecorder
from dbgateway.services.introspection import SchemaIntrospector, TableSchema, read_schema
from dbgateway.services.pool_registry import PoolRegistry
from dbgateway.services.provisioning import Provisioner

logger = logging.getLogger(__name__)

MAX_PROJECT_NAME_LENGTH = 200


@dataclass
class DatabaseSummary:
    """Quick statistics over a project database."""

    total_tables: int
    total_columns: int
    total_relationships: int
    total_rows: int
    row_counts: dict[str, int] = field(default_factory=dict)
    description: str = ""


def _describe(tables: list[TableSchema], total_rows: int) -> str:
    if not tables:
        return "This database is currently empty with no tables created yet."
    if total_rows == 0:
        sample = ", ".join(t.name for t in tables[:3])
        return (
            f"Database structure is set up with {len(tables)} tables "
            f"(e.g. {sample}) but contains no data yet."
        )
    return f"{len(tables)} tables holding {total_rows} rows in total."


def build_connection_string(
    *,
    host: str,
    database: str,
    username: str,
    password: str | None = None,
    port: int | None = None,
    driver: str = "postgresql+asyncpg",
) -> str:
    """Assemble a SQLAlchemy URL from its parts (credentials escaped)."""
    url = URL.create(
        drivername=driver,
        username=username,
        password=password,
        host=host,
        port=port,
        database=database,
    )
    return url.render_as_string(hide_password=False)


def _clean_name(name: str) -> str:
    cleaned = (name or "").strip()
    if not cleaned:
        raise ValueError("Project name is required.")
    if len(cleaned) > MAX_PROJECT_NAME_LENGTH:
        raise ValueError(f"Project name must be at most {MAX_PROJECT_NAME_LENGTH} characters.")
    return cleaned


class ProjectService:
    """Facade used by the HTTP layer (and directly by tests)."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        registry: PoolRegistry,
        provisioner: Provisioner,
        executor: QueryExecutor,
        history: HistoryRecorder,
        introspector: SchemaIntrospector | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._registry = registry
        self._provisioner = provisioner
        self._executor = executor
        self._history = history
        self._introspector = introspector or SchemaIntrospector(registry)

    # -------------------------------------------------------------------------
    # Lookup helpers
    # -------------------------------------------------------------------------

    async def _ensure_name_available(
        self,
        session: AsyncSession,
        owner_id: str,
        name: str,
        exclude_id: int | None = None,
    ) -> None:
        stmt = select(Project.id).where(
            Project.owner_id == owner_id,
            Project.name == name,
            Project.active.is_(True),
        )
        if exclude_id is not None:
            stmt = stmt.where(Project.id != exclude_id)
        if (await session.execute(stmt)).first() is not None:
            raise ConflictError(f"A project named '{name}' already exists.")

    async def _owned(self, session: AsyncSession, owner_id: str, project_id: int) -> Project:
        stmt = select(Project).where(
            Project.id == project_id,
            Project.owner_id == owner_id,
            Project.active.is_(True),
        )
        project = (await session.execute(stmt)).scalar_one_or_none()
        if project is None:
            raise NotFoundError("Project not found or access denied.")
        return project

    async def get_project(self, owner_id: str, project_id: int) -> Project:
        """
        Raises:
            NotFoundError: missing, inactive, or owned by someone else.
        """
        async with self._session_factory() as session:
            return await self._owned(session, owner_id, project_id)

    async def list_projects(self, owner_id: str) -> list[Project]:
        """Active projects of the caller, newest first."""
        stmt = (
            select(Project)
            .where(Project.owner_id == owner_id, Project.active.is_(True))
            .order_by(Project.created_at.desc(), Project.id.desc())
        )
        async with self._session_factory() as session:
            return list((await session.execute(stmt)).scalars().all())

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    async def create_project(
        self, owner_id: str, name: str, description: str = "",
    ) -> Project:
        """
        Provision a new database and register it as a project.

        Raises:
            ValueError: empty or oversized name.
            ConflictError: caller already has an active project of that name.
            ProvisioningError: CREATE DATABASE failed (not retried).
        """
        name = _clean_name(name)

        async with self._session_factory() as session:
            await self._ensure_name_available(session, owner_id, name)

        provisioned = await self._provisioner.create_database(owner_id, name)

        try:
            async with self._session_factory() as session:
                project = Project(
                    owner_id=owner_id,
                    name=name,
                    description=(description or "").strip(),
                    database_name=provisioned.database_name,
                    connection_string=provisioned.connection_string,
                    imported=False,
                    active=True,
                )
                session.add(project)
                await session.commit()
                await session.refresh(project)
        except SQLAlchemyError:
            logger.exception(
                "Failed to save project metadata; dropping orphan database %s",
                provisioned.database_name,
            )
            await self._provisioner.drop_database(provisioned.database_name)
            raise

        logger.info(
            "Project created: id=%d owner=%s database=%s",
            project.id, owner_id, project.database_name,
        )
        return project

    async def import_project(
        self,
        owner_id: str,
        name: str,
        connection_string: str,
        description: str = "",
    ) -> tuple[Project, list[TableSchema]]:
        """
        Register an existing database the caller owns.

        The database is checked first (connect, SELECT 1, read the catalog)
        with a throwaway engine; nothing is saved unless the check succeeds.

        Returns the new project and the schema found during the check.

        Raises:
            ValueError: empty name or unparseable connection string.
            ConflictError: duplicate active project name.
            DatabaseConnectionError: the database could not be reached.
        """
        name = _clean_name(name)
        try:
            url = make_url(connection_string)
        except ArgumentError as e:
            raise ValueError("Invalid connection string.") from e

        async with self._session_factory() as session:
            await self._ensure_name_available(session, owner_id, name)

        schema = await self._check_reachable(connection_string)

        async with self._session_factory() as session:
            project = Project(
                owner_id=owner_id,
                name=name,
                description=(description or "").strip(),
                database_name=url.database or "",
                connection_string=connection_string,
                imported=True,
                active=True,
            )
            session.add(project)
            await session.commit()
            await session.refresh(project)

        logger.info(
            "Project imported: id=%d owner=%s tables=%d",
            project.id, owner_id, len(schema),
        )
        return project, schema

    async def _check_reachable(self, connection_string: str) -> list[TableSchema]:
        try:
            engine = create_async_engine(connection_string, poolclass=NullPool)
        except (ArgumentError, ImportError) as e:
            raise DatabaseConnectionError(
                redact_credentials(f"Unsupported connection string: {e}", connection_string),
            ) from e
        try:
            async with engine.connect() as conn:
                await conn.exec_driver_sql("SELECT 1")
                return await conn.run_sync(read_schema)
        except (DBAPIError, OSError) as e:
            raise DatabaseConnectionError(
                redact_credentials(f"Failed to connect to database: {e}", connection_string),
            ) from e
        finally:
            await engine.dispose()

    async def update_project(
        self,
        owner_id: str,
        project_id: int,
        *,
        name: str | None = None,
        description: str | None = None,
    ) -> Project:
        """
        Rename and/or re-describe a project. Its database is untouched.

        Raises:
            NotFoundError, ConflictError, ValueError
        """
        async with self._session_factory() as session:
            project = await self._owned(session, owner_id, project_id)
            if name is not None:
                name = _clean_name(name)
                if name != project.name:
                    await self._ensure_name_available(
                        session, owner_id, name, exclude_id=project.id,
                    )
                project.name = name
            if description is not None:
                project.description = description.strip()
            await session.commit()
            await session.refresh(project)
        return project

    async def delete_project(self, owner_id: str, project_id: int) -> None:
        """
        Remove a project.

        Provisioned: evict pool → DROP DATABASE → delete the row (history
        goes with it). Imported: evict pool → deactivate; the external
        database is never dropped.

        Raises:
            NotFoundError: not the caller's project.
            ProvisioningError: eviction or DROP DATABASE failed; the
                metadata row is kept in that case.
        """
        async with self._session_factory() as session:
            project = await self._owned(session, owner_id, project_id)

            if project.imported:
                await self._registry.evict(project.id)
                project.active = False
                await session.commit()
                logger.info("Imported project deactivated: id=%d", project_id)
                return

            await self._provisioner.drop_database(project.database_name, pool_key=project.id)
            await session.delete(project)
            await session.commit()

        logger.info("Project deleted: id=%d owner=%s", project_id, owner_id)

    # -------------------------------------------------------------------------
    # Tenant data access
    # -------------------------------------------------------------------------

    async def get_schema(self, owner_id: str, project_id: int) -> list[TableSchema]:
        project = await self.get_project(owner_id, project_id)
        return await self._introspector.introspect(project.id, project.connection_string)

    async def get_table_rows(
        self, owner_id: str, project_id: int, table: str, limit: int | None = None,
    ) -> StatementResult:
        project = await self.get_project(owner_id, project_id)
        return await self._executor.fetch_table_rows(
            project.id, project.connection_string, table, limit,
        )

    async def export_database(
        self, owner_id: str, project_id: int,
    ) -> tuple[Project, dict[str, StatementResult]]:
        """Rows of every table, keyed by table name (project returned for naming)."""
        project = await self.get_project(owner_id, project_id)
        tables = await self._executor.export_tables(project.id, project.connection_string)
        logger.info("Project exported: id=%d tables=%d", project.id, len(tables))
        return project, tables

    async def insert_row(
        self, owner_id: str, project_id: int, table: str, values: dict,
    ) -> WriteResult:
        """Insert one row into an existing table; recorded in history."""
        project = await self.get_project(owner_id, project_id)
        return await self._executor.insert_row(
            project.id, project.connection_string, owner_id, table, values,
        )

    async def delete_rows(
        self, owner_id: str, project_id: int, table: str, keys: list[dict],
    ) -> WriteResult:
        """Delete rows by full primary key; recorded in history."""
        project = await self.get_project(owner_id, project_id)
        return await self._executor.delete_rows(
            project.id, project.connection_string, owner_id, table, keys,
        )

    async def get_summary(self, owner_id: str, project_id: int) -> DatabaseSummary:
        project = await self.get_project(owner_id, project_id)
        tables = await self._introspector.introspect(project.id, project.connection_string)
        counts = await self._executor.count_rows(project.id, project.connection_string, tables)
        total_rows = sum(counts.values())
        return DatabaseSummary(
            total_tables=len(tables),
            total_columns=sum(len(t.columns) for t in tables),
            total_relationships=sum(len(t.foreign_keys) for t in tables),
            total_rows=total_rows,
            row_counts=counts,
            description=_describe(tables, total_rows),
        )

    async def run_query(
        self,
        owner_id: str,
        project_id: int,
        sql: str,
        annotation: str | None = None,
    ) -> ExecutionResult:
        """Execute one statement for the caller; always recorded in history."""
        project = await self.get_project(owner_id, project_id)
        return await self._executor.execute(
            project.id, project.connection_string, owner_id, sql, annotation,
        )

    async def list_history(
        self,
        owner_id: str,
        project_id: int,
        filters: HistoryFilters | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> HistoryPage:
        project = await self.get_project(owner_id, project_id)
        return await self._history.query(project.id, owner_id, filters, limit, offset)

    async def update_history(
        self,
        owner_id: str,
        project_id: int,
        history_id: int,
        *,
        annotation: str | None = None,
        is_favorite: bool | None = None,
    ) -> QueryHistory:
        project = await self.get_project(owner_id, project_id)
        return await self._history.update(
            history_id,
            project.id,
            owner_id,
            annotation=annotation,
            is_favorite=is_favorite,
        )
