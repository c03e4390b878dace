# =============================================================================
# Provisioning Service — create / drop physical tenant databases
# =============================================================================
#
# Structural statements (CREATE/DROP DATABASE) run over a control-plane
# engine that is separate from every tenant pool. PostgreSQL refuses these
# statements inside a transaction block, so the control engine runs in
# AUTOCOMMIT mode with NullPool (no idle admin connections).
#
# DROP ORDERING:
#   1. evict the tenant's pool  (close live connections first)
#   2. DROP DATABASE            (structural deletion)
#   3. delete project metadata  (done by the caller, ProjectService)
# The first failing step raises ProvisioningError. Earlier steps are not
# rolled back.
#
# ARCHITECTURE:
#   Provisioner (Protocol)
#   ├── PostgresProvisioner — CREATE/DROP DATABASE on the tenant host
#   └── SQLiteProvisioner   — one database file per tenant (local dev/tests)
# =============================================================================

from __future__ import annotations

import logging
import re
import secrets
from collections.abc import Hashable
from dataclasses import dataclass
from pathlib import Path
from typing import Protocol

from sqlalchemy import text
from sqlalchemy.engine import make_url
from sqlalchemy.exc import DBAPIError
from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine
from sqlalchemy.pool import NullPool

from dbgateway.config import Settings
from dbgateway.errors import ProvisioningError, redact_credentials
from dbgateway.services.pool_registry import PoolRegistry

logger = logging.getLogger(__name__)

# PostgreSQL truncates identifiers past 63 bytes (NAMEDATALEN - 1)
MAX_DATABASE_NAME_LENGTH = 63

_NON_IDENTIFIER_RE = re.compile(r"[^a-z0-9]+")


@dataclass(frozen=True)
class ProvisionedDatabase:
    """Result of a successful database creation."""

    database_name: str
    connection_string: str


def derive_database_name(
    owner_id: str,
    requested_name: str,
    *,
    prefix: str = "",
    suffix: str | None = None,
) -> str:
    """
    Build a collision-resistant physical database name.

    Shape: `[prefix_]<owner>_<name>_<suffix>`, lower-case, every run of
    non-alphanumerics collapsed to `_`, at most 63 characters. The random
    suffix keeps two projects with the same owner and name apart.

    Raises:
        ValueError: requested_name has no usable characters.
    """
    owner_part = _NON_IDENTIFIER_RE.sub("_", str(owner_id).lower()).strip("_")
    name_part = _NON_IDENTIFIER_RE.sub("_", requested_name.lower()).strip("_")
    if not name_part:
        raise ValueError(f"Project name '{requested_name}' has no usable characters.")

    suffix = suffix or secrets.token_hex(4)
    head = "_".join(p for p in (prefix.lower().strip("_"), owner_part) if p)

    # Trim owner/name, never the suffix
    budget = MAX_DATABASE_NAME_LENGTH - len(suffix) - 1
    base = f"{head}_{name_part}" if head else name_part
    base = base[:budget].rstrip("_")
    name = f"{base}_{suffix}"
    if name[0].isdigit():
        name = f"db_{name}"[:MAX_DATABASE_NAME_LENGTH]
    return name


class Provisioner(Protocol):
    """Creates and destroys physical tenant databases."""

    async def create_database(self, owner_id: str, requested_name: str) -> ProvisionedDatabase:
        ...

    async def drop_database(self, database_name: str, *, pool_key: Hashable | None = None) -> None:
        ...

    async def close(self) -> None:
        ...


# ---------------------------------------------------------------------------
# Implementation 1: PostgreSQL
# ---------------------------------------------------------------------------


class PostgresProvisioner:
    """Provision databases on a PostgreSQL host via a control-plane engine."""

    def __init__(
        self,
        admin_engine: AsyncEngine,
        tenant_base_url: str,
        registry: PoolRegistry,
        *,
        name_prefix: str = "",
    ) -> None:
        self._admin_engine = admin_engine
        self._tenant_base_url = tenant_base_url
        self._registry = registry
        self._name_prefix = name_prefix

    @classmethod
    def from_settings(cls, settings: Settings, registry: PoolRegistry) -> PostgresProvisioner:
        admin_engine = create_async_engine(
            settings.provisioning_admin_url,
            isolation_level="AUTOCOMMIT",
            poolclass=NullPool,
        )
        return cls(
            admin_engine,
            settings.tenant_base_url,
            registry,
            name_prefix=settings.tenant_db_prefix,
        )

    def connection_string_for(self, database_name: str) -> str:
        """Tenant host credentials + the tenant's database name."""
        url = make_url(self._tenant_base_url).set(database=database_name)
        return url.render_as_string(hide_password=False)

    def _quote(self, database_name: str) -> str:
        return self._admin_engine.dialect.identifier_preparer.quote_identifier(database_name)

    async def create_database(self, owner_id: str, requested_name: str) -> ProvisionedDatabase:
        """
        Issue CREATE DATABASE for a freshly derived name.

        Raises:
            ProvisioningError: the control connection or the statement failed.
                Never retried.
        """
        database_name = derive_database_name(
            owner_id, requested_name, prefix=self._name_prefix,
        )
        statement = f"CREATE DATABASE {self._quote(database_name)}"

        try:
            async with self._admin_engine.connect() as conn:
                await conn.exec_driver_sql(statement)
        except (DBAPIError, OSError) as e:
            logger.error("CREATE DATABASE %s failed: %s", database_name, e)
            raise ProvisioningError(
                redact_credentials(
                    f"Failed to create database '{database_name}': {e}",
                    self._tenant_base_url,
                ),
            ) from e

        logger.info("Provisioned database %s for owner=%s", database_name, owner_id)
        return ProvisionedDatabase(
            database_name=database_name,
            connection_string=self.connection_string_for(database_name),
        )

    async def drop_database(self, database_name: str, *, pool_key: Hashable | None = None) -> None:
        """
        Evict the tenant pool, then DROP DATABASE.

        Raises:
            ProvisioningError: eviction or the drop statement failed.
        """
        if pool_key is not None:
            try:
                await self._registry.evict(pool_key)
            except (DBAPIError, OSError) as e:
                raise ProvisioningError(
                    f"Failed to close connections for '{database_name}': {e}",
                ) from e

        statement = f"DROP DATABASE IF EXISTS {self._quote(database_name)}"
        try:
            async with self._admin_engine.connect() as conn:
                await conn.exec_driver_sql(statement)
        except (DBAPIError, OSError) as e:
            logger.error("DROP DATABASE %s failed: %s", database_name, e)
            raise ProvisioningError(
                redact_credentials(
                    f"Failed to drop database '{database_name}': {e}",
                    self._tenant_base_url,
                ),
            ) from e

        logger.info("Dropped database %s", database_name)

    async def close(self) -> None:
        await self._admin_engine.dispose()


# ---------------------------------------------------------------------------
# Implementation 2: SQLite (one file per tenant)
# ---------------------------------------------------------------------------


class SQLiteProvisioner:
    """
    File-per-tenant provisioning for local development and tests.

    The "control plane" is the filesystem: create = open the file once so
    it exists, drop = unlink it.
    """

    def __init__(self, data_dir: str | Path, registry: PoolRegistry, *, name_prefix: str = "") -> None:
        self._data_dir = Path(data_dir)
        self._registry = registry
        self._name_prefix = name_prefix

    def path_for(self, database_name: str) -> Path:
        return self._data_dir / f"{database_name}.sqlite3"

    def connection_string_for(self, database_name: str) -> str:
        return f"sqlite+aiosqlite:///{self.path_for(database_name)}"

    async def create_database(self, owner_id: str, requested_name: str) -> ProvisionedDatabase:
        database_name = derive_database_name(owner_id, requested_name, prefix=self._name_prefix)
        connection_string = self.connection_string_for(database_name)

        try:
            self._data_dir.mkdir(parents=True, exist_ok=True)
            if self.path_for(database_name).exists():
                raise ProvisioningError(f"Database '{database_name}' already exists.")
            engine = create_async_engine(connection_string, poolclass=NullPool)
            try:
                async with engine.connect() as conn:
                    await conn.execute(text("SELECT 1"))
            finally:
                await engine.dispose()
        except (DBAPIError, OSError) as e:
            raise ProvisioningError(f"Failed to create database '{database_name}': {e}") from e

        logger.info("Provisioned SQLite database %s for owner=%s", database_name, owner_id)
        return ProvisionedDatabase(database_name=database_name, connection_string=connection_string)

    async def drop_database(self, database_name: str, *, pool_key: Hashable | None = None) -> None:
        if pool_key is not None:
            await self._registry.evict(pool_key)
        try:
            self.path_for(database_name).unlink(missing_ok=True)
        except OSError as e:
            raise ProvisioningError(f"Failed to drop database '{database_name}': {e}") from e
        logger.info("Dropped SQLite database %s", database_name)

    async def close(self) -> None:
        return None


def build_provisioner(settings: Settings, registry: PoolRegistry) -> Provisioner:
    """Factory reading `provisioning_backend` from settings."""
    if settings.provisioning_backend == "sqlite":
        return SQLiteProvisioner(
            settings.sqlite_data_dir, registry, name_prefix=settings.tenant_db_prefix,
        )
    return PostgresProvisioner.from_settings(settings, registry)
