# =============================================================================
# Schema Introspector — structural snapshot of a tenant database
# =============================================================================
#
# Reads the catalog through SQLAlchemy's Inspector (tables, columns,
# primary key, unique constraints, foreign keys). The Inspector issues
# dialect-specific read-only catalog queries (information_schema/pg_catalog
# on PostgreSQL, PRAGMA on SQLite), so the same code serves every backend.
#
# Snapshots are recomputed on every call and never cached; they always
# reflect the live database.
#
# ORDERING: tables by name, columns by name, foreign keys by
# (column, foreign_table, foreign_column). Repeated calls against an
# unchanged schema return identical output.
# =============================================================================

from __future__ import annotations

import logging
from collections.abc import Hashable
from dataclasses import asdict, dataclass, field

from sqlalchemy import inspect
from sqlalchemy.engine import Connection
from sqlalchemy.exc import CompileError, SQLAlchemyError

from dbgateway.errors import SchemaIntrospectionError, redact_credentials
from dbgateway.services.pool_registry import PoolRegistry

logger = logging.getLogger(__name__)

PRIMARY_KEY = "PRIMARY KEY"
UNIQUE = "UNIQUE"
FOREIGN_KEY = "FOREIGN KEY"


@dataclass
class ColumnSchema:
    name: str
    type: str
    nullable: bool
    default: str | None = None
    constraint: str | None = None


@dataclass
class ForeignKeySchema:
    column: str
    foreign_table: str
    foreign_column: str


@dataclass
class TableSchema:
    name: str
    columns: list[ColumnSchema] = field(default_factory=list)
    foreign_keys: list[ForeignKeySchema] = field(default_factory=list)

    def column(self, name: str) -> ColumnSchema | None:
        for col in self.columns:
            if col.name == name:
                return col
        return None

    def to_dict(self) -> dict:
        return asdict(self)


def _type_name(column_type, dialect) -> str:
    try:
        return column_type.compile(dialect=dialect).lower()
    except CompileError:
        return type(column_type).__name__.lower()


def read_schema(sync_conn: Connection) -> list[TableSchema]:
    """
    Build the snapshot from a sync connection (run via `run_sync`).

    A column's `constraint` is the strongest one it takes part in:
    PRIMARY KEY, then UNIQUE (single-column), then FOREIGN KEY.
    """
    inspector = inspect(sync_conn)
    dialect = sync_conn.dialect
    tables: list[TableSchema] = []

    for table_name in sorted(inspector.get_table_names()):
        pk_columns = set(
            inspector.get_pk_constraint(table_name).get("constrained_columns") or []
        )
        unique_columns = {
            uc["column_names"][0]
            for uc in inspector.get_unique_constraints(table_name)
            if len(uc.get("column_names") or []) == 1
        }

        foreign_keys: list[ForeignKeySchema] = []
        for fk in inspector.get_foreign_keys(table_name):
            for local, remote in zip(
                fk.get("constrained_columns") or [],
                fk.get("referred_columns") or [],
            ):
                foreign_keys.append(ForeignKeySchema(
                    column=local,
                    foreign_table=fk["referred_table"],
                    foreign_column=remote,
                ))
        foreign_keys.sort(key=lambda f: (f.column, f.foreign_table, f.foreign_column))
        fk_columns = {f.column for f in foreign_keys}

        columns: list[ColumnSchema] = []
        for col in inspector.get_columns(table_name):
            name = col["name"]
            if name in pk_columns:
                constraint = PRIMARY_KEY
            elif name in unique_columns:
                constraint = UNIQUE
            elif name in fk_columns:
                constraint = FOREIGN_KEY
            else:
                constraint = None
            default = col.get("default")
            columns.append(ColumnSchema(
                name=name,
                type=_type_name(col["type"], dialect),
                nullable=bool(col.get("nullable", True)),
                default=str(default) if default is not None else None,
                constraint=constraint,
            ))
        columns.sort(key=lambda c: c.name)

        tables.append(TableSchema(
            name=table_name, columns=columns, foreign_keys=foreign_keys,
        ))

    return tables


class SchemaIntrospector:
    """Produces schema snapshots through the tenant's pool."""

    def __init__(self, registry: PoolRegistry) -> None:
        self._registry = registry

    async def introspect(self, key: Hashable, connection_string: str) -> list[TableSchema]:
        """
        Snapshot the tenant database registered under `key`.

        Raises:
            DatabaseConnectionError: the database could not be reached.
            SchemaIntrospectionError: a catalog query failed.
        """
        async with self._registry.connection(key, connection_string) as conn:
            try:
                tables = await conn.run_sync(read_schema)
            except SQLAlchemyError as e:
                logger.error("Schema introspection failed for key=%s: %s", key, e)
                raise SchemaIntrospectionError(
                    redact_credentials(f"Unable to read database schema: {e}", connection_string),
                ) from e

        logger.debug("Introspected %d tables for key=%s", len(tables), key)
        return tables
