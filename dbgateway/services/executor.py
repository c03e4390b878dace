# =============================================================================
# Query Execution Gateway — validate, classify, guard, run, record
# =============================================================================
#
# FLOW (execute):
#   1. Reject empty / non-string / obviously incomplete input
#   2. Classify the statement from its leading keyword (advisory only —
#      used for history and the UI, never for access control)
#   3. Denylist check for destructive keywords; a hit is rejected before
#      any pool is touched
#   4. Run through the tenant's pool, timing wall clock from submission
#      to completion
#   5. Record exactly one history row, success or failure
#   6. Return an ExecutionResult (failures carry the database error text;
#      the caller owns the database)
#
# KNOWN WEAKNESS: the denylist is a substring heuristic on the upper-cased
# statement. It over-blocks (a column named `deleted_at` trips DELETE) and
# under-blocks (obfuscated statements). It is a guard rail, not a security
# boundary.
#
# Caller disconnects do not cancel a running statement: the attempt runs
# in a shielded task, finishes, records its history row, and the result is
# discarded.
#
# TABLE DATA (read, export, insert, delete, row counts): statements are
# assembled from identifiers found in the live schema, quoted by the
# dialect, with every value bound. Row values are converted to JSON-safe
# types before they leave this module.
# =============================================================================

from __future__ import annotations

import asyncio
import datetime as dt
import logging
import re
import time
import uuid
from collections.abc import Callable, Hashable, Mapping
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any

from sqlalchemy import text
from sqlalchemy.exc import DBAPIError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncConnection

from dbgateway.errors import (
    DangerousQueryError,
    DatabaseConnectionError,
    NotFoundError,
    QueryExecutionError,
    redact_credentials,
)
from dbgateway.services.history import HistoryEntry, HistoryRecorder
from dbgateway.services.introspection import PRIMARY_KEY, SchemaIntrospector, TableSchema
from dbgateway.services.pool_registry import PoolRegistry

logger = logging.getLogger(__name__)

DANGEROUS_KEYWORDS = (
    "DROP",
    "DELETE",
    "TRUNCATE",
    "ALTER",
    "CREATE USER",
    "CREATE ROLE",
    "GRANT",
    "REVOKE",
)

# Statements starting with these skip the denylist (e.g. a CREATE TABLE
# with `ON DELETE CASCADE`), as long as they are a single statement.
SAFE_COMPOUNDS = (
    "CREATE TABLE",
    "CREATE INDEX",
    "CREATE UNIQUE INDEX",
    "CREATE VIEW",
)

_LEADING_NOISE_RE = re.compile(r"^(?:\s+|--[^\n]*(?:\n|$)|/\*.*?\*/|\()+", re.DOTALL)
_WHITESPACE_RE = re.compile(r"\s+")

_TYPE_BY_KEYWORD = {
    "SELECT": "select",
    "WITH": "select",
    "VALUES": "select",
    "TABLE": "select",
    "INSERT": "insert",
    "UPDATE": "update",
    "DELETE": "delete",
    "CREATE": "ddl",
    "ALTER": "ddl",
    "DROP": "ddl",
    "TRUNCATE": "ddl",
    "COMMENT": "ddl",
    "RENAME": "ddl",
}

_SYNTAX_ERROR_SQLSTATE = "42601"


@dataclass
class StatementResult:
    """Raw outcome of one statement."""

    rows: list[dict[str, Any]]
    columns: list[str]
    row_count: int
    elapsed_ms: int
    truncated: bool = False


@dataclass
class ExecutionResult:
    """What the gateway hands back to the caller for one attempt."""

    success: bool
    query_type: str
    elapsed_ms: int
    rows: list[dict[str, Any]] = field(default_factory=list)
    columns: list[str] = field(default_factory=list)
    row_count: int = 0
    truncated: bool = False
    error: str | None = None
    dangerous: bool = False
    history_id: int | None = None


@dataclass
class WriteResult:
    """Outcome of a structured insert or delete."""

    statement: str
    row_count: int
    rows: list[dict[str, Any]] = field(default_factory=list)
    elapsed_ms: int = 0
    history_id: int | None = None


def normalize_query(sql: str) -> str:
    """Collapse whitespace runs (multi-line statements) to single spaces."""
    return _WHITESPACE_RE.sub(" ", sql).strip()


def classify_query(sql: str) -> str:
    """
    Statement category from the leading keyword.

    Returns one of select / insert / update / delete / ddl / other.
    Leading comments and parentheses are skipped.
    """
    if not isinstance(sql, str):
        return "other"
    head = _LEADING_NOISE_RE.sub("", sql)
    match = re.match(r"[A-Za-z]+", head)
    if match is None:
        return "other"
    return _TYPE_BY_KEYWORD.get(match.group(0).upper(), "other")


def validate_query(sql: Any) -> str:
    """
    Basic shape checks. Returns the normalized statement.

    Raises:
        QueryExecutionError: empty, non-string, or visibly incomplete input.
    """
    if not isinstance(sql, str) or not sql.strip():
        raise QueryExecutionError("Invalid query: Query must be a non-empty string")
    normalized = normalize_query(sql)
    if normalized.endswith(",") or normalized.endswith("("):
        raise QueryExecutionError(
            "Invalid query: Query appears to be incomplete or malformed",
        )
    return normalized


def _is_single_statement(normalized: str) -> bool:
    return ";" not in normalized.rstrip(";")


def find_dangerous_keyword(sql: str) -> str | None:
    """Return the first denylisted keyword found, or None."""
    normalized = normalize_query(sql).upper()
    if normalized.startswith(SAFE_COMPOUNDS) and _is_single_statement(normalized):
        return None
    for keyword in DANGEROUS_KEYWORDS:
        if keyword in normalized:
            return keyword
    return None


def _database_error_text(error: DBAPIError) -> str:
    orig = error.orig if error.orig is not None else error
    message = str(orig).strip() or error.__class__.__name__
    sqlstate = getattr(orig, "sqlstate", None) or getattr(orig, "pgcode", None)
    if sqlstate == _SYNTAX_ERROR_SQLSTATE:
        return f"SQL Syntax Error: {message}. Please check your query syntax."
    return message


def json_safe(value: Any) -> Any:
    """
    Convert one driver value into something JSON can carry.

    bytea/BLOB → lowercase hex, Decimal → str (no float rounding),
    temporal types → ISO 8601, UUID → str. Lists and dicts (json/array
    columns) are converted element-wise; anything unrecognised → str().
    """
    if value is None or isinstance(value, (bool, int, float, str)):
        return value
    if isinstance(value, (bytes, bytearray, memoryview)):
        return bytes(value).hex()
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, (dt.datetime, dt.date, dt.time)):
        return value.isoformat()
    if isinstance(value, dt.timedelta):
        return value.total_seconds()
    if isinstance(value, uuid.UUID):
        return str(value)
    if isinstance(value, Mapping):
        return {str(k): json_safe(v) for k, v in value.items()}
    if isinstance(value, (list, tuple, set, frozenset)):
        return [json_safe(v) for v in value]
    return str(value)


def _json_rows(fetched) -> list[dict[str, Any]]:
    return [{k: json_safe(v) for k, v in row.items()} for row in fetched]


def _quoted(conn: AsyncConnection, identifier: str) -> str:
    # Escape ':' so text() does not read it as a bind parameter
    return conn.dialect.identifier_preparer.quote_identifier(identifier).replace(":", "\\:")


_DATE_FORMATS = (
    "%d/%m/%Y %H:%M:%S",
    "%d/%m/%Y",
    "%d-%m-%Y",
    "%m-%d-%Y",
    "%b %d %Y",
    "%d %b %Y",
    "%Y/%m/%d %H:%M",
    "%Y-%m-%d %H:%M:%S",
    "%m/%d/%Y",
    "%m/%d/%Y %H:%M:%S",
)


def parse_temporal(raw: Any) -> dt.datetime | None:
    """
    Parse a user-supplied date/time.

    ISO 8601 first (a trailing `Z` is UTC), then day-first and
    month-first layouts. Empty input → None.

    Raises:
        ValueError: nothing matched.
    """
    if raw is None:
        return None
    value = str(raw).strip()
    if not value:
        return None
    try:
        return dt.datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        pass
    for fmt in _DATE_FORMATS:
        try:
            return dt.datetime.strptime(value, fmt)
        except ValueError:
            continue
    raise ValueError(f"Invalid date format: {raw}")


def coerce_value(column_type: str, raw: Any) -> Any:
    """
    Bind value for a column of the introspected `column_type`.

    Strings sent for temporal columns become datetime/date/time objects;
    everything else is passed through for the driver to adapt.
    """
    if not isinstance(raw, str):
        return raw
    lowered = (column_type or "").lower()
    if "timestamp" in lowered or "datetime" in lowered:
        parsed = parse_temporal(raw)
        if parsed is None:
            return None
        if "with time zone" in lowered or "timestamptz" in lowered:
            return parsed if parsed.tzinfo else parsed.replace(tzinfo=dt.timezone.utc)
        if parsed.tzinfo is not None:
            return parsed.astimezone(dt.timezone.utc).replace(tzinfo=None)
        return parsed
    if "date" in lowered:
        parsed = parse_temporal(raw)
        return parsed.date() if parsed is not None else None
    if "time" in lowered and "interval" not in lowered:
        try:
            return dt.time.fromisoformat(raw.strip())
        except ValueError:
            parsed = parse_temporal(raw)
        return parsed.time() if parsed is not None else None
    return raw


def _log_attempt_outcome(attempt: asyncio.Future) -> None:
    # Retrieves the exception even when the caller has gone away
    if attempt.cancelled():
        return
    error = attempt.exception()
    if error is not None:
        logger.info("Query attempt ended with %s: %s", type(error).__name__, error)


class QueryExecutor:
    """Guarded statement execution against tenant pools."""

    def __init__(
        self,
        registry: PoolRegistry,
        history: HistoryRecorder,
        introspector: SchemaIntrospector | None = None,
        *,
        max_result_rows: int = 1000,
        max_export_rows: int = 100_000,
    ) -> None:
        self._registry = registry
        self._history = history
        self._introspector = introspector or SchemaIntrospector(registry)
        self._max_result_rows = max_result_rows
        self._max_export_rows = max_export_rows

    # -------------------------------------------------------------------------
    # Raising contract
    # -------------------------------------------------------------------------

    async def run_statement(
        self,
        key: Hashable,
        connection_string: str,
        sql: Any,
        params: dict[str, Any] | None = None,
    ) -> StatementResult:
        """
        Validate, guard and run one statement.

        Raises:
            QueryExecutionError: invalid input or database failure.
            DangerousQueryError: denylisted keyword (database not contacted).
            DatabaseConnectionError: pool exhausted or database unreachable.
        """
        validate_query(sql)
        keyword = find_dangerous_keyword(sql)
        if keyword is not None:
            raise DangerousQueryError(keyword)

        start = time.perf_counter()
        async with self._registry.connection(key, connection_string) as conn:
            try:
                if params:
                    result = await conn.execute(text(sql), params)
                else:
                    result = await conn.exec_driver_sql(sql)

                rows: list[dict[str, Any]] = []
                columns: list[str] = []
                truncated = False
                if result.returns_rows:
                    columns = list(result.keys())
                    # One extra row tells us whether more were available
                    fetched = result.mappings().fetchmany(self._max_result_rows + 1)
                    truncated = len(fetched) > self._max_result_rows
                    rows = _json_rows(fetched[: self._max_result_rows])
                    row_count = len(rows)
                else:
                    row_count = max(result.rowcount, 0)
                await conn.commit()
            except DBAPIError as e:
                raise QueryExecutionError(
                    redact_credentials(_database_error_text(e), connection_string),
                ) from e
            except SQLAlchemyError as e:
                raise QueryExecutionError(
                    redact_credentials(str(e), connection_string),
                ) from e

        elapsed_ms = int((time.perf_counter() - start) * 1000)
        return StatementResult(
            rows=rows,
            columns=columns,
            row_count=row_count,
            elapsed_ms=elapsed_ms,
            truncated=truncated,
        )

    # -------------------------------------------------------------------------
    # Recording contract
    # -------------------------------------------------------------------------

    async def execute(
        self,
        project_id: int,
        connection_string: str,
        user_id: str,
        sql: Any,
        annotation: str | None = None,
    ) -> ExecutionResult:
        """
        Run one attempt and record it in history.

        QueryExecutionError never escapes: it becomes a failed result (and a
        failed history row). Any other exception, DatabaseConnectionError
        included, is recorded as a failed attempt, then re-raised.
        """
        attempt = asyncio.ensure_future(
            self._attempt(project_id, connection_string, user_id, sql, annotation),
        )
        attempt.add_done_callback(_log_attempt_outcome)
        return await asyncio.shield(attempt)

    async def _attempt(
        self,
        project_id: int,
        connection_string: str,
        user_id: str,
        sql: Any,
        annotation: str | None,
    ) -> ExecutionResult:
        query_type = classify_query(sql)
        query_text = sql if isinstance(sql, str) else ""
        start = time.perf_counter()

        raised: Exception | None = None
        try:
            statement = await self.run_statement(project_id, connection_string, sql)
            result = ExecutionResult(
                success=True,
                query_type=query_type,
                elapsed_ms=int((time.perf_counter() - start) * 1000),
                rows=statement.rows,
                columns=statement.columns,
                row_count=statement.row_count,
                truncated=statement.truncated,
            )
        except QueryExecutionError as e:
            result = ExecutionResult(
                success=False,
                query_type=query_type,
                elapsed_ms=int((time.perf_counter() - start) * 1000),
                error=e.message,
                dangerous=isinstance(e, DangerousQueryError),
            )
            logger.info(
                "Query failed: project_id=%s type=%s dangerous=%s error=%s",
                project_id, query_type, result.dangerous, e.message,
            )
        except DatabaseConnectionError as e:
            raised = e
            result = ExecutionResult(
                success=False,
                query_type=query_type,
                elapsed_ms=int((time.perf_counter() - start) * 1000),
                error=e.message,
            )
        except Exception as e:
            logger.exception("Unexpected failure running query for project_id=%s", project_id)
            raised = e
            result = ExecutionResult(
                success=False,
                query_type=query_type,
                elapsed_ms=int((time.perf_counter() - start) * 1000),
                error=redact_credentials(f"{type(e).__name__}: {e}", connection_string),
            )

        result.history_id = await self._record(
            project_id, user_id, query_text, annotation, result,
        )

        if raised is not None:
            raise raised
        return result

    async def _record(
        self,
        project_id: int,
        user_id: str,
        query_text: str,
        annotation: str | None,
        result: ExecutionResult,
    ) -> int | None:
        try:
            row = await self._history.record(HistoryEntry(
                project_id=project_id,
                user_id=user_id,
                query_text=query_text,
                query_type=result.query_type,
                natural_language_input=annotation,
                execution_time_ms=result.elapsed_ms,
                success=result.success,
                error_message=result.error,
            ))
        except SQLAlchemyError as e:
            # Never let a history write mask the query outcome
            logger.error("Failed to record query history for project_id=%s: %s", project_id, e)
            return None
        return row.id

    # -------------------------------------------------------------------------
    # Table data
    # -------------------------------------------------------------------------

    async def fetch_table_rows(
        self,
        project_id: int,
        connection_string: str,
        table: str,
        limit: int | None = None,
    ) -> StatementResult:
        """
        Read rows from one table.

        The table name must exist in the live schema (allowlist) and is
        quoted by the dialect; the limit is a bound parameter, never more
        than one row past `max_result_rows`.

        Raises:
            NotFoundError: no such table.
        """
        await self._require_table(project_id, connection_string, table)
        return await self._select_rows(
            project_id, connection_string, table, self._max_result_rows, limit,
        )

    async def export_tables(
        self, project_id: int, connection_string: str,
    ) -> dict[str, StatementResult]:
        """Rows of every table in the live schema, up to `max_export_rows` each."""
        tables = await self._introspector.introspect(project_id, connection_string)
        exported: dict[str, StatementResult] = {}
        for info in tables:
            exported[info.name] = await self._select_rows(
                project_id, connection_string, info.name, self._max_export_rows,
            )
        return exported

    async def count_rows(
        self,
        project_id: int,
        connection_string: str,
        tables: list[TableSchema],
    ) -> dict[str, int]:
        """Exact COUNT(*) per table; `tables` comes from introspection."""
        counts: dict[str, int] = {}
        async with self._registry.connection(project_id, connection_string) as conn:
            try:
                for info in tables:
                    result = await conn.execute(
                        text(f"SELECT COUNT(*) FROM {_quoted(conn, info.name)}"),
                    )
                    counts[info.name] = int(result.scalar_one())
            except DBAPIError as e:
                raise QueryExecutionError(
                    redact_credentials(_database_error_text(e), connection_string),
                ) from e
        return counts

    async def _select_rows(
        self,
        project_id: int,
        connection_string: str,
        table: str,
        cap: int,
        limit: int | None = None,
    ) -> StatementResult:
        bound = cap + 1
        if limit is not None and limit > 0:
            bound = min(limit, bound)

        start = time.perf_counter()
        async with self._registry.connection(project_id, connection_string) as conn:
            try:
                result = await conn.execute(
                    text(f"SELECT * FROM {_quoted(conn, table)} LIMIT :limit"),
                    {"limit": bound},
                )
                columns = list(result.keys())
                fetched = result.mappings().all()
            except DBAPIError as e:
                raise QueryExecutionError(
                    redact_credentials(_database_error_text(e), connection_string),
                ) from e

        rows = _json_rows(fetched[:cap])
        return StatementResult(
            rows=rows,
            columns=columns,
            row_count=len(rows),
            elapsed_ms=int((time.perf_counter() - start) * 1000),
            truncated=len(fetched) > cap,
        )

    async def _require_table(
        self, project_id: int, connection_string: str, table: str,
    ) -> TableSchema:
        tables = await self._introspector.introspect(project_id, connection_string)
        for info in tables:
            if info.name == table:
                return info
        raise NotFoundError(f"Table '{table}' not found in project database.")

    # -------------------------------------------------------------------------
    # Structured writes
    # -------------------------------------------------------------------------
    # Built from introspected identifiers and bound values only, so they do
    # not go through the keyword denylist. Each write is recorded in history
    # like a typed statement.
    # -------------------------------------------------------------------------

    async def insert_row(
        self,
        project_id: int,
        connection_string: str,
        user_id: str,
        table: str,
        values: dict[str, Any],
    ) -> WriteResult:
        """
        Insert one row and return it as stored.

        Keys that are not columns of `table` are ignored. Temporal columns
        accept ISO 8601 and a few common day/month layouts.

        Raises:
            NotFoundError: no such table.
            QueryExecutionError: no usable columns, required columns
                missing, unparseable dates, or the database rejected the row.
        """
        info = await self._require_table(project_id, connection_string, table)
        known = {c.name: c for c in info.columns}

        provided = [name for name in values if name in known]
        if not provided:
            raise QueryExecutionError("No valid columns provided.")

        missing = [
            c.name for c in info.columns
            if not c.nullable and c.default is None and c.name not in values
        ]
        if missing:
            raise QueryExecutionError(f"Missing required columns: {', '.join(missing)}")

        params: dict[str, Any] = {}
        invalid: list[str] = []
        for i, name in enumerate(provided):
            try:
                params[f"v{i}"] = coerce_value(known[name].type, values[name])
            except ValueError as e:
                invalid.append(f"{name}: {e}")
        if invalid:
            raise QueryExecutionError(f"Invalid date formats ({'; '.join(invalid)})")

        def build(conn: AsyncConnection) -> str:
            columns = ", ".join(_quoted(conn, name) for name in provided)
            placeholders = ", ".join(f":v{i}" for i in range(len(provided)))
            return (
                f"INSERT INTO {_quoted(conn, table)} ({columns}) "
                f"VALUES ({placeholders}) RETURNING *"
            )

        return await self._recorded_write(
            project_id, connection_string, user_id, "insert", build, params,
        )

    async def delete_rows(
        self,
        project_id: int,
        connection_string: str,
        user_id: str,
        table: str,
        keys: list[dict[str, Any]],
    ) -> WriteResult:
        """
        Delete the rows identified by their full primary key.

        Every entry of `keys` must name exactly the table's primary key
        columns.

        Raises:
            NotFoundError: no such table.
            QueryExecutionError: table without a primary key, malformed
                keys, or the database rejected the delete.
        """
        info = await self._require_table(project_id, connection_string, table)
        key_columns = [c for c in info.columns if c.constraint == PRIMARY_KEY]
        if not key_columns:
            raise QueryExecutionError(
                f"Table '{table}' has no primary key; rows cannot be addressed.",
            )
        if not keys:
            raise QueryExecutionError("At least one primary key value is required.")
        if len(keys) > self._max_result_rows:
            raise QueryExecutionError(
                f"At most {self._max_result_rows} rows can be deleted per request.",
            )

        expected = {c.name for c in key_columns}
        params: dict[str, Any] = {}
        for row_index, key in enumerate(keys):
            if set(key) != expected:
                raise QueryExecutionError(
                    "Each key must give exactly the primary key columns: "
                    + ", ".join(sorted(expected)),
                )
            for col_index, column in enumerate(key_columns):
                try:
                    params[f"k{row_index}_{col_index}"] = coerce_value(
                        column.type, key[column.name],
                    )
                except ValueError as e:
                    raise QueryExecutionError(f"{column.name}: {e}") from e

        def build(conn: AsyncConnection) -> str:
            quoted = [_quoted(conn, c.name) for c in key_columns]
            matches = [
                "(" + " AND ".join(
                    f"{name} = :k{row_index}_{col_index}"
                    for col_index, name in enumerate(quoted)
                ) + ")"
                for row_index in range(len(keys))
            ]
            return f"DELETE FROM {_quoted(conn, table)} WHERE " + " OR ".join(matches)

        return await self._recorded_write(
            project_id, connection_string, user_id, "delete", build, params,
        )

    async def _recorded_write(
        self,
        project_id: int,
        connection_string: str,
        user_id: str,
        query_type: str,
        build: Callable[[AsyncConnection], str],
        params: dict[str, Any],
    ) -> WriteResult:
        statement = ""
        start = time.perf_counter()
        try:
            async with self._registry.connection(project_id, connection_string) as conn:
                sql = build(conn)
                statement = sql.replace("\\:", ":")
                try:
                    result = await conn.execute(text(sql), params)
                    if result.returns_rows:
                        rows = _json_rows(result.mappings().all())
                        row_count = len(rows)
                    else:
                        rows = []
                        row_count = max(result.rowcount, 0)
                    await conn.commit()
                except DBAPIError as e:
                    raise QueryExecutionError(
                        redact_credentials(_database_error_text(e), connection_string),
                    ) from e
        except (QueryExecutionError, DatabaseConnectionError) as e:
            failed = ExecutionResult(
                success=False,
                query_type=query_type,
                elapsed_ms=int((time.perf_counter() - start) * 1000),
                error=e.message,
            )
            await self._record(project_id, user_id, statement, None, failed)
            raise

        written = WriteResult(
            statement=statement,
            row_count=row_count,
            rows=rows,
            elapsed_ms=int((time.perf_counter() - start) * 1000),
        )
        written.history_id = await self._record(
            project_id,
            user_id,
            statement,
            None,
            ExecutionResult(
                success=True,
                query_type=query_type,
                elapsed_ms=written.elapsed_ms,
                row_count=row_count,
            ),
        )
        logger.info(
            "Structured %s on project_id=%s affected %d rows",
            query_type, project_id, row_count,
        )
        return written
