# =============================================================================
# History Recorder — durable log of every SQL execution attempt
# =============================================================================
#
# Writes use their own session (not the request session) so a record is
# persisted even when the surrounding request fails.
#
# Reads are always scoped to `project_id = X AND user_id = Y`; every filter
# is ANDed onto that scope, and the total count uses the same predicate as
# the page.
# =============================================================================

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta

from sqlalchemy import ColumnElement, func, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from dbgateway.db.models import QueryHistory
from dbgateway.errors import NotFoundError

logger = logging.getLogger(__name__)

QUERY_TYPES = ("select", "insert", "update", "delete", "ddl", "other")
STATUS_FILTERS = ("all", "success", "failed")
DATE_RANGES = ("all", "today", "7days", "30days")


@dataclass
class HistoryEntry:
    """One execution attempt, as handed over by the executor."""

    project_id: int
    user_id: str
    query_text: str
    query_type: str
    execution_time_ms: int
    success: bool
    error_message: str | None = None
    natural_language_input: str | None = None


@dataclass
class HistoryFilters:
    status: str = "all"
    query_type: str = "all"
    date_range: str = "all"
    favorites_only: bool = False


@dataclass
class HistoryPage:
    items: list[QueryHistory]
    total: int


def _utcnow() -> datetime:
    return datetime.now(UTC)


class HistoryRecorder:
    """Append-only query history with filtered, paginated reads."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._session_factory = session_factory
        self._clock = clock

    async def record(self, entry: HistoryEntry) -> QueryHistory:
        """Persist one history row and return it."""
        async with self._session_factory() as session:
            row = QueryHistory(
                project_id=entry.project_id,
                user_id=entry.user_id,
                query_text=entry.query_text,
                query_type=entry.query_type,
                natural_language_input=entry.natural_language_input,
                execution_time_ms=entry.execution_time_ms,
                success=entry.success,
                error_message=entry.error_message,
                is_favorite=False,
            )
            session.add(row)
            await session.commit()
            await session.refresh(row)

        logger.debug(
            "History recorded: project_id=%s type=%s success=%s",
            entry.project_id, entry.query_type, entry.success,
        )
        return row

    def _predicate(
        self, project_id: int, user_id: str, filters: HistoryFilters,
    ) -> list[ColumnElement[bool]]:
        clauses: list[ColumnElement[bool]] = [
            QueryHistory.project_id == project_id,
            QueryHistory.user_id == user_id,
        ]

        if filters.status not in STATUS_FILTERS:
            raise ValueError(f"Unknown status filter '{filters.status}'")
        if filters.status == "success":
            clauses.append(QueryHistory.success.is_(True))
        elif filters.status == "failed":
            clauses.append(QueryHistory.success.is_(False))

        if filters.query_type != "all":
            if filters.query_type not in QUERY_TYPES:
                raise ValueError(f"Unknown query type filter '{filters.query_type}'")
            clauses.append(QueryHistory.query_type == filters.query_type)

        if filters.date_range not in DATE_RANGES:
            raise ValueError(f"Unknown date range '{filters.date_range}'")
        now = self._clock()
        if filters.date_range == "today":
            start = now.replace(hour=0, minute=0, second=0, microsecond=0)
            clauses.append(QueryHistory.created_at >= start)
        elif filters.date_range == "7days":
            clauses.append(QueryHistory.created_at >= now - timedelta(days=7))
        elif filters.date_range == "30days":
            clauses.append(QueryHistory.created_at >= now - timedelta(days=30))

        if filters.favorites_only:
            clauses.append(QueryHistory.is_favorite.is_(True))

        return clauses

    async def query(
        self,
        project_id: int,
        user_id: str,
        filters: HistoryFilters | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> HistoryPage:
        """Newest-first page of matching records plus the total match count."""
        clauses = self._predicate(project_id, user_id, filters or HistoryFilters())

        stmt = (
            select(QueryHistory)
            .where(*clauses)
            .order_by(QueryHistory.created_at.desc(), QueryHistory.id.desc())
            .limit(limit)
            .offset(offset)
        )
        count_stmt = select(func.count(QueryHistory.id)).where(*clauses)

        async with self._session_factory() as session:
            items = list((await session.execute(stmt)).scalars().all())
            total = (await session.execute(count_stmt)).scalar() or 0

        return HistoryPage(items=items, total=int(total))

    async def update(
        self,
        history_id: int,
        project_id: int,
        user_id: str,
        *,
        annotation: str | None = None,
        is_favorite: bool | None = None,
    ) -> QueryHistory:
        """
        Change the annotation and/or favorite flag of one record.

        Raises:
            ValueError: neither field supplied.
            NotFoundError: no such record in the caller's scope.
        """
        if annotation is None and is_favorite is None:
            raise ValueError("A new annotation or favorite status is required.")

        async with self._session_factory() as session:
            stmt = select(QueryHistory).where(
                QueryHistory.id == history_id,
                QueryHistory.project_id == project_id,
                QueryHistory.user_id == user_id,
            )
            row = (await session.execute(stmt)).scalar_one_or_none()
            if row is None:
                raise NotFoundError("History item not found or not allowed to edit.")

            if annotation is not None:
                row.natural_language_input = annotation.strip()
            if is_favorite is not None:
                row.is_favorite = is_favorite

            await session.commit()
            await session.refresh(row)

        logger.info("History item updated: id=%d project_id=%d", history_id, project_id)
        return row
