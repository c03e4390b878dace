# =============================================================================
# Query API — POST /projects/{id}/query
# =============================================================================
#
# Runs one SQL statement against the project's database. Every attempt,
# including rejected ones, is written to query history.
#
# STATUS CODES:
#   200 — statement ran (success: true)
#   400 — invalid input or database error (success: false, error text)
#   403 — rejected by the dangerous-keyword check (success: false)
#   503 — database unreachable / pool exhausted
# =============================================================================

from __future__ import annotations

from fastapi import APIRouter, Depends, Response

from dbgateway.api.deps import Caller, get_caller, get_projects, rate_limit
from dbgateway.models.requests import QueryRequest
from dbgateway.models.responses import QueryResponse
from dbgateway.services.projects import ProjectService

router = APIRouter(tags=["Query"], dependencies=[Depends(rate_limit("general"))])


@router.post(
    "/projects/{project_id}/query",
    response_model=QueryResponse,
    summary="Execute a SQL statement",
    responses={
        400: {"model": QueryResponse, "description": "Statement failed"},
        403: {"model": QueryResponse, "description": "Dangerous statement rejected"},
    },
)
async def run_query(
    project_id: int,
    request: QueryRequest,
    response: Response,
    caller: Caller = Depends(get_caller),
    projects: ProjectService = Depends(get_projects),
) -> QueryResponse:
    result = await projects.run_query(caller.id, project_id, request.sql, request.annotation)

    if not result.success:
        response.status_code = 403 if result.dangerous else 400

    return QueryResponse(
        success=result.success,
        query_type=result.query_type,
        rows=result.rows,
        columns=result.columns,
        row_count=result.row_count,
        truncated=result.truncated,
        execution_time_ms=result.elapsed_ms,
        error=result.error,
        dangerous=result.dangerous,
        history_id=result.history_id,
    )
