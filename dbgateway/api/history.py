# =============================================================================
# History API — Query History per Project
# =============================================================================
#
# GET   /projects/{id}/history               — filtered, paginated, newest first
# PATCH /projects/{id}/history/{history_id}  — edit title / favorite flag
#
# Scoped to (project, caller): a caller never sees another caller's rows.
# =============================================================================

from __future__ import annotations

from typing import Literal

from fastapi import APIRouter, Depends, HTTPException, Query

from dbgateway.api.deps import Caller, get_caller, get_projects, rate_limit
from dbgateway.models.requests import HistoryUpdateRequest
from dbgateway.models.responses import HistoryItemResponse, HistoryResponse
from dbgateway.services.history import HistoryFilters
from dbgateway.services.projects import ProjectService

router = APIRouter(tags=["History"], dependencies=[Depends(rate_limit("general"))])


@router.get("/projects/{project_id}/history", response_model=HistoryResponse)
async def list_history(
    project_id: int,
    status: Literal["all", "success", "failed"] = Query(default="all"),
    query_type: Literal["all", "select", "insert", "update", "delete", "ddl", "other"] = Query(
        default="all",
    ),
    date_range: Literal["all", "today", "7days", "30days"] = Query(default="all"),
    favorites_only: bool = Query(default=False),
    limit: int = Query(default=50, ge=1, le=500),
    offset: int = Query(default=0, ge=0),
    caller: Caller = Depends(get_caller),
    projects: ProjectService = Depends(get_projects),
) -> HistoryResponse:
    filters = HistoryFilters(
        status=status,
        query_type=query_type,
        date_range=date_range,
        favorites_only=favorites_only,
    )
    page = await projects.list_history(caller.id, project_id, filters, limit, offset)
    return HistoryResponse(
        items=[HistoryItemResponse.model_validate(item) for item in page.items],
        total=page.total,
        limit=limit,
        offset=offset,
    )


@router.patch(
    "/projects/{project_id}/history/{history_id}",
    response_model=HistoryItemResponse,
)
async def update_history(
    project_id: int,
    history_id: int,
    request: HistoryUpdateRequest,
    caller: Caller = Depends(get_caller),
    projects: ProjectService = Depends(get_projects),
) -> HistoryItemResponse:
    try:
        item = await projects.update_history(
            caller.id,
            project_id,
            history_id,
            annotation=request.natural_language_input,
            is_favorite=request.is_favorite,
        )
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e)) from e
    return HistoryItemResponse.model_validate(item)
