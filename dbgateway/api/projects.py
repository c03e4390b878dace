# =============================================================================
# Projects API — Tenant Project Lifecycle & Schema
# =============================================================================
#
# POST   /projects                   — provision a new database
# POST   /projects/import            — register an existing database
# GET    /projects                   — caller's active projects
# GET    /projects/{id}              — one project
# PATCH  /projects/{id}              — rename / re-describe
# DELETE /projects/{id}              — drop (provisioned) or deactivate (imported)
# GET    /projects/{id}/schema       — live schema snapshot
# GET    /projects/{id}/tables/{t}   — rows of one table
# POST   /projects/{id}/tables/{t}/rows   — insert one row
# POST   /projects/{id}/tables/{t}/delete — delete rows by primary key
# GET    /projects/{id}/export       — every table as JSON or CSV
# GET    /projects/{id}/summary      — table/column/relationship/row counts
#
# Every route is admitted by the "general" limiter first, then scoped to
# the caller's own projects (NotFoundError → 404 otherwise).
# =============================================================================

from __future__ import annotations

from datetime import datetime, timezone
from typing import Literal

from fastapi import APIRouter, Depends, HTTPException, Query, Response
from fastapi.responses import JSONResponse

from dbgateway.api.deps import Caller, get_caller, get_projects, rate_limit
from dbgateway.models.requests import (
    CreateProjectRequest,
    DeleteRowsRequest,
    ImportProjectRequest,
    InsertRowRequest,
    UpdateProjectRequest,
)
from dbgateway.models.responses import (
    ImportProjectResponse,
    ProjectListResponse,
    ProjectResponse,
    SchemaResponse,
    SummaryResponse,
    TableResponse,
    TableRowsResponse,
    WriteResponse,
)
from dbgateway.services.executor import WriteResult
from dbgateway.services.export import export_filename, render_csv, render_json
from dbgateway.services.projects import ProjectService, build_connection_string

router = APIRouter(tags=["Projects"], dependencies=[Depends(rate_limit("general"))])


@router.post(
    "/projects",
    response_model=ProjectResponse,
    status_code=201,
    summary="Create a project with a new database",
)
async def create_project(
    request: CreateProjectRequest,
    caller: Caller = Depends(get_caller),
    projects: ProjectService = Depends(get_projects),
) -> ProjectResponse:
    try:
        project = await projects.create_project(caller.id, request.name, request.description)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e)) from e
    return ProjectResponse.model_validate(project)


@router.post(
    "/projects/import",
    response_model=ImportProjectResponse,
    status_code=201,
    summary="Import an existing database",
    description=(
        "Connects to the database, reads its schema, and only then saves "
        "the project. The credentials are stored but never returned."
    ),
)
async def import_project(
    request: ImportProjectRequest,
    caller: Caller = Depends(get_caller),
    projects: ProjectService = Depends(get_projects),
) -> ImportProjectResponse:
    connection_string = request.connection_string or build_connection_string(
        host=request.host,
        port=request.port,
        database=request.database,
        username=request.username,
        password=request.password,
        driver=request.driver,
    )
    try:
        project, schema = await projects.import_project(
            caller.id, request.name, connection_string, request.description,
        )
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e)) from e

    return ImportProjectResponse(
        project=ProjectResponse.model_validate(project),
        tables=[TableResponse.model_validate(t) for t in schema],
    )


@router.get("/projects", response_model=ProjectListResponse)
async def list_projects(
    caller: Caller = Depends(get_caller),
    projects: ProjectService = Depends(get_projects),
) -> ProjectListResponse:
    items = await projects.list_projects(caller.id)
    return ProjectListResponse(
        projects=[ProjectResponse.model_validate(p) for p in items],
        total=len(items),
    )


@router.get("/projects/{project_id}", response_model=ProjectResponse)
async def get_project(
    project_id: int,
    caller: Caller = Depends(get_caller),
    projects: ProjectService = Depends(get_projects),
) -> ProjectResponse:
    return ProjectResponse.model_validate(await projects.get_project(caller.id, project_id))


@router.patch("/projects/{project_id}", response_model=ProjectResponse)
async def update_project(
    project_id: int,
    request: UpdateProjectRequest,
    caller: Caller = Depends(get_caller),
    projects: ProjectService = Depends(get_projects),
) -> ProjectResponse:
    try:
        project = await projects.update_project(
            caller.id, project_id, name=request.name, description=request.description,
        )
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e)) from e
    return ProjectResponse.model_validate(project)


@router.delete("/projects/{project_id}", status_code=204)
async def delete_project(
    project_id: int,
    caller: Caller = Depends(get_caller),
    projects: ProjectService = Depends(get_projects),
) -> Response:
    await projects.delete_project(caller.id, project_id)
    return Response(status_code=204)


@router.get("/projects/{project_id}/schema", response_model=SchemaResponse)
async def get_schema(
    project_id: int,
    caller: Caller = Depends(get_caller),
    projects: ProjectService = Depends(get_projects),
) -> SchemaResponse:
    tables = await projects.get_schema(caller.id, project_id)
    return SchemaResponse(
        project_id=project_id,
        tables=[TableResponse.model_validate(t) for t in tables],
    )


@router.get("/projects/{project_id}/tables/{table}", response_model=TableRowsResponse)
async def get_table_rows(
    project_id: int,
    table: str,
    limit: int | None = Query(default=None, ge=1, le=10_000),
    caller: Caller = Depends(get_caller),
    projects: ProjectService = Depends(get_projects),
) -> TableRowsResponse:
    result = await projects.get_table_rows(caller.id, project_id, table, limit)
    return TableRowsResponse(
        table=table,
        columns=result.columns,
        rows=result.rows,
        row_count=result.row_count,
        truncated=result.truncated,
    )


@router.get(
    "/projects/{project_id}/export",
    summary="Export every table as JSON or CSV",
    responses={200: {"content": {"application/json": {}, "text/csv": {}}}},
)
async def export_database(
    project_id: int,
    export_format: Literal["json", "csv"] = Query(default="json", alias="format"),
    caller: Caller = Depends(get_caller),
    projects: ProjectService = Depends(get_projects),
) -> Response:
    project, tables = await projects.export_database(caller.id, project_id)
    if export_format == "csv":
        exported_at = datetime.now(timezone.utc)
        filename = export_filename(project.name, exported_at)
        return Response(
            content=render_csv(project.name, tables, exported_at),
            media_type="text/csv",
            headers={"Content-Disposition": f'attachment; filename="{filename}"'},
        )
    return JSONResponse(content=render_json(tables))


@router.post(
    "/projects/{project_id}/tables/{table}/rows",
    response_model=WriteResponse,
    status_code=201,
    summary="Insert one row",
    description=(
        "Columns are matched against the live schema; unknown keys are "
        "ignored and required columns must be present. Recorded in history."
    ),
)
async def insert_row(
    project_id: int,
    table: str,
    request: InsertRowRequest,
    caller: Caller = Depends(get_caller),
    projects: ProjectService = Depends(get_projects),
) -> WriteResponse:
    written = await projects.insert_row(caller.id, project_id, table, request.values)
    return _write_response(table, written)


@router.post(
    "/projects/{project_id}/tables/{table}/delete",
    response_model=WriteResponse,
    summary="Delete rows by primary key",
)
async def delete_rows(
    project_id: int,
    table: str,
    request: DeleteRowsRequest,
    caller: Caller = Depends(get_caller),
    projects: ProjectService = Depends(get_projects),
) -> WriteResponse:
    written = await projects.delete_rows(caller.id, project_id, table, request.keys)
    return _write_response(table, written)


@router.get("/projects/{project_id}/summary", response_model=SummaryResponse)
async def get_summary(
    project_id: int,
    caller: Caller = Depends(get_caller),
    projects: ProjectService = Depends(get_projects),
) -> SummaryResponse:
    summary = await projects.get_summary(caller.id, project_id)
    return SummaryResponse(
        project_id=project_id,
        total_tables=summary.total_tables,
        total_columns=summary.total_columns,
        total_relationships=summary.total_relationships,
        total_rows=summary.total_rows,
        row_counts=summary.row_counts,
        description=summary.description,
    )


def _write_response(table: str, written: WriteResult) -> WriteResponse:
    return WriteResponse(
        table=table,
        statement=written.statement,
        row_count=written.row_count,
        rows=written.rows,
        execution_time_ms=written.elapsed_ms,
        history_id=written.history_id,
    )
