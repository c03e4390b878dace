# =============================================================================
# AI API — Assistant Endpoints (stricter "ai" limiter)
# =============================================================================
#
# POST /projects/{id}/ai/title          — title for a SQL statement
# POST /projects/{id}/ai/explain-error  — explain a database error
# GET  /projects/{id}/diagram           — PlantUML diagram of the schema
#
# Each call reads the live schema and hands it to the assistant together
# with the caller's input. The assistant is a black box (see assistant.py).
# =============================================================================

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, HTTPException

from dbgateway.api.deps import Caller, get_assistant, get_caller, get_projects, rate_limit
from dbgateway.errors import DatabaseConnectionError, SchemaIntrospectionError
from dbgateway.models.requests import ExplainErrorRequest, TitleRequest
from dbgateway.models.responses import DiagramResponse, ErrorExplanationResponse, TitleResponse
from dbgateway.services.assistant import Assistant
from dbgateway.services.projects import ProjectService

logger = logging.getLogger(__name__)

router = APIRouter(tags=["AI"], dependencies=[Depends(rate_limit("ai"))])


@router.post("/projects/{project_id}/ai/title", response_model=TitleResponse)
async def generate_title(
    project_id: int,
    request: TitleRequest,
    caller: Caller = Depends(get_caller),
    projects: ProjectService = Depends(get_projects),
    assistant: Assistant = Depends(get_assistant),
) -> TitleResponse:
    schema = await projects.get_schema(caller.id, project_id)
    if not schema:
        raise HTTPException(
            status_code=400,
            detail="Cannot generate title, database schema is empty",
        )
    title = await assistant.generate_title(request.sql, schema)
    return TitleResponse(title=title)


@router.post(
    "/projects/{project_id}/ai/explain-error",
    response_model=ErrorExplanationResponse,
)
async def explain_error(
    project_id: int,
    request: ExplainErrorRequest,
    caller: Caller = Depends(get_caller),
    projects: ProjectService = Depends(get_projects),
    assistant: Assistant = Depends(get_assistant),
) -> ErrorExplanationResponse:
    # The explanation is still useful without schema context
    try:
        schema = await projects.get_schema(caller.id, project_id)
    except (DatabaseConnectionError, SchemaIntrospectionError) as e:
        logger.warning("Could not fetch schema for error explanation: %s", e)
        schema = None

    explanation = await assistant.explain_error(request.error, request.sql, schema)
    return ErrorExplanationResponse.model_validate(explanation)


@router.get("/projects/{project_id}/diagram", response_model=DiagramResponse)
async def get_diagram(
    project_id: int,
    caller: Caller = Depends(get_caller),
    projects: ProjectService = Depends(get_projects),
    assistant: Assistant = Depends(get_assistant),
) -> DiagramResponse:
    schema = await projects.get_schema(caller.id, project_id)
    plantuml = await assistant.schema_to_diagram(schema)
    return DiagramResponse(plantuml=plantuml)
