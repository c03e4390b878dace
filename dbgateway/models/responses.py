# =============================================================================
# API Response Models — Pydantic V2 Schemas
# =============================================================================
#
# Shapes of data going OUT of the API.
#
# DESIGN DECISION: Separate response models from DB models. A project row
# holds the tenant connection string with credentials; ProjectResponse has
# no such field, so it can never be serialized by accident.
# =============================================================================

from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field


class HealthResponse(BaseModel):
    """Response for GET /health."""

    status: str = "ok"
    version: str
    service: str
    pools: int = Field(default=0, description="Live tenant connection pools")


class ProjectResponse(BaseModel):
    id: int
    name: str
    description: str
    database_name: str
    imported: bool
    created_at: datetime
    updated_at: datetime

    model_config = ConfigDict(from_attributes=True)


class ProjectListResponse(BaseModel):
    projects: list[ProjectResponse]
    total: int


class ColumnResponse(BaseModel):
    name: str
    type: str
    nullable: bool
    default: str | None = None
    constraint: str | None = None

    model_config = ConfigDict(from_attributes=True)


class ForeignKeyResponse(BaseModel):
    column: str
    foreign_table: str
    foreign_column: str

    model_config = ConfigDict(from_attributes=True)


class TableResponse(BaseModel):
    name: str
    columns: list[ColumnResponse]
    foreign_keys: list[ForeignKeyResponse]

    model_config = ConfigDict(from_attributes=True)


class SchemaResponse(BaseModel):
    project_id: int
    tables: list[TableResponse]


class ImportProjectResponse(BaseModel):
    project: ProjectResponse
    tables: list[TableResponse]


class QueryResponse(BaseModel):
    """
    Outcome of one execution attempt.

    Returned with 200 on success, 400 on failure, 403 when the statement
    was rejected as dangerous. `history_id` is null only if recording the
    attempt failed.
    """

    success: bool
    query_type: str
    rows: list[dict[str, Any]] = Field(default_factory=list)
    columns: list[str] = Field(default_factory=list)
    row_count: int = 0
    truncated: bool = False
    execution_time_ms: int
    error: str | None = None
    dangerous: bool = False
    history_id: int | None = None


class TableRowsResponse(BaseModel):
    table: str
    columns: list[str]
    rows: list[dict[str, Any]]
    row_count: int
    truncated: bool = False


class WriteResponse(BaseModel):
    """Outcome of a structured insert or delete."""

    table: str
    statement: str = Field(description="Executed statement; values were bound, not inlined")
    row_count: int
    rows: list[dict[str, Any]] = Field(default_factory=list)
    execution_time_ms: int
    history_id: int | None = None


class SummaryResponse(BaseModel):
    project_id: int
    total_tables: int
    total_columns: int
    total_relationships: int
    total_rows: int
    row_counts: dict[str, int]
    description: str


class HistoryItemResponse(BaseModel):
    id: int
    project_id: int
    query_text: str
    query_type: str
    natural_language_input: str | None
    execution_time_ms: int
    success: bool
    error_message: str | None
    is_favorite: bool
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


class HistoryResponse(BaseModel):
    items: list[HistoryItemResponse]
    total: int
    limit: int
    offset: int


class TitleResponse(BaseModel):
    title: str


class ErrorExplanationResponse(BaseModel):
    summary: str
    cause: str
    suggestion: str
    corrected_sql: str | None = None

    model_config = ConfigDict(from_attributes=True)


class DiagramResponse(BaseModel):
    plantuml: str


class AdmissionResponse(BaseModel):
    allowed: bool
    limiter_class: str
    remaining: int
    retry_after_ms: int

    model_config = ConfigDict(from_attributes=True)
