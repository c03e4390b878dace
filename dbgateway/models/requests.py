# =============================================================================
# API Request Models — Pydantic V2 Schemas
# =============================================================================
#
# Shapes of data coming INTO the API. FastAPI validates bodies against
# these (422 on invalid input) and publishes them in the OpenAPI docs.
# =============================================================================

from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, model_validator


class CreateProjectRequest(BaseModel):
    """
    Request body for POST /projects — provision a new tenant database.

    Example:
        {"name": "shop", "description": "Orders and customers"}
    """

    name: str = Field(..., min_length=1, max_length=200, examples=["shop"])
    description: str = Field(default="", max_length=2000)


class ImportProjectRequest(BaseModel):
    """
    Request body for POST /projects/import — register an existing database.

    Either give `connection_string`, or the parts (host, database, username,
    password, port) and let the gateway assemble the URL.
    """

    name: str = Field(..., min_length=1, max_length=200)
    description: str = Field(default="", max_length=2000)

    connection_string: str | None = Field(
        default=None,
        description="Full SQLAlchemy URL, e.g. postgresql+asyncpg://user:pw@host/db",
    )
    host: str | None = None
    port: int | None = Field(default=None, ge=1, le=65535)
    database: str | None = None
    username: str | None = None
    password: str | None = None
    driver: str = Field(default="postgresql+asyncpg")

    @model_validator(mode="after")
    def _connection_given(self) -> "ImportProjectRequest":
        if self.connection_string:
            return self
        missing = [f for f in ("host", "database", "username") if not getattr(self, f)]
        if missing:
            raise ValueError(
                "Provide connection_string, or host, database and username "
                f"(missing: {', '.join(missing)})"
            )
        return self


class UpdateProjectRequest(BaseModel):
    """Request body for PATCH /projects/{id}."""

    name: str | None = Field(default=None, min_length=1, max_length=200)
    description: str | None = Field(default=None, max_length=2000)


class QueryRequest(BaseModel):
    """
    Request body for POST /projects/{id}/query.

    Example:
        {"sql": "SELECT * FROM orders LIMIT 10", "annotation": "Latest orders"}
    """

    sql: str = Field(..., description="A single SQL statement")
    annotation: str | None = Field(
        default=None,
        max_length=2000,
        description="Natural-language prompt or title stored with the history record",
    )


class HistoryUpdateRequest(BaseModel):
    """PATCH /projects/{id}/history/{history_id} — at least one field."""

    natural_language_input: str | None = Field(default=None, max_length=2000)
    is_favorite: bool | None = None

    @model_validator(mode="after")
    def _one_field(self) -> "HistoryUpdateRequest":
        if self.natural_language_input is None and self.is_favorite is None:
            raise ValueError("A new title or favorite status is required.")
        return self


class InsertRowRequest(BaseModel):
    """
    Request body for POST /projects/{id}/tables/{table}/rows.

    Keys that are not columns of the table are ignored.

    Example:
        {"values": {"name": "pen", "price": 3, "added_on": "19/10/2026"}}
    """

    values: dict[str, Any] = Field(..., min_length=1)


class DeleteRowsRequest(BaseModel):
    """
    Request body for POST /projects/{id}/tables/{table}/delete.

    Each entry gives the full primary key of one row.

    Example:
        {"keys": [{"id": 3}, {"id": 7}]}
    """

    keys: list[dict[str, Any]] = Field(..., min_length=1)


class TitleRequest(BaseModel):
    sql: str = Field(..., min_length=1)


class ExplainErrorRequest(BaseModel):
    error: str = Field(..., min_length=1)
    sql: str | None = None


class AdmissionRequest(BaseModel):
    """POST /admission/check — spend one token for an identity."""

    limiter_class: Literal["general", "auth", "ai"] = "general"
    identity_key: str = Field(..., min_length=1, max_length=255)

    model_config = ConfigDict(
        json_schema_extra={
            "examples": [{"limiter_class": "auth", "identity_key": "203.0.113.7"}]
        }
    )
