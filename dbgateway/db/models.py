# =============================================================================
# Database Models — SQLAlchemy ORM (metadata database)
# =============================================================================
#
# SCHEMA OVERVIEW:
#
# ┌──────────────────────┐       ┌──────────────────────────────────────┐
# │  projects            │       │  query_history                       │
# ├──────────────────────┤       ├──────────────────────────────────────┤
# │ id (PK)              │──1:N─▶│ id (PK)                              │
# │ owner_id             │       │ project_id (FK → projects.id)        │
# │ name                 │       │ user_id                              │
# │ description          │       │ query_text                           │
# │ database_name        │       │ query_type                           │
# │ connection_string    │       │ natural_language_input               │
# │ imported             │       │ execution_time_ms                    │
# │ active               │       │ success / error_message              │
# │ created_at           │       │ is_favorite                          │
# │ updated_at           │       │ created_at                           │
# └──────────────────────┘       └──────────────────────────────────────┘
#
# Tenant data never lives here. Each project points at its own physical
# database through `connection_string`.
#
# Column types are portable (no JSONB / UUID) so the same models run on
# PostgreSQL in production and SQLite in tests.
# =============================================================================

from datetime import datetime

from sqlalchemy import (
    Boolean,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    func,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship


class Base(DeclarativeBase):
    """SQLAlchemy declarative base class for the metadata database."""

    pass


class Project(Base):
    """
    A tenant project: one caller-owned logical unit backed by exactly one
    physical database.

    Lifecycle:
        provisioned → dropped (row deleted with the database)
        imported    → deactivated (active=False; the external database is
                      never dropped)
    """

    __tablename__ = "projects"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)

    # Opaque caller identity resolved by the upstream auth layer
    owner_id: Mapped[str] = mapped_column(String(255), nullable=False)

    name: Mapped[str] = mapped_column(String(200), nullable=False)
    description: Mapped[str] = mapped_column(Text, nullable=False, default="")

    # Physical database name on the tenant host
    database_name: Mapped[str] = mapped_column(String(128), nullable=False)

    # Full SQLAlchemy URL including credentials. Never returned by the API.
    connection_string: Mapped[str] = mapped_column(Text, nullable=False)

    # True when the database was brought in by the caller, not provisioned
    imported: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        nullable=False,
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        onupdate=func.now(),
        nullable=False,
    )

    history: Mapped[list["QueryHistory"]] = relationship(
        "QueryHistory",
        back_populates="project",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )

    def __repr__(self) -> str:
        return (
            f"<Project(id={self.id}, owner='{self.owner_id}', "
            f"name='{self.name}', active={self.active})>"
        )


class QueryHistory(Base):
    """
    One row per SQL execution attempt, success or failure.

    Immutable except for `is_favorite` and `natural_language_input`
    (the caller-editable title/annotation).
    """

    __tablename__ = "query_history"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)

    project_id: Mapped[int] = mapped_column(
        Integer,
        ForeignKey("projects.id", ondelete="CASCADE"),
        nullable=False,
    )
    user_id: Mapped[str] = mapped_column(String(255), nullable=False)

    query_text: Mapped[str] = mapped_column(Text, nullable=False)

    # select | insert | update | delete | ddl | other
    query_type: Mapped[str] = mapped_column(String(20), nullable=False)

    # Natural-language prompt or caller-supplied title
    natural_language_input: Mapped[str | None] = mapped_column(Text, nullable=True)

    execution_time_ms: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    success: Mapped[bool] = mapped_column(Boolean, nullable=False)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)

    is_favorite: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        nullable=False,
    )

    project: Mapped["Project"] = relationship("Project", back_populates="history")

    def __repr__(self) -> str:
        return (
            f"<QueryHistory(id={self.id}, project_id={self.project_id}, "
            f"type={self.query_type}, success={self.success})>"
        )


# Project listing by owner, history listing by (project, user) newest first
project_owner_idx = Index("idx_projects_owner_active", Project.owner_id, Project.active)
history_scope_idx = Index(
    "idx_query_history_scope",
    QueryHistory.project_id,
    QueryHistory.user_id,
    QueryHistory.created_at,
)
