# =============================================================================
# AI Assistant — Titles, Error Explanations, Diagrams
# =============================================================================
#
# The gateway treats the AI service as a black box with three pure
# operations. Each one sends the relevant SQL / error text plus the live
# schema snapshot to the configured LLM and post-processes the reply.
#
#   generate_title(sql, schema)         — short natural-language title,
#                                         stored as a history annotation
#   explain_error(error, sql, schema)   — structured explanation of a
#                                         database error (JSON reply)
#   schema_to_diagram(schema)           — PlantUML class diagram
#
# Replies are often wrapped in markdown fences; those are stripped before
# parsing. Unusable replies raise AssistantError (HTTP 502).
# =============================================================================

from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass
from typing import Protocol

from dbgateway.errors import AssistantError
from dbgateway.services.introspection import TableSchema
from dbgateway.services.llm import LLMProvider, LLMResponse

logger = logging.getLogger(__name__)

MAX_TITLE_LENGTH = 120

_FENCE_RE = re.compile(r"^```[a-zA-Z]*\n?|\n?```$")


@dataclass
class ErrorExplanation:
    summary: str
    cause: str
    suggestion: str
    corrected_sql: str | None = None


class Assistant(Protocol):
    async def generate_title(self, sql: str, schema: list[TableSchema]) -> str:
        ...

    async def explain_error(
        self,
        error_text: str,
        sql: str | None = None,
        schema: list[TableSchema] | None = None,
    ) -> ErrorExplanation:
        ...

    async def schema_to_diagram(self, schema: list[TableSchema]) -> str:
        ...


# ---------------------------------------------------------------------------
# System Prompts
# ---------------------------------------------------------------------------

SYSTEM_PROMPTS: dict[str, str] = {
    "title": (
        "You are a database assistant. Describe what the given SQL statement "
        "does as a short title for a query history list.\n\n"
        "Rules:\n"
        "- At most 12 words, no trailing period\n"
        "- Use table and column names from the schema in plain language\n"
        "- Return ONLY the title, no quotes and no extra text"
    ),

    "explain_error": (
        "You are a database assistant. Explain a database error to the "
        "developer who ran the statement.\n\n"
        "Rules:\n"
        "- Return valid JSON with keys: summary, cause, suggestion, "
        "corrected_sql\n"
        "- summary: one sentence in plain language\n"
        "- cause: the most likely reason, referring to the schema when relevant\n"
        "- suggestion: what to change\n"
        "- corrected_sql: a fixed statement, or null if unsure\n"
        "- Return ONLY the JSON object"
    ),

    "diagram": (
        "You are a software architect. Convert the database schema into "
        "PlantUML code.\n\n"
        "Rules:\n"
        "- Represent each table as a PlantUML class with its columns as "
        "attributes\n"
        "- Use PlantUML relationships (-->) for foreign key references\n"
        "- Include a title for the diagram\n"
        "- Output must start with @startuml and end with @enduml\n"
        "- Return ONLY PlantUML code, no markdown and no extra text"
    ),
}


def strip_code_fences(text: str) -> str:
    """Remove a surrounding ```lang ... ``` block, if any."""
    return _FENCE_RE.sub("", text.strip()).strip()


def _schema_json(schema: list[TableSchema] | None) -> str:
    return json.dumps([t.to_dict() for t in schema or []], indent=2)


class LLMAssistant:
    """Assistant backed by an LLMProvider."""

    def __init__(self, llm: LLMProvider) -> None:
        self._llm = llm

    async def _complete(self, prompt_name: str, content: str, **kwargs) -> LLMResponse:
        try:
            response = await self._llm.complete(
                messages=[{"role": "user", "content": content}],
                system=SYSTEM_PROMPTS[prompt_name],
                **kwargs,
            )
        except Exception as e:
            logger.exception("LLM call failed (%s)", prompt_name)
            raise AssistantError(f"AI service request failed: {e}") from e

        logger.info(
            "Assistant %s: model=%s tokens=%d+%d",
            prompt_name, response.model, response.input_tokens, response.output_tokens,
        )
        return response

    async def generate_title(self, sql: str, schema: list[TableSchema]) -> str:
        response = await self._complete(
            "title",
            f"Schema:\n{_schema_json(schema)}\n\nSQL:\n{sql}",
            max_tokens=64,
        )
        title = strip_code_fences(response.content).strip().strip("\"'").rstrip(".")
        if not title:
            raise AssistantError("AI service returned an empty title.")
        return title[:MAX_TITLE_LENGTH]

    async def explain_error(
        self,
        error_text: str,
        sql: str | None = None,
        schema: list[TableSchema] | None = None,
    ) -> ErrorExplanation:
        parts = [f"Error:\n{error_text}"]
        if sql:
            parts.append(f"SQL:\n{sql}")
        if schema:
            parts.append(f"Schema:\n{_schema_json(schema)}")
        response = await self._complete("explain_error", "\n\n".join(parts))

        try:
            data = json.loads(strip_code_fences(response.content))
        except json.JSONDecodeError as e:
            raise AssistantError(f"Failed to parse AI response: {e}") from e
        if not isinstance(data, dict):
            raise AssistantError("Failed to parse AI response: expected a JSON object")

        return ErrorExplanation(
            summary=str(data.get("summary") or error_text),
            cause=str(data.get("cause") or ""),
            suggestion=str(data.get("suggestion") or ""),
            corrected_sql=data.get("corrected_sql") or None,
        )

    async def schema_to_diagram(self, schema: list[TableSchema]) -> str:
        response = await self._complete(
            "diagram",
            f"Schema:\n{_schema_json(schema)}",
            temperature=0.3,
            max_tokens=2000,
        )
        plantuml = strip_code_fences(response.content)
        if not (plantuml.startswith("@startuml") and plantuml.endswith("@enduml")):
            raise AssistantError("Invalid PlantUML code returned from AI service.")
        return plantuml
