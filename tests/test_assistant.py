# =============================================================================
# Unit Tests — AI Assistant
# =============================================================================
#
# The LLM is replaced by a fake provider that returns canned replies, so
# these tests need no API key and make no network calls.
#
# Test groups:
#   1. Title generation
#   2. Error explanation (JSON parsing)
#   3. Schema diagram (PlantUML validation)
#   4. Provider failures & factory
# =============================================================================

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field

import pytest

from dbgateway.config import Settings
from dbgateway.errors import AssistantError
from dbgateway.services.assistant import (
    MAX_TITLE_LENGTH,
    SYSTEM_PROMPTS,
    LLMAssistant,
    strip_code_fences,
)
from dbgateway.services.introspection import ColumnSchema, TableSchema
from dbgateway.services.llm import LLMResponse, build_llm_provider


def _run(coro):
    """Helper to run async functions in sync tests."""
    return asyncio.run(coro)


@dataclass
class FakeLLM:
    """Returns `reply` (or raises `error`) and remembers every call."""

    reply: str = ""
    error: Exception | None = None
    calls: list[dict] = field(default_factory=list)

    async def complete(self, messages, system=None, temperature=None, max_tokens=None):
        self.calls.append({
            "messages": messages,
            "system": system,
            "temperature": temperature,
            "max_tokens": max_tokens,
        })
        if self.error is not None:
            raise self.error
        return LLMResponse(content=self.reply, model="fake-model", input_tokens=10, output_tokens=5)


SCHEMA = [
    TableSchema(
        name="orders",
        columns=[
            ColumnSchema(name="id", type="integer", nullable=False, constraint="PRIMARY KEY"),
            ColumnSchema(name="total", type="numeric", nullable=True),
        ],
    ),
]


# ---------------------------------------------------------------------------
# 1. Titles
# ---------------------------------------------------------------------------


class TestGenerateTitle:
    def test_strips_quotes_and_period(self):
        llm = FakeLLM(reply='"Total of all orders."')
        title = _run(LLMAssistant(llm).generate_title("SELECT sum(total) FROM orders", SCHEMA))
        assert title == "Total of all orders"

    def test_prompt_carries_sql_and_schema(self):
        llm = FakeLLM(reply="Orders")
        _run(LLMAssistant(llm).generate_title("SELECT * FROM orders", SCHEMA))

        call = llm.calls[0]
        assert call["system"] == SYSTEM_PROMPTS["title"]
        assert "SELECT * FROM orders" in call["messages"][0]["content"]
        assert '"orders"' in call["messages"][0]["content"]

    def test_long_title_is_capped(self):
        llm = FakeLLM(reply="word " * 100)
        title = _run(LLMAssistant(llm).generate_title("SELECT 1", SCHEMA))
        assert len(title) <= MAX_TITLE_LENGTH

    def test_empty_reply(self):
        with pytest.raises(AssistantError):
            _run(LLMAssistant(FakeLLM(reply="  ")).generate_title("SELECT 1", SCHEMA))


# ---------------------------------------------------------------------------
# 2. Error explanation
# ---------------------------------------------------------------------------


class TestExplainError:
    def test_parses_fenced_json(self):
        reply = (
            "```json\n"
            '{"summary": "Column does not exist", "cause": "typo in totl", '
            '"suggestion": "Use total", "corrected_sql": "SELECT total FROM orders"}\n'
            "```"
        )
        explanation = _run(LLMAssistant(FakeLLM(reply=reply)).explain_error(
            'column "totl" does not exist', "SELECT totl FROM orders", SCHEMA,
        ))
        assert explanation.summary == "Column does not exist"
        assert explanation.corrected_sql == "SELECT total FROM orders"

    def test_missing_fields_fall_back(self):
        explanation = _run(LLMAssistant(FakeLLM(reply='{"cause": "x"}')).explain_error("boom"))
        assert explanation.summary == "boom"
        assert explanation.suggestion == ""
        assert explanation.corrected_sql is None

    def test_schema_is_optional(self):
        llm = FakeLLM(reply='{"summary": "s", "cause": "c", "suggestion": "g"}')
        _run(LLMAssistant(llm).explain_error("syntax error", None, None))
        assert "Schema:" not in llm.calls[0]["messages"][0]["content"]

    @pytest.mark.parametrize("reply", ["not json at all", "[1, 2, 3]"])
    def test_unusable_reply(self, reply):
        with pytest.raises(AssistantError, match="Failed to parse AI response"):
            _run(LLMAssistant(FakeLLM(reply=reply)).explain_error("boom"))


# ---------------------------------------------------------------------------
# 3. Diagram
# ---------------------------------------------------------------------------


class TestSchemaDiagram:
    def test_valid_plantuml(self):
        reply = "```plantuml\n@startuml\ntitle Shop\nclass orders\n@enduml\n```"
        plantuml = _run(LLMAssistant(FakeLLM(reply=reply)).schema_to_diagram(SCHEMA))
        assert plantuml.startswith("@startuml")
        assert plantuml.endswith("@enduml")

    def test_invalid_plantuml(self):
        with pytest.raises(AssistantError, match="Invalid PlantUML"):
            _run(LLMAssistant(FakeLLM(reply="class orders")).schema_to_diagram(SCHEMA))


# ---------------------------------------------------------------------------
# 4. Failures & factory
# ---------------------------------------------------------------------------


class TestProviderFailures:
    def test_provider_error_becomes_assistant_error(self):
        llm = FakeLLM(error=TimeoutError("upstream timeout"))
        with pytest.raises(AssistantError) as exc_info:
            _run(LLMAssistant(llm).generate_title("SELECT 1", SCHEMA))
        assert exc_info.value.status_code == 502

    def test_strip_code_fences_leaves_plain_text(self):
        assert strip_code_fences("  SELECT 1  ") == "SELECT 1"

    @pytest.mark.parametrize("provider", ["anthropic", "openai_compatible"])
    def test_factory_requires_api_key(self, provider):
        settings = Settings(
            llm_provider=provider,
            llm_api_key=None,
            anthropic_api_key="",
            openai_api_key="",
        )
        with pytest.raises(ValueError, match="API key"):
            build_llm_provider(settings)
