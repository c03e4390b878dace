# =============================================================================
# LLM Providers — Backend for the AI Assistant
# =============================================================================
#
# A single `complete()` interface over Anthropic (Claude) and any
# OpenAI-compatible API (OpenAI, DeepSeek, Qwen, ...).
#
# DESIGN DECISION: Protocol (structural typing) over ABC, same as the
# Provisioner and BucketStore seams. Tests pass any object with a matching
# `complete()` coroutine.
#
# DESIGN DECISION: Native SDKs, async clients. Providers are called from
# FastAPI handlers; the SDK clients pool their own HTTP connections.
#
# The provider is built once in the FastAPI lifespan (build_llm_provider)
# and owned by the Assistant on app.state. It is never a module global.
#
# ARCHITECTURE:
#   LLMProvider (Protocol)
#   ├── AnthropicProvider        — system prompt as top-level kwarg
#   └── OpenAICompatibleProvider — system prompt as first message
# =============================================================================

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Protocol

from dbgateway.config import Settings

logger = logging.getLogger(__name__)


@dataclass
class LLMResponse:
    """Provider-neutral completion result."""

    content: str
    model: str
    input_tokens: int
    output_tokens: int


class LLMProvider(Protocol):
    async def complete(
        self,
        messages: list[dict[str, str]],
        system: str | None = None,
        temperature: float | None = None,
        max_tokens: int | None = None,
    ) -> LLMResponse:
        """
        Generate a completion.

        Args:
            messages: dicts with "role" ("user" / "assistant") and "content".
            system: system prompt, placed where the provider expects it.
            temperature: overrides the configured temperature.
            max_tokens: overrides the configured output budget.
        """
        ...


# ---------------------------------------------------------------------------
# Implementation 1: Anthropic (Claude)
# ---------------------------------------------------------------------------


class AnthropicProvider:
    """
    Claude via AsyncAnthropic.

    Anthropic takes the system prompt as a top-level `system=` kwarg,
    not as a message with role "system".
    """

    def __init__(
        self,
        api_key: str,
        model: str,
        *,
        temperature: float = 0.1,
        max_tokens: int = 2048,
    ) -> None:
        from anthropic import AsyncAnthropic

        if not api_key:
            raise ValueError(
                "No Anthropic API key configured. Set LLM_API_KEY or "
                "ANTHROPIC_API_KEY in .env"
            )

        self._client = AsyncAnthropic(api_key=api_key)
        self._model = model
        self._temperature = temperature
        self._max_tokens = max_tokens

        logger.info("Initialized AnthropicProvider (model=%s)", self._model)

    async def complete(
        self,
        messages: list[dict[str, str]],
        system: str | None = None,
        temperature: float | None = None,
        max_tokens: int | None = None,
    ) -> LLMResponse:
        kwargs: dict = {
            "model": self._model,
            "messages": messages,
            "max_tokens": max_tokens or self._max_tokens,
            "temperature": self._temperature if temperature is None else temperature,
        }
        if system:
            kwargs["system"] = system

        response = await self._client.messages.create(**kwargs)

        content = ""
        for block in response.content:
            if block.type == "text":
                content = block.text
                break

        return LLMResponse(
            content=content,
            model=response.model,
            input_tokens=response.usage.input_tokens,
            output_tokens=response.usage.output_tokens,
        )


# ---------------------------------------------------------------------------
# Implementation 2: OpenAI-Compatible
# ---------------------------------------------------------------------------


class OpenAICompatibleProvider:
    """
    Any API following the OpenAI chat completions contract.

    Switching vendors is a config change:
        LLM_PROVIDER=openai_compatible
        LLM_BASE_URL=https://api.deepseek.com/v1
        LLM_API_KEY=your-key
        LLM_MODEL=deepseek-chat
    """

    def __init__(
        self,
        api_key: str,
        model: str,
        *,
        base_url: str | None = None,
        temperature: float = 0.1,
        max_tokens: int = 2048,
    ) -> None:
        from openai import AsyncOpenAI

        if not api_key:
            raise ValueError(
                "No API key configured for OpenAI-compatible provider. "
                "Set LLM_API_KEY in .env"
            )

        client_kwargs: dict = {"api_key": api_key}
        if base_url:
            client_kwargs["base_url"] = base_url

        self._client = AsyncOpenAI(**client_kwargs)
        self._model = model
        self._temperature = temperature
        self._max_tokens = max_tokens

        logger.info(
            "Initialized OpenAICompatibleProvider (model=%s, base_url=%s)",
            self._model,
            base_url or "https://api.openai.com/v1",
        )

    async def complete(
        self,
        messages: list[dict[str, str]],
        system: str | None = None,
        temperature: float | None = None,
        max_tokens: int | None = None,
    ) -> LLMResponse:
        all_messages: list[dict[str, str]] = []
        if system:
            all_messages.append({"role": "system", "content": system})
        all_messages.extend(messages)

        response = await self._client.chat.completions.create(
            model=self._model,
            messages=all_messages,
            max_tokens=max_tokens or self._max_tokens,
            temperature=self._temperature if temperature is None else temperature,
        )

        content = response.choices[0].message.content or ""
        usage = response.usage
        return LLMResponse(
            content=content,
            model=response.model or self._model,
            input_tokens=usage.prompt_tokens if usage else 0,
            output_tokens=usage.completion_tokens if usage else 0,
        )


def build_llm_provider(settings: Settings) -> LLMProvider:
    """
    Provider selected by `llm_provider`:
    - "anthropic"          → AnthropicProvider
    - "openai_compatible"  → OpenAICompatibleProvider

    Raises:
        ValueError: no API key for the selected provider.
    """
    if settings.llm_provider == "openai_compatible":
        return OpenAICompatibleProvider(
            settings.llm_api_key or settings.openai_api_key,
            settings.llm_model,
            base_url=settings.llm_base_url,
            temperature=settings.llm_temperature,
            max_tokens=settings.llm_max_tokens,
        )
    return AnthropicProvider(
        settings.llm_api_key or settings.anthropic_api_key,
        settings.llm_model,
        temperature=settings.llm_temperature,
        max_tokens=settings.llm_max_tokens,
    )
