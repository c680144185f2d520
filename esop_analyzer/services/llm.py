# =============================================================================
# Multi-Provider LLM Abstraction — Primary + Fallback Backends
# =============================================================================
#
# Provides a common interface for chat completions with implementations for
# Anthropic (Claude) and any OpenAI-compatible API.
#
# DESIGN DECISION: Protocol (structural typing) over ABC. Question
# answering, page-wise metric extraction and validation only need
# `complete()`, and tests substitute AsyncMock objects freely.
#
# DESIGN DECISION: A primary provider and an optional fallback provider.
# Question answering tries the primary, then the fallback, before it falls
# back to a keyword answer built from the retrieved context.
#
# ARCHITECTURE:
#   LLMProvider (Protocol)
#   ├── AnthropicProvider         — system prompt as top-level kwarg
#   ├── OpenAICompatibleProvider  — system prompt as first message
#   ├── get_llm_provider()        — primary singleton, reads from config
#   ├── get_fallback_provider()   — fallback singleton, or None
#   └── create_provider_from_id() — "type/model@base_url" factory
# =============================================================================

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Protocol

from esop_analyzer.config import settings

logger = logging.getLogger(__name__)


@dataclass
class LLMResponse:
    """Standardised response from any LLM provider."""

    content: str
    model: str
    input_tokens: int
    output_tokens: int


class LLMProvider(Protocol):
    """
    Protocol defining the LLM provider interface.

    messages hold "user"/"assistant" roles only; the system prompt is a
    separate argument because Anthropic and OpenAI place it differently.
    """

    async def complete(
        self,
        messages: list[dict[str, str]],
        system: str | None = None,
        temperature: float | None = None,
        max_tokens: int | None = None,
    ) -> LLMResponse:
        ...


# ---------------------------------------------------------------------------
# Implementation 1: Anthropic (Claude)
# ---------------------------------------------------------------------------


class AnthropicProvider:
    """
    Anthropic Claude provider using the native async SDK.

    KEY API DIFFERENCE: Anthropic takes the system prompt as a top-level
    `system=` kwarg, not as a message with role "system".
    """

    def __init__(
        self,
        api_key: str | None = None,
        model: str | None = None,
    ) -> None:
        from anthropic import AsyncAnthropic

        resolved_key = api_key or settings.anthropic_api_key or settings.llm_api_key
        if not resolved_key:
            raise ValueError(
                "No Anthropic API key configured. Set ANTHROPIC_API_KEY or "
                "LLM_API_KEY in .env"
            )

        self._client = AsyncAnthropic(api_key=resolved_key)
        self._model = model or settings.llm_model
        self._temperature = settings.llm_temperature
        self._max_tokens = settings.llm_max_tokens

        logger.info("Initialized AnthropicProvider (model=%s)", self._model)

    async def complete(
        self,
        messages: list[dict[str, str]],
        system: str | None = None,
        temperature: float | None = None,
        max_tokens: int | None = None,
    ) -> LLMResponse:
        """Generate a completion using Claude."""
        kwargs: dict = {
            "model": self._model,
            "messages": messages,
            "max_tokens": max_tokens or self._max_tokens,
            # 0.0 is a valid temperature, so compare against None
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
    Provider for OpenAI and any API that follows the OpenAI chat spec.

    Switching providers is a config change:
        LLM_PROVIDER=openai_compatible
        LLM_BASE_URL=https://api.deepseek.com/v1
        LLM_API_KEY=your-key
        LLM_MODEL=deepseek-chat
    """

    def __init__(
        self,
        api_key: str | None = None,
        model: str | None = None,
        base_url: str | None = None,
    ) -> None:
        from openai import AsyncOpenAI

        resolved_key = api_key or settings.llm_api_key or settings.openai_api_key
        if not resolved_key:
            raise ValueError(
                "No API key configured for OpenAI-compatible provider. "
                "Set LLM_API_KEY or OPENAI_API_KEY in .env"
            )

        client_kwargs: dict = {"api_key": resolved_key}
        resolved_base_url = base_url or settings.llm_base_url
        if resolved_base_url:
            client_kwargs["base_url"] = resolved_base_url

        self._client = AsyncOpenAI(**client_kwargs)
        self._model = model or settings.llm_model
        self._temperature = settings.llm_temperature
        self._max_tokens = settings.llm_max_tokens

        logger.info(
            "Initialized OpenAICompatibleProvider (model=%s, base_url=%s)",
            self._model,
            resolved_base_url or "https://api.openai.com/v1",
        )

    async def complete(
        self,
        messages: list[dict[str, str]],
        system: str | None = None,
        temperature: float | None = None,
        max_tokens: int | None = None,
    ) -> LLMResponse:
        """Generate a completion using an OpenAI-compatible API."""
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


# ---------------------------------------------------------------------------
# Factories
# ---------------------------------------------------------------------------

_provider: AnthropicProvider | OpenAICompatibleProvider | None = None
_fallback_provider: AnthropicProvider | OpenAICompatibleProvider | None = None
_fallback_resolved = False


def get_llm_provider() -> AnthropicProvider | OpenAICompatibleProvider:
    """
    Return the configured primary provider (lazy singleton).

    - "anthropic" → AnthropicProvider
    - "openai_compatible" → OpenAICompatibleProvider

    Raises:
        ValueError: If the provider's API key is not configured.
    """
    global _provider
    if _provider is None:
        if settings.llm_provider == "anthropic":
            _provider = AnthropicProvider()
        else:
            _provider = OpenAICompatibleProvider()
    return _provider


def get_fallback_provider() -> AnthropicProvider | OpenAICompatibleProvider | None:
    """
    Return the fallback provider, or None when none is usable.

    A missing fallback is not an error: question answering degrades to the
    keyword answer instead. Misconfiguration is logged once.
    """
    global _fallback_provider, _fallback_resolved
    if not _fallback_resolved:
        _fallback_resolved = True
        provider_id = settings.llm_fallback_provider_id
        if provider_id:
            try:
                _fallback_provider = create_provider_from_id(provider_id)
            except ValueError as exc:
                logger.warning("Fallback LLM provider unavailable: %s", exc)
    return _fallback_provider


def reset_providers() -> None:
    """
    Drop the cached providers.

    Async SDK clients are bound to the event loop they first ran on; Celery
    tasks call this before each asyncio.run().
    """
    global _provider, _fallback_provider, _fallback_resolved
    _provider = None
    _fallback_provider = None
    _fallback_resolved = False


_KNOWN_PROVIDER_TYPES = {"anthropic", "openai_compatible"}


def _parse_provider_id(
    provider_id: str,
) -> tuple[str, str, str | None]:
    """
    Parse a provider_id string into (provider_type, model, base_url).

        "anthropic/claude-sonnet-4-6"
            → ("anthropic", "claude-sonnet-4-6", None)
        "openai_compatible/gpt-4o@https://api.openai.com/v1"
            → ("openai_compatible", "gpt-4o", "https://api.openai.com/v1")

    Raises:
        ValueError: If the format is unrecognisable or provider type unknown.
    """
    if "/" not in provider_id:
        raise ValueError(
            f"Invalid provider_id '{provider_id}'. "
            "Expected format: 'provider_type/model' or "
            "'provider_type/model@base_url'"
        )

    provider_type, rest = provider_id.split("/", 1)

    base_url: str | None = None
    if "@" in rest:
        model, base_url = rest.split("@", 1)
    else:
        model = rest

    if provider_type not in _KNOWN_PROVIDER_TYPES:
        raise ValueError(
            f"Unknown provider type '{provider_type}'. "
            f"Supported types: {sorted(_KNOWN_PROVIDER_TYPES)}"
        )

    return provider_type, model, base_url


def create_provider_from_id(
    provider_id: str,
    api_key: str | None = None,
) -> AnthropicProvider | OpenAICompatibleProvider:
    """
    Create a fresh, non-singleton provider from a provider id string.

    Raises:
        ValueError: If provider_id is invalid or the API key is missing.
    """
    provider_type, model, base_url = _parse_provider_id(provider_id)

    if provider_type == "anthropic":
        return AnthropicProvider(api_key=api_key, model=model)

    return OpenAICompatibleProvider(
        api_key=api_key, model=model, base_url=base_url,
    )
