# =============================================================================
# Unit Tests — LLM Providers
# =============================================================================
#
# SDK clients are constructed for real (no network happens at construction)
# and then swapped for mocks before complete() is called.
# =============================================================================

import asyncio
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from esop_analyzer.config import settings
from esop_analyzer.services import llm
from esop_analyzer.services.llm import (
    AnthropicProvider,
    OpenAICompatibleProvider,
    _parse_provider_id,
    create_provider_from_id,
    get_fallback_provider,
    reset_providers,
)


def _run(coro):
    """Helper to run async functions in sync tests."""
    return asyncio.get_event_loop().run_until_complete(coro)


@pytest.fixture(autouse=True)
def fresh_providers():
    reset_providers()
    yield
    reset_providers()


class TestParseProviderId:
    def test_anthropic(self):
        assert _parse_provider_id("anthropic/claude-sonnet-4-6") == (
            "anthropic", "claude-sonnet-4-6", None,
        )

    def test_base_url(self):
        assert _parse_provider_id("openai_compatible/deepseek-chat@https://api.deepseek.com/v1") == (
            "openai_compatible", "deepseek-chat", "https://api.deepseek.com/v1",
        )

    def test_missing_slash(self):
        with pytest.raises(ValueError, match="Invalid provider_id"):
            _parse_provider_id("gpt-4o")

    def test_unknown_type(self):
        with pytest.raises(ValueError, match="Unknown provider type"):
            _parse_provider_id("cohere/command-r")


class TestProviderConstruction:
    def test_anthropic_without_key(self):
        with patch.object(settings, "anthropic_api_key", ""), \
                patch.object(settings, "llm_api_key", None):
            with pytest.raises(ValueError, match="No Anthropic API key"):
                AnthropicProvider()

    def test_openai_without_key(self):
        with patch.object(settings, "llm_api_key", None), \
                patch.object(settings, "openai_api_key", ""):
            with pytest.raises(ValueError, match="No API key configured"):
                OpenAICompatibleProvider()

    def test_create_from_id(self):
        provider = create_provider_from_id("openai_compatible/gpt-4o-mini", api_key="sk-test")
        assert isinstance(provider, OpenAICompatibleProvider)
        assert provider._model == "gpt-4o-mini"


class TestComplete:
    def test_anthropic_system_kwarg_and_zero_temperature(self):
        provider = AnthropicProvider(api_key="sk-ant-test", model="claude-test")
        provider._client = MagicMock()
        provider._client.messages.create = AsyncMock(return_value=SimpleNamespace(
            content=[SimpleNamespace(type="text", text="The discount rate is 12.5%.")],
            model="claude-test",
            usage=SimpleNamespace(input_tokens=120, output_tokens=12),
        ))

        response = _run(provider.complete(
            [{"role": "user", "content": "Discount rate?"}],
            system="You are an analyst.",
            temperature=0.0,
        ))

        kwargs = provider._client.messages.create.call_args.kwargs
        assert kwargs["system"] == "You are an analyst."
        assert kwargs["temperature"] == 0.0
        assert response.content == "The discount rate is 12.5%."
        assert response.input_tokens == 120

    def test_openai_system_message_and_default_temperature(self):
        provider = OpenAICompatibleProvider(api_key="sk-test", model="gpt-test")
        provider._client = MagicMock()
        provider._client.chat.completions.create = AsyncMock(return_value=SimpleNamespace(
            choices=[SimpleNamespace(message=SimpleNamespace(content="$25.50"))],
            model="gpt-test",
            usage=None,
        ))

        response = _run(provider.complete(
            [{"role": "user", "content": "Per share value?"}],
            system="Answer briefly.",
        ))

        kwargs = provider._client.chat.completions.create.call_args.kwargs
        assert kwargs["messages"][0] == {"role": "system", "content": "Answer briefly."}
        assert kwargs["temperature"] == settings.llm_temperature
        assert response.content == "$25.50"
        assert response.output_tokens == 0


class TestFallbackProvider:
    def test_not_configured(self):
        with patch.object(settings, "llm_fallback_provider_id", None):
            assert get_fallback_provider() is None

    def test_misconfigured_is_none(self):
        with patch.object(settings, "llm_fallback_provider_id", "bogus"):
            assert get_fallback_provider() is None

    def test_resolved_once(self):
        with patch.object(settings, "llm_fallback_provider_id", "anthropic/claude-test"), \
                patch.object(llm, "create_provider_from_id", return_value="provider") as factory:
            assert get_fallback_provider() == "provider"
            assert get_fallback_provider() == "provider"
        factory.assert_called_once_with("anthropic/claude-test")

    def test_reset_clears_cache(self):
        with patch.object(llm, "create_provider_from_id", return_value="first"):
            with patch.object(settings, "llm_fallback_provider_id", "anthropic/x"):
                get_fallback_provider()
        reset_providers()
        with patch.object(settings, "llm_fallback_provider_id", None):
            assert get_fallback_provider() is None
