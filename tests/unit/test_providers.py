"""Unit tests for provider capabilities, the factory registry and get_chat_model."""

import pytest
from langchain_openai import ChatOpenAI

from stepstream.exceptions import UnsupportedProviderError
from stepstream.llm import get_chat_model
from stepstream.providers import (
    Provider,
    ProviderRegistry,
    UsagePolicy,
    create_default_registry,
    get_capabilities,
    is_google_like,
    is_manual_tool_provider,
    is_openai_like,
)
from stepstream.testing.mock_llm import create_mock_llm


@pytest.mark.parametrize(
    "provider,manual",
    [
        (Provider.ANTHROPIC, True),
        (Provider.BEDROCK, True),
        (Provider.OLLAMA, True),
        (Provider.OPENAI, False),
        ("mistralai", False),
        ("no-such-provider", False),
        (None, False),
    ],
)
def test_manual_tool_assembly(provider, manual):
    assert is_manual_tool_provider(provider) is manual


def test_usage_policy_per_provider():
    assert get_capabilities("google").usage_policy == UsagePolicy.CUMULATIVE
    assert get_capabilities(Provider.VERTEXAI).usage_policy == UsagePolicy.CUMULATIVE
    assert get_capabilities("openAI").usage_policy == UsagePolicy.INCREMENTAL


def test_provider_families():
    assert is_openai_like("azureOpenAI")
    assert not is_openai_like("deepseek")
    assert is_google_like(Provider.GOOGLE)


class TestRegistry:

    def test_default_registry_rejects_unregistered_provider(self):
        registry = create_default_registry()
        with pytest.raises(UnsupportedProviderError, match="Unsupported LLM provider: anthropic"):
            registry.validate(["openAI", "anthropic"])

    def test_unknown_name_cannot_be_registered(self):
        with pytest.raises(UnsupportedProviderError):
            ProviderRegistry().register("made-up", lambda **kw: None)

    def test_custom_factory_receives_options(self):
        seen = {}

        def factory(**options):
            seen.update(options)
            return create_mock_llm(["hi"])

        registry = ProviderRegistry()
        registry.register(Provider.OLLAMA, factory)
        registry.create("ollama", model="llama3")
        assert seen == {"model": "llama3"}
        assert registry.capabilities("ollama").manual_tool_assembly

    def test_openai_factory(self):
        llm = create_default_registry().create("openAI", model="gpt-4o-mini", api_key="test")
        assert isinstance(llm, ChatOpenAI)

    def test_openai_compatible_base_url(self):
        llm = create_default_registry().create("deepseek", model="deepseek-chat", api_key="test")
        assert llm.openai_api_base == "https://api.deepseek.com/v1"


class TestGetChatModel:

    def test_streaming_model_from_config(self):
        llm = get_chat_model("openAI", api_key="test", model="gpt-4o")
        assert isinstance(llm, ChatOpenAI)
        assert llm.streaming is True
        assert llm.model_name == "gpt-4o"

    def test_unsupported_provider_fails_before_construction(self):
        registry = ProviderRegistry()
        with pytest.raises(UnsupportedProviderError):
            get_chat_model("google", registry=registry)
