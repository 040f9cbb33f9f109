"""Provider capabilities and the chat model factory registry.

Provider behaviour that matters to the stream layer is described by a closed
capability table rather than by chat model subclasses. Factories are registered
explicitly and validated up front so an unknown provider fails at startup.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, Iterable, Optional, Union

from langchain_core.language_models import BaseChatModel
from langchain_openai import AzureChatOpenAI, ChatOpenAI

from .exceptions import UnsupportedProviderError
from .logging_config import get_logger

logger = get_logger(__name__)


class Provider(str, Enum):
    OPENAI = "openAI"
    AZURE = "azureOpenAI"
    ANTHROPIC = "anthropic"
    BEDROCK = "bedrock"
    BEDROCK_LEGACY = "bedrock_legacy"
    VERTEXAI = "vertexai"
    GOOGLE = "google"
    MISTRALAI = "mistralai"
    OLLAMA = "ollama"
    DEEPSEEK = "deepseek"
    OPENROUTER = "openrouter"


class UsagePolicy(str, Enum):
    """How a provider reports token usage across fragments."""
    CUMULATIVE = "cumulative"  # each fragment is a running total; latest wins
    INCREMENTAL = "incremental"  # each fragment is a delta; fragments are summed


@dataclass(frozen=True)
class ProviderCapabilities:
    supports_streaming: bool = True
    supports_tool_calls: bool = True
    # No stable per-call tool-call indices: buffer whole calls before emitting
    manual_tool_assembly: bool = False
    usage_policy: UsagePolicy = UsagePolicy.INCREMENTAL


CAPABILITIES: Dict[Provider, ProviderCapabilities] = {
    Provider.OPENAI: ProviderCapabilities(),
    Provider.AZURE: ProviderCapabilities(),
    Provider.ANTHROPIC: ProviderCapabilities(manual_tool_assembly=True),
    Provider.BEDROCK: ProviderCapabilities(manual_tool_assembly=True),
    Provider.BEDROCK_LEGACY: ProviderCapabilities(supports_tool_calls=False),
    Provider.VERTEXAI: ProviderCapabilities(usage_policy=UsagePolicy.CUMULATIVE),
    Provider.GOOGLE: ProviderCapabilities(usage_policy=UsagePolicy.CUMULATIVE),
    Provider.MISTRALAI: ProviderCapabilities(),
    Provider.OLLAMA: ProviderCapabilities(manual_tool_assembly=True),
    Provider.DEEPSEEK: ProviderCapabilities(),
    Provider.OPENROUTER: ProviderCapabilities(),
}

_DEFAULT_CAPABILITIES = ProviderCapabilities()

ChatModelFactory = Callable[..., BaseChatModel]


def to_provider(provider: Union[Provider, str, None]) -> Optional[Provider]:
    """Coerce a provider name to the enum. Unknown names return None."""
    if provider is None or isinstance(provider, Provider):
        return provider
    try:
        return Provider(provider)
    except ValueError:
        return None


def get_capabilities(provider: Union[Provider, str, None]) -> ProviderCapabilities:
    """Capabilities for a provider; unknown or missing providers get the defaults."""
    resolved = to_provider(provider)
    if resolved is None:
        return _DEFAULT_CAPABILITIES
    return CAPABILITIES.get(resolved, _DEFAULT_CAPABILITIES)


def is_manual_tool_provider(provider: Union[Provider, str, None]) -> bool:
    return get_capabilities(provider).manual_tool_assembly


def is_openai_like(provider: Union[Provider, str, None]) -> bool:
    return to_provider(provider) in (Provider.OPENAI, Provider.AZURE)


def is_google_like(provider: Union[Provider, str, None]) -> bool:
    return to_provider(provider) in (Provider.GOOGLE, Provider.VERTEXAI)


class ProviderRegistry:
    """Explicit provider -> chat model factory registry."""

    def __init__(self) -> None:
        self._factories: Dict[Provider, ChatModelFactory] = {}

    def register(self, provider: Union[Provider, str], factory: ChatModelFactory) -> None:
        resolved = to_provider(provider)
        if resolved is None:
            raise UnsupportedProviderError(str(provider))
        self._factories[resolved] = factory

    def is_registered(self, provider: Union[Provider, str]) -> bool:
        resolved = to_provider(provider)
        return resolved is not None and resolved in self._factories

    def validate(self, providers: Iterable[Union[Provider, str]]) -> None:
        """Fail fast if any provider has no factory."""
        for provider in providers:
            if not self.is_registered(provider):
                raise UnsupportedProviderError(getattr(provider, "value", str(provider)))

    def capabilities(self, provider: Union[Provider, str]) -> ProviderCapabilities:
        self.validate([provider])
        return get_capabilities(provider)

    def create(self, provider: Union[Provider, str], **options: Any) -> BaseChatModel:
        self.validate([provider])
        resolved = to_provider(provider)
        logger.debug("Creating chat model for provider %s", resolved.value)
        return self._factories[resolved](**options)


def _openai_factory(**options: Any) -> BaseChatModel:
    return ChatOpenAI(**options)


def _azure_factory(**options: Any) -> BaseChatModel:
    return AzureChatOpenAI(**options)


def _openai_compatible_factory(default_base_url: str) -> ChatModelFactory:
    def factory(**options: Any) -> BaseChatModel:
        options.setdefault("base_url", default_base_url)
        return _openai_factory(**options)

    return factory


def create_default_registry() -> ProviderRegistry:
    """Registry with the OpenAI-compatible providers backed by langchain-openai."""
    registry = ProviderRegistry()
    registry.register(Provider.OPENAI, _openai_factory)
    registry.register(Provider.AZURE, _azure_factory)
    registry.register(Provider.DEEPSEEK, _openai_compatible_factory("https://api.deepseek.com/v1"))
    registry.register(Provider.OPENROUTER, _openai_compatible_factory("https://openrouter.ai/api/v1"))
    return registry


default_registry = create_default_registry()
