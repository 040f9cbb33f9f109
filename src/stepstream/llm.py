"""Chat model construction from configuration through the provider registry."""

from typing import Any, Optional, Union

from langchain_core.globals import set_debug, set_verbose
from langchain_core.language_models import BaseChatModel

from .config import config
from .logging_config import get_logger
from .providers import Provider, ProviderRegistry, default_registry

logger = get_logger(__name__)


def get_chat_model(
    provider: Union[Provider, str, None] = None,
    registry: Optional[ProviderRegistry] = None,
    verbose: bool = config["verbose"],
    debug: bool = config["debug"],
    **overrides: Any,
) -> BaseChatModel:
    """Get a streaming chat model for the configured (or given) provider.

    Args:
        provider: Provider name; defaults to config["llm"]["provider"]
        registry: Factory registry; defaults to the module-level default registry
        verbose: Enable LangChain verbose output
        debug: Enable LangChain debug output
        **overrides: Options passed to the factory over the configured ones

    Returns:
        Configured chat model with streaming enabled

    Raises:
        UnsupportedProviderError: if the provider has no registered factory
    """
    registry = registry or default_registry
    provider = provider or config["llm"]["provider"]
    registry.validate([provider])

    llm_kwargs = {
        "model": config["llm"]["model"],
        "temperature": config["llm"]["temperature"],
        "max_tokens": config["llm"]["max_tokens"],
        "streaming": True,
        "verbose": verbose,
    }
    if config["llm"].get("base_url"):
        llm_kwargs["base_url"] = config["llm"]["base_url"]
    llm_kwargs.update(overrides)

    llm = registry.create(provider, **llm_kwargs)

    if verbose:
        set_verbose(True)
    if debug:
        set_debug(True)
        logger.info("LangChain debug logging enabled")

    return llm
