"""Provider registry: maps provider names to their strategy classes."""

from __future__ import annotations

import logging

from invoiceflow.errors import ConfigurationError

from .base import Attachment, BaseProvider, ProviderResult
from .claude import ClaudeProvider
from .mock import MockProvider
from .openai import OpenAIProvider, PerplexityProvider, XAIProvider

logger = logging.getLogger(__name__)

__all__ = [
    "PROVIDER_REGISTRY",
    "get_provider",
    "Attachment",
    "BaseProvider",
    "ProviderResult",
    "MockProvider",
]

PROVIDER_REGISTRY: dict[str, type[BaseProvider]] = {
    "openai": OpenAIProvider,
    "claude": ClaudeProvider,
    "xai": XAIProvider,
    "perplexity": PerplexityProvider,
    "mock": MockProvider,
}


def get_provider(provider_name: str, api_key: str = "") -> BaseProvider:
    """Return a provider instance for *provider_name*.

    Unknown names raise ``ConfigurationError``; there is no fallback provider.
    """
    name = provider_name.lower().strip()
    provider_cls = PROVIDER_REGISTRY.get(name)
    if provider_cls is None:
        raise ConfigurationError(f"Unknown reasoning provider {name!r}")
    if name != "mock" and not api_key:
        raise ConfigurationError(f"Reasoning provider {name!r} has no API key")
    return provider_cls(api_key=api_key)
