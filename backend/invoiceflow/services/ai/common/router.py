"""Model router: maps a reasoning tier to a configured provider + model.

Selection is a pure function over the configured provider names; the router
fails closed with ``ProviderNotConfiguredError`` instead of degrading to a
provider that has no credentials.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Iterable, Optional, Sequence

from invoiceflow.core.config import Settings
from invoiceflow.errors import ProviderNotConfiguredError

from .providers import PROVIDER_REGISTRY, BaseProvider, get_provider

logger = logging.getLogger(__name__)


class ReasoningTier(str, Enum):
    FAST = "FAST"
    STANDARD = "STANDARD"
    COMPLEX = "COMPLEX"
    RESEARCH = "RESEARCH"


@dataclass(frozen=True)
class ResolvedRoute:
    """Final provider + model chosen for one call."""

    provider: BaseProvider
    model: str
    temperature: float
    max_tokens: int
    timeout_seconds: float

    @property
    def provider_name(self) -> str:
        return self.provider.name


def select_route(
    tier: ReasoningTier,
    available: Sequence[str],
    *,
    preferred: Optional[str] = None,
    complex_order: Iterable[str] = (),
    live_search: Iterable[str] = (),
) -> str:
    """Return the provider name to use for *tier*.

    Order: an explicitly requested provider that is configured, then a
    live-search provider for RESEARCH, then the operator ordering for
    COMPLEX, then the first configured provider.
    """
    if not available:
        raise ProviderNotConfiguredError(tier.value)

    if preferred and preferred in available:
        return preferred

    if tier == ReasoningTier.RESEARCH:
        searchable = set(live_search)
        for name in available:
            if name in searchable:
                return name

    if tier == ReasoningTier.COMPLEX:
        for name in complex_order:
            if name in available:
                return name

    return available[0]


class ModelRouter:
    def __init__(
        self,
        settings: Settings,
        provider_factory: Callable[[str, str], BaseProvider] = get_provider,
    ) -> None:
        self._settings = settings
        self._provider_factory = provider_factory
        self._providers: dict[str, BaseProvider] = {}

    def configured_providers(self) -> list[str]:
        keys = self._settings.provider_api_keys
        configured: list[str] = []
        for name in self._settings.ai_providers:
            if name not in PROVIDER_REGISTRY:
                logger.warning("Ignoring unknown provider %r in AI_PROVIDERS", name)
                continue
            if name == "mock" or keys.get(name):
                configured.append(name)
        return configured

    def _provider(self, name: str) -> BaseProvider:
        provider = self._providers.get(name)
        if provider is None:
            provider = self._provider_factory(name, self._settings.provider_api_keys.get(name, ""))
            self._providers[name] = provider
        return provider

    def resolve(self, tier: ReasoningTier, *, preferred: Optional[str] = None) -> ResolvedRoute:
        available = self.configured_providers()
        if preferred and preferred not in available:
            logger.warning("Requested provider %r is not configured for tier %s", preferred, tier.value)

        live_search = [name for name in available if PROVIDER_REGISTRY[name].supports_live_search]
        name = select_route(
            tier,
            available,
            preferred=preferred,
            complex_order=self._settings.ai_complex_provider_order,
            live_search=live_search,
        )

        provider = self._provider(name)
        model = provider.model_for(tier.value, self._settings.ai_tier_models.get(name))
        logger.debug("Routed tier %s to provider=%s model=%s", tier.value, name, model)
        return ResolvedRoute(
            provider=provider,
            model=model,
            temperature=self._settings.ai_temperature,
            max_tokens=self._settings.ai_max_tokens,
            timeout_seconds=self._settings.ai_timeout_seconds,
        )
