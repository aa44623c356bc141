"""Abstract base for all reasoning providers."""

from __future__ import annotations

import abc
from dataclasses import dataclass
from typing import ClassVar, Sequence

TIERS = ("FAST", "STANDARD", "COMPLEX", "RESEARCH")


@dataclass(frozen=True)
class ProviderResult:
    """Immutable result returned by every provider."""

    raw_text: str
    model: str
    provider: str
    prompt_tokens: int = 0
    completion_tokens: int = 0
    latency_ms: float = 0.0


@dataclass(frozen=True)
class Attachment:
    """A policy file passed through verbatim (base64 payload)."""

    name: str
    mime_type: str
    data: str


class BaseProvider(abc.ABC):
    """Contract that every reasoning provider must implement."""

    name: ClassVar[str] = "base"
    tier_models: ClassVar[dict[str, str]] = {}
    supports_live_search: ClassVar[bool] = False
    supports_attachments: ClassVar[bool] = False

    def model_for(self, tier: str, overrides: dict[str, str] | None = None) -> str:
        if overrides and overrides.get(tier):
            return overrides[tier]
        return self.tier_models.get(tier) or self.tier_models.get("STANDARD", "")

    @abc.abstractmethod
    async def generate(
        self,
        prompt: str,
        *,
        system_prompt: str | None = None,
        attachments: Sequence[Attachment] = (),
        model: str = "",
        temperature: float = 0.3,
        max_tokens: int = 1024,
        timeout_seconds: float = 8.0,
    ) -> ProviderResult:
        """Send *prompt* and return a ``ProviderResult``."""
