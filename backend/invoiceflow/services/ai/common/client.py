"""Reasoning client: route, call, parse and record one reasoning request."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Optional, Sequence

import httpx

from invoiceflow.core.config import Settings
from invoiceflow.errors import ReasoningParseError, ReasoningTransportError

from .audit import log_ai_run
from .json_tools import extract_json_object
from .providers.base import Attachment, ProviderResult
from .router import ModelRouter, ReasoningTier

if TYPE_CHECKING:
    from invoiceflow.services.transition_service import AuditRecorder

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ReasoningCall:
    payload: dict[str, Any]
    provider_result: ProviderResult


class ReasoningClient:
    def __init__(
        self,
        router: ModelRouter,
        settings: Settings,
        *,
        recorder: Optional["AuditRecorder"] = None,
    ) -> None:
        self._router = router
        self._settings = settings
        self._recorder = recorder

    async def invoke(
        self,
        tier: ReasoningTier,
        prompt: str,
        *,
        scope: str,
        entity_id: str,
        system_prompt: Optional[str] = None,
        attachments: Sequence[Attachment] = (),
        preferred_provider: Optional[str] = None,
        temperature: Optional[float] = None,
    ) -> ReasoningCall:
        """Return the parsed JSON object produced for *prompt*.

        ``ProviderNotConfiguredError`` propagates from the router. Transport
        failures raise ``ReasoningTransportError`` and unusable output raises
        ``ReasoningParseError``.
        """
        route = self._router.resolve(tier, preferred=preferred_provider)
        provider_name = route.provider_name

        try:
            result = await route.provider.generate(
                prompt,
                system_prompt=system_prompt,
                attachments=attachments,
                model=route.model,
                temperature=route.temperature if temperature is None else temperature,
                max_tokens=route.max_tokens,
                timeout_seconds=route.timeout_seconds,
            )
        except httpx.HTTPStatusError as exc:
            raise ReasoningTransportError(
                f"{provider_name} returned HTTP {exc.response.status_code}",
                provider=provider_name,
                model=route.model,
            ) from exc
        except httpx.HTTPError as exc:
            raise ReasoningTransportError(
                f"{provider_name} request failed: {exc.__class__.__name__}",
                provider=provider_name,
                model=route.model,
            ) from exc
        except (KeyError, IndexError, TypeError, ValueError) as exc:
            raise ReasoningParseError(
                f"{provider_name} returned a malformed response",
                provider=provider_name,
                model=route.model,
            ) from exc

        payload = extract_json_object(result.raw_text)
        if payload is None:
            raise ReasoningParseError(
                f"{provider_name} response contained no JSON object",
                provider=provider_name,
                model=route.model,
            )

        logger.info(
            "Reasoning call scope=%s entity=%s provider=%s model=%s latency_ms=%s",
            scope,
            entity_id,
            result.provider,
            result.model,
            result.latency_ms,
        )
        if self._recorder is not None:
            try:
                log_ai_run(
                    self._recorder,
                    self._settings,
                    scope=scope,
                    entity_id=entity_id,
                    provider_result=result,
                    prompt_text=prompt,
                    parsed_output=payload,
                    extra_meta={"tier": tier.value},
                )
            except Exception:
                logger.exception("Failed to record AI run scope=%s entity=%s", scope, entity_id)

        return ReasoningCall(payload=payload, provider_result=result)
