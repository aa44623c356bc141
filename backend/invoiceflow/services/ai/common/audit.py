"""AI audit: writes scope-dependent entries for every reasoning call."""

from __future__ import annotations

import hashlib
import logging
from typing import TYPE_CHECKING, Any

from invoiceflow.core.config import Settings

from .providers.base import ProviderResult

if TYPE_CHECKING:
    from invoiceflow.services.transition_service import AuditRecorder

logger = logging.getLogger(__name__)

# Scope-dependent audit actions. Falls back to "AI_RUN" for unknown scopes.
SCOPE_ACTIONS: dict[str, str] = {
    "deep_audit": "AI_DEEP_AUDIT",
    "spending": "AI_SPENDING_ANALYSIS",
    "escalation": "AI_ESCALATION_REVIEW",
    "rejection": "AI_REJECTION_DRAFTS",
    "supplier_check": "AI_SUPPLIER_CHECK",
}


def log_ai_run(
    recorder: "AuditRecorder",
    settings: Settings,
    *,
    scope: str,
    entity_id: str,
    provider_result: ProviderResult,
    prompt_text: str,
    parsed_output: dict[str, Any] | None,
    extra_meta: dict[str, Any] | None = None,
) -> None:
    """Write one audit entry for a reasoning call.

    The prompt and response are always hashed; raw text is only stored when
    ``AI_DEBUG_STORE_RAW=true``.
    """
    metadata: dict[str, Any] = {
        "scope": scope,
        "provider": provider_result.provider,
        "model": provider_result.model,
        "prompt_tokens": provider_result.prompt_tokens,
        "completion_tokens": provider_result.completion_tokens,
        "latency_ms": provider_result.latency_ms,
        "prompt_hash": hashlib.sha256(prompt_text.encode()).hexdigest(),
        "response_hash": hashlib.sha256(provider_result.raw_text.encode()).hexdigest(),
    }

    if settings.ai_debug_store_raw:
        metadata["prompt_raw"] = prompt_text
        metadata["response_raw"] = provider_result.raw_text

    if extra_meta:
        metadata.update(extra_meta)

    recorder.record(
        entity_type="invoice",
        entity_id=entity_id,
        action=SCOPE_ACTIONS.get(scope, "AI_RUN"),
        new_value=parsed_output,
        actor_type="SYSTEM",
        metadata=metadata,
    )
