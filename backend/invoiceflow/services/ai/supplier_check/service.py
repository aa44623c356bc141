"""Supplier background check on the RESEARCH tier.

Advisory only: the result is attached to the invoice for the reviewer and
never feeds the status. A failed lookup yields an unavailable result instead
of an error; a missing provider configuration still propagates.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Optional

from invoiceflow.errors import ReasoningServiceError
from invoiceflow.schemas.invoice import Invoice, SupplierVerification
from invoiceflow.services.ai.common.client import ReasoningClient
from invoiceflow.services.ai.common.providers import PROVIDER_REGISTRY
from invoiceflow.services.ai.common.router import ReasoningTier

from .contracts import parse_verification, unavailable

if TYPE_CHECKING:
    from invoiceflow.services.transition_service import AuditRecorder

logger = logging.getLogger(__name__)

SUPPLIER_SYSTEM_PROMPT = (
    "You are a procurement officer checking suppliers for an aged care and disability provider. "
    "Use current web sources where you can. "
    "Respond with a single JSON object only, plain text values, no Markdown."
)


def _build_prompt(invoice: Invoice) -> str:
    abn = f" (ABN {invoice.supplier_abn})" if invoice.supplier_abn else ""
    return "\n".join(
        [
            f'Perform a background check on "{invoice.supplier_name}"{abn}.',
            "1. Is this a legitimate, currently active business?",
            "2. What are their primary services?",
            "3. Are they relevant to Support at Home (aged care or disability services)?",
            "",
            "Keep the summary to two or three sentences.",
            "",
            'Output JSON: {"summary": "...", "legitimate": true|false, "primaryServices": ["..."], '
            '"careRelevant": true|false, "sources": ["https://..."]}',
        ]
    )


class SupplierCheckService:
    def __init__(self, client: ReasoningClient, *, recorder: Optional["AuditRecorder"] = None) -> None:
        self._client = client
        self._recorder = recorder

    async def verify(self, invoice: Invoice) -> SupplierVerification:
        supplier_name = (invoice.supplier_name or "").strip()
        if not supplier_name:
            return unavailable("", "No supplier name on the invoice to check.")

        try:
            call = await self._client.invoke(
                ReasoningTier.RESEARCH,
                _build_prompt(invoice),
                scope="supplier_check",
                entity_id=invoice.id,
                system_prompt=SUPPLIER_SYSTEM_PROMPT,
            )
        except ReasoningServiceError as exc:
            logger.warning("Supplier check failed for invoice %s: %s", invoice.id, exc)
            if self._recorder is not None:
                self._recorder.record(
                    entity_type="invoice",
                    entity_id=invoice.id,
                    action="SUPPLIER_CHECK_FAILED",
                    metadata={"provider": exc.provider, "error": str(exc)},
                )
            return unavailable(supplier_name)

        provider = PROVIDER_REGISTRY.get(call.provider_result.provider)
        live_search = bool(provider and provider.supports_live_search)
        if not live_search:
            logger.info("Supplier check for invoice %s ran without a live-search provider", invoice.id)
        return parse_verification(call.payload, supplier_name, live_search=live_search)
