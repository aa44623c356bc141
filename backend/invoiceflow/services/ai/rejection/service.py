"""Rejection drafting: a vendor message and a client message per invoice.

Drafts are generated once and cached on the invoice; later calls return the
cached pair without contacting a provider.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Optional

from invoiceflow.errors import DraftingServiceError, ReasoningServiceError
from invoiceflow.schemas.invoice import ClientProfile, Invoice, RejectionDrafts
from invoiceflow.services.ai.common.client import ReasoningClient
from invoiceflow.services.ai.common.router import ReasoningTier
from invoiceflow.services.stores import InvoiceStore

from .contracts import build_rejection_reasons, parse_drafts

if TYPE_CHECKING:
    from invoiceflow.services.transition_service import AuditRecorder

logger = logging.getLogger(__name__)

DRAFTING_SYSTEM_PROMPT = (
    "You are an experienced caseworker and accounts payable officer for an aged care provider. "
    "Respond with a single JSON object only, plain text values, no Markdown."
)

OVERSIGHT_CONTACT = (
    "If you are unhappy with this decision, you can contact the Aged Care Quality and Safety "
    "Commission on 1800 951 822 or visit www.agedcarequality.gov.au."
)


def _build_prompt(invoice: Invoice, client: Optional[ClientProfile], reasons: str) -> str:
    client_name = client.name if client else "Unidentified client (PO missing)"
    funding = client.classification if client else "Support at Home (general)"
    return "\n".join(
        [
            "An invoice has been REJECTED. Draft TWO distinct emails for different audiences.",
            "",
            "CONTEXT:",
            f"- Invoice number: {invoice.invoice_number or 'Unknown'}",
            f"- Supplier: {invoice.supplier_name or 'Vendor'}",
            f"- Client: {client_name}",
            f"- Funding program: {funding}",
            f"- Invoice total: ${invoice.total_amount:,.2f}",
            "",
            "REJECTION REASONS:",
            reasons,
            "",
            "EMAIL 1, VENDOR: professional and technical. Cite the specific failed rule, reference the "
            "applicable pricing or procurement rules, and request a corrected invoice or credit note.",
            "",
            "EMAIL 2, CLIENT: empathetic and in very simple language. Explain why the invoice is on hold, "
            "what we have done about it and what happens next. You MUST include this sentence: "
            f'"{OVERSIGHT_CONTACT}"',
            "",
            "The two emails must be completely different in content and tone.",
            "",
            "OUTPUT JSON:",
            '{"vendorEmail": {"to": "...", "subject": "...", "body": "..."}, '
            '"clientEmail": {"to": "...", "subject": "...", "body": "..."}}',
        ]
    )


class RejectionDraftService:
    def __init__(
        self,
        client: ReasoningClient,
        store: InvoiceStore,
        *,
        recorder: Optional["AuditRecorder"] = None,
    ) -> None:
        self._client = client
        self._store = store
        self._recorder = recorder

    async def get_or_create(
        self,
        invoice: Invoice,
        client: Optional[ClientProfile],
    ) -> tuple[Invoice, RejectionDrafts]:
        """Return the cached drafts, or generate, persist and return a new pair."""
        if invoice.rejection_drafts is not None:
            logger.debug("Rejection drafts cache hit for invoice %s", invoice.id)
            return invoice, invoice.rejection_drafts

        reasons = build_rejection_reasons(invoice)
        try:
            call = await self._client.invoke(
                ReasoningTier.COMPLEX,
                _build_prompt(invoice, client, reasons),
                scope="rejection",
                entity_id=invoice.id,
                system_prompt=DRAFTING_SYSTEM_PROMPT,
            )
            drafts = parse_drafts(call.payload, invoice, client)
        except ReasoningServiceError as exc:
            logger.warning("Rejection drafting failed for invoice %s: %s", invoice.id, exc)
            if self._recorder is not None:
                self._recorder.record(
                    entity_type="invoice",
                    entity_id=invoice.id,
                    action="REJECTION_DRAFT_FAILED",
                    metadata={"provider": exc.provider, "error": str(exc)},
                )
            raise DraftingServiceError("Could not generate rejection drafts") from exc

        updated = invoice.model_copy(deep=True)
        updated.rejection_drafts = drafts
        self._store.replace(updated)
        logger.info("Rejection drafts generated for invoice %s", invoice.id)
        return updated, drafts
