"""Escalation review: an independent second opinion on a risk determination.

Advisory only: the review is attached to the invoice and never changes its
status. Failures are surfaced to the caller.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Optional

from invoiceflow.errors import EscalationServiceError, ReasoningServiceError
from invoiceflow.schemas.invoice import ChiefAuditorReview, ClientProfile, Invoice
from invoiceflow.services.ai.common.client import ReasoningClient
from invoiceflow.services.ai.common.router import ReasoningTier

from .contracts import ensure_escalation_allowed, parse_review

if TYPE_CHECKING:
    from invoiceflow.services.transition_service import AuditRecorder

logger = logging.getLogger(__name__)

ESCALATION_SYSTEM_PROMPT = (
    "You are the Chief Financial Auditor for a government oversight body, with thirty years "
    "in federal audit, forensic accounting and healthcare regulation. You verify the work of "
    "junior audit agents and have the final say on complex or high-risk cases. "
    "Respond with a single JSON object only, plain text values, no Markdown."
)


def _build_prompt(invoice: Invoice, client: Optional[ClientProfile]) -> str:
    risk = invoice.risk_assessment
    services = ", ".join(item.description for item in invoice.line_items if item.description) or "Not itemised"
    funding = client.classification if client else "Unknown"
    return "\n".join(
        [
            "CASE DATA:",
            f"- Invoice total: ${invoice.total_amount:,.2f}",
            f"- Supplier: {invoice.supplier_name}",
            f"- Service description: {services}",
            f"- Client funding: {funding}",
            "",
            "JUNIOR AGENT FINDING:",
            f"- Risk level: {risk.level.value if risk else 'UNKNOWN'}",
            f"- Risk score: {risk.score if risk else 'n/a'}/100",
            f"- Justification: {risk.justification if risk else ''}",
            f"- Recommendation: {risk.action_recommendation if risk else ''}",
            "",
            "TASK: Review the evidence. Is the junior agent correct?",
            "- Flagged as fraud but a legitimate purchase within guidelines: OVERRIDE_APPROVE.",
            "- Low risk but a conflict of interest or scope creep is visible: UPHOLD.",
            "- Be strict on scope of practice and value for money.",
            "",
            "OUTPUT JSON:",
            '{"determination": "UPHOLD" | "OVERRIDE_APPROVE" | "REQUIRE_MORE_EVIDENCE", '
            '"confidence": 0-100, "finalVerdict": "...", "regulatoryCitations": ["..."], '
            '"auditLogEntry": "..."}',
        ]
    )


class EscalationService:
    def __init__(self, client: ReasoningClient, *, recorder: Optional["AuditRecorder"] = None) -> None:
        self._client = client
        self._recorder = recorder

    async def review(self, invoice: Invoice, client: Optional[ClientProfile]) -> ChiefAuditorReview:
        ensure_escalation_allowed(invoice)

        try:
            call = await self._client.invoke(
                ReasoningTier.COMPLEX,
                _build_prompt(invoice, client),
                scope="escalation",
                entity_id=invoice.id,
                system_prompt=ESCALATION_SYSTEM_PROMPT,
            )
            review = parse_review(call.payload)
        except ReasoningServiceError as exc:
            logger.warning("Escalation review failed for invoice %s: %s", invoice.id, exc)
            if self._recorder is not None:
                self._recorder.record(
                    entity_type="invoice",
                    entity_id=invoice.id,
                    action="ESCALATION_FAILED",
                    metadata={"provider": exc.provider, "error": str(exc)},
                )
            raise EscalationServiceError("Chief auditor review is currently unavailable") from exc

        logger.info(
            "Escalation review invoice=%s determination=%s confidence=%s",
            invoice.id,
            review.determination.value,
            review.confidence,
        )
        return review
