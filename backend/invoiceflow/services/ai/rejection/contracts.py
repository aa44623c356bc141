"""Contracts for rejection drafting: reason context and response parsing."""

from __future__ import annotations

from typing import Any, Optional

from pydantic import ValidationError

from invoiceflow.errors import ReasoningParseError
from invoiceflow.schemas.invoice import ClientProfile, EmailDraft, Invoice, RejectionDrafts

FALLBACK_REASON = "Non-compliance with internal procurement policies."


def build_rejection_reasons(invoice: Invoice) -> str:
    """Failed rule details plus the risk justification, one bullet each."""
    failed = "\n".join(
        f"- Rule '{r.rule_name or r.rule_id}' failed: {r.details or 'Criteria not met'}"
        for r in invoice.validation_results
        if r.is_failure
    )
    risk = invoice.risk_assessment
    justification = f"- Risk analysis: {risk.justification}" if risk and risk.justification else ""
    return "\n\n".join(part for part in (failed, justification) if part) or FALLBACK_REASON


def parse_drafts(payload: dict[str, Any], invoice: Invoice, client: Optional[ClientProfile]) -> RejectionDrafts:
    try:
        vendor = EmailDraft.model_validate(payload.get("vendorEmail") or {})
        client_email = EmailDraft.model_validate(payload.get("clientEmail") or {})
    except ValidationError as exc:
        raise ReasoningParseError("Rejection drafts did not match the expected shape") from exc

    if not vendor.body.strip() or not client_email.body.strip():
        raise ReasoningParseError("Rejection drafts are missing a message body")

    if not vendor.to:
        vendor.to = f"{invoice.supplier_name or 'Vendor'} Accounts Dept"
    if not client_email.to and client is not None:
        client_email.to = client.email
    return RejectionDrafts(vendor_email=vendor, client_email=client_email)
