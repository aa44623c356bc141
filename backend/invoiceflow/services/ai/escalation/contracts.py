"""Contracts for the escalation review: eligibility and response parsing."""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any

from invoiceflow.errors import EscalationNotAllowedError, ReasoningParseError
from invoiceflow.schemas.invoice import ChiefAuditorReview, Invoice, ReviewDetermination, RiskLevel

logger = logging.getLogger(__name__)

ESCALATION_RISK_LEVELS = frozenset({RiskLevel.MEDIUM, RiskLevel.HIGH})

_DETERMINATION_ALIASES = {
    "UPHOLD": ReviewDetermination.UPHOLD,
    "UPHOLD_REJECTION": ReviewDetermination.UPHOLD,
    "OVERRIDE_APPROVE": ReviewDetermination.OVERRIDE_APPROVE,
    "REQUIRE_MORE_EVIDENCE": ReviewDetermination.REQUIRE_MORE_EVIDENCE,
    "REQUIRE_ADDITIONAL_EVIDENCE": ReviewDetermination.REQUIRE_MORE_EVIDENCE,
}


def ensure_escalation_allowed(invoice: Invoice) -> None:
    """At most one review per invoice, and only for MEDIUM or HIGH risk."""
    if invoice.chief_auditor_review is not None:
        raise EscalationNotAllowedError(f"Invoice {invoice.id} already has an escalation review")
    risk = invoice.risk_assessment
    if risk is None or risk.level not in ESCALATION_RISK_LEVELS:
        raise EscalationNotAllowedError(f"Invoice {invoice.id} has no MEDIUM or HIGH risk assessment to escalate")


def parse_review(payload: dict[str, Any]) -> ChiefAuditorReview:
    raw_determination = str(payload.get("determination") or "").strip().upper()
    determination = _DETERMINATION_ALIASES.get(raw_determination)
    if determination is None:
        raise ReasoningParseError(f"Unknown escalation determination {raw_determination!r}")

    try:
        confidence = int(round(float(payload.get("confidence", 0))))
    except (TypeError, ValueError):
        confidence = 0

    citations = payload.get("regulatoryCitations", payload.get("citations")) or []
    if not isinstance(citations, list):
        citations = [citations]

    return ChiefAuditorReview(
        determination=determination,
        confidence=max(0, min(100, confidence)),
        final_verdict=str(payload.get("finalVerdict") or ""),
        citations=[str(c) for c in citations if str(c).strip()],
        audit_log_entry=str(payload.get("auditLogEntry") or ""),
        reviewed_at=datetime.now(timezone.utc),
    )
