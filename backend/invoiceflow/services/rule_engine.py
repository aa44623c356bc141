"""Deterministic checks of an invoice against its purchase order.

Checks run in a fixed order: PO presence, PO lookup, budget, service period,
care-plan alignment. Only the first two short-circuit. Violations are returned
as ``ValidationResult`` rows and nothing is raised to the caller.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Optional

from invoiceflow.schemas.invoice import (
    Invoice,
    PurchaseOrder,
    RuleOutcome,
    ValidationResult,
    ValidationSeverity,
)
from invoiceflow.services.stores import ReferenceRegistry

logger = logging.getLogger(__name__)

SYSTEM_RULE_PREFIX = "SYS-"

PO_CHECK = "Purchase Order Check"
BUDGET_CHECK = "Budget Availability"
PERIOD_CHECK = "Service Period Check"
CAREPLAN_CHECK = "Client Care Plan Compliance"

# Service code -> (label, description keywords) used when a line item has no mapped code.
KEYWORD_SERVICE_CODES: dict[str, tuple[str, tuple[str, ...]]] = {
    "GARD-01": ("Gardening", ("garden", "lawn")),
}

_DATE_FORMATS = ("%Y-%m-%d", "%d/%m/%Y", "%d-%m-%Y", "%d %b %Y", "%d %B %Y", "%b %d, %Y", "%B %d, %Y")


@dataclass
class SystemCheck:
    results: list[ValidationResult] = field(default_factory=list)
    matched_po: Optional[str] = None
    purchase_order: Optional[PurchaseOrder] = None

    @property
    def failures(self) -> list[ValidationResult]:
        return [r for r in self.results if r.is_failure]


def _result(rule_id: str, rule_name: str, severity: ValidationSeverity, outcome: RuleOutcome, details: str):
    return ValidationResult(rule_id=rule_id, rule_name=rule_name, severity=severity, result=outcome, details=details)


def _money(amount: float) -> str:
    return f"${amount:,.2f}"


def parse_date(value: Optional[str]) -> Optional[date]:
    if not value:
        return None
    raw = str(value).strip()
    try:
        return datetime.fromisoformat(raw.replace("Z", "+00:00")).date()
    except ValueError:
        pass
    for fmt in _DATE_FORMATS:
        try:
            return datetime.strptime(raw, fmt).date()
        except ValueError:
            continue
    return None


def _check_budget(invoice: Invoice, po: PurchaseOrder) -> ValidationResult:
    if invoice.total_amount > po.budget_remaining:
        return _result(
            "SYS-BUDGET-EXCEEDED",
            BUDGET_CHECK,
            ValidationSeverity.FAIL,
            RuleOutcome.FAIL,
            f"Invoice total ({_money(invoice.total_amount)}) exceeds PO remaining budget "
            f"({_money(po.budget_remaining)}).",
        )
    remaining = po.budget_remaining - invoice.total_amount
    return _result(
        "SYS-BUDGET-OK",
        BUDGET_CHECK,
        ValidationSeverity.INFO,
        RuleOutcome.PASS,
        f"Funds available. Remaining after this: {_money(remaining)}",
    )


def _check_service_period(invoice: Invoice, po: PurchaseOrder) -> ValidationResult:
    invoice_date = parse_date(invoice.invoice_date)
    if invoice_date is None:
        return _result(
            "SYS-DATE-INVALID",
            PERIOD_CHECK,
            ValidationSeverity.WARN,
            RuleOutcome.FAIL,
            f"Invoice date '{invoice.invoice_date}' could not be parsed.",
        )

    valid_from = parse_date(po.valid_from)
    valid_to = parse_date(po.valid_to)
    if valid_from is None or valid_to is None:
        return _result(
            "SYS-DATE-INVALID",
            PERIOD_CHECK,
            ValidationSeverity.WARN,
            RuleOutcome.FAIL,
            f"PO validity period ({po.valid_from} - {po.valid_to}) could not be parsed.",
        )

    if invoice_date < valid_from or invoice_date > valid_to:
        return _result(
            "SYS-DATE-RANGE",
            PERIOD_CHECK,
            ValidationSeverity.FAIL,
            RuleOutcome.FAIL,
            f"Service date is outside PO validity period ({po.valid_from} - {po.valid_to}).",
        )
    return _result(
        "SYS-DATE-OK",
        PERIOD_CHECK,
        ValidationSeverity.INFO,
        RuleOutcome.PASS,
        "Invoice date is within approved service period.",
    )


def _detect_service_code(description: str) -> Optional[tuple[str, str]]:
    text = description.lower()
    for code, (label, keywords) in KEYWORD_SERVICE_CODES.items():
        if any(keyword in text for keyword in keywords):
            return code, label
    return None


def _check_care_plan(invoice: Invoice, po: PurchaseOrder) -> ValidationResult:
    approved = set(po.service_codes)
    unapproved: list[str] = []

    for item in invoice.line_items:
        if item.mapped_service_code:
            if item.mapped_service_code not in approved:
                unapproved.append(f"{item.description} ({item.mapped_service_code})")
        elif item.description:
            detected = _detect_service_code(item.description)
            if detected and detected[0] not in approved:
                unapproved.append(f"{item.description} (Detected: {detected[1]})")

    if unapproved:
        return _result(
            "SYS-CAREPLAN-MISMATCH",
            CAREPLAN_CHECK,
            ValidationSeverity.FAIL,
            RuleOutcome.FAIL,
            f"Services not approved in client plan: {', '.join(unapproved)}",
        )
    return _result(
        "SYS-CAREPLAN-OK",
        CAREPLAN_CHECK,
        ValidationSeverity.INFO,
        RuleOutcome.PASS,
        "All services match approved categories in Care Plan.",
    )


def validate_invoice_against_system(invoice: Invoice, registry: ReferenceRegistry) -> SystemCheck:
    po_number = invoice.po_number
    if not po_number:
        return SystemCheck(
            results=[
                _result(
                    "SYS-PO-MISSING",
                    PO_CHECK,
                    ValidationSeverity.FAIL,
                    RuleOutcome.FAIL,
                    "No Purchase Order number found on invoice.",
                )
            ]
        )

    try:
        po = registry.get_purchase_order(po_number)
    except Exception as exc:
        logger.warning("PO lookup failed for invoice %s po=%s", invoice.id, po_number, exc_info=True)
        return SystemCheck(
            results=[
                _result(
                    "SYS-REGISTRY-ERROR",
                    PO_CHECK,
                    ValidationSeverity.FAIL,
                    RuleOutcome.FAIL,
                    f"PO registry lookup failed: {exc}",
                )
            ]
        )

    if po is None:
        return SystemCheck(
            results=[
                _result(
                    "SYS-PO-NOTFOUND",
                    PO_CHECK,
                    ValidationSeverity.FAIL,
                    RuleOutcome.FAIL,
                    f"PO '{po_number}' does not exist in active orders.",
                )
            ]
        )

    results = [
        _result(
            "SYS-PO-FOUND",
            PO_CHECK,
            ValidationSeverity.INFO,
            RuleOutcome.PASS,
            f"Linked to Client {po.client_id} (Valid: {po.valid_from} to {po.valid_to})",
        )
    ]
    try:
        results.append(_check_budget(invoice, po))
        results.append(_check_service_period(invoice, po))
        results.append(_check_care_plan(invoice, po))
    except Exception as exc:
        logger.exception("System validation failed for invoice %s", invoice.id)
        results.append(
            _result(
                "SYS-REGISTRY-ERROR",
                "System Validation",
                ValidationSeverity.FAIL,
                RuleOutcome.FAIL,
                f"System validation error: {exc}",
            )
        )

    return SystemCheck(results=results, matched_po=po_number, purchase_order=po)
