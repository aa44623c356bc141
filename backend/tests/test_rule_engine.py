"""Rule engine: PO presence, lookup, budget, service period and care-plan checks."""

from unittest.mock import MagicMock

from conftest import make_invoice, make_po

from invoiceflow.schemas.invoice import LineItem, RuleOutcome, ValidationSeverity
from invoiceflow.services.rule_engine import parse_date, validate_invoice_against_system
from invoiceflow.services.stores import InMemoryReferenceRegistry


def _registry(*pos):
    return InMemoryReferenceRegistry(purchase_orders=list(pos) or [make_po()])


def _ids(check):
    return [r.rule_id for r in check.results]


def test_missing_po_short_circuits():
    invoice = make_invoice(po_number_extracted=None, po_number_matched=None)

    check = validate_invoice_against_system(invoice, _registry())

    assert _ids(check) == ["SYS-PO-MISSING"]
    assert check.results[0].severity == ValidationSeverity.FAIL
    assert check.results[0].result == RuleOutcome.FAIL
    assert check.matched_po is None


def test_matched_po_number_is_used_when_extracted_is_blank():
    invoice = make_invoice(po_number_extracted="  ", po_number_matched="PO-998877")

    check = validate_invoice_against_system(invoice, _registry())

    assert "SYS-PO-FOUND" in _ids(check)
    assert check.matched_po == "PO-998877"


def test_unknown_po_short_circuits():
    invoice = make_invoice(po_number_extracted="PO-404")

    check = validate_invoice_against_system(invoice, _registry())

    assert _ids(check) == ["SYS-PO-NOTFOUND"]
    assert "PO-404" in check.results[0].details


def test_registry_exception_becomes_blocking_result():
    registry = MagicMock()
    registry.get_purchase_order.side_effect = ConnectionError("ledger offline")

    check = validate_invoice_against_system(make_invoice(), registry)

    assert _ids(check) == ["SYS-REGISTRY-ERROR"]
    assert check.results[0].is_failure
    assert check.results[0].severity == ValidationSeverity.FAIL
    assert "ledger offline" in check.results[0].details


def test_happy_path_emits_all_four_checks_in_order():
    check = validate_invoice_against_system(make_invoice(), _registry())

    assert _ids(check) == ["SYS-PO-FOUND", "SYS-BUDGET-OK", "SYS-DATE-OK", "SYS-CAREPLAN-OK"]
    assert check.failures == []
    assert check.matched_po == "PO-998877"
    assert "Remaining after this: $4,780.00" in check.results[1].details


def test_budget_exceeded_lists_both_amounts():
    invoice = make_invoice(total_amount=1250.5)
    check = validate_invoice_against_system(invoice, _registry(make_po(budget_remaining=1000.0)))

    budget = next(r for r in check.results if r.rule_id.startswith("SYS-BUDGET"))
    assert budget.rule_id == "SYS-BUDGET-EXCEEDED"
    assert "$1,250.50" in budget.details
    assert "$1,000.00" in budget.details


def test_budget_exactly_equal_to_remaining_passes():
    invoice = make_invoice(total_amount=1000.0)
    check = validate_invoice_against_system(invoice, _registry(make_po(budget_remaining=1000.0)))

    assert "SYS-BUDGET-OK" in _ids(check)


def test_service_date_outside_window_fails():
    invoice = make_invoice(invoice_date="2026-01-15")

    check = validate_invoice_against_system(invoice, _registry())

    assert "SYS-DATE-RANGE" in _ids(check)


def test_unparsable_invoice_date_is_a_warning_failure():
    invoice = make_invoice(invoice_date="sometime in March")

    check = validate_invoice_against_system(invoice, _registry())

    date_result = next(r for r in check.results if r.rule_id.startswith("SYS-DATE"))
    assert date_result.rule_id == "SYS-DATE-INVALID"
    assert date_result.severity == ValidationSeverity.WARN
    assert date_result.result == RuleOutcome.FAIL


def test_care_plan_mismatch_collects_every_offending_line():
    invoice = make_invoice(
        line_items=[
            LineItem(description="Domestic cleaning", mapped_service_code="CLEAN-01"),
            LineItem(description="Physio session", mapped_service_code="PHYS-01"),
            LineItem(description="Lawn mowing and garden tidy"),
        ]
    )

    check = validate_invoice_against_system(invoice, _registry())

    mismatch = [r for r in check.results if r.rule_id == "SYS-CAREPLAN-MISMATCH"]
    assert len(mismatch) == 1
    assert "Physio session (PHYS-01)" in mismatch[0].details
    assert "Detected: Gardening" in mismatch[0].details
    assert "Domestic cleaning" not in mismatch[0].details


def test_keyword_heuristic_passes_when_code_is_approved():
    invoice = make_invoice(line_items=[LineItem(description="Garden maintenance")])

    check = validate_invoice_against_system(invoice, _registry(make_po(service_codes=["GARD-01"])))

    assert "SYS-CAREPLAN-OK" in _ids(check)


def test_parse_date_accepts_common_formats():
    assert parse_date("2025-02-03").isoformat() == "2025-02-03"
    assert parse_date("03/02/2025").isoformat() == "2025-02-03"
    assert parse_date("3 Feb 2025").isoformat() == "2025-02-03"
    assert parse_date("2025-02-03T10:00:00Z").isoformat() == "2025-02-03"
    assert parse_date("") is None
    assert parse_date("not a date") is None
