"""Risk aggregation: stage replacement, status derivation and open-view sync."""

from conftest import make_invoice

from invoiceflow.schemas.invoice import (
    InvoiceStatus,
    RiskAssessment,
    RiskLevel,
    RuleOutcome,
    ValidationResult,
    ValidationSeverity,
)
from invoiceflow.services.ai.deep_audit.contracts import DeepAuditOutcome, error_outcome
from invoiceflow.services.risk_aggregator import (
    InvoiceViewSync,
    aggregate_audit,
    derive_status,
    replace_stage_results,
)
from invoiceflow.services.rule_engine import SystemCheck


def _result(rule_id, outcome=RuleOutcome.PASS, severity=ValidationSeverity.INFO):
    return ValidationResult(rule_id=rule_id, rule_name=rule_id, severity=severity, result=outcome)


def _system(*results, matched_po="PO-998877"):
    return SystemCheck(results=list(results), matched_po=matched_po)


def _outcome(*results, level=RiskLevel.LOW):
    return DeepAuditOutcome(
        report="ok",
        risk_assessment=RiskAssessment(level=level, score=10),
        validation_results=list(results),
    )


def test_replace_stage_results_only_touches_own_prefix():
    existing = [_result("SYS-PO-FOUND"), _result("AI-PRICE-CHECK"), _result("AI-ERROR")]

    merged = replace_stage_results(existing, "AI-", [_result("AI-FRAUD-CHECK")])

    assert [r.rule_id for r in merged] == ["SYS-PO-FOUND", "AI-FRAUD-CHECK"]


def test_derive_status_approves_without_failures():
    assert derive_status(InvoiceStatus.EXTRACTED, [_result("SYS-PO-FOUND")], False) == InvoiceStatus.APPROVED


def test_derive_status_warning_failure_forces_review():
    results = [_result("SYS-DATE-INVALID", RuleOutcome.FAIL, ValidationSeverity.WARN)]
    assert derive_status(InvoiceStatus.APPROVED, results, False) == InvoiceStatus.NEEDS_REVIEW


def test_derive_status_keeps_current_when_reasoning_failed():
    results = [_result("SYS-BUDGET-EXCEEDED", RuleOutcome.FAIL, ValidationSeverity.FAIL)]
    assert derive_status(InvoiceStatus.APPROVED, results, True) == InvoiceStatus.APPROVED
    assert derive_status(InvoiceStatus.EXTRACTED, results, True) == InvoiceStatus.EXTRACTED


def test_aggregate_does_not_mutate_input_and_sets_matched_po():
    invoice = make_invoice(po_number_matched=None)

    aggregation = aggregate_audit(invoice, _system(_result("SYS-PO-FOUND")), _outcome(_result("AI-PRICE-CHECK")))

    assert invoice.validation_results == []
    assert invoice.risk_assessment is None
    assert aggregation.invoice.po_number_matched == "PO-998877"
    assert aggregation.target_status == InvoiceStatus.APPROVED
    assert aggregation.status_changed


def test_aggregate_twice_never_duplicates_results():
    invoice = make_invoice()
    system = _system(_result("SYS-PO-FOUND"), _result("SYS-BUDGET-OK"))
    first = aggregate_audit(invoice, system, error_outcome("timeout")).invoice

    second = aggregate_audit(first, system, _outcome(_result("AI-PRICE-CHECK"), _result("AI-FRAUD-CHECK"))).invoice

    ids = [r.rule_id for r in second.validation_results]
    assert ids == ["SYS-PO-FOUND", "SYS-BUDGET-OK", "AI-PRICE-CHECK", "AI-FRAUD-CHECK"]
    assert not second.has_reasoning_error


def test_errored_outcome_never_regresses_approved_invoice():
    invoice = make_invoice(status=InvoiceStatus.APPROVED)

    aggregation = aggregate_audit(invoice, _system(_result("SYS-PO-FOUND")), error_outcome("503"))

    assert aggregation.target_status == InvoiceStatus.APPROVED
    assert not aggregation.status_changed
    assert aggregation.invoice.risk_assessment.score == 50
    assert aggregation.invoice.has_reasoning_error


def test_blocking_failure_after_completed_audit_is_never_approved():
    invoice = make_invoice(status=InvoiceStatus.APPROVED)
    system = _system(_result("SYS-CAREPLAN-MISMATCH", RuleOutcome.FAIL, ValidationSeverity.FAIL))

    aggregation = aggregate_audit(invoice, system, _outcome(_result("AI-PRICE-CHECK")))

    assert aggregation.target_status == InvoiceStatus.NEEDS_REVIEW


def test_spending_analysis_requested_only_for_completed_budget_failure():
    budget_fail = _result("AI-BUDGET-CHECK", RuleOutcome.FAIL, ValidationSeverity.FAIL)
    budget_warn = _result("AI-BUDGET-CHECK", RuleOutcome.PASS, ValidationSeverity.WARN)
    invoice = make_invoice()

    assert aggregate_audit(invoice, _system(), _outcome(budget_fail)).run_spending_analysis
    assert not aggregate_audit(invoice, _system(), _outcome(budget_warn)).run_spending_analysis
    assert not aggregate_audit(invoice, _system(), error_outcome("x")).run_spending_analysis


def test_view_sync_replaces_open_copies_by_identity():
    views = InvoiceViewSync()
    views.open("alice", make_invoice(id="inv-1"))
    views.open("bob", make_invoice(id="inv-2"))
    updated = make_invoice(id="inv-1", status=InvoiceStatus.NEEDS_REVIEW, supplier_name="Renamed Pty Ltd")

    assert views.sync(updated) == 1

    assert views.get("alice").status == InvoiceStatus.NEEDS_REVIEW
    assert views.get("alice").supplier_name == "Renamed Pty Ltd"
    assert views.get("bob").status == InvoiceStatus.EXTRACTED


def test_view_copies_are_isolated_from_callers():
    views = InvoiceViewSync()
    invoice = make_invoice()
    views.open("alice", invoice)

    invoice.status = InvoiceStatus.FAILED
    views.get("alice").status = InvoiceStatus.POSTED

    assert views.get("alice").status == InvoiceStatus.EXTRACTED
    views.close("alice")
    assert views.get("alice") is None
