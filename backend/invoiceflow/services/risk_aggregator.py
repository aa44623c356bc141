"""Merge system and reasoning results and derive the invoice status.

Each stage owns the results carrying its prefix. Re-running a stage replaces
exactly its own entries, so aggregation is idempotent per stage.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from threading import Lock
from typing import Iterable, Optional

from invoiceflow.schemas.invoice import Invoice, InvoiceStatus, ValidationResult
from invoiceflow.services.ai.deep_audit.contracts import REASONING_RULE_PREFIX, DeepAuditOutcome
from invoiceflow.services.rule_engine import SYSTEM_RULE_PREFIX, SystemCheck

logger = logging.getLogger(__name__)


@dataclass
class AggregationResult:
    invoice: Invoice
    previous_status: InvoiceStatus
    target_status: InvoiceStatus
    run_spending_analysis: bool

    @property
    def status_changed(self) -> bool:
        return self.previous_status != self.target_status


def replace_stage_results(
    existing: Iterable[ValidationResult],
    prefix: str,
    fresh: Iterable[ValidationResult],
) -> list[ValidationResult]:
    kept = [r for r in existing if not r.rule_id.startswith(prefix)]
    return kept + list(fresh)


def has_blocking_failure(results: Iterable[ValidationResult]) -> bool:
    return any(r.is_failure for r in results)


def derive_status(
    current: InvoiceStatus,
    results: Iterable[ValidationResult],
    reasoning_failed: bool,
) -> InvoiceStatus:
    # A transient reasoning outage never demotes an invoice, whatever it was.
    if reasoning_failed:
        return current
    return InvoiceStatus.NEEDS_REVIEW if has_blocking_failure(results) else InvoiceStatus.APPROVED


def aggregate_audit(invoice: Invoice, system_check: SystemCheck, outcome: DeepAuditOutcome) -> AggregationResult:
    """Return a new invoice carrying the merged audit. *invoice* is not mutated."""
    merged = invoice.model_copy(deep=True)

    results = replace_stage_results(merged.validation_results, SYSTEM_RULE_PREFIX, system_check.results)
    results = replace_stage_results(results, REASONING_RULE_PREFIX, outcome.validation_results)

    merged.validation_results = results
    merged.risk_assessment = outcome.risk_assessment
    if system_check.matched_po:
        merged.po_number_matched = system_check.matched_po

    target = derive_status(invoice.status, results, outcome.errored)
    run_spending = outcome.budget_check_failed and not outcome.errored

    logger.info(
        "Aggregated audit invoice=%s results=%s errored=%s status %s -> %s spending=%s",
        invoice.id,
        len(results),
        outcome.errored,
        invoice.status.value,
        target.value,
        run_spending,
    )
    return AggregationResult(
        invoice=merged,
        previous_status=invoice.status,
        target_status=target,
        run_spending_analysis=run_spending,
    )


class InvoiceViewSync:
    """Open detail views of invoices, kept identical to the canonical copy.

    Views are keyed by viewer. After a store write, ``sync`` replaces every
    open view of the same invoice id with the stored version as a whole.
    """

    def __init__(self) -> None:
        self._views: dict[str, Invoice] = {}
        self._lock = Lock()

    def open(self, viewer_id: str, invoice: Invoice) -> None:
        with self._lock:
            self._views[viewer_id] = invoice.model_copy(deep=True)

    def close(self, viewer_id: str) -> None:
        with self._lock:
            self._views.pop(viewer_id, None)

    def get(self, viewer_id: str) -> Optional[Invoice]:
        with self._lock:
            view = self._views.get(viewer_id)
            return view.model_copy(deep=True) if view is not None else None

    def sync(self, invoice: Invoice) -> int:
        updated = 0
        with self._lock:
            for viewer_id, view in self._views.items():
                if view.id == invoice.id:
                    self._views[viewer_id] = invoice.model_copy(deep=True)
                    updated += 1
        return updated
