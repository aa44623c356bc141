"""Contracts for the spend-velocity analysis: deterministic quarter projection."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date
from typing import Optional

from invoiceflow.schemas.invoice import PurchaseOrder, SpendingStatus

UNDERSPEND_THRESHOLD_PCT = 15.0
UNDERSPEND_WINDOW_DAYS = 21


@dataclass(frozen=True)
class SpendingProjection:
    quarter_start: date
    quarter_end: date
    days_elapsed: int
    days_remaining: int
    spend_to_date: float
    run_rate: float
    ideal_burn_rate: float
    projected_spend: float
    unspent_amount: float
    unspent_percentage: float
    status: SpendingStatus


def quarter_start_for(quarter_end: date) -> date:
    month = quarter_end.month - 2
    year = quarter_end.year
    if month < 1:
        month += 12
        year -= 1
    return date(year, month, 1)


def project_quarter_spend(po: PurchaseOrder, invoice_amount: float, today: date) -> Optional[SpendingProjection]:
    """Linear run-rate projection of quarter-end spend including *invoice_amount*.

    Returns ``None`` when the PO carries no quarter end date.
    """
    if po.current_quarter_end is None:
        return None

    end = po.current_quarter_end
    start = quarter_start_for(end)
    days_total = (end - start).days + 1
    days_elapsed = min(max((today - start).days + 1, 1), days_total)
    days_remaining = max((end - today).days, 0)

    cap = po.quarterly_budget_cap
    spend = round(po.current_quarter_spend + invoice_amount, 2)
    run_rate = spend / days_elapsed
    projected = round(run_rate * days_total, 2)
    unspent = round(max(cap - spend, 0.0), 2)
    unspent_pct = round(unspent / cap * 100, 1) if cap > 0 else 0.0

    if cap > 0 and projected > cap:
        status = SpendingStatus.OVERSPEND_RISK
    elif unspent_pct > UNDERSPEND_THRESHOLD_PCT and days_remaining < UNDERSPEND_WINDOW_DAYS:
        status = SpendingStatus.UNDERSPEND_RISK
    else:
        status = SpendingStatus.NORMAL

    return SpendingProjection(
        quarter_start=start,
        quarter_end=end,
        days_elapsed=days_elapsed,
        days_remaining=days_remaining,
        spend_to_date=spend,
        run_rate=round(run_rate, 2),
        ideal_burn_rate=round(cap / days_total, 2) if cap > 0 else 0.0,
        projected_spend=projected,
        unspent_amount=unspent,
        unspent_percentage=unspent_pct,
        status=status,
    )
