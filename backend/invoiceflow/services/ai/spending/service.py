"""Spend-velocity analysis: advisory quarter-end projection for a PO.

The projection figures and status are computed deterministically; the model
only writes the summary and recommendations. On any reasoning failure the
deterministic projection is returned with a manual-review recommendation.
"""

from __future__ import annotations

import logging
from datetime import date

from invoiceflow.core.config import Settings
from invoiceflow.errors import ReasoningServiceError
from invoiceflow.schemas.invoice import Invoice, PurchaseOrder, SpendingAnalysis, SpendingStatus
from invoiceflow.services.ai.common.client import ReasoningClient
from invoiceflow.services.ai.common.router import ReasoningTier

from .contracts import SpendingProjection, project_quarter_spend

logger = logging.getLogger(__name__)

SPENDING_SYSTEM_PROMPT = (
    "You are a senior financial care analyst acting as an actuary. "
    "Respond with a single JSON object only, plain text values, no Markdown."
)


def _build_prompt(po: PurchaseOrder, invoice_amount: float, projection: SpendingProjection, today: date) -> str:
    return "\n".join(
        [
            f'Analyse spending velocity and liquidity risk for client "{po.client_name or po.client_id}".',
            "",
            f"- Quarterly budget cap: ${po.quarterly_budget_cap:,.2f}",
            f"- Current quarter spend: ${po.current_quarter_spend:,.2f}",
            f"- Current invoice amount: ${invoice_amount:,.2f}",
            f"- Quarter: {projection.quarter_start.isoformat()} to {projection.quarter_end.isoformat()}",
            f"- Current date: {today.isoformat()} ({projection.days_remaining} days remaining)",
            f"- Run rate: ${projection.run_rate:,.2f}/day, ideal burn rate: ${projection.ideal_burn_rate:,.2f}/day",
            f"- Projected quarter-end spend: ${projection.projected_spend:,.2f}",
            f"- Unspent: ${projection.unspent_amount:,.2f} ({projection.unspent_percentage}%)",
            f"- Assessed status: {projection.status.value}",
            "",
            "Underspend risk: more than 15% unspent with under 3 weeks left risks losing entitlement.",
            "Overspend risk: projected spend exceeds the cap before renewal; cut domestic assistance "
            "before personal care.",
            "",
            'Output JSON: {"summary": "...", "recommendations": ["..."], "carePlanReviewNeeded": true|false}',
        ]
    )


class SpendingAnalysisService:
    def __init__(self, client: ReasoningClient, settings: Settings) -> None:
        self._client = client
        self._settings = settings

    def _today(self) -> date:
        return self._settings.audit_reference_date or date.today()

    async def analyze(self, invoice: Invoice, po: PurchaseOrder) -> SpendingAnalysis:
        today = self._today()
        projection = project_quarter_spend(po, invoice.total_amount, today)
        if projection is None:
            logger.info("Spending analysis skipped projection for PO %s: no quarter end", po.po_number)
            return SpendingAnalysis(
                status=SpendingStatus.NORMAL,
                summary="Analysis unavailable: the purchase order has no quarter end date.",
                recommendations=["Manual review required."],
                care_plan_review_needed=True,
            )

        try:
            call = await self._client.invoke(
                ReasoningTier.COMPLEX,
                _build_prompt(po, invoice.total_amount, projection, today),
                scope="spending",
                entity_id=invoice.id,
                system_prompt=SPENDING_SYSTEM_PROMPT,
            )
        except ReasoningServiceError:
            logger.warning("Spending analysis failed for invoice %s", invoice.id, exc_info=True)
            return self._analysis(
                projection,
                summary="Analysis unavailable.",
                recommendations=["Manual review required due to system error."],
                review_needed=True,
            )

        payload = call.payload
        raw_recommendations = payload.get("recommendations") or []
        if not isinstance(raw_recommendations, list):
            raw_recommendations = [raw_recommendations]
        recommendations = [str(item) for item in raw_recommendations if str(item).strip()]
        review_needed = payload.get("carePlanReviewNeeded")
        if review_needed is None:
            review_needed = projection.status != SpendingStatus.NORMAL
        return self._analysis(
            projection,
            summary=str(payload.get("summary") or ""),
            recommendations=recommendations,
            review_needed=bool(review_needed),
        )

    @staticmethod
    def _analysis(
        projection: SpendingProjection,
        *,
        summary: str,
        recommendations: list[str],
        review_needed: bool,
    ) -> SpendingAnalysis:
        return SpendingAnalysis(
            status=projection.status,
            summary=summary,
            unspent_amount=projection.unspent_amount,
            unspent_percentage=projection.unspent_percentage,
            projected_quarter_spend=projection.projected_spend,
            recommendations=recommendations,
            care_plan_review_needed=review_needed,
        )

