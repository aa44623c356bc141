"""Deep audit: the COMPLEX-tier forensic pass over one invoice.

Architecture:
  1. Budget ceilings (quarterly, annual, early warning) are computed here and
     both given to the model and substituted for its AI-BUDGET-CHECK entry.
  2. The model evaluates price, fraud, contractor, policy and funding rules
     against the context bundle and returns JSON.
  3. Unknown rule ids are dropped, duplicates collapsed.
  4. Any transport or parse failure degrades to the synthetic AI-ERROR result;
     nothing but a configuration error leaves ``run``.
"""

from __future__ import annotations

import json
import logging
from datetime import date
from typing import TYPE_CHECKING, Optional

from invoiceflow.core.config import Settings
from invoiceflow.errors import ReasoningParseError, ReasoningServiceError
from invoiceflow.schemas.invoice import (
    ClientProfile,
    Invoice,
    PurchaseOrder,
    RuleOutcome,
    ValidationResult,
    ValidationSeverity,
)
from invoiceflow.schemas.settings import AuditPromptConfig
from invoiceflow.services.ai.common.client import ReasoningClient
from invoiceflow.services.ai.common.router import ReasoningTier

from .contracts import (
    BUDGET_RULE_ID,
    KNOWN_RULES,
    AuditContext,
    DeepAuditOutcome,
    error_outcome,
    filter_valid_results,
    parse_risk_assessment,
)

if TYPE_CHECKING:
    from invoiceflow.services.transition_service import AuditRecorder

logger = logging.getLogger(__name__)

SYSTEM_PROMPT = (
    "You are a forensic audit specialist for government-subsidised home care. "
    "Detect fraud, waste and abuse with precision. Respond with a single JSON object only. "
    "All text fields are plain text: no Markdown."
)

_RESPONSE_SCHEMA = {
    "report": "Plain-text analysis of the findings.",
    "riskAssessment": {
        "level": "LOW | MEDIUM | HIGH",
        "score": "0-100",
        "justification": "Plain-text explanation citing the rules involved.",
        "actionRecommendation": "Auto-Approve | Manual Review | Reject",
    },
    "validationResults": [
        {
            "ruleId": rule_id,
            "ruleName": rule_name,
            "severity": "FAIL | WARN | INFO",
            "result": "PASS | FAIL",
            "details": "...",
        }
        for rule_id, rule_name in KNOWN_RULES.items()
    ],
}


def _money(amount: float) -> str:
    return f"${amount:,.2f}"


def assemble_audit_prompt(config: AuditPromptConfig, policy_documents: str = "") -> str:
    """Number the enabled prompt sections; an empty section is disabled."""
    tasks = [section.strip() for section in config.sections() if section and section.strip()]
    lines = ["Perform a deep forensic audit of this invoice for a Support at Home scheme.", "", "Task:"]
    lines.extend(f"{index}. {task}" for index, task in enumerate(tasks, 1))
    if policy_documents.strip():
        lines.extend(
            [
                "",
                "CRITICAL: Refer to the following ORGANISATIONAL POLICIES when auditing:",
                policy_documents.strip(),
            ]
        )
    return "\n".join(lines)


def evaluate_budget_ceiling(
    invoice: Invoice,
    po: Optional[PurchaseOrder],
    client: Optional[ClientProfile],
    *,
    warning_ratio: float = 0.9,
) -> Optional[ValidationResult]:
    """Deterministic quarterly and annual cap check.

    A breach of either cap is a FAIL. Reaching ``warning_ratio`` of the
    quarterly cap is an early warning (WARN severity, PASS result). Returns
    ``None`` when there is no purchase order to check against.
    """
    if po is None:
        return None

    breaches: list[str] = []
    notes: list[str] = []
    total = invoice.total_amount

    quarterly_cap = po.quarterly_budget_cap
    quarterly_total = round(po.current_quarter_spend + total, 2)
    if quarterly_cap > 0:
        if quarterly_total > quarterly_cap:
            breaches.append(f"Invoice causes quarterly cap breach by {_money(quarterly_total - quarterly_cap)}")
        else:
            notes.append(f"Quarterly spend {quarterly_total / quarterly_cap:.1%} of cap after this invoice")

    if client is not None and client.total_budget_cap > 0:
        annual_total = round(client.total_budget_used + total, 2)
        if annual_total > client.total_budget_cap:
            breaches.append(
                f"Invoice causes Annual Budget cap breach by {_money(annual_total - client.total_budget_cap)}"
            )

    rule_name = KNOWN_RULES[BUDGET_RULE_ID]
    if breaches:
        return ValidationResult(
            rule_id=BUDGET_RULE_ID,
            rule_name=rule_name,
            severity=ValidationSeverity.FAIL,
            result=RuleOutcome.FAIL,
            details=". ".join(breaches) + ".",
        )

    if quarterly_cap > 0 and quarterly_total >= round(warning_ratio * quarterly_cap, 2):
        return ValidationResult(
            rule_id=BUDGET_RULE_ID,
            rule_name=rule_name,
            severity=ValidationSeverity.WARN,
            result=RuleOutcome.PASS,
            details=f"Approaching quarterly limit ({quarterly_total / quarterly_cap:.1%} used).",
        )

    return ValidationResult(
        rule_id=BUDGET_RULE_ID,
        rule_name=rule_name,
        severity=ValidationSeverity.INFO,
        result=RuleOutcome.PASS,
        details=(". ".join(notes) + ".") if notes else "Within budget ceilings.",
    )


def _client_profile_section(client: Optional[ClientProfile]) -> str:
    if client is None:
        return "CLIENT FUNDING PROFILE: none linked. Apply standard Level 3 rules; no client-specific overrides."
    return "\n".join(
        [
            "CLIENT FUNDING PROFILE (critical for validation):",
            f"- Name: {client.name}",
            f"- Status: {client.status}",
            f"- Classification: {client.classification}",
            f"- MMM location: {client.mmm_level or '1'} (5 or above allows remote-area loading)",
            f"- DVA card: {client.dva_card_type or 'None'}",
            f"- Active disease schemes: {', '.join(client.active_schemes) or 'None'}",
            f"- Active supplements: {', '.join(client.supplements) or 'None'}",
            f"- Indigenous: {client.is_indigenous}",
            f"- Specific approvals: {', '.join(client.specific_approvals) or 'None'}",
            f"- Annual budget: cap {_money(client.total_budget_cap)}, used {_money(client.total_budget_used)}",
        ]
    )


def _invoice_for_prompt(invoice: Invoice) -> str:
    data = invoice.model_dump(
        mode="json",
        by_alias=True,
        exclude={
            "validation_results",
            "risk_assessment",
            "chief_auditor_review",
            "spending_analysis",
            "rejection_drafts",
            "raw_content",
        },
    )
    return json.dumps(data, indent=2, ensure_ascii=False)


def build_deep_audit_prompt(
    invoice: Invoice,
    context: AuditContext,
    budget_check: Optional[ValidationResult],
    reference_date: date,
) -> str:
    parts = [
        f"Current date: {reference_date.isoformat()}",
        assemble_audit_prompt(context.prompt_config, context.policy_text),
        context.contractor_register,
        context.knowledge_base,
        _client_profile_section(context.client),
    ]

    if context.policy_files:
        names = ", ".join(f.name for f in context.policy_files)
        parts.append(
            f"PRIORITY INSTRUCTION: {len(context.policy_files)} attached policy file(s) ({names}) are the "
            "official organisational policies. Extract rate caps, mileage limits and prohibited items, "
            "cross-reference every line item, and flag violations in 'AI-POLICY-COMPLIANCE' citing the section."
        )

    if budget_check is not None:
        parts.append(
            "BUDGET CEILING (pre-computed, authoritative): "
            f"{budget_check.result.value} / {budget_check.severity.value}: {budget_check.details}"
        )

    parts.append(
        "FUNDING ALIGNMENT: Level 1 or 2 with an invoice total above $400 is a WARN. "
        "Level 3+ with a single line above $1000 not in specific approvals is a WARN."
    )

    po_data = (
        json.dumps(context.purchase_order.model_dump(mode="json", by_alias=True), indent=2)
        if context.purchase_order
        else "NO_PO_FOUND"
    )
    parts.append(f"Purchase Order Data:\n{po_data}")
    parts.append(f"Invoice Data:\n{_invoice_for_prompt(invoice)}")
    parts.append("Output a JSON object with this structure:\n" + json.dumps(_RESPONSE_SCHEMA, indent=2))
    return "\n\n".join(parts)


class DeepAuditService:
    def __init__(
        self,
        client: ReasoningClient,
        settings: Settings,
        *,
        recorder: Optional["AuditRecorder"] = None,
    ) -> None:
        self._client = client
        self._settings = settings
        self._recorder = recorder

    async def run(self, invoice: Invoice, context: AuditContext) -> DeepAuditOutcome:
        reference_date = context.reference_date or self._settings.audit_reference_date or date.today()
        budget_check = evaluate_budget_ceiling(
            invoice,
            context.purchase_order,
            context.client,
            warning_ratio=self._settings.budget_warning_ratio,
        )
        prompt = build_deep_audit_prompt(invoice, context, budget_check, reference_date)

        try:
            call = await self._client.invoke(
                ReasoningTier.COMPLEX,
                prompt,
                scope="deep_audit",
                entity_id=invoice.id,
                system_prompt=SYSTEM_PROMPT,
                attachments=context.policy_files,
            )
            outcome = self._parse(call.payload, budget_check)
        except ReasoningServiceError as exc:
            logger.warning("Deep audit failed for invoice %s: %s", invoice.id, exc, exc_info=True)
            self._record_error(invoice, exc)
            return error_outcome(str(exc))

        logger.info(
            "Deep audit invoice=%s risk=%s score=%s results=%s",
            invoice.id,
            outcome.risk_assessment.level.value,
            outcome.risk_assessment.score,
            len(outcome.validation_results),
        )
        return outcome

    def _parse(self, payload: dict, budget_check: Optional[ValidationResult]) -> DeepAuditOutcome:
        risk = parse_risk_assessment(payload.get("riskAssessment"))
        results = filter_valid_results(payload.get("validationResults"))

        if budget_check is not None:
            results = [r for r in results if r.rule_id != BUDGET_RULE_ID] + [budget_check]

        report = payload.get("report")
        if not isinstance(report, str):
            raise ReasoningParseError("report missing from deep audit response")

        return DeepAuditOutcome(report=report, risk_assessment=risk, validation_results=results)

    def _record_error(self, invoice: Invoice, exc: ReasoningServiceError) -> None:
        if self._recorder is None:
            return
        try:
            self._recorder.record(
                entity_type="invoice",
                entity_id=invoice.id,
                action="AI_AUDIT_ERROR",
                metadata={"provider": exc.provider, "model": exc.model, "error": str(exc)},
            )
        except Exception:
            logger.exception("Failed to record deep audit error for invoice %s", invoice.id)
