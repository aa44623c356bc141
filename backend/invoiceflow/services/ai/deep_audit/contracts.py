"""Contracts for the deep audit: known rule ids and response parsing."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import date
from typing import Any, Optional

from pydantic import ValidationError

from invoiceflow.errors import ReasoningParseError
from invoiceflow.schemas.invoice import (
    ClientProfile,
    PurchaseOrder,
    RiskAssessment,
    RiskLevel,
    RuleOutcome,
    ValidationResult,
    ValidationSeverity,
)
from invoiceflow.schemas.settings import AuditPromptConfig
from invoiceflow.services.ai.common.providers.base import Attachment

from .knowledge import APPROVED_CONTRACTORS, FUNDING_KNOWLEDGE_BASE

logger = logging.getLogger(__name__)

REASONING_RULE_PREFIX = "AI-"
AI_ERROR_RULE_ID = "AI-ERROR"
BUDGET_RULE_ID = "AI-BUDGET-CHECK"

KNOWN_RULES: dict[str, str] = {
    "AI-AGING-CHECK": "Invoice Aging (60 Days)",
    "AI-FRAUD-CHECK": "AI Fraud Detection",
    "AI-PRICE-CHECK": "Price Reasonableness",
    BUDGET_RULE_ID: "Budget Sufficiency Check (Quarterly & Annual)",
    "AI-CONTRACTOR-CHECK": "Contractor Compliance",
    "AI-POLICY-COMPLIANCE": "Policy Compliance",
    "AI-FUNDING-ALIGNMENT": "Funding Package Alignment",
}

_SEVERITY_ALIASES = {
    "FAIL": ValidationSeverity.FAIL,
    "HIGH": ValidationSeverity.FAIL,
    "CRITICAL": ValidationSeverity.FAIL,
    "WARN": ValidationSeverity.WARN,
    "WARNING": ValidationSeverity.WARN,
    "MEDIUM": ValidationSeverity.WARN,
    "INFO": ValidationSeverity.INFO,
    "LOW": ValidationSeverity.INFO,
}


@dataclass
class AuditContext:
    """Everything the deep audit needs besides the invoice itself."""

    purchase_order: Optional[PurchaseOrder] = None
    client: Optional[ClientProfile] = None
    reference_date: Optional[date] = None
    prompt_config: AuditPromptConfig = field(default_factory=AuditPromptConfig)
    policy_text: str = ""
    policy_files: list[Attachment] = field(default_factory=list)
    knowledge_base: str = FUNDING_KNOWLEDGE_BASE
    contractor_register: str = APPROVED_CONTRACTORS


@dataclass
class DeepAuditOutcome:
    report: str
    risk_assessment: RiskAssessment
    validation_results: list[ValidationResult]
    errored: bool = False

    @property
    def budget_check_failed(self) -> bool:
        return any(r.rule_id == BUDGET_RULE_ID and r.is_failure for r in self.validation_results)


def error_outcome(reason: str) -> DeepAuditOutcome:
    return DeepAuditOutcome(
        report="Deep audit service unavailable due to an error.",
        risk_assessment=RiskAssessment(
            level=RiskLevel.MEDIUM,
            score=50,
            justification="Audit service failed, defaulting to manual review.",
            action_recommendation="Manual Review",
        ),
        validation_results=[
            ValidationResult(
                rule_id=AI_ERROR_RULE_ID,
                rule_name="AI Audit Service",
                severity=ValidationSeverity.WARN,
                result=RuleOutcome.FAIL,
                details=f"Service unavailable. {reason}",
            )
        ],
        errored=True,
    )


def parse_risk_assessment(raw: Any) -> RiskAssessment:
    if not isinstance(raw, dict):
        raise ReasoningParseError("riskAssessment missing from deep audit response")
    data = dict(raw)
    data["level"] = str(data.get("level", "")).strip().upper()
    try:
        return RiskAssessment.model_validate(data)
    except ValidationError as exc:
        raise ReasoningParseError(f"Invalid riskAssessment: {exc.error_count()} error(s)") from exc


def filter_valid_results(raw_results: Any) -> list[ValidationResult]:
    """Keep known AI rule ids only, first occurrence wins.

    Logs a warning for each rejected entry.
    """
    if not isinstance(raw_results, list):
        return []

    valid: list[ValidationResult] = []
    seen: set[str] = set()
    for item in raw_results:
        if not isinstance(item, dict):
            continue
        rule_id = str(item.get("ruleId") or item.get("rule_id") or "").strip().upper()
        if rule_id not in KNOWN_RULES:
            logger.warning("Deep audit: rejected unknown rule id %r", rule_id)
            continue
        if rule_id in seen:
            logger.warning("Deep audit: dropped duplicate rule id %r", rule_id)
            continue

        severity = _SEVERITY_ALIASES.get(str(item.get("severity", "")).strip().upper())
        outcome = str(item.get("result", "")).strip().upper()
        if severity is None or outcome not in {"PASS", "FAIL"}:
            logger.warning("Deep audit: rejected malformed result for %s", rule_id)
            continue

        seen.add(rule_id)
        valid.append(
            ValidationResult(
                rule_id=rule_id,
                rule_name=str(item.get("ruleName") or KNOWN_RULES[rule_id]),
                severity=severity,
                result=RuleOutcome(outcome),
                details=str(item.get("details") or "") or None,
            )
        )
    return valid
