"""Tenant-editable runtime settings: notification rules, audit prompt and policies."""

from __future__ import annotations

import logging
import uuid
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator
from pydantic.alias_generators import to_camel

logger = logging.getLogger(__name__)


class NotificationTrigger(str, Enum):
    AUDIT_FAILED = "AUDIT_FAILED"
    HIGH_RISK_DETECTED = "HIGH_RISK_DETECTED"
    INVOICE_APPROVED = "INVOICE_APPROVED"
    INVOICE_REJECTED = "INVOICE_REJECTED"


class _SettingsModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class NotificationRule(_SettingsModel):
    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    trigger: NotificationTrigger
    in_app_enabled: bool = True
    email_enabled: bool = False
    recipients: list[str] = Field(default_factory=list)

    @field_validator("recipients", mode="before")
    @classmethod
    def _split_recipients(cls, value):
        if value is None:
            return []
        if isinstance(value, str):
            return [item.strip() for item in value.split(",") if item.strip()]
        return [str(item).strip() for item in value if str(item).strip()]


class PolicyDocument(_SettingsModel):
    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    name: str
    mime_type: str = "application/pdf"
    data: str  # base64
    size: int = 0


class AuditPromptConfig(_SettingsModel):
    price_reasonableness: str = (
        "Compare unit prices against the applicable price guide and market rates. "
        "Flag any service more than 10% above benchmark, allowing for remote-area loading."
    )
    fraud_indicators: str = (
        "Look for round dollar amounts, sequential invoice numbers, vague descriptions and duplicate line items."
    )
    consistency_check: str = (
        "Check that line totals, quantities and the invoice total are arithmetically consistent."
    )
    contractor_compliance: str = (
        "Check the supplier against the approved contractor list and flag missing, suspended or "
        "review-pending suppliers."
    )
    risk_assessment: str = (
        "Assign a risk score (0-100). Score > 70 is HIGH, score > 30 is MEDIUM. "
        "Justify the score by citing the specific rules involved."
    )

    def sections(self) -> list[str]:
        return [
            self.price_reasonableness,
            self.fraud_indicators,
            self.contractor_compliance,
            self.consistency_check,
            self.risk_assessment,
        ]


class AppSettings(_SettingsModel):
    notification_rules: list[NotificationRule] = Field(default_factory=list)
    audit_prompt: AuditPromptConfig = Field(default_factory=AuditPromptConfig)
    policy_documents: str = ""
    policy_files: list[PolicyDocument] = Field(default_factory=list)


def load_app_settings(raw: dict[str, Any] | None) -> AppSettings:
    """Validate persisted settings JSON and merge defaults.

    Missing sections fall back to defaults, rules with an unknown trigger are
    dropped, and duplicate triggers collapse to the last occurrence.
    """
    if not raw:
        return AppSettings()

    data = dict(raw)
    rules_raw = data.pop("notificationRules", None)
    if rules_raw is None:
        rules_raw = data.pop("notification_rules", None)

    rules_by_trigger: dict[NotificationTrigger, NotificationRule] = {}
    for item in rules_raw or []:
        try:
            rule = NotificationRule.model_validate(item)
        except ValidationError:
            logger.warning("Dropping invalid notification rule: %r", item)
            continue
        rules_by_trigger[rule.trigger] = rule

    # Sections absent from the stored prompt keep their defaults; an empty
    # string disables that section.
    prompt_raw = data.pop("auditPrompt", None) or data.pop("audit_prompt", None) or {}

    settings = AppSettings.model_validate(data)
    settings.notification_rules = list(rules_by_trigger.values())
    settings.audit_prompt = AuditPromptConfig.model_validate(prompt_raw)
    return settings
