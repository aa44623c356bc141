"""Request and response bodies of the HTTP API."""

from __future__ import annotations

from datetime import datetime
from typing import List, Optional, Union

from pydantic import BaseModel, Field

from invoiceflow.schemas.invoice import CamelModel, Invoice
from invoiceflow.schemas.settings import NotificationTrigger


class InvoiceListResponse(BaseModel):
    items: List[Invoice]
    total: int


class AuditAccepted(BaseModel):
    invoice_id: str
    status: str
    audit_scheduled: bool


class RetryStatusResponse(BaseModel):
    invoice_id: str
    in_progress: bool
    remaining_seconds: float
    eligible: bool
    last_audit_errored: bool = False


class UserAction(CamelModel):
    actor_id: Optional[str] = None


class NotificationRulePatch(CamelModel):
    in_app_enabled: Optional[bool] = None
    email_enabled: Optional[bool] = None
    recipients: Optional[Union[str, List[str]]] = None


class NotificationRuleOut(CamelModel):
    id: str
    trigger: NotificationTrigger
    in_app_enabled: bool
    email_enabled: bool
    recipients: List[str] = Field(default_factory=list)


class NotificationRulesResponse(BaseModel):
    items: List[NotificationRuleOut]


class InAppNotificationOut(BaseModel):
    id: str
    trigger: str
    level: str
    title: str
    message: str
    target_id: Optional[str] = None
    read_at: Optional[datetime] = None
    created_at: Optional[datetime] = None


class InAppNotificationsResponse(BaseModel):
    items: List[InAppNotificationOut]
