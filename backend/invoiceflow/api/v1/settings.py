"""Tenant notification rules and the in-app inbox."""

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, HTTPException

from invoiceflow.core.dependencies import get_pipeline, get_tenant_id
from invoiceflow.schemas.api import (
    InAppNotificationOut,
    InAppNotificationsResponse,
    NotificationRuleOut,
    NotificationRulePatch,
    NotificationRulesResponse,
)
from invoiceflow.schemas.settings import NotificationTrigger
from invoiceflow.services.audit_pipeline import AuditPipeline
from invoiceflow.services.notification_engine import find_rule, upsert_rule

logger = logging.getLogger(__name__)

router = APIRouter()


def _rule_out(rule) -> NotificationRuleOut:
    return NotificationRuleOut.model_validate(rule.model_dump())


@router.get("/settings/notification-rules", response_model=NotificationRulesResponse)
async def list_notification_rules(
    tenant_id: str = Depends(get_tenant_id),
    pipeline: AuditPipeline = Depends(get_pipeline),
):
    app_settings = pipeline.settings_store.load(tenant_id)
    # Every trigger is listed; unconfigured ones show the in-app-only default.
    items = [_rule_out(find_rule(app_settings, trigger)) for trigger in NotificationTrigger]
    return NotificationRulesResponse(items=items)


@router.put("/settings/notification-rules/{trigger}", response_model=NotificationRuleOut)
async def update_notification_rule(
    trigger: NotificationTrigger,
    payload: NotificationRulePatch,
    tenant_id: str = Depends(get_tenant_id),
    pipeline: AuditPipeline = Depends(get_pipeline),
):
    app_settings = pipeline.settings_store.load(tenant_id)
    rule = upsert_rule(
        app_settings,
        trigger,
        in_app_enabled=payload.in_app_enabled,
        email_enabled=payload.email_enabled,
        recipients=payload.recipients,
    )
    pipeline.settings_store.save(tenant_id, app_settings)
    logger.info(
        "Notification rule updated tenant=%s trigger=%s in_app=%s email=%s recipients=%s",
        tenant_id,
        trigger.value,
        rule.in_app_enabled,
        rule.email_enabled,
        len(rule.recipients),
    )
    return _rule_out(rule)


@router.get("/notifications", response_model=InAppNotificationsResponse)
async def list_notifications(
    unread_only: bool = False,
    tenant_id: str = Depends(get_tenant_id),
    pipeline: AuditPipeline = Depends(get_pipeline),
):
    rows = pipeline.notifications.inbox.list(tenant_id, unread_only=unread_only)
    return InAppNotificationsResponse(items=[InAppNotificationOut.model_validate(row) for row in rows])


@router.post("/notifications/{notification_id}/read", status_code=204)
async def mark_notification_read(
    notification_id: str,
    tenant_id: str = Depends(get_tenant_id),
    pipeline: AuditPipeline = Depends(get_pipeline),
):
    if not pipeline.notifications.inbox.mark_read(tenant_id, notification_id):
        raise HTTPException(404, "Notification not found or already read")
