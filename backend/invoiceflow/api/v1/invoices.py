"""Invoice intake, audit and review actions."""

from __future__ import annotations

import logging
from typing import Optional

from fastapi import APIRouter, BackgroundTasks, Depends, Header

from invoiceflow.core.dependencies import get_pipeline, get_tenant_id
from invoiceflow.errors import InvoiceFlowError
from invoiceflow.schemas.api import AuditAccepted, InvoiceListResponse, RetryStatusResponse, UserAction
from invoiceflow.schemas.invoice import Invoice, InvoiceIntake, InvoiceStatus, RejectionDrafts
from invoiceflow.services.audit_pipeline import AuditPipeline

logger = logging.getLogger(__name__)

router = APIRouter()


async def _auto_audit(pipeline: AuditPipeline, invoice_id: str) -> None:
    try:
        await pipeline.maybe_auto_audit(invoice_id)
    except InvoiceFlowError as exc:
        logger.warning("Auto audit for invoice %s did not run: %s", invoice_id, exc)


@router.post("/invoices", status_code=201, response_model=AuditAccepted)
async def create_invoice(
    payload: InvoiceIntake,
    background_tasks: BackgroundTasks,
    audit: bool = True,
    tenant_id: str = Depends(get_tenant_id),
    pipeline: AuditPipeline = Depends(get_pipeline),
):
    invoice = pipeline.intake(tenant_id, payload)
    if audit:
        background_tasks.add_task(pipeline.run_background_audit, invoice.id)
    return AuditAccepted(invoice_id=invoice.id, status=invoice.status.value, audit_scheduled=audit)


@router.get("/invoices", response_model=InvoiceListResponse)
async def list_invoices(
    status: Optional[InvoiceStatus] = None,
    tenant_id: str = Depends(get_tenant_id),
    pipeline: AuditPipeline = Depends(get_pipeline),
):
    items = pipeline.list_invoices(tenant_id, status)
    return InvoiceListResponse(items=items, total=len(items))


@router.get("/invoices/{invoice_id}", response_model=Invoice)
async def get_invoice(
    invoice_id: str,
    background_tasks: BackgroundTasks,
    x_viewer_id: Optional[str] = Header(default=None, alias="X-Viewer-ID"),
    tenant_id: str = Depends(get_tenant_id),
    pipeline: AuditPipeline = Depends(get_pipeline),
):
    if x_viewer_id:
        invoice = pipeline.open_view(x_viewer_id, invoice_id, tenant_id=tenant_id)
    else:
        invoice = pipeline.get_invoice(invoice_id, tenant_id)
    if invoice.status == InvoiceStatus.NEEDS_REVIEW and not invoice.has_reasoning_results:
        background_tasks.add_task(_auto_audit, pipeline, invoice.id)
    return invoice


@router.post("/invoices/{invoice_id}/audit", response_model=Invoice)
async def run_audit(
    invoice_id: str,
    tenant_id: str = Depends(get_tenant_id),
    pipeline: AuditPipeline = Depends(get_pipeline),
):
    return await pipeline.run_audit(invoice_id, tenant_id=tenant_id)


@router.get("/invoices/{invoice_id}/audit/retry", response_model=RetryStatusResponse)
async def audit_retry_status(
    invoice_id: str,
    tenant_id: str = Depends(get_tenant_id),
    pipeline: AuditPipeline = Depends(get_pipeline),
):
    invoice = pipeline.get_invoice(invoice_id, tenant_id)
    status = pipeline.retry_status(invoice_id)
    return RetryStatusResponse(
        invoice_id=status.invoice_id,
        in_progress=status.in_progress,
        remaining_seconds=status.remaining_seconds,
        eligible=status.eligible,
        last_audit_errored=invoice.has_reasoning_error,
    )


@router.post("/invoices/{invoice_id}/escalate", response_model=Invoice)
async def escalate_invoice(
    invoice_id: str,
    payload: Optional[UserAction] = None,
    tenant_id: str = Depends(get_tenant_id),
    pipeline: AuditPipeline = Depends(get_pipeline),
):
    actor_id = payload.actor_id if payload else None
    return await pipeline.escalate(invoice_id, tenant_id=tenant_id, actor_id=actor_id)


@router.post("/invoices/{invoice_id}/rejection-drafts", response_model=RejectionDrafts)
async def prepare_rejection(
    invoice_id: str,
    tenant_id: str = Depends(get_tenant_id),
    pipeline: AuditPipeline = Depends(get_pipeline),
):
    return await pipeline.prepare_rejection(invoice_id, tenant_id=tenant_id)


@router.post("/invoices/{invoice_id}/supplier-check", response_model=Invoice)
async def check_supplier(
    invoice_id: str,
    tenant_id: str = Depends(get_tenant_id),
    pipeline: AuditPipeline = Depends(get_pipeline),
):
    return await pipeline.verify_supplier(invoice_id, tenant_id=tenant_id)


@router.post("/invoices/{invoice_id}/reject", response_model=Invoice)
async def reject_invoice(
    invoice_id: str,
    payload: Optional[UserAction] = None,
    tenant_id: str = Depends(get_tenant_id),
    pipeline: AuditPipeline = Depends(get_pipeline),
):
    actor_id = payload.actor_id if payload else None
    return await pipeline.confirm_rejection(invoice_id, tenant_id=tenant_id, actor_id=actor_id)


@router.post("/invoices/{invoice_id}/approve", response_model=Invoice)
async def approve_invoice(
    invoice_id: str,
    payload: Optional[UserAction] = None,
    tenant_id: str = Depends(get_tenant_id),
    pipeline: AuditPipeline = Depends(get_pipeline),
):
    actor_id = payload.actor_id if payload else None
    return await pipeline.approve(invoice_id, tenant_id=tenant_id, actor_id=actor_id)


@router.post("/invoices/{invoice_id}/post", response_model=Invoice)
async def post_invoice(
    invoice_id: str,
    payload: Optional[UserAction] = None,
    tenant_id: str = Depends(get_tenant_id),
    pipeline: AuditPipeline = Depends(get_pipeline),
):
    actor_id = payload.actor_id if payload else None
    return pipeline.post(invoice_id, tenant_id=tenant_id, actor_id=actor_id)
