"""Audit pipeline: intake, rule engine, deep audit, aggregation and user actions.

One audit per invoice may be in flight at a time. A failed deep audit arms a
retry cooldown and leaves the status where it was. Notifications are scheduled
only after the invoice has been written back to the store.
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from datetime import date, datetime, timezone
from typing import Optional

from invoiceflow.core.config import Settings
from invoiceflow.errors import (
    AuditCooldownError,
    AuditInProgressError,
    ConfigurationError,
    EscalationNotAllowedError,
    InvalidTransitionError,
    InvoiceNotFoundError,
)
from invoiceflow.schemas.invoice import (
    TERMINAL_STATUSES,
    ClientProfile,
    Invoice,
    InvoiceIntake,
    InvoiceStatus,
    PurchaseOrder,
    RejectionDrafts,
    RiskLevel,
)
from invoiceflow.schemas.settings import AppSettings, NotificationTrigger
from invoiceflow.services.ai.common.providers.base import Attachment
from invoiceflow.services.ai.deep_audit.contracts import AuditContext
from invoiceflow.services.ai.deep_audit.service import DeepAuditService
from invoiceflow.services.ai.escalation.service import EscalationService
from invoiceflow.services.ai.rejection.service import RejectionDraftService
from invoiceflow.services.ai.spending.service import SpendingAnalysisService
from invoiceflow.services.ai.supplier_check.service import SupplierCheckService
from invoiceflow.services.notification_engine import (
    NotificationEngine,
    NotificationMessage,
    audit_failed_message,
    high_risk_message,
    rejected_message,
)
from invoiceflow.services.retry_policy import RetryCooldown
from invoiceflow.services.risk_aggregator import InvoiceViewSync, aggregate_audit
from invoiceflow.services.rule_engine import SystemCheck, validate_invoice_against_system
from invoiceflow.services.stores import InvoiceStore, ReferenceRegistry, SettingsStore
from invoiceflow.services.transition_service import (
    ACTOR_SYSTEM_AUDIT,
    ACTOR_USER,
    AuditRecorder,
    apply_transition,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RetryStatus:
    invoice_id: str
    in_progress: bool
    remaining_seconds: float

    @property
    def eligible(self) -> bool:
        return not self.in_progress and self.remaining_seconds == 0.0


class AuditPipeline:
    def __init__(
        self,
        *,
        settings: Settings,
        store: InvoiceStore,
        settings_store: SettingsStore,
        registry: ReferenceRegistry,
        deep_audit: DeepAuditService,
        spending: SpendingAnalysisService,
        escalation: EscalationService,
        drafter: RejectionDraftService,
        supplier_check: SupplierCheckService,
        notifications: NotificationEngine,
        recorder: Optional[AuditRecorder] = None,
        cooldown: Optional[RetryCooldown] = None,
        views: Optional[InvoiceViewSync] = None,
    ) -> None:
        self.settings = settings
        self.store = store
        self.settings_store = settings_store
        self.registry = registry
        self.notifications = notifications
        self.views = views or InvoiceViewSync()
        self._deep_audit = deep_audit
        self._spending = spending
        self._escalation = escalation
        self._drafter = drafter
        self._supplier_check = supplier_check
        self._recorder = recorder
        self._cooldown = cooldown or RetryCooldown(settings.audit_retry_cooldown_seconds)
        self._in_flight: set[str] = set()
        self._escalating: set[str] = set()

    # ------------------------------------------------------------------
    # Lookups
    # ------------------------------------------------------------------

    def get_invoice(self, invoice_id: str, tenant_id: Optional[str] = None) -> Invoice:
        invoice = self.store.get(invoice_id)
        if invoice is None or (tenant_id is not None and invoice.tenant_id != tenant_id):
            raise InvoiceNotFoundError(invoice_id)
        return invoice

    def list_invoices(self, tenant_id: str, status: Optional[InvoiceStatus] = None) -> list[Invoice]:
        invoices = self.store.list(tenant_id)
        if status is not None:
            invoices = [inv for inv in invoices if inv.status == status]
        return invoices

    def _purchase_order(self, invoice: Invoice) -> Optional[PurchaseOrder]:
        po_number = invoice.po_number
        if not po_number:
            return None
        return self.registry.get_purchase_order(po_number)

    def _client_for(self, invoice: Invoice, po: Optional[PurchaseOrder] = None) -> Optional[ClientProfile]:
        """Client profile behind the invoice PO, or None when it cannot be looked up."""
        try:
            po = po or self._purchase_order(invoice)
            if po is None:
                return None
            return self.registry.get_client(po.client_id)
        except Exception:
            logger.warning(
                "Client lookup failed for invoice %s; continuing without a client profile",
                invoice.id,
                exc_info=True,
            )
            return None

    def _save(self, invoice: Invoice) -> None:
        self.store.replace(invoice)
        synced = self.views.sync(invoice)
        if synced:
            logger.debug("Synced %s open view(s) of invoice %s", synced, invoice.id)

    def _record(self, invoice: Invoice, action: str, **kwargs) -> None:
        if self._recorder is None:
            return
        self._recorder.record(entity_type="invoice", entity_id=invoice.id, action=action, **kwargs)

    def _notify(self, trigger: NotificationTrigger, invoice: Invoice, message: NotificationMessage) -> None:
        self.notifications.schedule(
            self.notifications.dispatch(trigger, invoice, message),
            label=f"{trigger.value}:{invoice.id}",
        )

    # ------------------------------------------------------------------
    # Intake
    # ------------------------------------------------------------------

    def intake(self, tenant_id: str, extracted: InvoiceIntake) -> Invoice:
        today = self.settings.audit_reference_date or date.today()
        invoice = Invoice(
            id=f"inv-{uuid.uuid4().hex[:12]}",
            tenant_id=tenant_id,
            intake_id=f"INV-{today.strftime('%Y%m%d')}-SCAN",
            supplier_name=extracted.supplier_name,
            supplier_abn=extracted.supplier_abn,
            invoice_number=extracted.invoice_number,
            invoice_date=extracted.invoice_date or today.isoformat(),
            total_amount=extracted.total_amount,
            po_number_extracted=extracted.po_number_extracted,
            status=InvoiceStatus.RECEIVED,
            confidence_score=extracted.confidence_score,
            file_url=extracted.file_url,
            line_items=extracted.line_items,
            raw_content=extracted.raw_content,
        )
        apply_transition(
            invoice,
            InvoiceStatus.EXTRACTED,
            actor_type=ACTOR_SYSTEM_AUDIT,
            recorder=self._recorder,
            metadata={"source": "intake"},
        )
        self.store.replace(invoice)
        logger.info("Invoice %s received for tenant %s po=%s", invoice.id, tenant_id, invoice.po_number)
        return invoice

    # ------------------------------------------------------------------
    # Audit
    # ------------------------------------------------------------------

    def retry_status(self, invoice_id: str) -> RetryStatus:
        return RetryStatus(
            invoice_id=invoice_id,
            in_progress=invoice_id in self._in_flight,
            remaining_seconds=round(self._cooldown.remaining(invoice_id), 3),
        )

    def _audit_context(self, invoice: Invoice, system_check: SystemCheck) -> AuditContext:
        try:
            app_settings = self.settings_store.load(invoice.tenant_id)
        except Exception:
            logger.warning("Settings load failed for tenant %s; using defaults", invoice.tenant_id, exc_info=True)
            app_settings = AppSettings()
        po = system_check.purchase_order
        return AuditContext(
            purchase_order=po,
            client=self._client_for(invoice, po) if po is not None else None,
            reference_date=self.settings.audit_reference_date,
            prompt_config=app_settings.audit_prompt,
            policy_text=app_settings.policy_documents,
            policy_files=[Attachment(name=f.name, mime_type=f.mime_type, data=f.data) for f in app_settings.policy_files],
        )

    async def run_audit(self, invoice_id: str, *, tenant_id: Optional[str] = None) -> Invoice:
        """Run rule engine, deep audit and aggregation for one invoice.

        Raises ``AuditInProgressError`` while another run for the same invoice
        is outstanding and ``AuditCooldownError`` during the retry cooldown.
        """
        if invoice_id in self._in_flight:
            raise AuditInProgressError(invoice_id)
        remaining = self._cooldown.remaining(invoice_id)
        if remaining > 0:
            raise AuditCooldownError(invoice_id, remaining)

        invoice = self.get_invoice(invoice_id, tenant_id)
        if invoice.status in TERMINAL_STATUSES:
            raise InvalidTransitionError(invoice.status.value, "AUDIT")

        self._in_flight.add(invoice_id)
        try:
            return await self._run_audit(invoice)
        finally:
            self._in_flight.discard(invoice_id)

    async def _run_audit(self, invoice: Invoice) -> Invoice:
        system_check = validate_invoice_against_system(invoice, self.registry)
        context = self._audit_context(invoice, system_check)
        outcome = await self._deep_audit.run(invoice, context)

        if outcome.errored:
            self._cooldown.arm(invoice.id)
        else:
            self._cooldown.reset(invoice.id)

        aggregation = aggregate_audit(invoice, system_check, outcome)
        merged = aggregation.invoice

        if not outcome.errored:
            self._advance_through_matching(merged, system_check)
            apply_transition(
                merged,
                aggregation.target_status,
                actor_type=ACTOR_SYSTEM_AUDIT,
                recorder=self._recorder,
                metadata={"risk_level": outcome.risk_assessment.level.value, "risk_score": outcome.risk_assessment.score},
            )
        self._save(merged)

        if system_check.failures:
            self._notify(NotificationTrigger.AUDIT_FAILED, merged, audit_failed_message(merged, system_check.failures))
        if outcome.risk_assessment.level == RiskLevel.HIGH:
            self._notify(NotificationTrigger.HIGH_RISK_DETECTED, merged, high_risk_message(merged, outcome.risk_assessment))

        if aggregation.run_spending_analysis and system_check.purchase_order is not None:
            merged = await self._attach_spending_analysis(merged, system_check.purchase_order)

        logger.info(
            "Audit complete invoice=%s status=%s errored=%s",
            merged.id,
            merged.status.value,
            outcome.errored,
        )
        return merged

    def _advance_through_matching(self, invoice: Invoice, system_check: SystemCheck) -> None:
        # Walk the pipeline states the rule engine just established before the final verdict.
        if invoice.status == InvoiceStatus.EXTRACTED and system_check.matched_po:
            apply_transition(invoice, InvoiceStatus.MATCHED, actor_type=ACTOR_SYSTEM_AUDIT, recorder=self._recorder)
        if invoice.status == InvoiceStatus.MATCHED and not system_check.failures:
            apply_transition(invoice, InvoiceStatus.VALIDATED, actor_type=ACTOR_SYSTEM_AUDIT, recorder=self._recorder)

    async def _attach_spending_analysis(self, invoice: Invoice, po: PurchaseOrder) -> Invoice:
        if not self.settings.enable_spending_analysis:
            return invoice
        try:
            analysis = await self._spending.analyze(invoice, po)
        except ConfigurationError as exc:
            logger.warning("Spending analysis skipped for invoice %s: %s", invoice.id, exc)
            return invoice
        updated = invoice.model_copy(deep=True)
        updated.spending_analysis = analysis
        self._save(updated)
        return updated

    async def maybe_auto_audit(self, invoice_id: str) -> Optional[Invoice]:
        """Audit a NEEDS_REVIEW invoice that has no reasoning results yet.

        Returns ``None`` without raising when the invoice does not qualify or
        an audit is already running or cooling down.
        """
        invoice = self.get_invoice(invoice_id)
        if invoice.status != InvoiceStatus.NEEDS_REVIEW or invoice.has_reasoning_results:
            return None
        if not self.retry_status(invoice_id).eligible:
            logger.debug("Auto audit skipped for invoice %s: guarded", invoice_id)
            return None
        return await self.run_audit(invoice_id)

    async def run_background_audit(self, invoice_id: str) -> None:
        try:
            await self.run_audit(invoice_id)
        except (AuditInProgressError, AuditCooldownError) as exc:
            logger.info("Background audit skipped: %s", exc)
        except Exception:
            logger.exception("Background audit failed for invoice %s", invoice_id)

    # ------------------------------------------------------------------
    # Escalation and rejection
    # ------------------------------------------------------------------

    async def escalate(self, invoice_id: str, *, tenant_id: Optional[str] = None, actor_id: Optional[str] = None) -> Invoice:
        if invoice_id in self._escalating:
            raise EscalationNotAllowedError("An escalation review is already running for this invoice")
        invoice = self.get_invoice(invoice_id, tenant_id)

        self._escalating.add(invoice_id)
        try:
            review = await self._escalation.review(invoice, self._client_for(invoice))
        finally:
            self._escalating.discard(invoice_id)

        # The review is advisory: status is left untouched.
        updated = self.get_invoice(invoice_id)
        updated.chief_auditor_review = review
        self._save(updated)
        self._record(
            updated,
            "ESCALATION_REVIEW",
            new_value={"determination": review.determination.value, "confidence": review.confidence},
            actor_type=ACTOR_USER if actor_id else ACTOR_SYSTEM_AUDIT,
            actor_id=actor_id,
        )
        return updated

    async def prepare_rejection(self, invoice_id: str, *, tenant_id: Optional[str] = None) -> RejectionDrafts:
        invoice = self.get_invoice(invoice_id, tenant_id)
        if invoice.status in TERMINAL_STATUSES:
            raise InvalidTransitionError(invoice.status.value, InvoiceStatus.FAILED.value)
        updated, drafts = await self._drafter.get_or_create(invoice, self._client_for(invoice))
        self.views.sync(updated)
        return drafts

    async def confirm_rejection(self, invoice_id: str, *, tenant_id: Optional[str] = None, actor_id: Optional[str] = None) -> Invoice:
        invoice = self.get_invoice(invoice_id, tenant_id)
        apply_transition(
            invoice,
            InvoiceStatus.FAILED,
            actor_type=ACTOR_USER,
            actor_id=actor_id,
            recorder=self._recorder,
            metadata={"has_drafts": invoice.rejection_drafts is not None},
        )
        self._save(invoice)
        self._notify(NotificationTrigger.INVOICE_REJECTED, invoice, rejected_message(invoice))
        return invoice

    # ------------------------------------------------------------------
    # Supplier check
    # ------------------------------------------------------------------

    async def verify_supplier(self, invoice_id: str, *, tenant_id: Optional[str] = None) -> Invoice:
        """Attach a supplier background check to the invoice. Status is not touched."""
        invoice = self.get_invoice(invoice_id, tenant_id)
        verification = await self._supplier_check.verify(invoice)

        updated = self.get_invoice(invoice_id)
        updated.supplier_verification = verification
        self._save(updated)
        self._record(
            updated,
            "SUPPLIER_CHECK",
            new_value={"available": verification.available, "live_search": verification.live_search},
        )
        return updated

    # ------------------------------------------------------------------
    # Approval and posting
    # ------------------------------------------------------------------

    async def approve(self, invoice_id: str, *, tenant_id: Optional[str] = None, actor_id: Optional[str] = None) -> Invoice:
        invoice = self.get_invoice(invoice_id, tenant_id)
        if invoice.status in TERMINAL_STATUSES:
            raise InvalidTransitionError(invoice.status.value, InvoiceStatus.APPROVED.value)
        apply_transition(
            invoice,
            InvoiceStatus.APPROVED,
            actor_type=ACTOR_USER,
            actor_id=actor_id,
            recorder=self._recorder,
            metadata={"approved_at": datetime.now(timezone.utc).isoformat()},
        )
        self._save(invoice)
        self.notifications.schedule(
            self.notifications.notify_approved(invoice, self._client_for(invoice)),
            label=f"{NotificationTrigger.INVOICE_APPROVED.value}:{invoice.id}",
        )
        return invoice

    def post(self, invoice_id: str, *, tenant_id: Optional[str] = None, actor_id: Optional[str] = None) -> Invoice:
        invoice = self.get_invoice(invoice_id, tenant_id)
        apply_transition(invoice, InvoiceStatus.POSTED, actor_type=ACTOR_USER, actor_id=actor_id, recorder=self._recorder)
        self._save(invoice)
        return invoice

    # ------------------------------------------------------------------
    # Open views
    # ------------------------------------------------------------------

    def open_view(self, viewer_id: str, invoice_id: str, *, tenant_id: Optional[str] = None) -> Invoice:
        invoice = self.get_invoice(invoice_id, tenant_id)
        self.views.open(viewer_id, invoice)
        return invoice

    def current_view(self, viewer_id: str) -> Optional[Invoice]:
        return self.views.get(viewer_id)

    def close_view(self, viewer_id: str) -> None:
        self.views.close(viewer_id)
