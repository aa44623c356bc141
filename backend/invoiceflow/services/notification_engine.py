"""Trigger -> rule -> channel notification dispatch.

Each trigger has at most one ``NotificationRule`` per tenant. In-app messages
go to the inbox, emails go to every configured recipient through the email
gateway. Recipients are independent: one failed send never stops the next.
Dispatch is best effort and runs after the status change it reports on.
"""

from __future__ import annotations

import asyncio
import hashlib
import json
import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from threading import Lock
from typing import TYPE_CHECKING, Any, Callable, Coroutine, Optional, Protocol

from sqlalchemy import insert, select, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.orm import Session

from invoiceflow.errors import NotificationDispatchError
from invoiceflow.models.records import InAppNotification
from invoiceflow.schemas.invoice import ClientProfile, Invoice, RiskAssessment, ValidationResult
from invoiceflow.schemas.settings import AppSettings, NotificationRule, NotificationTrigger
from invoiceflow.services.email_gateway import EmailGateway
from invoiceflow.services.stores import SettingsStore

if TYPE_CHECKING:
    from invoiceflow.services.transition_service import AuditRecorder

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Rules
# ---------------------------------------------------------------------------


def find_rule(settings: AppSettings, trigger: NotificationTrigger) -> NotificationRule:
    """Return the rule for *trigger*; a missing rule means in-app only."""
    for rule in settings.notification_rules:
        if rule.trigger == trigger:
            return rule
    return NotificationRule(trigger=trigger, in_app_enabled=True, email_enabled=False, recipients=[])


def upsert_rule(
    settings: AppSettings,
    trigger: NotificationTrigger,
    *,
    in_app_enabled: Optional[bool] = None,
    email_enabled: Optional[bool] = None,
    recipients: Any = None,
) -> NotificationRule:
    """Look up the rule for *trigger* (creating it if absent) and patch the given fields."""
    rule = next((r for r in settings.notification_rules if r.trigger == trigger), None)
    if rule is None:
        rule = NotificationRule(trigger=trigger)
        settings.notification_rules.append(rule)

    if in_app_enabled is not None:
        rule.in_app_enabled = in_app_enabled
    if email_enabled is not None:
        rule.email_enabled = email_enabled
    if recipients is not None:
        rule.recipients = NotificationRule.model_validate({"trigger": trigger, "recipients": recipients}).recipients
    return rule


# ---------------------------------------------------------------------------
# Messages
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class NotificationMessage:
    title: str
    message: str
    subject: str
    body: str
    level: str = "info"


def audit_failed_message(invoice: Invoice, failures: list[ValidationResult]) -> NotificationMessage:
    names = ", ".join(r.rule_name or r.rule_id for r in failures)
    return NotificationMessage(
        title=f"Exception: {invoice.supplier_name}",
        message=f"Validation failed: {names}",
        subject=f"Action Required: Audit Failed for {invoice.invoice_number}",
        body=(
            f"System validation failed for invoice {invoice.invoice_number} from {invoice.supplier_name}. "
            f"Reasons: {names}. Please review in the dashboard."
        ),
        level="error",
    )


def high_risk_message(invoice: Invoice, risk: RiskAssessment) -> NotificationMessage:
    return NotificationMessage(
        title=f"High risk: {invoice.supplier_name}",
        message=f"Risk score {risk.score}/100 on invoice {invoice.invoice_number}",
        subject=f"URGENT: High Risk Invoice Detected - {invoice.supplier_name}",
        body=(
            f"AI assessment flag: {risk.score}/100. Justification: {risk.justification}. "
            "Log in to review."
        ),
        level="warning",
    )


def approved_message(invoice: Invoice) -> NotificationMessage:
    return NotificationMessage(
        title=f"Approved: {invoice.supplier_name}",
        message=f"Invoice {invoice.invoice_number} approved",
        subject=f"Invoice Approved: {invoice.invoice_number}",
        body=(
            f"Invoice {invoice.invoice_number} from {invoice.supplier_name} "
            f"(${invoice.total_amount:,.2f}) has been approved for payment."
        ),
        level="success",
    )


def rejected_message(invoice: Invoice) -> NotificationMessage:
    return NotificationMessage(
        title=f"Rejected: {invoice.supplier_name}",
        message=f"Invoice {invoice.invoice_number} rejected",
        subject=f"Invoice Rejected: {invoice.invoice_number}",
        body=f"Rejection processed for invoice {invoice.invoice_number} from {invoice.supplier_name}.",
        level="warning",
    )


def client_courtesy_message(invoice: Invoice, client: ClientProfile) -> tuple[str, str]:
    subject = f"Update: Invoice Processed for {invoice.supplier_name}"
    body = (
        f"Dear {client.name},\n\n"
        f"We have approved the invoice from {invoice.supplier_name} for ${invoice.total_amount:,.2f}. "
        "It will be paid in the next cycle.\n\nRegards,\nInvoiceFlow Team"
    )
    return subject, body


# ---------------------------------------------------------------------------
# In-app inbox
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class InAppMessage:
    tenant_id: str
    trigger: str
    title: str
    message: str
    level: str = "info"
    target_id: Optional[str] = None


def _canonical_json(data: Any) -> str:
    return json.dumps(data, sort_keys=True, separators=(",", ":"), ensure_ascii=True)


def _dedupe_key(item: InAppMessage) -> str:
    raw = _canonical_json(
        {
            "tenant_id": item.tenant_id,
            "trigger": item.trigger,
            "target_id": item.target_id,
            "title": item.title,
            "message": item.message,
        }
    )
    digest = hashlib.sha256(raw.encode("utf-8")).hexdigest()
    return f"{item.trigger}:{item.target_id or '-'}:{digest[:16]}"


class InAppInbox(Protocol):
    def enqueue(self, item: InAppMessage) -> bool: ...

    def list(self, tenant_id: str, *, unread_only: bool = False) -> list[dict[str, Any]]: ...

    def mark_read(self, tenant_id: str, notification_id: str) -> bool: ...


class InMemoryInAppInbox:
    def __init__(self) -> None:
        self._items: dict[str, dict[str, Any]] = {}
        self._unread_keys: dict[str, str] = {}
        self._lock = Lock()

    def enqueue(self, item: InAppMessage) -> bool:
        key = _dedupe_key(item)
        with self._lock:
            if key in self._unread_keys:
                return False
            notification_id = str(uuid.uuid4())
            self._unread_keys[key] = notification_id
            self._items[notification_id] = {
                "id": notification_id,
                "dedupe_key": key,
                "tenant_id": item.tenant_id,
                "trigger": item.trigger,
                "level": item.level,
                "title": item.title,
                "message": item.message,
                "target_id": item.target_id,
                "read_at": None,
                "created_at": datetime.now(timezone.utc),
            }
        return True

    def list(self, tenant_id: str, *, unread_only: bool = False) -> list[dict[str, Any]]:
        with self._lock:
            items = [dict(v) for v in self._items.values() if v["tenant_id"] == tenant_id]
        if unread_only:
            items = [v for v in items if v["read_at"] is None]
        for v in items:
            v.pop("dedupe_key", None)
        return sorted(items, key=lambda v: v["created_at"], reverse=True)

    def mark_read(self, tenant_id: str, notification_id: str) -> bool:
        with self._lock:
            item = self._items.get(notification_id)
            if item is None or item["tenant_id"] != tenant_id or item["read_at"] is not None:
                return False
            item["read_at"] = datetime.now(timezone.utc)
            self._unread_keys.pop(item["dedupe_key"], None)
        return True


class SqlInAppInbox:
    def __init__(self, session_factory: Callable[[], Session]) -> None:
        self._session_factory = session_factory

    def enqueue(self, item: InAppMessage) -> bool:
        """Insert the notification; an identical unread one is ignored via dedupe_key.

        ``mark_read`` retires the key of a read row, so only unread rows take part.
        """
        values = {
            "tenant_id": item.tenant_id,
            "trigger": item.trigger,
            "level": item.level,
            "title": item.title,
            "message": item.message,
            "target_id": item.target_id,
            "dedupe_key": _dedupe_key(item),
        }
        db = self._session_factory()
        try:
            dialect_name = getattr(getattr(db.bind, "dialect", None), "name", "") or ""
            table = InAppNotification.__table__
            # Core inserts skip ORM-side column defaults.
            values["id"] = str(uuid.uuid4())

            if dialect_name == "postgresql":
                stmt = pg_insert(table).values(**values).on_conflict_do_nothing(index_elements=["dedupe_key"])
                created = bool(db.execute(stmt).rowcount)
            elif dialect_name == "sqlite":
                stmt = sqlite_insert(table).values(**values).prefix_with("OR IGNORE")
                created = bool(db.execute(stmt).rowcount)
            else:
                # Fallback: check then insert (may still race).
                existing = db.execute(
                    select(InAppNotification.id).where(InAppNotification.dedupe_key == values["dedupe_key"])
                ).scalar_one_or_none()
                created = existing is None
                if created:
                    db.execute(insert(table).values(**values))
            db.commit()
            return created
        finally:
            db.close()

    def list(self, tenant_id: str, *, unread_only: bool = False) -> list[dict[str, Any]]:
        db = self._session_factory()
        try:
            stmt = (
                select(InAppNotification)
                .where(InAppNotification.tenant_id == tenant_id)
                .order_by(InAppNotification.created_at.desc())
            )
            if unread_only:
                stmt = stmt.where(InAppNotification.read_at.is_(None))
            rows = db.execute(stmt).scalars().all()
            return [
                {
                    "id": row.id,
                    "tenant_id": row.tenant_id,
                    "trigger": row.trigger,
                    "level": row.level,
                    "title": row.title,
                    "message": row.message,
                    "target_id": row.target_id,
                    "read_at": row.read_at,
                    "created_at": row.created_at,
                }
                for row in rows
            ]
        finally:
            db.close()

    def mark_read(self, tenant_id: str, notification_id: str) -> bool:
        db = self._session_factory()
        try:
            result = db.execute(
                update(InAppNotification)
                .where(
                    InAppNotification.id == notification_id,
                    InAppNotification.tenant_id == tenant_id,
                    InAppNotification.read_at.is_(None),
                )
                # Retire the key so a later identical notice is stored again.
                .values(
                    read_at=datetime.now(timezone.utc),
                    dedupe_key=InAppNotification.dedupe_key + ":read:" + InAppNotification.id,
                )
            )
            db.commit()
            return bool(result.rowcount)
        finally:
            db.close()


# ---------------------------------------------------------------------------
# Engine
# ---------------------------------------------------------------------------


@dataclass
class DispatchReport:
    trigger: NotificationTrigger
    in_app_enqueued: bool = False
    attempted: int = 0
    sent: list[str] = field(default_factory=list)
    failures: list[NotificationDispatchError] = field(default_factory=list)

    @property
    def failed(self) -> list[str]:
        return [f.recipient for f in self.failures]

    def as_dict(self) -> dict[str, Any]:
        return {
            "trigger": self.trigger.value,
            "in_app_enqueued": self.in_app_enqueued,
            "attempted": self.attempted,
            "sent": len(self.sent),
            "failed": len(self.failures),
        }


class NotificationEngine:
    def __init__(
        self,
        settings_store: SettingsStore,
        inbox: InAppInbox,
        gateway: EmailGateway,
        *,
        recorder: Optional["AuditRecorder"] = None,
    ) -> None:
        self._settings_store = settings_store
        self._inbox = inbox
        self._gateway = gateway
        self._recorder = recorder
        self._tasks: set[asyncio.Task] = set()

    @property
    def inbox(self) -> InAppInbox:
        return self._inbox

    async def dispatch(
        self,
        trigger: NotificationTrigger,
        invoice: Invoice,
        message: NotificationMessage,
    ) -> DispatchReport:
        rule = find_rule(self._settings_store.load(invoice.tenant_id), trigger)
        report = DispatchReport(trigger=trigger)

        if rule.in_app_enabled:
            report.in_app_enqueued = self._enqueue_in_app(trigger, invoice, message)

        if rule.email_enabled and rule.recipients:
            for recipient in rule.recipients:
                await self._send(report, invoice, recipient, message.subject, message.body)

        logger.info("Notification dispatch invoice=%s %s", invoice.id, report.as_dict())
        return report

    async def notify_approved(self, invoice: Invoice, client: Optional[ClientProfile]) -> DispatchReport:
        report = DispatchReport(trigger=NotificationTrigger.INVOICE_APPROVED)
        try:
            report = await self.dispatch(NotificationTrigger.INVOICE_APPROVED, invoice, approved_message(invoice))
        finally:
            # The client courtesy email does not depend on the staff rule.
            if client is not None and client.email:
                subject, body = client_courtesy_message(invoice, client)
                await self._send(report, invoice, client.email, subject, body)
        return report

    def schedule(self, coro: Coroutine[Any, Any, DispatchReport], *, label: str) -> asyncio.Task:
        """Run a dispatch in the background; the caller does not wait for it."""
        task = asyncio.create_task(coro, name=f"notify:{label}")
        self._tasks.add(task)
        task.add_done_callback(self._finished)
        return task

    async def drain(self) -> None:
        """Wait for every scheduled dispatch (shutdown and tests)."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    def _finished(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            logger.warning("Notification task %s was cancelled", task.get_name())
            return
        exc = task.exception()
        if exc is not None:
            logger.error("Notification task %s failed", task.get_name(), exc_info=exc)

    def _enqueue_in_app(self, trigger: NotificationTrigger, invoice: Invoice, message: NotificationMessage) -> bool:
        try:
            return self._inbox.enqueue(
                InAppMessage(
                    tenant_id=invoice.tenant_id,
                    trigger=trigger.value,
                    title=message.title,
                    message=message.message,
                    level=message.level,
                    target_id=invoice.id,
                )
            )
        except Exception:
            logger.exception("In-app notification failed for invoice %s trigger %s", invoice.id, trigger.value)
            return False

    async def _send(self, report: DispatchReport, invoice: Invoice, recipient: str, subject: str, body: str) -> None:
        report.attempted += 1
        try:
            ok = await self._gateway.send(recipient, subject, body)
            reason = "gateway returned false"
        except Exception as exc:
            ok = False
            reason = f"{exc.__class__.__name__}: {exc}"

        if ok:
            report.sent.append(recipient)
            return

        failure = NotificationDispatchError("email", recipient, reason)
        report.failures.append(failure)
        logger.warning("%s (invoice=%s trigger=%s)", failure, invoice.id, report.trigger.value)
        if self._recorder is not None:
            try:
                self._recorder.record(
                    entity_type="invoice",
                    entity_id=invoice.id,
                    action="NOTIFICATION_SEND_FAILED",
                    metadata={"channel": "email", "to": recipient, "trigger": report.trigger.value, "reason": reason},
                )
            except Exception:
                logger.exception("Failed to record notification failure for invoice %s", invoice.id)
