import abc
import logging
from typing import Any, Callable, Optional

from sqlalchemy.orm import Session

from invoiceflow.core.config import Settings, get_settings
from invoiceflow.errors import InvalidTransitionError
from invoiceflow.models.records import AuditLog
from invoiceflow.schemas.invoice import Invoice, InvoiceStatus
from invoiceflow.utils.alerting import alert_tracker

logger = logging.getLogger(__name__)

ACTOR_SYSTEM_AUDIT = "SYSTEM_AUDIT"
ACTOR_USER = "USER"

ALLOWED_TRANSITIONS = {
    InvoiceStatus.RECEIVED: [
        InvoiceStatus.EXTRACTED,
        InvoiceStatus.NEEDS_REVIEW,
        InvoiceStatus.APPROVED,
        InvoiceStatus.FAILED,
    ],
    InvoiceStatus.EXTRACTED: [
        InvoiceStatus.MATCHED,
        InvoiceStatus.NEEDS_REVIEW,
        InvoiceStatus.APPROVED,
        InvoiceStatus.FAILED,
    ],
    InvoiceStatus.MATCHED: [
        InvoiceStatus.VALIDATED,
        InvoiceStatus.NEEDS_REVIEW,
        InvoiceStatus.APPROVED,
        InvoiceStatus.FAILED,
    ],
    InvoiceStatus.VALIDATED: [InvoiceStatus.NEEDS_REVIEW, InvoiceStatus.APPROVED, InvoiceStatus.FAILED],
    InvoiceStatus.NEEDS_REVIEW: [InvoiceStatus.APPROVED, InvoiceStatus.FAILED],
    InvoiceStatus.APPROVED: [InvoiceStatus.NEEDS_REVIEW, InvoiceStatus.POSTED, InvoiceStatus.FAILED],
    InvoiceStatus.POSTED: [],
    InvoiceStatus.FAILED: [],
}

PII_REDACTION_FALLBACK_FIELDS = {
    "phone",
    "email",
    "address",
    "supplier_abn",
    "supplierabn",
    "tax_id",
}


def _redact_pii(value: Any, redact_keys: set[str]) -> Any:
    if value is None:
        return None
    if isinstance(value, dict):
        redacted = {}
        for key, item in value.items():
            if isinstance(key, str) and key.lower() in redact_keys:
                redacted[key] = "[REDACTED]"
            else:
                redacted[key] = _redact_pii(item, redact_keys)
        return redacted
    if isinstance(value, list):
        return [_redact_pii(item, redact_keys) for item in value]
    return value


def redact_audit_values(settings: Settings, *values: Any) -> list[Any]:
    if not settings.pii_redaction_enabled:
        return list(values)
    configured = {item.lower() for item in settings.pii_redaction_fields}
    redact_keys = configured or set(PII_REDACTION_FALLBACK_FIELDS)
    return [_redact_pii(value, redact_keys) for value in values]


def create_audit_log(
    db: Session,
    *,
    entity_type: str,
    entity_id: str,
    action: str,
    old_value: Optional[dict[str, Any]],
    new_value: Optional[dict[str, Any]],
    actor_type: str,
    actor_id: Optional[str],
    metadata: Optional[dict[str, Any]] = None,
    settings: Optional[Settings] = None,
) -> None:
    settings = settings or get_settings()
    old_value, new_value, metadata = redact_audit_values(settings, old_value, new_value, metadata)

    log = AuditLog(
        entity_type=entity_type,
        entity_id=entity_id,
        action=action,
        old_value=old_value,
        new_value=new_value,
        actor_type=actor_type,
        actor_id=actor_id,
        audit_meta=metadata,
    )
    db.add(log)
    try:
        alert_tracker.record(action, metadata)
    except Exception:
        logger.exception("Alert tracker failed for action=%s", action)


class AuditRecorder(abc.ABC):
    """Sink for audit-log entries written by the pipeline services."""

    @abc.abstractmethod
    def record(
        self,
        *,
        entity_type: str,
        entity_id: str,
        action: str,
        old_value: Optional[dict[str, Any]] = None,
        new_value: Optional[dict[str, Any]] = None,
        actor_type: str = ACTOR_SYSTEM_AUDIT,
        actor_id: Optional[str] = None,
        metadata: Optional[dict[str, Any]] = None,
    ) -> None:
        ...


class SqlAuditRecorder(AuditRecorder):
    def __init__(self, session_factory: Callable[[], Session], settings: Optional[Settings] = None) -> None:
        self._session_factory = session_factory
        self._settings = settings or get_settings()

    def record(
        self,
        *,
        entity_type: str,
        entity_id: str,
        action: str,
        old_value: Optional[dict[str, Any]] = None,
        new_value: Optional[dict[str, Any]] = None,
        actor_type: str = ACTOR_SYSTEM_AUDIT,
        actor_id: Optional[str] = None,
        metadata: Optional[dict[str, Any]] = None,
    ) -> None:
        db = self._session_factory()
        try:
            create_audit_log(
                db,
                entity_type=entity_type,
                entity_id=entity_id,
                action=action,
                old_value=old_value,
                new_value=new_value,
                actor_type=actor_type,
                actor_id=actor_id,
                metadata=metadata,
                settings=self._settings,
            )
            db.commit()
        finally:
            db.close()


class InMemoryAuditRecorder(AuditRecorder):
    def __init__(self, settings: Optional[Settings] = None) -> None:
        self._settings = settings or get_settings()
        self.entries: list[dict[str, Any]] = []

    def record(
        self,
        *,
        entity_type: str,
        entity_id: str,
        action: str,
        old_value: Optional[dict[str, Any]] = None,
        new_value: Optional[dict[str, Any]] = None,
        actor_type: str = ACTOR_SYSTEM_AUDIT,
        actor_id: Optional[str] = None,
        metadata: Optional[dict[str, Any]] = None,
    ) -> None:
        old_value, new_value, metadata = redact_audit_values(self._settings, old_value, new_value, metadata)
        self.entries.append(
            {
                "entity_type": entity_type,
                "entity_id": entity_id,
                "action": action,
                "old_value": old_value,
                "new_value": new_value,
                "actor_type": actor_type,
                "actor_id": actor_id,
                "metadata": metadata,
            }
        )
        try:
            alert_tracker.record(action, metadata)
        except Exception:
            logger.exception("Alert tracker failed for action=%s", action)

    def actions(self) -> list[str]:
        return [entry["action"] for entry in self.entries]


def _is_allowed_actor(current: InvoiceStatus, new: InvoiceStatus, actor_type: str) -> bool:
    # Rejection and posting are human decisions; the audit only derives review state.
    if new in {InvoiceStatus.FAILED, InvoiceStatus.POSTED}:
        return actor_type == ACTOR_USER
    return True


def apply_transition(
    invoice: Invoice,
    new_status: InvoiceStatus,
    *,
    actor_type: str,
    actor_id: Optional[str] = None,
    recorder: Optional[AuditRecorder] = None,
    metadata: Optional[dict[str, Any]] = None,
) -> bool:
    """Move *invoice* to *new_status* in place.

    Returns False when the status is unchanged. Raises
    ``InvalidTransitionError`` for edges outside ``ALLOWED_TRANSITIONS``.
    """
    current = InvoiceStatus(invoice.status)

    if new_status == current:
        return False

    if new_status not in ALLOWED_TRANSITIONS.get(current, []):
        raise InvalidTransitionError(current.value, new_status.value)

    if not _is_allowed_actor(current, new_status, actor_type):
        raise InvalidTransitionError(current.value, new_status.value)

    invoice.status = new_status

    if recorder is not None:
        recorder.record(
            entity_type="invoice",
            entity_id=invoice.id,
            action="STATUS_CHANGE",
            old_value={"status": current.value},
            new_value={"status": new_status.value},
            actor_type=actor_type,
            actor_id=actor_id,
            metadata=metadata,
        )
    logger.info("Invoice %s status %s -> %s (%s)", invoice.id, current.value, new_status.value, actor_type)
    return True
