import uuid

from sqlalchemy import (
    JSON,
    Column,
    DateTime,
    Index,
    String,
    Text,
    UniqueConstraint,
    text,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import declarative_base
from sqlalchemy.sql import func

Base = declarative_base()

JSON_TYPE = JSON().with_variant(JSONB, "postgresql")


def _uuid_str() -> str:
    return str(uuid.uuid4())


class InvoiceRecord(Base):
    __tablename__ = "invoices"
    __table_args__ = (Index("idx_invoices_tenant_status", "tenant_id", "status"),)

    id = Column(String(64), primary_key=True)
    tenant_id = Column(String(64), nullable=False)
    # Denormalised from payload for list filtering.
    status = Column(String(32), nullable=False, default="RECEIVED", server_default=text("'RECEIVED'"))
    payload = Column(JSON_TYPE, nullable=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(
        DateTime(timezone=True),
        server_default=func.now(),
        onupdate=func.now(),
        nullable=False,
    )


class TenantSettingsRecord(Base):
    __tablename__ = "tenant_settings"

    tenant_id = Column(String(64), primary_key=True)
    payload = Column(JSON_TYPE, nullable=False)
    updated_at = Column(
        DateTime(timezone=True),
        server_default=func.now(),
        onupdate=func.now(),
        nullable=False,
    )


class AuditLog(Base):
    __tablename__ = "audit_logs"

    id = Column(String(36), primary_key=True, default=_uuid_str)
    entity_type = Column(String(50), nullable=False)
    entity_id = Column(String(64), nullable=False)
    action = Column(String(64), nullable=False)
    old_value = Column(JSON_TYPE)
    new_value = Column(JSON_TYPE)
    actor_type = Column(String(50), nullable=False)
    actor_id = Column(String(64))
    audit_meta = Column("metadata", JSON_TYPE, nullable=True)
    timestamp = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)


class InAppNotification(Base):
    __tablename__ = "in_app_notifications"
    __table_args__ = (
        UniqueConstraint("dedupe_key", name="uniq_in_app_notifications_dedupe_key"),
        Index("idx_in_app_notifications_tenant_read", "tenant_id", "read_at"),
    )

    id = Column(String(36), primary_key=True, default=_uuid_str)
    tenant_id = Column(String(64), nullable=False)
    trigger = Column(String(32), nullable=False)
    level = Column(String(16), nullable=False, default="info", server_default=text("'info'"))
    title = Column(String(255), nullable=False)
    message = Column(Text, nullable=False)
    target_id = Column(String(64))
    dedupe_key = Column(String(200), nullable=False)
    read_at = Column(DateTime(timezone=True))
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
