from functools import lru_cache
from typing import Callable, Optional

from fastapi import Header, HTTPException
from sqlalchemy import create_engine, event
from sqlalchemy.orm import Session, sessionmaker

from invoiceflow.core.config import Settings, get_settings
from invoiceflow.models.records import Base
from invoiceflow.services.ai.common.client import ReasoningClient
from invoiceflow.services.ai.common.providers import BaseProvider, get_provider
from invoiceflow.services.ai.common.router import ModelRouter
from invoiceflow.services.ai.deep_audit.service import DeepAuditService
from invoiceflow.services.ai.escalation.service import EscalationService
from invoiceflow.services.ai.rejection.service import RejectionDraftService
from invoiceflow.services.ai.spending.service import SpendingAnalysisService
from invoiceflow.services.ai.supplier_check.service import SupplierCheckService
from invoiceflow.services.audit_pipeline import AuditPipeline
from invoiceflow.services.email_gateway import EmailGateway, SmtpEmailGateway
from invoiceflow.services.notification_engine import InMemoryInAppInbox, NotificationEngine, SqlInAppInbox
from invoiceflow.services.stores import (
    InMemoryInvoiceStore,
    InMemoryReferenceRegistry,
    InMemorySettingsStore,
    ReferenceRegistry,
    SqlInvoiceStore,
    SqlSettingsStore,
)
from invoiceflow.services.transition_service import InMemoryAuditRecorder, SqlAuditRecorder

settings = get_settings()

engine = None
if settings.database_url:
    connect_args: dict[str, object] = {}

    if settings.database_url.startswith("sqlite"):
        # Audits await provider calls while FastAPI runs sync work in a threadpool,
        # so the connection must be usable across threads.
        connect_args = {"check_same_thread": False, "timeout": 30}

    engine = create_engine(settings.database_url, pool_pre_ping=True, connect_args=connect_args)

    if settings.database_url.startswith("sqlite"):
        @event.listens_for(engine, "connect")
        def _set_sqlite_pragmas(dbapi_connection, _connection_record) -> None:  # type: ignore[no-untyped-def]
            cursor = dbapi_connection.cursor()
            cursor.execute("PRAGMA busy_timeout=30000")
            cursor.close()

SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine) if engine else None


def init_db() -> None:
    if engine is not None:
        Base.metadata.create_all(bind=engine)


def build_pipeline(
    app_settings: Settings,
    *,
    session_factory: Optional[Callable[[], Session]] = None,
    registry: Optional[ReferenceRegistry] = None,
    gateway: Optional[EmailGateway] = None,
    provider_factory: Callable[[str, str], BaseProvider] = get_provider,
) -> AuditPipeline:
    """Wire the pipeline. Without a session factory everything lives in memory."""
    if session_factory is not None:
        recorder = SqlAuditRecorder(session_factory, app_settings)
        store = SqlInvoiceStore(session_factory)
        settings_store = SqlSettingsStore(session_factory)
        inbox = SqlInAppInbox(session_factory)
    else:
        recorder = InMemoryAuditRecorder(app_settings)
        store = InMemoryInvoiceStore()
        settings_store = InMemorySettingsStore()
        inbox = InMemoryInAppInbox()

    if registry is None:
        if app_settings.reference_data_path:
            registry = InMemoryReferenceRegistry.from_file(app_settings.reference_data_path)
        else:
            registry = InMemoryReferenceRegistry()

    client = ReasoningClient(ModelRouter(app_settings, provider_factory), app_settings, recorder=recorder)
    return AuditPipeline(
        settings=app_settings,
        store=store,
        settings_store=settings_store,
        registry=registry,
        deep_audit=DeepAuditService(client, app_settings, recorder=recorder),
        spending=SpendingAnalysisService(client, app_settings),
        escalation=EscalationService(client, recorder=recorder),
        drafter=RejectionDraftService(client, store, recorder=recorder),
        supplier_check=SupplierCheckService(client, recorder=recorder),
        notifications=NotificationEngine(
            settings_store,
            inbox,
            gateway or SmtpEmailGateway(app_settings),
            recorder=recorder,
        ),
        recorder=recorder,
    )


@lru_cache
def get_pipeline() -> AuditPipeline:
    return build_pipeline(get_settings(), session_factory=SessionLocal)


def get_tenant_id(x_tenant_id: Optional[str] = Header(default=None, alias="X-Tenant-ID")) -> str:
    tenant_id = (x_tenant_id or "").strip()
    if not tenant_id:
        raise HTTPException(400, "X-Tenant-ID header is required")
    return tenant_id
