"""Invoice, settings and reference-registry stores (memory and sqlite)."""

import json

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from conftest import make_client, make_invoice, make_po

from invoiceflow.models.records import Base
from invoiceflow.schemas.invoice import InvoiceStatus
from invoiceflow.schemas.settings import AppSettings, NotificationTrigger
from invoiceflow.services.notification_engine import upsert_rule
from invoiceflow.services.stores import (
    InMemoryInvoiceStore,
    InMemoryReferenceRegistry,
    InMemorySettingsStore,
    SqlInvoiceStore,
    SqlSettingsStore,
)


@pytest.fixture
def session_factory():
    engine = create_engine("sqlite://", connect_args={"check_same_thread": False}, poolclass=StaticPool)
    Base.metadata.create_all(bind=engine)
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


@pytest.fixture(params=["memory", "sql"])
def invoice_store(request, session_factory):
    if request.param == "memory":
        return InMemoryInvoiceStore()
    return SqlInvoiceStore(session_factory)


@pytest.fixture(params=["memory", "sql"])
def settings_store(request, session_factory):
    if request.param == "memory":
        return InMemorySettingsStore()
    return SqlSettingsStore(session_factory)


def test_invoice_store_replace_is_last_writer_wins(invoice_store):
    invoice_store.replace(make_invoice())
    invoice_store.replace(make_invoice(status=InvoiceStatus.NEEDS_REVIEW, total_amount=330.0))

    loaded = invoice_store.get("inv-1")
    assert loaded.status == InvoiceStatus.NEEDS_REVIEW
    assert loaded.total_amount == 330.0
    assert len(invoice_store.list()) == 1


def test_invoice_store_returns_independent_copies(invoice_store):
    invoice_store.replace(make_invoice())

    loaded = invoice_store.get("inv-1")
    loaded.status = InvoiceStatus.POSTED

    assert invoice_store.get("inv-1").status == InvoiceStatus.EXTRACTED


def test_invoice_store_filters_by_tenant(invoice_store):
    invoice_store.replace(make_invoice(id="inv-1"))
    invoice_store.replace(make_invoice(id="inv-2", tenant_id="tenant-b"))

    assert [inv.id for inv in invoice_store.list("tenant-b")] == ["inv-2"]
    assert invoice_store.get("missing") is None


def test_settings_store_round_trips_rules(settings_store):
    assert settings_store.load("tenant-a").notification_rules == []

    settings = AppSettings(policy_documents="No travel above 50km.")
    upsert_rule(settings, NotificationTrigger.AUDIT_FAILED, email_enabled=True, recipients="ap@x.test")
    settings_store.save("tenant-a", settings)

    loaded = settings_store.load("tenant-a")
    assert loaded.policy_documents == "No travel above 50km."
    assert loaded.notification_rules[0].recipients == ["ap@x.test"]
    assert settings_store.load("tenant-b").policy_documents == ""


def test_registry_loads_ledger_export(tmp_path):
    path = tmp_path / "reference.json"
    path.write_text(
        json.dumps(
            {
                "purchaseOrders": [make_po().model_dump(mode="json", by_alias=True)],
                "clients": [make_client().model_dump(mode="json", by_alias=True)],
            }
        ),
        encoding="utf-8",
    )

    registry = InMemoryReferenceRegistry.from_file(str(path))

    assert registry.get_purchase_order(" PO-998877 ").quarterly_budget_cap == 3000.0
    assert registry.get_client("client-1").email == "margaret@example.com"
    assert registry.get_purchase_order("PO-000000") is None
