"""Persistence collaborators: invoices, tenant settings and the PO / client registry.

All stores use whole-object load/save. A replace overwrites the stored invoice
wholesale (last writer wins); there is no field-level merge.
"""

from __future__ import annotations

import json
import logging
from pathlib import Path
from threading import Lock
from typing import Callable, Optional, Protocol

from sqlalchemy import select
from sqlalchemy.orm import Session

from invoiceflow.models.records import InvoiceRecord, TenantSettingsRecord
from invoiceflow.schemas.invoice import ClientProfile, Invoice, PurchaseOrder
from invoiceflow.schemas.settings import AppSettings, load_app_settings

logger = logging.getLogger(__name__)


def _dump(model) -> dict:
    return model.model_dump(mode="json", by_alias=True)


class InvoiceStore(Protocol):
    def get(self, invoice_id: str) -> Optional[Invoice]: ...

    def replace(self, invoice: Invoice) -> None: ...

    def list(self, tenant_id: Optional[str] = None) -> list[Invoice]: ...


class SettingsStore(Protocol):
    def load(self, tenant_id: str) -> AppSettings: ...

    def save(self, tenant_id: str, settings: AppSettings) -> None: ...


class ReferenceRegistry(Protocol):
    def get_purchase_order(self, po_number: str) -> Optional[PurchaseOrder]: ...

    def get_client(self, client_id: str) -> Optional[ClientProfile]: ...


# ---------------------------------------------------------------------------
# In-memory implementations
# ---------------------------------------------------------------------------


class InMemoryInvoiceStore:
    def __init__(self, invoices: Optional[list[Invoice]] = None) -> None:
        self._lock = Lock()
        self._payloads: dict[str, dict] = {}
        for invoice in invoices or []:
            self.replace(invoice)

    def get(self, invoice_id: str) -> Optional[Invoice]:
        with self._lock:
            payload = self._payloads.get(invoice_id)
        # Hand out copies so callers never share mutable state with the store.
        return Invoice.model_validate(payload) if payload is not None else None

    def replace(self, invoice: Invoice) -> None:
        with self._lock:
            self._payloads[invoice.id] = _dump(invoice)

    def list(self, tenant_id: Optional[str] = None) -> list[Invoice]:
        with self._lock:
            payloads = list(self._payloads.values())
        invoices = [Invoice.model_validate(p) for p in payloads]
        if tenant_id is not None:
            invoices = [inv for inv in invoices if inv.tenant_id == tenant_id]
        return invoices


class InMemorySettingsStore:
    def __init__(self) -> None:
        self._payloads: dict[str, dict] = {}

    def load(self, tenant_id: str) -> AppSettings:
        return load_app_settings(self._payloads.get(tenant_id))

    def save(self, tenant_id: str, settings: AppSettings) -> None:
        self._payloads[tenant_id] = _dump(settings)


class InMemoryReferenceRegistry:
    def __init__(
        self,
        purchase_orders: Optional[list[PurchaseOrder]] = None,
        clients: Optional[list[ClientProfile]] = None,
    ) -> None:
        self._purchase_orders = {po.po_number: po for po in purchase_orders or []}
        self._clients = {client.id: client for client in clients or []}

    @classmethod
    def from_file(cls, path: str) -> "InMemoryReferenceRegistry":
        """Load ``{"purchaseOrders": [...], "clients": [...]}`` exported by the ledger."""
        data = json.loads(Path(path).read_text(encoding="utf-8"))
        purchase_orders = [PurchaseOrder.model_validate(item) for item in data.get("purchaseOrders") or []]
        clients = [ClientProfile.model_validate(item) for item in data.get("clients") or []]
        logger.info(
            "Loaded reference registry from %s: purchase_orders=%s clients=%s",
            path,
            len(purchase_orders),
            len(clients),
        )
        return cls(purchase_orders, clients)

    def get_purchase_order(self, po_number: str) -> Optional[PurchaseOrder]:
        return self._purchase_orders.get(po_number.strip())

    def get_client(self, client_id: str) -> Optional[ClientProfile]:
        return self._clients.get(client_id)

    def register_purchase_order(self, po: PurchaseOrder) -> None:
        self._purchase_orders[po.po_number] = po

    def register_client(self, client: ClientProfile) -> None:
        self._clients[client.id] = client


# ---------------------------------------------------------------------------
# SQLAlchemy implementations
# ---------------------------------------------------------------------------


class SqlInvoiceStore:
    def __init__(self, session_factory: Callable[[], Session]) -> None:
        self._session_factory = session_factory

    def get(self, invoice_id: str) -> Optional[Invoice]:
        db = self._session_factory()
        try:
            row = db.get(InvoiceRecord, invoice_id)
            return Invoice.model_validate(row.payload) if row is not None else None
        finally:
            db.close()

    def replace(self, invoice: Invoice) -> None:
        payload = _dump(invoice)
        db = self._session_factory()
        try:
            row = db.get(InvoiceRecord, invoice.id)
            if row is None:
                row = InvoiceRecord(id=invoice.id, tenant_id=invoice.tenant_id)
                db.add(row)
            row.status = invoice.status.value
            row.payload = payload
            db.commit()
        finally:
            db.close()

    def list(self, tenant_id: Optional[str] = None) -> list[Invoice]:
        db = self._session_factory()
        try:
            stmt = select(InvoiceRecord).order_by(InvoiceRecord.created_at.desc())
            if tenant_id is not None:
                stmt = stmt.where(InvoiceRecord.tenant_id == tenant_id)
            rows = db.execute(stmt).scalars().all()
            return [Invoice.model_validate(row.payload) for row in rows]
        finally:
            db.close()


class SqlSettingsStore:
    def __init__(self, session_factory: Callable[[], Session]) -> None:
        self._session_factory = session_factory

    def load(self, tenant_id: str) -> AppSettings:
        db = self._session_factory()
        try:
            row = db.get(TenantSettingsRecord, tenant_id)
            return load_app_settings(row.payload if row is not None else None)
        finally:
            db.close()

    def save(self, tenant_id: str, settings: AppSettings) -> None:
        db = self._session_factory()
        try:
            row = db.get(TenantSettingsRecord, tenant_id)
            if row is None:
                row = TenantSettingsRecord(tenant_id=tenant_id)
                db.add(row)
            row.payload = _dump(settings)
            db.commit()
        finally:
            db.close()
