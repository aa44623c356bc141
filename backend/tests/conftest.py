import json
from datetime import date

import pytest

from invoiceflow.core.config import Settings, get_settings
from invoiceflow.schemas.invoice import ClientProfile, FundingPackage, Invoice, LineItem, PurchaseOrder
from invoiceflow.services.ai.common.providers.base import BaseProvider, ProviderResult


@pytest.fixture(autouse=True)
def _reset_settings_cache():
    # Tests mutate env vars and clear the settings cache. Never leak a cached
    # Settings instance across tests.
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


class RecordingGateway:
    """Email gateway double: records every send, fails for listed addresses."""

    def __init__(self, failing=(), raising=()):
        self.failing = set(failing)
        self.raising = set(raising)
        self.sent = []

    async def send(self, to_address, subject, body):
        self.sent.append((to_address, subject, body))
        if to_address in self.raising:
            raise OSError("connection reset")
        return to_address not in self.failing


class ScriptedProvider(BaseProvider):
    """Returns queued responses in order; an Exception instance in the queue is raised."""

    name = "mock"
    tier_models = {"FAST": "scripted", "STANDARD": "scripted", "COMPLEX": "scripted", "RESEARCH": "scripted"}

    def __init__(self, responses=(), name="mock"):
        self.name = name
        self.responses = list(responses)
        self.calls = []

    async def generate(self, prompt, *, system_prompt=None, attachments=(), model="", **kwargs):
        self.calls.append({"prompt": prompt, "system_prompt": system_prompt, "attachments": list(attachments)})
        item = self.responses.pop(0) if self.responses else {}
        if isinstance(item, Exception):
            raise item
        text = item if isinstance(item, str) else json.dumps(item)
        return ProviderResult(raw_text=text, model=model or "scripted", provider=self.name)


def make_settings(**overrides) -> Settings:
    values = {
        "ai_providers_raw": "mock",
        "database_url": "",
        "audit_reference_date": date(2025, 2, 10),
        "smtp_host": "",
        "smtp_from_email": "",
    }
    values.update(overrides)
    return Settings(**values)


def make_po(**overrides) -> PurchaseOrder:
    values = {
        "po_number": "PO-998877",
        "client_id": "client-1",
        "client_name": "Margaret Smith",
        "service_codes": ["CLEAN-01", "NURSE-01"],
        "budget_remaining": 5000.0,
        "quarterly_budget_cap": 3000.0,
        "current_quarter_spend": 1000.0,
        "current_quarter_end": date(2025, 3, 31),
        "valid_from": "2025-01-01",
        "valid_to": "2025-12-31",
    }
    values.update(overrides)
    return PurchaseOrder(**values)


def make_client(**overrides) -> ClientProfile:
    values = {
        "id": "client-1",
        "tenant_id": "tenant-a",
        "name": "Margaret Smith",
        "email": "margaret@example.com",
        "total_budget_cap": 60000.0,
        "total_budget_used": 12000.0,
        "funding_packages": [FundingPackage(source="Support at Home Level 4")],
    }
    values.update(overrides)
    return ClientProfile(**values)


def make_invoice(**overrides) -> Invoice:
    values = {
        "id": "inv-1",
        "tenant_id": "tenant-a",
        "supplier_name": "CleanCo Services",
        "invoice_number": "INV-1001",
        "invoice_date": "2025-02-03",
        "total_amount": 220.0,
        "po_number_extracted": "PO-998877",
        "status": "EXTRACTED",
        "line_items": [
            LineItem(description="Domestic cleaning", qty=4, unit_price=55.0, line_total=220.0, mapped_service_code="CLEAN-01")
        ],
    }
    values.update(overrides)
    return Invoice(**values)


def clean_audit_response(**overrides) -> dict:
    payload = {
        "report": "No issues found.",
        "riskAssessment": {
            "level": "LOW",
            "score": 12,
            "justification": "Rates within guide.",
            "actionRecommendation": "Auto-Approve",
        },
        "validationResults": [
            {"ruleId": "AI-PRICE-CHECK", "ruleName": "Price Reasonableness", "severity": "INFO", "result": "PASS"},
            {"ruleId": "AI-FRAUD-CHECK", "ruleName": "AI Fraud Detection", "severity": "INFO", "result": "PASS"},
        ],
    }
    payload.update(overrides)
    return payload


@pytest.fixture
def settings():
    return make_settings()


@pytest.fixture
def gateway():
    return RecordingGateway()
