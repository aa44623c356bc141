"""
Tests for the notification engine: rules, in-app inbox dedupe and email fan-out.

Covers:
  - Default rule is in-app only
  - upsert_rule patches one rule per trigger and splits CSV recipients
  - Identical unread in-app messages are stored once (memory and sqlite)
  - A read message no longer blocks an identical new one
  - Every recipient is attempted even when an earlier one fails
  - Approval courtesy email goes to the client independently of the staff rule,
    even when the staff dispatch fails
  - schedule()/drain() for fire-and-forget dispatch
"""

from __future__ import annotations

import asyncio
import unittest
from unittest.mock import MagicMock

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from conftest import RecordingGateway, make_client, make_invoice, make_settings

from invoiceflow.models.records import Base
from invoiceflow.schemas.invoice import RiskAssessment, RiskLevel
from invoiceflow.schemas.settings import AppSettings, NotificationTrigger
from invoiceflow.services.notification_engine import (
    InAppMessage,
    InMemoryInAppInbox,
    NotificationEngine,
    SqlInAppInbox,
    audit_failed_message,
    find_rule,
    high_risk_message,
    upsert_rule,
)
from invoiceflow.services.stores import InMemorySettingsStore
from invoiceflow.services.transition_service import InMemoryAuditRecorder


# ── helpers ──────────────────────────────────────────────────────────


def _sqlite_session_factory():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


def _message(**overrides):
    values = {
        "tenant_id": "tenant-a",
        "trigger": "AUDIT_FAILED",
        "title": "Exception: CleanCo Services",
        "message": "Validation failed: PO Found",
        "level": "error",
        "target_id": "inv-1",
    }
    values.update(overrides)
    return InAppMessage(**values)


def _store_with_rule(trigger, **rule):
    store = InMemorySettingsStore()
    settings = AppSettings()
    upsert_rule(settings, trigger, **rule)
    store.save("tenant-a", settings)
    return store


# ── rules ────────────────────────────────────────────────────────────


def test_missing_rule_defaults_to_in_app_only():
    rule = find_rule(AppSettings(), NotificationTrigger.HIGH_RISK_DETECTED)

    assert rule.in_app_enabled is True
    assert rule.email_enabled is False
    assert rule.recipients == []


def test_upsert_rule_keeps_one_rule_per_trigger():
    settings = AppSettings()

    upsert_rule(settings, NotificationTrigger.AUDIT_FAILED, email_enabled=True, recipients="a@x.test, b@x.test,")
    upsert_rule(settings, NotificationTrigger.AUDIT_FAILED, in_app_enabled=False)

    assert len(settings.notification_rules) == 1
    rule = find_rule(settings, NotificationTrigger.AUDIT_FAILED)
    assert rule.recipients == ["a@x.test", "b@x.test"]
    assert rule.email_enabled is True
    assert rule.in_app_enabled is False


# ── inbox ────────────────────────────────────────────────────────────


def test_memory_inbox_dedupes_identical_messages():
    inbox = InMemoryInAppInbox()

    assert inbox.enqueue(_message()) is True
    assert inbox.enqueue(_message()) is False
    assert inbox.enqueue(_message(target_id="inv-2")) is True
    assert len(inbox.list("tenant-a")) == 2
    assert inbox.list("tenant-b") == []


def test_memory_inbox_mark_read_is_tenant_scoped():
    inbox = InMemoryInAppInbox()
    inbox.enqueue(_message())
    item_id = inbox.list("tenant-a")[0]["id"]

    assert inbox.mark_read("tenant-b", item_id) is False
    assert inbox.mark_read("tenant-a", item_id) is True
    assert inbox.mark_read("tenant-a", item_id) is False
    assert inbox.list("tenant-a", unread_only=True) == []


def test_memory_inbox_accepts_repeat_after_read():
    inbox = InMemoryInAppInbox()
    inbox.enqueue(_message())
    inbox.mark_read("tenant-a", inbox.list("tenant-a")[0]["id"])

    assert inbox.enqueue(_message()) is True
    assert inbox.enqueue(_message()) is False
    assert len(inbox.list("tenant-a")) == 2
    assert len(inbox.list("tenant-a", unread_only=True)) == 1


def test_sql_inbox_dedupes_on_sqlite():
    inbox = SqlInAppInbox(_sqlite_session_factory())

    assert inbox.enqueue(_message()) is True
    assert inbox.enqueue(_message()) is False

    items = inbox.list("tenant-a")
    assert len(items) == 1
    assert items[0]["trigger"] == "AUDIT_FAILED"
    assert items[0]["read_at"] is None

    assert inbox.mark_read("tenant-a", items[0]["id"]) is True
    assert inbox.list("tenant-a", unread_only=True) == []


def test_sql_inbox_accepts_repeat_after_read():
    inbox = SqlInAppInbox(_sqlite_session_factory())
    inbox.enqueue(_message())
    first_id = inbox.list("tenant-a")[0]["id"]
    inbox.mark_read("tenant-a", first_id)

    assert inbox.enqueue(_message()) is True
    assert inbox.enqueue(_message()) is False

    unread = inbox.list("tenant-a", unread_only=True)
    assert len(unread) == 1
    assert unread[0]["id"] != first_id
    assert len(inbox.list("tenant-a")) == 2


# ── engine ───────────────────────────────────────────────────────────


class NotificationEngineTest(unittest.TestCase):
    def setUp(self):
        self.recorder = InMemoryAuditRecorder(make_settings())
        self.inbox = InMemoryInAppInbox()

    def _engine(self, store, gateway):
        return NotificationEngine(store, self.inbox, gateway, recorder=self.recorder)

    def test_default_rule_sends_no_email(self):
        gateway = RecordingGateway()
        engine = self._engine(InMemorySettingsStore(), gateway)
        invoice = make_invoice()

        report = asyncio.run(
            engine.dispatch(NotificationTrigger.AUDIT_FAILED, invoice, audit_failed_message(invoice, []))
        )

        self.assertTrue(report.in_app_enqueued)
        self.assertEqual(report.attempted, 0)
        self.assertEqual(gateway.sent, [])
        self.assertEqual(len(self.inbox.list("tenant-a")), 1)

    def test_failing_recipients_do_not_stop_the_rest(self):
        store = _store_with_rule(
            NotificationTrigger.HIGH_RISK_DETECTED,
            email_enabled=True,
            recipients="down@x.test,boom@x.test,ok@x.test",
        )
        gateway = RecordingGateway(failing={"down@x.test"}, raising={"boom@x.test"})
        engine = self._engine(store, gateway)
        invoice = make_invoice()
        risk = RiskAssessment(level=RiskLevel.HIGH, score=91, justification="Duplicate billing")

        report = asyncio.run(
            engine.dispatch(NotificationTrigger.HIGH_RISK_DETECTED, invoice, high_risk_message(invoice, risk))
        )

        self.assertEqual([to for to, _, _ in gateway.sent], ["down@x.test", "boom@x.test", "ok@x.test"])
        self.assertEqual(report.attempted, 3)
        self.assertEqual(report.sent, ["ok@x.test"])
        self.assertEqual(report.failed, ["down@x.test", "boom@x.test"])
        self.assertIn("OSError", report.failures[1].reason)
        self.assertEqual(self.recorder.actions(), ["NOTIFICATION_SEND_FAILED", "NOTIFICATION_SEND_FAILED"])
        self.assertEqual(gateway.sent[2][1], "URGENT: High Risk Invoice Detected - CleanCo Services")

    def test_in_app_disabled_skips_inbox(self):
        store = _store_with_rule(NotificationTrigger.AUDIT_FAILED, in_app_enabled=False)
        engine = self._engine(store, RecordingGateway())
        invoice = make_invoice()

        report = asyncio.run(
            engine.dispatch(NotificationTrigger.AUDIT_FAILED, invoice, audit_failed_message(invoice, []))
        )

        self.assertFalse(report.in_app_enqueued)
        self.assertEqual(self.inbox.list("tenant-a"), [])

    def test_approval_sends_client_courtesy_email_without_staff_rule(self):
        gateway = RecordingGateway()
        engine = self._engine(InMemorySettingsStore(), gateway)

        report = asyncio.run(engine.notify_approved(make_invoice(), make_client()))

        self.assertEqual(report.sent, ["margaret@example.com"])
        to, subject, body = gateway.sent[0]
        self.assertEqual(subject, "Update: Invoice Processed for CleanCo Services")
        self.assertIn("Dear Margaret Smith", body)
        self.assertIn("$220.00", body)

    def test_approval_without_client_email_only_emails_staff(self):
        store = _store_with_rule(NotificationTrigger.INVOICE_APPROVED, email_enabled=True, recipients=["ap@x.test"])
        gateway = RecordingGateway()
        engine = self._engine(store, gateway)

        asyncio.run(engine.notify_approved(make_invoice(), make_client(email="")))

        self.assertEqual([to for to, _, _ in gateway.sent], ["ap@x.test"])

    def test_courtesy_email_is_sent_when_staff_dispatch_fails(self):
        store = MagicMock()
        store.load.side_effect = RuntimeError("settings table unavailable")
        gateway = RecordingGateway()
        engine = self._engine(store, gateway)

        with self.assertRaises(RuntimeError):
            asyncio.run(engine.notify_approved(make_invoice(), make_client()))

        self.assertEqual([to for to, _, _ in gateway.sent], ["margaret@example.com"])


@pytest.mark.asyncio
async def test_scheduled_dispatch_completes_on_drain():
    gateway = RecordingGateway()
    engine = NotificationEngine(InMemorySettingsStore(), InMemoryInAppInbox(), gateway)

    task = engine.schedule(engine.notify_approved(make_invoice(), make_client()), label="inv-1")
    await engine.drain()

    assert task.done()
    assert task.result().sent == ["margaret@example.com"]
    assert len(engine.inbox.list("tenant-a")) == 1
