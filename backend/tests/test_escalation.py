"""Escalation review: eligibility, determination parsing and failure surfacing."""

import asyncio
import unittest

import httpx
import pytest

from conftest import ScriptedProvider, make_client, make_invoice, make_settings

from invoiceflow.errors import EscalationNotAllowedError, EscalationServiceError, ReasoningParseError
from invoiceflow.schemas.invoice import ChiefAuditorReview, ReviewDetermination, RiskAssessment, RiskLevel
from invoiceflow.services.ai.common.client import ReasoningClient
from invoiceflow.services.ai.common.router import ModelRouter
from invoiceflow.services.ai.escalation.contracts import ensure_escalation_allowed, parse_review
from invoiceflow.services.ai.escalation.service import EscalationService
from invoiceflow.services.transition_service import InMemoryAuditRecorder


def _risky_invoice(level=RiskLevel.HIGH, **overrides):
    risk = RiskAssessment(level=level, score=82, justification="Rate 60% above guide", action_recommendation="Reject")
    return make_invoice(risk_assessment=risk, **overrides)


def test_invoice_without_risk_cannot_be_escalated():
    with pytest.raises(EscalationNotAllowedError):
        ensure_escalation_allowed(make_invoice())


def test_low_risk_cannot_be_escalated():
    with pytest.raises(EscalationNotAllowedError):
        ensure_escalation_allowed(_risky_invoice(RiskLevel.LOW))


def test_existing_review_blocks_second_escalation():
    invoice = _risky_invoice(chief_auditor_review=ChiefAuditorReview(determination=ReviewDetermination.UPHOLD))
    with pytest.raises(EscalationNotAllowedError):
        ensure_escalation_allowed(invoice)


def test_medium_risk_is_eligible():
    ensure_escalation_allowed(_risky_invoice(RiskLevel.MEDIUM))


@pytest.mark.parametrize(
    "raw,expected",
    [
        ("UPHOLD", ReviewDetermination.UPHOLD),
        ("uphold_rejection", ReviewDetermination.UPHOLD),
        ("OVERRIDE_APPROVE", ReviewDetermination.OVERRIDE_APPROVE),
        ("REQUIRE_ADDITIONAL_EVIDENCE", ReviewDetermination.REQUIRE_MORE_EVIDENCE),
    ],
)
def test_parse_review_accepts_determination_aliases(raw, expected):
    assert parse_review({"determination": raw, "confidence": 70}).determination == expected


def test_parse_review_clamps_confidence_and_collects_citations():
    review = parse_review(
        {
            "determination": "UPHOLD",
            "confidence": 140,
            "finalVerdict": "Rate exceeds the pricing guide.",
            "regulatoryCitations": ["Aged Care Act 2024 s.12", " "],
            "auditLogEntry": "Upheld.",
        }
    )

    assert review.confidence == 100
    assert review.citations == ["Aged Care Act 2024 s.12"]
    assert review.reviewed_at is not None
    assert parse_review({"determination": "UPHOLD", "confidence": "n/a"}).confidence == 0


def test_parse_review_rejects_unknown_determination():
    with pytest.raises(ReasoningParseError):
        parse_review({"determination": "SHRUG"})


class EscalationServiceTest(unittest.TestCase):
    def setUp(self):
        self.settings = make_settings()
        self.recorder = InMemoryAuditRecorder(self.settings)

    def _service(self, provider):
        router = ModelRouter(self.settings, provider_factory=lambda name, key: provider)
        return EscalationService(ReasoningClient(router, self.settings), recorder=self.recorder)

    def test_review_returns_parsed_determination(self):
        provider = ScriptedProvider(
            [{"determination": "OVERRIDE_APPROVE", "confidence": 88, "finalVerdict": "Legitimate purchase."}]
        )

        review = asyncio.run(self._service(provider).review(_risky_invoice(), make_client()))

        self.assertEqual(review.determination, ReviewDetermination.OVERRIDE_APPROVE)
        self.assertEqual(review.confidence, 88)
        prompt = provider.calls[0]["prompt"]
        self.assertIn("Risk level: HIGH", prompt)
        self.assertIn("Support at Home Level 4", prompt)
        self.assertIn("Chief Financial Auditor", provider.calls[0]["system_prompt"])

    def test_ineligible_invoice_never_reaches_provider(self):
        provider = ScriptedProvider([{"determination": "UPHOLD"}])

        with self.assertRaises(EscalationNotAllowedError):
            asyncio.run(self._service(provider).review(make_invoice(), None))

        self.assertEqual(provider.calls, [])

    def test_provider_failure_is_surfaced_and_recorded(self):
        provider = ScriptedProvider([httpx.ConnectError("refused")])

        with self.assertRaises(EscalationServiceError):
            asyncio.run(self._service(provider).review(_risky_invoice(), None))

        self.assertEqual(self.recorder.actions(), ["ESCALATION_FAILED"])

    def test_unparseable_determination_is_a_service_error(self):
        provider = ScriptedProvider([{"determination": "MAYBE"}])

        with self.assertRaises(EscalationServiceError):
            asyncio.run(self._service(provider).review(_risky_invoice(), None))
