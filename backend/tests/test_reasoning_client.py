"""Reasoning client: JSON extraction, error mapping and AI-run audit entries."""

import asyncio
import unittest

import httpx
import pytest

from conftest import ScriptedProvider, make_settings

from invoiceflow.errors import ReasoningParseError, ReasoningTransportError
from invoiceflow.services.ai.common.client import ReasoningClient
from invoiceflow.services.ai.common.json_tools import extract_json_object
from invoiceflow.services.ai.common.router import ModelRouter, ReasoningTier
from invoiceflow.services.transition_service import InMemoryAuditRecorder


# ── extract_json_object ──────────────────────────────────────────────


def test_extracts_plain_object():
    assert extract_json_object('{"a": 1}') == {"a": 1}


def test_extracts_fenced_object():
    assert extract_json_object('```json\n{"a": {"b": 2}}\n```') == {"a": {"b": 2}}


def test_strips_think_block_before_parsing():
    text = '<think>let me reason about {braces}</think>\n{"level": "LOW"}'
    assert extract_json_object(text) == {"level": "LOW"}


def test_finds_object_inside_prose():
    text = 'Here is the result: {"summary": "a } inside a string", "n": 1} Thanks.'
    assert extract_json_object(text) == {"summary": "a } inside a string", "n": 1}


@pytest.mark.parametrize("text", [None, "", "   ", "no json here", "[1, 2, 3]", "{broken"])
def test_returns_none_without_object(text):
    assert extract_json_object(text) is None


# ── ReasoningClient ──────────────────────────────────────────────────


class ReasoningClientTest(unittest.TestCase):
    def setUp(self):
        self.settings = make_settings()
        self.recorder = InMemoryAuditRecorder(self.settings)

    def _client(self, provider, **settings_overrides):
        settings = make_settings(**settings_overrides) if settings_overrides else self.settings
        router = ModelRouter(settings, provider_factory=lambda name, key: provider)
        return ReasoningClient(router, settings, recorder=self.recorder)

    def test_success_returns_payload_and_records_hashed_run(self):
        provider = ScriptedProvider([{"summary": "ok"}])
        client = self._client(provider)

        call = asyncio.run(
            client.invoke(ReasoningTier.COMPLEX, "prompt text", scope="spending", entity_id="inv-1", system_prompt="sys")
        )

        self.assertEqual(call.payload, {"summary": "ok"})
        self.assertEqual(provider.calls[0]["system_prompt"], "sys")
        self.assertEqual(self.recorder.actions(), ["AI_SPENDING_ANALYSIS"])
        meta = self.recorder.entries[0]["metadata"]
        self.assertEqual(len(meta["prompt_hash"]), 64)
        self.assertEqual(meta["tier"], "COMPLEX")
        self.assertNotIn("prompt_raw", meta)

    def test_debug_flag_stores_raw_text(self):
        provider = ScriptedProvider([{"summary": "ok"}])
        client = self._client(provider, ai_debug_store_raw=True)

        asyncio.run(client.invoke(ReasoningTier.FAST, "prompt text", scope="deep_audit", entity_id="inv-1"))

        meta = self.recorder.entries[0]["metadata"]
        self.assertEqual(meta["prompt_raw"], "prompt text")

    def test_http_status_error_maps_to_transport_error(self):
        request = httpx.Request("POST", "https://api.example.test/v1/chat")
        response = httpx.Response(503, request=request)
        provider = ScriptedProvider([httpx.HTTPStatusError("unavailable", request=request, response=response)])
        client = self._client(provider)

        with self.assertRaises(ReasoningTransportError) as ctx:
            asyncio.run(client.invoke(ReasoningTier.COMPLEX, "p", scope="deep_audit", entity_id="inv-1"))

        self.assertIn("503", str(ctx.exception))
        self.assertEqual(ctx.exception.provider, "mock")
        self.assertEqual(self.recorder.entries, [])

    def test_timeout_maps_to_transport_error(self):
        provider = ScriptedProvider([httpx.ReadTimeout("timed out")])
        client = self._client(provider)

        with self.assertRaises(ReasoningTransportError):
            asyncio.run(client.invoke(ReasoningTier.COMPLEX, "p", scope="deep_audit", entity_id="inv-1"))

    def test_non_json_output_maps_to_parse_error(self):
        provider = ScriptedProvider(["I cannot help with that."])
        client = self._client(provider)

        with self.assertRaises(ReasoningParseError):
            asyncio.run(client.invoke(ReasoningTier.COMPLEX, "p", scope="deep_audit", entity_id="inv-1"))

    def test_malformed_provider_response_maps_to_parse_error(self):
        provider = ScriptedProvider([KeyError("choices")])
        client = self._client(provider)

        with self.assertRaises(ReasoningParseError):
            asyncio.run(client.invoke(ReasoningTier.COMPLEX, "p", scope="deep_audit", entity_id="inv-1"))
