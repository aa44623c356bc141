"""Mock provider: deterministic responses for local runs and tests."""

from __future__ import annotations

import json
import time
from typing import Sequence

from .base import Attachment, BaseProvider, ProviderResult

# One object that satisfies every scope's parser: a clean audit, an advisory
# review that asks for evidence, neutral drafts and a normal spending summary.
DEFAULT_MOCK_RESPONSE = json.dumps(
    {
        "report": "Mock audit: no issues detected.",
        "riskAssessment": {
            "level": "LOW",
            "score": 10,
            "justification": "Mock provider response.",
            "actionRecommendation": "Auto-Approve",
        },
        "validationResults": [],
        "determination": "REQUIRE_MORE_EVIDENCE",
        "confidence": 0,
        "finalVerdict": "Mock provider cannot rule on this case.",
        "regulatoryCitations": [],
        "auditLogEntry": "Mock review.",
        "vendorEmail": {"to": "", "subject": "Invoice rejected", "body": "Mock vendor draft."},
        "clientEmail": {"to": "", "subject": "Invoice on hold", "body": "Mock client draft."},
        "status": "NORMAL",
        "summary": "Mock spending analysis.",
        "recommendations": [],
    }
)


class MockProvider(BaseProvider):
    name = "mock"
    tier_models = {"FAST": "mock-v1", "STANDARD": "mock-v1", "COMPLEX": "mock-v1", "RESEARCH": "mock-v1"}

    def __init__(self, api_key: str = "", response_text: str | None = None) -> None:
        self._response_text = response_text if response_text is not None else DEFAULT_MOCK_RESPONSE

    async def generate(
        self,
        prompt: str,
        *,
        system_prompt: str | None = None,
        attachments: Sequence[Attachment] = (),
        model: str = "",
        temperature: float = 0.3,
        max_tokens: int = 1024,
        timeout_seconds: float = 8.0,
    ) -> ProviderResult:
        t0 = time.monotonic()
        text = self._response_text
        elapsed = (time.monotonic() - t0) * 1000
        return ProviderResult(
            raw_text=text,
            model=model or "mock-v1",
            provider=self.name,
            prompt_tokens=len(prompt.split()),
            completion_tokens=len(text.split()),
            latency_ms=round(elapsed, 2),
        )
