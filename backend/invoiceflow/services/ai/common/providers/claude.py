"""Anthropic / Claude provider."""

from __future__ import annotations

import logging
import time
from typing import Any, Sequence

from .base import Attachment, BaseProvider, ProviderResult

logger = logging.getLogger(__name__)


class ClaudeProvider(BaseProvider):
    name = "claude"
    tier_models = {
        "FAST": "claude-3-5-haiku-20241022",
        "STANDARD": "claude-sonnet-4-20250514",
        "COMPLEX": "claude-opus-4-20250514",
        "RESEARCH": "claude-sonnet-4-20250514",
    }
    supports_attachments = True

    def __init__(self, api_key: str) -> None:
        self._api_key = api_key

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
        import httpx

        model = model or self.tier_models["STANDARD"]
        t0 = time.monotonic()

        content: list[dict[str, Any]] = [
            {
                "type": "document",
                "source": {"type": "base64", "media_type": a.mime_type, "data": a.data},
                "title": a.name,
            }
            for a in attachments
        ]
        content.append({"type": "text", "text": prompt})

        body: dict[str, Any] = {
            "model": model,
            "max_tokens": max_tokens,
            "temperature": temperature,
            "messages": [{"role": "user", "content": content}],
        }
        if system_prompt:
            body["system"] = system_prompt

        async with httpx.AsyncClient(timeout=timeout_seconds) as client:
            resp = await client.post(
                "https://api.anthropic.com/v1/messages",
                headers={
                    "x-api-key": self._api_key,
                    "anthropic-version": "2023-06-01",
                    "content-type": "application/json",
                },
                json=body,
            )
            resp.raise_for_status()
            data = resp.json()

        elapsed = (time.monotonic() - t0) * 1000
        text = "".join(block.get("text", "") for block in data.get("content", []) if block.get("type") == "text")
        usage = data.get("usage", {})

        return ProviderResult(
            raw_text=text,
            model=model,
            provider=self.name,
            prompt_tokens=usage.get("input_tokens", 0),
            completion_tokens=usage.get("output_tokens", 0),
            latency_ms=round(elapsed, 2),
        )
