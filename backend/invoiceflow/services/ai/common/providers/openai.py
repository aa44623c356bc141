"""OpenAI provider and the OpenAI-compatible xAI / Perplexity endpoints."""

from __future__ import annotations

import logging
import time
from typing import Any, Sequence

from .base import Attachment, BaseProvider, ProviderResult

logger = logging.getLogger(__name__)


class OpenAIProvider(BaseProvider):
    name = "openai"
    base_url = "https://api.openai.com/v1"
    tier_models = {
        "FAST": "gpt-4.1-nano",
        "STANDARD": "gpt-4.1-mini",
        "COMPLEX": "gpt-5.2",
        "RESEARCH": "gpt-4.1",
    }
    supports_attachments = True

    def __init__(self, api_key: str) -> None:
        self._api_key = api_key

    def _user_content(self, prompt: str, attachments: Sequence[Attachment]) -> Any:
        if not attachments:
            return prompt
        if not self.supports_attachments:
            names = ", ".join(a.name for a in attachments)
            return f"{prompt}\n\n(Attached policy files not transmitted to this provider: {names})"
        parts: list[dict[str, Any]] = [{"type": "text", "text": prompt}]
        for attachment in attachments:
            parts.append(
                {
                    "type": "file",
                    "file": {
                        "filename": attachment.name,
                        "file_data": f"data:{attachment.mime_type};base64,{attachment.data}",
                    },
                }
            )
        return parts

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

        messages: list[dict[str, Any]] = []
        if system_prompt:
            messages.append({"role": "system", "content": system_prompt})
        messages.append({"role": "user", "content": self._user_content(prompt, attachments)})

        async with httpx.AsyncClient(timeout=timeout_seconds) as client:
            resp = await client.post(
                f"{self.base_url}/chat/completions",
                headers={
                    "Authorization": f"Bearer {self._api_key}",
                    "Content-Type": "application/json",
                },
                json={
                    "model": model,
                    "max_tokens": max_tokens,
                    "temperature": temperature,
                    "messages": messages,
                },
            )
            resp.raise_for_status()
            data = resp.json()

        elapsed = (time.monotonic() - t0) * 1000
        choice = data["choices"][0]
        text = choice["message"]["content"] or ""
        usage = data.get("usage", {})

        return ProviderResult(
            raw_text=text,
            model=model,
            provider=self.name,
            prompt_tokens=usage.get("prompt_tokens", 0),
            completion_tokens=usage.get("completion_tokens", 0),
            latency_ms=round(elapsed, 2),
        )


class XAIProvider(OpenAIProvider):
    name = "xai"
    base_url = "https://api.x.ai/v1"
    tier_models = {
        "FAST": "grok-3-mini",
        "STANDARD": "grok-3",
        "COMPLEX": "grok-4.1",
        "RESEARCH": "grok-3",
    }
    supports_attachments = False


class PerplexityProvider(OpenAIProvider):
    name = "perplexity"
    base_url = "https://api.perplexity.ai"
    tier_models = {
        "FAST": "sonar",
        "STANDARD": "sonar-pro",
        "COMPLEX": "sonar-reasoning-pro",
        "RESEARCH": "sonar-deep-research",
    }
    supports_live_search = True
    supports_attachments = False
