"""OpenAI provider."""

from __future__ import annotations

import logging
import time
from typing import Any

import httpx

from .base import BaseProvider, DocumentPart, ProviderResult, ToolSpec

logger = logging.getLogger(__name__)

API_URL = "https://api.openai.com/v1/chat/completions"


def _user_content(prompt: str, document: DocumentPart | None) -> list[dict[str, Any]] | str:
    if document is None:
        return prompt
    if document.is_pdf:
        part = {"type": "file", "file": {"filename": "invoice.pdf", "file_data": document.data_url}}
    else:
        part = {"type": "image_url", "image_url": {"url": document.data_url, "detail": "high"}}
    return [{"type": "text", "text": prompt}, part]


class OpenAIProvider(BaseProvider):
    name = "openai"

    def __init__(self, api_key: str) -> None:
        self._api_key = api_key

    async def generate(
        self,
        prompt: str,
        *,
        system_prompt: str | None = None,
        tool: ToolSpec | None = None,
        document: DocumentPart | None = None,
        model: str = "",
        temperature: float = 0.0,
        max_tokens: int = 1024,
        timeout_seconds: float = 30.0,
    ) -> ProviderResult:
        model = model or "gpt-4o"
        t0 = time.monotonic()

        messages: list[dict[str, Any]] = []
        if system_prompt:
            messages.append({"role": "system", "content": system_prompt})
        messages.append({"role": "user", "content": _user_content(prompt, document)})

        body: dict[str, Any] = {
            "model": model,
            "max_tokens": max_tokens,
            "temperature": temperature,
            "messages": messages,
        }
        if tool is not None:
            body["tools"] = [
                {
                    "type": "function",
                    "function": {
                        "name": tool.name,
                        "description": tool.description,
                        "parameters": tool.input_schema,
                    },
                }
            ]
            body["tool_choice"] = {"type": "function", "function": {"name": tool.name}}

        async with httpx.AsyncClient(timeout=timeout_seconds) as client:
            resp = await client.post(
                API_URL,
                headers={
                    "Authorization": f"Bearer {self._api_key}",
                    "Content-Type": "application/json",
                },
                json=body,
            )
            resp.raise_for_status()
            data = resp.json()

        elapsed = (time.monotonic() - t0) * 1000
        message = data["choices"][0]["message"]
        text = message.get("content") or ""
        tool_calls = message.get("tool_calls") or []
        if tool is not None and tool_calls:
            text = tool_calls[0]["function"].get("arguments") or ""
        usage = data.get("usage", {})

        return ProviderResult(
            raw_text=text,
            model=model,
            provider=self.name,
            prompt_tokens=usage.get("prompt_tokens", 0),
            completion_tokens=usage.get("completion_tokens", 0),
            latency_ms=round(elapsed, 2),
        )
