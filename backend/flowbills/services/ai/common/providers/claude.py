"""Anthropic / Claude provider."""

from __future__ import annotations

import json
import logging
import time
from typing import Any

import httpx

from .base import BaseProvider, DocumentPart, ProviderResult, ToolSpec

logger = logging.getLogger(__name__)

API_URL = "https://api.anthropic.com/v1/messages"


def _content_blocks(prompt: str, document: DocumentPart | None) -> list[dict[str, Any]] | str:
    if document is None:
        return prompt
    source = {"type": "base64", "media_type": document.media_type, "data": document.data_base64}
    block_type = "document" if document.is_pdf else "image"
    return [
        {"type": block_type, "source": source},
        {"type": "text", "text": prompt},
    ]


class ClaudeProvider(BaseProvider):
    name = "claude"

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
        model = model or "claude-sonnet-4-5"
        t0 = time.monotonic()

        body: dict[str, Any] = {
            "model": model,
            "max_tokens": max_tokens,
            "temperature": temperature,
            "messages": [{"role": "user", "content": _content_blocks(prompt, document)}],
        }
        if system_prompt:
            body["system"] = system_prompt
        if tool is not None:
            body["tools"] = [
                {"name": tool.name, "description": tool.description, "input_schema": tool.input_schema}
            ]
            body["tool_choice"] = {"type": "tool", "name": tool.name}

        async with httpx.AsyncClient(timeout=timeout_seconds) as client:
            resp = await client.post(
                API_URL,
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
        text = ""
        for block in data.get("content", []):
            if tool is not None and block.get("type") == "tool_use":
                text = json.dumps(block.get("input") or {})
                break
            if block.get("type") == "text":
                text = block.get("text", "")
                if tool is None:
                    break
        usage = data.get("usage", {})

        return ProviderResult(
            raw_text=text,
            model=model,
            provider=self.name,
            prompt_tokens=usage.get("input_tokens", 0),
            completion_tokens=usage.get("output_tokens", 0),
            latency_ms=round(elapsed, 2),
        )
