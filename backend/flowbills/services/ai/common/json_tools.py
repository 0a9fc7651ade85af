"""Recover a JSON object from model output that may carry prose or code fences."""

from __future__ import annotations

import json
import re
from typing import Any

_FENCE_RE = re.compile(r"^```(?:json)?\s*|\s*```$", re.IGNORECASE)
_decoder = json.JSONDecoder()


def strip_code_fences(text: str) -> str:
    return _FENCE_RE.sub("", text.strip())


def extract_json_object(text: str | None) -> dict[str, Any] | None:
    """Return the first JSON object found in *text*, or ``None``.

    Arrays and scalars are skipped: extraction payloads are always objects.
    """
    if not text or not text.strip():
        return None

    body = strip_code_fences(text)
    start = body.find("{")
    while start != -1:
        try:
            value, _ = _decoder.raw_decode(body, start)
        except ValueError:
            value = None
        if isinstance(value, dict):
            return value
        start = body.find("{", start + 1)
    return None
