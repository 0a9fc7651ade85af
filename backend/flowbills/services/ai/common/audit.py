"""AI run metadata attached to the audit entry of the operation that used the model."""

from __future__ import annotations

import hashlib
from typing import Any

from flowbills.core.config import get_settings

from .providers.base import ProviderResult


def ai_run_metadata(
    *,
    scope: str,
    provider_result: ProviderResult,
    prompt_text: str,
) -> dict[str, Any]:
    """Build the ``ai`` block stored in audit metadata.

    Prompt and response are always hashed; raw text is only kept when
    ``AI_DEBUG_STORE_RAW=true`` since invoices carry bank and tax details.
    """
    settings = get_settings()

    metadata: dict[str, Any] = {
        "scope": scope,
        "provider": provider_result.provider,
        "model": provider_result.model,
        "prompt_tokens": provider_result.prompt_tokens,
        "completion_tokens": provider_result.completion_tokens,
        "latency_ms": provider_result.latency_ms,
        "prompt_hash": hashlib.sha256(prompt_text.encode()).hexdigest(),
        "response_hash": hashlib.sha256(provider_result.raw_text.encode()).hexdigest(),
    }

    if settings.ai_debug_store_raw:
        metadata["prompt_raw"] = prompt_text
        metadata["response_raw"] = provider_result.raw_text

    return metadata
