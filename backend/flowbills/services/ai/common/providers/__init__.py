"""Provider lookup for the extraction scopes, with mock as the floor."""

from __future__ import annotations

import logging
from typing import Callable

from flowbills.core.config import get_settings

from .base import BaseProvider, DocumentPart, ProviderResult, ToolSpec
from .mock import MockProvider

logger = logging.getLogger(__name__)

__all__ = ["get_provider", "BaseProvider", "DocumentPart", "ProviderResult", "ToolSpec", "MockProvider"]


def _claude(api_key: str) -> BaseProvider:
    from .claude import ClaudeProvider

    return ClaudeProvider(api_key=api_key)


def _openai(api_key: str) -> BaseProvider:
    from .openai import OpenAIProvider

    return OpenAIProvider(api_key=api_key)


# provider name -> (settings attribute holding the key, constructor)
KEYED_PROVIDERS: dict[str, tuple[str, Callable[[str], BaseProvider]]] = {
    "claude": ("anthropic_api_key", _claude),
    "openai": ("openai_api_key", _openai),
}


def get_provider(provider_name: str) -> BaseProvider:
    """Return a provider instance for *provider_name*.

    Anything not allowlisted, unknown, or missing its API key degrades to
    ``MockProvider`` with a warning, so extraction never fails on config alone.
    """
    settings = get_settings()
    name = provider_name.lower().strip()

    if name not in settings.ai_allowed_providers:
        logger.warning("Provider %r not in allowlist, falling back to mock", name)
        return MockProvider()
    if name == "mock":
        return MockProvider()

    entry = KEYED_PROVIDERS.get(name)
    if entry is None:
        logger.warning("Unknown provider %r, falling back to mock", name)
        return MockProvider()

    key_attr, build = entry
    api_key = getattr(settings, key_attr, "")
    if not api_key:
        logger.warning("%s not set, falling back to mock for %r", key_attr.upper(), name)
        return MockProvider()
    return build(api_key)
