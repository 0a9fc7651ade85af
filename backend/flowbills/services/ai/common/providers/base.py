"""Abstract base for all AI providers."""

from __future__ import annotations

import abc
from dataclasses import dataclass, field
from typing import Any


@dataclass(frozen=True)
class ProviderResult:
    """Immutable result returned by every provider.

    For schema-constrained calls ``raw_text`` holds the JSON-encoded tool
    input so callers can parse every response shape the same way.
    """

    raw_text: str
    model: str
    provider: str
    prompt_tokens: int = 0
    completion_tokens: int = 0
    latency_ms: float = 0.0


@dataclass(frozen=True)
class ToolSpec:
    """A single forced tool call used to constrain output to a JSON schema."""

    name: str
    description: str
    input_schema: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class DocumentPart:
    """Binary document (PDF or image) attached to a multimodal prompt."""

    media_type: str
    data_base64: str

    @property
    def is_pdf(self) -> bool:
        return self.media_type == "application/pdf"

    @property
    def data_url(self) -> str:
        return f"data:{self.media_type};base64,{self.data_base64}"


class BaseProvider(abc.ABC):
    """Contract that every AI provider must implement."""

    name: str = "base"

    @abc.abstractmethod
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
        """Send *prompt* (plus optional document) and return a ``ProviderResult``."""
