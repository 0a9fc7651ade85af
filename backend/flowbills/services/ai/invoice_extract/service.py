"""Invoice extraction: one bounded AI call per attempt.

Text documents go through a forced tool call whose input schema is
``EXTRACTION_SCHEMA``; PDFs and images go through a multimodal prompt that
asks for the same JSON. Transport failures raise ``ExtractionProviderError``
and are never retried here. Output that cannot be parsed degrades to an
empty result carrying the raw text.
"""

from __future__ import annotations

import asyncio
import base64
import binascii
import logging
import re
from typing import Optional

from pydantic import ValidationError

from flowbills.core.config import get_settings
from flowbills.schemas.invoice import Modality
from flowbills.services.ai.common.audit import ai_run_metadata
from flowbills.services.ai.common.json_tools import extract_json_object
from flowbills.services.ai.common.providers import DocumentPart, ToolSpec
from flowbills.services.ai.common.router import resolve
from flowbills.services.ai.invoice_extract.contracts import (
    EXTRACTION_SCHEMA,
    AIInvoiceExtractResult,
    InvoiceExtractFields,
)

logger = logging.getLogger(__name__)

SYSTEM_PROMPT = (
    "You are an expert at extracting structured data from oil and gas field service invoices. "
    "Read AFE numbers, UWIs, field ticket numbers, PO numbers, service periods and line items exactly "
    "as printed. Use null for anything the document does not show and never guess identifiers. "
    "Give each confidence score between 0 and 1."
)

TEXT_PROMPT = """Extract the invoice data from the document below using the extract_invoice_data tool.

Document content:
{content}"""

VISION_PROMPT = """Extract the invoice data from the attached document.

Return a JSON object with these fields:
- invoice_number, vendor_name, amount (number), currency (3-letter code, default CAD)
- invoice_date, due_date, service_period_start, service_period_end (YYYY-MM-DD)
- afe_number, uwi, po_number
- field_ticket_numbers: list of strings
- line_items: list of {{description, quantity, unit_price, amount, service_code}}
- raw_text: the full text you can read on the document
- confidence_scores: {{afe_number, uwi, field_tickets, line_items, invoice_number, amount, vendor_name}} each 0 to 1

Use null when a field is not present.
Respond ONLY with a valid JSON object, no markdown or explanation."""

EXTRACTION_TOOL = ToolSpec(
    name="extract_invoice_data",
    description="Record the structured fields of an oil and gas service invoice",
    input_schema=EXTRACTION_SCHEMA,
)

_MAGIC_NUMBERS: tuple[tuple[bytes, str], ...] = (
    (b"%PDF", "application/pdf"),
    (b"\x89PNG\r\n\x1a\n", "image/png"),
    (b"\xff\xd8\xff", "image/jpeg"),
    (b"GIF87a", "image/gif"),
    (b"GIF89a", "image/gif"),
    (b"II*\x00", "image/tiff"),
    (b"MM\x00*", "image/tiff"),
)

_HINT_MEDIA_TYPES = {
    "pdf": "application/pdf",
    "png": "image/png",
    "jpg": "image/jpeg",
    "jpeg": "image/jpeg",
    "gif": "image/gif",
    "webp": "image/webp",
    "tif": "image/tiff",
    "tiff": "image/tiff",
}

_BASE64_RE = re.compile(r"^[A-Za-z0-9+/\s]+={0,2}\s*$")
_DATA_URL_RE = re.compile(r"^data:(?P<media>[\w.+-]+/[\w.+-]+);base64,(?P<data>.+)$", re.DOTALL)


class InvalidDocumentError(ValueError):
    """Document content cannot be sent to the extraction capability."""


class ExtractionProviderError(RuntimeError):
    """The AI capability failed or timed out; the attempt is over."""

    def __init__(self, message: str, *, provider: str = "", model: str = "") -> None:
        super().__init__(message)
        self.provider = provider
        self.model = model


def _media_type_from_hint(hint: Optional[str]) -> Optional[str]:
    if not hint:
        return None
    value = hint.strip().lower()
    if value == "application/pdf" or value.startswith("image/"):
        return value
    return _HINT_MEDIA_TYPES.get(value.lstrip(".").rsplit("/", 1)[-1])


def _sniff_media_type(raw: bytes) -> Optional[str]:
    for magic, media_type in _MAGIC_NUMBERS:
        if raw.startswith(magic):
            return media_type
    if raw[:4] == b"RIFF" and raw[8:12] == b"WEBP":
        return "image/webp"
    return None


def _decode_head(data: str) -> Optional[bytes]:
    head = re.sub(r"\s+", "", data[:128])
    head = head[: len(head) - len(head) % 4]
    if not head:
        return None
    try:
        return base64.b64decode(head, validate=True)
    except (binascii.Error, ValueError):
        return None


def classify_document(content: str, content_type_hint: Optional[str] = None) -> tuple[Modality, Optional[DocumentPart]]:
    """Decide whether *content* is plain text or a binary document for the vision call.

    Binary documents arrive base64 encoded, optionally as a ``data:`` URL.
    """
    if not content or not content.strip():
        raise InvalidDocumentError("Document content is empty")

    stripped = content.strip()
    hinted = _media_type_from_hint(content_type_hint)

    match = _DATA_URL_RE.match(stripped)
    if match:
        data = re.sub(r"\s+", "", match.group("data"))
        head = _decode_head(data)
        if head is None:
            raise InvalidDocumentError("Data URL payload is not valid base64")
        media_type = _sniff_media_type(head) or match.group("media").lower()
        return Modality.VISION, DocumentPart(media_type=media_type, data_base64=data)

    looks_base64 = len(stripped) >= 16 and bool(_BASE64_RE.match(stripped[:4096]))
    head = _decode_head(stripped) if looks_base64 else None
    sniffed = _sniff_media_type(head) if head else None

    if sniffed or hinted:
        if head is None:
            raise InvalidDocumentError(f"Content for {hinted} must be base64 encoded")
        data = re.sub(r"\s+", "", stripped)
        return Modality.VISION, DocumentPart(media_type=sniffed or hinted, data_base64=data)

    return Modality.TEXT, None


def prepare_document(content: str, content_type_hint: Optional[str] = None) -> tuple[Modality, Optional[DocumentPart]]:
    """Classify *content* and enforce the size limit, without calling any model."""
    modality, document = classify_document(content, content_type_hint)
    max_bytes = get_settings().max_document_bytes
    if document is not None and len(document.data_base64) * 3 // 4 > max_bytes:
        raise InvalidDocumentError("Document exceeds the maximum allowed size")
    return modality, document


async def extract_invoice_document(
    content: str,
    content_type_hint: Optional[str] = None,
    *,
    override_provider: str | None = None,
    override_model: str | None = None,
) -> AIInvoiceExtractResult:
    """Run one extraction call for *content*.

    Raises ``InvalidDocumentError`` before any call when the content is
    unusable and ``ExtractionProviderError`` when the call itself fails.
    """
    settings = get_settings()
    modality, document = prepare_document(content, content_type_hint)

    if document is not None:
        scope = "invoice_vision"
        prompt = VISION_PROMPT
        tool = None
    else:
        scope = "invoice_extract"
        prompt = TEXT_PROMPT.format(content=content.strip()[: settings.ai_max_text_chars])
        tool = EXTRACTION_TOOL

    config = resolve(scope, override_provider=override_provider, override_model=override_model)

    try:
        result = await asyncio.wait_for(
            config.provider.generate(
                prompt,
                system_prompt=SYSTEM_PROMPT,
                tool=tool,
                document=document,
                model=config.model,
                temperature=config.temperature,
                max_tokens=config.max_tokens,
                timeout_seconds=config.timeout_seconds,
            ),
            timeout=config.timeout_seconds,
        )
    except asyncio.TimeoutError as exc:
        logger.warning("AI invoice extraction timed out after %ss provider=%s", config.timeout_seconds, config.provider.name)
        raise ExtractionProviderError(
            f"AI extraction timed out after {config.timeout_seconds:g}s",
            provider=config.provider.name,
            model=config.model,
        ) from exc
    except Exception as exc:
        logger.exception("AI invoice extraction failed provider=%s", config.provider.name)
        raise ExtractionProviderError(
            f"AI extraction failed: {exc.__class__.__name__}",
            provider=config.provider.name,
            model=config.model,
        ) from exc

    model_version = f"{result.provider}:{result.model}"
    ai_meta = ai_run_metadata(scope=scope, provider_result=result, prompt_text=prompt)

    parsed = extract_json_object(result.raw_text)
    if not isinstance(parsed, dict):
        logger.warning("AI returned unparseable extraction output: %s", result.raw_text[:200])
        return AIInvoiceExtractResult(
            modality=modality.value,
            parsed=False,
            raw_text=result.raw_text,
            model_version=model_version,
            ai_meta=ai_meta,
        )

    raw_text = parsed.pop("raw_text", None)
    try:
        fields = InvoiceExtractFields.model_validate(parsed)
    except ValidationError:
        logger.warning("AI extraction output failed validation: %s", result.raw_text[:200])
        return AIInvoiceExtractResult(
            modality=modality.value,
            parsed=False,
            raw_text=result.raw_text,
            model_version=model_version,
            ai_meta=ai_meta,
        )

    return AIInvoiceExtractResult(
        extraction=fields,
        modality=modality.value,
        parsed=True,
        raw_text=str(raw_text) if raw_text else None,
        model_version=model_version,
        ai_meta=ai_meta,
    )
