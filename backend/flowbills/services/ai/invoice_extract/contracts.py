"""Invoice extract scope contracts: output schema shared by the text and vision calls."""

from __future__ import annotations

from datetime import date
from typing import Any, Optional

from pydantic import BaseModel, Field, field_validator

CONFIDENCE_KEYS = (
    "afe_number",
    "uwi",
    "field_tickets",
    "line_items",
    "invoice_number",
    "amount",
    "vendor_name",
)

_NULLABLE_STRING = {"type": ["string", "null"]}
_NULLABLE_NUMBER = {"type": ["number", "null"]}
_NULLABLE_DATE = {"type": ["string", "null"], "description": "ISO date YYYY-MM-DD"}

EXTRACTION_SCHEMA: dict[str, Any] = {
    "type": "object",
    "properties": {
        "invoice_number": _NULLABLE_STRING,
        "vendor_name": _NULLABLE_STRING,
        "amount": {**_NULLABLE_NUMBER, "description": "Invoice total including tax"},
        "currency": {**_NULLABLE_STRING, "description": "ISO 4217 code, CAD when not stated"},
        "invoice_date": _NULLABLE_DATE,
        "due_date": _NULLABLE_DATE,
        "afe_number": {**_NULLABLE_STRING, "description": "Authorization for Expenditure number"},
        "uwi": {**_NULLABLE_STRING, "description": "Unique Well Identifier, e.g. 100/01-02-003-04W5/00"},
        "field_ticket_numbers": {"type": "array", "items": {"type": "string"}},
        "po_number": _NULLABLE_STRING,
        "service_period_start": _NULLABLE_DATE,
        "service_period_end": _NULLABLE_DATE,
        "line_items": {
            "type": "array",
            "items": {
                "type": "object",
                "properties": {
                    "description": {"type": "string"},
                    "quantity": _NULLABLE_NUMBER,
                    "unit_price": _NULLABLE_NUMBER,
                    "amount": _NULLABLE_NUMBER,
                    "service_code": _NULLABLE_STRING,
                },
                "required": ["description", "amount"],
            },
        },
        "confidence_scores": {
            "type": "object",
            "description": "Per-field confidence between 0 and 1",
            "properties": {key: {"type": "number", "minimum": 0, "maximum": 1} for key in CONFIDENCE_KEYS},
            "required": ["afe_number", "uwi", "field_tickets", "line_items"],
        },
    },
    "required": [
        "afe_number",
        "uwi",
        "field_ticket_numbers",
        "po_number",
        "service_period_start",
        "service_period_end",
        "line_items",
        "confidence_scores",
    ],
}


def _coerce_date(value: Any) -> Optional[date]:
    if value in (None, ""):
        return None
    if isinstance(value, date):
        return value
    try:
        return date.fromisoformat(str(value).strip()[:10])
    except ValueError:
        return None


def _coerce_number(value: Any) -> Optional[float]:
    if value in (None, ""):
        return None
    if isinstance(value, bool):
        return None
    try:
        return float(str(value).replace(",", "").replace("$", "").strip())
    except ValueError:
        return None


def _clean_str(value: Any) -> Optional[str]:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


class LineItem(BaseModel):
    description: str = ""
    quantity: Optional[float] = None
    unit_price: Optional[float] = None
    amount: Optional[float] = None
    service_code: Optional[str] = None

    @field_validator("quantity", "unit_price", "amount", mode="before")
    @classmethod
    def _numbers(cls, value):
        return _coerce_number(value)

    @field_validator("description", mode="before")
    @classmethod
    def _description(cls, value):
        return "" if value is None else str(value)

    @field_validator("service_code", mode="before")
    @classmethod
    def _service_code(cls, value):
        return _clean_str(value)


class InvoiceExtractFields(BaseModel):
    """Normalised output of one extraction call.

    Every field is optional: models routinely omit what the document does
    not show, and a partial result is still worth validating.
    """

    invoice_number: Optional[str] = None
    vendor_name: Optional[str] = None
    amount: Optional[float] = None
    currency: str = "CAD"
    invoice_date: Optional[date] = None
    due_date: Optional[date] = None
    afe_number: Optional[str] = None
    uwi: Optional[str] = None
    field_ticket_numbers: list[str] = Field(default_factory=list)
    po_number: Optional[str] = None
    service_period_start: Optional[date] = None
    service_period_end: Optional[date] = None
    line_items: list[LineItem] = Field(default_factory=list)
    confidence_scores: dict[str, float] = Field(default_factory=dict)

    @field_validator("invoice_number", "vendor_name", "afe_number", "uwi", "po_number", mode="before")
    @classmethod
    def _strings(cls, value):
        return _clean_str(value)

    @field_validator("currency", mode="before")
    @classmethod
    def _currency(cls, value):
        text = _clean_str(value)
        return text.upper()[:3] if text else "CAD"

    @field_validator("amount", mode="before")
    @classmethod
    def _amount(cls, value):
        return _coerce_number(value)

    @field_validator("invoice_date", "due_date", "service_period_start", "service_period_end", mode="before")
    @classmethod
    def _dates(cls, value):
        return _coerce_date(value)

    @field_validator("field_ticket_numbers", mode="before")
    @classmethod
    def _tickets(cls, value):
        if value is None:
            return []
        if isinstance(value, str):
            value = [value]
        if not isinstance(value, list):
            return []
        return [str(item).strip() for item in value if str(item).strip()]

    @field_validator("line_items", mode="before")
    @classmethod
    def _line_items(cls, value):
        if not isinstance(value, list):
            return []
        return [item for item in value if isinstance(item, dict)]

    @field_validator("confidence_scores", mode="before")
    @classmethod
    def _confidence(cls, value):
        if not isinstance(value, dict):
            return {}
        scores = {}
        for key, raw in value.items():
            number = _coerce_number(raw)
            if number is None:
                continue
            scores[str(key)] = min(1.0, max(0.0, number))
        return scores

    def average_confidence(self) -> Optional[float]:
        if not self.confidence_scores:
            return None
        return round(sum(self.confidence_scores.values()) / len(self.confidence_scores), 3)


class AIInvoiceExtractResult(BaseModel):
    """What the extraction call produced, plus provenance for the audit trail."""

    extraction: InvoiceExtractFields = Field(default_factory=InvoiceExtractFields)
    modality: str
    parsed: bool = True
    raw_text: Optional[str] = None
    model_version: str = ""
    ai_meta: dict[str, Any] = Field(default_factory=dict)
