from datetime import date, datetime
from enum import StrEnum
from typing import Any, Optional

from pydantic import BaseModel, Field


class InvoiceStatus(StrEnum):
    PENDING = "pending"
    PROCESSING = "processing"
    VALIDATED = "validated"
    NEEDS_REVIEW = "needs_review"
    VALIDATION_FAILED = "validation_failed"
    PENDING_APPROVAL = "pending_approval"
    APPROVED = "approved"
    REJECTED = "rejected"
    DUPLICATE = "duplicate"


class ExtractionStatus(StrEnum):
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class BudgetStatus(StrEnum):
    NO_AFE = "no_afe"
    WITHIN_BUDGET = "within_budget"
    OVER_BUDGET = "over_budget"
    AFE_NOT_FOUND = "afe_not_found"


class Modality(StrEnum):
    TEXT = "text"
    VISION = "vision"


# --- Invoices ---


class InvoiceCreate(BaseModel):
    invoice_number: Optional[str] = Field(default=None, max_length=128)
    vendor_id: Optional[str] = None
    vendor_name: Optional[str] = Field(default=None, max_length=255)
    amount: float = Field(..., gt=0)
    currency: str = Field(default="CAD", min_length=3, max_length=3)
    invoice_date: Optional[date] = None
    due_date: Optional[date] = None
    po_number: Optional[str] = Field(default=None, max_length=128)


class ApprovalSummary(BaseModel):
    id: str
    approval_level: int
    status: str
    approver_id: Optional[str] = None
    approval_date: Optional[datetime] = None
    comments: Optional[str] = None


class ExtractionOut(BaseModel):
    id: str
    extraction_status: ExtractionStatus
    modality: Optional[str] = None
    afe_number: Optional[str] = None
    uwi: Optional[str] = None
    budget_status: Optional[BudgetStatus] = None
    budget_remaining: Optional[float] = None
    validation_errors: list[str] = Field(default_factory=list)
    validation_warnings: list[str] = Field(default_factory=list)
    confidence_scores: dict[str, float] = Field(default_factory=dict)
    error_message: Optional[str] = None
    created_at: Optional[datetime] = None


class InvoiceOut(BaseModel):
    id: str
    invoice_number: Optional[str] = None
    vendor_id: Optional[str] = None
    vendor_name: Optional[str] = None
    amount: float
    currency: str
    invoice_date: Optional[date] = None
    due_date: Optional[date] = None
    po_number: Optional[str] = None
    status: InvoiceStatus
    confidence_score: Optional[float] = None
    duplicate_hash: Optional[str] = None
    approvals: list[ApprovalSummary] = Field(default_factory=list)
    latest_extraction: Optional[ExtractionOut] = None
    created_at: Optional[datetime] = None


# --- Extraction entrypoint ---


class ExtractionRequest(BaseModel):
    invoice_id: str = Field(..., min_length=1)
    file_content: str = Field(..., min_length=1)
    file_type: Optional[str] = Field(default=None, max_length=128)


class ExtractionResponse(BaseModel):
    success: bool = True
    extraction_id: str
    extracted_data: dict[str, Any] = Field(default_factory=dict)
    budget_status: BudgetStatus
    budget_remaining: Optional[float] = None
    validation_errors: list[str] = Field(default_factory=list)
    validation_warnings: list[str] = Field(default_factory=list)
    invoice_status: InvoiceStatus


# --- Duplicate detection ---


class DuplicateMatch(BaseModel):
    invoice_id: str
    invoice_number: Optional[str] = None
    amount: float
    invoice_date: Optional[date] = None
    match_type: str


class DuplicateCheckResponse(BaseModel):
    success: bool = True
    invoice_id: str
    is_duplicate: bool
    duplicate_hash: str
    risk_score: int
    exact_matches: list[DuplicateMatch] = Field(default_factory=list)
    fuzzy_matches: list[DuplicateMatch] = Field(default_factory=list)
