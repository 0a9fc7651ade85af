import uuid
from enum import StrEnum
from typing import Any, Optional

from pydantic import BaseModel, Field, field_validator


class PolicyType(StrEnum):
    APPROVAL = "approval"
    FRAUD = "fraud"


class RoutingDecision(StrEnum):
    AUTO_APPROVE = "auto_approve"
    REQUIRE_APPROVAL = "require_approval"
    FLAG_FOR_REVIEW = "flag_for_review"
    BLOCK = "block"


class InvoiceData(BaseModel):
    amount: float = Field(..., ge=0)
    vendor_id: Optional[str] = None
    confidence_score: Optional[float] = Field(default=None, ge=0, le=1)

    @field_validator("vendor_id")
    @classmethod
    def _vendor_uuid(cls, value: Optional[str]) -> Optional[str]:
        if value is None or not value.strip():
            return None
        try:
            return str(uuid.UUID(value.strip()))
        except ValueError:
            raise ValueError("vendor_id must be a UUID") from None


class PolicyEvaluateRequest(BaseModel):
    invoice_id: str = Field(..., min_length=1)
    invoice_data: InvoiceData
    policy_types: Optional[list[str]] = None


class PolicyEvaluationOut(BaseModel):
    policy_id: str
    policy_name: str
    policy_type: str
    triggered: bool
    actions: dict[str, Any] = Field(default_factory=dict)
    details: str = ""


class PolicyEvaluateResponse(BaseModel):
    success: bool
    invoice_id: str
    policies_evaluated: list[PolicyEvaluationOut] = Field(default_factory=list)
    final_decision: RoutingDecision
    required_approvals: int = 0
    routing_reason: str
    error: Optional[str] = None
