from datetime import datetime
from enum import StrEnum
from typing import Optional

from pydantic import BaseModel, Field


class ApprovalStatus(StrEnum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"


class ApprovalDecision(StrEnum):
    APPROVED = "approved"
    REJECTED = "rejected"


class ApprovalActionRequest(BaseModel):
    approval_id: str = Field(..., min_length=1)
    decision: ApprovalDecision
    comments: Optional[str] = Field(default=None, max_length=4000)


class ApprovalActionResponse(BaseModel):
    success: bool = True
    approval_id: str
    invoice_id: str
    approval_level: int
    status: ApprovalStatus
    invoice_status: str
    ledger_posted: bool = False


class ApprovalOut(BaseModel):
    id: str
    invoice_id: str
    approval_level: int
    status: ApprovalStatus
    approver_id: Optional[str] = None
    amount_approved: Optional[float] = None
    approval_date: Optional[datetime] = None
    comments: Optional[str] = None
    auto_approved: bool = False
    created_at: Optional[datetime] = None


class ApprovalListResponse(BaseModel):
    items: list[ApprovalOut]
    total: int
