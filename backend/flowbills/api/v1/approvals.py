import logging
from typing import Optional

from fastapi import APIRouter, Depends, Query, Request
from sqlalchemy.orm import Session

from flowbills.core.auth import CurrentUser, require_roles
from flowbills.core.dependencies import get_db
from flowbills.models.billing import Approval
from flowbills.schemas.approval import (
    ApprovalActionRequest,
    ApprovalActionResponse,
    ApprovalListResponse,
    ApprovalOut,
    ApprovalStatus,
)
from flowbills.services.approval_service import decide_approval, list_approvals
from flowbills.services.audit_log import client_ip, user_agent

router = APIRouter()
logger = logging.getLogger(__name__)


def _approval_out(approval: Approval) -> ApprovalOut:
    return ApprovalOut(
        id=str(approval.id),
        invoice_id=str(approval.invoice_id),
        approval_level=approval.approval_level,
        status=approval.status,
        approver_id=str(approval.approver_id) if approval.approver_id else None,
        amount_approved=float(approval.amount_approved) if approval.amount_approved is not None else None,
        approval_date=approval.approval_date,
        comments=approval.comments,
        auto_approved=bool(approval.auto_approved),
        created_at=approval.created_at,
    )


@router.post("/approvals/action", response_model=ApprovalActionResponse)
def approval_action(
    payload: ApprovalActionRequest,
    request: Request,
    current_user: CurrentUser = Depends(require_roles("APPROVER", "ADMIN")),
    db: Session = Depends(get_db),
):
    result = decide_approval(
        db,
        approval_id=payload.approval_id,
        decision=payload.decision,
        comments=payload.comments,
        actor=current_user,
        ip_address=client_ip(request),
        user_agent=user_agent(request),
    )
    return ApprovalActionResponse(
        approval_id=str(result.approval.id),
        invoice_id=str(result.invoice.id),
        approval_level=result.approval.approval_level,
        status=result.approval.status,
        invoice_status=result.invoice.status,
        ledger_posted=result.ledger_posted,
    )


@router.get("/approvals", response_model=ApprovalListResponse)
def approval_queue(
    status: Optional[ApprovalStatus] = Query(ApprovalStatus.PENDING),
    invoice_id: Optional[str] = Query(None),
    limit: int = Query(50, ge=1, le=200),
    current_user: CurrentUser = Depends(require_roles("APPROVER", "ADMIN")),
    db: Session = Depends(get_db),
):
    items, total = list_approvals(db, status=status, invoice_id=invoice_id, limit=limit)
    return ApprovalListResponse(items=[_approval_out(item) for item in items], total=total)
