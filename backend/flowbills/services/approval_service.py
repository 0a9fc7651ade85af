import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional

from fastapi import HTTPException
from sqlalchemy import update
from sqlalchemy.orm import Session

from flowbills.core.auth import CurrentUser
from flowbills.core.config import get_settings
from flowbills.models.billing import Approval, Invoice, InvoiceExtraction
from flowbills.schemas.approval import ApprovalDecision, ApprovalStatus
from flowbills.schemas.invoice import ExtractionStatus, InvoiceStatus
from flowbills.services.audit_log import create_audit_log
from flowbills.services.budget_ledger import LedgerPosting, post_spend, to_money

logger = logging.getLogger(__name__)

ALLOWED_TRANSITIONS = {
    ApprovalStatus.PENDING: [ApprovalStatus.APPROVED, ApprovalStatus.REJECTED],
    ApprovalStatus.APPROVED: [],
    ApprovalStatus.REJECTED: [],
}


@dataclass
class ApprovalActionResult:
    approval: Approval
    invoice: Invoice
    ledger_posted: bool = False


def _lock_invoice(db: Session, invoice_id) -> Invoice:
    invoice = db.query(Invoice).filter(Invoice.id == invoice_id).with_for_update().one_or_none()
    if invoice is None:
        raise HTTPException(404, "Invoice not found")
    return invoice


def _posting_afe_id(db: Session, invoice_id) -> Optional[str]:
    extraction = (
        db.query(InvoiceExtraction)
        .filter(
            InvoiceExtraction.invoice_id == invoice_id,
            InvoiceExtraction.extraction_status == ExtractionStatus.COMPLETED.value,
        )
        .order_by(InvoiceExtraction.created_at.desc())
        .first()
    )
    if extraction is None or extraction.afe_id is None:
        return None
    return extraction.afe_id


def finalize_invoice_approval(
    db: Session,
    invoice: Invoice,
    *,
    actor: CurrentUser,
    ip_address: Optional[str] = None,
    user_agent: Optional[str] = None,
) -> Optional[LedgerPosting]:
    """Move *invoice* to ``approved`` and book its amount on the AFE.

    Shared by the last human approval and by policy auto-approval. Spend that
    does not fit the AFE is still booked and leaves a
    ``LEDGER_POSTING_EXCEPTION`` audit entry. Does not commit.
    """
    invoice.status = InvoiceStatus.APPROVED.value
    if not get_settings().ledger_post_on_final_approval:
        return None

    afe_id = _posting_afe_id(db, invoice.id)
    if afe_id is None or to_money(invoice.amount) <= 0:
        return None

    posting = post_spend(db, afe_id, invoice.amount)
    if posting is not None and not posting.reserved:
        create_audit_log(
            db,
            entity_type="afe",
            entity_id=posting.afe_id,
            action="LEDGER_POSTING_EXCEPTION",
            old_value=None,
            new_value={
                "invoice_id": str(invoice.id),
                "amount": posting.amount,
                "remaining": posting.remaining,
                "over_budget": posting.over_budget,
            },
            actor_type=actor.role,
            actor_id=actor.id,
            ip_address=ip_address,
            user_agent=user_agent,
        )
    return posting


def decide_approval(
    db: Session,
    *,
    approval_id: str,
    decision: ApprovalDecision,
    comments: Optional[str],
    actor: CurrentUser,
    ip_address: Optional[str] = None,
    user_agent: Optional[str] = None,
) -> ApprovalActionResult:
    """Apply one human decision to one approval level and commit.

    The invoice row is locked for the duration so concurrent actions on
    different levels of the same invoice are serialised; the approval row
    itself only moves through a conditional update on ``status='pending'``.
    """
    settings = get_settings()
    decision = ApprovalDecision(decision)
    note = (comments or "").strip() or None
    if decision == ApprovalDecision.REJECTED and not note:
        raise HTTPException(400, "Comments are required when rejecting")

    try:
        approval = db.get(Approval, uuid.UUID(str(approval_id)))
    except ValueError:
        approval = None
    if approval is None:
        raise HTTPException(404, "Approval not found")

    invoice = _lock_invoice(db, approval.invoice_id)
    db.refresh(approval)

    current = ApprovalStatus(approval.status)
    target = ApprovalStatus(decision.value)
    if target not in ALLOWED_TRANSITIONS[current]:
        raise HTTPException(409, f"Approval already {current.value}")
    if invoice.status != InvoiceStatus.PENDING_APPROVAL.value:
        raise HTTPException(409, f"Invoice is {invoice.status}, not awaiting approval")

    if target == ApprovalStatus.APPROVED and settings.approval_enforce_level_order:
        lower_pending = (
            db.query(Approval.id)
            .filter(
                Approval.invoice_id == approval.invoice_id,
                Approval.approval_level < approval.approval_level,
                Approval.status == ApprovalStatus.PENDING.value,
            )
            .first()
        )
        if lower_pending is not None:
            raise HTTPException(409, "Lower approval levels must be approved first")

    now = datetime.now(timezone.utc)
    result = db.execute(
        update(Approval)
        .where(Approval.id == approval.id, Approval.status == ApprovalStatus.PENDING.value)
        .values(status=target.value, approver_id=actor.id, approval_date=now, comments=note)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        db.rollback()
        raise HTTPException(409, "Approval was decided concurrently")
    db.refresh(approval)

    old_invoice_status = invoice.status
    ledger_posted = False
    if target == ApprovalStatus.REJECTED:
        invoice.status = InvoiceStatus.REJECTED.value
    else:
        remaining_pending = (
            db.query(Approval.id)
            .filter(
                Approval.invoice_id == approval.invoice_id,
                Approval.status == ApprovalStatus.PENDING.value,
            )
            .count()
        )
        if remaining_pending == 0:
            posting = finalize_invoice_approval(
                db, invoice, actor=actor, ip_address=ip_address, user_agent=user_agent
            )
            ledger_posted = posting is not None

    create_audit_log(
        db,
        entity_type="invoice",
        entity_id=str(invoice.id),
        action="APPROVAL_APPROVED" if target == ApprovalStatus.APPROVED else "APPROVAL_REJECTED",
        old_value={"approval_status": current.value, "invoice_status": old_invoice_status},
        new_value={"approval_status": target.value, "invoice_status": invoice.status},
        actor_type=actor.role,
        actor_id=actor.id,
        ip_address=ip_address,
        user_agent=user_agent,
        metadata={
            "approval_id": str(approval.id),
            "approval_level": approval.approval_level,
            "comments": note,
            "ledger_posted": ledger_posted,
        },
    )
    db.commit()
    db.refresh(approval)
    db.refresh(invoice)
    return ApprovalActionResult(approval=approval, invoice=invoice, ledger_posted=ledger_posted)


def list_approvals(
    db: Session,
    *,
    status: Optional[ApprovalStatus] = None,
    invoice_id: Optional[str] = None,
    limit: int = 50,
) -> tuple[list[Approval], int]:
    query = db.query(Approval)
    if status is not None:
        query = query.filter(Approval.status == status.value)
    if invoice_id:
        query = query.filter(Approval.invoice_id == invoice_id)
    total = query.count()
    items = (
        query.order_by(Approval.created_at.asc(), Approval.approval_level.asc())
        .limit(limit)
        .all()
    )
    return items, total
