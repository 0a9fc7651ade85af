import logging
import uuid
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from flowbills.core.auth import CurrentUser, get_current_user, require_roles
from flowbills.core.dependencies import get_db
from flowbills.models.billing import Invoice, InvoiceExtraction, Vendor
from flowbills.schemas.invoice import (
    ApprovalSummary,
    DuplicateCheckResponse,
    DuplicateMatch,
    ExtractionOut,
    ExtractionRequest,
    ExtractionResponse,
    InvoiceCreate,
    InvoiceOut,
    InvoiceStatus,
)
from flowbills.services.audit_log import client_ip, create_audit_log, user_agent
from flowbills.services.duplicate_check import compute_duplicate_hash, find_duplicates
from flowbills.services.extraction_service import (
    ExtractionFailed,
    extract_invoice,
    latest_extraction,
    load_invoice_for_actor,
)

router = APIRouter()
logger = logging.getLogger(__name__)

DUPLICATE_CHECKABLE_STATUSES = {
    InvoiceStatus.PENDING.value,
    InvoiceStatus.VALIDATED.value,
    InvoiceStatus.NEEDS_REVIEW.value,
    InvoiceStatus.VALIDATION_FAILED.value,
}


def _float_or_none(value) -> Optional[float]:
    return float(value) if value is not None else None


def _extraction_out(extraction: InvoiceExtraction) -> ExtractionOut:
    return ExtractionOut(
        id=str(extraction.id),
        extraction_status=extraction.extraction_status,
        modality=extraction.modality,
        afe_number=extraction.afe_number,
        uwi=extraction.uwi,
        budget_status=extraction.budget_status,
        budget_remaining=_float_or_none(extraction.budget_remaining),
        validation_errors=extraction.validation_errors or [],
        validation_warnings=extraction.validation_warnings or [],
        confidence_scores=extraction.confidence_scores or {},
        error_message=extraction.error_message,
        created_at=extraction.created_at,
    )


def _invoice_out(invoice: Invoice, extraction: Optional[InvoiceExtraction] = None) -> InvoiceOut:
    return InvoiceOut(
        id=str(invoice.id),
        invoice_number=invoice.invoice_number,
        vendor_id=str(invoice.vendor_id) if invoice.vendor_id else None,
        vendor_name=invoice.vendor_name,
        amount=float(invoice.amount),
        currency=invoice.currency,
        invoice_date=invoice.invoice_date,
        due_date=invoice.due_date,
        po_number=invoice.po_number,
        status=invoice.status,
        confidence_score=_float_or_none(invoice.confidence_score),
        duplicate_hash=invoice.duplicate_hash,
        approvals=[
            ApprovalSummary(
                id=str(approval.id),
                approval_level=approval.approval_level,
                status=approval.status,
                approver_id=str(approval.approver_id) if approval.approver_id else None,
                approval_date=approval.approval_date,
                comments=approval.comments,
            )
            for approval in invoice.approvals
        ],
        latest_extraction=_extraction_out(extraction) if extraction else None,
        created_at=invoice.created_at,
    )


@router.post("/invoices", response_model=InvoiceOut, status_code=201)
def create_invoice(
    payload: InvoiceCreate,
    request: Request,
    current_user: CurrentUser = Depends(require_roles("AP_CLERK", "ADMIN")),
    db: Session = Depends(get_db),
):
    vendor = None
    if payload.vendor_id:
        try:
            vendor = db.get(Vendor, uuid.UUID(payload.vendor_id))
        except ValueError:
            vendor = None
        if vendor is None:
            raise HTTPException(400, "Unknown vendor_id")

    invoice = Invoice(
        owner_id=current_user.tenant_id,
        invoice_number=payload.invoice_number,
        vendor_id=vendor.id if vendor else None,
        vendor_name=payload.vendor_name or (vendor.vendor_name if vendor else None),
        amount=payload.amount,
        currency=payload.currency.upper(),
        invoice_date=payload.invoice_date,
        due_date=payload.due_date,
        po_number=payload.po_number,
        status=InvoiceStatus.PENDING.value,
        duplicate_hash=compute_duplicate_hash(
            str(vendor.id) if vendor else None,
            payload.amount,
            payload.invoice_date,
            payload.po_number,
        ),
    )
    db.add(invoice)
    db.flush()

    create_audit_log(
        db,
        entity_type="invoice",
        entity_id=str(invoice.id),
        action="INVOICE_CREATED",
        old_value=None,
        new_value={"status": invoice.status, "amount": payload.amount, "currency": invoice.currency},
        actor_type=current_user.role,
        actor_id=current_user.id,
        ip_address=client_ip(request),
        user_agent=user_agent(request),
    )
    db.commit()
    db.refresh(invoice)
    return _invoice_out(invoice)


@router.get("/invoices/{invoice_id}", response_model=InvoiceOut)
def get_invoice(
    invoice_id: str,
    current_user: CurrentUser = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    invoice = load_invoice_for_actor(db, invoice_id, current_user)
    return _invoice_out(invoice, latest_extraction(db, invoice.id))


@router.post("/invoices/extract", response_model=ExtractionResponse)
async def extract_invoice_endpoint(
    payload: ExtractionRequest,
    request: Request,
    current_user: CurrentUser = Depends(require_roles("AP_CLERK", "ADMIN", "SERVICE")),
    db: Session = Depends(get_db),
):
    try:
        outcome = await extract_invoice(
            db,
            invoice_id=payload.invoice_id,
            content=payload.file_content,
            content_type_hint=payload.file_type,
            actor=current_user,
            ip_address=client_ip(request),
            user_agent=user_agent(request),
        )
    except ExtractionFailed as exc:
        return JSONResponse(
            status_code=500,
            content={"success": False, "error": str(exc), "extraction_id": exc.extraction_id},
        )

    return ExtractionResponse(
        success=True,
        extraction_id=str(outcome.extraction.id),
        extracted_data=outcome.extracted_data,
        budget_status=outcome.budget.status,
        budget_remaining=_float_or_none(outcome.budget.remaining),
        validation_errors=outcome.errors,
        validation_warnings=outcome.warnings,
        invoice_status=outcome.invoice.status,
    )


def _match(invoice: Invoice, match_type: str) -> DuplicateMatch:
    return DuplicateMatch(
        invoice_id=str(invoice.id),
        invoice_number=invoice.invoice_number,
        amount=float(invoice.amount),
        invoice_date=invoice.invoice_date,
        match_type=match_type,
    )


@router.post("/invoices/{invoice_id}/duplicate-check", response_model=DuplicateCheckResponse)
def duplicate_check(
    invoice_id: str,
    request: Request,
    current_user: CurrentUser = Depends(require_roles("AP_CLERK", "ADMIN", "SERVICE")),
    db: Session = Depends(get_db),
):
    invoice = load_invoice_for_actor(db, invoice_id, current_user)
    report = find_duplicates(db, invoice)

    if invoice.duplicate_hash != report.duplicate_hash:
        invoice.duplicate_hash = report.duplicate_hash

    if report.is_duplicate and invoice.status in DUPLICATE_CHECKABLE_STATUSES:
        old_status = invoice.status
        invoice.status = InvoiceStatus.DUPLICATE.value
        create_audit_log(
            db,
            entity_type="invoice",
            entity_id=str(invoice.id),
            action="INVOICE_DUPLICATE_DETECTED",
            old_value={"status": old_status},
            new_value={"status": invoice.status, "risk_score": report.risk_score},
            actor_type=current_user.role,
            actor_id=current_user.id,
            ip_address=client_ip(request),
            user_agent=user_agent(request),
            metadata={"exact_matches": [str(match.id) for match in report.exact]},
        )
    db.commit()

    return DuplicateCheckResponse(
        invoice_id=str(invoice.id),
        is_duplicate=report.is_duplicate,
        duplicate_hash=report.duplicate_hash,
        risk_score=report.risk_score,
        exact_matches=[_match(match, "exact") for match in report.exact],
        fuzzy_matches=[_match(match, "fuzzy") for match in report.fuzzy],
    )
