"""Invoice extraction and validation.

One attempt is two commits: the ``processing`` marker is committed before the
AI call, and the completed (or failed) extraction is committed together with
the invoice mutation and its audit entry.
"""

import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Optional

from fastapi import HTTPException
from sqlalchemy import update
from sqlalchemy.orm import Session

from flowbills.core.auth import CurrentUser
from flowbills.core.config import get_settings
from flowbills.models.billing import Invoice, InvoiceExtraction
from flowbills.schemas.invoice import BudgetStatus, ExtractionStatus, InvoiceStatus
from flowbills.services.ai.invoice_extract.contracts import AIInvoiceExtractResult, InvoiceExtractFields
from flowbills.services.ai.invoice_extract.service import (
    ExtractionProviderError,
    extract_invoice_document,
    prepare_document,
)
from flowbills.services.audit_log import create_audit_log
from flowbills.services.budget_ledger import find_well, format_money, get_active_afe, project_budget, to_money

logger = logging.getLogger(__name__)

EXTRACTABLE_STATUSES = {
    InvoiceStatus.PENDING,
    InvoiceStatus.VALIDATED,
    InvoiceStatus.NEEDS_REVIEW,
    InvoiceStatus.VALIDATION_FAILED,
}


class ExtractionFailed(Exception):
    """The extraction attempt was recorded as failed."""

    def __init__(self, message: str, *, extraction_id: Optional[str] = None) -> None:
        super().__init__(message)
        self.extraction_id = extraction_id


@dataclass
class BudgetCheck:
    status: BudgetStatus = BudgetStatus.NO_AFE
    remaining: Optional[Decimal] = None
    afe_id: Optional[str] = None
    errors: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)


@dataclass
class ExtractionOutcome:
    extraction: InvoiceExtraction
    invoice: Invoice
    extracted_data: dict[str, Any]
    budget: BudgetCheck
    errors: list[str]
    warnings: list[str]


def load_invoice_for_actor(db: Session, invoice_id: str, actor: CurrentUser) -> Invoice:
    try:
        invoice = db.get(Invoice, uuid.UUID(str(invoice_id)))
    except ValueError:
        invoice = None
    if invoice is None:
        raise HTTPException(404, "Invoice not found")
    if not actor.can_access(invoice.owner_id):
        raise HTTPException(404, "Invoice not found")
    return invoice


def reconcile_budget(
    db: Session,
    *,
    owner_id: str,
    afe_number: Optional[str],
    amount: Decimal,
    warning_ratio: float,
) -> BudgetCheck:
    if not afe_number:
        return BudgetCheck()

    afe = get_active_afe(db, owner_id, afe_number)
    if afe is None:
        return BudgetCheck(
            status=BudgetStatus.AFE_NOT_FOUND,
            warnings=[f"AFE {afe_number} not found in system"],
        )

    projection = project_budget(afe, amount, warning_ratio)
    check = BudgetCheck(status=projection.status, remaining=projection.remaining, afe_id=str(afe.id))
    if projection.status == BudgetStatus.OVER_BUDGET:
        check.errors.append(
            f"Invoice amount {format_money(to_money(amount))} exceeds AFE budget. "
            f"Over by {format_money(projection.overage)}"
        )
    if projection.near_limit:
        check.warnings.append(f"AFE {afe.afe_number} is at {projection.utilization_pct:.1f}% of budget")
    return check


def derive_invoice_status(errors: list[str], warnings: list[str], budget_status: BudgetStatus) -> InvoiceStatus:
    if errors:
        return InvoiceStatus.VALIDATION_FAILED
    if warnings:
        return InvoiceStatus.NEEDS_REVIEW
    if budget_status == BudgetStatus.WITHIN_BUDGET:
        return InvoiceStatus.VALIDATED
    return InvoiceStatus.PENDING


def _begin_attempt(db: Session, invoice: Invoice, modality: str) -> tuple[InvoiceExtraction, str]:
    current = InvoiceStatus(invoice.status)
    if current == InvoiceStatus.PROCESSING:
        raise HTTPException(409, "Extraction already in progress for this invoice")
    if current not in EXTRACTABLE_STATUSES:
        raise HTTPException(409, f"Invoice in status {current.value} cannot be re-extracted")

    claimed = db.execute(
        update(Invoice)
        .where(Invoice.id == invoice.id, Invoice.status == current.value)
        .values(status=InvoiceStatus.PROCESSING.value)
        .execution_options(synchronize_session=False)
    )
    if claimed.rowcount != 1:
        db.rollback()
        raise HTTPException(409, "Extraction already in progress for this invoice")

    extraction = InvoiceExtraction(
        invoice_id=invoice.id,
        owner_id=invoice.owner_id,
        extraction_status=ExtractionStatus.PROCESSING.value,
        modality=modality,
    )
    db.add(extraction)
    db.commit()
    db.refresh(extraction)
    db.refresh(invoice)
    return extraction, current.value


def _record_failure(
    db: Session,
    *,
    extraction_id: str,
    invoice_id: str,
    previous_status: str,
    message: str,
    actor: CurrentUser,
    ip_address: Optional[str],
    user_agent: Optional[str],
    metadata: Optional[dict[str, Any]] = None,
) -> None:
    extraction = db.get(InvoiceExtraction, uuid.UUID(extraction_id))
    invoice = db.get(Invoice, uuid.UUID(invoice_id))
    if extraction is not None:
        extraction.extraction_status = ExtractionStatus.FAILED.value
        extraction.error_message = message[:2000]
    if invoice is not None and invoice.status == InvoiceStatus.PROCESSING.value:
        invoice.status = previous_status
    create_audit_log(
        db,
        entity_type="invoice",
        entity_id=invoice_id,
        action="INVOICE_EXTRACTION_FAILED",
        old_value={"status": previous_status},
        new_value={"extraction_id": extraction_id, "extraction_status": ExtractionStatus.FAILED.value},
        actor_type=actor.role,
        actor_id=actor.id,
        ip_address=ip_address,
        user_agent=user_agent,
        metadata={"error": message, **(metadata or {})},
    )
    db.commit()


def _apply_result(
    db: Session,
    *,
    extraction: InvoiceExtraction,
    invoice: Invoice,
    result: AIInvoiceExtractResult,
    previous_status: str,
    actor: CurrentUser,
    ip_address: Optional[str],
    user_agent: Optional[str],
) -> ExtractionOutcome:
    settings = get_settings()
    fields: InvoiceExtractFields = result.extraction
    owner_id = str(invoice.owner_id)

    budget = reconcile_budget(
        db,
        owner_id=owner_id,
        afe_number=fields.afe_number,
        amount=to_money(invoice.amount),
        warning_ratio=settings.budget_warning_ratio,
    )
    errors = list(budget.errors)
    warnings = list(budget.warnings)

    uwi_id = None
    if fields.uwi:
        well = find_well(db, owner_id, fields.uwi)
        if well is None:
            warnings.append(f"UWI {fields.uwi} not found in system")
        else:
            uwi_id = well.id

    new_status = derive_invoice_status(errors, warnings, budget.status)
    extracted_data = fields.model_dump(mode="json")
    now = datetime.now(timezone.utc)

    extraction.extraction_status = ExtractionStatus.COMPLETED.value
    extraction.afe_number = fields.afe_number
    extraction.afe_id = budget.afe_id
    extraction.uwi = fields.uwi
    extraction.uwi_id = uwi_id
    extraction.field_ticket_refs = fields.field_ticket_numbers
    extraction.po_number = fields.po_number
    extraction.service_period_start = fields.service_period_start
    extraction.service_period_end = fields.service_period_end
    extraction.line_items = extracted_data["line_items"]
    extraction.extracted_data = extracted_data
    extraction.raw_text = result.raw_text
    extraction.confidence_scores = fields.confidence_scores
    extraction.budget_status = budget.status.value
    extraction.budget_remaining = budget.remaining
    extraction.validation_errors = errors
    extraction.validation_warnings = warnings
    extraction.model_version = result.model_version
    extraction.extracted_at = now
    extraction.validated_at = now

    invoice.status = new_status.value
    invoice.extracted_data = extracted_data
    invoice.confidence_score = fields.average_confidence()
    if fields.vendor_name:
        invoice.vendor_name = fields.vendor_name
    if fields.invoice_number:
        invoice.invoice_number = fields.invoice_number
    if fields.po_number and not invoice.po_number:
        invoice.po_number = fields.po_number
    if fields.invoice_date and not invoice.invoice_date:
        invoice.invoice_date = fields.invoice_date
    if fields.due_date and not invoice.due_date:
        invoice.due_date = fields.due_date

    create_audit_log(
        db,
        entity_type="invoice",
        entity_id=str(invoice.id),
        action="INVOICE_EXTRACTED",
        old_value={"status": previous_status},
        new_value={
            "status": new_status.value,
            "extraction_id": str(extraction.id),
            "budget_status": budget.status.value,
            "errors_count": len(errors),
            "warnings_count": len(warnings),
        },
        actor_type=actor.role,
        actor_id=actor.id,
        ip_address=ip_address,
        user_agent=user_agent,
        metadata={"modality": result.modality, "parsed": result.parsed, "ai": result.ai_meta},
    )
    db.commit()
    db.refresh(extraction)
    db.refresh(invoice)

    return ExtractionOutcome(
        extraction=extraction,
        invoice=invoice,
        extracted_data=extracted_data,
        budget=budget,
        errors=errors,
        warnings=warnings,
    )


async def extract_invoice(
    db: Session,
    *,
    invoice_id: str,
    content: str,
    content_type_hint: Optional[str],
    actor: CurrentUser,
    ip_address: Optional[str] = None,
    user_agent: Optional[str] = None,
) -> ExtractionOutcome:
    """Extract, validate and persist one attempt for *invoice_id*.

    Raises ``HTTPException`` for input problems before anything is written,
    and ``ExtractionFailed`` after the failed attempt has been committed.
    """
    invoice = load_invoice_for_actor(db, invoice_id, actor)
    try:
        modality, _ = prepare_document(content, content_type_hint)
    except ValueError as exc:
        raise HTTPException(400, str(exc)) from exc

    extraction, previous_status = _begin_attempt(db, invoice, modality.value)
    extraction_id = str(extraction.id)
    invoice_key = str(invoice.id)

    try:
        result = await extract_invoice_document(content, content_type_hint)
    except ExtractionProviderError as exc:
        _record_failure(
            db,
            extraction_id=extraction_id,
            invoice_id=invoice_key,
            previous_status=previous_status,
            message=str(exc),
            actor=actor,
            ip_address=ip_address,
            user_agent=user_agent,
            metadata={"provider": exc.provider, "model": exc.model},
        )
        raise ExtractionFailed(str(exc), extraction_id=extraction_id) from exc

    try:
        return _apply_result(
            db,
            extraction=extraction,
            invoice=invoice,
            result=result,
            previous_status=previous_status,
            actor=actor,
            ip_address=ip_address,
            user_agent=user_agent,
        )
    except Exception as exc:
        logger.exception("Persisting extraction %s failed", extraction_id)
        db.rollback()
        _record_failure(
            db,
            extraction_id=extraction_id,
            invoice_id=invoice_key,
            previous_status=previous_status,
            message="Failed to persist extraction result",
            actor=actor,
            ip_address=ip_address,
            user_agent=user_agent,
        )
        raise ExtractionFailed("Failed to persist extraction result", extraction_id=extraction_id) from exc


def latest_extraction(db: Session, invoice_id: str) -> Optional[InvoiceExtraction]:
    return (
        db.query(InvoiceExtraction)
        .filter(InvoiceExtraction.invoice_id == invoice_id)
        .order_by(InvoiceExtraction.created_at.desc(), InvoiceExtraction.id.desc())
        .first()
    )
