import hashlib
import logging
from dataclasses import dataclass, field
from datetime import date, timedelta
from decimal import Decimal
from typing import Optional

from sqlalchemy.orm import Session

from flowbills.core.config import get_settings
from flowbills.models.billing import Invoice
from flowbills.services.budget_ledger import to_money

logger = logging.getLogger(__name__)

EXACT_RISK_SCORE = 100
FUZZY_RISK_SCORE = 75
MAX_FUZZY_MATCHES = 5


def compute_duplicate_hash(
    vendor_id: Optional[str],
    amount,
    invoice_date: Optional[date],
    po_number: Optional[str],
) -> str:
    cents = int(to_money(amount) * 100)
    date_part = invoice_date.isoformat() if invoice_date else ""
    key = f"{vendor_id or ''}-{cents}-{date_part}-{po_number or 'no-po'}"
    return hashlib.sha256(key.encode("utf-8")).hexdigest()


@dataclass
class DuplicateReport:
    duplicate_hash: str
    exact: list[Invoice] = field(default_factory=list)
    fuzzy: list[Invoice] = field(default_factory=list)

    @property
    def is_duplicate(self) -> bool:
        return bool(self.exact)

    @property
    def risk_score(self) -> int:
        if self.exact:
            return EXACT_RISK_SCORE
        if self.fuzzy:
            return FUZZY_RISK_SCORE
        return 0


def _differs_by_number(candidate: Invoice, invoice: Invoice) -> bool:
    # Rows sharing the invoice number are versions of the same bill, never duplicates of it.
    if not invoice.invoice_number or not candidate.invoice_number:
        return True
    return candidate.invoice_number != invoice.invoice_number


def find_duplicates(db: Session, invoice: Invoice) -> DuplicateReport:
    """Look for other invoices that bill the same thing as *invoice*.

    Exact matches share the duplicate hash (vendor, amount in cents, date,
    PO). Fuzzy matches come from the same vendor within the configured day
    window and amount tolerance.
    """
    settings = get_settings()
    digest = compute_duplicate_hash(
        str(invoice.vendor_id) if invoice.vendor_id else None,
        invoice.amount,
        invoice.invoice_date,
        invoice.po_number,
    )
    report = DuplicateReport(duplicate_hash=digest)

    exact = (
        db.query(Invoice)
        .filter(
            Invoice.duplicate_hash == digest,
            Invoice.id != invoice.id,
            Invoice.owner_id == invoice.owner_id,
        )
        .order_by(Invoice.created_at.asc())
        .all()
    )
    report.exact = [candidate for candidate in exact if _differs_by_number(candidate, invoice)]

    if invoice.vendor_id is None or invoice.invoice_date is None:
        return report

    amount = to_money(invoice.amount)
    tolerance = amount * Decimal(str(settings.duplicate_amount_tolerance))
    window = timedelta(days=settings.duplicate_window_days)
    exact_ids = {candidate.id for candidate in report.exact}

    candidates = (
        db.query(Invoice)
        .filter(
            Invoice.vendor_id == invoice.vendor_id,
            Invoice.owner_id == invoice.owner_id,
            Invoice.id != invoice.id,
            Invoice.invoice_date >= invoice.invoice_date - window,
            Invoice.invoice_date <= invoice.invoice_date + window,
            Invoice.amount >= amount - tolerance,
            Invoice.amount <= amount + tolerance,
        )
        .order_by(Invoice.invoice_date.desc())
        .limit(MAX_FUZZY_MATCHES + len(exact_ids))
        .all()
    )
    report.fuzzy = [
        candidate
        for candidate in candidates
        if candidate.id not in exact_ids and _differs_by_number(candidate, invoice)
    ][:MAX_FUZZY_MATCHES]
    return report
