"""AFE budget ledger and well-identifier registry access."""

import logging
from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal
from typing import Optional, Union

from sqlalchemy import update
from sqlalchemy.orm import Session

from flowbills.models.billing import AFE, WellIdentifier
from flowbills.schemas.invoice import BudgetStatus

logger = logging.getLogger(__name__)

Number = Union[Decimal, float, int, str]

CENT = Decimal("0.01")


def to_money(value: Number) -> Decimal:
    if isinstance(value, Decimal):
        amount = value
    else:
        amount = Decimal(str(value))
    return amount.quantize(CENT, rounding=ROUND_HALF_UP)


def format_money(value: Decimal) -> str:
    return f"${value:,.2f}"


@dataclass(frozen=True)
class BudgetProjection:
    afe_number: str
    budget_amount: Decimal
    spent_amount: Decimal
    projected_spent: Decimal
    remaining: Decimal
    status: BudgetStatus
    utilization_pct: Decimal
    near_limit: bool

    @property
    def overage(self) -> Decimal:
        return -self.remaining if self.remaining < 0 else Decimal("0.00")


def get_active_afe(db: Session, owner_id: str, afe_number: str) -> Optional[AFE]:
    number = (afe_number or "").strip()
    if not number:
        return None
    return (
        db.query(AFE)
        .filter(
            AFE.owner_id == owner_id,
            AFE.afe_number == number,
            AFE.status == "active",
        )
        .first()
    )


def find_well(db: Session, owner_id: str, uwi: str) -> Optional[WellIdentifier]:
    value = (uwi or "").strip()
    if not value:
        return None
    return (
        db.query(WellIdentifier)
        .filter(WellIdentifier.owner_id == owner_id, WellIdentifier.uwi == value)
        .first()
    )


def project_budget(afe: AFE, amount: Number, warning_ratio: float = 0.10) -> BudgetProjection:
    """Project the effect of *amount* on *afe* without touching the ledger.

    ``remaining = budget - (spent + amount)``; negative means over budget.
    ``near_limit`` is set when remaining headroom drops below
    ``warning_ratio * budget`` and is independent of the over/under result.
    """
    budget = to_money(afe.budget_amount or 0)
    spent = to_money(afe.spent_amount or 0)
    projected = spent + to_money(amount)
    remaining = budget - projected

    if budget > 0:
        utilization = (projected / budget * 100).quantize(Decimal("0.1"), rounding=ROUND_HALF_UP)
    else:
        utilization = Decimal("0.0")

    threshold = budget * Decimal(str(warning_ratio))
    return BudgetProjection(
        afe_number=afe.afe_number,
        budget_amount=budget,
        spent_amount=spent,
        projected_spent=projected,
        remaining=remaining,
        status=BudgetStatus.WITHIN_BUDGET if remaining >= 0 else BudgetStatus.OVER_BUDGET,
        utilization_pct=utilization,
        near_limit=remaining < threshold,
    )


def headroom(db: Session, afe_id: str) -> Optional[Decimal]:
    afe = db.get(AFE, afe_id)
    if afe is None:
        return None
    return to_money(afe.budget_amount or 0) - to_money(afe.spent_amount or 0)


def try_reserve_budget(db: Session, afe_id: str, amount: Number) -> tuple[bool, Optional[Decimal]]:
    """Atomically post *amount* against an active AFE if it fits the budget.

    The check and the increment happen in a single conditional UPDATE, so two
    concurrent reservations can never both push ``spent_amount`` past
    ``budget_amount``. Returns ``(ok, remaining)``; ``remaining`` is ``None``
    when the AFE does not exist. Does not commit.
    """
    value = to_money(amount)
    if value <= 0:
        raise ValueError("reservation amount must be positive")

    result = db.execute(
        update(AFE)
        .where(
            AFE.id == afe_id,
            AFE.status == "active",
            AFE.spent_amount + value <= AFE.budget_amount,
        )
        .values(spent_amount=AFE.spent_amount + value)
        .execution_options(synchronize_session=False)
    )
    ok = result.rowcount == 1

    afe = db.get(AFE, afe_id)
    if afe is not None:
        db.refresh(afe)
    remaining = headroom(db, afe_id)
    if not ok:
        logger.info("Budget reservation refused afe_id=%s amount=%s remaining=%s", afe_id, value, remaining)
    return ok, remaining


@dataclass(frozen=True)
class LedgerPosting:
    afe_id: str
    amount: Decimal
    remaining: Decimal
    # False when the spend was booked past the ceiling or onto an inactive AFE.
    reserved: bool

    @property
    def over_budget(self) -> bool:
        return self.remaining < 0


def post_spend(db: Session, afe_id: str, amount: Number) -> Optional[LedgerPosting]:
    """Book an approved invoice's *amount* on the AFE. Does not commit.

    ``try_reserve_budget`` is tried first. When it refuses, the spend is still
    booked with a plain atomic increment: an approved invoice is real spend,
    and the overage is reported through ``reserved=False`` and a negative
    ``remaining`` instead of being dropped. Returns ``None`` only when the AFE
    no longer exists.
    """
    value = to_money(amount)
    ok, remaining = try_reserve_budget(db, afe_id, value)
    if ok:
        return LedgerPosting(afe_id=str(afe_id), amount=value, remaining=remaining, reserved=True)
    if remaining is None:
        logger.warning("Cannot post spend, AFE %s no longer exists", afe_id)
        return None

    db.execute(
        update(AFE)
        .where(AFE.id == afe_id)
        .values(spent_amount=AFE.spent_amount + value)
        .execution_options(synchronize_session=False)
    )
    db.refresh(db.get(AFE, afe_id))
    remaining = headroom(db, afe_id)
    logger.warning("Posted %s to AFE %s outside its budget, remaining=%s", value, afe_id, remaining)
    return LedgerPosting(afe_id=str(afe_id), amount=value, remaining=remaining, reserved=False)
