"""Policy rows compiled into closed condition and action variants.

Stored ``conditions`` / ``actions`` JSON is interpreted exactly once, here.
Anything not understood compiles to ``Unrecognized`` and never triggers.
"""

import logging
import statistics
from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation
from typing import Any, Callable, Optional, Union

from sqlalchemy.orm import Session

from flowbills.models.billing import Invoice, Policy, Vendor
from flowbills.services.budget_ledger import format_money, to_money

logger = logging.getLogger(__name__)

ANOMALY_HISTORY_LIMIT = 50


# --- Conditions ---


@dataclass(frozen=True)
class ApprovalThreshold:
    amount: Decimal


@dataclass(frozen=True)
class DuplicateBankAccount:
    pass


@dataclass(frozen=True)
class DuplicateTaxId:
    pass


@dataclass(frozen=True)
class AmountAnomaly:
    z_threshold: float = 3.0
    min_samples: int = 5


@dataclass(frozen=True)
class Unrecognized:
    reason: str


Condition = Union[ApprovalThreshold, DuplicateBankAccount, DuplicateTaxId, AmountAnomaly, Unrecognized]


# --- Actions ---


@dataclass(frozen=True)
class RequireApprovals:
    count: int


@dataclass(frozen=True)
class FlagForReview:
    pass


@dataclass(frozen=True)
class Block:
    pass


@dataclass(frozen=True)
class CreateFraudFlag:
    kind: str
    risk_score: int


Action = Union[RequireApprovals, FlagForReview, Block, CreateFraudFlag]


@dataclass(frozen=True)
class CompiledPolicy:
    id: str
    name: str
    policy_type: str
    priority: int
    conditions: tuple[Condition, ...]
    actions: tuple[Action, ...]
    raw_actions: dict[str, Any] = field(default_factory=dict)


@dataclass
class EvaluationContext:
    invoice: Invoice
    amount: Decimal
    vendor_id: Optional[str]
    confidence_score: Optional[float] = None


@dataclass(frozen=True)
class ConditionResult:
    triggered: bool
    detail: str
    flag_kind: str = ""
    evidence: dict[str, Any] = field(default_factory=dict)


# --- Compilation ---


def _as_decimal(value: Any) -> Optional[Decimal]:
    if value is None or isinstance(value, bool):
        return None
    try:
        return to_money(value)
    except (InvalidOperation, ValueError):
        return None


def _enabled(value: Any) -> bool:
    if isinstance(value, dict):
        return value.get("enabled", True) is not False
    return value is True


def compile_conditions(policy_type: str, conditions: Any) -> tuple[Condition, ...]:
    if not isinstance(conditions, dict):
        return (Unrecognized("conditions must be an object"),)

    if policy_type == "approval":
        threshold = _as_decimal(conditions.get("amount_threshold"))
        if threshold is None:
            return (Unrecognized("approval policy without a numeric amount_threshold"),)
        return (ApprovalThreshold(amount=threshold),)

    if policy_type == "fraud":
        compiled: list[Condition] = []
        if _enabled(conditions.get("check_bank_duplicates")):
            compiled.append(DuplicateBankAccount())
        if _enabled(conditions.get("check_tax_id_duplicates")):
            compiled.append(DuplicateTaxId())
        anomaly = conditions.get("check_amount_anomaly")
        if _enabled(anomaly):
            options = anomaly if isinstance(anomaly, dict) else {}
            compiled.append(
                AmountAnomaly(
                    z_threshold=float(options.get("z_threshold", 3.0)),
                    min_samples=int(options.get("min_samples", 5)),
                )
            )
        return tuple(compiled) or (Unrecognized("fraud policy without any enabled check"),)

    return (Unrecognized(f"unsupported policy type {policy_type!r}"),)


def compile_actions(actions: Any, default_risk_score: int) -> tuple[Action, ...]:
    if not isinstance(actions, dict):
        return ()

    compiled: list[Action] = []
    required = actions.get("require_approvals")
    if isinstance(required, int) and not isinstance(required, bool) and required > 0:
        compiled.append(RequireApprovals(count=required))
    if actions.get("flag_for_review") is True:
        compiled.append(FlagForReview())
    if actions.get("block_processing") is True:
        compiled.append(Block())

    fraud = actions.get("create_fraud_flag")
    if fraud:
        if isinstance(fraud, dict):
            kind = str(fraud.get("type") or "")
            score = fraud.get("risk_score", actions.get("risk_score", default_risk_score))
        else:
            kind = fraud if isinstance(fraud, str) else ""
            score = actions.get("risk_score", default_risk_score)
        try:
            risk = int(score)
        except (TypeError, ValueError):
            risk = default_risk_score
        compiled.append(CreateFraudFlag(kind=kind, risk_score=min(100, max(0, risk))))
    return tuple(compiled)


def compile_policy(policy: Policy, default_risk_score: int) -> CompiledPolicy:
    return CompiledPolicy(
        id=str(policy.id),
        name=policy.policy_name,
        policy_type=policy.policy_type,
        priority=policy.priority,
        conditions=compile_conditions(policy.policy_type, policy.conditions),
        actions=compile_actions(policy.actions, default_risk_score),
        raw_actions=dict(policy.actions) if isinstance(policy.actions, dict) else {},
    )


# --- Evaluation ---


def _eval_threshold(db: Session, condition: ApprovalThreshold, ctx: EvaluationContext) -> ConditionResult:
    amount = format_money(ctx.amount)
    threshold = format_money(condition.amount)
    if ctx.amount > condition.amount:
        return ConditionResult(True, f"Amount {amount} exceeds threshold {threshold}")
    return ConditionResult(False, f"Amount {amount} within threshold {threshold}")


def _shared_vendor_attribute(
    db: Session,
    ctx: EvaluationContext,
    column_name: str,
    label: str,
    flag_kind: str,
) -> ConditionResult:
    if not ctx.vendor_id:
        return ConditionResult(False, "Invoice has no vendor")
    vendor = db.get(Vendor, ctx.vendor_id)
    if vendor is None:
        return ConditionResult(False, "Vendor not found")
    value = getattr(vendor, column_name)
    if not value:
        return ConditionResult(False, f"Vendor has no {label} on file")

    column = getattr(Vendor, column_name)
    others = db.query(Vendor.id).filter(column == value, Vendor.id != vendor.id).all()
    if not others:
        return ConditionResult(False, f"No other vendor shares this {label}")
    return ConditionResult(
        True,
        f"{label.capitalize()} shared with {len(others)} other vendor(s)",
        flag_kind=flag_kind,
        evidence={"vendor_id": str(vendor.id), "matching_vendor_ids": [str(row.id) for row in others]},
    )


def _eval_bank(db: Session, condition: DuplicateBankAccount, ctx: EvaluationContext) -> ConditionResult:
    return _shared_vendor_attribute(db, ctx, "bank_account", "bank account", "duplicate_bank_account")


def _eval_tax_id(db: Session, condition: DuplicateTaxId, ctx: EvaluationContext) -> ConditionResult:
    return _shared_vendor_attribute(db, ctx, "tax_id", "tax id", "duplicate_tax_id")


def _eval_anomaly(db: Session, condition: AmountAnomaly, ctx: EvaluationContext) -> ConditionResult:
    if not ctx.vendor_id:
        return ConditionResult(False, "Invoice has no vendor")
    rows = (
        db.query(Invoice.amount)
        .filter(Invoice.vendor_id == ctx.vendor_id, Invoice.id != ctx.invoice.id)
        .order_by(Invoice.created_at.desc())
        .limit(ANOMALY_HISTORY_LIMIT)
        .all()
    )
    history = [float(row.amount) for row in rows if row.amount is not None]
    if len(history) < condition.min_samples:
        return ConditionResult(False, f"Not enough vendor history ({len(history)} < {condition.min_samples})")

    mean = statistics.fmean(history)
    deviation = statistics.pstdev(history)
    if deviation == 0:
        return ConditionResult(False, "Vendor history has no variance")

    z_score = abs(float(ctx.amount) - mean) / deviation
    if z_score > condition.z_threshold:
        return ConditionResult(
            True,
            f"Amount is {z_score:.1f} standard deviations from the vendor mean",
            flag_kind="amount_anomaly",
            evidence={"z_score": round(z_score, 2), "mean": round(mean, 2), "samples": len(history)},
        )
    return ConditionResult(False, f"Amount within {condition.z_threshold:g} standard deviations of the vendor mean")


def _eval_unrecognized(db: Session, condition: Unrecognized, ctx: EvaluationContext) -> ConditionResult:
    return ConditionResult(False, f"Not evaluated: {condition.reason}")


_EVALUATORS: dict[type, Callable[[Session, Any, EvaluationContext], ConditionResult]] = {
    ApprovalThreshold: _eval_threshold,
    DuplicateBankAccount: _eval_bank,
    DuplicateTaxId: _eval_tax_id,
    AmountAnomaly: _eval_anomaly,
    Unrecognized: _eval_unrecognized,
}


def evaluate_condition(db: Session, condition: Condition, ctx: EvaluationContext) -> ConditionResult:
    return _EVALUATORS[type(condition)](db, condition, ctx)


def evaluate_policy(db: Session, policy: CompiledPolicy, ctx: EvaluationContext) -> ConditionResult:
    """A policy triggers when any of its conditions does; details of every condition are kept."""
    results = [evaluate_condition(db, condition, ctx) for condition in policy.conditions]
    triggered = [result for result in results if result.triggered]
    detail = "; ".join(result.detail for result in results)
    if not triggered:
        return ConditionResult(False, detail)
    evidence: dict[str, Any] = {}
    for result in triggered:
        evidence.update(result.evidence)
    return ConditionResult(True, detail, flag_kind=triggered[0].flag_kind, evidence=evidence)
