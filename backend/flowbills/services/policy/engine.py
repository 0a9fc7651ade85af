"""Ordered policy evaluation and routing.

Evaluation runs without writing anything. Each policy is evaluated inside its
own savepoint so a failing query only discards that policy. An auto-approval
then passes a confidence gate that can still send the invoice to review. The
resulting decision, with its Approval, ReviewQueue and FraudFlag rows, the
invoice status, any ledger posting and the audit entry, is applied in one
commit; any failure rolls all of it back.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Optional

from fastapi import HTTPException
from sqlalchemy.orm import Session

from flowbills.core.auth import CurrentUser
from flowbills.core.config import Settings, get_settings
from flowbills.models.billing import Approval, FraudFlag, Invoice, Policy, ReviewQueueItem
from flowbills.schemas.invoice import InvoiceStatus
from flowbills.schemas.policy import (
    InvoiceData,
    PolicyEvaluateResponse,
    PolicyEvaluationOut,
    RoutingDecision,
)
from flowbills.services.approval_service import finalize_invoice_approval
from flowbills.services.audit_log import create_audit_log
from flowbills.services.budget_ledger import format_money, to_money
from flowbills.services.extraction_service import load_invoice_for_actor
from flowbills.services.policy.rules import (
    Block,
    CompiledPolicy,
    CreateFraudFlag,
    EvaluationContext,
    FlagForReview,
    RequireApprovals,
    compile_policy,
    evaluate_policy,
)

logger = logging.getLogger(__name__)

DEFAULT_ROUTING_REASON = "All policies passed, auto-approving"
ENGINE_ERROR_REASON = "Policy engine error"

NON_EVALUABLE_STATUSES = {
    InvoiceStatus.PROCESSING,
    InvoiceStatus.APPROVED,
    InvoiceStatus.REJECTED,
    InvoiceStatus.DUPLICATE,
    InvoiceStatus.VALIDATION_FAILED,
}


class PolicyEngineError(Exception):
    def __init__(self, message: str, status_code: int = 500) -> None:
        super().__init__(message)
        self.status_code = status_code


@dataclass
class PendingFraudFlag:
    policy: CompiledPolicy
    action: CreateFraudFlag
    flag_kind: str
    evidence: dict[str, Any]


@dataclass
class RoutingState:
    decision: RoutingDecision = RoutingDecision.AUTO_APPROVE
    required_approvals: int = 0
    routing_reason: str = DEFAULT_ROUTING_REASON
    triggered: list[CompiledPolicy] = field(default_factory=list)
    fraud_flags: list[PendingFraudFlag] = field(default_factory=list)
    blocked_by: Optional[str] = None
    review: Optional["ReviewSignal"] = None


@dataclass(frozen=True)
class ReviewSignal:
    reason: str
    priority: int
    fields: tuple[str, ...] = ()


def _effective_confidence(invoice: Invoice, ctx: EvaluationContext) -> Optional[float]:
    if ctx.confidence_score is not None:
        return float(ctx.confidence_score)
    if invoice.confidence_score is not None:
        return float(invoice.confidence_score)
    return None


def _missing_critical_fields(invoice: Invoice, ctx: EvaluationContext) -> list[str]:
    # Only extracted invoices are held to the field check; manual entries carry
    # what the clerk typed.
    if not invoice.extracted_data:
        return []
    missing = []
    if not (ctx.vendor_id or invoice.vendor_id or (invoice.vendor_name or "").strip()):
        missing.append("vendor_id")
    if ctx.amount <= 0:
        missing.append("amount")
    if invoice.invoice_date is None:
        missing.append("invoice_date")
    return missing


def confidence_gate(invoice: Invoice, ctx: EvaluationContext, settings: Settings) -> Optional[ReviewSignal]:
    """Reason to hold an otherwise auto-approved invoice for a human, if any.

    Priority 1 is the most urgent. The last matching check sets the reason.
    """
    if not settings.hil_routing_enabled:
        return None

    reason: Optional[str] = None
    priority = 3
    fields: list[str] = []

    confidence = _effective_confidence(invoice, ctx)
    if confidence is not None and confidence < settings.hil_review_confidence:
        reason, priority = "Low confidence score", 2
        fields.append("confidence_score")
    elif confidence is not None and confidence < settings.hil_auto_approve_confidence:
        reason, priority = "Medium confidence score requires review", 3
        fields.append("confidence_score")

    if ctx.amount >= to_money(settings.hil_high_value_amount):
        reason, priority = f"High value invoice ({format_money(ctx.amount)}) requires review", 1
        fields.append("amount")

    missing = _missing_critical_fields(invoice, ctx)
    if missing:
        reason = f"Missing critical fields: {', '.join(missing)}"
        priority = min(priority, 2)
        fields.extend(name for name in missing if name not in fields)

    if reason is None:
        return None
    return ReviewSignal(reason=reason, priority=priority, fields=tuple(fields))


def load_policies(db: Session, policy_types: list[str]) -> list[Policy]:
    return (
        db.query(Policy)
        .filter(Policy.is_active.is_(True), Policy.policy_type.in_(policy_types))
        .order_by(Policy.priority.asc(), Policy.created_at.asc(), Policy.id.asc())
        .all()
    )


def _merge_actions(state: RoutingState, policy: CompiledPolicy, flag_kind: str, evidence: dict[str, Any]) -> bool:
    """Fold one triggered policy into *state*. Returns True when evaluation must stop."""
    stop = False
    for action in policy.actions:
        if isinstance(action, RequireApprovals):
            state.required_approvals = max(state.required_approvals, action.count)
            state.decision = RoutingDecision.REQUIRE_APPROVAL
            state.routing_reason = f'Policy "{policy.name}" requires {action.count} approvals'
        elif isinstance(action, FlagForReview):
            state.decision = RoutingDecision.FLAG_FOR_REVIEW
            state.routing_reason = f'Policy "{policy.name}" flagged for manual review'
        elif isinstance(action, Block):
            state.decision = RoutingDecision.BLOCK
            state.routing_reason = f'Policy "{policy.name}" blocked processing'
            state.blocked_by = policy.id
            stop = True
        elif isinstance(action, CreateFraudFlag):
            state.fraud_flags.append(
                PendingFraudFlag(
                    policy=policy,
                    action=action,
                    flag_kind=action.kind or flag_kind or "policy_violation",
                    evidence=evidence,
                )
            )
    return stop


def evaluate_policies(
    db: Session,
    policies: list[Policy],
    ctx: EvaluationContext,
    *,
    default_risk_score: int,
) -> tuple[list[PolicyEvaluationOut], RoutingState, list[CompiledPolicy]]:
    """Evaluate *policies* in order, stopping at the first that blocks.

    A policy that raises is logged and counted as not triggered. Policies after
    a block are not evaluated and do not appear in the result.
    """
    state = RoutingState()
    evaluations: list[PolicyEvaluationOut] = []
    compiled_policies: list[CompiledPolicy] = []

    for policy in policies:
        raw_actions = policy.actions if isinstance(policy.actions, dict) else {}
        try:
            compiled = compile_policy(policy, default_risk_score)
            with db.begin_nested():
                result = evaluate_policy(db, compiled, ctx)
        except Exception:
            logger.exception("Policy %s (%s) failed to evaluate", policy.id, policy.policy_name)
            evaluations.append(
                PolicyEvaluationOut(
                    policy_id=str(policy.id),
                    policy_name=policy.policy_name,
                    policy_type=policy.policy_type,
                    triggered=False,
                    actions=raw_actions,
                    details="evaluation error",
                )
            )
            continue

        compiled_policies.append(compiled)
        evaluations.append(
            PolicyEvaluationOut(
                policy_id=compiled.id,
                policy_name=compiled.name,
                policy_type=compiled.policy_type,
                triggered=result.triggered,
                actions=compiled.raw_actions,
                details=result.detail,
            )
        )
        if not result.triggered:
            continue

        state.triggered.append(compiled)
        if _merge_actions(state, compiled, result.flag_kind, result.evidence):
            break

    return evaluations, state, compiled_policies


def apply_decision(
    db: Session,
    *,
    invoice: Invoice,
    state: RoutingState,
    ctx: EvaluationContext,
    compiled_policies: list[CompiledPolicy],
    actor: CurrentUser,
    ip_address: Optional[str],
    user_agent: Optional[str],
) -> None:
    """Stage every write for the decision on *db*. The caller commits."""
    settings = get_settings()
    old_status = invoice.status
    new_status = (
        InvoiceStatus.APPROVED if state.decision == RoutingDecision.AUTO_APPROVE else InvoiceStatus.PENDING_APPROVAL
    )
    invoice.status = new_status.value
    approval_policy = next((p for p in compiled_policies if p.policy_type == "approval"), None)
    invoice.approval_policy_id = approval_policy.id if approval_policy else None

    if state.decision == RoutingDecision.REQUIRE_APPROVAL:
        for level in range(1, state.required_approvals + 1):
            db.add(
                Approval(
                    invoice_id=invoice.id,
                    approval_level=level,
                    status="pending",
                    amount_approved=ctx.amount,
                    auto_approved=False,
                )
            )

    if state.decision == RoutingDecision.FLAG_FOR_REVIEW:
        flagged: dict[str, Any] = {"policies_triggered": [policy.name for policy in state.triggered]}
        priority = settings.review_queue_priority
        confidence = ctx.confidence_score
        if state.review is not None:
            flagged["fields"] = list(state.review.fields)
            priority = state.review.priority
            confidence = _effective_confidence(invoice, ctx)
        db.add(
            ReviewQueueItem(
                invoice_id=invoice.id,
                reason=state.routing_reason,
                priority=priority,
                confidence_score=confidence,
                flagged_fields=flagged,
            )
        )

    ledger_posted = False
    if state.decision == RoutingDecision.AUTO_APPROVE:
        db.add(
            Approval(
                invoice_id=invoice.id,
                approval_level=1,
                status="approved",
                amount_approved=ctx.amount,
                approval_date=datetime.now(timezone.utc),
                comments="Auto-approved by policy engine",
                auto_approved=True,
            )
        )
        posting = finalize_invoice_approval(
            db, invoice, actor=actor, ip_address=ip_address, user_agent=user_agent
        )
        ledger_posted = posting is not None

    for pending in state.fraud_flags:
        db.add(
            FraudFlag(
                entity_type="invoice",
                entity_id=invoice.id,
                flag_type=pending.flag_kind,
                risk_score=pending.action.risk_score,
                details={
                    "policy_id": pending.policy.id,
                    "policy_name": pending.policy.name,
                    "amount": float(ctx.amount),
                    **pending.evidence,
                },
                status="open",
            )
        )

    create_audit_log(
        db,
        entity_type="invoice",
        entity_id=str(invoice.id),
        action="POLICY_EVALUATION",
        old_value={"status": old_status},
        new_value={
            "status": new_status.value,
            "decision": state.decision.value,
            "required_approvals": state.required_approvals,
            "policies_triggered": len(state.triggered),
            "ledger_posted": ledger_posted,
        },
        actor_type=actor.role,
        actor_id=actor.id,
        ip_address=ip_address,
        user_agent=user_agent,
        metadata={
            "routing_reason": state.routing_reason,
            "triggered_policy_ids": [policy.id for policy in state.triggered],
            "fraud_flags": len(state.fraud_flags),
        },
    )


def _error_response(invoice_id: str, message: str, evaluations=None) -> PolicyEvaluateResponse:
    return PolicyEvaluateResponse(
        success=False,
        invoice_id=invoice_id,
        policies_evaluated=evaluations or [],
        final_decision=RoutingDecision.BLOCK,
        required_approvals=0,
        routing_reason=ENGINE_ERROR_REASON,
        error=message,
    )


def _record_engine_failure(
    db: Session,
    *,
    invoice_id: str,
    message: str,
    actor: CurrentUser,
    ip_address: Optional[str],
    user_agent: Optional[str],
) -> None:
    try:
        create_audit_log(
            db,
            entity_type="invoice",
            entity_id=invoice_id,
            action="POLICY_ENGINE_FAILED",
            old_value=None,
            new_value={"decision": RoutingDecision.BLOCK.value},
            actor_type=actor.role,
            actor_id=actor.id,
            ip_address=ip_address,
            user_agent=user_agent,
            metadata={"error": message},
        )
        db.commit()
    except Exception:
        db.rollback()
        logger.exception("Could not record policy engine failure for invoice %s", invoice_id)


def run_policy_engine(
    db: Session,
    *,
    invoice_id: str,
    invoice_data: InvoiceData,
    policy_types: Optional[list[str]],
    actor: CurrentUser,
    ip_address: Optional[str] = None,
    user_agent: Optional[str] = None,
) -> tuple[PolicyEvaluateResponse, int]:
    """Evaluate and apply routing for one invoice.

    Always returns the uniform response together with an HTTP status code.
    """
    settings = get_settings()
    types = [item.strip().lower() for item in (policy_types or settings.default_policy_types) if item.strip()]

    try:
        invoice = load_invoice_for_actor(db, invoice_id, actor)
    except HTTPException as exc:
        return _error_response(invoice_id, str(exc.detail)), exc.status_code

    invoice_key = str(invoice.id)
    evaluations: list[PolicyEvaluationOut] = []
    try:
        if InvoiceStatus(invoice.status) in NON_EVALUABLE_STATUSES:
            raise PolicyEngineError(f"Invoice in status {invoice.status} cannot be routed", status_code=409)
        pending = (
            db.query(Approval.id)
            .filter(Approval.invoice_id == invoice.id, Approval.status == "pending")
            .first()
        )
        if pending is not None:
            raise PolicyEngineError("Invoice already has pending approvals", status_code=409)

        ctx = EvaluationContext(
            invoice=invoice,
            amount=to_money(Decimal(str(invoice_data.amount))),
            vendor_id=invoice_data.vendor_id or (str(invoice.vendor_id) if invoice.vendor_id else None),
            confidence_score=invoice_data.confidence_score,
        )
        policies = load_policies(db, types)
        evaluations, state, compiled = evaluate_policies(
            db,
            policies,
            ctx,
            default_risk_score=settings.default_fraud_risk_score,
        )
        if state.decision == RoutingDecision.AUTO_APPROVE:
            signal = confidence_gate(invoice, ctx, settings)
            if signal is not None:
                state.decision = RoutingDecision.FLAG_FOR_REVIEW
                state.routing_reason = signal.reason
                state.review = signal
        apply_decision(
            db,
            invoice=invoice,
            state=state,
            ctx=ctx,
            compiled_policies=compiled,
            actor=actor,
            ip_address=ip_address,
            user_agent=user_agent,
        )
        db.commit()
    except PolicyEngineError as exc:
        db.rollback()
        logger.warning("Policy engine refused invoice %s: %s", invoice_key, exc)
        return _error_response(invoice_key, str(exc), evaluations), exc.status_code
    except Exception as exc:
        db.rollback()
        logger.exception("Policy engine failed for invoice %s", invoice_key)
        _record_engine_failure(
            db,
            invoice_id=invoice_key,
            message=str(exc) or exc.__class__.__name__,
            actor=actor,
            ip_address=ip_address,
            user_agent=user_agent,
        )
        return _error_response(invoice_key, str(exc) or exc.__class__.__name__), 500

    logger.info(
        "Policy decision invoice=%s decision=%s approvals=%s triggered=%s",
        invoice_key,
        state.decision.value,
        state.required_approvals,
        len(state.triggered),
    )
    return (
        PolicyEvaluateResponse(
            success=True,
            invoice_id=invoice_key,
            policies_evaluated=evaluations,
            final_decision=state.decision,
            required_approvals=state.required_approvals,
            routing_reason=state.routing_reason,
        ),
        200,
    )
