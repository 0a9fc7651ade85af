import logging

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from flowbills.core.auth import CurrentUser, require_roles
from flowbills.core.dependencies import get_db
from flowbills.schemas.policy import PolicyEvaluateRequest, PolicyEvaluateResponse
from flowbills.services.audit_log import client_ip, user_agent
from flowbills.services.policy.engine import run_policy_engine

router = APIRouter()
logger = logging.getLogger(__name__)


@router.post("/policy-engine/evaluate", response_model=PolicyEvaluateResponse)
def evaluate_policies(
    payload: PolicyEvaluateRequest,
    request: Request,
    current_user: CurrentUser = Depends(require_roles("SERVICE", "AP_CLERK", "ADMIN")),
    db: Session = Depends(get_db),
):
    response, status_code = run_policy_engine(
        db,
        invoice_id=payload.invoice_id,
        invoice_data=payload.invoice_data,
        policy_types=payload.policy_types,
        actor=current_user,
        ip_address=client_ip(request),
        user_agent=user_agent(request),
    )
    return JSONResponse(status_code=status_code, content=response.model_dump(mode="json"))
