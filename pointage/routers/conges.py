from fastapi import APIRouter, Depends, Query, Request
from sqlalchemy.orm import Session

from pointage.db import get_db
from pointage.models import LeaveStatus
from pointage.routers.common import request_meta
from pointage.schemas import LeaveDecisionRequest, LeaveRequestCreate, LeaveRequestRead
from pointage.security import Principal, require_active_account, require_approver
from pointage.services.leaves import (
    cancel_leave_request,
    create_leave_request,
    decide_leave_request,
    list_leave_requests,
)

router = APIRouter(prefix="/api/conges", tags=["conges"])


@router.get("", response_model=list[LeaveRequestRead])
def list_leave_requests_endpoint(
    status: LeaveStatus | None = Query(default=None),
    scope: str = Query(default="mine", pattern="^(mine|all)$"),
    principal: Principal = Depends(require_active_account),
    db: Session = Depends(get_db),
) -> list[LeaveRequestRead]:
    # Approvers may widen the listing to every employee.
    account_id = None if scope == "all" and principal.is_approver else principal.user_id
    rows = list_leave_requests(db, account_id=account_id, status=status)
    return [LeaveRequestRead.model_validate(item) for item in rows]


@router.post("", response_model=LeaveRequestRead, status_code=201)
def create_leave_request_endpoint(
    payload: LeaveRequestCreate,
    request: Request,
    principal: Principal = Depends(require_active_account),
    db: Session = Depends(get_db),
) -> LeaveRequestRead:
    leave = create_leave_request(
        db,
        account_id=principal.user_id,
        leave_type=payload.type,
        start_date=payload.start_date,
        end_date=payload.end_date,
        reason=payload.reason,
        **request_meta(request),
    )
    return LeaveRequestRead.model_validate(leave)


@router.patch("/{leave_id}", response_model=LeaveRequestRead)
def decide_leave_request_endpoint(
    leave_id: int,
    payload: LeaveDecisionRequest,
    request: Request,
    principal: Principal = Depends(require_approver),
    db: Session = Depends(get_db),
) -> LeaveRequestRead:
    leave = decide_leave_request(
        db,
        leave_id=leave_id,
        approver_id=principal.user_id,
        approver_role=principal.role,
        decision=payload.decision,
        comments=payload.comments,
        **request_meta(request),
    )
    return LeaveRequestRead.model_validate(leave)


@router.post("/{leave_id}/cancel", response_model=LeaveRequestRead)
def cancel_leave_request_endpoint(
    leave_id: int,
    request: Request,
    principal: Principal = Depends(require_active_account),
    db: Session = Depends(get_db),
) -> LeaveRequestRead:
    leave = cancel_leave_request(
        db,
        leave_id=leave_id,
        account_id=principal.user_id,
        **request_meta(request),
    )
    return LeaveRequestRead.model_validate(leave)
