from datetime import datetime

from fastapi import APIRouter, Depends, Query, Request
from sqlalchemy.orm import Session

from pointage.audit import query_audit_logs
from pointage.db import get_db
from pointage.models import AuditSeverity
from pointage.routers.common import provisioned_approver, request_meta
from pointage.schemas import (
    ApproveRequest,
    AuditLogRead,
    DecisionRead,
    DecisionResponse,
    EmployeeDecisionRef,
    ProfileRead,
    RejectRequest,
)
from pointage.security import Principal, require_approver
from pointage.services.approvals import approve, list_decisions, list_pending_profiles, reject

router = APIRouter(tags=["rh"])


@router.get("/api/rh/pending", response_model=list[ProfileRead])
def pending_profiles_endpoint(
    _principal: Principal = Depends(provisioned_approver),
    db: Session = Depends(get_db),
) -> list[ProfileRead]:
    return [ProfileRead.model_validate(item) for item in list_pending_profiles(db)]


@router.post("/api/rh/approve", response_model=DecisionResponse)
def approve_endpoint(
    payload: ApproveRequest,
    request: Request,
    principal: Principal = Depends(provisioned_approver),
    db: Session = Depends(get_db),
) -> DecisionResponse:
    profile = approve(
        db,
        employee_id=payload.employee_id,
        approver_id=principal.user_id,
        approver_role=principal.role,
        comments=payload.comments,
        **request_meta(request),
    )
    return DecisionResponse(success=True, employee=EmployeeDecisionRef(id=profile.id, status=profile.status))


@router.post("/api/rh/reject", response_model=DecisionResponse)
def reject_endpoint(
    payload: RejectRequest,
    request: Request,
    principal: Principal = Depends(provisioned_approver),
    db: Session = Depends(get_db),
) -> DecisionResponse:
    profile = reject(
        db,
        employee_id=payload.employee_id,
        approver_id=principal.user_id,
        approver_role=principal.role,
        reason=payload.reason,
        comments=payload.comments,
        **request_meta(request),
    )
    return DecisionResponse(success=True, employee=EmployeeDecisionRef(id=profile.id, status=profile.status))


@router.get("/api/rh/employees/{employee_id}/decisions", response_model=list[DecisionRead])
def employee_decisions_endpoint(
    employee_id: int,
    _principal: Principal = Depends(provisioned_approver),
    db: Session = Depends(get_db),
) -> list[DecisionRead]:
    return [DecisionRead.model_validate(item) for item in list_decisions(db, employee_id=employee_id)]


@router.get("/api/logs", response_model=list[AuditLogRead])
def audit_logs_endpoint(
    actor_id: str | None = Query(default=None, alias="actorId"),
    action: str | None = Query(default=None),
    entity_type: str | None = Query(default=None, alias="entityType"),
    entity_id: str | None = Query(default=None, alias="entityId"),
    severity: AuditSeverity | None = Query(default=None),
    since: datetime | None = Query(default=None),
    until: datetime | None = Query(default=None),
    limit: int = Query(default=100, ge=1, le=500),
    _principal: Principal = Depends(require_approver),
    db: Session = Depends(get_db),
) -> list[AuditLogRead]:
    rows = query_audit_logs(
        db,
        actor_id=actor_id,
        action=action,
        entity_type=entity_type,
        entity_id=entity_id,
        severity=severity,
        since=since,
        until=until,
        limit=limit,
    )
    return [AuditLogRead.model_validate(item) for item in rows]
