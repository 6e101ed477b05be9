from __future__ import annotations

import logging
from datetime import date, datetime, timedelta, timezone

from sqlalchemy import select
from sqlalchemy.orm import Session

from pointage.audit import log_audit
from pointage.errors import AuthorizationError, ConflictError, NotFoundError, ValidationError
from pointage.models import (
    APPROVER_ROLES,
    AccountRole,
    AuditSeverity,
    DecisionKind,
    LeaveRequest,
    LeaveStatus,
    LeaveType,
    Notification,
    NotificationPriority,
    NotificationType,
)
from pointage.services.notifications import (
    deliver_notifications,
    enqueue_for_approvers,
    enqueue_notification,
)
from pointage.services.session_store import commit_write, lock_one, read_with_retry
from pointage.services.workday import local_day

logger = logging.getLogger("pointage.leaves")

_LEAVE_LABELS = {
    LeaveType.PAID: "congé payé",
    LeaveType.UNPAID: "congé sans solde",
    LeaveType.MATERNITE: "congé maternité",
    LeaveType.MALADIE: "congé maladie",
    LeaveType.PREAVIS: "préavis",
}


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def approved_leave_days(
    db: Session,
    *,
    account_id: int,
    start_date: date,
    end_date: date,
) -> set[date]:
    stmt = select(LeaveRequest).where(
        LeaveRequest.account_id == account_id,
        LeaveRequest.status == LeaveStatus.VALIDE,
        LeaveRequest.start_date <= end_date,
        LeaveRequest.end_date >= start_date,
    )
    rows = read_with_retry(db, lambda: list(db.scalars(stmt).all()))
    days: set[date] = set()
    for row in rows:
        current = max(row.start_date, start_date)
        last = min(row.end_date, end_date)
        while current <= last:
            days.add(current)
            current += timedelta(days=1)
    return days


def list_leave_requests(
    db: Session,
    *,
    account_id: int | None = None,
    status: LeaveStatus | None = None,
) -> list[LeaveRequest]:
    stmt = select(LeaveRequest).order_by(LeaveRequest.created_at.desc(), LeaveRequest.id.desc())
    if account_id is not None:
        stmt = stmt.where(LeaveRequest.account_id == account_id)
    if status is not None:
        stmt = stmt.where(LeaveRequest.status == status)
    return read_with_retry(db, lambda: list(db.scalars(stmt).all()))


def create_leave_request(
    db: Session,
    *,
    account_id: int,
    leave_type: LeaveType,
    start_date: date,
    end_date: date,
    reason: str | None = None,
    today: date | None = None,
    ip: str | None = None,
    user_agent: str | None = None,
    request_id: str | None = None,
) -> LeaveRequest:
    reference_day = today or local_day(_utcnow())
    if start_date < reference_day:
        raise ValidationError("Leave cannot start in the past.", code="LEAVE_START_IN_PAST")
    if end_date < start_date:
        raise ValidationError(
            "end_date must be greater than or equal to start_date.",
            code="INVALID_LEAVE_RANGE",
        )

    leave = LeaveRequest(
        account_id=account_id,
        type=leave_type,
        start_date=start_date,
        end_date=end_date,
        status=LeaveStatus.EN_ATTENTE,
        reason=(reason or "").strip() or None,
    )
    db.add(leave)
    db.flush()
    staged = enqueue_for_approvers(
        db,
        type=NotificationType.LEAVE_REQUEST,
        title="Nouvelle demande de congé",
        message=(
            f"Employé #{account_id} demande un {_LEAVE_LABELS[leave_type]} "
            f"du {start_date.isoformat()} au {end_date.isoformat()}."
        ),
        priority=NotificationPriority.NORMAL,
        metadata={"leave_request_id": leave.id, "account_id": account_id},
        exclude=(account_id,),
    )
    commit_write(db)
    db.refresh(leave)

    log_audit(
        db,
        actor_id=str(account_id),
        action="LEAVE_REQUEST_CREATED",
        entity_type="leave_request",
        entity_id=str(leave.id),
        changes={
            "type": leave_type.value,
            "start_date": start_date.isoformat(),
            "end_date": end_date.isoformat(),
        },
        ip=ip,
        user_agent=user_agent,
        request_id=request_id,
    )
    deliver_notifications(db, staged)
    return leave


def _lock_leave_request(db: Session, leave_id: int) -> LeaveRequest:
    leave = lock_one(db, select(LeaveRequest).where(LeaveRequest.id == leave_id))
    if leave is None:
        raise NotFoundError("Leave request not found.", code="LEAVE_REQUEST_NOT_FOUND")
    return leave


def decide_leave_request(
    db: Session,
    *,
    leave_id: int,
    approver_id: int,
    approver_role: AccountRole,
    decision: DecisionKind,
    comments: str | None = None,
    ip: str | None = None,
    user_agent: str | None = None,
    request_id: str | None = None,
) -> LeaveRequest:
    if approver_role not in APPROVER_ROLES:
        raise AuthorizationError("Only RH can decide leave requests.")

    leave = _lock_leave_request(db, leave_id)
    if leave.account_id == approver_id:
        db.rollback()
        raise AuthorizationError(
            "You cannot decide on your own leave request.",
            code="SELF_DECISION_FORBIDDEN",
        )
    if leave.status != LeaveStatus.EN_ATTENTE:
        db.rollback()
        raise ConflictError(f"Leave request is already {leave.status.value}.")

    approved = decision == DecisionKind.APPROVED
    leave.status = LeaveStatus.VALIDE if approved else LeaveStatus.REFUSE
    leave.decision_comments = (comments or "").strip() or None
    leave.decided_by_id = approver_id
    leave.decided_at = _utcnow()

    verdict = "approuvée" if approved else "refusée"
    metadata = {"leave_request_id": leave.id, "status": leave.status.value}
    staged: list[Notification] = [
        enqueue_notification(
            db,
            recipient_id=leave.account_id,
            type=NotificationType.LEAVE_REQUEST,
            title=f"Demande de congé {verdict}",
            message=(
                f"Votre demande du {leave.start_date.isoformat()} au {leave.end_date.isoformat()} "
                f"a été {verdict}."
            ),
            priority=NotificationPriority.HIGH,
            metadata=metadata,
        )
    ]
    staged.extend(
        enqueue_for_approvers(
            db,
            type=NotificationType.LEAVE_REQUEST,
            title=f"Demande de congé {verdict}",
            message=f"La demande #{leave.id} de l'employé #{leave.account_id} a été {verdict}.",
            priority=NotificationPriority.LOW,
            metadata={**metadata, "decided_by": approver_id},
            exclude=(approver_id, leave.account_id),
        )
    )
    commit_write(db)
    db.refresh(leave)

    log_audit(
        db,
        actor_id=str(approver_id),
        action="LEAVE_REQUEST_APPROVED" if approved else "LEAVE_REQUEST_REJECTED",
        entity_type="leave_request",
        entity_id=str(leave.id),
        changes={
            "status": {"from": LeaveStatus.EN_ATTENTE.value, "to": leave.status.value},
            "comments": leave.decision_comments,
        },
        severity=AuditSeverity.INFO,
        ip=ip,
        user_agent=user_agent,
        request_id=request_id,
    )
    deliver_notifications(db, staged)
    return leave


def cancel_leave_request(
    db: Session,
    *,
    leave_id: int,
    account_id: int,
    ip: str | None = None,
    user_agent: str | None = None,
    request_id: str | None = None,
) -> LeaveRequest:
    leave = _lock_leave_request(db, leave_id)
    if leave.account_id != account_id:
        db.rollback()
        raise NotFoundError("Leave request not found.", code="LEAVE_REQUEST_NOT_FOUND")
    if leave.status != LeaveStatus.EN_ATTENTE:
        db.rollback()
        raise ConflictError(f"Leave request is already {leave.status.value}.")

    leave.status = LeaveStatus.ANNULE
    commit_write(db)
    db.refresh(leave)

    log_audit(
        db,
        actor_id=str(account_id),
        action="LEAVE_REQUEST_CANCELLED",
        entity_type="leave_request",
        entity_id=str(leave.id),
        changes={"status": {"from": LeaveStatus.EN_ATTENTE.value, "to": LeaveStatus.ANNULE.value}},
        ip=ip,
        user_agent=user_agent,
        request_id=request_id,
    )
    return leave
