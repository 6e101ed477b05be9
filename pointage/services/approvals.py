"""Employee profile approval workflow.

The account and its profile carry two separate status enumerations. The
workflow only ever moves them together, through these pairs:

    trigger            from (account, profile)   to (account, profile)
    -----------------  ------------------------  ---------------------
    submit_profile     (INACTIVE, none)          (PENDING, EN_ATTENTE)
    approve            (PENDING, EN_ATTENTE)     (ACTIVE, APPROUVE)
    reject             (PENDING, EN_ATTENTE)     (REJECTED, REJETE)
                       (ACTIVE, APPROUVE)
    resubmit_profile   (REJECTED, REJETE)        (PENDING, EN_ATTENTE)

Transitions on an existing profile lock the profile row before its account
row and re-check the pair under the lock. approve and reject then write
profile, account, decision and the employee notification in one commit.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from pointage.audit import log_audit
from pointage.errors import AuthorizationError, ConflictError, NotFoundError, ValidationError
from pointage.models import (
    APPROVER_ROLES,
    Account,
    AccountRole,
    AccountStatus,
    AuditSeverity,
    Decision,
    DecisionKind,
    EmployeeProfile,
    Notification,
    NotificationPriority,
    NotificationType,
    ProfileStatus,
)
from pointage.services.notifications import (
    deliver_notifications,
    enqueue_for_approvers,
    enqueue_notification,
)
from pointage.services.session_store import commit_write, lock_one, read_with_retry

logger = logging.getLogger("pointage.approvals")


ACCOUNT_STATUS_FOR_PROFILE: dict[ProfileStatus, AccountStatus] = {
    ProfileStatus.EN_ATTENTE: AccountStatus.PENDING,
    ProfileStatus.APPROUVE: AccountStatus.ACTIVE,
    ProfileStatus.REJETE: AccountStatus.REJECTED,
}

APPROVE_FROM = frozenset({(AccountStatus.PENDING, ProfileStatus.EN_ATTENTE)})
REJECT_FROM = frozenset(
    {
        (AccountStatus.PENDING, ProfileStatus.EN_ATTENTE),
        (AccountStatus.ACTIVE, ProfileStatus.APPROUVE),
    }
)
RESUBMIT_FROM = frozenset({(AccountStatus.REJECTED, ProfileStatus.REJETE)})

PROFILE_FIELDS = ("first_name", "last_name", "phone", "position", "department", "details")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _ensure_approver(role: AccountRole) -> None:
    if role not in APPROVER_ROLES:
        raise AuthorizationError("Only RH or super admin can decide on profiles.")


def _lock_account(db: Session, account_id: int) -> Account:
    account = lock_one(db, select(Account).where(Account.id == account_id))
    if account is None:
        raise NotFoundError("Account not found.", code="ACCOUNT_NOT_FOUND")
    return account


def _lock_profile(db: Session, profile_id: int) -> EmployeeProfile:
    profile = lock_one(db, select(EmployeeProfile).where(EmployeeProfile.id == profile_id))
    if profile is None:
        raise NotFoundError("Employee not found.")
    return profile


def _last_decision(db: Session, profile_id: int) -> Decision | None:
    return db.scalar(
        select(Decision)
        .where(Decision.profile_id == profile_id)
        .order_by(Decision.id.desc())
        .limit(1)
    )


def _already_decided(db: Session, profile: EmployeeProfile, account: Account) -> ConflictError:
    previous = _last_decision(db, profile.id)
    details: dict[str, Any] = {
        "employee": {"id": profile.id, "status": profile.status.value},
        "account_status": account.status.value,
    }
    if previous is None:
        message = f"Profile is {profile.status.value}; this action is not allowed."
    else:
        details["decided_by"] = previous.decider_id
        details["decision"] = previous.decision.value
        message = (
            f"Profile already {previous.decision.value.lower()} by account #{previous.decider_id}."
        )
    return ConflictError(message, details=details)


def _apply_profile_data(profile: EmployeeProfile, data: dict[str, Any]) -> None:
    for field_name in PROFILE_FIELDS:
        if field_name in data:
            setattr(profile, field_name, data[field_name])


def _stage_submission_notifications(
    db: Session,
    *,
    profile: EmployeeProfile,
    resubmitted: bool,
) -> list[Notification]:
    verb = "resoumis" if resubmitted else "soumis"
    staged = [
        enqueue_notification(
            db,
            recipient_id=profile.account_id,
            type=NotificationType.PROFILE_SUBMITTED,
            title="Profil soumis",
            message="Votre profil a été transmis aux RH pour validation.",
            priority=NotificationPriority.NORMAL,
            metadata={"profile_id": profile.id},
        )
    ]
    staged.extend(
        enqueue_for_approvers(
            db,
            type=NotificationType.RH_ACTION_REQUIRED,
            title="Profil en attente de validation",
            message=f"{profile.display_name} a {verb} son profil.",
            priority=NotificationPriority.HIGH,
            metadata={"profile_id": profile.id, "account_id": profile.account_id},
            exclude=(profile.account_id,),
        )
    )
    return staged


def submit_profile(
    db: Session,
    *,
    account_id: int,
    data: dict[str, Any],
    ip: str | None = None,
    user_agent: str | None = None,
    request_id: str | None = None,
) -> EmployeeProfile:
    account = _lock_account(db, account_id)
    if account.status != AccountStatus.INACTIVE or account.profile is not None:
        db.rollback()
        raise ConflictError("Profile was already submitted.", code="PROFILE_ALREADY_SUBMITTED")

    profile = EmployeeProfile(account_id=account_id, status=ProfileStatus.EN_ATTENTE, submitted_at=_utcnow())
    _apply_profile_data(profile, data)
    db.add(profile)
    account.status = ACCOUNT_STATUS_FOR_PROFILE[ProfileStatus.EN_ATTENTE]
    try:
        db.flush()
    except IntegrityError:
        db.rollback()
        raise ConflictError(
            "Profile was already submitted.",
            code="PROFILE_ALREADY_SUBMITTED",
        ) from None

    staged = _stage_submission_notifications(db, profile=profile, resubmitted=False)
    commit_write(db)
    db.refresh(profile)

    log_audit(
        db,
        actor_id=str(account_id),
        action="PROFILE_SUBMITTED",
        entity_type="employee_profile",
        entity_id=str(profile.id),
        changes={
            "account_status": {"from": AccountStatus.INACTIVE.value, "to": AccountStatus.PENDING.value},
            "profile_status": {"from": None, "to": ProfileStatus.EN_ATTENTE.value},
        },
        ip=ip,
        user_agent=user_agent,
        request_id=request_id,
    )
    deliver_notifications(db, staged)
    return profile


def resubmit_profile(
    db: Session,
    *,
    account_id: int,
    data: dict[str, Any],
    ip: str | None = None,
    user_agent: str | None = None,
    request_id: str | None = None,
) -> EmployeeProfile:
    # Profile before account, the same order approve and reject lock in.
    profile = lock_one(db, select(EmployeeProfile).where(EmployeeProfile.account_id == account_id))
    if profile is None:
        db.rollback()
        raise NotFoundError("No profile to resubmit.", code="PROFILE_NOT_FOUND")
    account = _lock_account(db, account_id)
    if (account.status, profile.status) not in RESUBMIT_FROM:
        db.rollback()
        raise ConflictError(
            f"Only a rejected profile can be resubmitted (current: {profile.status.value}).",
            code="PROFILE_NOT_REJECTED",
        )

    _apply_profile_data(profile, data)
    # rejection_reason stays visible until a new approval clears it.
    profile.status = ProfileStatus.EN_ATTENTE
    profile.submitted_at = _utcnow()
    account.status = ACCOUNT_STATUS_FOR_PROFILE[ProfileStatus.EN_ATTENTE]
    staged = _stage_submission_notifications(db, profile=profile, resubmitted=True)
    commit_write(db)
    db.refresh(profile)

    log_audit(
        db,
        actor_id=str(account_id),
        action="PROFILE_RESUBMITTED",
        entity_type="employee_profile",
        entity_id=str(profile.id),
        changes={
            "account_status": {"from": AccountStatus.REJECTED.value, "to": AccountStatus.PENDING.value},
            "profile_status": {"from": ProfileStatus.REJETE.value, "to": ProfileStatus.EN_ATTENTE.value},
        },
        ip=ip,
        user_agent=user_agent,
        request_id=request_id,
    )
    deliver_notifications(db, staged)
    return profile


def _decide(
    db: Session,
    *,
    employee_id: int,
    approver_id: int,
    approver_role: AccountRole,
    decision: DecisionKind,
    reason: str | None,
    comments: str | None,
    ip: str | None,
    user_agent: str | None,
    request_id: str | None,
) -> EmployeeProfile:
    _ensure_approver(approver_role)
    approved = decision == DecisionKind.APPROVED
    allowed_from = APPROVE_FROM if approved else REJECT_FROM
    target = ProfileStatus.APPROUVE if approved else ProfileStatus.REJETE

    try:
        profile = _lock_profile(db, employee_id)
        if profile.account_id == approver_id:
            raise AuthorizationError(
                "You cannot decide on your own profile.",
                code="SELF_APPROVAL_FORBIDDEN",
            )
        account = _lock_account(db, profile.account_id)
        previous_pair = (account.status, profile.status)
        if previous_pair not in allowed_from:
            raise _already_decided(db, profile, account)

        now_utc = _utcnow()
        profile.status = target
        if approved:
            profile.rejection_reason = None
            profile.approved_by_id = approver_id
            profile.approved_at = now_utc
        else:
            profile.rejection_reason = reason
            profile.approved_by_id = None
            profile.approved_at = None
        account.status = ACCOUNT_STATUS_FOR_PROFILE[target]

        db.add(
            Decision(
                profile_id=profile.id,
                decider_id=approver_id,
                decision=decision,
                reason=reason,
                comments=comments,
                created_at=now_utc,
            )
        )
        if approved:
            staged = [
                enqueue_notification(
                    db,
                    recipient_id=profile.account_id,
                    type=NotificationType.PROFILE_APPROVED,
                    title="Profil approuvé",
                    message="Votre profil a été approuvé. Vous pouvez maintenant pointer.",
                    priority=NotificationPriority.HIGH,
                    metadata={"profile_id": profile.id, "comments": comments},
                )
            ]
        else:
            staged = [
                enqueue_notification(
                    db,
                    recipient_id=profile.account_id,
                    type=NotificationType.PROFILE_REJECTED,
                    title="Profil rejeté",
                    message=f"Votre profil a été rejeté. Motif : {reason}",
                    priority=NotificationPriority.HIGH,
                    metadata={"profile_id": profile.id, "reason": reason, "comments": comments},
                )
            ]
        commit_write(db)
    except Exception:
        db.rollback()
        raise

    db.refresh(profile)
    log_audit(
        db,
        actor_id=str(approver_id),
        action="EMPLOYEE_APPROVED" if approved else "EMPLOYEE_REJECTED",
        entity_type="employee_profile",
        entity_id=str(profile.id),
        changes={
            "account_status": {"from": previous_pair[0].value, "to": ACCOUNT_STATUS_FOR_PROFILE[target].value},
            "profile_status": {"from": previous_pair[1].value, "to": target.value},
            "reason": reason,
            "comments": comments,
        },
        severity=AuditSeverity.INFO if approved else AuditSeverity.WARNING,
        ip=ip,
        user_agent=user_agent,
        request_id=request_id,
    )
    logger.info(
        "profile_decided",
        extra={
            "request_id": request_id,
            "profile_id": profile.id,
            "decision": decision.value,
            "approver_id": approver_id,
        },
    )
    deliver_notifications(db, staged)
    return profile


def approve(
    db: Session,
    *,
    employee_id: int,
    approver_id: int,
    approver_role: AccountRole,
    comments: str | None = None,
    ip: str | None = None,
    user_agent: str | None = None,
    request_id: str | None = None,
) -> EmployeeProfile:
    return _decide(
        db,
        employee_id=employee_id,
        approver_id=approver_id,
        approver_role=approver_role,
        decision=DecisionKind.APPROVED,
        reason=None,
        comments=(comments or "").strip() or None,
        ip=ip,
        user_agent=user_agent,
        request_id=request_id,
    )


def reject(
    db: Session,
    *,
    employee_id: int,
    approver_id: int,
    approver_role: AccountRole,
    reason: str | None,
    comments: str | None = None,
    ip: str | None = None,
    user_agent: str | None = None,
    request_id: str | None = None,
) -> EmployeeProfile:
    _ensure_approver(approver_role)
    normalized_reason = (reason or "").strip()
    if not normalized_reason:
        raise ValidationError("A rejection reason is required.", code="REASON_REQUIRED")
    return _decide(
        db,
        employee_id=employee_id,
        approver_id=approver_id,
        approver_role=approver_role,
        decision=DecisionKind.REJECTED,
        reason=normalized_reason,
        comments=(comments or "").strip() or None,
        ip=ip,
        user_agent=user_agent,
        request_id=request_id,
    )


def list_pending_profiles(db: Session) -> list[EmployeeProfile]:
    stmt = (
        select(EmployeeProfile)
        .where(EmployeeProfile.status == ProfileStatus.EN_ATTENTE)
        .order_by(EmployeeProfile.submitted_at.asc(), EmployeeProfile.id.asc())
    )
    return read_with_retry(db, lambda: list(db.scalars(stmt).all()))


def list_decisions(db: Session, *, employee_id: int) -> list[Decision]:
    if read_with_retry(db, lambda: db.get(EmployeeProfile, employee_id)) is None:
        raise NotFoundError("Employee not found.")
    stmt = select(Decision).where(Decision.profile_id == employee_id).order_by(Decision.id.asc())
    return read_with_retry(db, lambda: list(db.scalars(stmt).all()))


def get_profile_status(db: Session, *, account_id: int) -> tuple[Account, EmployeeProfile | None]:
    account = read_with_retry(db, lambda: db.get(Account, account_id))
    if account is None:
        raise NotFoundError("Account not found.", code="ACCOUNT_NOT_FOUND")
    profile = read_with_retry(
        db,
        lambda: db.scalar(select(EmployeeProfile).where(EmployeeProfile.account_id == account_id)),
    )
    return account, profile
