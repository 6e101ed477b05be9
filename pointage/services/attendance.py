from __future__ import annotations

import calendar
import logging
from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Any

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from pointage.audit import log_audit
from pointage.errors import ConflictError, TransientStoreError, ValidationError
from pointage.models import (
    Anomaly,
    AnomalySeverity,
    AttendanceAction,
    AttendanceSession,
    AuditSeverity,
    Notification,
    NotificationPriority,
    NotificationType,
    SessionStatus,
    SessionType,
)
from pointage.schemas import SessionSummaryRead
from pointage.services.anomalies import (
    AttendanceEvent,
    Verification,
    evaluate_event,
    highest_severity,
    record_ordering_violation,
    stage_anomalies,
)
from pointage.services.leaves import approved_leave_days
from pointage.services.notifications import (
    deliver_notifications,
    enqueue_for_approvers,
    enqueue_notification,
)
from pointage.services.session_store import (
    commit_write,
    get_session,
    list_sessions_between,
)
from pointage.services.workday import (
    EXPECTED_DAY_MINUTES,
    is_public_holiday,
    is_weekend,
    local_day,
    minutes_between,
    normalize_ts,
)
from pointage.settings import get_settings

logger = logging.getLogger("pointage.attendance")

ESCALATED_SEVERITIES = frozenset({AnomalySeverity.HIGH, AnomalySeverity.URGENT})
_PRIORITY_BY_SEVERITY = {
    AnomalySeverity.LOW: NotificationPriority.LOW,
    AnomalySeverity.NORMAL: NotificationPriority.NORMAL,
    AnomalySeverity.HIGH: NotificationPriority.HIGH,
    AnomalySeverity.URGENT: NotificationPriority.URGENT,
}
_SESSION_LABELS = {SessionType.MORNING: "morning", SessionType.AFTERNOON: "afternoon"}


@dataclass
class AttendanceResult:
    session: AttendanceSession
    message: str
    anomalies: list[Anomaly] = field(default_factory=list)

    @property
    def primary_anomaly(self) -> Anomaly | None:
        return highest_severity(self.anomalies)


def session_summary(session: AttendanceSession | None, *, action: AttendanceAction) -> dict[str, Any] | None:
    if session is None:
        return None
    timestamp = session.check_out_at if action == AttendanceAction.CHECK_OUT else session.check_in_at
    return SessionSummaryRead(
        id=session.id,
        timestamp=timestamp,
        status=session.status,
        anomaly_detected=bool(session.anomaly_detected),
        anomaly_reason=session.anomaly_reason,
    ).model_dump(mode="json", by_alias=True)


def _session_status(duration_minutes: int) -> SessionStatus:
    if duration_minutes >= get_settings().full_session_threshold_minutes:
        return SessionStatus.FULL
    return SessionStatus.PARTIAL


def _join_reasons(existing: str | None, anomalies: list[Anomaly]) -> str | None:
    parts = [existing] if existing else []
    parts.extend(item.description for item in anomalies)
    return "; ".join(parts) or None


def _stage_anomaly_notifications(db: Session, *, account_id: int, anomalies: list[Anomaly]) -> list[Notification]:
    staged: list[Notification] = []
    for anomaly in anomalies:
        metadata = {
            "anomaly_id": anomaly.id,
            "session_id": anomaly.session_id,
            "anomaly_type": anomaly.anomaly_type.value,
            "severity": anomaly.severity.value,
        }
        priority = _PRIORITY_BY_SEVERITY[anomaly.severity]
        staged.append(
            enqueue_notification(
                db,
                recipient_id=account_id,
                type=NotificationType.POINTAGE_ANOMALY,
                title="Anomalie de pointage",
                message=anomaly.description,
                priority=priority,
                metadata=metadata,
            )
        )
        if anomaly.severity in ESCALATED_SEVERITIES:
            staged.extend(
                enqueue_for_approvers(
                    db,
                    type=NotificationType.POINTAGE_ANOMALY,
                    title="Anomalie de pointage à vérifier",
                    message=f"Employé #{account_id}: {anomaly.description}",
                    priority=priority,
                    metadata={**metadata, "account_id": account_id},
                    exclude=(account_id,),
                )
            )
    return staged


def _reject_ordering(
    db: Session,
    *,
    event: AttendanceEvent,
    code: str,
    message: str,
    ip: str | None,
    user_agent: str | None,
    request_id: str | None,
) -> ConflictError:
    db.rollback()
    current = get_session(
        db,
        account_id=event.account_id,
        work_date=local_day(event.occurred_at),
        session_type=event.session_type,
    )
    anomaly = record_ordering_violation(
        db,
        event=event,
        session_id=current.id if current is not None else None,
        code=code,
        description=message,
    )
    staged: list[Notification] = []
    if anomaly is not None:
        staged = _stage_anomaly_notifications(db, account_id=event.account_id, anomalies=[anomaly])
        try:
            commit_write(db)
        except (TransientStoreError, SQLAlchemyError):
            db.rollback()
            logger.exception("ordering_violation_notify_failed", extra={"request_id": request_id})
            staged = []

    log_audit(
        db,
        actor_id=str(event.account_id),
        action="ATTENDANCE_ORDERING_VIOLATION",
        entity_type="attendance_session",
        entity_id=str(current.id) if current is not None else None,
        changes={
            "code": code,
            "event": event.action.value,
            "session_type": event.session_type.value,
            "anomaly_id": anomaly.id if anomaly is not None else None,
        },
        severity=AuditSeverity.WARNING,
        ip=ip,
        user_agent=user_agent,
        request_id=request_id,
    )
    deliver_notifications(db, staged)
    return ConflictError(
        message,
        code=code,
        status_code=400,
        details={"session": session_summary(current, action=event.action)},
    )


def _finish_event(
    db: Session,
    *,
    session: AttendanceSession,
    event: AttendanceEvent,
    audit_action: str,
    changes: dict[str, Any],
    ip: str | None,
    user_agent: str | None,
    request_id: str | None,
) -> list[Anomaly]:
    findings = evaluate_event(db, event)
    anomalies = stage_anomalies(db, session=session, event=event, findings=findings)
    if anomalies:
        session.anomaly_detected = True
        session.anomaly_reason = _join_reasons(session.anomaly_reason, anomalies)
        db.flush()
    staged = _stage_anomaly_notifications(db, account_id=event.account_id, anomalies=anomalies)
    commit_write(db)
    db.refresh(session)

    log_audit(
        db,
        actor_id=str(event.account_id),
        action=audit_action,
        entity_type="attendance_session",
        entity_id=str(session.id),
        changes={
            **changes,
            "anomaly_detected": bool(anomalies),
            "anomalies": [item.anomaly_type.value for item in anomalies],
        },
        severity=AuditSeverity.WARNING if anomalies else AuditSeverity.INFO,
        ip=ip,
        user_agent=user_agent,
        request_id=request_id,
    )
    deliver_notifications(db, staged)
    return anomalies


def check_in(
    db: Session,
    *,
    account_id: int,
    session_type: SessionType,
    verification: Verification | None = None,
    now: datetime | None = None,
    ip: str | None = None,
    user_agent: str | None = None,
    request_id: str | None = None,
) -> AttendanceResult:
    occurred_at = normalize_ts(now)
    work_date = local_day(occurred_at)
    verification = verification or Verification()
    event = AttendanceEvent(
        account_id=account_id,
        action=AttendanceAction.CHECK_IN,
        session_type=session_type,
        occurred_at=occurred_at,
        verification=verification,
    )
    label = _SESSION_LABELS[session_type]
    already_message = f"You have already checked in for the {label} session today."

    session = get_session(
        db,
        account_id=account_id,
        work_date=work_date,
        session_type=session_type,
        for_update=True,
    )
    if session is not None and session.check_in_at is not None:
        raise _reject_ordering(
            db,
            event=event,
            code="ALREADY_CHECKED_IN",
            message=already_message,
            ip=ip,
            user_agent=user_agent,
            request_id=request_id,
        )

    if session is None:
        session = AttendanceSession(
            account_id=account_id,
            work_date=work_date,
            session_type=session_type,
        )
        db.add(session)

    session.check_in_at = occurred_at
    session.status = SessionStatus.PARTIAL
    session.device_fingerprint = verification.device_fingerprint
    session.check_in_ip = ip
    session.check_in_photo = verification.photo
    session.check_in_lat = verification.latitude
    session.check_in_lon = verification.longitude
    session.face_verified = verification.face_verified
    session.verification_score = verification.verification_score
    session.anomaly_detected = False
    session.anomaly_reason = None
    try:
        db.flush()
    except IntegrityError:
        # A concurrent request inserted the same (account, day, session type).
        raise _reject_ordering(
            db,
            event=event,
            code="ALREADY_CHECKED_IN",
            message=already_message,
            ip=ip,
            user_agent=user_agent,
            request_id=request_id,
        ) from None

    anomalies = _finish_event(
        db,
        session=session,
        event=event,
        audit_action="ATTENDANCE_CHECK_IN",
        changes={
            "session_type": session_type.value,
            "work_date": work_date.isoformat(),
            "check_in_at": occurred_at.isoformat(),
        },
        ip=ip,
        user_agent=user_agent,
        request_id=request_id,
    )
    logger.info(
        "attendance_check_in",
        extra={
            "request_id": request_id,
            "account_id": account_id,
            "session_id": session.id,
            "session_type": session_type.value,
            "anomaly_count": len(anomalies),
        },
    )
    return AttendanceResult(
        session=session,
        message=f"Check-in recorded for the {label} session.",
        anomalies=anomalies,
    )


def check_out(
    db: Session,
    *,
    account_id: int,
    session_type: SessionType,
    verification: Verification | None = None,
    now: datetime | None = None,
    ip: str | None = None,
    user_agent: str | None = None,
    request_id: str | None = None,
) -> AttendanceResult:
    occurred_at = normalize_ts(now)
    work_date = local_day(occurred_at)
    verification = verification or Verification()
    label = _SESSION_LABELS[session_type]

    session = get_session(
        db,
        account_id=account_id,
        work_date=work_date,
        session_type=session_type,
        for_update=True,
    )
    base_event = AttendanceEvent(
        account_id=account_id,
        action=AttendanceAction.CHECK_OUT,
        session_type=session_type,
        occurred_at=occurred_at,
        verification=verification,
    )
    if session is None or session.check_in_at is None:
        message = f"No check-in found for the {label} session today."
    elif session.check_out_at is not None:
        message = f"You have already checked out for the {label} session today."
    elif normalize_ts(session.check_in_at) >= occurred_at:
        message = "Check-out time must be after check-in time."
    else:
        message = ""
    if message:
        raise _reject_ordering(
            db,
            event=base_event,
            code="NO_OPEN_CHECK_IN",
            message=message,
            ip=ip,
            user_agent=user_agent,
            request_id=request_id,
        )

    duration_minutes = minutes_between(session.check_in_at, occurred_at)
    session.check_out_at = occurred_at
    session.duration_minutes = duration_minutes
    session.status = _session_status(duration_minutes)
    session.check_out_ip = ip
    session.check_out_photo = verification.photo
    session.check_out_lat = verification.latitude
    session.check_out_lon = verification.longitude
    db.flush()

    event = AttendanceEvent(
        account_id=account_id,
        action=AttendanceAction.CHECK_OUT,
        session_type=session_type,
        occurred_at=occurred_at,
        verification=verification,
        duration_minutes=duration_minutes,
    )
    anomalies = _finish_event(
        db,
        session=session,
        event=event,
        audit_action="ATTENDANCE_CHECK_OUT",
        changes={
            "session_type": session_type.value,
            "work_date": work_date.isoformat(),
            "check_out_at": occurred_at.isoformat(),
            "duration_minutes": duration_minutes,
            "status": session.status.value,
        },
        ip=ip,
        user_agent=user_agent,
        request_id=request_id,
    )
    logger.info(
        "attendance_check_out",
        extra={
            "request_id": request_id,
            "account_id": account_id,
            "session_id": session.id,
            "session_type": session_type.value,
            "duration_minutes": duration_minutes,
            "anomaly_count": len(anomalies),
        },
    )
    hours, minutes = divmod(duration_minutes, 60)
    return AttendanceResult(
        session=session,
        message=f"Check-out recorded for the {label} session ({hours}h{minutes:02d}).",
        anomalies=anomalies,
    )


def _session_state(session: AttendanceSession | None) -> dict[str, Any]:
    if session is None:
        return {
            "has_checked_in": False,
            "has_checked_out": False,
            "check_in_time": None,
            "check_out_time": None,
            "status": SessionStatus.NOT_STARTED,
            "duration_minutes": None,
        }
    return {
        "has_checked_in": session.check_in_at is not None,
        "has_checked_out": session.check_out_at is not None,
        "check_in_time": session.check_in_at,
        "check_out_time": session.check_out_at,
        "status": session.status,
        "duration_minutes": session.duration_minutes,
    }


def get_today_status(db: Session, *, account_id: int, now: datetime | None = None) -> dict[str, Any]:
    today = local_day(normalize_ts(now))
    sessions = list_sessions_between(db, account_id=account_id, start_date=today, end_date=today)
    by_type = {item.session_type: item for item in sessions}
    return {
        "date": today,
        "morning": _session_state(by_type.get(SessionType.MORNING)),
        "afternoon": _session_state(by_type.get(SessionType.AFTERNOON)),
    }


def _worked(session: AttendanceSession | None) -> bool:
    return session is not None and session.status in {SessionStatus.PARTIAL, SessionStatus.FULL}


def compute_day_status(
    day: date,
    *,
    morning: AttendanceSession | None,
    afternoon: AttendanceSession | None,
    on_leave: bool = False,
) -> tuple[str, int, int]:
    """Return ``(status, worked_minutes, expected_minutes)`` for one calendar day."""
    if is_weekend(day):
        return "WEEKEND", 0, 0
    if is_public_holiday(day):
        return "HOLIDAY", 0, 0
    if on_leave:
        return "LEAVE_FULL", EXPECTED_DAY_MINUTES, EXPECTED_DAY_MINUTES

    worked_minutes = sum(
        item.duration_minutes or 0 for item in (morning, afternoon) if item is not None
    )
    morning_worked = _worked(morning)
    afternoon_worked = _worked(afternoon)
    if morning_worked and afternoon_worked:
        status = "FULL_DAY"
    elif morning_worked:
        status = "HALF_DAY_AM"
    elif afternoon_worked:
        status = "HALF_DAY_PM"
    else:
        status = "ABSENT"
    return status, worked_minutes, EXPECTED_DAY_MINUTES


def get_month_summary(db: Session, *, account_id: int, year: int, month: int) -> dict[str, Any]:
    if not 1 <= month <= 12 or not 2000 <= year <= 2100:
        raise ValidationError("Invalid year or month.", code="INVALID_PERIOD")

    last_day = calendar.monthrange(year, month)[1]
    start_date = date(year, month, 1)
    end_date = date(year, month, last_day)
    sessions = list_sessions_between(db, account_id=account_id, start_date=start_date, end_date=end_date)
    by_key = {(item.work_date, item.session_type): item for item in sessions}
    leave_days = approved_leave_days(db, account_id=account_id, start_date=start_date, end_date=end_date)

    days: list[dict[str, Any]] = []
    totals = {
        "worked_minutes": 0,
        "expected_minutes": 0,
        "full_days": 0,
        "half_days": 0,
        "absent_days": 0,
        "leave_days": 0,
    }
    for day_number in range(1, last_day + 1):
        day = date(year, month, day_number)
        morning = by_key.get((day, SessionType.MORNING))
        afternoon = by_key.get((day, SessionType.AFTERNOON))
        status, worked_minutes, expected_minutes = compute_day_status(
            day,
            morning=morning,
            afternoon=afternoon,
            on_leave=day in leave_days,
        )
        days.append(
            {
                "date": day,
                "status": status,
                "worked_minutes": worked_minutes,
                "expected_minutes": expected_minutes,
                "morning_status": morning.status if morning is not None else SessionStatus.NOT_STARTED,
                "afternoon_status": afternoon.status if afternoon is not None else SessionStatus.NOT_STARTED,
            }
        )
        totals["worked_minutes"] += worked_minutes
        totals["expected_minutes"] += expected_minutes
        if status == "FULL_DAY":
            totals["full_days"] += 1
        elif status in {"HALF_DAY_AM", "HALF_DAY_PM"}:
            totals["half_days"] += 1
        elif status == "ABSENT":
            totals["absent_days"] += 1
        elif status == "LEAVE_FULL":
            totals["leave_days"] += 1

    return {"year": year, "month": month, "days": days, "totals": totals}
