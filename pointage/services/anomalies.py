from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Callable

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from pointage.audit import log_audit
from pointage.errors import NotFoundError, TransientStoreError, ValidationError
from pointage.models import (
    Anomaly,
    AnomalySeverity,
    AnomalyStatus,
    AnomalyType,
    AttendanceAction,
    AttendanceSession,
    AuditSeverity,
    SessionType,
    Worksite,
)
from pointage.services.location import evaluate_worksites
from pointage.services.session_store import commit_write, count_distinct_devices, read_with_retry
from pointage.services.workday import (
    is_public_holiday,
    is_weekend,
    session_window,
    to_local,
)
from pointage.settings import get_settings

logger = logging.getLogger("pointage.anomalies")

RESOLUTION_STATUSES = frozenset(
    {AnomalyStatus.RESOLVED, AnomalyStatus.DISMISSED, AnomalyStatus.INVESTIGATING}
)
DEVICE_LOOKBACK = timedelta(days=7)
MAX_LIST_LIMIT = 500


@dataclass(frozen=True)
class Verification:
    photo: str | None = None
    device_fingerprint: str | None = None
    latitude: float | None = None
    longitude: float | None = None
    face_verified: bool | None = None
    verification_score: float | None = None


@dataclass(frozen=True)
class AttendanceEvent:
    account_id: int
    action: AttendanceAction
    session_type: SessionType
    occurred_at: datetime
    verification: Verification = field(default_factory=Verification)
    duration_minutes: int | None = None


@dataclass(frozen=True)
class AnomalyFinding:
    anomaly_type: AnomalyType
    severity: AnomalySeverity
    description: str
    details: dict[str, Any] = field(default_factory=dict)


Rule = Callable[[Session, AttendanceEvent], "AnomalyFinding | None"]


def _check_unusual_hours(db: Session, event: AttendanceEvent) -> AnomalyFinding | None:
    settings = get_settings()
    local_ts = to_local(event.occurred_at)
    if settings.earliest_checkin_hour <= local_ts.hour < settings.latest_checkout_hour:
        return None
    return AnomalyFinding(
        AnomalyType.UNUSUAL_HOURS,
        AnomalySeverity.NORMAL,
        f"Pointage outside allowed hours ({settings.earliest_checkin_hour:02d}:00-"
        f"{settings.latest_checkout_hour:02d}:00) at {local_ts:%H:%M}.",
        {"local_time": local_ts.strftime("%H:%M")},
    )


def _check_non_working_day(db: Session, event: AttendanceEvent) -> AnomalyFinding | None:
    day = to_local(event.occurred_at).date()
    if is_public_holiday(day):
        reason = "public_holiday"
    elif is_weekend(day):
        reason = "weekend"
    else:
        return None
    return AnomalyFinding(
        AnomalyType.NON_WORKING_DAY,
        AnomalySeverity.LOW,
        f"Pointage on a non-working day ({reason}).",
        {"date": day.isoformat(), "reason": reason},
    )


def _check_schedule_window(db: Session, event: AttendanceEvent) -> AnomalyFinding | None:
    settings = get_settings()
    local_ts = to_local(event.occurred_at)
    window_start, window_end = session_window(event.session_type)
    local_start = local_ts.replace(
        hour=window_start.hour, minute=window_start.minute, second=0, microsecond=0
    )
    local_end = local_ts.replace(hour=window_end.hour, minute=window_end.minute, second=0, microsecond=0)

    if event.action == AttendanceAction.CHECK_IN:
        deadline = local_start + timedelta(minutes=settings.late_grace_minutes)
        if local_ts <= deadline:
            return None
        late_minutes = int((local_ts - local_start).total_seconds() // 60)
        return AnomalyFinding(
            AnomalyType.LATE_ARRIVAL,
            AnomalySeverity.NORMAL,
            f"Late arrival: {late_minutes} min after {window_start:%H:%M}.",
            {"late_minutes": late_minutes, "expected": window_start.strftime("%H:%M")},
        )

    if local_ts >= local_end:
        return None
    early_minutes = int((local_end - local_ts).total_seconds() // 60)
    return AnomalyFinding(
        AnomalyType.EARLY_DEPARTURE,
        AnomalySeverity.NORMAL,
        f"Early departure: {early_minutes} min before {window_end:%H:%M}.",
        {"early_minutes": early_minutes, "expected": window_end.strftime("%H:%M")},
    )


def _check_face_verification(db: Session, event: AttendanceEvent) -> AnomalyFinding | None:
    settings = get_settings()
    if event.action != AttendanceAction.CHECK_IN or not settings.face_verification_required:
        return None
    verification = event.verification
    score = verification.verification_score
    below_threshold = score is not None and score < settings.face_score_threshold
    if verification.face_verified is not False and not below_threshold:
        return None
    return AnomalyFinding(
        AnomalyType.FACE_VERIFICATION_FAIL,
        AnomalySeverity.HIGH,
        f"Face verification failed. Score: {score if score is not None else 0}",
        {
            "face_verified": verification.face_verified,
            "verification_score": score,
            "threshold": settings.face_score_threshold,
        },
    )


def _check_worksite(db: Session, event: AttendanceEvent) -> AnomalyFinding | None:
    verification = event.verification
    if verification.latitude is None or verification.longitude is None:
        return None
    worksites = read_with_retry(
        db,
        lambda: list(db.scalars(select(Worksite).where(Worksite.is_active.is_(True))).all()),
    )
    result = evaluate_worksites(worksites, verification.latitude, verification.longitude)
    if result is None or result.inside:
        return None
    return AnomalyFinding(
        AnomalyType.OUTSIDE_WORKSITE,
        AnomalySeverity.HIGH,
        f"Position is {round(result.distance_m or 0)} m from {result.worksite_name} "
        f"(allowed {result.radius_m} m).",
        result.as_details(),
    )


def _check_short_session(db: Session, event: AttendanceEvent) -> AnomalyFinding | None:
    settings = get_settings()
    if event.action != AttendanceAction.CHECK_OUT or event.duration_minutes is None:
        return None
    if event.duration_minutes >= settings.min_session_minutes:
        return None
    return AnomalyFinding(
        AnomalyType.SHORT_SESSION,
        AnomalySeverity.LOW,
        f"Session lasted {event.duration_minutes} min (minimum {settings.min_session_minutes}).",
        {"duration_minutes": event.duration_minutes},
    )


def _check_multiple_devices(db: Session, event: AttendanceEvent) -> AnomalyFinding | None:
    settings = get_settings()
    if event.action != AttendanceAction.CHECK_IN or not event.verification.device_fingerprint:
        return None
    since_date = to_local(event.occurred_at).date() - DEVICE_LOOKBACK
    device_count = count_distinct_devices(db, account_id=event.account_id, since_date=since_date)
    if device_count <= settings.max_devices_per_week:
        return None
    return AnomalyFinding(
        AnomalyType.MULTIPLE_DEVICES,
        AnomalySeverity.NORMAL,
        f"{device_count} different devices used in the last 7 days.",
        {"device_count": device_count, "limit": settings.max_devices_per_week},
    )


# Evaluation order is part of the audit trail; append new rules at the end.
RULES: tuple[Rule, ...] = (
    _check_unusual_hours,
    _check_non_working_day,
    _check_schedule_window,
    _check_face_verification,
    _check_worksite,
    _check_short_session,
    _check_multiple_devices,
)


def evaluate_event(db: Session, event: AttendanceEvent) -> list[AnomalyFinding]:
    findings: list[AnomalyFinding] = []
    for rule in RULES:
        finding = rule(db, event)
        if finding is not None:
            findings.append(finding)
    return findings


def stage_anomalies(
    db: Session,
    *,
    session: AttendanceSession,
    event: AttendanceEvent,
    findings: list[AnomalyFinding],
) -> list[Anomaly]:
    rows: list[Anomaly] = []
    for finding in findings:
        row = Anomaly(
            session_id=session.id,
            account_id=event.account_id,
            event=event.action,
            anomaly_type=finding.anomaly_type,
            severity=finding.severity,
            status=AnomalyStatus.PENDING,
            description=finding.description,
            details=finding.details,
            created_at=datetime.now(timezone.utc),
        )
        db.add(row)
        rows.append(row)
    return rows


def record_ordering_violation(
    db: Session,
    *,
    event: AttendanceEvent,
    session_id: int | None,
    code: str,
    description: str,
) -> Anomaly | None:
    """Persist the URGENT anomaly for a rejected transition in its own commit."""
    row = Anomaly(
        session_id=session_id,
        account_id=event.account_id,
        event=event.action,
        anomaly_type=AnomalyType.ORDERING_VIOLATION,
        severity=AnomalySeverity.URGENT,
        status=AnomalyStatus.PENDING,
        description=description,
        details={"code": code, "session_type": event.session_type.value},
        created_at=datetime.now(timezone.utc),
    )
    try:
        db.add(row)
        commit_write(db)
    except (TransientStoreError, SQLAlchemyError):
        db.rollback()
        logger.exception(
            "ordering_violation_record_failed",
            extra={"account_id": event.account_id, "code": code},
        )
        return None
    return row


def highest_severity(anomalies: list[Anomaly]) -> Anomaly | None:
    ranking = list(AnomalySeverity)
    if not anomalies:
        return None
    return max(anomalies, key=lambda item: ranking.index(item.severity))


def list_anomalies(
    db: Session,
    *,
    status: AnomalyStatus | None = None,
    severity: AnomalySeverity | None = None,
    account_id: int | None = None,
    limit: int = 100,
) -> list[Anomaly]:
    stmt = select(Anomaly)
    if status is not None:
        stmt = stmt.where(Anomaly.status == status)
    if severity is not None:
        stmt = stmt.where(Anomaly.severity == severity)
    if account_id is not None:
        stmt = stmt.where(Anomaly.account_id == account_id)
    bounded_limit = max(1, min(limit, MAX_LIST_LIMIT))
    stmt = stmt.order_by(Anomaly.created_at.desc(), Anomaly.id.desc()).limit(bounded_limit)
    return read_with_retry(db, lambda: list(db.scalars(stmt).all()))


def resolve_anomaly(
    db: Session,
    *,
    anomaly_id: int,
    resolver_id: int,
    new_status: AnomalyStatus,
    resolution: str | None,
    ip: str | None = None,
    user_agent: str | None = None,
    request_id: str | None = None,
) -> Anomaly:
    if new_status not in RESOLUTION_STATUSES:
        raise ValidationError(
            "Status must be RESOLVED, DISMISSED or INVESTIGATING.",
            code="INVALID_ANOMALY_STATUS",
        )
    note = (resolution or "").strip()
    if not note:
        raise ValidationError("A resolution note is required.", code="RESOLUTION_REQUIRED")

    anomaly = read_with_retry(db, lambda: db.get(Anomaly, anomaly_id))
    if anomaly is None:
        raise NotFoundError("Anomaly not found.", code="ANOMALY_NOT_FOUND")

    previous_status = anomaly.status
    anomaly.status = new_status
    anomaly.resolution = note
    anomaly.resolved_by_id = resolver_id
    anomaly.resolved_at = None if new_status == AnomalyStatus.INVESTIGATING else datetime.now(timezone.utc)
    commit_write(db)
    db.refresh(anomaly)

    log_audit(
        db,
        actor_id=str(resolver_id),
        action="ANOMALY_RESOLVED",
        entity_type="anomaly",
        entity_id=str(anomaly.id),
        changes={
            "status": {"from": previous_status.value, "to": new_status.value},
            "resolution": note,
        },
        severity=AuditSeverity.INFO,
        ip=ip,
        user_agent=user_agent,
        request_id=request_id,
    )
    return anomaly
