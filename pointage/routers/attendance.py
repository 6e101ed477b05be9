from datetime import datetime, timezone

from fastapi import APIRouter, Depends, Query, Request
from sqlalchemy.orm import Session

from pointage.db import get_db
from pointage.models import AnomalySeverity, AnomalyStatus, AttendanceAction
from pointage.routers.common import request_meta
from pointage.schemas import (
    AnomalyRead,
    AnomalyResolveRequest,
    AttendanceActionRequest,
    AttendanceActionResponse,
    MonthSummaryResponse,
    TodayStatusResponse,
)
from pointage.security import Principal, require_active_account, require_approver
from pointage.services.anomalies import Verification, list_anomalies, resolve_anomaly
from pointage.services.attendance import (
    AttendanceResult,
    check_in,
    check_out,
    get_month_summary,
    get_today_status,
    session_summary,
)

router = APIRouter(prefix="/api/pointage", tags=["pointage"])


def _verification(payload: AttendanceActionRequest) -> Verification:
    raw = payload.verification
    if raw is None:
        return Verification()
    return Verification(
        photo=raw.photo,
        device_fingerprint=(raw.device_fingerprint or "").strip() or None,
        latitude=raw.geolocation.latitude if raw.geolocation else None,
        longitude=raw.geolocation.longitude if raw.geolocation else None,
        face_verified=raw.face_verified,
        verification_score=raw.verification_score,
    )


def _action_response(result: AttendanceResult, *, action: AttendanceAction) -> AttendanceActionResponse:
    primary = result.primary_anomaly
    return AttendanceActionResponse(
        success=True,
        message=result.message,
        session=session_summary(result.session, action=action),
        duration_minutes=result.session.duration_minutes,
        anomaly=AnomalyRead.model_validate(primary) if primary is not None else None,
        anomalies=[AnomalyRead.model_validate(item) for item in result.anomalies],
    )


@router.post("/check-in", response_model=AttendanceActionResponse)
def check_in_endpoint(
    payload: AttendanceActionRequest,
    request: Request,
    principal: Principal = Depends(require_active_account),
    db: Session = Depends(get_db),
) -> AttendanceActionResponse:
    result = check_in(
        db,
        account_id=principal.user_id,
        session_type=payload.session_type,
        verification=_verification(payload),
        **request_meta(request),
    )
    request.state.session_id = result.session.id
    return _action_response(result, action=AttendanceAction.CHECK_IN)


@router.post("/check-out", response_model=AttendanceActionResponse)
def check_out_endpoint(
    payload: AttendanceActionRequest,
    request: Request,
    principal: Principal = Depends(require_active_account),
    db: Session = Depends(get_db),
) -> AttendanceActionResponse:
    result = check_out(
        db,
        account_id=principal.user_id,
        session_type=payload.session_type,
        verification=_verification(payload),
        **request_meta(request),
    )
    request.state.session_id = result.session.id
    return _action_response(result, action=AttendanceAction.CHECK_OUT)


@router.get("/today-status", response_model=TodayStatusResponse)
def today_status_endpoint(
    principal: Principal = Depends(require_active_account),
    db: Session = Depends(get_db),
) -> TodayStatusResponse:
    return TodayStatusResponse.model_validate(get_today_status(db, account_id=principal.user_id))


@router.get("/month-summary", response_model=MonthSummaryResponse)
def month_summary_endpoint(
    year: int | None = Query(default=None),
    month: int | None = Query(default=None),
    principal: Principal = Depends(require_active_account),
    db: Session = Depends(get_db),
) -> MonthSummaryResponse:
    today = datetime.now(timezone.utc).date()
    summary = get_month_summary(
        db,
        account_id=principal.user_id,
        year=year or today.year,
        month=month or today.month,
    )
    return MonthSummaryResponse.model_validate(summary)


@router.get("/anomalies", response_model=list[AnomalyRead])
def list_anomalies_endpoint(
    status: AnomalyStatus | None = Query(default=None),
    severity: AnomalySeverity | None = Query(default=None),
    user_id: int | None = Query(default=None, alias="userId", ge=1),
    limit: int = Query(default=100, ge=1, le=500),
    _principal: Principal = Depends(require_approver),
    db: Session = Depends(get_db),
) -> list[AnomalyRead]:
    rows = list_anomalies(db, status=status, severity=severity, account_id=user_id, limit=limit)
    return [AnomalyRead.model_validate(item) for item in rows]


@router.patch("/anomalies", response_model=AnomalyRead)
def resolve_anomaly_endpoint(
    payload: AnomalyResolveRequest,
    request: Request,
    principal: Principal = Depends(require_approver),
    db: Session = Depends(get_db),
) -> AnomalyRead:
    anomaly = resolve_anomaly(
        db,
        anomaly_id=payload.anomaly_id,
        resolver_id=principal.user_id,
        new_status=payload.status,
        resolution=payload.resolution,
        **request_meta(request),
    )
    return AnomalyRead.model_validate(anomaly)
