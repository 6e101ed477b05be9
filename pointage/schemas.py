from datetime import date, datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from pointage.models import (
    AccountStatus,
    AnomalySeverity,
    AnomalyStatus,
    AnomalyType,
    AttendanceAction,
    AuditSeverity,
    DecisionKind,
    LeaveStatus,
    LeaveType,
    NotificationPriority,
    NotificationType,
    ProfileStatus,
    SessionStatus,
    SessionType,
)


class CamelModel(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        from_attributes=True,
    )


class GeolocationIn(CamelModel):
    latitude: float = Field(ge=-90, le=90)
    longitude: float = Field(ge=-180, le=180)
    accuracy: float | None = Field(default=None, ge=0)


class VerificationIn(CamelModel):
    photo: str | None = None
    device_fingerprint: str | None = Field(default=None, max_length=255)
    geolocation: GeolocationIn | None = None
    face_verified: bool | None = None
    verification_score: float | None = Field(default=None, ge=0, le=100)


class AttendanceActionRequest(CamelModel):
    session_type: SessionType
    verification: VerificationIn | None = None


class AnomalyRead(CamelModel):
    id: int
    session_id: int | None
    account_id: int
    event: AttendanceAction
    anomaly_type: AnomalyType
    severity: AnomalySeverity
    status: AnomalyStatus
    description: str
    details: dict[str, Any] = Field(default_factory=dict)
    resolved_by_id: int | None = None
    resolved_at: datetime | None = None
    resolution: str | None = None
    created_at: datetime | None = None


class SessionSummaryRead(CamelModel):
    id: int
    timestamp: datetime | None
    status: SessionStatus
    anomaly_detected: bool
    anomaly_reason: str | None = None


class AttendanceActionResponse(CamelModel):
    success: bool
    message: str
    session: SessionSummaryRead
    duration_minutes: int | None = None
    anomaly: AnomalyRead | None = None
    anomalies: list[AnomalyRead] = Field(default_factory=list)


class SessionStateRead(CamelModel):
    has_checked_in: bool
    has_checked_out: bool
    check_in_time: datetime | None = None
    check_out_time: datetime | None = None
    status: SessionStatus = SessionStatus.NOT_STARTED
    duration_minutes: int | None = None


class TodayStatusResponse(CamelModel):
    date: date
    morning: SessionStateRead
    afternoon: SessionStateRead


class DaySummaryRead(CamelModel):
    date: date
    status: str
    worked_minutes: int
    expected_minutes: int
    morning_status: SessionStatus
    afternoon_status: SessionStatus


class MonthTotalsRead(CamelModel):
    worked_minutes: int
    expected_minutes: int
    full_days: int
    half_days: int
    absent_days: int
    leave_days: int


class MonthSummaryResponse(CamelModel):
    year: int
    month: int
    days: list[DaySummaryRead]
    totals: MonthTotalsRead


class AnomalyResolveRequest(CamelModel):
    anomaly_id: int = Field(ge=1)
    status: AnomalyStatus
    resolution: str | None = Field(default=None, max_length=2000)


class ProfileSubmitRequest(CamelModel):
    first_name: str = Field(min_length=1, max_length=255)
    last_name: str = Field(min_length=1, max_length=255)
    phone: str | None = Field(default=None, max_length=50)
    position: str | None = Field(default=None, max_length=255)
    department: str | None = Field(default=None, max_length=255)
    details: dict[str, Any] = Field(default_factory=dict)


class ProfileRead(CamelModel):
    id: int
    account_id: int
    first_name: str
    last_name: str
    phone: str | None = None
    position: str | None = None
    department: str | None = None
    status: ProfileStatus
    rejection_reason: str | None = None
    approved_by_id: int | None = None
    approved_at: datetime | None = None
    submitted_at: datetime | None = None


class ProfileStatusResponse(CamelModel):
    account_status: AccountStatus
    profile: ProfileRead | None = None


class ApproveRequest(CamelModel):
    employee_id: int = Field(ge=1)
    comments: str | None = Field(default=None, max_length=2000)


class RejectRequest(CamelModel):
    employee_id: int = Field(ge=1)
    reason: str | None = Field(default=None, max_length=1000)
    comments: str | None = Field(default=None, max_length=2000)


class EmployeeDecisionRef(CamelModel):
    id: int
    status: ProfileStatus


class DecisionResponse(CamelModel):
    success: bool
    employee: EmployeeDecisionRef


class DecisionRead(CamelModel):
    id: int
    profile_id: int
    decider_id: int | None
    decision: DecisionKind
    reason: str | None = None
    comments: str | None = None
    created_at: datetime | None = None


class AuditLogRead(CamelModel):
    id: int
    ts_utc: datetime
    actor_id: str
    action: str
    entity_type: str
    entity_id: str | None
    changes: dict[str, Any] = Field(default_factory=dict)
    severity: AuditSeverity
    ip: str | None = None
    user_agent: str | None = None


class LeaveRequestCreate(CamelModel):
    type: LeaveType
    start_date: date
    end_date: date
    reason: str | None = Field(default=None, max_length=1000)


class LeaveDecisionRequest(CamelModel):
    decision: DecisionKind
    comments: str | None = Field(default=None, max_length=2000)


class LeaveRequestRead(CamelModel):
    id: int
    account_id: int
    type: LeaveType
    start_date: date
    end_date: date
    status: LeaveStatus
    reason: str | None = None
    decision_comments: str | None = None
    decided_by_id: int | None = None
    decided_at: datetime | None = None
    created_at: datetime | None = None


class NotificationRead(CamelModel):
    id: int
    type: NotificationType
    title: str
    message: str
    priority: NotificationPriority
    is_read: bool
    meta: dict[str, Any] = Field(default_factory=dict, serialization_alias="metadata")
    created_at: datetime | None = None
    read_at: datetime | None = None


class NotificationListResponse(CamelModel):
    items: list[NotificationRead]
    unread_count: int


class NotificationUpdate(CamelModel):
    is_read: bool = True


class MarkAllReadResponse(CamelModel):
    updated: int


class PushSubscriptionRequest(CamelModel):
    subscription: dict[str, Any]


class PushSubscriptionResponse(CamelModel):
    ok: bool
    subscription_id: int
