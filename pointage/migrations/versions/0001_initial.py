"""Accounts, profiles, attendance sessions, anomalies and audit trail

Revision ID: 0001_initial
Revises:
Create Date: 2026-10-19 00:00:00
"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision: str = "0001_initial"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

account_role = postgresql.ENUM("USER", "RH", "SUPER_ADMIN", name="account_role", create_type=False)
account_status = postgresql.ENUM(
    "INACTIVE",
    "PENDING",
    "ACTIVE",
    "REJECTED",
    "SUSPENDED",
    name="account_status",
    create_type=False,
)
employee_profile_status = postgresql.ENUM(
    "EN_ATTENTE",
    "APPROUVE",
    "REJETE",
    name="employee_profile_status",
    create_type=False,
)
rh_decision_kind = postgresql.ENUM("APPROVED", "REJECTED", name="rh_decision_kind", create_type=False)
attendance_session_type = postgresql.ENUM(
    "MORNING",
    "AFTERNOON",
    name="attendance_session_type",
    create_type=False,
)
attendance_session_status = postgresql.ENUM(
    "NOT_STARTED",
    "PARTIAL",
    "FULL",
    name="attendance_session_status",
    create_type=False,
)
attendance_action = postgresql.ENUM("CHECK_IN", "CHECK_OUT", name="attendance_action", create_type=False)
anomaly_type = postgresql.ENUM(
    "ORDERING_VIOLATION",
    "LATE_ARRIVAL",
    "EARLY_DEPARTURE",
    "UNUSUAL_HOURS",
    "NON_WORKING_DAY",
    "FACE_VERIFICATION_FAIL",
    "OUTSIDE_WORKSITE",
    "SHORT_SESSION",
    "MULTIPLE_DEVICES",
    name="anomaly_type",
    create_type=False,
)
anomaly_severity = postgresql.ENUM("LOW", "NORMAL", "HIGH", "URGENT", name="anomaly_severity", create_type=False)
anomaly_status = postgresql.ENUM(
    "PENDING",
    "INVESTIGATING",
    "RESOLVED",
    "DISMISSED",
    name="anomaly_status",
    create_type=False,
)
audit_severity = postgresql.ENUM("INFO", "WARNING", "ERROR", "CRITICAL", name="audit_severity", create_type=False)

ALL_ENUMS = (
    account_role,
    account_status,
    employee_profile_status,
    rh_decision_kind,
    attendance_session_type,
    attendance_session_status,
    attendance_action,
    anomaly_type,
    anomaly_severity,
    anomaly_status,
    audit_severity,
)


def _timestamp(name: str) -> sa.Column:
    return sa.Column(
        name,
        sa.DateTime(timezone=True),
        nullable=False,
        server_default=sa.text("CURRENT_TIMESTAMP"),
    )


def upgrade() -> None:
    bind = op.get_bind()
    for enum_type in ALL_ENUMS:
        enum_type.create(bind, checkfirst=True)

    op.create_table(
        "accounts",
        sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
        sa.Column("email", sa.String(length=255), nullable=True),
        sa.Column("full_name", sa.String(length=255), nullable=True),
        sa.Column("role", account_role, nullable=False, server_default=sa.text("'USER'")),
        sa.Column("status", account_status, nullable=False, server_default=sa.text("'INACTIVE'")),
        _timestamp("created_at"),
        _timestamp("updated_at"),
    )
    op.create_index("ix_accounts_email", "accounts", ["email"], unique=True)
    op.create_index("ix_accounts_status", "accounts", ["status"], unique=False)

    op.create_table(
        "employee_profiles",
        sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
        sa.Column("account_id", sa.Integer(), nullable=False),
        sa.Column("first_name", sa.String(length=255), nullable=False),
        sa.Column("last_name", sa.String(length=255), nullable=False),
        sa.Column("phone", sa.String(length=50), nullable=True),
        sa.Column("position", sa.String(length=255), nullable=True),
        sa.Column("department", sa.String(length=255), nullable=True),
        sa.Column(
            "details",
            postgresql.JSONB(astext_type=sa.Text()),
            nullable=False,
            server_default=sa.text("'{}'::jsonb"),
        ),
        sa.Column(
            "status",
            employee_profile_status,
            nullable=False,
            server_default=sa.text("'EN_ATTENTE'"),
        ),
        sa.Column("rejection_reason", sa.String(length=1000), nullable=True),
        sa.Column("approved_by_id", sa.Integer(), nullable=True),
        sa.Column("approved_at", sa.DateTime(timezone=True), nullable=True),
        _timestamp("submitted_at"),
        _timestamp("updated_at"),
        sa.ForeignKeyConstraint(["account_id"], ["accounts.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["approved_by_id"], ["accounts.id"], ondelete="SET NULL"),
        sa.UniqueConstraint("account_id", name="uq_employee_profiles_account_id"),
    )
    op.create_index("ix_employee_profiles_status", "employee_profiles", ["status"], unique=False)

    op.create_table(
        "rh_decisions",
        sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
        sa.Column("profile_id", sa.Integer(), nullable=False),
        sa.Column("decider_id", sa.Integer(), nullable=True),
        sa.Column("decision", rh_decision_kind, nullable=False),
        sa.Column("reason", sa.String(length=1000), nullable=True),
        sa.Column("comments", sa.String(length=2000), nullable=True),
        _timestamp("created_at"),
        sa.ForeignKeyConstraint(["profile_id"], ["employee_profiles.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["decider_id"], ["accounts.id"], ondelete="SET NULL"),
    )
    op.create_index("ix_rh_decisions_profile_id", "rh_decisions", ["profile_id"], unique=False)

    op.create_table(
        "worksites",
        sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
        sa.Column("name", sa.String(length=255), nullable=False),
        sa.Column("lat", sa.Float(), nullable=False),
        sa.Column("lon", sa.Float(), nullable=False),
        sa.Column("radius_m", sa.Integer(), nullable=False, server_default=sa.text("150")),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        sa.UniqueConstraint("name", name="uq_worksites_name"),
    )

    op.create_table(
        "attendance_sessions",
        sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
        sa.Column("account_id", sa.Integer(), nullable=False),
        sa.Column("work_date", sa.Date(), nullable=False),
        sa.Column("session_type", attendance_session_type, nullable=False),
        sa.Column("check_in_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("check_out_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("duration_minutes", sa.Integer(), nullable=True),
        sa.Column(
            "status",
            attendance_session_status,
            nullable=False,
            server_default=sa.text("'NOT_STARTED'"),
        ),
        sa.Column("device_fingerprint", sa.String(length=255), nullable=True),
        sa.Column("check_in_ip", sa.String(length=128), nullable=True),
        sa.Column("check_out_ip", sa.String(length=128), nullable=True),
        sa.Column("check_in_photo", sa.Text(), nullable=True),
        sa.Column("check_out_photo", sa.Text(), nullable=True),
        sa.Column("check_in_lat", sa.Float(), nullable=True),
        sa.Column("check_in_lon", sa.Float(), nullable=True),
        sa.Column("check_out_lat", sa.Float(), nullable=True),
        sa.Column("check_out_lon", sa.Float(), nullable=True),
        sa.Column("face_verified", sa.Boolean(), nullable=True),
        sa.Column("verification_score", sa.Float(), nullable=True),
        sa.Column("anomaly_detected", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("anomaly_reason", sa.Text(), nullable=True),
        _timestamp("created_at"),
        _timestamp("updated_at"),
        sa.ForeignKeyConstraint(["account_id"], ["accounts.id"], ondelete="CASCADE"),
        sa.UniqueConstraint(
            "account_id",
            "work_date",
            "session_type",
            name="uq_attendance_sessions_account_date_type",
        ),
        sa.CheckConstraint(
            "check_out_at IS NULL OR (check_in_at IS NOT NULL AND check_out_at > check_in_at)",
            name="ck_attendance_sessions_checkout_after_checkin",
        ),
    )
    op.create_index("ix_attendance_sessions_account_id", "attendance_sessions", ["account_id"], unique=False)
    op.create_index("ix_attendance_sessions_work_date", "attendance_sessions", ["work_date"], unique=False)
    op.create_index(
        "ix_attendance_sessions_device_fingerprint",
        "attendance_sessions",
        ["device_fingerprint"],
        unique=False,
    )

    op.create_table(
        "anomalies",
        sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
        sa.Column("session_id", sa.Integer(), nullable=True),
        sa.Column("account_id", sa.Integer(), nullable=False),
        sa.Column("event", attendance_action, nullable=False),
        sa.Column("anomaly_type", anomaly_type, nullable=False),
        sa.Column("severity", anomaly_severity, nullable=False),
        sa.Column("status", anomaly_status, nullable=False, server_default=sa.text("'PENDING'")),
        sa.Column("description", sa.String(length=1000), nullable=False),
        sa.Column(
            "details",
            postgresql.JSONB(astext_type=sa.Text()),
            nullable=False,
            server_default=sa.text("'{}'::jsonb"),
        ),
        sa.Column("resolved_by_id", sa.Integer(), nullable=True),
        sa.Column("resolved_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("resolution", sa.String(length=2000), nullable=True),
        _timestamp("created_at"),
        sa.ForeignKeyConstraint(["session_id"], ["attendance_sessions.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["account_id"], ["accounts.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["resolved_by_id"], ["accounts.id"], ondelete="SET NULL"),
    )
    op.create_index("ix_anomalies_session_id", "anomalies", ["session_id"], unique=False)
    op.create_index("ix_anomalies_account_id", "anomalies", ["account_id"], unique=False)
    op.create_index("ix_anomalies_severity", "anomalies", ["severity"], unique=False)
    op.create_index("ix_anomalies_status", "anomalies", ["status"], unique=False)
    op.create_index("ix_anomalies_created_at", "anomalies", ["created_at"], unique=False)

    op.create_table(
        "audit_logs",
        sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
        _timestamp("ts_utc"),
        sa.Column("actor_id", sa.String(length=255), nullable=False),
        sa.Column("action", sa.String(length=255), nullable=False),
        sa.Column("entity_type", sa.String(length=255), nullable=False),
        sa.Column("entity_id", sa.String(length=255), nullable=True),
        sa.Column(
            "changes",
            postgresql.JSONB(astext_type=sa.Text()),
            nullable=False,
            server_default=sa.text("'{}'::jsonb"),
        ),
        sa.Column("severity", audit_severity, nullable=False, server_default=sa.text("'INFO'")),
        sa.Column("ip", sa.String(length=128), nullable=True),
        sa.Column("user_agent", sa.String(length=1024), nullable=True),
    )
    op.create_index("ix_audit_logs_ts_utc", "audit_logs", ["ts_utc"], unique=False)
    op.create_index("ix_audit_logs_actor_id", "audit_logs", ["actor_id"], unique=False)
    op.create_index("ix_audit_logs_action", "audit_logs", ["action"], unique=False)


def downgrade() -> None:
    op.drop_table("audit_logs")
    op.drop_table("anomalies")
    op.drop_table("attendance_sessions")
    op.drop_table("worksites")
    op.drop_table("rh_decisions")
    op.drop_table("employee_profiles")
    op.drop_table("accounts")

    bind = op.get_bind()
    for enum_type in reversed(ALL_ENUMS):
        enum_type.drop(bind, checkfirst=True)
