"""Add leave requests

Revision ID: 0003_leave_requests
Revises: 0002_notifications
Create Date: 2026-10-19 00:40:00
"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision: str = "0003_leave_requests"
down_revision: Union[str, None] = "0002_notifications"
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

leave_type = postgresql.ENUM(
    "PAID",
    "UNPAID",
    "MATERNITE",
    "MALADIE",
    "PREAVIS",
    name="leave_type",
    create_type=False,
)

leave_status = postgresql.ENUM(
    "EN_ATTENTE",
    "VALIDE",
    "REFUSE",
    "ANNULE",
    name="leave_status",
    create_type=False,
)


def upgrade() -> None:
    bind = op.get_bind()
    leave_type.create(bind, checkfirst=True)
    leave_status.create(bind, checkfirst=True)

    op.create_table(
        "leave_requests",
        sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
        sa.Column("account_id", sa.Integer(), nullable=False),
        sa.Column("type", leave_type, nullable=False),
        sa.Column("start_date", sa.Date(), nullable=False),
        sa.Column("end_date", sa.Date(), nullable=False),
        sa.Column("status", leave_status, nullable=False, server_default=sa.text("'EN_ATTENTE'")),
        sa.Column("reason", sa.String(length=1000), nullable=True),
        sa.Column("decision_comments", sa.String(length=2000), nullable=True),
        sa.Column("decided_by_id", sa.Integer(), nullable=True),
        sa.Column("decided_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.text("CURRENT_TIMESTAMP"),
        ),
        sa.Column(
            "updated_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.text("CURRENT_TIMESTAMP"),
        ),
        sa.ForeignKeyConstraint(["account_id"], ["accounts.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["decided_by_id"], ["accounts.id"], ondelete="SET NULL"),
        sa.CheckConstraint("end_date >= start_date", name="ck_leave_requests_range"),
    )
    op.create_index("ix_leave_requests_account_id", "leave_requests", ["account_id"], unique=False)
    op.create_index("ix_leave_requests_status", "leave_requests", ["status"], unique=False)


def downgrade() -> None:
    op.drop_index("ix_leave_requests_status", table_name="leave_requests")
    op.drop_index("ix_leave_requests_account_id", table_name="leave_requests")
    op.drop_table("leave_requests")

    bind = op.get_bind()
    leave_status.drop(bind, checkfirst=True)
    leave_type.drop(bind, checkfirst=True)
