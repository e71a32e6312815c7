"""Initial OT workflow schema

Revision ID: 0001_initial
Revises:
Create Date: 2026-09-14 00:00:00
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

app_role = postgresql.ENUM(
    "employee",
    "supervisor",
    "hr",
    "management",
    "admin",
    name="app_role",
    create_type=False,
)
ot_status = postgresql.ENUM(
    "pending_verification",
    "pending_supervisor_confirmation",
    "pending_respective_supervisor_confirmation",
    "pending_supervisor_review",
    "supervisor_confirmed",
    "supervisor_verified",
    "respective_supervisor_confirmed",
    "hr_certified",
    "pending_hr_recertification",
    "management_approved",
    "rejected",
    name="ot_status",
    create_type=False,
)
ot_day_type = postgresql.ENUM(
    "weekday",
    "saturday",
    "sunday",
    "public_holiday",
    name="ot_day_type",
    create_type=False,
)
audit_actor_type = postgresql.ENUM(
    "USER",
    "SYSTEM",
    name="audit_actor_type",
    create_type=False,
)


def _timestamps() -> list[sa.Column]:
    return [
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
    ]


def upgrade() -> None:
    bind = op.get_bind()
    app_role.create(bind, checkfirst=True)
    ot_status.create(bind, checkfirst=True)
    ot_day_type.create(bind, checkfirst=True)
    audit_actor_type.create(bind, checkfirst=True)

    op.create_table(
        "profiles",
        sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
        sa.Column("employee_code", sa.String(length=50), nullable=False),
        sa.Column("full_name", sa.String(length=255), nullable=False),
        sa.Column("email", sa.String(length=255), nullable=True),
        sa.Column("department_name", sa.String(length=255), nullable=True),
        sa.Column("supervisor_id", sa.Integer(), nullable=True),
        sa.Column("is_ot_eligible", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.text("CURRENT_TIMESTAMP"),
        ),
        sa.ForeignKeyConstraint(["supervisor_id"], ["profiles.id"], ondelete="SET NULL"),
        sa.UniqueConstraint("employee_code", name="uq_profiles_employee_code"),
    )
    op.create_index("ix_profiles_supervisor_id", "profiles", ["supervisor_id"])

    op.create_table(
        "user_roles",
        sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
        sa.Column("user_id", sa.Integer(), nullable=False),
        sa.Column("role", app_role, nullable=False),
        sa.ForeignKeyConstraint(["user_id"], ["profiles.id"], ondelete="CASCADE"),
        sa.UniqueConstraint("user_id", "role", name="uq_user_roles_user_role"),
    )
    op.create_index("ix_user_roles_user_id", "user_roles", ["user_id"])

    op.create_table(
        "ot_requests",
        sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
        sa.Column("ticket_number", sa.String(length=32), nullable=False),
        sa.Column("employee_id", sa.Integer(), nullable=False),
        sa.Column("ot_date", sa.Date(), nullable=False),
        sa.Column("start_time", sa.Time(), nullable=False),
        sa.Column("end_time", sa.Time(), nullable=False),
        sa.Column("total_hours", sa.Numeric(6, 2), nullable=False),
        sa.Column("day_type", ot_day_type, nullable=False),
        sa.Column("reason", sa.String(length=1000), nullable=False),
        sa.Column(
            "attachment_urls",
            postgresql.JSONB(astext_type=sa.Text()),
            nullable=False,
            server_default=sa.text("'[]'::jsonb"),
        ),
        sa.Column("orp", sa.Numeric(12, 2), nullable=True),
        sa.Column("hrp", sa.Numeric(12, 2), nullable=True),
        sa.Column("ot_amount", sa.Numeric(12, 2), nullable=True),
        sa.Column("status", ot_status, nullable=False, server_default=sa.text("'pending_verification'")),
        sa.Column("rejection_stage", sa.String(length=50), nullable=True),
        sa.Column("supervisor_id", sa.Integer(), nullable=True),
        sa.Column("supervisor_verified_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("supervisor_remarks", sa.String(length=500), nullable=True),
        sa.Column("supervisor_confirmation_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("supervisor_confirmation_remarks", sa.String(length=500), nullable=True),
        sa.Column("supervisor_revised_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("supervisor_revision_remarks", sa.String(length=500), nullable=True),
        sa.Column("respective_supervisor_id", sa.Integer(), nullable=True),
        sa.Column("respective_supervisor_confirmed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("respective_supervisor_remarks", sa.String(length=500), nullable=True),
        sa.Column("respective_supervisor_denied_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("respective_supervisor_denial_remarks", sa.String(length=500), nullable=True),
        sa.Column("hr_id", sa.Integer(), nullable=True),
        sa.Column("hr_approved_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("hr_remarks", sa.String(length=500), nullable=True),
        sa.Column("management_id", sa.Integer(), nullable=True),
        sa.Column("management_reviewed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("management_remarks", sa.String(length=500), nullable=True),
        sa.Column("parent_request_id", sa.Integer(), nullable=True),
        sa.Column("is_resubmission", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("resubmission_count", sa.Integer(), nullable=False, server_default=sa.text("0")),
        *_timestamps(),
        sa.ForeignKeyConstraint(["employee_id"], ["profiles.id"], ondelete="RESTRICT"),
        sa.ForeignKeyConstraint(["supervisor_id"], ["profiles.id"], ondelete="SET NULL"),
        sa.ForeignKeyConstraint(["respective_supervisor_id"], ["profiles.id"], ondelete="SET NULL"),
        sa.ForeignKeyConstraint(["hr_id"], ["profiles.id"], ondelete="SET NULL"),
        sa.ForeignKeyConstraint(["management_id"], ["profiles.id"], ondelete="SET NULL"),
        sa.ForeignKeyConstraint(["parent_request_id"], ["ot_requests.id"], ondelete="SET NULL"),
        sa.UniqueConstraint("ticket_number", name="uq_ot_requests_ticket_number"),
    )
    op.create_index("ix_ot_requests_employee_id", "ot_requests", ["employee_id"])
    op.create_index("ix_ot_requests_ot_date", "ot_requests", ["ot_date"])
    op.create_index("ix_ot_requests_status", "ot_requests", ["status"])
    op.create_index("ix_ot_requests_supervisor_id", "ot_requests", ["supervisor_id"])
    op.create_index("ix_ot_requests_respective_supervisor_id", "ot_requests", ["respective_supervisor_id"])

    op.create_table(
        "ot_resubmission_history",
        sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
        sa.Column("original_request_id", sa.Integer(), nullable=False),
        sa.Column("resubmitted_request_id", sa.Integer(), nullable=False),
        sa.Column("rejected_by_role", sa.String(length=50), nullable=False),
        sa.Column("rejection_reason", sa.String(length=1000), nullable=False),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.text("CURRENT_TIMESTAMP"),
        ),
        sa.ForeignKeyConstraint(["original_request_id"], ["ot_requests.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["resubmitted_request_id"], ["ot_requests.id"], ondelete="CASCADE"),
        sa.UniqueConstraint("resubmitted_request_id", name="uq_ot_resubmission_history_resubmitted"),
    )
    op.create_index(
        "ix_ot_resubmission_history_original_request_id",
        "ot_resubmission_history",
        ["original_request_id"],
    )

    op.create_table(
        "audit_logs",
        sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
        sa.Column(
            "ts_utc",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.text("CURRENT_TIMESTAMP"),
        ),
        sa.Column("actor_type", audit_actor_type, nullable=False),
        sa.Column("actor_id", sa.String(length=255), nullable=False),
        sa.Column("action", sa.String(length=255), nullable=False),
        sa.Column("entity_type", sa.String(length=255), nullable=True),
        sa.Column("entity_id", sa.String(length=255), nullable=True),
        sa.Column("success", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        sa.Column(
            "details",
            postgresql.JSONB(astext_type=sa.Text()),
            nullable=False,
            server_default=sa.text("'{}'::jsonb"),
        ),
    )
    op.create_index("ix_audit_logs_ts_utc", "audit_logs", ["ts_utc"])

    op.create_table(
        "notification_jobs",
        sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
        sa.Column("recipient_id", sa.Integer(), nullable=False),
        sa.Column("request_id", sa.Integer(), nullable=True),
        sa.Column("kind", sa.String(length=50), nullable=False),
        sa.Column(
            "payload",
            postgresql.JSONB(astext_type=sa.Text()),
            nullable=False,
            server_default=sa.text("'{}'::jsonb"),
        ),
        sa.Column("scheduled_at_utc", sa.DateTime(timezone=True), nullable=False),
        sa.Column("status", sa.String(length=20), nullable=False, server_default=sa.text("'PENDING'")),
        sa.Column("attempts", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("last_error", sa.Text(), nullable=True),
        sa.Column("idempotency_key", sa.String(length=255), nullable=False),
        *_timestamps(),
        sa.ForeignKeyConstraint(["recipient_id"], ["profiles.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["request_id"], ["ot_requests.id"], ondelete="SET NULL"),
    )
    op.create_index("ix_notification_jobs_recipient_id", "notification_jobs", ["recipient_id"])
    op.create_index("ix_notification_jobs_request_id", "notification_jobs", ["request_id"])
    op.create_index("ix_notification_jobs_scheduled_at_utc", "notification_jobs", ["scheduled_at_utc"])
    op.create_index("ix_notification_jobs_status", "notification_jobs", ["status"])
    op.create_index(
        "ix_notification_jobs_idempotency_key",
        "notification_jobs",
        ["idempotency_key"],
        unique=True,
    )


def downgrade() -> None:
    op.drop_table("notification_jobs")
    op.drop_table("audit_logs")
    op.drop_table("ot_resubmission_history")
    op.drop_table("ot_requests")
    op.drop_table("user_roles")
    op.drop_table("profiles")

    bind = op.get_bind()
    audit_actor_type.drop(bind, checkfirst=True)
    ot_day_type.drop(bind, checkfirst=True)
    ot_status.drop(bind, checkfirst=True)
    app_role.drop(bind, checkfirst=True)
