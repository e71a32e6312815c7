from __future__ import annotations

import enum
from datetime import date, datetime, time, timezone
from decimal import Decimal
from typing import Any

from sqlalchemy import (
    JSON,
    Boolean,
    Date,
    DateTime,
    Enum,
    ForeignKey,
    Integer,
    Numeric,
    String,
    Text,
    Time,
    UniqueConstraint,
    text,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column, relationship

from otms.db import Base

JSONColumn = JSON().with_variant(JSONB(), "postgresql")


def _enum_values(enum_cls: type[enum.Enum]) -> list[str]:
    return [member.value for member in enum_cls]


class AppRole(str, enum.Enum):
    EMPLOYEE = "employee"
    SUPERVISOR = "supervisor"
    HR = "hr"
    MANAGEMENT = "management"
    ADMIN = "admin"


class OTStatus(str, enum.Enum):
    PENDING_VERIFICATION = "pending_verification"
    PENDING_SUPERVISOR_CONFIRMATION = "pending_supervisor_confirmation"
    PENDING_RESPECTIVE_SUPERVISOR_CONFIRMATION = "pending_respective_supervisor_confirmation"
    PENDING_SUPERVISOR_REVIEW = "pending_supervisor_review"
    SUPERVISOR_CONFIRMED = "supervisor_confirmed"
    SUPERVISOR_VERIFIED = "supervisor_verified"
    # Pre-refactor value; still shown in the HR queue.
    RESPECTIVE_SUPERVISOR_CONFIRMED = "respective_supervisor_confirmed"
    HR_CERTIFIED = "hr_certified"
    PENDING_HR_RECERTIFICATION = "pending_hr_recertification"
    MANAGEMENT_APPROVED = "management_approved"
    REJECTED = "rejected"


ROUTE_B_ONLY_STATUSES: frozenset[OTStatus] = frozenset(
    {
        OTStatus.PENDING_RESPECTIVE_SUPERVISOR_CONFIRMATION,
        OTStatus.PENDING_SUPERVISOR_REVIEW,
    }
)


class DayType(str, enum.Enum):
    WEEKDAY = "weekday"
    SATURDAY = "saturday"
    SUNDAY = "sunday"
    PUBLIC_HOLIDAY = "public_holiday"


class RejectionStage(str, enum.Enum):
    SUPERVISOR = "supervisor"
    RESPECTIVE_SUPERVISOR = "respective_supervisor"
    HR = "hr"
    MANAGEMENT = "management"


class AuditActorType(str, enum.Enum):
    USER = "USER"
    SYSTEM = "SYSTEM"


class Profile(Base):
    __tablename__ = "profiles"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    employee_code: Mapped[str] = mapped_column(String(50), nullable=False, unique=True)
    full_name: Mapped[str] = mapped_column(String(255), nullable=False)
    email: Mapped[str | None] = mapped_column(String(255), nullable=True)
    department_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    supervisor_id: Mapped[int | None] = mapped_column(
        ForeignKey("profiles.id", ondelete="SET NULL"),
        nullable=True,
        index=True,
    )
    is_ot_eligible: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True, server_default=text("true"))
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True, server_default=text("true"))
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=text("CURRENT_TIMESTAMP"),
    )

    supervisor: Mapped[Profile | None] = relationship(remote_side=[id])
    roles: Mapped[list[UserRole]] = relationship(back_populates="profile", cascade="all, delete-orphan")


class UserRole(Base):
    __tablename__ = "user_roles"
    __table_args__ = (UniqueConstraint("user_id", "role", name="uq_user_roles_user_role"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(ForeignKey("profiles.id", ondelete="CASCADE"), nullable=False, index=True)
    role: Mapped[AppRole] = mapped_column(
        Enum(AppRole, name="app_role", values_callable=_enum_values),
        nullable=False,
    )

    profile: Mapped[Profile] = relationship(back_populates="roles")


class OTRequest(Base):
    __tablename__ = "ot_requests"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    ticket_number: Mapped[str] = mapped_column(String(32), nullable=False, unique=True)
    employee_id: Mapped[int] = mapped_column(ForeignKey("profiles.id", ondelete="RESTRICT"), nullable=False, index=True)
    ot_date: Mapped[date] = mapped_column(Date, nullable=False, index=True)
    start_time: Mapped[time] = mapped_column(Time, nullable=False)
    end_time: Mapped[time] = mapped_column(Time, nullable=False)
    total_hours: Mapped[Decimal] = mapped_column(Numeric(6, 2), nullable=False)
    day_type: Mapped[DayType] = mapped_column(
        Enum(DayType, name="ot_day_type", values_callable=_enum_values),
        nullable=False,
    )
    reason: Mapped[str] = mapped_column(String(1000), nullable=False)
    attachment_urls: Mapped[list[str]] = mapped_column(JSONColumn, nullable=False, default=list)
    orp: Mapped[Decimal | None] = mapped_column(Numeric(12, 2), nullable=True)
    hrp: Mapped[Decimal | None] = mapped_column(Numeric(12, 2), nullable=True)
    ot_amount: Mapped[Decimal | None] = mapped_column(Numeric(12, 2), nullable=True)

    status: Mapped[OTStatus] = mapped_column(
        Enum(OTStatus, name="ot_status", values_callable=_enum_values),
        nullable=False,
        default=OTStatus.PENDING_VERIFICATION,
        index=True,
    )
    rejection_stage: Mapped[str | None] = mapped_column(String(50), nullable=True)
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1, server_default=text("1"))

    supervisor_id: Mapped[int | None] = mapped_column(
        ForeignKey("profiles.id", ondelete="SET NULL"),
        nullable=True,
        index=True,
    )
    supervisor_verified_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    supervisor_remarks: Mapped[str | None] = mapped_column(String(500), nullable=True)
    supervisor_confirmation_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    supervisor_confirmation_remarks: Mapped[str | None] = mapped_column(String(500), nullable=True)
    supervisor_revised_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    supervisor_revision_remarks: Mapped[str | None] = mapped_column(String(500), nullable=True)

    respective_supervisor_id: Mapped[int | None] = mapped_column(
        ForeignKey("profiles.id", ondelete="SET NULL"),
        nullable=True,
        index=True,
    )
    respective_supervisor_confirmed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    respective_supervisor_remarks: Mapped[str | None] = mapped_column(String(500), nullable=True)
    respective_supervisor_denied_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    respective_supervisor_denial_remarks: Mapped[str | None] = mapped_column(String(500), nullable=True)

    hr_id: Mapped[int | None] = mapped_column(ForeignKey("profiles.id", ondelete="SET NULL"), nullable=True)
    hr_approved_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    hr_remarks: Mapped[str | None] = mapped_column(String(500), nullable=True)

    management_id: Mapped[int | None] = mapped_column(ForeignKey("profiles.id", ondelete="SET NULL"), nullable=True)
    management_reviewed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    management_remarks: Mapped[str | None] = mapped_column(String(500), nullable=True)

    parent_request_id: Mapped[int | None] = mapped_column(
        ForeignKey("ot_requests.id", ondelete="SET NULL"),
        nullable=True,
    )
    is_resubmission: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False, server_default=text("false"))
    resubmission_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default=text("0"))

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=text("CURRENT_TIMESTAMP"),
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=text("CURRENT_TIMESTAMP"),
        onupdate=lambda: datetime.now(timezone.utc),
    )

    employee: Mapped[Profile] = relationship(foreign_keys=[employee_id])
    supervisor: Mapped[Profile | None] = relationship(foreign_keys=[supervisor_id])
    respective_supervisor: Mapped[Profile | None] = relationship(foreign_keys=[respective_supervisor_id])
    transitions: Mapped[list[OTRequestTransition]] = relationship(
        back_populates="request",
        order_by="OTRequestTransition.id",
    )

    @property
    def has_respective_supervisor(self) -> bool:
        return self.respective_supervisor_id is not None


class OTRequestTransition(Base):
    """Append-only stage history; rows are never updated."""

    __tablename__ = "ot_request_transitions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    request_id: Mapped[int] = mapped_column(
        ForeignKey("ot_requests.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    action: Mapped[str] = mapped_column(String(64), nullable=False)
    actor_id: Mapped[int | None] = mapped_column(ForeignKey("profiles.id", ondelete="SET NULL"), nullable=True)
    actor_role: Mapped[str] = mapped_column(String(32), nullable=False)
    from_status: Mapped[str | None] = mapped_column(String(64), nullable=True)
    to_status: Mapped[str] = mapped_column(String(64), nullable=False)
    remarks: Mapped[str | None] = mapped_column(String(500), nullable=True)
    version: Mapped[int] = mapped_column(Integer, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=text("CURRENT_TIMESTAMP"),
    )

    request: Mapped[OTRequest] = relationship(back_populates="transitions")


class OTResubmissionHistory(Base):
    __tablename__ = "ot_resubmission_history"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    original_request_id: Mapped[int] = mapped_column(
        ForeignKey("ot_requests.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    resubmitted_request_id: Mapped[int] = mapped_column(
        ForeignKey("ot_requests.id", ondelete="CASCADE"),
        nullable=False,
        unique=True,
    )
    rejected_by_role: Mapped[str] = mapped_column(String(50), nullable=False)
    rejection_reason: Mapped[str] = mapped_column(String(1000), nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=text("CURRENT_TIMESTAMP"),
    )


class AuditLog(Base):
    __tablename__ = "audit_logs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    ts_utc: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=text("CURRENT_TIMESTAMP"),
        index=True,
    )
    actor_type: Mapped[AuditActorType] = mapped_column(
        Enum(AuditActorType, name="audit_actor_type"),
        nullable=False,
    )
    actor_id: Mapped[str] = mapped_column(String(255), nullable=False)
    action: Mapped[str] = mapped_column(String(255), nullable=False)
    entity_type: Mapped[str | None] = mapped_column(String(255), nullable=True)
    entity_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    success: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True, server_default=text("true"))
    details: Mapped[dict[str, Any]] = mapped_column(JSONColumn, nullable=False, default=dict)


class NotificationJob(Base):
    __tablename__ = "notification_jobs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    recipient_id: Mapped[int] = mapped_column(
        ForeignKey("profiles.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    request_id: Mapped[int | None] = mapped_column(
        ForeignKey("ot_requests.id", ondelete="SET NULL"),
        nullable=True,
        index=True,
    )
    kind: Mapped[str] = mapped_column(String(50), nullable=False)
    payload: Mapped[dict[str, Any]] = mapped_column(JSONColumn, nullable=False, default=dict)
    scheduled_at_utc: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, index=True)
    status: Mapped[str] = mapped_column(
        String(20),
        nullable=False,
        default="PENDING",
        server_default=text("'PENDING'"),
        index=True,
    )
    attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default=text("0"))
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    idempotency_key: Mapped[str] = mapped_column(String(255), nullable=False, unique=True, index=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=text("CURRENT_TIMESTAMP"),
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=text("CURRENT_TIMESTAMP"),
        onupdate=lambda: datetime.now(timezone.utc),
    )

    recipient: Mapped[Profile] = relationship()
