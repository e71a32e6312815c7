from __future__ import annotations

import enum
from collections.abc import Iterable
from dataclasses import dataclass, field
from datetime import date, time
from decimal import Decimal

from sqlalchemy import and_, or_, select, true
from sqlalchemy.orm import Session, selectinload
from sqlalchemy.sql.elements import ColumnElement

from otms.errors import ApiError
from otms.models import AppRole, DayType, OTRequest, OTStatus
from otms.security import Actor, require_role


class Scope(str, enum.Enum):
    DIRECT = "direct"
    RESPECTIVE = "respective"
    OWN = "own"
    ANY = "any"


@dataclass(frozen=True, slots=True)
class ScopedStatuses:
    scope: Scope
    statuses: frozenset[OTStatus]


ALL_STATUSES: frozenset[OTStatus] = frozenset(OTStatus)
COMPLETED_STATUSES: frozenset[OTStatus] = frozenset(
    {OTStatus.SUPERVISOR_VERIFIED, OTStatus.HR_CERTIFIED, OTStatus.MANAGEMENT_APPROVED}
)
HR_QUEUE_STATUSES: frozenset[OTStatus] = frozenset(
    {
        OTStatus.SUPERVISOR_CONFIRMED,
        OTStatus.RESPECTIVE_SUPERVISOR_CONFIRMED,
        OTStatus.SUPERVISOR_VERIFIED,
        OTStatus.PENDING_HR_RECERTIFICATION,
    }
)
SUPERVISOR_DIRECT_ONLY: frozenset[OTStatus] = frozenset(
    {
        OTStatus.PENDING_VERIFICATION,
        OTStatus.PENDING_SUPERVISOR_CONFIRMATION,
        OTStatus.PENDING_SUPERVISOR_REVIEW,
    }
)
SUPERVISOR_RESPECTIVE_ONLY: frozenset[OTStatus] = frozenset(
    {OTStatus.PENDING_RESPECTIVE_SUPERVISOR_CONFIRMATION}
)

DEFAULT_FILTER = "default"
COMPLETED_FILTER = "completed"
ALL_FILTER = "all"
PENDING_CERTIFICATION_FILTER = "pending_certification"

ROLE_SCOPES: dict[AppRole, tuple[Scope, ...]] = {
    AppRole.EMPLOYEE: (Scope.OWN,),
    AppRole.SUPERVISOR: (Scope.DIRECT, Scope.RESPECTIVE),
    AppRole.HR: (Scope.ANY,),
    AppRole.MANAGEMENT: (Scope.ANY,),
    AppRole.ADMIN: (Scope.ANY,),
}

# Filters whose visibility differs from "role scope x one status set".
VISIBILITY_OVERRIDES: dict[tuple[AppRole, str], tuple[ScopedStatuses, ...]] = {
    (AppRole.SUPERVISOR, DEFAULT_FILTER): (
        ScopedStatuses(
            Scope.DIRECT,
            frozenset({OTStatus.PENDING_VERIFICATION, OTStatus.PENDING_SUPERVISOR_CONFIRMATION}),
        ),
        ScopedStatuses(Scope.RESPECTIVE, SUPERVISOR_RESPECTIVE_ONLY),
    ),
    (AppRole.HR, DEFAULT_FILTER): (ScopedStatuses(Scope.ANY, HR_QUEUE_STATUSES),),
    (AppRole.HR, PENDING_CERTIFICATION_FILTER): (ScopedStatuses(Scope.ANY, HR_QUEUE_STATUSES),),
    (AppRole.MANAGEMENT, DEFAULT_FILTER): (ScopedStatuses(Scope.ANY, frozenset({OTStatus.HR_CERTIFIED})),),
    (AppRole.EMPLOYEE, DEFAULT_FILTER): (ScopedStatuses(Scope.OWN, ALL_STATUSES),),
    (AppRole.ADMIN, DEFAULT_FILTER): (ScopedStatuses(Scope.ANY, ALL_STATUSES),),
}


def resolve_visibility(role: AppRole, status_filter: str | None) -> tuple[ScopedStatuses, ...]:
    key = (status_filter or DEFAULT_FILTER).strip().lower()
    override = VISIBILITY_OVERRIDES.get((role, key))
    if override is not None:
        return override

    scopes = ROLE_SCOPES[role]
    if key == ALL_FILTER:
        return tuple(ScopedStatuses(scope, ALL_STATUSES) for scope in scopes)
    if key == COMPLETED_FILTER:
        return tuple(ScopedStatuses(scope, COMPLETED_STATUSES) for scope in scopes)

    try:
        status = OTStatus(key)
    except ValueError:
        raise ApiError(
            status_code=422,
            code="INVALID_STATUS_FILTER",
            message=f"Status filter {key!r} is not available for role {role.value}.",
        ) from None

    if role == AppRole.SUPERVISOR and status in SUPERVISOR_RESPECTIVE_ONLY:
        scopes = (Scope.RESPECTIVE,)
    elif role == AppRole.SUPERVISOR and status in SUPERVISOR_DIRECT_ONLY:
        scopes = (Scope.DIRECT,)
    return tuple(ScopedStatuses(scope, frozenset({status})) for scope in scopes)


def _scope_clause(scope: Scope, actor: Actor) -> ColumnElement[bool]:
    if scope == Scope.DIRECT:
        return OTRequest.supervisor_id == actor.user_id
    if scope == Scope.RESPECTIVE:
        return OTRequest.respective_supervisor_id == actor.user_id
    if scope == Scope.OWN:
        return OTRequest.employee_id == actor.user_id
    return true()


def build_visibility_clause(actor: Actor, visibility: Iterable[ScopedStatuses]) -> ColumnElement[bool]:
    return or_(
        *[
            and_(_scope_clause(item.scope, actor), OTRequest.status.in_(sorted(item.statuses, key=lambda s: s.value)))
            for item in visibility
        ]
    )


@dataclass(slots=True)
class OTSession:
    request_id: int
    ticket_number: str
    start_time: time
    end_time: time
    total_hours: Decimal
    ot_amount: Decimal | None
    status: OTStatus
    version: int


@dataclass(slots=True)
class GroupedOTRequest:
    group_key: str
    employee_id: int
    ot_date: date
    employee_name: str | None
    employee_code: str | None
    department_name: str | None
    supervisor_id: int | None
    respective_supervisor_id: int | None
    status: OTStatus
    day_type: DayType
    reason: str
    total_hours: Decimal = Decimal("0")
    ot_amount: Decimal | None = None
    sessions: list[OTSession] = field(default_factory=list)
    request_ids: list[int] = field(default_factory=list)


def group_ot_requests(rows: Iterable[OTRequest]) -> list[GroupedOTRequest]:
    """Collapse session rows into one entry per employee and OT date.

    The first row seen for a pair supplies the entry's metadata. A row that
    appears twice is counted once, so grouping already-grouped input is a
    no-op.
    """
    groups: dict[str, GroupedOTRequest] = {}
    seen_ids: set[int] = set()
    for row in rows:
        if row.id in seen_ids:
            continue
        seen_ids.add(row.id)

        group_key = f"{row.employee_id}_{row.ot_date.isoformat()}"
        group = groups.get(group_key)
        if group is None:
            employee = row.employee
            group = GroupedOTRequest(
                group_key=group_key,
                employee_id=row.employee_id,
                ot_date=row.ot_date,
                employee_name=employee.full_name if employee is not None else None,
                employee_code=employee.employee_code if employee is not None else None,
                department_name=employee.department_name if employee is not None else None,
                supervisor_id=row.supervisor_id,
                respective_supervisor_id=row.respective_supervisor_id,
                status=row.status,
                day_type=row.day_type,
                reason=row.reason,
            )
            groups[group_key] = group

        group.sessions.append(
            OTSession(
                request_id=row.id,
                ticket_number=row.ticket_number,
                start_time=row.start_time,
                end_time=row.end_time,
                total_hours=Decimal(row.total_hours),
                ot_amount=Decimal(row.ot_amount) if row.ot_amount is not None else None,
                status=row.status,
                version=row.version,
            )
        )
        group.request_ids.append(row.id)
        group.total_hours += Decimal(row.total_hours)
        if row.ot_amount is not None:
            group.ot_amount = (group.ot_amount or Decimal("0")) + Decimal(row.ot_amount)

    return list(groups.values())


def list_request_rows(
    db: Session,
    *,
    actor: Actor,
    role: AppRole,
    status_filter: str | None = None,
) -> list[OTRequest]:
    require_role(actor, role)
    visibility = resolve_visibility(role, status_filter)
    stmt = (
        select(OTRequest)
        .options(selectinload(OTRequest.employee))
        .where(build_visibility_clause(actor, visibility))
        .order_by(OTRequest.ot_date.desc(), OTRequest.employee_id.asc(), OTRequest.start_time.asc(), OTRequest.id.asc())
    )
    return list(db.scalars(stmt).all())


def list_requests(
    db: Session,
    *,
    actor: Actor,
    role: AppRole,
    status_filter: str | None = None,
) -> list[GroupedOTRequest]:
    return group_ot_requests(list_request_rows(db, actor=actor, role=role, status_filter=status_filter))


def get_request_for_actor(db: Session, *, actor: Actor, request_id: int) -> OTRequest:
    request = db.get(OTRequest, request_id)
    if request is None:
        raise ApiError(status_code=404, code="OT_REQUEST_NOT_FOUND", message="OT request not found.")
    if actor.roles & {AppRole.HR, AppRole.MANAGEMENT, AppRole.ADMIN}:
        return request
    if actor.user_id in {request.employee_id, request.supervisor_id, request.respective_supervisor_id}:
        return request
    raise ApiError(status_code=404, code="OT_REQUEST_NOT_FOUND", message="OT request not found.")
