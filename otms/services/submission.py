from __future__ import annotations

import logging
import secrets
import string
from collections.abc import Sequence
from datetime import date, datetime, time, timezone
from zoneinfo import ZoneInfo

from sqlalchemy import select
from sqlalchemy.orm import Session

from otms.audit import log_audit
from otms.errors import ApiError
from otms.models import (
    AppRole,
    AuditActorType,
    DayType,
    OTRequest,
    OTRequestTransition,
    OTResubmissionHistory,
    OTStatus,
    Profile,
    RejectionStage,
)
from otms.schemas import OTResubmissionCreate, OTSubmissionCreate
from otms.security import Actor, require_role
from otms.services.notifications import NotificationTarget, dispatch_submission_notifications
from otms.services.rates import HoursOnlyRateCalculator, RateCalculator, day_type_for, session_hours
from otms.settings import get_settings

logger = logging.getLogger("otms.submission")

TICKET_ALPHABET = string.ascii_uppercase + string.digits
TICKET_SUFFIX_LENGTH = 4
TICKET_MAX_ATTEMPTS = 10


def _ot_timezone() -> ZoneInfo:
    raw_name = (get_settings().ot_timezone or "").strip() or "Asia/Kuala_Lumpur"
    try:
        return ZoneInfo(raw_name)
    except Exception:
        return ZoneInfo("Asia/Kuala_Lumpur")


def local_today(now_utc: datetime | None = None) -> date:
    reference = now_utc or datetime.now(timezone.utc)
    if reference.tzinfo is None:
        reference = reference.replace(tzinfo=timezone.utc)
    return reference.astimezone(_ot_timezone()).date()


def check_submission_deadline(ot_date: date, today: date) -> str | None:
    """Return why ``ot_date`` can no longer be claimed on ``today``, or None."""
    settings = get_settings()
    if ot_date > today:
        return "Cannot submit OT for future dates."

    if (ot_date.year, ot_date.month) == (today.year, today.month):
        if (today - ot_date).days <= settings.ot_submission_lookback_days:
            return None
        return (
            "Current month OT can only be submitted within "
            f"{settings.ot_submission_lookback_days} days of the date worked."
        )

    if today.day <= settings.ot_submission_cutoff_day:
        return None
    return (
        "OT for previous months can only be submitted until day "
        f"{settings.ot_submission_cutoff_day} of the current month."
    )


def _generate_ticket_number(db: Session, ot_date: date, reserved: set[str]) -> str:
    prefix = f"OT-{ot_date.strftime('%Y%m%d')}-"
    for _ in range(TICKET_MAX_ATTEMPTS):
        candidate = prefix + "".join(secrets.choice(TICKET_ALPHABET) for _ in range(TICKET_SUFFIX_LENGTH))
        if candidate in reserved:
            continue
        exists = db.scalar(select(OTRequest.id).where(OTRequest.ticket_number == candidate))
        if exists is None:
            reserved.add(candidate)
            return candidate
    raise ApiError(status_code=503, code="TICKET_NUMBER_UNAVAILABLE", message="Could not allocate a ticket number.")


def _load_submitter(db: Session, actor: Actor) -> Profile:
    require_role(actor, AppRole.EMPLOYEE)
    employee = db.get(Profile, actor.user_id)
    if employee is None or not employee.is_active:
        raise ApiError(status_code=403, code="EMPLOYEE_INACTIVE", message="Employee profile is not active.")
    if not employee.is_ot_eligible:
        raise ApiError(status_code=403, code="OT_NOT_ELIGIBLE", message="You are not eligible to submit OT requests.")
    if employee.supervisor_id is None:
        raise ApiError(status_code=422, code="SUPERVISOR_MISSING", message="No supervisor is assigned to your profile.")
    return employee


def _validate_respective_supervisor(db: Session, employee: Profile, respective_supervisor_id: int | None) -> None:
    if respective_supervisor_id is None:
        return
    if respective_supervisor_id in {employee.id, employee.supervisor_id}:
        raise ApiError(
            status_code=422,
            code="INVALID_RESPECTIVE_SUPERVISOR",
            message="Respective supervisor must differ from you and your direct supervisor.",
        )
    respective = db.get(Profile, respective_supervisor_id)
    if respective is None or not respective.is_active:
        raise ApiError(
            status_code=422,
            code="INVALID_RESPECTIVE_SUPERVISOR",
            message="Respective supervisor was not found.",
        )


def _validate_common(
    db: Session,
    *,
    employee: Profile,
    ot_date: date,
    attachment_urls: Sequence[str],
    respective_supervisor_id: int | None,
    now_utc: datetime | None,
) -> None:
    settings = get_settings()
    if len(attachment_urls) > settings.max_attachments:
        raise ApiError(
            status_code=422,
            code="TOO_MANY_ATTACHMENTS",
            message=f"At most {settings.max_attachments} attachments are allowed.",
        )
    deadline_error = check_submission_deadline(ot_date, local_today(now_utc))
    if deadline_error is not None:
        raise ApiError(status_code=422, code="SUBMISSION_DEADLINE_PASSED", message=deadline_error)
    _validate_respective_supervisor(db, employee, respective_supervisor_id)


def _ensure_no_overlap(db: Session, *, employee_id: int, ot_date: date, windows: Sequence[tuple[time, time]]) -> None:
    ordered = sorted(windows)
    for (_, previous_end), (next_start, _) in zip(ordered, ordered[1:]):
        if next_start < previous_end:
            raise ApiError(status_code=422, code="OT_SESSION_OVERLAP", message="OT sessions must not overlap.")

    existing = db.execute(
        select(OTRequest.start_time, OTRequest.end_time).where(
            OTRequest.employee_id == employee_id,
            OTRequest.ot_date == ot_date,
            OTRequest.status != OTStatus.REJECTED,
        )
    ).all()
    for start_time, end_time in windows:
        for existing_start, existing_end in existing:
            if start_time < existing_end and existing_start < end_time:
                raise ApiError(
                    status_code=409,
                    code="OT_SESSION_OVERLAP",
                    message="An OT request already covers part of this time window.",
                )


def _build_request(
    db: Session,
    *,
    employee: Profile,
    ot_date: date,
    start_time: time,
    end_time: time,
    day_type: DayType,
    reason: str,
    attachment_urls: Sequence[str],
    respective_supervisor_id: int | None,
    rate_calculator: RateCalculator,
    reserved_tickets: set[str],
) -> OTRequest:
    total_hours = session_hours(start_time, end_time)
    rates = rate_calculator.calculate(employee=employee, ot_date=ot_date, day_type=day_type, total_hours=total_hours)
    return OTRequest(
        ticket_number=_generate_ticket_number(db, ot_date, reserved_tickets),
        employee_id=employee.id,
        ot_date=ot_date,
        start_time=start_time,
        end_time=end_time,
        total_hours=total_hours,
        day_type=day_type,
        reason=reason,
        attachment_urls=list(attachment_urls),
        orp=rates.orp,
        hrp=rates.hrp,
        ot_amount=rates.ot_amount,
        status=OTStatus.PENDING_VERIFICATION,
        version=1,
        supervisor_id=employee.supervisor_id,
        respective_supervisor_id=respective_supervisor_id,
    )


def _record_created(db: Session, requests: Sequence[OTRequest], actor: Actor, action: str) -> None:
    for request in requests:
        db.add(
            OTRequestTransition(
                request_id=request.id,
                action=action,
                actor_id=actor.user_id,
                actor_role=AppRole.EMPLOYEE.value,
                from_status=None,
                to_status=OTStatus.PENDING_VERIFICATION.value,
                remarks=None,
                version=1,
            )
        )


def _targets(requests: Sequence[OTRequest]) -> list[NotificationTarget]:
    return [
        NotificationTarget(
            request_id=request.id,
            ticket_number=request.ticket_number,
            ot_date=request.ot_date,
            employee_id=request.employee_id,
            supervisor_id=request.supervisor_id,
            respective_supervisor_id=request.respective_supervisor_id,
            version=request.version,
        )
        for request in requests
    ]


def submit_ot_request(
    db: Session,
    *,
    actor: Actor,
    payload: OTSubmissionCreate,
    rate_calculator: RateCalculator | None = None,
    now_utc: datetime | None = None,
) -> list[OTRequest]:
    employee = _load_submitter(db, actor)
    _validate_common(
        db,
        employee=employee,
        ot_date=payload.ot_date,
        attachment_urls=payload.attachment_urls,
        respective_supervisor_id=payload.respective_supervisor_id,
        now_utc=now_utc,
    )
    windows = [(session.start_time, session.end_time) for session in payload.sessions]
    _ensure_no_overlap(db, employee_id=employee.id, ot_date=payload.ot_date, windows=windows)

    calculator = rate_calculator or HoursOnlyRateCalculator()
    day_type = payload.day_type or day_type_for(payload.ot_date)
    reserved: set[str] = set()
    created = [
        _build_request(
            db,
            employee=employee,
            ot_date=payload.ot_date,
            start_time=start_time,
            end_time=end_time,
            day_type=day_type,
            reason=payload.reason,
            attachment_urls=payload.attachment_urls,
            respective_supervisor_id=payload.respective_supervisor_id,
            rate_calculator=calculator,
            reserved_tickets=reserved,
        )
        for start_time, end_time in windows
    ]
    db.add_all(created)
    db.flush()
    _record_created(db, created, actor, "submit")
    db.commit()

    logger.info(
        "ot_request_submitted",
        extra={
            "employee_id": employee.id,
            "ot_date": payload.ot_date,
            "request_ids": [request.id for request in created],
            "route": "B" if payload.respective_supervisor_id else "A",
        },
    )
    dispatch_submission_notifications(db, targets=_targets(created), actor_id=actor.user_id, now_utc=now_utc)
    for request in created:
        log_audit(
            db,
            actor_type=AuditActorType.USER,
            actor_id=str(actor.user_id),
            action="OT_REQUEST_SUBMITTED",
            success=True,
            entity_type="ot_request",
            entity_id=str(request.id),
            details={"ot_date": payload.ot_date.isoformat(), "sessions": len(created)},
        )
    return created


_STAGE_REMARKS = {
    RejectionStage.SUPERVISOR.value: "supervisor_remarks",
    RejectionStage.RESPECTIVE_SUPERVISOR.value: "respective_supervisor_denial_remarks",
    RejectionStage.HR.value: "hr_remarks",
    RejectionStage.MANAGEMENT.value: "management_remarks",
}


def _rejection_reason(request: OTRequest) -> str:
    """Remarks written by the stage that rejected the request."""
    stage = request.rejection_stage or RejectionStage.SUPERVISOR.value
    remarks = getattr(request, _STAGE_REMARKS.get(stage, "supervisor_remarks"))
    return (remarks or "").strip() or "No remarks provided"


def resubmit_ot_request(
    db: Session,
    *,
    actor: Actor,
    parent_request_id: int,
    payload: OTResubmissionCreate,
    rate_calculator: RateCalculator | None = None,
    now_utc: datetime | None = None,
) -> OTRequest:
    employee = _load_submitter(db, actor)
    parent = db.get(OTRequest, parent_request_id)
    if parent is None or parent.employee_id != employee.id:
        raise ApiError(status_code=404, code="OT_REQUEST_NOT_FOUND", message="OT request not found.")
    if parent.status != OTStatus.REJECTED:
        raise ApiError(
            status_code=409,
            code="NOT_RESUBMITTABLE",
            message="Only rejected requests can be resubmitted.",
        )
    already = db.scalar(
        select(OTResubmissionHistory.id).where(OTResubmissionHistory.original_request_id == parent.id)
    )
    if already is not None:
        raise ApiError(status_code=409, code="ALREADY_RESUBMITTED", message="This request was already resubmitted.")

    _validate_common(
        db,
        employee=employee,
        ot_date=payload.ot_date,
        attachment_urls=payload.attachment_urls,
        respective_supervisor_id=payload.respective_supervisor_id,
        now_utc=now_utc,
    )
    _ensure_no_overlap(
        db,
        employee_id=employee.id,
        ot_date=payload.ot_date,
        windows=[(payload.start_time, payload.end_time)],
    )

    request = _build_request(
        db,
        employee=employee,
        ot_date=payload.ot_date,
        start_time=payload.start_time,
        end_time=payload.end_time,
        day_type=payload.day_type or day_type_for(payload.ot_date),
        reason=payload.reason,
        attachment_urls=payload.attachment_urls,
        respective_supervisor_id=payload.respective_supervisor_id,
        rate_calculator=rate_calculator or HoursOnlyRateCalculator(),
        reserved_tickets=set(),
    )
    request.parent_request_id = parent.id
    request.is_resubmission = True
    request.resubmission_count = (parent.resubmission_count or 0) + 1
    db.add(request)
    db.flush()
    db.add(
        OTResubmissionHistory(
            original_request_id=parent.id,
            resubmitted_request_id=request.id,
            rejected_by_role=parent.rejection_stage or AppRole.SUPERVISOR.value,
            rejection_reason=_rejection_reason(parent),
        )
    )
    _record_created(db, [request], actor, "resubmit")
    db.commit()

    logger.info(
        "ot_request_resubmitted",
        extra={
            "employee_id": employee.id,
            "parent_request_id": parent.id,
            "request_id": request.id,
            "resubmission_count": request.resubmission_count,
        },
    )
    dispatch_submission_notifications(db, targets=_targets([request]), actor_id=actor.user_id, now_utc=now_utc)
    log_audit(
        db,
        actor_type=AuditActorType.USER,
        actor_id=str(actor.user_id),
        action="OT_REQUEST_RESUBMITTED",
        success=True,
        entity_type="ot_request",
        entity_id=str(request.id),
        details={"parent_request_id": parent.id},
    )
    return request
