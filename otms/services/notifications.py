from __future__ import annotations

import enum
import logging
import smtplib
from collections.abc import Iterable, Sequence
from dataclasses import dataclass
from datetime import date, datetime, timedelta, timezone
from email.message import EmailMessage
from typing import Any, Protocol

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from otms.audit import log_audit
from otms.db import SessionLocal
from otms.models import AppRole, AuditActorType, NotificationJob, OTStatus, Profile, UserRole
from otms.services.transitions import TransitionRule, WorkflowAction
from otms.settings import get_settings

MAX_NOTIFICATION_ATTEMPTS = 5

logger = logging.getLogger("otms.notifications")


class NotificationKind(str, enum.Enum):
    SUBMISSION = "submission"
    VERIFICATION_PENDING = "verification-pending"
    READY_FOR_CERTIFICATION = "ready-for-certification"
    READY_FOR_APPROVAL = "ready-for-approval"
    APPROVED = "approved"
    REJECTED = "rejected"
    CONFIRMATION_REQUESTED = "confirmation-requested"
    CONFIRMED = "confirmed"
    DENIED = "denied"


@dataclass(frozen=True, slots=True)
class NotificationTarget:
    """Routing fields of one request, captured before its row is rewritten."""

    request_id: int
    ticket_number: str
    ot_date: date
    employee_id: int
    supervisor_id: int | None
    respective_supervisor_id: int | None
    version: int


class NotificationChannel(Protocol):
    def notify(self, recipient_id: int, kind: str, payload: dict[str, Any]) -> dict[str, Any]:
        ...


class LoggingNotificationChannel:
    def notify(self, recipient_id: int, kind: str, payload: dict[str, Any]) -> dict[str, Any]:
        logger.info(
            "notification_delivered",
            extra={
                "recipient_id": recipient_id,
                "kind": kind,
                "ot_request_id": payload.get("request_id"),
            },
        )
        return {"mode": "logged", "sent": 1}


class EmailNotificationChannel:
    def __init__(self) -> None:
        settings = get_settings()
        self.smtp_host = (settings.smtp_host or "").strip()
        self.smtp_port = settings.smtp_port
        self.smtp_user = (settings.smtp_username or "").strip()
        self.smtp_pass = settings.smtp_password or ""
        self.smtp_from = (settings.smtp_from_email or "").strip()
        self.smtp_use_tls = settings.smtp_use_tls
        self.configured = bool(self.smtp_host and self.smtp_from)

    def notify(self, recipient_id: int, kind: str, payload: dict[str, Any]) -> dict[str, Any]:
        if not self.configured:
            raise RuntimeError("SMTP is not configured")
        recipient_email = (payload.get("recipient_email") or "").strip()
        if not recipient_email:
            raise RuntimeError(f"Recipient {recipient_id} has no email address")

        message = EmailMessage()
        message["From"] = self.smtp_from
        message["To"] = recipient_email
        message["Subject"] = _email_subject(kind, payload)
        message.set_content(_email_body(kind, payload))

        with smtplib.SMTP(self.smtp_host, self.smtp_port, timeout=15) as smtp_client:
            if self.smtp_use_tls:
                smtp_client.starttls()
            if self.smtp_user:
                smtp_client.login(self.smtp_user, self.smtp_pass)
            smtp_client.send_message(message)
        return {"mode": "sent", "sent": 1}


def _email_subject(kind: str, payload: dict[str, Any]) -> str:
    ticket = payload.get("ticket_number") or f"#{payload.get('request_id')}"
    return f"OT {ticket}: {kind.replace('-', ' ')}"


def _email_body(kind: str, payload: dict[str, Any]) -> str:
    lines = [
        f"Overtime request {payload.get('ticket_number') or payload.get('request_id')}",
        f"OT date: {payload.get('ot_date') or '-'}",
        f"Status: {payload.get('status') or '-'}",
        f"Event: {kind}",
    ]
    if payload.get("remarks"):
        lines.append(f"Remarks: {payload['remarks']}")
    return "\n".join(lines)


def get_notification_channel() -> NotificationChannel:
    if get_settings().notification_email_enabled:
        return EmailNotificationChannel()
    return LoggingNotificationChannel()


def _role_holders(session: Session, role: AppRole) -> list[int]:
    stmt = (
        select(UserRole.user_id)
        .join(Profile, Profile.id == UserRole.user_id)
        .where(UserRole.role == role, Profile.is_active.is_(True))
        .order_by(UserRole.user_id.asc())
    )
    return list(session.scalars(stmt).all())


def _role_pairs(session: Session, role: AppRole, kind: NotificationKind) -> list[tuple[int | None, NotificationKind]]:
    return [(user_id, kind) for user_id in _role_holders(session, role)]


def resolve_transition_recipients(
    session: Session,
    *,
    rule: TransitionRule,
    next_status: OTStatus,
    target: NotificationTarget,
) -> list[tuple[int, NotificationKind]]:
    """Who hears about one request moving to ``next_status`` and with which kind."""
    pairs: list[tuple[int | None, NotificationKind]] = []
    employee = target.employee_id
    supervisor = target.supervisor_id
    respective = target.respective_supervisor_id
    action = rule.action

    if action == WorkflowAction.REJECT:
        pairs.append((employee, NotificationKind.REJECTED))
        if rule.role == AppRole.HR:
            if next_status == OTStatus.PENDING_RESPECTIVE_SUPERVISOR_CONFIRMATION:
                pairs.append((respective, NotificationKind.CONFIRMATION_REQUESTED))
            else:
                pairs.append((supervisor, NotificationKind.VERIFICATION_PENDING))
        elif rule.role == AppRole.MANAGEMENT:
            pairs.extend(_role_pairs(session, AppRole.HR, NotificationKind.READY_FOR_CERTIFICATION))
    elif rule.role == AppRole.SUPERVISOR and action == WorkflowAction.APPROVE:
        if next_status == OTStatus.PENDING_SUPERVISOR_CONFIRMATION:
            pairs.append((employee, NotificationKind.VERIFICATION_PENDING))
        else:
            pairs.extend(_role_pairs(session, AppRole.HR, NotificationKind.READY_FOR_CERTIFICATION))
            pairs.append((employee, NotificationKind.APPROVED))
    elif action in {WorkflowAction.REQUEST_RESPECTIVE_CONFIRMATION, WorkflowAction.REVISE_DENIED}:
        pairs.append((respective, NotificationKind.CONFIRMATION_REQUESTED))
    elif action == WorkflowAction.CONFIRM_RESPECTIVE:
        pairs.append((supervisor, NotificationKind.CONFIRMED))
        pairs.append((employee, NotificationKind.CONFIRMED))
    elif action == WorkflowAction.DENY_RESPECTIVE:
        pairs.append((employee, NotificationKind.DENIED))
        pairs.append((supervisor, NotificationKind.DENIED))
    elif action == WorkflowAction.CONFIRM:
        pairs.append((employee, NotificationKind.APPROVED))
        pairs.extend(_role_pairs(session, AppRole.HR, NotificationKind.READY_FOR_CERTIFICATION))
        if next_status == OTStatus.SUPERVISOR_VERIFIED:
            pairs.append((respective, NotificationKind.CONFIRMED))
    elif rule.role == AppRole.HR and action == WorkflowAction.APPROVE:
        pairs.extend(_role_pairs(session, AppRole.MANAGEMENT, NotificationKind.READY_FOR_APPROVAL))
        pairs.append((employee, NotificationKind.APPROVED))
    elif rule.role == AppRole.MANAGEMENT and action == WorkflowAction.APPROVE:
        pairs.append((employee, NotificationKind.APPROVED))

    return _dedupe_recipients(pairs)


def resolve_submission_recipients(target: NotificationTarget) -> list[tuple[int, NotificationKind]]:
    return _dedupe_recipients(
        [
            (target.respective_supervisor_id, NotificationKind.SUBMISSION),
            (target.supervisor_id, NotificationKind.SUBMISSION),
        ]
    )


def _dedupe_recipients(pairs: Iterable[tuple[int | None, NotificationKind]]) -> list[tuple[int, NotificationKind]]:
    seen: list[tuple[int, NotificationKind]] = []
    for recipient_id, kind in pairs:
        if recipient_id is None:
            continue
        if (recipient_id, kind) not in seen:
            seen.append((recipient_id, kind))
    return seen


def build_idempotency_key(*, kind: NotificationKind, request_id: int, recipient_id: int, version: int) -> str:
    return f"{kind.value}:{request_id}:{recipient_id}:{version}"


def _job_exists(session: Session, *, idempotency_key: str) -> bool:
    existing = session.scalar(select(NotificationJob.id).where(NotificationJob.idempotency_key == idempotency_key))
    return existing is not None


def _build_payload(
    session: Session,
    *,
    target: NotificationTarget,
    recipient_id: int,
    status: OTStatus,
    action: str,
    actor_id: int | None,
    remarks: str | None,
) -> dict[str, Any]:
    payload: dict[str, Any] = {
        "request_id": target.request_id,
        "ticket_number": target.ticket_number,
        "ot_date": target.ot_date.isoformat(),
        "employee_id": target.employee_id,
        "status": status.value,
        "action": action,
    }
    if actor_id is not None:
        payload["actor_id"] = actor_id
    if remarks:
        payload["remarks"] = remarks
    recipient = session.get(Profile, recipient_id)
    if recipient is not None and recipient.email:
        payload["recipient_email"] = recipient.email
    return payload


def enqueue_notifications(
    session: Session,
    *,
    target: NotificationTarget,
    recipients: Sequence[tuple[int, NotificationKind]],
    status: OTStatus,
    action: str,
    actor_id: int | None = None,
    remarks: str | None = None,
    now_utc: datetime | None = None,
) -> list[NotificationJob]:
    """Write outbox rows, one savepoint each; a failed row is logged and skipped."""
    scheduled_at = now_utc or datetime.now(timezone.utc)
    created: list[NotificationJob] = []
    for recipient_id, kind in recipients:
        idempotency_key = build_idempotency_key(
            kind=kind,
            request_id=target.request_id,
            recipient_id=recipient_id,
            version=target.version,
        )
        try:
            with session.begin_nested():
                if _job_exists(session, idempotency_key=idempotency_key):
                    continue
                job = NotificationJob(
                    recipient_id=recipient_id,
                    request_id=target.request_id,
                    kind=kind.value,
                    payload=_build_payload(
                        session,
                        target=target,
                        recipient_id=recipient_id,
                        status=status,
                        action=action,
                        actor_id=actor_id,
                        remarks=remarks,
                    ),
                    scheduled_at_utc=scheduled_at,
                    status="PENDING",
                    attempts=0,
                    idempotency_key=idempotency_key,
                )
                session.add(job)
                session.flush()
            created.append(job)
        except Exception:
            logger.exception(
                "notification_enqueue_failed",
                extra={
                    "ot_request_id": target.request_id,
                    "recipient_id": recipient_id,
                    "kind": kind.value,
                },
            )

    try:
        session.commit()
    except Exception:
        session.rollback()
        logger.exception(
            "notification_enqueue_commit_failed",
            extra={"ot_request_id": target.request_id, "job_count": len(created)},
        )
        return []
    return created


def dispatch_transition_notifications(
    session: Session,
    *,
    rule: TransitionRule,
    next_status: OTStatus,
    targets: Sequence[NotificationTarget],
    actor_id: int,
    remarks: str | None,
    now_utc: datetime | None = None,
) -> list[NotificationJob]:
    jobs: list[NotificationJob] = []
    for target in targets:
        try:
            recipients = resolve_transition_recipients(session, rule=rule, next_status=next_status, target=target)
        except Exception:
            session.rollback()
            logger.exception(
                "notification_recipient_lookup_failed",
                extra={"ot_request_id": target.request_id, "action": rule.action.value},
            )
            continue
        jobs.extend(
            enqueue_notifications(
                session,
                target=target,
                recipients=recipients,
                status=next_status,
                action=f"{rule.role.value}:{rule.action.value}",
                actor_id=actor_id,
                remarks=remarks,
                now_utc=now_utc,
            )
        )
    return jobs


def dispatch_submission_notifications(
    session: Session,
    *,
    targets: Sequence[NotificationTarget],
    actor_id: int,
    now_utc: datetime | None = None,
) -> list[NotificationJob]:
    jobs: list[NotificationJob] = []
    for target in targets:
        jobs.extend(
            enqueue_notifications(
                session,
                target=target,
                recipients=resolve_submission_recipients(target),
                status=OTStatus.PENDING_VERIFICATION,
                action="employee:submit",
                actor_id=actor_id,
                now_utc=now_utc,
            )
        )
    return jobs


def _normalize_ts(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _claim_due_pending_jobs(
    session: Session,
    *,
    now_utc: datetime,
    limit: int,
) -> list[NotificationJob]:
    stmt = (
        select(NotificationJob)
        .where(
            NotificationJob.status == "PENDING",
            NotificationJob.scheduled_at_utc <= now_utc,
        )
        .order_by(NotificationJob.scheduled_at_utc.asc(), NotificationJob.id.asc())
        .limit(limit)
        .with_for_update(skip_locked=True)
    )
    jobs = list(session.scalars(stmt).all())
    for job in jobs:
        job.status = "SENDING"
    session.commit()
    return jobs


def _mark_job_sent(
    session: Session,
    *,
    job_id: int,
    delivery_details: dict[str, Any] | None = None,
) -> NotificationJob | None:
    job = session.get(NotificationJob, job_id)
    if job is None:
        return None
    if delivery_details:
        payload = dict(job.payload) if isinstance(job.payload, dict) else {}
        payload["delivery"] = delivery_details
        job.payload = payload
    job.status = "SENT"
    job.last_error = None
    session.commit()
    session.refresh(job)
    return job


def _mark_job_failure(
    session: Session,
    *,
    job_id: int,
    error: Exception,
    now_utc: datetime,
) -> NotificationJob | None:
    job = session.get(NotificationJob, job_id)
    if job is None:
        return None

    max_attempts = get_settings().notification_max_attempts or MAX_NOTIFICATION_ATTEMPTS
    next_attempts = (job.attempts or 0) + 1
    job.attempts = next_attempts
    job.last_error = str(error)[:4000]
    if next_attempts < max_attempts:
        job.status = "PENDING"
        job.scheduled_at_utc = now_utc + timedelta(minutes=2**next_attempts)
    else:
        job.status = "FAILED"

    session.commit()
    session.refresh(job)
    return job


def send_pending_notifications(
    limit: int = 100,
    *,
    now_utc: datetime | None = None,
    db: Session | None = None,
    channel: NotificationChannel | None = None,
) -> list[NotificationJob]:
    if db is None:
        with SessionLocal() as managed_db:
            return send_pending_notifications(
                limit=limit,
                now_utc=now_utc,
                db=managed_db,
                channel=channel,
            )

    session = db
    reference_utc = _normalize_ts(now_utc or datetime.now(timezone.utc))
    delivery_channel = channel or get_notification_channel()

    claimed_jobs = _claim_due_pending_jobs(session, now_utc=reference_utc, limit=max(1, limit))
    if not claimed_jobs:
        return []

    processed: list[NotificationJob] = []
    for claimed in claimed_jobs:
        try:
            payload = dict(claimed.payload) if isinstance(claimed.payload, dict) else {}
            result = delivery_channel.notify(claimed.recipient_id, claimed.kind, payload)
            sent_job = _mark_job_sent(
                session,
                job_id=claimed.id,
                delivery_details={"mode": str((result or {}).get("mode") or "unknown")},
            )
            if sent_job is not None:
                processed.append(sent_job)
        except Exception as exc:
            session.rollback()
            logger.warning(
                "notification_delivery_failed",
                extra={
                    "job_id": claimed.id,
                    "kind": claimed.kind,
                    "recipient_id": claimed.recipient_id,
                    "error": str(exc)[:500],
                },
            )
            failed_job = _mark_job_failure(session, job_id=claimed.id, error=exc, now_utc=reference_utc)
            if failed_job is None:
                continue
            processed.append(failed_job)
            if failed_job.status == "FAILED":
                log_audit(
                    session,
                    actor_type=AuditActorType.SYSTEM,
                    actor_id="notification_runner",
                    action="NOTIFICATION_JOB_DEAD_LETTERED",
                    success=False,
                    entity_type="notification_job",
                    entity_id=str(failed_job.id),
                    details={
                        "kind": failed_job.kind,
                        "recipient_id": failed_job.recipient_id,
                        "attempts": failed_job.attempts,
                        "error": failed_job.last_error,
                    },
                )

    return processed


def get_notification_queue_health(session: Session) -> dict[str, int]:
    counts: dict[str, int] = {"PENDING": 0, "SENDING": 0, "SENT": 0, "FAILED": 0}
    rows = session.execute(
        select(NotificationJob.status, func.count(NotificationJob.id)).group_by(NotificationJob.status)
    ).all()
    for status, count in rows:
        counts[status] = int(count)
    return counts
