from __future__ import annotations

import logging
from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

from sqlalchemy import and_, or_, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from otms.audit import log_audit
from otms.errors import BatchPartialFailureError, ConcurrentModificationError
from otms.models import AppRole, AuditActorType, OTRequest, OTRequestTransition, OTStatus, RejectionStage
from otms.security import Actor
from otms.services.notifications import NotificationTarget, dispatch_transition_notifications
from otms.services.transitions import TransitionRule, WorkflowAction, resolve_next_status
from otms.services.validation import normalize_request_ids, validate_batch

logger = logging.getLogger("otms.ot_workflow")


@dataclass(frozen=True, slots=True)
class BatchPartition:
    status: OTStatus
    request_ids: list[int]

    def to_dict(self) -> dict[str, Any]:
        return {"status": self.status.value, "request_ids": list(self.request_ids)}


@dataclass(slots=True)
class BatchActionResult:
    affected_ids: list[int] = field(default_factory=list)
    partitions: list[BatchPartition] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "affected_ids": list(self.affected_ids),
            "partitions": [partition.to_dict() for partition in self.partitions],
        }


def _load_requests(db: Session, request_ids: Sequence[int]) -> dict[int, OTRequest]:
    if not request_ids:
        return {}
    stmt = (
        select(OTRequest)
        .where(OTRequest.id.in_(list(request_ids)))
        .execution_options(populate_existing=True)
    )
    return {request.id: request for request in db.scalars(stmt).all()}


def _partition_by_next_status(
    rule: TransitionRule,
    requests: Iterable[OTRequest],
) -> dict[OTStatus, list[OTRequest]]:
    partitions: dict[OTStatus, list[OTRequest]] = {}
    for request in requests:
        partitions.setdefault(resolve_next_status(rule, request), []).append(request)
    return partitions


def _target_for(request: OTRequest) -> NotificationTarget:
    return NotificationTarget(
        request_id=request.id,
        ticket_number=request.ticket_number,
        ot_date=request.ot_date,
        employee_id=request.employee_id,
        supervisor_id=request.supervisor_id,
        respective_supervisor_id=request.respective_supervisor_id,
        version=request.version + 1,
    )


def _apply_partition(
    db: Session,
    *,
    rule: TransitionRule,
    next_status: OTStatus,
    requests: Sequence[OTRequest],
    actor: Actor,
    remarks: str | None,
    rejection_stage: RejectionStage | None,
    now_utc: datetime,
) -> None:
    values: dict[str, Any] = rule.stage_values(next_status, actor.user_id, remarks, now_utc)
    values["status"] = next_status
    values["version"] = OTRequest.version + 1
    values["updated_at"] = now_utc
    if rejection_stage is not None:
        values["rejection_stage"] = rejection_stage.value

    stmt = (
        update(OTRequest)
        .where(or_(*[and_(OTRequest.id == request.id, OTRequest.version == request.version) for request in requests]))
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    expected = [(request.id, request.version, request.status) for request in requests]
    result = db.execute(stmt)
    if result.rowcount != len(requests):
        db.rollback()
        current = _load_requests(db, [request_id for request_id, _, _ in expected])
        stale_ids = [
            request_id
            for request_id, version, _ in expected
            if request_id not in current or current[request_id].version != version
        ]
        raise ConcurrentModificationError(stale_ids or [request_id for request_id, _, _ in expected])

    for request_id, version, from_status in expected:
        db.add(
            OTRequestTransition(
                request_id=request_id,
                action=rule.action.value,
                actor_id=actor.user_id,
                actor_role=rule.role.value,
                from_status=from_status.value,
                to_status=next_status.value,
                remarks=remarks,
                version=version + 1,
                created_at=now_utc,
            )
        )
    db.commit()


def run_batch_action(
    db: Session,
    *,
    actor: Actor,
    role: AppRole,
    action: WorkflowAction,
    request_ids: Iterable[Any],
    remarks: str | None = None,
    rejection_stage: str | RejectionStage | None = None,
    now_utc: datetime | None = None,
) -> BatchActionResult:
    """Apply one action to many requests.

    Nothing is written unless every request passes validation. Requests are
    then grouped by the status they move to and each group is written with a
    single version-checked UPDATE in its own commit. A failure after the first
    group commits raises ``BatchPartialFailureError`` naming what landed.
    """
    ids, input_issues = normalize_request_ids(request_ids)
    requests_by_id = _load_requests(db, ids)
    batch = validate_batch(
        actor=actor,
        role=role,
        action=action,
        request_ids=ids,
        requests_by_id=requests_by_id,
        remarks=remarks,
        rejection_stage=rejection_stage,
        issues=input_issues,
    )

    reference_utc = now_utc or datetime.now(timezone.utc)
    partitions = _partition_by_next_status(batch.rule, batch.requests)
    result = BatchActionResult()

    for next_status, group in partitions.items():
        group_ids = [request.id for request in group]
        targets = [_target_for(request) for request in group]
        try:
            _apply_partition(
                db,
                rule=batch.rule,
                next_status=next_status,
                requests=group,
                actor=actor,
                remarks=batch.remarks,
                rejection_stage=batch.rejection_stage,
                now_utc=reference_utc,
            )
        except (ConcurrentModificationError, SQLAlchemyError) as exc:
            if isinstance(exc, SQLAlchemyError):
                db.rollback()
            logger.warning(
                "ot_batch_partition_failed",
                extra={
                    "actor_id": actor.user_id,
                    "role": role.value,
                    "action": action.value,
                    "status": next_status.value,
                    "request_ids": group_ids,
                    "committed_ids": list(result.affected_ids),
                    "error": str(exc)[:500],
                },
            )
            if not result.partitions:
                raise
            raise BatchPartialFailureError(
                committed=[partition.to_dict() for partition in result.partitions],
                failed={"status": next_status.value, "request_ids": group_ids},
                cause=exc,
            ) from exc

        result.partitions.append(BatchPartition(status=next_status, request_ids=group_ids))
        result.affected_ids.extend(group_ids)
        for request in group:
            db.expire(request)

        dispatch_transition_notifications(
            db,
            rule=batch.rule,
            next_status=next_status,
            targets=targets,
            actor_id=actor.user_id,
            remarks=batch.remarks,
            now_utc=reference_utc,
        )

    logger.info(
        "ot_batch_applied",
        extra={
            "actor_id": actor.user_id,
            "role": role.value,
            "action": action.value,
            "affected_ids": list(result.affected_ids),
            "partitions": [partition.to_dict() for partition in result.partitions],
        },
    )
    for partition in result.partitions:
        for request_id in partition.request_ids:
            log_audit(
                db,
                actor_type=AuditActorType.USER,
                actor_id=str(actor.user_id),
                action=f"OT_{role.value.upper()}_{action.value.upper()}",
                success=True,
                entity_type="ot_request",
                entity_id=str(request_id),
                details={"to_status": partition.status.value, "batch_size": len(result.affected_ids)},
            )
    return result


def approve(
    db: Session,
    *,
    actor: Actor,
    role: AppRole,
    request_ids: Iterable[Any],
    remarks: str | None = None,
) -> BatchActionResult:
    return run_batch_action(
        db,
        actor=actor,
        role=role,
        action=WorkflowAction.APPROVE,
        request_ids=request_ids,
        remarks=remarks,
    )


def reject(
    db: Session,
    *,
    actor: Actor,
    role: AppRole,
    request_ids: Iterable[Any],
    remarks: str | None,
    rejection_stage: str | RejectionStage | None = None,
) -> BatchActionResult:
    return run_batch_action(
        db,
        actor=actor,
        role=role,
        action=WorkflowAction.REJECT,
        request_ids=request_ids,
        remarks=remarks,
        rejection_stage=rejection_stage,
    )


def confirm(
    db: Session,
    *,
    actor: Actor,
    request_ids: Iterable[Any],
    remarks: str | None = None,
) -> BatchActionResult:
    return run_batch_action(
        db,
        actor=actor,
        role=AppRole.SUPERVISOR,
        action=WorkflowAction.CONFIRM,
        request_ids=request_ids,
        remarks=remarks,
    )


def request_respective_supervisor_confirmation(
    db: Session,
    *,
    actor: Actor,
    request_ids: Iterable[Any],
    remarks: str | None = None,
) -> BatchActionResult:
    return run_batch_action(
        db,
        actor=actor,
        role=AppRole.SUPERVISOR,
        action=WorkflowAction.REQUEST_RESPECTIVE_CONFIRMATION,
        request_ids=request_ids,
        remarks=remarks,
    )


def confirm_respective_supervisor(
    db: Session,
    *,
    actor: Actor,
    request_ids: Iterable[Any],
    remarks: str | None = None,
) -> BatchActionResult:
    return run_batch_action(
        db,
        actor=actor,
        role=AppRole.SUPERVISOR,
        action=WorkflowAction.CONFIRM_RESPECTIVE,
        request_ids=request_ids,
        remarks=remarks,
    )


def deny_respective_supervisor(
    db: Session,
    *,
    actor: Actor,
    request_ids: Iterable[Any],
    remarks: str | None,
) -> BatchActionResult:
    return run_batch_action(
        db,
        actor=actor,
        role=AppRole.SUPERVISOR,
        action=WorkflowAction.DENY_RESPECTIVE,
        request_ids=request_ids,
        remarks=remarks,
    )


def revise_denied_request(
    db: Session,
    *,
    actor: Actor,
    request_ids: Iterable[Any],
    remarks: str | None = None,
) -> BatchActionResult:
    return run_batch_action(
        db,
        actor=actor,
        role=AppRole.SUPERVISOR,
        action=WorkflowAction.REVISE_DENIED,
        request_ids=request_ids,
        remarks=remarks,
    )
