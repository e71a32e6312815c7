import logging

from fastapi import APIRouter, BackgroundTasks, Depends, Query, Request, status
from sqlalchemy import select
from sqlalchemy.orm import Session

from otms.db import get_db
from otms.models import AppRole, OTRequest, OTRequestTransition
from otms.schemas import (
    AllowedActionsResponse,
    BatchActionRequest,
    BatchActionResponse,
    GroupedOTRequestRead,
    OTRequestRead,
    OTRequestTransitionRead,
    OTResubmissionCreate,
    OTSubmissionCreate,
    RejectActionRequest,
    RoleActionRequest,
)
from otms.security import Actor, require_actor
from otms.services.notifications import send_pending_notifications
from otms.services.ot_queries import get_request_for_actor, list_request_rows, group_ot_requests
from otms.services.ot_workflow import (
    BatchActionResult,
    approve,
    confirm,
    confirm_respective_supervisor,
    deny_respective_supervisor,
    reject,
    request_respective_supervisor_confirmation,
    revise_denied_request,
)
from otms.services.submission import resubmit_ot_request, submit_ot_request
from otms.services.transitions import allowed_actions_for_request, allowed_actions_table

router = APIRouter(prefix="/api/ot-requests", tags=["ot-requests"])
logger = logging.getLogger("otms.routers.ot_requests")


def deliver_pending_notifications() -> None:
    try:
        send_pending_notifications()
    except Exception:
        logger.exception("notification_delivery_pass_failed")


def _batch_response(
    request: Request,
    background_tasks: BackgroundTasks,
    result: BatchActionResult,
) -> BatchActionResponse:
    request.state.affected_ids = list(result.affected_ids)
    background_tasks.add_task(deliver_pending_notifications)
    return BatchActionResponse.model_validate(result)


@router.post("", response_model=list[OTRequestRead], status_code=status.HTTP_201_CREATED)
def submit_request(
    payload: OTSubmissionCreate,
    request: Request,
    background_tasks: BackgroundTasks,
    actor: Actor = Depends(require_actor),
    db: Session = Depends(get_db),
) -> list[OTRequest]:
    created = submit_ot_request(db, actor=actor, payload=payload)
    request.state.affected_ids = [item.id for item in created]
    background_tasks.add_task(deliver_pending_notifications)
    return created


@router.post("/{request_id}/resubmit", response_model=OTRequestRead, status_code=status.HTTP_201_CREATED)
def resubmit_request(
    request_id: int,
    payload: OTResubmissionCreate,
    background_tasks: BackgroundTasks,
    actor: Actor = Depends(require_actor),
    db: Session = Depends(get_db),
) -> OTRequest:
    created = resubmit_ot_request(db, actor=actor, parent_request_id=request_id, payload=payload)
    background_tasks.add_task(deliver_pending_notifications)
    return created


@router.get("", response_model=list[GroupedOTRequestRead])
def list_ot_requests(
    role: AppRole = Query(...),
    status_filter: str | None = Query(default=None, alias="status"),
    actor: Actor = Depends(require_actor),
    db: Session = Depends(get_db),
) -> list[GroupedOTRequestRead]:
    rows = list_request_rows(db, actor=actor, role=role, status_filter=status_filter)
    rows_by_id = {row.id: row for row in rows}
    acting_roles = {role}
    response: list[GroupedOTRequestRead] = []
    for group in group_ot_requests(rows):
        item = GroupedOTRequestRead.model_validate(group)
        for session_item in item.sessions:
            session_item.allowed_actions = [
                action.value
                for action in allowed_actions_for_request(
                    rows_by_id[session_item.request_id],
                    actor_id=actor.user_id,
                    roles=acting_roles,
                )
            ]
        response.append(item)
    return response


@router.get("/allowed-actions", response_model=AllowedActionsResponse)
def get_allowed_actions(_actor: Actor = Depends(require_actor)) -> AllowedActionsResponse:
    return AllowedActionsResponse(rules=allowed_actions_table())


@router.get("/{request_id}", response_model=OTRequestRead)
def get_ot_request(
    request_id: int,
    actor: Actor = Depends(require_actor),
    db: Session = Depends(get_db),
) -> OTRequest:
    return get_request_for_actor(db, actor=actor, request_id=request_id)


@router.get("/{request_id}/transitions", response_model=list[OTRequestTransitionRead])
def get_ot_request_transitions(
    request_id: int,
    actor: Actor = Depends(require_actor),
    db: Session = Depends(get_db),
) -> list[OTRequestTransition]:
    get_request_for_actor(db, actor=actor, request_id=request_id)
    stmt = (
        select(OTRequestTransition)
        .where(OTRequestTransition.request_id == request_id)
        .order_by(OTRequestTransition.id.asc())
    )
    return list(db.scalars(stmt).all())


@router.post("/actions/approve", response_model=BatchActionResponse)
def approve_requests(
    payload: RoleActionRequest,
    request: Request,
    background_tasks: BackgroundTasks,
    actor: Actor = Depends(require_actor),
    db: Session = Depends(get_db),
) -> BatchActionResponse:
    result = approve(db, actor=actor, role=payload.role, request_ids=payload.request_ids, remarks=payload.remarks)
    return _batch_response(request, background_tasks, result)


@router.post("/actions/reject", response_model=BatchActionResponse)
def reject_requests(
    payload: RejectActionRequest,
    request: Request,
    background_tasks: BackgroundTasks,
    actor: Actor = Depends(require_actor),
    db: Session = Depends(get_db),
) -> BatchActionResponse:
    result = reject(
        db,
        actor=actor,
        role=payload.role,
        request_ids=payload.request_ids,
        remarks=payload.remarks,
        rejection_stage=payload.rejection_stage,
    )
    return _batch_response(request, background_tasks, result)


@router.post("/actions/confirm", response_model=BatchActionResponse)
def confirm_requests(
    payload: BatchActionRequest,
    request: Request,
    background_tasks: BackgroundTasks,
    actor: Actor = Depends(require_actor),
    db: Session = Depends(get_db),
) -> BatchActionResponse:
    result = confirm(db, actor=actor, request_ids=payload.request_ids, remarks=payload.remarks)
    return _batch_response(request, background_tasks, result)


@router.post("/actions/request-respective-confirmation", response_model=BatchActionResponse)
def request_respective_confirmation(
    payload: BatchActionRequest,
    request: Request,
    background_tasks: BackgroundTasks,
    actor: Actor = Depends(require_actor),
    db: Session = Depends(get_db),
) -> BatchActionResponse:
    result = request_respective_supervisor_confirmation(
        db,
        actor=actor,
        request_ids=payload.request_ids,
        remarks=payload.remarks,
    )
    return _batch_response(request, background_tasks, result)


@router.post("/actions/confirm-respective", response_model=BatchActionResponse)
def confirm_respective_requests(
    payload: BatchActionRequest,
    request: Request,
    background_tasks: BackgroundTasks,
    actor: Actor = Depends(require_actor),
    db: Session = Depends(get_db),
) -> BatchActionResponse:
    result = confirm_respective_supervisor(db, actor=actor, request_ids=payload.request_ids, remarks=payload.remarks)
    return _batch_response(request, background_tasks, result)


@router.post("/actions/deny-respective", response_model=BatchActionResponse)
def deny_respective_requests(
    payload: BatchActionRequest,
    request: Request,
    background_tasks: BackgroundTasks,
    actor: Actor = Depends(require_actor),
    db: Session = Depends(get_db),
) -> BatchActionResponse:
    result = deny_respective_supervisor(db, actor=actor, request_ids=payload.request_ids, remarks=payload.remarks)
    return _batch_response(request, background_tasks, result)


@router.post("/actions/revise-denied", response_model=BatchActionResponse)
def revise_denied_requests(
    payload: BatchActionRequest,
    request: Request,
    background_tasks: BackgroundTasks,
    actor: Actor = Depends(require_actor),
    db: Session = Depends(get_db),
) -> BatchActionResponse:
    result = revise_denied_request(db, actor=actor, request_ids=payload.request_ids, remarks=payload.remarks)
    return _batch_response(request, background_tasks, result)
