"""Overtime workflow state machine.

Every permitted move is one ``TransitionRule`` keyed by ``(role, action)``.
The rule names the statuses it may start from, which request field must hold
the acting user, how remarks are checked, and how the next status is derived
from the request itself. Both the validator and the batch processor read from
this table, and ``allowed_actions`` exposes it to the UI.
"""

from __future__ import annotations

import enum
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any

from otms.models import AppRole, OTRequest, OTStatus, RejectionStage


class WorkflowAction(str, enum.Enum):
    APPROVE = "approve"
    REJECT = "reject"
    CONFIRM = "confirm"
    REQUEST_RESPECTIVE_CONFIRMATION = "request_respective_confirmation"
    CONFIRM_RESPECTIVE = "confirm_respective"
    DENY_RESPECTIVE = "deny_respective"
    REVISE_DENIED = "revise_denied"


class ActorRelationship(str, enum.Enum):
    DIRECT_SUPERVISOR = "supervisor_id"
    RESPECTIVE_SUPERVISOR = "respective_supervisor_id"
    ANY = "any"


class RemarksPolicy(str, enum.Enum):
    OPTIONAL = "optional"
    REQUIRED = "required"
    DENIAL = "denial"


StageValuesBuilder = Callable[[OTStatus, int, "str | None", datetime], dict[str, Any]]


@dataclass(frozen=True, slots=True)
class TransitionRule:
    role: AppRole
    action: WorkflowAction
    source_statuses: frozenset[OTStatus]
    relationship: ActorRelationship
    remarks_policy: RemarksPolicy
    next_status: Callable[[OTRequest], OTStatus]
    stage_values: StageValuesBuilder
    requires_respective_supervisor: bool = False
    rejects_legacy: bool = False
    default_rejection_stage: RejectionStage | None = None

    @property
    def key(self) -> tuple[AppRole, WorkflowAction]:
        return (self.role, self.action)


def _normalize_ts(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def is_legacy_request(request: OTRequest) -> bool:
    """Verified before the confirmation sub-step existed."""
    return request.status == OTStatus.SUPERVISOR_VERIFIED and request.supervisor_confirmation_at is None


def respective_supervisor_has_confirmed(request: OTRequest) -> bool:
    if not request.has_respective_supervisor or request.respective_supervisor_confirmed_at is None:
        return False
    if request.respective_supervisor_denied_at is None:
        return True
    # A denial newer than the last confirmation voids it until the next confirm.
    return _normalize_ts(request.respective_supervisor_confirmed_at) >= _normalize_ts(
        request.respective_supervisor_denied_at
    )


def _constant(status: OTStatus) -> Callable[[OTRequest], OTStatus]:
    def _resolve(_request: OTRequest) -> OTStatus:
        return status

    return _resolve


def _supervisor_approve_next(request: OTRequest) -> OTStatus:
    if not request.has_respective_supervisor:
        return OTStatus.SUPERVISOR_CONFIRMED
    return OTStatus.PENDING_SUPERVISOR_CONFIRMATION


def _supervisor_confirm_next(request: OTRequest) -> OTStatus:
    if respective_supervisor_has_confirmed(request):
        return OTStatus.SUPERVISOR_VERIFIED
    return OTStatus.SUPERVISOR_CONFIRMED


def _hr_send_back_next(request: OTRequest) -> OTStatus:
    if not request.has_respective_supervisor:
        return OTStatus.PENDING_VERIFICATION
    return OTStatus.PENDING_RESPECTIVE_SUPERVISOR_CONFIRMATION


def _supervisor_approve_values(next_status: OTStatus, actor_id: int, remarks: str | None, now: datetime) -> dict[str, Any]:
    values: dict[str, Any] = {
        "supervisor_verified_at": now,
        "supervisor_remarks": remarks,
    }
    if next_status == OTStatus.SUPERVISOR_CONFIRMED:
        # Route A folds confirmation into the single approval step.
        values["supervisor_confirmation_at"] = now
        values["supervisor_confirmation_remarks"] = remarks
    return values


def _supervisor_confirm_values(_next: OTStatus, _actor_id: int, remarks: str | None, now: datetime) -> dict[str, Any]:
    return {
        "supervisor_confirmation_at": now,
        "supervisor_confirmation_remarks": remarks,
    }


def _no_stage_values(_next: OTStatus, _actor_id: int, _remarks: str | None, _now: datetime) -> dict[str, Any]:
    return {}


def _respective_confirm_values(_next: OTStatus, _actor_id: int, remarks: str | None, now: datetime) -> dict[str, Any]:
    return {
        "respective_supervisor_confirmed_at": now,
        "respective_supervisor_remarks": remarks,
    }


def _respective_deny_values(_next: OTStatus, _actor_id: int, remarks: str | None, now: datetime) -> dict[str, Any]:
    return {
        "respective_supervisor_denied_at": now,
        "respective_supervisor_denial_remarks": remarks,
    }


def _revise_values(_next: OTStatus, _actor_id: int, remarks: str | None, now: datetime) -> dict[str, Any]:
    return {
        "supervisor_revised_at": now,
        "supervisor_revision_remarks": remarks,
    }


def _supervisor_reject_values(_next: OTStatus, _actor_id: int, remarks: str | None, _now: datetime) -> dict[str, Any]:
    return {"supervisor_remarks": remarks}


def _hr_certify_values(_next: OTStatus, actor_id: int, remarks: str | None, now: datetime) -> dict[str, Any]:
    return {
        "hr_approved_at": now,
        "hr_id": actor_id,
        "hr_remarks": remarks,
    }


def _hr_send_back_values(_next: OTStatus, actor_id: int, remarks: str | None, _now: datetime) -> dict[str, Any]:
    return {
        "hr_id": actor_id,
        "hr_remarks": remarks,
    }


def _management_review_values(_next: OTStatus, actor_id: int, remarks: str | None, now: datetime) -> dict[str, Any]:
    return {
        "management_reviewed_at": now,
        "management_id": actor_id,
        "management_remarks": remarks,
    }


HR_REVIEWABLE_STATUSES: frozenset[OTStatus] = frozenset(
    {
        OTStatus.SUPERVISOR_CONFIRMED,
        OTStatus.SUPERVISOR_VERIFIED,
        OTStatus.RESPECTIVE_SUPERVISOR_CONFIRMED,
        OTStatus.PENDING_HR_RECERTIFICATION,
    }
)

TRANSITION_RULES: tuple[TransitionRule, ...] = (
    TransitionRule(
        role=AppRole.SUPERVISOR,
        action=WorkflowAction.APPROVE,
        source_statuses=frozenset({OTStatus.PENDING_VERIFICATION}),
        relationship=ActorRelationship.DIRECT_SUPERVISOR,
        remarks_policy=RemarksPolicy.OPTIONAL,
        next_status=_supervisor_approve_next,
        stage_values=_supervisor_approve_values,
    ),
    TransitionRule(
        role=AppRole.SUPERVISOR,
        action=WorkflowAction.CONFIRM,
        source_statuses=frozenset({OTStatus.PENDING_SUPERVISOR_CONFIRMATION}),
        relationship=ActorRelationship.DIRECT_SUPERVISOR,
        remarks_policy=RemarksPolicy.OPTIONAL,
        next_status=_supervisor_confirm_next,
        stage_values=_supervisor_confirm_values,
        rejects_legacy=True,
    ),
    TransitionRule(
        role=AppRole.SUPERVISOR,
        action=WorkflowAction.REQUEST_RESPECTIVE_CONFIRMATION,
        source_statuses=frozenset({OTStatus.PENDING_SUPERVISOR_CONFIRMATION}),
        relationship=ActorRelationship.DIRECT_SUPERVISOR,
        remarks_policy=RemarksPolicy.OPTIONAL,
        next_status=_constant(OTStatus.PENDING_RESPECTIVE_SUPERVISOR_CONFIRMATION),
        stage_values=_no_stage_values,
        requires_respective_supervisor=True,
    ),
    TransitionRule(
        role=AppRole.SUPERVISOR,
        action=WorkflowAction.CONFIRM_RESPECTIVE,
        source_statuses=frozenset({OTStatus.PENDING_RESPECTIVE_SUPERVISOR_CONFIRMATION}),
        relationship=ActorRelationship.RESPECTIVE_SUPERVISOR,
        remarks_policy=RemarksPolicy.OPTIONAL,
        next_status=_constant(OTStatus.PENDING_SUPERVISOR_CONFIRMATION),
        stage_values=_respective_confirm_values,
        requires_respective_supervisor=True,
        rejects_legacy=True,
    ),
    TransitionRule(
        role=AppRole.SUPERVISOR,
        action=WorkflowAction.DENY_RESPECTIVE,
        source_statuses=frozenset({OTStatus.PENDING_RESPECTIVE_SUPERVISOR_CONFIRMATION}),
        relationship=ActorRelationship.RESPECTIVE_SUPERVISOR,
        remarks_policy=RemarksPolicy.DENIAL,
        next_status=_constant(OTStatus.PENDING_SUPERVISOR_REVIEW),
        stage_values=_respective_deny_values,
        requires_respective_supervisor=True,
        rejects_legacy=True,
        default_rejection_stage=RejectionStage.RESPECTIVE_SUPERVISOR,
    ),
    TransitionRule(
        role=AppRole.SUPERVISOR,
        action=WorkflowAction.REVISE_DENIED,
        source_statuses=frozenset({OTStatus.PENDING_SUPERVISOR_REVIEW}),
        relationship=ActorRelationship.DIRECT_SUPERVISOR,
        remarks_policy=RemarksPolicy.OPTIONAL,
        next_status=_constant(OTStatus.PENDING_RESPECTIVE_SUPERVISOR_CONFIRMATION),
        stage_values=_revise_values,
        requires_respective_supervisor=True,
    ),
    TransitionRule(
        role=AppRole.SUPERVISOR,
        action=WorkflowAction.REJECT,
        source_statuses=frozenset(
            {
                OTStatus.PENDING_VERIFICATION,
                OTStatus.PENDING_SUPERVISOR_CONFIRMATION,
                OTStatus.PENDING_SUPERVISOR_REVIEW,
            }
        ),
        relationship=ActorRelationship.DIRECT_SUPERVISOR,
        remarks_policy=RemarksPolicy.REQUIRED,
        next_status=_constant(OTStatus.REJECTED),
        stage_values=_supervisor_reject_values,
        default_rejection_stage=RejectionStage.SUPERVISOR,
    ),
    TransitionRule(
        role=AppRole.HR,
        action=WorkflowAction.APPROVE,
        source_statuses=HR_REVIEWABLE_STATUSES,
        relationship=ActorRelationship.ANY,
        remarks_policy=RemarksPolicy.OPTIONAL,
        next_status=_constant(OTStatus.HR_CERTIFIED),
        stage_values=_hr_certify_values,
    ),
    TransitionRule(
        role=AppRole.HR,
        action=WorkflowAction.REJECT,
        source_statuses=HR_REVIEWABLE_STATUSES,
        relationship=ActorRelationship.ANY,
        remarks_policy=RemarksPolicy.REQUIRED,
        next_status=_hr_send_back_next,
        stage_values=_hr_send_back_values,
        default_rejection_stage=RejectionStage.HR,
    ),
    TransitionRule(
        role=AppRole.MANAGEMENT,
        action=WorkflowAction.APPROVE,
        source_statuses=frozenset({OTStatus.HR_CERTIFIED}),
        relationship=ActorRelationship.ANY,
        remarks_policy=RemarksPolicy.OPTIONAL,
        next_status=_constant(OTStatus.MANAGEMENT_APPROVED),
        stage_values=_management_review_values,
    ),
    TransitionRule(
        role=AppRole.MANAGEMENT,
        action=WorkflowAction.REJECT,
        source_statuses=frozenset({OTStatus.HR_CERTIFIED, OTStatus.MANAGEMENT_APPROVED}),
        relationship=ActorRelationship.ANY,
        remarks_policy=RemarksPolicy.REQUIRED,
        next_status=_constant(OTStatus.PENDING_HR_RECERTIFICATION),
        stage_values=_management_review_values,
        default_rejection_stage=RejectionStage.MANAGEMENT,
    ),
)

RULES_BY_KEY: dict[tuple[AppRole, WorkflowAction], TransitionRule] = {rule.key: rule for rule in TRANSITION_RULES}


def get_rule(role: AppRole, action: WorkflowAction) -> TransitionRule | None:
    return RULES_BY_KEY.get((role, action))


def resolve_next_status(rule: TransitionRule, request: OTRequest) -> OTStatus:
    return rule.next_status(request)


def allowed_actions(role: AppRole, status: OTStatus) -> list[WorkflowAction]:
    return [
        rule.action
        for rule in TRANSITION_RULES
        if rule.role == role and status in rule.source_statuses
    ]


def allowed_actions_table() -> dict[str, dict[str, list[str]]]:
    table: dict[str, dict[str, list[str]]] = {}
    for rule in TRANSITION_RULES:
        by_status = table.setdefault(rule.role.value, {})
        for status in sorted(rule.source_statuses, key=lambda item: item.value):
            by_status.setdefault(status.value, []).append(rule.action.value)
    return table


def allowed_actions_for_request(request: OTRequest, *, actor_id: int, roles: set[AppRole]) -> list[WorkflowAction]:
    """Actions this actor could take on this request right now, ignoring remarks."""
    actions: list[WorkflowAction] = []
    for rule in TRANSITION_RULES:
        if rule.role not in roles or request.status not in rule.source_statuses:
            continue
        if rule.rejects_legacy and is_legacy_request(request):
            continue
        if rule.requires_respective_supervisor and not request.has_respective_supervisor:
            continue
        if rule.relationship == ActorRelationship.DIRECT_SUPERVISOR and request.supervisor_id != actor_id:
            continue
        if rule.relationship == ActorRelationship.RESPECTIVE_SUPERVISOR and request.respective_supervisor_id != actor_id:
            continue
        if (
            rule.action == WorkflowAction.REQUEST_RESPECTIVE_CONFIRMATION
            and respective_supervisor_has_confirmed(request)
        ):
            continue
        if rule.action not in actions:
            actions.append(rule.action)
    return actions
