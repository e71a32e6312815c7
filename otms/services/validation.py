from __future__ import annotations

from collections.abc import Iterable, Mapping, Sequence
from dataclasses import dataclass
from typing import Any

from otms.errors import IssueCategory, RequestIssue, WorkflowValidationError
from otms.models import AppRole, OTRequest, RejectionStage
from otms.security import Actor
from otms.services.transitions import (
    ActorRelationship,
    RemarksPolicy,
    TransitionRule,
    WorkflowAction,
    get_rule,
    is_legacy_request,
    respective_supervisor_has_confirmed,
)
from otms.settings import get_settings


@dataclass(frozen=True, slots=True)
class ValidatedBatch:
    rule: TransitionRule
    requests: list[OTRequest]
    remarks: str | None
    rejection_stage: RejectionStage | None


def _input_issue(code: str, message: str, request_id: int | None = None) -> RequestIssue:
    return RequestIssue(request_id=request_id, category=IssueCategory.INPUT, code=code, message=message)


def normalize_remarks(remarks: str | None) -> str | None:
    if remarks is None:
        return None
    cleaned = remarks.strip()
    return cleaned or None


def normalize_request_ids(raw_ids: Iterable[Any]) -> tuple[list[int], list[RequestIssue]]:
    """Drop duplicates keeping first-seen order; anything not a positive int is an input issue."""
    ids: list[int] = []
    issues: list[RequestIssue] = []
    for value in raw_ids:
        if isinstance(value, bool) or not isinstance(value, int) or value <= 0:
            issues.append(_input_issue("MALFORMED_REQUEST_ID", f"Request id {value!r} is not a positive integer."))
            continue
        if value not in ids:
            ids.append(value)
    if not ids and not issues:
        issues.append(_input_issue("EMPTY_REQUEST_SET", "At least one request id is required."))
    return ids, issues


def validate_remarks(policy: RemarksPolicy, remarks: str | None) -> list[RequestIssue]:
    settings = get_settings()
    length = len(remarks or "")
    if policy in {RemarksPolicy.REQUIRED, RemarksPolicy.DENIAL} and length == 0:
        return [_input_issue("REMARKS_REQUIRED", "Remarks are required for this action.")]
    if policy == RemarksPolicy.DENIAL and length < settings.denial_remarks_min_length:
        return [
            _input_issue(
                "REMARKS_TOO_SHORT",
                f"Denial remarks must be at least {settings.denial_remarks_min_length} characters.",
            )
        ]
    if length > settings.remarks_max_length:
        return [
            _input_issue(
                "REMARKS_TOO_LONG",
                f"Remarks must be at most {settings.remarks_max_length} characters.",
            )
        ]
    return []


def validate_request(rule: TransitionRule, request: OTRequest, actor: Actor) -> list[RequestIssue]:
    request_id = request.id
    if rule.rejects_legacy and is_legacy_request(request):
        return [
            RequestIssue(
                request_id=request_id,
                category=IssueCategory.STATE,
                code="LEGACY_REQUEST",
                message="Request was verified under the old flow and cannot be confirmed or denied.",
            )
        ]
    if request.status not in rule.source_statuses:
        return [
            RequestIssue(
                request_id=request_id,
                category=IssueCategory.STATE,
                code="INVALID_STATUS",
                message=f"Cannot {rule.action.value} a request in status {request.status.value}.",
            )
        ]
    if rule.requires_respective_supervisor and not request.has_respective_supervisor:
        return [
            RequestIssue(
                request_id=request_id,
                category=IssueCategory.STATE,
                code="NO_RESPECTIVE_SUPERVISOR",
                message="Request has no respective supervisor.",
            )
        ]
    if rule.relationship == ActorRelationship.DIRECT_SUPERVISOR and request.supervisor_id != actor.user_id:
        return [
            RequestIssue(
                request_id=request_id,
                category=IssueCategory.AUTHORIZATION,
                code="NOT_DIRECT_SUPERVISOR",
                message="Only the assigned supervisor can act on this request.",
            )
        ]
    if (
        rule.relationship == ActorRelationship.RESPECTIVE_SUPERVISOR
        and request.respective_supervisor_id != actor.user_id
    ):
        return [
            RequestIssue(
                request_id=request_id,
                category=IssueCategory.AUTHORIZATION,
                code="NOT_RESPECTIVE_SUPERVISOR",
                message="Only the respective supervisor can act on this request.",
            )
        ]
    if rule.action == WorkflowAction.REQUEST_RESPECTIVE_CONFIRMATION and respective_supervisor_has_confirmed(request):
        return [
            RequestIssue(
                request_id=request_id,
                category=IssueCategory.STATE,
                code="RESPECTIVE_ALREADY_CONFIRMED",
                message="Respective supervisor has already confirmed this request.",
            )
        ]
    return []


def _resolve_rejection_stage(
    rule: TransitionRule,
    raw_stage: str | RejectionStage | None,
) -> tuple[RejectionStage | None, list[RequestIssue]]:
    if raw_stage is None:
        return rule.default_rejection_stage, []
    if rule.default_rejection_stage is None:
        return None, [_input_issue("REJECTION_STAGE_NOT_ALLOWED", "Rejection stage only applies to rejections.")]
    try:
        return RejectionStage(raw_stage), []
    except ValueError:
        return None, [_input_issue("INVALID_REJECTION_STAGE", f"Unknown rejection stage {raw_stage!r}.")]


def validate_batch(
    *,
    actor: Actor,
    role: AppRole,
    action: WorkflowAction,
    request_ids: Sequence[int],
    requests_by_id: Mapping[int, OTRequest],
    remarks: str | None,
    rejection_stage: str | RejectionStage | None = None,
    issues: Sequence[RequestIssue] = (),
) -> ValidatedBatch:
    """Check the whole batch and raise one error listing every failing request."""
    collected = list(issues)

    if role not in actor.roles:
        collected.append(
            RequestIssue(
                request_id=None,
                category=IssueCategory.AUTHORIZATION,
                code="ROLE_NOT_HELD",
                message=f"Actor does not hold the {role.value} role.",
            )
        )
        raise WorkflowValidationError(collected)

    rule = get_rule(role, action)
    if rule is None:
        collected.append(
            _input_issue("UNSUPPORTED_ACTION", f"Role {role.value} cannot perform {action.value}.")
        )
        raise WorkflowValidationError(collected)

    cleaned_remarks = normalize_remarks(remarks)
    collected.extend(validate_remarks(rule.remarks_policy, cleaned_remarks))
    stage, stage_issues = _resolve_rejection_stage(rule, rejection_stage)
    collected.extend(stage_issues)

    ordered: list[OTRequest] = []
    for request_id in request_ids:
        request = requests_by_id.get(request_id)
        if request is None:
            collected.append(_input_issue("REQUEST_NOT_FOUND", "Request does not exist.", request_id))
            continue
        collected.extend(validate_request(rule, request, actor))
        ordered.append(request)

    if collected:
        raise WorkflowValidationError(collected)
    return ValidatedBatch(rule=rule, requests=ordered, remarks=cleaned_remarks, rejection_stage=stage)
