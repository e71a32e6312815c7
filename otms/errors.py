from __future__ import annotations

import enum
from dataclasses import dataclass
from typing import Any

from fastapi import Request
from fastapi.responses import JSONResponse


class ApiError(Exception):
    def __init__(self, status_code: int, code: str, message: str, details: list[dict[str, Any]] | None = None):
        super().__init__(message)
        self.status_code = status_code
        self.code = code
        self.message = message
        self.details = details


class IssueCategory(str, enum.Enum):
    AUTHORIZATION = "authorization"
    STATE = "state"
    INPUT = "input"


@dataclass(frozen=True, slots=True)
class RequestIssue:
    request_id: int | None
    category: IssueCategory
    code: str
    message: str

    def to_dict(self) -> dict[str, Any]:
        return {
            "request_id": self.request_id,
            "category": self.category.value,
            "code": self.code,
            "message": self.message,
        }

    def describe(self) -> str:
        if self.request_id is None:
            return self.message
        return f"Request {self.request_id}: {self.message}"


class WorkflowValidationError(ApiError):
    """Every issue found across a batch, raised before anything is written."""

    def __init__(self, issues: list[RequestIssue]):
        categories = {issue.category for issue in issues}
        if categories == {IssueCategory.AUTHORIZATION}:
            status_code = 403
        elif categories == {IssueCategory.STATE}:
            status_code = 409
        else:
            status_code = 422
        super().__init__(
            status_code=status_code,
            code="WORKFLOW_VALIDATION_FAILED",
            message="; ".join(issue.describe() for issue in issues),
            details=[issue.to_dict() for issue in issues],
        )
        self.issues = list(issues)

    @property
    def request_ids(self) -> list[int]:
        seen: list[int] = []
        for issue in self.issues:
            if issue.request_id is not None and issue.request_id not in seen:
                seen.append(issue.request_id)
        return seen


class ConcurrentModificationError(ApiError):
    def __init__(self, request_ids: list[int], committed: list[dict[str, Any]] | None = None):
        joined = ", ".join(str(value) for value in request_ids)
        super().__init__(
            status_code=409,
            code="CONCURRENT_MODIFICATION",
            message=f"Requests were modified by another action before this one was applied: {joined}",
            details=[{"request_ids": list(request_ids), "committed_partitions": list(committed or [])}],
        )
        self.request_ids = list(request_ids)
        self.committed = list(committed or [])


class BatchPartialFailureError(ApiError):
    def __init__(
        self,
        *,
        committed: list[dict[str, Any]],
        failed: dict[str, Any],
        cause: Exception,
    ):
        committed_ids = [request_id for item in committed for request_id in item["request_ids"]]
        super().__init__(
            status_code=500,
            code="BATCH_PARTIALLY_APPLIED",
            message=(
                f"Batch stopped at status {failed['status']}; "
                f"committed requests: {', '.join(str(value) for value in committed_ids) or '-'}"
            ),
            details=[{"committed_partitions": committed, "failed_partition": failed, "error": str(cause)[:500]}],
        )
        self.committed = committed
        self.failed = failed


def get_request_id(request: Request) -> str:
    request_id = getattr(request.state, "request_id", None)
    if request_id:
        return str(request_id)
    return "unknown"


def error_response(
    request: Request,
    *,
    status_code: int,
    code: str,
    message: str,
    details: list[dict[str, Any]] | None = None,
) -> JSONResponse:
    payload: dict[str, Any] = {
        "error": {
            "code": code,
            "message": message,
            "request_id": get_request_id(request),
        }
    }
    if details:
        payload["error"]["details"] = details
    return JSONResponse(status_code=status_code, content=payload)
