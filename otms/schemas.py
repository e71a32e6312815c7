from datetime import date, datetime, time
from decimal import Decimal

from pydantic import BaseModel, ConfigDict, Field, model_validator

from otms.models import AppRole, DayType, OTStatus


class OTSessionCreate(BaseModel):
    start_time: time
    end_time: time

    @model_validator(mode="after")
    def _validate_window(self) -> "OTSessionCreate":
        if self.start_time >= self.end_time:
            raise ValueError("start_time must be before end_time.")
        return self


class OTSubmissionCreate(BaseModel):
    ot_date: date
    sessions: list[OTSessionCreate] = Field(min_length=1)
    reason: str = Field(min_length=1, max_length=1000)
    respective_supervisor_id: int | None = Field(default=None, ge=1)
    attachment_urls: list[str] = Field(default_factory=list)
    day_type: DayType | None = None

    @model_validator(mode="after")
    def _normalize_reason(self) -> "OTSubmissionCreate":
        cleaned = self.reason.strip()
        if not cleaned:
            raise ValueError("reason must not be blank.")
        self.reason = cleaned
        return self


class OTResubmissionCreate(BaseModel):
    ot_date: date
    start_time: time
    end_time: time
    reason: str = Field(min_length=1, max_length=1000)
    respective_supervisor_id: int | None = Field(default=None, ge=1)
    attachment_urls: list[str] = Field(default_factory=list)
    day_type: DayType | None = None

    @model_validator(mode="after")
    def _validate_fields(self) -> "OTResubmissionCreate":
        if self.start_time >= self.end_time:
            raise ValueError("start_time must be before end_time.")
        cleaned = self.reason.strip()
        if not cleaned:
            raise ValueError("reason must not be blank.")
        self.reason = cleaned
        return self


class OTRequestRead(BaseModel):
    id: int
    ticket_number: str
    employee_id: int
    ot_date: date
    start_time: time
    end_time: time
    total_hours: Decimal
    day_type: DayType
    reason: str
    attachment_urls: list[str]
    orp: Decimal | None
    hrp: Decimal | None
    ot_amount: Decimal | None
    status: OTStatus
    rejection_stage: str | None
    version: int
    supervisor_id: int | None
    respective_supervisor_id: int | None
    supervisor_verified_at: datetime | None
    supervisor_remarks: str | None
    supervisor_confirmation_at: datetime | None
    supervisor_confirmation_remarks: str | None
    supervisor_revised_at: datetime | None
    supervisor_revision_remarks: str | None
    respective_supervisor_confirmed_at: datetime | None
    respective_supervisor_remarks: str | None
    respective_supervisor_denied_at: datetime | None
    respective_supervisor_denial_remarks: str | None
    hr_id: int | None
    hr_approved_at: datetime | None
    hr_remarks: str | None
    management_id: int | None
    management_reviewed_at: datetime | None
    management_remarks: str | None
    parent_request_id: int | None
    is_resubmission: bool
    resubmission_count: int
    created_at: datetime
    updated_at: datetime

    model_config = ConfigDict(from_attributes=True)


class OTSessionRead(BaseModel):
    request_id: int
    ticket_number: str
    start_time: time
    end_time: time
    total_hours: Decimal
    ot_amount: Decimal | None
    status: OTStatus
    version: int
    allowed_actions: list[str] = Field(default_factory=list)

    model_config = ConfigDict(from_attributes=True)


class GroupedOTRequestRead(BaseModel):
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
    total_hours: Decimal
    ot_amount: Decimal | None
    sessions: list[OTSessionRead]
    request_ids: list[int]

    model_config = ConfigDict(from_attributes=True)


class OTRequestTransitionRead(BaseModel):
    id: int
    action: str
    actor_id: int | None
    actor_role: str
    from_status: str | None
    to_status: str
    remarks: str | None
    version: int
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


class BatchActionRequest(BaseModel):
    request_ids: list[int]
    remarks: str | None = None


class RoleActionRequest(BatchActionRequest):
    role: AppRole


class RejectActionRequest(RoleActionRequest):
    rejection_stage: str | None = None


class BatchPartitionRead(BaseModel):
    status: OTStatus
    request_ids: list[int]

    model_config = ConfigDict(from_attributes=True)


class BatchActionResponse(BaseModel):
    affected_ids: list[int]
    partitions: list[BatchPartitionRead]

    model_config = ConfigDict(from_attributes=True)


class AllowedActionsResponse(BaseModel):
    rules: dict[str, dict[str, list[str]]]
