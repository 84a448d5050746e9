from __future__ import annotations

from enum import Enum
from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, model_validator


class TaskStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


class ResourceStatus(str, Enum):
    IDLE = "idle"
    RUNNING = "running"
    PAUSED = "paused"
    ERROR = "error"


class TaskType(str, Enum):
    LAUNCH_PROFILE = "launch_profile"
    LOGIN = "login"
    CHECK_INBOX = "check_inbox"
    READ_EMAIL = "read_email"
    STAR_EMAIL = "star_email"
    SEND_EMAIL = "send_email"
    CHECK_EMAIL_STATUS = "check_email_status"
    CREATE_ACCOUNT = "create_account"


TERMINAL_TASK_STATUSES = (TaskStatus.COMPLETED, TaskStatus.FAILED)


class _PayloadBase(BaseModel):
    model_config = ConfigDict(extra="forbid")


class LaunchProfilePayload(_PayloadBase):
    task_type: Literal["launch_profile"] = "launch_profile"


class LoginPayload(_PayloadBase):
    task_type: Literal["login"] = "login"


class CheckInboxPayload(_PayloadBase):
    task_type: Literal["check_inbox"] = "check_inbox"


class ReadEmailPayload(_PayloadBase):
    task_type: Literal["read_email"] = "read_email"
    email_index: int = Field(default=0, ge=0)


class StarEmailPayload(_PayloadBase):
    task_type: Literal["star_email"] = "star_email"
    email_index: int = Field(default=0, ge=0)


class SendEmailPayload(_PayloadBase):
    task_type: Literal["send_email"] = "send_email"
    to: str = Field(min_length=3)
    subject: str = Field(min_length=1)
    body: str = Field(min_length=1)

    @model_validator(mode="after")
    def validate_recipient(self) -> "SendEmailPayload":
        self.to = self.to.strip()
        if "@" not in self.to:
            raise ValueError("to must be an email address")
        return self


class CheckEmailStatusPayload(_PayloadBase):
    task_type: Literal["check_email_status"] = "check_email_status"


class CreateAccountPayload(_PayloadBase):
    task_type: Literal["create_account"] = "create_account"
    first_name: str = Field(min_length=1)
    last_name: str = Field(min_length=1)
    recovery_email: str | None = Field(default=None, min_length=3)


TaskPayload = Annotated[
    Union[
        LaunchProfilePayload,
        LoginPayload,
        CheckInboxPayload,
        ReadEmailPayload,
        StarEmailPayload,
        SendEmailPayload,
        CheckEmailStatusPayload,
        CreateAccountPayload,
    ],
    Field(discriminator="task_type"),
]


class ResourceCreate(BaseModel):
    id: str = Field(min_length=1)
    name: str = Field(min_length=1)
    provider_profile_id: str | None = Field(default=None, min_length=1)

    @model_validator(mode="after")
    def normalize_fields(self) -> "ResourceCreate":
        self.id = self.id.strip()
        self.name = self.name.strip()
        if not self.id:
            raise ValueError("id must not be blank")
        return self


class ResourceRead(BaseModel):
    id: str
    name: str
    provider_profile_id: str
    status: ResourceStatus
    last_run: str | None = None
    email_status: str | None = None
    email_status_message: str | None = None
    email_status_checked_at: str | None = None


class TaskCreate(BaseModel):
    resource_ref: str = Field(min_length=1)
    payload: TaskPayload
    scheduled_at: str | None = None


class TaskBulkCreate(BaseModel):
    resource_refs: list[str] = Field(min_length=1)
    payload: TaskPayload
    sequential: bool = False

    @model_validator(mode="after")
    def normalize_refs(self) -> "TaskBulkCreate":
        self.resource_refs = _normalize_string_list(self.resource_refs)
        if not self.resource_refs:
            raise ValueError("resource_refs must contain at least one id")
        return self


class TaskRead(BaseModel):
    id: int
    resource_ref: str
    task_type: TaskType
    payload: TaskPayload
    status: TaskStatus
    scheduled_at: str
    created_at: str
    started_at: str | None = None
    completed_at: str | None = None
    error_message: str | None = None
    result: dict[str, Any] | None = None


class TaskBulkResponse(BaseModel):
    count: int
    tasks: list[TaskRead] = Field(default_factory=list)


class TaskRetryRequest(BaseModel):
    task_ids: list[int] = Field(min_length=1)


class TaskRetryResponse(BaseModel):
    count: int
    tasks: list[TaskRead] = Field(default_factory=list)


class TaskCountResponse(BaseModel):
    count: int
    message: str


class EventRead(BaseModel):
    id: int
    event_type: str
    task_id: int | None = None
    resource_ref: str | None = None
    payload: dict[str, Any] = Field(default_factory=dict)
    created_at: str


class RunSummaryRead(BaseModel):
    run_id: str
    attempted: int
    completed: int
    failed: int
    skipped: int
    remaining: int
    stopped: bool
    duration_seconds: float


class QueueProcessResponse(BaseModel):
    success: bool
    message: str
    summary: RunSummaryRead


class QueueStopResponse(BaseModel):
    stopped: bool
    message: str


class QueueStatusResponse(BaseModel):
    active: bool
    run_id: str | None = None
    started_at: str | None = None
    stop_requested: bool = False


def _normalize_string_list(values: list[str]) -> list[str]:
    normalized: list[str] = []
    for value in values:
        trimmed = value.strip()
        if not trimmed:
            continue
        if trimmed in normalized:
            continue
        normalized.append(trimmed)
    return normalized
