from __future__ import annotations

from datetime import datetime
from typing import Annotated, Any, Literal
from uuid import UUID

from pydantic import BaseModel, ConfigDict, EmailStr, Field, TypeAdapter, field_validator


LeadStatus = Literal[
    "new",
    "unread",
    "read",
    "contacted",
    "rnr",
    "follow_up",
    "interested",
    "not_interested",
    "junk",
    "converted",
    "lost",
]
TaskPriority = Literal["low", "medium", "high"]


class LeadCreate(BaseModel):
    sub_account_id: UUID
    name: str = Field(min_length=1)
    phone: str = Field(min_length=1)
    email: EmailStr | None = None
    status: LeadStatus = "new"
    source: str | None = None
    assigned_user_id: str | None = None
    company: str | None = None
    position: str | None = None
    notes: str | None = None
    value: int | None = None
    tags: list[str] | None = None


class LeadUpdate(BaseModel):
    name: str | None = Field(default=None, min_length=1)
    phone: str | None = Field(default=None, min_length=1)
    email: EmailStr | None = None
    status: LeadStatus | None = None
    source: str | None = None
    assigned_user_id: str | None = None
    company: str | None = None
    position: str | None = None
    notes: str | None = None
    value: int | None = None
    tags: list[str] | None = None


class LeadRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    sub_account_id: UUID
    name: str
    phone: str
    email: str | None
    status: str
    source: str | None
    assigned_user_id: str | None
    company: str | None
    position: str | None
    notes: str | None
    value: int | None
    tags: list[str] | None
    created_at: datetime
    updated_at: datetime
    last_activity_at: datetime


class LeadStatusUpdateResponse(BaseModel):
    updated_lead: LeadRead
    old_status: str
    status_changed: bool


class LeadActivityRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    lead_id: UUID
    user_id: str
    activity_type: str
    content: str
    metadata: dict[str, Any] | None = Field(default=None, validation_alias="metadata_json")
    direction: str
    created_at: datetime


class TaskRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    sub_account_id: UUID
    lead_id: UUID | None
    title: str
    description: str | None
    due_at: datetime
    priority: str
    completed: bool
    assigned_user_id: str
    created_by: str
    created_at: datetime


WorkflowTriggerType = Literal["lead_created", "lead_status_changed", "time_based", "manual"]
WorkflowConditionOperator = Literal[
    "equals",
    "not_equals",
    "contains",
    "greater_than",
    "less_than",
    "in",
    "exists",
]


class WorkflowTrigger(BaseModel):
    type: WorkflowTriggerType
    config: dict[str, Any] = Field(default_factory=dict)


class WorkflowConditionItem(BaseModel):
    field: str = Field(min_length=1)
    operator: WorkflowConditionOperator
    value: Any = None


class _WorkflowActionBase(BaseModel):
    config: dict[str, Any] = Field(default_factory=dict)


class WorkflowActionSendWhatsapp(_WorkflowActionBase):
    type: Literal["send_whatsapp", "send_whatsapp_template"]


class WorkflowActionSendEmail(_WorkflowActionBase):
    type: Literal["send_email"]


class WorkflowActionSendSms(_WorkflowActionBase):
    type: Literal["send_sms"]


class WorkflowActionUpdateLead(_WorkflowActionBase):
    type: Literal["update_lead"]


class WorkflowActionCreateTask(_WorkflowActionBase):
    type: Literal["create_task"]


class WorkflowActionWait(_WorkflowActionBase):
    type: Literal["wait"]

    @field_validator("config")
    @classmethod
    def validate_duration(cls, value: dict[str, Any]) -> dict[str, Any]:
        duration = value.get("duration", 0)
        if duration is None:
            # A blank delay field is stored as null.
            return {**value, "duration": 0}
        if isinstance(duration, bool) or not isinstance(duration, (int, float)) or duration < 0:
            raise ValueError("wait duration must be a non-negative number of hours")
        return value


WorkflowAction = Annotated[
    WorkflowActionSendWhatsapp
    | WorkflowActionSendEmail
    | WorkflowActionSendSms
    | WorkflowActionUpdateLead
    | WorkflowActionCreateTask
    | WorkflowActionWait,
    Field(discriminator="type"),
]

workflow_trigger_adapter = TypeAdapter(WorkflowTrigger)
workflow_conditions_adapter = TypeAdapter(list[WorkflowConditionItem])
workflow_actions_adapter = TypeAdapter(list[WorkflowAction])


class WorkflowCreate(BaseModel):
    sub_account_id: UUID
    name: str = Field(min_length=1)
    description: str | None = None
    trigger: WorkflowTrigger
    conditions: list[WorkflowConditionItem] = Field(default_factory=list)
    actions: list[WorkflowAction] = Field(min_length=1)
    is_active: bool = True


class WorkflowReplace(BaseModel):
    name: str = Field(min_length=1)
    description: str | None = None
    trigger: WorkflowTrigger
    conditions: list[WorkflowConditionItem] = Field(default_factory=list)
    actions: list[WorkflowAction] = Field(min_length=1)
    is_active: bool = True


class WorkflowUpdate(BaseModel):
    name: str | None = Field(default=None, min_length=1)
    description: str | None = None
    trigger: WorkflowTrigger | None = None
    conditions: list[WorkflowConditionItem] | None = None
    actions: list[WorkflowAction] | None = Field(default=None, min_length=1)
    is_active: bool | None = None


class WorkflowRead(BaseModel):
    id: UUID
    sub_account_id: UUID
    name: str
    description: str | None
    # Stored blobs are returned as-is, even when they no longer validate.
    trigger: Any
    conditions: Any
    actions: Any
    is_active: bool
    created_by: str
    execution_count: int
    last_executed_at: datetime | None
    created_at: datetime
    updated_at: datetime


class WorkflowRunRequest(BaseModel):
    lead_id: UUID


class WorkflowActionLogRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    execution_id: UUID
    workflow_id: UUID
    position: int
    action_type: str
    action_data: dict[str, Any]
    status: str
    result: dict[str, Any] | None
    error: str | None
    executed_at: datetime


class WorkflowExecutionRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    workflow_id: UUID
    lead_id: UUID | None
    status: str
    started_at: datetime
    completed_at: datetime | None
    error: str | None
    execution_data: dict[str, Any] | None
    triggered_by: str


class WorkflowExecutionDetail(WorkflowExecutionRead):
    action_logs: list[WorkflowActionLogRead] = Field(default_factory=list)
