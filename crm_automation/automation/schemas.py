from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import date
from typing import Annotated, Any, Literal
from uuid import UUID

from pydantic import BaseModel, Field, TypeAdapter, field_validator, model_validator

from crm_automation.automation.errors import WorkflowLimitExceededError


ConditionOp = Literal[
    "eq",
    "ne",
    "contains",
    "not_contains",
    "starts_with",
    "ends_with",
    "in",
    "not_in",
    "gt",
    "gte",
    "lt",
    "lte",
    "is_empty",
    "not_empty",
    "changed",
    "changed_to",
    "changed_from",
]


class ConditionLeaf(BaseModel):
    field: str = Field(min_length=1)
    op: ConditionOp
    value: Any = None


class ConditionAll(BaseModel):
    all: list["Condition"] = Field(default_factory=list)


class ConditionAny(BaseModel):
    any: list["Condition"] = Field(default_factory=list)


Condition = ConditionLeaf | ConditionAll | ConditionAny

ConditionAll.model_rebuild()
ConditionAny.model_rebuild()


def parse_condition(value: Any) -> Condition | None:
    """Build a condition tree from stored JSON.

    Accepts ``{"all": [...]}`` / ``{"any": [...]}`` groups, the ``{"logic": "AND", "conditions": [...]}``
    shape, a bare list (implicit AND), and leaves keyed by ``field``/``path`` and ``op``/``operator``.
    Raises ``ValueError`` (or pydantic's ``ValidationError``) on anything else.
    """
    if value is None:
        return None
    if isinstance(value, (ConditionLeaf, ConditionAll, ConditionAny)):
        return value
    if isinstance(value, list):
        return ConditionAll(all=[_parse_node(item) for item in value])
    return _parse_node(value)


def _parse_node(value: Any) -> Condition:
    if isinstance(value, (ConditionLeaf, ConditionAll, ConditionAny)):
        return value
    if not isinstance(value, dict):
        raise ValueError("condition must be an object")

    if "all" in value or "any" in value:
        key = "all" if "all" in value else "any"
        items = value.get(key)
        if not isinstance(items, list):
            raise ValueError(f"{key} must be a list")
        children = [_parse_node(item) for item in items]
        return ConditionAll(all=children) if key == "all" else ConditionAny(any=children)

    if "conditions" in value:
        items = value.get("conditions")
        if not isinstance(items, list):
            raise ValueError("conditions must be a list")
        logic = str(value.get("logic") or "AND").upper()
        if logic not in {"AND", "OR"}:
            raise ValueError(f"unsupported logic: {logic}")
        children = [_parse_node(item) for item in items]
        return ConditionAll(all=children) if logic == "AND" else ConditionAny(any=children)

    return ConditionLeaf.model_validate(
        {
            "field": value.get("field", value.get("path")),
            "op": value.get("op", value.get("operator")),
            "value": value.get("value"),
        }
    )


def dump_condition(condition: Condition | None) -> dict[str, Any] | None:
    if condition is None:
        return None
    return condition.model_dump(mode="json")


class _ActionBase(BaseModel):
    id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    condition: Condition | None = None

    @field_validator("condition", mode="before")
    @classmethod
    def _coerce_condition(cls, value: Any) -> Any:
        return parse_condition(value)


class UpdateFieldsAction(_ActionBase):
    type: Literal["update_fields"]
    fields: dict[str, Any] = Field(min_length=1)


class AssignOwnerAction(_ActionBase):
    type: Literal["assign_owner"]
    rule_id: UUID | None = None
    strategy: Literal["round_robin", "least_loaded", "territory", "fixed"] | None = None
    user_id: str | None = None

    @model_validator(mode="after")
    def validate_target(self) -> "AssignOwnerAction":
        if self.rule_id is None and not self.user_id:
            raise ValueError("assign_owner requires rule_id or user_id")
        return self


Priority = Literal["low", "normal", "high", "urgent"]


class CreateTaskAction(_ActionBase):
    type: Literal["create_task"]
    title: str = Field(min_length=1)
    description: str | None = None
    due_in_days: int = Field(default=1, ge=0)
    priority: Priority = "normal"
    assigned_to: str = "owner"


class CreateActivityAction(_ActionBase):
    type: Literal["create_activity"]
    activity_type: Literal["task", "call", "meeting", "email"]
    title: str = Field(min_length=1)
    description: str | None = None
    due_in_days: int | None = Field(default=None, ge=0)
    due_in_hours: int | None = Field(default=None, ge=0)
    priority: Priority = "normal"
    assigned_to: str = "owner"
    call_type: Literal["outbound", "inbound"] | None = None
    meeting_type: Literal["in_person", "video", "phone"] | None = None
    meeting_location: str | None = None
    attendees: list[str] = Field(default_factory=list)


class AddNoteAction(_ActionBase):
    type: Literal["add_note"]
    body: str = Field(min_length=1)
    is_pinned: bool = False


class NotifyAction(_ActionBase):
    type: Literal["notify"]
    recipients: list[str] = Field(min_length=1)
    title: str = Field(min_length=1)
    body: str | None = None
    href: str | None = None


class MoveStageAction(_ActionBase):
    type: Literal["move_stage"]
    stage: str = Field(min_length=1)


class StartCadenceAction(_ActionBase):
    type: Literal["start_cadence"]
    cadence_id: UUID


class StopCadenceAction(_ActionBase):
    type: Literal["stop_cadence"]
    cadence_id: UUID | None = None


class CreateEnrollmentDraftAction(_ActionBase):
    type: Literal["create_enrollment_draft"]
    explicit: bool = False
    plan_id: str | None = None
    effective_date: date | None = None
    additional_data: dict[str, Any] = Field(default_factory=dict)


class SendEmailAction(_ActionBase):
    type: Literal["send_email"]
    template_id: str | None = None
    subject: str | None = None
    body: str | None = None
    to: str | None = None

    @model_validator(mode="after")
    def validate_content(self) -> "SendEmailAction":
        if not self.template_id and not self.subject and not self.body:
            raise ValueError("send_email requires template_id, subject or body")
        return self


class SendSmsAction(_ActionBase):
    type: Literal["send_sms"]
    template_id: str | None = None
    body: str | None = None
    to: str | None = None

    @model_validator(mode="after")
    def validate_content(self) -> "SendSmsAction":
        if not self.template_id and not self.body:
            raise ValueError("send_sms requires template_id or body")
        return self


class DelayWaitAction(_ActionBase):
    type: Literal["delay_wait"]
    delay_seconds: int = Field(default=0, ge=0)
    delay_minutes: int = Field(default=0, ge=0)
    delay_hours: int = Field(default=0, ge=0)
    delay_days: int = Field(default=0, ge=0)
    delay_type: Literal["fixed", "relative"] = "fixed"
    delay_field: str | None = None

    @model_validator(mode="after")
    def validate_relative(self) -> "DelayWaitAction":
        if self.delay_type == "relative" and not self.delay_field:
            raise ValueError("relative delay requires delay_field")
        return self

    def total_seconds(self) -> int:
        return self.delay_seconds + self.delay_minutes * 60 + self.delay_hours * 3600 + self.delay_days * 86400


class PostWebhookAction(_ActionBase):
    type: Literal["post_webhook"]
    url: str = Field(min_length=1, pattern=r"^https?://")
    method: Literal["POST", "PUT", "PATCH"] = "POST"
    headers: dict[str, str] = Field(default_factory=dict)
    include_record: bool = True
    body_template: str | None = None
    retry_on_failure: bool = False


WorkflowAction = Annotated[
    UpdateFieldsAction
    | AssignOwnerAction
    | CreateTaskAction
    | CreateActivityAction
    | AddNoteAction
    | NotifyAction
    | MoveStageAction
    | StartCadenceAction
    | StopCadenceAction
    | CreateEnrollmentDraftAction
    | SendEmailAction
    | SendSmsAction
    | DelayWaitAction
    | PostWebhookAction,
    Field(discriminator="type"),
]

workflow_action_adapter = TypeAdapter(WorkflowAction)
workflow_action_list_adapter = TypeAdapter(list[WorkflowAction])


def parse_actions(payload: list[dict[str, Any]] | None) -> list[WorkflowAction]:
    return workflow_action_list_adapter.validate_python(payload or [])


def dump_actions(actions: list[WorkflowAction]) -> list[dict[str, Any]]:
    return [action.model_dump(mode="json") for action in actions]


TriggerType = Literal["on_create", "on_update", "on_update_field_changed", "scheduled", "manual"]
RunStatus = Literal["pending", "running", "completed", "failed", "capped"]


# Records


SYSTEM_FIELDS = frozenset({"owner_id", "stage", "title", "is_open"})


@dataclass
class RecordSnapshot:
    id: uuid.UUID
    module: str
    owner_id: str | None = None
    stage: str | None = None
    fields: dict[str, Any] = field(default_factory=dict)
    version: int = 1
    created_by: str | None = None
    title: str | None = None
    is_open: bool = True

    def as_context(self) -> dict[str, Any]:
        context: dict[str, Any] = dict(self.fields)
        context.update(
            {
                "id": str(self.id),
                "module": self.module,
                "owner_id": self.owner_id,
                "stage": self.stage,
                "created_by": self.created_by,
                "title": self.title,
                "is_open": self.is_open,
                "fields": self.fields,
            }
        )
        return context

    def merged(self, changes: dict[str, Any]) -> "RecordSnapshot":
        fields = dict(self.fields)
        system: dict[str, Any] = {}
        for key, value in changes.items():
            if key in SYSTEM_FIELDS:
                system[key] = value
            else:
                fields[key] = value
        return RecordSnapshot(
            id=self.id,
            module=self.module,
            owner_id=system.get("owner_id", self.owner_id),
            stage=system.get("stage", self.stage),
            fields=fields,
            version=self.version,
            created_by=self.created_by,
            title=system.get("title", self.title),
            is_open=system.get("is_open", self.is_open),
        )


# Execution


@dataclass
class RunBudget:
    """Action allowance shared by every run in one trigger chain."""

    max_actions: int
    consumed: int = 0

    @property
    def remaining(self) -> int:
        return max(self.max_actions - self.consumed, 0)

    def consume(self, action_type: str) -> None:
        if self.consumed >= self.max_actions:
            raise WorkflowLimitExceededError(
                code="WORKFLOW_LIMIT_EXCEEDED",
                summary={
                    "reason": "MAX_ACTIONS",
                    "max_actions": self.max_actions,
                    "actions_consumed": self.consumed,
                    "blocked_action_type": action_type,
                },
            )
        self.consumed += 1


@dataclass
class ExecutionContext:
    record: RecordSnapshot
    trigger_type: str
    budget: RunBudget
    previous_record: RecordSnapshot | None = None
    actor_id: str | None = None
    dry_run: bool = False
    source: str = "workflow"
    workflow_id: uuid.UUID | None = None
    run_id: uuid.UUID | None = None
    parent_run_id: uuid.UUID | None = None
    depth: int = 0
    idempotency_key: str | None = None
    pending_actions: list[Any] = field(default_factory=list)

    def child(
        self,
        *,
        record: RecordSnapshot,
        trigger_type: str,
        previous_record: RecordSnapshot | None = None,
    ) -> "ExecutionContext":
        return ExecutionContext(
            record=record,
            trigger_type=trigger_type,
            budget=self.budget,
            previous_record=previous_record,
            actor_id=self.actor_id,
            dry_run=self.dry_run,
            source="workflow",
            parent_run_id=self.run_id,
            depth=self.depth + 1,
        )


class ActionResult(BaseModel):
    action_id: str
    type: str
    status: Literal["success", "failed", "skipped"]
    output: dict[str, Any] = Field(default_factory=dict)
    error: str | None = None
    side_effect_ref: str | None = None
    terminates_run: bool = Field(default=False, exclude=True)

    @property
    def success(self) -> bool:
        return self.status == "success"


class AutomationRunResult(BaseModel):
    run_id: UUID | None = None
    workflow_id: UUID | None = None
    record_id: UUID | None = None
    status: Literal["running", "completed", "failed", "capped", "skipped"]
    matched: bool = True
    actions_executed: list[ActionResult] = Field(default_factory=list)
    error: str | None = None
    reason: str | None = None
    delayed_job_id: UUID | None = None

    @property
    def successful_actions(self) -> list[ActionResult]:
        return [item for item in self.actions_executed if item.status == "success"]


class WorkflowCreate(BaseModel):
    name: str = Field(min_length=1)
    description: str | None = None
    module: str = Field(min_length=1)
    is_enabled: bool = True
    trigger_type: TriggerType
    trigger_config: dict[str, Any] = Field(default_factory=dict)
    conditions: Any = None
    actions: list[dict[str, Any]] = Field(default_factory=list)
    halt_on_failure: bool = True
    run_count_cap: int | None = Field(default=None, ge=1)
    cooldown_seconds: int | None = Field(default=None, ge=1)
    priority: int = 0

    @model_validator(mode="after")
    def validate_workflow_structure(self) -> "WorkflowCreate":
        self.conditions = dump_condition(parse_condition(self.conditions))
        self.actions = dump_actions(parse_actions(self.actions))
        watch_fields = self.trigger_config.get("watch_fields")
        if watch_fields is not None and not (
            isinstance(watch_fields, list) and all(isinstance(item, str) and item for item in watch_fields)
        ):
            raise ValueError("trigger_config.watch_fields must be a list of field paths")
        interval = self.trigger_config.get("interval_minutes")
        if interval is not None and (not isinstance(interval, int) or interval < 1):
            raise ValueError("trigger_config.interval_minutes must be a positive integer")
        return self


class WorkflowUpdate(BaseModel):
    name: str | None = None
    description: str | None = None
    is_enabled: bool | None = None
    trigger_config: dict[str, Any] | None = None
    conditions: Any = None
    actions: list[dict[str, Any]] | None = None
    halt_on_failure: bool | None = None
    run_count_cap: int | None = Field(default=None, ge=1)
    cooldown_seconds: int | None = Field(default=None, ge=1)
    priority: int | None = None

    @model_validator(mode="after")
    def validate_workflow_structure(self) -> "WorkflowUpdate":
        if self.conditions is not None:
            self.conditions = dump_condition(parse_condition(self.conditions))
        if self.actions is not None:
            self.actions = dump_actions(parse_actions(self.actions))
        return self


class WorkflowDefinition(BaseModel):
    id: UUID | None = None
    name: str
    module: str
    trigger_type: TriggerType
    trigger_config: dict[str, Any] = Field(default_factory=dict)
    conditions: Condition | None = None
    actions: list[WorkflowAction] = Field(default_factory=list)
    is_enabled: bool = True
    halt_on_failure: bool = True
    run_count_cap: int | None = None
    cooldown_seconds: int | None = None

    @field_validator("conditions", mode="before")
    @classmethod
    def _coerce_conditions(cls, value: Any) -> Any:
        return parse_condition(value)

    @classmethod
    def from_model(cls, row: Any) -> "WorkflowDefinition":
        return cls(
            id=row.id,
            name=row.name,
            module=row.module,
            trigger_type=row.trigger_type,
            trigger_config=row.trigger_config or {},
            conditions=row.condition_json,
            actions=row.actions_json or [],
            is_enabled=row.is_enabled,
            halt_on_failure=row.halt_on_failure,
            run_count_cap=row.run_count_cap,
            cooldown_seconds=row.cooldown_seconds,
        )


# Assignment


AssignmentStrategy = Literal["round_robin", "least_loaded", "territory", "fixed"]


class AssignmentCandidate(BaseModel):
    user_id: str = Field(min_length=1)
    territory: Condition | None = None

    @field_validator("territory", mode="before")
    @classmethod
    def _coerce_territory(cls, value: Any) -> Any:
        return parse_condition(value)


class AssignmentRuleCreate(BaseModel):
    name: str = Field(min_length=1)
    module: str | None = None
    strategy: AssignmentStrategy
    candidates: list[AssignmentCandidate] = Field(default_factory=list)
    owner_id: str | None = None
    fallback_owner_id: str | None = None
    is_enabled: bool = True

    @model_validator(mode="after")
    def validate_strategy(self) -> "AssignmentRuleCreate":
        if self.strategy == "fixed" and not self.owner_id:
            raise ValueError("fixed strategy requires owner_id")
        if self.strategy in {"round_robin", "least_loaded"} and not self.candidates:
            raise ValueError(f"{self.strategy} strategy requires candidates")
        if self.strategy == "territory" and not self.candidates and not self.fallback_owner_id:
            raise ValueError("territory strategy requires candidates or fallback_owner_id")
        return self


class AssignmentDecision(BaseModel):
    owner_id: str | None
    reason: str
    strategy: str | None = None
    rule_id: UUID | None = None


# Cadence


class CadenceStep(BaseModel):
    id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    type: Literal["task", "email", "call"]
    delay_days: int = Field(default=0, ge=0)
    delay_hours: int = Field(default=0, ge=0)
    title: str | None = None
    description: str | None = None
    priority: Priority = "normal"
    assigned_to: str = "owner"
    template_id: str | None = None
    subject: str | None = None
    body: str | None = None
    script: str | None = None

    @model_validator(mode="after")
    def validate_step(self) -> "CadenceStep":
        if self.type == "email" and not (self.template_id or self.subject or self.body):
            raise ValueError("email steps require template_id, subject or body")
        return self


class CadenceCreate(BaseModel):
    name: str = Field(min_length=1)
    description: str | None = None
    module: str | None = None
    is_enabled: bool = True
    steps: list[CadenceStep] = Field(min_length=1)
    exit_condition: Any = None

    @model_validator(mode="after")
    def validate_exit_condition(self) -> "CadenceCreate":
        self.exit_condition = dump_condition(parse_condition(self.exit_condition))
        return self


EnrollmentStatus = Literal["active", "paused", "completed", "stopped"]


# Scheduler


JobType = Literal["workflow_delay", "workflow_retry", "workflow_scheduled", "cadence_step"]
JobStatus = Literal["pending", "running", "completed", "failed", "cancelled"]


class SweepResult(BaseModel):
    claimed: int = 0
    completed: int = 0
    failed: int = 0
    rescheduled: int = 0
    skipped: int = 0
    job_ids: list[UUID] = Field(default_factory=list)


# Blueprint


class FieldRequirement(BaseModel):
    field: str = Field(min_length=1)
    label: str | None = None
    when: Condition | None = None

    @field_validator("when", mode="before")
    @classmethod
    def _coerce_when(cls, value: Any) -> Any:
        return parse_condition(value)


class BlueprintTransition(BaseModel):
    to_stage: str = Field(min_length=1)
    name: str | None = None
    required_fields: list[FieldRequirement] = Field(default_factory=list)
    condition: Condition | None = None
    requires_approval: bool = False
    approval_process_id: UUID | None = None
    actions: list[WorkflowAction] = Field(default_factory=list)

    @field_validator("required_fields", mode="before")
    @classmethod
    def _coerce_required_fields(cls, value: Any) -> Any:
        if not isinstance(value, list):
            return value
        return [{"field": item} if isinstance(item, str) else item for item in value]

    @field_validator("condition", mode="before")
    @classmethod
    def _coerce_condition(cls, value: Any) -> Any:
        return parse_condition(value)

    @model_validator(mode="after")
    def validate_approval(self) -> "BlueprintTransition":
        if self.requires_approval and self.approval_process_id is None:
            raise ValueError("requires_approval transitions need approval_process_id")
        return self


class BlueprintStage(BaseModel):
    key: str = Field(min_length=1)
    name: str | None = None
    transitions: list[BlueprintTransition] = Field(default_factory=list)


class BlueprintCreate(BaseModel):
    name: str = Field(min_length=1)
    module: str = Field(min_length=1)
    is_enabled: bool = True
    stages: list[BlueprintStage] = Field(min_length=1)

    @model_validator(mode="after")
    def validate_graph(self) -> "BlueprintCreate":
        keys = [stage.key for stage in self.stages]
        if len(set(keys)) != len(keys):
            raise ValueError("stage keys must be unique")
        known = set(keys)
        for stage in self.stages:
            for transition in stage.transitions:
                if transition.to_stage not in known:
                    raise ValueError(f"transition from {stage.key} targets unknown stage {transition.to_stage}")
        return self


class BlueprintDefinition(BaseModel):
    id: UUID | None = None
    name: str
    module: str
    is_enabled: bool = True
    stages: list[BlueprintStage]

    @classmethod
    def from_model(cls, row: Any) -> "BlueprintDefinition":
        return cls(id=row.id, name=row.name, module=row.module, is_enabled=row.is_enabled, stages=row.stages_json)

    def find_transition(self, from_stage: str | None, to_stage: str) -> BlueprintTransition | None:
        for stage in self.stages:
            if stage.key != from_stage:
                continue
            for transition in stage.transitions:
                if transition.to_stage == to_stage:
                    return transition
        return None


class TransitionValidation(BaseModel):
    allowed: bool
    missing_fields: list[str] = Field(default_factory=list)
    reason: str | None = None
    requires_approval: bool = False


class TransitionResult(BaseModel):
    success: bool
    validation: TransitionValidation | None = None
    from_stage: str | None = None
    to_stage: str | None = None
    requires_approval: bool = False
    approval_id: UUID | None = None
    run: AutomationRunResult | None = None
    error: str | None = None


# Approvals


ApprovalStatus = Literal["pending", "approved", "rejected", "changes_requested", "cancelled", "expired"]


class ApprovalStep(BaseModel):
    type: Literal["user", "role", "manager", "record_owner", "assignment_rule"]
    value: str | None = None
    name: str | None = None
    require_comment: bool = False
    timeout_hours: int | None = Field(default=None, ge=1)

    @model_validator(mode="after")
    def validate_value(self) -> "ApprovalStep":
        if self.type in {"user", "role", "assignment_rule"} and not self.value:
            raise ValueError(f"{self.type} approval steps require a value")
        return self


class ApprovalProcessCreate(BaseModel):
    name: str = Field(min_length=1)
    module: str | None = None
    is_enabled: bool = True
    steps: list[ApprovalStep] = Field(min_length=1)
    on_approve_actions: list[dict[str, Any]] = Field(default_factory=list)
    on_reject_actions: list[dict[str, Any]] = Field(default_factory=list)

    @model_validator(mode="after")
    def validate_actions(self) -> "ApprovalProcessCreate":
        self.on_approve_actions = dump_actions(parse_actions(self.on_approve_actions))
        self.on_reject_actions = dump_actions(parse_actions(self.on_reject_actions))
        return self


class ApprovalActionRequest(BaseModel):
    action: Literal["approve", "reject", "request_changes", "cancel"]
    actor_id: str = Field(min_length=1)
    actor_role: str | None = None
    comment: str | None = None


class ApprovalActionResult(BaseModel):
    success: bool
    approval_id: UUID
    new_status: ApprovalStatus
    invalid_request: bool = False
    action_executed: bool = False
    error: str | None = None
    transition: TransitionResult | None = None
