from __future__ import annotations

import logging
import re
import uuid
from collections.abc import Callable
from datetime import date, datetime, time, timedelta, timezone
from typing import TYPE_CHECKING, Any

from sqlalchemy.orm import Session

from crm_automation.automation.assignment import AssignmentEngine
from crm_automation.automation.conditions import evaluate_conditions, get_field_value
from crm_automation.automation.errors import (
    ActionConfigurationError,
    AutomationError,
    WorkflowLimitExceededError,
)
from crm_automation.automation.models import utcnow
from crm_automation.automation.ports import (
    AuditSink,
    MessageDispatcher,
    MessageRequest,
    RecordStore,
    WebhookPoster,
    default_webhook_timeout,
)
from crm_automation.automation.schemas import (
    ActionResult,
    AddNoteAction,
    AssignOwnerAction,
    CreateActivityAction,
    CreateEnrollmentDraftAction,
    CreateTaskAction,
    DelayWaitAction,
    ExecutionContext,
    MoveStageAction,
    NotifyAction,
    PostWebhookAction,
    RecordSnapshot,
    SendEmailAction,
    SendSmsAction,
    StartCadenceAction,
    StopCadenceAction,
    UpdateFieldsAction,
    WorkflowAction,
    dump_actions,
)
from crm_automation.metrics import observe_action

if TYPE_CHECKING:
    from crm_automation.automation.cadence import CadenceEngine
    from crm_automation.automation.scheduler import Scheduler


logger = logging.getLogger("crm_automation.automation.actions")

MutationListener = Callable[[Session, ExecutionContext, RecordSnapshot, RecordSnapshot], None]

_PLACEHOLDER = re.compile(r"\{\{\s*([\w.]+)\s*\}\}")


def render_template(template: str | None, record: RecordSnapshot) -> str | None:
    if template is None:
        return None

    def _replace(match: re.Match[str]) -> str:
        value = get_field_value(record, match.group(1))
        return "" if value is None else str(value)

    return _PLACEHOLDER.sub(_replace, template)


def resolve_user_reference(reference: str | None, record: RecordSnapshot) -> str | None:
    """``owner`` and ``creator`` point at the record; anything else is a literal user id."""
    if reference is None or reference == "owner":
        return record.owner_id
    if reference == "creator":
        return record.created_by
    return render_template(reference, record) or None


class ActionExecutor:
    def __init__(
        self,
        record_store: RecordStore,
        dispatcher: MessageDispatcher,
        webhook_poster: WebhookPoster,
        audit_sink: AuditSink,
        assignment_engine: AssignmentEngine,
    ) -> None:
        self.record_store = record_store
        self.dispatcher = dispatcher
        self.webhook_poster = webhook_poster
        self.audit_sink = audit_sink
        self.assignment_engine = assignment_engine
        self.cadence_engine: CadenceEngine | None = None
        self.scheduler: Scheduler | None = None
        self.mutation_listener: MutationListener | None = None

    def execute(self, session: Session, action: WorkflowAction, context: ExecutionContext) -> ActionResult:
        """Run one action against ``context.record``.

        Failures come back as ``status="failed"`` results with the session rolled back to the
        last commit. Only ``WorkflowLimitExceededError`` propagates.
        """
        if action.condition is not None and not evaluate_conditions(
            action.condition, context.record, context.previous_record
        ):
            result = ActionResult(
                action_id=action.id,
                type=action.type,
                status="skipped",
                output={"reason": "condition_not_met"},
            )
            observe_action(action.type, result.status)
            return result

        context.budget.consume(action.type)

        try:
            result = self._dispatch(session, action, context)
        except WorkflowLimitExceededError:
            raise
        except Exception as exc:
            session.rollback()
            logger.warning(
                "automation.action.failed",
                extra={
                    "action_type": action.type,
                    "record_id": str(context.record.id),
                    "workflow_id": str(context.workflow_id) if context.workflow_id else None,
                    "error": str(exc),
                },
            )
            result = ActionResult(action_id=action.id, type=action.type, status="failed", error=str(exc))

        observe_action(action.type, result.status)
        return result

    def _dispatch(self, session: Session, action: WorkflowAction, context: ExecutionContext) -> ActionResult:
        if isinstance(action, UpdateFieldsAction):
            return self._update_fields(session, action, context)
        if isinstance(action, AssignOwnerAction):
            return self._assign_owner(session, action, context)
        if isinstance(action, CreateTaskAction):
            return self._create_task(session, action, context)
        if isinstance(action, CreateActivityAction):
            return self._create_activity(session, action, context)
        if isinstance(action, AddNoteAction):
            return self._add_note(session, action, context)
        if isinstance(action, NotifyAction):
            return self._notify(session, action, context)
        if isinstance(action, MoveStageAction):
            return self._move_stage(session, action, context)
        if isinstance(action, StartCadenceAction):
            return self._start_cadence(session, action, context)
        if isinstance(action, StopCadenceAction):
            return self._stop_cadence(session, action, context)
        if isinstance(action, CreateEnrollmentDraftAction):
            return self._create_enrollment_draft(session, action, context)
        if isinstance(action, SendEmailAction):
            return self._send_email(session, action, context)
        if isinstance(action, SendSmsAction):
            return self._send_sms(session, action, context)
        if isinstance(action, DelayWaitAction):
            return self._delay_wait(session, action, context)
        if isinstance(action, PostWebhookAction):
            return self._post_webhook(session, action, context)
        raise ActionConfigurationError(f"unsupported action type: {getattr(action, 'type', None)}")

    # Record mutations

    def _update_fields(self, session: Session, action: UpdateFieldsAction, context: ExecutionContext) -> ActionResult:
        record = context.record
        changes = {
            key: render_template(value, record) if isinstance(value, str) else value
            for key, value in action.fields.items()
        }
        output = {
            "fields": changes,
            "before": {key: get_field_value(record, key) for key in changes},
        }
        if context.dry_run:
            return self._planned(action, output)

        self._apply_patch(session, context, changes)
        return ActionResult(
            action_id=action.id,
            type=action.type,
            status="success",
            output=output,
            side_effect_ref=str(record.id),
        )

    def _move_stage(self, session: Session, action: MoveStageAction, context: ExecutionContext) -> ActionResult:
        record = context.record
        output = {"from_stage": record.stage, "to_stage": action.stage}
        if record.stage == action.stage:
            return ActionResult(
                action_id=action.id,
                type=action.type,
                status="success",
                output={**output, "unchanged": True},
            )
        if context.dry_run:
            return self._planned(action, output)

        self._apply_patch(session, context, {"stage": action.stage})
        return ActionResult(
            action_id=action.id,
            type=action.type,
            status="success",
            output=output,
            side_effect_ref=str(record.id),
        )

    def _assign_owner(self, session: Session, action: AssignOwnerAction, context: ExecutionContext) -> ActionResult:
        record = context.record
        if action.user_id:
            owner_id = resolve_user_reference(action.user_id, record)
            reason = "explicit_user"
            strategy = "fixed"
        else:
            if action.rule_id is None:
                raise ActionConfigurationError("assign_owner requires rule_id or user_id")
            decision = self.assignment_engine.resolve_assignment(
                session,
                action.rule_id,
                record,
                advance=not context.dry_run,
            )
            owner_id = decision.owner_id
            reason = decision.reason
            strategy = decision.strategy or action.strategy

        output: dict[str, Any] = {
            "previous_owner_id": record.owner_id,
            "owner_id": owner_id,
            "strategy": strategy,
            "reason": reason,
            "assigned": owner_id is not None,
        }
        if context.dry_run:
            return self._planned(action, output)
        if owner_id is None:
            return ActionResult(action_id=action.id, type=action.type, status="success", output=output)
        if owner_id == record.owner_id:
            return ActionResult(
                action_id=action.id,
                type=action.type,
                status="success",
                output={**output, "unchanged": True},
            )

        self._apply_patch(session, context, {"owner_id": owner_id})
        self.audit_sink.record(
            actor_user_id=context.actor_id or "automation",
            entity_type="crm.record",
            entity_id=str(record.id),
            action="automation.owner_assigned",
            before={"owner_id": record.owner_id},
            after={"owner_id": owner_id, "strategy": strategy, "reason": reason},
        )
        return ActionResult(
            action_id=action.id,
            type=action.type,
            status="success",
            output=output,
            side_effect_ref=owner_id,
        )

    def _apply_patch(self, session: Session, context: ExecutionContext, changes: dict[str, Any]) -> None:
        before = context.record
        updated = self.record_store.patch(session, before.id, changes, expected_version=before.version)
        context.record = updated
        if self.mutation_listener is not None:
            self.mutation_listener(session, context, before, updated)

    # Child records

    def _create_task(self, session: Session, action: CreateTaskAction, context: ExecutionContext) -> ActionResult:
        record = context.record
        values = {
            "title": render_template(action.title, record),
            "body": render_template(action.description, record),
            "assigned_to": resolve_user_reference(action.assigned_to, record),
            "due_at": utcnow() + timedelta(days=action.due_in_days),
            "priority": action.priority,
            "created_by": context.actor_id,
        }
        return self._create_child(session, action, context, "task", values)

    def _create_activity(
        self,
        session: Session,
        action: CreateActivityAction,
        context: ExecutionContext,
    ) -> ActionResult:
        record = context.record
        due_at = None
        if action.due_in_days is not None or action.due_in_hours is not None:
            due_at = utcnow() + timedelta(days=action.due_in_days or 0, hours=action.due_in_hours or 0)
        values = {
            "title": render_template(action.title, record),
            "body": render_template(action.description, record),
            "assigned_to": resolve_user_reference(action.assigned_to, record),
            "due_at": due_at,
            "activity_type": action.activity_type,
            "priority": action.priority,
            "call_type": action.call_type,
            "meeting_type": action.meeting_type,
            "meeting_location": action.meeting_location,
            "attendees": list(action.attendees),
            "created_by": context.actor_id,
        }
        return self._create_child(session, action, context, "activity", values)

    def _add_note(self, session: Session, action: AddNoteAction, context: ExecutionContext) -> ActionResult:
        values = {
            "body": render_template(action.body, context.record),
            "is_pinned": action.is_pinned,
            "created_by": context.actor_id,
        }
        return self._create_child(session, action, context, "note", values)

    def _create_enrollment_draft(
        self,
        session: Session,
        action: CreateEnrollmentDraftAction,
        context: ExecutionContext,
    ) -> ActionResult:
        if not action.explicit:
            raise ActionConfigurationError("create_enrollment_draft requires explicit=true")
        values = {
            "title": f"Enrollment draft {action.plan_id}" if action.plan_id else "Enrollment draft",
            "plan_id": action.plan_id,
            "effective_date": action.effective_date.isoformat() if action.effective_date else None,
            "additional_data": dict(action.additional_data),
            "created_by": context.actor_id,
        }
        return self._create_child(session, action, context, "enrollment_draft", values)

    def _create_child(
        self,
        session: Session,
        action: WorkflowAction,
        context: ExecutionContext,
        kind: str,
        values: dict[str, Any],
    ) -> ActionResult:
        output = {key: _jsonable(value) for key, value in values.items() if value is not None}
        if context.dry_run:
            return self._planned(action, output)
        child_id = self.record_store.create_child(session, context.record.id, kind, values)
        return ActionResult(
            action_id=action.id,
            type=action.type,
            status="success",
            output={**output, "child_id": str(child_id)},
            side_effect_ref=str(child_id),
        )

    # Cadence

    def _start_cadence(self, session: Session, action: StartCadenceAction, context: ExecutionContext) -> ActionResult:
        output = {"cadence_id": str(action.cadence_id)}
        if context.dry_run:
            return self._planned(action, output)
        if self.cadence_engine is None:
            raise ActionConfigurationError("cadence engine is not configured")
        enrollment = self.cadence_engine.enroll_in_cadence(
            session,
            action.cadence_id,
            context.record.id,
            enrolled_by=context.actor_id,
        )
        return ActionResult(
            action_id=action.id,
            type=action.type,
            status="success",
            output={**output, "enrollment_id": str(enrollment.id)},
            side_effect_ref=str(enrollment.id),
        )

    def _stop_cadence(self, session: Session, action: StopCadenceAction, context: ExecutionContext) -> ActionResult:
        output = {"cadence_id": str(action.cadence_id) if action.cadence_id else None}
        if context.dry_run:
            return self._planned(action, output)
        if self.cadence_engine is None:
            raise ActionConfigurationError("cadence engine is not configured")
        stopped = self.cadence_engine.unenroll_from_cadence(
            session,
            context.record.id,
            cadence_id=action.cadence_id,
            reason="stopped_by_workflow",
        )
        return ActionResult(
            action_id=action.id,
            type=action.type,
            status="success",
            output={**output, "stopped": stopped},
        )

    # Messages

    def _notify(self, session: Session, action: NotifyAction, context: ExecutionContext) -> ActionResult:
        record = context.record
        recipients = [resolve_user_reference(item, record) for item in action.recipients]
        recipients = [item for item in dict.fromkeys(recipients) if item]
        title = render_template(action.title, record)
        body = render_template(action.body, record)
        output: dict[str, Any] = {"recipients": recipients, "title": title}
        if context.dry_run:
            return self._planned(action, output)
        if not recipients:
            raise ActionConfigurationError("notify resolved no recipients")

        message_ids = []
        for recipient in recipients:
            dispatched = self.dispatcher.dispatch_message(
                session,
                "in_app",
                MessageRequest(
                    recipient=recipient,
                    subject=title,
                    body=body,
                    record_id=record.id,
                    metadata={"href": action.href} if action.href else {},
                ),
            )
            if not dispatched.success:
                raise AutomationError(f"notification to {recipient} failed: {dispatched.error}")
            message_ids.append(dispatched.message_id)
        return ActionResult(
            action_id=action.id,
            type=action.type,
            status="success",
            output={**output, "message_ids": message_ids},
            side_effect_ref=message_ids[0] if message_ids else None,
        )

    def _send_email(self, session: Session, action: SendEmailAction, context: ExecutionContext) -> ActionResult:
        record = context.record
        recipient = self._message_recipient(action.to, record, "email")
        request = MessageRequest(
            recipient=recipient or "",
            subject=render_template(action.subject, record),
            body=render_template(action.body, record),
            template_id=action.template_id,
            record_id=record.id,
        )
        return self._send_message(session, action, context, "email", request)

    def _send_sms(self, session: Session, action: SendSmsAction, context: ExecutionContext) -> ActionResult:
        record = context.record
        recipient = self._message_recipient(action.to, record, "phone")
        request = MessageRequest(
            recipient=recipient or "",
            body=render_template(action.body, record),
            template_id=action.template_id,
            record_id=record.id,
        )
        return self._send_message(session, action, context, "sms", request)

    def _message_recipient(self, to: str | None, record: RecordSnapshot, default_field: str) -> str | None:
        if to:
            return resolve_user_reference(to, record)
        value = get_field_value(record, default_field)
        return str(value) if value else None

    def _send_message(
        self,
        session: Session,
        action: WorkflowAction,
        context: ExecutionContext,
        channel: str,
        request: MessageRequest,
    ) -> ActionResult:
        output = {"channel": channel, "recipient": request.recipient, "template_id": request.template_id}
        if context.dry_run:
            return self._planned(action, output)
        if not request.recipient:
            raise ActionConfigurationError(f"{action.type} has no recipient")
        dispatched = self.dispatcher.dispatch_message(session, channel, request)
        if not dispatched.success:
            raise AutomationError(dispatched.error or f"{channel} dispatch failed")
        return ActionResult(
            action_id=action.id,
            type=action.type,
            status="success",
            output={**output, "message_id": dispatched.message_id},
            side_effect_ref=dispatched.message_id,
        )

    # Deferred work

    def _delay_wait(self, session: Session, action: DelayWaitAction, context: ExecutionContext) -> ActionResult:
        run_at = self._delay_until(action, context.record)
        remaining = dump_actions(context.pending_actions)
        output: dict[str, Any] = {"run_at": run_at.isoformat(), "remaining_actions": len(remaining)}
        if context.dry_run:
            planned = self._planned(action, output)
            planned.terminates_run = True
            return planned
        if self.scheduler is None:
            raise ActionConfigurationError("scheduler is not configured")

        job = self.scheduler.schedule_job(
            session,
            "workflow_delay",
            {
                "workflow_id": str(context.workflow_id) if context.workflow_id else None,
                "record_id": str(context.record.id),
                "source": context.source,
                "actions": remaining,
                "parent_run_id": str(context.run_id) if context.run_id else None,
                "actions_consumed": context.budget.consumed,
                "max_actions": context.budget.max_actions,
                "actor_id": context.actor_id,
                "depth": context.depth,
            },
            run_at,
            record_id=context.record.id,
        )
        return ActionResult(
            action_id=action.id,
            type=action.type,
            status="success",
            output={**output, "delayed_job_id": str(job.id)},
            side_effect_ref=str(job.id),
            terminates_run=True,
        )

    def _delay_until(self, action: DelayWaitAction, record: RecordSnapshot) -> datetime:
        offset = timedelta(seconds=action.total_seconds())
        if action.delay_type == "fixed":
            return utcnow() + offset
        anchor = _coerce_datetime(get_field_value(record, action.delay_field or ""))
        if anchor is None:
            raise ActionConfigurationError(f"delay field {action.delay_field} is not a date")
        return anchor + offset

    def _post_webhook(self, session: Session, action: PostWebhookAction, context: ExecutionContext) -> ActionResult:
        record = context.record
        body: dict[str, Any] = {
            "workflow_id": str(context.workflow_id) if context.workflow_id else None,
            "run_id": str(context.run_id) if context.run_id else None,
            "record_id": str(record.id),
            "trigger_type": context.trigger_type,
        }
        if action.include_record:
            body["record"] = {key: _jsonable(value) for key, value in record.as_context().items()}
        if action.body_template:
            body["message"] = render_template(action.body_template, record)
        output: dict[str, Any] = {"url": action.url, "method": action.method}
        if context.dry_run:
            return self._planned(action, output)

        try:
            response = self.webhook_poster.post(
                action.url,
                action.method,
                dict(action.headers),
                body,
                default_webhook_timeout(),
            )
            error = None if response.ok else f"webhook returned {response.status_code}"
            output["status_code"] = response.status_code
        except Exception as exc:
            error = f"webhook request failed: {exc}"

        if error is None:
            return ActionResult(action_id=action.id, type=action.type, status="success", output=output)

        if action.retry_on_failure and self.scheduler is not None:
            job = self.scheduler.schedule_job(
                session,
                "workflow_retry",
                {
                    "workflow_id": str(context.workflow_id) if context.workflow_id else None,
                    "record_id": str(record.id),
                    "action": action.model_dump(mode="json"),
                    "parent_run_id": str(context.run_id) if context.run_id else None,
                    "actions_consumed": context.budget.consumed,
                    "max_actions": context.budget.max_actions,
                    "actor_id": context.actor_id,
                },
                record_id=record.id,
            )
            output["retry_job_id"] = str(job.id)
        logger.warning(
            "automation.webhook.failed",
            extra={"record_id": str(record.id), "error": error, "status": "retry" if "retry_job_id" in output else None},
        )
        return ActionResult(
            action_id=action.id,
            type=action.type,
            status="failed",
            output=output,
            error=error,
            side_effect_ref=output.get("retry_job_id"),
        )

    def _planned(self, action: WorkflowAction, output: dict[str, Any]) -> ActionResult:
        return ActionResult(
            action_id=action.id,
            type=action.type,
            status="success",
            output={**output, "dry_run": True},
        )


def _coerce_datetime(value: Any) -> datetime | None:
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, date):
        parsed = datetime.combine(value, time.min)
    elif isinstance(value, str):
        try:
            parsed = datetime.fromisoformat(value)
        except ValueError:
            return None
    else:
        return None
    return parsed if parsed.tzinfo is not None else parsed.replace(tzinfo=timezone.utc)


def _jsonable(value: Any) -> Any:
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, uuid.UUID):
        return str(value)
    return value
