from __future__ import annotations

import hashlib
import json
import logging
import uuid
from collections.abc import Sequence
from datetime import datetime, timedelta
from typing import Any

from opentelemetry import trace
from sqlalchemy import and_, select
from sqlalchemy.orm import Session

from crm_automation import events
from crm_automation.automation.actions import ActionExecutor
from crm_automation.automation.conditions import evaluate_conditions, get_field_value, referenced_fields
from crm_automation.automation.errors import AutomationNotFoundError, JobExecutionError, WorkflowLimitExceededError
from crm_automation.automation.models import (
    AutomationIdempotencyKey,
    AutomationRun,
    AutomationWorkflow,
    SchedulerJob,
    as_utc,
    utcnow,
)
from crm_automation.automation.ports import AuditSink, RecordStore
from crm_automation.automation.scheduler import Scheduler
from crm_automation.automation.schemas import (
    SYSTEM_FIELDS,
    ActionResult,
    AutomationRunResult,
    ExecutionContext,
    PostWebhookAction,
    RecordSnapshot,
    RunBudget,
    WorkflowAction,
    WorkflowDefinition,
    parse_actions,
    workflow_action_adapter,
)
from crm_automation.context import get_correlation_id, reset_automation_run_id, set_automation_run_id
from crm_automation.core.config import get_settings
from crm_automation.metrics import observe_run, observe_workflow_guardrail_block


logger = logging.getLogger("crm_automation.automation.workflows")
tracer = trace.get_tracer("crm_automation.automation.workflows")

COOLDOWN_ENDPOINT = "automation.workflow.cooldown"
DEFAULT_SCHEDULE_INTERVAL_MINUTES = 60


class WorkflowEngine:
    def __init__(
        self,
        executor: ActionExecutor,
        record_store: RecordStore,
        audit_sink: AuditSink,
        scheduler: Scheduler,
    ) -> None:
        self.executor = executor
        self.record_store = record_store
        self.audit_sink = audit_sink
        self.scheduler = scheduler
        executor.mutation_listener = self._on_record_mutated

    def new_context(
        self,
        record: RecordSnapshot,
        trigger_type: str,
        *,
        previous_record: RecordSnapshot | None = None,
        actor_id: str | None = None,
        dry_run: bool = False,
        source: str = "workflow",
        idempotency_key: str | None = None,
        max_actions: int | None = None,
    ) -> ExecutionContext:
        return ExecutionContext(
            record=record,
            trigger_type=trigger_type,
            budget=RunBudget(max_actions=max_actions or get_settings().automation_max_actions_per_run),
            previous_record=previous_record,
            actor_id=actor_id,
            dry_run=dry_run,
            source=source,
            idempotency_key=idempotency_key,
        )

    def list_workflows(self, session: Session, module: str, trigger_type: str) -> list[AutomationWorkflow]:
        return list(
            session.scalars(
                select(AutomationWorkflow)
                .where(
                    AutomationWorkflow.module == module,
                    AutomationWorkflow.trigger_type == trigger_type,
                    AutomationWorkflow.is_enabled.is_(True),
                )
                .order_by(AutomationWorkflow.priority.desc(), AutomationWorkflow.created_at.asc())
            ).all()
        )

    def execute_matching_workflows(
        self,
        session: Session,
        trigger_type: str,
        record: RecordSnapshot,
        previous_state: RecordSnapshot | None = None,
        context: ExecutionContext | None = None,
    ) -> list[AutomationRunResult]:
        """Run every enabled workflow of ``record.module`` bound to ``trigger_type`` whose conditions match.

        With a parent ``context`` the runs join its chain and share its action budget; otherwise
        each workflow gets a fresh budget. Processing stops after the first failed or capped run.
        """
        results: list[AutomationRunResult] = []
        current = record
        for row in self.list_workflows(session, record.module, trigger_type):
            workflow = WorkflowDefinition.from_model(row)
            if trigger_type == "on_update_field_changed" and not self._watched_field_changed(
                workflow, current, previous_state
            ):
                continue
            if not evaluate_conditions(workflow.conditions, current, previous_state):
                continue

            if context is not None:
                run_context = context.child(record=current, trigger_type=trigger_type, previous_record=previous_state)
            else:
                run_context = self.new_context(current, trigger_type, previous_record=previous_state)

            result = self.execute_workflow(session, workflow, current, run_context)
            results.append(result)
            if result.status in {"failed", "capped"}:
                break
            if not run_context.dry_run:
                current = self.record_store.get(session, record.id) or current
        return results

    def execute_workflow(
        self,
        session: Session,
        workflow: WorkflowDefinition | AutomationWorkflow,
        record: RecordSnapshot,
        context: ExecutionContext | None = None,
    ) -> AutomationRunResult:
        if isinstance(workflow, AutomationWorkflow):
            workflow = WorkflowDefinition.from_model(workflow)
        if context is None:
            context = self.new_context(record, "manual")
        context.record = record
        context.workflow_id = workflow.id

        if not workflow.is_enabled:
            return self._skipped(workflow, record, "workflow_disabled")

        if context.idempotency_key:
            existing = session.scalar(
                select(AutomationRun).where(AutomationRun.idempotency_key == context.idempotency_key)
            )
            if existing is not None:
                result = self._skipped(workflow, record, "duplicate_idempotency_key")
                result.run_id = existing.id
                return result

        if not context.dry_run and self._cooldown_blocked(session, workflow, record, context):
            return self._skipped(workflow, record, "COOLDOWN")

        if context.parent_run_id is None and workflow.run_count_cap:
            context.budget.max_actions = min(context.budget.max_actions, workflow.run_count_cap)

        return self.run_actions(
            session,
            workflow.actions,
            context,
            halt_on_failure=workflow.halt_on_failure,
        )

    def run_actions(
        self,
        session: Session,
        actions: Sequence[WorkflowAction],
        context: ExecutionContext,
        *,
        halt_on_failure: bool = True,
    ) -> AutomationRunResult:
        """Execute ``actions`` in order as one persisted run.

        The run row is committed when it opens and after every action. When the shared budget is
        exhausted the run finishes as ``capped``; nested runs re-raise so every run up the chain is
        capped too, and the root run returns the capped result.
        """
        run = AutomationRun(
            workflow_id=context.workflow_id,
            source=context.source,
            trigger_type=context.trigger_type,
            record_id=context.record.id,
            status="running",
            is_dry_run=context.dry_run,
            idempotency_key=context.idempotency_key,
            parent_run_id=context.parent_run_id,
            depth=context.depth,
            correlation_id=get_correlation_id(),
        )
        session.add(run)
        session.commit()
        run_id = run.id
        context.run_id = run_id
        consumed_before = context.budget.consumed

        executed: list[ActionResult] = []
        status = "completed"
        error: str | None = None
        output: dict[str, Any] = {}
        delayed_job_id: str | None = None

        token = set_automation_run_id(str(run_id))
        try:
            with tracer.start_as_current_span(
                "automation.run",
                attributes={
                    "automation.run_id": str(run_id),
                    "automation.source": context.source,
                    "automation.trigger_type": context.trigger_type,
                    "automation.depth": context.depth,
                },
            ) as span:
                try:
                    for index, action in enumerate(actions):
                        context.pending_actions = list(actions[index + 1 :])
                        result = self.executor.execute(session, action, context)
                        executed.append(result)
                        self._checkpoint(session, run_id, executed, context.budget.consumed - consumed_before)
                        if result.status == "failed":
                            status = "failed"
                            error = error or result.error
                            if halt_on_failure:
                                break
                        if result.terminates_run:
                            delayed_job_id = result.output.get("delayed_job_id")
                            output["delayed_job_id"] = delayed_job_id
                            break
                except WorkflowLimitExceededError as exc:
                    session.rollback()
                    status = "capped"
                    error = exc.code
                    innermost = exc.summary.setdefault("capped_run_id", str(run_id)) == str(run_id)
                    output["limit"] = dict(exc.summary)
                    self._finish(session, run_id, context, status, executed, consumed_before, error, output)
                    span.set_attribute("automation.status", status)
                    if innermost:
                        self._record_cap(context, exc)
                    if context.parent_run_id is not None:
                        raise
                    return self._result(run_id, context, status, executed, error, delayed_job_id)

                self._finish(session, run_id, context, status, executed, consumed_before, error, output)
                span.set_attribute("automation.status", status)
        finally:
            reset_automation_run_id(token)

        return self._result(run_id, context, status, executed, error, delayed_job_id)

    def _checkpoint(self, session: Session, run_id: uuid.UUID, executed: list[ActionResult], consumed: int) -> None:
        run = session.get(AutomationRun, run_id)
        if run is None:
            raise AutomationNotFoundError("automation_run", run_id)
        run.actions_executed = [item.model_dump(mode="json") for item in executed]
        run.actions_consumed = consumed
        session.add(run)
        session.commit()

    def _finish(
        self,
        session: Session,
        run_id: uuid.UUID,
        context: ExecutionContext,
        status: str,
        executed: list[ActionResult],
        consumed_before: int,
        error: str | None,
        output: dict[str, Any],
    ) -> None:
        run = session.get(AutomationRun, run_id)
        if run is None:
            raise AutomationNotFoundError("automation_run", run_id)
        run.status = status
        run.error = error
        run.output_json = output
        run.actions_executed = [item.model_dump(mode="json") for item in executed]
        run.actions_consumed = context.budget.consumed - consumed_before
        run.finished_at = utcnow()
        session.add(run)
        session.commit()

        observe_run(context.source, status)
        logger.info(
            "automation.run.finished",
            extra={
                "run_id": str(run_id),
                "workflow_id": str(context.workflow_id) if context.workflow_id else None,
                "record_id": str(context.record.id),
                "status": status,
                "actions_consumed": context.budget.consumed,
                "max_actions": context.budget.max_actions,
            },
        )
        self.audit_sink.record(
            actor_user_id=context.actor_id or "automation",
            entity_type="automation.run",
            entity_id=str(run_id),
            action="automation.run.dry_run" if context.dry_run else "automation.run.finished",
            before=None,
            after={
                "status": status,
                "source": context.source,
                "workflow_id": str(context.workflow_id) if context.workflow_id else None,
                "record_id": str(context.record.id),
                "action_count": len(executed),
                "depth": context.depth,
            },
        )
        if context.dry_run:
            return
        events.publish(
            {
                "event_type": "automation.run.finished",
                "actor_user_id": context.actor_id,
                "version": 1,
                "payload": {
                    "run_id": str(run_id),
                    "workflow_id": str(context.workflow_id) if context.workflow_id else None,
                    "record_id": str(context.record.id),
                    "source": context.source,
                    "status": status,
                },
            }
        )

    def _record_cap(self, context: ExecutionContext, exc: WorkflowLimitExceededError) -> None:
        reason = str(exc.summary.get("reason") or "MAX_ACTIONS")
        logger.warning(
            "workflow_guardrail_blocked",
            extra={
                "reason": reason,
                "workflow_id": str(context.workflow_id) if context.workflow_id else None,
                "record_id": str(context.record.id),
                "actions_consumed": exc.summary.get("actions_consumed"),
                "max_actions": exc.summary.get("max_actions"),
            },
        )
        observe_workflow_guardrail_block(reason)
        self.audit_sink.record(
            actor_user_id=context.actor_id or "automation",
            entity_type="automation.workflow",
            entity_id=str(context.workflow_id or context.record.id),
            action="workflow.blocked",
            before=None,
            after={**exc.summary, "record_id": str(context.record.id), "depth": context.depth},
        )

    def _result(
        self,
        run_id: uuid.UUID,
        context: ExecutionContext,
        status: str,
        executed: list[ActionResult],
        error: str | None,
        delayed_job_id: str | None,
    ) -> AutomationRunResult:
        return AutomationRunResult(
            run_id=run_id,
            workflow_id=context.workflow_id,
            record_id=context.record.id,
            status=status,
            actions_executed=executed,
            error=error,
            delayed_job_id=uuid.UUID(delayed_job_id) if delayed_job_id else None,
        )

    def _skipped(self, workflow: WorkflowDefinition, record: RecordSnapshot, reason: str) -> AutomationRunResult:
        logger.info(
            "automation.run.skipped",
            extra={"workflow_id": str(workflow.id), "record_id": str(record.id), "reason": reason},
        )
        return AutomationRunResult(
            workflow_id=workflow.id,
            record_id=record.id,
            status="skipped",
            reason=reason,
        )

    def _watched_field_changed(
        self,
        workflow: WorkflowDefinition,
        record: RecordSnapshot,
        previous: RecordSnapshot | None,
    ) -> bool:
        if previous is None:
            return False
        fields = workflow.trigger_config.get("watch_fields") or referenced_fields(workflow.conditions)
        if not fields:
            fields = sorted(set(record.fields) | set(previous.fields) | SYSTEM_FIELDS)
        return any(get_field_value(record, path) != get_field_value(previous, path) for path in fields)

    def _cooldown_blocked(
        self,
        session: Session,
        workflow: WorkflowDefinition,
        record: RecordSnapshot,
        context: ExecutionContext,
    ) -> bool:
        if not workflow.cooldown_seconds:
            return False

        cooldown_seconds = int(workflow.cooldown_seconds)
        time_bucket = int(utcnow().timestamp() // cooldown_seconds)
        cooldown_key = f"{workflow.id}:{record.id}:{time_bucket}"
        existing = session.scalar(
            select(AutomationIdempotencyKey).where(
                and_(
                    AutomationIdempotencyKey.endpoint == COOLDOWN_ENDPOINT,
                    AutomationIdempotencyKey.key == cooldown_key,
                )
            )
        )
        if existing is None:
            session.add(
                AutomationIdempotencyKey(
                    endpoint=COOLDOWN_ENDPOINT,
                    key=cooldown_key,
                    request_hash=hashlib.sha256(cooldown_key.encode("utf-8")).hexdigest(),
                    response_json=json.dumps({"workflow_id": str(workflow.id), "record_id": str(record.id)}),
                )
            )
            session.flush()
            return False

        logger.warning(
            "workflow_guardrail_blocked",
            extra={
                "reason": "COOLDOWN",
                "workflow_id": str(workflow.id),
                "record_id": str(record.id),
            },
        )
        observe_workflow_guardrail_block("COOLDOWN")
        self.audit_sink.record(
            actor_user_id=context.actor_id or "automation",
            entity_type="automation.workflow",
            entity_id=str(workflow.id),
            action="workflow.blocked",
            before=None,
            after={
                "reason": "COOLDOWN",
                "record_id": str(record.id),
                "cooldown_seconds": cooldown_seconds,
                "time_bucket": time_bucket,
            },
        )
        return True

    def _on_record_mutated(
        self,
        session: Session,
        context: ExecutionContext,
        before: RecordSnapshot,
        after: RecordSnapshot,
    ) -> None:
        changed = sorted(
            key
            for key in set(before.fields) | set(after.fields) | SYSTEM_FIELDS
            if get_field_value(before, key) != get_field_value(after, key)
        )
        events.publish(
            {
                "event_type": "crm.record.updated",
                "actor_user_id": context.actor_id,
                "version": 1,
                "payload": {
                    "record_id": str(after.id),
                    "module": after.module,
                    "changed_fields": changed,
                    "row_version": after.version,
                },
            }
        )
        for trigger_type in ("on_update", "on_update_field_changed"):
            self.execute_matching_workflows(session, trigger_type, after, previous_state=before, context=context)
        context.record = self.record_store.get(session, after.id) or after

    # Scheduler job handlers

    def resume_delayed_run(self, session: Session, job: SchedulerJob) -> dict[str, Any]:
        payload = job.payload_json or {}
        record = self.record_store.get(session, uuid.UUID(str(payload["record_id"])))
        if record is None:
            return {"discarded": "record_not_found"}

        halt_on_failure = True
        workflow_id = _optional_uuid(payload.get("workflow_id"))
        if workflow_id is not None:
            row = session.get(AutomationWorkflow, workflow_id)
            if row is None or not row.is_enabled:
                return {"discarded": "workflow_unavailable"}
            halt_on_failure = row.halt_on_failure

        context = ExecutionContext(
            record=record,
            trigger_type="delayed",
            budget=RunBudget(
                max_actions=int(payload.get("max_actions") or get_settings().automation_max_actions_per_run),
                consumed=int(payload.get("actions_consumed") or 0),
            ),
            actor_id=payload.get("actor_id"),
            source=str(payload.get("source") or "workflow"),
            workflow_id=workflow_id,
            depth=int(payload.get("depth") or 0),
        )
        result = self.run_actions(
            session,
            parse_actions(payload.get("actions")),
            context,
            halt_on_failure=halt_on_failure,
        )
        self._link_parent(session, result.run_id, payload.get("parent_run_id"))
        return {"run_id": str(result.run_id), "status": result.status}

    def retry_action(self, session: Session, job: SchedulerJob) -> dict[str, Any]:
        payload = job.payload_json or {}
        record = self.record_store.get(session, uuid.UUID(str(payload["record_id"])))
        if record is None:
            return {"discarded": "record_not_found"}

        action = workflow_action_adapter.validate_python(payload["action"])
        if isinstance(action, PostWebhookAction):
            action = action.model_copy(update={"retry_on_failure": False})

        context = ExecutionContext(
            record=record,
            trigger_type="retry",
            budget=RunBudget(
                max_actions=int(payload.get("max_actions") or get_settings().automation_max_actions_per_run),
                consumed=int(payload.get("actions_consumed") or 0),
            ),
            actor_id=payload.get("actor_id"),
            workflow_id=_optional_uuid(payload.get("workflow_id")),
        )
        result = self.run_actions(session, [action], context)
        self._link_parent(session, result.run_id, payload.get("parent_run_id"))
        if result.status != "completed":
            raise JobExecutionError(result.error or f"retry of {action.type} ended {result.status}")
        return {"run_id": str(result.run_id), "status": result.status}

    def run_scheduled_workflow(self, session: Session, job: SchedulerJob) -> dict[str, Any]:
        payload = job.payload_json or {}
        row = session.get(AutomationWorkflow, uuid.UUID(str(payload["workflow_id"])))
        if row is None or not row.is_enabled or row.trigger_type != "scheduled":
            return {"discarded": "workflow_unavailable"}

        workflow = WorkflowDefinition.from_model(row)
        records = self.record_store.list_records(session, workflow.module, get_settings().scheduled_workflow_batch_size)
        counts = {"matched": 0, "completed": 0, "failed": 0, "skipped": 0}
        for record in records:
            if not evaluate_conditions(workflow.conditions, record):
                continue
            counts["matched"] += 1
            context = self.new_context(record, "scheduled", idempotency_key=f"scheduled:{job.id}:{record.id}")
            result = self.execute_workflow(session, workflow, record, context)
            if result.status in {"failed", "capped"}:
                counts["failed"] += 1
            elif result.status == "skipped":
                counts["skipped"] += 1
            else:
                counts["completed"] += 1
        return counts

    def schedule_due_workflows(self, session: Session, now: datetime | None = None) -> list[uuid.UUID]:
        """Queue a ``workflow_scheduled`` job for every scheduled workflow whose interval has elapsed."""
        current = now or utcnow()
        rows = session.scalars(
            select(AutomationWorkflow).where(
                AutomationWorkflow.trigger_type == "scheduled",
                AutomationWorkflow.is_enabled.is_(True),
            )
        ).all()

        job_ids: list[uuid.UUID] = []
        for row in rows:
            interval = int((row.trigger_config or {}).get("interval_minutes") or DEFAULT_SCHEDULE_INTERVAL_MINUTES)
            last = as_utc(row.last_scheduled_at)
            if last is not None and current - last < timedelta(minutes=interval):
                continue
            bucket = int(current.timestamp() // (interval * 60))
            job = self.scheduler.schedule_job(
                session,
                "workflow_scheduled",
                {"workflow_id": str(row.id)},
                current,
                idempotency_key=f"workflow_scheduled:{row.id}:{bucket}",
            )
            row.last_scheduled_at = current
            session.add(row)
            job_ids.append(job.id)

        session.commit()
        return job_ids

    def _link_parent(self, session: Session, run_id: uuid.UUID | None, parent_run_id: Any) -> None:
        parent = _optional_uuid(parent_run_id)
        if run_id is None or parent is None:
            return
        run = session.get(AutomationRun, run_id)
        if run is not None:
            run.parent_run_id = parent
            session.add(run)
            session.commit()


def _optional_uuid(value: Any) -> uuid.UUID | None:
    if value in (None, ""):
        return None
    try:
        return uuid.UUID(str(value))
    except ValueError:
        return None
