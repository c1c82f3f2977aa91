from __future__ import annotations

import logging
import uuid
from datetime import datetime
from functools import lru_cache
from typing import Any

from sqlalchemy.orm import Session

from crm_automation.audit import InProcessAuditSink
from crm_automation.automation.actions import ActionExecutor
from crm_automation.automation.approvals import ApprovalEngine
from crm_automation.automation.assignment import AssignmentEngine
from crm_automation.automation.blueprints import TransitionEngine
from crm_automation.automation.cadence import CadenceEngine
from crm_automation.automation.definitions import DefinitionService
from crm_automation.automation.errors import AutomationNotFoundError
from crm_automation.automation.models import CadenceEnrollment, SchedulerJob
from crm_automation.automation.ports import (
    AuditSink,
    HttpxWebhookPoster,
    MessageDispatcher,
    OutboxDispatcher,
    SqlRecordStore,
    WebhookPoster,
)
from crm_automation.automation.scheduler import Scheduler
from crm_automation.automation.schemas import AutomationRunResult, JobType, RecordSnapshot
from crm_automation.automation.workflows import WorkflowEngine


logger = logging.getLogger("crm_automation.automation.runtime")


class AutomationRuntime:
    """Wires the engines together and owns transaction boundaries for direct callers."""

    def __init__(
        self,
        *,
        record_store: SqlRecordStore | None = None,
        dispatcher: MessageDispatcher | None = None,
        webhook_poster: WebhookPoster | None = None,
        audit_sink: AuditSink | None = None,
    ) -> None:
        self.record_store = record_store or SqlRecordStore()
        self.dispatcher = dispatcher or OutboxDispatcher()
        self.webhook_poster = webhook_poster or HttpxWebhookPoster()
        self.audit_sink = audit_sink or InProcessAuditSink()

        self.scheduler = Scheduler()
        self.assignment = AssignmentEngine(self.record_store)
        self.executor = ActionExecutor(
            self.record_store,
            self.dispatcher,
            self.webhook_poster,
            self.audit_sink,
            self.assignment,
        )
        self.workflows = WorkflowEngine(self.executor, self.record_store, self.audit_sink, self.scheduler)
        self.cadences = CadenceEngine(self.scheduler, self.workflows, self.record_store, self.audit_sink)
        self.approvals = ApprovalEngine(
            self.workflows,
            self.assignment,
            self.record_store,
            self.dispatcher,
            self.audit_sink,
        )
        self.transitions = TransitionEngine(self.workflows, self.record_store, self.audit_sink)
        self.definitions = DefinitionService(self.audit_sink)

        self.executor.cadence_engine = self.cadences
        self.executor.scheduler = self.scheduler
        self.transitions.approval_engine = self.approvals
        self.approvals.transition_engine = self.transitions

        self.scheduler.register_handler("workflow_delay", self.workflows.resume_delayed_run)
        self.scheduler.register_handler("workflow_retry", self.workflows.retry_action)
        self.scheduler.register_handler("workflow_scheduled", self.workflows.run_scheduled_workflow)
        self.scheduler.register_handler("cadence_step", self.cadences.process_due_step)

    # Record lifecycle

    def create_record(
        self,
        session: Session,
        module: str,
        *,
        title: str | None = None,
        owner_id: str | None = None,
        stage: str | None = None,
        fields: dict[str, Any] | None = None,
        actor_id: str | None = None,
    ) -> tuple[RecordSnapshot, list[AutomationRunResult]]:
        record = self.record_store.create(
            session,
            module,
            title=title,
            owner_id=owner_id,
            stage=stage,
            fields=fields,
            created_by=actor_id,
        )
        session.commit()
        runs = self.workflows.execute_matching_workflows(session, "on_create", record)
        return self.record_store.get(session, record.id) or record, runs

    def update_record(
        self,
        session: Session,
        record_id: uuid.UUID,
        changes: dict[str, Any],
        *,
        actor_id: str | None = None,
    ) -> tuple[RecordSnapshot, list[AutomationRunResult]]:
        before = self.record_store.get(session, record_id)
        if before is None:
            raise AutomationNotFoundError("crm_record", record_id)
        after = self.record_store.patch(session, record_id, changes, expected_version=before.version)
        session.commit()

        runs = self.workflows.execute_matching_workflows(session, "on_update", after, previous_state=before)
        current = self.record_store.get(session, record_id) or after
        runs.extend(
            self.workflows.execute_matching_workflows(
                session,
                "on_update_field_changed",
                current,
                previous_state=before,
            )
        )
        return self.record_store.get(session, record_id) or current, runs

    # Cadence

    def enroll_in_cadence(
        self,
        session: Session,
        cadence_id: uuid.UUID,
        record_id: uuid.UUID,
        *,
        enrolled_by: str | None = None,
    ) -> CadenceEnrollment:
        enrollment = self.cadences.enroll_in_cadence(session, cadence_id, record_id, enrolled_by=enrolled_by)
        session.commit()
        return enrollment

    def unenroll_from_cadence(
        self,
        session: Session,
        record_id: uuid.UUID,
        *,
        cadence_id: uuid.UUID | None = None,
        actor_id: str | None = None,
    ) -> int:
        stopped = self.cadences.unenroll_from_cadence(
            session,
            record_id,
            cadence_id=cadence_id,
            reason="manual",
            actor_id=actor_id,
        )
        session.commit()
        return stopped

    def pause_enrollment(self, session: Session, enrollment_id: uuid.UUID, *, actor_id: str | None = None) -> CadenceEnrollment:
        enrollment = self.cadences.pause_enrollment(session, enrollment_id, actor_id=actor_id)
        session.commit()
        return enrollment

    def resume_enrollment(self, session: Session, enrollment_id: uuid.UUID, *, actor_id: str | None = None) -> CadenceEnrollment:
        enrollment = self.cadences.resume_enrollment(session, enrollment_id, actor_id=actor_id)
        session.commit()
        return enrollment

    # Scheduler

    def schedule_job(
        self,
        session: Session,
        job_type: JobType,
        payload: dict[str, Any],
        run_at: datetime | None = None,
        **options: Any,
    ) -> SchedulerJob:
        job = self.scheduler.schedule_job(session, job_type, payload, run_at, **options)
        session.commit()
        return job

    def cancel_job(self, session: Session, job_id: uuid.UUID) -> bool:
        cancelled = self.scheduler.cancel_job(session, job_id)
        session.commit()
        return cancelled

    def run_scheduler_sweep(self, session: Session, now: datetime | None = None) -> dict[str, Any]:
        """One background tick: queue due scheduled workflows, expire approvals, then drain due jobs."""
        scheduled = self.workflows.schedule_due_workflows(session, now)
        expired = self.approvals.expire_stale_approvals(session, now)
        sweep = self.scheduler.process_scheduled_jobs(session, now)
        logger.info(
            "scheduler.sweep",
            extra={
                "status": f"scheduled={len(scheduled)} expired={expired} claimed={sweep.claimed}",
            },
        )
        return {
            "scheduled_workflows": len(scheduled),
            "expired_approvals": expired,
            "jobs": sweep.model_dump(mode="json"),
        }


@lru_cache
def get_runtime() -> AutomationRuntime:
    return AutomationRuntime()
