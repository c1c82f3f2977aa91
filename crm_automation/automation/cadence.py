from __future__ import annotations

import logging
import uuid
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Any

from pydantic import TypeAdapter
from sqlalchemy import select
from sqlalchemy.orm import Session

from crm_automation.automation.conditions import evaluate_conditions
from crm_automation.automation.errors import AutomationNotFoundError, CadenceEnrollmentError, JobExecutionError
from crm_automation.automation.models import Cadence, CadenceEnrollment, SchedulerJob, as_utc, utcnow
from crm_automation.automation.ports import AuditSink, RecordStore
from crm_automation.automation.scheduler import Scheduler
from crm_automation.automation.schemas import (
    CadenceStep,
    CreateActivityAction,
    CreateTaskAction,
    RecordSnapshot,
    SendEmailAction,
    WorkflowAction,
)
from crm_automation.core.config import get_settings

if TYPE_CHECKING:
    from crm_automation.automation.workflows import WorkflowEngine


logger = logging.getLogger("crm_automation.automation.cadence")

LIVE_STATUSES = ("active", "paused")

_steps_adapter = TypeAdapter(list[CadenceStep])


class CadenceEngine:
    """Enrollment state machine: ``active <-> paused``, ``active -> completed``, ``active|paused -> stopped``.

    Each step fires from exactly one ``cadence_step`` job. The enrollment remembers that job in
    ``pending_job_id``; a job that fires with any other id, or against an enrollment that is no
    longer active, is discarded without running the step.
    """

    def __init__(
        self,
        scheduler: Scheduler,
        workflow_engine: WorkflowEngine,
        record_store: RecordStore,
        audit_sink: AuditSink,
    ) -> None:
        self.scheduler = scheduler
        self.workflow_engine = workflow_engine
        self.record_store = record_store
        self.audit_sink = audit_sink

    def enroll_in_cadence(
        self,
        session: Session,
        cadence_id: uuid.UUID,
        record_id: uuid.UUID,
        *,
        enrolled_by: str | None = None,
    ) -> CadenceEnrollment:
        cadence = self._load_cadence(session, cadence_id)
        if not cadence.is_enabled:
            raise CadenceEnrollmentError(f"cadence {cadence_id} is disabled")
        steps = self._steps(cadence)
        if not steps:
            raise CadenceEnrollmentError(f"cadence {cadence_id} has no steps")

        live = session.scalar(
            select(CadenceEnrollment).where(
                CadenceEnrollment.cadence_id == cadence_id,
                CadenceEnrollment.record_id == record_id,
                CadenceEnrollment.status.in_(LIVE_STATUSES),
            )
        )
        if live is not None:
            raise CadenceEnrollmentError(f"record {record_id} is already enrolled in cadence {cadence_id}")

        enrollment = CadenceEnrollment(
            cadence_id=cadence_id,
            record_id=record_id,
            status="active",
            current_step_index=0,
            enrolled_by=enrolled_by,
        )
        session.add(enrollment)
        session.flush()
        self._schedule_step(session, enrollment, steps[0], utcnow())

        self._audit(enrollment, "cadence.enrolled", None, enrolled_by)
        logger.info(
            "cadence.enrolled",
            extra={"enrollment_id": str(enrollment.id), "record_id": str(record_id), "status": enrollment.status},
        )
        return enrollment

    def unenroll_from_cadence(
        self,
        session: Session,
        record_id: uuid.UUID,
        *,
        cadence_id: uuid.UUID | None = None,
        reason: str = "unenrolled",
        actor_id: str | None = None,
    ) -> int:
        stmt = select(CadenceEnrollment).where(
            CadenceEnrollment.record_id == record_id,
            CadenceEnrollment.status.in_(LIVE_STATUSES),
        )
        if cadence_id is not None:
            stmt = stmt.where(CadenceEnrollment.cadence_id == cadence_id)

        stopped = 0
        for enrollment in session.scalars(stmt).all():
            self._stop(session, enrollment, reason, actor_id)
            stopped += 1
        return stopped

    def pause_enrollment(
        self,
        session: Session,
        enrollment_id: uuid.UUID,
        *,
        actor_id: str | None = None,
    ) -> CadenceEnrollment:
        # the pending job stays queued; it is discarded when it fires against a paused enrollment
        enrollment = self._load_enrollment(session, enrollment_id)
        if enrollment.status != "active":
            raise CadenceEnrollmentError(f"cannot pause enrollment in status {enrollment.status}")
        before = self._state(enrollment)
        enrollment.status = "paused"
        session.add(enrollment)
        session.flush()
        self._audit(enrollment, "cadence.paused", before, actor_id)
        return enrollment

    def resume_enrollment(
        self,
        session: Session,
        enrollment_id: uuid.UUID,
        *,
        actor_id: str | None = None,
    ) -> CadenceEnrollment:
        enrollment = self._load_enrollment(session, enrollment_id)
        if enrollment.status != "paused":
            raise CadenceEnrollmentError(f"cannot resume enrollment in status {enrollment.status}")
        cadence = self._load_cadence(session, enrollment.cadence_id)
        steps = self._steps(cadence)
        before = self._state(enrollment)

        enrollment.status = "active"
        if enrollment.current_step_index >= len(steps):
            self._complete(enrollment)
        else:
            now = utcnow()
            due = as_utc(enrollment.next_step_due_at)
            run_at = due if due is not None and due > now else now
            self._schedule_step(session, enrollment, steps[enrollment.current_step_index], run_at, delay=False)
        session.add(enrollment)
        session.flush()
        self._audit(enrollment, "cadence.resumed", before, actor_id)
        return enrollment

    def get_enrollments_for_record(self, session: Session, record_id: uuid.UUID) -> list[CadenceEnrollment]:
        return list(
            session.scalars(
                select(CadenceEnrollment)
                .where(CadenceEnrollment.record_id == record_id)
                .order_by(CadenceEnrollment.created_at.asc())
            ).all()
        )

    def process_due_step(self, session: Session, job: SchedulerJob) -> dict[str, Any]:
        """Handler for ``cadence_step`` jobs."""
        job_id = job.id
        enrollment_id = uuid.UUID(str((job.payload_json or {})["enrollment_id"]))
        enrollment = session.get(CadenceEnrollment, enrollment_id)
        if enrollment is None:
            return {"discarded": "enrollment_not_found"}
        if enrollment.pending_job_id != job_id:
            return self._discard(enrollment, job_id, "stale_job")
        if enrollment.status != "active":
            return self._discard(enrollment, job_id, f"enrollment_{enrollment.status}")

        cadence = self._load_cadence(session, enrollment.cadence_id)
        steps = self._steps(cadence)
        index = enrollment.current_step_index
        if index >= len(steps):
            self._complete(enrollment)
            session.commit()
            return {"status": "completed"}

        record = self.record_store.get(session, enrollment.record_id)
        if record is None:
            self._stop(session, enrollment, "record_not_found", None)
            session.commit()
            return {"status": "stopped", "reason": "record_not_found"}

        if cadence.exit_condition_json and evaluate_conditions(cadence.exit_condition_json, record):
            self._stop(session, enrollment, "exit_condition", None)
            session.commit()
            return {"status": "stopped", "reason": "exit_condition"}

        step = steps[index]
        context = self.workflow_engine.new_context(
            record,
            "cadence_step",
            actor_id=enrollment.enrolled_by,
            source="cadence",
        )
        result = self.workflow_engine.run_actions(session, [self._step_action(step, record)], context)
        if result.status != "completed":
            raise JobExecutionError(result.error or f"cadence step {index} ended {result.status}")

        enrollment = self._load_enrollment(session, enrollment_id)
        if enrollment.status != "active" or enrollment.pending_job_id != job_id:
            session.commit()
            return {"run_id": str(result.run_id), "step_index": index, "status": enrollment.status}

        next_index = index + 1
        enrollment.current_step_index = next_index
        if next_index >= len(steps):
            self._complete(enrollment)
        else:
            self._schedule_step(session, enrollment, steps[next_index], utcnow())
        session.add(enrollment)
        session.commit()
        logger.info(
            "cadence.step.executed",
            extra={"enrollment_id": str(enrollment_id), "status": enrollment.status, "run_id": str(result.run_id)},
        )
        return {"run_id": str(result.run_id), "step_index": index, "status": enrollment.status}

    def _step_action(self, step: CadenceStep, record: RecordSnapshot) -> WorkflowAction:
        settings = get_settings()
        label = record.title or str(record.id)
        if step.type == "task":
            return CreateTaskAction(
                id=step.id,
                type="create_task",
                title=step.title or f"Follow up: {label}",
                description=step.description,
                due_in_days=settings.cadence_task_due_days,
                priority=step.priority,
                assigned_to=step.assigned_to,
            )
        if step.type == "email":
            return SendEmailAction(
                id=step.id,
                type="send_email",
                template_id=step.template_id,
                subject=step.subject,
                body=step.body,
            )
        return CreateActivityAction(
            id=step.id,
            type="create_activity",
            activity_type="call",
            title=step.title or f"Call: {label}",
            description=step.script or "Make a follow-up call",
            due_in_hours=settings.cadence_call_due_hours,
            priority="high",
            assigned_to=step.assigned_to,
            call_type="outbound",
        )

    def _schedule_step(
        self,
        session: Session,
        enrollment: CadenceEnrollment,
        step: CadenceStep,
        anchor: datetime,
        *,
        delay: bool = True,
    ) -> None:
        run_at = anchor + timedelta(days=step.delay_days, hours=step.delay_hours) if delay else anchor
        job = self.scheduler.schedule_job(
            session,
            "cadence_step",
            {"enrollment_id": str(enrollment.id), "step_index": enrollment.current_step_index},
            run_at,
            record_id=enrollment.record_id,
        )
        enrollment.pending_job_id = job.id
        enrollment.next_step_due_at = run_at
        session.add(enrollment)
        session.flush()

    def _stop(self, session: Session, enrollment: CadenceEnrollment, reason: str, actor_id: str | None) -> None:
        before = self._state(enrollment)
        if enrollment.pending_job_id is not None:
            self.scheduler.cancel_job(session, enrollment.pending_job_id)
        enrollment.status = "stopped"
        enrollment.stopped_reason = reason
        enrollment.pending_job_id = None
        enrollment.next_step_due_at = None
        session.add(enrollment)
        session.flush()
        self._audit(enrollment, "cadence.stopped", before, actor_id)
        logger.info(
            "cadence.stopped",
            extra={"enrollment_id": str(enrollment.id), "record_id": str(enrollment.record_id), "reason": reason},
        )

    def _complete(self, enrollment: CadenceEnrollment) -> None:
        enrollment.status = "completed"
        enrollment.completed_at = utcnow()
        enrollment.pending_job_id = None
        enrollment.next_step_due_at = None

    def _discard(self, enrollment: CadenceEnrollment, job_id: uuid.UUID, reason: str) -> dict[str, Any]:
        logger.info(
            "cadence.step.discarded",
            extra={"enrollment_id": str(enrollment.id), "job_id": str(job_id), "reason": reason},
        )
        return {"discarded": reason}

    def _steps(self, cadence: Cadence) -> list[CadenceStep]:
        return _steps_adapter.validate_python(cadence.steps_json or [])

    def _load_cadence(self, session: Session, cadence_id: uuid.UUID) -> Cadence:
        cadence = session.get(Cadence, cadence_id)
        if cadence is None:
            raise AutomationNotFoundError("cadence", cadence_id)
        return cadence

    def _load_enrollment(self, session: Session, enrollment_id: uuid.UUID) -> CadenceEnrollment:
        enrollment = session.get(CadenceEnrollment, enrollment_id)
        if enrollment is None:
            raise AutomationNotFoundError("cadence_enrollment", enrollment_id)
        return enrollment

    def _state(self, enrollment: CadenceEnrollment) -> dict[str, Any]:
        return {
            "status": enrollment.status,
            "current_step_index": enrollment.current_step_index,
            "pending_job_id": str(enrollment.pending_job_id) if enrollment.pending_job_id else None,
        }

    def _audit(
        self,
        enrollment: CadenceEnrollment,
        action: str,
        before: dict[str, Any] | None,
        actor_id: str | None,
    ) -> None:
        self.audit_sink.record(
            actor_user_id=actor_id or "automation",
            entity_type="automation.cadence_enrollment",
            entity_id=str(enrollment.id),
            action=action,
            before=before,
            after={**self._state(enrollment), "record_id": str(enrollment.record_id)},
        )
