from __future__ import annotations

import uuid
from collections.abc import Callable
from datetime import timedelta
from typing import Any

import pytest
from sqlalchemy import select
from sqlalchemy.orm import Session

from crm_automation import audit
from crm_automation.automation.errors import CadenceEnrollmentError
from crm_automation.automation.models import Cadence, CadenceEnrollment, CRMRecordChild, SchedulerJob, utcnow
from crm_automation.automation.runtime import AutomationRuntime
from crm_automation.automation.schemas import CadenceCreate, WorkflowCreate


def _cadence(runtime: AutomationRuntime, session: Session, steps: list[dict[str, Any]], **body: Any) -> Cadence:
    payload = {"name": "Outbound", "module": "deals", "steps": steps, **body}
    return runtime.definitions.create_cadence(session, CadenceCreate.model_validate(payload), "admin-1")


def _children(session: Session, record_id: uuid.UUID) -> list[CRMRecordChild]:
    return list(
        session.scalars(
            select(CRMRecordChild).where(CRMRecordChild.record_id == record_id).order_by(CRMRecordChild.created_at.asc())
        ).all()
    )


def test_cadence_runs_every_step_then_completes(
    runtime: AutomationRuntime,
    db_session: Session,
    dispatcher: Any,
    new_record: Callable[..., uuid.UUID],
) -> None:
    cadence = _cadence(
        runtime,
        db_session,
        [
            {"type": "task", "title": "Research {{title}}"},
            {"type": "email", "delay_days": 2, "subject": "Hello", "body": "Checking in on {{title}}"},
            {"type": "call", "delay_hours": 4, "script": "Ask about budget"},
        ],
    )
    record_id = new_record(email="buyer@example.com")

    enrollment = runtime.enroll_in_cadence(db_session, cadence.id, record_id, enrolled_by="rep-1")
    assert enrollment.status == "active"
    assert enrollment.pending_job_id is not None

    runtime.scheduler.process_scheduled_jobs(db_session)
    db_session.refresh(enrollment)
    assert enrollment.current_step_index == 1
    assert _children(db_session, record_id)[0].kind == "task"

    not_due = runtime.scheduler.process_scheduled_jobs(db_session, utcnow() + timedelta(days=1))
    assert not_due.claimed == 0

    runtime.scheduler.process_scheduled_jobs(db_session, utcnow() + timedelta(days=2, minutes=1))
    db_session.refresh(enrollment)
    assert enrollment.current_step_index == 2
    channel, message = dispatcher.sent[-1]
    assert channel == "email"
    assert message.recipient == "buyer@example.com"
    assert message.body == "Checking in on Acme renewal"

    runtime.scheduler.process_scheduled_jobs(db_session, utcnow() + timedelta(hours=5))
    db_session.refresh(enrollment)
    assert enrollment.status == "completed"
    assert enrollment.pending_job_id is None
    assert enrollment.completed_at is not None

    call = _children(db_session, record_id)[-1]
    assert call.kind == "activity"
    assert call.payload_json["activity_type"] == "call"
    assert call.payload_json["priority"] == "high"
    assert call.body == "Ask about budget"


def test_paused_enrollment_discards_due_job(
    runtime: AutomationRuntime,
    db_session: Session,
    new_record: Callable[..., uuid.UUID],
) -> None:
    cadence = _cadence(runtime, db_session, [{"type": "task", "delay_hours": 1}])
    record_id = new_record()
    enrollment = runtime.enroll_in_cadence(db_session, cadence.id, record_id)
    job_id = enrollment.pending_job_id

    runtime.pause_enrollment(db_session, enrollment.id, actor_id="rep-1")
    sweep = runtime.scheduler.process_scheduled_jobs(db_session, utcnow() + timedelta(hours=2))

    assert sweep.completed == 1
    assert _children(db_session, record_id) == []
    job = db_session.get(SchedulerJob, job_id)
    assert job is not None
    assert job.result_json == {"discarded": "enrollment_paused"}
    db_session.refresh(enrollment)
    assert enrollment.status == "paused"
    assert enrollment.current_step_index == 0


def test_resume_replaces_job_and_stale_job_is_discarded(
    runtime: AutomationRuntime,
    db_session: Session,
    new_record: Callable[..., uuid.UUID],
) -> None:
    cadence = _cadence(runtime, db_session, [{"type": "task", "delay_hours": 1}, {"type": "task", "delay_days": 3}])
    record_id = new_record()
    enrollment = runtime.enroll_in_cadence(db_session, cadence.id, record_id)
    original_job_id = enrollment.pending_job_id

    runtime.pause_enrollment(db_session, enrollment.id)
    resumed = runtime.resume_enrollment(db_session, enrollment.id)
    assert resumed.pending_job_id != original_job_id

    sweep = runtime.scheduler.process_scheduled_jobs(db_session, utcnow() + timedelta(hours=2))

    assert sweep.claimed == 2
    assert len(_children(db_session, record_id)) == 1
    stale = db_session.get(SchedulerJob, original_job_id)
    assert stale is not None
    assert stale.result_json == {"discarded": "stale_job"}
    db_session.refresh(enrollment)
    assert enrollment.current_step_index == 1
    assert [entry["action"] for entry in audit.entries_for("automation.cadence_enrollment", str(enrollment.id))] == [
        "cadence.enrolled",
        "cadence.paused",
        "cadence.resumed",
    ]


def test_exit_condition_stops_enrollment(
    runtime: AutomationRuntime,
    db_session: Session,
    new_record: Callable[..., uuid.UUID],
) -> None:
    cadence = _cadence(
        runtime,
        db_session,
        [{"type": "task"}],
        exit_condition={"field": "status", "op": "eq", "value": "replied"},
    )
    record_id = new_record(status="contacted")
    enrollment = runtime.enroll_in_cadence(db_session, cadence.id, record_id)
    runtime.update_record(db_session, record_id, {"status": "replied"})

    runtime.scheduler.process_scheduled_jobs(db_session)

    db_session.refresh(enrollment)
    assert enrollment.status == "stopped"
    assert enrollment.stopped_reason == "exit_condition"
    assert _children(db_session, record_id) == []


def test_failed_step_is_retried_without_advancing(
    runtime: AutomationRuntime,
    db_session: Session,
    new_record: Callable[..., uuid.UUID],
) -> None:
    cadence = _cadence(runtime, db_session, [{"type": "email", "subject": "Hi"}])
    record_id = new_record()
    enrollment = runtime.enroll_in_cadence(db_session, cadence.id, record_id)
    job_id = enrollment.pending_job_id

    sweep = runtime.scheduler.process_scheduled_jobs(db_session)

    assert sweep.rescheduled == 1
    job = db_session.get(SchedulerJob, job_id)
    assert job is not None
    assert job.status == "pending"
    assert "no recipient" in (job.last_error or "")
    db_session.refresh(enrollment)
    assert enrollment.status == "active"
    assert enrollment.current_step_index == 0
    assert enrollment.pending_job_id == job_id


def test_single_live_enrollment_and_unenroll(
    runtime: AutomationRuntime,
    db_session: Session,
    new_record: Callable[..., uuid.UUID],
) -> None:
    cadence = _cadence(runtime, db_session, [{"type": "task", "delay_days": 1}])
    record_id = new_record()
    first = runtime.enroll_in_cadence(db_session, cadence.id, record_id)
    job_id = first.pending_job_id

    with pytest.raises(CadenceEnrollmentError):
        runtime.cadences.enroll_in_cadence(db_session, cadence.id, record_id)
    db_session.rollback()

    assert runtime.unenroll_from_cadence(db_session, record_id, actor_id="rep-1") == 1
    db_session.refresh(first)
    assert first.status == "stopped"
    assert first.pending_job_id is None
    job = db_session.get(SchedulerJob, job_id)
    assert job is not None and job.status == "cancelled"

    second = runtime.enroll_in_cadence(db_session, cadence.id, record_id)
    assert second.id != first.id
    assert [item.id for item in runtime.cadences.get_enrollments_for_record(db_session, record_id)] == [
        first.id,
        second.id,
    ]


def test_workflow_actions_start_and_stop_cadence(runtime: AutomationRuntime, db_session: Session) -> None:
    cadence = _cadence(runtime, db_session, [{"type": "task", "delay_days": 1}])
    for trigger_type, action, conditions in [
        ("on_create", {"type": "start_cadence", "cadence_id": str(cadence.id)}, None),
        ("on_update", {"type": "stop_cadence"}, {"field": "stage", "op": "eq", "value": "lost"}),
    ]:
        runtime.definitions.create_workflow(
            db_session,
            WorkflowCreate(
                name=trigger_type,
                module="deals",
                trigger_type=trigger_type,
                conditions=conditions,
                actions=[action],
            ),
            "admin-1",
        )

    record, runs = runtime.create_record(db_session, "deals", title="Cadence target")
    assert runs[0].status == "completed"
    enrollment_id = uuid.UUID(runs[0].actions_executed[0].output["enrollment_id"])

    runtime.update_record(db_session, record.id, {"stage": "lost"})

    enrollment = db_session.get(CadenceEnrollment, enrollment_id)
    assert enrollment is not None
    assert enrollment.status == "stopped"
    assert enrollment.stopped_reason == "stopped_by_workflow"
