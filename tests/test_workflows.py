from __future__ import annotations

import uuid
from collections.abc import Callable
from datetime import timedelta
from typing import Any

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from crm_automation import audit, events
from crm_automation.automation.models import AssignmentRule, AutomationRun, AutomationWorkflow, CRMRecordChild, utcnow
from crm_automation.automation.runtime import AutomationRuntime
from crm_automation.automation.schemas import AssignmentRuleCreate, WorkflowCreate


def _workflow(runtime: AutomationRuntime, session: Session, **body: Any) -> AutomationWorkflow:
    payload: dict[str, Any] = {"name": "Workflow", "module": "deals", "trigger_type": "on_update", **body}
    return runtime.definitions.create_workflow(session, WorkflowCreate.model_validate(payload), "admin-1")


def _runs(session: Session) -> list[AutomationRun]:
    return list(session.scalars(select(AutomationRun).order_by(AutomationRun.started_at.asc())).all())


def test_hot_lead_workflow_assigns_round_robin_and_creates_task(
    runtime: AutomationRuntime,
    db_session: Session,
    new_record: Callable[..., uuid.UUID],
) -> None:
    rule = runtime.definitions.create_assignment_rule(
        db_session,
        AssignmentRuleCreate(
            name="Hot leads",
            module="deals",
            strategy="round_robin",
            candidates=[{"user_id": "rep-a"}, {"user_id": "rep-b"}],
        ),
        "admin-1",
    )
    _workflow(
        runtime,
        db_session,
        name="Hot lead routing",
        trigger_type="on_update_field_changed",
        trigger_config={"watch_fields": ["status"]},
        conditions={"field": "status", "op": "eq", "value": "hot_lead"},
        actions=[
            {"type": "assign_owner", "rule_id": str(rule.id)},
            {"type": "create_task", "title": "Call {{title}}", "assigned_to": "owner"},
        ],
    )

    owners: list[str | None] = []
    for index in range(3):
        record_id = new_record(owner_id=None, title=f"Lead {index}", status="cold")
        updated, runs = runtime.update_record(db_session, record_id, {"status": "hot_lead"}, actor_id="user-1")

        assert len(runs) == 1
        assert runs[0].status == "completed"
        assert [item.status for item in runs[0].actions_executed] == ["success", "success"]
        owners.append(updated.owner_id)

        task = db_session.scalar(select(CRMRecordChild).where(CRMRecordChild.record_id == record_id))
        assert task is not None
        assert task.kind == "task"
        assert task.title == f"Call Lead {index}"
        assert task.assigned_to == updated.owner_id

    assert owners == ["rep-a", "rep-b", "rep-a"]
    assert db_session.scalar(select(func.count(AutomationRun.id))) == 3


def test_field_changed_workflow_ignores_unwatched_updates(
    runtime: AutomationRuntime,
    db_session: Session,
    new_record: Callable[..., uuid.UUID],
) -> None:
    _workflow(
        runtime,
        db_session,
        trigger_type="on_update_field_changed",
        conditions={"field": "status", "op": "eq", "value": "hot_lead"},
        actions=[{"type": "add_note", "body": "Became hot"}],
    )
    record_id = new_record(status="hot_lead", amount=10)

    _, runs = runtime.update_record(db_session, record_id, {"amount": 20})
    assert runs == []


def test_self_triggering_workflow_is_capped(
    runtime: AutomationRuntime,
    db_session: Session,
    new_record: Callable[..., uuid.UUID],
) -> None:
    workflow = _workflow(
        runtime,
        db_session,
        name="Touch on update",
        actions=[{"type": "update_fields", "fields": {"touched": "yes"}}],
    )
    record_id = new_record()

    _, results = runtime.update_record(db_session, record_id, {"status": "open"})

    assert len(results) == 1
    root = results[0]
    assert root.status == "capped"
    assert root.error == "WORKFLOW_LIMIT_EXCEEDED"

    runs = _runs(db_session)
    assert len(runs) == 51
    assert {run.status for run in runs} == {"capped"}
    assert max(run.depth for run in runs) == 50
    root_run = next(run for run in runs if run.depth == 0)
    assert root_run.actions_consumed == 50
    capped_ids = {run.output_json["limit"]["capped_run_id"] for run in runs}
    assert capped_ids == {str(max(runs, key=lambda run: run.depth).id)}

    blocked = [entry for entry in audit.audit_entries if entry["action"] == "workflow.blocked"]
    assert len(blocked) == 1
    assert blocked[0]["entity_id"] == str(workflow.id)
    assert blocked[0]["after"]["reason"] == "MAX_ACTIONS"
    assert blocked[0]["after"]["actions_consumed"] == 50


def test_ping_pong_workflows_share_one_budget(
    runtime: AutomationRuntime,
    db_session: Session,
    new_record: Callable[..., uuid.UUID],
) -> None:
    copy_to_a = _workflow(
        runtime,
        db_session,
        name="Copy b to a",
        trigger_type="on_update_field_changed",
        trigger_config={"watch_fields": ["b"]},
        actions=[{"type": "update_fields", "fields": {"a": "{{b}}a"}}],
    )
    copy_to_b = _workflow(
        runtime,
        db_session,
        name="Copy a to b",
        trigger_type="on_update_field_changed",
        trigger_config={"watch_fields": ["a"]},
        actions=[{"type": "update_fields", "fields": {"b": "{{a}}b"}}],
    )
    record_id = new_record(a="", b="")

    _, results = runtime.update_record(db_session, record_id, {"b": "start"})

    assert [result.status for result in results] == ["capped"]
    runs = _runs(db_session)
    assert len(runs) == 51
    assert {run.status for run in runs} == {"capped"}
    assert {run.workflow_id for run in runs} == {copy_to_a.id, copy_to_b.id}
    root_run = next(run for run in runs if run.depth == 0)
    assert root_run.workflow_id == copy_to_a.id
    assert root_run.actions_consumed == 50

    blocked = [entry for entry in audit.audit_entries if entry["action"] == "workflow.blocked"]
    assert len(blocked) == 1
    assert blocked[0]["entity_id"] == str(copy_to_a.id)


def test_run_count_cap_lowers_the_budget(
    runtime: AutomationRuntime,
    db_session: Session,
    new_record: Callable[..., uuid.UUID],
) -> None:
    row = _workflow(
        runtime,
        db_session,
        trigger_type="manual",
        run_count_cap=2,
        actions=[{"type": "add_note", "body": f"note {index}"} for index in range(3)],
    )
    record = runtime.record_store.get(db_session, new_record())
    assert record is not None

    result = runtime.workflows.execute_workflow(db_session, row, record)

    assert result.status == "capped"
    assert len(result.actions_executed) == 2
    assert db_session.scalar(select(func.count(CRMRecordChild.id))) == 2


def test_halt_on_failure_stops_at_first_failed_action(
    runtime: AutomationRuntime,
    db_session: Session,
    new_record: Callable[..., uuid.UUID],
) -> None:
    row = _workflow(
        runtime,
        db_session,
        trigger_type="manual",
        halt_on_failure=True,
        actions=[
            {"type": "send_email", "subject": "Hello"},
            {"type": "add_note", "body": "after email"},
        ],
    )
    record = runtime.record_store.get(db_session, new_record())
    assert record is not None

    result = runtime.workflows.execute_workflow(db_session, row, record)

    assert result.status == "failed"
    assert [item.status for item in result.actions_executed] == ["failed"]
    assert "no recipient" in (result.error or "")
    assert db_session.scalar(select(func.count(CRMRecordChild.id))) == 0


def test_best_effort_runs_remaining_actions(
    runtime: AutomationRuntime,
    db_session: Session,
    new_record: Callable[..., uuid.UUID],
) -> None:
    row = _workflow(
        runtime,
        db_session,
        trigger_type="manual",
        halt_on_failure=False,
        actions=[
            {"type": "send_email", "subject": "Hello"},
            {"type": "add_note", "body": "after email"},
        ],
    )
    record = runtime.record_store.get(db_session, new_record())
    assert record is not None

    result = runtime.workflows.execute_workflow(db_session, row, record)

    assert result.status == "failed"
    assert [item.status for item in result.actions_executed] == ["failed", "success"]
    note = db_session.scalar(select(CRMRecordChild).where(CRMRecordChild.kind == "note"))
    assert note is not None
    assert note.body == "after email"
    stored = db_session.get(AutomationRun, result.run_id)
    assert stored is not None
    assert [item["status"] for item in stored.actions_executed] == ["failed", "success"]


def test_failed_run_stops_later_workflows(
    runtime: AutomationRuntime,
    db_session: Session,
    new_record: Callable[..., uuid.UUID],
) -> None:
    _workflow(runtime, db_session, name="First", priority=10, actions=[{"type": "send_sms", "body": "hi"}])
    _workflow(runtime, db_session, name="Second", priority=1, actions=[{"type": "add_note", "body": "second"}])
    record_id = new_record()

    _, runs = runtime.update_record(db_session, record_id, {"stage": "qualify"})

    assert [run.status for run in runs] == ["failed"]


def test_per_action_condition_skips_without_consuming_budget(
    runtime: AutomationRuntime,
    db_session: Session,
    new_record: Callable[..., uuid.UUID],
) -> None:
    row = _workflow(
        runtime,
        db_session,
        trigger_type="manual",
        actions=[
            {"type": "add_note", "body": "big deal", "condition": {"field": "amount", "op": "gt", "value": 1000}},
            {"type": "add_note", "body": "always"},
        ],
    )
    record = runtime.record_store.get(db_session, new_record(amount=10))
    assert record is not None

    result = runtime.workflows.execute_workflow(db_session, row, record)

    assert [item.status for item in result.actions_executed] == ["skipped", "success"]
    stored = db_session.get(AutomationRun, result.run_id)
    assert stored is not None
    assert stored.actions_consumed == 1


def test_dry_run_plans_without_side_effects(
    runtime: AutomationRuntime,
    db_session: Session,
    new_record: Callable[..., uuid.UUID],
) -> None:
    rule = runtime.definitions.create_assignment_rule(
        db_session,
        AssignmentRuleCreate(name="RR", strategy="round_robin", candidates=[{"user_id": "rep-a"}, {"user_id": "rep-b"}]),
        "admin-1",
    )
    row = _workflow(
        runtime,
        db_session,
        trigger_type="manual",
        actions=[
            {"type": "update_fields", "fields": {"status": "working"}},
            {"type": "assign_owner", "rule_id": str(rule.id)},
            {"type": "notify", "recipients": ["owner"], "title": "Heads up"},
        ],
    )
    record = runtime.record_store.get(db_session, new_record(status="new"))
    assert record is not None

    context = runtime.workflows.new_context(record, "manual", dry_run=True)
    result = runtime.workflows.execute_workflow(db_session, row, record, context)

    assert result.status == "completed"
    assert all(item.output.get("dry_run") for item in result.actions_executed)
    assert result.actions_executed[1].output["owner_id"] == "rep-a"
    unchanged = runtime.record_store.get(db_session, record.id)
    assert unchanged is not None
    assert unchanged.fields["status"] == "new"
    assert unchanged.version == record.version
    assert db_session.get(AssignmentRule, rule.id).cursor == 0
    stored = db_session.get(AutomationRun, result.run_id)
    assert stored is not None and stored.is_dry_run is True
    assert not [event for event in events.published_events if event["event_type"] == "automation.run.finished"]
    assert any(entry["action"] == "automation.run.dry_run" for entry in audit.audit_entries)


def test_idempotency_key_prevents_second_run(
    runtime: AutomationRuntime,
    db_session: Session,
    new_record: Callable[..., uuid.UUID],
) -> None:
    row = _workflow(runtime, db_session, trigger_type="manual", actions=[{"type": "add_note", "body": "once"}])
    record = runtime.record_store.get(db_session, new_record())
    assert record is not None

    first = runtime.workflows.execute_workflow(
        db_session, row, record, runtime.workflows.new_context(record, "manual", idempotency_key="import-42")
    )
    second = runtime.workflows.execute_workflow(
        db_session, row, record, runtime.workflows.new_context(record, "manual", idempotency_key="import-42")
    )

    assert first.status == "completed"
    assert second.status == "skipped"
    assert second.reason == "duplicate_idempotency_key"
    assert second.run_id == first.run_id
    assert db_session.scalar(select(func.count(CRMRecordChild.id))) == 1


def test_cooldown_blocks_second_run_for_same_record(
    runtime: AutomationRuntime,
    db_session: Session,
    new_record: Callable[..., uuid.UUID],
) -> None:
    row = _workflow(
        runtime,
        db_session,
        trigger_type="manual",
        cooldown_seconds=86400,
        actions=[{"type": "add_note", "body": "cool"}],
    )
    record = runtime.record_store.get(db_session, new_record())
    other = runtime.record_store.get(db_session, new_record())
    assert record is not None and other is not None

    assert runtime.workflows.execute_workflow(db_session, row, record).status == "completed"
    blocked = runtime.workflows.execute_workflow(db_session, row, record)
    assert blocked.status == "skipped"
    assert blocked.reason == "COOLDOWN"
    assert runtime.workflows.execute_workflow(db_session, row, other).status == "completed"
    assert any(
        entry["action"] == "workflow.blocked" and entry["after"]["reason"] == "COOLDOWN" for entry in audit.audit_entries
    )


def test_create_record_runs_on_create_workflows_and_publishes(runtime: AutomationRuntime, db_session: Session) -> None:
    _workflow(
        runtime,
        db_session,
        trigger_type="on_create",
        conditions={"field": "source", "op": "eq", "value": "web"},
        actions=[{"type": "update_fields", "fields": {"status": "new", "summary": "{{title}} via {{source}}"}}],
    )

    record, runs = runtime.create_record(db_session, "deals", title="Globex", fields={"source": "web"})
    skipped, no_runs = runtime.create_record(db_session, "deals", title="Initech", fields={"source": "partner"})

    assert [run.status for run in runs] == ["completed"]
    assert record.fields["summary"] == "Globex via web"
    assert no_runs == []
    assert "status" not in skipped.fields
    event_types = [event["event_type"] for event in events.published_events]
    assert "automation.run.finished" in event_types
    assert "crm.record.updated" in event_types


def test_delay_wait_resumes_remaining_actions(
    runtime: AutomationRuntime,
    db_session: Session,
    new_record: Callable[..., uuid.UUID],
) -> None:
    row = _workflow(
        runtime,
        db_session,
        trigger_type="manual",
        actions=[
            {"type": "add_note", "body": "before wait"},
            {"type": "delay_wait", "delay_minutes": 30},
            {"type": "add_note", "body": "after wait"},
        ],
    )
    record = runtime.record_store.get(db_session, new_record())
    assert record is not None

    first = runtime.workflows.execute_workflow(db_session, row, record)

    assert first.status == "completed"
    assert first.delayed_job_id is not None
    assert [item.type for item in first.actions_executed] == ["add_note", "delay_wait"]

    early = runtime.scheduler.process_scheduled_jobs(db_session)
    assert early.claimed == 0

    sweep = runtime.scheduler.process_scheduled_jobs(db_session, utcnow() + timedelta(hours=1))
    assert sweep.completed == 1

    notes = db_session.scalars(select(CRMRecordChild.body).order_by(CRMRecordChild.created_at.asc())).all()
    assert notes == ["before wait", "after wait"]
    resumed = [run for run in _runs(db_session) if run.trigger_type == "delayed"]
    assert len(resumed) == 1
    assert resumed[0].parent_run_id == first.run_id
    assert resumed[0].workflow_id == row.id


def test_failed_webhook_is_retried_by_scheduler(
    runtime: AutomationRuntime,
    db_session: Session,
    webhook_poster: Any,
    new_record: Callable[..., uuid.UUID],
) -> None:
    webhook_poster.status_codes = [503, 200]
    row = _workflow(
        runtime,
        db_session,
        trigger_type="manual",
        actions=[
            {
                "type": "post_webhook",
                "url": "https://hooks.example.com/deals",
                "body_template": "Deal {{title}} updated",
                "retry_on_failure": True,
            }
        ],
    )
    record = runtime.record_store.get(db_session, new_record())
    assert record is not None

    result = runtime.workflows.execute_workflow(db_session, row, record)

    assert result.status == "failed"
    retry_job_id = result.actions_executed[0].output["retry_job_id"]
    assert webhook_poster.calls[0]["body"]["message"] == "Deal Acme renewal updated"
    assert webhook_poster.calls[0]["body"]["record_id"] == str(record.id)

    sweep = runtime.scheduler.process_scheduled_jobs(db_session, utcnow() + timedelta(seconds=1))

    assert sweep.completed == 1
    assert sweep.job_ids == [uuid.UUID(retry_job_id)]
    assert len(webhook_poster.calls) == 2
    retry_run = next(run for run in _runs(db_session) if run.trigger_type == "retry")
    assert retry_run.status == "completed"
    assert retry_run.parent_run_id == result.run_id


def test_scheduled_workflow_runs_for_matching_records(
    runtime: AutomationRuntime,
    db_session: Session,
    new_record: Callable[..., uuid.UUID],
) -> None:
    _workflow(
        runtime,
        db_session,
        trigger_type="scheduled",
        trigger_config={"interval_minutes": 60},
        conditions={"field": "stage", "op": "eq", "value": "stale"},
        actions=[{"type": "add_note", "body": "still stale"}],
    )
    stale_id = new_record(stage="stale")
    new_record(stage="active")

    now = utcnow()
    first = runtime.run_scheduler_sweep(db_session, now)
    second = runtime.run_scheduler_sweep(db_session, now + timedelta(minutes=5))

    assert first["scheduled_workflows"] == 1
    assert first["jobs"]["completed"] == 1
    assert second["scheduled_workflows"] == 0
    notes = db_session.scalars(select(CRMRecordChild)).all()
    assert [note.record_id for note in notes] == [stale_id]
