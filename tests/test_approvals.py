from __future__ import annotations

import uuid
from collections.abc import Callable
from datetime import timedelta
from typing import Any

from sqlalchemy import select, update
from sqlalchemy.orm import Session

from crm_automation import events
from crm_automation.automation.models import Approval, ApprovalActionLog, ApprovalProcess, CRMRecordChild, utcnow
from crm_automation.automation.runtime import AutomationRuntime
from crm_automation.automation.schemas import ApprovalActionRequest, ApprovalProcessCreate, AssignmentRuleCreate


def _process(runtime: AutomationRuntime, session: Session, steps: list[dict[str, Any]], **body: Any) -> ApprovalProcess:
    payload = {"name": "Discount approval", "module": "deals", "steps": steps, **body}
    return runtime.definitions.create_approval_process(session, ApprovalProcessCreate.model_validate(payload), "admin-1")


def _submit(runtime: AutomationRuntime, session: Session, process: ApprovalProcess, record_id: uuid.UUID) -> Approval:
    approval = runtime.approvals.submit_for_approval(session, process.id, record_id, requested_by="rep-1")
    session.commit()
    return approval


def _act(runtime: AutomationRuntime, session: Session, approval: Approval, action: str, actor_id: str, **extra: Any):
    request = ApprovalActionRequest(action=action, actor_id=actor_id, **extra)
    return runtime.approvals.execute_approval_action(session, approval.id, request)


def test_multi_step_approval_runs_outcome_actions(
    runtime: AutomationRuntime,
    db_session: Session,
    dispatcher: Any,
    new_record: Callable[..., uuid.UUID],
) -> None:
    process = _process(
        runtime,
        db_session,
        [
            {"type": "user", "value": "lead-1", "name": "Team lead"},
            {"type": "role", "value": "finance", "require_comment": True},
        ],
        on_approve_actions=[{"type": "update_fields", "fields": {"discount_approved": True}}],
    )
    record_id = new_record(discount=30)
    approval = _submit(runtime, db_session, process, record_id)

    assert approval.status == "pending"
    assert approval.resolved_approvers == {"0": ["lead-1"]}
    assert [(channel, message.recipient, message.subject) for channel, message in dispatcher.sent] == [
        ("in_app", "lead-1", "Approval requested: Team lead")
    ]

    outsider = _act(runtime, db_session, approval, "approve", "rep-2")
    assert outsider.success is False
    assert outsider.invalid_request is True
    assert outsider.new_status == "pending"

    first = _act(runtime, db_session, approval, "approve", "lead-1")
    assert first.success is True
    assert first.new_status == "pending"
    db_session.refresh(approval)
    assert approval.current_step == 1
    assert approval.resolved_approvers["1"] == ["role:finance"]

    uncommented = _act(runtime, db_session, approval, "approve", "cfo-1", actor_role="finance")
    assert uncommented.invalid_request is True
    assert uncommented.error == "a comment is required for this step"

    final = _act(runtime, db_session, approval, "approve", "cfo-1", actor_role="finance", comment="Within policy")
    assert final.success is True
    assert final.new_status == "approved"
    assert final.action_executed is True

    record = runtime.record_store.get(db_session, record_id)
    assert record is not None and record.fields["discount_approved"] is True

    log = db_session.scalars(
        select(ApprovalActionLog).where(ApprovalActionLog.approval_id == approval.id).order_by(ApprovalActionLog.created_at)
    ).all()
    assert [(row.step_index, row.actor_id, row.action) for row in log] == [
        (0, "rep-1", "submit"),
        (0, "lead-1", "approve"),
        (1, "cfo-1", "approve"),
    ]
    resolved = [event for event in events.published_events if event["event_type"] == "approval.resolved"]
    assert [event["payload"]["status"] for event in resolved] == ["approved"]


def test_reject_runs_reject_actions(
    runtime: AutomationRuntime,
    db_session: Session,
    new_record: Callable[..., uuid.UUID],
) -> None:
    process = _process(
        runtime,
        db_session,
        [{"type": "record_owner"}],
        on_reject_actions=[{"type": "add_note", "body": "Discount rejected"}],
    )
    record_id = new_record()
    approval = _submit(runtime, db_session, process, record_id)
    assert approval.resolved_approvers == {"0": ["owner-1"]}

    result = _act(runtime, db_session, approval, "reject", "owner-1", comment="Too deep")

    assert result.new_status == "rejected"
    assert result.action_executed is True
    note = db_session.scalar(select(CRMRecordChild).where(CRMRecordChild.record_id == record_id))
    assert note is not None and note.body == "Discount rejected"
    db_session.refresh(approval)
    assert approval.resolved_by == "owner-1"

    late = _act(runtime, db_session, approval, "approve", "owner-1")
    assert late.invalid_request is True
    assert late.new_status == "rejected"


def test_request_changes_then_requester_resubmits(
    runtime: AutomationRuntime,
    db_session: Session,
    new_record: Callable[..., uuid.UUID],
) -> None:
    process = _process(runtime, db_session, [{"type": "user", "value": "lead-1"}])
    approval = _submit(runtime, db_session, process, new_record())

    changes = _act(runtime, db_session, approval, "request_changes", "lead-1", comment="Attach the quote")
    assert changes.new_status == "changes_requested"

    blocked = runtime.approvals.resubmit_approval(db_session, approval.id, actor_id="rep-2")
    assert blocked.invalid_request is True
    assert blocked.error == "only the requester can resubmit"

    resubmitted = runtime.approvals.resubmit_approval(db_session, approval.id, actor_id="rep-1", comment="Quote attached")
    assert resubmitted.success is True
    assert resubmitted.new_status == "pending"

    approved = _act(runtime, db_session, approval, "approve", "lead-1")
    assert approved.new_status == "approved"


def test_cancel_is_limited_to_requester_or_approver(
    runtime: AutomationRuntime,
    db_session: Session,
    new_record: Callable[..., uuid.UUID],
) -> None:
    process = _process(runtime, db_session, [{"type": "user", "value": "lead-1"}])
    approval = _submit(runtime, db_session, process, new_record())

    stranger = _act(runtime, db_session, approval, "cancel", "rep-9")
    assert stranger.invalid_request is True

    cancelled = _act(runtime, db_session, approval, "cancel", "rep-1")
    assert cancelled.success is True
    assert cancelled.new_status == "cancelled"
    resolved = [event for event in events.published_events if event["event_type"] == "approval.resolved"]
    assert resolved[-1]["payload"]["status"] == "cancelled"


def test_stale_pending_approvals_expire(
    runtime: AutomationRuntime,
    db_session: Session,
    new_record: Callable[..., uuid.UUID],
) -> None:
    process = _process(runtime, db_session, [{"type": "user", "value": "lead-1", "timeout_hours": 24}])
    approval = _submit(runtime, db_session, process, new_record())
    untimed = _submit(
        runtime,
        db_session,
        _process(runtime, db_session, [{"type": "user", "value": "lead-1"}], name="No timeout"),
        new_record(),
    )

    assert runtime.approvals.expire_stale_approvals(db_session, utcnow() + timedelta(hours=23)) == 0
    assert runtime.approvals.expire_stale_approvals(db_session, utcnow() + timedelta(hours=25)) == 1

    db_session.refresh(approval)
    db_session.refresh(untimed)
    assert approval.status == "expired"
    assert untimed.status == "pending"

    late = _act(runtime, db_session, approval, "approve", "lead-1")
    assert late.invalid_request is True


def test_assignment_rule_step_routes_to_rule_candidate(
    runtime: AutomationRuntime,
    db_session: Session,
    new_record: Callable[..., uuid.UUID],
) -> None:
    rule = runtime.definitions.create_assignment_rule(
        db_session,
        AssignmentRuleCreate(
            name="Deal desk",
            module="deals",
            strategy="round_robin",
            candidates=[{"user_id": "desk-1"}],
        ),
        "admin-1",
    )
    process = _process(runtime, db_session, [{"type": "assignment_rule", "value": str(rule.id)}])

    approval = _submit(runtime, db_session, process, new_record())

    assert approval.resolved_approvers == {"0": ["desk-1"]}
    assert runtime.approvals.is_user_approver(approval, "desk-1") is True
    assert runtime.approvals.is_user_approver(approval, "owner-1") is False


def test_action_on_stale_approval_is_refused(
    runtime: AutomationRuntime,
    db_session: Session,
    new_record: Callable[..., uuid.UUID],
) -> None:
    process = _process(runtime, db_session, [{"type": "user", "value": "lead-1"}])
    approval = _submit(runtime, db_session, process, new_record())
    assert approval.row_version == 1

    # a concurrent writer bumps the row behind this session's back
    db_session.execute(
        update(Approval)
        .where(Approval.id == approval.id)
        .values(row_version=Approval.row_version + 1)
        .execution_options(synchronize_session=False)
    )

    stale = _act(runtime, db_session, approval, "approve", "lead-1")
    assert stale.success is False
    assert stale.invalid_request is True
    assert stale.error == "approval was modified concurrently"
    db_session.commit()
    db_session.refresh(approval)
    assert approval.status == "pending"
    assert approval.row_version == 2
    logs = db_session.scalars(select(ApprovalActionLog).where(ApprovalActionLog.approval_id == approval.id)).all()
    assert [log.action for log in logs] == ["submit"]

    approved = _act(runtime, db_session, approval, "approve", "lead-1")
    assert approved.new_status == "approved"
    assert approval.row_version == 3
