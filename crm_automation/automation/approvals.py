from __future__ import annotations

import logging
import uuid
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Any

from pydantic import TypeAdapter
from sqlalchemy import select, update
from sqlalchemy.orm import Session

from crm_automation import events
from crm_automation.automation.assignment import AssignmentEngine
from crm_automation.automation.errors import AutomationError, AutomationNotFoundError
from crm_automation.automation.models import Approval, ApprovalActionLog, ApprovalProcess, as_utc, utcnow
from crm_automation.automation.ports import AuditSink, MessageDispatcher, MessageRequest, RecordStore
from crm_automation.automation.schemas import (
    ApprovalActionRequest,
    ApprovalActionResult,
    ApprovalStep,
    RecordSnapshot,
    TransitionResult,
    parse_actions,
)
from crm_automation.metrics import observe_approval_action

if TYPE_CHECKING:
    from crm_automation.automation.blueprints import TransitionEngine
    from crm_automation.automation.workflows import WorkflowEngine


logger = logging.getLogger("crm_automation.automation.approvals")

_steps_adapter = TypeAdapter(list[ApprovalStep])
_CONFLICT = "approval was modified concurrently"


class ApprovalEngine:
    """Multi-step approvals: ``pending -> approved | rejected | cancelled | expired``.

    ``changes_requested`` goes back to ``pending`` on resubmission. Approver sets are resolved
    per step when the step opens and stored under ``resolved_approvers[str(step_index)]``; role
    approvers are stored as ``role:<name>``.
    """

    def __init__(
        self,
        workflow_engine: WorkflowEngine,
        assignment_engine: AssignmentEngine,
        record_store: RecordStore,
        dispatcher: MessageDispatcher,
        audit_sink: AuditSink,
    ) -> None:
        self.workflow_engine = workflow_engine
        self.assignment_engine = assignment_engine
        self.record_store = record_store
        self.dispatcher = dispatcher
        self.audit_sink = audit_sink
        self.transition_engine: TransitionEngine | None = None

    def submit_for_approval(
        self,
        session: Session,
        process_id: uuid.UUID,
        record_id: uuid.UUID,
        *,
        requested_by: str | None = None,
        context: dict[str, Any] | None = None,
    ) -> Approval:
        process = self._load_process(session, process_id)
        if not process.is_enabled:
            raise AutomationError(f"approval process {process_id} is disabled")
        record = self.record_store.get(session, record_id)
        if record is None:
            raise AutomationNotFoundError("crm_record", record_id)

        approval = Approval(
            process_id=process_id,
            record_id=record_id,
            status="pending",
            current_step=0,
            context_json=dict(context or {}),
            resolved_approvers={},
            requested_by=requested_by,
        )
        session.add(approval)
        session.flush()
        self._open_step(session, approval, self._steps(process), record)
        self._log(session, approval, requested_by, "submit", None)
        self._audit(approval, "approval.submitted", None, requested_by)
        logger.info(
            "approval.submitted",
            extra={"approval_id": str(approval.id), "record_id": str(record_id), "status": approval.status},
        )
        return approval

    def is_user_approver(self, approval: Approval, actor_id: str, actor_role: str | None = None) -> bool:
        approvers = (approval.resolved_approvers or {}).get(str(approval.current_step)) or []
        if actor_id in approvers:
            return True
        return bool(actor_role) and f"role:{actor_role}" in approvers

    def execute_approval_action(
        self,
        session: Session,
        approval_id: uuid.UUID,
        request: ApprovalActionRequest,
    ) -> ApprovalActionResult:
        approval = self._load(session, approval_id)
        process = self._load_process(session, approval.process_id)
        steps = self._steps(process)

        if request.action == "cancel":
            return self._cancel(session, approval, request)

        if approval.status != "pending":
            return self._invalid(approval, request, f"approval is {approval.status}")
        if not self.is_user_approver(approval, request.actor_id, request.actor_role):
            return self._invalid(approval, request, "actor is not an approver for the current step")

        step = steps[approval.current_step] if approval.current_step < len(steps) else None
        comment = (request.comment or "").strip()
        if step is not None and step.require_comment and request.action in {"approve", "reject"} and not comment:
            return self._invalid(approval, request, "a comment is required for this step")

        if not self._claim(session, approval):
            return self._invalid(approval, request, _CONFLICT)
        before = self._state(approval)
        self._log(session, approval, request.actor_id, request.action, request.comment)

        if request.action == "request_changes":
            approval.status = "changes_requested"
            session.commit()
            return self._done(approval, request, before)

        if request.action == "reject":
            approval.status = "rejected"
            approval.resolved_by = request.actor_id
            approval.resolved_at = utcnow()
            session.commit()
            executed = self._run_outcome_actions(session, approval, process.on_reject_actions, request.actor_id)
            self._publish_resolved(approval)
            return self._done(approval, request, before, action_executed=executed)

        if approval.current_step + 1 < len(steps):
            approval.current_step += 1
            record = self.record_store.get(session, approval.record_id)
            if record is None:
                raise AutomationNotFoundError("crm_record", approval.record_id)
            self._open_step(session, approval, steps, record)
            session.commit()
            return self._done(approval, request, before)

        approval.status = "approved"
        approval.resolved_by = request.actor_id
        approval.resolved_at = utcnow()
        session.commit()

        transition: TransitionResult | None = None
        if (approval.context_json or {}).get("action_type") == "stage_transition" and self.transition_engine is not None:
            transition = self.transition_engine.execute_approved_transition(
                session,
                approval.id,
                actor_id=request.actor_id,
            )
        approval = self._load(session, approval_id)
        executed = self._run_outcome_actions(session, approval, process.on_approve_actions, request.actor_id)
        self._publish_resolved(approval)
        return self._done(
            approval,
            request,
            before,
            action_executed=executed or bool(transition and transition.success),
            transition=transition,
        )

    def resubmit_approval(
        self,
        session: Session,
        approval_id: uuid.UUID,
        *,
        actor_id: str,
        comment: str | None = None,
    ) -> ApprovalActionResult:
        approval = self._load(session, approval_id)
        if approval.status != "changes_requested":
            return self._invalid_resubmit(approval, f"approval is {approval.status}")
        if approval.requested_by and actor_id != approval.requested_by:
            return self._invalid_resubmit(approval, "only the requester can resubmit")
        if not self._claim(session, approval):
            return self._invalid_resubmit(approval, _CONFLICT)

        record = self.record_store.get(session, approval.record_id)
        if record is None:
            raise AutomationNotFoundError("crm_record", approval.record_id)
        before = self._state(approval)
        process = self._load_process(session, approval.process_id)
        approval.status = "pending"
        self._open_step(session, approval, self._steps(process), record)
        self._log(session, approval, actor_id, "resubmit", comment)
        session.commit()
        observe_approval_action("resubmit", "success")
        self._audit(approval, "approval.resubmitted", before, actor_id)
        return ApprovalActionResult(success=True, approval_id=approval.id, new_status=approval.status)

    def expire_stale_approvals(self, session: Session, now: datetime | None = None) -> int:
        current = now or utcnow()
        candidates = session.scalars(
            select(Approval).where(Approval.status == "pending", Approval.expires_at.is_not(None))
        ).all()
        expired: list[Approval] = []
        for approval in candidates:
            expires_at = as_utc(approval.expires_at)
            if expires_at is None or expires_at > current:
                continue
            if not self._claim(session, approval):
                continue
            before = self._state(approval)
            approval.status = "expired"
            approval.resolved_at = current
            self._log(session, approval, None, "expire", None)
            self._audit(approval, "approval.expired", before, None)
            expired.append(approval)
        session.commit()
        for approval in expired:
            self._publish_resolved(approval)
        if expired:
            logger.info("approval.expired", extra={"status": "expired", "reason": f"count={len(expired)}"})
        return len(expired)

    def _cancel(self, session: Session, approval: Approval, request: ApprovalActionRequest) -> ApprovalActionResult:
        if approval.status not in {"pending", "changes_requested"}:
            return self._invalid(approval, request, f"approval is {approval.status}")
        is_requester = approval.requested_by is not None and approval.requested_by == request.actor_id
        if not is_requester and not self.is_user_approver(approval, request.actor_id, request.actor_role):
            return self._invalid(approval, request, "only the requester or a current approver can cancel")
        if not self._claim(session, approval):
            return self._invalid(approval, request, _CONFLICT)

        before = self._state(approval)
        approval.status = "cancelled"
        approval.resolved_by = request.actor_id
        approval.resolved_at = utcnow()
        self._log(session, approval, request.actor_id, "cancel", request.comment)
        session.commit()
        self._publish_resolved(approval)
        return self._done(approval, request, before)

    def _open_step(
        self,
        session: Session,
        approval: Approval,
        steps: list[ApprovalStep],
        record: RecordSnapshot,
    ) -> None:
        step = steps[approval.current_step]
        approvers = self._resolve_approvers(session, step, record)
        resolved = dict(approval.resolved_approvers or {})
        resolved[str(approval.current_step)] = approvers
        approval.resolved_approvers = resolved
        approval.expires_at = utcnow() + timedelta(hours=step.timeout_hours) if step.timeout_hours else None
        session.add(approval)
        session.flush()

        if not approvers:
            logger.warning(
                "approval.step_unresolved",
                extra={"approval_id": str(approval.id), "reason": f"step {approval.current_step} ({step.type})"},
            )
        for approver in approvers:
            if approver.startswith("role:"):
                continue
            self.dispatcher.dispatch_message(
                session,
                "in_app",
                MessageRequest(
                    recipient=approver,
                    subject=f"Approval requested: {step.name or 'step ' + str(approval.current_step + 1)}",
                    body=f"Record {record.title or record.id} is waiting for your approval.",
                    record_id=record.id,
                    metadata={"approval_id": str(approval.id), "step_index": approval.current_step},
                ),
            )

    def _resolve_approvers(self, session: Session, step: ApprovalStep, record: RecordSnapshot) -> list[str]:
        if step.type == "user":
            return [str(step.value)]
        if step.type == "role":
            return [f"role:{step.value}"]
        if step.type == "record_owner":
            return [record.owner_id] if record.owner_id else []
        if step.type == "assignment_rule":
            decision = self.assignment_engine.resolve_assignment(session, uuid.UUID(str(step.value)), record)
            return [decision.owner_id] if decision.owner_id else []
        # manager: no directory to resolve from
        return []

    def _run_outcome_actions(
        self,
        session: Session,
        approval: Approval,
        payload: list[dict[str, Any]] | None,
        actor_id: str,
    ) -> bool:
        actions = parse_actions(payload)
        if not actions:
            return False
        record = self.record_store.get(session, approval.record_id)
        if record is None:
            return False
        context = self.workflow_engine.new_context(record, "approval", actor_id=actor_id, source="approval")
        result = self.workflow_engine.run_actions(session, actions, context)
        return result.status == "completed"

    def _invalid(self, approval: Approval, request: ApprovalActionRequest, error: str) -> ApprovalActionResult:
        observe_approval_action(request.action, "invalid")
        logger.info(
            "approval.invalid_request",
            extra={"approval_id": str(approval.id), "status": approval.status, "reason": error},
        )
        return ApprovalActionResult(
            success=False,
            approval_id=approval.id,
            new_status=approval.status,
            invalid_request=True,
            error=error,
        )

    def _invalid_resubmit(self, approval: Approval, error: str) -> ApprovalActionResult:
        observe_approval_action("resubmit", "invalid")
        return ApprovalActionResult(
            success=False,
            approval_id=approval.id,
            new_status=approval.status,
            invalid_request=True,
            error=error,
        )

    def _done(
        self,
        approval: Approval,
        request: ApprovalActionRequest,
        before: dict[str, Any],
        *,
        action_executed: bool = False,
        transition: TransitionResult | None = None,
    ) -> ApprovalActionResult:
        observe_approval_action(request.action, "success")
        self._audit(approval, f"approval.{request.action}", before, request.actor_id)
        logger.info(
            "approval.action_applied",
            extra={"approval_id": str(approval.id), "status": approval.status, "reason": request.action},
        )
        return ApprovalActionResult(
            success=True,
            approval_id=approval.id,
            new_status=approval.status,
            action_executed=action_executed,
            transition=transition,
        )

    def _publish_resolved(self, approval: Approval) -> None:
        events.publish(
            {
                "event_type": "approval.resolved",
                "actor_user_id": approval.resolved_by,
                "version": 1,
                "payload": {
                    "approval_id": str(approval.id),
                    "record_id": str(approval.record_id),
                    "status": approval.status,
                },
            }
        )

    def _log(
        self,
        session: Session,
        approval: Approval,
        actor_id: str | None,
        action: str,
        comment: str | None,
    ) -> None:
        session.add(
            ApprovalActionLog(
                approval_id=approval.id,
                step_index=approval.current_step,
                actor_id=actor_id,
                action=action,
                comment=comment,
            )
        )
        session.flush()

    def _claim(self, session: Session, approval: Approval) -> bool:
        """Bump ``row_version`` only if nobody else has since the approval was loaded."""
        expected = int(approval.row_version)
        result = session.execute(
            update(Approval)
            .where(Approval.id == approval.id, Approval.row_version == expected)
            .values(row_version=expected + 1)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            logger.info("approval.version_conflict", extra={"approval_id": str(approval.id), "status": approval.status})
            return False
        approval.row_version = expected + 1
        return True

    def _state(self, approval: Approval) -> dict[str, Any]:
        return {"status": approval.status, "current_step": approval.current_step}

    def _audit(self, approval: Approval, action: str, before: dict[str, Any] | None, actor_id: str | None) -> None:
        self.audit_sink.record(
            actor_user_id=actor_id or "automation",
            entity_type="automation.approval",
            entity_id=str(approval.id),
            action=action,
            before=before,
            after={**self._state(approval), "record_id": str(approval.record_id)},
        )

    def _steps(self, process: ApprovalProcess) -> list[ApprovalStep]:
        return _steps_adapter.validate_python(process.steps_json or [])

    def _load(self, session: Session, approval_id: uuid.UUID) -> Approval:
        approval = session.get(Approval, approval_id)
        if approval is None:
            raise AutomationNotFoundError("approval", approval_id)
        return approval

    def _load_process(self, session: Session, process_id: uuid.UUID) -> ApprovalProcess:
        process = session.get(ApprovalProcess, process_id)
        if process is None:
            raise AutomationNotFoundError("approval_process", process_id)
        return process
