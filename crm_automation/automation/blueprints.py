from __future__ import annotations

import logging
import uuid
from typing import TYPE_CHECKING, Any

from opentelemetry import trace
from sqlalchemy import select, update
from sqlalchemy.orm import Session

from crm_automation import events
from crm_automation.automation.conditions import evaluate_conditions, get_field_value, is_empty_value
from crm_automation.automation.errors import AutomationNotFoundError
from crm_automation.automation.models import Approval, Blueprint, BlueprintStageHistory
from crm_automation.automation.ports import AuditSink, RecordStore
from crm_automation.automation.schemas import (
    BlueprintDefinition,
    BlueprintTransition,
    MoveStageAction,
    RecordSnapshot,
    TransitionResult,
    TransitionValidation,
    UpdateFieldsAction,
    WorkflowAction,
)

if TYPE_CHECKING:
    from crm_automation.automation.approvals import ApprovalEngine
    from crm_automation.automation.workflows import WorkflowEngine


logger = logging.getLogger("crm_automation.automation.blueprints")
tracer = trace.get_tracer("crm_automation.automation.blueprints")

BlueprintRef = BlueprintDefinition | Blueprint | uuid.UUID | None


class TransitionEngine:
    def __init__(self, workflow_engine: WorkflowEngine, record_store: RecordStore, audit_sink: AuditSink) -> None:
        self.workflow_engine = workflow_engine
        self.record_store = record_store
        self.audit_sink = audit_sink
        self.approval_engine: ApprovalEngine | None = None

    def get_blueprint(self, session: Session, module: str) -> BlueprintDefinition | None:
        row = session.scalar(
            select(Blueprint)
            .where(Blueprint.module == module, Blueprint.is_enabled.is_(True))
            .order_by(Blueprint.created_at.asc())
        )
        return BlueprintDefinition.from_model(row) if row is not None else None

    def validate_transition(
        self,
        session: Session,
        blueprint: BlueprintRef,
        record: RecordSnapshot,
        to_stage: str,
        *,
        field_updates: dict[str, Any] | None = None,
    ) -> TransitionValidation:
        """Check edge, condition gate, then required fields. Never raises."""
        try:
            definition = self._resolve(session, blueprint, record.module)
            if definition is None:
                return TransitionValidation(allowed=False, reason="no_blueprint")
            if not definition.is_enabled:
                return TransitionValidation(allowed=False, reason="blueprint_disabled")

            transition = definition.find_transition(record.stage, to_stage)
            if transition is None:
                return TransitionValidation(
                    allowed=False,
                    reason=f"no transition from {record.stage} to {to_stage}",
                )
            return self._check_transition(transition, record.merged(field_updates or {}))
        except Exception as exc:
            logger.warning(
                "blueprint.validation_failed",
                extra={"record_id": str(record.id), "target_stage": to_stage, "error": str(exc)},
            )
            return TransitionValidation(allowed=False, reason=f"validation_error: {exc}")

    def _check_transition(self, transition: BlueprintTransition, candidate: RecordSnapshot) -> TransitionValidation:
        if transition.condition is not None and not evaluate_conditions(transition.condition, candidate):
            return TransitionValidation(
                allowed=False,
                reason="transition_condition_not_met",
                requires_approval=transition.requires_approval,
            )

        missing = [
            requirement.field
            for requirement in transition.required_fields
            if (requirement.when is None or evaluate_conditions(requirement.when, candidate))
            and is_empty_value(get_field_value(candidate, requirement.field))
        ]
        if missing:
            return TransitionValidation(
                allowed=False,
                missing_fields=missing,
                reason="missing_required_fields",
                requires_approval=transition.requires_approval,
            )
        return TransitionValidation(allowed=True, requires_approval=transition.requires_approval)

    def execute_transition(
        self,
        session: Session,
        blueprint: BlueprintRef,
        record_id: uuid.UUID,
        to_stage: str,
        *,
        field_updates: dict[str, Any] | None = None,
        actor_id: str | None = None,
    ) -> TransitionResult:
        record = self.record_store.get(session, record_id)
        if record is None:
            return TransitionResult(success=False, to_stage=to_stage, error="record_not_found")

        definition = self._resolve(session, blueprint, record.module)
        validation = self.validate_transition(session, definition, record, to_stage, field_updates=field_updates)
        if not validation.allowed or definition is None:
            return TransitionResult(
                success=False,
                validation=validation,
                from_stage=record.stage,
                to_stage=to_stage,
                requires_approval=validation.requires_approval,
                error=validation.reason,
            )

        transition = definition.find_transition(record.stage, to_stage)
        if transition is None:
            return TransitionResult(success=False, validation=validation, to_stage=to_stage, error="no_transition")

        if transition.requires_approval:
            return self._request_approval(session, definition, transition, record, to_stage, field_updates, actor_id, validation)

        return self._apply(
            session,
            definition,
            transition,
            record,
            to_stage,
            field_updates=field_updates,
            actor_id=actor_id,
            validation=validation,
        )

    def execute_approved_transition(
        self,
        session: Session,
        approval_id: uuid.UUID,
        *,
        actor_id: str | None = None,
    ) -> TransitionResult:
        approval = session.get(Approval, approval_id)
        if approval is None:
            return TransitionResult(success=False, approval_id=approval_id, error="approval_not_found")

        context = dict(approval.context_json or {})
        from_stage = context.get("from_stage")
        to_stage = str(context.get("to_stage") or "")
        if approval.status != "approved":
            return self._refused(approval_id, from_stage, to_stage, "approval_not_approved")
        if approval.transition_executed:
            return self._refused(approval_id, from_stage, to_stage, "transition_already_executed")
        if context.get("action_type") != "stage_transition":
            return self._refused(approval_id, from_stage, to_stage, "approval_has_no_transition")

        record = self.record_store.get(session, approval.record_id)
        if record is None:
            return self._refused(approval_id, from_stage, to_stage, "record_not_found")
        if record.stage != from_stage:
            return self._refused(approval_id, from_stage, to_stage, "stage_changed_since_request")

        definition = self._resolve(session, uuid.UUID(str(context["blueprint_id"])), record.module)
        transition = definition.find_transition(from_stage, to_stage) if definition is not None else None
        if definition is None or transition is None:
            return self._refused(approval_id, from_stage, to_stage, "transition_no_longer_defined")

        field_updates = context.get("field_updates") or {}
        validation = self._check_transition(transition, record.merged(field_updates))
        if not validation.allowed:
            return TransitionResult(
                success=False,
                validation=validation,
                from_stage=from_stage,
                to_stage=to_stage,
                requires_approval=True,
                approval_id=approval_id,
                error=validation.reason,
            )

        claimed = session.execute(
            update(Approval)
            .where(Approval.id == approval_id, Approval.transition_executed.is_(False))
            .values(transition_executed=True)
            .execution_options(synchronize_session=False)
        )
        session.commit()
        if claimed.rowcount != 1:
            return self._refused(approval_id, from_stage, to_stage, "transition_already_executed")

        result = self._apply(
            session,
            definition,
            transition,
            record,
            to_stage,
            field_updates=field_updates,
            actor_id=actor_id,
            validation=validation,
            approval_id=approval_id,
        )
        if not result.success:
            # stage did not move; free the approval for another attempt
            session.execute(
                update(Approval)
                .where(Approval.id == approval_id)
                .values(transition_executed=False)
                .execution_options(synchronize_session=False)
            )
            session.commit()
        return result

    def _request_approval(
        self,
        session: Session,
        definition: BlueprintDefinition,
        transition: BlueprintTransition,
        record: RecordSnapshot,
        to_stage: str,
        field_updates: dict[str, Any] | None,
        actor_id: str | None,
        validation: TransitionValidation,
    ) -> TransitionResult:
        if self.approval_engine is None or transition.approval_process_id is None:
            return TransitionResult(
                success=False,
                validation=validation,
                from_stage=record.stage,
                to_stage=to_stage,
                requires_approval=True,
                error="approval_engine_unavailable",
            )
        approval = self.approval_engine.submit_for_approval(
            session,
            transition.approval_process_id,
            record.id,
            requested_by=actor_id,
            context={
                "action_type": "stage_transition",
                "blueprint_id": str(definition.id),
                "from_stage": record.stage,
                "to_stage": to_stage,
                "field_updates": field_updates or {},
            },
        )
        session.commit()
        self.audit_sink.record(
            actor_user_id=actor_id or "automation",
            entity_type="crm.record",
            entity_id=str(record.id),
            action="blueprint.transition_requested",
            before={"stage": record.stage},
            after={"target_stage": to_stage, "approval_id": str(approval.id)},
        )
        logger.info(
            "blueprint.transition_requested",
            extra={"record_id": str(record.id), "target_stage": to_stage, "approval_id": str(approval.id)},
        )
        return TransitionResult(
            success=True,
            validation=validation,
            from_stage=record.stage,
            to_stage=to_stage,
            requires_approval=True,
            approval_id=approval.id,
        )

    def _apply(
        self,
        session: Session,
        definition: BlueprintDefinition,
        transition: BlueprintTransition,
        record: RecordSnapshot,
        to_stage: str,
        *,
        field_updates: dict[str, Any] | None,
        actor_id: str | None,
        validation: TransitionValidation,
        approval_id: uuid.UUID | None = None,
    ) -> TransitionResult:
        actions: list[WorkflowAction] = []
        if field_updates:
            actions.append(UpdateFieldsAction(type="update_fields", fields=dict(field_updates)))
        move = MoveStageAction(type="move_stage", stage=to_stage)
        actions.append(move)
        actions.extend(transition.actions)

        from_stage = record.stage
        context = self.workflow_engine.new_context(record, "stage_transition", actor_id=actor_id, source="blueprint")
        with tracer.start_as_current_span(
            "blueprint.transition",
            attributes={
                "blueprint.id": str(definition.id),
                "blueprint.from_stage": from_stage or "",
                "blueprint.to_stage": to_stage,
            },
        ):
            run = self.workflow_engine.run_actions(session, actions, context)

        moved = any(item.action_id == move.id and item.status == "success" for item in run.actions_executed)
        if moved:
            session.add(
                BlueprintStageHistory(
                    blueprint_id=definition.id,
                    record_id=record.id,
                    from_stage=from_stage,
                    to_stage=to_stage,
                    changed_by=actor_id,
                    approval_id=approval_id,
                    run_id=run.run_id,
                )
            )
            session.commit()
            self.audit_sink.record(
                actor_user_id=actor_id or "automation",
                entity_type="crm.record",
                entity_id=str(record.id),
                action="blueprint.stage_changed",
                before={"stage": from_stage},
                after={"stage": to_stage, "approval_id": str(approval_id) if approval_id else None},
            )
            events.publish(
                {
                    "event_type": "blueprint.stage_changed",
                    "actor_user_id": actor_id,
                    "version": 1,
                    "payload": {
                        "record_id": str(record.id),
                        "blueprint_id": str(definition.id),
                        "from_stage": from_stage,
                        "to_stage": to_stage,
                        "approval_id": str(approval_id) if approval_id else None,
                    },
                }
            )
        logger.info(
            "blueprint.transition_applied",
            extra={
                "record_id": str(record.id),
                "blueprint_id": str(definition.id),
                "target_stage": to_stage,
                "status": run.status,
                "run_id": str(run.run_id),
            },
        )
        return TransitionResult(
            success=moved,
            validation=validation,
            from_stage=from_stage,
            to_stage=to_stage,
            requires_approval=approval_id is not None,
            approval_id=approval_id,
            run=run,
            error=run.error,
        )

    def _refused(
        self,
        approval_id: uuid.UUID,
        from_stage: str | None,
        to_stage: str,
        reason: str,
    ) -> TransitionResult:
        logger.info("blueprint.approved_transition_refused", extra={"approval_id": str(approval_id), "reason": reason})
        return TransitionResult(
            success=False,
            from_stage=from_stage,
            to_stage=to_stage,
            requires_approval=True,
            approval_id=approval_id,
            error=reason,
        )

    def _resolve(self, session: Session, blueprint: BlueprintRef, module: str) -> BlueprintDefinition | None:
        if isinstance(blueprint, BlueprintDefinition):
            return blueprint
        if isinstance(blueprint, Blueprint):
            return BlueprintDefinition.from_model(blueprint)
        if isinstance(blueprint, uuid.UUID):
            row = session.get(Blueprint, blueprint)
            if row is None:
                raise AutomationNotFoundError("blueprint", blueprint)
            return BlueprintDefinition.from_model(row)
        return self.get_blueprint(session, module)
