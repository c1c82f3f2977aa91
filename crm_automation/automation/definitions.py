from __future__ import annotations

import uuid
from typing import Any

from sqlalchemy import select
from sqlalchemy.orm import Session

from crm_automation.automation.errors import AutomationNotFoundError
from crm_automation.automation.models import (
    ApprovalProcess,
    AssignmentRule,
    AutomationWorkflow,
    Blueprint,
    Cadence,
    utcnow,
)
from crm_automation.automation.ports import AuditSink
from crm_automation.automation.schemas import (
    ApprovalProcessCreate,
    AssignmentRuleCreate,
    BlueprintCreate,
    CadenceCreate,
    WorkflowCreate,
    WorkflowUpdate,
)


class DefinitionService:
    """Validated create/update of automation configuration, audited like any other write."""

    def __init__(self, audit_sink: AuditSink) -> None:
        self.audit_sink = audit_sink

    def list_workflows(self, session: Session, *, module: str | None = None) -> list[AutomationWorkflow]:
        stmt = select(AutomationWorkflow)
        if module:
            stmt = stmt.where(AutomationWorkflow.module == module)
        return list(session.scalars(stmt.order_by(AutomationWorkflow.created_at.desc())).all())

    def create_workflow(self, session: Session, dto: WorkflowCreate, actor_id: str) -> AutomationWorkflow:
        workflow = AutomationWorkflow(
            name=dto.name.strip(),
            description=dto.description,
            module=dto.module.strip(),
            is_enabled=dto.is_enabled,
            trigger_type=dto.trigger_type,
            trigger_config=dict(dto.trigger_config),
            condition_json=dto.conditions,
            actions_json=dto.actions,
            halt_on_failure=dto.halt_on_failure,
            run_count_cap=dto.run_count_cap,
            cooldown_seconds=dto.cooldown_seconds,
            priority=dto.priority,
            created_by=actor_id,
        )
        session.add(workflow)
        session.flush()
        self._audit(actor_id, "automation.workflow", workflow.id, "workflow.created", None, _workflow_state(workflow))
        session.commit()
        session.refresh(workflow)
        return workflow

    def update_workflow(
        self,
        session: Session,
        workflow_id: uuid.UUID,
        dto: WorkflowUpdate,
        actor_id: str,
    ) -> AutomationWorkflow:
        workflow = session.get(AutomationWorkflow, workflow_id)
        if workflow is None:
            raise AutomationNotFoundError("automation_workflow", workflow_id)
        before = _workflow_state(workflow)

        payload = dto.model_dump(exclude_unset=True)
        column_for = {"conditions": "condition_json", "actions": "actions_json"}
        for key in [
            "name",
            "description",
            "is_enabled",
            "trigger_config",
            "conditions",
            "actions",
            "halt_on_failure",
            "run_count_cap",
            "cooldown_seconds",
            "priority",
        ]:
            if key in payload:
                setattr(workflow, column_for.get(key, key), getattr(dto, key))
        workflow.updated_at = utcnow()
        session.add(workflow)
        session.flush()

        self._audit(actor_id, "automation.workflow", workflow.id, "workflow.updated", before, _workflow_state(workflow))
        session.commit()
        session.refresh(workflow)
        return workflow

    def create_assignment_rule(self, session: Session, dto: AssignmentRuleCreate, actor_id: str) -> AssignmentRule:
        config: dict[str, Any] = {}
        if dto.owner_id:
            config["owner_id"] = dto.owner_id
        if dto.fallback_owner_id:
            config["fallback_owner_id"] = dto.fallback_owner_id
        rule = AssignmentRule(
            name=dto.name.strip(),
            module=dto.module,
            strategy=dto.strategy,
            candidates_json=[candidate.model_dump(mode="json") for candidate in dto.candidates],
            config_json=config,
            cursor=0,
            is_enabled=dto.is_enabled,
        )
        session.add(rule)
        session.flush()
        self._audit(
            actor_id,
            "automation.assignment_rule",
            rule.id,
            "assignment_rule.created",
            None,
            {"name": rule.name, "strategy": rule.strategy, "candidate_count": len(rule.candidates_json)},
        )
        session.commit()
        session.refresh(rule)
        return rule

    def create_cadence(self, session: Session, dto: CadenceCreate, actor_id: str) -> Cadence:
        cadence = Cadence(
            name=dto.name.strip(),
            description=dto.description,
            module=dto.module,
            is_enabled=dto.is_enabled,
            steps_json=[step.model_dump(mode="json") for step in dto.steps],
            exit_condition_json=dto.exit_condition,
        )
        session.add(cadence)
        session.flush()
        self._audit(
            actor_id,
            "automation.cadence",
            cadence.id,
            "cadence.created",
            None,
            {"name": cadence.name, "step_count": len(cadence.steps_json)},
        )
        session.commit()
        session.refresh(cadence)
        return cadence

    def create_blueprint(self, session: Session, dto: BlueprintCreate, actor_id: str) -> Blueprint:
        blueprint = Blueprint(
            name=dto.name.strip(),
            module=dto.module.strip(),
            is_enabled=dto.is_enabled,
            stages_json=[stage.model_dump(mode="json") for stage in dto.stages],
        )
        session.add(blueprint)
        session.flush()
        self._audit(
            actor_id,
            "automation.blueprint",
            blueprint.id,
            "blueprint.created",
            None,
            {"name": blueprint.name, "module": blueprint.module, "stages": [stage.key for stage in dto.stages]},
        )
        session.commit()
        session.refresh(blueprint)
        return blueprint

    def create_approval_process(self, session: Session, dto: ApprovalProcessCreate, actor_id: str) -> ApprovalProcess:
        process = ApprovalProcess(
            name=dto.name.strip(),
            module=dto.module,
            is_enabled=dto.is_enabled,
            steps_json=[step.model_dump(mode="json") for step in dto.steps],
            on_approve_actions=dto.on_approve_actions,
            on_reject_actions=dto.on_reject_actions,
        )
        session.add(process)
        session.flush()
        self._audit(
            actor_id,
            "automation.approval_process",
            process.id,
            "approval_process.created",
            None,
            {"name": process.name, "step_count": len(process.steps_json)},
        )
        session.commit()
        session.refresh(process)
        return process

    def _audit(
        self,
        actor_id: str,
        entity_type: str,
        entity_id: uuid.UUID,
        action: str,
        before: dict[str, Any] | None,
        after: dict[str, Any] | None,
    ) -> None:
        self.audit_sink.record(
            actor_user_id=actor_id,
            entity_type=entity_type,
            entity_id=str(entity_id),
            action=action,
            before=before,
            after=after,
        )


def _workflow_state(workflow: AutomationWorkflow) -> dict[str, Any]:
    return {
        "name": workflow.name,
        "module": workflow.module,
        "is_enabled": workflow.is_enabled,
        "trigger_type": workflow.trigger_type,
        "trigger_config": workflow.trigger_config,
        "conditions": workflow.condition_json,
        "action_count": len(workflow.actions_json or []),
        "halt_on_failure": workflow.halt_on_failure,
        "run_count_cap": workflow.run_count_cap,
        "cooldown_seconds": workflow.cooldown_seconds,
    }
