from __future__ import annotations

import logging
import uuid

from sqlalchemy import select, update
from sqlalchemy.orm import Session

from crm_automation.automation.conditions import evaluate_conditions
from crm_automation.automation.models import AssignmentRule, utcnow
from crm_automation.automation.ports import RecordStore
from crm_automation.automation.schemas import AssignmentCandidate, AssignmentDecision, RecordSnapshot
from crm_automation.core.config import get_settings
from crm_automation.metrics import observe_assignment


logger = logging.getLogger("crm_automation.automation.assignment")


class AssignmentEngine:
    def __init__(self, record_store: RecordStore) -> None:
        self.record_store = record_store

    def resolve_assignment(
        self,
        session: Session,
        rule: AssignmentRule | uuid.UUID,
        record: RecordSnapshot,
        *,
        advance: bool = True,
    ) -> AssignmentDecision:
        """Pick an owner for ``record``; ``owner_id=None`` means nobody is eligible.

        With ``advance=False`` round-robin reports its next pick without moving the cursor.
        The cursor write is flushed, not committed: callers commit it together with the
        owner change.
        """
        if isinstance(rule, uuid.UUID):
            loaded = session.get(AssignmentRule, rule)
            if loaded is None:
                return self._decided(AssignmentDecision(owner_id=None, reason="rule_not_found", rule_id=rule))
            rule = loaded

        if not rule.is_enabled:
            return self._decided(
                AssignmentDecision(owner_id=None, reason="rule_disabled", strategy=rule.strategy, rule_id=rule.id)
            )

        candidates = [AssignmentCandidate.model_validate(item) for item in rule.candidates_json or []]
        config = rule.config_json or {}

        if rule.strategy == "fixed":
            owner_id = config.get("owner_id")
            decision = AssignmentDecision(
                owner_id=str(owner_id) if owner_id else None,
                reason="fixed_owner" if owner_id else "no_fixed_owner",
            )
        elif rule.strategy == "round_robin":
            decision = self._round_robin(session, rule, candidates, advance=advance)
        elif rule.strategy == "least_loaded":
            decision = self._least_loaded(session, rule, candidates)
        elif rule.strategy == "territory":
            decision = self._territory(candidates, record, config.get("fallback_owner_id"))
        else:
            decision = AssignmentDecision(owner_id=None, reason=f"unknown_strategy:{rule.strategy}")

        decision.strategy = rule.strategy
        decision.rule_id = rule.id
        return self._decided(decision)

    def _round_robin(
        self,
        session: Session,
        rule: AssignmentRule,
        candidates: list[AssignmentCandidate],
        *,
        advance: bool,
    ) -> AssignmentDecision:
        if not candidates:
            return AssignmentDecision(owner_id=None, reason="no_candidates")

        retries = max(get_settings().assignment_cas_retries, 1)
        for _ in range(retries):
            cursor, row_version = session.execute(
                select(AssignmentRule.cursor, AssignmentRule.row_version).where(AssignmentRule.id == rule.id)
            ).one()
            index = int(cursor) % len(candidates)
            owner_id = candidates[index].user_id
            if not advance:
                return AssignmentDecision(owner_id=owner_id, reason=f"round_robin_preview:{index}")

            result = session.execute(
                update(AssignmentRule)
                .where(AssignmentRule.id == rule.id, AssignmentRule.row_version == row_version)
                .values(
                    cursor=(index + 1) % len(candidates),
                    row_version=int(row_version) + 1,
                    updated_at=utcnow(),
                )
                .execution_options(synchronize_session=False)
            )
            if result.rowcount == 1:
                return AssignmentDecision(owner_id=owner_id, reason=f"round_robin:{index}")
            logger.info("assignment_cursor_contention", extra={"strategy": "round_robin", "reason": str(rule.id)})

        return AssignmentDecision(owner_id=None, reason="rotation_contention")

    def _least_loaded(
        self,
        session: Session,
        rule: AssignmentRule,
        candidates: list[AssignmentCandidate],
    ) -> AssignmentDecision:
        if not candidates:
            return AssignmentDecision(owner_id=None, reason="no_candidates")
        loads = [
            (self.record_store.count_open_records(session, candidate.user_id, rule.module), position, candidate.user_id)
            for position, candidate in enumerate(candidates)
        ]
        load, _, owner_id = min(loads)
        return AssignmentDecision(owner_id=owner_id, reason=f"least_loaded:{load}")

    def _territory(
        self,
        candidates: list[AssignmentCandidate],
        record: RecordSnapshot,
        fallback_owner_id: object,
    ) -> AssignmentDecision:
        for position, candidate in enumerate(candidates):
            if evaluate_conditions(candidate.territory, record):
                return AssignmentDecision(owner_id=candidate.user_id, reason=f"territory:{position}")
        if fallback_owner_id:
            return AssignmentDecision(owner_id=str(fallback_owner_id), reason="territory_fallback")
        return AssignmentDecision(owner_id=None, reason="no_territory_match")

    def _decided(self, decision: AssignmentDecision) -> AssignmentDecision:
        observe_assignment(decision.strategy or "unknown", decision.owner_id is not None)
        logger.info(
            "assignment_resolved",
            extra={"strategy": decision.strategy, "owner_id": decision.owner_id, "reason": decision.reason},
        )
        return decision
