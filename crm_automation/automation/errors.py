from __future__ import annotations

from typing import Any


class AutomationError(Exception):
    pass


class WorkflowLimitExceededError(AutomationError):
    def __init__(self, code: str, summary: dict[str, Any]) -> None:
        super().__init__(code)
        self.code = code
        self.summary = summary


class StaleRecordError(AutomationError):
    def __init__(self, record_id: Any, expected_version: int, actual_version: int | None = None) -> None:
        super().__init__(f"record {record_id} changed since version {expected_version}")
        self.record_id = record_id
        self.expected_version = expected_version
        self.actual_version = actual_version


class AutomationNotFoundError(AutomationError):
    def __init__(self, entity_type: str, entity_id: Any) -> None:
        super().__init__(f"{entity_type} not found: {entity_id}")
        self.entity_type = entity_type
        self.entity_id = entity_id


class CadenceEnrollmentError(AutomationError):
    pass


class JobExecutionError(AutomationError):
    pass


class ActionConfigurationError(AutomationError):
    pass
