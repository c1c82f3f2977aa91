import logging
from typing import Any

from crm_automation.automation.runtime import get_runtime
from crm_automation.core.celery_app import celery_app
from crm_automation.core.database import session_scope


logger = logging.getLogger("crm_automation.automation.tasks")


def run_sweep(factory=None) -> dict[str, Any]:
    scope = session_scope(factory) if factory is not None else session_scope()
    try:
        with scope as session:
            return get_runtime().run_scheduler_sweep(session)
    except Exception as exc:
        logger.exception("scheduler_sweep_failed", extra={"error": str(exc)[:500]})
        raise


@celery_app.task(name="automation.scheduler.sweep")
def scheduler_sweep_task() -> dict[str, Any]:
    return run_sweep()
