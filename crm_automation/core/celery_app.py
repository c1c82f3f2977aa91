from celery import Celery

from crm_automation.core.config import get_settings

settings = get_settings()

celery_app = Celery(
    "crm_automation",
    broker=settings.redis_url,
    backend=settings.redis_url,
    include=["crm_automation.automation.tasks"],
)
celery_app.conf.beat_schedule = {
    "automation-scheduler-sweep": {
        "task": "automation.scheduler.sweep",
        "schedule": float(settings.scheduler_poll_interval_seconds),
    },
}
celery_app.conf.timezone = "UTC"
