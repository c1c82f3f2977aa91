from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Response, status
from sqlalchemy.orm import Session

from crm_automation.automation.runtime import get_runtime
from crm_automation.core.config import get_settings
from crm_automation.core.database import get_db
from crm_automation.metrics import generate_metrics_payload, metrics_content_type


router = APIRouter()


@router.get("/health", tags=["system"])
def health() -> dict[str, str]:
    settings = get_settings()
    return {
        "status": "ok",
        "service": settings.app_name,
        "environment": settings.app_env,
    }


@router.get("/metrics", tags=["system"])
def metrics() -> Response:
    settings = get_settings()
    if not settings.metrics_enabled:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="not found")
    return Response(content=generate_metrics_payload(), media_type=metrics_content_type())


@router.post("/api/automation/scheduler/sweep", tags=["automation"])
def run_scheduler_sweep(db: Session = Depends(get_db)) -> dict[str, Any]:
    return get_runtime().run_scheduler_sweep(db)
