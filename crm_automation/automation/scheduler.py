from __future__ import annotations

import logging
import time
import uuid
from collections.abc import Callable
from datetime import datetime, timedelta
from typing import Any

from opentelemetry import trace
from sqlalchemy import select, update
from sqlalchemy.orm import Session

from crm_automation.automation.errors import AutomationNotFoundError, JobExecutionError
from crm_automation.automation.models import SchedulerJob, utcnow
from crm_automation.automation.schemas import JobType, SweepResult
from crm_automation.context import get_correlation_id, reset_correlation_id, set_correlation_id
from crm_automation.core.config import get_settings
from crm_automation.metrics import observe_job


logger = logging.getLogger("crm_automation.automation.scheduler")
tracer = trace.get_tracer("crm_automation.automation.scheduler")

JobHandler = Callable[[Session, SchedulerJob], dict[str, Any] | None]


class Scheduler:
    def __init__(self) -> None:
        self.handlers: dict[str, JobHandler] = {}

    def register_handler(self, job_type: JobType, handler: JobHandler) -> None:
        self.handlers[job_type] = handler

    def schedule_job(
        self,
        session: Session,
        job_type: JobType,
        payload: dict[str, Any],
        run_at: datetime | None = None,
        *,
        record_id: uuid.UUID | None = None,
        max_attempts: int | None = None,
        idempotency_key: str | None = None,
    ) -> SchedulerJob:
        if idempotency_key:
            existing = session.scalar(select(SchedulerJob).where(SchedulerJob.idempotency_key == idempotency_key))
            if existing is not None:
                return existing

        settings = get_settings()
        job = SchedulerJob(
            job_type=job_type,
            status="pending",
            payload_json=payload,
            run_at=run_at or utcnow(),
            attempt=0,
            max_attempts=max_attempts or settings.scheduler_default_max_attempts,
            record_id=record_id,
            idempotency_key=idempotency_key,
            correlation_id=get_correlation_id(),
        )
        session.add(job)
        session.flush()
        logger.info(
            "scheduler.job.scheduled",
            extra={"job_id": str(job.id), "job_type": job_type, "record_id": str(record_id) if record_id else None},
        )
        return job

    def cancel_job(self, session: Session, job_id: uuid.UUID) -> bool:
        result = session.execute(
            update(SchedulerJob)
            .where(SchedulerJob.id == job_id, SchedulerJob.status == "pending")
            .values(status="cancelled", finished_at=utcnow(), updated_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        session.flush()
        cancelled = result.rowcount == 1
        logger.info("scheduler.job.cancel", extra={"job_id": str(job_id), "status": "cancelled" if cancelled else "ignored"})
        return cancelled

    def claim_job(self, session: Session, job_id: uuid.UUID, worker_id: str | None = None) -> bool:
        """Move a job from ``pending`` to ``running``; only one caller can win."""
        result = session.execute(
            update(SchedulerJob)
            .where(SchedulerJob.id == job_id, SchedulerJob.status == "pending")
            .values(
                status="running",
                attempt=SchedulerJob.attempt + 1,
                claimed_by=worker_id or get_settings().scheduler_worker_id,
                claimed_at=utcnow(),
                updated_at=utcnow(),
            )
            .execution_options(synchronize_session=False)
        )
        session.commit()
        return result.rowcount == 1

    def get_pending_jobs_for_entity(self, session: Session, record_id: uuid.UUID) -> list[SchedulerJob]:
        return list(
            session.scalars(
                select(SchedulerJob)
                .where(SchedulerJob.record_id == record_id, SchedulerJob.status == "pending")
                .order_by(SchedulerJob.run_at.asc())
            ).all()
        )

    def process_scheduled_jobs(
        self,
        session: Session,
        now: datetime | None = None,
        *,
        limit: int | None = None,
        worker_id: str | None = None,
    ) -> SweepResult:
        settings = get_settings()
        cutoff = now or utcnow()
        due_ids = session.scalars(
            select(SchedulerJob.id)
            .where(SchedulerJob.status == "pending", SchedulerJob.run_at <= cutoff)
            .order_by(SchedulerJob.run_at.asc(), SchedulerJob.created_at.asc())
            .limit(limit or settings.scheduler_batch_size)
        ).all()

        result = SweepResult()
        for job_id in due_ids:
            if not self.claim_job(session, job_id, worker_id):
                result.skipped += 1
                continue
            result.claimed += 1
            result.job_ids.append(job_id)
            outcome = self._run_claimed_job(session, job_id)
            if outcome == "completed":
                result.completed += 1
            elif outcome == "pending":
                result.rescheduled += 1
            else:
                result.failed += 1

        if due_ids:
            logger.info(
                "scheduler.sweep.finished",
                extra={"status": f"claimed={result.claimed} completed={result.completed} failed={result.failed}"},
            )
        return result

    def _run_claimed_job(self, session: Session, job_id: uuid.UUID) -> str:
        job = self._load(session, job_id)
        job_type = job.job_type
        token = set_correlation_id(job.correlation_id or get_correlation_id())
        started = time.perf_counter()
        final_status = "failed"

        try:
            with tracer.start_as_current_span(
                "scheduler.job",
                attributes={"job.id": str(job_id), "job.type": job_type, "job.attempt": job.attempt},
            ):
                try:
                    handler = self.handlers.get(job_type)
                    if handler is None:
                        raise JobExecutionError(f"no handler registered for job type {job_type}")
                    output = handler(session, job) or {}
                except Exception as exc:
                    session.rollback()
                    final_status = self._record_failure(session, job_id, exc)
                    return final_status

                job = self._load(session, job_id)
                job.status = "completed"
                job.result_json = output
                job.last_error = None
                job.finished_at = utcnow()
                session.add(job)
                session.commit()
                final_status = "completed"
                logger.info(
                    "scheduler.job.completed",
                    extra={"job_id": str(job_id), "job_type": job_type, "attempt": job.attempt},
                )
                return final_status
        finally:
            observe_job(job_type=job_type, status=final_status, duration=time.perf_counter() - started)
            reset_correlation_id(token)

    def _record_failure(self, session: Session, job_id: uuid.UUID, exc: Exception) -> str:
        settings = get_settings()
        job = self._load(session, job_id)
        job.last_error = str(exc)[:2000]
        if job.attempt < job.max_attempts:
            delay = settings.scheduler_backoff_base_seconds * (2 ** job.attempt)
            job.status = "pending"
            job.run_at = utcnow() + timedelta(seconds=delay)
            logger.warning(
                "scheduler.job.retry_scheduled",
                extra={
                    "job_id": str(job_id),
                    "job_type": job.job_type,
                    "attempt": job.attempt,
                    "error": str(exc),
                },
            )
        else:
            job.status = "failed"
            job.finished_at = utcnow()
            logger.error(
                "scheduler.job.failed",
                extra={
                    "job_id": str(job_id),
                    "job_type": job.job_type,
                    "attempt": job.attempt,
                    "error": str(exc),
                },
            )
        session.add(job)
        session.commit()
        return job.status

    def _load(self, session: Session, job_id: uuid.UUID) -> SchedulerJob:
        job = session.scalar(
            select(SchedulerJob).where(SchedulerJob.id == job_id).execution_options(populate_existing=True)
        )
        if job is None:
            raise AutomationNotFoundError("scheduler_job", job_id)
        return job
