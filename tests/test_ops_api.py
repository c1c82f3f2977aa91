from __future__ import annotations

import logging
import uuid
from collections.abc import Generator

import pytest
from fastapi.testclient import TestClient
from opentelemetry.sdk.trace.export.in_memory_span_exporter import InMemorySpanExporter
from sqlalchemy.orm import Session

from crm_automation.automation.models import SchedulerJob
from crm_automation.automation.runtime import AutomationRuntime, get_runtime
from crm_automation.automation.schemas import WorkflowCreate
from crm_automation.core.config import get_settings
from crm_automation.core.database import get_db
from crm_automation.main import app
from crm_automation.otel import setup_inmemory_otel


@pytest.fixture()
def client(db_session: Session) -> Generator[TestClient, None, None]:
    def override_get_db() -> Generator[Session, None, None]:
        yield db_session

    app.dependency_overrides[get_db] = override_get_db
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


@pytest.fixture()
def span_exporter() -> InMemorySpanExporter:
    exporter = setup_inmemory_otel("automation")
    exporter.clear()
    return exporter


def _queue_orphan_cadence_job(session: Session) -> uuid.UUID:
    job = get_runtime().schedule_job(session, "cadence_step", {"enrollment_id": str(uuid.uuid4())})
    return job.id


def test_health_reports_service(client: TestClient) -> None:
    response = client.get("/health")

    assert response.status_code == 200
    assert response.json()["status"] == "ok"
    assert response.json()["service"] == "CRM Automation Engine"


def test_metrics_endpoint_is_disabled_by_default(client: TestClient) -> None:
    assert client.get("/metrics").status_code == 404


def test_metrics_endpoint_exposes_http_and_automation_metrics(
    client: TestClient,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    monkeypatch.setenv("METRICS_ENABLED", "true")
    get_settings.cache_clear()

    assert client.get("/health").status_code == 200
    response = client.get("/metrics")

    assert response.status_code == 200
    body = response.text
    assert "http_requests_total" in body
    assert 'path="/health"' in body
    for name in [
        "automation_runs_total",
        "automation_actions_total",
        "automation_guardrail_blocks_total",
        "scheduler_jobs_total",
        "assignment_decisions_total",
        "approval_actions_total",
    ]:
        assert name in body


def test_sweep_endpoint_drains_due_jobs(client: TestClient, db_session: Session) -> None:
    job_id = _queue_orphan_cadence_job(db_session)

    response = client.post("/api/automation/scheduler/sweep")

    assert response.status_code == 200
    payload = response.json()
    assert payload["scheduled_workflows"] == 0
    assert payload["expired_approvals"] == 0
    assert payload["jobs"]["claimed"] == 1
    assert payload["jobs"]["completed"] == 1
    assert payload["jobs"]["job_ids"] == [str(job_id)]

    job = db_session.get(SchedulerJob, job_id)
    assert job is not None
    db_session.refresh(job)
    assert job.status == "completed"
    assert job.result_json == {"discarded": "enrollment_not_found"}


def test_correlation_id_is_echoed_and_logged(client: TestClient, caplog: pytest.LogCaptureFixture) -> None:
    caplog.set_level(logging.INFO)

    response = client.get("/health", headers={"X-Correlation-Id": "ops-corr-1"})

    assert response.headers["x-correlation-id"] == "ops-corr-1"
    records = [
        record
        for record in caplog.records
        if record.name == "crm_automation.request" and record.getMessage() == "http.request"
    ]
    assert any(
        getattr(record, "correlation_id", None) == "ops-corr-1"
        and getattr(record, "method", None) == "GET"
        and getattr(record, "path", None) == "/health"
        and getattr(record, "status_code", None) == 200
        and isinstance(getattr(record, "duration_ms", None), float)
        for record in records
    )

    generated = client.get("/health")
    assert generated.headers["x-correlation-id"]


def test_job_logs_carry_request_correlation_id(
    client: TestClient,
    db_session: Session,
    caplog: pytest.LogCaptureFixture,
) -> None:
    caplog.set_level(logging.INFO)
    job_id = _queue_orphan_cadence_job(db_session)

    client.post("/api/automation/scheduler/sweep", headers={"X-Correlation-Id": "sweep-corr-1"})

    assert any(
        record.name == "crm_automation.automation.scheduler"
        and record.getMessage() == "scheduler.job.completed"
        and getattr(record, "job_id", None) == str(job_id)
        and getattr(record, "correlation_id", None) == "sweep-corr-1"
        for record in caplog.records
    )


def test_scheduler_job_span_is_recorded(
    client: TestClient,
    db_session: Session,
    span_exporter: InMemorySpanExporter,
) -> None:
    job_id = _queue_orphan_cadence_job(db_session)

    client.post("/api/automation/scheduler/sweep", headers={"X-Correlation-Id": "otel-sweep-1"})

    spans = span_exporter.get_finished_spans()
    assert any(span.attributes.get("correlation_id") == "otel-sweep-1" for span in spans)
    job_spans = [span for span in spans if span.name == "scheduler.job"]
    assert any(
        span.attributes.get("job.id") == str(job_id) and span.attributes.get("job.type") == "cadence_step"
        for span in job_spans
    )


def test_workflow_run_span_is_recorded(
    runtime: AutomationRuntime,
    db_session: Session,
    span_exporter: InMemorySpanExporter,
) -> None:
    runtime.definitions.create_workflow(
        db_session,
        WorkflowCreate(
            name="Welcome note",
            module="deals",
            trigger_type="on_create",
            actions=[{"type": "add_note", "body": "Welcome {{title}}"}],
        ),
        "admin-1",
    )

    _, runs = runtime.create_record(db_session, "deals", title="Span deal")

    run_spans = [span for span in span_exporter.get_finished_spans() if span.name == "automation.run"]
    assert [span.attributes.get("automation.run_id") for span in run_spans] == [str(runs[0].run_id)]
    assert run_spans[0].attributes.get("automation.trigger_type") == "on_create"


def test_correlation_id_falls_back_to_request_id_and_rejects_unsafe_values(client: TestClient) -> None:
    from_request_id = client.get("/health", headers={"X-Request-Id": "req-42"})
    assert from_request_id.headers["x-correlation-id"] == "req-42"

    unsafe = client.get("/health", headers={"X-Correlation-Id": "bad id with spaces"})
    replaced = unsafe.headers["x-correlation-id"]
    assert replaced != "bad id with spaces"
    assert uuid.UUID(replaced)


def test_metrics_scrapes_are_not_request_logged(
    client: TestClient,
    monkeypatch: pytest.MonkeyPatch,
    caplog: pytest.LogCaptureFixture,
) -> None:
    monkeypatch.setenv("METRICS_ENABLED", "true")
    get_settings.cache_clear()
    caplog.set_level(logging.INFO)

    assert client.get("/metrics").status_code == 200
    assert client.get("/api/unknown").status_code == 404

    request_records = [record for record in caplog.records if record.name == "crm_automation.request"]
    assert [getattr(record, "path", None) for record in request_records] == ["/api/unknown"]
    assert request_records[0].levelno == logging.WARNING
