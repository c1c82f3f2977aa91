from contextlib import asynccontextmanager
import logging

from fastapi import FastAPI
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor

from crm_automation.api.routes import router as api_router
from crm_automation.core.events import InternalEvent, event_bus
from crm_automation.logging import configure_logging
from crm_automation.middleware.correlation_id import CorrelationIdMiddleware
from crm_automation.middleware.request_logging import RequestLoggingMiddleware
from crm_automation.otel import get_fastapi_server_request_hook, setup_otel


configure_logging()
logger = logging.getLogger("crm_automation.lifecycle")


def _on_system_started(event: InternalEvent) -> None:
    logger.info("system_event", extra={"event_name": event.name, "event_payload": event.payload})


@asynccontextmanager
async def lifespan(app: FastAPI):
    event_bus.subscribe("system.started", _on_system_started)
    event_bus.publish("system.started", {"service": "automation"})
    try:
        yield
    finally:
        event_bus.unsubscribe("system.started", _on_system_started)


app = FastAPI(title="CRM Automation Engine", version="0.1.0", lifespan=lifespan)
app.add_middleware(RequestLoggingMiddleware)
app.add_middleware(CorrelationIdMiddleware)
app.include_router(api_router)

setup_otel()

if not getattr(app, "_is_instrumented_by_opentelemetry", False):
    FastAPIInstrumentor().instrument_app(app, server_request_hook=get_fastapi_server_request_hook())
