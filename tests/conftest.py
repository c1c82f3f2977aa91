from __future__ import annotations

import uuid
from collections.abc import Callable, Generator
from typing import Any

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from crm_automation import audit, events
from crm_automation.automation.ports import DispatchResult, MessageRequest, WebhookResponse
from crm_automation.automation.runtime import AutomationRuntime
from crm_automation.core.config import get_settings
from crm_automation.core.database import Base


class FakeDispatcher:
    def __init__(self) -> None:
        self.sent: list[tuple[str, MessageRequest]] = []
        self.fail_channels: set[str] = set()

    def dispatch_message(self, session: Session, channel: str, request: MessageRequest) -> DispatchResult:
        if channel in self.fail_channels:
            return DispatchResult(success=False, error=f"{channel} provider down")
        self.sent.append((channel, request))
        return DispatchResult(success=True, message_id=f"msg-{len(self.sent)}")


class FakeWebhookPoster:
    def __init__(self) -> None:
        self.calls: list[dict[str, Any]] = []
        self.status_codes: list[int] = []

    def post(self, url: str, method: str, headers: dict[str, str], body: Any, timeout: float) -> WebhookResponse:
        self.calls.append({"url": url, "method": method, "headers": headers, "body": body, "timeout": timeout})
        status_code = self.status_codes.pop(0) if self.status_codes else 200
        return WebhookResponse(status_code=status_code)


@pytest.fixture()
def db_session() -> Generator[Session, None, None]:
    engine = create_engine(
        "sqlite+pysqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    SessionLocal = sessionmaker(bind=engine, autocommit=False, autoflush=False)
    Base.metadata.create_all(bind=engine)
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=engine)


@pytest.fixture(autouse=True)
def clear_stubs() -> Generator[None, None, None]:
    get_settings.cache_clear()
    audit.audit_entries.clear()
    events.published_events.clear()
    yield
    get_settings.cache_clear()
    audit.audit_entries.clear()
    events.published_events.clear()


@pytest.fixture()
def dispatcher() -> FakeDispatcher:
    return FakeDispatcher()


@pytest.fixture()
def webhook_poster() -> FakeWebhookPoster:
    return FakeWebhookPoster()


@pytest.fixture()
def runtime(dispatcher: FakeDispatcher, webhook_poster: FakeWebhookPoster) -> AutomationRuntime:
    return AutomationRuntime(dispatcher=dispatcher, webhook_poster=webhook_poster)


@pytest.fixture()
def new_record(runtime: AutomationRuntime, db_session: Session) -> Callable[..., uuid.UUID]:
    def _create(
        module: str = "deals",
        *,
        owner_id: str | None = "owner-1",
        stage: str | None = None,
        title: str | None = "Acme renewal",
        **fields: Any,
    ) -> uuid.UUID:
        record = runtime.record_store.create(
            db_session,
            module,
            title=title,
            owner_id=owner_id,
            stage=stage,
            fields=fields,
            created_by="creator-1",
        )
        db_session.commit()
        return record.id

    return _create
