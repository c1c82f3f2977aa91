from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Protocol

import httpx
from sqlalchemy import func, select, update
from sqlalchemy.orm import Session

from crm_automation.automation.errors import AutomationNotFoundError, StaleRecordError
from crm_automation.automation.models import CRMRecord, CRMRecordChild, MessageOutbox, utcnow
from crm_automation.automation.schemas import SYSTEM_FIELDS, RecordSnapshot
from crm_automation.core.config import get_settings


logger = logging.getLogger("crm_automation.automation.ports")


class RecordStore(Protocol):
    def get(self, session: Session, record_id: uuid.UUID) -> RecordSnapshot | None: ...

    def patch(
        self,
        session: Session,
        record_id: uuid.UUID,
        changes: dict[str, Any],
        expected_version: int,
    ) -> RecordSnapshot: ...

    def create_child(
        self,
        session: Session,
        record_id: uuid.UUID,
        kind: str,
        values: dict[str, Any],
    ) -> uuid.UUID: ...

    def count_open_records(self, session: Session, owner_id: str, module: str | None) -> int: ...

    def list_records(self, session: Session, module: str, limit: int) -> list[RecordSnapshot]: ...


@dataclass
class MessageRequest:
    recipient: str
    subject: str | None = None
    body: str | None = None
    template_id: str | None = None
    record_id: uuid.UUID | None = None
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass
class DispatchResult:
    success: bool
    message_id: str | None = None
    error: str | None = None


class MessageDispatcher(Protocol):
    def dispatch_message(self, session: Session, channel: str, request: MessageRequest) -> DispatchResult: ...


@dataclass
class WebhookResponse:
    status_code: int
    body: str | None = None

    @property
    def ok(self) -> bool:
        return 200 <= self.status_code < 300


class WebhookPoster(Protocol):
    def post(
        self,
        url: str,
        method: str,
        headers: dict[str, str],
        body: Any,
        timeout: float,
    ) -> WebhookResponse: ...


class AuditSink(Protocol):
    def record(
        self,
        actor_user_id: str,
        entity_type: str,
        entity_id: str,
        action: str,
        before: dict[str, Any] | None,
        after: dict[str, Any] | None,
        correlation_id: str | None = None,
    ) -> None: ...


def snapshot_from_row(row: CRMRecord) -> RecordSnapshot:
    return RecordSnapshot(
        id=row.id,
        module=row.module,
        owner_id=row.owner_id,
        stage=row.stage,
        fields=dict(row.data or {}),
        version=int(row.row_version),
        created_by=row.created_by,
        title=row.title,
        is_open=bool(row.is_open),
    )


class SqlRecordStore:
    """Record store over the ``crm_record`` table.

    ``patch`` is a conditional update on ``row_version``; a concurrent writer
    surfaces as ``StaleRecordError`` instead of a lost update.
    """

    def create(
        self,
        session: Session,
        module: str,
        *,
        title: str | None = None,
        owner_id: str | None = None,
        stage: str | None = None,
        fields: dict[str, Any] | None = None,
        created_by: str | None = None,
    ) -> RecordSnapshot:
        row = CRMRecord(
            module=module,
            title=title,
            owner_id=owner_id,
            stage=stage,
            data=dict(fields or {}),
            created_by=created_by,
            row_version=1,
        )
        session.add(row)
        session.flush()
        return snapshot_from_row(row)

    def get(self, session: Session, record_id: uuid.UUID) -> RecordSnapshot | None:
        row = session.scalar(select(CRMRecord).where(CRMRecord.id == record_id).execution_options(populate_existing=True))
        if row is None:
            return None
        return snapshot_from_row(row)

    def patch(
        self,
        session: Session,
        record_id: uuid.UUID,
        changes: dict[str, Any],
        expected_version: int,
    ) -> RecordSnapshot:
        current = self.get(session, record_id)
        if current is None:
            raise AutomationNotFoundError("crm_record", record_id)
        if current.version != expected_version:
            raise StaleRecordError(record_id, expected_version, current.version)

        data = dict(current.fields)
        values: dict[str, Any] = {}
        for key, value in changes.items():
            if key in SYSTEM_FIELDS:
                values[key] = value
            else:
                data[key] = value
        values["data"] = data
        values["row_version"] = expected_version + 1
        values["updated_at"] = utcnow()

        result = session.execute(
            update(CRMRecord)
            .where(CRMRecord.id == record_id, CRMRecord.row_version == expected_version)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            raise StaleRecordError(record_id, expected_version)
        session.flush()

        updated = self.get(session, record_id)
        if updated is None:
            raise AutomationNotFoundError("crm_record", record_id)
        return updated

    def create_child(
        self,
        session: Session,
        record_id: uuid.UUID,
        kind: str,
        values: dict[str, Any],
    ) -> uuid.UUID:
        payload = dict(values)
        due_at = payload.pop("due_at", None)
        child = CRMRecordChild(
            record_id=record_id,
            kind=kind,
            title=payload.pop("title", None),
            body=payload.pop("body", None),
            assigned_to=payload.pop("assigned_to", None),
            due_at=due_at if isinstance(due_at, datetime) else None,
            created_by=payload.pop("created_by", None),
            payload_json=payload,
        )
        session.add(child)
        session.flush()
        return child.id

    def count_open_records(self, session: Session, owner_id: str, module: str | None) -> int:
        stmt = select(func.count(CRMRecord.id)).where(CRMRecord.owner_id == owner_id, CRMRecord.is_open.is_(True))
        if module:
            stmt = stmt.where(CRMRecord.module == module)
        return int(session.scalar(stmt) or 0)

    def list_records(self, session: Session, module: str, limit: int) -> list[RecordSnapshot]:
        rows = session.scalars(
            select(CRMRecord).where(CRMRecord.module == module).order_by(CRMRecord.created_at.asc()).limit(limit)
        ).all()
        return [snapshot_from_row(row) for row in rows]


class OutboxDispatcher:
    """Queues messages in ``message_outbox`` for the delivery subsystem."""

    channels = {"in_app", "email", "sms"}

    def dispatch_message(self, session: Session, channel: str, request: MessageRequest) -> DispatchResult:
        if channel not in self.channels:
            return DispatchResult(success=False, error=f"unsupported channel: {channel}")
        if not request.recipient:
            return DispatchResult(success=False, error="recipient is required")
        message = MessageOutbox(
            channel=channel,
            recipient=request.recipient,
            subject=request.subject,
            body=request.body,
            record_id=request.record_id,
            payload_json={"template_id": request.template_id, **request.metadata},
        )
        session.add(message)
        session.flush()
        return DispatchResult(success=True, message_id=str(message.id))


class HttpxWebhookPoster:
    def __init__(self, client: httpx.Client | None = None) -> None:
        self._client = client

    def post(
        self,
        url: str,
        method: str,
        headers: dict[str, str],
        body: Any,
        timeout: float,
    ) -> WebhookResponse:
        request_headers = {"Content-Type": "application/json", **headers}
        if self._client is not None:
            response = self._client.request(method, url, headers=request_headers, json=body, timeout=timeout)
        else:
            with httpx.Client(timeout=timeout) as client:
                response = client.request(method, url, headers=request_headers, json=body)
        return WebhookResponse(status_code=response.status_code, body=response.text[:2000])


def default_webhook_timeout() -> float:
    return float(get_settings().external_call_timeout_seconds)
