from __future__ import annotations

from datetime import datetime
from typing import Literal

from pydantic import BaseModel, Field, field_validator

from .delivery import DeliveryOutcomeStatus
from .notification_store import NotificationRecord

NotificationKind = Literal["subtask", "event"]
NotificationStatus = Literal["pending", "sent", "failed", "cancelled"]


class SubtaskNotificationCreateRequest(BaseModel):
    offset_days: int
    time_of_day: str | None = Field(default=None, max_length=8)
    created_by: str = Field(default="system", min_length=1, max_length=128)
    idempotency_key: str | None = Field(default=None, min_length=8, max_length=256)


class EventNotificationCreateRequest(BaseModel):
    recipient_ids: list[str] = Field(max_length=500)
    offset_days: int
    time_of_day: str | None = Field(default=None, max_length=8)
    created_by: str = Field(default="system", min_length=1, max_length=128)
    idempotency_key: str | None = Field(default=None, min_length=8, max_length=256)

    @field_validator("recipient_ids")
    @classmethod
    def _normalize_recipient_ids(cls, value: list[str]) -> list[str]:
        normalized: list[str] = []
        for raw_id in value:
            recipient_id = str(raw_id).strip()
            if recipient_id and recipient_id not in normalized:
                normalized.append(recipient_id)
        return normalized


class NotificationRescheduleRequest(BaseModel):
    offset_days: int | None = None
    time_of_day: str | None = Field(default=None, max_length=8)


class NotificationResponse(BaseModel):
    notification_id: str
    kind: NotificationKind
    entity_id: str
    recipient_id: str
    project_id: str
    scheduled_for: datetime
    offset_days: int
    time_of_day: str
    status: NotificationStatus
    external_handle: str | None = None
    delivery_ref: str | None = None
    sent_at: datetime | None = None
    status_reason: str | None = None
    created_by: str
    created_at: datetime
    updated_at: datetime

    @classmethod
    def from_record(cls, record: NotificationRecord) -> NotificationResponse:
        return cls(
            notification_id=record.notification_id,
            kind=record.kind,  # type: ignore[arg-type]
            entity_id=record.entity_id,
            recipient_id=record.recipient_id,
            project_id=record.project_id,
            scheduled_for=record.scheduled_for,
            offset_days=record.offset_days,
            time_of_day=record.time_of_day,
            status=record.state,  # type: ignore[arg-type]
            external_handle=record.external_handle,
            delivery_ref=record.delivery_ref,
            sent_at=record.sent_at,
            status_reason=record.status_reason,
            created_by=record.created_by,
            created_at=record.created_at,
            updated_at=record.updated_at,
        )


class NotificationDetailResponse(NotificationResponse):
    entity_title: str | None = None
    project_name: str | None = None
    recipient_name: str | None = None
    recipient_email_masked: str | None = None


class NotificationListResponse(BaseModel):
    items: list[NotificationResponse]
    limit: int
    offset: int
    has_more: bool


class EntityNotificationsResponse(BaseModel):
    kind: NotificationKind
    entity_id: str
    items: list[NotificationResponse]


class UpcomingNotificationsResponse(BaseModel):
    due_before: datetime
    items: list[NotificationResponse]


class EntityCancelResponse(BaseModel):
    kind: NotificationKind
    entity_id: str
    cancelled_count: int


class DeliveryCallbackRequest(BaseModel):
    notification_id: str = Field(min_length=1, max_length=64)
    kind: NotificationKind
    entity_id: str = Field(min_length=1, max_length=128)


class DeliveryCallbackResponse(BaseModel):
    notification_id: str
    outcome: DeliveryOutcomeStatus
    status: NotificationStatus | None = None
    delivery_ref: str | None = None
    reason: str | None = None
    signature_verified: bool


class OperatorTestRequest(BaseModel):
    kind: NotificationKind
    entity_id: str = Field(min_length=1, max_length=128)
    recipient_ids: list[str] = Field(default_factory=list, max_length=50)
    delay_minutes: int = Field(default=1, ge=1, le=60)
    offset_days: int = Field(default=1, ge=0)
    created_by: str = Field(default="operator", min_length=1, max_length=128)


class OperatorTestResponse(BaseModel):
    scheduled_for: datetime
    items: list[NotificationResponse]
