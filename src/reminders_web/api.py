from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone

from fastapi import APIRouter, HTTPException, Query, Request, status
from pydantic import ValidationError as PayloadValidationError
from starlette.concurrency import run_in_threadpool

from .callback_security import verify_callback_signature
from .config import Settings, get_settings
from .delivery import DeliveryExecutor
from .dispatch import DispatchClient, DispatchConfig, create_dispatch_client
from .entities import EntityDirectory, create_entity_directory
from .errors import (
    AlreadyTerminalError,
    BatchScheduleError,
    DeliveryInProgressError,
    DispatchFailure,
    NotFoundError,
    PastScheduleError,
    ReminderError,
    ValidationError,
)
from .lifecycle import NotificationLifecycle
from .mailer import EmailSender, HttpEmailSender, StubEmailSender, mask_email
from .models import (
    DeliveryCallbackRequest,
    DeliveryCallbackResponse,
    EntityCancelResponse,
    EntityNotificationsResponse,
    EventNotificationCreateRequest,
    NotificationDetailResponse,
    NotificationKind,
    NotificationListResponse,
    NotificationRescheduleRequest,
    NotificationResponse,
    NotificationStatus,
    OperatorTestRequest,
    OperatorTestResponse,
    SubtaskNotificationCreateRequest,
    UpcomingNotificationsResponse,
)
from .notification_store import NotificationRecord, NotificationRepository, create_notification_repository
from .scheduler import BatchScheduler, EventScheduleParams, SubtaskScheduleParams

logger = logging.getLogger(__name__)

_settings = get_settings()
router = APIRouter(prefix=f"{_settings.api_prefix}/reminders", tags=["reminders"])


def _create_email_sender(settings: Settings) -> EmailSender:
    if settings.email_sender_type == "http":
        return HttpEmailSender(
            base_url=settings.email_api_base_url,
            api_key=settings.email_api_key,
            from_address=settings.email_from,
            timeout_seconds=settings.email_timeout_seconds,
        )
    return StubEmailSender(enabled=settings.email_enabled)


notification_repo: NotificationRepository = create_notification_repository(
    backend=_settings.notification_store_backend,
    database_url=_settings.database_url,
)
entity_directory: EntityDirectory = create_entity_directory(
    backend=_settings.entity_store_backend,
    database_url=_settings.database_url,
)
dispatch_client: DispatchClient = create_dispatch_client(DispatchConfig.from_settings(_settings))
email_sender: EmailSender = _create_email_sender(_settings)


def reset_runtime_state_for_tests() -> None:
    notification_repo.reset()
    reset_entities = getattr(entity_directory, "reset", None)
    if reset_entities is not None:
        reset_entities()


def _scheduler() -> BatchScheduler:
    return BatchScheduler(
        entities=entity_directory,
        repository=notification_repo,
        dispatch=dispatch_client,
        reference_timezone=_settings.reference_timezone,
        default_time_of_day=_settings.default_time_of_day,
        max_offset_days=_settings.max_offset_days,
    )


def _lifecycle() -> NotificationLifecycle:
    return NotificationLifecycle(
        entities=entity_directory,
        repository=notification_repo,
        dispatch=dispatch_client,
        reference_timezone=_settings.reference_timezone,
        max_offset_days=_settings.max_offset_days,
    )


def _executor() -> DeliveryExecutor:
    return DeliveryExecutor(
        entities=entity_directory,
        repository=notification_repo,
        sender=email_sender,
        reference_timezone=_settings.reference_timezone,
        app_base_url=_settings.app_base_url,
    )


def _http_error(exc: Exception) -> HTTPException:
    if isinstance(exc, NotFoundError):
        return HTTPException(status_code=404, detail=str(exc.args[0]) if exc.args else "not found")
    if isinstance(exc, (ValidationError, PastScheduleError)):
        return HTTPException(status_code=400, detail=str(exc))
    if isinstance(exc, (AlreadyTerminalError, DeliveryInProgressError)):
        return HTTPException(status_code=409, detail=str(exc))
    if isinstance(exc, BatchScheduleError):
        return HTTPException(status_code=502, detail=str(exc))
    if isinstance(exc, DispatchFailure):
        return HTTPException(status_code=502, detail=f"dispatch failed ({exc.error_code}): {exc.message}")
    return HTTPException(status_code=500, detail=str(exc))


def _require_record(notification_id: str) -> NotificationRecord:
    record = notification_repo.get(notification_id)
    if record is None:
        raise HTTPException(status_code=404, detail=f"notification not found: {notification_id}")
    return record


def _entity_listing(kind: NotificationKind, entity_id: str) -> EntityNotificationsResponse:
    records = notification_repo.list_for_entity(kind, entity_id)
    return EntityNotificationsResponse(
        kind=kind,
        entity_id=entity_id,
        items=[NotificationResponse.from_record(record) for record in records],
    )


@router.post(
    "/subtasks/{subtask_id}/notifications",
    response_model=NotificationResponse,
    status_code=status.HTTP_201_CREATED,
)
def schedule_subtask_notification(subtask_id: str, payload: SubtaskNotificationCreateRequest) -> NotificationResponse:
    try:
        record = _scheduler().schedule_subtask(
            SubtaskScheduleParams(
                subtask_id=subtask_id,
                offset_days=payload.offset_days,
                time_of_day=payload.time_of_day,
                created_by=payload.created_by,
                idempotency_key=payload.idempotency_key,
            )
        )
    except (ReminderError, NotFoundError) as exc:
        raise _http_error(exc) from exc
    return NotificationResponse.from_record(record)


@router.get("/subtasks/{subtask_id}/notifications", response_model=EntityNotificationsResponse)
def list_subtask_notifications(subtask_id: str) -> EntityNotificationsResponse:
    return _entity_listing("subtask", subtask_id)


@router.delete("/subtasks/{subtask_id}/notifications", response_model=EntityCancelResponse)
def cancel_subtask_notifications(subtask_id: str) -> EntityCancelResponse:
    cancelled = _lifecycle().cancel_for_entity("subtask", subtask_id)
    return EntityCancelResponse(kind="subtask", entity_id=subtask_id, cancelled_count=cancelled)


@router.post(
    "/events/{event_id}/notifications",
    response_model=list[NotificationResponse],
    status_code=status.HTTP_201_CREATED,
)
def schedule_event_notifications(event_id: str, payload: EventNotificationCreateRequest) -> list[NotificationResponse]:
    try:
        records = _scheduler().schedule_event(
            EventScheduleParams(
                event_id=event_id,
                recipient_ids=tuple(payload.recipient_ids),
                offset_days=payload.offset_days,
                time_of_day=payload.time_of_day,
                created_by=payload.created_by,
                idempotency_key=payload.idempotency_key,
            )
        )
    except (ReminderError, NotFoundError) as exc:
        raise _http_error(exc) from exc
    return [NotificationResponse.from_record(record) for record in records]


@router.get("/events/{event_id}/notifications", response_model=EntityNotificationsResponse)
def list_event_notifications(event_id: str) -> EntityNotificationsResponse:
    return _entity_listing("event", event_id)


@router.delete("/events/{event_id}/notifications", response_model=EntityCancelResponse)
def cancel_event_notifications(event_id: str) -> EntityCancelResponse:
    cancelled = _lifecycle().cancel_for_entity("event", event_id)
    return EntityCancelResponse(kind="event", entity_id=event_id, cancelled_count=cancelled)


@router.get("/notifications", response_model=NotificationListResponse)
def list_project_notifications(
    project_id: str = Query(min_length=1),
    status_filter: NotificationStatus | None = Query(default=None, alias="status"),
    kind: NotificationKind | None = None,
    limit: int = Query(default=50, ge=1, le=100),
    offset: int = Query(default=0, ge=0),
) -> NotificationListResponse:
    records = notification_repo.list_for_project(
        project_id,
        state=status_filter,
        kind=kind,
        limit=limit + 1,
        offset=offset,
    )
    return NotificationListResponse(
        items=[NotificationResponse.from_record(record) for record in records[:limit]],
        limit=limit,
        offset=offset,
        has_more=len(records) > limit,
    )


@router.get("/notifications/upcoming", response_model=UpcomingNotificationsResponse)
def list_upcoming_notifications(hours_ahead: int = Query(default=24, ge=1, le=168)) -> UpcomingNotificationsResponse:
    due_before = datetime.now(timezone.utc) + timedelta(hours=hours_ahead)
    records = notification_repo.list_pending_due(due_before)
    return UpcomingNotificationsResponse(
        due_before=due_before,
        items=[NotificationResponse.from_record(record) for record in records],
    )


@router.get("/notifications/{notification_id}", response_model=NotificationDetailResponse)
def get_notification(notification_id: str) -> NotificationDetailResponse:
    record = _require_record(notification_id)
    entity_title: str | None = None
    if record.kind == "subtask":
        subtask = entity_directory.get_subtask(record.entity_id)
        entity_title = subtask.title if subtask is not None else None
    else:
        event = entity_directory.get_event(record.entity_id)
        entity_title = event.title if event is not None else None
    project = entity_directory.get_project(record.project_id)
    recipient = entity_directory.get_user(record.recipient_id)
    return NotificationDetailResponse(
        **NotificationResponse.from_record(record).model_dump(),
        entity_title=entity_title,
        project_name=project.name if project is not None else None,
        recipient_name=recipient.name if recipient is not None else None,
        recipient_email_masked=mask_email(recipient.email) if recipient is not None else None,
    )


@router.post("/notifications/{notification_id}/cancel", response_model=NotificationResponse)
def cancel_notification(notification_id: str) -> NotificationResponse:
    try:
        record = _lifecycle().cancel(notification_id)
    except (ReminderError, NotFoundError) as exc:
        raise _http_error(exc) from exc
    return NotificationResponse.from_record(record)


@router.patch("/notifications/{notification_id}", response_model=NotificationResponse)
def reschedule_notification(notification_id: str, payload: NotificationRescheduleRequest) -> NotificationResponse:
    try:
        record = _lifecycle().reschedule(
            notification_id,
            offset_days=payload.offset_days,
            time_of_day=payload.time_of_day,
        )
    except (ReminderError, NotFoundError) as exc:
        raise _http_error(exc) from exc
    return NotificationResponse.from_record(record)


@router.post("/webhooks/deliver", response_model=DeliveryCallbackResponse)
async def deliver_notification(request: Request) -> DeliveryCallbackResponse:
    body = await request.body()
    verification = verify_callback_signature(settings=_settings, body=body, headers=request.headers)
    if not verification.verified:
        if _settings.callback_signature_mode == "enforce":
            raise HTTPException(401, f"callback signature rejected: {verification.reason}")
        logger.warning("unverified delivery callback accepted: %s", verification.reason)

    try:
        payload = DeliveryCallbackRequest.model_validate_json(body)
    except PayloadValidationError as exc:
        raise HTTPException(400, "delivery payload requires notification_id, kind and entity_id") from exc

    outcome = await run_in_threadpool(_executor().deliver, payload.notification_id)
    return DeliveryCallbackResponse(
        notification_id=outcome.notification_id,
        outcome=outcome.outcome,
        status=outcome.state,  # type: ignore[arg-type]
        delivery_ref=outcome.delivery_ref,
        reason=outcome.reason,
        signature_verified=verification.verified,
    )


@router.post("/test", response_model=OperatorTestResponse, status_code=status.HTTP_201_CREATED)
def schedule_operator_test(payload: OperatorTestRequest) -> OperatorTestResponse:
    if not _settings.operator_test_enabled:
        raise HTTPException(404, "operator test surface is disabled")
    fire_at = datetime.now(timezone.utc) + timedelta(minutes=payload.delay_minutes)
    try:
        if payload.kind == "subtask":
            records = [
                _scheduler().schedule_subtask(
                    SubtaskScheduleParams(
                        subtask_id=payload.entity_id,
                        offset_days=payload.offset_days,
                        created_by=payload.created_by,
                        override_instant=fire_at,
                    )
                )
            ]
        else:
            records = _scheduler().schedule_event(
                EventScheduleParams(
                    event_id=payload.entity_id,
                    recipient_ids=tuple(payload.recipient_ids),
                    offset_days=payload.offset_days,
                    created_by=payload.created_by,
                    override_instant=fire_at,
                )
            )
    except (ReminderError, NotFoundError) as exc:
        raise _http_error(exc) from exc
    logger.info("operator test scheduled %d notification(s) at %s", len(records), fire_at.isoformat())
    return OperatorTestResponse(
        scheduled_for=fire_at,
        items=[NotificationResponse.from_record(record) for record in records],
    )
