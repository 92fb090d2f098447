from __future__ import annotations

import hashlib
import logging
from dataclasses import dataclass, replace
from datetime import date, datetime, timezone
from zoneinfo import ZoneInfoNotFoundError

from .clock import (
    DEFAULT_REFERENCE_TIMEZONE,
    can_schedule,
    compute_delivery_instant,
    exceeds_horizon,
    format_time_of_day,
    parse_time_of_day,
)
from .dispatch import DispatchClient, DispatchPayload
from .entities import EntityDirectory
from .errors import BatchScheduleError, DispatchFailure, NotFoundError, PastScheduleError, ValidationError
from .notification_store import NotificationRecord, NotificationRepository, new_notification_id

logger = logging.getLogger(__name__)


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


def _coerce_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def dedup_key(kind: str, entity_id: str, offset_days: int, freshness: str) -> str:
    return f"{kind}-{entity_id}-{offset_days}d-{freshness}"


def _request_freshness(request_key: str, recipient_id: str) -> str:
    return hashlib.sha256(f"{request_key}:{recipient_id}".encode("utf-8")).hexdigest()[:16]


@dataclass(frozen=True)
class SubtaskScheduleParams:
    subtask_id: str
    offset_days: int
    time_of_day: str | None = None
    created_by: str = "system"
    # Operator testing only: fire at this instant and skip the scheduling guard.
    override_instant: datetime | None = None
    idempotency_key: str | None = None


@dataclass(frozen=True)
class EventScheduleParams:
    event_id: str
    recipient_ids: tuple[str, ...]
    offset_days: int
    time_of_day: str | None = None
    created_by: str = "system"
    override_instant: datetime | None = None
    idempotency_key: str | None = None


class BatchScheduler:
    """Creates pending notification records and enqueues one delayed dispatch per record."""

    def __init__(
        self,
        *,
        entities: EntityDirectory,
        repository: NotificationRepository,
        dispatch: DispatchClient,
        reference_timezone: str = DEFAULT_REFERENCE_TIMEZONE,
        default_time_of_day: str = "09:00",
        max_offset_days: int = 30,
    ) -> None:
        self._entities = entities
        self._repository = repository
        self._dispatch = dispatch
        self._reference_timezone = reference_timezone
        self._default_time_of_day = default_time_of_day
        self._max_offset_days = max_offset_days

    def schedule_subtask(self, params: SubtaskScheduleParams, *, now: datetime | None = None) -> NotificationRecord:
        current = _coerce_utc(now) if now is not None else _now_utc()
        time_of_day = self._validate_timing(params.offset_days, params.time_of_day)

        subtask = self._entities.get_subtask(params.subtask_id)
        if subtask is None:
            raise NotFoundError(f"subtask not found: {params.subtask_id}")
        if subtask.deadline is None:
            raise ValidationError("cannot schedule a reminder for a sub-task without a deadline")
        if not subtask.assignee_id:
            raise ValidationError("cannot schedule a reminder for a sub-task without an assignee")
        if self._entities.get_user(subtask.assignee_id) is None:
            raise ValidationError(f"assignee not found: {subtask.assignee_id}")

        if params.idempotency_key:
            existing = self._repository.list_by_request_key("subtask", subtask.subtask_id, params.idempotency_key)
            if existing:
                return existing[0]

        scheduled_for = self._resolve_instant(
            subtask.deadline,
            params.offset_days,
            time_of_day,
            override_instant=params.override_instant,
            now=current,
        )
        record = self._insert(
            kind="subtask",
            entity_id=subtask.subtask_id,
            recipient_id=subtask.assignee_id,
            project_id=subtask.project_id,
            scheduled_for=scheduled_for,
            offset_days=params.offset_days,
            time_of_day=time_of_day,
            created_by=params.created_by,
            request_key=params.idempotency_key,
            now=current,
        )
        try:
            handle = self._enqueue(record)
        except Exception:
            # No orphaned pending rows: a row without a handle never fires.
            self._repository.delete(record.notification_id)
            raise
        logger.info(
            "scheduled subtask reminder notification=%s subtask=%s scheduled_for=%s",
            record.notification_id,
            subtask.subtask_id,
            scheduled_for.isoformat(),
        )
        return replace(record, external_handle=handle)

    def schedule_event(self, params: EventScheduleParams, *, now: datetime | None = None) -> list[NotificationRecord]:
        current = _coerce_utc(now) if now is not None else _now_utc()
        time_of_day = self._validate_timing(params.offset_days, params.time_of_day)

        event = self._entities.get_event(params.event_id)
        if event is None:
            raise NotFoundError(f"event not found: {params.event_id}")
        if event.starts_at is None:
            raise ValidationError("cannot schedule a reminder for an event without a date")

        recipient_ids = list(dict.fromkeys(item.strip() for item in params.recipient_ids if item.strip()))
        if not recipient_ids:
            raise ValidationError("at least one recipient is required")
        member_ids = self._entities.list_project_member_ids(event.project_id)
        outsiders = [recipient_id for recipient_id in recipient_ids if recipient_id not in member_ids]
        if outsiders:
            raise ValidationError(f"recipients are not members of the project: {', '.join(outsiders)}")

        if params.idempotency_key:
            existing = self._repository.list_by_request_key("event", event.event_id, params.idempotency_key)
            if existing:
                return existing

        scheduled_for = self._resolve_instant(
            event.starts_at,
            params.offset_days,
            time_of_day,
            override_instant=params.override_instant,
            now=current,
        )

        inserted: list[NotificationRecord] = []
        handles: list[str] = []
        for recipient_id in recipient_ids:
            try:
                record = self._insert(
                    kind="event",
                    entity_id=event.event_id,
                    recipient_id=recipient_id,
                    project_id=event.project_id,
                    scheduled_for=scheduled_for,
                    offset_days=params.offset_days,
                    time_of_day=time_of_day,
                    created_by=params.created_by,
                    request_key=params.idempotency_key,
                    now=current,
                )
                inserted.append(record)
                handle = self._enqueue(record)
                handles.append(handle)
                inserted[-1] = replace(record, external_handle=handle)
            except Exception as exc:
                self._compensate(inserted, handles)
                raise BatchScheduleError(recipient_id, str(exc)) from exc

        logger.info(
            "scheduled event reminders event=%s recipients=%d scheduled_for=%s",
            event.event_id,
            len(inserted),
            scheduled_for.isoformat(),
        )
        return inserted

    def _validate_timing(self, offset_days: int, time_of_day: str | None) -> str:
        if offset_days < 0 or offset_days > self._max_offset_days:
            raise ValidationError(f"offset_days must be between 0 and {self._max_offset_days}")
        return format_time_of_day(parse_time_of_day(time_of_day or self._default_time_of_day))

    def _resolve_instant(
        self,
        deadline: datetime | date,
        offset_days: int,
        time_of_day: str,
        *,
        override_instant: datetime | None,
        now: datetime,
    ) -> datetime:
        if override_instant is not None:
            instant = _coerce_utc(override_instant)
        else:
            if not can_schedule(deadline, offset_days, time_of_day, now=now, zone_name=self._reference_timezone):
                raise PastScheduleError("the reminder time has already passed or is too close to now")
            try:
                instant = compute_delivery_instant(
                    deadline,
                    offset_days,
                    time_of_day,
                    zone_name=self._reference_timezone,
                )
            except (ZoneInfoNotFoundError, OverflowError, ValueError) as exc:
                raise ValidationError(f"delivery time could not be resolved: {exc}") from exc
        if exceeds_horizon(instant, now=now):
            raise ValidationError("reminders cannot be scheduled more than 365 days ahead")
        return instant

    def _insert(
        self,
        *,
        kind: str,
        entity_id: str,
        recipient_id: str,
        project_id: str,
        scheduled_for: datetime,
        offset_days: int,
        time_of_day: str,
        created_by: str,
        request_key: str | None,
        now: datetime,
    ) -> NotificationRecord:
        return self._repository.insert(
            NotificationRecord(
                notification_id=new_notification_id(),
                kind=kind,
                entity_id=entity_id,
                recipient_id=recipient_id,
                project_id=project_id,
                scheduled_for=scheduled_for,
                offset_days=offset_days,
                time_of_day=time_of_day,
                state="pending",
                created_by=created_by,
                created_at=now,
                updated_at=now,
                request_key=request_key,
            )
        )

    def _enqueue(self, record: NotificationRecord) -> str:
        # Each attempt mints new record ids, so a retried key never collides with rolled-back messages.
        freshness = (
            f"{_request_freshness(record.request_key, record.recipient_id)}-{record.notification_id}"
            if record.request_key
            else record.notification_id
        )
        payload = DispatchPayload(
            notification_id=record.notification_id,
            kind=record.kind,
            entity_id=record.entity_id,
        )
        handle = self._dispatch.enqueue(
            payload,
            record.scheduled_for,
            dedup_key(record.kind, record.entity_id, record.offset_days, freshness),
        )
        if not self._repository.attach_handle(record.notification_id, handle, now=_now_utc()):
            try:
                self._dispatch.cancel(handle)
            except DispatchFailure as exc:
                logger.warning("could not cancel unattached handle=%s: %s", handle, exc.message)
            raise DispatchFailure("handle_not_attached", f"notification {record.notification_id} is no longer pending")
        return handle

    def _compensate(self, inserted: list[NotificationRecord], handles: list[str]) -> None:
        for handle in handles:
            try:
                self._dispatch.cancel(handle)
            except DispatchFailure as exc:
                logger.warning("compensation could not cancel handle=%s: %s", handle, exc.message)
        for record in inserted:
            self._repository.delete(record.notification_id)
        logger.warning("rolled back event batch: %d records removed", len(inserted))
