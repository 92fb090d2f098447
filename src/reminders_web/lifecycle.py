from __future__ import annotations

import logging
import secrets
from datetime import datetime, timezone
from zoneinfo import ZoneInfoNotFoundError

from .clock import (
    DEFAULT_REFERENCE_TIMEZONE,
    compute_delivery_instant,
    exceeds_horizon,
    format_time_of_day,
    is_effectively_past,
    parse_time_of_day,
)
from .dispatch import DispatchClient, DispatchPayload
from .entities import EntityDirectory
from .errors import (
    AlreadyTerminalError,
    DeliveryInProgressError,
    DispatchFailure,
    NotFoundError,
    PastScheduleError,
    ValidationError,
    raise_for_terminal_state,
)
from .notification_store import NotificationRecord, NotificationRepository
from .scheduler import dedup_key

logger = logging.getLogger(__name__)


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


class NotificationLifecycle:
    """Cancels or reschedules notifications that have not fired yet."""

    def __init__(
        self,
        *,
        entities: EntityDirectory,
        repository: NotificationRepository,
        dispatch: DispatchClient,
        reference_timezone: str = DEFAULT_REFERENCE_TIMEZONE,
        max_offset_days: int = 30,
    ) -> None:
        self._entities = entities
        self._repository = repository
        self._dispatch = dispatch
        self._reference_timezone = reference_timezone
        self._max_offset_days = max_offset_days

    def _require(self, notification_id: str) -> NotificationRecord:
        record = self._repository.get(notification_id)
        if record is None:
            raise NotFoundError(f"notification not found: {notification_id}")
        return record

    def _raise_lost_race(self, notification_id: str, now: datetime) -> None:
        latest = self._require(notification_id)
        raise_for_terminal_state(notification_id, latest.state)
        if latest.delivery_claimed(now):
            raise DeliveryInProgressError(notification_id)
        # Still pending but the conditional update did not apply.
        raise AlreadyTerminalError(notification_id, latest.state)

    def cancel(self, notification_id: str, *, now: datetime | None = None) -> NotificationRecord:
        current = now or _now_utc()
        record = self._require(notification_id)
        raise_for_terminal_state(notification_id, record.state)
        if record.delivery_claimed(current):
            raise DeliveryInProgressError(notification_id)

        if record.external_handle:
            try:
                self._dispatch.cancel(record.external_handle)
            except DispatchFailure as exc:
                logger.warning(
                    "best-effort dispatch cancel failed notification=%s handle=%s: %s",
                    notification_id,
                    record.external_handle,
                    exc.message,
                )

        if not self._repository.transition(notification_id, to_state="cancelled", now=current):
            self._raise_lost_race(notification_id, current)
        logger.info("cancelled notification=%s", notification_id)
        return self._require(notification_id)

    def reschedule(
        self,
        notification_id: str,
        *,
        offset_days: int | None = None,
        time_of_day: str | None = None,
        now: datetime | None = None,
    ) -> NotificationRecord:
        current = now or _now_utc()
        if offset_days is None and time_of_day is None:
            raise ValidationError("offset_days or time_of_day is required")
        record = self._require(notification_id)
        raise_for_terminal_state(notification_id, record.state)
        if record.delivery_claimed(current):
            raise DeliveryInProgressError(notification_id)

        merged_offset = record.offset_days if offset_days is None else offset_days
        if merged_offset < 0 or merged_offset > self._max_offset_days:
            raise ValidationError(f"offset_days must be between 0 and {self._max_offset_days}")
        merged_time = format_time_of_day(parse_time_of_day(time_of_day if time_of_day is not None else record.time_of_day))

        deadline = self._current_deadline(record)
        try:
            instant = compute_delivery_instant(deadline, merged_offset, merged_time, zone_name=self._reference_timezone)
        except (ZoneInfoNotFoundError, OverflowError, ValueError) as exc:
            raise ValidationError(f"delivery time could not be resolved: {exc}") from exc
        if is_effectively_past(instant, now=current):
            raise PastScheduleError("the new reminder time has already passed")
        if exceeds_horizon(instant, now=current):
            raise ValidationError("reminders cannot be scheduled more than 365 days ahead")

        payload = DispatchPayload(
            notification_id=record.notification_id,
            kind=record.kind,
            entity_id=record.entity_id,
        )
        key = dedup_key(
            record.kind,
            record.entity_id,
            merged_offset,
            f"{record.notification_id}-r{int(instant.timestamp())}-{secrets.token_hex(4)}",
        )
        if record.external_handle:
            handle = self._dispatch.reschedule(record.external_handle, instant, payload=payload, dedup_key=key)
        else:
            handle = self._dispatch.enqueue(payload, instant, key)

        updated = self._repository.update_schedule(
            notification_id,
            scheduled_for=instant,
            offset_days=merged_offset,
            time_of_day=merged_time,
            external_handle=handle,
            now=current,
        )
        if not updated:
            if handle != record.external_handle:
                try:
                    self._dispatch.cancel(handle)
                except DispatchFailure as exc:
                    logger.warning("could not cancel replacement handle=%s: %s", handle, exc.message)
            self._raise_lost_race(notification_id, current)

        logger.info("rescheduled notification=%s scheduled_for=%s", notification_id, instant.isoformat())
        return self._require(notification_id)

    def cancel_for_entity(self, kind: str, entity_id: str, *, now: datetime | None = None) -> int:
        """Cancel every pending notification of a sub-task or event. Returns the number cancelled."""
        cancelled = 0
        for record in self._repository.list_for_entity(kind, entity_id):
            if record.is_terminal:
                continue
            try:
                self.cancel(record.notification_id, now=now)
            except (AlreadyTerminalError, DeliveryInProgressError, NotFoundError) as exc:
                logger.warning("skipped notification=%s during entity cancel: %s", record.notification_id, exc)
                continue
            cancelled += 1
        return cancelled

    def _current_deadline(self, record: NotificationRecord) -> datetime:
        if record.kind == "subtask":
            subtask = self._entities.get_subtask(record.entity_id)
            if subtask is None:
                raise NotFoundError(f"subtask not found: {record.entity_id}")
            if subtask.deadline is None:
                raise ValidationError("the sub-task no longer has a deadline")
            return subtask.deadline
        event = self._entities.get_event(record.entity_id)
        if event is None:
            raise NotFoundError(f"event not found: {record.entity_id}")
        if event.starts_at is None:
            raise ValidationError("the event no longer has a date")
        return event.starts_at
