from __future__ import annotations

import logging
import secrets
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Literal

from .clock import DEFAULT_REFERENCE_TIMEZONE, format_reference_time
from .entities import EntityDirectory
from .errors import DeliveryFailure
from .mailer import EmailMessage, EmailSender, EmailSendResult, mask_email
from .notification_store import NotificationRecord, NotificationRepository
from .templates import (
    EventReminderContext,
    SubtaskReminderContext,
    render_event_reminder,
    render_subtask_reminder,
)

logger = logging.getLogger(__name__)

DeliveryOutcomeStatus = Literal["sent", "failed", "skipped", "not_found", "already_processed", "in_progress"]


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class DeliveryOutcome:
    notification_id: str
    outcome: DeliveryOutcomeStatus
    state: str | None = None
    delivery_ref: str | None = None
    reason: str | None = None


@dataclass(frozen=True)
class _Unresolvable:
    state: Literal["failed", "cancelled"]
    reason: str


class DeliveryExecutor:
    """Runs one delivery callback: claim, re-resolve, render, send, close."""

    def __init__(
        self,
        *,
        entities: EntityDirectory,
        repository: NotificationRepository,
        sender: EmailSender,
        reference_timezone: str = DEFAULT_REFERENCE_TIMEZONE,
        app_base_url: str = "http://localhost:3000",
    ) -> None:
        self._entities = entities
        self._repository = repository
        self._sender = sender
        self._reference_timezone = reference_timezone
        self._app_base_url = app_base_url

    def deliver(self, notification_id: str, *, now: datetime | None = None) -> DeliveryOutcome:
        current = now or _now_utc()
        record = self._repository.get(notification_id)
        if record is None:
            logger.info("delivery callback for unknown notification=%s", notification_id)
            return DeliveryOutcome(notification_id=notification_id, outcome="not_found")
        if record.state != "pending":
            return DeliveryOutcome(notification_id=notification_id, outcome="already_processed", state=record.state)

        claim_token = secrets.token_hex(16)
        if not self._repository.claim_for_delivery(notification_id, claim_token=claim_token, now=current):
            latest = self._repository.get(notification_id)
            latest_state = latest.state if latest is not None else None
            if latest_state == "pending":
                return DeliveryOutcome(notification_id=notification_id, outcome="in_progress", state=latest_state)
            return DeliveryOutcome(notification_id=notification_id, outcome="already_processed", state=latest_state)

        composed = self._compose(record)
        if isinstance(composed, _Unresolvable):
            return self._close_without_send(record, claim_token, composed, current)

        recipient_email, message = composed
        try:
            result = self._sender.send(message)
        except DeliveryFailure as exc:
            result = EmailSendResult(
                status="failed",
                attempted_at=_now_utc(),
                error_code=exc.error_code,
                error_message=exc.message,
            )

        if result.status == "sent":
            closed = self._repository.transition(
                notification_id,
                to_state="sent",
                now=current,
                claim_token=claim_token,
                delivery_ref=result.delivery_ref,
                sent_at=result.attempted_at,
            )
            if not closed:
                logger.warning("notification=%s changed state while its e-mail was being sent", notification_id)
            logger.info(
                "sent reminder notification=%s recipient=%s ref=%s",
                notification_id,
                mask_email(recipient_email),
                result.delivery_ref,
            )
            return DeliveryOutcome(
                notification_id=notification_id,
                outcome="sent",
                state="sent" if closed else self._current_state(notification_id),
                delivery_ref=result.delivery_ref,
            )

        reason = f"{result.error_code}: {result.error_message}" if result.error_code else (result.error_message or "send_failed")
        self._repository.transition(
            notification_id,
            to_state="failed",
            now=current,
            claim_token=claim_token,
            status_reason=reason,
        )
        logger.error(
            "reminder delivery failed notification=%s recipient=%s reason=%s",
            notification_id,
            mask_email(recipient_email),
            reason,
        )
        return DeliveryOutcome(
            notification_id=notification_id,
            outcome="failed",
            state=self._current_state(notification_id),
            reason=reason,
        )

    def _current_state(self, notification_id: str) -> str | None:
        latest = self._repository.get(notification_id)
        return latest.state if latest is not None else None

    def _close_without_send(
        self,
        record: NotificationRecord,
        claim_token: str,
        unresolvable: _Unresolvable,
        now: datetime,
    ) -> DeliveryOutcome:
        self._repository.transition(
            record.notification_id,
            to_state=unresolvable.state,
            now=now,
            claim_token=claim_token,
            status_reason=unresolvable.reason,
        )
        if unresolvable.state == "failed":
            logger.warning("reminder notification=%s failed: %s", record.notification_id, unresolvable.reason)
            outcome: DeliveryOutcomeStatus = "failed"
        else:
            logger.info("reminder notification=%s skipped: %s", record.notification_id, unresolvable.reason)
            outcome = "skipped"
        return DeliveryOutcome(
            notification_id=record.notification_id,
            outcome=outcome,
            state=self._current_state(record.notification_id),
            reason=unresolvable.reason,
        )

    def _compose(self, record: NotificationRecord) -> tuple[str, EmailMessage] | _Unresolvable:
        if record.kind == "subtask":
            return self._compose_subtask(record)
        if record.kind == "event":
            return self._compose_event(record)
        return _Unresolvable("failed", f"unknown notification kind: {record.kind}")

    def _compose_subtask(self, record: NotificationRecord) -> tuple[str, EmailMessage] | _Unresolvable:
        subtask = self._entities.get_subtask(record.entity_id)
        if subtask is None:
            return _Unresolvable("failed", "subtask_not_found")
        if subtask.status == "completed":
            return _Unresolvable("cancelled", "subtask_completed")
        if subtask.deadline is None:
            return _Unresolvable("failed", "subtask_deadline_removed")
        user = self._entities.get_user(record.recipient_id)
        if user is None:
            return _Unresolvable("failed", "recipient_not_found")
        project = self._entities.get_project(subtask.project_id)
        if project is None:
            return _Unresolvable("failed", "project_not_found")

        subject, html_body = render_subtask_reminder(
            SubtaskReminderContext(
                user_name=user.name,
                subtask_id=subtask.subtask_id,
                subtask_title=subtask.title,
                subtask_description=subtask.description,
                main_task_title=subtask.main_task_title,
                project_id=project.project_id,
                project_name=project.name,
                deadline_text=format_reference_time(subtask.deadline, zone_name=self._reference_timezone),
                days_remaining=record.offset_days,
                app_base_url=self._app_base_url,
            )
        )
        return user.email, EmailMessage(
            to=(user.email,),
            subject=subject,
            html=html_body,
            idempotency_key=f"reminder-{record.notification_id}",
        )

    def _compose_event(self, record: NotificationRecord) -> tuple[str, EmailMessage] | _Unresolvable:
        event = self._entities.get_event(record.entity_id)
        if event is None:
            return _Unresolvable("failed", "event_not_found")
        if event.starts_at is None:
            return _Unresolvable("failed", "event_datetime_removed")
        user = self._entities.get_user(record.recipient_id)
        if user is None:
            return _Unresolvable("failed", "recipient_not_found")
        project = self._entities.get_project(event.project_id)
        if project is None:
            return _Unresolvable("failed", "project_not_found")

        subject, html_body = render_event_reminder(
            EventReminderContext(
                event_id=event.event_id,
                event_title=event.title,
                event_description=event.description,
                location=event.location,
                project_id=project.project_id,
                project_name=project.name,
                starts_at_text=format_reference_time(event.starts_at, zone_name=self._reference_timezone),
                days_remaining=record.offset_days,
                app_base_url=self._app_base_url,
            )
        )
        return user.email, EmailMessage(
            to=(user.email,),
            subject=subject,
            html=html_body,
            idempotency_key=f"reminder-{record.notification_id}",
        )
