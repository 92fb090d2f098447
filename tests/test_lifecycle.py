from __future__ import annotations

from datetime import datetime, timedelta, timezone
from unittest.mock import MagicMock

import pytest

from reminders_web.dispatch import DispatchConfig, DispatchPayload, HttpDispatchClient
from reminders_web.entities import InMemoryEntityDirectory, ProjectEntity, SubtaskEntity, UserEntity
from reminders_web.errors import (
    AlreadyCancelledError,
    AlreadySentError,
    AlreadyTerminalError,
    DeliveryInProgressError,
    DispatchFailure,
    NotFoundError,
    PastScheduleError,
    ValidationError,
)
from reminders_web.lifecycle import NotificationLifecycle
from reminders_web.notification_store import (
    CLAIM_TTL,
    InMemoryNotificationRepository,
    NotificationRecord,
    new_notification_id,
)

NOW = datetime(2025, 1, 1, 0, 0, tzinfo=timezone.utc)
# Bangkok calendar day 2025-01-20.
DEADLINE = datetime(2025, 1, 20, 0, 0, tzinfo=timezone.utc)


def _entities() -> InMemoryEntityDirectory:
    directory = InMemoryEntityDirectory()
    directory.put_user(UserEntity(user_id="user-1", name="Alice", email="alice@example.com"))
    directory.put_project(ProjectEntity(project_id="project-1", name="Apollo"), member_ids=["user-1"])
    directory.put_subtask(
        SubtaskEntity(
            subtask_id="subtask-1",
            project_id="project-1",
            main_task_title="Quarterly review",
            title="Draft report",
            description=None,
            deadline=DEADLINE,
            status="pending",
            assignee_id="user-1",
        )
    )
    return directory


def _pending(repository: InMemoryNotificationRepository, *, external_handle: str | None = "msg-old") -> NotificationRecord:
    return repository.insert(
        NotificationRecord(
            notification_id=new_notification_id(),
            kind="subtask",
            entity_id="subtask-1",
            recipient_id="user-1",
            project_id="project-1",
            scheduled_for=datetime(2025, 1, 17, 2, 0, tzinfo=timezone.utc),
            offset_days=3,
            time_of_day="09:00",
            state="pending",
            created_by="user-9",
            created_at=NOW,
            updated_at=NOW,
            external_handle=external_handle,
        )
    )


def _lifecycle(repository: InMemoryNotificationRepository, dispatch: MagicMock) -> NotificationLifecycle:
    return NotificationLifecycle(entities=_entities(), repository=repository, dispatch=dispatch)


def test_cancel_pending_calls_dispatch_once_and_marks_cancelled() -> None:
    repository = InMemoryNotificationRepository()
    dispatch = MagicMock()
    record = _pending(repository)

    cancelled = _lifecycle(repository, dispatch).cancel(record.notification_id, now=NOW)

    assert cancelled.state == "cancelled"
    dispatch.cancel.assert_called_once_with("msg-old")


def test_cancel_sent_record_fails_without_dispatch_call() -> None:
    repository = InMemoryNotificationRepository()
    dispatch = MagicMock()
    record = _pending(repository)
    repository.transition(record.notification_id, to_state="sent", now=NOW)

    with pytest.raises(AlreadySentError) as exc_info:
        _lifecycle(repository, dispatch).cancel(record.notification_id, now=NOW)

    assert isinstance(exc_info.value, AlreadyTerminalError)
    dispatch.cancel.assert_not_called()


def test_cancel_twice_reports_already_cancelled() -> None:
    repository = InMemoryNotificationRepository()
    dispatch = MagicMock()
    record = _pending(repository)
    lifecycle = _lifecycle(repository, dispatch)
    lifecycle.cancel(record.notification_id, now=NOW)

    with pytest.raises(AlreadyCancelledError):
        lifecycle.cancel(record.notification_id, now=NOW)

    assert dispatch.cancel.call_count == 1


def test_cancel_failed_record_is_terminal() -> None:
    repository = InMemoryNotificationRepository()
    record = _pending(repository)
    repository.transition(record.notification_id, to_state="failed", now=NOW, status_reason="subtask_not_found")

    with pytest.raises(AlreadyTerminalError):
        _lifecycle(repository, MagicMock()).cancel(record.notification_id, now=NOW)


def test_cancel_tolerates_dispatch_failure() -> None:
    repository = InMemoryNotificationRepository()
    dispatch = MagicMock()
    dispatch.cancel.side_effect = DispatchFailure("http_503", "HTTP 503: Service Unavailable")
    record = _pending(repository)

    cancelled = _lifecycle(repository, dispatch).cancel(record.notification_id, now=NOW)

    assert cancelled.state == "cancelled"


def test_cancel_unknown_notification() -> None:
    with pytest.raises(NotFoundError):
        _lifecycle(InMemoryNotificationRepository(), MagicMock()).cancel("ntf_missing", now=NOW)


def test_reschedule_offset_recomputes_instant_and_replaces_handle() -> None:
    repository = InMemoryNotificationRepository()
    dispatch = MagicMock()
    dispatch.reschedule.return_value = "msg-new"
    record = _pending(repository)

    updated = _lifecycle(repository, dispatch).reschedule(record.notification_id, offset_days=1, now=NOW)

    assert updated.scheduled_for == datetime(2025, 1, 19, 2, 0, tzinfo=timezone.utc)
    assert updated.offset_days == 1
    assert updated.time_of_day == "09:00"
    assert updated.external_handle == "msg-new"
    assert updated.state == "pending"
    args, kwargs = dispatch.reschedule.call_args
    assert args == ("msg-old", updated.scheduled_for)
    assert kwargs["payload"].notification_id == record.notification_id


def test_reschedule_time_only_keeps_offset() -> None:
    repository = InMemoryNotificationRepository()
    dispatch = MagicMock()
    dispatch.reschedule.return_value = "msg-new"
    record = _pending(repository)

    updated = _lifecycle(repository, dispatch).reschedule(record.notification_id, time_of_day="18:30", now=NOW)

    assert updated.offset_days == 3
    assert updated.scheduled_for == datetime(2025, 1, 17, 11, 30, tzinfo=timezone.utc)


def test_reschedule_without_handle_enqueues() -> None:
    repository = InMemoryNotificationRepository()
    dispatch = MagicMock()
    dispatch.enqueue.return_value = "msg-fresh"
    record = _pending(repository, external_handle=None)

    updated = _lifecycle(repository, dispatch).reschedule(record.notification_id, offset_days=2, now=NOW)

    assert updated.external_handle == "msg-fresh"
    dispatch.reschedule.assert_not_called()


def test_reschedule_into_the_past_is_rejected_and_leaves_record_unchanged() -> None:
    repository = InMemoryNotificationRepository()
    dispatch = MagicMock()
    record = _pending(repository)

    with pytest.raises(PastScheduleError):
        _lifecycle(repository, dispatch).reschedule(record.notification_id, offset_days=25, now=NOW)

    assert repository.get(record.notification_id) == record
    dispatch.reschedule.assert_not_called()


def test_reschedule_validation() -> None:
    repository = InMemoryNotificationRepository()
    record = _pending(repository)
    lifecycle = _lifecycle(repository, MagicMock())

    with pytest.raises(ValidationError):
        lifecycle.reschedule(record.notification_id, now=NOW)
    with pytest.raises(ValidationError):
        lifecycle.reschedule(record.notification_id, offset_days=45, now=NOW)
    with pytest.raises(ValidationError):
        lifecycle.reschedule(record.notification_id, time_of_day="7pm", now=NOW)


def test_reschedule_sent_record_fails() -> None:
    repository = InMemoryNotificationRepository()
    dispatch = MagicMock()
    record = _pending(repository)
    repository.transition(record.notification_id, to_state="sent", now=NOW)

    with pytest.raises(AlreadySentError):
        _lifecycle(repository, dispatch).reschedule(record.notification_id, offset_days=1, now=NOW)

    dispatch.reschedule.assert_not_called()


def test_reschedule_dispatch_failure_propagates_and_keeps_record() -> None:
    repository = InMemoryNotificationRepository()
    dispatch = MagicMock()
    dispatch.reschedule.side_effect = DispatchFailure("http_500", "HTTP 500: Internal Server Error")
    record = _pending(repository)

    with pytest.raises(DispatchFailure):
        _lifecycle(repository, dispatch).reschedule(record.notification_id, offset_days=1, now=NOW)

    assert repository.get(record.notification_id) == record


def test_cancel_for_entity_cancels_only_pending_records() -> None:
    repository = InMemoryNotificationRepository()
    dispatch = MagicMock()
    first = _pending(repository)
    second = _pending(repository, external_handle="msg-2")
    sent = _pending(repository, external_handle="msg-3")
    repository.transition(sent.notification_id, to_state="sent", now=NOW)

    count = _lifecycle(repository, dispatch).cancel_for_entity("subtask", "subtask-1", now=NOW + timedelta(minutes=1))

    assert count == 2
    assert repository.get(first.notification_id).state == "cancelled"  # type: ignore[union-attr]
    assert repository.get(second.notification_id).state == "cancelled"  # type: ignore[union-attr]
    assert repository.get(sent.notification_id).state == "sent"  # type: ignore[union-attr]
    assert dispatch.cancel.call_count == 2


class _DedupingFacility(HttpDispatchClient):
    """Answers publishes like the real facility: a repeated dedup id yields the first message id."""

    def __init__(self) -> None:
        super().__init__(
            DispatchConfig(
                token="qstash-token",
                base_url="https://qstash.example.test",
                callback_url="https://reminders.example.test/api/v1/reminders/webhooks/deliver",
            )
        )
        self.live: set[str] = set()
        self._by_key: dict[str, str] = {}

    def _request(self, method: str, path: str, *, body: bytes | None = None, headers: dict[str, str] | None = None) -> dict:
        if method == "POST":
            key = (headers or {})["Upstash-Deduplication-Id"]
            if key not in self._by_key:
                self._by_key[key] = f"msg_{len(self._by_key) + 1}"
                self.live.add(self._by_key[key])
            return {"messageId": self._by_key[key]}
        self.live.discard(path.rsplit("/", 1)[-1])
        return {}


def test_repeated_identical_reschedule_keeps_a_live_handle() -> None:
    repository = InMemoryNotificationRepository()
    facility = _DedupingFacility()
    original = facility.enqueue(
        DispatchPayload(notification_id="ntf_seed", kind="subtask", entity_id="subtask-1"),
        datetime(2025, 1, 17, 2, 0, tzinfo=timezone.utc),
        "subtask-subtask-1-3d-seed",
    )
    record = _pending(repository, external_handle=original)
    lifecycle = NotificationLifecycle(entities=_entities(), repository=repository, dispatch=facility)

    lifecycle.reschedule(record.notification_id, offset_days=2, now=NOW)
    updated = lifecycle.reschedule(record.notification_id, offset_days=2, now=NOW)

    assert updated.scheduled_for == datetime(2025, 1, 18, 2, 0, tzinfo=timezone.utc)
    assert facility.live == {updated.external_handle}


def test_cancel_is_refused_while_a_delivery_holds_the_claim() -> None:
    repository = InMemoryNotificationRepository()
    dispatch = MagicMock()
    record = _pending(repository)
    assert repository.claim_for_delivery(record.notification_id, claim_token="worker-1", now=NOW)

    with pytest.raises(DeliveryInProgressError):
        _lifecycle(repository, dispatch).cancel(record.notification_id, now=NOW + timedelta(minutes=1))
    with pytest.raises(DeliveryInProgressError):
        _lifecycle(repository, dispatch).reschedule(record.notification_id, offset_days=1, now=NOW + timedelta(minutes=1))

    dispatch.cancel.assert_not_called()
    dispatch.reschedule.assert_not_called()
    assert repository.get(record.notification_id).state == "pending"  # type: ignore[union-attr]


def test_cancel_succeeds_once_the_delivery_claim_expires() -> None:
    repository = InMemoryNotificationRepository()
    dispatch = MagicMock()
    record = _pending(repository)
    repository.claim_for_delivery(record.notification_id, claim_token="worker-1", now=NOW)

    cancelled = _lifecycle(repository, dispatch).cancel(record.notification_id, now=NOW + CLAIM_TTL + timedelta(seconds=1))

    assert cancelled.state == "cancelled"
    dispatch.cancel.assert_called_once_with("msg-old")
