from __future__ import annotations

import json
from dataclasses import replace
from datetime import datetime, timedelta, timezone
from unittest.mock import MagicMock, patch

from fastapi.testclient import TestClient

from reminders_web import api as api_module
from reminders_web.callback_security import SIGNATURE_HEADER, sign_callback_body
from reminders_web.dispatch import MockDispatchClient
from reminders_web.entities import (
    EventEntity,
    InMemoryEntityDirectory,
    ProjectEntity,
    SubtaskEntity,
    UserEntity,
)
from reminders_web.errors import DispatchFailure
from reminders_web.main import create_app
from reminders_web.mailer import StubEmailSender
from reminders_web.notification_store import InMemoryNotificationRepository

PREFIX = "/api/v1/reminders"


def _seed_entities(deadline: datetime) -> InMemoryEntityDirectory:
    directory = InMemoryEntityDirectory()
    directory.put_user(UserEntity(user_id="user-1", name="Alice", email="alice@example.com"))
    directory.put_user(UserEntity(user_id="user-2", name="Bob", email="bob@example.com"))
    directory.put_user(UserEntity(user_id="user-3", name="Outsider", email="outsider@example.com"))
    directory.put_project(ProjectEntity(project_id="project-1", name="Apollo"), member_ids=["user-1", "user-2"])
    directory.put_subtask(
        SubtaskEntity(
            subtask_id="subtask-1",
            project_id="project-1",
            main_task_title="Quarterly review",
            title="Draft report",
            description="First pass",
            deadline=deadline,
            status="in_progress",
            assignee_id="user-1",
        )
    )
    directory.put_event(
        EventEntity(
            event_id="event-1",
            project_id="project-1",
            title="Kickoff",
            description=None,
            starts_at=deadline,
            location="Room 4",
        )
    )
    return directory


def _client() -> TestClient:
    deadline = datetime.now(timezone.utc) + timedelta(days=10)
    api_module.notification_repo = InMemoryNotificationRepository()
    api_module.entity_directory = _seed_entities(deadline)
    api_module.dispatch_client = MockDispatchClient()
    api_module.email_sender = StubEmailSender(enabled=True)
    return TestClient(create_app())


def _schedule_subtask(client: TestClient, **overrides: object) -> dict:
    payload: dict[str, object] = {"offset_days": 3, "time_of_day": "09:00", "created_by": "user-9"}
    payload.update(overrides)
    response = client.post(f"{PREFIX}/subtasks/subtask-1/notifications", json=payload)
    assert response.status_code == 201, response.text
    return response.json()


def _callback_body(notification: dict) -> bytes:
    return json.dumps(
        {
            "notification_id": notification["notification_id"],
            "kind": notification["kind"],
            "entity_id": notification["entity_id"],
        },
        separators=(",", ":"),
        sort_keys=True,
    ).encode("utf-8")


def test_schedule_deliver_and_replay_flow() -> None:
    client = _client()
    created = _schedule_subtask(client)

    assert created["status"] == "pending"
    assert created["recipient_id"] == "user-1"
    assert created["project_id"] == "project-1"
    assert created["external_handle"].startswith("mock-msg_")
    assert created["time_of_day"] == "09:00"

    body = _callback_body(created)
    headers = {
        "content-type": "application/json",
        SIGNATURE_HEADER: sign_callback_body(api_module._settings.callback_signing_secret, body),
    }
    first = client.post(f"{PREFIX}/webhooks/deliver", content=body, headers=headers)
    assert first.status_code == 200
    first_data = first.json()
    assert first_data["outcome"] == "sent"
    assert first_data["status"] == "sent"
    assert first_data["delivery_ref"].startswith("stub-email-")
    assert first_data["signature_verified"] is True

    replay = client.post(f"{PREFIX}/webhooks/deliver", content=body, headers=headers)
    assert replay.status_code == 200
    assert replay.json()["outcome"] == "already_processed"

    detail = client.get(f"{PREFIX}/notifications/{created['notification_id']}")
    assert detail.status_code == 200
    detail_data = detail.json()
    assert detail_data["status"] == "sent"
    assert detail_data["entity_title"] == "Draft report"
    assert detail_data["project_name"] == "Apollo"
    assert detail_data["recipient_email_masked"] == "a***@example.com"


def test_unsigned_callback_is_accepted_outside_enforce_mode() -> None:
    client = _client()
    created = _schedule_subtask(client)

    response = client.post(
        f"{PREFIX}/webhooks/deliver",
        content=_callback_body(created),
        headers={"content-type": "application/json"},
    )

    assert response.status_code == 200
    assert response.json()["signature_verified"] is False
    assert response.json()["outcome"] == "sent"


def test_unsigned_callback_is_rejected_in_enforce_mode() -> None:
    client = _client()
    created = _schedule_subtask(client)
    enforcing = replace(api_module._settings, callback_signature_mode="enforce", callback_signing_secret="prod-secret-001")

    with patch.object(api_module, "_settings", enforcing):
        response = client.post(
            f"{PREFIX}/webhooks/deliver",
            content=_callback_body(created),
            headers={"content-type": "application/json"},
        )

    assert response.status_code == 401
    assert "signature_missing" in response.json()["detail"]
    assert api_module.notification_repo.get(created["notification_id"]).state == "pending"  # type: ignore[union-attr]


def test_malformed_callback_payload_is_rejected() -> None:
    client = _client()

    response = client.post(
        f"{PREFIX}/webhooks/deliver",
        content=b'{"notification_id": "ntf_1"}',
        headers={"content-type": "application/json"},
    )

    assert response.status_code == 400


def test_callback_for_unknown_notification_is_acknowledged() -> None:
    client = _client()

    response = client.post(
        f"{PREFIX}/webhooks/deliver",
        json={"notification_id": "ntf_missing", "kind": "subtask", "entity_id": "subtask-1"},
    )

    assert response.status_code == 200
    assert response.json()["outcome"] == "not_found"


def test_schedule_subtask_errors_map_to_http_status() -> None:
    client = _client()

    missing = client.post(f"{PREFIX}/subtasks/subtask-404/notifications", json={"offset_days": 1})
    assert missing.status_code == 404
    assert "subtask-404" in missing.json()["detail"]

    too_far = client.post(f"{PREFIX}/subtasks/subtask-1/notifications", json={"offset_days": 45})
    assert too_far.status_code == 400

    bad_time = client.post(f"{PREFIX}/subtasks/subtask-1/notifications", json={"offset_days": 1, "time_of_day": "25:00"})
    assert bad_time.status_code == 400

    past = client.post(f"{PREFIX}/subtasks/subtask-1/notifications", json={"offset_days": 20})
    assert past.status_code == 400
    assert api_module.notification_repo.list_for_entity("subtask", "subtask-1") == []


def test_idempotency_key_replays_existing_notification() -> None:
    client = _client()

    first = _schedule_subtask(client, idempotency_key="schedule-key-001")
    second = _schedule_subtask(client, idempotency_key="schedule-key-001")

    assert first["notification_id"] == second["notification_id"]
    listing = client.get(f"{PREFIX}/subtasks/subtask-1/notifications")
    assert len(listing.json()["items"]) == 1


def test_dispatch_failure_returns_502_and_leaves_no_rows() -> None:
    client = _client()
    failing = MagicMock()
    failing.enqueue.side_effect = DispatchFailure("http_503", "HTTP 503: Service Unavailable")
    api_module.dispatch_client = failing

    response = client.post(f"{PREFIX}/subtasks/subtask-1/notifications", json={"offset_days": 3})

    assert response.status_code == 502
    assert "http_503" in response.json()["detail"]
    assert api_module.notification_repo.list_for_entity("subtask", "subtask-1") == []


def test_event_batch_schedules_one_notification_per_recipient() -> None:
    client = _client()

    response = client.post(
        f"{PREFIX}/events/event-1/notifications",
        json={"recipient_ids": ["user-1", "user-2", "user-1"], "offset_days": 1, "time_of_day": "08:30"},
    )

    assert response.status_code == 201
    items = response.json()
    assert sorted(item["recipient_id"] for item in items) == ["user-1", "user-2"]
    assert {item["scheduled_for"] for item in items} == {items[0]["scheduled_for"]}
    assert len({item["external_handle"] for item in items}) == 2


def test_event_batch_validation() -> None:
    client = _client()

    outsider = client.post(
        f"{PREFIX}/events/event-1/notifications",
        json={"recipient_ids": ["user-1", "user-3"], "offset_days": 1},
    )
    assert outsider.status_code == 400
    assert "user-3" in outsider.json()["detail"]

    empty = client.post(f"{PREFIX}/events/event-1/notifications", json={"recipient_ids": [" "], "offset_days": 1})
    assert empty.status_code == 400

    missing = client.post(f"{PREFIX}/events/event-404/notifications", json={"recipient_ids": ["user-1"], "offset_days": 1})
    assert missing.status_code == 404
    assert api_module.notification_repo.list_for_entity("event", "event-1") == []


def test_event_batch_failure_rolls_back_every_recipient() -> None:
    client = _client()
    failing = MagicMock()
    failing.enqueue.side_effect = ["msg-user-1", DispatchFailure("timeout", "Dispatch request timed out")]
    api_module.dispatch_client = failing

    response = client.post(
        f"{PREFIX}/events/event-1/notifications",
        json={"recipient_ids": ["user-1", "user-2"], "offset_days": 1},
    )

    assert response.status_code == 502
    assert "user-2" in response.json()["detail"]
    assert api_module.notification_repo.list_for_entity("event", "event-1") == []
    failing.cancel.assert_called_once_with("msg-user-1")


def test_cancel_and_reschedule_endpoints() -> None:
    client = _client()
    first = _schedule_subtask(client)
    second = _schedule_subtask(client, offset_days=5)

    rescheduled = client.patch(f"{PREFIX}/notifications/{first['notification_id']}", json={"offset_days": 1})
    assert rescheduled.status_code == 200
    rescheduled_data = rescheduled.json()
    assert rescheduled_data["offset_days"] == 1
    assert rescheduled_data["time_of_day"] == "09:00"
    assert rescheduled_data["scheduled_for"] != first["scheduled_for"]

    empty_patch = client.patch(f"{PREFIX}/notifications/{first['notification_id']}", json={})
    assert empty_patch.status_code == 400

    into_past = client.patch(f"{PREFIX}/notifications/{first['notification_id']}", json={"offset_days": 20})
    assert into_past.status_code == 400

    cancelled = client.post(f"{PREFIX}/notifications/{second['notification_id']}/cancel")
    assert cancelled.status_code == 200
    assert cancelled.json()["status"] == "cancelled"

    again = client.post(f"{PREFIX}/notifications/{second['notification_id']}/cancel")
    assert again.status_code == 409

    reschedule_cancelled = client.patch(f"{PREFIX}/notifications/{second['notification_id']}", json={"offset_days": 2})
    assert reschedule_cancelled.status_code == 409

    unknown = client.post(f"{PREFIX}/notifications/ntf_unknown/cancel")
    assert unknown.status_code == 404


def test_cancel_during_delivery_is_a_conflict() -> None:
    client = _client()
    created = _schedule_subtask(client)
    notification_id = created["notification_id"]
    assert api_module.notification_repo.claim_for_delivery(
        notification_id, claim_token="worker", now=datetime.now(timezone.utc)
    )

    cancelled = client.post(f"{PREFIX}/notifications/{notification_id}/cancel")
    assert cancelled.status_code == 409
    assert "being delivered" in cancelled.json()["detail"]

    rescheduled = client.patch(f"{PREFIX}/notifications/{notification_id}", json={"offset_days": 1})
    assert rescheduled.status_code == 409
    assert api_module.notification_repo.get(notification_id).state == "pending"


def test_cancel_all_for_entity() -> None:
    client = _client()
    _schedule_subtask(client)
    _schedule_subtask(client, offset_days=2)
    sent = _schedule_subtask(client, offset_days=1)
    client.post(f"{PREFIX}/webhooks/deliver", content=_callback_body(sent), headers={"content-type": "application/json"})

    response = client.delete(f"{PREFIX}/subtasks/subtask-1/notifications")

    assert response.status_code == 200
    assert response.json() == {"kind": "subtask", "entity_id": "subtask-1", "cancelled_count": 2}
    statuses = sorted(item["status"] for item in client.get(f"{PREFIX}/subtasks/subtask-1/notifications").json()["items"])
    assert statuses == ["cancelled", "cancelled", "sent"]


def test_project_listing_filters_and_paginates() -> None:
    client = _client()
    _schedule_subtask(client)
    _schedule_subtask(client, offset_days=2)
    client.post(
        f"{PREFIX}/events/event-1/notifications",
        json={"recipient_ids": ["user-2"], "offset_days": 1},
    )

    first_page = client.get(f"{PREFIX}/notifications", params={"project_id": "project-1", "limit": 2})
    assert first_page.status_code == 200
    assert len(first_page.json()["items"]) == 2
    assert first_page.json()["has_more"] is True

    second_page = client.get(f"{PREFIX}/notifications", params={"project_id": "project-1", "limit": 2, "offset": 2})
    assert len(second_page.json()["items"]) == 1
    assert second_page.json()["has_more"] is False

    events_only = client.get(f"{PREFIX}/notifications", params={"project_id": "project-1", "kind": "event"})
    assert [item["recipient_id"] for item in events_only.json()["items"]] == ["user-2"]

    sent_only = client.get(f"{PREFIX}/notifications", params={"project_id": "project-1", "status": "sent"})
    assert sent_only.json()["items"] == []

    other_project = client.get(f"{PREFIX}/notifications", params={"project_id": "project-2"})
    assert other_project.json()["items"] == []


def test_operator_test_surface_is_disabled_by_default() -> None:
    client = _client()

    response = client.post(f"{PREFIX}/test", json={"kind": "subtask", "entity_id": "subtask-1"})

    assert response.status_code == 404


def test_operator_test_schedules_near_term_reminder() -> None:
    client = _client()
    enabled = replace(api_module._settings, operator_test_enabled=True)

    with patch.object(api_module, "_settings", enabled):
        response = client.post(
            f"{PREFIX}/test",
            json={"kind": "event", "entity_id": "event-1", "recipient_ids": ["user-1", "user-2"], "delay_minutes": 2},
        )

    assert response.status_code == 201
    data = response.json()
    assert len(data["items"]) == 2
    assert all(item["created_by"] == "operator" for item in data["items"])

    upcoming = client.get(f"{PREFIX}/notifications/upcoming", params={"hours_ahead": 1})
    assert upcoming.status_code == 200
    assert {item["notification_id"] for item in upcoming.json()["items"]} == {
        item["notification_id"] for item in data["items"]
    }
