from __future__ import annotations

import secrets
from dataclasses import dataclass, replace
from datetime import datetime, timedelta, timezone
from threading import Lock
from typing import Protocol

from sqlalchemy import DateTime, Integer, String, Text, create_engine, delete, or_, select, update
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, sessionmaker

TERMINAL_STATES = frozenset({"sent", "failed", "cancelled"})

# A delivery claim older than this is considered abandoned.
CLAIM_TTL = timedelta(minutes=5)


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


def _coerce_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _coerce_optional_utc(value: datetime | None) -> datetime | None:
    return _coerce_utc(value) if value is not None else None


def new_notification_id() -> str:
    return f"ntf_{secrets.token_hex(12)}"


@dataclass(frozen=True)
class NotificationRecord:
    notification_id: str
    kind: str
    entity_id: str
    recipient_id: str
    project_id: str
    scheduled_for: datetime
    offset_days: int
    time_of_day: str
    state: str
    created_by: str
    created_at: datetime
    updated_at: datetime
    external_handle: str | None = None
    delivery_ref: str | None = None
    sent_at: datetime | None = None
    status_reason: str | None = None
    request_key: str | None = None
    claim_token: str | None = None
    claimed_at: datetime | None = None

    @property
    def is_terminal(self) -> bool:
        return self.state in TERMINAL_STATES

    def delivery_claimed(self, now: datetime) -> bool:
        return self.claim_token is not None and self.claimed_at is not None and self.claimed_at > now - CLAIM_TTL


class NotificationRepository(Protocol):
    def reset(self) -> None: ...

    def insert(self, record: NotificationRecord) -> NotificationRecord: ...

    def get(self, notification_id: str) -> NotificationRecord | None: ...

    def delete(self, notification_id: str) -> bool: ...

    def attach_handle(self, notification_id: str, external_handle: str, *, now: datetime) -> bool: ...

    def claim_for_delivery(self, notification_id: str, *, claim_token: str, now: datetime) -> bool: ...

    def transition(
        self,
        notification_id: str,
        *,
        to_state: str,
        now: datetime,
        claim_token: str | None = None,
        delivery_ref: str | None = None,
        sent_at: datetime | None = None,
        status_reason: str | None = None,
    ) -> bool: ...

    def update_schedule(
        self,
        notification_id: str,
        *,
        scheduled_for: datetime,
        offset_days: int,
        time_of_day: str,
        external_handle: str | None,
        now: datetime,
    ) -> bool: ...

    def list_for_entity(self, kind: str, entity_id: str) -> list[NotificationRecord]: ...

    def list_by_request_key(self, kind: str, entity_id: str, request_key: str) -> list[NotificationRecord]: ...

    def list_for_project(
        self,
        project_id: str,
        *,
        state: str | None = None,
        kind: str | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> list[NotificationRecord]: ...

    def list_pending_due(self, before: datetime) -> list[NotificationRecord]: ...


class InMemoryNotificationRepository:
    def __init__(self) -> None:
        self._lock = Lock()
        self._records: dict[str, NotificationRecord] = {}

    def reset(self) -> None:
        with self._lock:
            self._records.clear()

    def insert(self, record: NotificationRecord) -> NotificationRecord:
        with self._lock:
            if record.notification_id in self._records:
                raise ValueError(f"duplicate notification id: {record.notification_id}")
            self._records[record.notification_id] = record
            return record

    def get(self, notification_id: str) -> NotificationRecord | None:
        with self._lock:
            return self._records.get(notification_id)

    def delete(self, notification_id: str) -> bool:
        with self._lock:
            return self._records.pop(notification_id, None) is not None

    def attach_handle(self, notification_id: str, external_handle: str, *, now: datetime) -> bool:
        with self._lock:
            row = self._records.get(notification_id)
            if row is None or row.state != "pending":
                return False
            self._records[notification_id] = replace(row, external_handle=external_handle, updated_at=now)
            return True

    def claim_for_delivery(self, notification_id: str, *, claim_token: str, now: datetime) -> bool:
        with self._lock:
            row = self._records.get(notification_id)
            if row is None or row.state != "pending":
                return False
            if row.delivery_claimed(now):
                return False
            self._records[notification_id] = replace(row, claim_token=claim_token, claimed_at=now, updated_at=now)
            return True

    def transition(
        self,
        notification_id: str,
        *,
        to_state: str,
        now: datetime,
        claim_token: str | None = None,
        delivery_ref: str | None = None,
        sent_at: datetime | None = None,
        status_reason: str | None = None,
    ) -> bool:
        with self._lock:
            row = self._records.get(notification_id)
            if row is None or row.state != "pending":
                return False
            if claim_token is not None and row.claim_token != claim_token:
                return False
            if claim_token is None and row.delivery_claimed(now):
                return False
            self._records[notification_id] = replace(
                row,
                state=to_state,
                delivery_ref=delivery_ref,
                sent_at=sent_at,
                status_reason=status_reason,
                updated_at=now,
            )
            return True

    def update_schedule(
        self,
        notification_id: str,
        *,
        scheduled_for: datetime,
        offset_days: int,
        time_of_day: str,
        external_handle: str | None,
        now: datetime,
    ) -> bool:
        with self._lock:
            row = self._records.get(notification_id)
            if row is None or row.state != "pending" or row.delivery_claimed(now):
                return False
            self._records[notification_id] = replace(
                row,
                scheduled_for=scheduled_for,
                offset_days=offset_days,
                time_of_day=time_of_day,
                external_handle=external_handle,
                updated_at=now,
            )
            return True

    def list_for_entity(self, kind: str, entity_id: str) -> list[NotificationRecord]:
        with self._lock:
            rows = [row for row in self._records.values() if row.kind == kind and row.entity_id == entity_id]
        return sorted(rows, key=lambda row: (row.scheduled_for, row.created_at))

    def list_by_request_key(self, kind: str, entity_id: str, request_key: str) -> list[NotificationRecord]:
        with self._lock:
            rows = [
                row
                for row in self._records.values()
                if row.kind == kind and row.entity_id == entity_id and row.request_key == request_key
            ]
        return sorted(rows, key=lambda row: row.created_at)

    def list_for_project(
        self,
        project_id: str,
        *,
        state: str | None = None,
        kind: str | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> list[NotificationRecord]:
        with self._lock:
            rows = [
                row
                for row in self._records.values()
                if row.project_id == project_id
                and (state is None or row.state == state)
                and (kind is None or row.kind == kind)
            ]
        rows.sort(key=lambda row: row.created_at, reverse=True)
        return rows[offset : offset + limit]

    def list_pending_due(self, before: datetime) -> list[NotificationRecord]:
        with self._lock:
            rows = [row for row in self._records.values() if row.state == "pending" and row.scheduled_for <= before]
        return sorted(rows, key=lambda row: row.scheduled_for)


class NotificationsBase(DeclarativeBase):
    pass


class _ScheduledNotificationRow(NotificationsBase):
    __tablename__ = "scheduled_notifications"

    notification_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    kind: Mapped[str] = mapped_column(String(16), nullable=False)
    entity_id: Mapped[str] = mapped_column(String(128), nullable=False)
    recipient_id: Mapped[str] = mapped_column(String(128), nullable=False)
    project_id: Mapped[str] = mapped_column(String(128), nullable=False, index=True)
    scheduled_for: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, index=True)
    offset_days: Mapped[int] = mapped_column(Integer, nullable=False)
    time_of_day: Mapped[str] = mapped_column(String(5), nullable=False)
    state: Mapped[str] = mapped_column(String(16), nullable=False, default="pending", index=True)
    external_handle: Mapped[str | None] = mapped_column(String(256), nullable=True)
    delivery_ref: Mapped[str | None] = mapped_column(String(256), nullable=True)
    sent_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    status_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    request_key: Mapped[str | None] = mapped_column(String(256), nullable=True)
    claim_token: Mapped[str | None] = mapped_column(String(64), nullable=True)
    claimed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_by: Mapped[str] = mapped_column(String(128), nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


def _record_from_row(row: _ScheduledNotificationRow) -> NotificationRecord:
    return NotificationRecord(
        notification_id=row.notification_id,
        kind=row.kind,
        entity_id=row.entity_id,
        recipient_id=row.recipient_id,
        project_id=row.project_id,
        scheduled_for=_coerce_utc(row.scheduled_for),
        offset_days=row.offset_days,
        time_of_day=row.time_of_day,
        state=row.state,
        created_by=row.created_by,
        created_at=_coerce_utc(row.created_at),
        updated_at=_coerce_utc(row.updated_at),
        external_handle=row.external_handle,
        delivery_ref=row.delivery_ref,
        sent_at=_coerce_optional_utc(row.sent_at),
        status_reason=row.status_reason,
        request_key=row.request_key,
        claim_token=row.claim_token,
        claimed_at=_coerce_optional_utc(row.claimed_at),
    )


class SqlAlchemyNotificationRepository:
    def __init__(self, database_url: str) -> None:
        if not database_url:
            raise RuntimeError("DATABASE_URL is required for NOTIFICATION_STORE_BACKEND=postgres")
        self._engine = create_engine(database_url, future=True, pool_pre_ping=True)
        self._session_factory = sessionmaker(self._engine, expire_on_commit=False, future=True)
        # SQLite is used in tests. Production Postgres should rely on migrations.
        if database_url.startswith("sqlite"):
            NotificationsBase.metadata.create_all(self._engine)

    def _session(self):
        return self._session_factory()

    def _conditional_update(self, notification_id: str, *conditions, **values) -> bool:
        with self._session() as session:
            with session.begin():
                result = session.execute(
                    update(_ScheduledNotificationRow)
                    .where(
                        _ScheduledNotificationRow.notification_id == notification_id,
                        _ScheduledNotificationRow.state == "pending",
                        *conditions,
                    )
                    .values(**values)
                )
                return result.rowcount == 1

    def reset(self) -> None:
        with self._session() as session:
            with session.begin():
                session.execute(delete(_ScheduledNotificationRow))

    def insert(self, record: NotificationRecord) -> NotificationRecord:
        with self._session() as session:
            with session.begin():
                session.add(
                    _ScheduledNotificationRow(
                        notification_id=record.notification_id,
                        kind=record.kind,
                        entity_id=record.entity_id,
                        recipient_id=record.recipient_id,
                        project_id=record.project_id,
                        scheduled_for=record.scheduled_for,
                        offset_days=record.offset_days,
                        time_of_day=record.time_of_day,
                        state=record.state,
                        external_handle=record.external_handle,
                        delivery_ref=record.delivery_ref,
                        sent_at=record.sent_at,
                        status_reason=record.status_reason,
                        request_key=record.request_key,
                        claim_token=record.claim_token,
                        claimed_at=record.claimed_at,
                        created_by=record.created_by,
                        created_at=record.created_at,
                        updated_at=record.updated_at,
                    )
                )
        return record

    def get(self, notification_id: str) -> NotificationRecord | None:
        with self._session() as session:
            row = session.get(_ScheduledNotificationRow, notification_id)
            if row is None:
                return None
            return _record_from_row(row)

    def delete(self, notification_id: str) -> bool:
        with self._session() as session:
            with session.begin():
                result = session.execute(
                    delete(_ScheduledNotificationRow).where(
                        _ScheduledNotificationRow.notification_id == notification_id
                    )
                )
                return result.rowcount == 1

    def attach_handle(self, notification_id: str, external_handle: str, *, now: datetime) -> bool:
        return self._conditional_update(notification_id, external_handle=external_handle, updated_at=now)

    @staticmethod
    def _claim_free(now: datetime):
        return or_(
            _ScheduledNotificationRow.claim_token.is_(None),
            _ScheduledNotificationRow.claimed_at <= now - CLAIM_TTL,
        )

    def claim_for_delivery(self, notification_id: str, *, claim_token: str, now: datetime) -> bool:
        return self._conditional_update(
            notification_id,
            self._claim_free(now),
            claim_token=claim_token,
            claimed_at=now,
            updated_at=now,
        )

    def transition(
        self,
        notification_id: str,
        *,
        to_state: str,
        now: datetime,
        claim_token: str | None = None,
        delivery_ref: str | None = None,
        sent_at: datetime | None = None,
        status_reason: str | None = None,
    ) -> bool:
        conditions = []
        if claim_token is not None:
            conditions.append(_ScheduledNotificationRow.claim_token == claim_token)
        else:
            conditions.append(self._claim_free(now))
        return self._conditional_update(
            notification_id,
            *conditions,
            state=to_state,
            delivery_ref=delivery_ref,
            sent_at=sent_at,
            status_reason=status_reason,
            updated_at=now,
        )

    def update_schedule(
        self,
        notification_id: str,
        *,
        scheduled_for: datetime,
        offset_days: int,
        time_of_day: str,
        external_handle: str | None,
        now: datetime,
    ) -> bool:
        return self._conditional_update(
            notification_id,
            self._claim_free(now),
            scheduled_for=scheduled_for,
            offset_days=offset_days,
            time_of_day=time_of_day,
            external_handle=external_handle,
            updated_at=now,
        )

    def list_for_entity(self, kind: str, entity_id: str) -> list[NotificationRecord]:
        with self._session() as session:
            rows = session.scalars(
                select(_ScheduledNotificationRow)
                .where(
                    _ScheduledNotificationRow.kind == kind,
                    _ScheduledNotificationRow.entity_id == entity_id,
                )
                .order_by(_ScheduledNotificationRow.scheduled_for, _ScheduledNotificationRow.created_at)
            ).all()
            return [_record_from_row(row) for row in rows]

    def list_by_request_key(self, kind: str, entity_id: str, request_key: str) -> list[NotificationRecord]:
        with self._session() as session:
            rows = session.scalars(
                select(_ScheduledNotificationRow)
                .where(
                    _ScheduledNotificationRow.kind == kind,
                    _ScheduledNotificationRow.entity_id == entity_id,
                    _ScheduledNotificationRow.request_key == request_key,
                )
                .order_by(_ScheduledNotificationRow.created_at)
            ).all()
            return [_record_from_row(row) for row in rows]

    def list_for_project(
        self,
        project_id: str,
        *,
        state: str | None = None,
        kind: str | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> list[NotificationRecord]:
        statement = select(_ScheduledNotificationRow).where(_ScheduledNotificationRow.project_id == project_id)
        if state is not None:
            statement = statement.where(_ScheduledNotificationRow.state == state)
        if kind is not None:
            statement = statement.where(_ScheduledNotificationRow.kind == kind)
        statement = statement.order_by(_ScheduledNotificationRow.created_at.desc()).limit(limit).offset(offset)
        with self._session() as session:
            return [_record_from_row(row) for row in session.scalars(statement).all()]

    def list_pending_due(self, before: datetime) -> list[NotificationRecord]:
        with self._session() as session:
            rows = session.scalars(
                select(_ScheduledNotificationRow)
                .where(
                    _ScheduledNotificationRow.state == "pending",
                    _ScheduledNotificationRow.scheduled_for <= before,
                )
                .order_by(_ScheduledNotificationRow.scheduled_for)
            ).all()
            return [_record_from_row(row) for row in rows]


def create_notification_repository(*, backend: str, database_url: str) -> NotificationRepository:
    normalized = backend.strip().lower()
    if normalized == "postgres":
        return SqlAlchemyNotificationRepository(database_url)
    if normalized == "inmemory":
        return InMemoryNotificationRepository()
    raise RuntimeError(f"unsupported NOTIFICATION_STORE_BACKEND: {backend}")
