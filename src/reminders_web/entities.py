from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from threading import Lock
from typing import Protocol

from sqlalchemy import Column, DateTime, MetaData, String, Table, Text, create_engine, select
from sqlalchemy.engine import Engine


@dataclass(frozen=True)
class UserEntity:
    user_id: str
    name: str
    email: str


@dataclass(frozen=True)
class ProjectEntity:
    project_id: str
    name: str


@dataclass(frozen=True)
class SubtaskEntity:
    subtask_id: str
    project_id: str
    main_task_title: str
    title: str
    description: str | None
    deadline: datetime | None
    status: str
    assignee_id: str | None


@dataclass(frozen=True)
class EventEntity:
    event_id: str
    project_id: str
    title: str
    description: str | None
    starts_at: datetime | None
    location: str | None


class EntityDirectory(Protocol):
    """Read-only view of the project/task/event/member tables."""

    def get_user(self, user_id: str) -> UserEntity | None: ...

    def get_project(self, project_id: str) -> ProjectEntity | None: ...

    def get_subtask(self, subtask_id: str) -> SubtaskEntity | None: ...

    def get_event(self, event_id: str) -> EventEntity | None: ...

    def list_project_member_ids(self, project_id: str) -> set[str]: ...


class InMemoryEntityDirectory:
    def __init__(self) -> None:
        self._lock = Lock()
        self._users: dict[str, UserEntity] = {}
        self._projects: dict[str, ProjectEntity] = {}
        self._members: dict[str, set[str]] = {}
        self._subtasks: dict[str, SubtaskEntity] = {}
        self._events: dict[str, EventEntity] = {}

    def reset(self) -> None:
        with self._lock:
            self._users.clear()
            self._projects.clear()
            self._members.clear()
            self._subtasks.clear()
            self._events.clear()

    def put_user(self, user: UserEntity) -> None:
        with self._lock:
            self._users[user.user_id] = user

    def remove_user(self, user_id: str) -> None:
        with self._lock:
            self._users.pop(user_id, None)
            for member_ids in self._members.values():
                member_ids.discard(user_id)

    def put_project(self, project: ProjectEntity, *, member_ids: list[str] | None = None) -> None:
        with self._lock:
            self._projects[project.project_id] = project
            self._members.setdefault(project.project_id, set()).update(member_ids or [])

    def add_member(self, project_id: str, user_id: str) -> None:
        with self._lock:
            self._members.setdefault(project_id, set()).add(user_id)

    def remove_member(self, project_id: str, user_id: str) -> None:
        with self._lock:
            self._members.get(project_id, set()).discard(user_id)

    def put_subtask(self, subtask: SubtaskEntity) -> None:
        with self._lock:
            self._subtasks[subtask.subtask_id] = subtask

    def remove_subtask(self, subtask_id: str) -> None:
        with self._lock:
            self._subtasks.pop(subtask_id, None)

    def put_event(self, event: EventEntity) -> None:
        with self._lock:
            self._events[event.event_id] = event

    def remove_event(self, event_id: str) -> None:
        with self._lock:
            self._events.pop(event_id, None)

    def get_user(self, user_id: str) -> UserEntity | None:
        with self._lock:
            return self._users.get(user_id)

    def get_project(self, project_id: str) -> ProjectEntity | None:
        with self._lock:
            return self._projects.get(project_id)

    def get_subtask(self, subtask_id: str) -> SubtaskEntity | None:
        with self._lock:
            return self._subtasks.get(subtask_id)

    def get_event(self, event_id: str) -> EventEntity | None:
        with self._lock:
            return self._events.get(event_id)

    def list_project_member_ids(self, project_id: str) -> set[str]:
        with self._lock:
            return set(self._members.get(project_id, set()))


# Tables owned by the host application; only the columns read here are declared.
host_metadata = MetaData()

users_table = Table(
    "user",
    host_metadata,
    Column("id", String(128), primary_key=True),
    Column("name", Text, nullable=False),
    Column("email", Text, nullable=False),
)

projects_table = Table(
    "projects",
    host_metadata,
    Column("id", String(128), primary_key=True),
    Column("name", String(255), nullable=False),
)

members_table = Table(
    "members",
    host_metadata,
    Column("id", String(128), primary_key=True),
    Column("user_id", String(128), nullable=False),
    Column("project_id", String(128), nullable=False),
)

main_tasks_table = Table(
    "main_tasks",
    host_metadata,
    Column("id", String(128), primary_key=True),
    Column("project_id", String(128), nullable=False),
    Column("title", String(500), nullable=False),
)

sub_tasks_table = Table(
    "sub_tasks",
    host_metadata,
    Column("id", String(128), primary_key=True),
    Column("main_task_id", String(128), nullable=False),
    Column("assigned_id", String(128), nullable=True),
    Column("title", String(500), nullable=False),
    Column("description", Text, nullable=True),
    Column("status", String(32), nullable=False),
    Column("deadline", DateTime(timezone=True), nullable=True),
)

events_table = Table(
    "events",
    host_metadata,
    Column("id", String(128), primary_key=True),
    Column("project_id", String(128), nullable=False),
    Column("title", String(500), nullable=False),
    Column("description", Text, nullable=True),
    Column("datetime", DateTime(timezone=True), nullable=False),
    Column("location", String(500), nullable=True),
)


class SqlAlchemyEntityDirectory:
    def __init__(self, database_url: str) -> None:
        if not database_url:
            raise RuntimeError("DATABASE_URL is required for ENTITY_STORE_BACKEND=postgres")
        self._engine: Engine = create_engine(database_url, future=True, pool_pre_ping=True)
        # SQLite is used in tests. In production these tables belong to the host application.
        if database_url.startswith("sqlite"):
            host_metadata.create_all(self._engine)

    @property
    def engine(self) -> Engine:
        return self._engine

    def get_user(self, user_id: str) -> UserEntity | None:
        with self._engine.connect() as connection:
            row = connection.execute(
                select(users_table.c.id, users_table.c.name, users_table.c.email).where(users_table.c.id == user_id)
            ).first()
        if row is None:
            return None
        return UserEntity(user_id=row.id, name=row.name, email=row.email)

    def get_project(self, project_id: str) -> ProjectEntity | None:
        with self._engine.connect() as connection:
            row = connection.execute(
                select(projects_table.c.id, projects_table.c.name).where(projects_table.c.id == project_id)
            ).first()
        if row is None:
            return None
        return ProjectEntity(project_id=row.id, name=row.name)

    def get_subtask(self, subtask_id: str) -> SubtaskEntity | None:
        statement = (
            select(
                sub_tasks_table.c.id,
                sub_tasks_table.c.title,
                sub_tasks_table.c.description,
                sub_tasks_table.c.deadline,
                sub_tasks_table.c.status,
                sub_tasks_table.c.assigned_id,
                main_tasks_table.c.project_id,
                main_tasks_table.c.title.label("main_task_title"),
            )
            .join(main_tasks_table, sub_tasks_table.c.main_task_id == main_tasks_table.c.id)
            .where(sub_tasks_table.c.id == subtask_id)
        )
        with self._engine.connect() as connection:
            row = connection.execute(statement).first()
        if row is None:
            return None
        return SubtaskEntity(
            subtask_id=row.id,
            project_id=row.project_id,
            main_task_title=row.main_task_title,
            title=row.title,
            description=row.description,
            deadline=row.deadline,
            status=row.status,
            assignee_id=row.assigned_id,
        )

    def get_event(self, event_id: str) -> EventEntity | None:
        with self._engine.connect() as connection:
            row = connection.execute(select(events_table).where(events_table.c.id == event_id)).first()
        if row is None:
            return None
        return EventEntity(
            event_id=row.id,
            project_id=row.project_id,
            title=row.title,
            description=row.description,
            starts_at=row.datetime,
            location=row.location,
        )

    def list_project_member_ids(self, project_id: str) -> set[str]:
        statement = (
            select(members_table.c.user_id)
            .join(users_table, users_table.c.id == members_table.c.user_id)
            .where(members_table.c.project_id == project_id)
        )
        with self._engine.connect() as connection:
            return {row.user_id for row in connection.execute(statement)}


def create_entity_directory(*, backend: str, database_url: str):
    normalized = backend.strip().lower()
    if normalized == "postgres":
        return SqlAlchemyEntityDirectory(database_url)
    if normalized == "inmemory":
        return InMemoryEntityDirectory()
    raise RuntimeError(f"unsupported ENTITY_STORE_BACKEND: {backend}")
