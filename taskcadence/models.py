from __future__ import annotations

import enum
import uuid
from datetime import date, datetime, timezone

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    Date,
    DateTime,
    Enum,
    ForeignKey,
    Integer,
    String,
    Table,
    Text,
    UniqueConstraint,
    event,
)
from sqlalchemy.orm import Mapped, Session, mapped_column, relationship

from .db import Base


def _utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


def _new_uid() -> str:
    return uuid.uuid4().hex


class TaskStatus(str, enum.Enum):
    not_started = "not_started"
    in_progress = "in_progress"
    done = "done"
    archived = "archived"
    waiting = "waiting"


class TaskPriority(str, enum.Enum):
    low = "low"
    medium = "medium"
    high = "high"


class RecurrenceType(str, enum.Enum):
    none = "none"
    daily = "daily"
    weekly = "weekly"
    monthly = "monthly"  # by month day, or nth weekday when week_of_month is set
    monthly_weekday = "monthly_weekday"  # nth weekday of the month
    monthly_last_day = "monthly_last_day"
    custom = "custom"  # interval in days


class TaskKind(str, enum.Enum):
    template = "template"
    instance = "instance"
    plain = "plain"


class TaskShapeError(ValueError):
    pass


# Many-to-many association table
TaskTag = Table(
    "task_tags",
    Base.metadata,
    Column("task_id", ForeignKey("tasks.id", ondelete="CASCADE"), primary_key=True),
    Column("tag_id", ForeignKey("tags.id", ondelete="CASCADE"), primary_key=True),
)


class User(Base):
    __tablename__ = "users"
    __table_args__ = (UniqueConstraint("username", name="uq_users_username"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    username: Mapped[str] = mapped_column(String(64), nullable=False)

    # IANA zone name. Empty means "use the app timezone".
    timezone: Mapped[str | None] = mapped_column(String(64), nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime, default=_utcnow, nullable=False)

    tasks: Mapped[list["Task"]] = relationship(
        "Task",
        back_populates="user",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )


class AppMeta(Base):
    __tablename__ = "app_meta"

    key: Mapped[str] = mapped_column(String(64), primary_key=True)
    value: Mapped[str] = mapped_column(String(255), nullable=False)

    updated_at: Mapped[datetime] = mapped_column(DateTime, default=_utcnow, onupdate=_utcnow, nullable=False)


class Project(Base):
    __tablename__ = "projects"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[int] = mapped_column(Integer, ForeignKey("users.id", ondelete="CASCADE"), index=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)


class Tag(Base):
    __tablename__ = "tags"
    __table_args__ = (UniqueConstraint("name", name="uq_tags_name"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String(64), nullable=False)

    tasks: Mapped[list["Task"]] = relationship(
        "Task",
        secondary=TaskTag,
        back_populates="tags",
    )


class Task(Base):
    """A template, a materialized instance, or a plain task.

    Which one is decided by `classify_task`; see `check_task_shape` for the
    invariant enforced on every flush.
    """

    __tablename__ = "tasks"
    __table_args__ = (
        # One instance per (template, occurrence). NULL parents never collide.
        UniqueConstraint("recurring_parent_id", "due_date", name="uq_tasks_recurring_parent_due"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    uid: Mapped[str] = mapped_column(String(32), default=_new_uid, nullable=False, unique=True)
    user_id: Mapped[int] = mapped_column(Integer, ForeignKey("users.id", ondelete="CASCADE"), index=True)
    project_id: Mapped[int | None] = mapped_column(
        Integer, ForeignKey("projects.id", ondelete="SET NULL"), nullable=True, index=True
    )

    name: Mapped[str] = mapped_column(String(255), nullable=False)
    note: Mapped[str | None] = mapped_column(Text, nullable=True)

    status: Mapped[str] = mapped_column(Enum(TaskStatus), default=TaskStatus.not_started, nullable=False, index=True)
    priority: Mapped[str] = mapped_column(Enum(TaskPriority), default=TaskPriority.medium, nullable=False)

    due_date: Mapped[date | None] = mapped_column(Date, nullable=True, index=True)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)

    recurrence_type: Mapped[str] = mapped_column(
        Enum(RecurrenceType),
        default=RecurrenceType.none,
        nullable=False,
        index=True,
    )
    recurrence_interval: Mapped[int] = mapped_column(Integer, default=1, nullable=False)
    # 0 = Sunday ... 6 = Saturday.
    recurrence_weekday: Mapped[int | None] = mapped_column(Integer, nullable=True)
    recurrence_month_day: Mapped[int | None] = mapped_column(Integer, nullable=True)
    recurrence_week_of_month: Mapped[int | None] = mapped_column(Integer, nullable=True)
    recurrence_end_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    completion_based: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)

    # High-water mark of generation scanning (templates only).
    last_generated_date: Mapped[date | None] = mapped_column(Date, nullable=True)

    recurring_parent_id: Mapped[int | None] = mapped_column(
        Integer, ForeignKey("tasks.id", ondelete="SET NULL"), nullable=True, index=True
    )

    created_at: Mapped[datetime] = mapped_column(DateTime, default=_utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=_utcnow, onupdate=_utcnow, nullable=False)

    user: Mapped[User] = relationship("User", back_populates="tasks")
    project: Mapped[Project | None] = relationship("Project")

    tags: Mapped[list[Tag]] = relationship(
        "Tag",
        secondary=TaskTag,
        back_populates="tasks",
    )

    @property
    def kind(self) -> TaskKind:
        return classify_task(self)


class RecurrenceCompletion(Base):
    """One row per resolved occurrence of a template (completed or skipped)."""

    __tablename__ = "recurring_completions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    # The template, not the instance.
    task_id: Mapped[int | None] = mapped_column(
        Integer, ForeignKey("tasks.id", ondelete="SET NULL"), nullable=True, index=True
    )

    completed_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    original_due_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    skipped: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)

    created_at: Mapped[datetime] = mapped_column(DateTime, default=_utcnow, nullable=False)


class TaskEvent(Base):
    """Immutable audit row. Never updated or deleted by the engine.

    Rows outlive the task they describe: deleting the task clears `task_id` and
    the snapshot in `new_value` keeps its uid.
    """

    __tablename__ = "task_events"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    task_id: Mapped[int | None] = mapped_column(
        Integer, ForeignKey("tasks.id", ondelete="SET NULL"), nullable=True, index=True
    )
    user_id: Mapped[int | None] = mapped_column(Integer, ForeignKey("users.id", ondelete="SET NULL"), nullable=True)

    event_type: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    field_name: Mapped[str | None] = mapped_column(String(64), nullable=True)
    old_value: Mapped[dict | None] = mapped_column(JSON, nullable=True)
    new_value: Mapped[dict | None] = mapped_column(JSON, nullable=True)
    # `metadata` is reserved on declarative classes.
    event_metadata: Mapped[dict | None] = mapped_column("metadata", JSON, nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime, default=_utcnow, nullable=False, index=True)


class GenerationLock(Base):
    """Ephemeral per-owner mutex row. Rows past `expires_at` count as absent."""

    __tablename__ = "generation_locks"

    owner_key: Mapped[str] = mapped_column(String(128), primary_key=True)
    token: Mapped[str] = mapped_column(String(64), nullable=False)
    acquired_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    expires_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, index=True)


def classify_task(task: Task) -> TaskKind:
    if task.recurring_parent_id is not None:
        return TaskKind.instance
    if (task.recurrence_type or RecurrenceType.none) != RecurrenceType.none:
        return TaskKind.template
    return TaskKind.plain


def _check_range(value: int | None, lo: int, hi: int, field: str) -> None:
    if value is None:
        return
    if not isinstance(value, int) or isinstance(value, bool) or value < lo or value > hi:
        raise TaskShapeError(f"{field} must be between {lo} and {hi}")


def check_task_shape(task: Task) -> None:
    """Raise TaskShapeError if `task` is not a valid template/instance/plain task."""
    rtype = task.recurrence_type or RecurrenceType.none
    try:
        rtype = RecurrenceType(rtype)
    except ValueError as e:
        raise TaskShapeError(f"Invalid recurrence_type: {rtype}") from e

    if task.recurring_parent_id is not None:
        if rtype != RecurrenceType.none:
            raise TaskShapeError("Recurring instances cannot carry a recurrence rule")
        if task.id is not None and int(task.recurring_parent_id) == int(task.id):
            raise TaskShapeError("A task cannot be its own recurring parent")
        return

    if rtype == RecurrenceType.none:
        return

    interval = task.recurrence_interval if task.recurrence_interval is not None else 1
    if not isinstance(interval, int) or isinstance(interval, bool) or interval < 1:
        raise TaskShapeError("recurrence_interval must be a positive integer")

    _check_range(task.recurrence_weekday, 0, 6, "recurrence_weekday")
    _check_range(task.recurrence_month_day, 1, 31, "recurrence_month_day")
    _check_range(task.recurrence_week_of_month, 1, 5, "recurrence_week_of_month")

    nth_weekday = rtype == RecurrenceType.monthly_weekday or (
        rtype == RecurrenceType.monthly and task.recurrence_week_of_month is not None
    )
    if nth_weekday and (task.recurrence_weekday is None or task.recurrence_week_of_month is None):
        raise TaskShapeError("Nth-weekday monthly rules need recurrence_weekday and recurrence_week_of_month")


@event.listens_for(Session, "before_flush")
def _enforce_task_shape(session, flush_context, instances) -> None:
    for obj in list(session.new) + list(session.dirty):
        if isinstance(obj, Task):
            check_task_shape(obj)
