from __future__ import annotations

import logging
from datetime import date, datetime, timedelta
from typing import Iterable, Optional

from sqlalchemy import func
from sqlalchemy.orm import Session, joinedload

from .completion import TransitionResult, on_skipped, on_status_changed
from .events import (
    EVENT_DELETED,
    EVENT_RECURRENCE_CHANGED,
    log_event,
    log_status_change,
    log_task_created,
    task_snapshot,
)
from .materializer import ensure_instance
from .models import (
    Project,
    RecurrenceCompletion,
    RecurrenceType,
    Tag,
    Task,
    TaskKind,
    TaskPriority,
    TaskStatus,
    User,
    check_task_shape,
    classify_task,
)
from .utils.time_utils import local_date_for_user, now_utc


logger = logging.getLogger("taskcadence.crud")


_UNSET = object()

# Editing any of these on a template invalidates its untouched future instances.
RULE_FIELDS = (
    "recurrence_type",
    "recurrence_interval",
    "recurrence_weekday",
    "recurrence_month_day",
    "recurrence_week_of_month",
    "recurrence_end_date",
    "completion_based",
)


# ---------------------- Users ----------------------


def get_user(db: Session, user_id: int) -> Optional[User]:
    return db.query(User).filter(User.id == user_id).first()


def create_user(db: Session, *, username: str, timezone: str | None = None) -> User:
    uname = (username or "").strip()
    if not uname:
        raise ValueError("Username is required")

    existing = db.query(User).filter(User.username == uname).first()
    if existing:
        raise ValueError("Username already exists")

    user = User(username=uname, timezone=(timezone or None))
    db.add(user)
    db.commit()
    db.refresh(user)
    return user


# ---------------------- Tags / projects ----------------------


def _normalize_tag_name(tag: str) -> str:
    return tag.strip().lower()


def get_or_create_tags(db: Session, tag_names: Iterable[str]) -> list[Tag]:
    tags: list[Tag] = []
    for raw in tag_names:
        name = _normalize_tag_name(raw)
        if not name:
            continue
        existing = db.query(Tag).filter(func.lower(Tag.name) == name).first()
        if existing:
            tags.append(existing)
            continue
        t = Tag(name=name)
        db.add(t)
        db.flush()
        tags.append(t)
    return tags


def create_project(db: Session, *, owner: User, name: str) -> Project:
    p = Project(user_id=owner.id, name=(name or "").strip() or "Untitled")
    db.add(p)
    db.commit()
    db.refresh(p)
    return p


# ---------------------- Tasks ----------------------


def _seed_completion_based(db: Session, *, template: Task, actor_user_id: Optional[int]) -> Optional[Task]:
    """Give a completion-based template its first open instance.

    The batch pass never touches these templates, so without a seed nothing
    would ever be completed to drive the chain.
    """
    if classify_task(template) != TaskKind.template or not template.completion_based:
        return None

    open_instance = (
        db.query(Task)
        .filter(Task.recurring_parent_id == template.id)
        .filter(Task.status.notin_([TaskStatus.done, TaskStatus.archived]))
        .first()
    )
    if open_instance is not None:
        return open_instance

    first = template.due_date or local_date_for_user(template.user)
    if template.recurrence_end_date is not None and first > template.recurrence_end_date:
        return None
    res = ensure_instance(db, template=template, occurrence_date=first, actor_user_id=actor_user_id, source="web")
    if template.last_generated_date is None or first > template.last_generated_date:
        template.last_generated_date = first
    return res.task


def create_task(
    db: Session,
    *,
    owner: User,
    name: str,
    note: Optional[str] = None,
    priority: str = TaskPriority.medium.value,
    due_date: date | None = None,
    project_id: int | None = None,
    tags: Optional[Iterable[str]] = None,
    recurrence_type: str = RecurrenceType.none.value,
    recurrence_interval: int = 1,
    recurrence_weekday: int | None = None,
    recurrence_month_day: int | None = None,
    recurrence_week_of_month: int | None = None,
    recurrence_end_date: date | None = None,
    completion_based: bool = False,
) -> Task:
    """Create a plain task or a recurrence template."""
    if not (name or "").strip():
        raise ValueError("Name is required")
    try:
        rtype = RecurrenceType(recurrence_type)
    except ValueError as e:
        raise ValueError("Invalid recurrence_type") from e
    try:
        prio = TaskPriority(priority)
    except ValueError as e:
        raise ValueError("Invalid priority") from e

    task = Task(
        user_id=owner.id,
        project_id=(int(project_id) if project_id is not None else None),
        name=name.strip(),
        note=note,
        priority=prio,
        status=TaskStatus.not_started,
        due_date=due_date,
        recurrence_type=rtype,
        recurrence_interval=int(recurrence_interval) if recurrence_interval is not None else 1,
        recurrence_weekday=recurrence_weekday,
        recurrence_month_day=recurrence_month_day,
        recurrence_week_of_month=recurrence_week_of_month,
        recurrence_end_date=recurrence_end_date,
        completion_based=bool(completion_based) and rtype != RecurrenceType.none,
    )
    check_task_shape(task)

    if tags:
        task.tags = get_or_create_tags(db, tags)

    db.add(task)
    db.flush()
    log_task_created(db, task=task, user_id=owner.id)
    _seed_completion_based(db, template=task, actor_user_id=owner.id)

    db.commit()
    db.refresh(task)
    return task


def get_task(db: Session, *, task_id: int) -> Optional[Task]:
    return (
        db.query(Task)
        .options(joinedload(Task.tags))
        .filter(Task.id == task_id)
        .first()
    )


def list_tasks(
    db: Session,
    *,
    user_id: int,
    include_templates: bool = False,
    include_archived: bool = False,
    status: Optional[str] = None,
    template_id: Optional[int] = None,
) -> list[Task]:
    """List a user's tasks. Templates are not actionable and are excluded by default."""
    q = db.query(Task).options(joinedload(Task.tags)).filter(Task.user_id == int(user_id))

    if not include_templates:
        q = q.filter((Task.recurrence_type == RecurrenceType.none) | (Task.recurring_parent_id.is_not(None)))

    if status:
        try:
            st = TaskStatus(status)
        except ValueError as e:
            raise ValueError("Invalid status") from e
        q = q.filter(Task.status == st)
    elif not include_archived:
        q = q.filter(Task.status != TaskStatus.archived)

    if template_id is not None:
        q = q.filter(Task.recurring_parent_id == int(template_id))

    return q.order_by(Task.due_date.is_(None), Task.due_date.asc(), Task.id.asc()).all()


def _check_owner(task: Task, actor_user_id: Optional[int]) -> None:
    if actor_user_id is not None and int(task.user_id) != int(actor_user_id):
        raise PermissionError("Not allowed")


def update_task_status(
    db: Session,
    *,
    task: Task,
    new_status: str,
    actor_user_id: Optional[int],
    when_utc: Optional[datetime] = None,
    source: str = "web",
) -> tuple[Task, Optional[TransitionResult]]:
    """Change a task's status and record it. Recurring instances go through the tracker."""
    _check_owner(task, actor_user_id)
    try:
        new = TaskStatus(new_status)
    except ValueError as e:
        raise ValueError("Invalid status") from e

    old = TaskStatus(task.status) if task.status is not None else None
    if old == new:
        return task, None

    when = (when_utc or now_utc()).replace(tzinfo=None)
    task.status = new
    if new == TaskStatus.done:
        task.completed_at = when
    elif old == TaskStatus.done:
        task.completed_at = None
    db.add(task)

    result: Optional[TransitionResult] = None
    if classify_task(task) == TaskKind.instance:
        result = on_status_changed(
            db,
            instance=task,
            old_status=old,
            new_status=new,
            actor_user_id=actor_user_id,
            when_utc=when,
            source=source,
        )
    else:
        log_status_change(
            db,
            task_id=task.id,
            user_id=actor_user_id,
            old_status=old,
            new_status=new,
            metadata={"source": source},
        )

    db.commit()
    db.refresh(task)
    return task, result


def skip_occurrence(
    db: Session,
    *,
    task: Task,
    actor_user_id: Optional[int],
    when_utc: Optional[datetime] = None,
    source: str = "web",
) -> tuple[Task, TransitionResult]:
    _check_owner(task, actor_user_id)
    if classify_task(task) != TaskKind.instance:
        raise ValueError("Only recurring instances can be skipped")

    result = on_skipped(db, instance=task, actor_user_id=actor_user_id, when_utc=when_utc, source=source)
    db.commit()
    db.refresh(task)
    return task, result


def _drop_future_instances(db: Session, *, template: Task, from_date: date, actor_user_id: Optional[int]) -> int:
    """Delete untouched instances due on/after `from_date` so they regenerate from the new rule.

    Each removal is logged on the template. The instances' own audit rows stay,
    with `task_id` cleared by the foreign key.
    """
    resolved = {
        d
        for (d,) in db.query(RecurrenceCompletion.original_due_date)
        .filter(RecurrenceCompletion.task_id == template.id)
        .all()
    }
    rows = (
        db.query(Task)
        .filter(Task.recurring_parent_id == template.id)
        .filter(Task.status == TaskStatus.not_started)
        .filter(Task.due_date >= from_date)
        .all()
    )
    n = 0
    for inst in rows:
        if inst.due_date in resolved:
            continue
        log_event(
            db,
            task_id=template.id,
            user_id=actor_user_id,
            event_type=EVENT_DELETED,
            old_value=task_snapshot(inst),
            metadata={
                "action": "recurring_instance_superseded",
                "instance_id": inst.id,
                "instance_uid": inst.uid,
                "occurrence_date": inst.due_date,
            },
        )
        db.delete(inst)
        n += 1
    return n


def update_recurrence(
    db: Session,
    *,
    template: Task,
    actor_user_id: Optional[int],
    name: str | object = _UNSET,
    note: str | None | object = _UNSET,
    priority: str | object = _UNSET,
    project_id: int | None | object = _UNSET,
    recurrence_type: str | object = _UNSET,
    recurrence_interval: int | object = _UNSET,
    recurrence_weekday: int | None | object = _UNSET,
    recurrence_month_day: int | None | object = _UNSET,
    recurrence_week_of_month: int | None | object = _UNSET,
    recurrence_end_date: date | None | object = _UNSET,
    completion_based: bool | object = _UNSET,
) -> Task:
    """Edit a template's rule or copied fields.

    Each changed rule field is logged as a `recurrence_changed` event. Future
    instances nobody has touched yet are removed and the generation mark is
    pulled back, so the next pass materializes them from the new rule.
    """
    _check_owner(template, actor_user_id)
    if classify_task(template) != TaskKind.template:
        raise ValueError("Task is not a recurrence template")

    requested = {
        "name": name,
        "note": note,
        "priority": priority,
        "project_id": project_id,
        "recurrence_type": recurrence_type,
        "recurrence_interval": recurrence_interval,
        "recurrence_weekday": recurrence_weekday,
        "recurrence_month_day": recurrence_month_day,
        "recurrence_week_of_month": recurrence_week_of_month,
        "recurrence_end_date": recurrence_end_date,
        "completion_based": completion_based,
    }

    if requested["recurrence_type"] is not _UNSET:
        try:
            requested["recurrence_type"] = RecurrenceType(requested["recurrence_type"])
        except ValueError as e:
            raise ValueError("Invalid recurrence_type") from e
    if requested["priority"] is not _UNSET:
        try:
            requested["priority"] = TaskPriority(requested["priority"])
        except ValueError as e:
            raise ValueError("Invalid priority") from e
    if requested["name"] is not _UNSET and not str(requested["name"] or "").strip():
        raise ValueError("Name is required")

    changed: dict[str, tuple[object, object]] = {}
    for field, value in requested.items():
        if value is _UNSET:
            continue
        old = getattr(template, field)
        if old != value:
            changed[field] = (old, value)
            setattr(template, field, value)

    if not changed:
        return template

    try:
        check_task_shape(template)
    except ValueError:
        db.rollback()
        raise

    for field, (old, new) in changed.items():
        if field in RULE_FIELDS:
            log_event(
                db,
                task_id=template.id,
                user_id=actor_user_id,
                event_type=EVENT_RECURRENCE_CHANGED,
                field_name=field,
                old_value=old,
                new_value=new,
                metadata={"action": "recurrence_update"},
            )

    if classify_task(template) == TaskKind.template:
        today = local_date_for_user(template.user)
        dropped = _drop_future_instances(db, template=template, from_date=today, actor_user_id=actor_user_id)
        if template.last_generated_date is not None and template.last_generated_date >= today:
            template.last_generated_date = today - timedelta(days=1)
        if dropped:
            logger.info("Dropped %s future instance(s) of template %s after edit", dropped, template.id)
        db.flush()
        _seed_completion_based(db, template=template, actor_user_id=actor_user_id)

    db.add(template)
    db.commit()
    db.refresh(template)
    return template


def list_completions(db: Session, *, template_id: int, limit: int = 50) -> list[RecurrenceCompletion]:
    q = (
        db.query(RecurrenceCompletion)
        .filter(RecurrenceCompletion.task_id == int(template_id))
        .order_by(RecurrenceCompletion.completed_at.desc(), RecurrenceCompletion.id.desc())
    )
    try:
        lim = int(limit)
        if lim > 0:
            q = q.limit(min(lim, 500))
    except (TypeError, ValueError):
        q = q.limit(50)
    return q.all()
