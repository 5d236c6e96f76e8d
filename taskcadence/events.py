from __future__ import annotations

import enum
from datetime import date, datetime
from typing import Any, Optional

from sqlalchemy.orm import Session

from .models import Task, TaskEvent, TaskStatus


EVENT_CREATED = "created"
EVENT_STATUS_CHANGED = "status_changed"
EVENT_COMPLETED = "completed"
EVENT_ARCHIVED = "archived"
EVENT_RECURRENCE_CHANGED = "recurrence_changed"
EVENT_DELETED = "deleted"

DEFAULT_SOURCE = "web"


def _json_safe(value: Any) -> Any:
    if isinstance(value, enum.Enum):
        return value.value
    if isinstance(value, (date, datetime)):
        return value.isoformat()
    if isinstance(value, dict):
        return {str(k): _json_safe(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_json_safe(v) for v in value]
    return value


def task_snapshot(task: Task) -> dict:
    """The fields an audit reader needs to reconstruct a task at creation time."""
    return _json_safe(
        {
            "uid": task.uid,
            "name": task.name,
            "status": task.status,
            "priority": task.priority,
            "due_date": task.due_date,
            "project_id": task.project_id,
            "recurring_parent_id": task.recurring_parent_id,
            "recurrence_type": task.recurrence_type,
            "tags": [t.name for t in (task.tags or [])],
        }
    )


def log_event(
    db: Session,
    *,
    task_id: Optional[int],
    user_id: Optional[int],
    event_type: str,
    field_name: Optional[str] = None,
    old_value: Any = None,
    new_value: Any = None,
    metadata: Optional[dict] = None,
) -> TaskEvent:
    """Add one audit row to the session. The caller owns the transaction."""
    meta = dict(metadata or {})
    meta.setdefault("source", DEFAULT_SOURCE)

    key = field_name or "value"
    ev = TaskEvent(
        task_id=(int(task_id) if task_id is not None else None),
        user_id=(int(user_id) if user_id is not None else None),
        event_type=str(event_type),
        field_name=field_name,
        old_value=({key: _json_safe(old_value)} if old_value is not None else None),
        new_value=({key: _json_safe(new_value)} if new_value is not None else None),
        event_metadata=_json_safe(meta),
    )
    db.add(ev)
    return ev


def log_task_created(db: Session, *, task: Task, user_id: Optional[int], metadata: Optional[dict] = None) -> TaskEvent:
    meta = {**(metadata or {}), "action": (metadata or {}).get("action", "task_created")}
    return log_event(
        db,
        task_id=task.id,
        user_id=user_id,
        event_type=EVENT_CREATED,
        new_value=task_snapshot(task),
        metadata=meta,
    )


def log_status_change(
    db: Session,
    *,
    task_id: int,
    user_id: Optional[int],
    old_status: Optional[str],
    new_status: str,
    metadata: Optional[dict] = None,
) -> TaskEvent:
    if new_status == TaskStatus.done:
        event_type = EVENT_COMPLETED
    elif new_status == TaskStatus.archived:
        event_type = EVENT_ARCHIVED
    else:
        event_type = EVENT_STATUS_CHANGED

    meta = {**(metadata or {})}
    meta.setdefault("action", "status_change")
    return log_event(
        db,
        task_id=task_id,
        user_id=user_id,
        event_type=event_type,
        field_name="status",
        old_value=old_status,
        new_value=new_status,
        metadata=meta,
    )


def list_task_events(db: Session, *, task_id: int, event_type: Optional[str] = None) -> list[TaskEvent]:
    q = db.query(TaskEvent).filter(TaskEvent.task_id == int(task_id))
    if event_type is not None:
        q = q.filter(TaskEvent.event_type == str(event_type))
    return q.order_by(TaskEvent.id.asc()).all()
