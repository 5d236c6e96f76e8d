from __future__ import annotations

from datetime import date, datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from .models import RecurrenceType, TaskKind, TaskPriority, TaskStatus


class TagOut(BaseModel):
    id: int
    name: str

    class Config:
        from_attributes = True


class TaskOut(BaseModel):
    id: int
    uid: str
    user_id: int
    project_id: Optional[int]
    name: str
    note: Optional[str]
    status: TaskStatus
    priority: TaskPriority
    due_date: Optional[date]
    completed_at: Optional[datetime]

    recurrence_type: RecurrenceType
    recurrence_interval: int
    recurrence_weekday: Optional[int]
    recurrence_month_day: Optional[int]
    recurrence_week_of_month: Optional[int]
    recurrence_end_date: Optional[date]
    completion_based: bool
    last_generated_date: Optional[date]
    recurring_parent_id: Optional[int]

    kind: TaskKind
    tags: List[TagOut] = Field(default_factory=list)

    class Config:
        from_attributes = True


class GenerateRequest(BaseModel):
    horizon_date: Optional[date] = Field(
        default=None,
        description="Furthest due date to materialize. Defaults to the user's today + generation.horizon_days.",
    )


class GenerateResponse(BaseModel):
    user_id: int
    busy: bool
    horizon_date: Optional[date]
    instances_created: List[TaskOut]
    templates_processed: int
    errors: Dict[int, str] = Field(default_factory=dict)


class StatusChangeRequest(BaseModel):
    status: TaskStatus
    actor_user_id: int


class SkipRequest(BaseModel):
    actor_user_id: int


class CompletionOut(BaseModel):
    id: int
    task_id: int
    completed_at: datetime
    original_due_date: Optional[date]
    skipped: bool

    class Config:
        from_attributes = True


class TransitionResponse(BaseModel):
    task: TaskOut
    completion: Optional[CompletionOut] = None
    next_instance: Optional[TaskOut] = None
    next_created: bool = False


class OccurrencePreview(BaseModel):
    task_id: int
    dates: List[date]


class TaskEventOut(BaseModel):
    id: int
    task_id: Optional[int]
    user_id: Optional[int]
    event_type: str
    field_name: Optional[str]
    old_value: Optional[Dict[str, Any]]
    new_value: Optional[Dict[str, Any]]
    event_metadata: Optional[Dict[str, Any]]
    created_at: datetime

    class Config:
        from_attributes = True
