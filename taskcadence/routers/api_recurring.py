from __future__ import annotations

import logging
from datetime import date

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy.orm import Session

from ..crud import get_task, get_user, list_completions, skip_occurrence, update_task_status
from ..db import get_db
from ..events import list_task_events
from ..generation import run_for_user
from ..models import TaskKind, classify_task
from ..recurrence import RecurrenceError, preview_occurrences
from ..schemas import (
    CompletionOut,
    GenerateRequest,
    GenerateResponse,
    OccurrencePreview,
    SkipRequest,
    StatusChangeRequest,
    TaskEventOut,
    TransitionResponse,
)


router = APIRouter()
logger = logging.getLogger("taskcadence.api")


def _transition_response(task, result) -> TransitionResponse:
    return TransitionResponse(
        task=task,
        completion=(result.completion if result else None),
        next_instance=(result.next_instance if result else None),
        next_created=bool(result.next_created) if result else False,
    )


@router.post("/users/{user_id}/generate", response_model=GenerateResponse)
def api_generate_for_user(
    user_id: int,
    payload: GenerateRequest | None = None,
    db: Session = Depends(get_db),
):
    if not get_user(db, user_id):
        raise HTTPException(status_code=404, detail="User not found")

    result = run_for_user(db, user_id=user_id, horizon_date=(payload.horizon_date if payload else None), source="api")
    if result.busy:
        logger.info("On-demand generation for user %s skipped: pass already running", user_id)
    return GenerateResponse(
        user_id=result.user_id,
        busy=result.busy,
        horizon_date=result.horizon_date,
        instances_created=result.instances_created,
        templates_processed=result.templates_processed,
        errors=result.errors,
    )


@router.post("/tasks/{task_id}/status", response_model=TransitionResponse)
def api_change_status(
    task_id: int,
    payload: StatusChangeRequest,
    db: Session = Depends(get_db),
):
    task = get_task(db, task_id=task_id)
    if not task:
        raise HTTPException(status_code=404, detail="Task not found")

    try:
        updated, result = update_task_status(
            db,
            task=task,
            new_status=payload.status,
            actor_user_id=payload.actor_user_id,
        )
    except PermissionError:
        raise HTTPException(status_code=403, detail="Not allowed")
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))

    return _transition_response(updated, result)


@router.post("/tasks/{task_id}/skip", response_model=TransitionResponse)
def api_skip_occurrence(
    task_id: int,
    payload: SkipRequest,
    db: Session = Depends(get_db),
):
    task = get_task(db, task_id=task_id)
    if not task:
        raise HTTPException(status_code=404, detail="Task not found")

    try:
        updated, result = skip_occurrence(db, task=task, actor_user_id=payload.actor_user_id)
    except PermissionError:
        raise HTTPException(status_code=403, detail="Not allowed")
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))

    return _transition_response(updated, result)


@router.get("/tasks/{task_id}/occurrences", response_model=OccurrencePreview)
def api_preview_occurrences(
    task_id: int,
    count: int = Query(default=7, ge=1, le=100),
    start: date | None = Query(default=None),
    db: Session = Depends(get_db),
):
    task = get_task(db, task_id=task_id)
    if not task:
        raise HTTPException(status_code=404, detail="Task not found")
    if classify_task(task) != TaskKind.template:
        raise HTTPException(status_code=400, detail="Task is not a recurrence template")

    try:
        dates = preview_occurrences(task, count=count, start=start)
    except RecurrenceError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return OccurrencePreview(task_id=task.id, dates=dates)


@router.get("/tasks/{task_id}/completions", response_model=list[CompletionOut])
def api_list_completions(
    task_id: int,
    limit: int = Query(default=50, ge=1, le=500),
    db: Session = Depends(get_db),
):
    task = get_task(db, task_id=task_id)
    if not task:
        raise HTTPException(status_code=404, detail="Task not found")
    template_id = task.recurring_parent_id if classify_task(task) == TaskKind.instance else task.id
    return list_completions(db, template_id=int(template_id), limit=limit)


@router.get("/tasks/{task_id}/events", response_model=list[TaskEventOut])
def api_list_events(
    task_id: int,
    db: Session = Depends(get_db),
):
    task = get_task(db, task_id=task_id)
    if not task:
        raise HTTPException(status_code=404, detail="Task not found")
    return list_task_events(db, task_id=task.id)
