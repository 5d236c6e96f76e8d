from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from sqlalchemy.orm import Session

from .events import EVENT_ARCHIVED, log_event, log_status_change
from .materializer import ensure_instance
from .models import RecurrenceCompletion, Task, TaskKind, TaskStatus, User, classify_task
from .recurrence import RecurrenceError, next_occurrence_from
from .utils.time_utils import local_date_for_user, now_utc


logger = logging.getLogger("taskcadence.completion")


@dataclass
class TransitionResult:
    completion: Optional[RecurrenceCompletion] = None
    next_instance: Optional[Task] = None
    next_created: bool = False


def _template_for(db: Session, instance: Task) -> Optional[Task]:
    if instance.recurring_parent_id is None:
        return None
    return db.get(Task, int(instance.recurring_parent_id))


def _find_completion(db: Session, *, template: Task, instance: Task) -> Optional[RecurrenceCompletion]:
    return (
        db.query(RecurrenceCompletion)
        .filter(RecurrenceCompletion.task_id == int(template.id))
        .filter(RecurrenceCompletion.original_due_date == instance.due_date)
        .first()
    )


def _record_resolution(
    db: Session,
    *,
    template: Task,
    instance: Task,
    when_utc: datetime,
    skipped: bool,
) -> Optional[RecurrenceCompletion]:
    """Add the history row for this occurrence, unless it was already resolved."""
    if _find_completion(db, template=template, instance=instance) is not None:
        logger.info(
            "Occurrence %s of template %s already resolved; not recording again",
            instance.due_date,
            template.id,
        )
        return None

    row = RecurrenceCompletion(
        task_id=int(template.id),
        completed_at=when_utc,
        original_due_date=instance.due_date,
        skipped=bool(skipped),
    )
    db.add(row)
    return row


def _advance_anchor(
    db: Session,
    *,
    template: Task,
    when_utc: datetime,
    actor_user_id: Optional[int],
    source: str,
    result: TransitionResult,
) -> None:
    """Materialize the one next occurrence of a completion-based template."""
    owner = template.user if template.user is not None else db.get(User, int(template.user_id))
    resolved_on = local_date_for_user(owner, when_utc)
    try:
        next_date = next_occurrence_from(template, resolved_on)
    except RecurrenceError:
        logger.exception("Cannot compute next occurrence for template %s", template.id)
        return

    if next_date is None:
        logger.info("Template %s is exhausted (end date %s)", template.id, template.recurrence_end_date)
        return

    res = ensure_instance(
        db,
        template=template,
        occurrence_date=next_date,
        actor_user_id=actor_user_id,
        source=source,
    )
    result.next_instance = res.task
    result.next_created = res.created
    if template.last_generated_date is None or next_date > template.last_generated_date:
        template.last_generated_date = next_date
        db.add(template)


def on_status_changed(
    db: Session,
    *,
    instance: Task,
    old_status: Optional[str],
    new_status: str,
    actor_user_id: Optional[int],
    when_utc: Optional[datetime] = None,
    source: str = "web",
) -> Optional[TransitionResult]:
    """React to a status transition the caller already applied to `instance`.

    Returns None when `instance` is not a recurring instance. Does not commit:
    the status change and its audit rows belong to the caller's transaction.
    """
    if classify_task(instance) != TaskKind.instance:
        return None
    if old_status is not None and TaskStatus(old_status) == TaskStatus(new_status):
        return None

    when = (when_utc or now_utc()).replace(tzinfo=None)
    template = _template_for(db, instance)
    result = TransitionResult()

    meta = {"source": source, "template_id": instance.recurring_parent_id}
    if new_status != TaskStatus.done:
        log_status_change(
            db,
            task_id=instance.id,
            user_id=actor_user_id,
            old_status=old_status,
            new_status=new_status,
            metadata=meta,
        )
        return result

    log_status_change(
        db,
        task_id=instance.id,
        user_id=actor_user_id,
        old_status=old_status,
        new_status=new_status,
        metadata={**meta, "action": "recurring_occurrence_completed", "original_due_date": instance.due_date},
    )

    if template is None:
        logger.warning("Instance %s points at missing template %s", instance.id, instance.recurring_parent_id)
        return result

    result.completion = _record_resolution(db, template=template, instance=instance, when_utc=when, skipped=False)
    if result.completion is not None and template.completion_based:
        _advance_anchor(
            db,
            template=template,
            when_utc=when,
            actor_user_id=actor_user_id,
            source=source,
            result=result,
        )
    return result


def on_skipped(
    db: Session,
    *,
    instance: Task,
    actor_user_id: Optional[int],
    when_utc: Optional[datetime] = None,
    source: str = "web",
) -> Optional[TransitionResult]:
    """Skip one occurrence: archive the instance and record the skip.

    Fixed schedules are unaffected. A completion-based template advances from
    the skip date exactly as it would from a completion. Does not commit.
    """
    if classify_task(instance) != TaskKind.instance:
        return None

    when = (when_utc or now_utc()).replace(tzinfo=None)
    template = _template_for(db, instance)
    result = TransitionResult()

    if template is not None and _find_completion(db, template=template, instance=instance) is not None:
        logger.info("Occurrence %s of template %s already resolved; skip ignored", instance.due_date, template.id)
        return result

    old_status = instance.status
    instance.status = TaskStatus.archived
    db.add(instance)

    log_event(
        db,
        task_id=instance.id,
        user_id=actor_user_id,
        event_type=EVENT_ARCHIVED,
        field_name="status",
        old_value=old_status,
        new_value=TaskStatus.archived,
        metadata={
            "source": source,
            "action": "recurring_occurrence_skipped",
            "template_id": instance.recurring_parent_id,
            "original_due_date": instance.due_date,
        },
    )

    if template is None:
        logger.warning("Instance %s points at missing template %s", instance.id, instance.recurring_parent_id)
        return result

    result.completion = _record_resolution(db, template=template, instance=instance, when_utc=when, skipped=True)
    if result.completion is not None and template.completion_based:
        _advance_anchor(
            db,
            template=template,
            when_utc=when,
            actor_user_id=actor_user_id,
            source=source,
            result=result,
        )
    return result
