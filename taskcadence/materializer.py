from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date
from typing import Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from .events import log_task_created
from .models import RecurrenceType, Task, TaskKind, TaskStatus, classify_task
from .recurrence import RecurrenceError


logger = logging.getLogger("taskcadence.materializer")


@dataclass
class MaterializeResult:
    created: bool
    task: Optional[Task]

    @property
    def already_exists(self) -> bool:
        return not self.created


def find_instance(db: Session, *, template_id: int, occurrence_date: date) -> Optional[Task]:
    return (
        db.query(Task)
        .filter(Task.recurring_parent_id == int(template_id))
        .filter(Task.due_date == occurrence_date)
        .first()
    )


def ensure_instance(
    db: Session,
    *,
    template: Task,
    occurrence_date: date,
    actor_user_id: Optional[int] = None,
    source: str = "scheduler",
) -> MaterializeResult:
    """Make sure the instance of `template` due on `occurrence_date` exists.

    The insert and its `created` event run inside a SAVEPOINT. A unique
    constraint violation on (recurring_parent_id, due_date) means a concurrent
    caller won the race and is reported the same as an existing instance.
    Does not commit.
    """
    if classify_task(template) != TaskKind.template:
        raise RecurrenceError(f"Task {template.id} is not a recurrence template")

    existing = find_instance(db, template_id=template.id, occurrence_date=occurrence_date)
    if existing is not None:
        return MaterializeResult(created=False, task=existing)

    instance = Task(
        user_id=template.user_id,
        project_id=template.project_id,
        name=template.name,
        note=template.note,
        priority=template.priority,
        status=TaskStatus.not_started,
        due_date=occurrence_date,
        recurrence_type=RecurrenceType.none,
        recurrence_interval=1,
        completion_based=False,
        recurring_parent_id=template.id,
    )

    try:
        with db.begin_nested():
            db.add(instance)
            instance.tags = list(template.tags)
            db.flush()
            log_task_created(
                db,
                task=instance,
                user_id=(actor_user_id if actor_user_id is not None else template.user_id),
                metadata={
                    "source": source,
                    "action": "recurring_instance_created",
                    "template_id": template.id,
                    "occurrence_date": occurrence_date,
                },
            )
            db.flush()
    except IntegrityError:
        logger.info(
            "Instance of template %s for %s already exists (concurrent insert)",
            template.id,
            occurrence_date.isoformat(),
        )
        return MaterializeResult(
            created=False,
            task=find_instance(db, template_id=template.id, occurrence_date=occurrence_date),
        )

    logger.debug("Materialized template %s for %s as task %s", template.id, occurrence_date.isoformat(), instance.id)
    return MaterializeResult(created=True, task=instance)
