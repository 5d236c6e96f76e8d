from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import date, timedelta
from typing import Callable, Optional

from sqlalchemy import or_
from sqlalchemy.orm import Session

from .config import get_settings
from .locks import generation_lock, user_owner_key
from .materializer import ensure_instance
from .models import RecurrenceType, Task, TaskStatus, User
from .recurrence import is_exhausted, next_occurrences
from .utils.time_utils import local_date_for_user


logger = logging.getLogger("taskcadence.generation")


@dataclass
class GenerationResult:
    user_id: int
    busy: bool = False
    horizon_date: Optional[date] = None
    instances_created: list[Task] = field(default_factory=list)
    templates_processed: int = 0
    # template id -> error message
    errors: dict[int, str] = field(default_factory=dict)


def _templates_query(db: Session):
    return (
        db.query(Task)
        .filter(Task.recurrence_type != RecurrenceType.none)
        .filter(Task.recurring_parent_id.is_(None))
        .filter(Task.completion_based.is_(False))
        .filter(Task.status != TaskStatus.archived)
    )


def eligible_templates(db: Session, *, user_id: int) -> list[Task]:
    """Fixed-schedule templates of `user_id` that can still produce occurrences.

    Completion-based templates are driven by completions only.
    """
    return (
        _templates_query(db)
        .filter(Task.user_id == int(user_id))
        .filter(
            or_(
                Task.recurrence_end_date.is_(None),
                Task.last_generated_date.is_(None),
                Task.recurrence_end_date > Task.last_generated_date,
            )
        )
        .order_by(Task.id.asc())
        .all()
    )


def default_horizon(user: Optional[User]) -> date:
    days = max(0, int(get_settings().generation.horizon_days))
    return local_date_for_user(user) + timedelta(days=days)


def generate_for_template(
    db: Session,
    *,
    template: Task,
    horizon_date: date,
    source: str = "scheduler",
) -> list[Task]:
    """Materialize every occurrence of `template` up to `horizon_date`. Does not commit."""
    if is_exhausted(template, template.last_generated_date):
        logger.debug("Template %s is past its end date", template.id)
        return []

    dates = next_occurrences(template, template.last_generated_date, horizon_date)

    created: list[Task] = []
    for occurrence in dates:
        res = ensure_instance(db, template=template, occurrence_date=occurrence, source=source)
        if res.created and res.task is not None:
            created.append(res.task)

    if dates:
        newest = max(dates)
        if template.last_generated_date is None or newest > template.last_generated_date:
            template.last_generated_date = newest
            db.add(template)
    return created


def run_for_user(
    db: Session,
    *,
    user_id: int,
    horizon_date: Optional[date] = None,
    source: str = "scheduler",
    ttl_seconds: Optional[int] = None,
) -> GenerationResult:
    """One generation pass for a user.

    A concurrent pass for the same user makes this call return immediately
    with `busy=True`. A failing template is logged and skipped; its partial
    work is rolled back and the remaining templates still run.
    """
    result = GenerationResult(user_id=int(user_id))
    ttl = int(ttl_seconds or get_settings().generation.lock_ttl_seconds)
    owner_key = user_owner_key(user_id)

    with generation_lock(db, owner_key, ttl) as token:
        if token is None:
            logger.info("Generation for user %s already in progress elsewhere", user_id)
            result.busy = True
            return result

        user = db.get(User, int(user_id))
        if user is None:
            logger.warning("Generation requested for unknown user %s", user_id)
            return result

        horizon = horizon_date or default_horizon(user)
        result.horizon_date = horizon

        templates = eligible_templates(db, user_id=int(user_id))
        for template in templates:
            template_id = template.id
            try:
                created = generate_for_template(db, template=template, horizon_date=horizon, source=source)
                db.commit()
            except Exception as e:
                db.rollback()
                logger.exception("Generation failed for template %s (user %s)", template_id, user_id)
                result.errors[int(template_id)] = str(e)
                continue
            result.templates_processed += 1
            result.instances_created.extend(created)

        if result.instances_created or result.errors:
            logger.info(
                "Generation for user %s up to %s: %s created, %s template(s) failed",
                user_id,
                horizon.isoformat(),
                len(result.instances_created),
                len(result.errors),
            )
        return result


def user_ids_with_templates(db: Session) -> list[int]:
    rows = _templates_query(db).with_entities(Task.user_id).distinct().order_by(Task.user_id.asc()).all()
    return [int(uid) for (uid,) in rows]


def run_for_all_users(
    session_factory: Callable[[], Session],
    *,
    horizon_date: Optional[date] = None,
    source: str = "scheduler",
) -> list[GenerationResult]:
    """Run a pass for every user owning a fixed-schedule template, each in its own session."""
    with session_factory() as db:
        user_ids = user_ids_with_templates(db)

    results: list[GenerationResult] = []
    for uid in user_ids:
        try:
            with session_factory() as db:
                results.append(run_for_user(db, user_id=uid, horizon_date=horizon_date, source=source))
        except Exception:
            logger.exception("Generation pass failed for user %s", uid)
    return results
