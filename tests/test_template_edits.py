from datetime import date, timedelta

import pytest

from taskcadence.crud import create_task, list_tasks, update_recurrence, update_task_status
from taskcadence.events import EVENT_CREATED, EVENT_DELETED, EVENT_RECURRENCE_CHANGED, list_task_events
from taskcadence.generation import run_for_user
from taskcadence.models import RecurrenceType, Task, TaskEvent, TaskKind, TaskShapeError, TaskStatus, classify_task
from taskcadence.utils.time_utils import local_date_for_user


def test_classify_task(db, user):
    plain = create_task(db, owner=user, name="One-off")
    template = create_task(db, owner=user, name="Daily", recurrence_type="daily", due_date=date(2024, 1, 1))
    run_for_user(db, user_id=user.id, horizon_date=date(2024, 1, 1))
    inst = db.query(Task).filter(Task.recurring_parent_id == template.id).one()

    assert classify_task(plain) == TaskKind.plain
    assert classify_task(template) == TaskKind.template
    assert classify_task(inst) == TaskKind.instance
    assert inst.kind == TaskKind.instance


def test_templates_are_hidden_from_task_lists(db, user):
    template = create_task(db, owner=user, name="Daily", recurrence_type="daily", due_date=date(2024, 1, 1))
    create_task(db, owner=user, name="One-off")
    run_for_user(db, user_id=user.id, horizon_date=date(2024, 1, 2))

    names = [(t.name, t.kind) for t in list_tasks(db, user_id=user.id)]
    assert ("Daily", TaskKind.template) not in names
    assert len(names) == 3

    with_templates = list_tasks(db, user_id=user.id, include_templates=True)
    assert template.id in {t.id for t in with_templates}


@pytest.mark.parametrize(
    "fields",
    [
        {"recurrence_type": "daily", "recurrence_interval": 0},
        {"recurrence_type": "weekly", "recurrence_weekday": 7},
        {"recurrence_type": "monthly", "recurrence_month_day": 0},
        {"recurrence_type": "monthly_weekday", "recurrence_week_of_month": 2},
    ],
)
def test_invalid_templates_are_rejected(db, user, fields):
    with pytest.raises(TaskShapeError):
        create_task(db, owner=user, name="Broken", due_date=date(2024, 1, 1), **fields)


def test_unknown_recurrence_type_is_rejected(db, user):
    with pytest.raises(ValueError):
        create_task(db, owner=user, name="Broken", recurrence_type="yearly")


def test_instance_with_rule_fails_on_flush(db, user):
    template = create_task(db, owner=user, name="Daily", recurrence_type="daily", due_date=date(2024, 1, 1))

    rogue = Task(
        user_id=user.id,
        name="Rogue",
        due_date=date(2024, 1, 2),
        recurring_parent_id=template.id,
        recurrence_type=RecurrenceType.daily,
    )
    db.add(rogue)
    with pytest.raises(TaskShapeError):
        db.flush()
    db.rollback()


def test_rule_edit_regenerates_untouched_future_instances(db, user):
    today = local_date_for_user(user)
    t = create_task(db, owner=user, name="Stretch", recurrence_type="daily", due_date=today)
    run_for_user(db, user_id=user.id, horizon_date=today + timedelta(days=4))

    started = db.query(Task).filter(Task.recurring_parent_id == t.id, Task.due_date == today).one()
    update_task_status(db, task=started, new_status="in_progress", actor_user_id=user.id)

    update_recurrence(db, template=t, actor_user_id=user.id, recurrence_interval=2)

    (ev,) = list_task_events(db, task_id=t.id, event_type=EVENT_RECURRENCE_CHANGED)
    assert ev.field_name == "recurrence_interval"
    assert ev.old_value == {"recurrence_interval": 1}
    assert ev.new_value == {"recurrence_interval": 2}

    remaining = db.query(Task).filter(Task.recurring_parent_id == t.id).all()
    assert [i.id for i in remaining] == [started.id]
    assert t.last_generated_date == today - timedelta(days=1)

    res = run_for_user(db, user_id=user.id, horizon_date=today + timedelta(days=4))
    assert sorted(i.due_date for i in res.instances_created) == [today + timedelta(days=2), today + timedelta(days=4)]
    started = db.get(Task, started.id)
    assert started.status == TaskStatus.in_progress


def _instance_created_events(db, template_id):
    rows = db.query(TaskEvent).filter(TaskEvent.event_type == EVENT_CREATED).order_by(TaskEvent.id.asc()).all()
    return [ev for ev in rows if (ev.event_metadata or {}).get("template_id") == template_id]


def test_edit_keeps_audit_rows_of_dropped_instances(db, user):
    today = local_date_for_user(user)
    t = create_task(db, owner=user, name="Stretch", recurrence_type="daily", due_date=today)
    run_for_user(db, user_id=user.id, horizon_date=today + timedelta(days=3))

    before = _instance_created_events(db, t.id)
    assert len(before) == 4
    uids = {ev.new_value["value"]["uid"] for ev in before}

    update_recurrence(db, template=t, actor_user_id=user.id, name="Renamed")
    assert db.query(Task).filter(Task.recurring_parent_id == t.id).count() == 0

    after = _instance_created_events(db, t.id)
    assert [ev.id for ev in after] == [ev.id for ev in before]
    assert all(ev.task_id is None for ev in after)

    dropped = list_task_events(db, task_id=t.id, event_type=EVENT_DELETED)
    assert {ev.event_metadata["instance_uid"] for ev in dropped} == uids
    assert {ev.event_metadata["action"] for ev in dropped} == {"recurring_instance_superseded"}
    assert all(ev.user_id == user.id for ev in dropped)


def test_copied_field_edit_is_not_a_rule_change(db, user):
    t = create_task(db, owner=user, name="Stretch", recurrence_type="daily", due_date=date(2024, 1, 1))

    update_recurrence(db, template=t, actor_user_id=user.id, name="Stretch more")
    assert t.name == "Stretch more"
    assert list_task_events(db, task_id=t.id, event_type=EVENT_RECURRENCE_CHANGED) == []


def test_unchanged_edit_is_a_noop(db, user):
    t = create_task(db, owner=user, name="Stretch", recurrence_type="daily", due_date=date(2024, 1, 1))

    update_recurrence(db, template=t, actor_user_id=user.id, recurrence_interval=1, name="Stretch")
    assert list_task_events(db, task_id=t.id, event_type=EVENT_RECURRENCE_CHANGED) == []


def test_invalid_edit_is_rolled_back(db, user):
    t = create_task(db, owner=user, name="Stretch", recurrence_type="weekly", due_date=date(2024, 1, 1))

    with pytest.raises(ValueError):
        update_recurrence(db, template=t, actor_user_id=user.id, recurrence_weekday=9)

    db.refresh(t)
    assert t.recurrence_weekday is None


def test_switching_to_completion_based_seeds_instance(db, user):
    today = local_date_for_user(user)
    t = create_task(db, owner=user, name="Descale kettle", recurrence_type="weekly", due_date=today)

    update_recurrence(db, template=t, actor_user_id=user.id, completion_based=True)

    instances = db.query(Task).filter(Task.recurring_parent_id == t.id).all()
    assert [i.due_date for i in instances] == [today]
