from __future__ import annotations

import calendar
from dataclasses import dataclass
from datetime import date, timedelta
from itertools import islice
from typing import Iterator, List, Optional

from .models import RecurrenceType, Task, TaskShapeError, check_task_shape


# Preview never walks more than this many schedule steps.
MAX_PREVIEW_ITERATIONS = 100

# Completion-anchored nth-weekday rules give up after this many empty months.
_MAX_EMPTY_STRIDES = 60

_MONTHLY_TYPES = {
    RecurrenceType.monthly,
    RecurrenceType.monthly_weekday,
    RecurrenceType.monthly_last_day,
}


class RecurrenceError(ValueError):
    pass


def sunday_based_weekday(d: date) -> int:
    """0 = Sunday ... 6 = Saturday, the convention stored on templates."""
    return (d.weekday() + 1) % 7


def _add_months(year: int, month: int, n: int) -> tuple[int, int]:
    total = (year * 12 + (month - 1)) + n
    return total // 12, total % 12 + 1


def _last_day(year: int, month: int) -> int:
    return calendar.monthrange(year, month)[1]


def nth_weekday_of_month(year: int, month: int, weekday: int, n: int) -> Optional[date]:
    """The n-th `weekday` (Sunday-based) of the month, or None if it does not exist."""
    first = date(year, month, 1)
    offset = (weekday - sunday_based_weekday(first)) % 7
    day = 1 + offset + (n - 1) * 7
    if day > _last_day(year, month):
        return None
    return date(year, month, day)


@dataclass(frozen=True)
class RecurrenceRule:
    rtype: RecurrenceType
    interval: int
    anchor: date
    weekday: Optional[int] = None
    month_day: Optional[int] = None
    week_of_month: Optional[int] = None
    end_date: Optional[date] = None
    completion_based: bool = False

    @classmethod
    def from_task(cls, task: Task) -> "RecurrenceRule":
        try:
            rtype = RecurrenceType(task.recurrence_type)
        except ValueError as e:
            raise RecurrenceError(f"Unsupported recurrence type: {task.recurrence_type}") from e
        if rtype == RecurrenceType.none or task.recurring_parent_id is not None:
            raise RecurrenceError(f"Task {task.id} is not a recurrence template")

        try:
            check_task_shape(task)
        except TaskShapeError as e:
            raise RecurrenceError(str(e)) from e

        anchor = task.due_date
        if anchor is None and task.created_at is not None:
            anchor = task.created_at.date()
        if anchor is None:
            raise RecurrenceError(f"Template {task.id} has no anchor date")

        return cls(
            rtype=rtype,
            interval=int(task.recurrence_interval or 1),
            anchor=anchor,
            weekday=task.recurrence_weekday,
            month_day=task.recurrence_month_day,
            week_of_month=task.recurrence_week_of_month,
            end_date=task.recurrence_end_date,
            completion_based=bool(task.completion_based),
        )

    @property
    def is_nth_weekday(self) -> bool:
        if self.rtype == RecurrenceType.monthly_weekday:
            return True
        return self.rtype == RecurrenceType.monthly and self.week_of_month is not None

    def _day_in_month(self, year: int, month: int, default_day: int) -> Optional[date]:
        if self.rtype == RecurrenceType.monthly_last_day:
            return date(year, month, _last_day(year, month))
        if self.is_nth_weekday:
            return nth_weekday_of_month(year, month, int(self.weekday), int(self.week_of_month))
        day = self.month_day or default_day
        return date(year, month, min(day, _last_day(year, month)))

    def _schedule(self, after: Optional[date], until: date) -> Iterator[date]:
        """Fixed-schedule dates in (after, until], ascending."""
        if self.rtype in (RecurrenceType.daily, RecurrenceType.custom, RecurrenceType.weekly):
            if self.rtype == RecurrenceType.weekly:
                target = self.weekday if self.weekday is not None else sunday_based_weekday(self.anchor)
                first = self.anchor + timedelta(days=(target - sunday_based_weekday(self.anchor)) % 7)
                step = 7 * self.interval
            else:
                first = self.anchor
                step = self.interval

            d = first
            if after is not None and after >= first:
                d = first + timedelta(days=((after - first).days // step + 1) * step)
            while d <= until:
                yield d
                d = d + timedelta(days=step)
            return

        if self.rtype in _MONTHLY_TYPES:
            k = 0
            if after is not None and after > self.anchor:
                months_between = (after.year - self.anchor.year) * 12 + (after.month - self.anchor.month)
                k = max(0, months_between // self.interval)
            while True:
                year, month = _add_months(self.anchor.year, self.anchor.month, k * self.interval)
                if date(year, month, 1) > until:
                    return
                k += 1
                cand = self._day_in_month(year, month, self.anchor.day)
                # Missing ordinals (e.g. a 5th Tuesday) skip the month.
                if cand is None or cand < self.anchor or cand > until:
                    continue
                if after is not None and cand <= after:
                    continue
                yield cand

        raise RecurrenceError(f"Unsupported recurrence type: {self.rtype}")

    def occurrences(self, after: Optional[date], horizon: date) -> List[date]:
        until = horizon
        if self.end_date is not None:
            if after is not None and after >= self.end_date:
                return []
            until = min(until, self.end_date)
        return list(self._schedule(after, until))

    def next_from(self, resolved_on: date) -> Optional[date]:
        """Single next date for a completion-anchored rule resolved on `resolved_on`."""
        if self.end_date is not None and resolved_on >= self.end_date:
            return None

        if self.rtype in (RecurrenceType.daily, RecurrenceType.custom):
            nxt = resolved_on + timedelta(days=self.interval)
        elif self.rtype == RecurrenceType.weekly:
            nxt = resolved_on + timedelta(days=7 * self.interval)
        elif self.rtype in _MONTHLY_TYPES:
            nxt = None
            for stride in range(1, _MAX_EMPTY_STRIDES + 1):
                year, month = _add_months(resolved_on.year, resolved_on.month, stride * self.interval)
                nxt = self._day_in_month(year, month, resolved_on.day)
                if nxt is not None:
                    break
            if nxt is None:
                raise RecurrenceError("Monthly rule never produces a date")
        else:
            raise RecurrenceError(f"Unsupported recurrence type: {self.rtype}")

        if self.end_date is not None and nxt > self.end_date:
            return None
        return nxt


def next_occurrences(template: Task, after_date: Optional[date], horizon_date: date) -> List[date]:
    """Dates in (after_date, horizon_date] for a fixed-schedule template.

    `after_date=None` makes the anchor itself eligible. Nothing past
    `recurrence_end_date` is ever returned.
    """
    return RecurrenceRule.from_task(template).occurrences(after_date, horizon_date)


def next_occurrence_from(template: Task, anchor_date: date) -> Optional[date]:
    return RecurrenceRule.from_task(template).next_from(anchor_date)


def is_exhausted(template: Task, as_of: Optional[date]) -> bool:
    end = template.recurrence_end_date
    return end is not None and as_of is not None and as_of >= end


def preview_occurrences(template: Task, count: int = 7, start: Optional[date] = None) -> List[date]:
    """Upcoming occurrence dates for display. Nothing is materialized."""
    rule = RecurrenceRule.from_task(template)
    count = max(0, min(int(count), MAX_PREVIEW_ITERATIONS))
    if count == 0:
        return []

    if rule.completion_based:
        out: List[date] = []
        cur = start or rule.anchor
        out.append(cur)
        while len(out) < count:
            nxt = rule.next_from(cur)
            if nxt is None:
                break
            out.append(nxt)
            cur = nxt
        if rule.end_date is not None:
            out = [d for d in out if d <= rule.end_date]
        return out

    after = start - timedelta(days=1) if start is not None else None
    until = rule.end_date or date(date.max.year - 1, 12, 31)
    return list(islice(rule._schedule(after, until), count))
