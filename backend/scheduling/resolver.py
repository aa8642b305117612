"""
Occurrence resolver: does a lesson take place on a given date?

Algorithm (per lesson and date):
    1. A single occurrence on that date decides alone: a cancellation hides
       the lesson, an override or standalone entry produces a view with its
       own fields laid over the lesson defaults.
    2. Otherwise any matching repeat rule produces a view from the lesson
       defaults. Several matching rules still yield one view; which rule
       matched is not reported.
    3. No single and no matching rule: the lesson does not occur.

Calendar arithmetic:
    Daily/weekly rules count days from `start`. Monthly/yearly rules count
    calendar months from `start`; the day of month is clamped to the length
    of the target month (Jan 31 + 1 month -> Feb 28/29) and every step is
    measured from `start`, so Jan 31 + 2 months is Mar 31 again.

Pure functions only; no I/O.
"""
from __future__ import annotations

import calendar
from datetime import date
from typing import Iterable, List, Optional

from scheduling.occurrences import Lesson, OccurrenceView, Repeat, RepeatUnit, SingleKind, SingleOccurrence


def add_months(start: date, months: int) -> date:
    """Return `start` shifted by `months`, clamping the day to the target month."""
    index = start.month - 1 + months
    year = start.year + index // 12
    month = index % 12 + 1
    last_day = calendar.monthrange(year, month)[1]
    return date(year, month, min(start.day, last_day))


def _months_between(start: date, on: date) -> int:
    return (on.year - start.year) * 12 + (on.month - start.month)


def repeat_matches(repeat: Repeat, on: date) -> bool:
    """True when `repeat` generates an occurrence on `on`."""
    if on < repeat.start:
        return False
    if repeat.end is not None and on > repeat.end:
        return False
    if repeat.unit in (RepeatUnit.DAILY, RepeatUnit.WEEKLY):
        period = repeat.step * (7 if repeat.unit is RepeatUnit.WEEKLY else 1)
        return (on - repeat.start).days % period == 0
    months_per_step = repeat.step * (12 if repeat.unit is RepeatUnit.YEARLY else 1)
    months = _months_between(repeat.start, on)
    if months % months_per_step:
        return False
    return add_months(repeat.start, months) == on


def _view_from_single(lesson: Lesson, single: SingleOccurrence, permission: str) -> OccurrenceView:
    return OccurrenceView(
        lesson_id=lesson.id,
        date=single.date,
        title=single.title if single.title is not None else lesson.title,
        description=single.description if single.description is not None else lesson.description,
        start_time=single.start_time if single.start_time is not None else lesson.start_time,
        end_time=single.end_time if single.end_time is not None else lesson.end_time,
        note=single.note,
        source=single.kind.value,
        permission=permission,
    )


def _view_from_lesson(lesson: Lesson, on: date, permission: str) -> OccurrenceView:
    return OccurrenceView(
        lesson_id=lesson.id,
        date=on,
        title=lesson.title,
        description=lesson.description,
        start_time=lesson.start_time,
        end_time=lesson.end_time,
        note=None,
        source="repeat",
        permission=permission,
    )


def occurs_on(lesson: Lesson, on: date, *, permission: str = "read") -> Optional[OccurrenceView]:
    """Resolve `lesson` on `on`; None when it does not take place."""
    single = lesson.single_on(on)
    if single is not None:
        if single.kind is SingleKind.CANCELLATION:
            return None
        return _view_from_single(lesson, single, permission)
    if any(repeat_matches(repeat, on) for repeat in lesson.repeats):
        return _view_from_lesson(lesson, on, permission)
    return None


def resolve_all(lessons: Iterable[tuple[Lesson, str]], on: date) -> List[OccurrenceView]:
    """Resolve (lesson, permission) pairs on one date, ordered by lesson id."""
    views: List[OccurrenceView] = []
    for lesson, permission in sorted(lessons, key=lambda pair: pair[0].id):
        view = occurs_on(lesson, on, permission=permission)
        if view is not None:
            views.append(view)
    return views


__all__ = ["add_months", "repeat_matches", "occurs_on", "resolve_all"]
