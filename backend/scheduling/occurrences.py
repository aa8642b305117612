"""
Occurrence model: lessons, repeat rules and single occurrences.

Why:
    The resolver and the service share these value types. They carry no I/O
    and no validation; normalisation of untrusted input happens in
    `scheduling.services.lessons` before a value of these types is built.

Ownership:
    A lesson owns its repeats and singles. Overrides and cancellations point
    at a repeat through `repeat_id` (a lookup key within the same lesson),
    never through an object reference.
"""
from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import date, time
from enum import Enum
from typing import List, Optional


class RepeatUnit(str, Enum):
    DAILY = "daily"
    WEEKLY = "weekly"
    MONTHLY = "monthly"
    YEARLY = "yearly"


class SingleKind(str, Enum):
    STANDALONE = "standalone"
    OVERRIDE = "override"
    CANCELLATION = "cancellation"


@dataclass(frozen=True)
class Repeat:
    id: str
    start: date
    unit: RepeatUnit
    step: int = 1
    end: Optional[date] = None


@dataclass(frozen=True)
class SingleOccurrence:
    date: date
    kind: SingleKind
    repeat_id: Optional[str] = None
    title: Optional[str] = None
    description: Optional[str] = None
    start_time: Optional[time] = None
    end_time: Optional[time] = None
    note: Optional[str] = None

    @property
    def is_cancellation(self) -> bool:
        return self.kind is SingleKind.CANCELLATION


@dataclass
class Lesson:
    id: str
    title: str
    owner_id: str
    description: Optional[str] = None
    start_time: Optional[time] = None
    end_time: Optional[time] = None
    repeats: List[Repeat] = field(default_factory=list)
    singles: List[SingleOccurrence] = field(default_factory=list)
    created_at: str = ""
    updated_at: str = ""

    def single_on(self, on: date) -> Optional[SingleOccurrence]:
        for single in self.singles:
            if single.date == on:
                return single
        return None

    def repeat_by_id(self, repeat_id: str) -> Optional[Repeat]:
        for repeat in self.repeats:
            if repeat.id == repeat_id:
                return repeat
        return None

    def copy(self) -> "Lesson":
        return replace(self, repeats=list(self.repeats), singles=list(self.singles))


@dataclass(frozen=True)
class OccurrenceView:
    """One visible lesson instance on one date, fields already merged."""

    lesson_id: str
    date: date
    title: str
    description: Optional[str]
    start_time: Optional[time]
    end_time: Optional[time]
    note: Optional[str]
    source: str
    permission: str = "read"


__all__ = [
    "RepeatUnit",
    "SingleKind",
    "Repeat",
    "SingleOccurrence",
    "Lesson",
    "OccurrenceView",
]
