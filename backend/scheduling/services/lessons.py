"""Lesson service layer (Clean Architecture boundary).

Why:
    Encapsulates lesson use cases (create/read/patch/delete, per-date
    resolution, permission grants) so that the web adapter stays thin and the
    merge and validation rules can be unit-tested without FastAPI or a DB.

Transactions:
    Every multi-step write goes through one repository call that runs in a
    single transaction. Patches pass a merge callback to
    `repo.update_lesson`; the callback sees the row as stored inside that
    transaction, so the gate's earlier read is never trusted for data.

Permissions:
    Entry points for an existing lesson take a `LessonGrant` issued by
    `scheduling.permissions.check`, not a lesson id.
"""

from __future__ import annotations

from dataclasses import dataclass, replace
from datetime import date, datetime, time, timezone
from typing import Any, Callable, Iterable, List, Mapping, Optional, Protocol, Sequence, Tuple
from uuid import uuid4

from scheduling.errors import LessonNotFoundError, LessonValidationError
from scheduling.occurrences import Lesson, OccurrenceView, Repeat, RepeatUnit, SingleKind, SingleOccurrence
from scheduling.permissions import LessonGrant, PermissionLevel, PermissionRepoProtocol
from scheduling.resolver import repeat_matches, resolve_all


class LessonsRepoProtocol(PermissionRepoProtocol, Protocol):
    def create_lesson(self, lesson: Lesson) -> Lesson:
        """Insert lesson, children and the owner's read-write grant atomically."""
        ...

    def get_lesson(self, lesson_id: str) -> Optional[Lesson]:
        ...

    def update_lesson(self, lesson_id: str, apply: Callable[[Lesson], Lesson]) -> Optional[Lesson]:
        """Load, transform with `apply`, and store in one transaction; None if missing."""
        ...

    def delete_lesson(self, lesson_id: str) -> bool:
        ...

    def list_lessons_for_account(self, account_id: str) -> List[Tuple[Lesson, PermissionLevel]]:
        """Lessons the account owns or holds an explicit grant for."""
        ...

    def set_permission(self, lesson_id: str, account_id: str, level: PermissionLevel) -> bool:
        ...

    def list_permissions(self, lesson_id: str) -> List[Tuple[str, PermissionLevel]]:
        ...


_UNSET = object()
UNSET = _UNSET

MAX_TITLE_LEN = 200
MAX_DESCRIPTION_LEN = 2000
MAX_NOTE_LEN = 2000


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _normalize_title(value: object, *, field: str = "title") -> str:
    if value is None or not isinstance(value, str):
        raise LessonValidationError("invalid_title", field=field)
    trimmed = value.strip()
    if not trimmed or len(trimmed) > MAX_TITLE_LEN:
        raise LessonValidationError("invalid_title", field=field)
    return trimmed


def _normalize_text(value: object, *, field: str, limit: int) -> Optional[str]:
    if value is None:
        return None
    detail = f"invalid_{field.rsplit('.', 1)[-1]}"
    if not isinstance(value, str):
        raise LessonValidationError(detail, field=field)
    trimmed = value.strip()
    if len(trimmed) > limit:
        raise LessonValidationError(detail, field=field)
    return trimmed or None


def _parse_date(value: object, *, field: str) -> date:
    if isinstance(value, datetime):
        raise LessonValidationError("invalid_date", field=field)
    if isinstance(value, date):
        return value
    if isinstance(value, str):
        try:
            return date.fromisoformat(value.strip())
        except ValueError as exc:
            raise LessonValidationError("invalid_date", field=field) from exc
    raise LessonValidationError("invalid_date", field=field)


def _parse_optional_date(value: object, *, field: str) -> Optional[date]:
    if value is None:
        return None
    return _parse_date(value, field=field)


def _parse_time(value: object, *, field: str) -> Optional[time]:
    if value is None:
        return None
    if isinstance(value, str):
        try:
            value = time.fromisoformat(value.strip())
        except ValueError as exc:
            raise LessonValidationError("invalid_time", field=field) from exc
    if isinstance(value, time):
        # Times of day are stored without a zone; an offset cannot be honoured.
        if value.tzinfo is not None:
            raise LessonValidationError("invalid_time", field=field)
        return value
    raise LessonValidationError("invalid_time", field=field)


def _check_time_range(start: Optional[time], end: Optional[time], *, field: str, on: Optional[date] = None) -> None:
    if start is not None and end is not None and not start < end:
        raise LessonValidationError("invalid_time_range", field=field, on_date=on)


def _get(item: object, key: str, default: Any = None) -> Any:
    if isinstance(item, Mapping):
        return item.get(key, default)
    return getattr(item, key, default)


def _normalize_repeat(item: object, index: int) -> Repeat:
    field = f"repeats[{index}]"
    if item is None:
        raise LessonValidationError("invalid_repeat", field=field)
    raw_unit = _get(item, "unit")
    try:
        unit = RepeatUnit(getattr(raw_unit, "value", raw_unit))
    except ValueError as exc:
        raise LessonValidationError("invalid_unit", field=f"{field}.unit") from exc
    raw_step = _get(item, "step", 1)
    if isinstance(raw_step, bool):
        raise LessonValidationError("invalid_step", field=f"{field}.step")
    try:
        step = int(raw_step)
    except (TypeError, ValueError) as exc:
        raise LessonValidationError("invalid_step", field=f"{field}.step") from exc
    if step < 1:
        raise LessonValidationError("invalid_step", field=f"{field}.step")
    start = _parse_date(_get(item, "start"), field=f"{field}.start")
    end = _parse_optional_date(_get(item, "end"), field=f"{field}.end")
    if end is not None and start > end:
        raise LessonValidationError("invalid_range", field=field, on_date=end)
    repeat_id = _get(item, "id")
    if repeat_id is not None and (not isinstance(repeat_id, str) or not repeat_id.strip()):
        raise LessonValidationError("invalid_repeat_id", field=f"{field}.id")
    return Repeat(
        id=repeat_id.strip() if repeat_id else str(uuid4()),
        start=start,
        end=end,
        unit=unit,
        step=step,
    )


def _normalize_repeats(value: object) -> List[Repeat]:
    if value is None:
        return []
    if isinstance(value, (str, bytes, Mapping)) or not isinstance(value, Sequence):
        raise LessonValidationError("invalid_repeats", field="repeats")
    repeats = [_normalize_repeat(item, i) for i, item in enumerate(value)]
    seen: set[str] = set()
    for i, repeat in enumerate(repeats):
        if repeat.id in seen:
            raise LessonValidationError("duplicate_repeat_id", field=f"repeats[{i}].id")
        seen.add(repeat.id)
    return repeats


def _normalize_single(item: object, index: int) -> SingleOccurrence:
    field = f"singles[{index}]"
    if item is None:
        raise LessonValidationError("invalid_single", field=field)
    on = _parse_date(_get(item, "date"), field=f"{field}.date")
    raw_kind = _get(item, "kind", SingleKind.STANDALONE.value)
    try:
        kind = SingleKind(getattr(raw_kind, "value", raw_kind))
    except ValueError as exc:
        raise LessonValidationError("invalid_kind", field=f"{field}.kind", on_date=on) from exc
    repeat_id = _get(item, "repeat_id")
    if kind is SingleKind.STANDALONE and repeat_id is not None:
        raise LessonValidationError("unexpected_repeat_id", field=f"{field}.repeat_id", on_date=on)
    if kind is not SingleKind.STANDALONE and (not isinstance(repeat_id, str) or not repeat_id.strip()):
        raise LessonValidationError("missing_repeat_id", field=f"{field}.repeat_id", on_date=on)
    overrides = {
        "title": _get(item, "title"),
        "description": _get(item, "description"),
        "start_time": _get(item, "start_time"),
        "end_time": _get(item, "end_time"),
        "note": _get(item, "note"),
    }
    if kind is SingleKind.CANCELLATION:
        if any(v is not None for v in overrides.values()):
            raise LessonValidationError("cancellation_with_fields", field=field, on_date=on)
        return SingleOccurrence(date=on, kind=kind, repeat_id=repeat_id.strip())
    title = overrides["title"]
    start_time = _parse_time(overrides["start_time"], field=f"{field}.start_time")
    end_time = _parse_time(overrides["end_time"], field=f"{field}.end_time")
    return SingleOccurrence(
        date=on,
        kind=kind,
        repeat_id=repeat_id.strip() if isinstance(repeat_id, str) else None,
        title=_normalize_title(title, field=f"{field}.title") if title is not None else None,
        description=_normalize_text(overrides["description"], field=f"{field}.description", limit=MAX_DESCRIPTION_LEN),
        start_time=start_time,
        end_time=end_time,
        note=_normalize_text(overrides["note"], field=f"{field}.note", limit=MAX_NOTE_LEN),
    )


def _normalize_singles(value: object) -> List[SingleOccurrence]:
    if value is None:
        return []
    if isinstance(value, (str, bytes, Mapping)) or not isinstance(value, Sequence):
        raise LessonValidationError("invalid_singles", field="singles")
    singles = [_normalize_single(item, i) for i, item in enumerate(value)]
    seen: set[date] = set()
    for i, single in enumerate(singles):
        if single.date in seen:
            raise LessonValidationError("duplicate_single_date", field=f"singles[{i}].date", on_date=single.date)
        seen.add(single.date)
    return sorted(singles, key=lambda s: s.date)


def _validate_lesson(lesson: Lesson) -> None:
    """Cross-field checks on a fully merged lesson."""
    _check_time_range(lesson.start_time, lesson.end_time, field="end_time")
    for i, single in enumerate(lesson.singles):
        start = single.start_time if single.start_time is not None else lesson.start_time
        end = single.end_time if single.end_time is not None else lesson.end_time
        if single.start_time is not None or single.end_time is not None:
            _check_time_range(start, end, field=f"singles[{i}].end_time", on=single.date)
        if single.kind is SingleKind.STANDALONE:
            continue
        repeat = lesson.repeat_by_id(single.repeat_id or "")
        if repeat is None:
            raise LessonValidationError("unknown_repeat", field=f"singles[{i}].repeat_id", on_date=single.date)
        if not repeat_matches(repeat, single.date):
            raise LessonValidationError("single_not_on_repeat", field=f"singles[{i}].date", on_date=single.date)


def _prune_orphaned_singles(singles: Iterable[SingleOccurrence], repeats: List[Repeat]) -> List[SingleOccurrence]:
    by_id = {r.id: r for r in repeats}
    kept: List[SingleOccurrence] = []
    for single in singles:
        if single.kind is SingleKind.STANDALONE:
            kept.append(single)
            continue
        repeat = by_id.get(single.repeat_id or "")
        if repeat is not None and repeat_matches(repeat, single.date):
            kept.append(single)
    return kept


@dataclass
class LessonsService:
    """Use cases for lessons (framework-independent)."""

    repo: LessonsRepoProtocol

    def create_lesson(
        self,
        owner_id: str,
        *,
        title: object,
        description: object = None,
        start_time: object = None,
        end_time: object = None,
        repeats: object = None,
        singles: object = None,
    ) -> Lesson:
        if not owner_id:
            raise LessonValidationError("invalid_owner", field="owner_id")
        now = _now_iso()
        lesson = Lesson(
            id=str(uuid4()),
            title=_normalize_title(title),
            owner_id=owner_id,
            description=_normalize_text(description, field="description", limit=MAX_DESCRIPTION_LEN),
            start_time=_parse_time(start_time, field="start_time"),
            end_time=_parse_time(end_time, field="end_time"),
            repeats=_normalize_repeats(repeats),
            singles=_normalize_singles(singles),
            created_at=now,
            updated_at=now,
        )
        _validate_lesson(lesson)
        return self.repo.create_lesson(lesson)

    def get_lesson(self, grant: LessonGrant) -> Lesson:
        grant.require(PermissionLevel.READ)
        lesson = self.repo.get_lesson(grant.lesson_id)
        if lesson is None:
            raise LessonNotFoundError(grant.lesson_id)
        return lesson

    def update_lesson(
        self,
        grant: LessonGrant,
        *,
        title: object = _UNSET,
        description: object = _UNSET,
        start_time: object = _UNSET,
        end_time: object = _UNSET,
        repeats: object = _UNSET,
        singles: object = _UNSET,
    ) -> Lesson:
        """Apply a partial update; omitted fields stay, `None` clears optional ones.

        `repeats` and `singles` replace the stored collections wholesale; an
        explicit `None` for either leaves it unchanged, `[]` empties it.
        When only `repeats` is replaced, overrides and cancellations that no
        longer belong to a surviving rule are dropped in the same transaction.
        """
        grant.require(PermissionLevel.READ_WRITE)
        changes: dict[str, Any] = {}
        if title is not _UNSET:
            changes["title"] = _normalize_title(title)
        if description is not _UNSET:
            changes["description"] = _normalize_text(description, field="description", limit=MAX_DESCRIPTION_LEN)
        if start_time is not _UNSET:
            changes["start_time"] = _parse_time(start_time, field="start_time")
        if end_time is not _UNSET:
            changes["end_time"] = _parse_time(end_time, field="end_time")
        if repeats is not _UNSET and repeats is not None:
            changes["repeats"] = _normalize_repeats(repeats)
        if singles is not _UNSET and singles is not None:
            changes["singles"] = _normalize_singles(singles)
        if not changes:
            raise LessonValidationError("empty_payload")

        def apply(current: Lesson) -> Lesson:
            merged = replace(current, **changes, updated_at=_now_iso())
            if "repeats" in changes and "singles" not in changes:
                merged.singles = _prune_orphaned_singles(current.singles, merged.repeats)
            _validate_lesson(merged)
            return merged

        updated = self.repo.update_lesson(grant.lesson_id, apply)
        if updated is None:
            raise LessonNotFoundError(grant.lesson_id)
        return updated

    def delete_lesson(self, grant: LessonGrant) -> None:
        grant.require(PermissionLevel.READ_WRITE)
        if not self.repo.delete_lesson(grant.lesson_id):
            raise LessonNotFoundError(grant.lesson_id)

    def lessons_for_date(self, account_id: str, on: date) -> List[OccurrenceView]:
        """Resolve every lesson the account may read on `on`, ordered by lesson id."""
        readable = [
            (lesson, level.wire)
            for lesson, level in self.repo.list_lessons_for_account(account_id)
            if level >= PermissionLevel.READ
        ]
        return resolve_all(readable, on)

    def set_permission(self, grant: LessonGrant, account_id: object, level: object) -> PermissionLevel:
        grant.require(PermissionLevel.READ_WRITE)
        if not isinstance(account_id, str) or not account_id.strip():
            raise LessonValidationError("invalid_account_id", field="account_id")
        try:
            parsed = level if isinstance(level, PermissionLevel) else PermissionLevel.from_wire(level)
        except ValueError as exc:
            raise LessonValidationError("invalid_permission_level", field="level") from exc
        account_id = account_id.strip()
        if self.repo.lesson_owner(grant.lesson_id) == account_id:
            raise LessonValidationError("owner_permission_immutable", field="account_id")
        if not self.repo.set_permission(grant.lesson_id, account_id, parsed):
            raise LessonNotFoundError(grant.lesson_id)
        return parsed

    def list_permissions(self, grant: LessonGrant) -> List[Tuple[str, PermissionLevel]]:
        grant.require(PermissionLevel.READ_WRITE)
        if self.repo.lesson_owner(grant.lesson_id) is None:
            raise LessonNotFoundError(grant.lesson_id)
        return self.repo.list_permissions(grant.lesson_id)


__all__ = ["LessonsService", "LessonsRepoProtocol", "UNSET"]
