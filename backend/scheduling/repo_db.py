"""
Postgres-backed repository for lessons, recurrence rules and grants.

Design:
- Minimal psycopg3 usage; each call opens a short-lived connection and runs
  exactly one `conn.transaction()`. Lesson rows, repeats, singles and the
  owner's grant are written in that one transaction, so readers never see a
  half-created or half-patched lesson.
- `update_lesson` locks the lesson row (`for update`) before handing the
  stored state to the service's merge callback; concurrent patches on the
  same lesson serialize on that lock.
- Returns domain dataclasses (`scheduling.occurrences`), not ORM objects.

Errors:
- Unique violations on `lesson_singles (lesson_id, date)` become
  `LessonValidationError("duplicate_single_date")` naming the date.
- Any other psycopg error becomes `StorageError` (details only in logs).
"""
from __future__ import annotations

import logging
import os
import re
from contextlib import contextmanager
from datetime import date
from typing import Any, Callable, Dict, Iterator, List, Optional, Sequence, Tuple
from uuid import UUID

import psycopg
from psycopg import errors as pg_errors

from scheduling.errors import LessonValidationError, StorageError
from scheduling.occurrences import Lesson, Repeat, RepeatUnit, SingleKind, SingleOccurrence
from scheduling.permissions import PermissionLevel

logger = logging.getLogger("lessonplan.scheduling.repo_db")


def _dsn() -> str:
    """Resolve the DSN for lesson storage from the environment."""
    candidates = [
        os.getenv("LESSONS_DATABASE_URL"),
        os.getenv("DATABASE_URL"),
    ]
    for dsn in candidates:
        if dsn:
            return dsn
    raise RuntimeError("Database DSN unavailable for DBLessonsRepo")


def _is_uuid(value: str) -> bool:
    try:
        UUID(str(value))
    except (ValueError, TypeError):
        return False
    return True


_TS_SQL = "to_char({col} at time zone 'utc', 'YYYY-MM-DD\"T\"HH24:MI:SS\"+00:00\"')"

_LESSON_COLUMNS_SQL = f"""
    id::text,
    title,
    description,
    start_time,
    end_time,
    owner_id,
    {_TS_SQL.format(col="created_at")},
    {_TS_SQL.format(col="updated_at")}
"""


def _lesson_row_to_lesson(row: Tuple) -> Lesson:
    return Lesson(
        id=row[0],
        title=row[1],
        description=row[2],
        start_time=row[3],
        end_time=row[4],
        owner_id=row[5],
        created_at=row[6],
        updated_at=row[7],
    )


def _repeat_row(row: Tuple) -> Tuple[str, Repeat]:
    return row[0], Repeat(id=row[1], start=row[2], end=row[3], unit=RepeatUnit(row[4]), step=int(row[5]))


def _single_row(row: Tuple) -> Tuple[str, SingleOccurrence]:
    return row[0], SingleOccurrence(
        date=row[1],
        kind=SingleKind(row[2]),
        repeat_id=row[3],
        title=row[4],
        description=row[5],
        start_time=row[6],
        end_time=row[7],
        note=row[8],
    )


_DUPLICATE_DATE_RE = re.compile(r"\(lesson_id, date\)=\([^,]+, (?P<d>\d{4}-\d{2}-\d{2})\)")


def _duplicate_single_error(exc: Exception) -> LessonValidationError:
    detail = getattr(getattr(exc, "diag", None), "message_detail", None) or ""
    match = _DUPLICATE_DATE_RE.search(detail)
    on = date.fromisoformat(match.group("d")) if match else None
    return LessonValidationError("duplicate_single_date", field="singles", on_date=on)


class DBLessonsRepo:
    def __init__(self, dsn: Optional[str] = None) -> None:
        """Initialize the repository; connections are opened per call, not eagerly."""
        self._dsn = dsn or _dsn()

    @contextmanager
    def _tx(self, op: str) -> Iterator[Any]:
        """Yield a cursor inside one transaction and map driver errors."""
        try:
            with psycopg.connect(self._dsn) as conn:
                with conn.transaction():
                    with conn.cursor() as cur:
                        yield cur
        except pg_errors.UniqueViolation as exc:
            if getattr(getattr(exc, "diag", None), "constraint_name", None) == "lesson_singles_lesson_date_key":
                raise _duplicate_single_error(exc) from exc
            logger.warning("lessons.repo.unique_violation op=%s", op)
            raise StorageError("storage_failed") from exc
        except psycopg.Error as exc:
            logger.warning("lessons.repo.failed op=%s reason=%s", op, exc.__class__.__name__)
            raise StorageError("storage_failed") from exc

    # --- Loading ---------------------------------------------------------------
    def _load_children(self, cur, lesson_ids: Sequence[str]) -> Tuple[Dict[str, List[Repeat]], Dict[str, List[SingleOccurrence]]]:
        repeats: Dict[str, List[Repeat]] = {lid: [] for lid in lesson_ids}
        singles: Dict[str, List[SingleOccurrence]] = {lid: [] for lid in lesson_ids}
        if not lesson_ids:
            return repeats, singles
        cur.execute(
            """
            select lesson_id::text, id, start_date, end_date, unit, step
            from public.lesson_repeats
            where lesson_id = any(%s::uuid[])
            order by lesson_id, position
            """,
            (list(lesson_ids),),
        )
        for row in cur.fetchall() or []:
            lid, repeat = _repeat_row(row)
            repeats[lid].append(repeat)
        cur.execute(
            """
            select lesson_id::text, date, kind, repeat_id, title, description, start_time, end_time, note
            from public.lesson_singles
            where lesson_id = any(%s::uuid[])
            order by lesson_id, date
            """,
            (list(lesson_ids),),
        )
        for row in cur.fetchall() or []:
            lid, single = _single_row(row)
            singles[lid].append(single)
        return repeats, singles

    def _load_lesson(self, cur, lesson_id: str, *, for_update: bool = False) -> Optional[Lesson]:
        lock = " for update" if for_update else ""
        cur.execute(f"select {_LESSON_COLUMNS_SQL} from public.lessons where id = %s{lock}", (lesson_id,))
        row = cur.fetchone()
        if not row:
            return None
        lesson = _lesson_row_to_lesson(row)
        repeats, singles = self._load_children(cur, [lesson.id])
        lesson.repeats = repeats[lesson.id]
        lesson.singles = singles[lesson.id]
        return lesson

    def _write_children(self, cur, lesson: Lesson) -> None:
        for position, repeat in enumerate(lesson.repeats, start=1):
            cur.execute(
                """
                insert into public.lesson_repeats (lesson_id, id, position, start_date, end_date, unit, step)
                values (%s, %s, %s, %s, %s, %s, %s)
                """,
                (lesson.id, repeat.id, position, repeat.start, repeat.end, repeat.unit.value, repeat.step),
            )
        for single in lesson.singles:
            cur.execute(
                """
                insert into public.lesson_singles
                  (lesson_id, date, kind, repeat_id, title, description, start_time, end_time, note)
                values (%s, %s, %s, %s, %s, %s, %s, %s, %s)
                """,
                (
                    lesson.id,
                    single.date,
                    single.kind.value,
                    single.repeat_id,
                    single.title,
                    single.description,
                    single.start_time,
                    single.end_time,
                    single.note,
                ),
            )

    # --- Permission lookups ----------------------------------------------------
    def lesson_owner(self, lesson_id: str) -> Optional[str]:
        if not _is_uuid(lesson_id):
            return None
        with self._tx("lesson_owner") as cur:
            cur.execute("select owner_id from public.lessons where id = %s", (lesson_id,))
            row = cur.fetchone()
        return row[0] if row else None

    def explicit_permission(self, lesson_id: str, account_id: str) -> Optional[PermissionLevel]:
        if not _is_uuid(lesson_id):
            return None
        with self._tx("explicit_permission") as cur:
            cur.execute(
                "select level from public.lesson_permissions where lesson_id = %s and account_id = %s",
                (lesson_id, account_id),
            )
            row = cur.fetchone()
        return PermissionLevel.from_wire(row[0]) if row else None

    # --- Lessons ---------------------------------------------------------------
    def create_lesson(self, lesson: Lesson) -> Lesson:
        with self._tx("create_lesson") as cur:
            cur.execute(
                """
                insert into public.lessons (id, title, description, start_time, end_time, owner_id)
                values (%s, %s, %s, %s, %s, %s)
                """,
                (lesson.id, lesson.title, lesson.description, lesson.start_time, lesson.end_time, lesson.owner_id),
            )
            self._write_children(cur, lesson)
            cur.execute(
                "insert into public.lesson_permissions (lesson_id, account_id, level) values (%s, %s, %s)",
                (lesson.id, lesson.owner_id, PermissionLevel.READ_WRITE.wire),
            )
            created = self._load_lesson(cur, lesson.id)
        return created  # type: ignore[return-value]

    def get_lesson(self, lesson_id: str) -> Optional[Lesson]:
        if not _is_uuid(lesson_id):
            return None
        with self._tx("get_lesson") as cur:
            return self._load_lesson(cur, lesson_id)

    def update_lesson(self, lesson_id: str, apply: Callable[[Lesson], Lesson]) -> Optional[Lesson]:
        if not _is_uuid(lesson_id):
            return None
        with self._tx("update_lesson") as cur:
            current = self._load_lesson(cur, lesson_id, for_update=True)
            if current is None:
                return None
            updated = apply(current)
            cur.execute(
                """
                update public.lessons
                   set title = %s, description = %s, start_time = %s, end_time = %s, updated_at = now()
                 where id = %s
                """,
                (updated.title, updated.description, updated.start_time, updated.end_time, lesson_id),
            )
            cur.execute("delete from public.lesson_singles where lesson_id = %s", (lesson_id,))
            cur.execute("delete from public.lesson_repeats where lesson_id = %s", (lesson_id,))
            self._write_children(cur, updated)
            return self._load_lesson(cur, lesson_id)

    def delete_lesson(self, lesson_id: str) -> bool:
        if not _is_uuid(lesson_id):
            return False
        with self._tx("delete_lesson") as cur:
            # Children and grants go with the row (on delete cascade).
            cur.execute("delete from public.lessons where id = %s", (lesson_id,))
            return (cur.rowcount or 0) > 0

    def list_lessons_for_account(self, account_id: str) -> List[Tuple[Lesson, PermissionLevel]]:
        with self._tx("list_lessons_for_account") as cur:
            cur.execute(
                f"""
                select {_LESSON_COLUMNS_SQL},
                       case when l.owner_id = %s then 'read-write' else p.level end
                from public.lessons l
                left join public.lesson_permissions p
                  on p.lesson_id = l.id and p.account_id = %s
                where l.owner_id = %s or p.account_id is not null
                order by l.id
                """,
                (account_id, account_id, account_id),
            )
            rows = cur.fetchall() or []
            lessons = [(_lesson_row_to_lesson(r[:8]), PermissionLevel.from_wire(r[8])) for r in rows]
            repeats, singles = self._load_children(cur, [lesson.id for lesson, _ in lessons])
        for lesson, _ in lessons:
            lesson.repeats = repeats[lesson.id]
            lesson.singles = singles[lesson.id]
        return lessons

    # --- Permissions -----------------------------------------------------------
    def set_permission(self, lesson_id: str, account_id: str, level: PermissionLevel) -> bool:
        if not _is_uuid(lesson_id):
            return False
        with self._tx("set_permission") as cur:
            cur.execute("select 1 from public.lessons where id = %s for update", (lesson_id,))
            if not cur.fetchone():
                return False
            if level == PermissionLevel.NONE:
                cur.execute(
                    "delete from public.lesson_permissions where lesson_id = %s and account_id = %s",
                    (lesson_id, account_id),
                )
            else:
                cur.execute(
                    """
                    insert into public.lesson_permissions (lesson_id, account_id, level)
                    values (%s, %s, %s)
                    on conflict (lesson_id, account_id) do update set level = excluded.level
                    """,
                    (lesson_id, account_id, level.wire),
                )
            return True

    def list_permissions(self, lesson_id: str) -> List[Tuple[str, PermissionLevel]]:
        if not _is_uuid(lesson_id):
            return []
        with self._tx("list_permissions") as cur:
            cur.execute(
                "select account_id, level from public.lesson_permissions where lesson_id = %s order by account_id",
                (lesson_id,),
            )
            rows = cur.fetchall() or []
        return [(r[0], PermissionLevel.from_wire(r[1])) for r in rows]


__all__ = ["DBLessonsRepo"]
