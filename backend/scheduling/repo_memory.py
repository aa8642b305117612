"""
In-memory lesson repository for dev/tests.

Why:
    API and service tests should run without Postgres. The store mirrors the
    relational layout of `repo_db` (lessons, repeats, singles, permissions
    keyed by lesson id) and keeps the same all-or-nothing guarantees: every
    write runs inside `_transaction()`, which snapshots the tables and
    restores them when anything raises.

Testing hook:
    Set `fail_at` to a step name (`after_lesson_insert`, `after_children_delete`,
    `after_children_write`, `after_lesson_delete`) to abort a write midway and observe the rollback.
"""
from __future__ import annotations

import copy
import threading
from contextlib import contextmanager
from typing import Callable, Dict, Iterator, List, Optional, Tuple

from scheduling.errors import LessonValidationError, StorageError
from scheduling.occurrences import Lesson, Repeat, SingleOccurrence
from scheduling.permissions import PermissionLevel


class InMemoryLessonsRepo:
    def __init__(self) -> None:
        self.lessons: Dict[str, Lesson] = {}
        self.repeats: Dict[str, List[Repeat]] = {}
        self.singles: Dict[str, List[SingleOccurrence]] = {}
        # permissions[lesson_id] = { account_id: level }
        self.permissions: Dict[str, Dict[str, PermissionLevel]] = {}
        self.fail_at: Optional[str] = None
        self._lock = threading.RLock()

    # --- Transactions ----------------------------------------------------------
    @contextmanager
    def _transaction(self) -> Iterator[None]:
        with self._lock:
            snapshot = copy.deepcopy((self.lessons, self.repeats, self.singles, self.permissions))
            try:
                yield
            except BaseException:
                self.lessons, self.repeats, self.singles, self.permissions = snapshot
                raise

    def _step(self, name: str) -> None:
        if self.fail_at == name:
            raise StorageError(f"injected_failure:{name}")

    def _assemble(self, lesson_id: str) -> Optional[Lesson]:
        row = self.lessons.get(lesson_id)
        if row is None:
            return None
        lesson = row.copy()
        lesson.repeats = list(self.repeats.get(lesson_id, []))
        lesson.singles = sorted(self.singles.get(lesson_id, []), key=lambda s: s.date)
        return lesson

    def _write_children(self, lesson: Lesson) -> None:
        seen: set = set()
        for single in lesson.singles:
            if single.date in seen:
                raise LessonValidationError("duplicate_single_date", field="singles", on_date=single.date)
            seen.add(single.date)
        self.repeats[lesson.id] = list(lesson.repeats)
        self.singles[lesson.id] = list(lesson.singles)

    # --- Permission lookups ----------------------------------------------------
    def lesson_owner(self, lesson_id: str) -> Optional[str]:
        row = self.lessons.get(lesson_id)
        return row.owner_id if row else None

    def explicit_permission(self, lesson_id: str, account_id: str) -> Optional[PermissionLevel]:
        return (self.permissions.get(lesson_id) or {}).get(account_id)

    # --- Lessons ---------------------------------------------------------------
    def create_lesson(self, lesson: Lesson) -> Lesson:
        with self._transaction():
            row = lesson.copy()
            row.repeats, row.singles = [], []
            self.lessons[lesson.id] = row
            self._step("after_lesson_insert")
            self._write_children(lesson)
            self._step("after_children_write")
            self.permissions[lesson.id] = {lesson.owner_id: PermissionLevel.READ_WRITE}
            return self._assemble(lesson.id)  # type: ignore[return-value]

    def get_lesson(self, lesson_id: str) -> Optional[Lesson]:
        with self._lock:
            return self._assemble(lesson_id)

    def update_lesson(self, lesson_id: str, apply: Callable[[Lesson], Lesson]) -> Optional[Lesson]:
        with self._transaction():
            current = self._assemble(lesson_id)
            if current is None:
                return None
            updated = apply(current)
            row = updated.copy()
            row.repeats, row.singles = [], []
            self.lessons[lesson_id] = row
            self.repeats.pop(lesson_id, None)
            self.singles.pop(lesson_id, None)
            self._step("after_children_delete")
            self._write_children(updated)
            self._step("after_children_write")
            return self._assemble(lesson_id)

    def delete_lesson(self, lesson_id: str) -> bool:
        with self._transaction():
            if lesson_id not in self.lessons:
                return False
            self.lessons.pop(lesson_id, None)
            self._step("after_lesson_delete")
            self.repeats.pop(lesson_id, None)
            self.singles.pop(lesson_id, None)
            self.permissions.pop(lesson_id, None)
            return True

    def list_lessons_for_account(self, account_id: str) -> List[Tuple[Lesson, PermissionLevel]]:
        with self._lock:
            items: List[Tuple[Lesson, PermissionLevel]] = []
            for lesson_id, row in self.lessons.items():
                if row.owner_id == account_id:
                    level = PermissionLevel.READ_WRITE
                else:
                    level = (self.permissions.get(lesson_id) or {}).get(account_id, PermissionLevel.NONE)
                if level > PermissionLevel.NONE:
                    items.append((self._assemble(lesson_id), level))  # type: ignore[arg-type]
            items.sort(key=lambda pair: pair[0].id)
            return items

    # --- Permissions -----------------------------------------------------------
    def set_permission(self, lesson_id: str, account_id: str, level: PermissionLevel) -> bool:
        with self._transaction():
            if lesson_id not in self.lessons:
                return False
            bucket = self.permissions.setdefault(lesson_id, {})
            if level == PermissionLevel.NONE:
                bucket.pop(account_id, None)
            else:
                bucket[account_id] = level
            return True

    def list_permissions(self, lesson_id: str) -> List[Tuple[str, PermissionLevel]]:
        with self._lock:
            bucket = self.permissions.get(lesson_id) or {}
            return sorted(bucket.items())


__all__ = ["InMemoryLessonsRepo"]
