"""
Domain errors for lesson scheduling.

Why:
    Keep the error vocabulary small and framework-free so the web adapter can
    map each class to exactly one HTTP shape. Detail strings are stable codes
    (e.g. `duplicate_single_date`) that tests and clients rely on.
"""
from __future__ import annotations

from datetime import date
from typing import Optional


class LessonValidationError(ValueError):
    """Rejected input (bad recurrence rule, conflicting single occurrence, ...)."""

    def __init__(self, detail: str, *, field: Optional[str] = None, on_date: Optional[date] = None) -> None:
        super().__init__(detail)
        self.detail = detail
        self.field = field
        self.on_date = on_date

    def as_payload(self) -> dict:
        payload: dict = {"error": "bad_request", "detail": self.detail}
        if self.field:
            payload["field"] = self.field
        if self.on_date is not None:
            payload["date"] = self.on_date.isoformat()
        return payload


class LessonNotFoundError(LookupError):
    """Lesson vanished after the gate admitted the caller."""

    def __init__(self, lesson_id: str) -> None:
        super().__init__("lesson_not_found")
        self.lesson_id = lesson_id


class StorageError(RuntimeError):
    """Persistence failed; the original exception is chained, never exposed."""


class AuthzError(Exception):
    """Base class for permission-check failures (see `scheduling.permissions`)."""

    def __init__(self, lesson_id: str, account_id: str) -> None:
        super().__init__(self.code)
        self.lesson_id = lesson_id
        self.account_id = account_id

    code = "forbidden"


class LessonNotFound(AuthzError):
    code = "not_found"


class InsufficientPermission(AuthzError):
    code = "insufficient"


__all__ = [
    "LessonValidationError",
    "LessonNotFoundError",
    "StorageError",
    "AuthzError",
    "LessonNotFound",
    "InsufficientPermission",
]
