"""
Lesson API routes.

Why:
    Expose lesson CRUD, per-date resolution and per-lesson grants over JSON.
    The adapter stays thin: payloads are parsed by pydantic, every rule lives
    in `scheduling.services.lessons`, and every route that names a lesson id
    passes the permission gate before its handler body runs.

Gate:
    `LessonGate(required)` is a FastAPI dependency. It resolves the caller from
    `request.state.user`, calls `scheduling.permissions.check` and hands the
    resulting `LessonGrant` to the handler. Unknown lessons and insufficient
    permissions both surface as the same 404 so callers cannot probe for ids.

Notes:
    - Persistence: `LESSONS_BACKEND=db` selects the Postgres repository,
      anything else the in-memory one. Tests call `set_repo` for isolation.
    - All responses carry `Cache-Control: private, no-store`.
"""

from __future__ import annotations

import logging
from datetime import date
from typing import Any, List

from fastapi import APIRouter, Depends, Query, Request
from fastapi.responses import JSONResponse, Response
from pydantic import BaseModel, Field

from scheduling.errors import AuthzError, LessonNotFoundError, LessonValidationError, StorageError
from scheduling.occurrences import Lesson, OccurrenceView, Repeat, SingleOccurrence
from scheduling.permissions import LessonGrant, PermissionLevel, check
from scheduling.repo_memory import InMemoryLessonsRepo
from scheduling.services.lessons import LessonsService
from web.auth_utils import current_sub
from web.config import lessons_backend
from web.security import CsrfViolation, require_same_origin

lessons_router = APIRouter(tags=["Lessons"])  # explicit paths, no prefix
logger = logging.getLogger("lessonplan.web.lessons")


def _build_default_repo():
    if lessons_backend() == "db":
        # Imported lazily so the memory backend never needs a database driver.
        from scheduling.repo_db import DBLessonsRepo

        return DBLessonsRepo()
    return InMemoryLessonsRepo()


_REPO = None


def _get_repo():
    global _REPO
    if _REPO is None:
        _REPO = _build_default_repo()
    return _REPO


def set_repo(repo) -> None:
    """Allow tests to swap the lessons repository implementation."""
    global _REPO
    _REPO = repo


def _get_service() -> LessonsService:
    return LessonsService(_get_repo())


# --- Request models ---------------------------------------------------------------
# Field values stay loosely typed (strings, not dates) so the service owns the
# error codes; pydantic only guards the overall shape.


class RepeatPayload(BaseModel):
    id: str | None = None
    start: str | None = None
    end: str | None = None
    unit: str | None = None
    step: int = 1


class SinglePayload(BaseModel):
    date: str | None = None
    kind: str = "standalone"
    repeat_id: str | None = None
    title: str | None = None
    description: str | None = None
    start_time: str | None = None
    end_time: str | None = None
    note: str | None = None


class LessonCreatePayload(BaseModel):
    title: str | None = None
    description: str | None = None
    start_time: str | None = None
    end_time: str | None = None
    repeats: List[RepeatPayload] = Field(default_factory=list)
    singles: List[SinglePayload] = Field(default_factory=list)


class LessonUpdatePayload(BaseModel):
    """Partial update: omitted fields are left alone, explicit null clears."""

    title: str | None = None
    description: str | None = None
    start_time: str | None = None
    end_time: str | None = None
    repeats: List[RepeatPayload] | None = None
    singles: List[SinglePayload] | None = None


class PermissionPayload(BaseModel):
    level: str | None = None


# --- Gate -------------------------------------------------------------------------


class LessonGate:
    """Dependency admitting the caller to `lesson_id` at `required` or raising `AuthzError`."""

    def __init__(self, required: PermissionLevel) -> None:
        self.required = required

    def __call__(self, request: Request, lesson_id: str) -> LessonGrant:
        account_id = current_sub(getattr(request.state, "user", None))
        return check(_get_repo(), account_id, lesson_id, self.required)


require_read = LessonGate(PermissionLevel.READ)
require_read_write = LessonGate(PermissionLevel.READ_WRITE)


# --- Serialisation ----------------------------------------------------------------


def _iso(value) -> str | None:
    return value.isoformat() if value is not None else None


def _serialize_repeat(repeat: Repeat) -> dict:
    return {
        "id": repeat.id,
        "start": repeat.start.isoformat(),
        "end": _iso(repeat.end),
        "unit": repeat.unit.value,
        "step": repeat.step,
    }


def _serialize_single(single: SingleOccurrence) -> dict:
    return {
        "date": single.date.isoformat(),
        "kind": single.kind.value,
        "repeat_id": single.repeat_id,
        "title": single.title,
        "description": single.description,
        "start_time": _iso(single.start_time),
        "end_time": _iso(single.end_time),
        "note": single.note,
    }


def _serialize_lesson(lesson: Lesson, *, permission: PermissionLevel) -> dict:
    return {
        "id": lesson.id,
        "title": lesson.title,
        "description": lesson.description,
        "start_time": _iso(lesson.start_time),
        "end_time": _iso(lesson.end_time),
        "owner_id": lesson.owner_id,
        "repeats": [_serialize_repeat(r) for r in lesson.repeats],
        "singles": [_serialize_single(s) for s in lesson.singles],
        "permission": permission.wire,
        "created_at": lesson.created_at,
        "updated_at": lesson.updated_at,
    }


def _serialize_occurrence(view: OccurrenceView) -> dict:
    return {
        "lesson_id": view.lesson_id,
        "date": view.date.isoformat(),
        "title": view.title,
        "description": view.description,
        "start_time": _iso(view.start_time),
        "end_time": _iso(view.end_time),
        "note": view.note,
        "source": view.source,
        "permission": view.permission,
    }


def _json_private(payload: Any, *, status_code: int = 200, headers: dict | None = None) -> JSONResponse:
    """JSON with caching disabled; lesson data is always account-scoped."""
    merged = {"Cache-Control": "private, no-store"}
    if headers:
        merged.update(headers)
    return JSONResponse(content=payload, status_code=status_code, headers=merged)


def _no_content() -> Response:
    return Response(status_code=204, headers={"Cache-Control": "private, no-store"})


# --- Exception mapping (registered on the app in web.main) ------------------------


async def handle_authz_error(request: Request, exc: AuthzError) -> JSONResponse:
    # Both denial reasons deliberately produce the same body.
    logger.info("lessons.gate.denied lesson_id=%s reason=%s", exc.lesson_id, exc.code)
    return _json_private({"error": "not_found"}, status_code=404)


async def handle_lesson_not_found(request: Request, exc: LessonNotFoundError) -> JSONResponse:
    return _json_private({"error": "not_found", "detail": "lesson_not_found"}, status_code=404)


async def handle_validation_error(request: Request, exc: LessonValidationError) -> JSONResponse:
    logger.info("lessons.request.rejected path=%s reason=%s", request.url.path, exc.detail)
    return _json_private(exc.as_payload(), status_code=400)


async def handle_storage_error(request: Request, exc: StorageError) -> JSONResponse:
    logger.warning("lessons.storage.failed path=%s error=%s", request.url.path, exc)
    return _json_private({"error": "internal_error"}, status_code=500)


async def handle_csrf_violation(request: Request, exc: CsrfViolation) -> JSONResponse:
    logger.warning("web.csrf.rejected path=%s", request.url.path)
    return _json_private({"error": "forbidden", "detail": "csrf_violation"}, status_code=403)


EXCEPTION_HANDLERS = {
    AuthzError: handle_authz_error,
    LessonNotFoundError: handle_lesson_not_found,
    LessonValidationError: handle_validation_error,
    StorageError: handle_storage_error,
    CsrfViolation: handle_csrf_violation,
}


# --- Routes -----------------------------------------------------------------------


@lessons_router.get("/lesson/{lesson_id}")
async def get_lesson(lesson_id: str, grant: LessonGrant = Depends(require_read)):
    lesson = _get_service().get_lesson(grant)
    return _json_private(_serialize_lesson(lesson, permission=grant.level))


@lessons_router.put("/lesson", dependencies=[Depends(require_same_origin)])
async def create_lesson(request: Request, payload: LessonCreatePayload):
    owner_id = current_sub(getattr(request.state, "user", None))
    lesson = _get_service().create_lesson(
        owner_id,
        title=payload.title,
        description=payload.description,
        start_time=payload.start_time,
        end_time=payload.end_time,
        repeats=payload.repeats,
        singles=payload.singles,
    )
    logger.info("lessons.created lesson_id=%s owner=%s", lesson.id, owner_id)
    return _json_private(
        _serialize_lesson(lesson, permission=PermissionLevel.READ_WRITE),
        status_code=201,
        headers={"Location": f"/lesson/{lesson.id}"},
    )


@lessons_router.patch("/lesson/{lesson_id}", dependencies=[Depends(require_same_origin)])
async def update_lesson(
    lesson_id: str,
    payload: LessonUpdatePayload,
    grant: LessonGrant = Depends(require_read_write),
):
    # Only keys the client actually sent reach the service; that keeps
    # "omitted" and "explicit null" apart.
    changes = {name: getattr(payload, name) for name in payload.model_fields_set}
    lesson = _get_service().update_lesson(grant, **changes)
    logger.info("lessons.updated lesson_id=%s fields=%s", lesson.id, ",".join(sorted(changes)))
    return _json_private(_serialize_lesson(lesson, permission=grant.level))


@lessons_router.delete("/lesson/{lesson_id}", dependencies=[Depends(require_same_origin)])
async def delete_lesson(lesson_id: str, grant: LessonGrant = Depends(require_read_write)):
    _get_service().delete_lesson(grant)
    logger.info("lessons.deleted lesson_id=%s by=%s", grant.lesson_id, grant.account_id)
    return _no_content()


@lessons_router.get("/lessons")
async def lessons_for_date(request: Request, on: str | None = Query(default=None, alias="date")):
    try:
        day = date.fromisoformat((on or "").strip())
    except ValueError:
        return _json_private({"error": "bad_request", "detail": "invalid_date"}, status_code=400)
    account_id = current_sub(getattr(request.state, "user", None))
    views = _get_service().lessons_for_date(account_id, day)
    return _json_private([_serialize_occurrence(v) for v in views])


@lessons_router.get("/lesson/{lesson_id}/permissions")
async def list_permissions(lesson_id: str, grant: LessonGrant = Depends(require_read_write)):
    rows = _get_service().list_permissions(grant)
    return _json_private([{"account_id": account_id, "level": level.wire} for account_id, level in rows])


@lessons_router.put("/lesson/{lesson_id}/permissions/{account_id}", dependencies=[Depends(require_same_origin)])
async def set_permission(
    lesson_id: str,
    account_id: str,
    payload: PermissionPayload,
    grant: LessonGrant = Depends(require_read_write),
):
    level = _get_service().set_permission(grant, account_id, payload.level)
    logger.info("lessons.permission.set lesson_id=%s account=%s level=%s", grant.lesson_id, account_id, level.wire)
    return _json_private({"account_id": account_id, "level": level.wire})
