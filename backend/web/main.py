"Lessonplan API"
from __future__ import annotations

import logging
import os
import sys
from datetime import datetime, timezone

from dotenv import load_dotenv
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse, Response

from identity_access.stores import SessionStore
from web import config as _cfg
from web.auth_utils import SESSION_COOKIE_NAME, cookie_opts, current_sub


def _should_load_dotenv() -> bool:
    """Decide if we should load a local .env file.

    - Never load under pytest to avoid contaminating test env.
    - Allow explicit opt-out via LESSONPLAN_ENABLE_DOTENV (default true
      outside pytest).
    """
    # Under pytest, do not load .env; tests provide their own env.
    if "pytest" in sys.modules or os.getenv("PYTEST_CURRENT_TEST"):
        return False
    flag = (os.getenv("LESSONPLAN_ENABLE_DOTENV", "true") or "").strip().lower()
    return flag in ("1", "true", "yes")


if _should_load_dotenv():
    load_dotenv()

# Minimal production safety checks (fail-fast on insecure config)
_cfg.ensure_secure_config_on_startup()

logger = logging.getLogger("lessonplan.web")

app = FastAPI(title="Lessonplan API", description="Lessons, recurrence and per-lesson sharing", version="0.1.0")

from web.routes.auth import auth_router, get_accounts_repo  # noqa: E402
from web.routes.lessons import EXCEPTION_HANDLERS, lessons_router  # noqa: E402

SESSION_STORE = SessionStore()

# --- Auth Helpers & Middleware --------------------------------------------------


def set_session_cookie(response: Response, value: str, *, max_age: int | None = None) -> None:
    opts = cookie_opts(_cfg.environment())
    response.set_cookie(
        key=SESSION_COOKIE_NAME,
        value=value,
        httponly=opts["httponly"],
        secure=opts["secure"],
        samesite=opts["samesite"],
        path="/",
        max_age=max_age,
    )


def clear_session_cookie(response: Response) -> None:
    opts = cookie_opts(_cfg.environment())
    response.delete_cookie(
        key=SESSION_COOKIE_NAME,
        path="/",
        httponly=opts["httponly"],
        secure=opts["secure"],
        samesite=opts["samesite"],
    )


def _is_public_path(path: str) -> bool:
    return path.startswith("/auth/") or path in ("/health", "/docs", "/openapi.json")


@app.middleware("http")
async def auth_enforcement(request: Request, call_next):
    path = request.url.path
    if _is_public_path(path):
        return await call_next(request)

    sid = request.cookies.get(SESSION_COOKIE_NAME)
    rec = SESSION_STORE.get(sid) if sid else None
    if not rec:
        if sid:
            logger.info("auth.session.rejected path=%s reason=unknown_or_expired", path)
        headers = {"Cache-Control": "private, no-store", "Vary": "Origin"}
        return JSONResponse({"error": "unauthenticated"}, status_code=401, headers=headers)

    # Expose minimal, read-only user context for downstream handlers.
    request.state.user = {"sub": rec.sub, "name": rec.name}
    return await call_next(request)


# --- Security Headers Middleware ----------------------------------------------


@app.middleware("http")
async def security_headers(request: Request, call_next):
    response = await call_next(request)
    # JSON-only API: nothing may be framed, sniffed or fetched from elsewhere.
    response.headers.setdefault("Content-Security-Policy", "default-src 'none'; frame-ancestors 'none'")
    response.headers.setdefault("X-Frame-Options", "DENY")
    response.headers.setdefault("X-Content-Type-Options", "nosniff")
    response.headers.setdefault("Referrer-Policy", "strict-origin-when-cross-origin")
    # HSTS: always on (dev = prod)
    response.headers.setdefault("Strict-Transport-Security", "max-age=31536000; includeSubDomains")
    return response


# --- Error mapping -------------------------------------------------------------


async def _request_validation_error(request: Request, exc: RequestValidationError) -> JSONResponse:
    # Keep one error shape for malformed bodies instead of FastAPI's 422 detail list.
    return JSONResponse(
        {"error": "bad_request", "detail": "invalid_payload"},
        status_code=400,
        headers={"Cache-Control": "private, no-store"},
    )


app.add_exception_handler(RequestValidationError, _request_validation_error)
for _exc_class, _handler in EXCEPTION_HANDLERS.items():
    app.add_exception_handler(_exc_class, _handler)

# --- Routes --------------------------------------------------------------------

app.include_router(auth_router)
app.include_router(lessons_router)


@app.get("/health")
async def health_check():
    # Security: include no-store to avoid caching any runtime status.
    return JSONResponse({"status": "healthy"}, headers={"Cache-Control": "private, no-store"})


@app.get("/api/me")
async def get_me(request: Request):
    sid = request.cookies.get(SESSION_COOKIE_NAME) or ""
    rec = SESSION_STORE.get(sid)
    account = get_accounts_repo().get_by_id(current_sub(getattr(request.state, "user", None)))
    if not rec or account is None:
        return JSONResponse({"error": "unauthenticated"}, status_code=401, headers={"Cache-Control": "private, no-store"})
    exp_iso = datetime.fromtimestamp(rec.expires_at, tz=timezone.utc).isoformat(timespec="seconds") if rec.expires_at else None
    payload = account.public()
    payload["expires_at"] = exp_iso
    return JSONResponse(payload, headers={"Cache-Control": "private, no-store"})
