"""
Authentication-related FastAPI routes (router-only module).

Why:
    Lessons are always requested on behalf of an account. These endpoints
    register accounts, exchange a login/password pair for an opaque session
    cookie and end sessions again.

Notes:
    - Handlers import `web.main` inside functions to reuse the shared session
      store and cookie helpers; `main` imports this router at module load.
    - Persistence: `LESSONS_BACKEND=db` selects the Postgres accounts table,
      anything else the in-memory repo. Tests call `set_accounts_repo`.
"""

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse, Response
from pydantic import BaseModel

from identity_access.accounts import AccountsService, InMemoryAccountsRepo, NotUniqueError
from web.config import lessons_backend, session_ttl_seconds
from web.security import require_same_origin

auth_router = APIRouter(tags=["Auth"])  # explicit paths, no prefix
logger = logging.getLogger("lessonplan.web.auth")

_NO_STORE = {"Cache-Control": "private, no-store"}


def _build_default_accounts_repo():
    if lessons_backend() == "db":
        from identity_access.accounts_db import DBAccountsRepo

        return DBAccountsRepo()
    return InMemoryAccountsRepo()


_ACCOUNTS_REPO = None


def get_accounts_repo():
    global _ACCOUNTS_REPO
    if _ACCOUNTS_REPO is None:
        _ACCOUNTS_REPO = _build_default_accounts_repo()
    return _ACCOUNTS_REPO


def set_accounts_repo(repo) -> None:
    """Allow tests to swap the accounts repository implementation."""
    global _ACCOUNTS_REPO
    _ACCOUNTS_REPO = repo


class RegisterPayload(BaseModel):
    first_name: str | None = None
    last_name: str | None = None
    login: str | None = None
    password: str | None = None


class LoginPayload(BaseModel):
    login: str | None = None
    password: str | None = None


@auth_router.post("/auth/register")
async def register(payload: RegisterPayload):
    service = AccountsService(get_accounts_repo())
    try:
        account = service.register(
            first_name=payload.first_name,
            last_name=payload.last_name,
            login=payload.login,
            password=payload.password,
        )
    except NotUniqueError:
        return JSONResponse({"error": "conflict", "detail": "login_taken"}, status_code=409, headers=_NO_STORE)
    except ValueError as exc:
        return JSONResponse({"error": "bad_request", "detail": str(exc)}, status_code=400, headers=_NO_STORE)
    return JSONResponse(account.public(), status_code=201, headers=_NO_STORE)


@auth_router.post("/auth/login")
async def login(payload: LoginPayload):
    from web import main

    account = AccountsService(get_accounts_repo()).authenticate(login=payload.login, password=payload.password)
    if account is None:
        # Same answer for unknown login and wrong password.
        logger.info("auth.login.failed")
        return JSONResponse({"error": "invalid_credentials"}, status_code=401, headers=_NO_STORE)
    ttl = session_ttl_seconds()
    sess = main.SESSION_STORE.create(sub=account.id, name=account.first_name, ttl_seconds=ttl)
    resp = Response(status_code=204, headers=_NO_STORE)
    main.set_session_cookie(resp, sess.session_id, max_age=ttl)
    logger.info("auth.login.succeeded account=%s", account.id)
    return resp


@auth_router.post("/auth/logout", dependencies=[Depends(require_same_origin)])
async def logout(request: Request):
    from web import main

    sid = request.cookies.get(main.SESSION_COOKIE_NAME)
    if sid:
        main.SESSION_STORE.delete(sid)
    resp = Response(status_code=204, headers=_NO_STORE)
    main.clear_session_cookie(resp)
    return resp
