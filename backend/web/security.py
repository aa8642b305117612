"""
Shared web security helpers.

Contains the same-origin check used by every cookie-authenticated write
endpoint (lessons, permissions, logout). Keeping a single implementation
avoids security drift between routers.
"""
from __future__ import annotations

import os
from urllib.parse import urlparse

from fastapi import Request

from web.config import environment


class CsrfViolation(Exception):
    """Write request whose Origin/Referer does not match the server origin."""


def _default_port(scheme: str) -> int:
    return 443 if scheme == "https" else 80


def _parse_origin(url: str) -> tuple[str, str, int]:
    p = urlparse(url)
    if not p.scheme or not p.hostname:
        raise ValueError("invalid_origin")
    scheme = p.scheme.lower()
    port = p.port if p.port is not None else _default_port(scheme)
    return scheme, p.hostname.lower(), int(port)


def _server_origin(request: Request) -> tuple[str, str, int]:
    """Origin the client talked to; honours X-Forwarded-* only behind a trusted proxy."""
    trust_proxy = (os.getenv("LESSONPLAN_TRUST_PROXY", "false") or "").lower() == "true"
    if trust_proxy:
        proto = (request.headers.get("x-forwarded-proto") or request.url.scheme or "http").split(",")[0].strip()
        host = (request.headers.get("x-forwarded-host") or request.headers.get("host") or "").split(",")[0].strip()
        scheme = (proto or "http").lower()
        if host:
            return _parse_origin(f"{scheme}://{host}")
    scheme = (request.url.scheme or "http").lower()
    host = (request.url.hostname or "").lower()
    port = int(request.url.port) if request.url.port else _default_port(scheme)
    return scheme, host, port


def is_same_origin(request: Request) -> bool:
    """Verify same-origin using Origin or Referer headers.

    Behavior:
    - If Origin is present, require exact scheme/host/port match with server.
    - Else if Referer is present, validate its origin similarly.
    - Else (no headers): allow, so non-browser clients keep working.
    """
    candidate = request.headers.get("origin") or request.headers.get("referer")
    if not candidate:
        return True
    try:
        return _parse_origin(candidate) == _server_origin(request)
    except ValueError:
        return False


def require_same_origin(request: Request) -> None:
    """FastAPI dependency guarding cookie-authenticated writes.

    In prod/stage (or with STRICT_CSRF=true) an Origin or Referer header is
    mandatory; elsewhere a missing header is tolerated but a foreign one is not.
    """
    strict = environment() in {"prod", "production", "stage", "staging"} or (
        (os.getenv("STRICT_CSRF", "false") or "").lower() == "true"
    )
    if strict and not (request.headers.get("origin") or request.headers.get("referer")):
        raise CsrfViolation()
    if not is_same_origin(request):
        raise CsrfViolation()
