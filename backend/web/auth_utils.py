"""
Shared authentication utilities.

Why:
    Keep the session-cookie policy in one place so the auth router (which sets
    the cookie) and the middleware (which reads it) cannot drift apart.

Design:
    The helpers are pure: they accept an environment string and return the
    cookie flags. Callers decide where the environment comes from.
"""

from __future__ import annotations

SESSION_COOKIE_NAME = "lessonplan_session"


def cookie_opts(environment: str) -> dict:
    """Return hardened cookie flags (dev = prod).

    Returns a mapping with keys:
      - httponly: True
      - secure: True
      - samesite: "lax"
    """
    return {"httponly": True, "secure": True, "samesite": "lax"}


def current_sub(user: dict | None) -> str:
    """Return the authenticated account id from `request.state.user`, or ""."""
    if not user:
        return ""
    sub = user.get("sub")
    return str(sub) if sub else ""
