"""
Configuration and startup security checks for the lesson planner.

Why: Prevent accidental insecure deployments (in-memory storage, plaintext DB
connections) without burdening local development.

Permissions: The caller needs no special privileges. The functions simply read
environment variables; the startup guard raises `SystemExit` on fatal
misconfiguration.
"""
from __future__ import annotations

import os


def environment() -> str:
    return (os.getenv("LESSONPLAN_ENV", "dev") or "dev").strip().lower()


def _is_prod_like(env: str) -> bool:
    env_l = (env or "").lower()
    return env_l in {"prod", "production", "stage", "staging"}


def lessons_backend() -> str:
    """Return the configured storage backend: `memory` (default) or `db`."""
    return (os.getenv("LESSONS_BACKEND", "memory") or "memory").strip().lower()


def database_url() -> str:
    return (os.getenv("LESSONS_DATABASE_URL") or os.getenv("DATABASE_URL") or "").strip()


def session_ttl_seconds() -> int:
    raw = (os.getenv("SESSION_TTL_SECONDS", "3600") or "3600").strip()
    try:
        return max(60, int(raw))
    except ValueError:
        return 3600


def ensure_secure_config_on_startup() -> None:
    """Fail fast on insecure production configuration.

    Checks (prod/stage only):
    - LESSONS_BACKEND must be `db`; in-memory lessons vanish on restart.
    - A DSN must be configured for the db backend.
    - The DSN must not explicitly disable TLS.
    """
    env = environment()
    if not _is_prod_like(env):
        return  # dev/test remain permissive

    if lessons_backend() != "db":
        raise SystemExit(
            "Refusing to start: LESSONS_BACKEND must be 'db' in production/staging."
        )

    dsn = database_url()
    if not dsn:
        raise SystemExit(
            "Refusing to start: LESSONS_DATABASE_URL or DATABASE_URL must be set in production."
        )
    if "sslmode=disable" in dsn:
        raise SystemExit(
            "Refusing to start: database URL contains sslmode=disable in production. Use sslmode=require or verify TLS."
        )
