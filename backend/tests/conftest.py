"""
Pytest configuration for backend tests.

Why: Force AnyIO to use the asyncio backend and give every test fresh
in-memory repositories and session store, so API tests never depend on a
database or on state left behind by another test.
"""
import os
import sys
from pathlib import Path

import pytest

# Ensure modules in backend/ are importable across tests
REPO_ROOT = Path(__file__).resolve().parents[2]
BACKEND_DIR = REPO_ROOT / "backend"
if str(BACKEND_DIR) not in sys.path:
    sys.path.insert(0, str(BACKEND_DIR))

# API tests always run against the in-memory backend; live-DB tests build
# their repositories explicitly from LESSONS_TEST_DSN.
os.environ["LESSONS_BACKEND"] = "memory"


@pytest.fixture
def anyio_backend():
    return "asyncio"


@pytest.fixture(autouse=True)
def _clear_env_toggles(monkeypatch: pytest.MonkeyPatch):
    """Keep env-driven behaviour (prod guard, strict CSRF) deterministic per test."""
    for var in ("LESSONPLAN_ENV", "STRICT_CSRF", "LESSONPLAN_TRUST_PROXY"):
        monkeypatch.delenv(var, raising=False)
    yield


@pytest.fixture(autouse=True)
def _reset_repos_and_sessions(monkeypatch: pytest.MonkeyPatch):
    """Swap in fresh in-memory lessons/accounts repos and a fresh session store."""
    from identity_access.accounts import InMemoryAccountsRepo
    from identity_access.stores import SessionStore
    from scheduling.repo_memory import InMemoryLessonsRepo
    from web import main
    from web.routes import auth as auth_routes
    from web.routes import lessons as lesson_routes

    lesson_routes.set_repo(InMemoryLessonsRepo())
    auth_routes.set_accounts_repo(InMemoryAccountsRepo())
    monkeypatch.setattr(main, "SESSION_STORE", SessionStore())
    yield
