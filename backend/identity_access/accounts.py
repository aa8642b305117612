"""
Accounts: registration and password login.

Why:
    Lessons are owned by accounts and every lesson request is made on behalf
    of one. This module only answers "who is this?": it registers accounts
    with a bcrypt password hash and verifies a login/password pair. It never
    looks at lessons or permissions.

Errors:
    - `NotUniqueError` when the login is already taken.
    - `ValueError("invalid_<field>")` for malformed input.
"""
from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from typing import Dict, Optional, Protocol
from uuid import uuid4

import bcrypt

logger = logging.getLogger("lessonplan.identity_access")

# Work factor for new hashes. Kept low enough for interactive logins.
BCRYPT_ROUNDS = 10
MAX_NAME_LEN = 100
MAX_LOGIN_LEN = 64
MIN_PASSWORD_LEN = 8


class NotUniqueError(Exception):
    """Registration conflicts with an existing login."""

    def __init__(self, field: str = "login") -> None:
        super().__init__(f"{field}_taken")
        self.field = field


@dataclass
class Account:
    id: str
    first_name: str
    last_name: Optional[str]
    login: str
    password_hash: str

    def public(self) -> dict:
        return {"id": self.id, "first_name": self.first_name, "last_name": self.last_name, "login": self.login}


class AccountsRepoProtocol(Protocol):
    def get_by_login(self, login: str) -> Optional[Account]:
        ...

    def get_by_id(self, account_id: str) -> Optional[Account]:
        ...

    def insert_account(self, *, first_name: str, last_name: Optional[str], login: str, password_hash: str) -> Account:
        """Insert atomically; raise `NotUniqueError` when the login exists."""
        ...


class InMemoryAccountsRepo:
    def __init__(self) -> None:
        self.accounts: Dict[str, Account] = {}
        self._lock = threading.Lock()

    def get_by_login(self, login: str) -> Optional[Account]:
        with self._lock:
            for acc in self.accounts.values():
                if acc.login == login:
                    return acc
        return None

    def get_by_id(self, account_id: str) -> Optional[Account]:
        return self.accounts.get(account_id)

    def insert_account(self, *, first_name: str, last_name: Optional[str], login: str, password_hash: str) -> Account:
        with self._lock:
            if any(acc.login == login for acc in self.accounts.values()):
                raise NotUniqueError("login")
            acc = Account(id=str(uuid4()), first_name=first_name, last_name=last_name, login=login, password_hash=password_hash)
            self.accounts[acc.id] = acc
            return acc


def _normalize_name(value: object, field: str, *, required: bool) -> Optional[str]:
    if value is None:
        if required:
            raise ValueError(f"invalid_{field}")
        return None
    if not isinstance(value, str):
        raise ValueError(f"invalid_{field}")
    trimmed = value.strip()
    if len(trimmed) > MAX_NAME_LEN or (required and not trimmed):
        raise ValueError(f"invalid_{field}")
    return trimmed or None


def _normalize_login(value: object) -> str:
    if not isinstance(value, str):
        raise ValueError("invalid_login")
    trimmed = value.strip().lower()
    if not trimmed or len(trimmed) > MAX_LOGIN_LEN or any(ch.isspace() for ch in trimmed):
        raise ValueError("invalid_login")
    return trimmed


def hash_password(password: str) -> str:
    return bcrypt.hashpw(password.encode("utf-8"), bcrypt.gensalt(rounds=BCRYPT_ROUNDS)).decode("utf-8")


def verify_password(password: str, password_hash: str) -> bool:
    try:
        return bcrypt.checkpw(password.encode("utf-8"), password_hash.encode("utf-8"))
    except ValueError:
        # Malformed stored hash: treat as a failed login, never as a crash.
        return False


@dataclass
class AccountsService:
    repo: AccountsRepoProtocol

    def register(self, *, first_name: object, last_name: object, login: object, password: object) -> Account:
        first = _normalize_name(first_name, "first_name", required=True)
        last = _normalize_name(last_name, "last_name", required=False)
        normalized_login = _normalize_login(login)
        if not isinstance(password, str) or len(password) < MIN_PASSWORD_LEN:
            raise ValueError("invalid_password")
        account = self.repo.insert_account(
            first_name=first,  # type: ignore[arg-type]
            last_name=last,
            login=normalized_login,
            password_hash=hash_password(password),
        )
        logger.info("accounts.registered id=%s", account.id)
        return account

    def authenticate(self, *, login: object, password: object) -> Optional[Account]:
        if not isinstance(login, str) or not isinstance(password, str):
            return None
        account = self.repo.get_by_login(login.strip().lower())
        if account is None or not verify_password(password, account.password_hash):
            return None
        return account


__all__ = [
    "Account",
    "AccountsRepoProtocol",
    "AccountsService",
    "InMemoryAccountsRepo",
    "NotUniqueError",
    "hash_password",
    "verify_password",
]
