"""
Database-backed accounts repository (Postgres).

Why: Accounts must survive restarts when lessons live in Postgres, because
lesson ownership and grants reference account ids.

Note: This module uses psycopg3. It is imported only when
`LESSONS_BACKEND=db`; tests keep using `InMemoryAccountsRepo`.
"""
from __future__ import annotations

import os
from typing import Optional, Tuple

import psycopg
from psycopg import errors as pg_errors

from identity_access.accounts import Account, NotUniqueError

_ACCOUNT_COLUMNS_SQL = "id::text, first_name, last_name, login, password_hash"


def _row_to_account(row: Tuple) -> Account:
    return Account(id=row[0], first_name=row[1], last_name=row[2], login=row[3], password_hash=row[4])


class DBAccountsRepo:
    """Postgres-backed accounts repository.

    Parameters
    ----------
    dsn:
        Psycopg3 connection string. Falls back to `LESSONS_DATABASE_URL`,
        then `DATABASE_URL`.
    """

    def __init__(self, dsn: str | None = None) -> None:
        self._dsn = dsn or os.getenv("LESSONS_DATABASE_URL") or os.getenv("DATABASE_URL", "")
        if not self._dsn:
            raise RuntimeError("No database DSN provided for DBAccountsRepo")

    def get_by_login(self, login: str) -> Optional[Account]:
        with psycopg.connect(self._dsn) as conn:
            with conn.cursor() as cur:
                cur.execute(f"select {_ACCOUNT_COLUMNS_SQL} from public.accounts where login = %s", (login,))
                row = cur.fetchone()
        return _row_to_account(row) if row else None

    def get_by_id(self, account_id: str) -> Optional[Account]:
        with psycopg.connect(self._dsn) as conn:
            with conn.cursor() as cur:
                cur.execute(f"select {_ACCOUNT_COLUMNS_SQL} from public.accounts where id::text = %s", (account_id,))
                row = cur.fetchone()
        return _row_to_account(row) if row else None

    def insert_account(self, *, first_name: str, last_name: Optional[str], login: str, password_hash: str) -> Account:
        try:
            with psycopg.connect(self._dsn) as conn:
                with conn.transaction():
                    with conn.cursor() as cur:
                        cur.execute(
                            f"""
                            insert into public.accounts (first_name, last_name, login, password_hash)
                            values (%s, %s, %s, %s)
                            returning {_ACCOUNT_COLUMNS_SQL}
                            """,
                            (first_name, last_name, login, password_hash),
                        )
                        row = cur.fetchone()
        except pg_errors.UniqueViolation as exc:
            raise NotUniqueError("login") from exc
        return _row_to_account(row)


__all__ = ["DBAccountsRepo"]
