"""PostgreSQL-backed persistence for users."""
from __future__ import annotations

import logging
from typing import Any, Callable, List, Optional, Sequence, TypeVar

import psycopg2
import psycopg2.pool
from psycopg2 import errorcodes, errors

from .errors import ErrorKind, Result
from .models import User
from .pool import ConnectionPool

logger = logging.getLogger("usersvc.repository")

T = TypeVar("T")

LIST_USERS_SQL = "SELECT * FROM users ORDER BY created_at DESC"
GET_USER_SQL = "SELECT * FROM users WHERE id = %s"
INSERT_USER_SQL = "INSERT INTO users (name, email) VALUES (%s, %s) RETURNING *"
UPDATE_USER_SQL = (
    "UPDATE users SET name = %s, email = %s, updated_at = CURRENT_TIMESTAMP "
    "WHERE id = %s RETURNING *"
)
DELETE_USER_SQL = "DELETE FROM users WHERE id = %s RETURNING *"

NOT_FOUND_MESSAGE = "User not found"
CONFLICT_MESSAGE = "Email already exists"
UNAVAILABLE_MESSAGE = "Database unavailable"
UNCLASSIFIED_MESSAGE = "Internal server error"


def _is_unique_violation(exc: BaseException) -> bool:
    if isinstance(exc, errors.UniqueViolation):
        return True
    return getattr(exc, "pgcode", None) == errorcodes.UNIQUE_VIOLATION


def classify_store_error(exc: BaseException) -> ErrorKind:
    """Map a store-layer exception onto an :class:`ErrorKind`."""

    if _is_unique_violation(exc):
        return ErrorKind.CONFLICT
    if isinstance(
        exc, (psycopg2.pool.PoolError, psycopg2.OperationalError, psycopg2.InterfaceError)
    ):
        return ErrorKind.UNAVAILABLE
    return ErrorKind.UNCLASSIFIED


class UserRepository:
    """Issue parameterized queries against the ``users`` table.

    Every method returns a :class:`Result`; store failures are classified
    instead of raised.
    """

    def __init__(self, pool: ConnectionPool) -> None:
        self._pool = pool

    def list_users(self) -> Result[List[User]]:
        return self._run(
            "fetching users",
            LIST_USERS_SQL,
            (),
            lambda rows: Result.success([User.from_row(row) for row in rows]),
        )

    def get_user(self, user_id: str) -> Result[User]:
        return self._run("fetching user", GET_USER_SQL, (user_id,), _single_row)

    def create_user(self, name: str, email: str) -> Result[User]:
        return self._run("creating user", INSERT_USER_SQL, (name, email), _single_row)

    def update_user(self, user_id: str, name: str, email: str) -> Result[User]:
        return self._run("updating user", UPDATE_USER_SQL, (name, email, user_id), _single_row)

    def delete_user(self, user_id: str) -> Result[User]:
        return self._run("deleting user", DELETE_USER_SQL, (user_id,), _single_row)

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------
    def _run(
        self,
        action: str,
        sql: str,
        params: Sequence[object],
        convert: Callable[[List[Any]], Result[T]],
    ) -> Result[T]:
        try:
            with self._pool.connection() as conn:
                with conn.cursor() as cursor:
                    cursor.execute(sql, params)
                    rows = cursor.fetchall()
        except psycopg2.Error as exc:
            kind = classify_store_error(exc)
            if kind is ErrorKind.CONFLICT:
                return Result.failure(kind, CONFLICT_MESSAGE)
            logger.error("Error %s: %s", action, str(exc).strip() or exc.__class__.__name__)
            if kind is ErrorKind.UNAVAILABLE:
                return Result.failure(kind, UNAVAILABLE_MESSAGE)
            return Result.failure(kind, UNCLASSIFIED_MESSAGE)
        return convert(rows)


def _single_row(rows: List[Any]) -> Result[User]:
    row: Optional[Any] = rows[0] if rows else None
    if row is None:
        return Result.failure(ErrorKind.NOT_FOUND, NOT_FOUND_MESSAGE)
    return Result.success(User.from_row(row))


__all__ = [
    "DELETE_USER_SQL",
    "GET_USER_SQL",
    "INSERT_USER_SQL",
    "LIST_USERS_SQL",
    "UPDATE_USER_SQL",
    "UserRepository",
    "classify_store_error",
]
