"""Shared fixtures: an in-memory stand-in for the PostgreSQL ``users`` table."""

from __future__ import annotations

import sys
import threading
from datetime import datetime, timedelta
from pathlib import Path
from types import SimpleNamespace
from typing import Callable, Dict, List, Optional

import psycopg2
import pytest
from fastapi.testclient import TestClient
from psycopg2 import errors, extensions

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from usersvc import repository
from usersvc.api import create_app
from usersvc.config import Settings
from usersvc.pool import ConnectionPool
from usersvc.schema import CONNECTIVITY_CHECK_SQL, CREATE_USERS_TABLE_SQL


class FakeStore:
    """Emulates the statements issued by :mod:`usersvc.repository` and :mod:`usersvc.schema`."""

    def __init__(self) -> None:
        self.rows: Dict[int, Dict[str, object]] = {}
        self.table_created = False
        self.connections_opened = 0
        self.statements: List[str] = []
        self.fail_with: Optional[Exception] = None
        self._next_id = 1
        self._clock = datetime(2024, 1, 1, 12, 0, 0)
        self._lock = threading.Lock()

    def connect(self) -> "FakeConnection":
        with self._lock:
            self.connections_opened += 1
        return FakeConnection(self)

    def _now(self) -> datetime:
        self._clock += timedelta(seconds=1)
        return self._clock

    @staticmethod
    def _coerce_id(value: object) -> int:
        try:
            return int(str(value))
        except ValueError:
            raise errors.InvalidTextRepresentation(
                f'invalid input syntax for type integer: "{value}"'
            ) from None

    def _email_taken(self, email: object, *, exclude: Optional[int] = None) -> bool:
        return any(
            row["email"] == email and row_id != exclude for row_id, row in self.rows.items()
        )

    def execute(self, sql: str, params) -> List[Dict[str, object]]:
        with self._lock:
            self.statements.append(sql)
            if self.fail_with is not None:
                raise self.fail_with
            if sql == CONNECTIVITY_CHECK_SQL:
                return [{"?column?": 1}]
            if sql == CREATE_USERS_TABLE_SQL:
                self.table_created = True
                return []
            if sql == repository.LIST_USERS_SQL:
                ordered = sorted(
                    self.rows.values(),
                    key=lambda row: (row["created_at"], row["id"]),
                    reverse=True,
                )
                return [dict(row) for row in ordered]
            if sql == repository.GET_USER_SQL:
                row = self.rows.get(self._coerce_id(params[0]))
                return [dict(row)] if row else []
            if sql == repository.INSERT_USER_SQL:
                name, email = params
                if self._email_taken(email):
                    raise errors.UniqueViolation(
                        'duplicate key value violates unique constraint "users_email_key"'
                    )
                now = self._now()
                row = {
                    "id": self._next_id,
                    "name": name,
                    "email": email,
                    "created_at": now,
                    "updated_at": now,
                }
                self.rows[self._next_id] = row
                self._next_id += 1
                return [dict(row)]
            if sql == repository.UPDATE_USER_SQL:
                name, email, raw_id = params
                user_id = self._coerce_id(raw_id)
                row = self.rows.get(user_id)
                if row is None:
                    return []
                if self._email_taken(email, exclude=user_id):
                    raise errors.UniqueViolation(
                        'duplicate key value violates unique constraint "users_email_key"'
                    )
                row.update(name=name, email=email, updated_at=self._now())
                return [dict(row)]
            if sql == repository.DELETE_USER_SQL:
                row = self.rows.pop(self._coerce_id(params[0]), None)
                return [dict(row)] if row else []
        raise psycopg2.ProgrammingError(f"unexpected statement: {sql}")


class FakeCursor:
    def __init__(self, store: FakeStore) -> None:
        self._store = store
        self._rows: List[Dict[str, object]] = []

    def __enter__(self) -> "FakeCursor":
        return self

    def __exit__(self, *exc_info) -> None:
        return None

    def execute(self, sql: str, params=None) -> None:
        self._rows = self._store.execute(sql, params or ())

    def fetchall(self) -> List[Dict[str, object]]:
        return list(self._rows)


class FakeConnection:
    def __init__(self, store: FakeStore) -> None:
        self._store = store
        self.closed = 0
        self.autocommit = False
        self.info = SimpleNamespace(transaction_status=extensions.TRANSACTION_STATUS_IDLE)

    def cursor(self) -> FakeCursor:
        return FakeCursor(self._store)

    def rollback(self) -> None:
        return None

    def close(self) -> None:
        self.closed = 1


@pytest.fixture
def store() -> FakeStore:
    return FakeStore()


@pytest.fixture
def install_connect(monkeypatch):
    """Route ``psycopg2.connect`` (used by the pool) to the given factory."""

    def install(factory: Callable[[], object]) -> None:
        monkeypatch.setattr(psycopg2, "connect", lambda *args, **kwargs: factory())

    return install


@pytest.fixture
def pool(store: FakeStore, install_connect) -> ConnectionPool:
    install_connect(store.connect)
    return ConnectionPool(
        {"dbname": "userdb"}, max_size=10, idle_timeout=30.0, acquire_timeout=1.0
    )


@pytest.fixture
def client(pool: ConnectionPool):
    app = create_app(pool=pool, settings=Settings(), initialize_database=False)
    with TestClient(app) as test_client:
        yield test_client
