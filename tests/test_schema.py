"""Tests for startup schema initialisation and its retry policy."""

from __future__ import annotations

import anyio
import psycopg2
import pytest
from psycopg2 import errors

from usersvc.pool import ConnectionPool
from usersvc.schema import (
    CONNECTIVITY_CHECK_SQL,
    CREATE_USERS_TABLE_SQL,
    backoff_delay,
    ensure_schema,
    initialize_schema,
)


class _RecordingSleep:
    def __init__(self) -> None:
        self.delays: list[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


def _pool(**kwargs) -> ConnectionPool:
    return ConnectionPool({"dbname": "userdb"}, acquire_timeout=0.1, **kwargs)


def _run(pool, sleep, attempts=5) -> bool:
    async def _main() -> bool:
        return await initialize_schema(pool, attempts=attempts, sleep=sleep)

    return anyio.run(_main)


def test_backoff_schedule_is_capped():
    assert [backoff_delay(attempt) for attempt in range(1, 7)] == [1.0, 2.0, 4.0, 8.0, 10.0, 10.0]


def test_ensure_schema_checks_connectivity_then_creates(pool, store):
    ensure_schema(pool)

    assert store.statements == [CONNECTIVITY_CHECK_SQL, CREATE_USERS_TABLE_SQL]
    assert store.table_created


def test_ensure_schema_is_idempotent(pool, store):
    ensure_schema(pool)
    ensure_schema(pool)

    assert store.table_created
    assert pool.in_use == 0


def test_initialize_succeeds_first_try(pool, store):
    sleep = _RecordingSleep()

    assert _run(pool, sleep) is True
    assert sleep.delays == []
    assert store.table_created


def test_initialize_retries_with_backoff_until_store_recovers(store, install_connect):
    failures = {"remaining": 3}

    def _connect():
        if failures["remaining"]:
            failures["remaining"] -= 1
            raise psycopg2.OperationalError("could not connect to server: Connection refused")
        return store.connect()

    install_connect(_connect)
    pool = _pool(max_size=2)
    sleep = _RecordingSleep()

    assert _run(pool, sleep) is True
    assert sleep.delays == [1.0, 2.0, 4.0]
    assert store.table_created


def test_initialize_gives_up_without_raising(store, install_connect, caplog):
    store.fail_with = psycopg2.OperationalError("the database system is starting up")
    install_connect(store.connect)
    pool = _pool(max_size=2)
    sleep = _RecordingSleep()

    with caplog.at_level("INFO", logger="usersvc.schema"):
        assert _run(pool, sleep) is False

    assert sleep.delays == [1.0, 2.0, 4.0, 8.0]
    assert "attempt 5/5 failed" in caplog.text
    assert "Failed to initialize database after all retries" in caplog.text


@pytest.mark.parametrize(
    "race_error",
    [
        errors.DuplicateTable('relation "users" already exists'),
        errors.UniqueViolation('duplicate key value violates unique constraint "pg_type_typname_nsp_index"'),
    ],
)
def test_concurrent_creation_counts_as_success(store, install_connect, race_error):
    original_execute = store.execute

    def _racing_execute(sql, params):
        if sql == CREATE_USERS_TABLE_SQL:
            raise race_error
        return original_execute(sql, params)

    store.execute = _racing_execute
    install_connect(store.connect)
    pool = _pool(max_size=1)
    sleep = _RecordingSleep()

    assert _run(pool, sleep) is True
    assert sleep.delays == []
