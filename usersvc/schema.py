"""Startup schema initialisation with exponential backoff."""
from __future__ import annotations

import logging
from typing import Awaitable, Callable

import anyio
import psycopg2
from psycopg2 import errors

from .pool import ConnectionPool

logger = logging.getLogger("usersvc.schema")

CONNECTIVITY_CHECK_SQL = "SELECT 1"

CREATE_USERS_TABLE_SQL = """
CREATE TABLE IF NOT EXISTS users (
    id SERIAL PRIMARY KEY,
    name VARCHAR(255) NOT NULL,
    email VARCHAR(255) UNIQUE NOT NULL,
    created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
    updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
)
"""

DEFAULT_ATTEMPTS = 5
BASE_DELAY = 1.0
MAX_DELAY = 10.0


def backoff_delay(attempt: int, *, base: float = BASE_DELAY, cap: float = MAX_DELAY) -> float:
    """Seconds to wait after the given (1-based) failed attempt."""

    return min(base * 2 ** (attempt - 1), cap)


def ensure_schema(pool: ConnectionPool) -> None:
    """Check connectivity and create the ``users`` table if it is absent."""

    with pool.connection() as conn:
        with conn.cursor() as cursor:
            cursor.execute(CONNECTIVITY_CHECK_SQL)
            try:
                cursor.execute(CREATE_USERS_TABLE_SQL)
            except (errors.DuplicateTable, errors.UniqueViolation):
                # Another instance created the table between our check and insert.
                logger.info("Users table was created concurrently; continuing")


async def initialize_schema(
    pool: ConnectionPool,
    *,
    attempts: int = DEFAULT_ATTEMPTS,
    sleep: Callable[[float], Awaitable[None]] = anyio.sleep,
) -> bool:
    """Run :func:`ensure_schema` until it succeeds or ``attempts`` are exhausted.

    Failures are logged and never raised; the service keeps running and
    requests fail on their own if the store stays unreachable.
    """

    for attempt in range(1, attempts + 1):
        try:
            await anyio.to_thread.run_sync(ensure_schema, pool)
        except psycopg2.Error as exc:
            logger.error(
                "Database initialization attempt %d/%d failed: %s",
                attempt,
                attempts,
                str(exc).strip() or exc.__class__.__name__,
            )
            if attempt == attempts:
                logger.error("Failed to initialize database after all retries")
                return False
            delay = backoff_delay(attempt)
            logger.info("Retrying in %.0fms...", delay * 1000)
            await sleep(delay)
        else:
            logger.info("Database initialized successfully")
            return True
    return False


__all__ = [
    "CONNECTIVITY_CHECK_SQL",
    "CREATE_USERS_TABLE_SQL",
    "backoff_delay",
    "ensure_schema",
    "initialize_schema",
]
