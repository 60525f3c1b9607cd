"""Domain models for the user service."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Mapping


def _as_utc(value: datetime) -> datetime:
    # Sessions run with timezone=UTC, so naive TIMESTAMP values are UTC.
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


@dataclass(frozen=True)
class User:
    """Represents a row of the ``users`` table."""

    id: int
    name: str
    email: str
    created_at: datetime
    updated_at: datetime

    @staticmethod
    def from_row(row: Mapping[str, object]) -> "User":
        return User(
            id=int(row["id"]),  # type: ignore[arg-type]
            name=str(row["name"]),
            email=str(row["email"]),
            created_at=_as_utc(row["created_at"]),  # type: ignore[arg-type]
            updated_at=_as_utc(row["updated_at"]),  # type: ignore[arg-type]
        )


__all__ = ["User"]
