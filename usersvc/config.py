"""Configuration management for the user service."""
from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Dict, Mapping, Optional


@dataclass(frozen=True)
class Settings:
    """Connection and process settings resolved from the environment."""

    db_host: str = "localhost"
    db_port: int = 5432
    db_name: str = "userdb"
    db_user: str = "postgres"
    db_password: str = "postgres"
    port: int = 3000
    pool_max_size: int = 10
    pool_idle_timeout: float = 30.0
    pool_acquire_timeout: float = 10.0
    init_attempts: int = 5

    @staticmethod
    def from_env(environ: Mapping[str, str]) -> "Settings":
        """Create :class:`Settings` from an environment mapping."""

        return Settings(
            db_host=_env_str(environ, "DB_HOST", "localhost"),
            db_port=_env_int(environ, "DB_PORT", 5432),
            db_name=_env_str(environ, "DB_NAME", "userdb"),
            db_user=_env_str(environ, "DB_USER", "postgres"),
            db_password=_env_str(environ, "DB_PASSWORD", "postgres"),
            port=_env_int(environ, "PORT", 3000),
        )

    def connect_kwargs(self) -> Dict[str, object]:
        """Keyword arguments for :func:`psycopg2.connect`."""

        return {
            "host": self.db_host,
            "port": self.db_port,
            "dbname": self.db_name,
            "user": self.db_user,
            "password": self.db_password,
            "connect_timeout": max(1, int(self.pool_acquire_timeout)),
            "options": "-c timezone=UTC",
        }


def _env_str(environ: Mapping[str, str], name: str, default: str) -> str:
    value = environ.get(name)
    if value is None or not value.strip():
        return default
    return value


def _env_int(environ: Mapping[str, str], name: str, default: int) -> int:
    raw = environ.get(name)
    if raw is None or not raw.strip():
        return default
    try:
        value = int(raw.strip())
    except ValueError as exc:
        raise ValueError(f"{name} must be an integer, got {raw!r}") from exc
    if not 0 < value < 65536:
        raise ValueError(f"{name} must be a valid port number, got {value}")
    return value


def load_settings(environ: Optional[Mapping[str, str]] = None) -> Settings:
    """Resolve settings from ``environ`` or the process environment."""

    return Settings.from_env(os.environ if environ is None else environ)


__all__ = ["Settings", "load_settings"]
