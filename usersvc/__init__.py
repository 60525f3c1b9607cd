"""Core utilities for the user management microservice."""

from __future__ import annotations

from typing import Any

from .config import Settings, load_settings
from .pool import ConnectionPool, create_pool

__version__ = "1.0.0"


def create_app(*args: Any, **kwargs: Any):
    """Factory function that returns the HTTP application."""

    from .api import create_app as _create_app

    return _create_app(*args, **kwargs)


__all__ = [
    "ConnectionPool",
    "Settings",
    "create_app",
    "create_pool",
    "load_settings",
]
