"""Core package for the users service."""

from __future__ import annotations

from typing import Any

from .database import Database, DatabaseError, UserConflictError, resolve_database_url


def create_app(*args: Any, **kwargs: Any):
    """Factory function that returns the users API application."""

    from .api import create_app as _create_app

    return _create_app(*args, **kwargs)


__all__ = [
    "Database",
    "DatabaseError",
    "UserConflictError",
    "create_app",
    "resolve_database_url",
]
