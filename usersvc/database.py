"""SQLAlchemy-backed persistence for users."""
from __future__ import annotations

import logging
import math
import sqlite3
from contextlib import contextmanager
from datetime import datetime
from typing import Any, Dict, Iterator, List, Optional

from sqlalchemy import (
    Column,
    DateTime,
    Integer,
    MetaData,
    String,
    Table,
    create_engine,
    func,
    select,
)
from sqlalchemy.engine import URL, Engine, make_url
from sqlalchemy.exc import ArgumentError, IntegrityError, SQLAlchemyError
from sqlalchemy.schema import CreateTable

from .config import DEFAULT_DATABASE_URL, PoolSettings
from .models import User

logger = logging.getLogger("usersvc.database")

_PG_UNIQUE_VIOLATION = "23505"
_SQLITE_UNIQUE_VIOLATION = "SQLITE_CONSTRAINT_UNIQUE"

metadata = MetaData()

users_table = Table(
    "users",
    metadata,
    Column("id", Integer, primary_key=True),
    Column("name", String(100), nullable=False),
    Column("email", String(100), nullable=False, unique=True),
    Column("created_at", DateTime, server_default=func.current_timestamp()),
    sqlite_autoincrement=True,
)


class DatabaseError(RuntimeError):
    """Raised when a storage operation fails."""


class UserConflictError(DatabaseError):
    """Raised when an insert violates the unique email constraint."""


def resolve_database_url(value: Optional[str]) -> str:
    """Return the configured connection string, or the PgBouncer default."""

    if value and value.strip():
        return value.strip()
    return DEFAULT_DATABASE_URL


def _is_unique_violation(exc: IntegrityError) -> bool:
    orig = exc.orig
    sqlstate = getattr(orig, "sqlstate", None) or getattr(orig, "pgcode", None)
    if sqlstate:
        return sqlstate == _PG_UNIQUE_VIOLATION
    if isinstance(orig, sqlite3.IntegrityError):
        errorname = getattr(orig, "sqlite_errorname", None)
        if errorname:
            return errorname == _SQLITE_UNIQUE_VIOLATION
        return "UNIQUE constraint failed" in str(orig)
    return False


def _engine_options(url: URL, pool: PoolSettings) -> Dict[str, Any]:
    backend = url.get_backend_name()
    if backend == "sqlite":
        return {}

    # Every connection up to max_size stays pooled once opened; SQLAlchemy opens them lazily.
    options: Dict[str, Any] = {
        "pool_size": pool.max_size,
        "max_overflow": 0,
        "pool_timeout": pool.connect_timeout,
        "pool_recycle": int(pool.idle_timeout),
        "pool_pre_ping": True,
    }
    if backend == "postgresql":
        # libpq only accepts whole seconds here.
        connect_args: Dict[str, Any] = {"connect_timeout": max(1, math.ceil(pool.connect_timeout))}
        if url.get_driver_name() == "psycopg":
            # PgBouncer in transaction mode cannot track server-side prepared statements.
            connect_args["prepare_threshold"] = None
        options["connect_args"] = connect_args
    return options


@contextmanager
def _translate_errors(action: str) -> Iterator[None]:
    try:
        yield
    except IntegrityError as exc:
        if _is_unique_violation(exc):
            raise UserConflictError("A user with this email already exists") from exc
        raise DatabaseError(f"Failed to {action}: {exc.orig}") from exc
    except SQLAlchemyError as exc:
        raise DatabaseError(f"Failed to {action}: {exc}") from exc


class Database:
    """Pooled connection wrapper exposing the queries the service needs."""

    def __init__(self, url: str, *, pool: PoolSettings | None = None) -> None:
        self._pool = pool or PoolSettings()
        try:
            self._url = make_url(url)
            self._engine: Engine = create_engine(self._url, **_engine_options(self._url, self._pool))
        except ArgumentError as exc:
            raise DatabaseError(f"Invalid database URL: {url!r}") from exc
        logger.debug("Configured database engine for %s", self.url)

    @property
    def url(self) -> str:
        """Connection string with the password masked, suitable for logs."""

        return self._url.render_as_string(hide_password=True)

    @property
    def engine(self) -> Engine:
        return self._engine

    def initialize(self) -> None:
        """Create the users table if it does not already exist."""

        with _translate_errors("initialize database schema"):
            with self._engine.begin() as conn:
                conn.execute(CreateTable(users_table, if_not_exists=True))

    def ping(self) -> None:
        """Run a no-op query, raising :class:`DatabaseError` when unreachable."""

        with _translate_errors("reach database"):
            with self._engine.connect() as conn:
                conn.execute(select(1)).scalar_one()

    def current_time(self) -> datetime:
        with _translate_errors("query database time"):
            with self._engine.connect() as conn:
                return conn.execute(select(func.current_timestamp())).scalar_one()

    # ------------------------------------------------------------------
    # User management
    # ------------------------------------------------------------------
    def create_user(self, name: str, email: str) -> User:
        """Insert a user and return the stored row, including generated columns."""

        statement = (
            users_table.insert()
            .values(name=name, email=email)
            .returning(*users_table.c)
        )
        with _translate_errors("create user"):
            with self._engine.begin() as conn:
                row = conn.execute(statement).one()
        return self._row_to_user(row)

    def list_users(self) -> List[User]:
        statement = select(users_table).order_by(users_table.c.id)
        with _translate_errors("list users"):
            with self._engine.connect() as conn:
                rows = conn.execute(statement).all()
        return [self._row_to_user(row) for row in rows]

    def count_users(self) -> int:
        statement = select(func.count()).select_from(users_table)
        with _translate_errors("count users"):
            with self._engine.connect() as conn:
                return int(conn.execute(statement).scalar_one())

    def dispose(self) -> None:
        """Close every pooled connection."""

        self._engine.dispose()

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------
    def _row_to_user(self, row: Any) -> User:
        return User(
            id=int(row.id),
            name=str(row.name),
            email=str(row.email),
            created_at=row.created_at,
        )


__all__ = [
    "Database",
    "DatabaseError",
    "UserConflictError",
    "metadata",
    "resolve_database_url",
    "users_table",
]
