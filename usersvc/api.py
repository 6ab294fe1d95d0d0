"""FastAPI application exposing the users endpoints."""
from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from datetime import datetime
from typing import AsyncIterator, Dict, List

import anyio
from email_validator import EmailNotValidError, validate_email
from fastapi import Depends, FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field, field_validator

from .config import Settings, load_settings
from .database import Database, DatabaseError, UserConflictError
from .models import User

logger = logging.getLogger("usersvc.api")

MAX_FIELD_LENGTH = 100


class CreateUserRequest(BaseModel):
    name: str = Field(..., max_length=MAX_FIELD_LENGTH)
    email: str

    @field_validator("email")
    @classmethod
    def _check_email_format(cls, value: str) -> str:
        if len(value) > MAX_FIELD_LENGTH:
            raise ValueError(f"email must be at most {MAX_FIELD_LENGTH} characters")
        # Structure only; the stored address is exactly what was submitted.
        try:
            validate_email(value, check_deliverability=False, globally_deliverable=False)
        except EmailNotValidError as exc:
            raise ValueError(f"value is not a valid email address: {exc}") from exc
        return value


class UserResponse(BaseModel):
    id: int
    name: str
    email: str
    created_at: datetime


class UserListResponse(BaseModel):
    users: List[UserResponse]


class DatabaseTimeResponse(BaseModel):
    status: str
    time: datetime


class HealthResponse(BaseModel):
    status: str


def user_to_response(user: User) -> UserResponse:
    return UserResponse(
        id=user.id,
        name=user.name,
        email=user.email,
        created_at=user.created_at,
    )


def _error_response(status_code: int, error: str, message: str | None = None) -> JSONResponse:
    content: Dict[str, str] = {"error": error}
    if message is not None:
        content["message"] = message
    return JSONResponse(status_code=status_code, content=content)


def _describe_validation_errors(exc: RequestValidationError) -> str:
    parts: List[str] = []
    for error in exc.errors():
        location = ".".join(str(item) for item in error.get("loc", ()))
        message = str(error.get("msg", "invalid value"))
        parts.append(f"{location}: {message}" if location else message)
    return "; ".join(parts) or "Invalid request"


def create_app(
    *,
    database: Database | None = None,
    settings: Settings | None = None,
) -> FastAPI:
    """Build the ASGI application.

    The users table is created from the lifespan hook before the first request
    is served. When ``settings.schema_fail_fast`` is set a failure there aborts
    startup; otherwise it is logged and the service keeps running.
    """

    if settings is None:
        settings = load_settings()
    if database is None:
        database = Database(settings.database_url, pool=settings.pool)

    @asynccontextmanager
    async def lifespan(_: FastAPI) -> AsyncIterator[None]:
        try:
            await anyio.to_thread.run_sync(database.initialize)
        except DatabaseError:
            logger.exception("Failed to initialize database schema")
            if settings.schema_fail_fast:
                raise
        else:
            logger.info("Database schema initialized")
        try:
            yield
        finally:
            await anyio.to_thread.run_sync(database.dispose)

    app = FastAPI(
        title="Users Service",
        description="Minimal users API backed by a pooled PostgreSQL database",
        version="1.0.0",
        lifespan=lifespan,
    )
    app.state.database = database
    app.state.settings = settings

    def get_db() -> Database:
        return database

    @app.get("/test", response_model=DatabaseTimeResponse)
    async def database_time(db: Database = Depends(get_db)):
        try:
            now = await anyio.to_thread.run_sync(db.current_time)
        except DatabaseError:
            logger.exception("Database time query failed")
            return _error_response(status.HTTP_500_INTERNAL_SERVER_ERROR, "Database connection failed")
        return DatabaseTimeResponse(status="success", time=now)

    @app.get("/health", response_model=HealthResponse)
    async def healthcheck(db: Database = Depends(get_db)):
        try:
            await anyio.to_thread.run_sync(db.ping)
        except DatabaseError:
            logger.exception("Health check query failed")
            return JSONResponse(
                status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
                content={"status": "unhealthy"},
            )
        return HealthResponse(status="healthy")

    @app.post(
        "/users",
        response_model=UserResponse,
        status_code=status.HTTP_201_CREATED,
    )
    async def create_user(payload: CreateUserRequest, db: Database = Depends(get_db)):
        try:
            user = await anyio.to_thread.run_sync(db.create_user, payload.name, payload.email)
        except UserConflictError as exc:
            logger.warning("Rejected user %s: %s", payload.email, exc)
            return _error_response(
                status.HTTP_409_CONFLICT,
                "Conflict",
                "A user with this email already exists",
            )
        except DatabaseError:
            logger.exception("Failed to create user %s", payload.email)
            return _error_response(
                status.HTTP_500_INTERNAL_SERVER_ERROR,
                "Internal Server Error",
                "Failed to create user",
            )
        return user_to_response(user)

    @app.get("/users", response_model=UserListResponse)
    async def list_users(db: Database = Depends(get_db)):
        try:
            users = await anyio.to_thread.run_sync(db.list_users)
        except DatabaseError:
            logger.exception("Failed to retrieve users")
            return _error_response(
                status.HTTP_500_INTERNAL_SERVER_ERROR,
                "Internal Server Error",
                "Failed to retrieve users",
            )
        return UserListResponse(users=[user_to_response(user) for user in users])

    @app.exception_handler(RequestValidationError)
    async def handle_validation_error(_: Request, exc: RequestValidationError):
        return _error_response(
            status.HTTP_400_BAD_REQUEST,
            "Bad Request",
            _describe_validation_errors(exc),
        )

    return app


__all__ = [
    "CreateUserRequest",
    "UserListResponse",
    "UserResponse",
    "create_app",
    "user_to_response",
]
