"""FastAPI application exposing CRUD endpoints for users."""
from __future__ import annotations

import asyncio
import json
import logging
from contextlib import asynccontextmanager, suppress
from datetime import datetime, timezone
from typing import Dict, List, Optional

import anyio
from fastapi import FastAPI, Request, status
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field, StrictStr, ValidationError
from starlette.exceptions import HTTPException as StarletteHTTPException

from .config import Settings, load_settings
from .errors import ErrorKind, Result, StoreError
from .models import User
from .pool import ConnectionPool, create_pool, reap_idle_connections
from .repository import UserRepository
from .schema import initialize_schema

logger = logging.getLogger("usersvc.api")

API_VERSION = "1.0.0"

VALIDATION_MESSAGE = "Name and email are required"
INTERNAL_ERROR_MESSAGE = "Internal server error"

_STATUS_BY_KIND: Dict[ErrorKind, int] = {
    ErrorKind.VALIDATION: status.HTTP_400_BAD_REQUEST,
    ErrorKind.NOT_FOUND: status.HTTP_404_NOT_FOUND,
    ErrorKind.CONFLICT: status.HTTP_409_CONFLICT,
    ErrorKind.UNAVAILABLE: status.HTTP_500_INTERNAL_SERVER_ERROR,
    ErrorKind.UNCLASSIFIED: status.HTTP_500_INTERNAL_SERVER_ERROR,
}


class UserPayload(BaseModel):
    name: StrictStr = Field(..., min_length=1)
    email: StrictStr = Field(..., min_length=1)


class UserResponse(BaseModel):
    id: int
    name: str
    email: str
    created_at: datetime
    updated_at: datetime


class MessageResponse(BaseModel):
    message: str


def user_to_response(user: User) -> UserResponse:
    return UserResponse(
        id=user.id,
        name=user.name,
        email=user.email,
        created_at=user.created_at,
        updated_at=user.updated_at,
    )


def error_response(error: StoreError) -> JSONResponse:
    """Translate a failed :class:`Result` into the JSON error envelope."""

    status_code = _STATUS_BY_KIND.get(error.kind, status.HTTP_500_INTERNAL_SERVER_ERROR)
    message = error.message
    if status_code >= status.HTTP_500_INTERNAL_SERVER_ERROR:
        message = INTERNAL_ERROR_MESSAGE
    return JSONResponse(status_code=status_code, content={"error": message})


async def parse_user_payload(request: Request) -> Result[UserPayload]:
    """Read ``{name, email}`` from the request body.

    Only ``application/json`` bodies are read. Both fields must be non-empty
    strings. Values are neither trimmed nor checked for email syntax.
    """

    media_type = request.headers.get("content-type", "").split(";", 1)[0].strip().lower()
    if media_type != "application/json":
        return Result.failure(ErrorKind.VALIDATION, VALIDATION_MESSAGE)
    try:
        body = await request.json()
    except (json.JSONDecodeError, UnicodeDecodeError):
        return Result.failure(ErrorKind.VALIDATION, VALIDATION_MESSAGE)
    if not isinstance(body, dict):
        return Result.failure(ErrorKind.VALIDATION, VALIDATION_MESSAGE)
    try:
        payload = UserPayload.model_validate(body)
    except ValidationError:
        return Result.failure(ErrorKind.VALIDATION, VALIDATION_MESSAGE)
    return Result.success(payload)


def _utc_timestamp() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


def _log_background_failure(task: "asyncio.Task") -> None:
    if task.cancelled():
        return
    exc = task.exception()
    if exc is not None:
        logger.error("Background task %s failed", task.get_name(), exc_info=exc)


def create_app(
    *,
    pool: Optional[ConnectionPool] = None,
    settings: Optional[Settings] = None,
    repository: Optional[UserRepository] = None,
    initialize_database: bool = True,
) -> FastAPI:
    """Build the service around a single owned connection pool.

    The pool is closed when the application shuts down. When
    ``initialize_database`` is set the schema initializer runs in the
    background so requests are accepted immediately.
    """

    if settings is None:
        settings = load_settings()
    if pool is None:
        pool = create_pool(settings)
    if repository is None:
        repository = UserRepository(pool)

    init_attempts = settings.init_attempts

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        schema_task: Optional[asyncio.Task] = None
        if initialize_database:
            schema_task = asyncio.create_task(
                initialize_schema(pool, attempts=init_attempts), name="schema-init"
            )
            schema_task.add_done_callback(_log_background_failure)
        reaper_task = asyncio.create_task(reap_idle_connections(pool), name="idle-reaper")
        reaper_task.add_done_callback(_log_background_failure)
        app.state.schema_task = schema_task
        app.state.reaper_task = reaper_task

        yield

        logger.info("Shutting down user service")
        for task in (schema_task, reaper_task):
            if task is not None and not task.done():
                task.cancel()
                with suppress(asyncio.CancelledError):
                    await task
        pool.close()

    app = FastAPI(
        title="User Management Microservice",
        description="CRUD API for user records stored in PostgreSQL",
        version=API_VERSION,
        lifespan=lifespan,
    )
    app.state.pool = pool
    app.state.repository = repository

    @app.exception_handler(StarletteHTTPException)
    async def handle_http_error(_: Request, exc: StarletteHTTPException) -> JSONResponse:
        detail = exc.detail if isinstance(exc.detail, str) else "Request failed"
        return JSONResponse(
            status_code=exc.status_code,
            content={"error": detail},
            headers=getattr(exc, "headers", None),
        )

    @app.exception_handler(Exception)
    async def handle_unexpected_error(request: Request, exc: Exception) -> JSONResponse:
        logger.exception("Unhandled error serving %s %s", request.method, request.url.path)
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={"error": INTERNAL_ERROR_MESSAGE},
        )

    @app.get("/")
    async def service_index() -> Dict[str, object]:
        return {
            "message": "User Management Microservice API",
            "version": API_VERSION,
            "endpoints": {
                "health": "GET /health",
                "users": {
                    "list": "GET /users",
                    "create": "POST /users",
                    "get": "GET /users/:id",
                    "update": "PUT /users/:id",
                    "delete": "DELETE /users/:id",
                },
            },
            "timestamp": _utc_timestamp(),
        }

    @app.get("/health")
    async def healthcheck() -> Dict[str, str]:
        return {"status": "OK", "timestamp": _utc_timestamp()}

    @app.get("/users", response_model=List[UserResponse])
    async def list_users():
        result = await anyio.to_thread.run_sync(repository.list_users)
        if not result.ok:
            return error_response(result.error)
        return [user_to_response(user) for user in result.value]

    @app.post("/users", response_model=UserResponse, status_code=status.HTTP_201_CREATED)
    async def create_user(request: Request):
        parsed = await parse_user_payload(request)
        if not parsed.ok:
            return error_response(parsed.error)
        payload = parsed.value
        result = await anyio.to_thread.run_sync(repository.create_user, payload.name, payload.email)
        if not result.ok:
            return error_response(result.error)
        return user_to_response(result.value)

    @app.get("/users/{user_id}", response_model=UserResponse)
    async def read_user(user_id: str):
        result = await anyio.to_thread.run_sync(repository.get_user, user_id)
        if not result.ok:
            return error_response(result.error)
        return user_to_response(result.value)

    @app.put("/users/{user_id}", response_model=UserResponse)
    async def update_user(user_id: str, request: Request):
        parsed = await parse_user_payload(request)
        if not parsed.ok:
            return error_response(parsed.error)
        payload = parsed.value
        result = await anyio.to_thread.run_sync(
            repository.update_user, user_id, payload.name, payload.email
        )
        if not result.ok:
            return error_response(result.error)
        return user_to_response(result.value)

    @app.delete("/users/{user_id}", response_model=MessageResponse)
    async def delete_user(user_id: str):
        result = await anyio.to_thread.run_sync(repository.delete_user, user_id)
        if not result.ok:
            return error_response(result.error)
        return MessageResponse(message="User deleted successfully")

    return app


__all__ = ["UserPayload", "UserResponse", "create_app", "error_response", "parse_user_payload"]
