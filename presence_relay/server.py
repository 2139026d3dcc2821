"""
FastAPI server for the presence relay service.

This module implements the HTTP API: sessions heartbeat to announce themselves,
leave to depart early, and any client can read the aggregate presence state.
Each request is handled independently; the key-value store is the only shared
state.
"""

import time
from collections.abc import AsyncGenerator, Awaitable, Callable
from contextlib import asynccontextmanager
from typing import Any

import structlog
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse, Response
from pydantic import BaseModel, ConfigDict, Field
from starlette.exceptions import HTTPException as StarletteHTTPException

from . import __version__
from .aggregate import Aggregator
from .config import Settings
from .errors import PresenceError, RateLimitExceeded, StoreError, ValidationError
from .kv import Clock, KeyValueStore, MemoryKeyValueStore, RedisKeyValueStore
from .models import Mood, PresenceState
from .ratelimit import RateLimiter
from .store import PresenceStore
from .validation import is_valid_mood, is_valid_session_id

logger = structlog.get_logger(__name__)

INVALID_SESSION_ID = "Invalid sessionId: must be 8-64 alphanumeric characters"
INTERNAL_ERROR = "Internal server error"

CORS_ALLOW_METHODS = "GET, POST, DELETE, OPTIONS"
CORS_ALLOW_HEADERS = "Content-Type"
CORS_MAX_AGE = "86400"
LOOPBACK_HOSTS = ("localhost", "127.0.0.1", "[::1]")


# API Request/Response Schemas
class HeartbeatRequest(BaseModel):
    """Payload for heartbeat requests. Fields are checked by the handler."""

    model_config = ConfigDict(populate_by_name=True)

    session_id: Any = Field(None, alias="sessionId")
    mood: Any = Field(None, description="Optional mood from the fixed set")


class LeaveRequest(BaseModel):
    """Payload for leave requests."""

    model_config = ConfigDict(populate_by_name=True)

    session_id: Any = Field(None, alias="sessionId")


class SuccessResponse(BaseModel):
    success: bool = True


class ClientConfigResponse(BaseModel):
    """Values a browser client needs to drive its heartbeat loop."""

    model_config = ConfigDict(populate_by_name=True)

    heartbeat_interval_ms: int = Field(..., alias="heartbeatIntervalMs")
    presence_ttl_seconds: int = Field(..., alias="presenceTtlSeconds")
    supports_web_socket: bool = Field(False, alias="supportsWebSocket")
    version: int = 2


def is_allowed_origin(origin: str, allowed_substring: str) -> bool:
    """Return True for loopback origins and origins containing the production domain."""
    if any(host in origin for host in LOOPBACK_HOSTS):
        return True
    return bool(allowed_substring) and allowed_substring in origin


def cors_headers(origin: str | None, settings: Settings) -> dict[str, str]:
    """Build the CORS headers for a response to a request from ``origin``."""
    headers = {
        "Access-Control-Allow-Methods": CORS_ALLOW_METHODS,
        "Access-Control-Allow-Headers": CORS_ALLOW_HEADERS,
        "Access-Control-Max-Age": CORS_MAX_AGE,
    }
    # Unknown origins get no Allow-Origin header, so the browser blocks the response
    if origin and is_allowed_origin(origin, settings.allowed_origin_substring):
        headers["Access-Control-Allow-Origin"] = origin
        headers["Vary"] = "Origin"
    return headers


def _error_response(status_code: int, message: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"error": message})


def create_app(
    kv: KeyValueStore,
    settings: Settings | None = None,
    clock: Clock = time.time,
) -> FastAPI:
    """
    Create a FastAPI application over the given key-value store.

    Args:
        kv: The key-value backend holding presence and rate-limit state
        settings: Service settings (defaults are used when omitted)
        clock: Time source, injectable for tests

    Returns:
        Configured FastAPI application
    """
    settings = settings or Settings()

    presence_store = PresenceStore(kv, ttl_seconds=settings.presence_ttl_seconds, clock=clock)
    aggregator = Aggregator(
        kv, page_size=settings.scan_page_size, fetch_batch_size=settings.fetch_batch_size
    )
    heartbeat_limiter = RateLimiter(
        kv, "heartbeat", grace_seconds=settings.ratelimit_grace_seconds, clock=clock
    )

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
        """Lifespan context manager for FastAPI application."""
        yield
        await kv.close()

    app = FastAPI(
        title=settings.app_name,
        description="Anonymous presence aggregation service",
        version=__version__,
        lifespan=lifespan,
    )

    # MARK: - Middleware & error handlers

    @app.middleware("http")
    async def apply_cors(
        request: Request, call_next: Callable[[Request], Awaitable[Response]]
    ) -> Response:
        if not request.url.path.startswith("/api"):
            return await call_next(request)

        if request.method == "OPTIONS":
            response = Response(status_code=204)
        else:
            try:
                response = await call_next(request)
            except Exception:
                # Handled here so the 500 still carries the CORS headers
                logger.exception("Unexpected error", path=request.url.path)
                response = _error_response(500, INTERNAL_ERROR)

        response.headers.update(cors_headers(request.headers.get("origin"), settings))
        return response

    @app.exception_handler(PresenceError)
    async def presence_error_handler(request: Request, exc: PresenceError) -> Response:
        if isinstance(exc, StoreError):
            logger.exception(
                "Store operation failed", path=request.url.path, method=request.method
            )
            return _error_response(exc.status_code, INTERNAL_ERROR)
        return _error_response(exc.status_code, str(exc))

    @app.exception_handler(RequestValidationError)
    async def request_validation_handler(
        _: Request, exc: RequestValidationError
    ) -> Response:
        return _error_response(400, "Invalid request body")

    @app.exception_handler(StarletteHTTPException)
    async def http_exception_handler(
        _: Request, exc: StarletteHTTPException
    ) -> Response:
        message = "Not found" if exc.status_code == 404 else str(exc.detail)
        return _error_response(exc.status_code, message)

    @app.exception_handler(Exception)
    async def general_exception_handler(request: Request, exc: Exception) -> Response:
        logger.exception("Unexpected error", path=request.url.path)
        return _error_response(500, INTERNAL_ERROR)

    # MARK: - Routes

    @app.get("/api/")
    async def root() -> dict[str, str]:
        """Health check endpoint."""
        return {"name": settings.app_name, "status": "ok"}

    @app.get("/api/config")
    async def client_config() -> ClientConfigResponse:
        """Heartbeat cadence and capabilities for browser clients."""
        return ClientConfigResponse(
            heartbeat_interval_ms=settings.heartbeat_interval_ms,
            presence_ttl_seconds=settings.presence_ttl_seconds,
        )

    @app.post("/api/heartbeat")
    async def heartbeat(payload: HeartbeatRequest) -> SuccessResponse:
        """
        Register or refresh a session's presence.

        Args:
            payload: The session id and optional mood

        Returns:
            ``{"success": true}`` once the presence record has been written
        """
        if not is_valid_session_id(payload.session_id):
            raise ValidationError(INVALID_SESSION_ID)
        # An explicit null is not the same as an omitted mood
        mood_is_null = "mood" in payload.model_fields_set and payload.mood is None
        if mood_is_null or not is_valid_mood(payload.mood):
            raise ValidationError("Invalid mood value")

        allowed = await heartbeat_limiter.check_and_record(
            payload.session_id,
            max_requests=settings.heartbeat_max_requests,
            window_seconds=settings.heartbeat_window_seconds,
        )
        if not allowed:
            raise RateLimitExceeded()

        mood = Mood(payload.mood) if payload.mood is not None else None
        await presence_store.heartbeat(payload.session_id, mood)
        return SuccessResponse()

    @app.get("/api/presence")
    async def get_presence() -> JSONResponse:
        """
        Get the number of present sessions and their mood distribution.

        Returns:
            ``{"count": int, "moods": {mood: int}}``, uncached
        """
        state: PresenceState = await aggregator.compute()
        return JSONResponse(
            content=state.model_dump(), headers={"Cache-Control": "no-store"}
        )

    @app.delete("/api/presence")
    async def leave(payload: LeaveRequest) -> SuccessResponse:
        """Remove a session's presence immediately instead of waiting for expiry."""
        if not is_valid_session_id(payload.session_id):
            raise ValidationError(INVALID_SESSION_ID)

        await presence_store.leave(payload.session_id)
        return SuccessResponse()

    return app


def build_store(settings: Settings) -> KeyValueStore:
    """Create the key-value backend selected by ``settings.store_backend``."""
    if settings.store_backend == "redis":
        return RedisKeyValueStore.from_url(settings.redis_url)
    return MemoryKeyValueStore()


settings = Settings()

# Default app instance for ``uvicorn presence_relay.server:app``
app = create_app(build_store(settings), settings)


def main() -> None:
    """Main entry point for the server."""
    import uvicorn

    from .logging import setup_logging

    setup_logging(settings.debug)
    uvicorn.run(
        "presence_relay.server:app",
        host=settings.host,
        port=settings.port,
        reload=settings.debug,
        log_level="debug" if settings.debug else "info",
    )


if __name__ == "__main__":
    main()
