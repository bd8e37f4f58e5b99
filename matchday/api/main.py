"""FastAPI application configuration and setup.

Main entry point for the HTTP API with CORS, middleware,
rate limiting, and lifecycle management.
"""

import uuid
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from contextvars import ContextVar
from typing import Any

import structlog
from fastapi import FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded

from matchday import __version__
from matchday.api.rate_limit import MAX_REQUEST_BODY_BYTES, limiter
from matchday.api.routes import api_router
from matchday.engine.webhook_cache import WebhookUrlCache
from matchday.exceptions import EngineClientError, ManifestError, MatchdayError, ValidationError
from matchday.settings import Settings, get_settings
from matchday.storage import close_db, init_db
from matchday.workflows.handlers import default_handlers

# Context variable for correlation ID (async-safe)
_correlation_id: ContextVar[str | None] = ContextVar("correlation_id", default=None)

# Singleton app instance
_app: FastAPI | None = None


async def _sync_engine(app: FastAPI) -> None:
    """Push registry workflows to the engine and warm the webhook cache."""
    from matchday.compiler import ManifestCompiler
    from matchday.engine.client import get_engine_client
    from matchday.engine.sync import WorkflowSyncService
    from matchday.workflows.callback_url import resolve_callback_url
    from matchday.workflows.registry import get_workflow_registry

    client = get_engine_client()
    if client is None:
        return
    settings = get_settings()
    service = WorkflowSyncService(
        client,
        app.state.webhook_cache,
        get_workflow_registry(),
        ManifestCompiler(resolve_callback_url(settings)),
        manifests_dir=settings.manifests_dir,
    )
    await service.sync()


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan manager.

    - Startup: verify the database, sync the engine, start the scheduler
    - Shutdown: stop the scheduler, close the engine client and database
    """
    settings = get_settings()

    if settings.environment != "testing":
        await init_db()
        if settings.engine_configured and settings.matchday_role in ("all", "api"):
            await _sync_engine(app)

    # Respects MATCHDAY_ROLE to prevent duplicate jobs in multi-replica deployments
    scheduler = None
    should_start_scheduler = (
        settings.scheduler_enabled
        and settings.environment != "testing"
        and settings.matchday_role in ("all", "scheduler")
    )
    if should_start_scheduler:
        from matchday.scheduler import SchedulerService

        scheduler = SchedulerService(cache=app.state.webhook_cache)
        await scheduler.start()

    yield

    if scheduler:
        await scheduler.stop()

    from matchday.engine.client import reset_engine_client

    await reset_engine_client()
    await close_db()


def create_app(settings: Settings | None = None) -> FastAPI:
    """Create and configure a FastAPI application instance."""
    if settings is None:
        settings = get_settings()

    app = FastAPI(
        title="Matchday",
        description="Workflow orchestration for the football newsletter pipeline",
        version=__version__,
        docs_url="/api/docs" if settings.debug else None,
        redoc_url="/api/redoc" if settings.debug else None,
        openapi_url="/api/openapi.json" if settings.debug else None,
        lifespan=lifespan,
    )

    # Process-local state shared by the router, sync and scheduler
    app.state.webhook_cache = WebhookUrlCache()
    app.state.handlers = default_handlers()

    # Configure CORS; restrict methods and headers outside development
    open_cors = settings.environment in ("development", "testing")
    app.add_middleware(
        CORSMiddleware,
        allow_origins=_get_allowed_origins(settings),
        allow_credentials=True,
        allow_methods=["*"] if open_cors else ["GET", "POST", "OPTIONS"],
        allow_headers=["*"]
        if open_cors
        else ["Content-Type", "X-API-Key", "X-Correlation-ID", "X-Webhook-Secret"],
    )

    app.state.limiter = limiter
    app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)

    app.middleware("http")(_body_size_limit_middleware)
    app.middleware("http")(_security_headers_middleware)
    # Correlation ID is registered last so it wraps everything else
    app.middleware("http")(_correlation_middleware)

    app.include_router(api_router, prefix="/api")

    _register_exception_handlers(app)

    return app


def _get_allowed_origins(settings: Settings) -> list[str]:
    """Explicit ALLOWED_ORIGINS wins; otherwise open in development only."""
    if settings.allowed_origins:
        return [o.strip() for o in settings.allowed_origins.split(",") if o.strip()]

    if settings.environment in ("development", "testing"):
        return ["*"]
    if settings.environment == "staging":
        return ["http://localhost:3000", "http://localhost:8080"]
    return [f"https://{d.strip()}" for d in settings.public_domains.split(",") if d.strip()]


async def _body_size_limit_middleware(request: Request, call_next):
    """Reject requests whose declared body exceeds the limit."""
    content_length = request.headers.get("content-length")
    if content_length and content_length.isdigit() and int(content_length) > MAX_REQUEST_BODY_BYTES:
        return JSONResponse(
            status_code=413,
            content={
                "error": {
                    "code": 413,
                    "message": f"Request body too large. Maximum size is {MAX_REQUEST_BODY_BYTES} bytes.",
                    "type": "request_too_large",
                }
            },
        )
    return await call_next(request)


async def _security_headers_middleware(request: Request, call_next):
    settings = get_settings()
    response = await call_next(request)

    response.headers["X-Content-Type-Options"] = "nosniff"
    response.headers["X-Frame-Options"] = "DENY"
    response.headers["Referrer-Policy"] = "strict-origin-when-cross-origin"
    if settings.environment in ("production", "staging"):
        response.headers["Strict-Transport-Security"] = "max-age=31536000; includeSubDomains"
    # JSON-only API
    response.headers["Content-Security-Policy"] = "default-src 'none'; frame-ancestors 'none'"
    if request.url.path.startswith("/api/"):
        response.headers["Cache-Control"] = "no-store, no-cache, must-revalidate"
    return response


async def _correlation_middleware(request: Request, call_next):
    """Generate or propagate X-Correlation-ID for each request."""
    correlation_id = request.headers.get("X-Correlation-ID") or str(uuid.uuid4())
    _correlation_id.set(correlation_id)

    response = await call_next(request)
    response.headers["X-Correlation-ID"] = correlation_id
    return response


def get_correlation_id() -> str | None:
    """Current request's correlation ID, or None outside a request."""
    return _correlation_id.get()


def _status_for(exc: MatchdayError) -> int:
    if isinstance(exc, ValidationError):
        return 400
    if isinstance(exc, ManifestError):
        return 422
    if isinstance(exc, EngineClientError):
        return exc.status_code or 502
    return 500


def _error_response(status_code: int, message: Any, error_type: str, correlation_id: str) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content={
            "error": {
                "code": status_code,
                "message": message,
                "type": error_type,
                "correlation_id": correlation_id,
            }
        },
        headers={"X-Correlation-ID": correlation_id},
    )


def _register_exception_handlers(app: FastAPI) -> None:
    @app.exception_handler(MatchdayError)
    async def matchday_error_handler(request: Request, exc: MatchdayError) -> JSONResponse:
        """Application errors with correlation ID."""
        correlation_id = exc.correlation_id or get_correlation_id() or str(uuid.uuid4())
        error_type = exc.__class__.__name__.replace("Error", "_error").lower()
        status_code = _status_for(exc)

        logger = structlog.get_logger()
        logger.error(
            "Matchday error",
            error_type=error_type,
            status_code=status_code,
            correlation_id=correlation_id,
            exc_info=exc,
        )

        # Client errors are safe to echo; server errors only in debug
        settings = get_settings()
        if status_code < 500 or settings.debug:
            message = str(exc)
        else:
            message = f"An error occurred. Correlation ID: {correlation_id}"
        return _error_response(status_code, message, error_type, correlation_id)

    @app.exception_handler(HTTPException)
    async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
        correlation_id = get_correlation_id() or str(uuid.uuid4())
        return _error_response(exc.status_code, exc.detail, "http_error", correlation_id)

    @app.exception_handler(Exception)
    async def general_exception_handler(request: Request, exc: Exception) -> JSONResponse:
        settings = get_settings()
        correlation_id = get_correlation_id() or str(uuid.uuid4())

        logger = structlog.get_logger()
        logger.exception("Unhandled exception", correlation_id=correlation_id, exc_info=exc)

        detail = str(exc) if settings.debug else "Internal server error"
        return _error_response(500, detail, "internal_error", correlation_id)


def get_app() -> FastAPI:
    """Get or create the singleton FastAPI application."""
    global _app
    if _app is None:
        _app = create_app()
    return _app


# For uvicorn: "matchday.api.main:get_app" with --factory,
# or "matchday.api.main:app" which initializes on first access.
def __getattr__(name: str) -> Any:
    if name == "app":
        return get_app()
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")
