"""Phase Gate Service: FastAPI application entry point."""

import signal
import uuid
from contextlib import asynccontextmanager

# CRITICAL ORDER: configure_structlog MUST be called before all other imports
# that create loggers (structlog caches the processor chain on first use).
from phasegate.core.logging import configure_structlog
from phasegate.core.config import get_settings as _get_settings_early

_early_settings = _get_settings_early()
configure_structlog(
    log_level="DEBUG" if _early_settings.debug else "INFO",
    json_logs=not _early_settings.debug,
)

import structlog

from fastapi import FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from phasegate.api.routes import api_router
from phasegate.core.config import get_settings
from phasegate.core.exceptions import (
    AlreadyOverriddenError,
    FactProviderError,
    PhaseGateError,
    PhaseNotFoundError,
    StaleError,
    StorageError,
    UnauthorizedError,
    ValidationFailedError,
)
from phasegate.db import close_db, init_db
from phasegate.middleware.correlation import get_correlation_id, setup_correlation_middleware

logger = structlog.get_logger(__name__)

# Most specific first; the first isinstance match wins
_ERROR_STATUS: tuple[tuple[type[PhaseGateError], int], ...] = (
    (PhaseNotFoundError, 404),
    (UnauthorizedError, 403),
    (ValidationFailedError, 422),
    (AlreadyOverriddenError, 409),
    (StaleError, 409),
    (FactProviderError, 503),
    (StorageError, 503),
)


def status_for(exc: PhaseGateError) -> int:
    for error_type, status_code in _ERROR_STATUS:
        if isinstance(exc, error_type):
            return status_code
    return 500


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler for startup/shutdown events."""
    # SIGTERM flips this so /api/health returns 503 while connections drain
    app.state.shutting_down = False

    def handle_sigterm(signum, frame):
        app.state.shutting_down = True
        logger.info("sigterm_received", action="health_check_503_draining_connections")

    signal.signal(signal.SIGTERM, handle_sigterm)

    settings = get_settings()
    logger.info("startup_begin", app_name=settings.app_name, debug=settings.debug)

    await init_db()
    logger.info("db_initialized")

    yield

    logger.info("shutdown_begin")
    await close_db()
    logger.info("shutdown_complete")


async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    """Global exception handler for HTTPException with debug_id tracking.

    Logs errors server-side with full context, returns sanitized response to client.
    """
    debug_id = str(uuid.uuid4())

    logger.error(
        "http_exception",
        status_code=exc.status_code,
        debug_id=debug_id,
        correlation_id=get_correlation_id(),
        path=request.url.path,
        method=request.method,
        user_id=getattr(request.state, "user_id", None),
        detail=exc.detail,
    )

    return JSONResponse(
        status_code=exc.status_code,
        content={"detail": exc.detail, "debug_id": debug_id},
        headers=getattr(exc, "headers", None),
    )


async def phase_gate_exception_handler(request: Request, exc: PhaseGateError) -> JSONResponse:
    """Map domain errors to HTTP statuses and a stable ``code`` field.

    FactProviderError (503) means the gate could not be evaluated; clients
    must treat the phase as blocked.
    """
    debug_id = str(uuid.uuid4())
    status_code = status_for(exc)
    code = getattr(exc, "code", "internal_error")
    detail = getattr(exc, "message", None) or str(exc)

    log = logger.warning if status_code < 500 else logger.error
    log(
        "phase_gate_error",
        status_code=status_code,
        code=code,
        debug_id=debug_id,
        correlation_id=get_correlation_id(),
        path=request.url.path,
        method=request.method,
        user_id=getattr(request.state, "user_id", None),
        detail=detail,
        error_type=type(exc).__name__,
    )

    if isinstance(exc, FactProviderError):
        detail = f"{detail}. The gate must be treated as blocked."
    elif status_code == 500:
        detail = "Internal server error"
    return JSONResponse(
        status_code=status_code,
        content={"detail": detail, "code": code, "debug_id": debug_id},
    )


async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Global exception handler for unhandled errors with debug_id tracking.

    Logs full exception with traceback, returns generic 500 to client.
    """
    debug_id = str(uuid.uuid4())

    logger.error(
        "unhandled_exception",
        debug_id=debug_id,
        correlation_id=get_correlation_id(),
        path=request.url.path,
        method=request.method,
        user_id=getattr(request.state, "user_id", None),
        error=str(exc),
        error_type=type(exc).__name__,
        exc_info=True,
    )

    return JSONResponse(
        status_code=500,
        content={"detail": "Internal server error", "debug_id": debug_id},
    )


def register_exception_handlers(app: FastAPI) -> None:
    app.exception_handler(HTTPException)(http_exception_handler)
    app.exception_handler(PhaseGateError)(phase_gate_exception_handler)
    app.exception_handler(Exception)(generic_exception_handler)


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    settings = get_settings()

    app = FastAPI(
        title=settings.app_name,
        description="Phase gate: blocks a project phase until its preconditions hold, with audited forced unlock",
        version="0.1.0",
        docs_url="/docs" if settings.debug else None,
        redoc_url="/redoc" if settings.debug else None,
        lifespan=lifespan,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Correlation ID middleware (runs first on incoming requests)
    setup_correlation_middleware(app)

    register_exception_handlers(app)

    app.include_router(api_router, prefix="/api")

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "phasegate.main:app",
        host="0.0.0.0",
        port=8000,
        reload=True,
    )
