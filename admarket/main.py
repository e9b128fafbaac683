import logging
from contextlib import asynccontextmanager
from collections.abc import AsyncIterator

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from admarket.api import deals, health
from admarket.core.config import settings
from admarket.core.errors import (
    DealNotFoundError,
    DealWorkflowError,
    ForbiddenError,
    InfrastructureError,
    ValidationError,
)
from admarket.core.logging_config import setup_logging
from admarket.core.middleware import RequestLoggingMiddleware
from admarket.db.session import engine
from admarket.runtime import build_runtime
from admarket.services.mtproto import stop_client as stop_mtproto

# Configure structured JSON logging before anything else
setup_logging()

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Build the process runtime (bus, listeners, scheduler); release clients on shutdown."""
    if getattr(app.state, "runtime", None) is None:
        app.state.runtime = build_runtime()
    try:
        async with engine.begin():
            pass
        logger.info("Database connection established")
    except Exception as exc:
        logger.warning("Database connection not available at startup: %s", exc)
    yield
    await stop_mtproto()
    await engine.dispose()


app = FastAPI(
    title=settings.app_name,
    description="Deal escrow workflow: status transitions, automation and monitoring.",
    version="1.0.0",
    openapi_url="/api/openapi.json",
    docs_url="/api/docs",
    debug=settings.debug,
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)
app.add_middleware(RequestLoggingMiddleware)


# ---------------------------------------------------------------------------
# Global exception handlers
# ---------------------------------------------------------------------------
_STATUS_CODES: dict[type[DealWorkflowError], int] = {
    ValidationError: 409,
    ForbiddenError: 403,
    DealNotFoundError: 404,
    InfrastructureError: 503,
}


def _error_response(status_code: int, exc: DealWorkflowError) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content={"detail": exc.message, "code": exc.code},
    )


@app.exception_handler(DealWorkflowError)
async def workflow_error_handler(request: Request, exc: DealWorkflowError) -> JSONResponse:
    for error_type, status_code in _STATUS_CODES.items():
        if isinstance(exc, error_type):
            if status_code >= 500:
                logger.error("%s on %s %s: %s", exc.code, request.method, request.url.path, exc)
            return _error_response(status_code, exc)
    logger.exception("Unhandled workflow error on %s %s", request.method, request.url.path)
    return _error_response(500, exc)


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.exception("Unhandled exception on %s %s", request.method, request.url.path)
    return JSONResponse(status_code=500, content={"detail": "Internal server error"})


# ---------------------------------------------------------------------------
# Routers
# ---------------------------------------------------------------------------
app.include_router(health.router, prefix="/api")
app.include_router(deals.router, prefix="/api")
