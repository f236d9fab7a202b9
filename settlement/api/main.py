"""
Main FastAPI application.

Marketplace settlement API with:
- CORS configuration
- Domain error mapping
- Request ID tracking
- Structured logging
- Prometheus metrics
"""
import time
import uuid
from contextlib import asynccontextmanager
from typing import Any, AsyncGenerator, Dict

import structlog
from fastapi import FastAPI, Request, Response, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from settlement import __version__
from settlement.config import get_settings
from settlement.core.exceptions import (
    InvalidItems,
    PaymentProcessorError,
    SettlementConflictError,
    SettlementError,
    SettlementNotFoundError,
    SettlementValidationError,
)
from settlement.database.connection import close_db, init_db
from settlement.integrations.webhook_handler import WebhookError
from settlement.monitoring.logging import setup_logging

from .dependencies import get_webhook_handler
from .routes import (
    admin_router,
    monitoring_router,
    order_router,
    payout_router,
    seller_router,
    webhook_router,
)

# Setup logging first
setup_logging()
logger = structlog.get_logger(__name__)

settings = get_settings()


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, Any]:
    """Application lifespan manager."""
    logger.info(
        "application_startup",
        app_name=settings.app_name,
        env=settings.app_env,
        test_mode=settings.is_test_mode,
    )

    try:
        await init_db()
        logger.info("database_initialized")
    except Exception as e:
        logger.error("database_initialization_failed", error=str(e))
        raise

    yield

    logger.info("application_shutdown")
    try:
        await get_webhook_handler().close()
        await close_db()
        logger.info("database_connections_closed")
    except Exception as e:
        logger.error("shutdown_error", error=str(e))


app = FastAPI(
    title="Marketplace Settlement Engine",
    description=(
        "Splits marketplace payments between sellers, holds funds for a configurable "
        "period and releases them to each seller's Stripe connected account."
    ),
    version=__version__,
    lifespan=lifespan,
    docs_url="/docs",
    redoc_url="/redoc",
    openapi_url="/openapi.json",
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.get_allowed_origins_list(),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.middleware("http")
async def add_request_id_middleware(request: Request, call_next: Any) -> Response:
    """Bind a request ID to the logging context and echo it in the response."""
    request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())
    start_time = time.time()

    structlog.contextvars.bind_contextvars(
        request_id=request_id,
        method=request.method,
        path=request.url.path,
    )

    try:
        response = await call_next(request)
        response.headers["X-Request-ID"] = request_id
        logger.info(
            "request_completed",
            status_code=response.status_code,
            duration_seconds=time.time() - start_time,
        )
        return response
    finally:
        structlog.contextvars.unbind_contextvars("request_id", "method", "path", "user_id")


def _error_body(exc: Exception) -> Dict[str, Any]:
    body: Dict[str, Any] = {"error": type(exc).__name__, "message": str(exc)}
    if isinstance(exc, InvalidItems):
        body["product_ids"] = exc.product_ids
    return body


_STATUS_BY_ERROR = (
    (SettlementValidationError, status.HTTP_400_BAD_REQUEST),
    (SettlementConflictError, status.HTTP_409_CONFLICT),
    (SettlementNotFoundError, status.HTTP_404_NOT_FOUND),
    (PaymentProcessorError, status.HTTP_502_BAD_GATEWAY),
)


@app.exception_handler(SettlementError)
async def settlement_exception_handler(request: Request, exc: SettlementError) -> JSONResponse:
    """Map domain errors to HTTP status codes."""
    status_code = next(
        (code for error_cls, code in _STATUS_BY_ERROR if isinstance(exc, error_cls)),
        status.HTTP_500_INTERNAL_SERVER_ERROR,
    )
    log = logger.error if status_code >= 500 else logger.warning
    log(
        "settlement_error",
        error=str(exc),
        error_type=type(exc).__name__,
        status_code=status_code,
        path=request.url.path,
    )
    return JSONResponse(status_code=status_code, content=_error_body(exc))


@app.exception_handler(WebhookError)
async def webhook_exception_handler(request: Request, exc: WebhookError) -> JSONResponse:
    return JSONResponse(status_code=status.HTTP_400_BAD_REQUEST, content=_error_body(exc))


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Global exception handler for unhandled exceptions."""
    logger.error(
        "unhandled_exception",
        error=str(exc),
        error_type=type(exc).__name__,
        path=request.url.path,
        exc_info=exc,
    )
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={
            "error": "Internal server error",
            "message": "An unexpected error occurred. Please try again later.",
        },
    )


app.include_router(order_router)
app.include_router(payout_router)
app.include_router(seller_router)
app.include_router(admin_router)
app.include_router(webhook_router)
app.include_router(monitoring_router)


@app.get("/", tags=["root"])
async def root() -> dict[str, Any]:
    """Root endpoint with API information."""
    return {
        "service": settings.app_name,
        "version": __version__,
        "status": "operational",
        "environment": settings.app_env,
        "test_mode": settings.is_test_mode,
        "docs": "/docs",
        "health": "/health",
        "metrics": "/metrics",
    }


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "settlement.api.main:app",
        host=settings.api_host,
        port=settings.api_port,
        reload=settings.debug,
        workers=settings.api_workers if not settings.debug else 1,
        log_level=settings.log_level.lower(),
    )
