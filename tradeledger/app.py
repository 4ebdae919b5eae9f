"""
TradeLedger Main Application
FastAPI application with routers, middleware and error mapping.
"""

import logging
import sys
from contextlib import asynccontextmanager
from typing import AsyncGenerator, Dict

import structlog
from fastapi import APIRouter, FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from .config.settings import settings
from .database.connection import close_database, init_database
from .errors import ErrorKind, TradeLedgerError
from .middleware.logging import RequestLoggingMiddleware, StructuredLoggingMiddleware
from .routers import (
    admin_router,
    api_keys_router,
    auth_router,
    health_router,
    platforms_router,
    sub_accounts_router,
    trading_logs_router,
    transactions_router,
    users_router,
)


def setup_logging() -> None:
    """Configure stdlib logging and structlog for the application."""
    logging.basicConfig(
        format=settings.logging.format,
        level=getattr(logging, settings.logging.level.upper()),
        stream=sys.stdout,
    )

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.UnicodeDecoder(),
            structlog.processors.JSONRenderer() if settings.logging.json_format else structlog.dev.ConsoleRenderer(),
        ],
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )


setup_logging()
logger = structlog.get_logger("tradeledger.app")


# ============================================================================
# Lifespan Events
# ============================================================================

@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator:
    logger.info(
        "Starting TradeLedger",
        app_name=settings.app_name,
        version=settings.app_version,
        environment=settings.environment,
    )

    await init_database()
    logger.info("TradeLedger started")

    yield

    await close_database()
    logger.info("TradeLedger shutdown complete")


# ============================================================================
# Exception Handlers
# ============================================================================

ERROR_STATUS: Dict[ErrorKind, int] = {
    ErrorKind.VALIDATION: status.HTTP_400_BAD_REQUEST,
    ErrorKind.NOT_FOUND: status.HTTP_404_NOT_FOUND,
    ErrorKind.CONFLICT: status.HTTP_409_CONFLICT,
    ErrorKind.INSUFFICIENT_BALANCE: status.HTTP_422_UNPROCESSABLE_ENTITY,
    ErrorKind.SYMBOL_MISMATCH: status.HTTP_422_UNPROCESSABLE_ENTITY,
    ErrorKind.INTEGRITY_VIOLATION: status.HTTP_409_CONFLICT,
    ErrorKind.AUTH_INVALID: status.HTTP_401_UNAUTHORIZED,
    ErrorKind.CRYPTOGRAPHIC: status.HTTP_500_INTERNAL_SERVER_ERROR,
    ErrorKind.TRANSIENT: status.HTTP_503_SERVICE_UNAVAILABLE,
    ErrorKind.INTERNAL: status.HTTP_500_INTERNAL_SERVER_ERROR,
}


async def domain_exception_handler(request: Request, exc: TradeLedgerError) -> JSONResponse:
    code = ERROR_STATUS.get(exc.kind, status.HTTP_500_INTERNAL_SERVER_ERROR)
    if code >= 500:
        logger.error("Domain error", path=request.url.path, kind=exc.kind.value, error=exc.message)
    else:
        logger.warning("Domain error", path=request.url.path, kind=exc.kind.value, error=exc.message)

    body = exc.to_dict()
    # Never echo cryptographic detail
    if exc.kind is ErrorKind.CRYPTOGRAPHIC:
        body = {"error": exc.kind.value, "message": "cryptographic operation failed"}
    return JSONResponse(status_code=code, content=body)


async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    errors = exc.errors()
    logger.warning("Request validation error", path=request.url.path, error_count=len(errors))

    first = errors[0] if errors else {}
    field = ".".join(str(p) for p in first.get("loc", ())[1:]) or "request"
    return JSONResponse(
        status_code=status.HTTP_400_BAD_REQUEST,
        content={
            "error": ErrorKind.VALIDATION.value,
            "message": f"validation error for {field}: {first.get('msg', 'invalid request')}",
            "details": {
                "fields": [
                    {
                        "field": ".".join(str(p) for p in e.get("loc", ())[1:]),
                        "message": e.get("msg"),
                        "type": e.get("type"),
                    }
                    for e in errors
                ]
            },
        },
    )


async def http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    logger.warning("HTTP exception", path=request.url.path, status_code=exc.status_code, detail=exc.detail)
    kind = ErrorKind.AUTH_INVALID.value if exc.status_code in (401, 403) else "http_error"
    return JSONResponse(
        status_code=exc.status_code,
        content={"error": kind, "message": exc.detail},
        headers=getattr(exc, "headers", None),
    )


async def general_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.exception("Unhandled exception", path=request.url.path, error_type=type(exc).__name__)
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={
            "error": ErrorKind.INTERNAL.value,
            "message": "An unexpected error occurred" if not settings.debug else str(exc),
        },
    )


# ============================================================================
# Application Factory
# ============================================================================

def create_application() -> FastAPI:
    """
    Create and configure the FastAPI application.

    Returns:
        FastAPI: Configured FastAPI application.
    """
    app = FastAPI(
        title=settings.app_name,
        description="TradeLedger - transactional trading-log engine",
        version=settings.app_version,
        docs_url="/docs" if settings.debug else None,
        redoc_url="/redoc" if settings.debug else None,
        openapi_url="/openapi.json" if settings.debug else None,
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
    app.add_middleware(StructuredLoggingMiddleware)

    app.add_exception_handler(TradeLedgerError, domain_exception_handler)
    app.add_exception_handler(RequestValidationError, validation_exception_handler)
    app.add_exception_handler(StarletteHTTPException, http_exception_handler)
    app.add_exception_handler(Exception, general_exception_handler)

    api_v1_router = APIRouter(prefix="/api/v1")
    api_v1_router.include_router(auth_router)
    api_v1_router.include_router(users_router)
    api_v1_router.include_router(platforms_router)
    api_v1_router.include_router(sub_accounts_router)
    api_v1_router.include_router(transactions_router)
    api_v1_router.include_router(trading_logs_router)
    api_v1_router.include_router(api_keys_router)
    api_v1_router.include_router(admin_router)

    app.include_router(health_router)
    app.include_router(api_v1_router)

    @app.get("/", tags=["Root"])
    async def root() -> dict:
        return {
            "name": settings.app_name,
            "version": settings.app_version,
            "health": "/health",
            "api": "/api/v1",
        }

    return app


app = create_application()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "tradeledger.app:app",
        host=settings.host,
        port=settings.port,
        reload=settings.debug,
        log_level=settings.logging.level.lower(),
    )
