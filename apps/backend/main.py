"""
Laburandik Seller Ops - API Gateway
===================================
FastAPI application serving the analytics dashboards, the warehouse
scanner and the MercadoLibre integration.
"""

import sys
import time
import uuid
from typing import Optional

import structlog
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest
from pydantic import BaseModel
from starlette.middleware.base import BaseHTTPMiddleware

from config import get_settings
from connection_pool import ConnectionPool
from exceptions import SellerOpsError
from logging_config import configure_logging, get_logger
from routers import (
    analytics_router,
    auth_router,
    catalog_router,
    cogs_router,
    meli_router,
    onboarding_router,
    organization_router,
    packing_router,
)
import metrics as app_metrics

VERSION = "0.1.0"

logger = get_logger(__name__)

app = FastAPI(
    title="Laburandik Seller Ops",
    description="Sales analytics and warehouse operations for MercadoLibre sellers",
    version=VERSION,
    docs_url="/docs",
    redoc_url="/redoc",
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=get_settings().cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# =============================================================================
# Request Correlation Middleware
# =============================================================================

class RequestIDMiddleware(BaseHTTPMiddleware):
    """Inject request ID into all logs for request tracing."""

    async def dispatch(self, request: Request, call_next):
        request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())

        structlog.contextvars.clear_contextvars()
        structlog.contextvars.bind_contextvars(
            request_id=request_id,
            method=request.method,
            path=request.url.path,
        )
        request.state.request_id = request_id

        response = await call_next(request)
        response.headers["X-Request-ID"] = request_id
        return response


app.add_middleware(RequestIDMiddleware)


class MetricsMiddleware(BaseHTTPMiddleware):
    """Record request metrics for observability."""

    async def dispatch(self, request: Request, call_next):
        if request.url.path == "/metrics":
            return await call_next(request)

        start_time = time.time()
        response = await call_next(request)
        duration = time.time() - start_time

        route = request.scope.get("route")
        endpoint = getattr(route, "path", request.url.path)
        app_metrics.http_requests_total.labels(
            method=request.method,
            endpoint=endpoint,
            status=response.status_code,
        ).inc()
        app_metrics.http_request_duration_seconds.labels(
            method=request.method,
            endpoint=endpoint,
        ).observe(duration)

        return response


app.add_middleware(MetricsMiddleware)

# Register routers
app.include_router(auth_router, prefix="/api/auth", tags=["auth"])
app.include_router(meli_router, prefix="/api/meli", tags=["mercadolibre"])
app.include_router(analytics_router, prefix="/api/analytics", tags=["analytics"])
app.include_router(cogs_router, prefix="/api/cogs", tags=["cogs"])
app.include_router(packing_router, prefix="/api/packing", tags=["packing"])
app.include_router(catalog_router, prefix="/api/catalog", tags=["catalog"])
app.include_router(onboarding_router, prefix="/db", tags=["onboarding"])
app.include_router(organization_router, prefix="/api/organization", tags=["organization"])


# =============================================================================
# Exception Handlers
# =============================================================================

@app.exception_handler(SellerOpsError)
async def seller_ops_exception_handler(request: Request, exc: SellerOpsError):
    """Render domain errors as {error: <reason>, message, needs_auth, context}."""
    log = logger.error if exc.status_code >= 500 else logger.warning
    log(
        "Request failed",
        reason=exc.reason,
        message=exc.message,
        status=exc.status_code,
        context=exc.context,
    )
    return JSONResponse(
        status_code=exc.status_code,
        content={**exc.to_dict(), "path": str(request.url.path)},
    )


def jsonable_errors(exc: RequestValidationError) -> list:
    return [
        {"loc": list(err.get("loc", ())), "msg": err.get("msg"), "type": err.get("type")}
        for err in exc.errors()
    ]


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError):
    return JSONResponse(
        status_code=422,
        content={
            "error": "VALIDATION_ERROR",
            "message": "Invalid request",
            "needs_auth": False,
            "context": {"errors": jsonable_errors(exc)},
            "path": str(request.url.path),
        },
    )


@app.exception_handler(Exception)
async def general_exception_handler(request: Request, exc: Exception):
    """Catch-all handler for unexpected exceptions."""
    logger.exception("Unexpected error", path=str(request.url.path), error=str(exc))
    return JSONResponse(
        status_code=500,
        content={
            "error": "INTERNAL_ERROR",
            "message": "An unexpected error occurred",
            "needs_auth": False,
            "path": str(request.url.path),
        },
    )


class HealthResponse(BaseModel):
    status: str
    version: str
    services: dict


@app.get("/health", response_model=HealthResponse)
async def health_check():
    """
    Health check endpoint for container orchestration.

    Returns 200 when the hosted database answers, 503 otherwise. Redis, when
    configured, is reported without affecting the status code.
    """
    services = {}
    overall_healthy = True

    if connection_pool and connection_pool._initialized:
        services = await connection_pool.health_check()
        if services.get("database") != "healthy":
            overall_healthy = False
    else:
        services["database"] = "not_initialized"
        overall_healthy = False

    response = HealthResponse(
        status="healthy" if overall_healthy else "degraded",
        version=VERSION,
        services=services,
    )
    return JSONResponse(response.model_dump(), status_code=200 if overall_healthy else 503)


@app.get("/")
async def root():
    """Root endpoint with API information."""
    return {
        "name": "Laburandik Seller Ops",
        "status": "operational",
        "docs": "/docs",
    }


@app.get("/metrics")
async def metrics():
    """Prometheus metrics endpoint."""
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)


# Global instances
connection_pool: Optional[ConnectionPool] = None


@app.on_event("startup")
async def startup_event():
    """Initialize resources on startup."""
    global connection_pool

    try:
        settings = get_settings()
    except ValueError as e:
        logger.error("Configuration validation failed", error=str(e))
        print(f"Configuration validation failed: {e}", file=sys.stderr)
        print("Please check your .env file and ensure all required settings are present.",
              file=sys.stderr)
        sys.exit(1)

    configure_logging(environment=settings.environment, log_level=settings.log_level)
    app_metrics.app_info.info({"version": VERSION, "environment": settings.environment})

    logger.info(
        "Starting backend",
        environment=settings.environment,
        token_storage=settings.token_storage,
        meli_configured=settings.meli_configured,
    )

    connection_pool = await ConnectionPool.get_instance(settings)


@app.on_event("shutdown")
async def shutdown_event():
    """Cleanup resources on shutdown."""
    logger.info("Shutting down backend")
    if connection_pool:
        await connection_pool.close()
