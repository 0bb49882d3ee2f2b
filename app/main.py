from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware
from contextlib import asynccontextmanager
from slowapi.errors import RateLimitExceeded
import logging
import time
import uuid

from .config import settings
from .container import build_container
from .database import create_tables
from .exceptions import BookingLedgerError
from .utils.logging_config import setup_logging, get_logger, set_request_context, clear_request_context
from .utils.metrics import record_http_request
from .utils.rate_limiter import limiter

from .routers import bookings, payments, webhooks, health, metrics

logger = logging.getLogger(__name__)
request_log = get_logger("app.requests")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan events"""
    setup_logging(settings.log_level, json_format=settings.log_json)
    logger.info(f"Starting booking-ledger ({settings.environment})")
    logger.info(f"CORS origins: {settings.cors_origins}")

    create_tables()
    app.state.container = build_container(settings)

    yield

    logger.info("Shutting down booking-ledger")
    container = app.state.container
    if container.scheduling is not None:
        container.scheduling.close()


app = FastAPI(
    title="Booking Ledger API",
    description="Booking finalization and payment/refund reconciliation",
    version="1.0.0",
    lifespan=lifespan
)

# Rate limiter state
app.state.limiter = limiter


# ================================
# CORS MIDDLEWARE - MUST BE FIRST!
# ================================
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["GET", "POST", "OPTIONS"],
    allow_headers=["*"],
    expose_headers=["X-Request-ID"],
)


# Security Headers Middleware
class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):
        response = await call_next(request)
        response.headers["X-Content-Type-Options"] = "nosniff"
        response.headers["X-Frame-Options"] = "DENY"
        if settings.is_production:
            response.headers["Strict-Transport-Security"] = "max-age=31536000; includeSubDomains"
        return response


# Request ID + timing Middleware
class RequestIdMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):
        request_id = request.headers.get("X-Request-ID", str(uuid.uuid4())[:8])
        request.state.request_id = request_id
        set_request_context(request_id)
        start = time.perf_counter()
        try:
            response = await call_next(request)
        finally:
            clear_request_context()
        duration = time.perf_counter() - start

        route = request.scope.get("route")
        path = getattr(route, "path", request.url.path)
        record_http_request(request.method, path, response.status_code, duration)
        request_log.api_request(request.method, path, response.status_code, round(duration * 1000, 2))

        response.headers["X-Request-ID"] = request_id
        return response


# Add other middleware AFTER CORS
app.add_middleware(RequestIdMiddleware)
app.add_middleware(SecurityHeadersMiddleware)


# Rate limit handler
@app.exception_handler(RateLimitExceeded)
async def rate_limit_handler(request: Request, exc: RateLimitExceeded):
    return JSONResponse(
        status_code=429,
        content={"detail": "Too many requests, try again later", "code": "rate_limited"}
    )


@app.exception_handler(BookingLedgerError)
async def ledger_error_handler(request: Request, exc: BookingLedgerError):
    if exc.status_code >= 500:
        logger.error(f"{request.method} {request.url.path} failed: {exc.code}: {exc.message}")
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


# Include routers
app.include_router(bookings.router)
app.include_router(payments.router)
app.include_router(webhooks.router)
app.include_router(health.router)
app.include_router(metrics.router)


@app.get("/")
async def root():
    return {
        "message": "Booking Ledger API",
        "version": "1.0.0",
        "docs": "/docs",
        "status": "running"
    }
