"""
StoryScene Subscriptions - Main FastAPI Application.

Subscription plans, credit metering and Stripe/PayPal billing for the
StoryScene AI video generator.

Run with:
    uvicorn storyscene.main:app --reload
"""

from contextlib import asynccontextmanager
from typing import AsyncGenerator

import structlog
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from storyscene.api.v1.admin import router as admin_router
from storyscene.api.v1.auth import router as auth_router
from storyscene.api.v1.payments import router as payments_router
from storyscene.api.v1.subscriptions import router as subscriptions_router
from storyscene.bootstrap import build_services
from storyscene.config import get_settings
from storyscene.constants import API_DESCRIPTION, API_TITLE, API_VERSION
from storyscene.errors import CreditLimitReachedError, SubscriptionError
from storyscene.logging_config import setup_logging
from storyscene.middleware import RequestContextMiddleware

# Get settings before logging setup so we know the debug flag
settings = get_settings()

setup_logging(settings.debug)

logger = structlog.get_logger(__name__)


@asynccontextmanager
async def lifespan(_app: FastAPI) -> AsyncGenerator[None, None]:
    """Lifespan event handler for startup and shutdown."""
    logger.info("api_startup", cors_origins=settings.cors_origins)

    services = await build_services(settings)
    _app.state.supabase = services.supabase
    _app.state.repository = services.repository
    _app.state.stripe_service = services.stripe_service
    _app.state.paypal_service = services.paypal_service
    _app.state.subscription_service = services.subscription_service
    _app.state.scheduler = services.scheduler

    if settings.scheduler.enabled:
        services.scheduler.start()
    else:
        logger.info("scheduler_disabled", detail="Run storyscene.scheduler_main or set SCHEDULER__ENABLED")

    logger.info("services_initialized")

    yield

    await services.close()
    logger.info("api_shutdown")


app = FastAPI(
    title=API_TITLE,
    description=API_DESCRIPTION,
    version=API_VERSION,
    docs_url="/docs",
    redoc_url="/redoc",
    lifespan=lifespan,
)

# Request context middleware must come before CORS so every response gets
# the X-Request-ID header (including preflight OPTIONS responses).
app.add_middleware(RequestContextMiddleware)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


def _error_response(status_code: int, message: str, **extra) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"success": False, "error": message, **extra})


@app.exception_handler(SubscriptionError)
async def subscription_error_handler(request: Request, exc: SubscriptionError) -> JSONResponse:
    logger.info(
        "subscription_request_rejected",
        path=request.url.path,
        status_code=exc.status_code,
        error=exc.message,
    )
    if isinstance(exc, CreditLimitReachedError):
        return _error_response(
            exc.status_code,
            exc.message,
            credits_used=exc.credits_used,
            credits_total=exc.credits_total,
        )
    return _error_response(exc.status_code, exc.message)


@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    return JSONResponse(
        status_code=exc.status_code,
        content={"success": False, "error": str(exc.detail)},
        headers=getattr(exc, "headers", None),
    )


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    errors = exc.errors()
    first = errors[0] if errors else {}
    location = ".".join(str(part) for part in first.get("loc", ()) if part != "body")
    message = first.get("msg", "Invalid request")
    return _error_response(400, f"{location}: {message}" if location else message)


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.exception("unhandled_exception", path=request.url.path)
    return _error_response(500, "Server error")


# Include routers
app.include_router(subscriptions_router, prefix="/api")
app.include_router(payments_router, prefix="/api")
app.include_router(admin_router, prefix="/api")
app.include_router(auth_router, prefix="/api")


@app.get("/")
async def root() -> dict:
    """Root endpoint with API info."""
    return {
        "name": API_TITLE,
        "version": API_VERSION,
        "description": API_DESCRIPTION,
        "docs": "/docs",
    }


@app.get("/health")
async def health() -> dict:
    """Health check endpoint."""
    return {"status": "healthy"}
