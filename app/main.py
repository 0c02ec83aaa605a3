"""
Main FastAPI application for the ListSync integration service.
"""
import time
import uuid
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from app.core.config import settings
from app.core.database import init_db
from app.core.http_client import close_http_client
from app.core.logging_config import log_api_request, log_error, log_info, log_warning, setup_logging
from app.integrations.exceptions import IntegrationException, RateLimitException
from app.integrations.router import router as integrations_router

# -----------------------------------------------------------------------------
# Startup / Shutdown
# -----------------------------------------------------------------------------
setup_logging()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan events."""
    log_info("Starting up ListSync integration service...")
    try:
        init_db()
        log_info("Database initialization completed!")
    except Exception as exc:
        log_error(exc)
        raise
    yield
    log_info("Shutting down ListSync integration service...")
    try:
        await close_http_client()
        log_info("HTTP client closed")
    except Exception as exc:
        log_warning(f"Failed to close HTTP client: {exc}")


# -----------------------------------------------------------------------------
# App Initialization
# -----------------------------------------------------------------------------
app = FastAPI(
    title=settings.app_name,
    version=settings.app_version,
    description="Links third-party accounts and syncs their data into user lists",
    openapi_url=f"{settings.api_v1_prefix}/openapi.json",
    docs_url="/docs",
    redoc_url="/redoc",
    lifespan=lifespan,
)

# -----------------------------------------------------------------------------
# Middleware Configuration
# -----------------------------------------------------------------------------
cors_origins = settings.cors_origins or []
if settings.enable_cors:
    app.add_middleware(
        CORSMiddleware,
        allow_origins=cors_origins,
        allow_credentials=True,
        allow_methods=["GET", "POST", "PUT", "DELETE", "PATCH", "OPTIONS"],
        allow_headers=["Authorization", "Content-Type", "Accept", "Origin", "X-Requested-With"],
        max_age=3600,
    )
    log_info(f"CORS enabled for origins: {cors_origins}")
else:
    log_info("CORS disabled")


@app.middleware("http")
async def log_requests(request: Request, call_next):
    """Tag each request with an id, time it and log the outcome."""
    request_id = request.headers.get("x-request-id") or str(uuid.uuid4())
    request.state.request_id = request_id
    start_time = time.time()
    response = await call_next(request)
    duration_ms = (time.time() - start_time) * 1000
    response.headers["X-Request-ID"] = request_id
    response.headers["X-Process-Time"] = str(duration_ms / 1000)
    log_api_request(request.method, request.url.path, response.status_code, duration_ms, request_id=request_id)
    return response


def _request_id(request: Request) -> str:
    return getattr(request.state, "request_id", "unknown")


# -----------------------------------------------------------------------------
# Exception Handlers
# -----------------------------------------------------------------------------
@app.exception_handler(IntegrationException)
async def integration_exception_handler(request: Request, exc: IntegrationException):
    """Render taxonomy errors with their own status code and payload."""
    request_id = _request_id(request)
    if exc.status_code >= 500:
        log_error(exc, request_id=request_id, provider=exc.provider, error_code=exc.error_code)
    else:
        log_warning(
            exc.message, request_id=request_id, provider=exc.provider,
            error_code=exc.error_code, path=request.url.path,
        )

    headers = {}
    if isinstance(exc, RateLimitException) and exc.retry_after:
        headers["Retry-After"] = str(exc.retry_after)
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict(), headers=headers)


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    """Handle FastAPI request validation errors with detailed logging."""
    request_id = _request_id(request)
    sanitized_errors = [
        {"loc": err.get("loc"), "msg": err.get("msg"), "type": err.get("type")}
        for err in exc.errors()
    ]
    log_warning(
        "Request validation failed",
        request_id=request_id,
        path=request.url.path,
        method=request.method,
        errors=sanitized_errors,
        event="validation_error",
    )
    return JSONResponse(
        status_code=422,
        content={"error": "validation_error", "message": sanitized_errors, "request_id": request_id},
    )


@app.exception_handler(Exception)
async def general_exception_handler(request: Request, exc: Exception):
    request_id = _request_id(request)
    log_error(exc, request_id=request_id)
    msg = (
        "An unexpected error occurred. Please try again later."
        if settings.environment == "production"
        else str(exc)
    )
    return JSONResponse(
        status_code=500,
        content={"error": "internal_server_error", "message": msg, "request_id": request_id},
    )


# -----------------------------------------------------------------------------
# API Routers
# -----------------------------------------------------------------------------
app.include_router(integrations_router, prefix=settings.api_v1_prefix)


@app.get("/health", include_in_schema=False)
async def health():
    return {"status": "ok", "version": settings.app_version}


# -----------------------------------------------------------------------------
# Entry Point
# -----------------------------------------------------------------------------
if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "app.main:app",
        host="0.0.0.0",
        port=settings.app_port,
        reload=settings.debug,
        log_level=settings.log_level.lower(),
    )
